"""
GitHub Actions driver.

Registers self-hosted runners through the GitHub REST API and runs the
official actions runner agent.
"""

import asyncio
import logging
import platform
import re
import tarfile
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from urllib.parse import urlparse

from runner_common.errors import DriverError
from runner_common.models import (
    JobRecord,
    PipelineJob,
    RunnerEventStatus,
    RunnerInfo,
    RunnerLogEvent,
)

from .base import HTTPDriver

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
RUNNER_VERSION = "2.311.0"
RUNNER_RELEASE_URL = (
    "https://github.com/actions/runner/releases/download/"
    "v{version}/actions-runner-{os}-{arch}-{version}.tar.gz"
)
# GitHub cancels jobs after 72 hours; leave 5 minutes to restart them
MAX_JOB_DURATION = timedelta(hours=72) - timedelta(minutes=5)

_LOG_DATE = re.compile(r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})Z?:")


class GitHubDriver(HTTPDriver):
    """Driver for repositories hosted on GitHub."""

    name = "github"
    max_job_duration = MAX_JOB_DURATION

    def __init__(self, repo: str, token: str, api_url: str = GITHUB_API, **kwargs):
        super().__init__(repo, token, **kwargs)
        self.api_url = api_url
        parts = urlparse(self.repo).path.strip("/").split("/")
        if len(parts) < 2:
            raise DriverError(f"Invalid GitHub repository URL: {repo}")
        self.owner, self.repo_name = parts[0], parts[1]
        self.session.headers["Accept"] = "application/vnd.github+json"

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo_name}"

    async def check_repo_token(self) -> None:
        info = await self._call("GET", self._repo_path)
        permissions = (info or {}).get("permissions")
        if permissions is not None and not permissions.get("admin"):
            raise DriverError(
                f"Token has no admin permission on {self.repo}; "
                "self-hosted runners cannot be registered"
            )

    async def list_runners(self) -> list[RunnerInfo]:
        data = await self._call(
            "GET", f"{self._repo_path}/actions/runners", params={"per_page": 100}
        )
        return [
            RunnerInfo(
                id=str(runner["id"]),
                name=runner["name"],
                labels=tuple(label["name"] for label in runner.get("labels", [])),
                online=runner.get("status") == "online",
                busy=bool(runner.get("busy")),
            )
            for runner in (data or {}).get("runners", [])
        ]

    async def unregister_runner(self, name: str) -> None:
        runner = self.find_runner_by_name(name, await self.list_runners())
        if runner is None:
            raise DriverError(f"Runner {name} not found")
        await self._call("DELETE", f"{self._repo_path}/actions/runners/{runner.id}")

    async def runner_token(self) -> str:
        data = await self._call(
            "POST", f"{self._repo_path}/actions/runners/registration-token"
        )
        return data["token"]

    async def restart_pipeline_job(self, job_id: str) -> None:
        """Cancel the workflow run of job_id, wait for it to stop and rerun it."""
        job = await self._call("GET", f"{self._repo_path}/actions/jobs/{job_id}")
        await self.rerun_pipeline(job["run_id"])
        logger.info(f"Restarted workflow run {job['run_id']} for job {job_id}")

    async def rerun_pipeline(self, run_id: str) -> None:
        try:
            await self._call("POST", f"{self._repo_path}/actions/runs/{run_id}/cancel")
        except DriverError as e:
            # 409: the run already finished
            if e.status_code != 409:
                raise

        for _ in range(self.poll_attempts):
            run = await self._call("GET", f"{self._repo_path}/actions/runs/{run_id}")
            if run["status"] == "completed":
                break
            await asyncio.sleep(self.poll_interval)
        else:
            raise DriverError(f"Workflow run {run_id} did not stop in time")

        await self._call("POST", f"{self._repo_path}/actions/runs/{run_id}/rerun")

    async def list_pipeline_jobs(self, jobs: list[JobRecord]) -> list[PipelineJob]:
        result = []
        for record in jobs:
            if not record.job_id:
                continue
            job = await self._call(
                "GET", f"{self._repo_path}/actions/jobs/{record.job_id}"
            )
            status = job.get("status")
            if status == "in_progress":
                status = "running"
            elif status != "completed":
                status = "queued"
            result.append(PipelineJob(id=str(job["id"]), status=status))
        return result

    async def runner_job(self, name: str) -> str | None:
        runs = await self._call(
            "GET",
            f"{self._repo_path}/actions/runs",
            params={"status": "in_progress", "per_page": 100},
        )
        for run in (runs or {}).get("workflow_runs", []):
            jobs = await self._call(
                "GET", f"{self._repo_path}/actions/runs/{run['id']}/jobs"
            )
            for job in (jobs or {}).get("jobs", []):
                if job.get("runner_name") == name and job.get("status") == "in_progress":
                    return str(job["id"])
        return None

    async def start_runner_command(
        self,
        workdir: Path,
        name: str,
        labels: tuple[str, ...],
        single: bool,
        idle_timeout: int,
    ) -> list[str]:
        if not (workdir / "config.sh").exists():
            logger.info(f"Downloading GitHub actions runner {RUNNER_VERSION}...")
            await asyncio.to_thread(self._download_runner, workdir)

        args = [
            str(workdir / "config.sh"),
            "--unattended",
            "--token",
            await self.runner_token(),
            "--url",
            self.repo,
            "--name",
            name,
            "--labels",
            ",".join(labels),
            "--work",
            str(workdir / "_work"),
        ]
        if single:
            args.append("--ephemeral")

        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=workdir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise DriverError(
                f"Failed to configure GitHub runner: {stderr.decode() or stdout.decode()}"
            )

        return [str(workdir / "run.sh")]

    def _download_runner(self, workdir: Path) -> None:
        system = {"Darwin": "osx", "Windows": "win"}.get(platform.system(), "linux")
        machine = platform.machine().lower()
        arch = "arm64" if machine in ("arm64", "aarch64") else "x64"
        url = RUNNER_RELEASE_URL.format(version=RUNNER_VERSION, os=system, arch=arch)

        with tempfile.TemporaryFile() as archive:
            with self.session.get(url, stream=True, timeout=300) as response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=1 << 20):
                    archive.write(chunk)
            archive.seek(0)
            with tarfile.open(fileobj=archive, mode="r:gz") as tar:
                tar.extractall(workdir, filter="data")

    def parse_runner_log(self, line: str) -> RunnerLogEvent | None:
        if "Running job" in line:
            status = RunnerEventStatus.JOB_STARTED
            success = None
        elif "completed with result" in line:
            status = RunnerEventStatus.JOB_ENDED
            success = "Succeeded" in line
        else:
            return None

        date = datetime.now(UTC)
        match = _LOG_DATE.match(line)
        if match:
            date = datetime.strptime(match.group(1), "%Y-%m-%d %H:%M:%S").replace(
                tzinfo=UTC
            )
        # The actions runner does not print job ids
        return RunnerLogEvent(status=status, job=None, date=date, success=success, raw=line)
