"""
GitLab CI driver.

Registers project runners through the GitLab REST API (v4) and runs
gitlab-runner in run-single mode with JSON logging.
"""

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote, urlparse

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

FINISHED_JOB_STATUSES = {"success", "failed", "canceled", "skipped", "manual"}
ACTIVE_PIPELINE_STATUSES = {"created", "waiting_for_resource", "preparing", "pending", "running"}
JOB_END_MESSAGES = ("Job succeeded", "Job failed")


class GitLabDriver(HTTPDriver):
    """Driver for projects hosted on GitLab (gitlab.com or self-managed)."""

    name = "gitlab"

    def __init__(self, repo: str, token: str, **kwargs):
        super().__init__(repo, token, **kwargs)
        url = urlparse(self.repo)
        if not url.scheme or not url.netloc or not url.path.strip("/"):
            raise DriverError(f"Invalid GitLab project URL: {repo}")
        self.host = f"{url.scheme}://{url.netloc}"
        self.api_url = f"{self.host}/api/v4"
        self.project_path = quote(url.path.strip("/"), safe="")

    def _auth_headers(self) -> dict[str, str]:
        return {"PRIVATE-TOKEN": self.token, "Accept": "application/json"}

    @property
    def _project(self) -> str:
        return f"/projects/{self.project_path}"

    async def check_repo_token(self) -> None:
        await self._call("GET", self._project)

    async def list_runners(self) -> list[RunnerInfo]:
        runners = await self._call(
            "GET", f"{self._project}/runners", params={"per_page": 100}
        )
        result = []
        for runner in runners or []:
            # Tags are only returned by the runner details endpoint
            details = await self._call("GET", f"/runners/{runner['id']}")
            result.append(
                RunnerInfo(
                    id=str(runner["id"]),
                    name=runner.get("description") or "",
                    labels=tuple(details.get("tag_list", [])),
                    online=runner.get("status") == "online"
                    or bool(runner.get("online")),
                    busy=details.get("status") == "running",
                )
            )
        return result

    async def unregister_runner(self, name: str) -> None:
        runner = self.find_runner_by_name(name, await self.list_runners())
        if runner is None:
            raise DriverError(f"Runner {name} not found")
        await self._call("DELETE", f"/runners/{runner.id}")

    async def runner_token(self) -> str:
        project = await self._call("GET", self._project)
        token = (project or {}).get("runners_token")
        if not token:
            raise DriverError(
                f"Token cannot read the runners registration token of {self.repo}"
            )
        return token

    async def register_runner(self, name: str, labels: tuple[str, ...]) -> str:
        """
        Register a project runner.

        Returns:
            Authentication token of the new runner
        """
        data = await self._call(
            "POST",
            "/runners",
            data={
                "token": await self.runner_token(),
                "description": name,
                "tag_list": ",".join(labels),
                "locked": "true",
                "run_untagged": "false",
                "access_level": "not_protected",
            },
        )
        return data["token"]

    async def restart_pipeline_job(self, job_id: str) -> None:
        """Cancel the pipeline of job_id, wait for it to stop and retry it."""
        job = await self._call("GET", f"{self._project}/jobs/{job_id}")
        pipeline_id = job["pipeline"]["id"]
        await self.rerun_pipeline(pipeline_id)
        logger.info(f"Retried pipeline {pipeline_id} for job {job_id}")

    async def rerun_pipeline(self, run_id: str) -> None:
        pipeline_path = f"{self._project}/pipelines/{run_id}"

        await self._call("POST", f"{pipeline_path}/cancel")
        for _ in range(self.poll_attempts):
            pipeline = await self._call("GET", pipeline_path)
            if pipeline["status"] not in ACTIVE_PIPELINE_STATUSES:
                break
            await asyncio.sleep(self.poll_interval)
        else:
            raise DriverError(f"Pipeline {run_id} did not stop in time")

        await self._call("POST", f"{pipeline_path}/retry")

    async def list_pipeline_jobs(self, jobs: list[JobRecord]) -> list[PipelineJob]:
        result = []
        for record in jobs:
            if not record.job_id:
                continue
            job = await self._call("GET", f"{self._project}/jobs/{record.job_id}")
            status = job.get("status")
            if status in FINISHED_JOB_STATUSES:
                status = "completed"
            elif status != "running":
                status = "queued"
            result.append(PipelineJob(id=str(job["id"]), status=status))
        return result

    async def start_runner_command(
        self,
        workdir: Path,
        name: str,
        labels: tuple[str, ...],
        single: bool,
        idle_timeout: int,
    ) -> list[str]:
        token = await self.register_runner(name, labels)
        command = [
            "gitlab-runner",
            "--log-format=json",
            "run-single",
            "--builds-dir",
            str(workdir),
            "--cache-dir",
            str(workdir),
            "--url",
            self.host,
            "--name",
            name,
            "--token",
            token,
            "--wait-timeout",
            str(max(idle_timeout, 0)),
            "--executor",
            "shell",
        ]
        if single:
            command += ["--max-builds", "1"]
        return command

    def parse_runner_log(self, line: str) -> RunnerLogEvent | None:
        try:
            log = json.loads(line)
        except ValueError:
            return None
        if not isinstance(log, dict) or not log.get("job"):
            return None

        message = log.get("msg", "")
        if "received" in message:
            status = RunnerEventStatus.JOB_STARTED
            success = None
        elif message.startswith(JOB_END_MESSAGES):
            status = RunnerEventStatus.JOB_ENDED
            success = message.startswith("Job succeeded")
        else:
            return None

        date = datetime.now(UTC)
        if log.get("time"):
            try:
                date = datetime.fromisoformat(log["time"].replace("Z", "+00:00"))
            except ValueError:
                pass
        return RunnerLogEvent(
            status=status, job=str(log["job"]), date=date, success=success, raw=line
        )
