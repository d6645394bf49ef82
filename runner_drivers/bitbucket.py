"""
Bitbucket Cloud driver.

Bitbucket Cloud exposes no public API for self-hosted runner management, so
only the repository check is implemented; every runner operation raises
UnsupportedOperationError.
"""

from pathlib import Path
from urllib.parse import urlparse

from runner_common.errors import DriverError, UnsupportedOperationError
from runner_common.models import (
    JobRecord,
    PipelineJob,
    RunnerInfo,
    RunnerLogEvent,
)

from .base import HTTPDriver

BITBUCKET_API = "https://api.bitbucket.org/2.0"


class BitbucketDriver(HTTPDriver):
    """Driver for repositories hosted on Bitbucket Cloud."""

    name = "bitbucket"

    def __init__(self, repo: str, token: str, **kwargs):
        super().__init__(repo, token, **kwargs)
        self.api_url = BITBUCKET_API
        parts = urlparse(self.repo).path.strip("/").split("/")
        if len(parts) < 2:
            raise DriverError(f"Invalid Bitbucket repository URL: {repo}")
        self.workspace, self.slug = parts[0], parts[1]

    def _unsupported(self, operation: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(
            f"Bitbucket Cloud does not support {operation}!"
        )

    async def check_repo_token(self) -> None:
        await self._call("GET", f"/repositories/{self.workspace}/{self.slug}")

    async def list_runners(self) -> list[RunnerInfo]:
        raise self._unsupported("list_runners")

    async def unregister_runner(self, name: str) -> None:
        raise self._unsupported("unregister_runner")

    async def restart_pipeline_job(self, job_id: str) -> None:
        raise self._unsupported("restart_pipeline_job")

    async def list_pipeline_jobs(self, jobs: list[JobRecord]) -> list[PipelineJob]:
        raise self._unsupported("list_pipeline_jobs")

    async def runner_token(self) -> str:
        raise self._unsupported("runner_token")

    async def start_runner_command(
        self,
        workdir: Path,
        name: str,
        labels: tuple[str, ...],
        single: bool,
        idle_timeout: int,
    ) -> list[str]:
        raise self._unsupported("start_runner_command")

    def parse_runner_log(self, line: str) -> RunnerLogEvent | None:
        raise self._unsupported("parse_runner_log")
