"""
Abstract CI driver interface.

This module defines the contract every CI provider implementation must
follow, allowing the controller to work the same way against GitHub, GitLab
or Bitbucket.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path

from .errors import UnsupportedOperationError
from .models import JobRecord, PipelineJob, RunnerInfo, RunnerLogEvent


class CIDriver(ABC):
    """
    Abstract base class for CI provider operations.

    Implementations raise DriverError (or a subclass) when a provider call
    fails.
    """

    name: str = ""
    # Hard execution ceiling imposed by the provider on a single job
    max_job_duration: timedelta | None = None

    def __init__(self, repo: str, token: str):
        self.repo = repo.rstrip("/")
        self.token = token

    @abstractmethod
    async def check_repo_token(self) -> None:
        """
        Verify the token can manage runners on the repository.

        Raises:
            DriverError: If the token is invalid or lacks permissions
        """
        pass

    @abstractmethod
    async def list_runners(self) -> list[RunnerInfo]:
        """
        List the runners registered on the repository.

        Returns:
            List of registered runners
        """
        pass

    def find_runner_by_name(
        self, name: str, runners: Iterable[RunnerInfo]
    ) -> RunnerInfo | None:
        """Return the runner with the given name, if any."""
        for runner in runners:
            if runner.name == name:
                return runner
        return None

    def find_runners_by_labels(
        self, labels: Iterable[str], runners: Iterable[RunnerInfo]
    ) -> list[RunnerInfo]:
        """Return the runners sharing at least one label with labels."""
        wanted = set(labels)
        return [runner for runner in runners if wanted & set(runner.labels)]

    @abstractmethod
    async def unregister_runner(self, name: str) -> None:
        """
        Remove the runner registration with the given name.

        Args:
            name: Runner name

        Raises:
            DriverError: If the runner does not exist or removal fails
        """
        pass

    @abstractmethod
    async def restart_pipeline_job(self, job_id: str) -> None:
        """
        Restart the workflow or pipeline the given job belongs to.

        Args:
            job_id: Provider job identifier
        """
        pass

    @abstractmethod
    async def list_pipeline_jobs(self, jobs: list[JobRecord]) -> list[PipelineJob]:
        """
        Fetch the provider status of the given jobs.

        Args:
            jobs: Job records with known ids

        Returns:
            One PipelineJob per job, status normalised to
            "queued", "running" or "completed"
        """
        pass

    @abstractmethod
    async def runner_token(self) -> str:
        """
        Issue a token the runner agent registers itself with.

        Returns:
            Registration token
        """
        pass

    @abstractmethod
    async def start_runner_command(
        self,
        workdir: Path,
        name: str,
        labels: tuple[str, ...],
        single: bool,
        idle_timeout: int,
    ) -> list[str]:
        """
        Prepare the runner agent and return the command that starts it.

        Any provider-specific registration happens here.

        Returns:
            Command line (argv) to execute in workdir
        """
        pass

    @abstractmethod
    def parse_runner_log(self, line: str) -> RunnerLogEvent | None:
        """
        Parse one line of agent output.

        Returns:
            A job lifecycle event, or None if the line is not one
        """
        pass

    async def runner_job(self, name: str) -> str | None:
        """Return the id of the job currently running on the named runner."""
        return None

    async def rerun_pipeline(self, run_id: str) -> None:
        """
        Stop the workflow run or pipeline run_id if it is running and rerun it.

        Raises:
            UnsupportedOperationError: If the provider cannot rerun pipelines
        """
        raise UnsupportedOperationError(f"{self.name} does not support rerunning pipelines!")
