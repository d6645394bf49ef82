"""
Pre-emption watcher.

Polls the instance metadata service of the cloud the runner is running on
and reports once when the instance receives a termination notice (spot or
preemptible reclamation).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

import requests

from runner_common.errors import PreemptionUnavailableError

logger = logging.getLogger(__name__)

METADATA_HOST = "http://169.254.169.254"
METADATA_TIMEOUT = 2


class PreemptionNotice(ABC):
    """One provider-specific source of termination notices."""

    name = ""

    def __init__(self, session: requests.Session | None = None):
        self.session = session or requests.Session()

    def _get(self, path: str, headers: dict[str, str] | None = None) -> requests.Response:
        return self.session.get(
            f"{METADATA_HOST}{path}", headers=headers, timeout=METADATA_TIMEOUT
        )

    @abstractmethod
    def instance_id(self) -> str:
        """Return the instance id; raises if the metadata service is unreachable."""
        pass

    @abstractmethod
    def terminating(self) -> bool:
        """Return True once a termination notice has been issued."""
        pass


class AWSSpotNotice(PreemptionNotice):
    """EC2 spot instance interruption notices (IMDSv2)."""

    name = "aws"

    def _headers(self) -> dict[str, str]:
        response = self.session.put(
            f"{METADATA_HOST}/latest/api/token",
            headers={"X-aws-ec2-metadata-token-ttl-seconds": "300"},
            timeout=METADATA_TIMEOUT,
        )
        response.raise_for_status()
        return {"X-aws-ec2-metadata-token": response.text}

    def instance_id(self) -> str:
        response = self._get("/latest/meta-data/instance-id", self._headers())
        response.raise_for_status()
        return response.text

    def terminating(self) -> bool:
        response = self._get("/latest/meta-data/spot/instance-action", self._headers())
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True


class GCPPreemptionNotice(PreemptionNotice):
    """Compute Engine preemptible/spot VM notices."""

    name = "gcp"
    headers = {"Metadata-Flavor": "Google"}

    def instance_id(self) -> str:
        response = self._get("/computeMetadata/v1/instance/id", self.headers)
        response.raise_for_status()
        return response.text

    def terminating(self) -> bool:
        response = self._get("/computeMetadata/v1/instance/preempted", self.headers)
        response.raise_for_status()
        return response.text.strip().upper() == "TRUE"


class AzureScheduledEvents(PreemptionNotice):
    """Azure spot VM eviction through scheduled events."""

    name = "azure"
    headers = {"Metadata": "true"}

    def instance_id(self) -> str:
        response = self._get(
            "/metadata/instance/compute/vmId?api-version=2021-02-01&format=text",
            self.headers,
        )
        response.raise_for_status()
        return response.text

    def terminating(self) -> bool:
        response = self._get(
            "/metadata/scheduledevents?api-version=2020-07-01", self.headers
        )
        response.raise_for_status()
        events = response.json().get("Events", [])
        return any(event.get("EventType") == "Preempt" for event in events)


class PreemptionWatcher:
    """
    Watches the first reachable notice source and calls back exactly once.
    """

    def __init__(
        self,
        notices: list[PreemptionNotice] | None = None,
        interval: float = 5.0,
    ):
        self.notices = (
            notices
            if notices is not None
            else [AWSSpotNotice(), GCPPreemptionNotice(), AzureScheduledEvents()]
        )
        self.interval = interval
        self._task: asyncio.Task | None = None

    async def attach(self, on_preempted: Callable[[], None]) -> str:
        """
        Start watching for termination notices.

        Args:
            on_preempted: Called once when a notice arrives

        Returns:
            Description of the watched instance

        Raises:
            PreemptionUnavailableError: If no metadata service answers
        """
        for notice in self.notices:
            try:
                instance = await asyncio.to_thread(notice.instance_id)
            except (requests.exceptions.RequestException, ValueError) as e:
                logger.debug(f"{notice.name} metadata service unavailable: {e}")
                continue

            self._task = asyncio.create_task(self._watch(notice, on_preempted))
            return f"{notice.name} instance {instance}"

        raise PreemptionUnavailableError("no instance metadata service reachable")

    async def _watch(
        self, notice: PreemptionNotice, on_preempted: Callable[[], None]
    ) -> None:
        while True:
            try:
                terminating = await asyncio.to_thread(notice.terminating)
            except (requests.exceptions.RequestException, ValueError) as e:
                logger.debug(f"Failed to poll {notice.name} termination notice: {e}")
                terminating = False

            if terminating:
                logger.warning(f"{notice.name} instance received a termination notice")
                on_preempted()
                return
            await asyncio.sleep(self.interval)

    def detach(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
