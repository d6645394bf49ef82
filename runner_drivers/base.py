"""
Shared HTTP plumbing for CI drivers.

Provider APIs are called with a blocking requests.Session; the async driver
methods hand each call to a worker thread so the controller loop is never
blocked.
"""

import asyncio
import logging
from typing import Any

import requests

from runner_common.driver import CIDriver
from runner_common.errors import DriverError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30


class HTTPDriver(CIDriver):
    """CIDriver base class backed by a REST API."""

    api_url: str = ""

    def __init__(self, repo: str, token: str, session: requests.Session | None = None):
        super().__init__(repo, token)
        self.session = session or requests.Session()
        self.session.headers.update(self._auth_headers())
        # Seconds between status polls while waiting for a pipeline to stop
        self.poll_interval = 5.0
        self.poll_attempts = 60

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: Any = None,
        url: str | None = None,
    ) -> Any:
        """
        Perform one API call and decode its JSON body.

        Args:
            method: HTTP method
            endpoint: Path appended to api_url
            url: Absolute URL overriding api_url + endpoint

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            DriverError: On transport errors or non-2xx responses
        """
        target = url or f"{self.api_url}{endpoint}"
        try:
            response = self.session.request(
                method,
                target,
                params=params,
                json=json,
                data=data,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise DriverError(f"{self.name} API request failed: {e}") from e

        if response.status_code >= 300:
            raise DriverError(
                f"{method} {endpoint} failed: {response.status_code} {response.reason}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _call(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._request, method, endpoint, **kwargs)
