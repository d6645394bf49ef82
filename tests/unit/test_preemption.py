"""
Unit tests for the pre-emption watcher.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
import requests

from runner_common.errors import PreemptionUnavailableError
from runner_controller.preemption import (
    AWSSpotNotice,
    GCPPreemptionNotice,
    PreemptionNotice,
    PreemptionWatcher,
)


class FakeNotice(PreemptionNotice):
    """Notice source answering from a scripted sequence."""

    name = "fake"

    def __init__(self, reachable=True, notices=()):
        super().__init__(session=MagicMock())
        self.reachable = reachable
        self.notices = list(notices)
        self.polls = 0

    def instance_id(self):
        if not self.reachable:
            raise requests.exceptions.ConnectionError("no metadata service")
        return "vm-1"

    def terminating(self):
        self.polls += 1
        if self.notices:
            return self.notices.pop(0)
        return False


def metadata_response(status_code=200, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            str(status_code)
        )
    return response


class TestPreemptionWatcher:
    """Test suite for PreemptionWatcher."""

    @pytest.mark.asyncio
    async def test_no_reachable_notice_source(self):
        watcher = PreemptionWatcher(notices=[FakeNotice(reachable=False)])

        with pytest.raises(PreemptionUnavailableError):
            await watcher.attach(lambda: None)

    @pytest.mark.asyncio
    async def test_first_reachable_source_is_watched(self):
        unreachable = FakeNotice(reachable=False)
        reachable = FakeNotice()
        watcher = PreemptionWatcher(notices=[unreachable, reachable], interval=0.01)

        description = await watcher.attach(lambda: None)

        assert description == "fake instance vm-1"
        await asyncio.sleep(0.03)
        assert reachable.polls > 0
        assert unreachable.polls == 0
        watcher.detach()

    @pytest.mark.asyncio
    async def test_callback_fires_once(self):
        notice = FakeNotice(notices=[False, True, True])
        watcher = PreemptionWatcher(notices=[notice], interval=0.01)
        calls = []

        await watcher.attach(lambda: calls.append("preempted"))
        await asyncio.wait_for(watcher._task, 1)

        assert calls == ["preempted"]
        assert notice.polls == 2

    @pytest.mark.asyncio
    async def test_detach_stops_polling(self):
        notice = FakeNotice()
        watcher = PreemptionWatcher(notices=[notice], interval=0.01)
        await watcher.attach(lambda: None)
        task = watcher._task

        watcher.detach()
        await asyncio.sleep(0.02)

        assert task.cancelled()
        watcher.detach()


class TestNoticeSources:
    """Test suite for the metadata service clients."""

    def test_notice_source_interface_is_abstract(self):
        with pytest.raises(TypeError):
            PreemptionNotice(session=MagicMock())

        class IdOnly(PreemptionNotice):
            def instance_id(self):
                return "vm-1"

        with pytest.raises(TypeError):
            IdOnly(session=MagicMock())

    def test_aws_no_interruption_scheduled(self):
        notice = AWSSpotNotice(session=MagicMock())
        notice.session.put.return_value = metadata_response(text="imds-token")
        notice.session.get.return_value = metadata_response(404)

        assert notice.terminating() is False
        headers = notice.session.get.call_args.kwargs["headers"]
        assert headers == {"X-aws-ec2-metadata-token": "imds-token"}

    def test_aws_interruption_scheduled(self):
        notice = AWSSpotNotice(session=MagicMock())
        notice.session.put.return_value = metadata_response(text="imds-token")
        notice.session.get.return_value = metadata_response(
            text='{"action": "terminate", "time": "2024-01-02T03:04:05Z"}'
        )

        assert notice.terminating() is True

    def test_gcp_preempted_flag(self):
        notice = GCPPreemptionNotice(session=MagicMock())
        notice.session.get.return_value = metadata_response(text="TRUE")

        assert notice.terminating() is True
        notice.session.get.return_value = metadata_response(text="FALSE")
        assert notice.terminating() is False
