"""
Process supervisor for the runner agent.

Spawns the provider's runner agent and turns its combined stdout/stderr into
a stream of lifecycle events.
"""

import asyncio
import logging
import os
import re
import signal
from collections.abc import AsyncIterator, Callable
from pathlib import Path

from runner_common.driver import CIDriver
from runner_common.errors import SupervisorError
from runner_common.models import RunnerLogEvent

logger = logging.getLogger(__name__)

# Agents may print very long lines (e.g. JSON logs with stack traces)
STREAM_LIMIT = 1024 * 1024
ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


class RunnerProcess:
    """
    Handle on a running agent process.

    events() can only be consumed once.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        parse_line: Callable[[str], RunnerLogEvent | None],
    ):
        self.process = process
        self.parse_line = parse_line
        self._consumed = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def parse(self, line: str) -> RunnerLogEvent:
        """Parse one output line, falling back to a raw event."""
        line = ANSI_ESCAPE.sub("", line).rstrip("\r\n")
        try:
            event = self.parse_line(line)
        except ValueError as e:
            logger.debug(f"Unparseable runner output {line!r}: {e}")
            event = None
        return event or RunnerLogEvent(status=None, raw=line)

    async def events(self) -> AsyncIterator[RunnerLogEvent]:
        """Yield one event per output line until the agent closes its output."""
        if self._consumed:
            raise SupervisorError("Runner output has already been consumed")
        self._consumed = True

        stream = self.process.stdout
        if stream is None:
            raise SupervisorError("Runner output is not captured")

        while True:
            try:
                data = await stream.readline()
            except ValueError:
                # The reader drops lines longer than STREAM_LIMIT
                logger.debug("Skipped an oversized runner output line")
                continue
            if not data:
                break
            yield self.parse(data.decode(errors="replace"))

    async def wait(self) -> int:
        return await self.process.wait()

    def kill(self, sig: int = signal.SIGINT) -> None:
        """Send sig to the agent if it is still running."""
        if self.process.returncode is not None:
            return
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            logger.debug(f"Runner process {self.pid} already exited")


class ProcessSupervisor:
    """Starts runner agents using a CI driver's command and log format."""

    def __init__(self, driver: CIDriver):
        self.driver = driver

    async def spawn(
        self,
        workdir: Path,
        name: str,
        labels: tuple[str, ...],
        single: bool,
        idle_timeout: int,
    ) -> RunnerProcess:
        """
        Start the runner agent.

        Args:
            workdir: Directory the agent runs in
            name: Runner name
            labels: Runner labels
            single: Exit after a single job
            idle_timeout: Seconds to wait for jobs (<= 0 waits forever)

        Returns:
            Handle on the running agent

        Raises:
            SupervisorError: If the agent cannot be started
        """
        command = await self.driver.start_runner_command(
            workdir, name, labels, single, idle_timeout
        )
        logger.debug(f"Starting runner agent: {command[0]}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=workdir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env={**os.environ, "RUNNER_ALLOW_RUNASROOT": "1"},
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise SupervisorError(f"Failed to start runner agent: {e}") from e

        logger.info(f"Runner agent started with pid {process.pid}")
        return RunnerProcess(process, self.driver.parse_runner_log)
