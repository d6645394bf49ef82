"""
Runner controller with the runner lifecycle state machine.

The controller registers a runner (locally supervised or provisioned in the
cloud), tracks the jobs the agent reports, enforces the idle and platform
timeouts, and runs an ordered, failure-tolerant shutdown exactly once.

All state lives on the controller instance and is only mutated from the
event loop thread; the collaborators (CI driver, provisioner, process
supervisor, pre-emption watcher) are injected so they can be replaced.
"""

import asyncio
import base64
import json
import logging
import signal
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any

from runner_common.driver import CIDriver
from runner_common.errors import RunnerNameConflictError
from runner_common.models import (
    JobRecord,
    ProvisionedInfra,
    RunnerConfig,
    RunnerEventStatus,
    RunnerLogEvent,
    RunnerPhase,
    ShutdownReason,
)
from runner_common.provisioner import Provisioner
from runner_drivers import get_driver
from runner_terraform import TerraformProvisioner

from .preemption import PreemptionWatcher
from .supervisor import ProcessSupervisor, RunnerProcess

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT)


class RunnerController:
    """
    Controller for a single self-hosted runner.

    Lifecycle:
    INIT -> PREPARING -> CLOUD_PROVISIONING | LOCAL_LAUNCHING -> RUNNING
         -> SHUTTING_DOWN -> TERMINATED

    While RUNNING, the set of in-flight jobs and the idle timer drive the
    idle countdown: the timer only advances while no job is in flight and
    resets whenever a job starts.
    """

    def __init__(
        self,
        config: RunnerConfig,
        driver: CIDriver | None = None,
        provisioner: Provisioner | None = None,
        supervisor: ProcessSupervisor | None = None,
        preemption_watcher: PreemptionWatcher | None = None,
        *,
        idle_tick: float = 1.0,
        platform_check_interval: float = 60.0,
        reconcile_interval: float = 5.0,
        reconcile_timeout: float = 600.0,
        disconnect_grace: float = 5.0,
        handle_signals: bool = True,
    ):
        """
        Initialize the runner controller.

        Args:
            config: Resolved runner configuration
            driver: CI driver; built from config when omitted
            provisioner: Provisioner; Terraform when omitted and needed
            supervisor: Process supervisor; built from the driver when omitted
            preemption_watcher: Pre-emption watcher; metadata-service based when omitted
            idle_tick: Seconds per idle timer tick
            platform_check_interval: Seconds between platform max-duration checks
            reconcile_interval: Seconds between job status polls
            reconcile_timeout: Seconds after which unmatched job endings are given up
            disconnect_grace: Seconds the agent may take to exit after closing its output
            handle_signals: Install SIGTERM/SIGINT/SIGQUIT handlers in run()
        """
        self.config = config
        self.driver = driver
        self.provisioner = provisioner
        self.supervisor = supervisor
        self.preemption_watcher = preemption_watcher

        self.idle_tick = idle_tick
        self.platform_check_interval = platform_check_interval
        self.reconcile_interval = reconcile_interval
        self.reconcile_timeout = reconcile_timeout
        self.disconnect_grace = disconnect_grace
        self.handle_signals = handle_signals

        self.phase = RunnerPhase.INIT
        self.jobs: list[JobRecord] = []
        self.idle_timer = 0
        self.shutdown_reason: ShutdownReason | None = None
        self.exit_code: int | None = None

        self._shutting_down = False
        self._process: RunnerProcess | None = None
        self._infra: ProvisionedInfra | None = None
        self._cloud_launched = False
        self._pending_endings = 0
        self._reconcile_task: asyncio.Task | None = None
        self._consumer_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._shutdown_tasks: set[asyncio.Task] = set()
        self._signals: list[int] = []
        self._terminated = asyncio.Event()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """
        Launch the runner and supervise it until it terminates.

        Returns:
            Process exit code (0 on clean or no-op termination, 1 on error)
        """
        if self.handle_signals:
            self._install_signal_handlers()

        self.phase = RunnerPhase.PREPARING
        try:
            launch = await self._prepare()
        except Exception as e:
            if self._shutting_down:
                return await self._wait_terminated()
            logger.error(f"Runner failed to start: {e}")
            self._finish(1)
            return 1

        if self._shutting_down:
            return await self._wait_terminated()
        if not launch:
            self._finish(0)
            return 0

        try:
            if self.config.is_cloud:
                await self._run_cloud()
            else:
                await self._run_local()
        except Exception as e:
            logger.error(f"Runner failed: {e}", exc_info=True)
            await self.shutdown(ShutdownReason.caller_error(e))

        if self.config.is_cloud and not self._shutting_down:
            # The instance's own controller supervises the runner from here
            logger.info("Cloud runner deployed")
            self._finish(0)
            return 0

        return await self._wait_terminated()

    async def _wait_terminated(self) -> int:
        await self._terminated.wait()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        return self.exit_code if self.exit_code is not None else 1

    async def _prepare(self) -> bool:
        """
        Run the startup checks; nothing is created before they pass.

        Returns:
            False if an existing runner is reused and nothing should launch
        """
        config = self.config

        if self.driver is None:
            self.driver = get_driver(config.driver, config.repo, config.token)

        await self.driver.check_repo_token()

        runners = await self.driver.list_runners()
        if self.driver.find_runner_by_name(config.name, runners):
            if not config.reuse:
                raise RunnerNameConflictError(config.name)
            logger.info(f"Reusing existing runner named {config.name}...")
            return False

        if config.reuse:
            matching = self.driver.find_runners_by_labels(config.labels, runners)
            if any(runner.online for runner in matching):
                logger.info(
                    f"Reusing existing online runners with the {config.labels_csv} labels..."
                )
                return False

        if config.is_cloud or config.tf_resource:
            if self.provisioner is None:
                self.provisioner = TerraformProvisioner()
            await self.provisioner.check_minimum_version()

        workdir = config.resolved_workdir
        logger.info(f"Preparing workdir {workdir}...")
        try:
            workdir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create workdir {workdir}: {e}")
        return True

    # ------------------------------------------------------------------
    # Cloud path
    # ------------------------------------------------------------------

    async def _run_cloud(self) -> None:
        self.phase = RunnerPhase.CLOUD_PROVISIONING
        logger.info("Deploying cloud runner plan...")

        workdir = self.config.resolved_workdir
        if self.config.tf_file:
            template = self.config.tf_file.read_text()
        else:
            template = self.provisioner.render_template(
                self.config,
                driver=self.driver.name,
                repo=self.driver.repo,
                token=self.driver.token,
            )
        (workdir / "main.tf").write_text(template)

        self._cloud_launched = True
        await self.provisioner.init(workdir)
        await self.provisioner.apply(workdir)

        state = await self.provisioner.load_state(self.provisioner.state_path(workdir))
        self._infra = self.provisioner.infra_from_state(workdir, state)
        logger.info(f"Provisioned resources: {', '.join(self._infra.ids)}")
        for attributes in self._infra.resources:
            logger.info(json.dumps(attributes, default=str))

    # ------------------------------------------------------------------
    # Local path
    # ------------------------------------------------------------------

    async def _run_local(self) -> None:
        self.phase = RunnerPhase.LOCAL_LAUNCHING
        config = self.config

        if config.tf_resource:
            await self._prepare_self_destroy()

        logger.info(f"Launching {self.driver.name} runner")
        if self.supervisor is None:
            self.supervisor = ProcessSupervisor(self.driver)

        process = await self.supervisor.spawn(
            config.resolved_workdir,
            config.name,
            config.labels,
            config.single,
            config.idle_timeout,
        )
        if self._shutting_down:
            # Shutdown began while the agent was starting
            process.kill()
            return

        self._process = process
        self.phase = RunnerPhase.RUNNING
        self._consumer_task = self._spawn(self._consume_events(process))
        self._spawn(self._attach_preemption_watcher())

        if config.idle_timeout > 0:
            self._spawn(self._idle_loop())
        if not config.no_retry and self.driver.max_job_duration:
            self._spawn(self._platform_duration_loop())

    async def _prepare_self_destroy(self) -> None:
        """Build a state holding the instance this runner runs on."""
        workdir = self.config.resolved_workdir
        (workdir / "main.tf").write_text(self.provisioner.provider_template())
        await self.provisioner.init(workdir)
        await self.provisioner.apply(workdir)

        path = self.provisioner.state_path(workdir)
        state = await self.provisioner.load_state(path)
        state["resources"] = [json.loads(base64.b64decode(self.config.tf_resource))]
        await self.provisioner.save_state(state, path)
        self._infra = self.provisioner.infra_from_state(workdir, state)
        logger.info(
            f"Resources {', '.join(self._infra.ids)} will be destroyed on shutdown"
        )

    async def _attach_preemption_watcher(self) -> None:
        if self.preemption_watcher is None:
            self.preemption_watcher = PreemptionWatcher()
        try:
            instance = await self.preemption_watcher.attach(
                lambda: self._trigger(ShutdownReason.preemption())
            )
        except Exception as e:
            logger.warning(f"Pre-emption watcher can not be started: {e}")
            return
        logger.info(f"Watching {instance} for termination notices")

    async def _consume_events(self, process: RunnerProcess) -> None:
        """Feed agent output into the controller, then report how it ended."""
        try:
            async for event in process.events():
                self.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Lost runner output: {e}", exc_info=True)

        try:
            returncode = await asyncio.wait_for(process.wait(), self.disconnect_grace)
        except asyncio.TimeoutError:
            self._trigger(ShutdownReason.process_disconnect())
            return
        self._trigger(ShutdownReason.process_exit(returncode))

    # ------------------------------------------------------------------
    # Job tracking
    # ------------------------------------------------------------------

    def handle_event(self, event: RunnerLogEvent) -> None:
        """Apply one agent lifecycle event to the job set."""
        if event.status is None:
            if event.raw:
                logger.debug(event.raw)
            return

        logger.info(f"runner status {event.to_dict()}")
        if self._shutting_down:
            return

        if event.status is RunnerEventStatus.JOB_STARTED:
            started_at = event.date or datetime.now(UTC)
            if started_at.tzinfo is None:
                started_at = started_at.replace(tzinfo=UTC)
            record = JobRecord(job_id=event.job, started_at=started_at)
            self.jobs.append(record)
            self.idle_timer = 0
            if record.job_id is None:
                self._spawn(self._resolve_job_id(record))

        elif event.status is RunnerEventStatus.JOB_ENDED:
            if event.job is not None:
                for record in self.jobs:
                    if record.job_id == event.job:
                        self.jobs.remove(record)
                        break
                else:
                    logger.warning(f"Job {event.job} ended but was not tracked")
            elif len(self.jobs) == 1:
                self.jobs.clear()
            elif self.jobs:
                # Which job ended is only known to the CI provider
                self._pending_endings += 1
                self._ensure_reconciler()

    async def _resolve_job_id(self, record: JobRecord) -> None:
        try:
            job_id = await self.driver.runner_job(self.config.name)
        except Exception as e:
            logger.warning(f"Cannot resolve the id of the running job: {e}")
            return
        if job_id and record in self.jobs:
            record.job_id = job_id
            logger.info(f"Running job {job_id}")

    def _ensure_reconciler(self) -> None:
        if self._reconcile_task is None or self._reconcile_task.done():
            self._reconcile_task = self._spawn(self._reconcile_loop())

    async def _reconcile_loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.reconcile_timeout

        while self._pending_endings > 0 and not self._shutting_down:
            await asyncio.sleep(self.reconcile_interval)
            try:
                await self.reconcile_jobs()
            except Exception as e:
                logger.error(f"Error polling job status: {e}")

            if self._pending_endings > 0 and loop.time() >= deadline:
                logger.warning(
                    f"Gave up waiting for {self._pending_endings} finished job(s) "
                    f"after {self.reconcile_timeout}s"
                )
                self._pending_endings = 0

    async def reconcile_jobs(self) -> list[str]:
        """
        Drop the tracked jobs the CI provider reports as completed.

        Returns:
            Ids of the removed jobs
        """
        tracked = [record for record in self.jobs if record.job_id]
        if not tracked:
            return []

        statuses = await self.driver.list_pipeline_jobs(tracked)
        completed = {job.id for job in statuses if job.status == "completed"}
        if not completed or self._shutting_down:
            return []

        before = len(self.jobs)
        self.jobs = [record for record in self.jobs if record.job_id not in completed]
        removed = before - len(self.jobs)
        self._pending_endings = max(0, self._pending_endings - removed)
        return sorted(completed)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def tick_idle(self) -> bool:
        """
        Advance the idle timer by one tick.

        Returns:
            True once the idle timeout is exceeded
        """
        if self.config.idle_timeout <= 0 or self._shutting_down:
            return False
        if not self.jobs:
            self.idle_timer += 1
        return self.idle_timer > self.config.idle_timeout

    async def _idle_loop(self) -> None:
        while not self._shutting_down:
            await asyncio.sleep(self.idle_tick)
            if self.tick_idle():
                self._trigger(ShutdownReason.idle_timeout(self.config.idle_timeout))
                return

    def expired_jobs(self, now: datetime | None = None) -> list[JobRecord]:
        """Return the jobs running longer than the provider allows."""
        limit = self.driver.max_job_duration if self.driver else None
        if limit is None:
            return []
        now = now or datetime.now(UTC)
        return [record for record in self.jobs if now - record.started_at > limit]

    async def _platform_duration_loop(self) -> None:
        while not self._shutting_down:
            await asyncio.sleep(self.platform_check_interval)
            expired = self.expired_jobs()
            if expired:
                logger.warning(
                    f"Job(s) {[record.job_id for record in expired]} reached the "
                    f"{self.driver.name} execution limit"
                )
                self._trigger(
                    ShutdownReason.platform_max_duration(self.driver.max_job_duration)
                )
                return

    # ------------------------------------------------------------------
    # Shutdown protocol
    # ------------------------------------------------------------------

    async def shutdown(self, reason: ShutdownReason) -> None:
        """
        Tear the runner down; only the first call has any effect.

        Args:
            reason: What triggered the shutdown
        """
        if self._shutting_down:
            logger.debug(f"Shutdown already in progress, ignoring {reason}")
            return
        self._shutting_down = True
        self.shutdown_reason = reason
        self.phase = RunnerPhase.SHUTTING_DOWN
        self._cancel_timers()

        try:
            if reason.is_error:
                logger.error(f"Runner terminated: {reason}", exc_info=reason.error)
            else:
                logger.info(f"Runner terminated: {reason}")

            logger.info(
                f"Waiting {self.config.destroy_delay} seconds before exiting..."
            )
            await asyncio.sleep(self.config.destroy_delay)

            if self._cloud_launched:
                await self._destroy_infrastructure()
            else:
                await self._unregister_runner()
                await self._restart_jobs()
                await self._destroy_docker_machine()
                await self._destroy_infrastructure()
        finally:
            self._finish(reason.exit_code)

    def _trigger(self, reason: ShutdownReason) -> None:
        """Schedule a shutdown from a callback or a background task."""
        if self._shutting_down:
            logger.debug(f"Shutdown already in progress, ignoring {reason}")
            return
        task = asyncio.create_task(self.shutdown(reason))
        self._shutdown_tasks.add(task)
        task.add_done_callback(self._shutdown_tasks.discard)

    async def _unregister_runner(self) -> None:
        if self._process is None:
            return

        logger.info(f"Unregistering runner {self.config.name}...")
        process, self._process = self._process, None
        try:
            process.kill()
            await self.driver.unregister_runner(self.config.name)
            logger.info("\tSuccess")
        except Exception as e:
            logger.error(f"\tFailed: {e}")

    async def _restart_jobs(self) -> None:
        if self.config.no_retry or not self.jobs:
            return

        jobs = [record for record in self.jobs if record.job_id]
        for record in self.jobs:
            if not record.job_id:
                logger.warning("Cannot restart a job whose id is unknown")

        logger.info(f"Restarting {len(jobs)} interrupted job(s)...")
        results = await asyncio.gather(
            *(self.driver.restart_pipeline_job(record.job_id) for record in jobs),
            return_exceptions=True,
        )
        for record, result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.error(f"\tFailed to restart job {record.job_id}: {result}")
            else:
                logger.info(f"\tRestarted job {record.job_id}")

    async def _destroy_docker_machine(self) -> None:
        machine = self.config.docker_machine
        if not machine:
            return

        logger.info("docker-machine destroy...")
        logger.warning(
            "Docker machine is deprecated and will be removed!! "
            "Check how to deploy using our tf provider."
        )
        try:
            process = await asyncio.create_subprocess_exec(
                "docker-machine",
                "rm",
                "-y",
                machine,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
            if process.returncode != 0:
                raise RuntimeError(stderr.decode().strip())
        except Exception as e:
            logger.error(f"\tFailed shutting down docker machine: {e}")

    async def _destroy_infrastructure(self) -> None:
        if self._infra is None and not self._cloud_launched:
            return

        directory = (
            self._infra.directory if self._infra else self.config.resolved_workdir
        )
        self._infra = None
        self._cloud_launched = False
        try:
            await self.provisioner.destroy(directory)
        except Exception as e:
            logger.error(f"\tFailed destroying terraform: {e}")

    def _finish(self, exit_code: int) -> None:
        self.exit_code = exit_code
        self.phase = RunnerPhase.TERMINATED
        self._remove_signal_handlers()
        if self.preemption_watcher is not None:
            self.preemption_watcher.detach()

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._terminated.set()

    # ------------------------------------------------------------------
    # Tasks and signals
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Background task failed: {task.exception()}",
                exc_info=task.exception(),
            )

    def _cancel_timers(self) -> None:
        """Stop the timers and pollers; the agent output keeps being logged."""
        current = asyncio.current_task()
        for task in self._tasks:
            if task is current or task is self._consumer_task or task.done():
                continue
            task.cancel()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(
                    sig, self._trigger, ShutdownReason.from_signal(sig)
                )
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug(f"Cannot handle {sig.name}: {e}")
                continue
            self._signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        if not self._signals:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()
