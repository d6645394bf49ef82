"""
Data models for the runner controller.

These models represent the domain objects shared by the controller, the CI
drivers and the provisioner, independent of any provider API.
"""

import signal
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any


class RunnerPhase(str, Enum):
    """Lifecycle phase of a runner controller."""

    INIT = "init"
    PREPARING = "preparing"
    CLOUD_PROVISIONING = "cloud_provisioning"
    LOCAL_LAUNCHING = "local_launching"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class ShutdownReasonKind(str, Enum):
    """Why a shutdown was triggered."""

    SIGNAL = "signal"
    PROCESS_EXIT = "process-exit"
    PROCESS_DISCONNECT = "process-disconnect"
    IDLE_TIMEOUT = "idle-timeout"
    PLATFORM_MAX_DURATION = "platform-max-duration"
    PREEMPTION = "pre-emption"
    CALLER_ERROR = "caller-error"


@dataclass(frozen=True)
class ShutdownReason:
    """
    Reason attached to every shutdown invocation.

    Only caller errors are error-bearing: they are logged at error level and
    make the process exit with code 1.
    """

    kind: ShutdownReasonKind
    detail: str | None = None
    error: BaseException | None = None

    @property
    def is_error(self) -> bool:
        return self.kind is ShutdownReasonKind.CALLER_ERROR

    @property
    def exit_code(self) -> int:
        return 1 if self.is_error else 0

    @classmethod
    def from_signal(cls, signum: int) -> "ShutdownReason":
        return cls(ShutdownReasonKind.SIGNAL, signal.Signals(signum).name)

    @classmethod
    def process_exit(cls, returncode: int | None = None) -> "ShutdownReason":
        detail = None if returncode is None else f"code {returncode}"
        return cls(ShutdownReasonKind.PROCESS_EXIT, detail)

    @classmethod
    def process_disconnect(cls) -> "ShutdownReason":
        return cls(ShutdownReasonKind.PROCESS_DISCONNECT)

    @classmethod
    def idle_timeout(cls, seconds: int) -> "ShutdownReason":
        return cls(ShutdownReasonKind.IDLE_TIMEOUT, f"{seconds}s")

    @classmethod
    def platform_max_duration(cls, limit: timedelta) -> "ShutdownReason":
        return cls(ShutdownReasonKind.PLATFORM_MAX_DURATION, str(limit))

    @classmethod
    def preemption(cls) -> "ShutdownReason":
        return cls(ShutdownReasonKind.PREEMPTION)

    @classmethod
    def caller_error(cls, error: BaseException) -> "ShutdownReason":
        return cls(ShutdownReasonKind.CALLER_ERROR, str(error), error)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.kind.value}:{self.detail}"
        return self.kind.value


@dataclass(frozen=True)
class CloudSpec:
    """Cloud compute requested for a runner; absent means local mode."""

    provider: str  # "aws", "azure", "gcp" or "kubernetes"
    region: str = "us-west"
    instance_type: str | None = None
    gpu: str | None = None
    hdd_size: int | None = None
    ssh_private: str | None = None
    spot: bool = False
    spot_price: float = -1
    startup_script: str | None = None
    aws_security_group: str = ""


@dataclass(frozen=True)
class RunnerConfig:
    """
    Immutable runner input, resolved once from CLI options and environment.

    A non-positive idle_timeout disables the idle timer.
    """

    name: str
    labels: tuple[str, ...] = ("cml",)
    single: bool = False
    idle_timeout: int = 300
    no_retry: bool = False
    reuse: bool = False
    driver: str | None = None
    repo: str | None = None
    token: str | None = None
    cloud: CloudSpec | None = None
    workdir: Path | None = None
    destroy_delay: float = 20
    tf_resource: str | None = None  # base64 encoded resource to self-destroy
    tf_file: Path | None = None  # user supplied template
    docker_machine: str | None = None  # legacy virtualization resource

    @property
    def is_cloud(self) -> bool:
        return self.cloud is not None

    @property
    def labels_csv(self) -> str:
        return ",".join(self.labels)

    @property
    def resolved_workdir(self) -> Path:
        """Working directory, defaulting to ~/.cml/<name>."""
        if self.workdir is not None:
            return Path(self.workdir).expanduser()
        return Path.home() / ".cml" / self.name


@dataclass
class JobRecord:
    """
    A job the runner agent reported as started and has not yet finished.

    job_id is None until it is known; some providers do not report it in the
    agent log.
    """

    job_id: str | None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.job_id, "date": self.started_at.isoformat()}


class RunnerEventStatus(str, Enum):
    JOB_STARTED = "job_started"
    JOB_ENDED = "job_ended"


@dataclass(frozen=True)
class RunnerLogEvent:
    """
    One line of runner agent output.

    Lines that do not describe a job transition have status None and only
    carry the raw text.
    """

    status: RunnerEventStatus | None
    job: str | None = None
    date: datetime | None = None
    success: bool | None = None
    raw: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary format (for status logging)."""
        result: dict[str, Any] = {
            "status": self.status.value if self.status else None,
            "job": self.job,
        }
        if self.date is not None:
            result["date"] = self.date.isoformat()
        if self.success is not None:
            result["success"] = self.success
        return result


@dataclass(frozen=True)
class RunnerInfo:
    """A runner registered with the CI provider."""

    id: str
    name: str
    labels: tuple[str, ...] = ()
    online: bool = False
    busy: bool = False


@dataclass(frozen=True)
class PipelineJob:
    """Status of a pipeline job as reported by the CI provider."""

    id: str
    status: str  # "queued", "running" or "completed"


@dataclass(frozen=True)
class ProvisionedInfra:
    """
    Handle on infrastructure created by the provisioner.

    Only non-sensitive resource attributes are kept, so the handle can be
    logged for audit purposes.
    """

    directory: Path
    resources: tuple[dict[str, Any], ...] = ()

    @property
    def ids(self) -> list[str]:
        return [str(r["id"]) for r in self.resources if r.get("id")]
