"""
Runner common module.

Shared domain models, errors and the collaborator interfaces (CI driver and
provisioner) consumed by the runner controller.

This module has no dependencies on other runner_* modules, so every other
component can import it.
"""

from .driver import CIDriver
from .errors import (
    DriverError,
    MissingRepoOptionError,
    PreemptionUnavailableError,
    ProvisionerError,
    ProvisionerVersionError,
    RunnerError,
    RunnerNameConflictError,
    StartupError,
    SupervisorError,
    UnsupportedOperationError,
)
from .models import (
    CloudSpec,
    JobRecord,
    PipelineJob,
    ProvisionedInfra,
    RunnerConfig,
    RunnerEventStatus,
    RunnerInfo,
    RunnerLogEvent,
    RunnerPhase,
    ShutdownReason,
    ShutdownReasonKind,
)
from .provisioner import Provisioner

__all__ = [
    "CIDriver",
    "CloudSpec",
    "DriverError",
    "JobRecord",
    "MissingRepoOptionError",
    "PipelineJob",
    "PreemptionUnavailableError",
    "ProvisionedInfra",
    "Provisioner",
    "ProvisionerError",
    "ProvisionerVersionError",
    "RunnerConfig",
    "RunnerError",
    "RunnerEventStatus",
    "RunnerInfo",
    "RunnerLogEvent",
    "RunnerNameConflictError",
    "RunnerPhase",
    "ShutdownReason",
    "ShutdownReasonKind",
    "StartupError",
    "SupervisorError",
    "UnsupportedOperationError",
]
