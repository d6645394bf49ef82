"""
Exception hierarchy for the runner.

Startup errors are fatal and raised before any side effect; driver,
provisioner and supervisor errors are raised by the collaborators and are
logged-and-skipped by the controller while it shuts down.
"""


class RunnerError(Exception):
    """Base class for every error raised by the runner packages."""


class StartupError(RunnerError):
    """Fatal error detected before any resource is created."""


class MissingRepoOptionError(StartupError):
    """The repository or token could not be resolved."""


class RunnerNameConflictError(StartupError):
    """A runner with the requested name is already registered."""

    def __init__(self, name: str):
        super().__init__(
            f"Runner name {name} is already in use. "
            "Please change the name or terminate the other runner."
        )
        self.name = name


class ProvisionerVersionError(StartupError):
    """The infrastructure tool is older than the supported minimum."""


class DriverError(RunnerError):
    """A CI provider API call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UnsupportedOperationError(DriverError):
    """The provider does not implement the requested operation."""


class ProvisionerError(RunnerError):
    """An infrastructure tool invocation failed."""


class SupervisorError(RunnerError):
    """The runner agent process could not be started or read."""


class PreemptionUnavailableError(RunnerError):
    """No pre-emption notice source is reachable from this host."""
