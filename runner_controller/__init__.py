"""
Runner controller module.

This module contains the runner controller, the process supervisor for the
runner agent, and the pre-emption watcher. The controller owns the whole
runner lifecycle, from registration checks to shutdown.
"""

from .controller import RunnerController
from .preemption import PreemptionWatcher
from .supervisor import ProcessSupervisor, RunnerProcess

__all__ = ["RunnerController", "PreemptionWatcher", "ProcessSupervisor", "RunnerProcess"]
