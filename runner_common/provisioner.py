"""
Abstract provisioner interface.

The provisioner renders an infrastructure template, applies it and destroys
what it created. The controller only ever talks to this interface.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .models import ProvisionedInfra, RunnerConfig


class Provisioner(ABC):
    """Abstract base class for infrastructure-as-code operations."""

    @abstractmethod
    async def check_minimum_version(self) -> None:
        """
        Check the infrastructure tool is recent enough.

        Raises:
            ProvisionerVersionError: If the installed version is too old
        """
        pass

    @abstractmethod
    def render_template(
        self, config: RunnerConfig, driver: str, repo: str, token: str
    ) -> str:
        """
        Render the plan that launches a cloud runner for config.

        Args:
            config: Runner configuration (must carry a cloud spec)
            driver: CI driver name the remote runner registers with
            repo: Repository URL
            token: Repository token

        Returns:
            Template text
        """
        pass

    @abstractmethod
    def provider_template(self) -> str:
        """Render a plan that only declares the provider."""
        pass

    @abstractmethod
    async def init(self, directory: Path) -> None:
        pass

    @abstractmethod
    async def apply(self, directory: Path) -> None:
        pass

    @abstractmethod
    async def load_state(self, path: Path) -> dict[str, Any]:
        pass

    @abstractmethod
    async def save_state(self, state: dict[str, Any], path: Path) -> None:
        pass

    @abstractmethod
    async def destroy(self, directory: Path, target: str | None = None) -> None:
        """
        Destroy the resources managed in directory.

        Args:
            directory: Directory holding the plan and state
            target: Optional single resource address to destroy
        """
        pass

    @abstractmethod
    def state_path(self, directory: Path) -> Path:
        """Location of the state file for directory."""
        pass

    @abstractmethod
    def infra_from_state(
        self, directory: Path, state: dict[str, Any]
    ) -> ProvisionedInfra:
        """Build an infrastructure handle holding only non-sensitive attributes."""
        pass
