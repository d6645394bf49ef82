"""
Terraform-backed provisioner.

Runs the terraform binary in a working directory to create and destroy the
cloud runner resources of the iterative provider.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from runner_common.errors import ProvisionerError, ProvisionerVersionError
from runner_common.models import ProvisionedInfra, RunnerConfig
from runner_common.provisioner import Provisioner

from . import templates

logger = logging.getLogger(__name__)

MIN_TERRAFORM_VERSION = "0.14.0"
STATE_FILE = "terraform.tfstate"

# Attributes of iterative_* resources that are safe to log
NON_SENSITIVE_ATTRIBUTES = {
    "aws_security_group": "awsSecurityGroup",
    "cloud": "cloud",
    "driver": "driver",
    "id": "id",
    "idle_timeout": "idleTimeout",
    "image": "image",
    "instance_gpu": "instanceGpu",
    "instance_hdd_size": "instanceHddSize",
    "instance_ip": "instanceIp",
    "instance_launch_time": "instanceLaunchTime",
    "instance_type": "instanceType",
    "labels": "labels",
    "name": "name",
    "region": "region",
    "repo": "repo",
    "single": "single",
    "spot": "spot",
    "spot_price": "spotPrice",
    "timeouts": "timeouts",
}


def parse_version(version: str) -> tuple[int, ...]:
    """Parse "1.5.7" (or "v1.5.7-beta1") into a comparable tuple."""
    core = version.lstrip("v").split("-", 1)[0].split("+", 1)[0]
    try:
        return tuple(int(part) for part in core.split("."))
    except ValueError as e:
        raise ProvisionerError(f"Unrecognised terraform version: {version}") from e


def non_sensitive_attributes(attributes: dict[str, Any]) -> dict[str, Any]:
    return {
        label: attributes.get(key) for key, label in NON_SENSITIVE_ATTRIBUTES.items()
    }


class TerraformProvisioner(Provisioner):
    """Provisioner that shells out to terraform."""

    def __init__(self, binary: str = "terraform"):
        self.binary = binary

    async def _run(self, directory: Path | None, *args: str) -> str:
        """
        Run a terraform command and return its stdout.

        Raises:
            ProvisionerError: If terraform is missing or exits non-zero
        """
        command = [self.binary]
        if directory is not None:
            command.append(f"-chdir={directory}")
        command.extend(args)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ProvisionerError(f"{self.binary} executable not found") from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise ProvisionerError(
                f"{' '.join(args)} failed: {stderr.decode().strip() or stdout.decode().strip()}"
            )
        return stdout.decode()

    async def _run_logged(self, directory: Path, *args: str) -> None:
        """Run a terraform command with -json output and forward its messages."""
        output = await self._run(directory, *args, "-json")
        for line in output.splitlines():
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except ValueError:
                logger.info(line)
                continue
            if message.get("@level") == "error":
                logger.error(f"terraform error: {message.get('@message')}")
            else:
                logger.info(message.get("@message", line))

    async def version(self) -> str:
        output = await self._run(None, "version", "-json")
        return json.loads(output)["terraform_version"]

    async def check_minimum_version(self) -> None:
        version = await self.version()
        if parse_version(version) < parse_version(MIN_TERRAFORM_VERSION):
            raise ProvisionerVersionError(
                f"Terraform version must be at least {MIN_TERRAFORM_VERSION}: current {version}"
            )

    def render_template(
        self, config: RunnerConfig, driver: str, repo: str, token: str
    ) -> str:
        return templates.cml_runner_template(config, driver, repo, token)

    def provider_template(self) -> str:
        return templates.provider_template()

    async def init(self, directory: Path) -> None:
        logger.info("Terraform init...")
        await self._run(directory, "init", "-input=false", "-no-color")

    async def apply(self, directory: Path) -> None:
        logger.info("Terraform apply...")
        await self._run_logged(directory, "apply", "-auto-approve", "-input=false")

    async def destroy(self, directory: Path, target: str | None = None) -> None:
        logger.info("Terraform destroy...")
        args = ["destroy", "-auto-approve", "-input=false"]
        if target:
            args.append(f"-target={target}")
        await self._run_logged(directory, *args)

    async def load_state(self, path: Path) -> dict[str, Any]:
        try:
            return json.loads(Path(path).read_text())
        except (OSError, ValueError) as e:
            raise ProvisionerError(f"Cannot load terraform state {path}: {e}") from e

    async def save_state(self, state: dict[str, Any], path: Path) -> None:
        Path(path).write_text(json.dumps(state, indent="\t"))

    def state_path(self, directory: Path) -> Path:
        return Path(directory) / STATE_FILE

    def infra_from_state(
        self, directory: Path, state: dict[str, Any]
    ) -> ProvisionedInfra:
        resources = []
        for resource in state.get("resources", []):
            if not resource.get("type", "").startswith("iterative_"):
                continue
            for instance in resource.get("instances", []):
                resources.append(
                    non_sensitive_attributes(instance.get("attributes", {}))
                )
        return ProvisionedInfra(directory=Path(directory), resources=tuple(resources))
