"""
Runner configuration resolution.

Turns the raw option values collected by the CLI (flags or CML_RUNNER_*
environment variables) into an immutable RunnerConfig.
"""

import logging
import os
import secrets
import string
from pathlib import Path

from .models import CloudSpec, RunnerConfig

logger = logging.getLogger(__name__)

DEFAULT_LABELS = "cml"
DEFAULT_IDLE_TIMEOUT = 5 * 60
DEFAULT_DESTROY_DELAY = 20
DEPRECATED_GPUS = {"tesla": "v100"}

_NAME_ALPHABET = string.ascii_lowercase + string.digits


def generate_runner_name() -> str:
    """Generate a runner name of the form cml-<10 random chars>."""
    suffix = "".join(secrets.choice(_NAME_ALPHABET) for _ in range(10))
    return f"cml-{suffix}"


def parse_labels(labels: str | None) -> tuple[str, ...]:
    """Split a comma separated label list, dropping blanks."""
    if not labels:
        return tuple(DEFAULT_LABELS.split(","))
    parsed = tuple(label.strip() for label in labels.split(",") if label.strip())
    return parsed or tuple(DEFAULT_LABELS.split(","))


def normalize_gpu(gpu: str | None) -> str | None:
    """Map GPU aliases to the names the provisioner understands."""
    if gpu is None or gpu == "nogpu":
        return None
    if gpu in DEPRECATED_GPUS:
        replacement = DEPRECATED_GPUS[gpu]
        logger.warning(
            f'GPU model "{gpu}" has been deprecated; please use "{replacement}" instead.'
        )
        return replacement
    return gpu


def build_runner_config(
    *,
    name: str | None = None,
    labels: str | None = DEFAULT_LABELS,
    idle_timeout: int = DEFAULT_IDLE_TIMEOUT,
    single: bool = False,
    no_retry: bool = False,
    reuse: bool = False,
    driver: str | None = None,
    repo: str | None = None,
    token: str | None = None,
    cloud: str | None = None,
    cloud_region: str = "us-west",
    cloud_type: str | None = None,
    cloud_gpu: str | None = None,
    cloud_hdd_size: int | None = None,
    cloud_ssh_private: str | None = None,
    cloud_spot: bool = False,
    cloud_spot_price: float = -1,
    cloud_startup_script: str | None = None,
    cloud_aws_security_group: str = "",
    destroy_delay: float = DEFAULT_DESTROY_DELAY,
    workdir: str | None = None,
    tf_resource: str | None = None,
    tf_file: str | None = None,
    docker_machine: str | None = None,
) -> RunnerConfig:
    """
    Build the runner configuration from resolved option values.

    Args:
        name: Runner name, generated when omitted
        labels: Comma separated labels
        idle_timeout: Seconds without jobs before shutting down (<= 0 waits forever)
        cloud: Cloud provider; None launches the runner locally

    Returns:
        Frozen RunnerConfig
    """
    if os.environ.get("RUNNER_NAME"):
        logger.warning(
            "ignoring RUNNER_NAME environment variable, "
            "use CML_RUNNER_NAME or --name instead"
        )

    cloud_spec = None
    if cloud:
        cloud_spec = CloudSpec(
            provider=cloud,
            region=cloud_region,
            instance_type=cloud_type,
            gpu=normalize_gpu(cloud_gpu),
            hdd_size=cloud_hdd_size,
            ssh_private=cloud_ssh_private,
            spot=cloud_spot,
            spot_price=cloud_spot_price,
            startup_script=cloud_startup_script,
            aws_security_group=cloud_aws_security_group or "",
        )

    return RunnerConfig(
        name=name or generate_runner_name(),
        labels=parse_labels(labels),
        single=single,
        idle_timeout=int(idle_timeout),
        no_retry=no_retry,
        reuse=reuse,
        driver=driver,
        repo=repo,
        token=token,
        cloud=cloud_spec,
        workdir=Path(workdir) if workdir else None,
        destroy_delay=destroy_delay,
        tf_resource=tf_resource,
        tf_file=Path(tf_file) if tf_file else None,
        docker_machine=docker_machine,
    )
