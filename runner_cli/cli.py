"""
CML command line interface.

Provides the `runner` command that launches and supervises a self-hosted
runner, and `rerun-workflow` to rerun a workflow run.

Every runner option can also be set through a CML_RUNNER_<OPTION>
environment variable (e.g. CML_RUNNER_IDLE_TIMEOUT); rerun-workflow options are
read from CML_CI_<OPTION>.
"""

import asyncio
import logging
import sys

import click

from runner_common.config import (
    DEFAULT_DESTROY_DELAY,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_LABELS,
    build_runner_config,
)
from runner_common.errors import RunnerError
from runner_controller import RunnerController
from runner_drivers import DRIVERS, get_driver

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def repo_options(command):
    """Options shared by every command that talks to the CI provider."""
    command = click.option(
        "--token",
        help="Personal access token. If not specified, it will be inferred from the environment",
    )(command)
    command = click.option(
        "--repo",
        help="Repository URL. If not specified, it will be inferred from the environment",
    )(command)
    command = click.option(
        "--driver",
        type=click.Choice(sorted(DRIVERS)),
        help="Platform where the repository is hosted. If not specified, it will be inferred from the environment",
    )(command)
    return command


@click.group()
@click.option(
    "--log",
    "log_level",
    type=click.Choice(list(LOG_LEVELS)),
    default="info",
    show_default=True,
    help="Maximum log level",
)
def cli(log_level: str):
    """CML - launch and manage self-hosted CI runners."""
    logging.basicConfig(
        level=LOG_LEVELS[log_level],
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command("runner")
@click.option(
    "--labels",
    default=DEFAULT_LABELS,
    show_default=True,
    help="One or more user-defined labels for this runner (delimited with commas)",
)
@click.option(
    "--idle-timeout",
    type=int,
    default=DEFAULT_IDLE_TIMEOUT,
    show_default=True,
    help="Seconds to wait for jobs before shutting down. Set to -1 to disable timeout",
)
@click.option(
    "--name",
    default=None,
    help="Name displayed in the repository once registered  [default: cml-{ID}]",
)
@click.option(
    "--no-retry",
    is_flag=True,
    help="Do not restart workflow terminated due to instance disposal or GitHub Actions timeout",
)
@click.option("--single", is_flag=True, help="Exit after running a single job")
@click.option(
    "--reuse",
    is_flag=True,
    help="Don't launch a new runner if an existing one has the same name or overlapping labels",
)
@repo_options
@click.option(
    "--cloud",
    type=click.Choice(["aws", "azure", "gcp", "kubernetes"]),
    help="Cloud to deploy the runner",
)
@click.option(
    "--cloud-region",
    default="us-west",
    show_default=True,
    help="Region where the instance is deployed. Choices: [us-east, us-west, eu-west, eu-north]. Also accepts native cloud regions",
)
@click.option(
    "--cloud-type",
    help="Instance type. Choices: [m, l, xl]. Also supports native types like i.e. t2.micro",
)
@click.option(
    "--cloud-gpu",
    type=click.Choice(["nogpu", "k80", "v100", "tesla"]),
    help="GPU type.",
)
@click.option("--cloud-hdd-size", type=int, help="HDD size in GB")
@click.option(
    "--cloud-ssh-private",
    help="Custom private RSA SSH key. If not provided an automatically generated throwaway key will be used",
)
@click.option("--cloud-spot", is_flag=True, help="Request a spot instance")
@click.option(
    "--cloud-spot-price",
    type=float,
    default=-1,
    show_default=True,
    help="Maximum spot instance bidding price in USD. Defaults to the current spot bidding price",
)
@click.option(
    "--cloud-startup-script",
    help="Run the provided Base64-encoded Linux shell script during the instance initialization",
)
@click.option(
    "--cloud-aws-security-group",
    default="",
    help="Specifies the security group in AWS",
)
@click.option("--tf-resource", "--tf_resource", hidden=True)
@click.option(
    "--tf-file",
    type=click.Path(exists=True, dir_okay=False),
    hidden=True,
    help="Terraform file used instead of the generated plan",
)
@click.option(
    "--destroy-delay",
    type=float,
    default=DEFAULT_DESTROY_DELAY,
    hidden=True,
    help="Destroy delay",
)
@click.option(
    "--docker-machine", hidden=True, help="Legacy docker-machine environment variable"
)
@click.option("--workdir", "--path", hidden=True, help="Runner working directory")
def runner(**options):
    """Launch and register a self-hosted runner."""
    config = build_runner_config(**options)
    controller = RunnerController(config)
    sys.exit(run_async(controller.run()))


@cli.command("rerun-workflow", context_settings={"auto_envvar_prefix": "CML_CI"})
@repo_options
@click.option("--id", "run_id", required=True, help="Specifies the run Id to be rerun.")
def rerun_workflow(driver: str | None, repo: str | None, token: str | None, run_id: str):
    """Reruns a workflow given the workflow run Id."""
    try:
        ci_driver = get_driver(driver, repo, token)
        run_async(ci_driver.rerun_pipeline(run_id))
    except RunnerError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Workflow run {run_id} restarted")


def main():
    cli(auto_envvar_prefix="CML")


if __name__ == "__main__":
    main()
