"""
CI driver implementations.

get_driver() selects the provider implementation once, from explicit options
or from the CI environment the command runs in.
"""

import os
from urllib.parse import urlparse

from runner_common.driver import CIDriver
from runner_common.errors import MissingRepoOptionError

from .bitbucket import BitbucketDriver
from .github import GitHubDriver
from .gitlab import GitLabDriver

DRIVERS: dict[str, type[CIDriver]] = {
    "github": GitHubDriver,
    "gitlab": GitLabDriver,
    "bitbucket": BitbucketDriver,
}

TOKEN_ENV_VARS = ("repo_token", "GITHUB_TOKEN", "GITLAB_TOKEN", "BITBUCKET_TOKEN")


def env_repo() -> str | None:
    """Repository URL of the CI job this process runs in, if any."""
    if os.environ.get("GITHUB_REPOSITORY"):
        server = os.environ.get("GITHUB_SERVER_URL", "https://github.com")
        return f"{server}/{os.environ['GITHUB_REPOSITORY']}"
    if os.environ.get("CI_PROJECT_URL"):
        return os.environ["CI_PROJECT_URL"]
    if os.environ.get("BITBUCKET_GIT_HTTP_ORIGIN"):
        return os.environ["BITBUCKET_GIT_HTTP_ORIGIN"]
    return None


def env_token() -> str | None:
    for var in TOKEN_ENV_VARS:
        if os.environ.get(var):
            return os.environ[var]
    return None


def infer_driver(repo: str) -> str:
    """Guess the driver from the repository host, defaulting to GitLab."""
    host = urlparse(repo).netloc.lower()
    if "github" in host:
        return "github"
    if "bitbucket" in host:
        return "bitbucket"
    return "gitlab"


def get_driver(
    driver: str | None = None, repo: str | None = None, token: str | None = None
) -> CIDriver:
    """
    Create the CI driver for a repository.

    Args:
        driver: "github", "gitlab" or "bitbucket"; inferred from repo when omitted
        repo: Repository URL; inferred from the CI environment when omitted
        token: Access token; inferred from the CI environment when omitted

    Raises:
        MissingRepoOptionError: If repo or token cannot be resolved
    """
    repo = repo or env_repo()
    if not repo:
        raise MissingRepoOptionError("repo not found")
    token = token or env_token()
    if not token:
        raise MissingRepoOptionError("token not found")

    name = driver or infer_driver(repo)
    if name not in DRIVERS:
        raise MissingRepoOptionError(f"Unknown driver: {name}")
    return DRIVERS[name](repo, token)


__all__ = [
    "BitbucketDriver",
    "DRIVERS",
    "GitHubDriver",
    "GitLabDriver",
    "get_driver",
    "infer_driver",
]
