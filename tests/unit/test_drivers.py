"""
Unit tests for the CI drivers.

HTTP calls are stubbed at the requests.Session level so the request
building, response mapping and error handling run for real.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from runner_common.errors import (
    DriverError,
    MissingRepoOptionError,
    UnsupportedOperationError,
)
from runner_common.models import JobRecord, RunnerEventStatus, RunnerInfo
from runner_drivers import (
    BitbucketDriver,
    GitHubDriver,
    GitLabDriver,
    get_driver,
    infer_driver,
)


def make_response(status_code=200, body=None, reason="OK"):
    response = MagicMock()
    response.status_code = status_code
    response.reason = reason
    response.content = b"" if body is None else json.dumps(body).encode()
    response.json.return_value = body
    return response


class TestGetDriver:
    """Test suite for driver selection."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for var in (
            "GITHUB_SERVER_URL",
            "GITHUB_REPOSITORY",
            "CI_PROJECT_URL",
            "BITBUCKET_GIT_HTTP_ORIGIN",
            "repo_token",
            "GITHUB_TOKEN",
            "GITLAB_TOKEN",
            "BITBUCKET_TOKEN",
        ):
            monkeypatch.delenv(var, raising=False)

    def test_infer_driver_from_host(self):
        assert infer_driver("https://github.com/org/repo") == "github"
        assert infer_driver("https://bitbucket.org/org/repo") == "bitbucket"
        assert infer_driver("https://gitlab.example.com/group/repo") == "gitlab"

    def test_explicit_options(self):
        driver = get_driver(None, "https://github.com/org/repo/", "secret")

        assert isinstance(driver, GitHubDriver)
        assert driver.repo == "https://github.com/org/repo"
        assert driver.token == "secret"

    def test_explicit_driver_wins_over_host(self):
        driver = get_driver("gitlab", "https://git.example.com/group/repo", "secret")

        assert isinstance(driver, GitLabDriver)

    def test_inferred_from_github_actions_environment(self, monkeypatch):
        monkeypatch.setenv("GITHUB_SERVER_URL", "https://github.com")
        monkeypatch.setenv("GITHUB_REPOSITORY", "org/repo")
        monkeypatch.setenv("GITHUB_TOKEN", "gh-token")

        driver = get_driver()

        assert isinstance(driver, GitHubDriver)
        assert driver.repo == "https://github.com/org/repo"
        assert driver.token == "gh-token"

    def test_inferred_from_gitlab_environment(self, monkeypatch):
        monkeypatch.setenv("CI_PROJECT_URL", "https://gitlab.com/group/repo")
        monkeypatch.setenv("repo_token", "gl-token")

        driver = get_driver()

        assert isinstance(driver, GitLabDriver)
        assert driver.token == "gl-token"

    def test_missing_repo(self):
        with pytest.raises(MissingRepoOptionError, match="repo not found"):
            get_driver(None, None, "secret")

    def test_missing_token(self):
        with pytest.raises(MissingRepoOptionError, match="token not found"):
            get_driver(None, "https://github.com/org/repo", None)

    def test_unknown_driver(self):
        with pytest.raises(MissingRepoOptionError, match="Unknown driver"):
            get_driver("jenkins", "https://github.com/org/repo", "secret")


class TestRunnerLookup:
    """Test suite for the name and label lookups shared by all drivers."""

    @pytest.fixture
    def driver(self):
        return GitHubDriver("https://github.com/org/repo", "secret")

    @pytest.fixture
    def runners(self):
        return [
            RunnerInfo(id="1", name="cml-a", labels=("cml", "gpu"), online=True),
            RunnerInfo(id="2", name="cml-b", labels=("cpu",), online=False),
        ]

    def test_find_by_name(self, driver, runners):
        assert driver.find_runner_by_name("cml-b", runners).id == "2"
        assert driver.find_runner_by_name("cml-c", runners) is None

    def test_find_by_labels_matches_any_label(self, driver, runners):
        assert [r.id for r in driver.find_runners_by_labels(("gpu", "x"), runners)] == ["1"]
        assert driver.find_runners_by_labels(("arm",), runners) == []


class TestGitHubDriver:
    """Test suite for GitHubDriver."""

    @pytest.fixture
    def driver(self):
        driver = GitHubDriver("https://github.com/org/repo", "secret")
        driver.poll_interval = 0
        return driver

    def test_invalid_repo_url(self):
        with pytest.raises(DriverError):
            GitHubDriver("https://github.com/org", "secret")

    def test_auth_headers(self, driver):
        assert driver.session.headers["Authorization"] == "Bearer secret"
        assert driver.max_job_duration.total_seconds() == 72 * 3600 - 300

    @pytest.mark.asyncio
    async def test_list_runners(self, driver):
        body = {
            "runners": [
                {
                    "id": 7,
                    "name": "cml-a",
                    "status": "online",
                    "busy": True,
                    "labels": [{"name": "self-hosted"}, {"name": "cml"}],
                }
            ]
        }
        with patch.object(
            driver.session, "request", return_value=make_response(body=body)
        ) as request:
            runners = await driver.list_runners()

        assert runners == [
            RunnerInfo(
                id="7", name="cml-a", labels=("self-hosted", "cml"), online=True, busy=True
            )
        ]
        method, url = request.call_args.args
        assert method == "GET"
        assert url == "https://api.github.com/repos/org/repo/actions/runners"

    @pytest.mark.asyncio
    async def test_check_repo_token_requires_admin(self, driver):
        body = {"permissions": {"admin": False, "push": True}}
        with patch.object(
            driver.session, "request", return_value=make_response(body=body)
        ):
            with pytest.raises(DriverError, match="admin"):
                await driver.check_repo_token()

    @pytest.mark.asyncio
    async def test_http_error_carries_status_code(self, driver):
        with patch.object(
            driver.session,
            "request",
            return_value=make_response(401, {"message": "Bad credentials"}, "Unauthorized"),
        ):
            with pytest.raises(DriverError) as exc_info:
                await driver.list_runners()

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_transport_error_is_wrapped(self, driver):
        with patch.object(
            driver.session,
            "request",
            side_effect=requests.exceptions.ConnectionError("unreachable"),
        ):
            with pytest.raises(DriverError, match="unreachable"):
                await driver.list_runners()

    @pytest.mark.asyncio
    async def test_unregister_runner(self, driver):
        responses = [
            make_response(body={"runners": [{"id": 7, "name": "cml-a", "labels": []}]}),
            make_response(204),
        ]
        with patch.object(driver.session, "request", side_effect=responses) as request:
            await driver.unregister_runner("cml-a")

        method, url = request.call_args.args
        assert method == "DELETE"
        assert url.endswith("/repos/org/repo/actions/runners/7")

    @pytest.mark.asyncio
    async def test_unregister_unknown_runner(self, driver):
        with patch.object(
            driver.session, "request", return_value=make_response(body={"runners": []})
        ):
            with pytest.raises(DriverError, match="not found"):
                await driver.unregister_runner("cml-a")

    @pytest.mark.asyncio
    async def test_restart_pipeline_job(self, driver):
        """Test cancel, wait for completion, then rerun of the job's run."""
        responses = [
            make_response(body={"id": 1, "run_id": 99}),
            make_response(409, {"message": "Cannot cancel"}, "Conflict"),
            make_response(body={"status": "in_progress"}),
            make_response(body={"status": "completed"}),
            make_response(201),
        ]
        with patch.object(driver.session, "request", side_effect=responses) as request:
            await driver.restart_pipeline_job("1")

        calls = [c.args for c in request.call_args_list]
        assert calls[1] == ("POST", "https://api.github.com/repos/org/repo/actions/runs/99/cancel")
        assert calls[-1] == ("POST", "https://api.github.com/repos/org/repo/actions/runs/99/rerun")

    @pytest.mark.asyncio
    async def test_rerun_pipeline_uses_run_id(self, driver):
        """Test that a workflow run is cancelled, awaited and rerun by its own id."""
        responses = [
            make_response(202),
            make_response(body={"id": 99, "status": "completed"}),
            make_response(201),
        ]
        with patch.object(driver.session, "request", side_effect=responses) as request:
            await driver.rerun_pipeline("99")

        assert [c.args for c in request.call_args_list] == [
            ("POST", "https://api.github.com/repos/org/repo/actions/runs/99/cancel"),
            ("GET", "https://api.github.com/repos/org/repo/actions/runs/99"),
            ("POST", "https://api.github.com/repos/org/repo/actions/runs/99/rerun"),
        ]

    @pytest.mark.asyncio
    async def test_list_pipeline_jobs_normalizes_status(self, driver):
        responses = [
            make_response(body={"id": 1, "status": "in_progress"}),
            make_response(body={"id": 2, "status": "completed"}),
            make_response(body={"id": 3, "status": "queued"}),
        ]
        records = [JobRecord("1"), JobRecord("2"), JobRecord(None), JobRecord("3")]
        with patch.object(driver.session, "request", side_effect=responses):
            jobs = await driver.list_pipeline_jobs(records)

        assert [(job.id, job.status) for job in jobs] == [
            ("1", "running"),
            ("2", "completed"),
            ("3", "queued"),
        ]

    @pytest.mark.asyncio
    async def test_runner_job(self, driver):
        responses = [
            make_response(body={"workflow_runs": [{"id": 5}]}),
            make_response(
                body={
                    "jobs": [
                        {"id": 10, "runner_name": "other", "status": "in_progress"},
                        {"id": 11, "runner_name": "cml-a", "status": "in_progress"},
                    ]
                }
            ),
        ]
        with patch.object(driver.session, "request", side_effect=responses):
            assert await driver.runner_job("cml-a") == "11"

    def test_parse_job_started(self, driver):
        event = driver.parse_runner_log("2024-01-02 03:04:05Z: Running job: train")

        assert event.status is RunnerEventStatus.JOB_STARTED
        assert event.job is None
        assert event.date.isoformat() == "2024-01-02T03:04:05+00:00"

    def test_parse_job_ended(self, driver):
        succeeded = driver.parse_runner_log(
            "2024-01-02 03:14:05Z: Job train completed with result: Succeeded"
        )
        failed = driver.parse_runner_log(
            "2024-01-02 03:14:05Z: Job train completed with result: Failed"
        )

        assert succeeded.status is RunnerEventStatus.JOB_ENDED
        assert succeeded.success is True
        assert failed.success is False

    def test_parse_other_lines(self, driver):
        assert driver.parse_runner_log("√ Connected to GitHub") is None


class TestGitLabDriver:
    """Test suite for GitLabDriver."""

    @pytest.fixture
    def driver(self):
        driver = GitLabDriver("https://gitlab.example.com/group/sub/repo", "secret")
        driver.poll_interval = 0
        return driver

    def test_project_path_is_encoded(self, driver):
        assert driver.api_url == "https://gitlab.example.com/api/v4"
        assert driver.project_path == "group%2Fsub%2Frepo"
        assert driver.session.headers["PRIVATE-TOKEN"] == "secret"

    @pytest.mark.asyncio
    async def test_list_runners_reads_tags(self, driver):
        responses = [
            make_response(body=[{"id": 3, "description": "cml-a", "status": "online"}]),
            make_response(body={"tag_list": ["cml", "gpu"], "status": "online"}),
        ]
        with patch.object(driver.session, "request", side_effect=responses):
            runners = await driver.list_runners()

        assert runners == [
            RunnerInfo(id="3", name="cml-a", labels=("cml", "gpu"), online=True, busy=False)
        ]

    @pytest.mark.asyncio
    async def test_start_runner_command(self, driver, tmp_path):
        responses = [
            make_response(body={"runners_token": "reg-token"}),
            make_response(201, {"id": 4, "token": "auth-token"}),
        ]
        with patch.object(driver.session, "request", side_effect=responses):
            command = await driver.start_runner_command(
                tmp_path, "cml-a", ("cml",), True, -1
            )

        assert command[:3] == ["gitlab-runner", "--log-format=json", "run-single"]
        assert command[command.index("--token") + 1] == "auth-token"
        assert command[command.index("--wait-timeout") + 1] == "0"
        assert command[-2:] == ["--max-builds", "1"]

    @pytest.mark.asyncio
    async def test_restart_pipeline_job(self, driver):
        responses = [
            make_response(body={"id": 1, "pipeline": {"id": 8}}),
            make_response(body={"id": 8, "status": "canceling"}),
            make_response(body={"status": "running"}),
            make_response(body={"status": "canceled"}),
            make_response(201, {"id": 8}),
        ]
        with patch.object(driver.session, "request", side_effect=responses) as request:
            await driver.restart_pipeline_job("1")

        method, url = request.call_args.args
        assert method == "POST"
        assert url.endswith("/projects/group%2Fsub%2Frepo/pipelines/8/retry")

    @pytest.mark.asyncio
    async def test_rerun_pipeline_retries_pipeline(self, driver):
        responses = [
            make_response(body={"id": 8, "status": "canceled"}),
            make_response(body={"status": "canceled"}),
            make_response(201, {"id": 8}),
        ]
        with patch.object(driver.session, "request", side_effect=responses) as request:
            await driver.rerun_pipeline("8")

        pipeline = "https://gitlab.example.com/api/v4/projects/group%2Fsub%2Frepo/pipelines/8"
        assert [c.args for c in request.call_args_list] == [
            ("POST", f"{pipeline}/cancel"),
            ("GET", pipeline),
            ("POST", f"{pipeline}/retry"),
        ]

    def test_parse_runner_log(self, driver):
        started = driver.parse_runner_log(
            json.dumps(
                {
                    "job": 42,
                    "msg": "Checking for jobs... received",
                    "time": "2024-01-02T03:04:05Z",
                }
            )
        )
        ended = driver.parse_runner_log(json.dumps({"job": 42, "msg": "Job failed"}))

        assert started.status is RunnerEventStatus.JOB_STARTED
        assert started.job == "42"
        assert started.date.isoformat() == "2024-01-02T03:04:05+00:00"
        assert ended.status is RunnerEventStatus.JOB_ENDED
        assert ended.success is False

    def test_parse_ignores_non_job_lines(self, driver):
        assert driver.parse_runner_log("not json") is None
        assert driver.parse_runner_log(json.dumps({"msg": "Job succeeded"})) is None


class TestBitbucketDriver:
    """Test suite for BitbucketDriver."""

    @pytest.fixture
    def driver(self):
        return BitbucketDriver("https://bitbucket.org/team/repo", "secret")

    @pytest.mark.asyncio
    async def test_runner_operations_are_unsupported(self, driver, tmp_path):
        with pytest.raises(UnsupportedOperationError, match="does not support"):
            await driver.list_runners()
        with pytest.raises(UnsupportedOperationError):
            await driver.restart_pipeline_job("1")
        with pytest.raises(UnsupportedOperationError):
            await driver.start_runner_command(tmp_path, "cml-a", ("cml",), False, 300)
        with pytest.raises(UnsupportedOperationError):
            await driver.rerun_pipeline("1")
        with pytest.raises(UnsupportedOperationError):
            driver.parse_runner_log("Updating step progress to RUNNING")

    @pytest.mark.asyncio
    async def test_check_repo_token(self, driver):
        with patch.object(
            driver.session, "request", return_value=make_response(body={"slug": "repo"})
        ) as request:
            await driver.check_repo_token()

        assert request.call_args.args[1] == (
            "https://api.bitbucket.org/2.0/repositories/team/repo"
        )
