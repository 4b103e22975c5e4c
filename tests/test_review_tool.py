from __future__ import annotations

import shlex
import sys

import pytest

from ocrunner import review_tool
from ocrunner.azure_gateway import AzureDevOpsError
from ocrunner.models import PullRequestThread, ThreadStatus


_ENV = {
    "AZURE_DEVOPS_ORG": "org",
    "AZURE_DEVOPS_PROJECT": "proj",
    "AZURE_DEVOPS_REPO_ID": "repo",
    "AZURE_DEVOPS_PR_ID": "7",
    "AZURE_DEVOPS_PAT": "pat",
}


class FakeGateway:
    instances: list[FakeGateway] = []
    fail = False

    def __init__(self, organization: str, project: str, repository_id: str, token: str) -> None:
        self.args = (organization, project, repository_id, token)
        self.threads: list[tuple[int, str, ThreadStatus, str | None, int | None]] = []
        self.closed = False
        FakeGateway.instances.append(self)

    def create_thread(
        self,
        pull_request_id: int,
        content: str,
        *,
        status: ThreadStatus = "active",
        file_path: str | None = None,
        line: int | None = None,
    ) -> PullRequestThread:
        if FakeGateway.fail:
            raise AzureDevOpsError(403, "TF401027: permission denied")
        self.threads.append((pull_request_id, content, status, file_path, line))
        return PullRequestThread(thread_id=1, status=status, comments=())

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def fake_gateway(monkeypatch: pytest.MonkeyPatch) -> None:
    FakeGateway.instances = []
    FakeGateway.fail = False
    monkeypatch.setattr(review_tool, "AzureDevOpsGateway", FakeGateway)


def test_main_creates_active_inline_thread(capsys: pytest.CaptureFixture[str]) -> None:
    code = review_tool.main(
        ["--file", "src/app.py", "--line", "12", "--comment", "Handle None here."],
        environ=_ENV,
    )

    assert code == 0
    gateway = FakeGateway.instances[0]
    assert gateway.args == ("org", "proj", "repo", "pat")
    assert gateway.threads == [(7, "Handle None here.", "active", "/src/app.py", 12)]
    assert gateway.closed
    assert "Comment added to /src/app.py:12" in capsys.readouterr().out


def test_main_accepts_short_flags() -> None:
    code = review_tool.main(["-f", "/a.py", "-l", "3", "-c", "nit"], environ=_ENV)

    assert code == 0
    assert FakeGateway.instances[0].threads[0][3:] == ("/a.py", 3)


@pytest.mark.parametrize("line", ["0", "-4", "abc", "1.5", ""])
def test_main_rejects_bad_line(line: str, capsys: pytest.CaptureFixture[str]) -> None:
    code = review_tool.main(["--file", "a.py", "--line", line, "--comment", "x"], environ=_ENV)

    assert code == 1
    assert FakeGateway.instances == []
    assert "--line must be a positive integer" in capsys.readouterr().err


@pytest.mark.parametrize("missing", sorted(_ENV))
def test_main_requires_environment(missing: str, capsys: pytest.CaptureFixture[str]) -> None:
    env = {key: value for key, value in _ENV.items() if key != missing}

    code = review_tool.main(["--file", "a.py", "--line", "1", "--comment", "x"], environ=env)

    assert code == 1
    assert f"Missing required environment variable: {missing}" in capsys.readouterr().err


def test_main_requires_arguments() -> None:
    assert review_tool.main(["--file", "a.py"], environ=_ENV) == 1
    assert review_tool.main(["--bogus"], environ=_ENV) == 1


def test_main_api_failure_is_a_warning(capsys: pytest.CaptureFixture[str]) -> None:
    FakeGateway.fail = True

    code = review_tool.main(["--file", "a.py", "--line", "1", "--comment", "x"], environ=_ENV)

    assert code == 0
    assert "Warning: Failed to add comment" in capsys.readouterr().err
    assert FakeGateway.instances[0].closed


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("src/app.py", "/src/app.py"),
        ("/src/app.py", "/src/app.py"),
        ("src\\pkg\\mod.py", "/src/pkg/mod.py"),
        ("./src/../lib/x.py", "/lib/x.py"),
    ],
)
def test_normalize_file_path(raw: str, expected: str) -> None:
    assert review_tool.normalize_file_path(raw) == expected


def test_command_line_and_environment() -> None:
    assert review_tool.command_line() == f"{shlex.quote(sys.executable)} -m ocrunner.review_tool"
    assert review_tool.build_environment(
        organization="o", project="p", repository_id="r", pull_request_id=5, token="t"
    ) == {
        "AZURE_DEVOPS_ORG": "o",
        "AZURE_DEVOPS_PROJECT": "p",
        "AZURE_DEVOPS_REPO_ID": "r",
        "AZURE_DEVOPS_PR_ID": "5",
        "AZURE_DEVOPS_PAT": "t",
    }


def test_command_line_quotes_interpreter_path(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(review_tool.sys, "executable", "/opt/my python/bin/python")

    assert review_tool.command_line() == "'/opt/my python/bin/python' -m ocrunner.review_tool"
