from __future__ import annotations

from pathlib import Path

import pytest

from ocrunner.config import ConfigError
from ocrunner.git_ops import (
    BOT_EMAIL,
    BOT_NAME,
    CloneSpec,
    WorkspaceManager,
    parse_hunks,
    select_hunk,
)
from ocrunner.models import Workspace
from ocrunner.observability import configure_logging
from ocrunner.shell import CommandError


_DIFF = """diff --git a/src/app.py b/src/app.py
index 111..222 100644
--- a/src/app.py
+++ b/src/app.py
@@ -1,3 +1,4 @@
 import os
+import sys
 
 def main():
@@ -20,2 +21,3 @@ def helper():
     value = 1
+    value += 1
     return value
"""


def _spec(*, branch: str = "feature/x") -> CloneSpec:
    return CloneSpec(
        organization="org",
        project="proj",
        repository_id="repo",
        branch=branch,
        token="s3cret",
    )


def test_clone_spec_remote_url_embeds_token() -> None:
    assert _spec().remote_url == "https://:s3cret@dev.azure.com/org/proj/_git/repo"


def test_acquire_clones_fresh_workspace(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path / "ws")
    stale = tmp_path / "ws" / "repo"
    stale.mkdir(parents=True)
    (stale / "old.txt").write_text("old", encoding="utf-8")
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        Path(cmd[-1]).mkdir()
        return ""

    monkeypatch.setattr("ocrunner.git_ops.run", fake_run)

    workspace = manager.acquire(skip_clone=False, supplied_path=None, clone_spec=_spec())

    assert workspace == Workspace(path=stale, owned=True)
    assert not (stale / "old.txt").exists()
    assert calls == [
        [
            "git",
            "clone",
            "--depth",
            "1",
            "--single-branch",
            "--branch",
            "feature/x",
            "https://:s3cret@dev.azure.com/org/proj/_git/repo",
            str(stale),
        ]
    ]


def test_acquire_removes_partial_clone_on_failure(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = WorkspaceManager(tmp_path)

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        partial = Path(cmd[-1])
        partial.mkdir()
        (partial / ".git").mkdir()
        raise CommandError("Command failed")

    monkeypatch.setattr("ocrunner.git_ops.run", fake_run)

    with pytest.raises(CommandError):
        manager.acquire(skip_clone=False, supplied_path=None, clone_spec=_spec())
    assert not (tmp_path / "repo").exists()


def test_acquire_skip_clone_reuses_supplied_path(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = WorkspaceManager(tmp_path)

    def fail_run(cmd: list[str], **kwargs: object) -> str:
        raise AssertionError(f"unexpected command: {cmd}")

    monkeypatch.setattr("ocrunner.git_ops.run", fail_run)

    workspace = manager.acquire(skip_clone=True, supplied_path=tmp_path, clone_spec=_spec())
    assert workspace == Workspace(path=tmp_path, owned=False)

    manager.release(workspace)
    assert tmp_path.exists()


def test_acquire_skip_clone_requires_path(tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path)
    with pytest.raises(ConfigError, match="workspace_path is required"):
        manager.acquire(skip_clone=True, supplied_path=None, clone_spec=_spec())


def test_release_removes_owned_workspace(tmp_path: Path) -> None:
    target = tmp_path / "repo"
    (target / "nested").mkdir(parents=True)
    manager = WorkspaceManager(tmp_path)

    manager.release(Workspace(path=target, owned=True))
    manager.release(Workspace(path=target, owned=True))
    manager.release(None)

    assert not target.exists()


def test_release_logs_cleanup_failure(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    target = tmp_path / "repo"
    target.mkdir()
    manager = WorkspaceManager(tmp_path)

    def broken_rmtree(path: Path) -> None:
        raise PermissionError("denied")

    monkeypatch.setattr("ocrunner.git_ops.shutil.rmtree", broken_rmtree)
    configure_logging(verbose=True)

    manager.release(Workspace(path=target, owned=True))

    stderr = capsys.readouterr().err
    assert "event=workspace_cleanup_failed" in stderr
    assert "error_type=PermissionError" in stderr


def test_configure_identity_only_for_owned(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    calls: list[list[str]] = []
    monkeypatch.setattr(
        "ocrunner.git_ops.run", lambda cmd, **kwargs: calls.append(cmd) or ""
    )
    manager = WorkspaceManager(tmp_path)

    manager.configure_identity(Workspace(path=tmp_path, owned=False))
    assert calls == []

    manager.configure_identity(Workspace(path=tmp_path, owned=True))
    assert calls == [
        ["git", "-C", str(tmp_path), "config", "user.email", BOT_EMAIL],
        ["git", "-C", str(tmp_path), "config", "user.name", BOT_NAME],
    ]


def test_commit_and_push(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        if cmd[3:] == ["status", "--porcelain"]:
            return " M src/app.py\n"
        return ""

    monkeypatch.setattr("ocrunner.git_ops.run", fake_run)
    manager = WorkspaceManager(tmp_path)
    workspace = Workspace(path=tmp_path, owned=True)

    assert manager.has_uncommitted_changes(workspace) is True
    manager.commit_all(workspace, "Fix typo")
    manager.push(workspace)

    path = str(tmp_path)
    assert calls[1:] == [
        ["git", "-C", path, "add", "-A"],
        ["git", "-C", path, "commit", "-m", "Fix typo"],
        ["git", "-C", path, "push"],
    ]


def test_has_uncommitted_changes_false_for_clean_tree(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr("ocrunner.git_ops.run", lambda cmd, **kwargs: "\n")
    manager = WorkspaceManager(tmp_path)
    assert manager.has_uncommitted_changes(Workspace(path=tmp_path, owned=True)) is False


def test_push_failure_propagates(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        raise CommandError("rejected")

    monkeypatch.setattr("ocrunner.git_ops.run", fake_run)
    with pytest.raises(CommandError, match="rejected"):
        WorkspaceManager(tmp_path).push(Workspace(path=tmp_path, owned=True))


def test_file_diff_hunk_selects_hunk_for_line(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        return _DIFF if "diff" in cmd else ""

    monkeypatch.setattr("ocrunner.git_ops.run", fake_run)
    manager = WorkspaceManager(tmp_path)

    hunk = manager.file_diff_hunk(
        Workspace(path=tmp_path, owned=True), "main", "/src/app.py", 22
    )

    assert hunk.startswith("@@ -20,2 +21,3 @@")
    assert "+    value += 1" in hunk
    assert "import sys" not in hunk
    assert calls[0][3:] == ["fetch", "--depth", "1", "origin", "main:refs/remotes/origin/main"]
    assert calls[1][3:] == ["diff", "-p", "origin/main", "--", "src/app.py"]


def test_file_diff_hunk_returns_empty_on_git_failure(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        raise CommandError("no such ref")

    monkeypatch.setattr("ocrunner.git_ops.run", fake_run)
    manager = WorkspaceManager(tmp_path)

    assert manager.file_diff_hunk(Workspace(path=tmp_path, owned=True), "main", "/a.py", 1) == ""


def test_parse_hunks_reads_ranges() -> None:
    hunks = parse_hunks(_DIFF)

    assert [(h.new_start, h.new_lines) for h in hunks] == [(1, 4), (21, 3)]
    assert hunks[0].contains(1)
    assert hunks[0].contains(4)
    assert not hunks[0].contains(5)
    assert hunks[1].content.endswith("     return value")


def test_parse_hunks_defaults_single_line_count() -> None:
    hunks = parse_hunks("@@ -3 +3 @@\n-a\n+b\n")
    assert [(h.new_start, h.new_lines) for h in hunks] == [(3, 1)]


def test_select_hunk_falls_back_to_whole_diff() -> None:
    assert select_hunk(_DIFF, None) == _DIFF.strip()
    assert select_hunk(_DIFF, 500) == _DIFF.strip()
    assert select_hunk("", 3) == ""
    assert select_hunk(_DIFF, 2).startswith("@@ -1,3 +1,4 @@")
