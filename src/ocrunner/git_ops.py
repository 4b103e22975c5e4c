from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import re
import shutil

from ocrunner.config import ConfigError
from ocrunner.models import Workspace
from ocrunner.observability import log_event, log_warning
from ocrunner.shell import CommandError, run


LOGGER = logging.getLogger("ocrunner.git_ops")
BOT_NAME = "OpenCode Bot"
BOT_EMAIL = "opencode-bot@azure-devops.local"
_HUNK_HEADER_PATTERN = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,(\d+))? @@")


@dataclass(frozen=True)
class CloneSpec:
    organization: str
    project: str
    repository_id: str
    branch: str
    token: str

    @property
    def remote_url(self) -> str:
        return (
            f"https://:{self.token}@dev.azure.com/{self.organization}/{self.project}"
            f"/_git/{self.repository_id}"
        )


@dataclass(frozen=True)
class DiffHunk:
    new_start: int
    new_lines: int
    content: str

    def contains(self, line: int) -> bool:
        return self.new_start <= line < self.new_start + self.new_lines


class WorkspaceManager:
    def __init__(self, workspace_root: Path) -> None:
        self.workspace_root = workspace_root

    def acquire(
        self,
        *,
        skip_clone: bool,
        supplied_path: Path | None,
        clone_spec: CloneSpec,
    ) -> Workspace:
        if skip_clone:
            if supplied_path is None or not str(supplied_path).strip():
                raise ConfigError("workspace_path is required when skip_clone is enabled")
            log_event(LOGGER, "workspace_reused", path=str(supplied_path))
            return Workspace(path=supplied_path, owned=False)

        target = self.workspace_root / clone_spec.repository_id
        if target.exists():
            log_event(LOGGER, "workspace_stale_removed", path=str(target))
            self._remove_tree(target)
        target.parent.mkdir(parents=True, exist_ok=True)

        log_event(
            LOGGER,
            "workspace_clone_started",
            repository_id=clone_spec.repository_id,
            branch=clone_spec.branch,
        )
        try:
            run(
                [
                    "git",
                    "clone",
                    "--depth",
                    "1",
                    "--single-branch",
                    "--branch",
                    clone_spec.branch,
                    clone_spec.remote_url,
                    str(target),
                ]
            )
        except CommandError:
            log_event(LOGGER, "workspace_clone_failed", path=str(target))
            self._remove_tree(target)
            raise
        log_event(LOGGER, "workspace_cloned", path=str(target), branch=clone_spec.branch)
        return Workspace(path=target, owned=True)

    def release(self, workspace: Workspace | None) -> None:
        if workspace is None:
            return
        if not workspace.owned:
            log_event(LOGGER, "workspace_kept", path=str(workspace.path))
            return
        self._remove_tree(workspace.path)

    def configure_identity(self, workspace: Workspace) -> None:
        if not workspace.owned:
            return
        path = str(workspace.path)
        run(["git", "-C", path, "config", "user.email", BOT_EMAIL])
        run(["git", "-C", path, "config", "user.name", BOT_NAME])

    def has_uncommitted_changes(self, workspace: Workspace) -> bool:
        status = run(["git", "-C", str(workspace.path), "status", "--porcelain"])
        return bool(status.strip())

    def commit_all(self, workspace: Workspace, message: str) -> None:
        path = str(workspace.path)
        log_event(LOGGER, "git_commit", path=path, message=message)
        run(["git", "-C", path, "add", "-A"])
        run(["git", "-C", path, "commit", "-m", message])

    def push(self, workspace: Workspace) -> None:
        log_event(LOGGER, "git_push", path=str(workspace.path))
        try:
            run(["git", "-C", str(workspace.path), "push"])
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_failed",
                path=str(workspace.path),
                error_type=type(exc).__name__,
            )
            raise

    def file_diff_hunk(
        self,
        workspace: Workspace,
        target_branch: str,
        file_path: str,
        line: int | None = None,
    ) -> str:
        """Diff of ``file_path`` against ``target_branch``, narrowed to the hunk holding ``line``.

        Best effort: any git failure is logged and yields an empty string.
        """
        path = str(workspace.path)
        relative_path = file_path.lstrip("/") or file_path
        try:
            run(
                [
                    "git",
                    "-C",
                    path,
                    "fetch",
                    "--depth",
                    "1",
                    "origin",
                    f"{target_branch}:refs/remotes/origin/{target_branch}",
                ]
            )
            diff = run(
                ["git", "-C", path, "diff", "-p", f"origin/{target_branch}", "--", relative_path]
            )
        except CommandError as exc:
            log_warning(
                LOGGER,
                "git_diff_hunk_failed",
                file_path=file_path,
                target_branch=target_branch,
                error_type=type(exc).__name__,
            )
            return ""
        return select_hunk(diff, line)

    def _remove_tree(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError as exc:
            log_warning(
                LOGGER,
                "workspace_cleanup_failed",
                path=str(path),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        log_event(LOGGER, "workspace_removed", path=str(path))


def parse_hunks(diff: str) -> list[DiffHunk]:
    hunks: list[DiffHunk] = []
    header: tuple[int, int] | None = None
    lines: list[str] = []
    for raw_line in diff.split("\n"):
        match = _HUNK_HEADER_PATTERN.match(raw_line)
        if match is not None:
            if header is not None:
                hunks.append(DiffHunk(header[0], header[1], "\n".join(lines).rstrip("\n")))
            new_lines = int(match.group(2)) if match.group(2) is not None else 1
            header = (int(match.group(1)), new_lines)
            lines = [raw_line]
        elif header is not None:
            lines.append(raw_line)
    if header is not None:
        hunks.append(DiffHunk(header[0], header[1], "\n".join(lines).rstrip("\n")))
    return hunks


def select_hunk(diff: str, line: int | None) -> str:
    stripped = diff.strip()
    if not stripped or not line:
        return stripped
    for hunk in parse_hunks(diff):
        if hunk.contains(line):
            return hunk.content
    return stripped
