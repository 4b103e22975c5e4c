from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal


RunMode = Literal["command", "review"]
ThreadStatus = Literal["active", "fixed", "wontFix", "closed", "byDesign", "pending"]

_BRANCH_REF_PREFIX = "refs/heads/"


@dataclass(frozen=True)
class RepositoryInfo:
    organization: str
    project: str
    repository_id: str


@dataclass(frozen=True)
class AgentConfig:
    name: str | None
    provider_id: str
    model_id: str
    host: str = "127.0.0.1"
    port: int = 4096


@dataclass(frozen=True)
class RunConfig:
    repository: RepositoryInfo
    pull_request_id: int
    thread_id: int | None
    comment_id: int | None
    token: str
    agent: AgentConfig
    workspace_path: Path
    mode: RunMode | None = None
    skip_clone: bool = False
    custom_prompt: str | None = None
    build_id: str | None = None


@dataclass(frozen=True)
class IdentityRef:
    display_name: str
    unique_name: str

    @property
    def label(self) -> str:
        return self.unique_name or self.display_name or "Unknown"


@dataclass(frozen=True)
class Reviewer:
    display_name: str
    vote: int


@dataclass(frozen=True)
class CommitRef:
    commit_id: str
    comment: str


@dataclass(frozen=True)
class PullRequest:
    pull_request_id: int
    title: str
    description: str
    status: str
    source_ref_name: str
    target_ref_name: str
    created_by: IdentityRef
    creation_date: str
    reviewers: tuple[Reviewer, ...]
    commits: tuple[CommitRef, ...]

    @property
    def source_branch(self) -> str:
        return _strip_branch_ref(self.source_ref_name)

    @property
    def target_branch(self) -> str:
        return _strip_branch_ref(self.target_ref_name)


@dataclass(frozen=True)
class ThreadComment:
    comment_id: int
    content: str
    author: IdentityRef
    published_date: str
    comment_type: str
    is_deleted: bool = False


@dataclass(frozen=True)
class ThreadAnchor:
    file_path: str
    line: int | None


@dataclass(frozen=True)
class PullRequestThread:
    thread_id: int
    status: str
    comments: tuple[ThreadComment, ...]
    anchor: ThreadAnchor | None = None

    def find_comment(self, comment_id: int) -> ThreadComment | None:
        for comment in self.comments:
            if comment.comment_id == comment_id:
                return comment
        return None


@dataclass(frozen=True)
class Iteration:
    iteration_id: int
    description: str


@dataclass(frozen=True)
class IterationChange:
    path: str
    change_type: str


@dataclass(frozen=True)
class TriggerContext:
    thread: PullRequestThread | None = None
    comment: ThreadComment | None = None

    @property
    def comment_activated(self) -> bool:
        return self.thread is not None and self.comment is not None


@dataclass(frozen=True)
class ResolvedRunConfig:
    config: RunConfig
    mode: RunMode
    trigger: TriggerContext
    mode_explicit: bool


@dataclass(frozen=True)
class Workspace:
    path: Path
    owned: bool


@dataclass(frozen=True)
class AgentSession:
    id: str
    title: str
    version: str


@dataclass(frozen=True)
class PullRequestContext:
    pull_request: PullRequest
    iterations: tuple[Iteration, ...]
    threads: tuple[PullRequestThread, ...]
    changes: tuple[IterationChange, ...]


def _strip_branch_ref(ref_name: str) -> str:
    if ref_name.startswith(_BRANCH_REF_PREFIX):
        return ref_name[len(_BRANCH_REF_PREFIX) :]
    return ref_name
