from __future__ import annotations

import logging
from typing import cast

import httpx

from ocrunner.models import (
    CommitRef,
    IdentityRef,
    Iteration,
    IterationChange,
    PullRequest,
    PullRequestThread,
    Reviewer,
    ThreadAnchor,
    ThreadComment,
    ThreadStatus,
)
from ocrunner.observability import log_event


LOGGER = logging.getLogger("ocrunner.azure_gateway")
API_VERSION = "7.1"
DEFAULT_BASE_URL = "https://dev.azure.com"
_TEXT_COMMENT_TYPE = 1
_THREAD_STATUS_CODES: dict[ThreadStatus, int] = {
    "active": 1,
    "fixed": 2,
    "wontFix": 3,
    "closed": 4,
    "byDesign": 5,
    "pending": 6,
}


class AzureDevOpsError(RuntimeError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Azure DevOps API error ({status_code}): {message}")
        self.status_code = status_code
        self.message = message


class AzureDevOpsGateway:
    """Pull request REST calls scoped to one repository."""

    def __init__(
        self,
        organization: str,
        project: str,
        repository_id: str,
        token: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        client: httpx.Client | None = None,
    ) -> None:
        self.organization = organization
        self.project = project
        self.repository_id = repository_id
        self._client = client or httpx.Client(
            base_url=base_url,
            auth=httpx.BasicAuth("", token),
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(30.0),
        )

    def close(self) -> None:
        self._client.close()

    def get_pull_request(self, pull_request_id: int, *, include_commits: bool = False) -> PullRequest:
        params = {"includeCommits": "true"} if include_commits else None
        payload = _require_object(
            self._api_json(
                "GET",
                f"/{self.organization}/{self.project}/_apis/git/pullrequests/{pull_request_id}",
                params=params,
            ),
            what="pull request",
        )
        pull_request = _parse_pull_request(payload)
        log_event(
            LOGGER,
            "azure_read",
            endpoint="pull_request",
            pr_id=pull_request_id,
            commit_count=len(pull_request.commits),
        )
        return pull_request

    def get_iterations(self, pull_request_id: int) -> tuple[Iteration, ...]:
        payload = self._api_json("GET", f"{self._pr_path(pull_request_id)}/iterations")
        iterations = tuple(
            Iteration(
                iteration_id=_as_int(item.get("id"), field="id"),
                description=_as_string(item.get("description")),
            )
            for item in _value_list(payload, what="iterations")
        )
        log_event(LOGGER, "azure_read", endpoint="iterations", count=len(iterations))
        return iterations

    def get_iteration_changes(
        self, pull_request_id: int, iteration_id: int
    ) -> tuple[IterationChange, ...]:
        payload = _require_object(
            self._api_json(
                "GET", f"{self._pr_path(pull_request_id)}/iterations/{iteration_id}/changes"
            ),
            what="iteration changes",
        )
        entries = payload.get("changeEntries")
        changes: list[IterationChange] = []
        if isinstance(entries, list):
            for entry in entries:
                entry_obj = _as_object_dict(entry)
                if entry_obj is None:
                    continue
                item_obj = _as_object_dict(entry_obj.get("item"))
                path = _as_string(item_obj.get("path")) if item_obj else ""
                if not path:
                    continue
                changes.append(
                    IterationChange(path=path, change_type=_as_string(entry_obj.get("changeType")))
                )
        log_event(
            LOGGER,
            "azure_read",
            endpoint="iteration_changes",
            iteration_id=iteration_id,
            count=len(changes),
        )
        return tuple(changes)

    def get_threads(self, pull_request_id: int) -> tuple[PullRequestThread, ...]:
        payload = self._api_json("GET", f"{self._pr_path(pull_request_id)}/threads")
        threads = tuple(_parse_thread(item) for item in _value_list(payload, what="threads"))
        log_event(LOGGER, "azure_read", endpoint="threads", count=len(threads))
        return threads

    def get_thread(self, pull_request_id: int, thread_id: int) -> PullRequestThread:
        payload = _require_object(
            self._api_json("GET", f"{self._pr_path(pull_request_id)}/threads/{thread_id}"),
            what="thread",
        )
        thread = _parse_thread(payload)
        log_event(
            LOGGER,
            "azure_read",
            endpoint="thread",
            thread_id=thread_id,
            comment_count=len(thread.comments),
        )
        return thread

    def add_comment(
        self,
        pull_request_id: int,
        thread_id: int,
        content: str,
        *,
        parent_comment_id: int | None = None,
    ) -> ThreadComment:
        body: dict[str, object] = {"content": content, "commentType": _TEXT_COMMENT_TYPE}
        if parent_comment_id:
            body["parentCommentId"] = parent_comment_id
        payload = _require_object(
            self._api_json(
                "POST",
                f"{self._pr_path(pull_request_id)}/threads/{thread_id}/comments",
                payload=body,
            ),
            what="comment",
        )
        comment = _parse_comment(payload)
        log_event(
            LOGGER,
            "azure_comment_added",
            thread_id=thread_id,
            comment_id=comment.comment_id,
            parent_comment_id=parent_comment_id,
        )
        return comment

    def edit_comment(
        self, pull_request_id: int, thread_id: int, comment_id: int, content: str
    ) -> ThreadComment:
        payload = _require_object(
            self._api_json(
                "PATCH",
                f"{self._pr_path(pull_request_id)}/threads/{thread_id}/comments/{comment_id}",
                payload={"content": content},
            ),
            what="comment",
        )
        log_event(LOGGER, "azure_comment_edited", thread_id=thread_id, comment_id=comment_id)
        return _parse_comment(payload)

    def create_thread(
        self,
        pull_request_id: int,
        content: str,
        *,
        status: ThreadStatus = "active",
        file_path: str | None = None,
        line: int | None = None,
    ) -> PullRequestThread:
        body: dict[str, object] = {
            "comments": [
                {"content": content, "parentCommentId": 0, "commentType": _TEXT_COMMENT_TYPE}
            ],
            "status": _THREAD_STATUS_CODES[status],
        }
        if file_path and line:
            body["threadContext"] = {
                "filePath": file_path,
                "rightFileStart": {"line": line, "offset": 1},
                "rightFileEnd": {"line": line, "offset": 1},
            }
        payload = _require_object(
            self._api_json("POST", f"{self._pr_path(pull_request_id)}/threads", payload=body),
            what="thread",
        )
        thread = _parse_thread(payload)
        log_event(
            LOGGER,
            "azure_thread_created",
            thread_id=thread.thread_id,
            status=status,
            file_path=file_path,
            line=line,
        )
        return thread

    def _pr_path(self, pull_request_id: int) -> str:
        return (
            f"/{self.organization}/{self.project}/_apis/git/repositories/"
            f"{self.repository_id}/pullRequests/{pull_request_id}"
        )

    def _api_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        payload: dict[str, object] | None = None,
    ) -> object:
        query = {"api-version": API_VERSION}
        if params:
            query.update(params)
        response = self._client.request(method, path, params=query, json=payload)
        if not response.is_success:
            message = _error_message(response)
            log_event(
                LOGGER,
                "azure_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                error=message,
            )
            raise AzureDevOpsError(response.status_code, message)
        return response.json()


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    payload_obj = _as_object_dict(payload)
    if payload_obj is not None:
        message = payload_obj.get("message")
        if isinstance(message, str) and message:
            return message
    return response.reason_phrase or "Unknown error"


def _parse_pull_request(payload: dict[str, object]) -> PullRequest:
    reviewers: list[Reviewer] = []
    for item in _object_list(payload.get("reviewers")):
        reviewers.append(
            Reviewer(
                display_name=_as_string(item.get("displayName")),
                vote=_as_int(item.get("vote", 0), field="vote"),
            )
        )
    commits = tuple(
        CommitRef(commit_id=_as_string(item.get("commitId")), comment=_as_string(item.get("comment")))
        for item in _object_list(payload.get("commits"))
    )
    return PullRequest(
        pull_request_id=_as_int(payload.get("pullRequestId"), field="pullRequestId"),
        title=_as_string(payload.get("title")),
        description=_as_string(payload.get("description")),
        status=_as_string(payload.get("status")),
        source_ref_name=_as_string(payload.get("sourceRefName")),
        target_ref_name=_as_string(payload.get("targetRefName")),
        created_by=_parse_identity(payload.get("createdBy")),
        creation_date=_as_string(payload.get("creationDate")),
        reviewers=tuple(reviewers),
        commits=commits,
    )


def _parse_thread(payload: dict[str, object]) -> PullRequestThread:
    return PullRequestThread(
        thread_id=_as_int(payload.get("id"), field="id"),
        status=_as_string(payload.get("status")),
        comments=tuple(_parse_comment(item) for item in _object_list(payload.get("comments"))),
        anchor=_parse_anchor(payload.get("threadContext")),
    )


def _parse_anchor(value: object) -> ThreadAnchor | None:
    context = _as_object_dict(value)
    if context is None:
        return None
    file_path = _as_string(context.get("filePath"))
    if not file_path:
        return None
    line: int | None = None
    start = _as_object_dict(context.get("rightFileStart"))
    if start is not None and isinstance(start.get("line"), int):
        line = cast(int, start["line"])
    return ThreadAnchor(file_path=file_path, line=line)


def _parse_comment(payload: dict[str, object]) -> ThreadComment:
    return ThreadComment(
        comment_id=_as_int(payload.get("id"), field="id"),
        content=_as_string(payload.get("content")),
        author=_parse_identity(payload.get("author")),
        published_date=_as_string(payload.get("publishedDate")),
        comment_type=_as_string(payload.get("commentType")),
        is_deleted=payload.get("isDeleted") is True,
    )


def _parse_identity(value: object) -> IdentityRef:
    identity = _as_object_dict(value) or {}
    return IdentityRef(
        display_name=_as_string(identity.get("displayName")),
        unique_name=_as_string(identity.get("uniqueName")),
    )


def _value_list(payload: object, *, what: str) -> list[dict[str, object]]:
    payload_obj = _require_object(payload, what=what)
    return _object_list(payload_obj.get("value"))


def _require_object(payload: object, *, what: str) -> dict[str, object]:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise RuntimeError(f"Unexpected Azure DevOps response: expected object for {what}")
    return payload_obj


def _object_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    out: list[dict[str, object]] = []
    for item in value:
        item_obj = _as_object_dict(item)
        if item_obj is not None:
            out.append(item_obj)
    return out


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise RuntimeError(f"Expected integer field {field!r} in Azure DevOps response")
    return value


def _as_string(value: object) -> str:
    if isinstance(value, str):
        return value
    return ""
