from __future__ import annotations

import logging

from ocrunner.azure_gateway import AzureDevOpsGateway
from ocrunner.models import TriggerContext
from ocrunner.observability import log_event, log_warning


LOGGER = logging.getLogger("ocrunner.feedback")


class FeedbackCoordinator:
    """Announce, then finalize exactly once, on the pull request thread.

    Comment-activated runs reply to the trigger comment and later edit that
    reply. Headless runs, or runs whose announcement never landed, open a new
    closed thread instead.
    """

    def __init__(
        self,
        gateway: AzureDevOpsGateway,
        *,
        pull_request_id: int,
        trigger: TriggerContext,
        summary_header: str,
        footer: str = "",
    ) -> None:
        self._gateway = gateway
        self._pull_request_id = pull_request_id
        self._trigger = trigger
        self._summary_header = summary_header
        self._footer = footer
        self._reply_comment_id: int | None = None
        self._finalized = False

    @property
    def reply_comment_id(self) -> int | None:
        return self._reply_comment_id

    @property
    def finalized(self) -> bool:
        return self._finalized

    def announce(self, message: str) -> None:
        thread, comment = self._trigger.thread, self._trigger.comment
        if thread is None or comment is None:
            log_event(LOGGER, "feedback_announce_skipped", reason="headless")
            return
        reply = self._gateway.add_comment(
            self._pull_request_id,
            thread.thread_id,
            f"{message}{self._footer}",
            parent_comment_id=comment.comment_id,
        )
        self._reply_comment_id = reply.comment_id
        log_event(
            LOGGER,
            "feedback_announced",
            thread_id=thread.thread_id,
            reply_comment_id=reply.comment_id,
        )

    def finalize_success(self, text: str) -> None:
        self._deliver(reply_body=text, thread_body=f"{self._summary_header}\n\n{text}")

    def finalize_failure(self, message: str) -> None:
        try:
            self._deliver(reply_body=message)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "feedback_failure_delivery_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _deliver(self, *, reply_body: str, thread_body: str | None = None) -> None:
        if self._finalized:
            log_warning(LOGGER, "feedback_already_finalized")
            return
        thread = self._trigger.thread
        if self._reply_comment_id is not None and thread is not None:
            self._gateway.edit_comment(
                self._pull_request_id,
                thread.thread_id,
                self._reply_comment_id,
                f"{reply_body}{self._footer}",
            )
            self._finalized = True
            log_event(
                LOGGER,
                "feedback_reply_edited",
                thread_id=thread.thread_id,
                reply_comment_id=self._reply_comment_id,
            )
            return
        created = self._gateway.create_thread(
            self._pull_request_id,
            f"{thread_body or reply_body}{self._footer}",
            status="closed",
        )
        self._finalized = True
        log_event(LOGGER, "feedback_thread_created", thread_id=created.thread_id)
