from __future__ import annotations

import logging

from ocrunner.config import ConfigError
from ocrunner.models import ResolvedRunConfig, RunConfig, RunMode, TriggerContext
from ocrunner.observability import log_event


LOGGER = logging.getLogger("ocrunner.triggers")

REVIEW_TRIGGER_KEYWORDS: tuple[str, ...] = ("/oc-review", "/opencode-review")
COMMAND_TRIGGER_KEYWORDS: tuple[str, ...] = ("/oc", "/opencode")


class TriggerError(ConfigError):
    """The trigger comment and the requested mode do not agree."""


def includes_any_keyword(content: str, keywords: tuple[str, ...]) -> bool:
    lowered = content.lower()
    return any(keyword in lowered for keyword in keywords)


def detect_mode(content: str) -> RunMode | None:
    # Review keywords start with a command keyword, so they must be checked first.
    if includes_any_keyword(content, REVIEW_TRIGGER_KEYWORDS):
        return "review"
    if includes_any_keyword(content, COMMAND_TRIGGER_KEYWORDS):
        return "command"
    return None


def validate_trigger(content: str, mode: RunMode) -> None:
    has_review = includes_any_keyword(content, REVIEW_TRIGGER_KEYWORDS)
    if mode == "review":
        if not has_review:
            raise TriggerError(
                "Comment does not contain review trigger keyword ('/oc-review' or "
                "'/opencode-review')"
            )
        return

    if has_review:
        raise TriggerError(
            "Comment contains review trigger. Set mode to 'review' to perform code review."
        )
    if not includes_any_keyword(content, COMMAND_TRIGGER_KEYWORDS):
        raise TriggerError("Comment does not contain trigger keyword ('/oc' or '/opencode')")


def resolve_mode(comment_content: str | None, explicit_mode: RunMode | None) -> tuple[RunMode, bool]:
    """Return the run mode and whether it came from configuration.

    An explicit mode wins without looking at the comment. Otherwise the mode is
    inferred from the trigger comment, which must exist.
    """
    if explicit_mode is not None:
        return explicit_mode, True
    if comment_content is None:
        raise TriggerError(
            "No trigger comment and no explicit mode. Headless runs must set mode explicitly."
        )
    inferred = detect_mode(comment_content)
    if inferred is None:
        raise TriggerError(
            "Could not infer execution mode. Please add '/oc' for command mode or "
            "'/oc-review' for review mode in the trigger comment."
        )
    return inferred, False


def resolve_trigger(config: RunConfig, trigger: TriggerContext) -> ResolvedRunConfig:
    comment_content = trigger.comment.content if trigger.comment is not None else None
    mode, explicit = resolve_mode(comment_content, config.mode)
    if comment_content is not None:
        validate_trigger(comment_content, mode)
    if mode == "command" and not trigger.comment_activated:
        raise TriggerError(
            "Command mode requires thread_id and comment_id. Trigger the run from a pull "
            "request comment or provide the ids explicitly."
        )
    log_event(
        LOGGER,
        "trigger_resolved",
        mode=mode,
        mode_explicit=explicit,
        comment_activated=trigger.comment_activated,
    )
    return ResolvedRunConfig(config=config, mode=mode, trigger=trigger, mode_explicit=explicit)
