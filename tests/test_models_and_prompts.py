from __future__ import annotations

from ocrunner import __version__
from ocrunner.models import (
    CommitRef,
    IdentityRef,
    IterationChange,
    PullRequest,
    PullRequestThread,
    Reviewer,
    ThreadComment,
    TriggerContext,
)
from ocrunner.prompts import (
    DEFAULT_REVIEW_INSTRUCTIONS,
    build_command_prompt,
    build_pr_data_context,
    build_review_prompt,
    build_summary_prompt,
    comment_footer,
    vote_description,
)


def _pull_request(**overrides: object) -> PullRequest:
    values: dict[str, object] = {
        "pull_request_id": 7,
        "title": "Add cache",
        "description": "Adds a cache layer",
        "status": "active",
        "source_ref_name": "refs/heads/feature/cache",
        "target_ref_name": "refs/heads/main",
        "created_by": IdentityRef("Bob", "bob@example.com"),
        "creation_date": "2024-05-01T09:00:00Z",
        "reviewers": (Reviewer("Carol", 10), Reviewer("Dan", 0), Reviewer("Eve", -5)),
        "commits": (CommitRef("a1", "first"), CommitRef("b2", "second")),
    }
    values.update(overrides)
    return PullRequest(**values)  # type: ignore[arg-type]


def _comment(comment_id: int, content: str, **overrides: object) -> ThreadComment:
    values: dict[str, object] = {
        "comment_id": comment_id,
        "content": content,
        "author": IdentityRef("Alice", ""),
        "published_date": "2024-05-02T10:00:00Z",
        "comment_type": "text",
    }
    values.update(overrides)
    return ThreadComment(**values)  # type: ignore[arg-type]


def test_model_helpers_and_version() -> None:
    assert __version__
    pull_request = _pull_request(source_ref_name="feature/raw")
    assert pull_request.source_branch == "feature/raw"
    assert pull_request.target_branch == "main"
    assert IdentityRef("", "").label == "Unknown"
    assert IdentityRef("Alice", "").label == "Alice"

    thread = PullRequestThread(thread_id=1, status="active", comments=(_comment(3, "x"),))
    assert TriggerContext(thread=thread, comment=thread.comments[0]).comment_activated
    assert not TriggerContext(thread=thread).comment_activated
    assert not TriggerContext().comment_activated


def test_comment_footer() -> None:
    assert comment_footer("org", "proj", None) == ""
    assert comment_footer("org", "proj", "") == ""
    assert comment_footer("org", "proj", "55") == (
        "\n\n---\n**Pipeline:** [Build #55]"
        "(https://dev.azure.com/org/proj/_build/results?buildId=55)"
    )


def test_vote_description() -> None:
    assert vote_description(10) == "approved"
    assert vote_description(-10) == "rejected"
    assert vote_description(3) == "unknown"


def test_build_pr_data_context_includes_sections() -> None:
    threads = (
        PullRequestThread(
            thread_id=1,
            status="active",
            comments=(
                _comment(1, "Looks good"),
                _comment(2, "Policy update", comment_type="system"),
                _comment(3, "removed", is_deleted=True),
            ),
        ),
    )
    changes = (
        IterationChange("/src/cache.py", "add"),
        IterationChange("/src/app.py", "edit"),
        IterationChange("/old.py", "delete"),
    )

    context = build_pr_data_context(_pull_request(), threads, changes)

    assert context.startswith("<pull_request>\nTitle: Add cache\n")
    assert context.endswith("</pull_request>")
    assert "Author: bob@example.com" in context
    assert "Base Branch: refs/heads/main" in context
    assert "Head Branch: refs/heads/feature/cache" in context
    assert "Additions: 1" in context
    assert "Deletions: 1" in context
    assert "Total Commits: 2" in context
    assert "Changed Files: 3 files" in context
    assert "- Alice at 2024-05-02T10:00:00Z: Looks good" in context
    assert "Policy update" not in context
    assert "removed" not in context
    assert "- /src/app.py (changed)" in context
    assert "- /src/cache.py (add)" in context
    assert "- Carol: vote=10 (approved)" in context
    assert "- Eve: vote=-5 (waiting for author)" in context
    assert "Dan" not in context


def test_build_pr_data_context_omits_empty_sections() -> None:
    context = build_pr_data_context(_pull_request(reviewers=()), (), ())

    assert "<pull_request_comments>" not in context
    assert "<pull_request_changed_files>" not in context
    assert "<pull_request_reviews>" not in context
    assert "Changed Files: 0 files" in context


def test_build_command_prompt_with_and_without_code_context() -> None:
    plain = build_command_prompt(comment_content="/oc fix it", data_context="<ctx/>")
    assert plain.startswith("/oc fix it\n\nRead the following data as context")
    assert plain.endswith("<ctx/>")
    assert "<code_context>" not in plain

    anchored = build_command_prompt(
        comment_content="/oc rename",
        data_context="<ctx/>",
        file_path="/src/a.py",
        line=12,
        diff_hunk="@@ -1 +1 @@\n-a\n+b",
    )
    assert "The comment was left on /src/a.py:12." in anchored
    assert "<code_context>\n@@ -1 +1 @@\n-a\n+b\n</code_context>" in anchored

    no_hunk = build_command_prompt(
        comment_content="/oc rename", data_context="<ctx/>", file_path="/src/a.py", line=1
    )
    assert "<code_context>" not in no_hunk


def test_build_review_prompt_uses_default_or_custom_instructions() -> None:
    default = build_review_prompt(tool_command="python -m tool", data_context="<ctx/>")
    assert 'python -m tool --file "<file_path>" --line <line_number>' in default
    assert DEFAULT_REVIEW_INSTRUCTIONS in default
    assert default.endswith("<ctx/>")

    custom = build_review_prompt(
        tool_command="python -m tool", data_context="<ctx/>", custom_prompt="  Only check SQL.  "
    )
    assert "Only check SQL." in custom
    assert DEFAULT_REVIEW_INSTRUCTIONS not in custom

    blank = build_review_prompt(tool_command="t", data_context="c", custom_prompt="   ")
    assert DEFAULT_REVIEW_INSTRUCTIONS in blank


def test_build_summary_prompt() -> None:
    assert build_summary_prompt("Renamed x") == (
        "Summarize the following in less than 40 characters:\n\nRenamed x"
    )
