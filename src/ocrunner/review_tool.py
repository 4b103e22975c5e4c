"""Inline review comment helper invoked by the agent during review runs.

Usage::

    python -m ocrunner.review_tool --file <path> --line <number> --comment "<text>"

Connection details come from the ``AZURE_DEVOPS_*`` environment variables that
the review runner hands to the agent process.
"""

from __future__ import annotations

import argparse
from collections.abc import Mapping, Sequence
import logging
import os
import posixpath
import re
import shlex
import sys

import httpx

from ocrunner.azure_gateway import AzureDevOpsError, AzureDevOpsGateway
from ocrunner.observability import log_warning


LOGGER = logging.getLogger("ocrunner.review_tool")
ENV_ORGANIZATION = "AZURE_DEVOPS_ORG"
ENV_PROJECT = "AZURE_DEVOPS_PROJECT"
ENV_REPOSITORY_ID = "AZURE_DEVOPS_REPO_ID"
ENV_PULL_REQUEST_ID = "AZURE_DEVOPS_PR_ID"
ENV_TOKEN = "AZURE_DEVOPS_PAT"
REQUIRED_ENV_VARS: tuple[str, ...] = (
    ENV_ORGANIZATION,
    ENV_PROJECT,
    ENV_REPOSITORY_ID,
    ENV_PULL_REQUEST_ID,
    ENV_TOKEN,
)


def command_line() -> str:
    return f"{shlex.quote(sys.executable)} -m ocrunner.review_tool"


def build_environment(
    *,
    organization: str,
    project: str,
    repository_id: str,
    pull_request_id: int,
    token: str,
) -> dict[str, str]:
    return {
        ENV_ORGANIZATION: organization,
        ENV_PROJECT: project,
        ENV_REPOSITORY_ID: repository_id,
        ENV_PULL_REQUEST_ID: str(pull_request_id),
        ENV_TOKEN: token,
    }


def normalize_file_path(file_path: str) -> str:
    normalized = posixpath.normpath(file_path.replace("\\", "/"))
    return normalized if normalized.startswith("/") else f"/{normalized}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m ocrunner.review_tool",
        description="Add an inline review comment to the current pull request",
    )
    parser.add_argument("-f", "--file", required=True, help="Repository path of the file")
    parser.add_argument("-l", "--line", required=True, help="Line number in the new version")
    parser.add_argument("-c", "--comment", required=True, help="Comment text (markdown)")
    return parser


def main(argv: Sequence[str] | None = None, *, environ: Mapping[str, str] | None = None) -> int:
    env = os.environ if environ is None else environ
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as exc:
        return 0 if exc.code == 0 else 1

    line = _parse_line(str(args.line))
    if line is None:
        print("--line must be a positive integer", file=sys.stderr)
        return 1
    if not str(args.file).strip() or not str(args.comment).strip():
        build_parser().print_usage(sys.stderr)
        return 1

    for key in REQUIRED_ENV_VARS:
        if not env.get(key):
            print(f"Missing required environment variable: {key}", file=sys.stderr)
            return 1
    pull_request_id = _parse_line(env[ENV_PULL_REQUEST_ID])
    if pull_request_id is None:
        print(f"{ENV_PULL_REQUEST_ID} must be a positive integer", file=sys.stderr)
        return 1

    file_path = normalize_file_path(str(args.file))
    gateway = AzureDevOpsGateway(
        env[ENV_ORGANIZATION],
        env[ENV_PROJECT],
        env[ENV_REPOSITORY_ID],
        env[ENV_TOKEN],
    )
    try:
        gateway.create_thread(
            pull_request_id,
            str(args.comment),
            status="active",
            file_path=file_path,
            line=line,
        )
    except (AzureDevOpsError, httpx.HTTPError) as exc:
        log_warning(LOGGER, "review_comment_failed", file_path=file_path, line=line)
        print(f"Warning: Failed to add comment: {exc}", file=sys.stderr)
        return 0
    finally:
        gateway.close()

    print(f"Comment added to {file_path}:{line}")
    return 0


def _parse_line(raw: str) -> int | None:
    candidate = raw.strip()
    if re.fullmatch(r"[0-9]+", candidate) is None:
        return None
    value = int(candidate)
    return value if value > 0 else None


if __name__ == "__main__":
    sys.exit(main())
