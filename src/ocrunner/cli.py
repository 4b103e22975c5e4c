from __future__ import annotations

import argparse
from collections.abc import Sequence
import logging
from pathlib import Path
import sys

from ocrunner.config import apply_overrides, load_config
from ocrunner.observability import configure_logging, log_event
from ocrunner.runners import execute_run


LOGGER = logging.getLogger("ocrunner.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ocrunner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Run the agent against one pull request in command or review mode"
    )
    run_parser.add_argument("--config", type=Path, default=Path("ocrunner.toml"))
    run_parser.add_argument(
        "--mode",
        choices=("command", "review"),
        help="Force a mode instead of detecting it from the trigger comment",
    )
    run_parser.add_argument("--pr-id", type=int, help="Pull request id")
    run_parser.add_argument("--thread-id", type=int, help="Thread holding the trigger comment")
    run_parser.add_argument("--comment-id", type=int, help="Trigger comment id")
    run_parser.add_argument(
        "--workspace",
        type=Path,
        help="Workspace root for clones, or the checkout itself with --skip-clone",
    )
    run_parser.add_argument(
        "--skip-clone",
        action="store_true",
        default=None,
        help="Use --workspace as an existing checkout instead of cloning",
    )
    run_parser.add_argument("--build-id", type=str, help="Pipeline build id for comment footers")
    run_parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="low",
        choices=("low", "high"),
        help="Enable runtime logging to stderr (default mode: low)",
    )
    run_parser.add_argument(
        "--log-file",
        type=Path,
        help="Also write runtime logs to this file",
    )

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, log_file=args.log_file)

    if args.command == "run":
        try:
            _cmd_run(args)
        except Exception as exc:  # noqa: BLE001
            log_event(LOGGER, "cli_failed", error_type=type(exc).__name__)
            print(f"error: {exc}", file=sys.stderr)
            sys.exit(1)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_run(args: argparse.Namespace) -> None:
    config = apply_overrides(
        load_config(args.config),
        mode=args.mode,
        pull_request_id=args.pr_id,
        thread_id=args.thread_id,
        comment_id=args.comment_id,
        workspace_path=args.workspace,
        skip_clone=args.skip_clone,
        build_id=args.build_id,
    )
    execute_run(config)
