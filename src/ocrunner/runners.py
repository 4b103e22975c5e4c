from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
import logging

from ocrunner import review_tool
from ocrunner.agent_server import AgentServer, assert_agent_installed
from ocrunner.azure_gateway import AzureDevOpsGateway
from ocrunner.feedback import FeedbackCoordinator
from ocrunner.git_ops import CloneSpec, WorkspaceManager
from ocrunner.models import (
    AgentConfig,
    AgentSession,
    PullRequest,
    PullRequestContext,
    ResolvedRunConfig,
    RunConfig,
    RunMode,
    TriggerContext,
    Workspace,
)
from ocrunner.observability import log_event, log_warning
from ocrunner.prompts import (
    build_command_prompt,
    build_pr_data_context,
    build_review_prompt,
    build_summary_prompt,
    comment_footer,
)
from ocrunner.triggers import TriggerError, resolve_trigger, validate_trigger


LOGGER = logging.getLogger("ocrunner.runners")
COMMAND_SUMMARY_HEADER = "## OpenCode Command Result"
REVIEW_SUMMARY_HEADER = "## OpenCode Review Summary"
MAX_COMMIT_SUBJECT_CHARS = 40
DEFAULT_COMMIT_SUBJECT = "Apply requested changes"

AgentServerFactory = Callable[[AgentConfig], AgentServer]


def resolve_run(config: RunConfig, gateway: AzureDevOpsGateway) -> ResolvedRunConfig:
    trigger = TriggerContext()
    if config.thread_id is not None and config.comment_id is not None:
        thread = gateway.get_thread(config.pull_request_id, config.thread_id)
        comment = thread.find_comment(config.comment_id)
        if comment is None:
            raise TriggerError(
                f"Comment #{config.comment_id} not found in thread #{config.thread_id}"
            )
        trigger = TriggerContext(thread=thread, comment=comment)
    return resolve_trigger(config, trigger)


def fetch_pull_request_context(
    gateway: AzureDevOpsGateway, pull_request_id: int
) -> PullRequestContext:
    with ThreadPoolExecutor(max_workers=3, thread_name_prefix="ocrunner-fetch") as pool:
        pull_request_future = pool.submit(
            gateway.get_pull_request, pull_request_id, include_commits=True
        )
        iterations_future = pool.submit(gateway.get_iterations, pull_request_id)
        threads_future = pool.submit(gateway.get_threads, pull_request_id)
        pull_request = pull_request_future.result()
        iterations = iterations_future.result()
        threads = threads_future.result()

    changes = ()
    if iterations:
        latest_iteration_id = max(iteration.iteration_id for iteration in iterations)
        changes = gateway.get_iteration_changes(pull_request_id, latest_iteration_id)
    return PullRequestContext(
        pull_request=pull_request,
        iterations=iterations,
        threads=threads,
        changes=changes,
    )


def commit_subject(summary: str) -> str:
    for raw_line in summary.splitlines():
        cleaned = raw_line.strip().strip("`\"'").strip()
        if cleaned:
            return cleaned[:MAX_COMMIT_SUBJECT_CHARS].rstrip()
    return DEFAULT_COMMIT_SUBJECT


class ModeRunner(ABC):
    mode: RunMode
    summary_header: str
    announcement: str
    failure_label: str

    def __init__(
        self,
        resolved: ResolvedRunConfig,
        *,
        gateway: AzureDevOpsGateway,
        workspaces: WorkspaceManager | None = None,
        agent_factory: AgentServerFactory = AgentServer,
    ) -> None:
        self._resolved = resolved
        self._config = resolved.config
        self._gateway = gateway
        self._workspaces = workspaces or WorkspaceManager(resolved.config.workspace_path)
        self._agent_factory = agent_factory
        repository = self._config.repository
        self._feedback = FeedbackCoordinator(
            gateway,
            pull_request_id=self._config.pull_request_id,
            trigger=resolved.trigger,
            summary_header=self.summary_header,
            footer=comment_footer(repository.organization, repository.project, self._config.build_id),
        )
        self._agent: AgentServer | None = None
        self._workspace: Workspace | None = None

    def run(self) -> str:
        self._validate()
        log_event(
            LOGGER,
            "run_started",
            mode=self.mode,
            pr_id=self._config.pull_request_id,
            thread_id=self._config.thread_id,
            comment_id=self._config.comment_id,
        )
        try:
            assert_agent_installed()
            self._feedback.announce(self.announcement)
            result = self._execute()
            self._feedback.finalize_success(result)
        except Exception as exc:
            log_event(
                LOGGER,
                "run_failed",
                mode=self.mode,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._feedback.finalize_failure(
                f"{self.summary_header}\n\n{self.failure_label} failed: {exc}"
            )
            raise
        finally:
            self._teardown()
        log_event(LOGGER, "run_completed", mode=self.mode, response_chars=len(result))
        return result

    def _validate(self) -> None:
        comment = self._resolved.trigger.comment
        if comment is not None:
            validate_trigger(comment.content, self.mode)

    @abstractmethod
    def _execute(self) -> str:
        """Do the mode-specific work and return the text to report on the pull request."""

    def _acquire_workspace(self, pull_request: PullRequest) -> Workspace:
        repository = self._config.repository
        self._workspace = self._workspaces.acquire(
            skip_clone=self._config.skip_clone,
            supplied_path=self._config.workspace_path,
            clone_spec=CloneSpec(
                organization=repository.organization,
                project=repository.project,
                repository_id=repository.repository_id,
                branch=pull_request.source_branch,
                token=self._config.token,
            ),
        )
        return self._workspace

    def _start_agent(
        self, workspace: Workspace, *, extra_env: Mapping[str, str] | None = None
    ) -> tuple[AgentServer, AgentSession]:
        agent = self._agent_factory(self._config.agent)
        self._agent = agent
        agent.spawn(workspace.path, extra_env=extra_env)
        agent.connect()
        session = agent.create_session()
        agent.stream_events(session)
        return agent, session

    def _teardown(self) -> None:
        if self._agent is not None:
            try:
                self._agent.close()
            except Exception as exc:  # noqa: BLE001
                log_warning(LOGGER, "agent_server_close_failed", error_type=type(exc).__name__)
            self._agent = None
        self._workspaces.release(self._workspace)
        self._workspace = None


class CommandRunner(ModeRunner):
    mode: RunMode = "command"
    summary_header = COMMAND_SUMMARY_HEADER
    announcement = "Working on it..."
    failure_label = "Command"

    def _validate(self) -> None:
        if not self._resolved.trigger.comment_activated:
            raise TriggerError("Command mode requires a trigger thread and comment")
        super()._validate()

    def _execute(self) -> str:
        trigger = self._resolved.trigger
        if trigger.thread is None or trigger.comment is None:
            raise TriggerError("Command mode requires a trigger thread and comment")

        context = fetch_pull_request_context(self._gateway, self._config.pull_request_id)
        workspace = self._acquire_workspace(context.pull_request)
        self._workspaces.configure_identity(workspace)

        anchor = trigger.thread.anchor
        diff_hunk = ""
        if anchor is not None:
            diff_hunk = self._workspaces.file_diff_hunk(
                workspace, context.pull_request.target_branch, anchor.file_path, anchor.line
            )
        prompt = build_command_prompt(
            comment_content=trigger.comment.content,
            data_context=build_pr_data_context(
                context.pull_request, context.threads, context.changes
            ),
            file_path=anchor.file_path if anchor else None,
            line=anchor.line if anchor else None,
            diff_hunk=diff_hunk,
        )

        agent, session = self._start_agent(workspace)
        response = agent.send_prompt(session, prompt)

        if self._workspaces.has_uncommitted_changes(workspace):
            summary = agent.send_prompt(session, build_summary_prompt(response))
            message = commit_subject(summary)
            self._workspaces.commit_all(workspace, message)
            self._workspaces.push(workspace)
            log_event(
                LOGGER,
                "changes_pushed",
                branch=context.pull_request.source_branch,
                message=message,
            )
        else:
            log_event(LOGGER, "no_changes_detected")
        return response


class ReviewRunner(ModeRunner):
    mode: RunMode = "review"
    summary_header = REVIEW_SUMMARY_HEADER
    announcement = "Reviewing pull request..."
    failure_label = "Review"

    def _execute(self) -> str:
        context = fetch_pull_request_context(self._gateway, self._config.pull_request_id)
        workspace = self._acquire_workspace(context.pull_request)

        prompt = build_review_prompt(
            tool_command=review_tool.command_line(),
            data_context=build_pr_data_context(
                context.pull_request, context.threads, context.changes
            ),
            custom_prompt=self._config.custom_prompt,
        )
        repository = self._config.repository
        agent, session = self._start_agent(
            workspace,
            extra_env=review_tool.build_environment(
                organization=repository.organization,
                project=repository.project,
                repository_id=repository.repository_id,
                pull_request_id=self._config.pull_request_id,
                token=self._config.token,
            ),
        )
        return agent.send_prompt(session, prompt)


def execute_run(
    config: RunConfig,
    *,
    gateway: AzureDevOpsGateway | None = None,
    workspaces: WorkspaceManager | None = None,
    agent_factory: AgentServerFactory = AgentServer,
) -> str:
    owns_gateway = gateway is None
    active_gateway = gateway or AzureDevOpsGateway(
        config.repository.organization,
        config.repository.project,
        config.repository.repository_id,
        config.token,
    )
    try:
        resolved = resolve_run(config, active_gateway)
        runner_cls: type[ModeRunner] = CommandRunner if resolved.mode == "command" else ReviewRunner
        runner = runner_cls(
            resolved,
            gateway=active_gateway,
            workspaces=workspaces,
            agent_factory=agent_factory,
        )
        return runner.run()
    finally:
        if owns_gateway:
            active_gateway.close()
