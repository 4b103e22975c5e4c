from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import json
import logging
import os
from pathlib import Path
import subprocess
import sys
import threading
import time
from typing import cast

import httpx

from ocrunner.models import AgentConfig, AgentSession
from ocrunner.observability import log_event, log_warning
from ocrunner.shell import CommandError, run


LOGGER = logging.getLogger("ocrunner.agent_server")
CONNECT_RETRY_DELAY_SECONDS = 0.3
CONNECT_MAX_RETRIES = 30
TERMINATE_TIMEOUT_SECONDS = 5.0
_LOG_SERVICE_NAME = "ocrunner"
_SSE_DATA_PREFIX = "data: "

TOOL_LABELS: dict[str, str] = {
    "todowrite": "Todo",
    "todoread": "Todo",
    "bash": "Bash",
    "edit": "Edit",
    "glob": "Glob",
    "grep": "Grep",
    "list": "List",
    "read": "Read",
    "write": "Write",
    "websearch": "Search",
}


class AgentServerError(RuntimeError):
    pass


class AgentNotInstalledError(AgentServerError):
    pass


class AgentNotReadyError(AgentServerError):
    pass


class AgentSessionError(AgentServerError):
    pass


class AgentPromptError(AgentServerError):
    pass


@dataclass(frozen=True)
class ToolCompleted:
    tool: str
    title: str


@dataclass(frozen=True)
class TextFinalized:
    text: str


@dataclass(frozen=True)
class SessionUpdated:
    session_id: str
    title: str


AgentEvent = ToolCompleted | TextFinalized | SessionUpdated
ProgressSink = Callable[[str], None]


def assert_agent_installed() -> None:
    try:
        version = run(["opencode", "--version"]).strip()
    except (CommandError, OSError) as exc:
        raise AgentNotInstalledError(
            "OpenCode CLI is not installed on this agent. Please install it following the "
            "instructions at: https://opencode.ai/"
        ) from exc
    log_event(LOGGER, "agent_cli_detected", version=version)


class AgentServer:
    """Owns one ``opencode serve`` subprocess and the HTTP session spoken with it.

    A server is created per run. ``close`` is idempotent and safe to call before
    ``spawn`` or after a partial startup.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        sink: ProgressSink | None = None,
        retry_delay_seconds: float = CONNECT_RETRY_DELAY_SECONDS,
        max_retries: int = CONNECT_MAX_RETRIES,
    ) -> None:
        self._config = config
        self.base_url = f"http://{config.host}:{config.port}"
        self._transport = transport
        self._sink = sink or _print_progress
        self._retry_delay_seconds = retry_delay_seconds
        self._max_retries = max_retries
        self._process: subprocess.Popen[bytes] | None = None
        self._client: httpx.Client | None = None
        self._reader: EventStreamReader | None = None
        self._session: AgentSession | None = None
        self._agent_names: dict[str, str | None] = {}

    @property
    def session(self) -> AgentSession | None:
        return self._session

    def spawn(self, workspace_dir: Path, *, extra_env: Mapping[str, str] | None = None) -> None:
        if self._process is not None:
            raise AgentServerError("Agent server already spawned for this run")
        env = dict(os.environ)
        if extra_env:
            env.update(extra_env)
        self._process = subprocess.Popen(
            [
                "opencode",
                "serve",
                f"--hostname={self._config.host}",
                f"--port={self._config.port}",
            ],
            cwd=str(workspace_dir),
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        self._client = self._new_client(timeout=httpx.Timeout(30.0))
        log_event(
            LOGGER,
            "agent_server_spawned",
            pid=self._process.pid,
            base_url=self.base_url,
            workspace=str(workspace_dir),
        )

    def connect(self) -> None:
        client = self._require_client()
        for attempt in range(1, self._max_retries + 1):
            try:
                response = client.post(
                    "/log",
                    json={
                        "service": _LOG_SERVICE_NAME,
                        "level": "info",
                        "message": "Connecting to OpenCode server",
                    },
                )
                if response.is_success:
                    log_event(LOGGER, "agent_server_ready", attempts=attempt)
                    return
            except httpx.HTTPError:
                pass
            if attempt < self._max_retries:
                time.sleep(self._retry_delay_seconds)
        raise AgentNotReadyError(
            f"Agent server did not become ready after {self._max_retries} attempts"
        )

    def create_session(self) -> AgentSession:
        if self._session is not None:
            raise AgentSessionError("A session was already created for this run")
        response = self._require_client().post("/session", json={})
        if not response.is_success:
            raise AgentSessionError(f"Session creation failed with status {response.status_code}")
        payload = _as_object_dict(response.json()) or {}
        session_id = payload.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise AgentSessionError("Session creation response did not include an id")
        self._session = AgentSession(
            id=session_id,
            title=_as_string(payload.get("title")),
            version=_as_string(payload.get("version")),
        )
        log_event(LOGGER, "agent_session_created", session_id=session_id)
        return self._session

    def resolve_agent_name(self, requested: str | None) -> str | None:
        if not requested:
            return None
        if requested in self._agent_names:
            return self._agent_names[requested]

        resolved: str | None = None
        response = self._require_client().get("/agent")
        agents = response.json() if response.is_success else []
        match = None
        if isinstance(agents, list):
            for item in agents:
                item_obj = _as_object_dict(item)
                if item_obj is not None and item_obj.get("name") == requested:
                    match = item_obj
                    break
        if match is None:
            log_warning(LOGGER, "agent_fallback_default", agent=requested, reason="not_found")
        elif match.get("mode") == "subagent":
            log_warning(LOGGER, "agent_fallback_default", agent=requested, reason="subagent")
        else:
            resolved = requested
        self._agent_names[requested] = resolved
        return resolved

    def send_prompt(
        self, session: AgentSession, text: str, agent: AgentConfig | None = None
    ) -> str:
        config = agent or self._config
        body: dict[str, object] = {
            "model": {"providerID": config.provider_id, "modelID": config.model_id},
            "parts": [{"type": "text", "text": text}],
        }
        agent_name = self.resolve_agent_name(config.name)
        if agent_name is not None:
            body["agent"] = agent_name

        log_event(
            LOGGER,
            "agent_prompt_started",
            session_id=session.id,
            agent=agent_name,
            prompt_chars=len(text),
        )
        response = self._require_client().post(
            f"/session/{session.id}/message", json=body, timeout=None
        )
        if not response.is_success:
            raise AgentPromptError(f"OpenCode prompt failed with status {response.status_code}")
        result = extract_final_text(response.json())
        log_event(
            LOGGER,
            "agent_prompt_completed",
            session_id=session.id,
            response_chars=len(result),
        )
        return result

    def stream_events(self, session: AgentSession) -> EventStreamReader:
        if self._reader is not None:
            return self._reader
        client = self._new_client(timeout=httpx.Timeout(10.0, read=None))
        self._reader = EventStreamReader(client, session.id, sink=self._sink)
        self._reader.start()
        return self._reader

    def close(self) -> None:
        if self._reader is not None:
            self._reader.stop()
            self._reader = None
        if self._process is not None:
            process = self._process
            self._process = None
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=TERMINATE_TIMEOUT_SECONDS)
                except subprocess.TimeoutExpired:
                    process.kill()
            log_event(LOGGER, "agent_server_stopped", pid=process.pid)
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> AgentServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _new_client(self, *, timeout: httpx.Timeout) -> httpx.Client:
        if self._transport is not None:
            return httpx.Client(base_url=self.base_url, timeout=timeout, transport=self._transport)
        return httpx.Client(base_url=self.base_url, timeout=timeout)

    def _require_client(self) -> httpx.Client:
        if self._client is None:
            raise AgentServerError("Agent server has not been spawned")
        return self._client


class EventStreamReader:
    """Background reader that renders progress events for one session.

    Events are handled in arrival order on a single daemon thread. Nothing read
    here can fail the run; ``stop`` never waits for the thread.
    """

    def __init__(self, client: httpx.Client, session_id: str, *, sink: ProgressSink) -> None:
        self._client = client
        self._session_id = session_id
        self._sink = sink
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name="ocrunner-agent-events", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._client.close()

    def join(self, timeout: float | None = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def handle_line(self, line: str) -> None:
        payload = parse_sse_line(line)
        if payload is None:
            return
        event = parse_agent_event(payload, self._session_id)
        if event is None:
            return
        rendered = render_event(event)
        if rendered is not None:
            self._sink(rendered)

    def _run(self) -> None:
        try:
            with self._client.stream("GET", "/event") as response:
                for line in response.iter_lines():
                    if self._stop.is_set():
                        break
                    self.handle_line(line)
        except Exception as exc:  # noqa: BLE001
            if not self._stop.is_set():
                log_warning(
                    LOGGER,
                    "agent_event_stream_failed",
                    session_id=self._session_id,
                    error_type=type(exc).__name__,
                )
        log_event(LOGGER, "agent_event_stream_ended", session_id=self._session_id)


def parse_sse_line(line: str) -> dict[str, object] | None:
    if not line.startswith(_SSE_DATA_PREFIX):
        return None
    raw = line[len(_SSE_DATA_PREFIX) :].strip()
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return _as_object_dict(payload)


def parse_agent_event(payload: dict[str, object], session_id: str) -> AgentEvent | None:
    properties = _as_object_dict(payload.get("properties"))
    if properties is None:
        return None
    event_type = payload.get("type")

    if event_type == "session.updated":
        info = _as_object_dict(properties.get("info"))
        if info is None or info.get("id") != session_id:
            return None
        return SessionUpdated(session_id=session_id, title=_as_string(info.get("title")))

    if event_type != "message.part.updated":
        return None
    part = _as_object_dict(properties.get("part"))
    if part is None or part.get("sessionID") != session_id:
        return None

    if part.get("type") == "tool":
        state = _as_object_dict(part.get("state")) or {}
        if state.get("status") != "completed":
            return None
        return ToolCompleted(tool=_as_string(part.get("tool")), title=_tool_title(state))

    if part.get("type") == "text":
        timing = _as_object_dict(part.get("time")) or {}
        if not timing.get("end"):
            return None
        return TextFinalized(text=_as_string(part.get("text")))

    return None


def render_event(event: AgentEvent) -> str | None:
    if isinstance(event, ToolCompleted):
        label = TOOL_LABELS.get(event.tool, event.tool)
        return f"| {label:<7}  {event.title}"
    if isinstance(event, TextFinalized):
        return f"\n{event.text}\n"
    return None


def extract_final_text(payload: object) -> str:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        return ""
    parts = payload_obj.get("parts")
    if not isinstance(parts, list):
        return ""
    last_text = ""
    for part in parts:
        part_obj = _as_object_dict(part)
        if part_obj is None or part_obj.get("type") != "text":
            continue
        last_text = _as_string(part_obj.get("text"))
    return last_text


def _tool_title(state: dict[str, object]) -> str:
    title = state.get("title")
    if isinstance(title, str) and title:
        return title
    tool_input = state.get("input")
    if isinstance(tool_input, dict) and tool_input:
        return json.dumps(tool_input)
    return "Unknown"


def _print_progress(text: str) -> None:
    sys.stdout.write(f"{text}\n")
    sys.stdout.flush()


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if isinstance(value, str):
        return value
    return ""
