from __future__ import annotations

from pathlib import Path
import logging
import re
import subprocess


class CommandError(RuntimeError):
    pass


LOGGER = logging.getLogger("ocrunner.shell")
_URL_CREDENTIALS_PATTERN = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^@/\s]+@")


def redact(text: str) -> str:
    return _URL_CREDENTIALS_PATTERN.sub(r"\g<scheme>***@", text)


def _preview(text: str, *, limit: int = 200) -> str:
    compact = redact(text).replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
) -> str:
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        input=input_text,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and proc.returncode != 0:
        command = redact(" ".join(argv))
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            command,
            proc.returncode,
            _preview(proc.stderr),
            _preview(proc.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {command}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{redact(proc.stdout)}\n"
            f"stderr:\n{redact(proc.stderr)}"
        )
    return proc.stdout
