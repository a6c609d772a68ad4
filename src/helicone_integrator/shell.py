from __future__ import annotations

from pathlib import Path
import logging
import subprocess

from helicone_integrator.observability import log_error_event


LOGGER = logging.getLogger("helicone_integrator.shell")


class CommandError(RuntimeError):
    """A checked subprocess exited non-zero. `stderr` is kept for status-code parsing."""

    def __init__(self, message: str, *, argv: tuple[str, ...], exit_code: int, stderr: str) -> None:
        super().__init__(message)
        self.argv = argv
        self.exit_code = exit_code
        self.stderr = stderr


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    timeout_seconds: float | None = None,
) -> str:
    """Run `argv` and return its stdout.

    `subprocess.TimeoutExpired` propagates unchanged so callers can map it onto
    their own error type.
    """
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        input=input_text,
        text=True,
        capture_output=True,
        check=False,
        timeout=timeout_seconds,
    )
    if not check or proc.returncode == 0:
        return proc.stdout

    command = " ".join(argv)
    log_error_event(
        LOGGER,
        "command_failed",
        command=command,
        exit_code=proc.returncode,
        stderr=_preview(proc.stderr),
        stdout=_preview(proc.stdout),
    )
    raise CommandError(
        f"Command failed\ncmd: {command}\nexit: {proc.returncode}\n"
        f"stdout:\n{proc.stdout}\nstderr:\n{proc.stderr}",
        argv=tuple(argv),
        exit_code=proc.returncode,
        stderr=proc.stderr,
    )


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."
