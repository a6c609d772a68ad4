from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO, cast


_LOGGER_NAME: Final[str] = "helicone_integrator"
_INTEGRATION_ID: ContextVar[str | None] = ContextVar("integration_id", default=None)
_MAX_VALUE_LEN: Final[int] = 120
_LINE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"

# Lifecycle milestones an operator watching many integrations cares about.
_MILESTONE_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "integration_started",
        "integration_suspended",
        "integration_settled",
        "integration_cancel_requested",
        "status_reported",
        "github_fork_created",
        "github_pr_created",
        "codex_invocation_started",
        "codex_invocation_finished",
        "review_decision_delivered",
        "git_push_failed",
        "github_pr_create_failed",
        "leaf_call_retry_scheduled",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    """Route `helicone_integrator.*` events to stderr and, with a state dir, to log files.

    Quiet mode (`None`/`False`) drops everything. `low` keeps warnings plus
    lifecycle milestones; `high` keeps every event. With `state_dir`, lines are
    also appended to `<state_dir>/logs/YYYY-MM-DD.log` and, for events tied to
    an integration, to `<state_dir>/logs/integrations/<integration_id>.log`.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    mode = _parse_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        logs_dir = state_dir / "logs"
        handlers.append(_UtcDailyFileHandler(logs_dir=logs_dir))
        handlers.append(_IntegrationFileHandler(logs_dir=logs_dir))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LINE_FORMAT))
        if mode == "low":
            handler.addFilter(_MilestoneFilter())
        logger.addHandler(handler)

    logger.setLevel(logging.INFO)


@contextmanager
def logging_integration_context(integration_id: str) -> Iterator[None]:
    """Tag every event logged on this thread with `integration_id` until exit."""
    token = _INTEGRATION_ID.set(integration_id)
    try:
        yield
    finally:
        _INTEGRATION_ID.reset(token)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_format_event(event, fields))


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_format_event(event, fields))


def log_error_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.error(_format_event(event, fields))


def _format_event(event: str, fields: dict[str, object]) -> str:
    context_id = _INTEGRATION_ID.get()
    if context_id is not None and "integration_id" not in fields:
        fields = {**fields, "integration_id": context_id}
    parts = [f"event={_format_value(event)}"]
    parts.extend(f"{key}={_format_value(fields[key])}" for key in sorted(fields))
    return " ".join(parts)


def _format_value(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, str):
        text = " ".join(value.split())
        if len(text) > _MAX_VALUE_LEN:
            text = f"{text[:_MAX_VALUE_LEN]}..."
        text = text or "<empty>"
    else:
        text = f"<{type(value).__name__}>"

    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _parse_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    mode = verbose.strip().lower()
    if mode not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, mode)


def _event_name(message: str) -> str | None:
    head = message.split(" ", 1)[0]
    if not head.startswith("event="):
        return None
    return head[len("event=") :] or None


def _integration_id(message: str) -> str | None:
    # Integration ids never contain whitespace, so they are never quoted.
    for token in message.split(" ")[1:]:
        if token.startswith("integration_id="):
            value = token[len("integration_id=") :]
            return None if value in ("", "null") else value
    return None


class _MilestoneFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return _event_name(record.getMessage()) in _MILESTONE_EVENTS


class _RoutedFileHandler(logging.Handler):
    """Append each record to the file `_path_for` picks, keeping the last file open."""

    def __init__(self, *, logs_dir: Path) -> None:
        super().__init__()
        self._logs_dir = logs_dir
        self._stream: TextIO | None = None
        self._stream_path: Path | None = None

    def _path_for(self, record: logging.LogRecord) -> Path | None:
        raise NotImplementedError

    def emit(self, record: logging.LogRecord) -> None:
        try:
            path = self._path_for(record)
            if path is None:
                return
            stream = self._stream_for(path)
            stream.write(f"{self.format(record)}\n")
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            self._close_stream()
            super().close()
        finally:
            self.release()

    def _stream_for(self, path: Path) -> TextIO:
        if self._stream is None or self._stream_path != path:
            self._close_stream()
            path.parent.mkdir(parents=True, exist_ok=True)
            self._stream = path.open("a", encoding="utf-8")
            self._stream_path = path
        return self._stream

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()
        self._stream = None
        self._stream_path = None


class _UtcDailyFileHandler(_RoutedFileHandler):
    def _path_for(self, record: logging.LogRecord) -> Path | None:
        date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._logs_dir / f"{date_key}.log"


class _IntegrationFileHandler(_RoutedFileHandler):
    """One file per integration, so a single run can be read end to end."""

    def _path_for(self, record: logging.LogRecord) -> Path | None:
        integration_id = _integration_id(record.getMessage())
        if integration_id is None:
            return None
        return self._logs_dir / "integrations" / f"{integration_id}.log"
