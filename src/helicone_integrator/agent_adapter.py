from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from helicone_integrator.models import WorkspaceHandle


class AgentError(RuntimeError):
    """The coding agent could not be run, as opposed to running and changing nothing."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class AgentRunResult:
    continuation_token: str | None
    summary: str
    modified_files: tuple[str, ...]
    added_files: tuple[str, ...]
    committed: bool

    @property
    def has_changes(self) -> bool:
        return bool(self.modified_files or self.added_files)

    def to_json(self) -> dict[str, object]:
        return {
            "continuation_token": self.continuation_token,
            "summary": self.summary,
            "modified_files": list(self.modified_files),
            "added_files": list(self.added_files),
            "committed": self.committed,
        }

    @classmethod
    def from_json(cls, payload: object) -> AgentRunResult:
        if not isinstance(payload, dict):
            raise AgentError("Agent result must be an object", retryable=False)
        token = payload.get("continuation_token")
        summary = payload.get("summary")
        committed = payload.get("committed")
        if token is not None and not isinstance(token, str):
            raise AgentError("continuation_token must be a string or null", retryable=False)
        if not isinstance(summary, str):
            raise AgentError("summary must be a string", retryable=False)
        if not isinstance(committed, bool):
            raise AgentError("committed must be a boolean", retryable=False)
        return cls(
            continuation_token=token,
            summary=summary,
            modified_files=_paths(payload.get("modified_files"), field="modified_files"),
            added_files=_paths(payload.get("added_files"), field="added_files"),
            committed=committed,
        )


class AgentAdapter(ABC):
    @abstractmethod
    def run_task(self, handle: WorkspaceHandle, task: str) -> AgentRunResult:
        """Apply `task` to the working copy in place."""

    @abstractmethod
    def resume(
        self, handle: WorkspaceHandle, continuation_token: str | None, feedback: str
    ) -> AgentRunResult:
        """Continue the session behind `continuation_token` with reviewer feedback."""


def _paths(value: object, *, field: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise AgentError(f"{field} must be a list of strings", retryable=False)
    return tuple(value)
