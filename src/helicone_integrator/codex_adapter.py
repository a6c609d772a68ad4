from __future__ import annotations

from pathlib import Path
import json
import logging
import subprocess
from typing import cast

from helicone_integrator.agent_adapter import AgentAdapter, AgentError, AgentRunResult
from helicone_integrator.config import CodexConfig
from helicone_integrator.git_ops import WorkspaceManager
from helicone_integrator.models import WorkspaceHandle, parse_github_repo_url
from helicone_integrator.observability import log_event
from helicone_integrator.prompts import build_feedback_prompt, build_integration_prompt
from helicone_integrator.shell import CommandError, run


LOGGER = logging.getLogger("helicone_integrator.codex_adapter")
_DEFAULT_SUMMARY = "Integrated Helicone observability into the project"


class CodexAdapter(AgentAdapter):
    """Runs `codex exec` in the working copy and reports what changed on disk."""

    def __init__(
        self,
        config: CodexConfig,
        workspace: WorkspaceManager,
        *,
        guidance: str | None = None,
    ) -> None:
        self._config = config
        self._workspace = workspace
        self._guidance = guidance

    def run_task(self, handle: WorkspaceHandle, task: str) -> AgentRunResult:
        prompt = build_integration_prompt(
            repo_full_name=_repo_label(handle.clone_url),
            task=task,
            base_branch=handle.base_branch,
            guidance=self._guidance,
        )
        cmd = ["codex", "exec", "--json", "--skip-git-repo-check"]
        self._append_common_options(cmd)
        cmd.append("-")
        return self._invoke(handle, cmd=cmd, prompt=prompt, mode="task", previous_token=None)

    def resume(
        self, handle: WorkspaceHandle, continuation_token: str | None, feedback: str
    ) -> AgentRunResult:
        prompt = build_feedback_prompt(feedback=feedback)
        if continuation_token is None:
            # The first run never reported a thread id; start a fresh session with the feedback.
            log_event(LOGGER, "codex_resume_without_thread", workspace_path=handle.path)
            cmd = ["codex", "exec", "--json", "--skip-git-repo-check"]
        else:
            cmd = ["codex", "exec", "resume", "--json", "--skip-git-repo-check", continuation_token]
        self._append_common_options(cmd)
        cmd.append("-")
        return self._invoke(
            handle, cmd=cmd, prompt=prompt, mode="feedback", previous_token=continuation_token
        )

    def _invoke(
        self,
        handle: WorkspaceHandle,
        *,
        cmd: list[str],
        prompt: str,
        mode: str,
        previous_token: str | None,
    ) -> AgentRunResult:
        if not self._config.enabled:
            raise AgentError("Codex is disabled in config", retryable=False)

        base_sha = self._workspace.head_sha(handle)
        log_event(
            LOGGER,
            "codex_invocation_started",
            mode=mode,
            workspace_path=handle.path,
            thread_id=previous_token,
        )
        try:
            raw_events = run(
                cmd,
                cwd=Path(handle.path),
                input_text=prompt,
                timeout_seconds=self._config.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise AgentError(
                f"Codex did not finish within {self._config.timeout_seconds} seconds"
            ) from exc
        except CommandError as exc:
            raise AgentError(f"Codex exited with status {exc.exit_code}") from exc

        thread_id = _extract_thread_id(raw_events) or previous_token
        summary = _extract_final_agent_message(raw_events) or _DEFAULT_SUMMARY
        head_sha = self._workspace.head_sha(handle)
        modified, added = self._workspace.changes_since(handle, base_sha)
        result = AgentRunResult(
            continuation_token=thread_id,
            summary=summary.strip(),
            modified_files=modified,
            added_files=added,
            committed=head_sha != base_sha,
        )
        log_event(
            LOGGER,
            "codex_invocation_finished",
            mode=mode,
            thread_id=thread_id,
            modified_count=len(modified),
            added_count=len(added),
            committed=result.committed,
        )
        return result

    def _append_common_options(self, cmd: list[str]) -> None:
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.sandbox:
            cmd.extend(["--sandbox", self._config.sandbox])
        if self._config.profile:
            cmd.extend(["--profile", self._config.profile])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)


def _repo_label(clone_url: str) -> str:
    try:
        owner, name = parse_github_repo_url(clone_url)
    except ValueError:
        return clone_url
    return f"{owner}/{name}"


def _extract_thread_id(raw_events: str) -> str | None:
    for line in raw_events.splitlines():
        payload = _parse_event_line(line.strip())
        if payload is None or payload.get("type") != "thread.started":
            continue
        thread_id = payload.get("thread_id")
        if isinstance(thread_id, str) and thread_id:
            return thread_id
    return None


def _extract_final_agent_message(raw_events: str) -> str | None:
    last_message: str | None = None
    for line in raw_events.splitlines():
        payload = _parse_event_line(line.strip())
        if payload is None or payload.get("type") != "item.completed":
            continue
        item_obj = _as_object_dict(payload.get("item"))
        if item_obj is None:
            continue
        message_text = item_obj.get("text")
        if item_obj.get("type") == "agent_message" and isinstance(message_text, str):
            if message_text.strip():
                last_message = message_text
    return last_message


def _parse_event_line(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    return _as_object_dict(payload)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
