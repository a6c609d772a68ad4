from __future__ import annotations

from collections.abc import Callable
import json
import logging
import re
import time
from typing import cast
from urllib.parse import urlencode

from helicone_integrator.models import ForkResult, PullRequest
from helicone_integrator.observability import log_event
from helicone_integrator.shell import CommandError, run


LOGGER = logging.getLogger("helicone_integrator.github_gateway")
_HTTP_STATUS_PATTERN = re.compile(r"\(HTTP (\d{3})\)")
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 409, 429})
_FORK_READY_ATTEMPTS = 5
_FORK_READY_DELAY_SECONDS = 3.0


class HostAPIError(RuntimeError):
    """The source-hosting API rejected or failed a request.

    Retryability follows the status code unless `retryable` is given.
    """

    def __init__(
        self, message: str, *, status_code: int | None = None, retryable: bool | None = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        if self.status_code is None:
            return True
        if self.status_code in _RETRYABLE_CLIENT_STATUSES:
            return True
        return not 400 <= self.status_code < 500


class GitHubGateway:
    def __init__(self, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def fork_repository(self, owner: str, name: str) -> ForkResult:
        if not owner.strip() or not name.strip():
            raise HostAPIError(
                "Fork requires a non-empty owner and repository name", retryable=False
            )
        try:
            payload = self._api_json("POST", f"/repos/{owner}/{name}/forks", payload={})
            fork = _parse_fork(payload)
        except HostAPIError as exc:
            log_event(
                LOGGER,
                "github_fork_failed",
                repo_full_name=f"{owner}/{name}",
                status_code=exc.status_code,
            )
            raise HostAPIError(
                f"Failed to fork repository {owner}/{name}: {exc}", status_code=exc.status_code
            ) from exc
        log_event(
            LOGGER,
            "github_fork_created",
            repo_full_name=f"{owner}/{name}",
            fork_full_name=fork.full_name,
            default_branch=fork.default_branch,
        )
        self._wait_for_repository(fork.fork_owner, fork.fork_name)
        return fork

    def create_pull_request(
        self,
        *,
        owner: str,
        name: str,
        head: str,
        base: str,
        title: str,
        body: str,
    ) -> PullRequest:
        path = f"/repos/{owner}/{name}/pulls"
        try:
            payload = self._api_json(
                "POST",
                path,
                payload={"title": title, "head": head, "base": base, "body": body},
            )
            pull_request = _parse_pull_request(payload)
        except HostAPIError as exc:
            if exc.status_code == 422 and "already exists" in str(exc).lower():
                existing = self.find_pull_request_by_head(
                    owner=owner, name=name, head=head, base=base
                )
                if existing is not None:
                    log_event(
                        LOGGER,
                        "github_pr_reused",
                        repo_full_name=f"{owner}/{name}",
                        pr_number=existing.number,
                        head=head,
                    )
                    return existing
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=f"{owner}/{name}",
                base=base,
                head=head,
                status_code=exc.status_code,
            )
            raise HostAPIError(
                f"Failed to create pull request on {owner}/{name}: {exc}",
                status_code=exc.status_code,
            ) from exc
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=f"{owner}/{name}",
            pr_number=pull_request.number,
            pr_url=pull_request.html_url,
            base=base,
            head=head,
        )
        return pull_request

    def find_pull_request_by_head(
        self,
        *,
        owner: str,
        name: str,
        head: str,
        base: str | None = None,
    ) -> PullRequest | None:
        """Return the newest open PR whose head matches; `head` may be `branch` or `owner:branch`."""
        qualified_head = head if ":" in head else f"{owner}:{head}"
        query_items: dict[str, str] = {"state": "open", "head": qualified_head, "per_page": "100"}
        if base is not None:
            query_items["base"] = base
        payload = self._api_json("GET", f"/repos/{owner}/{name}/pulls?{urlencode(query_items)}")
        if not isinstance(payload, list):
            raise HostAPIError("Unexpected GitHub response: expected list for pull request lookup")

        candidates = [
            _parse_pull_request(item) for item in payload if _as_object_dict(item) is not None
        ]
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=qualified_head,
            base=base,
            found=bool(candidates),
        )
        if not candidates:
            return None
        return max(candidates, key=lambda pr: pr.number)

    def get_repository(self, owner: str, name: str) -> dict[str, object]:
        payload = self._api_json("GET", f"/repos/{owner}/{name}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise HostAPIError("Unexpected GitHub response: expected object for repository")
        return payload_obj

    def _wait_for_repository(self, owner: str, name: str) -> None:
        # Forks are created asynchronously; the API can 404 for a few seconds.
        for attempt in range(1, _FORK_READY_ATTEMPTS + 1):
            try:
                self.get_repository(owner, name)
                return
            except HostAPIError as exc:
                if exc.status_code != 404:
                    raise
            log_event(
                LOGGER,
                "github_fork_not_ready",
                fork_full_name=f"{owner}/{name}",
                attempt=attempt,
            )
            if attempt < _FORK_READY_ATTEMPTS:
                self._sleep(_FORK_READY_DELAY_SECONDS)
        # Re-forking an existing fork returns it, so the whole fork call may run again.
        raise HostAPIError(
            f"Fork {owner}/{name} is not readable yet after {_FORK_READY_ATTEMPTS} checks",
            status_code=404,
            retryable=True,
        )

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        cmd = ["gh", "api", "--method", method.upper(), path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        try:
            raw = run(cmd, input_text=stdin_payload)
        except CommandError as exc:
            raise HostAPIError(
                _summarize_api_error(exc.stderr), status_code=_parse_status_code(exc.stderr)
            ) from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise HostAPIError(f"GitHub returned non-JSON output for {method} {path}") from exc


def _parse_fork(payload: object) -> ForkResult:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise HostAPIError("Unexpected GitHub response: expected object for fork")
    owner_obj = _as_object_dict(payload_obj.get("owner"))
    parent_obj = _as_object_dict(payload_obj.get("parent"))
    fork_owner = _require_string(owner_obj.get("login") if owner_obj else None, field="owner.login")
    fork_name = _require_string(payload_obj.get("name"), field="name")
    clone_url = _require_string(payload_obj.get("clone_url"), field="clone_url")
    default_branch = _require_string(payload_obj.get("default_branch"), field="default_branch")
    upstream_default = parent_obj.get("default_branch") if parent_obj else None
    return ForkResult(
        fork_owner=fork_owner,
        fork_name=fork_name,
        clone_url=clone_url,
        default_branch=default_branch,
        upstream_default_branch=(
            upstream_default if isinstance(upstream_default, str) and upstream_default else default_branch
        ),
    )


def _parse_pull_request(payload: object) -> PullRequest:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise HostAPIError("Unexpected GitHub response: expected object for pull request")
    return PullRequest(
        number=_as_int(payload_obj.get("number"), field="number"),
        html_url=_require_string(payload_obj.get("html_url"), field="html_url"),
        state=_as_string(payload_obj.get("state")) or "open",
    )


def _parse_status_code(stderr: str) -> int | None:
    match = _HTTP_STATUS_PATTERN.search(stderr)
    if match is None:
        return None
    return int(match.group(1))


def _summarize_api_error(stderr: str) -> str:
    normalized = " ".join(line.strip() for line in stderr.splitlines() if line.strip())
    if not normalized:
        return "GitHub API request failed"
    if len(normalized) > 240:
        return normalized[:237] + "..."
    return normalized


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _require_string(value: object, *, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise HostAPIError(f"Unexpected GitHub response: missing {field}")
    return value


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise HostAPIError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise HostAPIError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise HostAPIError(f"Unexpected GitHub response type for {field}")
