from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Final, Literal


IntegrationPhase = Literal[
    "forking",
    "cloning",
    "integrating",
    "pushing",
    "creating_review_pr",
    "awaiting_review",
    "applying_feedback",
    "creating_pr",
    "completed",
    "rejected",
    "failed",
]
RunStatus = Literal["pending", "running", "waiting", "completed", "rejected", "failed"]

TERMINAL_RUN_STATUSES: Final[frozenset[str]] = frozenset({"completed", "rejected", "failed"})

_INTEGRATION_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,63}")
_GITHUB_URL_PATTERN = re.compile(
    r"^(?:https?://github\.com/|git@github\.com:|ssh://git@github\.com/)"
    r"(?P<owner>[A-Za-z0-9_.-]+)/(?P<name>[A-Za-z0-9_.-]+?)(?:\.git)?/?$"
)


@dataclass(frozen=True)
class IntegrationRequest:
    repo_url: str
    repo_owner: str
    repo_name: str
    integration_id: str

    @property
    def full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    def validate(self) -> None:
        if not self.repo_owner.strip() or not self.repo_name.strip():
            raise ValueError("repo_owner and repo_name must be non-empty")
        if not self.repo_url.strip():
            raise ValueError("repo_url must be non-empty")
        if _INTEGRATION_ID_PATTERN.fullmatch(self.integration_id) is None:
            raise ValueError(
                f"Invalid integration id {self.integration_id!r}: use 1-64 characters "
                "from [A-Za-z0-9._-], starting with a letter or digit"
            )

    @classmethod
    def from_url(cls, repo_url: str, *, integration_id: str) -> IntegrationRequest:
        owner, name = parse_github_repo_url(repo_url)
        request = cls(
            repo_url=f"https://github.com/{owner}/{name}",
            repo_owner=owner,
            repo_name=name,
            integration_id=integration_id,
        )
        request.validate()
        return request


@dataclass(frozen=True)
class ForkResult:
    fork_owner: str
    fork_name: str
    clone_url: str
    default_branch: str
    upstream_default_branch: str

    @property
    def full_name(self) -> str:
        return f"{self.fork_owner}/{self.fork_name}"


@dataclass(frozen=True)
class WorkspaceHandle:
    integration_id: str
    path: str
    clone_url: str
    base_branch: str


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str
    state: str


@dataclass(frozen=True)
class StagedBranch:
    branch: str
    head_sha: str
    committed: bool
    compare_url: str | None


@dataclass(frozen=True)
class ChangeAttempt:
    """One agent run inside the review loop; superseded by the next attempt."""

    ordinal: int
    continuation_token: str | None
    modified_files: tuple[str, ...]
    added_files: tuple[str, ...]
    summary: str
    changes_summary: str
    agent_committed: bool


@dataclass(frozen=True)
class ReviewDecision:
    approved: bool
    feedback: str | None = None

    @classmethod
    def normalized(cls, approved: bool, feedback: str | None) -> ReviewDecision:
        if not isinstance(approved, bool):
            raise ValueError("approved must be a boolean")
        text = feedback.strip() if isinstance(feedback, str) else None
        return cls(approved=approved, feedback=text or None)


@dataclass(frozen=True)
class StatusEvent:
    integration_id: str
    status: IntegrationPhase
    message: str
    staging_url: str | None = None
    pr_url: str | None = None


@dataclass(frozen=True)
class StatusEventRecord:
    seq: int
    integration_id: str
    status: str
    message: str
    staging_url: str | None
    pr_url: str | None
    created_at: str


@dataclass(frozen=True)
class IntegrationRecord:
    integration_id: str
    repo_url: str
    repo_owner: str
    repo_name: str
    status: RunStatus
    phase: str | None
    message: str | None
    attempt: int
    staging_url: str | None
    pr_url: str | None
    review_window: int
    review_open: bool
    review_deadline: str | None
    cancel_requested: bool
    error: str | None
    created_at: str
    updated_at: str

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def request(self) -> IntegrationRequest:
        return IntegrationRequest(
            repo_url=self.repo_url,
            repo_owner=self.repo_owner,
            repo_name=self.repo_name,
            integration_id=self.integration_id,
        )


@dataclass(frozen=True)
class IntegrationOutcome:
    integration_id: str
    phase: IntegrationPhase
    message: str
    attempts: int
    staging_url: str | None = None
    pr_url: str | None = None


def parse_github_repo_url(repo_url: str) -> tuple[str, str]:
    match = _GITHUB_URL_PATTERN.match(repo_url.strip())
    if match is None:
        raise ValueError(
            f"Invalid GitHub URL {repo_url!r}. Expected format: https://github.com/owner/repo"
        )
    return match.group("owner"), match.group("name")

