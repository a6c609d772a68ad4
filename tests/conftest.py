from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from pathlib import Path

import pytest

from helicone_integrator.agent_adapter import AgentAdapter, AgentRunResult
from helicone_integrator.execution_policy import RetryPolicy
from helicone_integrator.models import (
    ForkResult,
    IntegrationOutcome,
    IntegrationRequest,
    PullRequest,
    StagedBranch,
    StatusEvent,
    WorkspaceHandle,
)
from helicone_integrator.review import ReviewDispatcher
from helicone_integrator.state import ReviewDelivery, StateStore
from helicone_integrator.status_reporter import CompositeStatusReporter, StatusReporter, StoreStatusReporter
from helicone_integrator.workflow import IntegrationWorkflow, WorkflowSettings
from helicone_integrator.workflow_runtime import WorkflowContext


SEVEN_DAYS = 7 * 24 * 60 * 60


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeGateway:
    def __init__(self) -> None:
        self.fork_calls: list[tuple[str, str]] = []
        self.created: list[dict[str, object]] = []
        self.fork_errors: list[Exception] = []
        self._open: dict[tuple[str, str, str], PullRequest] = {}

    def fork_repository(self, owner: str, name: str) -> ForkResult:
        self.fork_calls.append((owner, name))
        if self.fork_errors:
            raise self.fork_errors.pop(0)
        return ForkResult(
            fork_owner="helicone-bot",
            fork_name=name,
            clone_url=f"https://github.com/helicone-bot/{name}.git",
            default_branch="main",
            upstream_default_branch="main",
        )

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
        number = len(self.created) + 1
        pr = PullRequest(
            number=number,
            html_url=f"https://github.com/{owner}/{name}/pull/{number}",
            state="open",
        )
        self.created.append(
            {
                "owner": owner,
                "name": name,
                "head": head,
                "base": base,
                "title": title,
                "body": body,
                "url": pr.html_url,
            }
        )
        qualified = head if ":" in head else f"{owner}:{head}"
        self._open[(owner, name, qualified)] = pr
        return pr

    def find_pull_request_by_head(
        self, *, owner: str, name: str, head: str, base: str | None = None
    ) -> PullRequest | None:
        _ = base
        qualified = head if ":" in head else f"{owner}:{head}"
        return self._open.get((owner, name, qualified))


class FakeWorkspace:
    def __init__(self) -> None:
        self.clones: list[tuple[str, str, str]] = []
        self.restores: list[str] = []
        self.staged: list[tuple[str, str, str]] = []
        self.stage_hook: Callable[[], None] | None = None

    def clone(self, integration_id: str, clone_url: str, branch: str) -> WorkspaceHandle:
        self.clones.append((integration_id, clone_url, branch))
        return WorkspaceHandle(
            integration_id=integration_id,
            path=f"/work/{integration_id}",
            clone_url=clone_url,
            base_branch=branch,
        )

    def restore(self, handle: WorkspaceHandle, branch: str) -> None:
        _ = handle
        self.restores.append(branch)

    def stage_branch(
        self, handle: WorkspaceHandle, *, branch: str, base_ref: str, message: str
    ) -> StagedBranch:
        _ = handle
        if self.stage_hook is not None:
            hook, self.stage_hook = self.stage_hook, None
            hook()
        self.staged.append((branch, base_ref, message))
        return StagedBranch(
            branch=branch,
            head_sha=f"sha{len(self.staged)}",
            committed=True,
            compare_url=None,
        )


class FakeAgent(AgentAdapter):
    def __init__(self, results: list[AgentRunResult]) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, str | None, str]] = []
        self.on_resume: Callable[[], None] | None = None

    def run_task(self, handle: WorkspaceHandle, task: str) -> AgentRunResult:
        _ = handle
        self.calls.append(("run", None, task))
        return self.results.pop(0)

    def resume(
        self, handle: WorkspaceHandle, continuation_token: str | None, feedback: str
    ) -> AgentRunResult:
        _ = handle
        self.calls.append(("resume", continuation_token, feedback))
        if self.on_resume is not None:
            self.on_resume()
        return self.results.pop(0)


class RecordingReporter(StatusReporter):
    def __init__(self) -> None:
        self.events: list[StatusEvent] = []

    def report(self, event: StatusEvent) -> None:
        self.events.append(event)

    @property
    def statuses(self) -> list[str]:
        return [event.status for event in self.events]


def agent_result(
    *,
    modified: tuple[str, ...] = ("src/client.ts",),
    added: tuple[str, ...] = (),
    token: str | None = "thread-1",
    summary: str = "Routed the OpenAI client through Helicone.",
    committed: bool = False,
) -> AgentRunResult:
    return AgentRunResult(
        continuation_token=token,
        summary=summary,
        modified_files=modified,
        added_files=added,
        committed=committed,
    )


def fast_settings(*, max_attempts: int = 3) -> WorkflowSettings:
    return WorkflowSettings(
        branch_prefix="helicone-integration",
        task="Add Helicone integration",
        review_timeout_seconds=SEVEN_DAYS,
        max_attempts=max_attempts,
        default_policy=RetryPolicy(
            max_attempts=3, initial_interval_seconds=0.0, max_interval_seconds=0.0
        ),
        agent_policy=RetryPolicy(
            max_attempts=2, initial_interval_seconds=0.0, max_interval_seconds=0.0
        ),
    )


@dataclass
class Harness:
    state: StateStore
    gateway: FakeGateway
    workspace: FakeWorkspace
    agent: FakeAgent
    reporter: RecordingReporter
    workflow: IntegrationWorkflow
    clock: FakeClock
    request: IntegrationRequest
    sleeps: list[float] = field(default_factory=list)

    def drive(self) -> IntegrationOutcome:
        ctx = WorkflowContext(
            self.state,
            self.request.integration_id,
            clock=self.clock,
            sleep=self.sleeps.append,
        )
        return self.workflow.run(ctx, self.request)

    def review(self, approved: bool, feedback: str | None = None) -> ReviewDelivery:
        return ReviewDispatcher(self.state).submit_review(
            self.request.integration_id, approved, feedback
        )


@pytest.fixture
def make_harness(tmp_path: Path) -> Callable[..., Harness]:
    def _make(
        results: list[AgentRunResult] | None = None,
        *,
        max_attempts: int = 3,
        integration_id: str = "abc123",
    ) -> Harness:
        state = StateStore(tmp_path / "state.db")
        request = IntegrationRequest(
            repo_url="https://github.com/acme/widgets",
            repo_owner="acme",
            repo_name="widgets",
            integration_id=integration_id,
        )
        state.create_integration(request)
        gateway = FakeGateway()
        workspace = FakeWorkspace()
        agent = FakeAgent(results if results is not None else [agent_result()])
        reporter = RecordingReporter()
        workflow = IntegrationWorkflow(
            gateway=gateway,  # type: ignore[arg-type]
            workspace=workspace,  # type: ignore[arg-type]
            agent=agent,
            reporter=CompositeStatusReporter([StoreStatusReporter(state), reporter]),
            settings=fast_settings(max_attempts=max_attempts),
        )
        return Harness(
            state=state,
            gateway=gateway,
            workspace=workspace,
            agent=agent,
            reporter=reporter,
            workflow=workflow,
            clock=FakeClock(),
            request=request,
        )

    return _make


@pytest.fixture(autouse=True)
def restore_integrator_logger_state() -> Iterator[None]:
    logger = logging.getLogger("helicone_integrator")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate
