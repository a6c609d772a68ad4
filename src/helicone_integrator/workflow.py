from __future__ import annotations

from dataclasses import asdict, dataclass
import logging

from helicone_integrator.agent_adapter import AgentAdapter, AgentError, AgentRunResult
from helicone_integrator.config import AppConfig
from helicone_integrator.execution_policy import RetryPolicy
from helicone_integrator.git_ops import WorkspaceManager
from helicone_integrator.github_gateway import GitHubGateway
from helicone_integrator.models import (
    ChangeAttempt,
    ForkResult,
    IntegrationOutcome,
    IntegrationPhase,
    IntegrationRequest,
    PullRequest,
    StagedBranch,
    StatusEvent,
    WorkspaceHandle,
)
from helicone_integrator.observability import log_event
from helicone_integrator.pull_request_text import (
    FINAL_PR_TITLE,
    REVIEW_PR_TITLE,
    branch_name,
    commit_message,
    final_pr_body,
    format_changes_summary,
    review_pr_body,
)
from helicone_integrator.status_reporter import StatusReporter
from helicone_integrator.workflow_runtime import (
    IntegrationCancelledError,
    NonDeterministicReplayError,
    ReviewTimeoutError,
    WorkflowContext,
    WorkflowSuspended,
)


LOGGER = logging.getLogger("helicone_integrator.workflow")

NO_CHANGES_MESSAGE = (
    "No changes needed - this repository may not use supported LLM providers directly."
)

__all__ = [
    "IntegrationCancelledError",
    "IntegrationRejectedError",
    "IntegrationWorkflow",
    "MaxAttemptsExceededError",
    "NonDeterministicReplayError",
    "ReviewTimeoutError",
    "WorkflowSettings",
]


class IntegrationRejectedError(RuntimeError):
    retryable = False


class MaxAttemptsExceededError(IntegrationRejectedError):
    pass


@dataclass(frozen=True)
class WorkflowSettings:
    branch_prefix: str
    task: str
    review_timeout_seconds: int
    max_attempts: int
    default_policy: RetryPolicy
    agent_policy: RetryPolicy

    @classmethod
    def from_config(cls, config: AppConfig) -> WorkflowSettings:
        return cls(
            branch_prefix=config.integration.branch_prefix,
            task=config.integration.task,
            review_timeout_seconds=config.runtime.review_timeout_seconds,
            max_attempts=config.runtime.max_attempts,
            default_policy=config.retry.default,
            agent_policy=config.retry.agent,
        )


class IntegrationWorkflow:
    """Fork, edit, stage for review, iterate on feedback, then open the upstream PR.

    The body is replayed from the instance's step journal every time a worker
    picks it up, so all state lives in step results and nothing is kept on
    the object between runs.
    """

    def __init__(
        self,
        *,
        gateway: GitHubGateway,
        workspace: WorkspaceManager,
        agent: AgentAdapter,
        reporter: StatusReporter,
        settings: WorkflowSettings,
    ) -> None:
        self._gateway = gateway
        self._workspace = workspace
        self._agent = agent
        self._reporter = reporter
        self._settings = settings

    def run(self, ctx: WorkflowContext, request: IntegrationRequest) -> IntegrationOutcome:
        try:
            return self._run(ctx, request)
        except (WorkflowSuspended, IntegrationRejectedError):
            raise
        except ReviewTimeoutError:
            self._report_failure(
                request,
                f"Review timed out after {_describe_duration(self._settings.review_timeout_seconds)}",
            )
            raise
        except IntegrationCancelledError:
            self._report_failure(request, "Integration cancelled")
            raise
        except Exception as exc:
            self._report_failure(request, f"Integration failed: {exc}")
            raise

    def _run(self, ctx: WorkflowContext, request: IntegrationRequest) -> IntegrationOutcome:
        settings = self._settings
        integration_id = request.integration_id

        self._report(ctx, integration_id, "forking", "Forking repository...")
        fork = ctx.step(
            "fork",
            lambda: self._gateway.fork_repository(request.repo_owner, request.repo_name),
            policy=settings.default_policy,
            encode=asdict,
            decode=_decode_fork,
        )

        self._report(ctx, integration_id, "cloning", "Cloning repository...")
        handle = ctx.step(
            "clone",
            lambda: self._workspace.clone(integration_id, fork.clone_url, fork.default_branch),
            policy=settings.default_policy,
            encode=asdict,
            decode=_decode_workspace,
        )

        self._report(
            ctx,
            integration_id,
            "integrating",
            "Running the coding agent to add Helicone integration...",
        )
        first_run = ctx.step(
            "run_agent:1",
            lambda: self._run_agent(handle),
            policy=settings.agent_policy,
            encode=AgentRunResult.to_json,
            decode=AgentRunResult.from_json,
        )
        if not first_run.has_changes:
            self._report(ctx, integration_id, "completed", NO_CHANGES_MESSAGE)
            return IntegrationOutcome(
                integration_id=integration_id,
                phase="completed",
                message=NO_CHANGES_MESSAGE,
                attempts=1,
            )

        change = _change_attempt(1, first_run)
        continuation_token = change.continuation_token
        branch = branch_name(integration_id, prefix=settings.branch_prefix)

        self._report(ctx, integration_id, "pushing", "Creating staging branch with changes...")
        staged = ctx.step(
            "stage_branch:1",
            lambda: self._workspace.stage_branch(
                handle,
                branch=branch,
                base_ref=f"origin/{handle.base_branch}",
                message=commit_message(1),
            ),
            policy=settings.default_policy,
            encode=asdict,
            decode=_decode_staged_branch,
        )

        self._report(
            ctx, integration_id, "creating_review_pr", "Creating pull request in fork for review..."
        )
        review_pr = ctx.step(
            "review_pull_request",
            lambda: self._open_review_pull_request(fork, branch, change, integration_id),
            policy=settings.default_policy,
            encode=asdict,
            decode=_decode_pull_request,
        )
        staging_url = review_pr.html_url

        attempt = 1
        awaiting_message = "Review PR created. Awaiting review..."
        while True:
            self._report(
                ctx, integration_id, "awaiting_review", awaiting_message, staging_url=staging_url
            )
            ctx.open_review_window(attempt, timeout_seconds=settings.review_timeout_seconds)
            decision = ctx.take_review_decision(attempt)

            if decision.approved:
                break
            if decision.feedback is None:
                self._report(ctx, integration_id, "rejected", "Changes rejected without feedback")
                raise IntegrationRejectedError("Changes rejected without feedback")

            attempt += 1
            if attempt > settings.max_attempts:
                self._report(ctx, integration_id, "rejected", "Maximum feedback attempts reached")
                raise MaxAttemptsExceededError("Maximum feedback attempts reached")

            feedback = decision.feedback
            self._report(
                ctx,
                integration_id,
                "applying_feedback",
                f"Applying feedback (attempt {attempt})...",
            )
            token = continuation_token
            feedback_run = ctx.step(
                f"resume_agent:{attempt}",
                lambda: self._resume_agent(handle, branch, token, feedback),
                policy=settings.agent_policy,
                encode=AgentRunResult.to_json,
                decode=AgentRunResult.from_json,
            )
            if not feedback_run.has_changes:
                raise AgentError(
                    f"Failed to apply feedback: {feedback_run.summary}", retryable=False
                )
            change = _change_attempt(attempt, feedback_run)
            continuation_token = change.continuation_token or continuation_token

            ordinal = attempt
            # HEAD stays ahead of the last staged commit after a push, so a re-run still stages.
            previous_sha = staged.head_sha
            staged = ctx.step(
                f"stage_branch:{ordinal}",
                lambda: self._workspace.stage_branch(
                    handle,
                    branch=branch,
                    base_ref=previous_sha,
                    message=commit_message(ordinal),
                ),
                policy=settings.default_policy,
                encode=asdict,
                decode=_decode_staged_branch,
            )
            awaiting_message = "Feedback applied. Awaiting re-review..."

        self._report(
            ctx,
            integration_id,
            "creating_pr",
            "Review approved! Creating pull request to original repository...",
        )
        final_attempts = attempt
        final_pr = ctx.step(
            "final_pull_request",
            lambda: self._open_final_pull_request(
                request, fork, branch, final_attempts, continuation_token
            ),
            policy=settings.default_policy,
            encode=asdict,
            decode=_decode_pull_request,
        )
        message = "Successfully created pull request!"
        self._report(
            ctx,
            integration_id,
            "completed",
            message,
            staging_url=staging_url,
            pr_url=final_pr.html_url,
        )
        return IntegrationOutcome(
            integration_id=integration_id,
            phase="completed",
            message=message,
            attempts=attempt,
            staging_url=staging_url,
            pr_url=final_pr.html_url,
        )

    def _run_agent(self, handle: WorkspaceHandle) -> AgentRunResult:
        self._workspace.restore(handle, handle.base_branch)
        return self._agent.run_task(handle, self._settings.task)

    def _resume_agent(
        self,
        handle: WorkspaceHandle,
        branch: str,
        continuation_token: str | None,
        feedback: str,
    ) -> AgentRunResult:
        self._workspace.restore(handle, branch)
        return self._agent.resume(handle, continuation_token, feedback)

    def _open_review_pull_request(
        self, fork: ForkResult, branch: str, change: ChangeAttempt, integration_id: str
    ) -> PullRequest:
        existing = self._gateway.find_pull_request_by_head(
            owner=fork.fork_owner,
            name=fork.fork_name,
            head=f"{fork.fork_owner}:{branch}",
            base=fork.default_branch,
        )
        if existing is not None:
            log_event(LOGGER, "review_pr_reused", pr_number=existing.number, branch=branch)
            return existing
        return self._gateway.create_pull_request(
            owner=fork.fork_owner,
            name=fork.fork_name,
            head=branch,
            base=fork.default_branch,
            title=REVIEW_PR_TITLE,
            body=review_pr_body(integration_id=integration_id, change=change),
        )

    def _open_final_pull_request(
        self,
        request: IntegrationRequest,
        fork: ForkResult,
        branch: str,
        attempts: int,
        continuation_token: str | None,
    ) -> PullRequest:
        head = f"{fork.fork_owner}:{branch}"
        existing = self._gateway.find_pull_request_by_head(
            owner=request.repo_owner,
            name=request.repo_name,
            head=head,
            base=fork.upstream_default_branch,
        )
        if existing is not None:
            log_event(LOGGER, "final_pr_reused", pr_number=existing.number, branch=branch)
            return existing
        return self._gateway.create_pull_request(
            owner=request.repo_owner,
            name=request.repo_name,
            head=head,
            base=fork.upstream_default_branch,
            title=FINAL_PR_TITLE,
            body=final_pr_body(attempts=attempts, continuation_token=continuation_token),
        )

    def _report(
        self,
        ctx: WorkflowContext,
        integration_id: str,
        phase: IntegrationPhase,
        message: str,
        *,
        staging_url: str | None = None,
        pr_url: str | None = None,
    ) -> None:
        event = StatusEvent(
            integration_id=integration_id,
            status=phase,
            message=message,
            staging_url=staging_url,
            pr_url=pr_url,
        )
        ctx.step(f"report:{phase}", lambda: self._reporter.report(event))

    def _report_failure(self, request: IntegrationRequest, message: str) -> None:
        # Reported directly, outside the step journal.
        self._reporter.report(
            StatusEvent(integration_id=request.integration_id, status="failed", message=message)
        )


def _change_attempt(ordinal: int, result: AgentRunResult) -> ChangeAttempt:
    return ChangeAttempt(
        ordinal=ordinal,
        continuation_token=result.continuation_token,
        modified_files=result.modified_files,
        added_files=result.added_files,
        summary=result.summary,
        changes_summary=format_changes_summary(result.modified_files, result.added_files),
        agent_committed=result.committed,
    )


def _describe_duration(seconds: int) -> str:
    if seconds % 86400 == 0:
        days = seconds // 86400
        return f"{days} day" if days == 1 else f"{days} days"
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{seconds} seconds"


def _object(raw: object) -> dict[str, object]:
    if not isinstance(raw, dict):
        raise NonDeterministicReplayError("Journaled step result must be an object")
    return raw


def _decode_fork(raw: object) -> ForkResult:
    return ForkResult(**_object(raw))  # type: ignore[arg-type]


def _decode_workspace(raw: object) -> WorkspaceHandle:
    return WorkspaceHandle(**_object(raw))  # type: ignore[arg-type]


def _decode_staged_branch(raw: object) -> StagedBranch:
    return StagedBranch(**_object(raw))  # type: ignore[arg-type]


def _decode_pull_request(raw: object) -> PullRequest:
    return PullRequest(**_object(raw))  # type: ignore[arg-type]
