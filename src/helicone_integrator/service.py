from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
import logging
import threading
import time

from helicone_integrator.codex_adapter import CodexAdapter
from helicone_integrator.config import AppConfig
from helicone_integrator.git_ops import WorkspaceManager
from helicone_integrator.github_gateway import GitHubGateway
from helicone_integrator.models import (
    IntegrationOutcome,
    IntegrationRecord,
    IntegrationRequest,
    RunStatus,
)
from helicone_integrator.observability import log_event, logging_integration_context
from helicone_integrator.state import InstanceNotFoundError, StateStore
from helicone_integrator.status_reporter import (
    CompositeStatusReporter,
    LoggingStatusReporter,
    StoreStatusReporter,
)
from helicone_integrator.workflow import (
    IntegrationRejectedError,
    IntegrationWorkflow,
    WorkflowSettings,
)
from helicone_integrator.workflow_runtime import WorkflowContext, WorkflowSuspended


LOGGER = logging.getLogger("helicone_integrator.service")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InstanceHandle:
    """Caller-side view of one integration instance."""

    def __init__(self, state: StateStore, integration_id: str) -> None:
        self._state = state
        self.integration_id = integration_id

    def status(self) -> IntegrationRecord:
        record = self._state.get_integration(self.integration_id)
        if record is None:
            raise InstanceNotFoundError(f"No integration with id {self.integration_id}")
        return record

    def result(
        self,
        *,
        timeout_seconds: float | None = None,
        poll_interval_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> IntegrationRecord:
        """Block until the instance is completed, rejected or failed."""
        started = monotonic()
        while True:
            record = self.status()
            if record.is_terminal:
                return record
            if timeout_seconds is not None and monotonic() - started >= timeout_seconds:
                raise TimeoutError(
                    f"Integration {self.integration_id} still {record.status} "
                    f"after {timeout_seconds} seconds"
                )
            sleep(poll_interval_seconds)


class IntegrationService:
    def __init__(
        self,
        *,
        state: StateStore,
        workflow: IntegrationWorkflow,
        worker_count: int,
        poll_interval_seconds: float,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._state = state
        self._workflow = workflow
        self._worker_count = worker_count
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._running: dict[str, Future[IntegrationOutcome]] = {}
        self._running_lock = threading.Lock()

    @property
    def state(self) -> StateStore:
        return self._state

    def start(self, request: IntegrationRequest) -> InstanceHandle:
        request.validate()
        self._state.create_integration(request)
        log_event(
            LOGGER,
            "integration_started",
            integration_id=request.integration_id,
            repo_full_name=request.full_name,
        )
        return InstanceHandle(self._state, request.integration_id)

    def handle(self, integration_id: str) -> InstanceHandle:
        handle = InstanceHandle(self._state, integration_id)
        handle.status()
        return handle

    def cancel(self, integration_id: str) -> None:
        self._state.request_cancel(integration_id)
        log_event(LOGGER, "integration_cancel_requested", integration_id=integration_id)

    def run(self, *, once: bool) -> None:
        with ThreadPoolExecutor(
            max_workers=self._worker_count, thread_name_prefix="integration"
        ) as pool:
            while True:
                self._reap_finished()
                enqueued = self._enqueue_runnable(pool)
                log_event(
                    LOGGER,
                    "poll_completed",
                    once=once,
                    enqueued_count=enqueued,
                    running_count=len(self._running),
                )
                if once:
                    self._wait_for_all()
                    if not self._state.list_runnable(now=self._clock()):
                        break
                    continue
                self._sleep(self._poll_interval_seconds)

    def _enqueue_runnable(self, pool: ThreadPoolExecutor) -> int:
        enqueued = 0
        for integration_id in self._state.list_runnable(now=self._clock()):
            with self._running_lock:
                if len(self._running) >= self._worker_count:
                    log_event(
                        LOGGER,
                        "integration_skipped",
                        integration_id=integration_id,
                        reason="worker_capacity_full",
                    )
                    return enqueued
                if integration_id in self._running:
                    continue
            self._state.mark_status(integration_id, "running")
            fut = pool.submit(self._drive, integration_id)
            with self._running_lock:
                self._running[integration_id] = fut
            enqueued += 1
            log_event(LOGGER, "integration_enqueued", integration_id=integration_id)
        return enqueued

    def _drive(self, integration_id: str) -> IntegrationOutcome:
        record = self._state.get_integration(integration_id)
        if record is None:
            raise InstanceNotFoundError(f"No integration with id {integration_id}")
        with logging_integration_context(integration_id):
            ctx = WorkflowContext(self._state, integration_id, clock=self._clock, sleep=self._sleep)
            return self._workflow.run(ctx, record.request)

    def _reap_finished(self) -> None:
        with self._running_lock:
            finished = [key for key, fut in self._running.items() if fut.done()]
            futures = [(key, self._running.pop(key)) for key in finished]

        for integration_id, fut in futures:
            try:
                outcome = fut.result()
            except WorkflowSuspended as suspended:
                self._state.mark_status(integration_id, "waiting")
                log_event(
                    LOGGER,
                    "integration_suspended",
                    integration_id=integration_id,
                    review_window=suspended.review_window,
                )
                continue
            except IntegrationRejectedError as exc:
                self._settle(integration_id, "rejected", error=str(exc))
                continue
            except Exception as exc:  # noqa: BLE001
                self._settle(integration_id, "failed", error=str(exc), error_type=type(exc).__name__)
                continue
            self._settle(integration_id, "completed", pr_url=outcome.pr_url, attempts=outcome.attempts)

    def _settle(
        self,
        integration_id: str,
        status: RunStatus,
        *,
        error: str | None = None,
        **fields: object,
    ) -> None:
        self._state.mark_status(integration_id, status, error=error)
        log_event(
            LOGGER,
            "integration_settled",
            integration_id=integration_id,
            status=status,
            **fields,
        )

    def _wait_for_all(self) -> None:
        while True:
            self._reap_finished()
            with self._running_lock:
                if not self._running:
                    return
            time.sleep(0.05)


def build_service(config: AppConfig) -> IntegrationService:
    state = StateStore(config.runtime.state_db_path)
    workspace = WorkspaceManager(
        config.runtime.workspaces_dir,
        author_name=config.integration.git_author_name,
        author_email=config.integration.git_author_email,
    )
    guidance = None
    if config.integration.prompt_path is not None:
        guidance = config.integration.prompt_path.read_text(encoding="utf-8")
    workflow = IntegrationWorkflow(
        gateway=GitHubGateway(),
        workspace=workspace,
        agent=CodexAdapter(config.codex, workspace, guidance=guidance),
        reporter=CompositeStatusReporter([StoreStatusReporter(state), LoggingStatusReporter()]),
        settings=WorkflowSettings.from_config(config),
    )
    return IntegrationService(
        state=state,
        workflow=workflow,
        worker_count=config.runtime.worker_count,
        poll_interval_seconds=config.runtime.poll_interval_seconds,
    )
