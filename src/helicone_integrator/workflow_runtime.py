from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
import json
import logging
import time
from typing import TypeVar

from helicone_integrator.execution_policy import NO_RETRY, RetryPolicy, call_with_retry
from helicone_integrator.models import ReviewDecision
from helicone_integrator.observability import log_event
from helicone_integrator.state import (
    JournaledStep,
    StateStore,
    decode_review_decision,
    format_timestamp,
)


LOGGER = logging.getLogger("helicone_integrator.workflow_runtime")
T = TypeVar("T")


class WorkflowSuspended(Exception):
    """Raised to park an instance until its review window has something to act on.

    Not an error: the worker thread is released and the instance is replayed
    from its journal once a decision, a deadline, or a cancel request shows up.
    """

    def __init__(self, integration_id: str, review_window: int) -> None:
        super().__init__(f"Integration {integration_id} is waiting for review {review_window}")
        self.integration_id = integration_id
        self.review_window = review_window


class NonDeterministicReplayError(RuntimeError):
    retryable = False


class IntegrationCancelledError(RuntimeError):
    retryable = False


class ReviewTimeoutError(RuntimeError):
    retryable = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowContext:
    """Runs one instance's body against its step journal.

    Every leaf call goes through `step`; results are committed after the call
    returns, so a crash re-executes at most the one step that was in flight.
    """

    def __init__(
        self,
        state: StateStore,
        integration_id: str,
        *,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._state = state
        self._integration_id = integration_id
        self._clock = clock
        self._sleep = sleep
        self._journal: dict[int, JournaledStep] = {
            step.seq: step for step in state.load_step_journal(integration_id)
        }
        self._seq = 0

    def step(
        self,
        name: str,
        fn: Callable[[], T],
        *,
        policy: RetryPolicy = NO_RETRY,
        encode: Callable[[T], object] | None = None,
        decode: Callable[[object], T] | None = None,
    ) -> T:
        seq = self._next_seq()
        journaled = self._journaled(seq, name)
        if journaled is not None:
            raw = json.loads(journaled.result_json)
            if decode is None:
                return raw  # type: ignore[no-any-return]
            return decode(raw)

        self.check_cancelled()
        result = call_with_retry(policy, fn, operation=name, sleep=self._sleep)
        encoded = encode(result) if encode is not None else result
        self._state.record_step(
            self._integration_id, seq=seq, name=name, result_json=json.dumps(encoded)
        )
        log_event(LOGGER, "workflow_step_completed", step=name, seq=seq)
        return result

    def open_review_window(self, review_window: int, *, timeout_seconds: int) -> None:
        seq = self._next_seq()
        name = f"open_review_window:{review_window}"
        if self._journaled(seq, name) is not None:
            return
        self.check_cancelled()
        deadline = self._state.open_review_window(
            self._integration_id,
            review_window=review_window,
            deadline=self._clock() + timedelta(seconds=timeout_seconds),
            seq=seq,
            name=name,
        )
        log_event(
            LOGGER,
            "review_window_opened",
            review_window=review_window,
            deadline=deadline,
        )

    def take_review_decision(self, review_window: int) -> ReviewDecision:
        seq = self._next_seq()
        name = f"review_decision:{review_window}"
        journaled = self._journaled(seq, name)
        if journaled is not None:
            return decode_review_decision(json.loads(journaled.result_json))

        self.check_cancelled()
        decision = self._state.consume_review_decision(
            self._integration_id, review_window=review_window, seq=seq, name=name
        )
        if decision is not None:
            log_event(
                LOGGER,
                "review_decision_consumed",
                review_window=review_window,
                approved=decision.approved,
                has_feedback=decision.feedback is not None,
            )
            return decision

        record = self._state.get_integration(self._integration_id)
        deadline = record.review_deadline if record is not None else None
        if deadline is not None and deadline <= format_timestamp(self._clock()):
            log_event(LOGGER, "review_window_expired", review_window=review_window, deadline=deadline)
            raise ReviewTimeoutError(f"No review decision received by {deadline}")
        raise WorkflowSuspended(self._integration_id, review_window)

    def check_cancelled(self) -> None:
        if self._state.is_cancel_requested(self._integration_id):
            raise IntegrationCancelledError(f"Integration {self._integration_id} was cancelled")

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _journaled(self, seq: int, name: str) -> JournaledStep | None:
        journaled = self._journal.get(seq)
        if journaled is None:
            return None
        if journaled.name != name:
            raise NonDeterministicReplayError(
                f"Step {seq} of {self._integration_id} was journaled as {journaled.name!r} "
                f"but replay reached {name!r}"
            )
        return journaled
