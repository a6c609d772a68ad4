from __future__ import annotations

from pathlib import Path

import pytest

from helicone_integrator.execution_policy import RetryPolicy
from helicone_integrator.models import IntegrationRequest, ReviewDecision
from helicone_integrator.state import StateStore
from helicone_integrator.workflow_runtime import (
    IntegrationCancelledError,
    NonDeterministicReplayError,
    ReviewTimeoutError,
    WorkflowContext,
    WorkflowSuspended,
)

from conftest import FakeClock


class Flaky(RuntimeError):
    pass


def _state(tmp_path: Path) -> StateStore:
    state = StateStore(tmp_path / "state.db")
    state.create_integration(
        IntegrationRequest(
            repo_url="https://github.com/acme/widgets",
            repo_owner="acme",
            repo_name="widgets",
            integration_id="run-1",
        )
    )
    return state


def test_steps_replay_from_journal(tmp_path: Path) -> None:
    state = _state(tmp_path)
    calls: list[str] = []

    def fork() -> dict[str, str]:
        calls.append("fork")
        return {"owner": "bot"}

    first = WorkflowContext(state, "run-1")
    assert first.step("fork", fork) == {"owner": "bot"}
    assert first.step("count", lambda: 7) == 7

    second = WorkflowContext(state, "run-1")
    assert second.step("fork", fork) == {"owner": "bot"}
    assert second.step("count", lambda: 99) == 7
    assert calls == ["fork"]


def test_step_encode_and_decode(tmp_path: Path) -> None:
    state = _state(tmp_path)

    WorkflowContext(state, "run-1").step(
        "pair", lambda: (1, 2), encode=list, decode=lambda raw: tuple(raw)  # type: ignore[arg-type]
    )
    replayed = WorkflowContext(state, "run-1").step(
        "pair", lambda: (0, 0), encode=list, decode=lambda raw: tuple(raw)  # type: ignore[arg-type]
    )

    assert replayed == (1, 2)
    assert state.load_step_journal("run-1")[0].result_json == "[1, 2]"


def test_step_name_mismatch_is_nondeterministic(tmp_path: Path) -> None:
    state = _state(tmp_path)
    WorkflowContext(state, "run-1").step("fork", lambda: None)

    with pytest.raises(NonDeterministicReplayError, match="'fork'"):
        WorkflowContext(state, "run-1").step("clone", lambda: None)


def test_step_retries_then_journals_once(tmp_path: Path) -> None:
    state = _state(tmp_path)
    sleeps: list[float] = []
    attempts = {"n": 0}

    def flaky() -> str:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise Flaky("transient")
        return "ok"

    ctx = WorkflowContext(state, "run-1", sleep=sleeps.append)
    policy = RetryPolicy(max_attempts=3, initial_interval_seconds=1.0, max_interval_seconds=10.0)

    assert ctx.step("flaky", flaky, policy=policy) == "ok"
    assert sleeps == [1.0, 2.0]
    assert len(state.load_step_journal("run-1")) == 1


def test_failed_step_is_not_journaled(tmp_path: Path) -> None:
    state = _state(tmp_path)

    def boom() -> None:
        raise Flaky("down")

    with pytest.raises(Flaky):
        WorkflowContext(state, "run-1").step("boom", boom)
    assert state.load_step_journal("run-1") == ()


def test_review_window_suspends_until_decision(tmp_path: Path) -> None:
    state = _state(tmp_path)
    clock = FakeClock()

    ctx = WorkflowContext(state, "run-1", clock=clock)
    ctx.open_review_window(1, timeout_seconds=3600)
    with pytest.raises(WorkflowSuspended) as exc_info:
        ctx.take_review_decision(1)
    assert exc_info.value.review_window == 1
    assert exc_info.value.integration_id == "run-1"

    state.deliver_review_decision("run-1", ReviewDecision(False, "tighten it up"))
    replay = WorkflowContext(state, "run-1", clock=clock)
    replay.open_review_window(1, timeout_seconds=3600)
    assert replay.take_review_decision(1) == ReviewDecision(False, "tighten it up")

    again = WorkflowContext(state, "run-1", clock=clock)
    again.open_review_window(1, timeout_seconds=3600)
    assert again.take_review_decision(1) == ReviewDecision(False, "tighten it up")


def test_review_window_deadline_raises_timeout(tmp_path: Path) -> None:
    state = _state(tmp_path)
    clock = FakeClock()
    WorkflowContext(state, "run-1", clock=clock).open_review_window(1, timeout_seconds=60)

    clock.advance(60)
    ctx = WorkflowContext(state, "run-1", clock=clock)
    ctx.open_review_window(1, timeout_seconds=60)
    with pytest.raises(ReviewTimeoutError):
        ctx.take_review_decision(1)


def test_decision_beats_elapsed_deadline(tmp_path: Path) -> None:
    state = _state(tmp_path)
    clock = FakeClock()
    WorkflowContext(state, "run-1", clock=clock).open_review_window(1, timeout_seconds=60)
    state.deliver_review_decision("run-1", ReviewDecision(True))

    clock.advance(3600)
    ctx = WorkflowContext(state, "run-1", clock=clock)
    ctx.open_review_window(1, timeout_seconds=60)
    assert ctx.take_review_decision(1).approved is True


def test_cancel_stops_new_steps_but_not_replay(tmp_path: Path) -> None:
    state = _state(tmp_path)
    WorkflowContext(state, "run-1").step("fork", lambda: "done")
    state.request_cancel("run-1")

    ctx = WorkflowContext(state, "run-1")
    assert ctx.step("fork", lambda: "again") == "done"
    with pytest.raises(IntegrationCancelledError):
        ctx.step("clone", lambda: "never")
    with pytest.raises(IntegrationCancelledError):
        WorkflowContext(state, "run-1").check_cancelled()
