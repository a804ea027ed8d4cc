# tests/workflow/test_retry.py
from __future__ import annotations

import pytest

from wipac.runflow.contracts.state import WorkflowState
from wipac.runflow.workflow.retry import RetryDecision, RetryPolicy, RetryTracker

S = WorkflowState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(clock: FakeClock) -> RetryTracker:
    return RetryTracker(RetryPolicy(max_attempts=2, backoff_base=10, backoff_max=15), clock=clock)


def test_backoff_doubles_and_caps() -> None:
    policy = RetryPolicy(max_attempts=5, backoff_base=60, backoff_max=200)
    assert [policy.delay(a) for a in range(4)] == [60, 120, 200, 200]


def test_waits_for_first_backoff(tracker: RetryTracker, clock: FakeClock) -> None:
    assert tracker.decide(1, S.STEP_1_ERROR) is RetryDecision.WAIT
    clock.advance(9)
    assert tracker.decide(1, S.STEP_1_ERROR) is RetryDecision.WAIT
    clock.advance(1)
    assert tracker.decide(1, S.STEP_1_ERROR) is RetryDecision.RETRY


def test_budget_exhausted_reported_once(tracker: RetryTracker, clock: FakeClock) -> None:
    tracker.decide(1, S.STEP_2_ERROR)
    for _ in range(2):
        clock.advance(100)
        assert tracker.decide(1, S.STEP_2_ERROR) is RetryDecision.RETRY
        tracker.record_retry(1)
        # the retry fails again; the next decision starts a new backoff
        assert tracker.decide(1, S.STEP_2_ERROR) in (RetryDecision.WAIT, RetryDecision.EXHAUSTED)

    assert tracker.attempts(1) == 2
    clock.advance(100)
    assert tracker.decide(1, S.STEP_2_ERROR) is RetryDecision.PARKED
    assert tracker.decide(1, S.STEP_2_ERROR) is RetryDecision.PARKED


def test_exhaustion_decision_happens_once(clock: FakeClock) -> None:
    tracker = RetryTracker(RetryPolicy(max_attempts=0, backoff_base=1, backoff_max=1), clock=clock)
    decisions = [tracker.decide(7, S.STEP_1_ERROR) for _ in range(3)]
    assert decisions == [RetryDecision.EXHAUSTED, RetryDecision.PARKED, RetryDecision.PARKED]


def test_new_error_state_starts_new_budget(tracker: RetryTracker, clock: FakeClock) -> None:
    tracker.decide(1, S.STEP_1_ERROR)
    clock.advance(100)
    tracker.decide(1, S.STEP_1_ERROR)
    tracker.record_retry(1)
    assert tracker.attempts(1) == 1

    assert tracker.decide(1, S.STEP_2_ERROR) is RetryDecision.WAIT
    assert tracker.attempts(1) == 0


def test_forget_resets(tracker: RetryTracker, clock: FakeClock) -> None:
    tracker.decide(1, S.STEP_1_ERROR)
    clock.advance(100)
    tracker.decide(1, S.STEP_1_ERROR)
    tracker.record_retry(1)

    tracker.forget(1)

    assert tracker.attempts(1) == 0
    assert tracker.decide(1, S.STEP_1_ERROR) is RetryDecision.WAIT
