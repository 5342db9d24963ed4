"""
Unit Tests — Analysis state machine
═══════════════════════════════════
Coverage targets:
  ✅ Every allowed edge accepted, every other edge rejected
  ✅ Terminal states have no outgoing edges
  ✅ Back-off schedule base × 2^(n-1)
  ✅ current_step wording per status / stage / cancel request
  ✅ estimated_completion only for active jobs
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from itertools import product

import pytest

from docpipeline.core.errors import InvalidTransitionError
from docpipeline.schemas.analysis import AnalysisStatus as S
from docpipeline.services.state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    assert_transition,
    can_transition,
    current_step,
    estimated_completion,
    next_retry_time,
    retry_delay_seconds,
)

ALLOWED = {
    (S.PENDING, S.PROCESSING),
    (S.PENDING, S.CANCELLED),
    (S.PROCESSING, S.COMPLETED),
    (S.PROCESSING, S.FAILED),
    (S.PROCESSING, S.CANCELLED),
    (S.FAILED, S.PENDING),
}


@pytest.mark.unit
class TestTransitions:

    @pytest.mark.parametrize("current,target", list(product(S, S)))
    def test_edge_table(self, current, target):
        assert can_transition(current, target) is ((current, target) in ALLOWED)

    def test_illegal_edge_raises(self):
        with pytest.raises(InvalidTransitionError, match="COMPLETED → PROCESSING"):
            assert_transition(S.COMPLETED, S.PROCESSING)

    def test_accepts_raw_strings(self):
        assert can_transition("FAILED", S.PENDING)

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATES))
    def test_terminal_states_have_no_exits(self, status):
        assert ALLOWED_TRANSITIONS[status] == frozenset()


@pytest.mark.unit
class TestBackoff:

    @pytest.mark.parametrize("retry_count,expected", [(1, 2.0), (2, 4.0), (3, 8.0), (0, 2.0)])
    def test_delay(self, retry_count, expected):
        assert retry_delay_seconds(retry_count) == expected

    def test_custom_base(self):
        assert retry_delay_seconds(3, base_delay=5) == 20

    def test_next_retry_time(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert next_retry_time(now, 2) == now + timedelta(seconds=4)


@pytest.mark.unit
class TestStepsAndEstimates:

    def test_steps(self):
        assert current_step(S.PENDING) == "Queued for processing"
        assert current_step(S.PROCESSING, "embed") == "Generating embeddings"
        assert current_step(S.PROCESSING) == "Processing"
        assert current_step(S.PROCESSING, "index", cancel_requested=True) == "Cancellation requested"
        assert current_step(S.FAILED) == "Analysis failed"

    def test_estimate_for_active_job(self):
        created = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        eta = estimated_completion(S.PENDING, created, None, 2 * 1024 * 1024)
        assert eta == created + timedelta(seconds=50)

    def test_estimate_uses_started_at(self):
        created = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        started = created + timedelta(minutes=5)
        eta = estimated_completion(S.PROCESSING, created, started, 0)
        assert eta == started + timedelta(seconds=30)

    def test_naive_timestamps_treated_as_utc(self):
        created = datetime(2025, 1, 1, 12, 0)
        eta = estimated_completion(S.PENDING, created, None, 0)
        assert eta.tzinfo is not None

    @pytest.mark.parametrize("status", [S.COMPLETED, S.FAILED, S.CANCELLED])
    def test_no_estimate_when_inactive(self, status):
        assert estimated_completion(status, datetime.now(timezone.utc), None, 100) is None
