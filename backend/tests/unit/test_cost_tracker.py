"""
Unit Tests — CostTracker
════════════════════════
Coverage targets:
  ✅ Pricing per model, Decimal results, unknown-model fallback
  ✅ record_call appends to metadata.external_service_calls
  ✅ record_call adds to total_cost (what the daily budget sums)
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from docpipeline.observability.cost_tracker import CostTracker, compute_cost


@pytest.mark.unit
class TestComputeCost:

    def test_chat_model(self):
        # 1000 in × 0.00015 + 2000 out × 0.0006 per 1K
        assert compute_cost("gpt-4o-mini", 1000, 2000) == Decimal("0.00135")

    def test_embedding_bills_input_only(self):
        assert compute_cost("text-embedding-3-small", 10_000, 500) == Decimal("0.0002")

    def test_vector_index_is_free(self):
        assert compute_cost("pinecone", 1_000_000) == Decimal("0.0")

    def test_unknown_model_fallback(self):
        assert compute_cost("mystery-model", 1000, 1000) == Decimal("0.003")

    def test_returns_decimal(self):
        assert isinstance(compute_cost("gpt-4o", 1), Decimal)


@pytest.mark.unit
class TestCostTracker:

    async def test_record_call(self, store, make_record, org_id):
        record = await store.create(make_record())
        tracker = CostTracker(store)

        cost = await tracker.record_call(
            record.id, org_id,
            service="llm", model="gpt-4o-mini",
            input_tokens=1000, output_tokens=2000, duration_ms=812.34,
        )

        loaded = await store.get(record.id, org_id)
        call = loaded.record_metadata["external_service_calls"][-1]
        assert cost == Decimal("0.00135")
        assert call["service"] == "llm"
        assert call["model"] == "gpt-4o-mini"
        assert call["duration_ms"] == 812.3
        assert call["success"] is True
        assert "error" not in call
        assert Decimal(str(loaded.total_cost)) == Decimal("0.00135")
        assert await store.daily_cost(org_id) == Decimal("0.00135")

    async def test_failed_call_without_model_costs_nothing(self, store, make_record, org_id):
        record = await store.create(make_record())

        cost = await CostTracker(store).record_call(
            record.id, org_id, service="vector_index", success=False, error="timeout",
        )

        loaded = await store.get(record.id, org_id)
        call = loaded.record_metadata["external_service_calls"][-1]
        assert cost == Decimal("0")
        assert call["model"] is None
        assert call["error"] == "timeout"
