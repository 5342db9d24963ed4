"""
Cost Tracker — Per-Analysis External Call Accounting

Every external call a pipeline stage makes (embedding provider, vector
index, language model) is appended to the analysis record:

    metadata.external_service_calls += [{service, model, duration_ms,
                                         success, cost, input_tokens,
                                         output_tokens, timestamp}]
    total_cost += cost

total_cost is what the orchestrator's daily-budget gate sums per
organization, so every priced call must go through record_call().

Model pricing catalogue (USD per 1 000 tokens):
  All prices are public list prices. Update MODEL_PRICING when rates change.
  Embedding models only bill input tokens.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from docpipeline.services.analysis_store import AnalysisRecordStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pricing catalogue (public list prices, USD per 1K tokens)
# ---------------------------------------------------------------------------

# (input_price_per_1k, output_price_per_1k)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    # OpenAI chat
    "gpt-4o":                  (0.0025,  0.0100),
    "gpt-4o-mini":             (0.00015, 0.0006),
    "gpt-4-turbo":             (0.0100,  0.0300),
    "gpt-3.5-turbo":           (0.0005,  0.0015),
    # OpenAI embeddings
    "text-embedding-3-small":  (0.00002, 0.0),
    "text-embedding-3-large":  (0.00013, 0.0),
    "text-embedding-ada-002":  (0.0001,  0.0),
    # Vector index calls are not token-priced
    "pinecone":                (0.0,     0.0),
}

_DEFAULT_PRICING = (0.001, 0.002)   # fallback for unknown models


def compute_cost(model: str, input_tokens: int, output_tokens: int = 0) -> Decimal:
    """
    Compute USD cost for a single call.

    Returns a Decimal (exact arithmetic) so summing many micro-charges for
    the daily budget gate does not drift.
    """
    price_in, price_out = MODEL_PRICING.get(model, _DEFAULT_PRICING)
    cost = (input_tokens / 1000.0 * price_in) + (output_tokens / 1000.0 * price_out)
    return Decimal(str(round(cost, 9)))


class CostTracker:
    """
    Records priced external calls on the analysis record.

    Usage::

        tracker = CostTracker(store)
        await tracker.record_call(
            analysis_id, organization_id,
            service="embedding", model="text-embedding-3-small",
            input_tokens=1200, duration_ms=340.0, success=True,
        )
    """

    def __init__(self, store: "AnalysisRecordStore") -> None:
        self._store = store

    async def record_call(
        self,
        analysis_id:     UUID,
        organization_id: UUID,
        *,
        service:       str,
        model:         str = "",
        input_tokens:  int = 0,
        output_tokens: int = 0,
        duration_ms:   float = 0.0,
        success:       bool = True,
        error:         str | None = None,
    ) -> Decimal:
        """Append the call to the record and add its cost to total_cost."""
        cost = compute_cost(model, input_tokens, output_tokens) if model else Decimal("0")

        entry = {
            "service":       service,
            "model":         model or None,
            "duration_ms":   round(duration_ms, 1),
            "success":       success,
            "cost":          float(cost),
            "input_tokens":  input_tokens,
            "output_tokens": output_tokens,
            "timestamp":     datetime.now(timezone.utc).isoformat(),
        }
        if error:
            entry["error"] = error

        await self._store.add_external_service_call(
            analysis_id, organization_id, entry, cost=cost,
        )
        logger.info(
            "CostTracker | analysis=%s service=%s model=%s tokens_in=%d tokens_out=%d cost=%s",
            analysis_id, service, model, input_tokens, output_tokens, cost,
        )
        return cost
