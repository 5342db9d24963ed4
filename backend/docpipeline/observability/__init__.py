"""
Observability Package — Cost Tracking

Provides:
  CostTracker   — per-analysis external call log and total_cost accounting
  compute_cost  — USD cost of one call from the pricing catalogue

Usage::

    from docpipeline.observability import CostTracker
    await CostTracker(store).record_call(
        analysis_id, organization_id,
        service="llm", model="gpt-4o-mini",
        input_tokens=500, output_tokens=150,
    )
"""

from docpipeline.observability.cost_tracker import MODEL_PRICING, CostTracker, compute_cost

__all__ = ["MODEL_PRICING", "CostTracker", "compute_cost"]
