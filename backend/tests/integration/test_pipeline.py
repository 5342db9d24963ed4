"""
Integration Tests — submission → worker pipeline → record
═════════════════════════════════════════════════════════
The orchestrator, pipeline and record store run for real over SQLite;
S3, the broker, the embedding provider, the vector index and the chat
model are in-process fakes from conftest.py.

Coverage targets:
  ✅ Happy path: 3 chunks embedded, indexed and analyzed → COMPLETED
  ✅ Stage failure → FAILED with error_details and a scheduled retry
  ✅ Retry budget exhausted / non-retryable errors → no retry
  ✅ Cancellation observed at the next stage boundary
  ✅ Unconfigured or partially failing vector index
  ✅ Analyzer schema errors and degraded provider
  ✅ Per-analysis cost limit
  ✅ Due retries promoted FAILED → PENDING → PROCESSING; re-indexing replaces vectors
  ✅ Duplicate deliveries are skipped
  ✅ dispatch_due re-enqueues lost work
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from docpipeline.models.analysis import ensure_utc, utcnow
from docpipeline.processing.chunking import make_chunk_id
from docpipeline.processing.embeddings import Embedder
from docpipeline.schemas.analysis import (
    AnalysisStatus,
    ConfidenceLevel,
    DocumentType,
    SubmissionRequest,
)
from docpipeline.services.orchestrator import OrchestratorConfig
from docpipeline.vectorstore import VectorIndexConfig, get_vector_index

S = AnalysisStatus

pytestmark = pytest.mark.integration


def _actions(record) -> list[str]:
    return [entry["action"] for entry in record.audit_trail]


@pytest.fixture
def submit(make_orchestrator, org_id, user_id, sample_txt_bytes):
    """Submit the sample brief through the orchestrator; returns the analysis id."""
    async def _submit(**overrides) -> uuid.UUID:
        values = {
            "content":         sample_txt_bytes,
            "filename":        "brief.txt",
            "document_name":   "Portal brief",
            "document_type":   DocumentType.BRD,
            "organization_id": org_id,
            "user_id":         user_id,
        }
        values.update(overrides)
        accepted = await make_orchestrator().submit(SubmissionRequest(**values))
        return accepted.analysis_id

    return _submit


@pytest.fixture
def stored_record(store, make_record, mock_storage, sample_txt_bytes):
    """Insert a record directly, with its document bytes in storage."""
    async def _build(**overrides):
        record = make_record(**overrides)
        mock_storage.objects[record.storage_key] = sample_txt_bytes
        return await store.create(record)

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

class TestCompletedAnalysis:

    async def test_submit_then_process(self, submit, make_pipeline, make_orchestrator, store, memory_indexes, org_id):
        analysis_id = await submit()

        outcome = await make_pipeline().run(analysis_id, org_id)

        assert outcome["status"] == "COMPLETED"
        assert outcome["chunk_count"] == 3
        assert outcome["confidence_level"] == ConfidenceLevel.HIGH.value
        assert outcome["degraded_stages"] == []

        record = await store.get(analysis_id, org_id)
        meta = record.record_metadata
        assert record.status == S.COMPLETED.value
        assert meta["progress"] == 100
        assert [s["stage"] for s in meta["processing_steps"]] == ["parse", "embed", "index", "analyze"]
        assert all(s["status"] == "completed" for s in meta["processing_steps"])
        assert [c["service"] for c in meta["external_service_calls"]] == ["embedding", "vector_index", "llm"]
        assert meta["quality_metrics"]["stored_vectors"] == 3
        assert record.confidence_score == pytest.approx(0.7)
        assert record.total_cost > 0
        assert _actions(record)[-2:] == ["processing_started", "completed"]

        assert len(memory_indexes.by_org[org_id].records) == 3

        result = await make_orchestrator().get_result(analysis_id, org_id)
        assert result.timeline.estimated_duration == "9 months"

    async def test_vectors_are_searchable_by_document(self, submit, make_pipeline, memory_indexes, org_id):
        from docpipeline.vectorstore.base import SearchFilter

        analysis_id = await submit()
        await make_pipeline().run(analysis_id, org_id)

        index = memory_indexes.by_org[org_id]
        some_vector = next(iter(index.records.values()))[0]
        response = await index.search(
            some_vector, filter=SearchFilter(source_document_id=str(analysis_id)), top_k=2,
        )
        assert len(response.results) == 2
        assert response.results[0].score == pytest.approx(1.0)

    async def test_duplicate_delivery_is_skipped(self, submit, make_pipeline, org_id):
        analysis_id = await submit()
        pipeline = make_pipeline()
        await pipeline.run(analysis_id, org_id)

        outcome = await pipeline.run(analysis_id, org_id)

        assert outcome["status"] == "skipped"
        assert outcome["current_status"] == "COMPLETED"

    async def test_unknown_id(self, make_pipeline, org_id):
        outcome = await make_pipeline().run(uuid.uuid4(), org_id)
        assert outcome["status"] == "not_found"

    async def test_other_organization_cannot_run_it(self, submit, make_pipeline, other_org_id):
        analysis_id = await submit()
        outcome = await make_pipeline().run(analysis_id, other_org_id)
        assert outcome["status"] == "not_found"


# ─────────────────────────────────────────────────────────────────────────────
# Failures and retries
# ─────────────────────────────────────────────────────────────────────────────

class TestStageFailures:

    async def test_unconfigured_embedder_schedules_retry(
        self, submit, make_pipeline, embedder_config, embedding_provider_cls, store, mock_queue, org_id,
    ):
        analysis_id = await submit()
        mock_queue.enqueue.reset_mock()
        embedder = Embedder(embedder_config, provider=embedding_provider_cls(configured=False))

        outcome = await make_pipeline(embedder=embedder).run(analysis_id, org_id)

        assert outcome["status"] == "FAILED"
        assert outcome["stage"] == "embed"
        assert outcome["error_code"] == "EMBEDDING_PROVIDER_NOT_CONFIGURED"
        assert outcome["retry_count"] == 1

        record = await store.get(analysis_id, org_id)
        assert record.status == S.FAILED.value
        assert record.error_details["stage"] == "embed"
        assert record.error_details["retryable"] is True
        delay = ensure_utc(record.next_retry_at) - ensure_utc(record.failed_at)
        assert delay == timedelta(seconds=2)
        assert _actions(record)[-2:] == ["stage_failed", "retry_scheduled"]
        mock_queue.enqueue.assert_awaited_once_with(analysis_id, org_id, countdown=2.0)

    async def test_retries_exhausted(self, stored_record, make_pipeline, make_analyzer, store, mock_queue, org_id):
        record = await stored_record(retry_count=3)

        outcome = await make_pipeline(analyzer=make_analyzer([{"unexpected": True}])).run(record.id, org_id)

        assert outcome["error_code"] == "ANALYZER_SCHEMA_ERROR"
        assert outcome["retry_count"] == 3
        assert outcome["next_retry_at"] is None
        loaded = await store.get(record.id, org_id)
        assert loaded.next_retry_at is None
        assert _actions(loaded)[-1] == "retries_exhausted"
        mock_queue.enqueue.assert_not_awaited()

    async def test_missing_document_is_not_retried(self, store, make_record, make_pipeline, mock_queue, org_id):
        record = await store.create(make_record())      # bytes never uploaded

        outcome = await make_pipeline().run(record.id, org_id)

        assert outcome["stage"] == "parse"
        assert outcome["error_code"] == "DOCUMENT_MISSING"
        assert outcome["retry_count"] == 0
        loaded = await store.get(record.id, org_id)
        assert loaded.error_details["retryable"] is False
        mock_queue.enqueue.assert_not_awaited()

    async def test_unexpected_error_is_wrapped(self, stored_record, make_pipeline, mock_storage, store, org_id):
        record = await stored_record()
        mock_storage.get_document = AsyncMock(side_effect=RuntimeError("disk on fire"))

        outcome = await make_pipeline().run(record.id, org_id)

        assert outcome["stage"] == "parse"
        assert outcome["error_code"] == "INTERNAL_ERROR"
        loaded = await store.get(record.id, org_id)
        assert "disk on fire" in loaded.error_message
        assert loaded.record_metadata["processing_steps"][-1]["status"] == "failed"

    async def test_schema_error_is_retryable(self, stored_record, make_pipeline, make_analyzer, store, org_id):
        record = await stored_record()

        outcome = await make_pipeline(analyzer=make_analyzer(["not json at all"])).run(record.id, org_id)

        assert outcome["stage"] == "analyze"
        assert outcome["error_code"] == "ANALYZER_SCHEMA_ERROR"
        assert outcome["retry_count"] == 1
        loaded = await store.get(record.id, org_id)
        calls = loaded.record_metadata["external_service_calls"]
        assert calls[-1]["service"] == "llm"
        assert calls[-1]["success"] is False

    async def test_degraded_provider(self, stored_record, make_pipeline, make_analyzer, org_id):
        record = await stored_record()

        outcome = await make_pipeline(analyzer=make_analyzer([], api_key="")).run(record.id, org_id)

        assert outcome["status"] == "FAILED"
        assert outcome["error_code"] == "ANALYZER_PROVIDER_UNAVAILABLE"

    async def test_cost_limit_stops_before_analysis(self, stored_record, make_pipeline, store, org_id):
        record = await stored_record(
            processing_options={"analysis_depth": "detailed", "extract_fields": [], "cost_limit": 0.000001},
        )

        outcome = await make_pipeline().run(record.id, org_id)

        assert outcome["stage"] == "analyze"
        assert outcome["error_code"] == "COST_LIMIT_EXCEEDED"
        assert outcome["next_retry_at"] is None
        loaded = await store.get(record.id, org_id)
        assert [c["service"] for c in loaded.record_metadata["external_service_calls"]] == [
            "embedding", "vector_index",
        ]


# ─────────────────────────────────────────────────────────────────────────────
# Vector index behaviour
# ─────────────────────────────────────────────────────────────────────────────

class TestIndexStage:

    async def test_unconfigured_index_degrades(self, stored_record, make_pipeline, store, org_id):
        record = await stored_record()
        unconfigured = VectorIndexConfig(backend="none", dimensions=8)

        outcome = await make_pipeline(
            index_factory=lambda org: get_vector_index(org, unconfigured),
        ).run(record.id, org_id)

        assert outcome["status"] == "COMPLETED"
        assert outcome["degraded_stages"] == ["index"]
        loaded = await store.get(record.id, org_id)
        steps = {s["stage"]: s["status"] for s in loaded.record_metadata["processing_steps"]}
        assert steps["index"] == "degraded"

    async def test_partial_index_fails(self, stored_record, make_pipeline, memory_indexes, org_id):
        memory_indexes.fail_after = 2
        record = await stored_record()

        outcome = await make_pipeline().run(record.id, org_id)

        assert outcome["status"] == "FAILED"
        assert outcome["stage"] == "index"
        assert outcome["error_code"] == "INDEX_PARTIAL_FAILURE"

    async def test_partial_index_allowed(self, stored_record, make_pipeline, memory_indexes, org_id):
        memory_indexes.fail_after = 2
        record = await stored_record()
        config = OrchestratorConfig(model_version="gpt-4o-mini", allow_partial_index=True)

        outcome = await make_pipeline(config=config).run(record.id, org_id)

        assert outcome["status"] == "COMPLETED"
        assert outcome["degraded_stages"] == ["index"]


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

class TestCancellation:

    async def test_cancel_during_embed_stops_at_boundary(
        self, stored_record, make_pipeline, embedder_config, embedding_provider_cls, store, memory_indexes, org_id,
    ):

        record = await stored_record()

        class CancellingProvider(embedding_provider_cls):
            async def embed_batch(self, texts):
                if not self.calls:
                    await store.request_cancel(record.id, org_id, actor="user")
                return await super().embed_batch(texts)

        embedder = Embedder(embedder_config, provider=CancellingProvider())

        outcome = await make_pipeline(embedder=embedder).run(record.id, org_id)

        assert outcome["status"] == "CANCELLED"
        loaded = await store.get(record.id, org_id)
        assert loaded.status == S.CANCELLED.value
        assert loaded.audit_trail[-1]["action"] == "cancelled"
        assert loaded.audit_trail[-1]["details"]["at_stage"] == "embed"
        # the in-flight stage finished; the index stage never started
        assert [s["stage"] for s in loaded.record_metadata["processing_steps"]] == ["parse", "embed"]
        assert org_id not in memory_indexes.by_org

    async def test_cancel_before_pickup(self, submit, make_orchestrator, make_pipeline, store, org_id):
        analysis_id = await submit()
        await make_orchestrator().cancel(analysis_id, org_id)

        outcome = await make_pipeline().run(analysis_id, org_id)

        assert outcome["status"] == "skipped"
        assert outcome["current_status"] == "CANCELLED"


# ─────────────────────────────────────────────────────────────────────────────
# Retries and dispatch
# ─────────────────────────────────────────────────────────────────────────────

class TestRetryFlow:

    async def test_due_retry_is_promoted_and_completes(self, stored_record, make_pipeline, store, org_id):
        record = await stored_record(
            status=S.FAILED, retry_count=1, next_retry_at=utcnow() - timedelta(seconds=1),
            error_message="previous attempt failed",
        )

        outcome = await make_pipeline().run(record.id, org_id)

        assert outcome["status"] == "COMPLETED"
        loaded = await store.get(record.id, org_id)
        assert loaded.error_message is None
        assert loaded.retry_count == 1
        assert _actions(loaded)[:2] == ["retry_started", "processing_started"]

    async def test_retry_not_due_is_skipped(self, stored_record, make_pipeline, store, org_id):
        record = await stored_record(status=S.FAILED, retry_count=1, next_retry_at=utcnow() + timedelta(hours=1))

        outcome = await make_pipeline().run(record.id, org_id)

        assert outcome == {"status": "skipped", "reason": "retry_not_due", "analysis_id": str(record.id)}
        assert (await store.get(record.id, org_id)).status == S.FAILED.value

    async def test_failed_then_retried_to_completion(
        self, submit, make_pipeline, make_analyzer, analysis_payload, store, org_id,
    ):
        analysis_id = await submit()
        await make_pipeline(analyzer=make_analyzer(["garbage"])).run(analysis_id, org_id)

        # the scheduled retry arrives once next_retry_at has passed
        await store.set_next_retry_at(analysis_id, org_id, utcnow() - timedelta(seconds=1))
        outcome = await make_pipeline().run(analysis_id, org_id)

        assert outcome["status"] == "COMPLETED"
        loaded = await store.get(analysis_id, org_id)
        assert loaded.retry_count == 1
        assert loaded.error_details is None
        stages = [s["stage"] for s in loaded.record_metadata["processing_steps"]]
        assert stages == ["parse", "embed", "index", "analyze"] * 2

    async def test_retried_run_replaces_vectors(
        self, submit, make_pipeline, make_analyzer, memory_indexes, store, org_id,
    ):
        analysis_id = await submit()
        await make_pipeline(analyzer=make_analyzer(["garbage"])).run(analysis_id, org_id)
        assert len(memory_indexes.by_org[org_id].records) == 3

        await store.set_next_retry_at(analysis_id, org_id, utcnow() - timedelta(seconds=1))
        outcome = await make_pipeline().run(analysis_id, org_id)

        assert outcome["status"] == "COMPLETED"
        stored = memory_indexes.by_org[org_id].records
        assert sorted(stored) == [make_chunk_id(str(analysis_id), i) for i in range(3)]

    async def test_dispatch_due(self, stored_record, make_pipeline, store, mock_queue, org_id):
        now = utcnow()
        pending = await stored_record(next_retry_at=now - timedelta(seconds=5))
        lost = await stored_record(status=S.FAILED, retry_count=1, next_retry_at=now - timedelta(minutes=5))
        fresh = await stored_record(status=S.FAILED, retry_count=1, next_retry_at=now - timedelta(seconds=10))

        counts = await make_pipeline().dispatch_due(org_id)

        assert counts == {"pending": 1, "retries": 1}
        enqueued = {call.args[0] for call in mock_queue.enqueue.await_args_list}
        assert enqueued == {pending.id, lost.id}
        assert (await store.get(pending.id, org_id)).next_retry_at is None
        rearmed = await store.get(lost.id, org_id)
        assert ensure_utc(rearmed.next_retry_at) >= now
        assert (await store.get(fresh.id, org_id)).next_retry_at is not None
