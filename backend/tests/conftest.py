"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : db_engine, session_factory, store, make_record,
                    mock_storage, mock_queue, memory_indexes,
                    embedding_provider, make_analyzer, make_pipeline,
                    make_orchestrator

Environment strategy:
  - The record store runs against an in-memory SQLite database (aiosqlite,
    one shared connection through StaticPool), rebuilt for every test.
  - S3 and the Celery broker are replaced with MagicMock(spec=...) doubles.
  - The embedding provider, vector index and chat model are deterministic
    in-process fakes; no network call is ever made.

How to run:
  pytest                           # all tests
  pytest -m unit                   # unit tests only
  pytest -m integration            # end-to-end pipeline over SQLite
  pytest backend/tests/unit/test_state_machine.py
"""

from __future__ import annotations

import hashlib
import json
import os
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any package imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("OPENAI_API_KEY",        "")
os.environ.setdefault("PINECONE_API_KEY",      "")
os.environ.setdefault("VECTOR_INDEX_BACKEND",  "none")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")

from langchain_core.language_models.fake_chat_models import FakeListChatModel  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from docpipeline.db.session import create_all  # noqa: E402
from docpipeline.llm.analyzer import Analyzer  # noqa: E402
from docpipeline.llm.provider import LLMProvider, ProviderSettings  # noqa: E402
from docpipeline.models.analysis import AnalysisRecord, utcnow  # noqa: E402
from docpipeline.processing.chunking import DocumentChunker  # noqa: E402
from docpipeline.processing.embeddings import Embedder, EmbedderConfig, EmbeddingProvider  # noqa: E402
from docpipeline.schemas.analysis import AnalysisStatus  # noqa: E402
from docpipeline.services.analysis_store import AnalysisRecordStore  # noqa: E402
from docpipeline.services.orchestrator import AnalysisOrchestrator, OrchestratorConfig  # noqa: E402
from docpipeline.services.pipeline import AnalysisPipeline  # noqa: E402
from docpipeline.services.queue import JobQueue  # noqa: E402
from docpipeline.storage.s3 import DocumentStorage, StoredDocument, document_key  # noqa: E402
from docpipeline.vectorstore.base import (  # noqa: E402
    DeleteResult,
    IndexStats,
    QueryResult,
    SearchResponse,
    UpsertResult,
    VectorIndexBase,
    VectorIndexConfig,
)

TEST_DIMENSIONS = 8


# ─────────────────────────────────────────────────────────────────────────────
# Organization and user fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def org_id() -> uuid.UUID:
    """A stable UUID used as organization_id across all tests."""
    return uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")


@pytest.fixture
def other_org_id() -> uuid.UUID:
    """A second organization, for isolation checks."""
    return uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


# ─────────────────────────────────────────────────────────────────────────────
# Sample documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_txt_bytes() -> bytes:
    """One heading and two paragraphs, roughly 500 bytes."""
    return (
        "Project Overview\n"
        "The customer portal replacement moves account management, billing "
        "history and support tickets into a single web application used by "
        "every retail customer and by the internal service desk team.\n"
        "Delivery is planned in three phases over nine months with a fixed "
        "budget of 450000 USD, a dedicated team of six engineers and a hard "
        "dependency on the new identity provider going live in the first quarter.\n"
    ).encode("utf-8")


@pytest.fixture
def analysis_payload() -> dict:
    """A schema-valid model response with confidence 0.7."""
    return {
        "projectObjectives": ["Replace the customer portal", "Consolidate billing history"],
        "scope": {
            "included": ["Account management", "Billing history", "Support tickets"],
            "excluded": ["Mobile app"],
            "assumptions": ["Identity provider live in Q1"],
            "constraints": ["Fixed budget"],
        },
        "stakeholders": [
            {"name": "Retail customers", "role": "End users", "responsibilities": [], "influence": "high"},
        ],
        "timeline": {
            "estimatedDuration": "9 months",
            "milestones": [{"name": "Phase 1", "description": "Accounts", "dependencies": []}],
        },
        "resources": {
            "humanResources": [{"role": "Engineer", "skillLevel": "senior", "quantity": 6}],
            "technicalResources": ["Web platform"],
            "budget": {"estimated": 450000, "currency": "USD", "breakdown": {}},
        },
        "risks": [{"description": "Identity provider slips", "probability": "medium", "impact": "high"}],
        "dependencies": [{"description": "Identity provider", "type": "external", "criticality": "high"}],
        "successCriteria": [{"criterion": "Portal live", "metric": "launch", "target": "Q4"}],
        "kpis": [{"name": "Adoption", "target": 80, "unit": "%"}],
        "confidence": 0.7,
    }


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def store(session_factory) -> AnalysisRecordStore:
    return AnalysisRecordStore(session_factory)


@pytest.fixture
def make_record(org_id, user_id):
    """
    Factory fixture: returns an unsaved AnalysisRecord with sensible defaults.

    Usage:
        record = make_record(status=AnalysisStatus.FAILED, retry_count=2)
    """
    def _build(**overrides) -> AnalysisRecord:
        analysis_id = overrides.pop("id", uuid.uuid4())
        organization_id = overrides.pop("organization_id", org_id)
        filename = overrides.pop("filename", "brief.txt")
        status = overrides.pop("status", AnalysisStatus.PENDING)
        values = {
            "id":                 analysis_id,
            "organization_id":    organization_id,
            "user_id":            user_id,
            "document_name":      "Brief",
            "filename":           filename,
            "document_hash":      hashlib.sha256(str(analysis_id).encode()).hexdigest(),
            "document_type":      "brd",
            "document_size":      1024,
            "storage_key":        document_key(organization_id, analysis_id, filename),
            "analysis_type":      "BRD_ANALYSIS",
            "status":             AnalysisStatus(status).value,
            "retry_count":        0,
            "processing_options": {"analysis_depth": "detailed", "extract_fields": [], "cost_limit": None},
            "record_metadata":    {"progress": 0, "external_service_calls": [], "processing_steps": []},
            "audit_trail":        [],
            "total_cost":         Decimal("0"),
            "created_at":         utcnow(),
        }
        values.update(overrides)
        return AnalysisRecord(**values)

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Mock S3 storage service
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_storage():
    """
    Mocked DocumentStorage backed by a dict. put_document stores the bytes
    under the real organization-scoped key; get_document reads them back.
    """
    storage = MagicMock(spec=DocumentStorage)
    objects: dict[str, bytes] = {}

    async def _put(organization_id, analysis_id, filename, body):
        key = document_key(organization_id, analysis_id, filename)
        objects[key] = body
        return StoredDocument(
            organization_id=organization_id,
            key=key,
            bucket="test-bucket",
            size_bytes=len(body),
            content_type="text/plain",
            etag="d41d8cd98f00b204e9800998ecf8427e",
        )

    async def _get(organization_id, key):
        if key not in objects:
            raise FileNotFoundError(f"Object not found: {key}")
        return objects[key]

    async def _delete(organization_id, key):
        objects.pop(key, None)

    storage.put_document    = AsyncMock(side_effect=_put)
    storage.get_document    = AsyncMock(side_effect=_get)
    storage.delete_document = AsyncMock(side_effect=_delete)
    storage.objects = objects
    return storage


# ─────────────────────────────────────────────────────────────────────────────
# Mock job queue
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_queue():
    """Mocked JobQueue — records calls without touching Celery/broker."""
    queue = MagicMock(spec=JobQueue)
    queue.enqueue = AsyncMock(return_value=None)
    queue.revoke  = AsyncMock(return_value=None)
    return queue


# ─────────────────────────────────────────────────────────────────────────────
# Fake embedding provider
# ─────────────────────────────────────────────────────────────────────────────

class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic vectors derived from a hash of the text."""

    def __init__(self, dimensions: int = TEST_DIMENSIONS, configured: bool = True) -> None:
        self.dimensions = dimensions
        self.configured = configured
        self.calls: list[list[str]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    @property
    def model(self) -> str:
        return "text-embedding-3-small"

    async def embed_batch(self, texts):
        self.calls.append(list(texts))
        vectors = []
        for text in texts:
            digest = hashlib.sha256(text.encode()).digest()
            vectors.append([b / 255.0 for b in digest[: self.dimensions]])
        return vectors, sum(max(1, len(t) // 4) for t in texts)


@pytest.fixture
def embedding_provider() -> HashEmbeddingProvider:
    return HashEmbeddingProvider()


@pytest.fixture
def embedding_provider_cls() -> type[HashEmbeddingProvider]:
    """The fake provider class, for tests that reconfigure or subclass it."""
    return HashEmbeddingProvider


@pytest.fixture
def embedder_config() -> EmbedderConfig:
    return EmbedderConfig(
        dimensions=TEST_DIMENSIONS,
        api_key="sk-test",
        batch_size=2,
        inter_batch_delay=0,
        retry_base_delay=0,
    )


# ─────────────────────────────────────────────────────────────────────────────
# In-memory vector index
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryVectorIndex(VectorIndexBase):
    """Dict-backed index with cosine scoring; keyed by record id."""

    def __init__(self, organization_id, config, fail_after: int | None = None) -> None:
        super().__init__(organization_id, config)
        self.records: dict[str, tuple[list[float], dict]] = {}
        self.fail_after = fail_after

    @property
    def is_ready(self) -> bool:
        return True

    async def upsert(self, document_id, records):
        stored = 0
        for record in records:
            self._validate_record(document_id, record)
            if self.fail_after is not None and stored >= self.fail_after:
                return UpsertResult(
                    success=False, stored_count=stored, attempted_count=len(records),
                    error="batch rejected",
                )
            self.records[record.id] = (list(record.values), dict(record.metadata))
            stored += 1
        return UpsertResult(success=True, stored_count=stored, attempted_count=len(records))

    async def search(self, vector, filter=None, top_k=None):
        def _cos(a, b):
            dot = sum(x * y for x, y in zip(a, b))
            na = sum(x * x for x in a) ** 0.5
            nb = sum(y * y for y in b) ** 0.5
            return dot / (na * nb) if na and nb else 0.0

        wanted = {k: v["$eq"] for c in (filter.clauses() if filter else []) for k, v in c.items()}
        hits = [
            QueryResult(id=rid, score=_cos(vector, values), metadata=meta)
            for rid, (values, meta) in self.records.items()
            if all(meta.get(k) == v for k, v in wanted.items())
        ]
        hits.sort(key=lambda r: r.score, reverse=True)
        return SearchResponse(results=hits[: self._resolve_top_k(top_k)])

    async def delete_by_document(self, document_id):
        for rid in [r for r, (_, m) in self.records.items() if m.get("source_document_id") == document_id]:
            del self.records[rid]
        return DeleteResult(success=True)

    async def stats(self):
        return IndexStats(vector_count=len(self.records), dimension=self._cfg.dimensions)


@pytest.fixture
def index_config() -> VectorIndexConfig:
    return VectorIndexConfig(backend="memory", api_key="test", dimensions=TEST_DIMENSIONS, upsert_batch_size=2)


@pytest.fixture
def memory_indexes(index_config):
    """
    Factory fixture: `memory_indexes.factory` builds (and remembers) one
    InMemoryVectorIndex per organization; `memory_indexes.by_org` exposes them.
    """
    class _Indexes:
        def __init__(self) -> None:
            self.by_org: dict[uuid.UUID, InMemoryVectorIndex] = {}
            self.fail_after: int | None = None

        def factory(self, organization_id):
            if organization_id not in self.by_org:
                self.by_org[organization_id] = InMemoryVectorIndex(
                    organization_id, index_config, fail_after=self.fail_after,
                )
            return self.by_org[organization_id]

    return _Indexes()


# ─────────────────────────────────────────────────────────────────────────────
# Analyzer with a scripted chat model
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_analyzer():
    """
    Factory fixture: Analyzer whose chat model replies with `responses` in order.

    Usage:
        analyzer = make_analyzer([json.dumps(payload)])
        analyzer = make_analyzer([], api_key="")   # degraded provider
    """
    def _build(responses: list, api_key: str = "sk-test", **settings) -> Analyzer:
        replies = [r if isinstance(r, str) else json.dumps(r) for r in responses] or ["{}"]
        provider = LLMProvider(
            ProviderSettings(api_key=api_key, **settings),
            chat_model=FakeListChatModel(responses=replies),
        )
        return Analyzer(provider)

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Orchestrator + pipeline factories
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def orchestrator_config() -> OrchestratorConfig:
    return OrchestratorConfig(model_version="gpt-4o-mini")


@pytest.fixture
def make_orchestrator(store, mock_storage, mock_queue, orchestrator_config):
    def _build(config: OrchestratorConfig | None = None) -> AnalysisOrchestrator:
        return AnalysisOrchestrator(store, mock_storage, mock_queue, config or orchestrator_config)

    return _build


@pytest.fixture
def make_pipeline(
    store, mock_storage, mock_queue, embedder_config, embedding_provider,
    memory_indexes, make_analyzer, analysis_payload, orchestrator_config,
):
    """
    Factory fixture: AnalysisPipeline over the SQLite store and in-process fakes.

    Usage:
        pipeline = make_pipeline()
        pipeline = make_pipeline(analyzer=make_analyzer([...]), index_factory=...)
    """
    def _build(
        analyzer:      Analyzer | None = None,
        embedder:      Embedder | None = None,
        index_factory=None,
        config:        OrchestratorConfig | None = None,
    ) -> AnalysisPipeline:
        return AnalysisPipeline(
            store=store,
            storage=mock_storage,
            chunker=DocumentChunker(),
            embedder=embedder or Embedder(embedder_config, provider=embedding_provider),
            index_factory=index_factory or memory_indexes.factory,
            analyzer=analyzer or make_analyzer([analysis_payload]),
            queue=mock_queue,
            config=config or orchestrator_config,
        )

    return _build
