"""
Vector Index — Abstract Base

Every concrete backend (Pinecone, or the unconfigured stand-in) implements
this interface. The pipeline only speaks this protocol, so backends are
swappable without touching orchestration code.

Organization isolation contract (enforced by ALL implementations):
  - Every upsert/search/delete is scoped to the organization namespace.
  - The namespace is derived ONLY from the organization_id the index was
    constructed with, never from caller-supplied input.
  - Cross-namespace operations are not exposed on this interface.

Degradation contract:
  - An index that is not configured never raises from upsert/search/delete;
    it returns a result with configured=False and an explanatory error.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Sequence
from uuid import UUID

NOT_CONFIGURED_MESSAGE = "Vector database not configured"

MAX_TOP_K = 100


@dataclass(frozen=True)
class VectorIndexConfig:
    backend:           str   = "pinecone"      # "pinecone" | "none"
    api_key:           str   = ""
    index_name:        str   = "document-analysis"
    cloud:             str   = "aws"
    region:            str   = "us-east-1"
    dimensions:        int   = 1536
    upsert_batch_size: int   = 100
    default_top_k:     int   = 10
    call_timeout:      float = 30.0

    @property
    def is_configured(self) -> bool:
        return self.backend.lower() != "none" and bool(self.api_key)

    @classmethod
    def from_settings(cls, settings) -> "VectorIndexConfig":
        return cls(
            backend=settings.vector_index_backend,
            api_key=settings.pinecone_api_key,
            index_name=settings.pinecone_index_name,
            cloud=settings.pinecone_cloud,
            region=settings.aws_region,
            dimensions=settings.embedding_dimensions,
            upsert_batch_size=settings.vector_upsert_batch_size,
            default_top_k=settings.vector_default_top_k,
            call_timeout=settings.vector_call_timeout,
        )


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A single embedding record to upsert into the index."""
    id:       str              # deterministic: <document_id>_chunk_<chunk_index>
    values:   list[float]
    metadata: dict
    # Required fields inside metadata (checked at upsert time):
    # - organization_id:    str
    # - source_document_id: str
    # - chunk_index:        int
    # - content:            str  (raw chunk text, returned in results)


@dataclass
class QueryResult:
    """One result returned from a similarity search."""
    id:       str
    score:    float
    metadata: dict

    @property
    def content(self) -> str:
        return self.metadata.get("content", "")


@dataclass(frozen=True)
class SearchFilter:
    """Equality filters ANDed with the organization guard."""
    source_document_id: str | None = None
    kind:               str | None = None
    section_level:      int | None = None

    def clauses(self) -> list[dict]:
        out: list[dict] = []
        if self.source_document_id is not None:
            out.append({"source_document_id": {"$eq": self.source_document_id}})
        if self.kind is not None:
            out.append({"kind": {"$eq": self.kind}})
        if self.section_level is not None:
            out.append({"section_level": {"$eq": self.section_level}})
        return out


@dataclass
class UpsertResult:
    """
    stored_count counts vectors in batches that were accepted; a failing
    batch does not roll back earlier ones.
    """
    success:         bool
    stored_count:    int
    attempted_count: int = 0
    error:           str | None = None
    configured:      bool = True

    @property
    def is_partial(self) -> bool:
        return self.configured and 0 < self.stored_count < self.attempted_count


@dataclass
class SearchResponse:
    results:    list[QueryResult] = field(default_factory=list)
    configured: bool = True
    error:      str | None = None


@dataclass
class DeleteResult:
    success:    bool
    error:      str | None = None
    configured: bool = True


@dataclass
class IndexStats:
    vector_count: int = 0
    dimension:    int = 0
    configured:   bool = True


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorIndexBase(ABC):
    """
    Organization-scoped vector index.

    Each instance is bound to a single organization_id at construction time.
    There is no method to search across organizations.
    """

    def __init__(self, organization_id: UUID, config: VectorIndexConfig) -> None:
        self._organization_id = organization_id
        self._cfg = config

    @property
    def organization_id(self) -> UUID:
        return self._organization_id

    def namespace(self) -> str:
        """Pattern: tenant_<organization_id>"""
        return f"tenant_{self._organization_id}"

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """True when calls will reach a real backend."""

    @abstractmethod
    async def upsert(self, document_id: str, records: list[VectorRecord]) -> UpsertResult:
        """
        Insert or replace records for one document, in batches of
        config.upsert_batch_size. Same ids replace, never duplicate.
        """

    @abstractmethod
    async def search(
        self,
        vector: list[float],
        filter: SearchFilter | None = None,
        top_k:  int | None = None,
    ) -> SearchResponse:
        """Nearest-neighbour search, results ordered by descending score."""

    @abstractmethod
    async def delete_by_document(self, document_id: str) -> DeleteResult:
        """Delete every vector whose source_document_id matches."""

    @abstractmethod
    async def stats(self) -> IndexStats:
        """Vector count for this namespace and the index dimension."""

    def _validate_record(self, document_id: str, record: VectorRecord) -> None:
        """Reject records that belong to another organization or document."""
        org = record.metadata.get("organization_id")
        if org != str(self._organization_id):
            raise ValueError(
                f"Record organization mismatch: expected {self._organization_id}, got {org}"
            )
        doc = record.metadata.get("source_document_id")
        if doc != document_id:
            raise ValueError(
                f"Record document mismatch: expected {document_id}, got {doc}"
            )
        if len(record.values) != self._cfg.dimensions:
            raise ValueError(
                f"Record {record.id} has dimension {len(record.values)}; "
                f"index expects {self._cfg.dimensions}"
            )

    def _resolve_top_k(self, top_k: int | None) -> int:
        k = top_k if top_k is not None else self._cfg.default_top_k
        return max(1, min(k, MAX_TOP_K))


def build_vector_records(
    organization_id: UUID,
    chunks:          Sequence,
    vectors:         Sequence,
) -> list[VectorRecord]:
    """
    Pair chunks with their embedding vectors, in order.

    Raises ValueError if the sequences differ in length or a vector's
    chunk_id does not match its chunk.
    """
    if len(chunks) != len(vectors):
        raise ValueError(f"{len(chunks)} chunks but {len(vectors)} vectors")

    records: list[VectorRecord] = []
    for chunk, vector in zip(chunks, vectors):
        if vector.chunk_id != chunk.chunk_id:
            raise ValueError(f"Vector {vector.chunk_id} does not match chunk {chunk.chunk_id}")
        metadata = chunk.metadata()
        metadata["organization_id"] = str(organization_id)
        records.append(VectorRecord(id=chunk.chunk_id, values=list(vector.values), metadata=metadata))
    return records
