"""
Pinecone Vector Index — Organization Namespace Isolation

Isolation model:
  Every organization maps to its own namespace: "tenant_<organization_id>"

  - All upserts go to namespace=tenant_<id>
  - All searches are forced to namespace=tenant_<id>
  - Metadata filter always includes organization_id as a secondary guard
    (even if the namespace were somehow omitted, the metadata filter
     blocks cross-organization results)

Architecture:
  One shared Pinecone index, many namespaces. Namespace creation is
  implicit (Pinecone creates it on first upsert). The index itself is
  created by ensure_index() at deployment time.

The Pinecone client is synchronous; every call runs in a worker thread
under asyncio.wait_for so a hung request is bounded by call_timeout.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import UUID

from pinecone import Pinecone, ServerlessSpec
from pinecone.exceptions import PineconeException

from docpipeline.vectorstore.base import (
    DeleteResult,
    IndexStats,
    QueryResult,
    SearchFilter,
    SearchResponse,
    UpsertResult,
    VectorIndexBase,
    VectorIndexConfig,
    VectorRecord,
)

logger = logging.getLogger(__name__)


def _get(obj, key: str, default=None):
    """Read a field from either a dict response or a Pinecone model object."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


class PineconeVectorIndex(VectorIndexBase):
    """
    Organization-scoped Pinecone index.

    The namespace is derived from organization_id at construction time and
    cannot be changed after instantiation.
    """

    def __init__(
        self,
        organization_id: UUID,
        config:          VectorIndexConfig,
        index=None,
    ) -> None:
        super().__init__(organization_id, config)
        if index is None:
            index = Pinecone(api_key=config.api_key).Index(config.index_name)
        self._index = index

    @property
    def is_ready(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Metadata guard
    # ------------------------------------------------------------------

    def _org_filter(self, extra: SearchFilter | None = None) -> dict:
        """
        Build a metadata filter that ALWAYS scopes to this organization.
        Caller-supplied clauses are ANDed in and cannot remove it.
        """
        base = {"organization_id": {"$eq": str(self._organization_id)}}
        clauses = extra.clauses() if extra else []
        if clauses:
            return {"$and": [base, *clauses]}
        return base

    async def _call(self, fn, /, **kwargs):
        return await asyncio.wait_for(
            asyncio.to_thread(fn, **kwargs),
            timeout=self._cfg.call_timeout,
        )

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, document_id: str, records: list[VectorRecord]) -> UpsertResult:
        """
        Upsert vectors into the organization's namespace, batch by batch.
        A failing batch is logged and skipped; later batches still run.
        """
        for rec in records:
            self._validate_record(document_id, rec)

        stored = 0
        errors: list[str] = []
        size = max(1, self._cfg.upsert_batch_size)

        for start in range(0, len(records), size):
            batch = records[start : start + size]
            vectors = [
                {"id": rec.id, "values": rec.values, "metadata": rec.metadata}
                for rec in batch
            ]
            try:
                await self._call(self._index.upsert, vectors=vectors, namespace=self.namespace())
            except Exception as exc:
                # client and transport errors fail this batch only
                logger.error(
                    "Pinecone upsert batch failed | org=%s doc=%s offset=%d size=%d error=%s",
                    self._organization_id, document_id, start, len(batch), exc,
                )
                errors.append(f"batch at offset {start}: {type(exc).__name__}: {exc}")
                continue

            stored += len(batch)
            logger.debug(
                "Pinecone upsert | org=%s namespace=%s batch=%d total=%d",
                self._organization_id, self.namespace(), len(batch), stored,
            )

        logger.info(
            "Pinecone upsert done | org=%s doc=%s stored=%d attempted=%d",
            self._organization_id, document_id, stored, len(records),
        )
        return UpsertResult(
            success=not errors,
            stored_count=stored,
            attempted_count=len(records),
            error="; ".join(errors) or None,
        )

    async def search(
        self,
        vector: list[float],
        filter: SearchFilter | None = None,
        top_k:  int | None = None,
    ) -> SearchResponse:
        k = self._resolve_top_k(top_k)
        try:
            resp = await self._call(
                self._index.query,
                vector=vector,
                top_k=k,
                namespace=self.namespace(),
                filter=self._org_filter(filter),
                include_metadata=True,
                include_values=False,
            )
        except (PineconeException, asyncio.TimeoutError, OSError) as exc:
            logger.error("Pinecone query failed | org=%s error=%s", self._organization_id, exc)
            return SearchResponse(error=f"{type(exc).__name__}: {exc}")

        results = [
            QueryResult(
                id=_get(match, "id"),
                score=float(_get(match, "score", 0.0)),
                metadata=dict(_get(match, "metadata") or {}),
            )
            for match in (_get(resp, "matches") or [])
        ]
        results.sort(key=lambda r: r.score, reverse=True)

        logger.debug(
            "Pinecone query | org=%s top_k=%d results=%d",
            self._organization_id, k, len(results),
        )
        return SearchResponse(results=results)

    async def delete_by_document(self, document_id: str) -> DeleteResult:
        """
        Delete all chunks for a document by metadata filter.
        Serverless indexes reject delete-by-filter; fall back to listing
        ids by their document prefix.
        """
        try:
            await self._call(
                self._index.delete,
                namespace=self.namespace(),
                filter={
                    "$and": [
                        {"organization_id":    {"$eq": str(self._organization_id)}},
                        {"source_document_id": {"$eq": document_id}},
                    ]
                },
            )
        except PineconeException as exc:
            logger.warning("Metadata delete unavailable, using prefix list fallback: %s", exc)
            try:
                await self._list_delete_by_document(document_id)
            except (PineconeException, asyncio.TimeoutError, OSError) as inner:
                return DeleteResult(success=False, error=f"{type(inner).__name__}: {inner}")
        except (asyncio.TimeoutError, OSError) as exc:
            return DeleteResult(success=False, error=f"{type(exc).__name__}: {exc}")

        logger.info(
            "Pinecone delete_by_document | org=%s doc=%s",
            self._organization_id, document_id,
        )
        return DeleteResult(success=True)

    def _list_ids(self, prefix: str) -> list[str]:
        ids: list[str] = []
        for id_batch in self._index.list(prefix=prefix, namespace=self.namespace()):
            ids.extend(id_batch)
        return ids

    async def _list_delete_by_document(self, document_id: str) -> None:
        # list() pages over the network; drain it in a worker thread
        ids = await self._call(self._list_ids, prefix=f"{document_id}_chunk_")
        if ids:
            await self._call(self._index.delete, ids=ids, namespace=self.namespace())

    async def stats(self) -> IndexStats:
        resp = await self._call(self._index.describe_index_stats)
        namespaces = _get(resp, "namespaces") or {}
        ns = namespaces.get(self.namespace(), {}) if isinstance(namespaces, dict) else {}
        return IndexStats(
            vector_count=int(_get(ns, "vector_count", 0) or 0),
            dimension=int(_get(resp, "dimension", 0) or 0),
        )

    # ------------------------------------------------------------------
    # Index provisioning (run once at deployment)
    # ------------------------------------------------------------------

    @staticmethod
    def ensure_index(config: VectorIndexConfig) -> bool:
        """
        Create the shared Pinecone index if it doesn't exist.
        Returns True when an index was created.
        """
        pc = Pinecone(api_key=config.api_key)
        existing = [i.name for i in pc.list_indexes()]
        if config.index_name in existing:
            logger.info("Pinecone index '%s' already exists", config.index_name)
            return False

        pc.create_index(
            name=config.index_name,
            dimension=config.dimensions,
            metric="cosine",
            spec=ServerlessSpec(cloud=config.cloud, region=config.region),
        )
        logger.info(
            "Pinecone index '%s' created | dimension=%d", config.index_name, config.dimensions
        )
        return True
