"""
Stand-in index used when no vector backend is configured.

Nothing raises: every call returns configured=False so the pipeline can
finish the analysis and record the index stage as degraded.
"""

from __future__ import annotations

import logging

from docpipeline.vectorstore.base import (
    NOT_CONFIGURED_MESSAGE,
    DeleteResult,
    IndexStats,
    SearchFilter,
    SearchResponse,
    UpsertResult,
    VectorIndexBase,
    VectorRecord,
)

logger = logging.getLogger(__name__)


class UnconfiguredVectorIndex(VectorIndexBase):

    @property
    def is_ready(self) -> bool:
        return False

    async def upsert(self, document_id: str, records: list[VectorRecord]) -> UpsertResult:
        logger.warning(
            "Vector index not configured | org=%s doc=%s skipped=%d",
            self._organization_id, document_id, len(records),
        )
        return UpsertResult(
            success=False,
            stored_count=0,
            attempted_count=len(records),
            error=NOT_CONFIGURED_MESSAGE,
            configured=False,
        )

    async def search(
        self,
        vector: list[float],
        filter: SearchFilter | None = None,
        top_k:  int | None = None,
    ) -> SearchResponse:
        return SearchResponse(configured=False, error=NOT_CONFIGURED_MESSAGE)

    async def delete_by_document(self, document_id: str) -> DeleteResult:
        return DeleteResult(success=False, error=NOT_CONFIGURED_MESSAGE, configured=False)

    async def stats(self) -> IndexStats:
        return IndexStats(configured=False)
