from docpipeline.vectorstore.base import (
    NOT_CONFIGURED_MESSAGE,
    DeleteResult,
    IndexStats,
    QueryResult,
    SearchFilter,
    SearchResponse,
    UpsertResult,
    VectorIndexBase,
    VectorIndexConfig,
    VectorRecord,
    build_vector_records,
)
from docpipeline.vectorstore.factory import get_vector_index

__all__ = [
    "NOT_CONFIGURED_MESSAGE",
    "DeleteResult",
    "IndexStats",
    "QueryResult",
    "SearchFilter",
    "SearchResponse",
    "UpsertResult",
    "VectorIndexBase",
    "VectorIndexConfig",
    "VectorRecord",
    "build_vector_records",
    "get_vector_index",
]
