"""
Vector Index Factory

Selects the backend from VectorIndexConfig. The rest of the pipeline only
calls get_vector_index(), never the concrete classes.
"""

from __future__ import annotations

import logging
from uuid import UUID

from docpipeline.vectorstore.base import VectorIndexBase, VectorIndexConfig
from docpipeline.vectorstore.unconfigured import UnconfiguredVectorIndex

logger = logging.getLogger(__name__)


def get_vector_index(organization_id: UUID, config: VectorIndexConfig) -> VectorIndexBase:
    """
    Return an organization-scoped index for the configured backend.
    Backend "none", or "pinecone" without an API key, yields the
    unconfigured stand-in.
    """
    backend = config.backend.lower()

    if backend == "none" or not config.is_configured:
        return UnconfiguredVectorIndex(organization_id, config)

    if backend == "pinecone":
        from docpipeline.vectorstore.pinecone_store import PineconeVectorIndex
        return PineconeVectorIndex(organization_id, config)

    raise ValueError(
        f"Unknown vector index backend: '{backend}'. "
        f"Valid options: 'pinecone', 'none'"
    )
