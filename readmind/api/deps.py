"""Shared request dependencies"""

from typing import Optional
from fastapi import Header, HTTPException, status

from readmind.logging_config import set_request_context
from readmind.services.embedding_service import EmbeddingService, get_embedding_service
from readmind.services.extraction_queue import ExtractionQueue, get_extraction_queue


async def get_owner_id(x_owner_id: Optional[str] = Header(None, alias="X-Owner-Id")) -> str:
    """
    The calling owner, as asserted by the upstream auth layer.

    Every query below this point is scoped to this id.
    """
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Owner-Id header",
        )
    set_request_context(owner_id=owner_id)
    return owner_id


def get_embedder() -> EmbeddingService:
    return get_embedding_service()


def get_queue() -> ExtractionQueue:
    return get_extraction_queue()
