from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from controlmap.domain.models import Document, DocumentChunk


async def list_processed_documents(
    session: AsyncSession, organization_id: str, document_ids: list[str]
) -> list[Document]:
    # Documents from other organizations or still in ingestion never resolve.
    if not document_ids:
        return []
    result = await session.execute(
        select(Document)
        .where(Document.organization_id == organization_id)
        .where(Document.id.in_(document_ids))
        .where(Document.processed_at.is_not(None))
    )
    rows = {row.id: row for row in result.scalars().all()}
    # Keep the caller's order so context rendering is deterministic.
    return [rows[doc_id] for doc_id in document_ids if doc_id in rows]


async def list_chunks(session: AsyncSession, document_id: str) -> list[DocumentChunk]:
    result = await session.execute(
        select(DocumentChunk)
        .where(DocumentChunk.document_id == document_id)
        .order_by(DocumentChunk.chunk_index.asc())
    )
    return list(result.scalars().all())
