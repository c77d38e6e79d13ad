from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from controlmap.core.config import get_settings
from controlmap.persistence.repos import documents as documents_repo
from controlmap.providers.documents.base import ChunkRef, CitationSource, PreparedContext

logger = logging.getLogger(__name__)

_CHUNK_LOCATOR = re.compile(r"CHUNK-(\d+)", re.IGNORECASE)


def _coerce_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DatabaseDocumentPipeline:
    """Renders pre-chunked documents from the ingestion tables into one context blob."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_prepared_context(
        self, organization_id: str, document_ids: list[str]
    ) -> PreparedContext:
        max_chars = get_settings().analysis_context_max_chars
        blocks: list[str] = []
        chunks: dict[str, ChunkRef] = {}
        names: dict[str, str] = {}
        resolved: list[str] = []
        size = 0
        truncated = False
        async with self._session_factory() as session:
            documents = await documents_repo.list_processed_documents(
                session, organization_id, document_ids
            )
            for document in documents:
                resolved.append(document.id)
                names[document.id] = document.filename
                if truncated:
                    continue
                for chunk in await documents_repo.list_chunks(session, document.id):
                    locator = f"CHUNK-{len(chunks)}"
                    page = f"[PAGE: {chunk.page_number}] " if chunk.page_number is not None else ""
                    block = (
                        f"[{locator}] [DOC: {document.filename}] {page}[DOC_ID: {document.id}]\n"
                        f"{chunk.text.strip()}"
                    )
                    if size + len(block) > max_chars:
                        truncated = True
                        break
                    blocks.append(block)
                    size += len(block) + 2
                    chunks[locator] = ChunkRef(
                        locator=locator,
                        document_id=document.id,
                        document_name=document.filename,
                        chunk_index=chunk.chunk_index,
                        page_number=chunk.page_number,
                    )
        if truncated:
            logger.warning(
                "document_context_truncated organization_id=%s chunks=%s max_chars=%s",
                organization_id,
                len(chunks),
                max_chars,
            )
        return PreparedContext(
            text="\n\n".join(blocks),
            document_ids=tuple(resolved),
            document_names=names,
            chunks=chunks,
            truncated=truncated,
        )

    def resolve_citation(self, context: PreparedContext, citation: dict[str, Any]) -> CitationSource:
        # Prefer the context's own chunk map; fall back to what the model claimed.
        locator = citation.get("locator") or ""
        match = _CHUNK_LOCATOR.search(str(locator))
        if match is not None:
            ref = context.chunks.get(f"CHUNK-{int(match.group(1))}")
            if ref is not None:
                return CitationSource(
                    document_id=ref.document_id,
                    document_name=ref.document_name,
                    page_number=ref.page_number,
                    chunk_index=ref.chunk_index,
                )
        document_id = citation.get("document_id")
        document_id = str(document_id) if document_id is not None else None
        if document_id not in context.document_names:
            # Never attribute evidence to a document outside the analysis.
            document_id = None
        return CitationSource(
            document_id=document_id,
            document_name=context.document_names.get(document_id) if document_id else None,
            page_number=_coerce_int(citation.get("page_number")),
            chunk_index=_coerce_int(citation.get("chunk_index")),
        )
