from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from controlmap.domain.models import AnalysisPrompt, Control, Document, DocumentChunk, Framework
from controlmap.persistence.db import SessionLocal


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def seed_framework(
    *,
    framework_id: str | None = None,
    name: str = "SOC 2",
    controls: int = 3,
) -> tuple[str, list[str]]:
    # Controls are numbered in catalog order: C-1, C-2, ...
    framework_id = framework_id or f"fw-{uuid4().hex[:8]}"
    control_ids: list[str] = []
    async with SessionLocal() as session:
        session.add(Framework(id=framework_id, name=name, version="2024"))
        await session.flush()
        for index in range(controls):
            control_id = f"{framework_id}-c{index + 1}"
            session.add(
                Control(
                    id=control_id,
                    framework_id=framework_id,
                    control_ref=f"C-{index + 1}",
                    title=f"Control {index + 1}",
                    description=f"Description of control {index + 1}",
                    requirement_text=f"Requirement {index + 1}",
                    category="Access Control",
                    sort_order=index,
                )
            )
            control_ids.append(control_id)
        await session.commit()
    return framework_id, control_ids


async def seed_documents(
    *,
    organization_id: str = "org-1",
    count: int = 1,
    chunks: int = 2,
    processed: bool = True,
) -> list[str]:
    document_ids: list[str] = []
    async with SessionLocal() as session:
        for doc_index in range(count):
            document_id = f"doc-{uuid4().hex[:8]}"
            session.add(
                Document(
                    id=document_id,
                    organization_id=organization_id,
                    filename=f"policy-{doc_index + 1}.pdf",
                    content_type="application/pdf",
                    processed_at=_utc_now() if processed else None,
                )
            )
            await session.flush()
            for chunk_index in range(chunks):
                session.add(
                    DocumentChunk(
                        document_id=document_id,
                        chunk_index=chunk_index,
                        page_number=chunk_index + 1,
                        text=f"Policy {doc_index + 1} section {chunk_index + 1}: access is reviewed quarterly.",
                    )
                )
            document_ids.append(document_id)
        await session.commit()
    return document_ids


async def seed_prompt(prompt_type: str, text: str, *, is_active: bool = True) -> None:
    async with SessionLocal() as session:
        session.add(AnalysisPrompt(prompt_type=prompt_type, prompt_text=text, is_active=is_active))
        await session.commit()
