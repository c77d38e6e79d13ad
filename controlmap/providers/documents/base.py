from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class ChunkRef:
    locator: str
    document_id: str
    document_name: str
    chunk_index: int
    page_number: int | None = None


@dataclass(frozen=True)
class CitationSource:
    document_id: str | None
    document_name: str | None
    page_number: int | None
    chunk_index: int | None


@dataclass(frozen=True)
class PreparedContext:
    """Document context assembled once per analysis and shared by every control."""

    text: str
    document_ids: tuple[str, ...]
    document_names: dict[str, str] = field(default_factory=dict)
    chunks: dict[str, ChunkRef] = field(default_factory=dict)
    truncated: bool = False

    @property
    def document_count(self) -> int:
        return len(self.document_ids)


class DocumentPipeline(Protocol):
    async def get_prepared_context(
        self, organization_id: str, document_ids: list[str]
    ) -> PreparedContext:
        ...

    def resolve_citation(self, context: PreparedContext, citation: dict[str, Any]) -> CitationSource:
        ...
