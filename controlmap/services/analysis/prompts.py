from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from controlmap.domain.analysis import ControlSpec
from controlmap.persistence.repos import prompts as prompts_repo
from controlmap.providers.documents.base import PreparedContext

logger = logging.getLogger(__name__)


PROMPT_TYPE_DEFAULT = "control_analysis"
PROMPT_TYPE_ISO27001 = "iso27001_analysis"

# Only dotted identifiers are placeholders, so literal JSON braces in templates survive.
_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.]*)\}")

DEFAULT_TEMPLATE = """You are a compliance analyst mapping evidence from an organization's documents to a compliance control.

COMPLIANCE CONTROL:
Framework: {framework.name}
Control: {control.control_id} {control.title}
Category: {control.category}
Description: {control.description}
Requirement: {control.requirement_text}

DOCUMENTS ({documents.count} total), split into chunks labelled [CHUNK-n]:

{document_context}

Your task:
1. Identify the passages that provide evidence for this control.
2. Determine compliance status: "compliant", "partial", or "missing".
3. Assign a confidence score (0-100) based on the strength of the evidence.
4. Explain your reasoning, referring to the specific evidence.

Respond with ONLY valid JSON:
{
  "status": "compliant|partial|missing",
  "confidenceScore": 85,
  "reasoning": "The access control policy defines ...",
  "evidenceItems": [
    {
      "chunkId": "CHUNK-12",
      "documentId": "doc-id from the DOC_ID label",
      "evidenceText": "Most relevant 1-3 sentences quoted from the chunk",
      "pageNumber": 5,
      "confidence": 90,
      "relevanceScore": 95
    }
  ]
}

Guidelines:
- "compliant": strong evidence that fully satisfies the control
- "partial": some evidence exists but gaps remain or implementation is incomplete
- "missing": no relevant evidence found
- Always reference chunks by their CHUNK-n label
"""


@dataclass(frozen=True)
class PromptTemplate:
    prompt_type: str
    text: str
    source: str


def resolve_prompt_type(framework_name: str | None) -> str:
    name = (framework_name or "").lower()
    if "iso" in name and "27001" in name:
        return PROMPT_TYPE_ISO27001
    return PROMPT_TYPE_DEFAULT


async def load_template(session: AsyncSession, framework_name: str | None) -> PromptTemplate:
    # Resolved once per analysis; an active stored template overrides the built-in one.
    prompt_type = resolve_prompt_type(framework_name)
    stored = await prompts_repo.get_active_prompt(session, prompt_type)
    if stored is not None and stored.prompt_text.strip():
        logger.info("analysis_prompt_loaded prompt_type=%s source=database", prompt_type)
        return PromptTemplate(prompt_type=prompt_type, text=stored.prompt_text, source="database")
    return PromptTemplate(prompt_type=prompt_type, text=DEFAULT_TEMPLATE, source="builtin")


def prompt_variables(
    control: ControlSpec, *, framework_name: str | None, context: PreparedContext
) -> dict[str, str]:
    description = control.description or control.requirement_text
    requirement = control.requirement_text or control.description
    variables = {
        "control.title": control.title,
        "control.description": description or "",
        "control.requirement_text": requirement or "",
        "control.control_id": control.ref,
        "control.category": control.category or "Not specified",
        "framework.name": framework_name or "",
        "documents.count": str(context.document_count),
        "document_context": context.text,
    }
    # Names used by templates written for the previous document organizer.
    variables["organizedDocument.documentCount"] = variables["documents.count"]
    variables["comprehensiveChunks"] = context.text
    return variables


def render_prompt(template: str, variables: dict[str, str]) -> str:
    # Unknown placeholders are left untouched.
    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in variables:
            return variables[key]
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)
