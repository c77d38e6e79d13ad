from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from controlmap.core.config import get_settings
from controlmap.domain.analysis import CONTROL_STATUSES, STATUS_MISSING, STATUS_PARTIAL


_EXCERPT_CHARS = 300


def build_gap_summary(controls: list[dict[str, Any]], *, threshold: float | None = None) -> dict[str, Any]:
    """Summarize what an auditor should look at first.

    Missing controls, non-missing controls under the confidence threshold, and
    one recommendation line per non-empty group.
    """
    if threshold is None:
        threshold = get_settings().low_confidence_threshold
    missing = [
        {
            "control_id": control["control_id"],
            "control_ref": control.get("control_ref"),
            "title": control["title"],
            "description": control.get("description"),
            "failed": bool(control.get("failed")),
        }
        for control in controls
        if control["status"] == STATUS_MISSING
    ]
    low_confidence = [
        {
            "control_id": control["control_id"],
            "control_ref": control.get("control_ref"),
            "title": control["title"],
            "confidence": control["confidence"],
            "reasoning": control.get("reasoning"),
        }
        for control in controls
        if control["status"] != STATUS_MISSING and control["confidence"] < threshold
    ]
    partial = sum(1 for control in controls if control["status"] == STATUS_PARTIAL)
    failed = sum(1 for control in controls if control.get("failed"))

    recommendations = []
    if missing:
        recommendations.append(
            f"{len(missing)} controls have no supporting evidence. "
            "Review and provide documentation for these controls."
        )
    if low_confidence:
        recommendations.append(
            f"{len(low_confidence)} controls have low confidence scores. Additional evidence may be needed."
        )
    if partial:
        recommendations.append(
            f"{partial} controls are partially compliant. Review gaps and provide additional documentation."
        )
    if failed:
        recommendations.append(
            f"{failed} controls could not be evaluated. Re-run the analysis once the evaluation backend is healthy."
        )
    return {
        "missing_controls": missing,
        "low_confidence_controls": low_confidence,
        "recommendations": recommendations,
    }


def parse_status_filter(raw: str | None) -> list[str] | None:
    """Parse ``compliant,partial`` style filters.

    ``None`` means no filter. A filter with no valid statuses yields an empty
    list, which selects nothing.
    """
    if raw is None or not raw.strip():
        return None
    wanted = [part.strip().lower() for part in raw.split(",")]
    return [status for status in CONTROL_STATUSES if status in wanted]


def _format_dt(value: Any) -> str:
    if not value:
        return "In progress"
    if isinstance(value, str):
        return value
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def _percent(count: int, total: int) -> int:
    return round(count * 100 / total) if total else 0


def render_markdown(
    results: dict[str, Any],
    *,
    statuses: list[str] | None = None,
    generated_at: datetime | None = None,
) -> str:
    analysis = results["analysis"]
    controls = results["controls"]
    generated_at = generated_at or datetime.now(timezone.utc)
    framework = analysis.get("framework_name") or analysis["framework_id"]
    counts = {status: sum(1 for c in controls if c["status"] == status) for status in CONTROL_STATUSES}
    total = len(controls)
    average = analysis["totals"].get("average_confidence")

    lines = [
        f"# {framework} Compliance Analysis Report",
        "",
        "## Executive Summary",
        "",
        f"**Analysis ID:** {analysis['id']}  ",
        f"**Framework:** {framework}  ",
        f"**Status:** {analysis['status']}  ",
        f"**Started:** {_format_dt(analysis.get('started_at'))}  ",
        f"**Completed:** {_format_dt(analysis.get('completed_at'))}  ",
    ]
    if statuses is not None:
        label = ", ".join(status.capitalize() for status in statuses) or "None"
        lines.append(f"**Filter Applied:** {label} controls only  ")
    lines += [
        "",
        "### Compliance Overview",
        "",
        f"- **Total Controls Analyzed:** {total}",
        f"- **Compliant:** {counts['compliant']} ({_percent(counts['compliant'], total)}%)",
        f"- **Partial Compliance:** {counts['partial']} ({_percent(counts['partial'], total)}%)",
        f"- **Missing/Non-Compliant:** {counts['missing']} ({_percent(counts['missing'], total)}%)",
        f"- **Average Confidence Score:** {round(average) if average else 'N/A'}%",
        "",
        "---",
        "",
        "## Detailed Findings",
        "",
    ]

    evidence_total = 0
    documents: set[str] = set()
    for status in CONTROL_STATUSES:
        group = [control for control in controls if control["status"] == status]
        if not group:
            continue
        lines += [f"### {status.capitalize()} Controls ({len(group)})", ""]
        for control in group:
            heading = f"{control['control_ref']}: {control['title']}" if control.get("control_ref") else control["title"]
            lines += [
                f"#### {heading}",
                "",
                f"**Confidence Score:** {round(control['confidence'])}%  ",
                f"**Status:** {status.capitalize()}  ",
                "",
            ]
            if control.get("description"):
                lines += ["**Control Description:**  ", control["description"], ""]
            if control.get("reasoning"):
                lines += ["**Assessment Reasoning:**  ", control["reasoning"], ""]
            evidence = control.get("evidence") or []
            if evidence:
                lines += [f"**Supporting Evidence ({len(evidence)} items):**", ""]
                for index, item in enumerate(evidence, start=1):
                    name = item.get("document_name") or "Unknown document"
                    documents.add(name)
                    lines.append(f"{index}. **{name}** (Confidence: {round(item['confidence'])}%)")
                    if item.get("page_number"):
                        lines.append(f"   *Page {item['page_number']}*")
                    text = item.get("text") or ""
                    excerpt = text[:_EXCERPT_CHARS] + ("..." if len(text) > _EXCERPT_CHARS else "")
                    lines += [f"   > {excerpt}", ""]
                evidence_total += len(evidence)
            else:
                lines += ["**No supporting evidence found.**", ""]
            lines += ["---", ""]

    processing_ms = analysis.get("processing_time_ms")
    lines += [
        "## Analysis Statistics",
        "",
        f"- **Processing Duration:** {f'{round(processing_ms / 1000)}s' if processing_ms else 'N/A'}",
        f"- **Total Evidence Items:** {evidence_total}",
        f"- **Documents Cited:** {len(documents)}",
        "",
        "---",
        "",
        f"*Report generated on {_format_dt(generated_at)}*",
        "",
    ]
    return "\n".join(lines)


def markdown_filename(
    analysis: dict[str, Any], statuses: list[str] | None, generated_at: datetime | None = None
) -> str:
    generated_at = generated_at or datetime.now(timezone.utc)
    framework = analysis.get("framework_name") or analysis["framework_id"]
    base = re.sub(r"[^A-Za-z0-9._-]+", "_", f"{framework}_analysis_{analysis['id']}")
    if statuses is not None:
        base += "_" + ("-".join(statuses) or "none")
    return f"{base}_{generated_at.date().isoformat()}.md"
