from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from sqlalchemy import select

from controlmap.domain.models import Control, Framework
from controlmap.persistence.db import SessionLocal


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Load a framework catalog (framework + ordered controls) from JSON."
    )
    parser.add_argument("path", type=Path, help="Catalog JSON file")
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Update controls that already exist instead of skipping them",
    )
    return parser


def load_catalog(path: Path) -> dict[str, Any]:
    # Fail early on malformed catalogs so partial frameworks never reach the DB.
    payload = json.loads(path.read_text(encoding="utf-8"))
    framework = payload.get("framework") or {}
    if not framework.get("id") or not framework.get("name"):
        raise ValueError("catalog framework requires id and name")
    controls = payload.get("controls") or []
    seen: set[str] = set()
    for index, control in enumerate(controls):
        ref = control.get("control_ref")
        if not ref or not control.get("title"):
            raise ValueError(f"control #{index} requires control_ref and title")
        if ref in seen:
            raise ValueError(f"duplicate control_ref {ref}")
        seen.add(ref)
    return payload


async def seed_framework(payload: dict[str, Any], *, replace: bool = False) -> tuple[int, int]:
    framework_data = payload["framework"]
    framework_id = framework_data["id"]
    inserted = updated = 0
    async with SessionLocal() as session:
        framework = await session.get(Framework, framework_id)
        if framework is None:
            framework = Framework(id=framework_id, name=framework_data["name"])
            session.add(framework)
        framework.name = framework_data["name"]
        framework.version = framework_data.get("version")
        framework.description = framework_data.get("description")

        result = await session.execute(select(Control).where(Control.framework_id == framework_id))
        existing = {row.control_ref: row for row in result.scalars().all()}
        for index, item in enumerate(payload.get("controls") or []):
            ref = item["control_ref"]
            row = existing.get(ref)
            if row is not None and not replace:
                continue
            if row is None:
                row = Control(
                    id=item.get("id") or f"{framework_id}:{ref}",
                    framework_id=framework_id,
                    control_ref=ref,
                )
                session.add(row)
                inserted += 1
            else:
                updated += 1
            row.title = item["title"]
            row.description = item.get("description")
            row.requirement_text = item.get("requirement_text")
            row.category = item.get("category")
            # Catalog file order is the canonical order unless sort_order is explicit.
            row.sort_order = int(item.get("sort_order", index))
        await session.commit()
    return inserted, updated


async def _run(args: argparse.Namespace) -> int:
    payload = load_catalog(args.path)
    inserted, updated = await seed_framework(payload, replace=args.replace)
    print(
        f"Seeded framework {payload['framework']['id']}: "
        f"{inserted} controls inserted, {updated} updated."
    )
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface any catalog or DB errors
        print(f"seed_framework failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
