from __future__ import annotations

import argparse
import asyncio
import json
import sys

from controlmap.core.errors import ControlMapError
from controlmap.core.logging import configure_logging
from controlmap.services.analysis import AnalysisOrchestrator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run one analysis in-process and print its summary and gap report."
    )
    parser.add_argument("--organization", required=True, help="Organization id")
    parser.add_argument("--framework", required=True, help="Framework id")
    parser.add_argument(
        "--document",
        action="append",
        default=[],
        dest="documents",
        help="Document id (repeatable)",
    )
    parser.add_argument("--max-controls", type=int, default=None, help="Quick mode control limit")
    parser.add_argument("--name", default=None, help="Optional analysis name")
    parser.add_argument("--quiet", action="store_true", help="Do not print progress events")
    return parser


async def _run(args: argparse.Namespace) -> int:
    orchestrator = AnalysisOrchestrator()
    job_id = await orchestrator.start_analysis(
        args.organization,
        args.framework,
        args.documents,
        name=args.name,
        max_controls=args.max_controls,
    )
    print(f"analysis {job_id} started")
    subscription = orchestrator.subscribe(job_id)
    if subscription is not None:
        async for event in subscription:
            if not args.quiet:
                print(f"[{event.progress:3d}%] {event.stage}: {event.current_step}")
            if event.terminal:
                break
        subscription.close()
    snapshot = await orchestrator.wait(job_id)
    if snapshot.status != "completed":
        print(f"analysis {job_id} failed: {snapshot.error}", file=sys.stderr)
        return 2
    results = await orchestrator.get_results(job_id)
    print(json.dumps({"totals": snapshot.totals, "gaps": results["gaps"]}, indent=2))
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except ControlMapError as exc:
        print(f"run_analysis failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
