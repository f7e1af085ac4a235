"""
main.py
-------
AgentForge — Claims Automation Engine — Operator CLI
-----------------------------------------------------
Command-line entry point for the automation core. Every command prints JSON
to stdout; logs go to stderr.

Commands:
    run         --org-id ORG --claim-id CLAIM   Full pipeline for one claim.
    scan        --org-id ORG [--limit N]        Full pipeline for an org's active claims.
    detect      --org-id ORG --claim-id CLAIM   Trigger detection only (no writes).
    ai-stats    --org-id ORG [--since ISO]      Per-route AI cost / latency / cache summary.
    invalidate  --route ROUTE                   Drop every cached entry of one AI route.
    seed-demo   --org-id ORG                    Insert demo claims that exercise every rule.

Usage:
    python main.py run --org-id org_demo --claim-id CLM-1001

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

import database
from automation_agent.context import AutomationContext, build_automation_context
from automation_agent.trigger_detector import ClaimNotFoundError, detect_triggers
from automation_agent.workflow import run_automation, run_org_automation

logger = logging.getLogger(__name__)


# ── Commands ──────────────────────────────────────────────────────────────────

async def cmd_run(ctx: AutomationContext, args: argparse.Namespace) -> Dict[str, Any]:
    result = await run_automation(args.claim_id, args.org_id, ctx)
    return result.model_dump(mode="json")


async def cmd_scan(ctx: AutomationContext, args: argparse.Namespace) -> Dict[str, Any]:
    results = await run_org_automation(args.org_id, ctx, limit=args.limit)
    return {claim_id: r.model_dump(mode="json") for claim_id, r in results.items()}


async def cmd_detect(ctx: AutomationContext, args: argparse.Namespace) -> Dict[str, Any]:
    try:
        triggers = await detect_triggers(args.claim_id, args.org_id, ctx.reader, ctx.clock())
    except ClaimNotFoundError as exc:
        return {"claim_id": args.claim_id, "error": str(exc)}
    return {"claim_id": args.claim_id, "triggers": [t.model_dump(mode="json") for t in triggers]}


async def cmd_ai_stats(ctx: AutomationContext, args: argparse.Namespace) -> Dict[str, Any]:
    since = datetime.fromisoformat(args.since) if args.since else None
    summary = await ctx.reader.get_ai_performance_summary(args.org_id, since)
    summary["cache"] = {
        "process": ctx.ai.cache.stats(),
        "store": await ctx.ai.cache.store_stats(),
    }
    return summary


async def cmd_invalidate(ctx: AutomationContext, args: argparse.Namespace) -> Dict[str, Any]:
    removed = await ctx.ai.cache.invalidate_by_prefix(args.route)
    return {"route": args.route, "removed": removed, "cache_available": ctx.ai.cache.available}


def seed_demo_claims(org_id: str, db_path: Optional[Any] = None, now: Optional[datetime] = None) -> List[str]:
    """
    Insert three demo claims: an underpaid claim, an idle disputed claim,
    and a closed claim that must never fire.

    Returns:
        List[str]: The seeded claim ids.
    """
    now = now or datetime.now(timezone.utc)
    database.upsert_claim(
        "CLM-1001", org_id,
        claim_number="HO-2291-A", carrier="Summit Mutual",
        adjuster_email="adjuster@summitmutual.example", homeowner_email="pat@example.com",
        homeowner_name="Pat Rivera", last_adjuster_contact_at=now - timedelta(days=3),
        created_at=now - timedelta(days=20), db_path=db_path,
    )
    database.insert_activity("CLM-1001", org_id, "note", "Inspection notes uploaded",
                             created_at=now - timedelta(days=1), db_path=db_path)
    database.insert_claim_report("CLM-1001", org_id, database.REPORT_FINANCIAL_ANALYSIS,
                                 {"underpayment": 12_000, "carrier_total": 18_400, "contractor_total": 30_400},
                                 db_path=db_path)
    database.insert_claim_report("CLM-1001", org_id, database.REPORT_WEATHER_FORENSICS,
                                 {"correlation_score": 0.93, "event": "hail"}, db_path=db_path)

    database.upsert_claim(
        "CLM-1002", org_id, status="disputed",
        claim_number="HO-3307-B", carrier="Harbor Insurance",
        adjuster_email="claims@harbor.example", homeowner_name="Jordan Lee",
        last_adjuster_contact_at=now - timedelta(days=16),
        created_at=now - timedelta(days=45), db_path=db_path,
    )
    database.insert_activity("CLM-1002", org_id, "call", "Left voicemail for adjuster",
                             created_at=now - timedelta(days=12), db_path=db_path)
    for total in (2_500.0, 1_800.0):
        database.insert_supplement("CLM-1002", org_id, total, db_path=db_path)

    database.upsert_claim(
        "CLM-1003", org_id, status="closed",
        claim_number="HO-1180-C", carrier="Summit Mutual",
        created_at=now - timedelta(days=90), db_path=db_path,
    )
    return ["CLM-1001", "CLM-1002", "CLM-1003"]


async def cmd_seed_demo(ctx: AutomationContext, args: argparse.Namespace) -> Dict[str, Any]:
    db_path = getattr(ctx.reader, "db_path", None)
    claim_ids = await asyncio.to_thread(seed_demo_claims, args.org_id, db_path)
    return {"org_id": args.org_id, "claims": claim_ids}


COMMANDS = {
    "run": cmd_run,
    "scan": cmd_scan,
    "detect": cmd_detect,
    "ai-stats": cmd_ai_stats,
    "invalidate": cmd_invalidate,
    "seed-demo": cmd_seed_demo,
}


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="AgentForge claims automation engine.")
    parser.add_argument("--db-path", type=str, default=None, help="Override AUTOMATION_DB_PATH.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="Run automation for one claim.")
    p.add_argument("--org-id", required=True)
    p.add_argument("--claim-id", required=True)

    p = sub.add_parser("scan", help="Run automation for an org's active claims.")
    p.add_argument("--org-id", required=True)
    p.add_argument("--limit", type=int, default=None, help="Max claims (default AUTOMATION_BATCH_LIMIT).")

    p = sub.add_parser("detect", help="Detect triggers for one claim without acting.")
    p.add_argument("--org-id", required=True)
    p.add_argument("--claim-id", required=True)

    p = sub.add_parser("ai-stats", help="Summarise AI invocation cost and cache use.")
    p.add_argument("--org-id", required=True)
    p.add_argument("--since", type=str, default=None, help="ISO-8601 lower bound, e.g. 2025-10-01.")

    p = sub.add_parser("invalidate", help="Invalidate cached AI results for one route.")
    p.add_argument("--route", required=True)

    p = sub.add_parser("seed-demo", help="Insert demo claims.")
    p.add_argument("--org-id", required=True)

    return parser.parse_args(argv)


async def _main(args: argparse.Namespace) -> Dict[str, Any]:
    ctx = build_automation_context(args.db_path)
    try:
        return await COMMANDS[args.command](ctx, args)
    finally:
        await ctx.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s")
    args = _parse_args(argv)
    output = asyncio.run(_main(args))
    json.dump(output, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    if args.command == "run" and not output.get("success", True):
        return 1
    if args.command == "detect" and "error" in output:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
