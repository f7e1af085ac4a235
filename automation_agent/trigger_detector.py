"""
trigger_detector.py
-------------------
AgentForge — Claims Automation Engine — Trigger detector
---------------------------------------------------------
Reads one claim's facts and returns every condition that warrants automated
action, as typed, severity-ranked Trigger objects. Pure read: nothing is
written here.

Rules (evaluated independently, in this order; thresholds from
claims_guidelines.TRIGGER_THRESHOLDS, every comparison strictly greater):

    UNDERPAYMENT_DETECTED     latest financial analysis underpayment > 5,000
                              (> 10,000 CRITICAL, else HIGH)
    WEATHER_CORRELATION_HIGH  latest weather forensics correlation_score > 0.75
                              (> 0.90 HIGH, else MEDIUM)
    ADJUSTER_OVERDUE          whole days since last adjuster contact > 7
                              (> 14 HIGH, else MEDIUM)
    CLAIM_IDLE                non-terminal claim, whole days since last
                              activity > 5 (> 10 HIGH, else MEDIUM)
    SUPPLEMENT_OPPORTUNITY    sum of supplement totals > 3,000
                              (> 8,000 HIGH, else MEDIUM)
    CAUSATION_DISPUTED        status disputed / denied → CRITICAL

Missing data skips a rule; it is never an error. An unknown claim is.

Key functions:
    detect_triggers: All triggers for one claim.
    detect_triggers_for_org: Bounded, per-claim-isolated scan of an org.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from langsmith import traceable

from claims_guidelines import (
    BATCH_SCAN_DEFAULTS,
    DISPUTED_CLAIM_STATUSES,
    TERMINAL_CLAIM_STATUSES,
    TRIGGER_THRESHOLDS,
)
from schemas import ClaimFacts, Severity, Trigger, TriggerType, utcnow

logger = logging.getLogger(__name__)


class ClaimNotFoundError(Exception):
    """Raised when the reader has no claim with this id in this org."""

    def __init__(self, claim_id: str, org_id: str) -> None:
        self.claim_id = claim_id
        self.org_id = org_id
        super().__init__(f"Claim {claim_id} not found in org {org_id}")


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # NaN compares False against every threshold, so it would slip past "<= fire".
    return number if math.isfinite(number) else None


def _whole_days(since: Optional[datetime], now: datetime) -> Optional[int]:
    if since is None:
        return None
    return (now - since).days


# ── Rules ─────────────────────────────────────────────────────────────────────

def _underpayment(facts: ClaimFacts, now: datetime) -> Optional[Trigger]:
    report = facts.financial_analysis
    if report is None:
        return None
    amount = _as_float(report.payload.get("underpayment"))
    limits = TRIGGER_THRESHOLDS["underpayment"]
    if amount is None or amount <= limits["fire"]:
        return None
    return Trigger(
        type=TriggerType.UNDERPAYMENT_DETECTED,
        severity=Severity.CRITICAL if amount > limits["escalate"] else Severity.HIGH,
        payload={"underpayment": amount, "report_id": report.report_id},
        reason=f"Financial analysis shows ${amount:,.2f} underpayment",
    )


def _weather_correlation(facts: ClaimFacts, now: datetime) -> Optional[Trigger]:
    report = facts.weather_forensics
    if report is None:
        return None
    score = _as_float(report.payload.get("correlation_score"))
    limits = TRIGGER_THRESHOLDS["weather_correlation"]
    if score is None or score <= limits["fire"]:
        return None
    return Trigger(
        type=TriggerType.WEATHER_CORRELATION_HIGH,
        severity=Severity.HIGH if score > limits["escalate"] else Severity.MEDIUM,
        payload={"correlation_score": score, "report_id": report.report_id},
        reason=f"Weather correlation score {score:.2f} supports storm causation",
    )


def _adjuster_overdue(facts: ClaimFacts, now: datetime) -> Optional[Trigger]:
    days = _whole_days(facts.last_adjuster_contact_at, now)
    limits = TRIGGER_THRESHOLDS["adjuster_overdue_days"]
    if days is None or days <= limits["fire"]:
        return None
    return Trigger(
        type=TriggerType.ADJUSTER_OVERDUE,
        severity=Severity.HIGH if days > limits["escalate"] else Severity.MEDIUM,
        payload={
            "days_since_contact": days,
            "last_contact_at": facts.last_adjuster_contact_at.isoformat(),
        },
        reason=f"No adjuster contact for {days} days",
    )


def _claim_idle(facts: ClaimFacts, now: datetime) -> Optional[Trigger]:
    if facts.status.lower() in TERMINAL_CLAIM_STATUSES:
        return None
    days = _whole_days(facts.last_activity_at, now)
    limits = TRIGGER_THRESHOLDS["claim_idle_days"]
    if days is None or days <= limits["fire"]:
        return None
    return Trigger(
        type=TriggerType.CLAIM_IDLE,
        severity=Severity.HIGH if days > limits["escalate"] else Severity.MEDIUM,
        payload={
            "days_idle": days,
            "last_activity_type": facts.last_activity_type,
            "last_activity_at": facts.last_activity_at.isoformat(),
        },
        reason=f"Claim idle for {days} days",
    )


def _supplement_opportunity(facts: ClaimFacts, now: datetime) -> Optional[Trigger]:
    if not facts.supplements:
        return None
    total = round(sum(s.total for s in facts.supplements if math.isfinite(s.total)), 2)
    limits = TRIGGER_THRESHOLDS["supplement_value"]
    if total <= limits["fire"]:
        return None
    return Trigger(
        type=TriggerType.SUPPLEMENT_OPPORTUNITY,
        severity=Severity.HIGH if total > limits["escalate"] else Severity.MEDIUM,
        payload={"supplement_total": total, "supplement_count": len(facts.supplements)},
        reason=f"{len(facts.supplements)} supplement(s) worth ${total:,.2f}",
    )


def _causation_disputed(facts: ClaimFacts, now: datetime) -> Optional[Trigger]:
    status = facts.status.lower()
    if status not in DISPUTED_CLAIM_STATUSES:
        return None
    return Trigger(
        type=TriggerType.CAUSATION_DISPUTED,
        severity=Severity.CRITICAL,
        payload={"status": status},
        reason=f"Carrier position is '{status}'",
    )


# Order is the order triggers are reported and processed in.
DETECTION_RULES = (
    _underpayment,
    _weather_correlation,
    _adjuster_overdue,
    _claim_idle,
    _supplement_opportunity,
    _causation_disputed,
)


def evaluate_rules(facts: ClaimFacts, now: Optional[datetime] = None) -> List[Trigger]:
    """Run every rule over already-loaded facts. Pure."""
    now = now or utcnow()
    triggers: List[Trigger] = []
    for rule in DETECTION_RULES:
        trigger = rule(facts, now)
        if trigger is not None:
            triggers.append(trigger)
    return triggers


@traceable(name="detect_triggers")
async def detect_triggers(
    claim_id: str,
    org_id: str,
    reader: Any,
    now: Optional[datetime] = None,
) -> List[Trigger]:
    """
    Detect every trigger condition on one claim.

    Args:
        claim_id: Claim to inspect.
        org_id: Owning org.
        reader: ClaimFactReader.
        now: Override for "now" (day-count rules).

    Returns:
        List[Trigger]: In rule order; empty when nothing fires.

    Raises:
        ClaimNotFoundError: if the reader has no such claim.
        Exception: reader failures propagate unchanged.
    """
    facts = await reader.get_claim_facts(claim_id, org_id)
    if facts is None:
        raise ClaimNotFoundError(claim_id, org_id)
    triggers = evaluate_rules(facts, now)
    logger.info(
        "Claim %s: %d trigger(s) detected%s",
        claim_id, len(triggers),
        (" — " + ", ".join(f"{t.type.value}/{t.severity.value}" for t in triggers)) if triggers else "",
    )
    return triggers


async def detect_triggers_for_org(
    org_id: str,
    reader: Any,
    *,
    limit: int = BATCH_SCAN_DEFAULTS["limit"],
    timeout_s: float = BATCH_SCAN_DEFAULTS["claim_timeout_s"],
    max_concurrency: int = BATCH_SCAN_DEFAULTS["max_concurrency"],
    now: Optional[datetime] = None,
) -> Dict[str, List[Trigger]]:
    """
    Detect triggers for up to ``limit`` active claims of an org.

    Claims run concurrently (at most ``max_concurrency`` at a time), each
    under its own timeout. A claim whose detection raises or times out is
    logged and left out of the result; the rest of the batch completes.

    Args:
        org_id: Org to scan.
        reader: ClaimFactReader.
        limit: Max claims scanned.
        timeout_s: Per-claim detection timeout.
        max_concurrency: Concurrent detections.
        now: Override for "now", shared by the whole batch.

    Returns:
        Dict[str, List[Trigger]]: claim_id → triggers, in listing order.
            Claims with no triggers map to [].
    """
    now = now or utcnow()
    claim_ids = await reader.list_active_claim_ids(org_id, limit)
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def _one(claim_id: str) -> List[Trigger]:
        async with semaphore:
            return await asyncio.wait_for(detect_triggers(claim_id, org_id, reader, now), timeout=timeout_s)

    outcomes = await asyncio.gather(*(_one(cid) for cid in claim_ids), return_exceptions=True)

    results: Dict[str, List[Trigger]] = {}
    for claim_id, outcome in zip(claim_ids, outcomes):
        if isinstance(outcome, asyncio.TimeoutError):
            logger.warning("Org %s scan: claim %s timed out after %ss — skipped.", org_id, claim_id, timeout_s)
        elif isinstance(outcome, BaseException):
            logger.warning("Org %s scan: claim %s failed — skipped: %s", org_id, claim_id, outcome)
        else:
            results[claim_id] = outcome
    logger.info("Org %s scan: %d/%d claim(s) evaluated.", org_id, len(results), len(claim_ids))
    return results
