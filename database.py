"""
database.py
-----------
AgentForge — Claims Automation Engine — Automation Store (SQLite)
-----------------------------------------------------------------
SQLite persistence for the automation core. It is both the claim fact source
the trigger detector reads and the sink the engine writes provenance into.

Claim data (read by the detector, written by the surrounding product):
  claims            — one row per claim; status + contact addresses.
  claim_reports     — analysis results by kind; the latest row per kind wins.
                      'financial_analysis' / 'weather_forensics' are inputs,
                      'ai_*' kinds are artifacts generated by executors.
  supplements       — supplement line totals per claim.
  activities        — claim timeline (human + automation entries).
  tasks / alerts / recommendations — bookkeeping outputs of executors.

Automation provenance:
  automation_triggers — one row per detected trigger per run.
                        status transitions: PENDING → PROCESSED.
  automation_actions  — one row per (trigger, action) run.
                        status transitions: RUNNING → SUCCESS | FAILED, once.
  ai_invocations      — one row per AI call or cache hit, with derived cost.

Tenant configuration:
  org_budgets       — remaining prepaid AI balance per org (model selection).
  org_ai_settings   — per-org cache enable flag and TTL override.

DB file: AUTOMATION_DB_PATH env var, else automation.sqlite beside this module.

Public API:
    init_db()                     — Create tables + indexes if absent. Idempotent.
    get_connection()              — Context-manager yielding an open sqlite3.Connection.
    upsert_claim() / insert_claim_report() / insert_supplement() / insert_activity()
    get_claim_facts()             — Assemble ClaimFacts for one claim.
    list_active_claim_ids()       — Non-terminal claims of an org, stalest first.
    insert_trigger() / mark_trigger_processed()
    insert_action_record() / complete_action_record()
    insert_ai_invocation()        — Persist one AIInvocationRecord.
    get_ai_performance_summary()  — Per-route cost / latency / cache aggregates.
    SQLiteStore                   — Async adapter implementing the engine's
                                    reader, sink, budget and settings contracts.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from claims_guidelines import AUTOMATION_ACTIVITY_TYPES, TERMINAL_CLAIM_STATUSES
from schemas import (
    ActionStatus,
    AIInvocationRecord,
    ClaimFacts,
    ReportRef,
    SupplementRecord,
    Trigger,
    TriggerStatus,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# DB location
# ---------------------------------------------------------------------------
_DEFAULT_DB_PATH: Path = Path(__file__).parent / "automation.sqlite"


def default_db_path() -> Path:
    """AUTOMATION_DB_PATH if set (read at call time, after load_dotenv), else the module default."""
    return Path(os.getenv("AUTOMATION_DB_PATH") or _DEFAULT_DB_PATH)


# Report kinds the detector reads.
REPORT_FINANCIAL_ANALYSIS = "financial_analysis"
REPORT_WEATHER_FORENSICS = "weather_forensics"

TASK_STATUS_OPEN = "open"

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------
_CLAIMS_DDL = """
CREATE TABLE IF NOT EXISTS claims (
    claim_id                  TEXT    PRIMARY KEY,
    org_id                    TEXT    NOT NULL,
    status                    TEXT    NOT NULL DEFAULT 'open',
    claim_number              TEXT,
    carrier                   TEXT,
    adjuster_email            TEXT,
    homeowner_email           TEXT,
    homeowner_name            TEXT,
    last_adjuster_contact_at  TEXT,
    created_at                TEXT    NOT NULL,
    updated_at                TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_claims_org ON claims (org_id, status);

CREATE TABLE IF NOT EXISTS claim_reports (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    claim_id    TEXT    NOT NULL,
    org_id      TEXT    NOT NULL,
    kind        TEXT    NOT NULL,
    payload     TEXT    NOT NULL DEFAULT '{}',
    created_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_reports_claim ON claim_reports (claim_id, kind, id);

CREATE TABLE IF NOT EXISTS supplements (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    claim_id    TEXT    NOT NULL,
    org_id      TEXT    NOT NULL,
    total       REAL    NOT NULL DEFAULT 0,
    created_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_supplements_claim ON supplements (claim_id);

CREATE TABLE IF NOT EXISTS activities (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    claim_id       TEXT    NOT NULL,
    org_id         TEXT    NOT NULL,
    activity_type  TEXT    NOT NULL,
    description    TEXT    NOT NULL DEFAULT '',
    metadata       TEXT,
    created_at     TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activities_claim ON activities (claim_id, created_at);
"""

_BOOKKEEPING_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    claim_id     TEXT    NOT NULL,
    org_id       TEXT    NOT NULL,
    title        TEXT    NOT NULL,
    description  TEXT    NOT NULL DEFAULT '',
    priority     TEXT    NOT NULL DEFAULT 'MEDIUM',
    status       TEXT    NOT NULL DEFAULT 'open',
    due_at       TEXT,
    created_at   TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_claim ON tasks (claim_id, status);

CREATE TABLE IF NOT EXISTS alerts (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    claim_id    TEXT    NOT NULL,
    org_id      TEXT    NOT NULL,
    severity    TEXT    NOT NULL,
    title       TEXT    NOT NULL,
    message     TEXT    NOT NULL DEFAULT '',
    created_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS recommendations (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    claim_id    TEXT    NOT NULL,
    org_id      TEXT    NOT NULL,
    title       TEXT    NOT NULL,
    body        TEXT    NOT NULL DEFAULT '',
    metadata    TEXT,
    created_at  TEXT    NOT NULL
);
"""

_AUTOMATION_DDL = """
CREATE TABLE IF NOT EXISTS automation_triggers (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    claim_id      TEXT    NOT NULL,
    org_id        TEXT    NOT NULL,
    trigger_type  TEXT    NOT NULL,
    severity      TEXT    NOT NULL,
    payload       TEXT    NOT NULL DEFAULT '{}',
    reason        TEXT    NOT NULL DEFAULT '',
    status        TEXT    NOT NULL DEFAULT 'PENDING',
    created_at    TEXT    NOT NULL,
    processed_at  TEXT
);

CREATE INDEX IF NOT EXISTS idx_triggers_claim ON automation_triggers (claim_id, created_at);

CREATE TABLE IF NOT EXISTS automation_actions (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    trigger_id     INTEGER NOT NULL,
    claim_id       TEXT    NOT NULL,
    org_id         TEXT    NOT NULL,
    action_type    TEXT    NOT NULL,
    priority       INTEGER NOT NULL DEFAULT 0,
    status         TEXT    NOT NULL DEFAULT 'RUNNING',
    result         TEXT,
    error_message  TEXT,
    started_at     TEXT    NOT NULL,
    completed_at   TEXT
);

CREATE INDEX IF NOT EXISTS idx_actions_trigger ON automation_actions (trigger_id, id);

CREATE TABLE IF NOT EXISTS ai_invocations (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    route_name   TEXT    NOT NULL,
    org_id       TEXT    NOT NULL,
    lead_id      TEXT,
    claim_id     TEXT,
    duration_ms  INTEGER NOT NULL DEFAULT 0,
    model        TEXT    NOT NULL,
    tokens_in    INTEGER NOT NULL DEFAULT 0,
    tokens_out   INTEGER NOT NULL DEFAULT 0,
    cache_hit    INTEGER NOT NULL DEFAULT 0,
    cost_usd     REAL    NOT NULL DEFAULT 0,
    error        TEXT,
    created_at   TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ai_org_route ON ai_invocations (org_id, route_name, created_at);

CREATE TABLE IF NOT EXISTS org_budgets (
    org_id             TEXT PRIMARY KEY,
    remaining_balance  REAL NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS org_ai_settings (
    org_id             TEXT    PRIMARY KEY,
    cache_enabled      INTEGER NOT NULL DEFAULT 1,
    cache_ttl_seconds  INTEGER
);
"""

_VALID_TERMINAL_ACTION_STATUSES = {ActionStatus.SUCCESS.value, ActionStatus.FAILED.value}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _dumps(value: Any) -> str:
    return json.dumps(value if value is not None else {}, default=str)


def _loads(raw: Optional[str]) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Undecodable JSON column value: %.80s", raw)
        return {}


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------

def init_db(db_path: Optional[Path] = None) -> None:
    """
    Create every automation table and index if absent.

    Safe to call multiple times — uses ``IF NOT EXISTS`` throughout.

    Args:
        db_path: Override the default DB file location.  Useful in tests.

    Raises:
        sqlite3.Error: if the underlying SQLite operation fails.
    """
    path = db_path or default_db_path()
    with sqlite3.connect(str(path)) as conn:
        conn.executescript(_CLAIMS_DDL)
        conn.executescript(_BOOKKEEPING_DDL)
        conn.executescript(_AUTOMATION_DDL)
        conn.commit()
    logger.info("Automation DB ready at '%s'.", path)


@contextmanager
def get_connection(
    db_path: Optional[Path] = None,
) -> Generator[sqlite3.Connection, None, None]:
    """
    Yield an open ``sqlite3.Connection`` that commits on clean exit and rolls
    back on exception.

    Args:
        db_path: Override the default DB file location.

    Yields:
        sqlite3.Connection: with ``row_factory = sqlite3.Row`` set.

    Raises:
        sqlite3.Error: propagated after rollback.
    """
    path = db_path or default_db_path()
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Claim data: writes
# ---------------------------------------------------------------------------

def upsert_claim(
    claim_id: str,
    org_id: str,
    *,
    status: str = "open",
    claim_number: Optional[str] = None,
    carrier: Optional[str] = None,
    adjuster_email: Optional[str] = None,
    homeowner_email: Optional[str] = None,
    homeowner_name: Optional[str] = None,
    last_adjuster_contact_at: Optional[datetime] = None,
    created_at: Optional[datetime] = None,
    db_path: Optional[Path] = None,
) -> None:
    """
    INSERT a claim, or UPDATE it if ``claim_id`` already exists.

    ``created_at`` is only honoured on first insert.
    """
    now = _now()
    with get_connection(db_path) as conn:
        conn.execute(
            """
            INSERT INTO claims
                (claim_id, org_id, status, claim_number, carrier, adjuster_email,
                 homeowner_email, homeowner_name, last_adjuster_contact_at,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(claim_id) DO UPDATE SET
                status                   = excluded.status,
                claim_number             = excluded.claim_number,
                carrier                  = excluded.carrier,
                adjuster_email           = excluded.adjuster_email,
                homeowner_email          = excluded.homeowner_email,
                homeowner_name           = excluded.homeowner_name,
                last_adjuster_contact_at = excluded.last_adjuster_contact_at,
                updated_at               = excluded.updated_at
            """,
            (
                claim_id, org_id, status, claim_number, carrier, adjuster_email,
                homeowner_email, homeowner_name, _iso(last_adjuster_contact_at),
                _iso(created_at) or now, now,
            ),
        )
    logger.debug("claims: upserted %s (org=%s, status=%s).", claim_id, org_id, status)


def update_claim_status(
    claim_id: str,
    org_id: str,
    status: str,
    db_path: Optional[Path] = None,
) -> Optional[str]:
    """
    Set a claim's status.

    Returns:
        Optional[str]: The previous status, or None if the claim does not
        exist in this org (nothing updated).
    """
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT status FROM claims WHERE claim_id = ? AND org_id = ?",
            (claim_id, org_id),
        ).fetchone()
        if row is None:
            return None
        conn.execute(
            "UPDATE claims SET status = ?, updated_at = ? WHERE claim_id = ? AND org_id = ?",
            (status, _now(), claim_id, org_id),
        )
    logger.info("claims: %s status '%s' → '%s'.", claim_id, row["status"], status)
    return row["status"]


def insert_claim_report(
    claim_id: str,
    org_id: str,
    kind: str,
    payload: Dict[str, Any],
    db_path: Optional[Path] = None,
) -> str:
    """INSERT one report row. Returns its id as a string."""
    with get_connection(db_path) as conn:
        cur = conn.execute(
            "INSERT INTO claim_reports (claim_id, org_id, kind, payload, created_at) VALUES (?, ?, ?, ?, ?)",
            (claim_id, org_id, kind, _dumps(payload), _now()),
        )
        row_id = cur.lastrowid
    logger.debug("claim_reports: %s report %d for claim %s.", kind, row_id, claim_id)
    return str(row_id)


def insert_supplement(
    claim_id: str,
    org_id: str,
    total: float,
    db_path: Optional[Path] = None,
) -> str:
    with get_connection(db_path) as conn:
        cur = conn.execute(
            "INSERT INTO supplements (claim_id, org_id, total, created_at) VALUES (?, ?, ?, ?)",
            (claim_id, org_id, float(total), _now()),
        )
        return str(cur.lastrowid)


def insert_activity(
    claim_id: str,
    org_id: str,
    activity_type: str,
    description: str = "",
    metadata: Optional[Dict[str, Any]] = None,
    *,
    created_at: Optional[datetime] = None,
    db_path: Optional[Path] = None,
) -> str:
    """
    INSERT one timeline entry.

    Args:
        claim_id:      Claim the entry belongs to.
        org_id:        Owning org.
        activity_type: e.g. ``"note"``, ``"call"``, ``"automation_run"``, ``"email_sent"``.
        description:   Human-readable line.
        metadata:      Optional JSON-safe detail (message ids, counts).
        created_at:    Override timestamp (seeding / tests).
        db_path:       Override DB file location (tests only).

    Returns:
        str: The new activity id.
    """
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            INSERT INTO activities (claim_id, org_id, activity_type, description, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                claim_id, org_id, activity_type, description,
                json.dumps(metadata, default=str) if metadata is not None else None,
                _iso(created_at) or _now(),
            ),
        )
        row_id = cur.lastrowid
    logger.debug("activities: %s on claim %s (row=%d).", activity_type, claim_id, row_id)
    return str(row_id)


# ---------------------------------------------------------------------------
# Claim data: reads
# ---------------------------------------------------------------------------

def _latest_report(conn: sqlite3.Connection, claim_id: str, org_id: str, kind: str) -> Optional[ReportRef]:
    row = conn.execute(
        """
        SELECT id, payload, created_at FROM claim_reports
         WHERE claim_id = ? AND org_id = ? AND kind = ?
         ORDER BY id DESC LIMIT 1
        """,
        (claim_id, org_id, kind),
    ).fetchone()
    if row is None:
        return None
    return ReportRef(report_id=str(row["id"]), payload=_loads(row["payload"]), created_at=row["created_at"])


def get_claim_facts(
    claim_id: str,
    org_id: str,
    db_path: Optional[Path] = None,
) -> Optional[ClaimFacts]:
    """
    Assemble the detector's view of one claim.

    ``last_activity_*`` reflects the latest non-automation timeline entry, so
    the engine's own log lines never reset the idle clock. A claim with no
    such entry falls back to its creation time.

    Args:
        claim_id: Claim to read.
        org_id:   Owning org; a claim of another org reads as absent.
        db_path:  Override DB file location (tests only).

    Returns:
        ClaimFacts, or None if the claim does not exist in this org.
    """
    excluded = sorted(AUTOMATION_ACTIVITY_TYPES)
    placeholders = ",".join("?" * len(excluded))
    with get_connection(db_path) as conn:
        claim = conn.execute(
            "SELECT * FROM claims WHERE claim_id = ? AND org_id = ?",
            (claim_id, org_id),
        ).fetchone()
        if claim is None:
            return None

        activity = conn.execute(
            f"""
            SELECT activity_type, created_at FROM activities
             WHERE claim_id = ? AND org_id = ? AND activity_type NOT IN ({placeholders})
             ORDER BY created_at DESC, id DESC LIMIT 1
            """,
            (claim_id, org_id, *excluded),
        ).fetchone()
        supplements = conn.execute(
            "SELECT id, total FROM supplements WHERE claim_id = ? AND org_id = ? ORDER BY id",
            (claim_id, org_id),
        ).fetchall()
        financial = _latest_report(conn, claim_id, org_id, REPORT_FINANCIAL_ANALYSIS)
        weather = _latest_report(conn, claim_id, org_id, REPORT_WEATHER_FORENSICS)

    return ClaimFacts(
        claim_id=claim["claim_id"],
        org_id=claim["org_id"],
        status=claim["status"] or "",
        claim_number=claim["claim_number"],
        carrier=claim["carrier"],
        adjuster_email=claim["adjuster_email"],
        homeowner_email=claim["homeowner_email"],
        homeowner_name=claim["homeowner_name"],
        last_adjuster_contact_at=claim["last_adjuster_contact_at"],
        last_activity_at=activity["created_at"] if activity else claim["created_at"],
        last_activity_type=activity["activity_type"] if activity else "claim_created",
        financial_analysis=financial,
        weather_forensics=weather,
        supplements=[SupplementRecord(id=str(r["id"]), total=r["total"]) for r in supplements],
    )


def list_active_claim_ids(
    org_id: str,
    limit: int = 50,
    db_path: Optional[Path] = None,
) -> List[str]:
    """
    Return up to ``limit`` non-terminal claim ids of one org, least recently
    updated first so stale claims are scanned before fresh ones.
    """
    terminal = sorted(TERMINAL_CLAIM_STATUSES)
    placeholders = ",".join("?" * len(terminal))
    with get_connection(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT claim_id FROM claims
             WHERE org_id = ? AND LOWER(status) NOT IN ({placeholders})
             ORDER BY updated_at ASC, claim_id ASC
             LIMIT ?
            """,
            (org_id, *terminal, int(limit)),
        ).fetchall()
    return [r["claim_id"] for r in rows]


# ---------------------------------------------------------------------------
# Bookkeeping outputs
# ---------------------------------------------------------------------------

def find_open_task(
    claim_id: str,
    org_id: str,
    title: str,
    db_path: Optional[Path] = None,
) -> Optional[str]:
    """Id of an open task with exactly this title on the claim, if any."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT id FROM tasks WHERE claim_id = ? AND org_id = ? AND title = ? AND status = ? ORDER BY id LIMIT 1",
            (claim_id, org_id, title, TASK_STATUS_OPEN),
        ).fetchone()
    return str(row["id"]) if row else None


def insert_task(
    claim_id: str,
    org_id: str,
    title: str,
    description: str = "",
    priority: str = "MEDIUM",
    due_at: Optional[datetime] = None,
    db_path: Optional[Path] = None,
) -> str:
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            INSERT INTO tasks (claim_id, org_id, title, description, priority, status, due_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (claim_id, org_id, title, description, priority, TASK_STATUS_OPEN, _iso(due_at), _now()),
        )
        return str(cur.lastrowid)


def insert_alert(
    claim_id: str,
    org_id: str,
    severity: str,
    title: str,
    message: str = "",
    db_path: Optional[Path] = None,
) -> str:
    with get_connection(db_path) as conn:
        cur = conn.execute(
            "INSERT INTO alerts (claim_id, org_id, severity, title, message, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (claim_id, org_id, severity, title, message, _now()),
        )
        return str(cur.lastrowid)


def insert_recommendation(
    claim_id: str,
    org_id: str,
    title: str,
    body: str = "",
    metadata: Optional[Dict[str, Any]] = None,
    db_path: Optional[Path] = None,
) -> str:
    with get_connection(db_path) as conn:
        cur = conn.execute(
            "INSERT INTO recommendations (claim_id, org_id, title, body, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (claim_id, org_id, title, body, _dumps(metadata), _now()),
        )
        return str(cur.lastrowid)


def get_rows(table: str, claim_id: str, db_path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """
    SELECT every row of one claim-scoped table, oldest first.

    Used by the CLI and tests to inspect what a run wrote.

    Raises:
        ValueError: if ``table`` is not a claim-scoped table.
    """
    allowed = {
        "tasks", "alerts", "recommendations", "activities", "claim_reports",
        "automation_triggers", "automation_actions", "ai_invocations",
    }
    if table not in allowed:
        raise ValueError(f"Unknown table '{table}'. Must be one of {sorted(allowed)}.")
    with get_connection(db_path) as conn:
        rows = conn.execute(f"SELECT * FROM {table} WHERE claim_id = ? ORDER BY id", (claim_id,)).fetchall()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Automation provenance
# ---------------------------------------------------------------------------

def insert_trigger(
    claim_id: str,
    org_id: str,
    trigger: Trigger,
    db_path: Optional[Path] = None,
) -> str:
    """
    INSERT one detected trigger with ``status = 'PENDING'``.

    Returns:
        str: The trigger record id.

    Raises:
        sqlite3.Error: on I/O failures (a pipeline failure for the engine).
    """
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            INSERT INTO automation_triggers
                (claim_id, org_id, trigger_type, severity, payload, reason, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                claim_id, org_id, trigger.type.value, trigger.severity.value,
                _dumps(trigger.payload), trigger.reason, TriggerStatus.PENDING.value, _now(),
            ),
        )
        row_id = cur.lastrowid
    logger.debug("automation_triggers: %s (%s) for claim %s → row %d.",
                 trigger.type.value, trigger.severity.value, claim_id, row_id)
    return str(row_id)


def mark_trigger_processed(trigger_id: str, db_path: Optional[Path] = None) -> None:
    with get_connection(db_path) as conn:
        conn.execute(
            "UPDATE automation_triggers SET status = ?, processed_at = ? WHERE id = ?",
            (TriggerStatus.PROCESSED.value, _now(), int(trigger_id)),
        )


def insert_action_record(
    trigger_id: str,
    claim_id: str,
    org_id: str,
    action_type: str,
    priority: int,
    db_path: Optional[Path] = None,
) -> str:
    """INSERT one action execution row with ``status = 'RUNNING'``. Returns its id."""
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            INSERT INTO automation_actions
                (trigger_id, claim_id, org_id, action_type, priority, status, started_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (int(trigger_id), claim_id, org_id, action_type, priority, ActionStatus.RUNNING.value, _now()),
        )
        return str(cur.lastrowid)


def complete_action_record(
    action_id: str,
    status: str,
    *,
    result: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
    db_path: Optional[Path] = None,
) -> bool:
    """
    Move a RUNNING action row to SUCCESS or FAILED, exactly once.

    Args:
        action_id: Row id from insert_action_record().
        status:    ``SUCCESS`` or ``FAILED``.
        result:    JSON result for SUCCESS.
        error:     Error message for FAILED.
        db_path:   Override DB file location (tests only).

    Returns:
        bool: True if the row moved; False if it was already completed.

    Raises:
        ValueError:    if ``status`` is not a terminal action status.
        sqlite3.Error: on I/O failures.
    """
    status = getattr(status, "value", status)
    if status not in _VALID_TERMINAL_ACTION_STATUSES:
        raise ValueError(
            f"Invalid action status '{status}'. Must be one of {sorted(_VALID_TERMINAL_ACTION_STATUSES)}."
        )
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            UPDATE automation_actions
               SET status = ?, result = ?, error_message = ?, completed_at = ?
             WHERE id = ? AND status = ?
            """,
            (
                status,
                json.dumps(result, default=str) if result is not None else None,
                error, _now(), int(action_id), ActionStatus.RUNNING.value,
            ),
        )
        moved = cur.rowcount == 1
    if not moved:
        logger.warning("automation_actions: row %s was not RUNNING — completion ignored.", action_id)
    return moved


def insert_ai_invocation(record: AIInvocationRecord, db_path: Optional[Path] = None) -> str:
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            INSERT INTO ai_invocations
                (route_name, org_id, lead_id, claim_id, duration_ms, model,
                 tokens_in, tokens_out, cache_hit, cost_usd, error, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.route_name, record.org_id, record.lead_id, record.claim_id,
                record.duration_ms, record.model, record.tokens_in, record.tokens_out,
                1 if record.cache_hit else 0, record.cost_usd, record.error,
                _iso(record.created_at),
            ),
        )
        return str(cur.lastrowid)


def get_ai_performance_summary(
    org_id: str,
    since: Optional[datetime] = None,
    db_path: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Aggregate AI invocation records of one org per route.

    Args:
        org_id:  Tenant to summarise.
        since:   Only count records created at or after this instant.
        db_path: Override DB file location (tests only).

    Returns:
        dict: {"org_id", "since", "routes": [per-route dicts], "totals": {...}}.
              Each route dict has calls, cache_hits, cache_hit_rate, errors,
              avg_duration_ms (real calls only), tokens_in, tokens_out, cost_usd.
    """
    clauses = ["org_id = ?"]
    params: List[Any] = [org_id]
    if since is not None:
        clauses.append("created_at >= ?")
        params.append(_iso(since))
    where = " AND ".join(clauses)

    with get_connection(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT route_name,
                   COUNT(*)                                             AS calls,
                   SUM(cache_hit)                                       AS cache_hits,
                   SUM(CASE WHEN error IS NOT NULL THEN 1 ELSE 0 END)   AS errors,
                   AVG(CASE WHEN cache_hit = 0 THEN duration_ms END)    AS avg_duration_ms,
                   SUM(tokens_in)                                       AS tokens_in,
                   SUM(tokens_out)                                      AS tokens_out,
                   SUM(cost_usd)                                        AS cost_usd
              FROM ai_invocations
             WHERE {where}
             GROUP BY route_name
             ORDER BY cost_usd DESC, route_name ASC
            """,
            params,
        ).fetchall()

    routes: List[Dict[str, Any]] = []
    totals = {"calls": 0, "cache_hits": 0, "errors": 0, "tokens_in": 0, "tokens_out": 0, "cost_usd": 0.0}
    for r in rows:
        calls = int(r["calls"] or 0)
        hits = int(r["cache_hits"] or 0)
        entry = {
            "route_name": r["route_name"],
            "calls": calls,
            "cache_hits": hits,
            "cache_hit_rate": round(hits / calls, 4) if calls else 0.0,
            "errors": int(r["errors"] or 0),
            "avg_duration_ms": round(float(r["avg_duration_ms"]), 1) if r["avg_duration_ms"] is not None else None,
            "tokens_in": int(r["tokens_in"] or 0),
            "tokens_out": int(r["tokens_out"] or 0),
            "cost_usd": round(float(r["cost_usd"] or 0.0), 6),
        }
        routes.append(entry)
        for k in ("calls", "cache_hits", "errors", "tokens_in", "tokens_out"):
            totals[k] += entry[k]
        totals["cost_usd"] = round(totals["cost_usd"] + entry["cost_usd"], 6)

    return {"org_id": org_id, "since": _iso(since), "routes": routes, "totals": totals}


# ---------------------------------------------------------------------------
# Tenant configuration
# ---------------------------------------------------------------------------

def set_org_budget(org_id: str, remaining_balance: float, db_path: Optional[Path] = None) -> None:
    with get_connection(db_path) as conn:
        conn.execute(
            """
            INSERT INTO org_budgets (org_id, remaining_balance, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(org_id) DO UPDATE SET
                remaining_balance = excluded.remaining_balance,
                updated_at        = excluded.updated_at
            """,
            (org_id, float(remaining_balance), _now()),
        )


def get_org_budget(org_id: str, db_path: Optional[Path] = None) -> Optional[float]:
    with get_connection(db_path) as conn:
        row = conn.execute("SELECT remaining_balance FROM org_budgets WHERE org_id = ?", (org_id,)).fetchone()
    return float(row["remaining_balance"]) if row else None


def set_org_ai_settings(
    org_id: str,
    *,
    cache_enabled: bool = True,
    cache_ttl_seconds: Optional[int] = None,
    db_path: Optional[Path] = None,
) -> None:
    with get_connection(db_path) as conn:
        conn.execute(
            """
            INSERT INTO org_ai_settings (org_id, cache_enabled, cache_ttl_seconds) VALUES (?, ?, ?)
            ON CONFLICT(org_id) DO UPDATE SET
                cache_enabled     = excluded.cache_enabled,
                cache_ttl_seconds = excluded.cache_ttl_seconds
            """,
            (org_id, 1 if cache_enabled else 0, cache_ttl_seconds),
        )


def get_org_ai_settings(org_id: str, db_path: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT cache_enabled, cache_ttl_seconds FROM org_ai_settings WHERE org_id = ?",
            (org_id,),
        ).fetchone()
    if row is None:
        return None
    return {"enabled": bool(row["cache_enabled"]), "ttl_seconds": row["cache_ttl_seconds"]}


# ---------------------------------------------------------------------------
# Async adapter
# ---------------------------------------------------------------------------

class SQLiteStore:
    """
    Async facade over this module for the automation engine.

    Implements ClaimFactReader, PersistenceSink, TenantBudgetReader and
    TenantSettingsReader. Every call runs the blocking sqlite3 work in a
    worker thread so the event loop is never blocked.

    Args:
        db_path: Override DB file location; tables are created on construction.
    """

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = Path(db_path) if db_path else default_db_path()
        init_db(self.db_path)

    async def _run(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, db_path=self.db_path, **kwargs)

    # ── ClaimFactReader ──────────────────────────────────────────────────────

    async def get_claim_facts(self, claim_id: str, org_id: str) -> Optional[ClaimFacts]:
        return await self._run(get_claim_facts, claim_id, org_id)

    async def list_active_claim_ids(self, org_id: str, limit: int) -> List[str]:
        return await self._run(list_active_claim_ids, org_id, limit)

    # ── PersistenceSink ──────────────────────────────────────────────────────

    async def create_trigger_record(self, claim_id: str, org_id: str, trigger: Trigger) -> str:
        return await self._run(insert_trigger, claim_id, org_id, trigger)

    async def mark_trigger_processed(self, trigger_id: str) -> None:
        await self._run(mark_trigger_processed, trigger_id)

    async def create_action_record(
        self, trigger_id: str, claim_id: str, org_id: str, action_type: str, priority: int,
    ) -> str:
        return await self._run(insert_action_record, trigger_id, claim_id, org_id, action_type, priority)

    async def complete_action_record(
        self,
        action_id: str,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        await self._run(complete_action_record, action_id, status, result=result, error=error)

    async def record_ai_invocation(self, record: AIInvocationRecord) -> None:
        await self._run(insert_ai_invocation, record)

    async def log_activity(
        self,
        claim_id: str,
        org_id: str,
        activity_type: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        return await self._run(insert_activity, claim_id, org_id, activity_type, description, metadata)

    async def find_open_task(self, claim_id: str, org_id: str, title: str) -> Optional[str]:
        return await self._run(find_open_task, claim_id, org_id, title)

    async def create_task(
        self,
        claim_id: str,
        org_id: str,
        title: str,
        description: str = "",
        priority: str = "MEDIUM",
        due_at: Optional[datetime] = None,
    ) -> str:
        return await self._run(insert_task, claim_id, org_id, title, description, priority, due_at)

    async def create_alert(self, claim_id: str, org_id: str, severity: str, title: str, message: str = "") -> str:
        return await self._run(insert_alert, claim_id, org_id, severity, title, message)

    async def create_recommendation(
        self,
        claim_id: str,
        org_id: str,
        title: str,
        body: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        return await self._run(insert_recommendation, claim_id, org_id, title, body, metadata)

    async def save_claim_report(self, claim_id: str, org_id: str, kind: str, payload: Dict[str, Any]) -> str:
        return await self._run(insert_claim_report, claim_id, org_id, kind, payload)

    async def update_claim_status(self, claim_id: str, org_id: str, status: str) -> Optional[str]:
        return await self._run(update_claim_status, claim_id, org_id, status)

    # ── Tenant readers ───────────────────────────────────────────────────────

    async def get_remaining_balance(self, org_id: str) -> Optional[float]:
        return await self._run(get_org_budget, org_id)

    async def get_ai_cache_settings(self, org_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(get_org_ai_settings, org_id)

    async def get_ai_performance_summary(self, org_id: str, since: Optional[datetime] = None) -> Dict[str, Any]:
        return await self._run(get_ai_performance_summary, org_id, since)
