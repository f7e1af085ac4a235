"""
context.py
----------
AgentForge — Claims Automation Engine — Boundary contracts + dependency bundle
------------------------------------------------------------------------------
Declares the collaborators the automation core talks to as typing.Protocols
and bundles the concrete instances into one AutomationContext that the
detector, the engine and every executor receive.

Nothing in the core imports a concrete store, client or sender directly:
tests hand in in-memory fakes, production uses build_automation_context().

Contracts:
    ClaimFactReader      — claim facts + active claim listing.
    PersistenceSink      — trigger / action / AI records, activities, tasks,
                           alerts, recommendations, reports, claim status.
    ModelInvocationClient — one model call → ModelResponse.
    KeyValueStore        — async Redis-like surface used by AICache.
    EmailSender          — outbound email; may be unconfigured.
    TenantBudgetReader   — remaining prepaid AI balance per org.
    TenantSettingsReader — per-org AI cache settings.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Protocol

import redis.asyncio as redis_asyncio
from dotenv import load_dotenv

from ai_control import AIControl
from ai_control.cache import AICache
from ai_control.dedupe import DedupeCoordinator
from ai_control.perf import PerformanceRecorder, load_model_rates
from claims_guidelines import AI_CALL_TIMEOUT_S, BATCH_SCAN_DEFAULTS, CACHE_DEFAULT_TTL_SECONDS
from database import SQLiteStore
from email_client import ResendEmailClient
from model_client import AnthropicModelClient
from schemas import AIInvocationRecord, ClaimFacts, ModelResponse, Trigger, utcnow

logger = logging.getLogger(__name__)


# ── Protocols ─────────────────────────────────────────────────────────────────

class ClaimFactReader(Protocol):
    async def get_claim_facts(self, claim_id: str, org_id: str) -> Optional[ClaimFacts]: ...

    async def list_active_claim_ids(self, org_id: str, limit: int) -> List[str]: ...


class PersistenceSink(Protocol):
    async def create_trigger_record(self, claim_id: str, org_id: str, trigger: Trigger) -> str: ...

    async def mark_trigger_processed(self, trigger_id: str) -> None: ...

    async def create_action_record(
        self, trigger_id: str, claim_id: str, org_id: str, action_type: str, priority: int,
    ) -> str: ...

    async def complete_action_record(
        self,
        action_id: str,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None: ...

    async def record_ai_invocation(self, record: AIInvocationRecord) -> None: ...

    async def log_activity(
        self,
        claim_id: str,
        org_id: str,
        activity_type: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str: ...

    async def find_open_task(self, claim_id: str, org_id: str, title: str) -> Optional[str]: ...

    async def create_task(
        self,
        claim_id: str,
        org_id: str,
        title: str,
        description: str = "",
        priority: str = "MEDIUM",
        due_at: Optional[datetime] = None,
    ) -> str: ...

    async def create_alert(self, claim_id: str, org_id: str, severity: str, title: str, message: str = "") -> str: ...

    async def create_recommendation(
        self,
        claim_id: str,
        org_id: str,
        title: str,
        body: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str: ...

    async def save_claim_report(self, claim_id: str, org_id: str, kind: str, payload: Dict[str, Any]) -> str: ...

    async def update_claim_status(self, claim_id: str, org_id: str, status: str) -> Optional[str]: ...


class ModelInvocationClient(Protocol):
    async def generate(
        self,
        model: str,
        prompt: str,
        *,
        system: Optional[str] = None,
        images: Optional[List[str]] = None,
        max_tokens: Optional[int] = None,
    ) -> ModelResponse: ...


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> Any: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, *keys: str) -> int: ...

    async def incr(self, key: str) -> int: ...

    def scan_iter(self, match: Optional[str] = None) -> AsyncIterator[str]: ...


class EmailSender(Protocol):
    @property
    def is_configured(self) -> bool: ...

    async def send(self, to: str, subject: str, body: str) -> str: ...


class TenantBudgetReader(Protocol):
    async def get_remaining_balance(self, org_id: str) -> Optional[float]: ...


class TenantSettingsReader(Protocol):
    async def get_ai_cache_settings(self, org_id: str) -> Optional[Dict[str, Any]]: ...


# ── Dependency bundle ─────────────────────────────────────────────────────────

@dataclass
class AutomationContext:
    """
    Everything one engine instance needs.

    Args:
        reader: Claim fact source.
        sink: Provenance + bookkeeping writer.
        ai: AI control stack (cache → dedupe → recorder).
        model_client: Real model caller wrapped by ``ai``.
        email_sender: Outbound email; None disables communication actions.
        executors: Registry override (ActionType → executor); None uses the
            default registry from automation_agent.executors.
        action_map: Trigger → actions table override; None uses ACTION_MAP.
        clock: Source of "now" for day-count rules.
        batch_limit: Max claims per org scan.
        claim_timeout_s: Per-claim timeout in org scans.
        max_concurrency: Concurrent claims per org scan.
    """

    reader: ClaimFactReader
    sink: PersistenceSink
    ai: AIControl
    model_client: ModelInvocationClient
    email_sender: Optional[EmailSender] = None
    executors: Optional[Mapping[Any, Any]] = None
    action_map: Optional[Mapping[Any, Any]] = None
    clock: Callable[[], datetime] = utcnow
    batch_limit: int = BATCH_SCAN_DEFAULTS["limit"]
    claim_timeout_s: float = BATCH_SCAN_DEFAULTS["claim_timeout_s"]
    max_concurrency: int = BATCH_SCAN_DEFAULTS["max_concurrency"]
    resources: List[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        """Close owned network clients (email transport, Redis pool)."""
        for resource in self.resources:
            closer = getattr(resource, "aclose", None) or getattr(resource, "close", None)
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                logger.warning("Failed to close %s: %s", type(resource).__name__, exc)


def _build_kv_store() -> Any:
    """redis.asyncio client when REDIS_URL is set, else None (cache pass-through)."""
    url = os.getenv("REDIS_URL")
    if not url:
        logger.info("REDIS_URL not set — AI cache disabled (pass-through).")
        return None
    logger.info("AI cache backed by Redis at %s.", url.split("@")[-1])
    return redis_asyncio.from_url(url, decode_responses=True)


def build_automation_context(db_path: Optional[Path] = None) -> AutomationContext:
    """
    Wire the production context from environment variables.

    Reads (after load_dotenv()): AUTOMATION_DB_PATH, REDIS_URL,
    ANTHROPIC_API_KEY, RESEND_API_KEY, RESEND_FROM_EMAIL, MODEL_RATES_PATH,
    AI_CACHE_TTL_SECONDS, AI_CALL_TIMEOUT_S, AUTOMATION_BATCH_LIMIT,
    AUTOMATION_CLAIM_TIMEOUT_S.

    Args:
        db_path: Override SQLite location.

    Returns:
        AutomationContext: Ready for run_automation / run_org_automation.

    Raises:
        ModelRateConfigError: if the model rate table cannot be loaded.
    """
    load_dotenv()

    store = SQLiteStore(db_path)
    kv = _build_kv_store()
    cache = AICache(
        kv,
        default_ttl_seconds=int(os.getenv("AI_CACHE_TTL_SECONDS", CACHE_DEFAULT_TTL_SECONDS)),
        settings_reader=store,
    )
    recorder = PerformanceRecorder(load_model_rates(), sink=store)
    ai = AIControl(
        cache,
        DedupeCoordinator(),
        recorder,
        budget_reader=store,
        default_timeout_s=float(os.getenv("AI_CALL_TIMEOUT_S", AI_CALL_TIMEOUT_S)),
    )
    email = ResendEmailClient()
    if not email.is_configured:
        logger.info("RESEND_API_KEY not set — email actions will be skipped.")

    return AutomationContext(
        reader=store,
        sink=store,
        ai=ai,
        model_client=AnthropicModelClient(),
        email_sender=email,
        batch_limit=int(os.getenv("AUTOMATION_BATCH_LIMIT", BATCH_SCAN_DEFAULTS["limit"])),
        claim_timeout_s=float(os.getenv("AUTOMATION_CLAIM_TIMEOUT_S", BATCH_SCAN_DEFAULTS["claim_timeout_s"])),
        resources=[r for r in (email, kv) if r is not None],
    )
