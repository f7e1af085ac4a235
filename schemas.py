"""
schemas.py
----------
AgentForge — Claims Automation Engine — Pydantic Data Contracts
---------------------------------------------------------------
Pydantic v2 models that act as the data contract between the trigger
detector, the action mapper, the executors, the AI control stack, and the
persistence sink.

Validation policy
-----------------
Every record crossing a module boundary is a frozen model. Triggers are
created once by the detector and never mutated; their lifecycle status lives
in the persistence layer only. AIInvocationRecord derives cost_usd itself —
callers never supply a cost.

Public API
----------
    TriggerType, Severity, ActionType     Closed enums (str-valued).
    TriggerStatus, ActionStatus           Persisted lifecycle states.
    Trigger                               One detected condition on a claim.
    MappedAction                          (type, priority, config) tuple.
    ClaimFacts                            Reader view of one claim.
    ActionOutcome                         SUCCESS(result) | FAILED(error).
    ModelResponse                         Model output + token usage.
    AIInvocationRecord                    One AI call, with derived cost.
    AutomationResult                      Structured result of one run.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware UTC now; every timestamp in the core goes through here."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TriggerType(str, enum.Enum):
    """Closed set of conditions the automation responds to."""

    UNDERPAYMENT_DETECTED = "UNDERPAYMENT_DETECTED"
    WEATHER_CORRELATION_HIGH = "WEATHER_CORRELATION_HIGH"
    ADJUSTER_OVERDUE = "ADJUSTER_OVERDUE"
    CLAIM_IDLE = "CLAIM_IDLE"
    SUPPLEMENT_OPPORTUNITY = "SUPPLEMENT_OPPORTUNITY"
    CAUSATION_DISPUTED = "CAUSATION_DISPUTED"
    # Auxiliary types raised by other parts of the product (uploads,
    # inspections, carrier correspondence) and mapped here as well.
    INSPECTION_COMPLETED = "INSPECTION_COMPLETED"
    PHOTOS_UPLOADED = "PHOTOS_UPLOADED"
    WEATHER_EVENT_NEARBY = "WEATHER_EVENT_NEARBY"
    SETTLEMENT_READY = "SETTLEMENT_READY"
    CARRIER_DENIAL = "CARRIER_DENIAL"
    CODE_VIOLATION = "CODE_VIOLATION"
    MISSING_ITEMS_CRITICAL = "MISSING_ITEMS_CRITICAL"


class Severity(str, enum.Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ActionType(str, enum.Enum):
    """Every action an executor exists for. The registry must cover all of them."""

    # Generative
    GENERATE_FINANCIAL_ANALYSIS = "GENERATE_FINANCIAL_ANALYSIS"
    GENERATE_WEATHER_REPORT = "GENERATE_WEATHER_REPORT"
    GENERATE_SUPPLEMENT_PACKET = "GENERATE_SUPPLEMENT_PACKET"
    GENERATE_DOCUMENTATION_PACKET = "GENERATE_DOCUMENTATION_PACKET"
    # Communication
    SEND_ADJUSTER_EMAIL = "SEND_ADJUSTER_EMAIL"
    SEND_HOMEOWNER_EMAIL = "SEND_HOMEOWNER_EMAIL"
    SEND_FOLLOW_UP_EMAIL = "SEND_FOLLOW_UP_EMAIL"
    # Bookkeeping
    CREATE_TASK = "CREATE_TASK"
    CREATE_ALERT = "CREATE_ALERT"
    CREATE_RECOMMENDATION = "CREATE_RECOMMENDATION"
    LOG_ACTIVITY = "LOG_ACTIVITY"
    UPDATE_CLAIM_STATUS = "UPDATE_CLAIM_STATUS"
    # Escalation
    ESCALATE = "ESCALATE"


class TriggerStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"


class ActionStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Triggers and actions
# ---------------------------------------------------------------------------

class Trigger(BaseModel):
    """A detected, typed, severity-ranked condition on one claim."""

    model_config = ConfigDict(frozen=True)

    type: TriggerType
    severity: Severity
    payload: Dict[str, Any] = Field(default_factory=dict)
    reason: str


class MappedAction(BaseModel):
    """One declarative entry of the trigger → action table."""

    model_config = ConfigDict(frozen=True)

    type: ActionType
    priority: int
    config: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Claim facts (reader boundary)
# ---------------------------------------------------------------------------

class ReportRef(BaseModel):
    """Latest stored analysis result of one kind for a claim."""

    model_config = ConfigDict(frozen=True)

    report_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class SupplementRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    total: float = 0.0


class ClaimFacts(BaseModel):
    """
    Everything the detector and executors read about one claim.

    Every field other than the ids may be absent; absence is a normal state
    ("no financial analysis yet"), never an error.
    """

    model_config = ConfigDict(frozen=True)

    claim_id: str
    org_id: str
    status: str = ""
    claim_number: Optional[str] = None
    carrier: Optional[str] = None
    adjuster_email: Optional[str] = None
    homeowner_email: Optional[str] = None
    homeowner_name: Optional[str] = None
    last_adjuster_contact_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    last_activity_type: Optional[str] = None
    financial_analysis: Optional[ReportRef] = None
    weather_forensics: Optional[ReportRef] = None
    supplements: List[SupplementRecord] = Field(default_factory=list)

    @field_validator("last_adjuster_contact_at", "last_activity_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps from storage are UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# ---------------------------------------------------------------------------
# Execution outcomes
# ---------------------------------------------------------------------------

class ActionOutcome(BaseModel):
    """
    Tagged result of one executor invocation: SUCCESS carries ``result``,
    FAILED carries ``error``. Collected into AutomationResult.results.
    """

    model_config = ConfigDict(frozen=True)

    trigger_type: TriggerType
    action_type: str
    priority: int
    status: Literal["SUCCESS", "FAILED"]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, trigger_type: TriggerType, action: MappedAction, result: Dict[str, Any]) -> "ActionOutcome":
        return cls(
            trigger_type=trigger_type,
            action_type=action.type.value,
            priority=action.priority,
            status=ActionStatus.SUCCESS.value,
            result=result,
        )

    @classmethod
    def failure(cls, trigger_type: TriggerType, action: MappedAction, error: str) -> "ActionOutcome":
        return cls(
            trigger_type=trigger_type,
            action_type=action.type.value,
            priority=action.priority,
            status=ActionStatus.FAILED.value,
            error=error,
        )

    @property
    def ok(self) -> bool:
        return self.status == ActionStatus.SUCCESS.value


class AutomationResult(BaseModel):
    """What every caller of the engine receives — never an exception."""

    success: bool
    claim_id: str
    org_id: str
    triggers_detected: List[Trigger] = Field(default_factory=list)
    actions_executed: int = 0
    results: List[ActionOutcome] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# AI invocation
# ---------------------------------------------------------------------------

class ModelResponse(BaseModel):
    """Output of one model call plus the usage the provider reported."""

    content: str
    model: str
    tokens_in: int = 0
    tokens_out: int = 0


class AIInvocationRecord(BaseModel):
    """
    One persisted row per underlying AI call (or cache hit).

    ``cost_usd`` is computed by the recorder from the rate table at write
    time; it is not accepted from the callee.
    """

    model_config = ConfigDict(frozen=True)

    route_name: str
    org_id: str
    lead_id: Optional[str] = None
    claim_id: Optional[str] = None
    duration_ms: int = 0
    model: str
    tokens_in: int = 0
    tokens_out: int = 0
    cache_hit: bool = False
    cost_usd: float = 0.0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
