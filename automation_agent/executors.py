"""
executors.py
------------
AgentForge — Claims Automation Engine — Action executors + registry
--------------------------------------------------------------------
One async executor per ActionType, all with the signature

    async executor(ctx, claim_id, org_id, config) -> dict

registered in EXECUTOR_REGISTRY. The registry is built once at import and
checked to cover every ActionType. Every executor is safe to re-run for the
same claim: generated artifacts come back from the AI cache, tasks with the
same title are reused, status updates are idempotent.

Families:
    Generative    — build a deterministic input from claim facts, call the
                    model through ctx.ai (cache → dedupe → recorder), persist
                    the artifact as an 'ai_*' claim report.
    Communication — resolve the recipient from claim facts and send through
                    ctx.email_sender; no recipient or no configured sender
                    returns {"status": "skipped", "reason": ...}.
    Bookkeeping   — tasks, alerts, recommendations, activities, claim status.
    Escalation    — CRITICAL alert + CRITICAL task, both always attempted.

Executors raise on failure; the engine turns the exception into a FAILED
action record. Nothing here catches and hides an error.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import logging
from datetime import timedelta
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from langsmith import traceable

from ai_control.keys import canonicalize
from claims_guidelines import ESCALATION_TASK_DUE_DAYS
from model_client import parse_json_content
from schemas import ActionType, ClaimFacts, MappedAction, ModelResponse

logger = logging.getLogger(__name__)

Executor = Callable[[Any, str, str, Dict[str, Any]], Awaitable[Dict[str, Any]]]


class ExecutorError(Exception):
    """Raised by an executor when its action cannot be completed."""


class UnknownActionTypeError(Exception):
    """Raised when no executor is registered for an action type."""

    def __init__(self, action_type: Any) -> None:
        self.action_type = action_type
        super().__init__(f"No executor registered for action type '{getattr(action_type, 'value', action_type)}'")


async def _load_facts(ctx: Any, claim_id: str, org_id: str) -> ClaimFacts:
    facts = await ctx.reader.get_claim_facts(claim_id, org_id)
    if facts is None:
        raise ExecutorError(f"Claim {claim_id} not found in org {org_id}")
    return facts


# ── Generative ────────────────────────────────────────────────────────────────

GENERATIVE_ROUTES: Mapping[ActionType, Dict[str, str]] = MappingProxyType({
    ActionType.GENERATE_FINANCIAL_ANALYSIS: {
        "route": "claims-financial-analysis",
        "report_kind": "ai_financial_analysis",
        "instruction": (
            "Compare the carrier estimate with the contractor scope and return JSON with "
            "keys: summary, underpayment, line_item_gaps (list), next_steps (list)."
        ),
    },
    ActionType.GENERATE_WEATHER_REPORT: {
        "route": "claims-weather-report",
        "report_kind": "ai_weather_report",
        "instruction": (
            "Write a weather verification narrative for the date of loss and return JSON with "
            "keys: summary, correlation_assessment, supporting_events (list)."
        ),
    },
    ActionType.GENERATE_SUPPLEMENT_PACKET: {
        "route": "claims-supplement-packet",
        "report_kind": "ai_supplement_packet",
        "instruction": (
            "Draft a supplement request for the carrier and return JSON with keys: "
            "cover_letter, items (list of {description, amount, justification}), total."
        ),
    },
    ActionType.GENERATE_DOCUMENTATION_PACKET: {
        "route": "claims-documentation-packet",
        "report_kind": "ai_documentation_packet",
        "instruction": (
            "Assemble a documentation packet outline and return JSON with keys: "
            "summary, sections (list of {title, content}), missing_documents (list)."
        ),
    },
})

GENERATIVE_SYSTEM_PROMPT = (
    "You are a property insurance claims analyst working for the policyholder's "
    "contractor. Use only the claim data provided. Respond with JSON only."
)


def build_generation_input(facts: ClaimFacts, action_type: ActionType, config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deterministic model input for one generative action.

    Only content that determines the output goes in: no timestamps, so the
    same claim state always produces the same cache key.
    """
    return {
        "action": action_type.value,
        "claim": {
            "claim_id": facts.claim_id,
            "claim_number": facts.claim_number,
            "carrier": facts.carrier,
            "status": facts.status,
        },
        "financial_analysis": facts.financial_analysis.payload if facts.financial_analysis else None,
        "weather_forensics": facts.weather_forensics.payload if facts.weather_forensics else None,
        "supplements": [{"id": s.id, "total": s.total} for s in facts.supplements],
        "options": config,
    }


def _prompt_for(instruction: str, generation_input: Dict[str, Any]) -> str:
    return f"{instruction}\n\nClaim data:\n{canonicalize(generation_input)}"


def _make_generative_executor(action_type: ActionType) -> Executor:
    entry = GENERATIVE_ROUTES[action_type]

    async def _execute(ctx: Any, claim_id: str, org_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        facts = await _load_facts(ctx, claim_id, org_id)
        generation_input = build_generation_input(facts, action_type, config)
        prompt = _prompt_for(entry["instruction"], generation_input)

        async def _call(model: str) -> ModelResponse:
            return await ctx.model_client.generate(model, prompt, system=GENERATIVE_SYSTEM_PROMPT)

        result = await ctx.ai.invoke(
            entry["route"],
            generation_input,
            _call,
            org_id=org_id,
            claim_id=claim_id,
            mode=config.get("model_mode", "auto"),
        )
        content = result.data.get("content", "") if isinstance(result.data, dict) else str(result.data)
        model = result.data.get("model", result.model) if isinstance(result.data, dict) else result.model
        report_id = await ctx.sink.save_claim_report(
            claim_id,
            org_id,
            entry["report_kind"],
            {
                "route": entry["route"],
                "model": model,
                "cached": result.cached,
                "cache_key": result.key,
                "artifact": parse_json_content(content),
            },
        )
        logger.info(
            "%s for claim %s → report %s (model=%s, cached=%s).",
            action_type.value, claim_id, report_id, model, result.cached,
        )
        return {"report_id": report_id, "model": model, "cached": result.cached}

    _execute.__name__ = f"execute_{action_type.value.lower()}"
    return _execute


# ── Communication ─────────────────────────────────────────────────────────────

EMAIL_TEMPLATES: Mapping[str, Dict[str, str]] = MappingProxyType({
    "underpayment_notice": {
        "subject": "Claim {claim_number}: supplement for underpaid scope",
        "body": (
            "Hello,\n\nOur review of claim {claim_number} shows the current estimate does not "
            "cover the full scope of loss. A supplement with supporting documentation will "
            "follow. Please confirm receipt.\n\nThank you."
        ),
    },
    "adjuster_follow_up": {
        "subject": "Claim {claim_number}: status follow-up",
        "body": (
            "Hello,\n\nWe have not received an update on claim {claim_number} recently. "
            "Could you share the current status and any outstanding items?\n\nThank you."
        ),
    },
    "status_update": {
        "subject": "Update on your claim {claim_number}",
        "body": (
            "Hi {homeowner_name},\n\nWe are following up with {carrier} on your claim and "
            "will reach out as soon as we have news.\n\nThank you for your patience."
        ),
    },
    "inspection_complete": {
        "subject": "Inspection complete for claim {claim_number}",
        "body": (
            "Hi {homeowner_name},\n\nThe inspection for your claim is complete. We are "
            "preparing the documentation for {carrier}.\n\nThank you."
        ),
    },
    "settlement_ready": {
        "subject": "Settlement review for claim {claim_number}",
        "body": (
            "Hi {homeowner_name},\n\nYour claim is ready for settlement review. We will "
            "walk you through the figures shortly.\n\nThank you."
        ),
    },
})

DEFAULT_TEMPLATE = {
    ActionType.SEND_ADJUSTER_EMAIL: "adjuster_follow_up",
    ActionType.SEND_FOLLOW_UP_EMAIL: "adjuster_follow_up",
    ActionType.SEND_HOMEOWNER_EMAIL: "status_update",
}

# Which claim fact holds the recipient for each email action.
RECIPIENT_FIELD = {
    ActionType.SEND_ADJUSTER_EMAIL: "adjuster_email",
    ActionType.SEND_FOLLOW_UP_EMAIL: "adjuster_email",
    ActionType.SEND_HOMEOWNER_EMAIL: "homeowner_email",
}


def render_email(template_name: str, facts: ClaimFacts) -> Dict[str, str]:
    """
    Render a template with claim fields.

    Raises:
        ExecutorError: if the template does not exist.
    """
    template = EMAIL_TEMPLATES.get(template_name)
    if template is None:
        raise ExecutorError(f"Unknown email template '{template_name}'")
    fields = {
        "claim_number": facts.claim_number or facts.claim_id,
        "homeowner_name": facts.homeowner_name or "there",
        "carrier": facts.carrier or "your carrier",
    }
    return {"subject": template["subject"].format(**fields), "body": template["body"].format(**fields)}


def _make_email_executor(action_type: ActionType) -> Executor:
    recipient_field = RECIPIENT_FIELD[action_type]

    async def _execute(ctx: Any, claim_id: str, org_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        sender = ctx.email_sender
        if sender is None or not sender.is_configured:
            return {"status": "skipped", "reason": "email sender not configured"}
        facts = await _load_facts(ctx, claim_id, org_id)
        to = getattr(facts, recipient_field)
        if not to:
            return {"status": "skipped", "reason": f"no {recipient_field} on claim"}

        template_name = config.get("template") or DEFAULT_TEMPLATE[action_type]
        email = render_email(template_name, facts)
        message_id = await sender.send(to, email["subject"], email["body"])
        await ctx.sink.log_activity(
            claim_id,
            org_id,
            "email_sent",
            f"{email['subject']} → {to}",
            {"message_id": message_id, "to": to, "template": template_name, "action": action_type.value},
        )
        return {"status": "sent", "message_id": message_id, "to": to, "template": template_name}

    _execute.__name__ = f"execute_{action_type.value.lower()}"
    return _execute


# ── Bookkeeping ───────────────────────────────────────────────────────────────

async def _ensure_task(
    ctx: Any,
    claim_id: str,
    org_id: str,
    title: str,
    description: str,
    priority: str,
    due_in_days: Optional[int],
) -> Dict[str, Any]:
    existing = await ctx.sink.find_open_task(claim_id, org_id, title)
    if existing is not None:
        logger.debug("Open task '%s' already exists on claim %s (id=%s).", title, claim_id, existing)
        return {"task_id": existing, "created": False}
    due_at = ctx.clock() + timedelta(days=due_in_days) if due_in_days is not None else None
    task_id = await ctx.sink.create_task(claim_id, org_id, title, description, priority, due_at)
    return {"task_id": task_id, "created": True}


async def execute_create_task(ctx: Any, claim_id: str, org_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
    return await _ensure_task(
        ctx,
        claim_id,
        org_id,
        config.get("title", "Follow up on claim"),
        config.get("description", ""),
        config.get("priority", "MEDIUM"),
        config.get("due_in_days"),
    )


async def execute_create_alert(ctx: Any, claim_id: str, org_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
    title = config.get("title", "Claim needs attention")
    alert_id = await ctx.sink.create_alert(
        claim_id, org_id, config.get("severity", "MEDIUM"), title, config.get("message", ""),
    )
    return {"alert_id": alert_id}


async def execute_create_recommendation(ctx: Any, claim_id: str, org_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
    recommendation_id = await ctx.sink.create_recommendation(
        claim_id,
        org_id,
        config.get("title", "Recommended next step"),
        config.get("body", ""),
        {k: v for k, v in config.items() if k not in ("title", "body")},
    )
    return {"recommendation_id": recommendation_id}


async def execute_log_activity(ctx: Any, claim_id: str, org_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
    activity_id = await ctx.sink.log_activity(
        claim_id,
        org_id,
        config.get("activity_type", "automation_action"),
        config.get("description", "Automation action"),
    )
    return {"activity_id": activity_id}


async def execute_update_claim_status(ctx: Any, claim_id: str, org_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
    status = config.get("status")
    if not status:
        raise ExecutorError("UPDATE_CLAIM_STATUS requires a 'status' in its config")
    previous = await ctx.sink.update_claim_status(claim_id, org_id, status)
    if previous is None:
        raise ExecutorError(f"Claim {claim_id} not found in org {org_id}")
    return {"previous_status": previous, "status": status}


# ── Escalation ────────────────────────────────────────────────────────────────

async def execute_escalate(ctx: Any, claim_id: str, org_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Raise a CRITICAL alert and a CRITICAL task.

    The task is attempted even when the alert fails. If either failed the
    action raises after both attempts, naming every failure.
    """
    reason = config.get("reason", "Claim escalated")
    errors: List[str] = []
    result: Dict[str, Any] = {"alert_id": None, "task_id": None}

    try:
        result["alert_id"] = await ctx.sink.create_alert(
            claim_id, org_id, "CRITICAL", f"Escalation: {reason}", reason,
        )
    except Exception as exc:
        logger.error("Escalation alert failed for claim %s: %s", claim_id, exc)
        errors.append(f"alert: {exc}")

    try:
        task = await _ensure_task(
            ctx, claim_id, org_id,
            f"Escalation: {reason}", reason, "CRITICAL", ESCALATION_TASK_DUE_DAYS,
        )
        result["task_id"] = task["task_id"]
    except Exception as exc:
        logger.error("Escalation task failed for claim %s: %s", claim_id, exc)
        errors.append(f"task: {exc}")

    if errors:
        raise ExecutorError("; ".join(errors))
    return result


# ── Registry ──────────────────────────────────────────────────────────────────

def build_executor_registry() -> Mapping[ActionType, Executor]:
    """
    Build the immutable ActionType → executor registry.

    Raises:
        ValueError: if any ActionType has no executor.
    """
    registry: Dict[ActionType, Executor] = {
        ActionType.CREATE_TASK: execute_create_task,
        ActionType.CREATE_ALERT: execute_create_alert,
        ActionType.CREATE_RECOMMENDATION: execute_create_recommendation,
        ActionType.LOG_ACTIVITY: execute_log_activity,
        ActionType.UPDATE_CLAIM_STATUS: execute_update_claim_status,
        ActionType.ESCALATE: execute_escalate,
    }
    for action_type in GENERATIVE_ROUTES:
        registry[action_type] = _make_generative_executor(action_type)
    for action_type in RECIPIENT_FIELD:
        registry[action_type] = _make_email_executor(action_type)

    missing = [t.value for t in ActionType if t not in registry]
    if missing:
        raise ValueError(f"Executor registry has no executor for: {', '.join(missing)}")
    return MappingProxyType(registry)


EXECUTOR_REGISTRY: Mapping[ActionType, Executor] = build_executor_registry()


def get_executor(action_type: Any, registry: Optional[Mapping[Any, Executor]] = None) -> Executor:
    """
    Look up the executor for an action type.

    Raises:
        UnknownActionTypeError: if nothing is registered for it.
    """
    registry = EXECUTOR_REGISTRY if registry is None else registry
    executor = registry.get(action_type)
    if executor is None:
        raise UnknownActionTypeError(action_type)
    return executor


@traceable(name="execute_action")
async def execute_action(ctx: Any, action: MappedAction, claim_id: str, org_id: str) -> Dict[str, Any]:
    """
    Dispatch one mapped action to its executor.

    Args:
        ctx: AutomationContext.
        action: Mapped action (type, priority, config).
        claim_id: Claim being automated.
        org_id: Owning org.

    Returns:
        dict: The executor's JSON-safe result.

    Raises:
        UnknownActionTypeError: if the type is not registered.
        Exception: whatever the executor raised.
    """
    executor = get_executor(action.type, getattr(ctx, "executors", None))
    return await executor(ctx, claim_id, org_id, dict(action.config))
