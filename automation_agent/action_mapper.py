"""
action_mapper.py
----------------
AgentForge — Claims Automation Engine — Trigger → action table
---------------------------------------------------------------
Static, immutable mapping from every TriggerType to the ordered remedial
actions the engine runs for it. Pure data plus two lookups; no I/O.

Ordering:
    Actions run in ascending priority. Ties keep declaration order
    (sorted() is stable).

The table is checked when this module is imported: a TriggerType without an
entry, or an entry with a non-positive priority, fails the import instead of
surfacing mid-run.

Key functions:
    get_actions_for_trigger: Raw table entry (declaration order).
    get_sorted_actions: Entry sorted by priority — what the engine uses.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Tuple

from schemas import ActionType, MappedAction, TriggerType


def _a(action_type: ActionType, order: int, **config) -> MappedAction:
    # config may carry its own "priority" key (task urgency), so the rank is named order here.
    return MappedAction(type=action_type, priority=order, config=config)


ACTION_MAP: Mapping[TriggerType, Tuple[MappedAction, ...]] = MappingProxyType({
    TriggerType.UNDERPAYMENT_DETECTED: (
        _a(ActionType.GENERATE_FINANCIAL_ANALYSIS, 1),
        _a(ActionType.GENERATE_SUPPLEMENT_PACKET, 2),
        _a(ActionType.CREATE_RECOMMENDATION, 3,
           title="Pursue underpayment with carrier",
           body="Financial analysis shows the carrier estimate is short. Submit the supplement packet."),
        _a(ActionType.SEND_ADJUSTER_EMAIL, 4, template="underpayment_notice"),
        _a(ActionType.CREATE_TASK, 5,
           title="Review underpayment supplement", priority="HIGH", due_in_days=2),
    ),
    TriggerType.WEATHER_CORRELATION_HIGH: (
        _a(ActionType.GENERATE_WEATHER_REPORT, 1),
        _a(ActionType.CREATE_RECOMMENDATION, 2,
           title="Attach weather verification",
           body="Storm data strongly correlates with the reported loss date. Include the weather report."),
        _a(ActionType.LOG_ACTIVITY, 3, description="High weather correlation recorded"),
    ),
    TriggerType.ADJUSTER_OVERDUE: (
        _a(ActionType.SEND_FOLLOW_UP_EMAIL, 1, template="adjuster_follow_up"),
        _a(ActionType.CREATE_TASK, 2,
           title="Call adjuster for status update", priority="MEDIUM", due_in_days=1),
        _a(ActionType.CREATE_ALERT, 3, severity="MEDIUM", title="Adjuster response overdue"),
    ),
    TriggerType.CLAIM_IDLE: (
        _a(ActionType.CREATE_TASK, 1,
           title="Re-engage idle claim", priority="MEDIUM", due_in_days=1),
        _a(ActionType.SEND_HOMEOWNER_EMAIL, 2, template="status_update"),
        _a(ActionType.LOG_ACTIVITY, 3, description="Idle claim flagged for follow-up"),
    ),
    TriggerType.SUPPLEMENT_OPPORTUNITY: (
        _a(ActionType.GENERATE_SUPPLEMENT_PACKET, 1),
        _a(ActionType.CREATE_RECOMMENDATION, 2,
           title="Submit pending supplements",
           body="Open supplement items exceed the submission threshold."),
        _a(ActionType.CREATE_TASK, 3,
           title="Submit supplement packet to carrier", priority="HIGH", due_in_days=3),
    ),
    TriggerType.CAUSATION_DISPUTED: (
        _a(ActionType.ESCALATE, 1, reason="Carrier disputes causation"),
        _a(ActionType.GENERATE_WEATHER_REPORT, 2),
        _a(ActionType.GENERATE_DOCUMENTATION_PACKET, 3, purpose="causation_rebuttal"),
        _a(ActionType.CREATE_TASK, 4,
           title="Prepare causation rebuttal", priority="HIGH", due_in_days=2),
    ),
    TriggerType.INSPECTION_COMPLETED: (
        _a(ActionType.GENERATE_DOCUMENTATION_PACKET, 1, purpose="inspection_summary"),
        _a(ActionType.SEND_HOMEOWNER_EMAIL, 2, template="inspection_complete"),
        _a(ActionType.LOG_ACTIVITY, 3, description="Inspection completed"),
    ),
    TriggerType.PHOTOS_UPLOADED: (
        _a(ActionType.GENERATE_DOCUMENTATION_PACKET, 1, purpose="photo_documentation"),
        _a(ActionType.LOG_ACTIVITY, 2, description="Photos uploaded"),
    ),
    TriggerType.WEATHER_EVENT_NEARBY: (
        _a(ActionType.GENERATE_WEATHER_REPORT, 1),
        _a(ActionType.CREATE_ALERT, 2, severity="MEDIUM", title="Weather event near property"),
    ),
    TriggerType.SETTLEMENT_READY: (
        _a(ActionType.GENERATE_FINANCIAL_ANALYSIS, 1),
        _a(ActionType.UPDATE_CLAIM_STATUS, 2, status="settlement_review"),
        _a(ActionType.SEND_HOMEOWNER_EMAIL, 3, template="settlement_ready"),
        _a(ActionType.CREATE_TASK, 4,
           title="Review settlement figures", priority="HIGH", due_in_days=1),
    ),
    TriggerType.CARRIER_DENIAL: (
        _a(ActionType.ESCALATE, 1, reason="Carrier denied the claim"),
        _a(ActionType.GENERATE_DOCUMENTATION_PACKET, 2, purpose="denial_appeal"),
        _a(ActionType.UPDATE_CLAIM_STATUS, 3, status="disputed"),
    ),
    TriggerType.CODE_VIOLATION: (
        _a(ActionType.CREATE_RECOMMENDATION, 1,
           title="Add code-upgrade items",
           body="Building code requires items missing from the carrier scope."),
        _a(ActionType.GENERATE_SUPPLEMENT_PACKET, 2),
    ),
    TriggerType.MISSING_ITEMS_CRITICAL: (
        _a(ActionType.CREATE_ALERT, 1, severity="HIGH", title="Critical scope items missing"),
        _a(ActionType.GENERATE_SUPPLEMENT_PACKET, 2),
        _a(ActionType.CREATE_TASK, 3,
           title="Add missing items to estimate", priority="HIGH", due_in_days=2),
    ),
})


def validate_action_map(table: Mapping[TriggerType, Tuple[MappedAction, ...]]) -> None:
    """
    Check that every TriggerType has an entry and every priority is positive.

    Raises:
        ValueError: naming the missing trigger types or bad entries.
    """
    missing = [t.value for t in TriggerType if t not in table]
    if missing:
        raise ValueError(f"Action map has no entry for: {', '.join(missing)}")
    for trigger_type, actions in table.items():
        for action in actions:
            if action.priority < 1:
                raise ValueError(
                    f"{trigger_type.value} → {action.type.value}: priority must be >= 1, got {action.priority}"
                )


validate_action_map(ACTION_MAP)


def get_actions_for_trigger(
    trigger_type: TriggerType,
    table: Mapping[TriggerType, Tuple[MappedAction, ...]] = ACTION_MAP,
) -> Tuple[MappedAction, ...]:
    """
    Raw table entry for one trigger type, in declaration order.

    Raises:
        KeyError: if the table has no entry (cannot happen for ACTION_MAP).
    """
    return table[TriggerType(trigger_type)]


def get_sorted_actions(
    trigger_type: TriggerType,
    table: Mapping[TriggerType, Tuple[MappedAction, ...]] = ACTION_MAP,
) -> Tuple[MappedAction, ...]:
    """
    Actions for one trigger type in execution order.

    Args:
        trigger_type: Detected trigger type.
        table: Override table (tests); defaults to ACTION_MAP.

    Returns:
        Tuple[MappedAction, ...]: Ascending priority, ties in declaration order.
    """
    return tuple(sorted(get_actions_for_trigger(trigger_type, table), key=lambda a: a.priority))
