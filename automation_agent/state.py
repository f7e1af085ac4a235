"""
state.py
--------
AgentForge — Claims Automation Engine — LangGraph AutomationState schema
-------------------------------------------------------------------------
Defines the AutomationState TypedDict that flows through every node of the
automation graph, plus create_initial_state() for consistent defaults.

Key fields:
    triggers: Set by the detect node; empty list routes straight to END.
    trigger_record_ids: Parallel to triggers; set by persist_triggers.
    results: One ActionOutcome per action run, in execution order.
    actions_executed: Counts every action run, success or failure.
    errors: "<ACTION>: <message>" for each failed action.
    fatal_error: Set when a node aborts the pipeline; success is then False.
"""

from typing import List, Optional

from typing_extensions import TypedDict

from schemas import ActionOutcome, Trigger


class AutomationState(TypedDict):
    claim_id: str
    org_id: str
    triggers: List[Trigger]
    trigger_record_ids: List[str]
    results: List[ActionOutcome]
    actions_executed: int
    errors: List[str]
    fatal_error: Optional[str]


def create_initial_state(claim_id: str, org_id: str) -> AutomationState:
    """
    Create a fresh AutomationState for one claim run.

    Args:
        claim_id: Claim to automate.
        org_id: Owning org.

    Returns:
        AutomationState: Initialized state dict ready for graph invocation.
    """
    return {
        "claim_id": claim_id,
        "org_id": org_id,
        "triggers": [],
        "trigger_record_ids": [],
        "results": [],
        "actions_executed": 0,
        "errors": [],
        "fatal_error": None,
    }
