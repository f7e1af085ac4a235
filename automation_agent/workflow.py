"""
workflow.py
-----------
AgentForge — Claims Automation Engine — LangGraph workflow assembler
---------------------------------------------------------------------
Assembles the per-claim automation state machine and exposes
run_automation() / run_org_automation() as the entry points for main.py.

Graph topology:
    START → detect → (fatal error or no triggers → END)
    detect → persist_triggers → (fatal error → END)
    persist_triggers → execute_actions → (fatal error → END)
    execute_actions → log_summary → END

Node contract:
    detect           — reads claim facts, sets triggers.
    persist_triggers — one PENDING record per trigger, in detector order.
    execute_actions  — per trigger, per mapped action in priority order:
                       action record RUNNING → executor → SUCCESS | FAILED.
                       A failed action never stops its siblings or other
                       triggers; the trigger record then moves to PROCESSED.
                       A cancelled run closes its open action record as
                       FAILED and leaves that trigger PENDING.
    log_summary      — one automation_run activity for the claim.

Failure policy:
    Detection errors and failures writing trigger/action records abort the
    run (fatal_error set, success=False). Rows already written stay. Executor
    failures, including unknown action types, are recorded FAILED and the run
    continues. Callers always receive an AutomationResult.

Key functions:
    run_automation: One claim, full pipeline.
    run_org_automation: Up to N active claims of an org, isolated per claim.
    _build_graph: Assembles and compiles the StateGraph over a context.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from langgraph.graph import END, StateGraph
from langsmith import traceable

from automation_agent.action_mapper import ACTION_MAP, get_sorted_actions
from automation_agent.context import AutomationContext
from automation_agent.executors import execute_action
from automation_agent.state import AutomationState, create_initial_state
from automation_agent.trigger_detector import detect_triggers
from schemas import ActionOutcome, ActionStatus, AutomationResult

logger = logging.getLogger(__name__)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


# ── Nodes ─────────────────────────────────────────────────────────────────────

def _make_detect_node(ctx: AutomationContext):
    async def detect_node(state: AutomationState) -> Dict[str, Any]:
        try:
            triggers = await detect_triggers(state["claim_id"], state["org_id"], ctx.reader, ctx.clock())
        except Exception as exc:
            logger.exception("Trigger detection failed for claim %s", state["claim_id"])
            return {"fatal_error": f"Trigger detection failed: {_describe(exc)}"}
        return {"triggers": triggers}

    return detect_node


def _make_persist_node(ctx: AutomationContext):
    async def persist_triggers_node(state: AutomationState) -> Dict[str, Any]:
        record_ids: List[str] = []
        try:
            for trigger in state["triggers"]:
                record_ids.append(
                    await ctx.sink.create_trigger_record(state["claim_id"], state["org_id"], trigger)
                )
        except Exception as exc:
            logger.exception("Persisting triggers failed for claim %s", state["claim_id"])
            return {
                "trigger_record_ids": record_ids,
                "fatal_error": f"Trigger persistence failed: {_describe(exc)}",
            }
        return {"trigger_record_ids": record_ids}

    return persist_triggers_node


def _make_execute_node(ctx: AutomationContext):
    action_map = ctx.action_map if ctx.action_map is not None else ACTION_MAP

    async def execute_actions_node(state: AutomationState) -> Dict[str, Any]:
        claim_id, org_id = state["claim_id"], state["org_id"]
        results: List[ActionOutcome] = list(state["results"])
        errors: List[str] = list(state["errors"])
        executed = state["actions_executed"]

        try:
            for trigger, record_id in zip(state["triggers"], state["trigger_record_ids"]):
                for action in get_sorted_actions(trigger.type, action_map):
                    action_id = await ctx.sink.create_action_record(
                        record_id, claim_id, org_id, action.type.value, action.priority,
                    )
                    try:
                        result = await execute_action(ctx, action, claim_id, org_id)
                    except asyncio.CancelledError:
                        # Run cancelled (claim timeout): close the open record, leave the trigger PENDING.
                        logger.warning(
                            "Claim %s: %s cancelled mid-run; recording it FAILED.", claim_id, action.type.value,
                        )
                        await ctx.sink.complete_action_record(
                            action_id, ActionStatus.FAILED.value, error="Cancelled before completion",
                        )
                        raise
                    except Exception as exc:
                        message = _describe(exc)
                        logger.warning(
                            "Claim %s: %s (priority %d) for %s failed: %s",
                            claim_id, action.type.value, action.priority, trigger.type.value, message,
                        )
                        outcome = ActionOutcome.failure(trigger.type, action, message)
                        errors.append(f"{action.type.value}: {message}")
                        await ctx.sink.complete_action_record(
                            action_id, ActionStatus.FAILED.value, error=message,
                        )
                    else:
                        outcome = ActionOutcome.success(trigger.type, action, result)
                        await ctx.sink.complete_action_record(
                            action_id, ActionStatus.SUCCESS.value, result=result,
                        )
                    results.append(outcome)
                    executed += 1
                await ctx.sink.mark_trigger_processed(record_id)
        except Exception as exc:
            logger.exception("Action record persistence failed for claim %s", claim_id)
            return {
                "results": results,
                "errors": errors,
                "actions_executed": executed,
                "fatal_error": f"Action persistence failed: {_describe(exc)}",
            }

        return {"results": results, "errors": errors, "actions_executed": executed}

    return execute_actions_node


def _make_summary_node(ctx: AutomationContext):
    async def log_summary_node(state: AutomationState) -> Dict[str, Any]:
        failed = sum(1 for r in state["results"] if not r.ok)
        description = (
            f"Automation run: {len(state['triggers'])} trigger(s), "
            f"{state['actions_executed']} action(s), {failed} failed"
        )
        try:
            await ctx.sink.log_activity(
                state["claim_id"],
                state["org_id"],
                "automation_run",
                description,
                {
                    "triggers": [t.type.value for t in state["triggers"]],
                    "actions_executed": state["actions_executed"],
                    "failed": failed,
                },
            )
        except Exception as exc:
            logger.warning("Could not log automation summary for claim %s: %s", state["claim_id"], exc)
        logger.info("Claim %s: %s", state["claim_id"], description)
        return {}

    return log_summary_node


# ── Routing ───────────────────────────────────────────────────────────────────

def _route_after_detect(state: AutomationState) -> str:
    if state.get("fatal_error") or not state["triggers"]:
        return "end"
    return "persist_triggers"


def _route_after_persist(state: AutomationState) -> str:
    return "end" if state.get("fatal_error") else "execute_actions"


def _route_after_execute(state: AutomationState) -> str:
    return "end" if state.get("fatal_error") else "log_summary"


def _build_graph(ctx: AutomationContext):
    """
    Assemble and compile the automation StateGraph over one context.

    Built fresh per run so a test's fakes are bound at call time.

    Returns:
        CompiledGraph: Ready for ``await graph.ainvoke(state)``.
    """
    graph = StateGraph(AutomationState)

    graph.add_node("detect", _make_detect_node(ctx))
    graph.add_node("persist_triggers", _make_persist_node(ctx))
    graph.add_node("execute_actions", _make_execute_node(ctx))
    graph.add_node("log_summary", _make_summary_node(ctx))

    graph.set_entry_point("detect")
    graph.add_conditional_edges(
        "detect",
        _route_after_detect,
        {"persist_triggers": "persist_triggers", "end": END},
    )
    graph.add_conditional_edges(
        "persist_triggers",
        _route_after_persist,
        {"execute_actions": "execute_actions", "end": END},
    )
    graph.add_conditional_edges(
        "execute_actions",
        _route_after_execute,
        {"log_summary": "log_summary", "end": END},
    )
    graph.add_edge("log_summary", END)

    return graph.compile()


def _to_result(state: Dict[str, Any]) -> AutomationResult:
    errors = list(state.get("errors") or [])
    fatal = state.get("fatal_error")
    if fatal:
        errors.append(fatal)
    return AutomationResult(
        success=not fatal,
        claim_id=state["claim_id"],
        org_id=state["org_id"],
        triggers_detected=list(state.get("triggers") or []),
        actions_executed=state.get("actions_executed", 0),
        results=list(state.get("results") or []),
        errors=errors,
    )


# ── Entry points ──────────────────────────────────────────────────────────────

@traceable(name="run_automation")
async def run_automation(claim_id: str, org_id: str, ctx: AutomationContext) -> AutomationResult:
    """
    Run the full automation pipeline for one claim.

    Args:
        claim_id: Claim to automate.
        org_id: Owning org.
        ctx: AutomationContext with reader, sink, AI stack and senders.

    Returns:
        AutomationResult: success is False only when the pipeline aborted
            (detection or record persistence failed); failed actions are
            listed in errors with success still True.

    Raises:
        Never — all errors are captured in the returned AutomationResult.
    """
    logger.info("Automation run started for claim %s (org=%s).", claim_id, org_id)
    initial_state = create_initial_state(claim_id, org_id)
    try:
        final_state = await _build_graph(ctx).ainvoke(initial_state)
    except Exception as exc:
        logger.exception("Automation run crashed for claim %s", claim_id)
        return AutomationResult(
            success=False,
            claim_id=claim_id,
            org_id=org_id,
            errors=[f"Automation run failed: {_describe(exc)}"],
        )
    return _to_result(final_state)


async def run_org_automation(
    org_id: str,
    ctx: AutomationContext,
    limit: Optional[int] = None,
) -> Dict[str, AutomationResult]:
    """
    Run the pipeline for up to ``limit`` active claims of an org.

    Claims run concurrently (ctx.max_concurrency at a time), each under
    ctx.claim_timeout_s. One claim's failure or timeout is captured in its
    own AutomationResult and never affects the others.

    Args:
        org_id: Org to automate.
        ctx: AutomationContext.
        limit: Max claims; defaults to ctx.batch_limit.

    Returns:
        Dict[str, AutomationResult]: claim_id → result, in listing order.
    """
    claim_ids = await ctx.reader.list_active_claim_ids(org_id, ctx.batch_limit if limit is None else limit)
    semaphore = asyncio.Semaphore(max(1, ctx.max_concurrency))

    async def _one(claim_id: str) -> AutomationResult:
        async with semaphore:
            try:
                return await asyncio.wait_for(run_automation(claim_id, org_id, ctx), timeout=ctx.claim_timeout_s)
            except asyncio.TimeoutError:
                logger.warning("Claim %s automation timed out after %ss.", claim_id, ctx.claim_timeout_s)
                return AutomationResult(
                    success=False,
                    claim_id=claim_id,
                    org_id=org_id,
                    errors=[f"Automation run timed out after {ctx.claim_timeout_s}s"],
                )

    outcomes = await asyncio.gather(*(_one(cid) for cid in claim_ids))
    results = dict(zip(claim_ids, outcomes))
    succeeded = sum(1 for r in outcomes if r.success)
    logger.info("Org %s automation: %d/%d claim run(s) succeeded.", org_id, succeeded, len(claim_ids))
    return results
