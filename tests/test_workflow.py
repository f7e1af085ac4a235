"""
test_workflow.py
----------------
AgentForge — Claims Automation Engine — Tests for the LangGraph automation engine
----------------------------------------------------------------------------------
End-to-end runs over in-memory fakes: record ordering, priority ordering,
per-action failure isolation, fatal aborts, summary logging, cancellation
handling, and per-claim isolation in org runs.

Run: pytest tests/test_workflow.py -v --tb=short

Project: AgentForge — Claims Automation Engine
"""

import asyncio
from datetime import timedelta

from automation_agent.state import create_initial_state
from automation_agent.workflow import _build_graph, run_automation, run_org_automation
from schemas import ActionType, MappedAction, Severity, TriggerType
from tests.fakes import (
    NOW,
    FakeEmailSender,
    FakeModelClient,
    InMemoryStore,
    financial,
    make_context,
    make_facts,
)


def _underpaid_store(amount=12000):
    store = InMemoryStore()
    store.add_claim(make_facts(financial_analysis=financial(amount)))
    return store


class TestGraphStructure:
    def test_graph_compiles(self):
        """The graph compiles over a context."""
        assert _build_graph(make_context()) is not None

    def test_initial_state(self):
        """create_initial_state zeroes every accumulator."""
        state = create_initial_state("CLM-1", "org_1")
        assert state["triggers"] == []
        assert state["results"] == []
        assert state["actions_executed"] == 0
        assert state["errors"] == []
        assert state["fatal_error"] is None


class TestRunAutomation:
    def test_underpayment_end_to_end(self):
        """$12,000 underpayment: one CRITICAL trigger and five successful actions in order."""
        store = _underpaid_store()
        sender = FakeEmailSender()
        ctx = make_context(store, email_sender=sender)

        result = asyncio.run(run_automation("CLM-1", "org_1", ctx))

        assert result.success is True
        assert result.errors == []
        assert len(result.triggers_detected) == 1
        assert result.triggers_detected[0].type is TriggerType.UNDERPAYMENT_DETECTED
        assert result.triggers_detected[0].severity is Severity.CRITICAL
        assert result.actions_executed == 5
        assert [r.action_type for r in result.results] == [
            "GENERATE_FINANCIAL_ANALYSIS",
            "GENERATE_SUPPLEMENT_PACKET",
            "CREATE_RECOMMENDATION",
            "SEND_ADJUSTER_EMAIL",
            "CREATE_TASK",
        ]
        assert all(r.ok for r in result.results)
        assert len(sender.sent) == 1
        assert len(store.reports) == 2

    def test_records_written_in_order(self):
        """Trigger record first, then one action record per action, then PROCESSED."""
        store = _underpaid_store()
        asyncio.run(run_automation("CLM-1", "org_1", make_context(store, email_sender=FakeEmailSender())))

        assert store.events[0] == ("trigger", "UNDERPAYMENT_DETECTED")
        assert [e[2] for e in store.events if e[0] == "action"] == [1, 2, 3, 4, 5]
        assert store.events[-1] == ("processed", "UNDERPAYMENT_DETECTED")
        assert all(a["status"] == "SUCCESS" and a["completions"] == 1 for a in store.actions.values())
        assert list(store.triggers.values())[0]["status"] == "PROCESSED"

    def test_summary_activity_logged(self):
        """A completed run logs one automation_run activity."""
        store = _underpaid_store()
        asyncio.run(run_automation("CLM-1", "org_1", make_context(store, email_sender=FakeEmailSender())))
        summaries = [a for a in store.activities if a["type"] == "automation_run"]
        assert len(summaries) == 1
        assert summaries[0]["metadata"] == {
            "triggers": ["UNDERPAYMENT_DETECTED"],
            "actions_executed": 5,
            "failed": 0,
        }

    def test_no_triggers(self):
        """A healthy claim writes nothing and succeeds."""
        store = InMemoryStore()
        store.add_claim(make_facts())
        result = asyncio.run(run_automation("CLM-1", "org_1", make_context(store)))
        assert result.success is True
        assert result.triggers_detected == []
        assert result.actions_executed == 0
        assert store.events == []
        assert store.activities == []

    def test_priority_order_from_table(self):
        """Actions declared with priorities [3, 1, 2] execute as [1, 2, 3]."""
        store = _underpaid_store()
        table = {
            TriggerType.UNDERPAYMENT_DETECTED: (
                MappedAction(type=ActionType.LOG_ACTIVITY, priority=3, config={"description": "third"}),
                MappedAction(type=ActionType.LOG_ACTIVITY, priority=1, config={"description": "first"}),
                MappedAction(type=ActionType.LOG_ACTIVITY, priority=2, config={"description": "second"}),
            )
        }
        result = asyncio.run(run_automation("CLM-1", "org_1", make_context(store, action_map=table)))

        assert [r.priority for r in result.results] == [1, 2, 3]
        logged = [a["description"] for a in store.activities if a["type"] == "automation_action"]
        assert logged == ["first", "second", "third"]

    def test_failed_action_does_not_stop_siblings(self):
        """A priority-2 failure is recorded FAILED; priority 3 still runs and the trigger is PROCESSED."""
        store = _underpaid_store()
        store.fail_on.add("create_alert")
        table = {
            TriggerType.UNDERPAYMENT_DETECTED: (
                MappedAction(type=ActionType.CREATE_TASK, priority=1, config={"title": "Review"}),
                MappedAction(type=ActionType.CREATE_ALERT, priority=2, config={"title": "Short"}),
                MappedAction(type=ActionType.LOG_ACTIVITY, priority=3, config={"description": "after"}),
            )
        }
        result = asyncio.run(run_automation("CLM-1", "org_1", make_context(store, action_map=table)))

        assert result.success is True
        assert result.actions_executed == 3
        assert [r.status for r in result.results] == ["SUCCESS", "FAILED", "SUCCESS"]
        assert result.errors == ["CREATE_ALERT: create_alert unavailable"]
        statuses = sorted((a["priority"], a["status"]) for a in store.actions.values())
        assert statuses == [(1, "SUCCESS"), (2, "FAILED"), (3, "SUCCESS")]
        assert list(store.triggers.values())[0]["status"] == "PROCESSED"

    def test_unknown_executor_recorded_failed(self):
        """An action with no registered executor fails alone."""
        store = _underpaid_store()
        table = {
            TriggerType.UNDERPAYMENT_DETECTED: (
                MappedAction(type=ActionType.CREATE_TASK, priority=1),
                MappedAction(type=ActionType.LOG_ACTIVITY, priority=2),
            )
        }

        async def only_task(ctx, claim_id, org_id, config):
            return {"ok": True}

        ctx = make_context(store, action_map=table, executors={ActionType.CREATE_TASK: only_task})
        result = asyncio.run(run_automation("CLM-1", "org_1", ctx))
        assert result.success is True
        assert [r.status for r in result.results] == ["SUCCESS", "FAILED"]
        assert "LOG_ACTIVITY" in result.errors[0]

    def test_model_failure_is_action_failure(self):
        """A failing model fails the generative actions only."""
        store = _underpaid_store()
        ctx = make_context(
            store,
            model_client=FakeModelClient(error=RuntimeError("overloaded")),
            email_sender=FakeEmailSender(),
        )
        result = asyncio.run(run_automation("CLM-1", "org_1", ctx))
        assert result.success is True
        assert result.actions_executed == 5
        assert [r.ok for r in result.results] == [False, False, True, True, True]
        assert len(result.errors) == 2

    def test_unknown_claim_fails_run(self):
        """Detection failure aborts the run with success=False."""
        result = asyncio.run(run_automation("CLM-404", "org_1", make_context(InMemoryStore())))
        assert result.success is False
        assert result.errors and result.errors[0].startswith("Trigger detection failed")

    def test_trigger_record_failure_is_fatal(self):
        """A failed trigger-record write aborts before any action runs."""
        store = _underpaid_store()
        store.fail_on.add("create_trigger_record")
        result = asyncio.run(run_automation("CLM-1", "org_1", make_context(store)))
        assert result.success is False
        assert result.actions_executed == 0
        assert store.actions == {}
        assert "Trigger persistence failed" in result.errors[-1]

    def test_action_record_failure_is_fatal(self):
        """A failed action-record write aborts the run."""
        store = _underpaid_store()
        store.fail_on.add("create_action_record")
        result = asyncio.run(run_automation("CLM-1", "org_1", make_context(store)))
        assert result.success is False
        assert "Action persistence failed" in result.errors[-1]
        assert list(store.triggers.values())[0]["status"] == "PENDING"

    def test_summary_failure_is_not_fatal(self):
        """A failing summary write leaves the run successful."""
        store = InMemoryStore()
        store.add_claim(make_facts(status="disputed"))
        table = {TriggerType.CAUSATION_DISPUTED: (MappedAction(type=ActionType.CREATE_TASK, priority=1),)}
        store.fail_on.add("log_activity")
        result = asyncio.run(run_automation("CLM-1", "org_1", make_context(store, action_map=table)))
        assert result.success is True
        assert result.actions_executed == 1

    def test_rerun_reuses_tasks(self):
        """Running twice does not duplicate the open task."""
        store = _underpaid_store()
        ctx = make_context(store, email_sender=FakeEmailSender())
        asyncio.run(run_automation("CLM-1", "org_1", ctx))
        asyncio.run(run_automation("CLM-1", "org_1", ctx))
        assert len(store.tasks) == 1


class TestRunOrgAutomation:
    def test_one_claim_failure_isolated(self):
        """A claim whose facts cannot be read fails alone."""
        store = InMemoryStore()
        store.add_claim(make_facts("CLM-1", financial_analysis=financial(6000)))
        store.add_claim(make_facts("CLM-2"))
        store.add_claim(make_facts("CLM-3", last_activity_at=NOW - timedelta(days=6)))
        store.fact_errors["CLM-2"] = RuntimeError("row corrupted")

        results = asyncio.run(run_org_automation("org_1", make_context(store)))

        assert list(results) == ["CLM-1", "CLM-2", "CLM-3"]
        assert results["CLM-1"].success is True
        assert results["CLM-2"].success is False
        assert results["CLM-3"].success is True
        assert results["CLM-3"].triggers_detected[0].type is TriggerType.CLAIM_IDLE

    def test_slow_claim_times_out(self):
        """A claim that exceeds the per-claim timeout gets a failure result."""
        store = InMemoryStore()
        store.add_claim(make_facts("CLM-1"))
        store.add_claim(make_facts("CLM-2"))
        store.fact_delays["CLM-1"] = 1.0

        results = asyncio.run(run_org_automation("org_1", make_context(store, claim_timeout_s=0.05)))
        assert results["CLM-1"].success is False
        assert "timed out" in results["CLM-1"].errors[0]
        assert results["CLM-2"].success is True

    def test_limit(self):
        """The batch honours the limit argument over ctx.batch_limit."""
        store = InMemoryStore()
        for i in range(4):
            store.add_claim(make_facts(f"CLM-{i}"))
        results = asyncio.run(run_org_automation("org_1", make_context(store, batch_limit=3), limit=2))
        assert list(results) == ["CLM-0", "CLM-1"]

    def test_timeout_closes_running_action(self):
        """A claim timeout mid-action leaves no RUNNING record; the trigger stays PENDING."""
        store = _underpaid_store()
        ctx = make_context(store, model_client=FakeModelClient(delay=1.0), claim_timeout_s=0.1)

        results = asyncio.run(run_org_automation("org_1", ctx))

        assert results["CLM-1"].success is False
        assert "timed out" in results["CLM-1"].errors[0]
        actions = list(store.actions.values())
        assert [(a["action_type"], a["status"]) for a in actions] == [
            ("GENERATE_FINANCIAL_ANALYSIS", "FAILED"),
        ]
        assert actions[0]["completions"] == 1
        assert actions[0]["error"] == "Cancelled before completion"
        assert [t["status"] for t in store.triggers.values()] == ["PENDING"]

    def test_zero_limit_runs_nothing(self):
        """An explicit limit of 0 is honoured, not replaced by the default."""
        store = InMemoryStore()
        store.add_claim(make_facts("CLM-1", financial_analysis=financial(6000)))
        results = asyncio.run(run_org_automation("org_1", make_context(store), limit=0))
        assert results == {}
        assert store.actions == {}


class TestConcurrentRunsOfOneClaim:
    def test_joiner_survives_owner_timeout(self):
        """A second run sharing an in-flight call fails that action only when the first run is cancelled."""
        store = _underpaid_store()
        ctx = make_context(store, model_client=FakeModelClient(delay=0.5))

        async def scenario():
            owner = asyncio.ensure_future(
                asyncio.wait_for(run_automation("CLM-1", "org_1", ctx), timeout=0.1)
            )
            await asyncio.sleep(0.03)
            joiner = await run_automation("CLM-1", "org_1", ctx)
            try:
                await owner
            except asyncio.TimeoutError:
                pass
            return joiner

        joiner = asyncio.run(scenario())

        assert joiner.success is True
        assert joiner.actions_executed == 5
        failed = [r for r in joiner.results if not r.ok]
        assert [r.action_type for r in failed] == ["GENERATE_FINANCIAL_ANALYSIS"]
        assert "cancelled" in joiner.errors[0]
        assert all(a["status"] != "RUNNING" for a in store.actions.values())
