"""
test_ai_control.py
------------------
AgentForge — Claims Automation Engine — Tests for the composed AI control stack
--------------------------------------------------------------------------------
cache → dedupe → recorder through AIControl.invoke().

Run: pytest tests/test_ai_control.py -v --tb=short

Project: AgentForge — Claims Automation Engine
"""

import asyncio

import pytest

from ai_control import AIControl
from ai_control.cache import AICache
from ai_control.dedupe import DedupeCoordinator
from ai_control.perf import PerformanceRecorder
from schemas import ModelResponse
from tests.fakes import TEST_RATES, FailingKVStore, FakeKVStore, InMemoryStore


def _control(kv=None, store=None, timeout_s=None):
    store = store or InMemoryStore()
    return AIControl(
        AICache(kv, settings_reader=store),
        DedupeCoordinator(),
        PerformanceRecorder(TEST_RATES, sink=store),
        budget_reader=store,
        default_timeout_s=timeout_s,
    ), store


def _call(counter, delay=0.0):
    async def call(model):
        counter["n"] += 1
        if delay:
            await asyncio.sleep(delay)
        return ModelResponse(content='{"a": 1}', model=model, tokens_in=10, tokens_out=5)

    return call


class TestInvoke:
    def test_result_is_json_safe(self):
        """A ModelResponse comes back dumped to a dict."""
        control, _ = _control()
        counter = {"n": 0}
        result = asyncio.run(control.invoke("route", {"x": 1}, _call(counter), org_id="org_1"))
        assert result.data["content"] == '{"a": 1}'
        assert result.data["model"] == result.model
        assert result.cached is False

    def test_concurrent_identical_calls_deduped(self):
        """Concurrent identical invocations make one model call and one cost record."""
        control, store = _control()
        counter = {"n": 0}

        async def scenario():
            return await asyncio.gather(*(
                control.invoke("route", {"x": 1}, _call(counter, delay=0.05), org_id="org_1")
                for _ in range(4)
            ))

        results = asyncio.run(scenario())
        assert counter["n"] == 1
        assert len({r.key for r in results}) == 1
        assert len(store.ai_records) == 1

    def test_hit_recorded_at_zero_cost(self):
        """A cache hit adds a zero-cost cache_hit record."""
        control, store = _control(kv=FakeKVStore())
        counter = {"n": 0}

        async def scenario():
            await control.invoke("route", {"x": 1}, _call(counter), org_id="org_1")
            return await control.invoke("route", {"x": 1}, _call(counter), org_id="org_1")

        second = asyncio.run(scenario())
        assert second.cached is True
        assert counter["n"] == 1
        assert [r.cache_hit for r in store.ai_records] == [False, True]
        assert store.ai_records[1].cost_usd == 0.0

    def test_degraded_cache_still_calls_model(self):
        """With a failing store every invocation still succeeds."""
        control, _ = _control(kv=FailingKVStore())
        counter = {"n": 0}

        async def scenario():
            first = await control.invoke("route", {"x": 1}, _call(counter), org_id="org_1")
            second = await control.invoke("route", {"x": 1}, _call(counter), org_id="org_1")
            return first, second

        first, second = asyncio.run(scenario())
        assert (first.cached, second.cached) == (False, False)
        assert counter["n"] == 2

    def test_default_timeout_applies(self):
        """The control's default timeout bounds the real call."""
        control, store = _control(timeout_s=0.01)
        counter = {"n": 0}
        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(control.invoke("route", {"x": 1}, _call(counter, delay=1.0), org_id="org_1"))
        assert store.ai_records[0].error.startswith("Timed out")
        assert control.dedupe.pending_keys() == []

    def test_forced_cheap_mode(self):
        """mode='cheap' passes the cheap model to the call."""
        control, _ = _control()
        seen = []

        async def call(model):
            seen.append(model)
            return ModelResponse(content="{}", model=model)

        asyncio.run(control.invoke("route", {"x": 1}, call, org_id="org_1", mode="cheap"))
        assert seen == ["claude-haiku-4-5"]
