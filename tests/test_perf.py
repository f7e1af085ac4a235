"""
test_perf.py
------------
AgentForge — Claims Automation Engine — Tests for cost / performance recording
-------------------------------------------------------------------------------
Cost formula, rate table loading, one record per call on success and
failure, and zero-cost cache-hit records.

Run: pytest tests/test_perf.py -v --tb=short

Project: AgentForge — Claims Automation Engine
"""

import asyncio

import pytest

from ai_control.perf import (
    InvocationMeta,
    ModelRateConfigError,
    PerformanceRecorder,
    compute_cost,
    load_model_rates,
)
from schemas import ModelResponse
from tests.fakes import TEST_RATES, InMemoryStore

META = InvocationMeta(route_name="claims-financial-analysis", org_id="org_1", model="test-model", claim_id="CLM-1")


class TestComputeCost:
    def test_cost_formula(self):
        """1000 in / 500 out at 0.005 / 0.015 per 1K costs 0.0125."""
        assert compute_cost("test-model", 1000, 500, TEST_RATES) == pytest.approx(0.0125)

    def test_unknown_model_costs_zero(self):
        """A model missing from the table is priced at 0.0."""
        assert compute_cost("mystery-model", 1000, 1000, TEST_RATES) == 0.0

    def test_zero_tokens(self):
        """No tokens, no cost."""
        assert compute_cost("test-model", 0, 0, TEST_RATES) == 0.0


class TestLoadModelRates:
    def test_loads_shipped_table(self):
        """The bundled config/model_rates.yaml parses and tags both tiers."""
        table = load_model_rates()
        assert table.version
        assert table.models_for_tier("cheap")
        assert table.models_for_tier("capable")

    def test_custom_file(self, tmp_path):
        """Rates and tier are read from a custom YAML file."""
        path = tmp_path / "rates.yaml"
        path.write_text(
            'version: "t1"\nmodels:\n  m1:\n    input_per_1k: 0.002\n    output_per_1k: 0.01\n    tier: cheap\n'
        )
        table = load_model_rates(str(path))
        assert table.version == "t1"
        assert table.get("m1").input_rate == 0.002
        assert table.models_for_tier("cheap") == ["m1"]

    def test_missing_file(self, tmp_path):
        """A missing file raises ModelRateConfigError."""
        with pytest.raises(ModelRateConfigError):
            load_model_rates(str(tmp_path / "nope.yaml"))

    def test_bad_entry(self, tmp_path):
        """An entry without numeric rates raises ModelRateConfigError."""
        path = tmp_path / "rates.yaml"
        path.write_text("models:\n  m1:\n    input_per_1k: cheap\n")
        with pytest.raises(ModelRateConfigError):
            load_model_rates(str(path))


class TestPerformanceRecorder:
    def test_success_recorded_with_cost(self):
        """A successful call writes one record with tokens and cost."""
        sink = InMemoryStore()
        recorder = PerformanceRecorder(TEST_RATES, sink=sink)

        async def call():
            return ModelResponse(content="{}", model="test-model", tokens_in=1000, tokens_out=500)

        result = asyncio.run(recorder.track(META, call))
        assert result.content == "{}"
        assert len(sink.ai_records) == 1
        record = sink.ai_records[0]
        assert record.tokens_in == 1000
        assert record.tokens_out == 500
        assert record.cost_usd == pytest.approx(0.0125)
        assert record.error is None
        assert record.cache_hit is False
        assert record.claim_id == "CLM-1"

    def test_failure_recorded_and_reraised(self):
        """A failing call is recorded with its error, then re-raised."""
        sink = InMemoryStore()
        recorder = PerformanceRecorder(TEST_RATES, sink=sink)

        async def call():
            raise RuntimeError("rate limited")

        with pytest.raises(RuntimeError):
            asyncio.run(recorder.track(META, call))
        assert len(sink.ai_records) == 1
        assert "rate limited" in sink.ai_records[0].error
        assert sink.ai_records[0].cost_usd == 0.0

    def test_timeout_recorded(self):
        """A transport timeout is a recorded failure."""
        recorder = PerformanceRecorder(TEST_RATES)

        async def hang():
            await asyncio.sleep(5)

        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(recorder.track(META, hang, timeout_s=0.01))
        assert recorder.last_record.error.startswith("Timed out")

    def test_sink_failure_does_not_fail_call(self):
        """A record write failure is swallowed; the caller still gets the result."""
        sink = InMemoryStore()
        sink.fail_on.add("record_ai_invocation")
        recorder = PerformanceRecorder(TEST_RATES, sink=sink)

        async def call():
            return ModelResponse(content="ok", model="test-model")

        assert asyncio.run(recorder.track(META, call)).content == "ok"

    def test_cache_hit_record(self):
        """Cache hits are recorded with cache_hit=True and zero cost."""
        sink = InMemoryStore()
        recorder = PerformanceRecorder(TEST_RATES, sink=sink)
        asyncio.run(recorder.record_cache_hit(META))
        record = sink.ai_records[0]
        assert record.cache_hit is True
        assert record.cost_usd == 0.0
        assert record.tokens_in == 0
