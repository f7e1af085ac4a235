"""
test_model_selector.py
----------------------
AgentForge — Claims Automation Engine — Tests for model selection
-----------------------------------------------------------------
Run: pytest tests/test_model_selector.py -v --tb=short

Project: AgentForge — Claims Automation Engine
"""

import asyncio

import pytest

from ai_control.model_selector import ModelMode, select_model, select_model_for_org
from claims_guidelines import MODEL_SELECTION
from tests.fakes import InMemoryStore

CHEAP = MODEL_SELECTION["cheap_model"]
CAPABLE = MODEL_SELECTION["capable_model"]


class TestSelectModel:
    def test_fixed_modes(self):
        """cheap and capable ignore the balance."""
        assert select_model(ModelMode.CHEAP, 10_000) == CHEAP
        assert select_model(ModelMode.CAPABLE, 0) == CAPABLE

    def test_auto_low_balance_downgrades(self):
        """auto picks the cheap model below the threshold."""
        assert select_model("auto", 99.99) == CHEAP

    def test_auto_at_threshold_stays_capable(self):
        """Exactly at the threshold is not 'below'."""
        assert select_model("auto", MODEL_SELECTION["low_balance_threshold"]) == CAPABLE

    def test_auto_unknown_balance(self):
        """An unknown balance selects the capable model."""
        assert select_model("auto", None) == CAPABLE

    def test_invalid_mode(self):
        """An unrecognised mode raises ValueError."""
        with pytest.raises(ValueError):
            select_model("premium", 500)


class _BrokenBudget:
    async def get_remaining_balance(self, org_id):
        raise ConnectionError("db down")


class TestSelectModelForOrg:
    def test_reads_balance(self):
        """The tenant's balance drives auto mode."""
        store = InMemoryStore()
        store.balances["org_low"] = 12.0
        store.balances["org_rich"] = 5000.0
        assert asyncio.run(select_model_for_org("org_low", store)) == CHEAP
        assert asyncio.run(select_model_for_org("org_rich", store)) == CAPABLE

    def test_reader_failure_falls_back(self):
        """A failing budget lookup selects the capable model."""
        assert asyncio.run(select_model_for_org("org_1", _BrokenBudget())) == CAPABLE

    def test_no_reader(self):
        """No budget reader behaves like an unknown balance."""
        assert asyncio.run(select_model_for_org("org_1", None, "auto")) == CAPABLE
