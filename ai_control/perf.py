"""
perf.py
-------
AgentForge — Claims Automation Engine — Cost / performance recorder
--------------------------------------------------------------------
Wraps every real AI call: measures wall-clock duration, applies the caller's
transport timeout, pulls token usage from the ModelResponse, prices the call
from the versioned model rate table, and persists exactly one
AIInvocationRecord per call — on success AND on failure.

Cost rule (per call):
    cost_usd = tokens_in / 1000 * input_rate + tokens_out / 1000 * output_rate

Rates come from config/model_rates.yaml (versioned, loaded once at startup
and injected). A model missing from the table is priced at 0.0 and logged,
so a new model id never breaks an automation run.

Error policy:
    - Callee errors (including asyncio.TimeoutError) are recorded with the
      error text and then re-raised to the caller.
    - Failures writing the record itself are logged and swallowed.

Key functions:
    load_model_rates: Parse the YAML rate table into a ModelRateTable.
    compute_cost:     Price one call.
    PerformanceRecorder.track: Timed, recorded invocation.
    PerformanceRecorder.record_cache_hit: Zero-cost record for a cache hit.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import yaml

from schemas import AIInvocationRecord, ModelResponse

logger = logging.getLogger(__name__)

DEFAULT_RATES_PATH = Path(__file__).resolve().parent.parent / "config" / "model_rates.yaml"


class ModelRateConfigError(Exception):
    """Raised when the model rate file is missing or malformed."""


@dataclass(frozen=True)
class ModelRate:
    """USD per 1,000 tokens."""

    input_rate: float
    output_rate: float
    tier: str = ""


@dataclass(frozen=True)
class ModelRateTable:
    version: str
    rates: Mapping[str, ModelRate] = field(default_factory=dict)

    def get(self, model: str) -> Optional[ModelRate]:
        return self.rates.get(model)

    def models_for_tier(self, tier: str) -> list:
        return [name for name, rate in self.rates.items() if rate.tier == tier]


def load_model_rates(path: Optional[str] = None) -> ModelRateTable:
    """
    Load the model rate table from YAML.

    Args:
        path: Override location. Defaults to MODEL_RATES_PATH env var, then
              config/model_rates.yaml at the repo root.

    Returns:
        ModelRateTable: Immutable rate table.

    Raises:
        ModelRateConfigError: if the file is missing, unparsable, or an entry
            lacks numeric input/output rates.
    """
    rates_path = Path(path or os.getenv("MODEL_RATES_PATH") or DEFAULT_RATES_PATH)
    try:
        with open(rates_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ModelRateConfigError(f"Model rate file not found: {rates_path}") from exc
    except yaml.YAMLError as exc:
        raise ModelRateConfigError(f"Model rate file is not valid YAML: {exc}") from exc

    models = data.get("models")
    if not isinstance(models, dict) or not models:
        raise ModelRateConfigError(f"{rates_path}: 'models' must be a non-empty mapping.")

    rates: Dict[str, ModelRate] = {}
    for name, entry in models.items():
        try:
            rates[str(name)] = ModelRate(
                input_rate=float(entry["input_per_1k"]),
                output_rate=float(entry["output_per_1k"]),
                tier=str(entry.get("tier", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ModelRateConfigError(f"{rates_path}: bad rate entry for model '{name}': {exc}") from exc

    table = ModelRateTable(version=str(data.get("version", "unversioned")), rates=rates)
    logger.info("Model rates v%s loaded (%d models) from '%s'.", table.version, len(rates), rates_path)
    return table


def compute_cost(model: str, tokens_in: int, tokens_out: int, rates: ModelRateTable) -> float:
    """
    Price one call from the rate table.

    Args:
        model: Model identifier as sent to the provider.
        tokens_in: Prompt tokens.
        tokens_out: Completion tokens.
        rates: Loaded rate table.

    Returns:
        float: USD cost rounded to 8 decimal places; 0.0 for unknown models.
    """
    rate = rates.get(model)
    if rate is None:
        logger.warning("No rate configured for model '%s' (rates v%s) — cost recorded as 0.", model, rates.version)
        return 0.0
    cost = (tokens_in / 1000.0) * rate.input_rate + (tokens_out / 1000.0) * rate.output_rate
    return round(cost, 8)


@dataclass(frozen=True)
class InvocationMeta:
    """Who/what a recorded call belongs to."""

    route_name: str
    org_id: str
    model: str
    claim_id: Optional[str] = None
    lead_id: Optional[str] = None


def _usage_of(result: Any) -> tuple:
    """Token usage if the callee reported it, else (0, 0)."""
    if isinstance(result, ModelResponse):
        return result.tokens_in, result.tokens_out
    if isinstance(result, dict):
        return int(result.get("tokens_in") or 0), int(result.get("tokens_out") or 0)
    return 0, 0


class PerformanceRecorder:
    """
    Times, prices, and persists AI invocations.

    Args:
        rates: Model rate table (see load_model_rates).
        sink: Object with an async ``record_ai_invocation(record)``; None
            keeps records in memory only (``last_record``).
    """

    def __init__(self, rates: ModelRateTable, sink: Any = None) -> None:
        self.rates = rates
        self._sink = sink
        self.last_record: Optional[AIInvocationRecord] = None

    async def _persist(self, record: AIInvocationRecord) -> None:
        self.last_record = record
        if self._sink is None:
            return
        try:
            await self._sink.record_ai_invocation(record)
        except Exception as exc:
            logger.warning(
                "Failed to persist AI invocation record route=%s org=%s: %s",
                record.route_name, record.org_id, exc,
            )

    async def track(
        self,
        meta: InvocationMeta,
        fn: Callable[[], Awaitable[Any]],
        *,
        timeout_s: Optional[float] = None,
    ) -> Any:
        """
        Run fn() under timing (and an optional timeout) and record the call.

        Args:
            meta: Route, tenant, claim and model of this call.
            fn: Zero-argument coroutine function doing the real model call.
            timeout_s: Transport timeout; expiry is a recorded failure.

        Returns:
            Any: fn()'s result, unchanged.

        Raises:
            Exception: fn()'s exception (or asyncio.TimeoutError), after the
                failure has been recorded.
        """
        started = time.perf_counter()
        result: Any = None
        error: Optional[str] = None
        try:
            if timeout_s is not None:
                result = await asyncio.wait_for(fn(), timeout=timeout_s)
            else:
                result = await fn()
            return result
        except asyncio.TimeoutError:
            error = f"Timed out after {timeout_s}s"
            raise
        except asyncio.CancelledError:
            error = "Cancelled"
            raise
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            raise
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            tokens_in, tokens_out = _usage_of(result) if error is None else (0, 0)
            model = result.model if isinstance(result, ModelResponse) and result.model else meta.model
            record = AIInvocationRecord(
                route_name=meta.route_name,
                org_id=meta.org_id,
                lead_id=meta.lead_id,
                claim_id=meta.claim_id,
                duration_ms=duration_ms,
                model=model,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                cache_hit=False,
                cost_usd=compute_cost(model, tokens_in, tokens_out, self.rates),
                error=error,
            )
            if error:
                logger.warning("AI call failed route=%s model=%s after %dms: %s", meta.route_name, model, duration_ms, error)
            else:
                logger.info(
                    "AI call route=%s model=%s %dms tokens=%d/%d cost=$%.6f",
                    meta.route_name, model, duration_ms, tokens_in, tokens_out, record.cost_usd,
                )
            await self._persist(record)

    async def record_cache_hit(self, meta: InvocationMeta) -> None:
        """Record a call served from cache: no tokens, no cost."""
        await self._persist(AIInvocationRecord(
            route_name=meta.route_name,
            org_id=meta.org_id,
            lead_id=meta.lead_id,
            claim_id=meta.claim_id,
            duration_ms=0,
            model=meta.model,
            cache_hit=True,
            cost_usd=0.0,
        ))
