"""
ai_control — AgentForge Claims Automation Engine
------------------------------------------------
AI invocation control stack: deterministic keys, result cache, in-flight
dedupe, cost/performance recording, and model selection.

Every cache-worthy AI call goes through AIControl.invoke(), composed as:

    Cache (outer)  →  Dedupe (inner)  →  Recorder (wraps the real call)

Cache-outer means concurrent misses for the same input collapse in the
dedupe layer into a single real call instead of dogpiling the provider.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ai_control.cache import AICache, CacheResult
from ai_control.dedupe import DedupeCoordinator
from ai_control.keys import build_key
from ai_control.model_selector import ModelMode, select_model, select_model_for_org
from ai_control.perf import (
    InvocationMeta,
    ModelRateTable,
    PerformanceRecorder,
    compute_cost,
    load_model_rates,
)
from schemas import ModelResponse

logger = logging.getLogger(__name__)

__all__ = [
    "AICache",
    "AIControl",
    "AIResult",
    "CacheResult",
    "DedupeCoordinator",
    "InvocationMeta",
    "ModelMode",
    "ModelRateTable",
    "PerformanceRecorder",
    "build_key",
    "compute_cost",
    "load_model_rates",
    "select_model",
    "select_model_for_org",
]


@dataclass(frozen=True)
class AIResult:
    """Outcome of AIControl.invoke(): JSON-safe data, cache flag, and model used."""

    data: Any
    cached: bool
    model: str
    key: str


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, ModelResponse):
        return value.model_dump(mode="json")
    return value


class AIControl:
    """
    Composition root of the control stack for one process / engine.

    Args:
        cache: AICache (may wrap no store — then every call is a miss).
        dedupe: DedupeCoordinator owned by this engine.
        recorder: PerformanceRecorder with the loaded rate table.
        budget_reader: Optional tenant budget source for auto model selection.
        default_timeout_s: Transport timeout applied when the caller gives none.
    """

    def __init__(
        self,
        cache: AICache,
        dedupe: DedupeCoordinator,
        recorder: PerformanceRecorder,
        *,
        budget_reader: Any = None,
        default_timeout_s: Optional[float] = None,
    ) -> None:
        self.cache = cache
        self.dedupe = dedupe
        self.recorder = recorder
        self.budget_reader = budget_reader
        self.default_timeout_s = default_timeout_s

    async def select_model(self, org_id: str, mode: ModelMode | str = ModelMode.AUTO) -> str:
        return await select_model_for_org(org_id, self.budget_reader, mode)

    async def invoke(
        self,
        route_name: str,
        payload: Any,
        call: Callable[[str], Awaitable[Any]],
        *,
        org_id: str,
        claim_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        mode: ModelMode | str = ModelMode.AUTO,
        ttl_seconds: Optional[int] = None,
        image_keyed: bool = False,
        timeout_s: Optional[float] = None,
    ) -> AIResult:
        """
        Run one AI call through cache → dedupe → recorder.

        Args:
            route_name: Logical route; namespaces cache keys and records.
            payload: Structured input that fully determines the output.
            call: Coroutine function taking the selected model id and
                returning a ModelResponse (or any JSON-safe value).
            org_id: Tenant; drives model selection and cache settings.
            claim_id: Claim the call is for (recorded).
            lead_id: Lead the call is for (recorded).
            mode: cheap | capable | auto model selection.
            ttl_seconds: Cache TTL override.
            image_keyed: Vision call over uploaded images (30-day TTL).
            timeout_s: Transport timeout override.

        Returns:
            AIResult: data is JSON-safe (ModelResponse is dumped to a dict).

        Raises:
            Exception: the real call's failure, after it has been recorded.
        """
        model = await self.select_model(org_id, mode)
        meta = InvocationMeta(
            route_name=route_name,
            org_id=org_id,
            model=model,
            claim_id=claim_id,
            lead_id=lead_id,
        )
        key = build_key(route_name, payload)
        timeout = timeout_s if timeout_s is not None else self.default_timeout_s

        async def _recorded_call() -> Any:
            return await self.recorder.track(meta, lambda: call(model), timeout_s=timeout)

        async def _on_miss() -> Any:
            result = await self.dedupe.run(key, _recorded_call)
            return _to_jsonable(result)

        cached = await self.cache.with_cache(
            route_name,
            payload,
            _on_miss,
            org_id=org_id,
            ttl_seconds=ttl_seconds,
            image_keyed=image_keyed,
        )
        if cached.cached:
            await self.recorder.record_cache_hit(meta)
        return AIResult(data=cached.data, cached=cached.cached, model=model, key=cached.key)
