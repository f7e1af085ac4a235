"""
dedupe.py
---------
AgentForge — Claims Automation Engine — In-flight request deduplication
------------------------------------------------------------------------
Collapses concurrent identical AI calls into one. The first caller for a key
becomes the owner and runs the real coroutine; every caller that arrives
with the same key while the owner is still running awaits the owner's
future and receives the identical result object (or the identical
exception).

Lifecycle of one marker:
    owner registers key → owner runs fn() → future settles → key removed.
    Removal happens in a ``finally`` so success, failure, timeout and
    cancellation all leave the map clean.

Limitation:
    There is no true cancellation. Forgetting a key only stops new joiners
    from attaching; the underlying call keeps running until it settles.
    Timeouts belong to the transport (see ai_control.perf), and a timed-out
    call settles the future with the timeout error like any other failure.
    An owner that is cancelled settles the future with DedupeOwnerCancelled,
    so joiners see a failed call rather than a cancellation.

The coordinator is an injected instance, not a module singleton, so tests
and separate engines never share in-flight state. Map access is guarded by a
threading.Lock that is never held across an await.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)


class DedupeOwnerCancelled(Exception):
    """Delivered to joiners when the caller running the shared call was cancelled."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Shared call for {key} was cancelled before it settled")


def _consume_exception(future: "asyncio.Future[Any]") -> None:
    """Mark a settled future's exception as retrieved when nobody joined."""
    if not future.cancelled():
        future.exception()


class DedupeCoordinator:
    """Process-local registry of in-flight operations keyed by deterministic key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: Dict[str, "asyncio.Future[Any]"] = {}

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def pending_keys(self) -> List[str]:
        with self._lock:
            return list(self._in_flight)

    def forget(self, key: str) -> bool:
        """Detach *key* so new callers start a fresh call. Does not cancel the running one."""
        with self._lock:
            return self._in_flight.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._in_flight.clear()

    async def run(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run fn() once per key among concurrent callers.

        Args:
            key: Deterministic key from ai_control.keys.build_key.
            fn: Zero-argument coroutine function performing the real call.

        Returns:
            Any: fn()'s result — the same object for the owner and all joiners.

        Raises:
            Exception: whatever fn() raised, re-raised to the owner and to
                every joiner.
            DedupeOwnerCancelled: to joiners, when the owner was cancelled.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            existing = self._in_flight.get(key)
            if existing is None:
                future: "asyncio.Future[Any]" = loop.create_future()
                future.add_done_callback(_consume_exception)
                self._in_flight[key] = future

        if existing is not None:
            logger.debug("Dedupe: joining in-flight call key=%s.", key)
            # shield: a joiner being cancelled must not cancel the shared call.
            return await asyncio.shield(existing)

        try:
            result = await fn()
        except BaseException as exc:
            if not future.done():
                # Joiners get an ordinary failure, never the owner's cancellation.
                if isinstance(exc, asyncio.CancelledError):
                    future.set_exception(DedupeOwnerCancelled(key))
                else:
                    future.set_exception(exc)
            raise
        else:
            if not future.done():
                future.set_result(result)
            return result
        finally:
            with self._lock:
                if self._in_flight.get(key) is future:
                    del self._in_flight[key]
