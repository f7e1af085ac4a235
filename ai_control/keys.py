"""
keys.py
-------
AgentForge — Claims Automation Engine — Deterministic key builder
------------------------------------------------------------------
Turns a route name plus an arbitrary structured input into a stable key
shared by the AI cache and the dedupe coordinator. Structurally equal inputs
hash identically regardless of dict insertion order, at every nesting level.

Key format:
    ai:<route_name>:<sha256 hex of canonical JSON>

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from claims_guidelines import CACHE_NAMESPACE


def canonicalize(value: Any) -> str:
    """
    Serialize *value* to canonical JSON: sorted keys, compact separators.

    Non-JSON scalars (datetimes, enums, Decimals) fall back to ``str()`` so
    callers can pass claim facts without pre-converting them.

    Args:
        value: Any JSON-like structure.

    Returns:
        str: Canonical JSON text.
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def hash_input(value: Any) -> str:
    """SHA-256 hex digest of the canonical form of *value*."""
    return hashlib.sha256(canonicalize(value).encode("utf-8")).hexdigest()


def route_prefix(route_name: str) -> str:
    """Prefix shared by every key of one route — used for bulk invalidation."""
    return f"{CACHE_NAMESPACE}:{route_name}:"


def build_key(route_name: str, value: Any) -> str:
    """
    Build the cache/dedupe key for one AI route and input.

    Args:
        route_name: Logical AI route (e.g. ``"claims-financial-analysis"``).
        value: Structured input that fully determines the call's output.

    Returns:
        str: ``"ai:" + route_name + ":" + sha256(canonicalize(value))``.

    Raises:
        ValueError: if route_name is empty.
    """
    if not route_name:
        raise ValueError("route_name must be non-empty")
    return route_prefix(route_name) + hash_input(value)
