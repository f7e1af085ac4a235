"""
claims_guidelines.py
--------------------
AgentForge — Claims Automation Engine — Automation rules and constants
-----------------------------------------------------------------------
Single source of truth for every threshold, status set, and default the
automation core reads. Detector rules, the model selector, the AI cache and
the batch scanner import from here so a rule change never requires touching
detection or execution logic.

Project: AgentForge — Claims Automation Engine
"""

# ── Trigger detection thresholds ──────────────────────────────────────────────
# Each rule fires when the observed value is strictly greater than "fire" and
# escalates severity when strictly greater than "escalate".
TRIGGER_THRESHOLDS = {
    "underpayment": {"fire": 5_000.0, "escalate": 10_000.0},
    "weather_correlation": {"fire": 0.75, "escalate": 0.90},
    "adjuster_overdue_days": {"fire": 7, "escalate": 14},
    "claim_idle_days": {"fire": 5, "escalate": 10},
    "supplement_value": {"fire": 3_000.0, "escalate": 8_000.0},
}

# Claim statuses (lower-case) where a claim is finished and never "idle".
TERMINAL_CLAIM_STATUSES = frozenset({
    "closed",
    "paid",
    "settled",
    "archived",
    "cancelled",
})

# Claim statuses (lower-case) that fire CAUSATION_DISPUTED.
DISPUTED_CLAIM_STATUSES = frozenset({"disputed", "denied"})

# Activity types written by the automation itself. Ignored when computing the
# claim's last human activity, otherwise every run would reset the idle clock.
AUTOMATION_ACTIVITY_TYPES = frozenset({
    "automation_run",
    "automation_action",
    "email_sent",
})

# ── Batch scan ────────────────────────────────────────────────────────────────
BATCH_SCAN_DEFAULTS = {
    "limit": 50,
    "claim_timeout_s": 60.0,
    "max_concurrency": 8,
}

# ── AI cache ──────────────────────────────────────────────────────────────────
CACHE_NAMESPACE = "ai"
CACHE_DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60        # 7 days
CACHE_MAX_TTL_SECONDS = 30 * 24 * 60 * 60           # 30 days (image-keyed entries)
CACHE_STATS_KEYS = {
    "hits": f"{CACHE_NAMESPACE}-stats:cache-hits",
    "sets": f"{CACHE_NAMESPACE}-stats:cache-sets",
}

# ── Model selection ───────────────────────────────────────────────────────────
MODEL_SELECTION = {
    "capable_model": "claude-sonnet-4-20250514",
    "cheap_model": "claude-haiku-4-5",
    # Tenants with less prepaid usage than this are moved to the cheap model.
    "low_balance_threshold": 100.0,
}

AI_CALL_TIMEOUT_S = 120.0

# ── Escalation defaults ───────────────────────────────────────────────────────
ESCALATION_TASK_DUE_DAYS = 1
