"""
model_selector.py
-----------------
AgentForge — Claims Automation Engine — Model selection
--------------------------------------------------------
Chooses between the cheap and the capable model for one call.

    cheap    → cheap model, always
    capable  → capable model, always
    auto     → cheap model when the tenant's remaining prepaid balance is
               below MODEL_SELECTION["low_balance_threshold"], otherwise the
               capable model. An unknown balance (no budget reader, reader
               failure, no row) selects the capable model.

select_model() is a pure function over (mode, balance). Only
select_model_for_org() touches I/O, to read the balance.

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Optional

from claims_guidelines import MODEL_SELECTION

logger = logging.getLogger(__name__)


class ModelMode(str, enum.Enum):
    CHEAP = "cheap"
    CAPABLE = "capable"
    AUTO = "auto"


def select_model(
    mode: ModelMode | str = ModelMode.AUTO,
    balance: Optional[float] = None,
    *,
    threshold: float = MODEL_SELECTION["low_balance_threshold"],
    cheap_model: str = MODEL_SELECTION["cheap_model"],
    capable_model: str = MODEL_SELECTION["capable_model"],
) -> str:
    """
    Decide which model a call should use.

    Args:
        mode: cheap | capable | auto.
        balance: Tenant's remaining prepaid balance, or None if unknown.
        threshold: Balance below which auto mode downgrades.
        cheap_model: Low-cost model id.
        capable_model: High-accuracy model id.

    Returns:
        str: Model identifier.

    Raises:
        ValueError: if mode is not a recognised ModelMode.
    """
    mode = ModelMode(mode)
    if mode is ModelMode.CHEAP:
        return cheap_model
    if mode is ModelMode.CAPABLE:
        return capable_model
    if balance is not None and balance < threshold:
        return cheap_model
    return capable_model


async def select_model_for_org(
    org_id: str,
    budget_reader: Any = None,
    mode: ModelMode | str = ModelMode.AUTO,
) -> str:
    """
    Resolve the tenant's balance (auto mode only) and select a model.

    Args:
        org_id: Tenant id.
        budget_reader: Object with async ``get_remaining_balance(org_id)``.
        mode: cheap | capable | auto.

    Returns:
        str: Model identifier.
    """
    mode = ModelMode(mode)
    balance: Optional[float] = None
    if mode is ModelMode.AUTO and budget_reader is not None:
        try:
            balance = await budget_reader.get_remaining_balance(org_id)
        except Exception as exc:
            logger.warning("Budget lookup failed for org=%s — using default model: %s", org_id, exc)
            balance = None
    model = select_model(mode, balance)
    logger.debug("Model selected for org=%s mode=%s balance=%s: %s", org_id, mode.value, balance, model)
    return model
