"""
Point policy: maps an action and its context to awarded points.

Pure functions only. The ledger owns persistence and the occurrence
counters these functions read.
"""

import math
from typing import Any, Dict, Optional

import config


def base_points(action_type: str, context: Optional[Dict[str, Any]] = None) -> int:
    """
    Base (undiminished) points for an action.

    Args:
        action_type: One of the config.ACTION_* award actions.
        context: duration_days for start_session, days_completed for
                 complete_session, days for daily_bonus (default 1).

    Returns:
        Non-negative base points; 0 for actions that award nothing.
    """
    context = context or {}
    if action_type == config.ACTION_ADD_SITE:
        return config.POINTS_ADD_SITE
    if action_type == config.ACTION_START_SESSION:
        return max(0, int(context.get("duration_days", 1))) * config.POINTS_PER_SESSION_DAY
    if action_type == config.ACTION_COMPLETE_SESSION:
        return max(0, int(context.get("days_completed", 0))) * config.POINTS_PER_COMPLETED_DAY
    if action_type == config.ACTION_DAILY_BONUS:
        return max(0, int(context.get("days", 1))) * config.POINTS_DAILY_BONUS
    if action_type == config.ACTION_PANIC_MODE:
        return config.POINTS_PANIC_MODE
    if action_type == config.ACTION_EMERGENCY_RESIST:
        return config.POINTS_EMERGENCY_RESIST
    return 0


def diminishing_multiplier(occurrence_count: int) -> float:
    """
    Multiplier for an action already performed `occurrence_count` times.

    <10 -> 1.0, <50 -> 0.8, <100 -> 0.6, otherwise 0.4.
    """
    for upper_bound, multiplier in config.DIMINISHING_RETURNS_TIERS:
        if occurrence_count < upper_bound:
            return multiplier
    return config.DIMINISHING_RETURNS_FLOOR


def calculate_points(
    action_type: str,
    context: Optional[Dict[str, Any]] = None,
    occurrence_count: int = 0,
) -> int:
    """
    Final points for one award: floor(base * multiplier).

    Args:
        action_type: Award action.
        context: Action context (see base_points).
        occurrence_count: Prior trusted occurrences of this action for the user.
    """
    base = base_points(action_type, context)
    # Multipliers are tenths; round before flooring so 10 * 0.6 stays 6
    return math.floor(round(base * diminishing_multiplier(occurrence_count), 6))
