"""Rotting (staleness) levels for open deals.

Pure functions of a deal's last activity, its stage's rotting_days (R)
and the current time. Never stored: a deal rots as the clock moves.

    0 fresh     days <  0.5R
    1 warning   0.5R <= days < R
    2 rotting   R    <= days < 1.5R
    3 critical  days >= 1.5R
"""

from datetime import datetime, timezone

from dealflow.services.activity_service import as_utc

FRESH, WARNING, ROTTING, CRITICAL = 0, 1, 2, 3

LABELS = {
    FRESH: "fresh",
    WARNING: "warning",
    ROTTING: "rotting",
    CRITICAL: "critical",
}


def days_since_activity(deal, now=None):
    """Whole days since the deal's last activity, or None if never."""
    last = as_utc(deal.last_activity_at)
    if last is None:
        return None
    now = as_utc(now) or datetime.now(timezone.utc)
    return (now - last).days  # floored to whole days


def rotting_level(deal, stage=None, now=None):
    """Severity 0-3 for how long a deal has sat idle in its stage.

    Args:
        deal: The Deal.
        stage: Its current Stage (defaults to deal.stage).
        now: Reference time (defaults to the current UTC time).
    """
    stage = stage if stage is not None else deal.stage
    if stage is None or deal.status != "open" or stage.is_terminal:
        return FRESH
    threshold = stage.rotting_days
    if not threshold:
        return FRESH

    days = days_since_activity(deal, now)
    if days is None:
        return FRESH

    if days >= 1.5 * threshold:
        return CRITICAL
    if days >= threshold:
        return ROTTING
    if days >= 0.5 * threshold:
        return WARNING
    return FRESH


def rotting_label(level):
    return LABELS[level]
