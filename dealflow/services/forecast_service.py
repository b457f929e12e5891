"""Forecast service — pipeline totals computed from the deal store.

Nothing is cached; every call reads the committed state. Weighted
figures use each deal's own win_probability snapshot, so editing a
stage's probability only affects deals that enter it afterwards.
"""

from datetime import datetime, timezone

from dealflow.extensions import db
from dealflow.models.deal import Deal
from dealflow.services import rotting, stage_service


def _money(amount):
    return round(float(amount or 0), 2)


def stage_total(stage_id):
    """Sum of deal values currently in a stage (0 if empty).

    Raises:
        NotFoundError: If the stage does not exist.
    """
    stage = stage_service.get_stage(stage_id)
    total = (
        db.session.query(db.func.coalesce(db.func.sum(Deal.value), 0))
        .filter(Deal.stage_id == stage.id)
        .scalar()
    )
    return _money(total)


def pipeline_total():
    """Sum of values over all open deals."""
    total = (
        db.session.query(db.func.coalesce(db.func.sum(Deal.value), 0))
        .filter(Deal.status == "open")
        .scalar()
    )
    return _money(total)


def weighted_pipeline_value():
    """Sum over open deals of value * win_probability / 100."""
    weighted = (
        db.session.query(
            db.func.coalesce(db.func.sum(Deal.value * Deal.win_probability), 0)
        )
        .filter(Deal.status == "open")
        .scalar()
    )
    return _money(float(weighted or 0) / 100)


def stage_summaries():
    """Per-stage count, raw total and weighted total, in board order.

    Returns:
        List of dicts: stage, deal_count, total_value, weighted_value.
    """
    rows = (
        db.session.query(
            Deal.stage_id,
            db.func.count(Deal.id),
            db.func.coalesce(db.func.sum(Deal.value), 0),
            db.func.coalesce(db.func.sum(Deal.value * Deal.win_probability), 0),
        )
        .group_by(Deal.stage_id)
        .all()
    )
    by_stage = {
        stage_id: (count, total, weighted)
        for stage_id, count, total, weighted in rows
    }

    result = []
    for stage in stage_service.list_stages():
        count, total, weighted = by_stage.get(stage.id, (0, 0, 0))
        result.append({
            "stage": stage,
            "deal_count": count,
            "total_value": _money(total),
            "weighted_value": _money(float(weighted or 0) / 100),
        })
    return result


def pipeline_board(now=None):
    """Snapshot for a kanban board: stages in order with their deals.

    Each deal is paired with its live rotting level, evaluated at `now`.

    Returns:
        List of dicts: stage, deals (list of (deal, level)), deal_count,
        total_value, weighted_value.
    """
    now = now or datetime.now(timezone.utc)
    deals_by_stage = {}
    for deal in Deal.query.order_by(Deal.created_at.desc(), Deal.id).all():
        deals_by_stage.setdefault(deal.stage_id, []).append(deal)

    board = []
    for summary in stage_summaries():
        stage = summary["stage"]
        deals = deals_by_stage.get(stage.id, [])
        board.append({
            **summary,
            "deals": [(d, rotting.rotting_level(d, stage, now)) for d in deals],
        })
    return board
