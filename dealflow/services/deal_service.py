"""Deal service — the deal store and its workflow rules.

State machine:
    open (in any open stage) --move_deal--> open (any other open stage)
    open --close_won--> won   (terminal)
    open --close_lost--> lost (terminal)

Won/Lost stages can only be reached through close_won / close_lost so
that outcome data is captured; move_deal refuses them. Stage order is
not enforced: deals may skip ahead or move back.

Every command appends exactly one DealActivity and commits both together
(see transaction.transactional). Move/close commands accept the caller's
view of the deal (expected_stage_id / expected_status) and raise
ConflictError if it is out of date; the row version column catches
writes that race past that check.
"""

import logging
import math
from datetime import date, datetime, timezone

from dealflow.extensions import db
from dealflow.models.deal import Deal
from dealflow.models.deal_activity import DealActivity
from dealflow.services import stage_service
from dealflow.services.activity_service import record_activity, touch_deal
from dealflow.services.errors import (
    ConfigurationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    RequiresClosureDataError,
    ValidationError,
)
from dealflow.services.sanitize import sanitize, sanitize_optional
from dealflow.services.transaction import transactional

logger = logging.getLogger(__name__)

_TEXT_FIELDS = [
    "organization",
    "contact_name",
    "contact_email",
    "contact_phone",
]
_REFERENCE_FIELDS = ["owner_id", "lead_id", "customer_id", "audit_id", "quote_id"]


# ─── Field parsing ───────────────────────────────────────────────

def _parse_value(raw):
    """Monetary value: absent or non-numeric -> 0, negative rejected."""
    if raw is None or isinstance(raw, bool):
        return 0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(value):
        return 0
    if value < 0:
        raise ValidationError("Deal value cannot be negative.")
    return value


def _parse_close_date(raw):
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError:
        raise ValidationError(
            f"Invalid expected close date '{raw}'. Use YYYY-MM-DD."
        )


def _apply_details(deal, fields):
    """Copy detail fields onto a deal (title validated by the caller)."""
    for key in _TEXT_FIELDS:
        if key in fields:
            setattr(deal, key, sanitize_optional(fields[key]))
    for key in _REFERENCE_FIELDS:
        if key in fields:
            ref = fields[key]
            setattr(deal, key, str(ref) if ref not in (None, "") else None)
    if "expected_close_date" in fields:
        deal.expected_close_date = _parse_close_date(fields["expected_close_date"])


# ─── Lookups ─────────────────────────────────────────────────────

def get_deal(deal_id):
    """Load a deal or raise NotFoundError."""
    deal = db.session.get(Deal, deal_id) if deal_id else None
    if deal is None:
        raise NotFoundError(f"Deal {deal_id} not found.")
    return deal


def _load_for_update(deal_id):
    # FOR UPDATE serializes same-deal writers on Postgres; SQLite ignores it
    deal = (
        db.session.get(Deal, deal_id, with_for_update=True)
        if deal_id else None
    )
    if deal is None:
        raise NotFoundError(f"Deal {deal_id} not found.")
    return deal


def _check_expected(deal, expected_stage_id=None, expected_status=None):
    if expected_stage_id is not None and deal.stage_id != expected_stage_id:
        logger.warning(
            f"Stale write on deal {deal.id}: expected stage {expected_stage_id}, "
            f"found {deal.stage_id}"
        )
        raise ConflictError(
            "The deal has moved since it was loaded. Reload and retry."
        )
    if expected_status is not None and deal.status != expected_status:
        logger.warning(
            f"Stale write on deal {deal.id}: expected status {expected_status}, "
            f"found {deal.status}"
        )
        raise ConflictError(
            f"The deal is now '{deal.status}', not '{expected_status}'. "
            "Reload and retry."
        )


# ─── Commands ────────────────────────────────────────────────────

@transactional
def create_deal(fields, actor_id=None):
    """Create an open deal in the first open stage.

    Args:
        fields: Dict with title (required) and optional value, organization,
            contact_name, contact_email, contact_phone, expected_close_date,
            owner_id, lead_id, customer_id, audit_id, quote_id.
        actor_id: Opaque reference to the creator.

    Returns:
        The created Deal.

    Raises:
        ValidationError: If title is blank or value negative.
        ConfigurationError: If no open stage exists.
    """
    fields = dict(fields or {})

    title = sanitize(fields.get("title"))
    if not title:
        raise ValidationError("Deal title is required.")

    value = _parse_value(fields.get("value"))
    stage = stage_service.get_first_open_stage()
    now = datetime.now(timezone.utc)

    deal = Deal(
        title=title,
        value=value,
        stage_id=stage.id,
        status="open",
        win_probability=stage.win_probability,
        last_activity_at=now,
    )
    _apply_details(deal, fields)
    db.session.add(deal)
    db.session.flush()

    record_activity(
        deal, "created", f"Deal created in {stage.name}",
        actor_id=actor_id, to_stage_id=stage.id, now=now,
    )

    logger.info(f"Deal created: {deal.id} in stage {stage.id}")
    return deal


@transactional
def update_deal(deal_id, fields, actor_id=None):
    """Edit the details of an open deal.

    Workflow fields (stage, status, probability, closure data) are not
    accepted here; use move_deal / close_won / close_lost.

    Returns:
        The updated Deal.

    Raises:
        NotFoundError: If the deal does not exist.
        InvalidStateError: If the deal is closed.
        ValidationError: On unknown fields, blank title, or bad values.
    """
    fields = dict(fields or {})
    unknown = [k for k in fields if k not in Deal.DETAIL_FIELDS]
    if unknown:
        raise ValidationError(
            f"Field(s) not editable here: {', '.join(sorted(unknown))}."
        )

    deal = _load_for_update(deal_id)
    if not deal.is_open:
        raise InvalidStateError(
            f"Deal is already {deal.status}; closed deals cannot be edited."
        )

    if "title" in fields:
        title = sanitize(fields["title"])
        if not title:
            raise ValidationError("Deal title is required.")
        deal.title = title
    if "value" in fields:
        deal.value = _parse_value(fields["value"])
    _apply_details(deal, fields)

    now = datetime.now(timezone.utc)
    touch_deal(deal, now)
    db.session.flush()

    record_activity(
        deal, "note", "Deal details updated",
        description=", ".join(sorted(fields)) or None,
        actor_id=actor_id, now=now,
    )

    logger.info(f"Deal updated: {deal.id} fields={sorted(fields)}")
    return deal


@transactional
def move_deal(deal_id, target_stage_id, actor_id=None, expected_stage_id=None):
    """Move an open deal to another open stage.

    Moving to the stage the deal is already in is a successful no-op.

    Returns:
        The Deal.

    Raises:
        NotFoundError: If the deal or target stage does not exist.
        RequiresClosureDataError: If the target is the Won or Lost stage.
        InvalidStateError: If the deal is already won or lost.
        ConflictError: If expected_stage_id no longer matches.
    """
    deal = _load_for_update(deal_id)
    target = stage_service.get_stage(target_stage_id)

    _check_expected(deal, expected_stage_id=expected_stage_id)

    if target.id == deal.stage_id:
        return deal

    if target.is_won:
        raise RequiresClosureDataError(
            "Winning a deal needs closure details; use close_won instead of a move.",
            closure_command="close_won",
        )
    if target.is_lost:
        raise RequiresClosureDataError(
            "Losing a deal needs a reason; use close_lost instead of a move.",
            closure_command="close_lost",
        )
    if not deal.is_open:
        raise InvalidStateError(
            f"Deal is already {deal.status}; closed deals cannot be moved."
        )

    old_stage = deal.stage
    now = datetime.now(timezone.utc)

    deal.stage_id = target.id
    deal.win_probability = target.win_probability
    touch_deal(deal, now)
    db.session.flush()

    record_activity(
        deal, "stage_change",
        f"Moved from {old_stage.name} to {target.name}",
        actor_id=actor_id,
        from_stage_id=old_stage.id,
        to_stage_id=target.id,
        now=now,
    )

    logger.info(f"Deal moved: {deal.id} {old_stage.id} -> {target.id}")
    return deal


def _close(deal_id, outcome, actor_id, expected_stage_id, expected_status):
    deal = _load_for_update(deal_id)
    _check_expected(
        deal,
        expected_stage_id=expected_stage_id,
        expected_status=expected_status,
    )
    if not deal.is_open:
        raise InvalidStateError(
            f"Deal is already {deal.status}; it cannot be closed again."
        )

    if outcome == "won":
        stage = stage_service.get_won_stage()
    else:
        stage = stage_service.get_lost_stage()
    if stage is None:
        raise ConfigurationError(
            f"No {outcome.capitalize()} stage is configured."
        )

    return deal, stage, deal.stage


@transactional
def close_won(deal_id, notes=None, actor_id=None, expected_stage_id=None,
              expected_status=None):
    """Mark an open deal as won and move it to the Won stage.

    Returns:
        The Deal.

    Raises:
        NotFoundError: If the deal does not exist.
        InvalidStateError: If the deal is not open.
        ConflictError: If the expected prior state no longer matches.
        ConfigurationError: If no Won stage exists.
    """
    deal, stage, old_stage = _close(
        deal_id, "won", actor_id, expected_stage_id, expected_status,
    )
    now = datetime.now(timezone.utc)
    notes = sanitize_optional(notes)

    deal.stage_id = stage.id
    deal.status = "won"
    deal.won_at = now
    deal.won_notes = notes
    touch_deal(deal, now)
    db.session.flush()

    record_activity(
        deal, "won", f"Deal won from {old_stage.name}",
        description=notes, actor_id=actor_id,
        from_stage_id=old_stage.id, to_stage_id=stage.id, now=now,
    )

    logger.info(f"Deal won: {deal.id}")
    return deal


@transactional
def close_lost(deal_id, reason, actor_id=None, expected_stage_id=None,
               expected_status=None):
    """Mark an open deal as lost and move it to the Lost stage.

    Returns:
        The Deal.

    Raises:
        ValidationError: If reason is blank.
        NotFoundError: If the deal does not exist.
        InvalidStateError: If the deal is not open.
        ConflictError: If the expected prior state no longer matches.
        ConfigurationError: If no Lost stage exists.
    """
    reason = sanitize(reason)
    if not reason:
        raise ValidationError("A reason is required to mark a deal as lost.")

    deal, stage, old_stage = _close(
        deal_id, "lost", actor_id, expected_stage_id, expected_status,
    )
    now = datetime.now(timezone.utc)

    deal.stage_id = stage.id
    deal.status = "lost"
    deal.lost_at = now
    deal.lost_reason = reason
    touch_deal(deal, now)
    db.session.flush()

    record_activity(
        deal, "lost", f"Deal lost from {old_stage.name}",
        description=reason, actor_id=actor_id,
        from_stage_id=old_stage.id, to_stage_id=stage.id, now=now,
    )

    logger.info(f"Deal lost: {deal.id} ({reason[:60]})")
    return deal


@transactional
def delete_deal(deal_id):
    """Delete a deal and its whole activity history. Irreversible.

    Raises:
        NotFoundError: If the deal does not exist.
    """
    deal = _load_for_update(deal_id)

    removed = (
        DealActivity.query
        .filter_by(deal_id=deal.id)
        .delete(synchronize_session=False)
    )
    db.session.delete(deal)
    db.session.flush()

    logger.info(f"Deal deleted: {deal_id} ({removed} activities)")
    return removed


# ─── Queries ─────────────────────────────────────────────────────

def list_open_deals(owner_id=None, stage_id=None, search=None):
    """Open deals, newest first, optionally filtered.

    Args:
        owner_id: Only deals owned by this reference.
        stage_id: Only deals in this stage.
        search: Case-insensitive match on title or organization.
    """
    query = Deal.query.filter_by(status="open")
    if owner_id:
        query = query.filter_by(owner_id=owner_id)
    if stage_id:
        query = query.filter_by(stage_id=stage_id)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            db.or_(Deal.title.ilike(pattern), Deal.organization.ilike(pattern))
        )
    return query.order_by(Deal.created_at.desc(), Deal.id).all()


def get_deals_by_stage(stage_id):
    """All deals currently in a stage (closed deals for Won/Lost).

    Raises:
        NotFoundError: If the stage does not exist.
    """
    stage = stage_service.get_stage(stage_id)
    return (
        Deal.query
        .filter_by(stage_id=stage.id)
        .order_by(Deal.created_at.desc(), Deal.id)
        .all()
    )
