"""Activity service — append-only deal history.

record_activity() is the building block the deal commands use inside
their own transaction (flush only, no commit). append_activity() is the
public command for manually logged outreach and commits on its own.

Activities are never edited or reordered. Listing is newest first.
"""

import logging
from datetime import datetime, timezone

from dealflow.extensions import db
from dealflow.models.deal import Deal
from dealflow.models.deal_activity import DealActivity
from dealflow.services.errors import NotFoundError, ValidationError
from dealflow.services.sanitize import sanitize, sanitize_optional
from dealflow.services.transaction import transactional

logger = logging.getLogger(__name__)


def as_utc(value):
    """Treat naive datetimes (SQLite) as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def touch_deal(deal, now=None):
    """Advance deal.last_activity_at to now, never backwards."""
    now = now or datetime.now(timezone.utc)
    current = as_utc(deal.last_activity_at)
    if current is None or now > current:
        deal.last_activity_at = now
    return deal.last_activity_at


def record_activity(deal, activity_type, subject, description=None,
                    actor_id=None, from_stage_id=None, to_stage_id=None,
                    now=None):
    """Append one activity for a deal without committing.

    Args:
        deal: The owning Deal (must already be flushed).
        activity_type: One of DealActivity.TYPES.
        subject: Short summary (required, sanitized).
        description: Optional longer text (sanitized).
        actor_id: Opaque reference to whoever did it.
        from_stage_id / to_stage_id: Required for stage_change.

    Returns:
        The created DealActivity.

    Raises:
        ValidationError: On unknown type, blank subject, or a stage_change
            without both stage ids.
    """
    if activity_type not in DealActivity.TYPES:
        raise ValidationError(
            f"Invalid activity type '{activity_type}'. "
            f"Must be one of: {', '.join(DealActivity.TYPES)}"
        )

    subject = sanitize(subject)
    if not subject:
        raise ValidationError("Activity subject is required.")

    if activity_type == "stage_change" and not (from_stage_id and to_stage_id):
        raise ValidationError(
            "Stage change activities need both from_stage_id and to_stage_id."
        )

    next_seq = (
        db.session.query(db.func.max(DealActivity.sequence))
        .filter_by(deal_id=deal.id)
        .scalar()
    )
    next_seq = (next_seq or 0) + 1

    activity = DealActivity(
        deal_id=deal.id,
        sequence=next_seq,
        activity_type=activity_type,
        subject=subject,
        description=sanitize_optional(description),
        from_stage_id=from_stage_id,
        to_stage_id=to_stage_id,
        created_by=actor_id,
        created_at=now or datetime.now(timezone.utc),
    )
    db.session.add(activity)
    db.session.flush()
    return activity


@transactional
def append_activity(deal_id, activity_type, subject, description=None,
                    actor_id=None):
    """Log a note/call/email/meeting/task against a deal.

    Also refreshes the deal's last_activity_at, which resets rotting.

    Returns:
        The created DealActivity.

    Raises:
        NotFoundError: If the deal does not exist.
        ValidationError: On an unknown or engine-reserved type, or blank subject.
    """
    if activity_type in DealActivity.SYSTEM_TYPES:
        raise ValidationError(
            f"'{activity_type}' activities are recorded automatically by deal "
            f"commands. Log one of: {', '.join(DealActivity.MANUAL_TYPES)}"
        )

    deal = db.session.get(Deal, deal_id) if deal_id else None
    if deal is None:
        raise NotFoundError(f"Deal {deal_id} not found.")

    now = datetime.now(timezone.utc)
    activity = record_activity(
        deal, activity_type, subject,
        description=description, actor_id=actor_id, now=now,
    )
    touch_deal(deal, now)
    db.session.flush()

    logger.info(f"Activity logged: {activity_type} on deal {deal.id}")
    return activity


def list_for_deal(deal_id):
    """A deal's history, most recent first.

    Returns an un-executed query: iterating runs it, and iterating again
    re-runs it. A deal without history yields nothing.
    """
    return (
        DealActivity.query
        .filter_by(deal_id=deal_id)
        .order_by(DealActivity.created_at.desc(), DealActivity.sequence.desc())
    )
