"""Stage service — the pipeline stage registry.

Owns stage ordering and per-stage configuration. Open stages hold the
contiguous positions 0..n-1; Won and Lost sit outside the ordering and
are listed after the open stages, Won first.

Mutating functions are transactional: they commit on success and roll
back on error.
"""

import logging
import threading

from dealflow.extensions import db
from dealflow.models.stage import Stage
from dealflow.services.errors import (
    ConfigurationError,
    NotFoundError,
    ValidationError,
)
from dealflow.services.sanitize import sanitize, sanitize_optional
from dealflow.services.transaction import transactional

logger = logging.getLogger(__name__)

# Reordering is a rare admin action; one writer at a time per process.
_reorder_lock = threading.Lock()

DEFAULT_STAGES = [
    ("New Lead", 10),
    ("Quoted", 30),
    ("Under Review", 50),
    ("Approved", 80),
]


def _whole_number(value, message):
    if isinstance(value, bool):
        raise ValidationError(message)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(message)
    if not number.is_integer():
        raise ValidationError(message)
    return int(number)


def _coerce_probability(value):
    message = "Win probability must be a whole number from 0 to 100."
    probability = _whole_number(value, message)
    if not 0 <= probability <= 100:
        raise ValidationError(message)
    return probability


def _coerce_rotting_days(value):
    if value is None or value == "":
        return None
    message = "Rotting days must be a positive whole number."
    days = _whole_number(value, message)
    if days <= 0:
        raise ValidationError(message)
    return days


def get_stage(stage_id):
    """Load a stage or raise NotFoundError."""
    stage = db.session.get(Stage, stage_id) if stage_id else None
    if stage is None:
        raise NotFoundError(f"Stage {stage_id} not found.")
    return stage


def list_open_stages():
    """Non-terminal stages in funnel order."""
    return (
        Stage.query
        .filter(Stage.is_won.is_(False), Stage.is_lost.is_(False))
        .order_by(Stage.position)
        .all()
    )


def get_won_stage():
    return Stage.query.filter_by(is_won=True).first()


def get_lost_stage():
    return Stage.query.filter_by(is_lost=True).first()


def list_stages():
    """All stages: open stages by position, then Won, then Lost."""
    stages = list_open_stages()
    won = get_won_stage()
    lost = get_lost_stage()
    if won is not None:
        stages.append(won)
    if lost is not None:
        stages.append(lost)
    return stages


def get_first_open_stage():
    """The open stage new deals land in.

    Raises:
        ConfigurationError: If no open stage is configured.
    """
    stage = (
        Stage.query
        .filter(Stage.is_won.is_(False), Stage.is_lost.is_(False))
        .order_by(Stage.position)
        .first()
    )
    if stage is None:
        raise ConfigurationError(
            "No open pipeline stage is configured; cannot place a new deal."
        )
    return stage


@transactional
def create_stage(name, color=None, win_probability=0, rotting_days=None,
                 is_won=False, is_lost=False):
    """Create a stage (configuration / seeding action).

    Open stages are appended at the end of the funnel. At most one Won
    and one Lost stage may exist.

    Returns:
        The created Stage.

    Raises:
        ValidationError: On blank name, bad numbers, or a duplicate terminal stage.
    """
    return _add_stage(name, color, win_probability, rotting_days, is_won, is_lost)


def _add_stage(name, color, win_probability, rotting_days, is_won, is_lost):
    name = sanitize(name)
    if not name:
        raise ValidationError("Stage name is required.")

    is_won = bool(is_won)
    is_lost = bool(is_lost)
    if is_won and is_lost:
        raise ValidationError("A stage cannot be both Won and Lost.")
    if is_won and get_won_stage() is not None:
        raise ValidationError("A Won stage already exists.")
    if is_lost and get_lost_stage() is not None:
        raise ValidationError("A Lost stage already exists.")

    if is_won or is_lost:
        stage = Stage(
            name=name,
            color=sanitize_optional(color),
            position=None,
            win_probability=100 if is_won else 0,
            rotting_days=None,
            is_won=is_won,
            is_lost=is_lost,
        )
    else:
        max_pos = (
            db.session.query(db.func.max(Stage.position))
            .filter(Stage.is_won.is_(False), Stage.is_lost.is_(False))
            .scalar()
        )
        max_pos = max_pos if max_pos is not None else -1
        stage = Stage(
            name=name,
            color=sanitize_optional(color),
            position=max_pos + 1,
            win_probability=_coerce_probability(win_probability),
            rotting_days=_coerce_rotting_days(rotting_days),
        )

    db.session.add(stage)
    db.session.flush()

    logger.info(f"Stage created: {stage.name} ({stage.id})")
    return stage


@transactional
def update_stage(stage_id, fields):
    """Apply a partial update to a stage's configuration.

    Args:
        stage_id: Stage UUID string.
        fields: Dict with any of name, color, win_probability, rotting_days.

    Returns:
        The updated Stage.

    Raises:
        NotFoundError: If the stage does not exist.
        ValidationError: On outcome-flag changes, unknown fields, bad values,
            or probability/rotting edits on a terminal stage.
    """
    stage = get_stage(stage_id)
    fields = dict(fields or {})

    if "is_won" in fields or "is_lost" in fields:
        raise ValidationError(
            "Won/Lost flags are fixed when a stage is created."
        )

    unknown = [k for k in fields if k not in Stage.EDITABLE_FIELDS]
    if unknown:
        raise ValidationError(
            f"Unknown stage field(s): {', '.join(sorted(unknown))}. "
            f"Editable: {', '.join(Stage.EDITABLE_FIELDS)}"
        )

    if stage.is_terminal:
        blocked = [k for k in fields if k not in Stage.TERMINAL_EDITABLE_FIELDS]
        if blocked:
            raise ValidationError(
                f"Terminal stage '{stage.name}' only allows name and color changes."
            )

    if "name" in fields:
        name = sanitize(fields["name"])
        if not name:
            raise ValidationError("Stage name is required.")
        stage.name = name
    if "color" in fields:
        stage.color = sanitize_optional(fields["color"])
    if "win_probability" in fields:
        # Deals keep the probability they entered with; only future entries see this.
        stage.win_probability = _coerce_probability(fields["win_probability"])
    if "rotting_days" in fields:
        stage.rotting_days = _coerce_rotting_days(fields["rotting_days"])

    db.session.flush()

    logger.info(f"Stage updated: {stage.name} ({stage.id}) fields={sorted(fields)}")
    return stage


@transactional
def reorder_stages(stage_ids):
    """Reassign open-stage positions 0..n-1 in the given order.

    Args:
        stage_ids: Every open stage id exactly once, in the new order.

    Returns:
        The open stages in their new order.

    Raises:
        ValidationError: If the ids are not exactly the current open stages.
    """
    stage_ids = list(stage_ids or [])
    with _reorder_lock:
        open_stages = {s.id: s for s in list_open_stages()}

        if len(stage_ids) != len(set(stage_ids)):
            raise ValidationError("Stage order contains duplicate ids.")
        if set(stage_ids) != set(open_stages):
            raise ValidationError(
                "Stage order must list every open stage exactly once "
                "(Won/Lost stages are not ordered)."
            )

        # Clear first so a unique index on position would never collide mid-update
        for stage in open_stages.values():
            stage.position = None
        db.session.flush()

        for i, sid in enumerate(stage_ids):
            open_stages[sid].position = i
        db.session.flush()

    logger.info(f"Stages reordered: {stage_ids}")
    return [open_stages[sid] for sid in stage_ids]


@transactional
def seed_default_stages(rotting_days=14):
    """Create the default funnel if no stages exist yet.

    Returns:
        List of created stages (empty if the registry was already populated).
    """
    if Stage.query.count() > 0:
        return []

    created = []
    palette = Stage.COLOR_PALETTE
    for i, (name, probability) in enumerate(DEFAULT_STAGES):
        created.append(_add_stage(
            name, palette[i % len(palette)], probability, rotting_days,
            is_won=False, is_lost=False,
        ))
    created.append(_add_stage("Won", "#4a7c59", 100, None, is_won=True, is_lost=False))
    created.append(_add_stage("Lost", "#c25a5a", 0, None, is_won=False, is_lost=True))
    return created
