"""DealActivity model — append-only deal history.

One row per thing that happened to a deal: engine events (created,
stage_change, won, lost) and manually logged outreach (note, call,
email, meeting, task). Rows are never updated; deleting a deal deletes
its history.
"""

import uuid
from datetime import datetime, timezone

from dealflow.extensions import db


def _utcnow():
    return datetime.now(timezone.utc)


class DealActivity(db.Model):
    __tablename__ = "deal_activities"

    TYPES = [
        "note",
        "call",
        "email",
        "meeting",
        "task",
        "stage_change",
        "created",
        "won",
        "lost",
    ]

    # Written by the deal commands, never through append_activity()
    SYSTEM_TYPES = ["stage_change", "created", "won", "lost"]
    MANUAL_TYPES = ["note", "call", "email", "meeting", "task"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    deal_id = db.Column(
        db.String(36),
        db.ForeignKey("deals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = db.Column(
        db.Integer, nullable=False
    )  # per-deal append order, tie-breaker for created_at
    activity_type = db.Column(db.String(50), nullable=False)
    subject = db.Column(db.String(500), nullable=False)
    description = db.Column(db.Text, nullable=True)
    from_stage_id = db.Column(
        db.String(36), db.ForeignKey("pipeline_stages.id"), nullable=True
    )
    to_stage_id = db.Column(
        db.String(36), db.ForeignKey("pipeline_stages.id"), nullable=True
    )
    created_by = db.Column(db.String(36), nullable=True)  # opaque actor ref
    # Set in Python so entries appended in the same second keep microseconds
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        db.UniqueConstraint(
            "deal_id", "sequence", name="uq_deal_activities_deal_sequence"
        ),
    )

    # --- Relationships ---
    deal = db.relationship("Deal", back_populates="activities")
    from_stage = db.relationship("Stage", foreign_keys=[from_stage_id])
    to_stage = db.relationship("Stage", foreign_keys=[to_stage_id])

    def __repr__(self):
        return f"<DealActivity {self.activity_type} on {self.deal_id}>"
