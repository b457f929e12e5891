"""Deal model.

A sales opportunity sitting in exactly one pipeline stage.
Status lifecycle: open -> won | lost (both terminal).

`status` always mirrors the current stage's flags: a deal is "won" only
in the Won stage, "lost" only in the Lost stage, otherwise "open". The
deal_service module is the only writer of stage_id / status.
"""

import uuid

from dealflow.extensions import db


class Deal(db.Model):
    __tablename__ = "deals"

    # -- Valid statuses --
    STATUSES = ["open", "won", "lost"]

    # -- Detail fields editable on an open deal (deal_service.update_deal) --
    DETAIL_FIELDS = [
        "title",
        "value",
        "organization",
        "contact_name",
        "contact_email",
        "contact_phone",
        "expected_close_date",
        "owner_id",
        "lead_id",
        "customer_id",
        "audit_id",
        "quote_id",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    title = db.Column(db.String(500), nullable=False)
    value = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=False, default=0)
    organization = db.Column(db.String(255), nullable=True)
    contact_name = db.Column(db.String(255), nullable=True)
    contact_email = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(50), nullable=True)
    expected_close_date = db.Column(db.Date, nullable=True)

    # Opaque references owned by other systems (identity, leads, quotes...)
    owner_id = db.Column(db.String(36), nullable=True, index=True)
    lead_id = db.Column(db.String(36), nullable=True)
    customer_id = db.Column(db.String(36), nullable=True)
    audit_id = db.Column(db.String(36), nullable=True)
    quote_id = db.Column(db.String(36), nullable=True)

    # --- Workflow ---
    stage_id = db.Column(
        db.String(36),
        db.ForeignKey("pipeline_stages.id"),
        nullable=False,
        index=True,
    )
    status = db.Column(
        db.String(20), default="open", nullable=False, index=True
    )  # open | won | lost
    win_probability = db.Column(
        db.Integer, nullable=False, default=0
    )  # snapshot of the stage's probability when the deal entered it
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=True)
    won_at = db.Column(db.DateTime(timezone=True), nullable=True)
    won_notes = db.Column(db.Text, nullable=True)
    lost_at = db.Column(db.DateTime(timezone=True), nullable=True)
    lost_reason = db.Column(db.Text, nullable=True)

    # Row version for optimistic concurrency (bumped on every UPDATE)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version}

    # --- Relationships ---
    stage = db.relationship("Stage", back_populates="deals")
    activities = db.relationship(
        "DealActivity",
        back_populates="deal",
        lazy="dynamic",
        passive_deletes=True,  # deal_service.delete_deal removes them first
    )

    @property
    def is_open(self):
        return self.status == "open"

    def __repr__(self):
        return f"<Deal {self.title[:40]} ({self.status})>"
