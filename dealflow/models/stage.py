"""Pipeline stage model.

Ordered funnel columns a deal moves through. Open stages carry a
contiguous `position` (0..n-1), a win probability and a rotting
threshold. The Won and Lost stages are terminal: they have no position,
never rot, and their flags are fixed when the stage is created.
"""

import uuid

from dealflow.extensions import db


class Stage(db.Model):
    __tablename__ = "pipeline_stages"

    # -- Presets for seeded stages --
    COLOR_PALETTE = [
        "#5a9bd5",
        "#f4b942",
        "#9b59b6",
        "#4a7c59",
        "#c25a5a",
        "#e67e22",
        "#1abc9c",
        "#e74c3c",
    ]

    # -- Fields editable via update_stage (terminal stages: name/color only) --
    EDITABLE_FIELDS = ["name", "color", "win_probability", "rotting_days"]
    TERMINAL_EDITABLE_FIELDS = ["name", "color"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    color = db.Column(db.String(20), nullable=True)  # presentation hint only
    position = db.Column(db.Integer, nullable=True)  # NULL for Won / Lost
    win_probability = db.Column(db.Integer, nullable=False, default=0)  # 0-100
    rotting_days = db.Column(db.Integer, nullable=True)
    is_won = db.Column(db.Boolean, nullable=False, default=False)
    is_lost = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.CheckConstraint(
            "NOT (is_won AND is_lost)", name="ck_pipeline_stages_single_outcome"
        ),
    )

    # --- Relationships ---
    # Deals reference a stage; they are never cascaded from it.
    deals = db.relationship("Deal", back_populates="stage", lazy="dynamic")

    @property
    def is_terminal(self):
        return bool(self.is_won or self.is_lost)

    def __repr__(self):
        return f"<Stage {self.name} (pos={self.position})>"
