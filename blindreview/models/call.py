"""
Blind Review Engine
Call (edital) domain model.

Models:
    - Call: a funding round with its review rules
    - Criterion: weighted rubric dimension of a call
    - FormSchemaSnapshot: immutable, versioned form layout used to group answers
"""

import json

from blindreview.models import db
from blindreview.models.base import OrgScopedModel, _iso, _utcnow, _uuid

# ── Constants ────────────────────────────────────────────────────────────────

CALL_STATUSES = {"draft", "published", "closed"}

# Reviewer distribution runs while a call is open and after it closes
DISTRIBUTABLE_CALL_STATUSES = ("published", "closed")

# Valid status transitions for the call lifecycle
CALL_TRANSITIONS = {
    "publish": {"from": ["draft"], "to": "published"},
    "close": {"from": ["published"], "to": "closed"},
    # Administrative override only (see call_service.transition_call)
    "reopen": {"from": ["closed"], "to": "published"},
}

BLIND_CODE_SEQUENTIAL = "sequential"
BLIND_CODE_RANDOM_SHORT = "random_short"
BLIND_CODE_STRATEGIES = {BLIND_CODE_SEQUENTIAL, BLIND_CODE_RANDOM_SHORT}


class Call(OrgScopedModel):
    """
    Call for proposals.

    The call row doubles as the per-call lock for blind code generation
    (SELECT ... FOR UPDATE in services.blind_code).
    """

    __tablename__ = "calls"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | published | closed",
    )

    min_reviewers_per_proposal = db.Column(db.Integer, nullable=False, default=2)
    review_deadline = db.Column(db.DateTime(timezone=True), nullable=True)

    blind_review_enabled = db.Column(db.Boolean, nullable=False, default=True)
    blind_code_strategy = db.Column(
        db.String(20), nullable=False, default=BLIND_CODE_SEQUENTIAL,
        comment="sequential | random_short",
    )
    blind_code_prefix = db.Column(db.String(20), nullable=True)
    public_applicant_fields_json = db.Column(
        db.Text, nullable=False, default="[]",
        comment="JSON list of identity fields shown when blind review is disabled",
    )

    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    criteria = db.relationship(
        "Criterion", back_populates="call",
        order_by="Criterion.sort_order", cascade="all, delete-orphan",
    )
    proposals = db.relationship("Proposal", back_populates="call", lazy="dynamic")

    @property
    def public_applicant_fields(self) -> list:
        try:
            return list(json.loads(self.public_applicant_fields_json or "[]"))
        except (json.JSONDecodeError, TypeError):
            return []

    @public_applicant_fields.setter
    def public_applicant_fields(self, fields):
        self.public_applicant_fields_json = json.dumps(list(fields or []))

    @property
    def is_closed(self):
        return self.status == "closed"

    def latest_schema(self):
        """Most recent FormSchemaSnapshot, or None."""
        return (
            FormSchemaSnapshot.query
            .filter_by(call_id=self.id)
            .order_by(FormSchemaSnapshot.version.desc())
            .first()
        )

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "title": self.title,
            "status": self.status,
            "min_reviewers_per_proposal": self.min_reviewers_per_proposal,
            "review_deadline": _iso(self.review_deadline),
            "blind_review_enabled": self.blind_review_enabled,
            "blind_code_strategy": self.blind_code_strategy,
            "blind_code_prefix": self.blind_code_prefix,
            "public_applicant_fields": self.public_applicant_fields,
            "criteria": [c.to_dict() for c in self.criteria],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Call {self.id}: {self.title[:40]} ({self.status})>"


class Criterion(db.Model):
    """Scoring rubric dimension (barema) for a call."""

    __tablename__ = "criteria"
    __table_args__ = (
        db.Index("ix_criteria_call_order", "call_id", "sort_order"),
        db.CheckConstraint("weight > 0", name="ck_criteria_weight_positive"),
        db.CheckConstraint("max_score > 0", name="ck_criteria_max_positive"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    call_id = db.Column(
        db.String(36), db.ForeignKey("calls.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    max_score = db.Column(db.Numeric(6, 2), nullable=False, default=10)
    weight = db.Column(db.Numeric(6, 2), nullable=False, default=1)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    call = db.relationship("Call", back_populates="criteria")

    def to_dict(self):
        return {
            "id": self.id,
            "call_id": self.call_id,
            "name": self.name,
            "description": self.description,
            "max_score": float(self.max_score),
            "weight": float(self.weight),
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<Criterion {self.name} max={self.max_score} w={self.weight}>"


class FormSchemaSnapshot(db.Model):
    """
    Versioned form layout captured when the call form is frozen.

    schema_json shape:
        {"sections": [{"id", "title", "order",
                       "questions": [{"id", "label", "type", "order"}]}]}
    """

    __tablename__ = "form_schema_snapshots"
    __table_args__ = (
        db.UniqueConstraint("call_id", "version", name="uq_schema_call_version"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    call_id = db.Column(
        db.String(36), db.ForeignKey("calls.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    schema_json = db.Column(db.Text, nullable=False, default="{}")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def schema(self) -> dict:
        try:
            return json.loads(self.schema_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def __repr__(self):
        return f"<FormSchemaSnapshot call={self.call_id} v{self.version}>"
