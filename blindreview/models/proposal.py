"""
Blind Review Engine
Proposal domain model.

Models:
    - Proposal: an applicant's submission to a call
    - ProposalFile: file metadata (never bytes) used for anonymized renaming

Business rules:
    - blind_code is assigned exactly once, on the first draft → submitted
      transition, and is unique within the call.
    - blind_code is non-null iff status != draft.
    - Submitted proposals are never hard-deleted; assignments are not
      cascaded (ondelete=RESTRICT on the assignment FK).
"""

import json

from blindreview.models import db
from blindreview.models.base import OrgScopedModel, _iso, _utcnow, _uuid

# ── Constants ────────────────────────────────────────────────────────────────

PROPOSAL_STATUSES = {"draft", "submitted", "under_review", "accepted", "rejected"}

# Statuses that take part in reviewer distribution
DISTRIBUTABLE_STATUSES = ("submitted", "under_review")


class Proposal(OrgScopedModel):
    """Applicant proposal for a call."""

    __tablename__ = "proposals"
    __table_args__ = (
        db.Index("uq_proposal_call_blind_code", "call_id", "blind_code", unique=True),
        db.Index("ix_proposal_call_status", "call_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    call_id = db.Column(
        db.String(36), db.ForeignKey("calls.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    applicant_id = db.Column(db.String(36), nullable=False, index=True)
    title = db.Column(db.String(500), nullable=True)
    knowledge_area = db.Column(db.String(255), nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | submitted | under_review | accepted | rejected",
    )
    blind_code = db.Column(db.String(40), nullable=True)
    blind_code_generated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    answers_json = db.Column(
        db.Text, nullable=False, default="{}",
        comment="JSON: {question_id: value}",
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    call = db.relationship("Call", back_populates="proposals")
    assignments = db.relationship(
        "Assignment", back_populates="proposal", lazy="select",
        passive_deletes="all",
    )
    files = db.relationship(
        "ProposalFile", back_populates="proposal",
        order_by="ProposalFile.uploaded_at",
        cascade="all, delete-orphan",
    )

    @property
    def answers(self) -> dict:
        try:
            value = json.loads(self.answers_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}
        return value if isinstance(value, dict) else {}

    @answers.setter
    def answers(self, value):
        self.answers_json = json.dumps(value or {}, default=str)

    def to_dict(self):
        """Staff-facing view; reviewer-facing reads go through the anonymizer."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "call_id": self.call_id,
            "title": self.title,
            "knowledge_area": self.knowledge_area,
            "status": self.status,
            "blind_code": self.blind_code,
            "submitted_at": _iso(self.submitted_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Proposal {self.blind_code or self.id} ({self.status})>"


class ProposalFile(db.Model):
    """Uploaded attachment metadata; storage paths stay with the file store."""

    __tablename__ = "proposal_files"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    proposal_id = db.Column(
        db.String(36), db.ForeignKey("proposals.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    original_name = db.Column(db.String(500), nullable=True)
    file_type = db.Column(db.String(100), nullable=True)
    uploaded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    proposal = db.relationship("Proposal", back_populates="files")

    def __repr__(self):
        return f"<ProposalFile {self.id} {self.file_type}>"
