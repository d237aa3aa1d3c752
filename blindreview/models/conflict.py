"""
Blind Review Engine
Conflict-of-interest registry model.

Models:
    - ConflictRecord: reviewer ↔ (proposal | applicant | institution) block

Business rules:
    - Records are never updated or deleted; once present they permanently
      block assignment of the reviewer to every matching proposal.
    - Exactly one target (proposal_id, applicant_id or institution) is set.
"""

from blindreview.models import db
from blindreview.models.base import OrgScopedModel, _iso, _utcnow, _uuid

# ── Constants ────────────────────────────────────────────────────────────────

CONFLICT_SOURCES = frozenset({"self_declared", "staff_recorded"})


class ConflictRecord(OrgScopedModel):
    """Declared or staff-recorded conflict of interest."""

    __tablename__ = "conflict_records"
    __table_args__ = (
        db.Index("ix_conflict_reviewer_proposal", "reviewer_id", "proposal_id"),
        db.Index("ix_conflict_reviewer_applicant", "reviewer_id", "applicant_id"),
        db.CheckConstraint(
            "(CASE WHEN proposal_id IS NOT NULL THEN 1 ELSE 0 END)"
            " + (CASE WHEN applicant_id IS NOT NULL THEN 1 ELSE 0 END)"
            " + (CASE WHEN institution IS NOT NULL THEN 1 ELSE 0 END) = 1",
            name="ck_conflict_single_target",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    reviewer_id = db.Column(db.String(36), nullable=False, index=True)

    # Target: exactly one is set
    proposal_id = db.Column(
        db.String(36), db.ForeignKey("proposals.id", ondelete="RESTRICT"),
        nullable=True,
    )
    applicant_id = db.Column(db.String(36), nullable=True)
    institution = db.Column(db.String(255), nullable=True)

    reason = db.Column(db.Text, nullable=False)
    source = db.Column(
        db.String(20), nullable=False,
        comment="self_declared | staff_recorded",
    )
    declared_by = db.Column(db.String(36), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def target_type(self):
        if self.proposal_id:
            return "proposal"
        if self.applicant_id:
            return "applicant"
        return "institution"

    def matches(self, proposal, applicant_institution=None):
        """True when this record blocks its reviewer from ``proposal``."""
        if self.proposal_id is not None:
            return self.proposal_id == proposal.id
        if self.applicant_id is not None:
            return self.applicant_id == proposal.applicant_id
        return bool(
            applicant_institution
            and self.institution.strip().casefold() == applicant_institution.strip().casefold()
        )

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "reviewer_id": self.reviewer_id,
            "target_type": self.target_type,
            "proposal_id": self.proposal_id,
            "applicant_id": self.applicant_id,
            "institution": self.institution,
            "reason": self.reason,
            "source": self.source,
            "declared_by": self.declared_by,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ConflictRecord {self.reviewer_id} ⟂ {self.target_type}>"
