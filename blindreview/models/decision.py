"""
Blind Review Engine
Committee outcome models.

Models:
    - ProposalDecision: final committee decision per proposal (upserted)
    - IdentityReveal: record of each post-closure applicant identity reveal
"""

from blindreview.models import db
from blindreview.models.base import _iso, _utcnow, _uuid

DECISIONS = {"accepted", "rejected"}


class ProposalDecision(db.Model):
    """Committee decision; one row per proposal."""

    __tablename__ = "proposal_decisions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    proposal_id = db.Column(
        db.String(36), db.ForeignKey("proposals.id", ondelete="RESTRICT"),
        nullable=False, unique=True,
    )
    decision = db.Column(db.String(20), nullable=False, comment="accepted | rejected")
    justification = db.Column(db.Text, nullable=True)
    decided_by = db.Column(db.String(36), nullable=False)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "proposal_id": self.proposal_id,
            "decision": self.decision,
            "justification": self.justification,
            "decided_by": self.decided_by,
            "decided_at": _iso(self.decided_at),
        }


class IdentityReveal(db.Model):
    """Append-only trace of who unmasked which proposal, and why."""

    __tablename__ = "identity_reveals"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    proposal_id = db.Column(
        db.String(36), db.ForeignKey("proposals.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    call_id = db.Column(db.String(36), nullable=False, index=True)
    revealed_by = db.Column(db.String(36), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<IdentityReveal {self.proposal_id} by {self.revealed_by}>"
