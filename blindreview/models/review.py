"""
Blind Review Engine
Review domain model.

Models:
    - Assignment: one reviewer ↔ one proposal pairing
    - Review: the reviewer's evaluation (1:1 with a non-cancelled assignment)
    - ReviewScore: per-criterion score inside a review
"""

from sqlalchemy import event, select

from blindreview.core.exceptions import ImmutableViolation
from blindreview.models import db
from blindreview.models.base import _iso, _utcnow, _uuid

# ── Constants ────────────────────────────────────────────────────────────────

ASSIGNMENT_STATUSES = {"assigned", "in_progress", "submitted", "conflict", "cancelled"}

# Statuses that do not count as workload or coverage
INVALID_ASSIGNMENT_STATUSES = ("conflict", "cancelled")

# Statuses from which the reviewer can still act
ACTIVE_ASSIGNMENT_STATUSES = ("assigned", "in_progress")

TERMINAL_ASSIGNMENT_STATUSES = ("submitted", "conflict", "cancelled")

# Valid status transitions for the evaluation lifecycle
ASSIGNMENT_TRANSITIONS = {
    "open": {"from": ["assigned"], "to": "in_progress"},
    "submit": {"from": ["in_progress"], "to": "submitted"},
    "declare_conflict": {"from": ["assigned", "in_progress"], "to": "conflict"},
    "cancel": {"from": ["assigned", "in_progress"], "to": "cancelled"},
}

RECOMMENDATIONS = {"approved", "approved_with_reservations", "not_approved"}


class Assignment(db.Model):
    """
    Reviewer assignment.

    A reviewer holds at most one non-cancelled assignment per proposal;
    the partial unique index below is the cross-session guard that makes
    concurrent distribution runs safe.
    """

    __tablename__ = "assignments"
    __table_args__ = (
        db.Index(
            "uq_assignment_active_pair", "proposal_id", "reviewer_id",
            unique=True,
            sqlite_where=db.text("status != 'cancelled'"),
            postgresql_where=db.text("status != 'cancelled'"),
        ),
        db.Index("ix_assignment_reviewer_status", "reviewer_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    proposal_id = db.Column(
        db.String(36), db.ForeignKey("proposals.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    reviewer_id = db.Column(db.String(36), nullable=False, index=True)
    assigned_by = db.Column(db.String(36), nullable=False)

    status = db.Column(
        db.String(20), nullable=False, default="assigned",
        comment="assigned | in_progress | submitted | conflict | cancelled",
    )
    conflict_declared = db.Column(db.Boolean, nullable=False, default=False)
    conflict_reason = db.Column(db.Text, nullable=True)

    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    proposal = db.relationship("Proposal", back_populates="assignments")
    review = db.relationship(
        "Review", back_populates="assignment", uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def is_active(self):
        return self.status in ACTIVE_ASSIGNMENT_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "proposal_id": self.proposal_id,
            "reviewer_id": self.reviewer_id,
            "assigned_by": self.assigned_by,
            "status": self.status,
            "conflict_declared": self.conflict_declared,
            "conflict_reason": self.conflict_reason,
            "assigned_at": _iso(self.assigned_at),
            "opened_at": _iso(self.opened_at),
            "submitted_at": _iso(self.submitted_at),
        }

    def __repr__(self):
        return f"<Assignment {self.reviewer_id}→{self.proposal_id} ({self.status})>"


class Review(db.Model):
    """Evaluation written by the reviewer of one assignment."""

    __tablename__ = "reviews"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    assignment_id = db.Column(
        db.String(36), db.ForeignKey("assignments.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    proposal_id = db.Column(db.String(36), nullable=False, index=True)

    overall_score = db.Column(db.Numeric(5, 2), nullable=True)
    recommendation = db.Column(
        db.String(40), nullable=True,
        comment="approved | approved_with_reservations | not_approved",
    )
    comments_to_committee = db.Column(db.Text, nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    assignment = db.relationship("Assignment", back_populates="review")
    scores = db.relationship(
        "ReviewScore", back_populates="review",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_scores=True):
        data = {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "proposal_id": self.proposal_id,
            "overall_score": float(self.overall_score) if self.overall_score is not None else None,
            "recommendation": self.recommendation,
            "comments_to_committee": self.comments_to_committee,
            "submitted_at": _iso(self.submitted_at),
        }
        if include_scores:
            data["scores"] = [s.to_dict() for s in self.scores]
        return data

    def __repr__(self):
        return f"<Review {self.id} score={self.overall_score}>"


class ReviewScore(db.Model):
    """Score for one criterion within a review."""

    __tablename__ = "review_scores"
    __table_args__ = (
        db.UniqueConstraint("review_id", "criterion_id", name="uq_review_score_criterion"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    review_id = db.Column(
        db.String(36), db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    criterion_id = db.Column(
        db.String(36), db.ForeignKey("criteria.id", ondelete="CASCADE"),
        nullable=False,
    )
    score = db.Column(db.Numeric(6, 2), nullable=False)
    comment = db.Column(db.Text, nullable=True)

    review = db.relationship("Review", back_populates="scores")
    criterion = db.relationship("Criterion")

    def to_dict(self):
        return {
            "criterion_id": self.criterion_id,
            "criterion_name": self.criterion.name if self.criterion else None,
            "score": float(self.score),
            "comment": self.comment,
        }


# ── Sealing guards ───────────────────────────────────────────────────────────
# A review whose submitted_at is already persisted is read-only, scores
# included. The submit itself (NULL → timestamp in one flush) passes.
# The stored row is consulted, not the in-memory state.

def _stored_submitted_at(connection, review_id):
    if review_id is None:
        return None
    reviews = Review.__table__
    return connection.execute(
        select(reviews.c.submitted_at).where(reviews.c.id == review_id)
    ).scalar()


def _refuse_sealed_review(operation):
    def _guard(mapper, connection, target):
        if _stored_submitted_at(connection, target.id) is not None:
            raise ImmutableViolation("Review", target.id, operation)
    return _guard


def _refuse_sealed_score(operation):
    def _guard(mapper, connection, target):
        review_id = target.review_id or (target.review.id if target.review else None)
        if _stored_submitted_at(connection, review_id) is not None:
            raise ImmutableViolation("ReviewScore", target.id, operation)
    return _guard


event.listen(Review, "before_update", _refuse_sealed_review("update"))
event.listen(Review, "before_delete", _refuse_sealed_review("delete"))
event.listen(ReviewScore, "before_insert", _refuse_sealed_score("insert"))
event.listen(ReviewScore, "before_update", _refuse_sealed_score("update"))
event.listen(ReviewScore, "before_delete", _refuse_sealed_score("delete"))
