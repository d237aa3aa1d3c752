"""
Evaluation State Machine — the life of one reviewer ↔ proposal assignment.

    assigned ──open──▶ in_progress ──submit──▶ submitted      (terminal, sealed)
        │                  │
        └──────────────────┴──▶ conflict    (conflict_registry only, terminal)
        └──────────────────┴──▶ cancelled   (distribution.cancel_assignment, terminal)

Rules:
    - open is idempotent: an in-progress assignment stays as it is.
    - submit requires a recommendation and a score > 0 for every criterion of
      the call; otherwise ValidationError lists what is missing and nothing
      is written. Submitting straight from ``assigned`` opens first.
    - Scores are replaced on every save, never merged.
    - Any write after ``submitted`` raises ImmutableViolation; any write on a
      conflict / cancelled assignment raises TransitionError.

Usage:
    from blindreview.services import evaluation_lifecycle as ev

    ev.open_assignment(assignment_id, reviewer_id)
    ev.submit_review(assignment_id, reviewer_id, scores=[...], recommendation="approved")
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from blindreview.core.exceptions import (
    ImmutableViolation,
    NotAuthorized,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from blindreview.models import db
from blindreview.models.audit import AuditTrail
from blindreview.models.base import _iso
from blindreview.models.call import Call
from blindreview.models.proposal import Proposal
from blindreview.models.review import (
    ASSIGNMENT_TRANSITIONS,
    INVALID_ASSIGNMENT_STATUSES,
    RECOMMENDATIONS,
    Assignment,
    Review,
    ReviewScore,
)
from blindreview.services.lifecycle import apply_transition, status_diff
from blindreview.services.notification import NotificationService
from blindreview.services.scoring import score_review

logger = logging.getLogger(__name__)


# ── Guards ────────────────────────────────────────────────────────────────────


def _load_own_assignment(assignment_id: str, reviewer_id: str) -> Assignment:
    assignment = db.session.get(Assignment, assignment_id)
    if assignment is None:
        raise NotFoundError("Assignment", assignment_id)
    if assignment.reviewer_id != reviewer_id:
        raise NotAuthorized("Caller is not the reviewer on this assignment", user_id=reviewer_id)
    return assignment


def _ensure_writable(assignment: Assignment, action: str):
    if assignment.status == "submitted":
        raise ImmutableViolation("Assignment", assignment.id, action)
    if assignment.status in INVALID_ASSIGNMENT_STATUSES:
        raise TransitionError(
            "Assignment", assignment.id, action, assignment.status,
            "assignment has been withdrawn",
        )


def _open(assignment: Assignment, actor_id: str) -> bool:
    """assigned → in_progress; False when nothing changed."""
    if assignment.status == "in_progress":
        return False
    old, new = apply_transition(assignment, "Assignment", "open", ASSIGNMENT_TRANSITIONS)
    assignment.opened_at = datetime.now(timezone.utc)
    AuditTrail.append(
        entity_type="assignment",
        entity_id=assignment.id,
        action="assignment.open",
        actor=actor_id,
        organization_id=assignment.proposal.organization_id,
        metadata=status_diff(old, new),
    )
    return True


# ── Score input ───────────────────────────────────────────────────────────────


def _parse_scores(criteria, raw_scores) -> dict:
    """
    Validate ``[{"criterion_id", "score", "comment"?}]`` against the call's
    criteria.

    Returns:
        {criterion_id: (Decimal score, comment)}
    """
    by_id = {c.id: c for c in criteria}
    parsed = {}
    errors = []
    for item in raw_scores or []:
        criterion_id = (item or {}).get("criterion_id")
        criterion = by_id.get(criterion_id)
        if criterion is None:
            errors.append({"criterion_id": criterion_id, "error": "unknown criterion"})
            continue
        raw = item.get("score")
        if raw is None or raw == "":
            continue
        try:
            score = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            errors.append({"criterion_id": criterion_id, "error": "score is not a number"})
            continue
        if score < 0 or score > Decimal(str(criterion.max_score)):
            errors.append({
                "criterion_id": criterion_id,
                "error": f"score must be between 0 and {criterion.max_score}",
            })
            continue
        parsed[criterion_id] = (score, item.get("comment"))

    if errors:
        raise ValidationError("Invalid scores", details={"scores": errors})
    return parsed


def _missing_for_submit(criteria, parsed, recommendation) -> dict:
    missing = {}
    unscored = [
        {"criterion_id": c.id, "name": c.name}
        for c in criteria
        if c.id not in parsed or parsed[c.id][0] <= 0
    ]
    if unscored:
        missing["missing_scores"] = unscored
    if recommendation not in RECOMMENDATIONS:
        missing["missing"] = ["recommendation"]
    return missing


# ── Review upsert ─────────────────────────────────────────────────────────────


def _write_review(assignment: Assignment, criteria, parsed, recommendation, comments) -> Review:
    review = assignment.review
    if review is None:
        review = Review(assignment_id=assignment.id, proposal_id=assignment.proposal_id)
        db.session.add(review)
        assignment.review = review
    else:
        # Replace, never merge: drop old rows before inserting the new set
        review.scores.clear()
    db.session.flush()

    for criterion in criteria:
        if criterion.id in parsed:
            score, comment = parsed[criterion.id]
            review.scores.append(ReviewScore(criterion_id=criterion.id, score=score, comment=comment))

    review.recommendation = recommendation
    review.comments_to_committee = comments
    review.overall_score = score_review(criteria, {cid: s for cid, (s, _) in parsed.items()})
    # Scores must reach the table before submitted_at does; the sealing
    # guard reads the stored row
    db.session.flush()
    return review


# ── Public API ────────────────────────────────────────────────────────────────


def open_assignment(assignment_id: str, reviewer_id: str) -> dict:
    """First load by the reviewer; assigned → in_progress exactly once."""
    assignment = _load_own_assignment(assignment_id, reviewer_id)
    if assignment.status == "submitted":
        return assignment.to_dict()
    _ensure_writable(assignment, "open")

    if _open(assignment, reviewer_id):
        db.session.commit()
        logger.info("Assignment %s opened", assignment.id)
    return assignment.to_dict()


def save_review_draft(assignment_id: str, reviewer_id: str, *, scores=None,
                      recommendation=None, comments=None) -> dict:
    """Partial save; scores are range-checked but completeness is not required."""
    assignment = _load_own_assignment(assignment_id, reviewer_id)
    _ensure_writable(assignment, "save_draft")
    if recommendation is not None and recommendation not in RECOMMENDATIONS:
        raise ValidationError("Unknown recommendation",
                              details={"allowed": sorted(RECOMMENDATIONS)})

    criteria = assignment.proposal.call.criteria
    parsed = _parse_scores(criteria, scores)

    try:
        _open(assignment, reviewer_id)
        review = _write_review(assignment, criteria, parsed, recommendation, comments)
        AuditTrail.append(
            entity_type="review",
            entity_id=review.id,
            action="review.draft_saved",
            actor=reviewer_id,
            organization_id=assignment.proposal.organization_id,
            metadata={"assignment_id": assignment.id, "scored_criteria": len(parsed)},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return review.to_dict()


def submit_review(assignment_id: str, reviewer_id: str, *, scores, recommendation,
                  comments=None) -> dict:
    """
    Validate, score and seal a review.

    Returns:
        The submitted review (with its overall score) as a dict.
    """
    assignment = _load_own_assignment(assignment_id, reviewer_id)
    _ensure_writable(assignment, "submit")

    proposal = assignment.proposal
    criteria = proposal.call.criteria
    parsed = _parse_scores(criteria, scores)

    missing = _missing_for_submit(criteria, parsed, recommendation)
    if missing:
        raise ValidationError("Review is incomplete", details=missing)

    now = datetime.now(timezone.utc)
    try:
        _open(assignment, reviewer_id)
        review = _write_review(assignment, criteria, parsed, recommendation, comments)
        review.submitted_at = now

        old, new = apply_transition(assignment, "Assignment", "submit", ASSIGNMENT_TRANSITIONS)
        assignment.submitted_at = now
        AuditTrail.append(
            entity_type="assignment",
            entity_id=assignment.id,
            action="assignment.submit",
            actor=reviewer_id,
            organization_id=proposal.organization_id,
            metadata=status_diff(
                old, new,
                review_id=review.id,
                overall_score=str(review.overall_score),
                recommendation=recommendation,
            ),
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Review submitted for assignment %s (score=%s)", assignment.id, review.overall_score,
        extra={"event_type": "review_submitted", "proposal_id": proposal.id},
    )

    call = proposal.call
    NotificationService.dispatch_safely(
        recipients=[call.created_by] if call.created_by else [],
        title="Review submitted",
        message=f"Proposal {proposal.blind_code} received a review",
        category="review",
        severity="success",
        organization_id=call.organization_id,
        entity_type="proposal",
        entity_id=proposal.id,
    )
    return review.to_dict()


def get_review(assignment_id: str, reviewer_id: str) -> dict | None:
    """The reviewer's own review for an assignment, or None before first save."""
    assignment = _load_own_assignment(assignment_id, reviewer_id)
    return assignment.review.to_dict() if assignment.review else None


def reviewer_workload(reviewer_id: str, organization_id: str | None = None) -> list[dict]:
    """A reviewer's assignments, excluding conflict / cancelled, newest first."""
    q = (
        db.session.query(Assignment, Proposal, Call)
        .join(Proposal, Assignment.proposal_id == Proposal.id)
        .join(Call, Proposal.call_id == Call.id)
        .filter(
            Assignment.reviewer_id == reviewer_id,
            Assignment.status.notin_(INVALID_ASSIGNMENT_STATUSES),
        )
    )
    if organization_id:
        q = q.filter(Proposal.organization_id == organization_id)

    rows = q.order_by(Assignment.assigned_at.desc(), Assignment.id).all()
    return [
        {
            **assignment.to_dict(),
            "blind_code": proposal.blind_code,
            "knowledge_area": proposal.knowledge_area,
            "call_id": call.id,
            "call_title": call.title,
            "review_deadline": _iso(call.review_deadline),
        }
        for assignment, proposal, call in rows
    ]
