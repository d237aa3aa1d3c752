"""
Results consolidation, committee decisions and post-closure identity reveal.

- review_summary: per-proposal consolidation for staff. Reviews are listed
  without reviewer identity; the average covers submitted reviews only.
- record_decision: accepted / rejected, upserted per proposal, audited.
- reveal_identities: unmasks applicants once a call is closed. Every reveal
  is stored as an IdentityReveal row and audited with its reason.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal

from blindreview.core.exceptions import NotFoundError, TransitionError, ValidationError
from blindreview.models import db
from blindreview.models.audit import AuditTrail
from blindreview.models.base import _utcnow
from blindreview.models.decision import DECISIONS, IdentityReveal, ProposalDecision
from blindreview.models.proposal import Proposal
from blindreview.models.review import INVALID_ASSIGNMENT_STATUSES, Assignment, Review
from blindreview.services import role_resolver
from blindreview.services.call_service import get_call
from blindreview.services.lifecycle import status_diff
from blindreview.services.notification import NotificationService
from blindreview.services.scoring import TWO_PLACES

logger = logging.getLogger(__name__)

DECIDABLE_STATUSES = ("under_review", "accepted", "rejected")


def _average(values):
    if not values:
        return None
    total = sum((Decimal(v) for v in values), Decimal(0))
    return (total / len(values)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _submitted_reviews(proposal_id: str) -> list[Review]:
    return (
        Review.query
        .join(Assignment, Review.assignment_id == Assignment.id)
        .filter(
            Review.proposal_id == proposal_id,
            Assignment.status == "submitted",
        )
        .order_by(Review.submitted_at, Review.id)
        .all()
    )


def review_summary(call_id: str, actor_id: str) -> dict:
    call = get_call(call_id)
    role_resolver.require_staff(actor_id, call.organization_id)

    proposals = (
        Proposal.query
        .filter(Proposal.call_id == call.id, Proposal.status != "draft")
        .order_by(Proposal.blind_code)
        .all()
    )

    rows = []
    for proposal in proposals:
        valid = [a for a in proposal.assignments if a.status not in INVALID_ASSIGNMENT_STATUSES]
        reviews = _submitted_reviews(proposal.id)
        recommendations = {}
        for r in reviews:
            recommendations[r.recommendation] = recommendations.get(r.recommendation, 0) + 1
        decision = ProposalDecision.query.filter_by(proposal_id=proposal.id).first()
        average = _average([r.overall_score for r in reviews if r.overall_score is not None])

        rows.append({
            "proposal_id": proposal.id,
            "blind_code": proposal.blind_code,
            "status": proposal.status,
            "valid_assignments": len(valid),
            "submitted_reviews": len(reviews),
            "average_score": float(average) if average is not None else None,
            "recommendations": recommendations,
            "reviews": [
                {"label": f"Review {n}", **r.to_dict()}
                for n, r in enumerate(reviews, start=1)
            ],
            "decision": decision.to_dict() if decision else None,
        })

    # Scored proposals first, highest average on top
    rows.sort(key=lambda r: (r["average_score"] is None, -(r["average_score"] or 0)))
    return {"call_id": call.id, "title": call.title, "status": call.status, "proposals": rows}


def record_decision(proposal_id: str, actor_id: str, decision: str,
                    justification: str | None = None) -> dict:
    proposal = db.session.get(Proposal, proposal_id)
    if proposal is None:
        raise NotFoundError("Proposal", proposal_id)
    role_resolver.require_staff(actor_id, proposal.organization_id)

    if decision not in DECISIONS:
        raise ValidationError("decision must be accepted or rejected",
                              details={"allowed": sorted(DECISIONS)})
    if proposal.status not in DECIDABLE_STATUSES:
        raise TransitionError("Proposal", proposal.id, "decide", proposal.status,
                              "proposal is not under review")
    if not _submitted_reviews(proposal.id):
        raise ValidationError("At least one submitted review is required before deciding",
                              details={"proposal_id": proposal.id})

    try:
        row = ProposalDecision.query.filter_by(proposal_id=proposal.id).first()
        if row is None:
            row = ProposalDecision(proposal_id=proposal.id)
            db.session.add(row)
        row.decision = decision
        row.justification = justification
        row.decided_by = actor_id
        row.decided_at = _utcnow()

        old = proposal.status
        proposal.status = decision
        AuditTrail.append(
            entity_type="proposal",
            entity_id=proposal.id,
            action="proposal.decision",
            actor=actor_id,
            organization_id=proposal.organization_id,
            metadata=status_diff(old, decision, justification=justification),
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Decision %s recorded for proposal %s", decision, proposal.id,
                extra={"proposal_id": proposal.id})
    NotificationService.dispatch_safely(
        recipients=[proposal.applicant_id],
        title="A decision was recorded on your proposal",
        message=f"Proposal {proposal.blind_code}: {decision}",
        category="decision",
        organization_id=proposal.organization_id,
        entity_type="proposal",
        entity_id=proposal.id,
    )
    return row.to_dict()


def reveal_identities(call_id: str, actor_id: str, reason: str) -> dict:
    """Map blind code → applicant identity for a closed call."""
    call = get_call(call_id)
    role_resolver.require_staff(actor_id, call.organization_id)
    if not call.is_closed:
        raise TransitionError("Call", call.id, "reveal_identities", call.status,
                              "identities can only be revealed after the call is closed")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to reveal identities",
                              details={"missing": ["reason"]})

    proposals = (
        Proposal.query
        .filter(Proposal.call_id == call.id, Proposal.status != "draft")
        .order_by(Proposal.blind_code)
        .all()
    )

    revealed = []
    try:
        for proposal in proposals:
            db.session.add(IdentityReveal(
                proposal_id=proposal.id,
                call_id=call.id,
                revealed_by=actor_id,
                reason=reason,
            ))
            profile = role_resolver.member_profile(proposal.applicant_id, call.organization_id)
            revealed.append({
                "proposal_id": proposal.id,
                "blind_code": proposal.blind_code,
                "applicant_id": proposal.applicant_id,
                "applicant": profile.identity() if profile else None,
            })
        AuditTrail.append(
            entity_type="call",
            entity_id=call.id,
            action="call.identity_reveal",
            actor=actor_id,
            organization_id=call.organization_id,
            metadata={"reason": reason, "proposal_count": len(proposals)},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.warning(
        "Applicant identities revealed for call %s (%d proposals)", call.id, len(proposals),
        extra={"event_type": "identity_reveal", "call_id": call.id},
    )
    return {"call_id": call.id, "reason": reason, "revealed": revealed}
