"""
Conflict Registry — declared and staff-recorded conflicts of interest.

A ConflictRecord ties a reviewer to a proposal, an applicant or an
institution. It is consulted at assignment time by both the automatic and
the manual distribution paths, so a record written after an assignment still
blocks every later re-assignment.

Declaring is a compound operation, committed once:
  1. insert the ConflictRecord
  2. move every matching active assignment of the reviewer to ``conflict``
     (conflict_declared + reason; never deleted)
  3. write audit entries for the record and each transition
Any failure rolls all of it back.

Usage:
    from blindreview.services import conflict_registry

    conflict_registry.has_conflict(reviewer_id, proposal_id)
    conflict_registry.declare(reviewer_id, proposal_id=pid, reason="co-author", actor_id=uid)
"""

import logging

from sqlalchemy import or_

from blindreview.core.exceptions import (
    NotAuthorized,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from blindreview.models import db
from blindreview.models.audit import AuditTrail
from blindreview.models.conflict import ConflictRecord
from blindreview.models.proposal import Proposal
from blindreview.models.review import (
    ACTIVE_ASSIGNMENT_STATUSES,
    ASSIGNMENT_TRANSITIONS,
    Assignment,
)
from blindreview.services import role_resolver
from blindreview.services.lifecycle import apply_transition, status_diff
from blindreview.services.notification import NotificationService

logger = logging.getLogger(__name__)


# ── Reads ─────────────────────────────────────────────────────────────────────


def applicant_institution(proposal: Proposal) -> str | None:
    profile = role_resolver.member_profile(proposal.applicant_id, proposal.organization_id)
    return profile.institution if profile else None


def _candidate_records(proposal: Proposal, reviewer_id: str | None = None):
    q = ConflictRecord.query_for_org(proposal.organization_id).filter(
        or_(
            ConflictRecord.proposal_id == proposal.id,
            ConflictRecord.applicant_id == proposal.applicant_id,
            ConflictRecord.institution.isnot(None),
        )
    )
    if reviewer_id is not None:
        q = q.filter(ConflictRecord.reviewer_id == reviewer_id)
    return q.all()


def has_conflict(reviewer_id: str, proposal_id: str) -> bool:
    """True when a record names the proposal, its applicant or the applicant's institution."""
    proposal = db.session.get(Proposal, proposal_id)
    if proposal is None:
        raise NotFoundError("Proposal", proposal_id)
    institution = applicant_institution(proposal)
    return any(
        rec.matches(proposal, institution)
        for rec in _candidate_records(proposal, reviewer_id)
    )


# ── Declare ───────────────────────────────────────────────────────────────────


def _matching_active_assignments(record: ConflictRecord) -> list[Assignment]:
    rows = (
        Assignment.query
        .join(Proposal, Assignment.proposal_id == Proposal.id)
        .filter(
            Assignment.reviewer_id == record.reviewer_id,
            Assignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
            Proposal.organization_id == record.organization_id,
        )
        .all()
    )
    if record.proposal_id is not None or record.applicant_id is not None:
        return [a for a in rows if record.matches(a.proposal)]
    return [a for a in rows if record.matches(a.proposal, applicant_institution(a.proposal))]


def declare(
    reviewer_id: str,
    *,
    reason: str,
    actor_id: str,
    proposal_id: str | None = None,
    applicant_id: str | None = None,
    institution: str | None = None,
    organization_id: str | None = None,
) -> dict:
    """
    Record a conflict and withdraw the reviewer from matching active work.

    Self-declared when ``actor_id == reviewer_id`` (caller must be a
    reviewer); otherwise staff-recorded (caller must be staff).

    Returns:
        {"record": dict, "withdrawn_assignment_ids": [str]}
    """
    targets = [t for t in (proposal_id, applicant_id, institution) if t]
    if len(targets) != 1:
        raise ValidationError(
            "Exactly one of proposal_id, applicant_id or institution is required",
            details={"targets_given": len(targets)},
        )
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to declare a conflict",
                              details={"missing": ["reason"]})

    if proposal_id:
        proposal = db.session.get(Proposal, proposal_id)
        if proposal is None:
            raise NotFoundError("Proposal", proposal_id)
        organization_id = proposal.organization_id
    elif not organization_id:
        raise ValidationError("organization_id is required for applicant or institution conflicts")

    self_declared = actor_id == reviewer_id
    if self_declared:
        role_resolver.require_reviewer(actor_id, organization_id)
    else:
        role_resolver.require_staff(actor_id, organization_id)

    withdrawn = []
    try:
        record = ConflictRecord(
            organization_id=organization_id,
            reviewer_id=reviewer_id,
            proposal_id=proposal_id,
            applicant_id=applicant_id,
            institution=institution.strip() if institution else None,
            reason=reason,
            source="self_declared" if self_declared else "staff_recorded",
            declared_by=actor_id,
        )
        db.session.add(record)
        db.session.flush()

        AuditTrail.append(
            entity_type="conflict_record",
            entity_id=record.id,
            action="conflict.declared" if self_declared else "conflict.recorded",
            actor=actor_id,
            organization_id=organization_id,
            metadata={
                "reviewer_id": reviewer_id,
                "target_type": record.target_type,
                "source": record.source,
            },
        )

        for assignment in _matching_active_assignments(record):
            old, new = apply_transition(
                assignment, "Assignment", "declare_conflict", ASSIGNMENT_TRANSITIONS,
            )
            assignment.conflict_declared = True
            assignment.conflict_reason = reason
            AuditTrail.append(
                entity_type="assignment",
                entity_id=assignment.id,
                action="assignment.declare_conflict",
                actor=actor_id,
                organization_id=organization_id,
                metadata=status_diff(old, new, conflict_record_id=record.id),
            )
            withdrawn.append(assignment)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Conflict %s for reviewer %s (%s), %d assignment(s) withdrawn",
        record.source, reviewer_id, record.target_type, len(withdrawn),
        extra={"event_type": "conflict_declared", "organization_id": organization_id},
    )

    staff_note = [] if self_declared else [reviewer_id]
    NotificationService.dispatch_safely(
        recipients=staff_note,
        title="Conflict of interest recorded",
        message=f"{len(withdrawn)} assignment(s) withdrawn",
        category="conflict",
        severity="warning",
        organization_id=organization_id,
        entity_type="conflict_record",
        entity_id=record.id,
    )

    return {
        "record": record.to_dict(),
        "withdrawn_assignment_ids": [a.id for a in withdrawn],
    }


def declare_on_assignment(assignment_id: str, reviewer_id: str, reason: str) -> dict:
    """Reviewer-side shortcut: declare a conflict with the proposal of one's own assignment."""
    assignment = db.session.get(Assignment, assignment_id)
    if assignment is None:
        raise NotFoundError("Assignment", assignment_id)
    if assignment.reviewer_id != reviewer_id:
        raise NotAuthorized("Caller is not the reviewer on this assignment", user_id=reviewer_id)
    if not assignment.is_active:
        raise TransitionError(
            "Assignment", assignment.id, "declare_conflict", assignment.status,
            "only assigned or in-progress assignments can be withdrawn",
        )
    return declare(
        reviewer_id,
        proposal_id=assignment.proposal_id,
        reason=reason,
        actor_id=reviewer_id,
    )
