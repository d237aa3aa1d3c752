"""
Distribution Engine — reviewer ↔ proposal assignment.

One module owns every read the distribution decision needs: proposals of a
call with their live assignments, conflicted reviewers per proposal
(proposal, applicant and institution records) and the organization's active
reviewers with their current load inside the call. ``load_distribution_view``
returns that as a single pre-joined DistributionView; the automatic batch,
the manual path and the staff overview all work from it.

Automatic batch (``distribute_call``):
  1. for every proposal with valid coverage below the call minimum
       pool  = active reviewers − live assignees − conflicted reviewers
       rank  = (area mismatch, current load, stable member order)
       take  = min − valid count   (fewer available → still pending, not an error)
     insert ``assigned`` rows, bump the in-memory load at once so later
     proposals in the same run see it, move the proposal to under_review,
     commit per proposal
  2. one ``auto_distribution`` audit entry with covered / pending counts
Re-running is safe: the partial unique index on (proposal, reviewer) among
non-cancelled rows is the only cross-session guard, and a violation there
is AlreadySatisfied (debug log, counted as success).

Area matching is a heuristic: the first token of the proposal's knowledge
area must appear (case-insensitive substring) in the reviewer's declared
research area. It is not a taxonomy comparison.

Usage:
    from blindreview.services import distribution

    summary = distribution.distribute_call(call_id, actor_id=user_id)
    distribution.assign_reviewers(proposal_id, ["r1", "r2"], actor_id=user_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError

from blindreview.core.exceptions import (
    AlreadySatisfied,
    ConflictBlocked,
    NotFoundError,
    ValidationError,
)
from blindreview.models import db
from blindreview.models.audit import AuditTrail
from blindreview.models.call import DISTRIBUTABLE_CALL_STATUSES, Call
from blindreview.models.conflict import ConflictRecord
from blindreview.models.directory import OrganizationMember
from blindreview.models.proposal import DISTRIBUTABLE_STATUSES, Proposal
from blindreview.models.review import (
    ASSIGNMENT_TRANSITIONS,
    INVALID_ASSIGNMENT_STATUSES,
    Assignment,
)
from blindreview.services import role_resolver
from blindreview.services.lifecycle import apply_transition, status_diff
from blindreview.services.notification import NotificationService

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Read model
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class ReviewerSlot:
    """An active reviewer and their valid load within one call."""
    reviewer_id: str
    research_area: str | None
    load: int
    order: int

    def to_dict(self) -> dict:
        return {
            "reviewer_id": self.reviewer_id,
            "research_area": self.research_area,
            "load": self.load,
        }


@dataclass
class ProposalSlot:
    """A distributable proposal with its live assignments and blocked reviewers."""
    proposal: Proposal
    assignments: list[Assignment] = field(default_factory=list)
    conflicted_reviewer_ids: set[str] = field(default_factory=set)

    @property
    def proposal_id(self) -> str:
        return self.proposal.id

    @property
    def knowledge_area(self) -> str | None:
        return self.proposal.knowledge_area

    @property
    def valid_reviewer_ids(self) -> set[str]:
        return {a.reviewer_id for a in self.assignments if a.status not in INVALID_ASSIGNMENT_STATUSES}

    @property
    def live_reviewer_ids(self) -> set[str]:
        """Reviewers holding any non-cancelled row; the unique index blocks them."""
        return {a.reviewer_id for a in self.assignments if a.status != "cancelled"}

    @property
    def valid_count(self) -> int:
        return len(self.valid_reviewer_ids)

    @property
    def has_conflict_assignment(self) -> bool:
        return any(a.status == "conflict" for a in self.assignments)

    def needed(self, minimum: int) -> int:
        return max(minimum - self.valid_count, 0)

    def distribution_status(self, minimum: int) -> str:
        """conflict | none | partial | complete"""
        if self.has_conflict_assignment:
            return "conflict"
        if self.valid_count == 0:
            return "none"
        if self.valid_count < minimum:
            return "partial"
        return "complete"


@dataclass
class DistributionView:
    call: Call
    proposals: list[ProposalSlot]
    reviewers: list[ReviewerSlot]

    @property
    def minimum(self) -> int:
        return self.call.min_reviewers_per_proposal

    def reviewer(self, reviewer_id: str) -> ReviewerSlot | None:
        for slot in self.reviewers:
            if slot.reviewer_id == reviewer_id:
                return slot
        return None

    def proposal(self, proposal_id: str) -> ProposalSlot | None:
        for slot in self.proposals:
            if slot.proposal_id == proposal_id:
                return slot
        return None


def area_matches(proposal_area: str | None, reviewer_area: str | None) -> bool:
    """First token of the proposal area contained in the reviewer's area."""
    if not proposal_area or not reviewer_area:
        return False
    tokens = proposal_area.split()
    if not tokens:
        return False
    return tokens[0].casefold() in reviewer_area.casefold()


def _applicant_institutions(organization_id: str, applicant_ids: set[str]) -> dict[str, str | None]:
    if not applicant_ids:
        return {}
    rows = (
        OrganizationMember.query_for_org(organization_id)
        .filter(OrganizationMember.user_id.in_(applicant_ids))
        .order_by(OrganizationMember.created_at, OrganizationMember.id)
        .all()
    )
    institutions: dict[str, str | None] = {}
    for row in rows:
        institutions.setdefault(row.user_id, row.institution)
    return institutions


def load_distribution_view(call: Call) -> DistributionView:
    """Pre-joined read model for one call; four queries regardless of size."""
    proposals = (
        Proposal.query
        .filter(Proposal.call_id == call.id, Proposal.status.in_(DISTRIBUTABLE_STATUSES))
        .order_by(Proposal.submitted_at, Proposal.blind_code, Proposal.id)
        .all()
    )

    # Every assignment in the call counts toward reviewer load, whatever the
    # proposal's status
    call_assignments = (
        Assignment.query
        .join(Proposal, Assignment.proposal_id == Proposal.id)
        .filter(Proposal.call_id == call.id)
        .order_by(Assignment.assigned_at, Assignment.id)
        .all()
    )
    by_proposal: dict[str, list[Assignment]] = {}
    load: dict[str, int] = {}
    for a in call_assignments:
        by_proposal.setdefault(a.proposal_id, []).append(a)
        if a.status not in INVALID_ASSIGNMENT_STATUSES:
            load[a.reviewer_id] = load.get(a.reviewer_id, 0) + 1

    records = ConflictRecord.query_for_org(call.organization_id).all()
    institutions = _applicant_institutions(
        call.organization_id, {p.applicant_id for p in proposals},
    )

    slots = []
    for p in proposals:
        institution = institutions.get(p.applicant_id)
        slots.append(ProposalSlot(
            proposal=p,
            assignments=by_proposal.get(p.id, []),
            conflicted_reviewer_ids={r.reviewer_id for r in records if r.matches(p, institution)},
        ))

    reviewers = [
        ReviewerSlot(
            reviewer_id=m.user_id,
            research_area=m.research_area,
            load=load.get(m.user_id, 0),
            order=i,
        )
        for i, m in enumerate(role_resolver.active_reviewers(call.organization_id))
    ]
    return DistributionView(call=call, proposals=slots, reviewers=reviewers)


def rank_candidates(slot: ProposalSlot, reviewers: list[ReviewerSlot]) -> list[ReviewerSlot]:
    """Eligible pool for ``slot`` ordered by (area mismatch, load, member order)."""
    excluded = slot.live_reviewer_ids | slot.conflicted_reviewer_ids
    pool = [r for r in reviewers if r.reviewer_id not in excluded]
    return sorted(
        pool,
        key=lambda r: (
            0 if area_matches(slot.knowledge_area, r.research_area) else 1,
            r.load,
            r.order,
        ),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Writes
# ═════════════════════════════════════════════════════════════════════════════


def _get_call(call_id: str) -> Call:
    call = db.session.get(Call, call_id)
    if call is None:
        raise NotFoundError("Call", call_id)
    return call


def _require_distributable_call(call: Call):
    if call.status not in DISTRIBUTABLE_CALL_STATUSES:
        raise ValidationError(
            "Reviewers cannot be distributed on a draft call",
            details={"call_id": call.id, "status": call.status},
        )


def _insert_assignment(proposal: Proposal, reviewer_id: str, actor_id: str) -> Assignment:
    """
    Insert one ``assigned`` row inside a savepoint.

    Raises:
        AlreadySatisfied: the (proposal, reviewer) pair already has a live row.
    """
    try:
        with db.session.begin_nested():
            assignment = Assignment(
                proposal_id=proposal.id,
                reviewer_id=reviewer_id,
                assigned_by=actor_id,
                status="assigned",
            )
            db.session.add(assignment)
            db.session.flush()
    except IntegrityError as exc:
        raise AlreadySatisfied(proposal.id, reviewer_id) from exc

    AuditTrail.append(
        entity_type="assignment",
        entity_id=assignment.id,
        action="assignment.create",
        actor=actor_id,
        organization_id=proposal.organization_id,
        metadata=status_diff(None, "assigned", proposal_id=proposal.id, reviewer_id=reviewer_id),
    )
    return assignment


def _mark_under_review(proposal: Proposal, actor_id: str):
    if proposal.status != "submitted":
        return
    proposal.status = "under_review"
    AuditTrail.append(
        entity_type="proposal",
        entity_id=proposal.id,
        action="proposal.under_review",
        actor=actor_id,
        organization_id=proposal.organization_id,
        metadata=status_diff("submitted", "under_review"),
    )


def _notify_assigned(call: Call, assignments: list[Assignment]):
    NotificationService.dispatch_safely(
        recipients=sorted({a.reviewer_id for a in assignments}),
        title="New proposal assigned for review",
        message=f"Call: {call.title}",
        category="assignment",
        organization_id=call.organization_id,
        entity_type="call",
        entity_id=call.id,
    )


def distribute_call(call_id: str, actor_id: str) -> dict:
    """
    Automatic batch distribution over every under-covered proposal of a call.

    Commits per proposal; an interrupted run keeps what it committed and a
    re-run only fills what is still missing.

    Returns:
        {"call_id", "proposals_considered", "assignments_created",
         "already_satisfied", "fully_covered", "pending", "proposals": [...]}
    """
    call = _get_call(call_id)
    role_resolver.require_staff(actor_id, call.organization_id)
    _require_distributable_call(call)

    view = load_distribution_view(call)
    minimum = view.minimum

    created: list[Assignment] = []
    considered = covered = pending = already = 0
    outcomes = []

    for slot in view.proposals:
        needed = slot.needed(minimum)
        if needed == 0:
            continue
        considered += 1

        added = satisfied = 0
        for reviewer in rank_candidates(slot, view.reviewers)[:needed]:
            try:
                created.append(_insert_assignment(slot.proposal, reviewer.reviewer_id, actor_id))
                added += 1
            except AlreadySatisfied as exc:
                logger.debug("Distribution skip: %s", exc)
                satisfied += 1
            reviewer.load += 1

        if added:
            _mark_under_review(slot.proposal, actor_id)
        db.session.commit()

        already += satisfied
        if added + satisfied >= needed:
            covered += 1
        else:
            pending += 1
        outcomes.append({
            "proposal_id": slot.proposal_id,
            "blind_code": slot.proposal.blind_code,
            "needed": needed,
            "added": added,
            "already_satisfied": satisfied,
        })

    AuditTrail.append(
        entity_type="call",
        entity_id=call.id,
        action="auto_distribution",
        actor=actor_id,
        organization_id=call.organization_id,
        metadata={
            "completed": covered,
            "pending": pending,
            "assignments_created": len(created),
            "min_reviewers_per_proposal": minimum,
        },
    )
    db.session.commit()

    logger.info(
        "Auto-distribution on call %s: %d created, %d covered, %d pending",
        call.id, len(created), covered, pending,
        extra={"event_type": "auto_distribution", "call_id": call.id},
    )
    _notify_assigned(call, created)

    return {
        "call_id": call.id,
        "proposals_considered": considered,
        "assignments_created": len(created),
        "already_satisfied": already,
        "fully_covered": covered,
        "pending": pending,
        "proposals": outcomes,
    }


def assign_reviewers(proposal_id: str, reviewer_ids: list[str], actor_id: str) -> dict:
    """
    Manual assignment of an explicit reviewer set to one proposal.

    The whole request is rejected with ConflictBlocked when any selected
    reviewer has a recorded conflict. Reviewers already holding a live row
    are reported back as already satisfied.
    """
    proposal = db.session.get(Proposal, proposal_id)
    if proposal is None:
        raise NotFoundError("Proposal", proposal_id)
    call = proposal.call
    role_resolver.require_staff(actor_id, call.organization_id)
    _require_distributable_call(call)

    if proposal.status not in DISTRIBUTABLE_STATUSES:
        raise ValidationError(
            "Only submitted or under-review proposals can receive reviewers",
            details={"proposal_id": proposal.id, "status": proposal.status},
        )

    requested = list(dict.fromkeys(r for r in (reviewer_ids or []) if r))
    if not requested:
        raise ValidationError("At least one reviewer is required", details={"missing": ["reviewer_ids"]})

    view = load_distribution_view(call)
    slot = view.proposal(proposal.id)

    unknown = [r for r in requested if view.reviewer(r) is None]
    if unknown:
        raise ValidationError(
            "Selected users are not active reviewers of this organization",
            details={"not_reviewers": unknown},
        )

    blocked = [r for r in requested if r in slot.conflicted_reviewer_ids]
    if blocked:
        logger.info(
            "Manual assignment rejected for proposal %s: %d conflicted reviewer(s)",
            proposal.id, len(blocked),
            extra={"event_type": "conflict_blocked", "proposal_id": proposal.id},
        )
        raise ConflictBlocked(proposal.id, blocked)

    created: list[Assignment] = []
    already = [r for r in requested if r in slot.live_reviewer_ids]
    try:
        for reviewer_id in requested:
            if reviewer_id in already:
                continue
            try:
                created.append(_insert_assignment(proposal, reviewer_id, actor_id))
            except AlreadySatisfied as exc:
                logger.debug("Manual assignment skip: %s", exc)
                already.append(reviewer_id)

        if created:
            _mark_under_review(proposal, actor_id)
        AuditTrail.append(
            entity_type="proposal",
            entity_id=proposal.id,
            action="manual_assignment",
            actor=actor_id,
            organization_id=proposal.organization_id,
            metadata={
                "reviewer_count": len(created),
                "already_satisfied": len(already),
                "call_id": call.id,
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Manual assignment on proposal %s: %d created", proposal.id, len(created),
        extra={"event_type": "manual_assignment", "proposal_id": proposal.id},
    )
    _notify_assigned(call, created)

    return {
        "proposal_id": proposal.id,
        "assigned": [a.to_dict() for a in created],
        "already_satisfied": already,
    }


def cancel_assignment(assignment_id: str, actor_id: str, reason: str | None = None) -> dict:
    """Staff withdrawal of an assigned / in-progress assignment; frees the pair."""
    assignment = db.session.get(Assignment, assignment_id)
    if assignment is None:
        raise NotFoundError("Assignment", assignment_id)
    proposal = assignment.proposal
    role_resolver.require_staff(actor_id, proposal.organization_id)

    try:
        old, new = apply_transition(
            assignment, "Assignment", "cancel", ASSIGNMENT_TRANSITIONS,
            sealed_statuses=("submitted",),
        )
        AuditTrail.append(
            entity_type="assignment",
            entity_id=assignment.id,
            action="assignment.cancel",
            actor=actor_id,
            organization_id=proposal.organization_id,
            metadata=status_diff(old, new, reason=reason, proposal_id=proposal.id,
                                 call_id=proposal.call_id),
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Assignment %s cancelled by %s", assignment.id, actor_id)
    return assignment.to_dict()


def distribution_overview(call_id: str, actor_id: str) -> dict:
    """Per-proposal coverage status plus aggregate stats for staff."""
    call = _get_call(call_id)
    role_resolver.require_staff(actor_id, call.organization_id)

    view = load_distribution_view(call)
    minimum = view.minimum
    order = {"conflict": 0, "none": 1, "partial": 2, "complete": 3}

    rows = []
    stats = {"insufficient": 0, "ready": 0, "conflicts_pending": 0, "total_assignments": 0}
    for slot in view.proposals:
        status = slot.distribution_status(minimum)
        if slot.valid_count < minimum:
            stats["insufficient"] += 1
        if status == "complete":
            stats["ready"] += 1
        if status == "conflict":
            stats["conflicts_pending"] += 1
        stats["total_assignments"] += slot.valid_count
        rows.append({
            "proposal_id": slot.proposal_id,
            "blind_code": slot.proposal.blind_code,
            "knowledge_area": slot.knowledge_area,
            "proposal_status": slot.proposal.status,
            "distribution_status": status,
            "valid_count": slot.valid_count,
            "conflicted_reviewer_ids": sorted(slot.conflicted_reviewer_ids),
            "assignments": [
                {"id": a.id, "reviewer_id": a.reviewer_id, "status": a.status}
                for a in slot.assignments if a.status != "cancelled"
            ],
        })

    rows.sort(key=lambda r: order[r["distribution_status"]])
    return {
        "call_id": call.id,
        "min_reviewers_per_proposal": minimum,
        "stats": stats,
        "proposals": rows,
        "reviewers": [r.to_dict() for r in view.reviewers],
    }
