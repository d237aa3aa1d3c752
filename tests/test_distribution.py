"""
Distribution engine tests.

Tests cover:
  - automatic batch coverage and idempotent re-runs
  - conflict exclusion (proposal, applicant, institution records)
  - area-matched ranking and batch-aware load balancing
  - concurrent insert race → AlreadySatisfied, never a duplicate
  - manual assignment: ConflictBlocked, already-satisfied, unknown reviewer
  - cancellation and the staff overview
"""

import pytest

from blindreview.core.exceptions import (
    ConflictBlocked,
    ImmutableViolation,
    NotAuthorized,
    ValidationError,
)
from blindreview.models import db
from blindreview.models.audit import AuditTrail
from blindreview.models.conflict import ConflictRecord
from blindreview.models.notification import Notification
from blindreview.models.review import Assignment
from blindreview.services import call_service, conflict_registry, distribution

from conftest import MANAGER_ID, ORG_ID


# ── Helpers ─────────────────────────────────────────────────────────────


def _reviewers_of(proposal, valid_only=True):
    q = Assignment.query.filter_by(proposal_id=proposal.id)
    if valid_only:
        q = q.filter(Assignment.status.notin_(("conflict", "cancelled")))
    return {a.reviewer_id for a in q.all()}


def _record_conflict(reviewer_id, **target):
    record = ConflictRecord(
        organization_id=ORG_ID,
        reviewer_id=reviewer_id,
        reason="co-author",
        source="staff_recorded",
        declared_by=MANAGER_ID,
        **target,
    )
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture()
def reviewers(make_member):
    ids = ["r1", "r2", "r3", "r4"]
    for uid in ids:
        make_member(uid)
    return ids


# ═════════════════════════════════════════════════════════════════════════
# AUTOMATIC DISTRIBUTION
# ═════════════════════════════════════════════════════════════════════════


class TestAutomaticDistribution:
    def test_covers_every_proposal(self, manager, reviewers, make_call, make_proposal):
        call = make_call(min_reviewers_per_proposal=2)
        p1 = make_proposal(call)
        p2 = make_proposal(call)

        result = distribution.distribute_call(call.id, manager)

        assert result["assignments_created"] == 4
        assert result["fully_covered"] == 2
        assert result["pending"] == 0
        assert _reviewers_of(p1) == {"r1", "r2"}
        assert _reviewers_of(p2) == {"r3", "r4"}
        assert p1.status == "under_review"
        assert p2.status == "under_review"

    def test_rerun_creates_nothing(self, manager, reviewers, make_call, make_proposal):
        call = make_call(min_reviewers_per_proposal=2)
        make_proposal(call)
        make_proposal(call)

        distribution.distribute_call(call.id, manager)
        second = distribution.distribute_call(call.id, manager)

        assert second["assignments_created"] == 0
        assert second["proposals_considered"] == 0
        assert Assignment.query.count() == 4

    def test_pair_is_never_duplicated(self, manager, reviewers, make_call, make_proposal):
        call = make_call(min_reviewers_per_proposal=3)
        for _ in range(3):
            make_proposal(call)

        distribution.distribute_call(call.id, manager)
        distribution.distribute_call(call.id, manager)

        pairs = [(a.proposal_id, a.reviewer_id) for a in Assignment.query.all()]
        assert len(pairs) == len(set(pairs))

    def test_conflicted_reviewers_are_excluded(self, manager, make_member, make_call, make_proposal):
        for uid in ("r1", "r2", "r3", "r4", "r5"):
            make_member(uid)
        make_member("applicant-2", role="applicant", institution="Universidade Federal")
        call = make_call(min_reviewers_per_proposal=2)
        proposal = make_proposal(call, applicant_id="applicant-2")

        _record_conflict("r1", proposal_id=proposal.id)
        _record_conflict("r2", institution=" universidade federal")
        _record_conflict("r3", applicant_id="applicant-2")

        distribution.distribute_call(call.id, manager)

        assert _reviewers_of(proposal) == {"r4", "r5"}

    def test_area_matched_reviewers_rank_first(self, manager, make_member, make_call, make_proposal):
        make_member("r1", research_area="Physics")
        make_member("r2", research_area="Marine Biology")
        make_member("r3", research_area="biology and ecology")
        make_member("r4")
        call = make_call(min_reviewers_per_proposal=2)
        proposal = make_proposal(call, knowledge_area="Biology molecular")

        distribution.distribute_call(call.id, manager)

        assert _reviewers_of(proposal) == {"r2", "r3"}

    def test_load_is_balanced_within_one_batch(self, manager, make_member, make_call, make_proposal):
        for uid in ("r1", "r2", "r3"):
            make_member(uid)
        call = make_call(min_reviewers_per_proposal=2)
        for _ in range(3):
            make_proposal(call)

        distribution.distribute_call(call.id, manager)

        for uid in ("r1", "r2", "r3"):
            assert Assignment.query.filter_by(reviewer_id=uid).count() == 2

    def test_short_pool_leaves_proposal_pending(self, manager, make_member, make_call, make_proposal):
        make_member("r1")
        call = make_call(min_reviewers_per_proposal=2)
        proposal = make_proposal(call)

        result = distribution.distribute_call(call.id, manager)

        assert result["assignments_created"] == 1
        assert result["pending"] == 1
        assert result["fully_covered"] == 0
        assert proposal.status == "under_review"

    def test_run_is_audited_and_reviewers_notified(self, manager, reviewers, make_call, make_proposal):
        call = make_call(min_reviewers_per_proposal=2)
        make_proposal(call)

        distribution.distribute_call(call.id, manager)

        [entry] = [e for e in AuditTrail.for_entity("call", call.id) if e.action == "auto_distribution"]
        assert entry.actor == manager
        assert entry.diff["completed"] == 1
        assert entry.diff["pending"] == 0
        assert entry.diff["assignments_created"] == 2
        assert {n.recipient_id for n in Notification.query.all()} == {"r1", "r2"}

    def test_concurrent_insert_is_already_satisfied(self, manager, make_member, make_call,
                                                    make_proposal, make_assignment, monkeypatch):
        make_member("r1")
        make_member("r2")
        call = make_call(min_reviewers_per_proposal=2)
        proposal = make_proposal(call)

        # Another run reads the same state, then commits r1 first
        stale = distribution.load_distribution_view(call)
        make_assignment(proposal, "r1")
        monkeypatch.setattr(distribution, "load_distribution_view", lambda c: stale)

        result = distribution.distribute_call(call.id, manager)

        assert result["already_satisfied"] == 1
        assert result["assignments_created"] == 1
        assert result["fully_covered"] == 1
        assert Assignment.query.filter_by(proposal_id=proposal.id, reviewer_id="r1").count() == 1
        assert _reviewers_of(proposal) == {"r1", "r2"}

    def test_requires_staff(self, reviewers, make_call, make_proposal):
        call = make_call()
        make_proposal(call)
        with pytest.raises(NotAuthorized):
            distribution.distribute_call(call.id, "r1")

    def test_draft_call_is_rejected(self, manager, reviewers, make_call):
        call = make_call(status="draft")
        with pytest.raises(ValidationError):
            distribution.distribute_call(call.id, manager)

    def test_closed_call_is_redistributed_after_conflict(self, manager, reviewers, make_call,
                                                         make_proposal):
        call = make_call(min_reviewers_per_proposal=2)
        proposal = make_proposal(call)
        distribution.distribute_call(call.id, manager)
        call_service.transition_call(call.id, "close", manager)

        withdrawn = Assignment.query.filter_by(proposal_id=proposal.id, reviewer_id="r1").one()
        conflict_registry.declare_on_assignment(withdrawn.id, "r1", "former supervisor")
        assert _reviewers_of(proposal) == {"r2"}

        result = distribution.distribute_call(call.id, manager)

        assert call.status == "closed"
        assert result["assignments_created"] == 1
        assert result["fully_covered"] == 1
        assert _reviewers_of(proposal) == {"r2", "r3"}

    def test_drafts_are_not_distributed(self, manager, reviewers, make_call, make_proposal):
        call = make_call()
        draft = make_proposal(call, status="draft")

        result = distribution.distribute_call(call.id, manager)

        assert result["proposals_considered"] == 0
        assert _reviewers_of(draft) == set()


class TestEndToEnd:
    @pytest.fixture()
    def pool(self, make_member, make_call, make_proposal, make_assignment):
        call = make_call(min_reviewers_per_proposal=3)
        for uid in ("u1", "u2", "u3"):
            make_member(uid, research_area="Physics")
        for uid in ("m1", "m2"):
            make_member(uid, research_area="Molecular Biology")

        # Finished proposal carrying one submitted review per unmatched reviewer
        done = make_proposal(call, status="accepted")
        for uid in ("u1", "u2", "u3"):
            make_assignment(done, uid, status="submitted")
        return call

    def test_matched_reviewers_fill_remaining_slots(self, manager, pool, make_member,
                                                    make_proposal, make_assignment):
        make_member("x1", research_area="Chemistry")
        proposal = make_proposal(pool, knowledge_area="Biology and Health")
        make_assignment(proposal, "x1")

        result = distribution.distribute_call(pool.id, manager)

        assert result["assignments_created"] == 2
        assert _reviewers_of(proposal) == {"x1", "m1", "m2"}
        assert proposal.status == "under_review"

    def test_least_loaded_unmatched_reviewer_completes_coverage(self, manager, pool, make_proposal):
        proposal = make_proposal(pool, knowledge_area="Biology and Health")

        distribution.distribute_call(pool.id, manager)

        chosen = _reviewers_of(proposal)
        assert {"m1", "m2"} <= chosen
        assert len(chosen) == 3
        # Equal load among unmatched: member order decides
        assert chosen - {"m1", "m2"} == {"u1"}
        assert proposal.status == "under_review"


# ═════════════════════════════════════════════════════════════════════════
# MANUAL ASSIGNMENT & CANCELLATION
# ═════════════════════════════════════════════════════════════════════════


class TestManualAssignment:
    def test_assigns_selected_reviewers(self, manager, reviewers, make_call, make_proposal):
        proposal = make_proposal(make_call())

        result = distribution.assign_reviewers(proposal.id, ["r3", "r4"], manager)

        assert {a["reviewer_id"] for a in result["assigned"]} == {"r3", "r4"}
        assert result["already_satisfied"] == []
        assert proposal.status == "under_review"
        [entry] = AuditTrail.query(action="manual_assignment").all()
        assert entry.diff["reviewer_count"] == 2

    def test_conflicted_reviewer_blocks_whole_request(self, manager, reviewers, make_call, make_proposal):
        proposal = make_proposal(make_call())
        _record_conflict("r1", proposal_id=proposal.id)

        with pytest.raises(ConflictBlocked) as exc:
            distribution.assign_reviewers(proposal.id, ["r1", "r2"], manager)

        assert exc.value.reviewer_ids == ["r1"]
        assert Assignment.query.count() == 0

    def test_existing_pair_is_already_satisfied(self, manager, reviewers, make_call,
                                                make_proposal, make_assignment):
        proposal = make_proposal(make_call())
        make_assignment(proposal, "r1")

        result = distribution.assign_reviewers(proposal.id, ["r1", "r2"], manager)

        assert [a["reviewer_id"] for a in result["assigned"]] == ["r2"]
        assert result["already_satisfied"] == ["r1"]
        assert Assignment.query.filter_by(reviewer_id="r1").count() == 1

    def test_unknown_reviewer_is_rejected(self, manager, reviewers, make_call, make_proposal):
        proposal = make_proposal(make_call())
        with pytest.raises(ValidationError) as exc:
            distribution.assign_reviewers(proposal.id, ["nobody"], manager)
        assert exc.value.details["not_reviewers"] == ["nobody"]

    def test_closed_call_accepts_manual_assignment(self, manager, reviewers, make_call, make_proposal):
        proposal = make_proposal(make_call(status="closed"))

        result = distribution.assign_reviewers(proposal.id, ["r1"], manager)

        assert [a["reviewer_id"] for a in result["assigned"]] == ["r1"]
        assert proposal.status == "under_review"

    def test_empty_selection_is_rejected(self, manager, reviewers, make_call, make_proposal):
        proposal = make_proposal(make_call())
        with pytest.raises(ValidationError):
            distribution.assign_reviewers(proposal.id, [], manager)


class TestCancellation:
    def test_cancel_frees_the_pair(self, manager, reviewers, make_call, make_proposal, make_assignment):
        proposal = make_proposal(make_call())
        assignment = make_assignment(proposal, "r1")

        assert distribution.cancel_assignment(assignment.id, manager, "reviewer on leave")["status"] == "cancelled"
        result = distribution.assign_reviewers(proposal.id, ["r1"], manager)

        assert len(result["assigned"]) == 1
        assert Assignment.query.filter_by(reviewer_id="r1").count() == 2

    def test_submitted_assignment_cannot_be_cancelled(self, manager, reviewers, make_call,
                                                      make_proposal, make_assignment):
        assignment = make_assignment(make_proposal(make_call()), "r1", status="submitted")
        with pytest.raises(ImmutableViolation):
            distribution.cancel_assignment(assignment.id, manager)


class TestOverview:
    def test_rows_sorted_by_coverage(self, manager, reviewers, make_call, make_proposal, make_assignment):
        call = make_call(min_reviewers_per_proposal=2)
        complete = make_proposal(call)
        make_assignment(complete, "r1")
        make_assignment(complete, "r2")
        partial = make_proposal(call)
        make_assignment(partial, "r3")
        empty = make_proposal(call)
        conflicted = make_proposal(call)
        make_assignment(conflicted, "r4", status="conflict")

        overview = distribution.distribution_overview(call.id, manager)

        assert [r["proposal_id"] for r in overview["proposals"]] == [
            conflicted.id, empty.id, partial.id, complete.id,
        ]
        assert overview["stats"] == {
            "insufficient": 3, "ready": 1, "conflicts_pending": 1, "total_assignments": 3,
        }
