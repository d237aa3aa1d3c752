"""
Conflict registry tests.

Tests cover:
  - reviewer self-declaration from an assignment (withdraws it, audited)
  - staff-recorded institution / applicant conflicts withdrawing matching work
  - has_conflict across proposal, applicant and institution targets
  - validation and authorization failures write nothing
"""

import pytest

from blindreview.core.exceptions import NotAuthorized, TransitionError, ValidationError
from blindreview.models.audit import AuditTrail
from blindreview.models.conflict import ConflictRecord
from blindreview.models.notification import Notification
from blindreview.services import conflict_registry

from conftest import ORG_ID


@pytest.fixture()
def world(manager, make_member, make_call, make_proposal, make_assignment):
    make_member("r1")
    make_member("r2")
    make_member("a1", role="applicant", full_name="Ana Lima", institution="Universidade Federal")
    make_member("a2", role="applicant", full_name="Bruno Reis", institution="Instituto Norte")
    call = make_call()
    p1 = make_proposal(call, applicant_id="a1", status="under_review")
    p2 = make_proposal(call, applicant_id="a2", status="under_review")
    return {
        "p1": p1,
        "p2": p2,
        "r1_p1": make_assignment(p1, "r1", status="in_progress"),
        "r1_p2": make_assignment(p2, "r1"),
    }


class TestSelfDeclared:
    def test_declare_on_assignment_withdraws_it(self, world):
        assignment = world["r1_p1"]

        result = conflict_registry.declare_on_assignment(assignment.id, "r1", "Former advisor")

        assert result["withdrawn_assignment_ids"] == [assignment.id]
        assert result["record"]["source"] == "self_declared"
        assert assignment.status == "conflict"
        assert assignment.conflict_declared is True
        assert assignment.conflict_reason == "Former advisor"
        assert world["r1_p2"].status == "assigned"

        actions = [e.action for e in AuditTrail.for_entity("assignment", assignment.id)]
        assert actions == ["assignment.declare_conflict"]
        record_log = AuditTrail.for_entity("conflict_record", result["record"]["id"])
        assert [e.action for e in record_log] == ["conflict.declared"]

    def test_not_own_assignment(self, world):
        with pytest.raises(NotAuthorized):
            conflict_registry.declare_on_assignment(world["r1_p1"].id, "r2", "reason")

    def test_reason_is_required(self, world):
        with pytest.raises(ValidationError):
            conflict_registry.declare_on_assignment(world["r1_p1"].id, "r1", "   ")
        assert ConflictRecord.query.count() == 0
        assert world["r1_p1"].status == "in_progress"

    def test_submitted_assignment_cannot_be_withdrawn(self, world, make_assignment):
        done = make_assignment(world["p1"], "r2", status="submitted")
        with pytest.raises(TransitionError):
            conflict_registry.declare_on_assignment(done.id, "r2", "late disclosure")


class TestStaffRecorded:
    def test_institution_conflict_withdraws_matching_work(self, world, manager):
        result = conflict_registry.declare(
            "r1", institution="universidade federal", reason="Same department",
            actor_id=manager, organization_id=ORG_ID,
        )

        assert result["withdrawn_assignment_ids"] == [world["r1_p1"].id]
        assert result["record"]["source"] == "staff_recorded"
        assert world["r1_p1"].status == "conflict"
        assert world["r1_p2"].status == "assigned"

        [note] = Notification.query.all()
        assert note.recipient_id == "r1"

    def test_applicant_conflict_blocks_future_pairs(self, world, manager):
        conflict_registry.declare(
            "r2", applicant_id="a2", reason="Family", actor_id=manager, organization_id=ORG_ID,
        )

        assert conflict_registry.has_conflict("r2", world["p2"].id) is True
        assert conflict_registry.has_conflict("r2", world["p1"].id) is False
        assert conflict_registry.has_conflict("r1", world["p2"].id) is False

    def test_only_staff_record_for_others(self, world):
        with pytest.raises(NotAuthorized):
            conflict_registry.declare("r1", proposal_id=world["p1"].id, reason="x", actor_id="r2")

    def test_exactly_one_target(self, world, manager):
        with pytest.raises(ValidationError):
            conflict_registry.declare(
                "r1", proposal_id=world["p1"].id, applicant_id="a1",
                reason="x", actor_id=manager,
            )
        with pytest.raises(ValidationError):
            conflict_registry.declare("r1", reason="x", actor_id=manager, organization_id=ORG_ID)
        assert ConflictRecord.query.count() == 0

    def test_audit_uses_recorded_action(self, world, manager):
        result = conflict_registry.declare(
            "r1", proposal_id=world["p2"].id, reason="Co-author", actor_id=manager,
        )
        [entry] = AuditTrail.for_entity("conflict_record", result["record"]["id"])
        assert entry.action == "conflict.recorded"
        assert entry.diff["target_type"] == "proposal"
