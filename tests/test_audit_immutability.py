"""
Immutability guard tests.

The audit log is append-only and a submitted review is sealed; both are
enforced below the services, so direct ORM writes must fail as well.
"""

import pytest
from sqlalchemy import delete, update

from blindreview.core.exceptions import ImmutableViolation
from blindreview.models import db
from blindreview.models.audit import AuditLog, AuditTrail
from blindreview.models.review import Review, ReviewScore
from blindreview.services import evaluation_lifecycle as ev


@pytest.fixture()
def entry():
    log = AuditTrail.append(
        entity_type="call", entity_id="call-1", action="call.create",
        actor="manager-1", organization_id="org-1", metadata={"title": "Grants"},
    )
    db.session.commit()
    return log


class TestAuditTrail:
    def test_append_and_read_back(self, entry):
        [log] = AuditTrail.for_entity("call", "call-1")
        assert log.to_dict()["metadata"] == {"title": "Grants"}
        assert log.actor == "manager-1"

    def test_unknown_action_is_refused(self):
        with pytest.raises(ValueError):
            AuditTrail.append(entity_type="call", entity_id="x", action="call.rename")

    def test_unknown_entity_type_is_refused(self):
        with pytest.raises(ValueError):
            AuditTrail.append(entity_type="criterion", entity_id="x", action="call.create")
        assert AuditLog.query.count() == 0

    def test_query_filters_by_action_prefix(self, entry):
        AuditTrail.append(entity_type="call", entity_id="call-1", action="auto_distribution",
                          organization_id="org-1")
        db.session.commit()

        assert [e.action for e in AuditTrail.query(action="call.").all()] == ["call.create"]
        assert AuditTrail.query(organization_id="org-2").count() == 0


class TestAuditGuards:
    def test_update_is_refused(self, entry):
        entry.actor = "someone-else"
        with pytest.raises(ImmutableViolation):
            db.session.commit()
        db.session.rollback()
        assert AuditTrail.for_entity("call", "call-1")[0].actor == "manager-1"

    def test_delete_is_refused(self, entry):
        db.session.delete(entry)
        with pytest.raises(ImmutableViolation):
            db.session.commit()
        db.session.rollback()
        assert AuditLog.query.count() == 1

    def test_bulk_update_is_refused(self, entry):
        with pytest.raises(ImmutableViolation):
            db.session.execute(update(AuditLog).values(actor="x"))
        db.session.rollback()

    def test_bulk_delete_is_refused(self, entry):
        with pytest.raises(ImmutableViolation):
            db.session.execute(delete(AuditLog))
        db.session.rollback()
        assert AuditLog.query.count() == 1


class TestSealedReview:
    @pytest.fixture()
    def review(self, manager, make_member, make_call, make_proposal, make_assignment):
        make_member("r1")
        call = make_call(criteria=(("Merit", 10, 1),))
        assignment = make_assignment(make_proposal(call), "r1")
        ev.submit_review(
            assignment.id, "r1",
            scores=[{"criterion_id": call.criteria[0].id, "score": 7}],
            recommendation="approved",
        )
        return Review.query.filter_by(assignment_id=assignment.id).one()

    def test_draft_review_stays_editable(self, manager, make_member, make_call,
                                         make_proposal, make_assignment):
        make_member("r1")
        call = make_call()
        assignment = make_assignment(make_proposal(call), "r1")
        ev.save_review_draft(assignment.id, "r1", comments="first pass")

        draft = Review.query.filter_by(assignment_id=assignment.id).one()
        draft.comments_to_committee = "second pass"
        db.session.commit()
        assert draft.comments_to_committee == "second pass"

    def test_update_is_refused(self, review):
        review.recommendation = "not_approved"
        with pytest.raises(ImmutableViolation):
            db.session.commit()
        db.session.rollback()

    def test_delete_is_refused(self, review):
        db.session.delete(review)
        with pytest.raises(ImmutableViolation):
            db.session.commit()
        db.session.rollback()

    def test_score_change_is_refused(self, review):
        review.scores[0].score = 1
        with pytest.raises(ImmutableViolation):
            db.session.commit()
        db.session.rollback()
        assert float(ReviewScore.query.one().score) == 7.0

    def test_added_score_is_refused(self, review):
        db.session.add(ReviewScore(review_id=review.id, criterion_id=review.scores[0].criterion_id,
                                   score=3))
        with pytest.raises(ImmutableViolation):
            db.session.commit()
        db.session.rollback()
