"""
Blind code generation tests.

Covers:
  - sequential codes per call, assigned on draft → submitted
  - default ED{year} prefix
  - random_short format, collision retry and exhaustion
  - stability: a code is never replaced, through review and decision
"""

import re
from datetime import datetime, timezone

import pytest

from blindreview.core.exceptions import TransitionError, ValidationError
from blindreview.models import db
from blindreview.models.proposal import Proposal
from blindreview.models.review import Assignment
from blindreview.services import blind_code, call_service, distribution, results_service
from blindreview.services import evaluation_lifecycle as ev


class TestSequential:
    def test_codes_follow_submission_order(self, make_call, make_proposal):
        call = make_call(blind_code_prefix="ED2026")
        drafts = [make_proposal(call, applicant_id=f"a{i}", status="draft") for i in range(3)]

        codes = [call_service.submit_proposal(p.id, p.applicant_id)["blind_code"] for p in drafts]

        assert codes == ["ED2026-001", "ED2026-002", "ED2026-003"]

    def test_sequence_is_per_call(self, make_call, make_proposal):
        first = make_call(blind_code_prefix="A")
        second = make_call(blind_code_prefix="B")
        p1 = make_proposal(first, status="draft")
        p2 = make_proposal(second, status="draft")

        assert call_service.submit_proposal(p1.id, p1.applicant_id)["blind_code"] == "A-001"
        assert call_service.submit_proposal(p2.id, p2.applicant_id)["blind_code"] == "B-001"

    def test_taken_number_is_skipped(self, make_call, make_proposal):
        call = make_call(blind_code_prefix="P")
        make_proposal(call, blind_code="P-002")
        draft = make_proposal(call, status="draft")

        assert call_service.submit_proposal(draft.id, draft.applicant_id)["blind_code"] == "P-003"

    def test_default_prefix_uses_current_year(self, make_call, make_proposal):
        call = make_call(blind_code_prefix=None)
        draft = make_proposal(call, status="draft")

        code = call_service.submit_proposal(draft.id, draft.applicant_id)["blind_code"]

        assert code == f"ED{datetime.now(timezone.utc).year}-001"
        assert blind_code.default_prefix(datetime(2031, 5, 1)) == "ED2031"


class TestRandomShort:
    def test_format(self, make_call, make_proposal):
        call = make_call(blind_code_prefix="X", blind_code_strategy="random_short")
        draft = make_proposal(call, status="draft")

        code = call_service.submit_proposal(draft.id, draft.applicant_id)["blind_code"]

        assert re.fullmatch(r"X-[0-9A-Z]{6}", code)

    def test_collision_is_retried(self, make_call, monkeypatch):
        call = make_call(blind_code_prefix="X", blind_code_strategy="random_short")
        tried = []

        def taken(call_id, code):
            tried.append(code)
            return len(tried) == 1

        monkeypatch.setattr(blind_code, "_code_taken", taken)

        code = blind_code.random_short_code(call, max_attempts=3)

        assert len(tried) == 2
        assert code == tried[1]
        assert re.fullmatch(r"X-[0-9A-Z]{6}", code)

    def test_exhausted_attempts_raise(self, make_call, monkeypatch):
        call = make_call(blind_code_strategy="random_short")
        monkeypatch.setattr(blind_code, "_code_taken", lambda call_id, code: True)

        with pytest.raises(ValidationError) as exc:
            blind_code.random_short_code(call, max_attempts=3)
        assert exc.value.details["attempts"] == 3


class TestStability:
    def test_drafts_have_no_code(self, make_call, make_proposal):
        draft = make_proposal(make_call(), status="draft")
        assert draft.blind_code is None

    def test_resubmit_is_refused_and_code_kept(self, make_call, make_proposal):
        call = make_call()
        draft = make_proposal(call, status="draft")
        code = call_service.submit_proposal(draft.id, draft.applicant_id)["blind_code"]

        with pytest.raises(TransitionError):
            call_service.submit_proposal(draft.id, draft.applicant_id)

        db.session.expire_all()
        assert call_service.get_call(call.id).proposals.first().blind_code == code

    def test_assign_is_noop_when_code_exists(self, make_call, make_proposal):
        proposal = make_proposal(make_call(), blind_code="ED2026-042")
        assert blind_code.assign_blind_code(proposal) == "ED2026-042"

    def test_code_survives_review_and_decision(self, manager, make_member, make_call, make_proposal):
        make_member("r1")
        call = make_call(min_reviewers_per_proposal=1)
        draft = make_proposal(call, status="draft")
        code = call_service.submit_proposal(draft.id, draft.applicant_id)["blind_code"]

        distribution.distribute_call(call.id, manager)
        db.session.expire_all()
        proposal = db.session.get(Proposal, draft.id)
        assert proposal.status == "under_review"
        assert proposal.blind_code == code

        assignment = Assignment.query.filter_by(proposal_id=proposal.id).one()
        ev.submit_review(assignment.id, "r1",
                         scores=[{"criterion_id": call.criteria[0].id, "score": 8}],
                         recommendation="approved")
        results_service.record_decision(proposal.id, manager, "accepted")

        db.session.expire_all()
        proposal = db.session.get(Proposal, draft.id)
        assert proposal.status == "accepted"
        assert proposal.blind_code == code
