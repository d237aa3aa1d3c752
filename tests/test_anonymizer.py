"""
Anonymization projector tests.

A reviewer's view of a proposal must carry no applicant identity when blind
review is enabled: no name, e-mail or institution, no applicant id and no
original file names.
"""

import json
from datetime import timedelta

import pytest

from blindreview.core.exceptions import NotAuthorized, NotFoundError
from blindreview.models import db
from blindreview.models.call import FormSchemaSnapshot
from blindreview.models.proposal import ProposalFile
from blindreview.services import anonymizer

SCHEMA = {
    "sections": [
        {"id": "s2", "title": "Budget", "order": 2,
         "questions": [{"id": "q3", "label": "Total", "type": "number", "order": 1}]},
        {"id": "s1", "title": "Project", "order": 1,
         "questions": [
             {"id": "q2", "label": "Team", "type": "text", "order": 2},
             {"id": "q1", "label": "Summary", "type": "text", "order": 1},
         ]},
    ],
}

ANSWERS = {
    "q1": "Led by Ana Lima at UNIVERSIDADE FEDERAL",
    "q2": ["ana.lima@uf.edu", "two students"],
    "q3": 12000,
}


@pytest.fixture()
def setup(manager, make_member, make_call, make_proposal, make_assignment):
    make_member("r1")
    make_member("r2")
    make_member("a1", role="applicant", full_name="Ana Lima",
                email="ana.lima@uf.edu", institution="Universidade Federal")

    def _build(blind_review=True, public_fields=(), schema=SCHEMA):
        call = make_call(blind_review_enabled=blind_review)
        call.public_applicant_fields = list(public_fields)
        if schema is not None:
            db.session.add(FormSchemaSnapshot(call_id=call.id, version=1,
                                              schema_json=json.dumps(schema)))
        db.session.commit()

        proposal = make_proposal(call, applicant_id="a1", knowledge_area="Biology",
                                 answers=ANSWERS, status="under_review")
        uploaded = proposal.submitted_at
        for n, name in enumerate(("ana_lima_cv.pdf", "budget.xlsx")):
            db.session.add(ProposalFile(proposal_id=proposal.id, original_name=name,
                                        file_type=name.rsplit(".", 1)[1],
                                        uploaded_at=uploaded + timedelta(seconds=n)))
        db.session.commit()
        return proposal, make_assignment(proposal, "r1")

    return _build


def test_blind_view_has_no_identity(setup):
    proposal, assignment = setup()

    view = anonymizer.project(assignment.id, "r1")
    text = json.dumps(view).lower()

    for leaked in ("ana lima", "ana.lima@uf.edu", "universidade federal", proposal.id):
        assert leaked.lower() not in text
    assert "applicant" not in view
    assert view["anonymous_id"] == proposal.blind_code


def test_answers_grouped_by_schema_order(setup):
    _, assignment = setup()

    view = anonymizer.project(assignment.id, "r1")

    assert view["structured"] is True
    assert [s["title"] for s in view["sections"]] == ["Project", "Budget"]
    project = view["sections"][0]["questions"]
    assert [q["label"] for q in project] == ["Summary", "Team"]
    assert project[0]["value"] == "Led by [redacted] at [redacted]"
    assert project[1]["value"] == ["[redacted]", "two students"]
    assert view["sections"][1]["questions"][0]["value"] == 12000


def test_files_renamed_by_upload_order(setup):
    proposal, assignment = setup()

    view = anonymizer.project(assignment.id, "r1")

    assert view["files"] == [
        {"file_ref": f"Anexo_{proposal.blind_code}_1", "file_type": "pdf"},
        {"file_ref": f"Anexo_{proposal.blind_code}_2", "file_type": "xlsx"},
    ]


def test_without_schema_answers_are_flat(setup):
    _, assignment = setup(schema=None)

    view = anonymizer.project(assignment.id, "r1")

    assert view["structured"] is False
    assert "sections" not in view
    assert view["answers"]["q1"] == "Led by [redacted] at [redacted]"


def test_blind_review_disabled_exposes_public_fields_only(setup):
    _, assignment = setup(blind_review=False, public_fields=["institution"])

    view = anonymizer.project(assignment.id, "r1")

    assert view["applicant"] == {"institution": "Universidade Federal"}
    summary = view["sections"][0]["questions"][0]["value"]
    assert summary == "Led by [redacted] at UNIVERSIDADE FEDERAL"


def test_other_reviewer_is_refused(setup):
    _, assignment = setup()
    with pytest.raises(NotAuthorized):
        anonymizer.project(assignment.id, "r2")


def test_cancelled_assignment_is_refused(setup):
    _, assignment = setup()
    assignment.status = "cancelled"
    db.session.commit()
    with pytest.raises(NotAuthorized):
        anonymizer.project(assignment.id, "r1")


def test_unknown_assignment(setup):
    with pytest.raises(NotFoundError):
        anonymizer.project("missing", "r1")


def test_null_order_sorts_first():
    schema = {"sections": [
        {"title": "Budget", "order": 2, "questions": [{"id": "b", "label": "Total"}]},
        {"title": "Summary", "order": None, "questions": [
            {"id": "q2", "label": "Goals", "order": 1},
            {"id": "q1", "label": "Abstract", "order": None},
        ]},
    ]}

    grouped = anonymizer.group_answers(schema, {"q1": "A", "q2": "G", "b": "10"}, lambda v: v)

    assert [s["title"] for s in grouped] == ["Summary", "Budget"]
    assert [q["label"] for q in grouped[0]["questions"]] == ["Abstract", "Goals"]
