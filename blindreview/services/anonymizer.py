"""
Anonymization Projector — the reviewer-facing read of a proposal.

``project(assignment_id, caller_reviewer_id)`` returns a redacted view that
never carries applicant identity: the blind code replaces the proposal id,
answers are grouped by the latest form schema snapshot (label + value),
attachments are renamed ``Anexo_{blind_code}_{n}`` and identity strings
(name, e-mail, institution) are scrubbed out of free-text answers.

Degraded paths:
    - no schema snapshot → flat ``answers`` map, ``structured`` = False
    - blind review disabled → the call's public applicant fields are exposed
      under ``applicant`` and left unscrubbed; file renaming and question
      structuring still apply
"""

import logging
import re

from blindreview.core.exceptions import NotAuthorized, NotFoundError
from blindreview.models import db
from blindreview.models.base import _iso
from blindreview.models.directory import IDENTITY_FIELDS
from blindreview.models.proposal import ProposalFile
from blindreview.models.review import Assignment
from blindreview.services import role_resolver

logger = logging.getLogger(__name__)

REDACTED = "[redacted]"


def anonymized_file_refs(proposal) -> list[dict]:
    """Dense 1-based renaming ordered by upload time, then id."""
    files = (
        ProposalFile.query
        .filter_by(proposal_id=proposal.id)
        .order_by(ProposalFile.uploaded_at, ProposalFile.id)
        .all()
    )
    return [
        {"file_ref": f"Anexo_{proposal.blind_code}_{n}", "file_type": f.file_type}
        for n, f in enumerate(files, start=1)
    ]


def _scrubber(identity_values):
    values = sorted({v.strip() for v in identity_values if v and v.strip()}, key=len, reverse=True)
    if not values:
        return lambda value: value
    pattern = re.compile("|".join(re.escape(v) for v in values), re.IGNORECASE)

    def scrub(value):
        if isinstance(value, str):
            return pattern.sub(REDACTED, value)
        if isinstance(value, list):
            return [scrub(v) for v in value]
        if isinstance(value, dict):
            return {k: scrub(v) for k, v in value.items()}
        return value

    return scrub


def group_answers(schema: dict, answers: dict, scrub) -> list[dict] | None:
    """Sections → questions (label + value) in schema order; None if unusable."""
    sections = schema.get("sections") if isinstance(schema, dict) else None
    if not sections:
        return None

    grouped = []
    for section in sorted(sections, key=lambda s: s.get("order") or 0):
        questions = sorted(section.get("questions") or [], key=lambda q: q.get("order") or 0)
        grouped.append({
            "title": section.get("title", ""),
            "questions": [
                {"label": q.get("label", ""), "value": scrub(answers.get(str(q.get("id"))))}
                for q in questions
            ],
        })
    return grouped


def _authorize(assignment_id: str, caller_reviewer_id: str) -> Assignment:
    assignment = db.session.get(Assignment, assignment_id)
    if assignment is None:
        raise NotFoundError("Assignment", assignment_id)
    if assignment.reviewer_id != caller_reviewer_id:
        raise NotAuthorized("Caller is not the reviewer on this assignment",
                            user_id=caller_reviewer_id)
    if assignment.status == "cancelled":
        raise NotAuthorized("Assignment has been cancelled", user_id=caller_reviewer_id)
    role_resolver.require_reviewer(caller_reviewer_id, assignment.proposal.organization_id)
    return assignment


def project(assignment_id: str, caller_reviewer_id: str) -> dict:
    """Redacted view of the proposal behind ``assignment_id``."""
    assignment = _authorize(assignment_id, caller_reviewer_id)
    proposal = assignment.proposal
    call = proposal.call

    public_fields = [] if call.blind_review_enabled else [
        f for f in call.public_applicant_fields if f in IDENTITY_FIELDS
    ]
    profile = role_resolver.member_profile(proposal.applicant_id, proposal.organization_id)
    identity = profile.identity() if profile else {}
    scrub = _scrubber(v for k, v in identity.items() if k not in public_fields)

    answers = proposal.answers
    snapshot = call.latest_schema()
    sections = group_answers(snapshot.schema, answers, scrub) if snapshot else None

    view = {
        "anonymous_id": proposal.blind_code,
        "assignment_id": assignment.id,
        "assignment_status": assignment.status,
        "call_title": call.title,
        "blind_review_enabled": call.blind_review_enabled,
        "review_deadline": _iso(call.review_deadline),
        "knowledge_area": scrub(proposal.knowledge_area),
        "proposal_status": proposal.status,
        "structured": sections is not None,
        "files": anonymized_file_refs(proposal),
    }
    if sections is not None:
        view["sections"] = sections
    else:
        view["answers"] = {key: scrub(value) for key, value in answers.items()}

    if public_fields:
        view["applicant"] = {f: identity.get(f) for f in public_fields}

    logger.debug("Projected proposal %s for assignment %s", proposal.blind_code, assignment.id)
    return view
