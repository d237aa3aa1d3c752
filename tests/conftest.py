"""
Shared pytest fixtures for the blind review engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - manager: call manager of the default organization
    - make_member / make_call / make_proposal / make_assignment: factories
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from blindreview import create_app
from blindreview.models import db as _db
from blindreview.models.call import Call, Criterion
from blindreview.models.directory import OrganizationMember
from blindreview.models.proposal import Proposal
from blindreview.models.review import Assignment

ORG_ID = "org-1"
MANAGER_ID = "manager-1"

# Members and proposals get strictly increasing timestamps so that the
# (created_at, id) and submitted_at orderings are deterministic in tests
_BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def _clock():
    ticks = itertools.count(1)
    return lambda: _BASE_TIME + timedelta(minutes=next(ticks))


@pytest.fixture()
def make_member(_clock):
    def _make(user_id, role="reviewer", organization_id=ORG_ID, **fields):
        member = OrganizationMember(
            organization_id=organization_id,
            user_id=user_id,
            role=role,
            status=fields.pop("status", "active"),
            created_at=_clock(),
            **fields,
        )
        _db.session.add(member)
        _db.session.commit()
        return member
    return _make


@pytest.fixture()
def manager(make_member):
    make_member(MANAGER_ID, role="call_manager", full_name="Call Manager")
    return MANAGER_ID


@pytest.fixture()
def make_call():
    def _make(criteria=(("Merit", 10, 1),), status="published", organization_id=ORG_ID, **fields):
        call = Call(
            organization_id=organization_id,
            title=fields.pop("title", "Research Grants 2026"),
            status=status,
            min_reviewers_per_proposal=fields.pop("min_reviewers_per_proposal", 2),
            blind_code_prefix=fields.pop("blind_code_prefix", "ED2026"),
            created_by=fields.pop("created_by", MANAGER_ID),
            **fields,
        )
        for order, (name, max_score, weight) in enumerate(criteria):
            call.criteria.append(Criterion(
                name=name, max_score=max_score, weight=weight, sort_order=order,
            ))
        _db.session.add(call)
        _db.session.commit()
        return call
    return _make


@pytest.fixture()
def make_proposal(_clock):
    counter = itertools.count(1)

    def _make(call, applicant_id="applicant-1", status="submitted", knowledge_area=None,
              answers=None, blind_code=None, **fields):
        n = next(counter)
        proposal = Proposal(
            organization_id=call.organization_id,
            call_id=call.id,
            applicant_id=applicant_id,
            title=fields.pop("title", f"Proposal {n}"),
            knowledge_area=knowledge_area,
            status=status,
            **fields,
        )
        proposal.answers = answers or {}
        if status != "draft":
            proposal.blind_code = blind_code or f"{call.blind_code_prefix}-{n:03d}"
            proposal.submitted_at = _clock()
        _db.session.add(proposal)
        _db.session.commit()
        return proposal
    return _make


@pytest.fixture()
def make_assignment(_clock):
    def _make(proposal, reviewer_id, status="assigned"):
        assignment = Assignment(
            proposal_id=proposal.id,
            reviewer_id=reviewer_id,
            assigned_by=MANAGER_ID,
            status=status,
            assigned_at=_clock(),
        )
        _db.session.add(assignment)
        _db.session.commit()
        return assignment
    return _make
