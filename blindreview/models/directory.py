"""
Blind Review Engine
Identity & role directory — external collaborator contract.

The identity provider owns users; this table is the local projection of
organization membership the engine consults for role checks, the reviewer
pool and applicant identity (which must never reach a reviewer).

Models:
    - OrganizationMember: one row per (organization, user, role)
"""

from blindreview.models import db
from blindreview.models.base import OrgScopedModel, _iso, _utcnow, _uuid

# ── Constants ────────────────────────────────────────────────────────────────

ROLE_APPLICANT = "applicant"
ROLE_REVIEWER = "reviewer"
ROLE_CALL_MANAGER = "call_manager"
ROLE_ORG_ADMIN = "org_admin"
ROLE_PLATFORM_ADMIN = "platform_admin"

ROLES = frozenset({
    ROLE_APPLICANT,
    ROLE_REVIEWER,
    ROLE_CALL_MANAGER,
    ROLE_ORG_ADMIN,
    ROLE_PLATFORM_ADMIN,
})

STAFF_ROLES = frozenset({ROLE_CALL_MANAGER, ROLE_ORG_ADMIN, ROLE_PLATFORM_ADMIN})

MEMBER_STATUSES = {"active", "inactive", "pending"}

# Fields that identify the person behind a proposal
IDENTITY_FIELDS = ("full_name", "email", "institution")


class OrganizationMember(OrgScopedModel):
    """Role membership of a user inside an organization."""

    __tablename__ = "organization_members"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "user_id", "role", name="uq_member_org_user_role"),
        db.Index("ix_member_org_role_status", "organization_id", "role", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    role = db.Column(
        db.String(20), nullable=False,
        comment="applicant | reviewer | call_manager | org_admin | platform_admin",
    )
    status = db.Column(db.String(20), nullable=False, default="active")

    full_name = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    institution = db.Column(db.String(255), nullable=True)
    research_area = db.Column(
        db.String(255), nullable=True,
        comment="Free-text declared knowledge area (reviewers)",
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def is_active(self):
        return self.status == "active"

    def identity(self) -> dict:
        """Applicant-identifying fields, keyed by IDENTITY_FIELDS."""
        return {field: getattr(self, field) for field in IDENTITY_FIELDS}

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "role": self.role,
            "status": self.status,
            "full_name": self.full_name,
            "email": self.email,
            "institution": self.institution,
            "research_area": self.research_area,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<OrganizationMember {self.user_id} {self.role}@{self.organization_id}>"
