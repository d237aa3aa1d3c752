"""
Identity & role directory access.

The identity provider is an external collaborator; this module is the one
place the engine reads ``organization_members``. It answers three questions:
what role a user holds in an organization, who the active reviewers are,
and what identity an applicant carries (for redaction and post-closure
reveal only).

Usage:
    from blindreview.services.role_resolver import require_staff

    require_staff(user_id, call.organization_id)   # raises NotAuthorized
"""

import logging

from blindreview.core.exceptions import NotAuthorized
from blindreview.models.directory import (
    ROLE_APPLICANT,
    ROLE_CALL_MANAGER,
    ROLE_ORG_ADMIN,
    ROLE_PLATFORM_ADMIN,
    ROLE_REVIEWER,
    STAFF_ROLES,
    OrganizationMember,
)

logger = logging.getLogger(__name__)

# Highest privilege first; resolve_role returns the first match
_ROLE_PRECEDENCE = (
    ROLE_PLATFORM_ADMIN,
    ROLE_ORG_ADMIN,
    ROLE_CALL_MANAGER,
    ROLE_REVIEWER,
    ROLE_APPLICANT,
)


def resolve_roles(user_id: str | None, organization_id: str) -> set[str]:
    """All active roles the user holds in the organization."""
    if not user_id:
        return set()
    rows = (
        OrganizationMember.query_for_org(organization_id)
        .filter_by(user_id=user_id, status="active")
        .all()
    )
    return {row.role for row in rows}


def resolve_role(user_id: str | None, organization_id: str) -> str | None:
    """The user's most privileged active role, or None when not a member."""
    roles = resolve_roles(user_id, organization_id)
    for role in _ROLE_PRECEDENCE:
        if role in roles:
            return role
    return None


def is_staff(user_id, organization_id) -> bool:
    return bool(resolve_roles(user_id, organization_id) & STAFF_ROLES)


def is_platform_admin(user_id, organization_id) -> bool:
    return ROLE_PLATFORM_ADMIN in resolve_roles(user_id, organization_id)


def require_staff(user_id, organization_id):
    if not is_staff(user_id, organization_id):
        logger.info(
            "Staff check failed",
            extra={"event_type": "authz_denied", "organization_id": organization_id},
        )
        raise NotAuthorized("Caller is not a call manager or administrator", user_id=user_id)


def require_reviewer(user_id, organization_id):
    if ROLE_REVIEWER not in resolve_roles(user_id, organization_id):
        raise NotAuthorized("Caller is not an active reviewer of this organization", user_id=user_id)


def active_reviewers(organization_id: str) -> list[OrganizationMember]:
    """Active reviewer memberships in stable (created_at, id) order."""
    return (
        OrganizationMember.query_for_org(organization_id)
        .filter_by(role=ROLE_REVIEWER, status="active")
        .order_by(OrganizationMember.created_at, OrganizationMember.id)
        .all()
    )


def member_profile(user_id: str, organization_id: str) -> OrganizationMember | None:
    """Any membership row for the user; identity fields are shared across roles."""
    return (
        OrganizationMember.query_for_org(organization_id)
        .filter_by(user_id=user_id)
        .order_by(OrganizationMember.created_at, OrganizationMember.id)
        .first()
    )
