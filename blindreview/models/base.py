"""
OrgScopedModel — Abstract base class for organization-scoped models.

Every record that belongs to a funding organization inherits from
OrgScopedModel instead of db.Model directly. This adds:
  - organization_id column with index
  - query_for_org(organization_id) classmethod

Identifiers are opaque UUID strings; user ids come from the external
identity provider and are stored as plain strings.
"""

import uuid
from datetime import datetime, timezone

from blindreview.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class OrgScopedModel(db.Model):
    """Abstract base for organization-scoped tables."""
    __abstract__ = True

    organization_id = db.Column(
        db.String(36),
        nullable=False,
        index=True,
        comment="Owning organization (opaque id from the identity directory)",
    )

    @classmethod
    def query_for_org(cls, organization_id):
        """Return a query filtered by organization_id."""
        return cls.query.filter_by(organization_id=organization_id)
