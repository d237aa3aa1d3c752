"""
Blind Review Engine
Notification domain model.

Models:
    - Notification: in-app notification record; delivery (email, push) is
      handled outside the engine by whatever consumes this table.
"""

from datetime import datetime, timezone

from blindreview.models import db
from blindreview.models.base import _iso, _utcnow

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"assignment", "review", "conflict", "decision", "system"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event. Never carries applicant identity
    when addressed to a reviewer.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(36), nullable=True, index=True)
    recipient_id = db.Column(db.String(36), nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="system")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="assignment/proposal/review/...")
    entity_id = db.Column(db.String(36), nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "recipient_id": self.recipient_id,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": _iso(self.read_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
