"""
Blind Review Engine
Notification Service.

Central service for creating and querying in-app notifications. Engine
operations call ``dispatch_safely`` after their own commit: a failure here
is logged and swallowed so it can never fail or roll back a distribution,
submission or conflict declaration.
"""

import logging

from blindreview.models import db
from blindreview.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def broadcast(*, recipients, title, message="", category="system", severity="info",
                  organization_id=None, entity_type="", entity_id=None):
        """
        Send the same notification to several recipients in one commit.

        Returns:
            List of created Notification instances.
        """
        notifications = []
        for recipient_id in recipients:
            notif = Notification(
                organization_id=organization_id,
                recipient_id=recipient_id,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    @staticmethod
    def dispatch_safely(**kwargs):
        """Fire-and-forget ``broadcast``; returns the notifications or []."""
        if not kwargs.get("recipients"):
            return []
        try:
            return NotificationService.broadcast(**kwargs)
        except Exception:
            db.session.rollback()
            logger.warning(
                "Notification dispatch failed (title=%s, recipients=%d)",
                kwargs.get("title"), len(kwargs.get("recipients") or []),
                exc_info=True,
            )
            return []

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.query.filter_by(recipient_id=recipient_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark a single notification as read; None when not the caller's."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.recipient_id != recipient_id:
            return None
        notif.mark_read()
        db.session.commit()
        return notif
