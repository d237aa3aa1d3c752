"""
Blind Review Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for every state
      transition and distribution decision.

Access goes through ``AuditTrail`` (append + read only). Immutability is
enforced below application code:
    - mapper ``before_update`` / ``before_delete`` events
    - a session ``do_orm_execute`` guard against bulk UPDATE / DELETE
    - on PostgreSQL, a trigger installed together with the table
Every violation raises ImmutableViolation.
"""

import json
import logging

from sqlalchemy import DDL, event
from sqlalchemy.orm import Session

from blindreview.core.exceptions import ImmutableViolation
from blindreview.models import db
from blindreview.models.base import _iso, _utcnow

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"call", "proposal", "assignment", "review", "conflict_record"}

AUDIT_ACTIONS = {
    # Call lifecycle
    "call.create",
    "call.publish",
    "call.close",
    "call.reopen",
    "call.criterion_added",
    "call.identity_reveal",
    # Proposal
    "proposal.submit",
    "proposal.under_review",
    "proposal.decision",
    # Distribution
    "auto_distribution",
    "manual_assignment",
    # Assignment lifecycle
    "assignment.create",
    "assignment.open",
    "assignment.submit",
    "assignment.declare_conflict",
    "assignment.cancel",
    # Review
    "review.draft_saved",
    # Conflict registry
    "conflict.declared",
    "conflict.recorded",
}


class AuditLog(db.Model):
    """
    Immutable audit trail.

    One row per action. ``diff_json`` carries metadata; transitions always
    include {"status": {"old", "new"}}.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_org", "organization_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(36), nullable=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="call | proposal | assignment | review | conflict_record | …",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="assignment.submit | auto_distribution | conflict.declared | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow,
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "metadata": self.diff,
            "timestamp": _iso(self.timestamp),
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Storage-layer guards ─────────────────────────────────────────────────────

def _refuse(operation):
    def _guard(mapper, connection, target):
        logger.critical(
            "Refused %s on audit log entry %s (%s)", operation, target.id, target.action,
        )
        raise ImmutableViolation("AuditLog", target.id, operation)
    return _guard


event.listen(AuditLog, "before_update", _refuse("update"))
event.listen(AuditLog, "before_delete", _refuse("delete"))


@event.listens_for(Session, "do_orm_execute")
def _refuse_bulk_audit_writes(orm_execute_state):
    """Block ``update(AuditLog)`` / ``delete(AuditLog)`` statements."""
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is AuditLog:
        operation = "bulk update" if orm_execute_state.is_update else "bulk delete"
        logger.critical("Refused %s on audit_logs", operation)
        raise ImmutableViolation("AuditLog", None, operation)


_PG_IMMUTABLE_TRIGGER = DDL("""
CREATE OR REPLACE FUNCTION prevent_audit_log_modification() RETURNS trigger AS $$
BEGIN
  RAISE EXCEPTION 'Audit logs are immutable and cannot be modified or deleted';
END;
$$ LANGUAGE plpgsql;
CREATE TRIGGER audit_logs_immutable
  BEFORE UPDATE OR DELETE ON audit_logs
  FOR EACH ROW EXECUTE FUNCTION prevent_audit_log_modification();
""")

event.listen(
    AuditLog.__table__, "after_create",
    _PG_IMMUTABLE_TRIGGER.execute_if(dialect="postgresql"),
)


# ── Write-only repository ────────────────────────────────────────────────────

class AuditTrail:
    """The only sanctioned access path to the audit log.

    Exposes ``append`` and read helpers; there is deliberately no update or
    delete method. ``append`` flushes so callers keep transaction control.
    """

    @staticmethod
    def append(
        *,
        entity_type: str,
        entity_id: str,
        action: str,
        actor: str = "system",
        organization_id: str | None = None,
        metadata: dict | None = None,
    ) -> AuditLog:
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")
        if entity_type not in AUDIT_ENTITY_TYPES:
            raise ValueError(f"Unknown audit entity type: {entity_type}")
        log = AuditLog(
            organization_id=organization_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            actor=actor or "system",
            diff_json=json.dumps(metadata or {}, default=str),
        )
        db.session.add(log)
        db.session.flush()
        return log

    @staticmethod
    def for_entity(entity_type: str, entity_id: str) -> list[AuditLog]:
        return (
            AuditLog.query
            .filter_by(entity_type=entity_type, entity_id=str(entity_id))
            .order_by(AuditLog.id)
            .all()
        )

    @staticmethod
    def query(*, organization_id=None, entity_type=None, entity_id=None,
              action=None, actor=None):
        q = AuditLog.query
        if organization_id:
            q = q.filter(AuditLog.organization_id == organization_id)
        if entity_type:
            q = q.filter(AuditLog.entity_type == entity_type)
        if entity_id:
            q = q.filter(AuditLog.entity_id == str(entity_id))
        if action:
            q = q.filter(AuditLog.action.startswith(action))
        if actor:
            q = q.filter(AuditLog.actor == actor)
        return q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
