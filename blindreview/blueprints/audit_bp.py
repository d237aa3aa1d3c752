"""
Audit Blueprint — read-only access to the immutable audit trail.

Endpoints:
    GET /api/v1/organizations/<org_id>/audit
        Query params: entity_type, entity_id, action (prefix), actor,
                      limit, offset
    GET /api/v1/organizations/<org_id>/audit/<entity_type>/<entity_id>

Staff only. There are no write routes: entries are appended by the
services and the storage layer refuses updates and deletes.
"""

import logging

from flask import Blueprint, jsonify, request

from blindreview.blueprints import paginate_query
from blindreview.middleware.caller_context import require_caller
from blindreview.models.audit import AuditTrail
from blindreview.services import role_resolver

logger = logging.getLogger(__name__)

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


@audit_bp.route("/organizations/<org_id>/audit", methods=["GET"])
def list_audit(org_id):
    actor = require_caller()
    role_resolver.require_staff(actor, org_id)

    q = AuditTrail.query(
        organization_id=org_id,
        entity_type=request.args.get("entity_type"),
        entity_id=request.args.get("entity_id"),
        action=request.args.get("action"),
        actor=request.args.get("actor"),
    )
    items, total = paginate_query(q, default_limit=100, max_limit=500)
    return jsonify({"items": [log.to_dict() for log in items], "total": total})


@audit_bp.route("/organizations/<org_id>/audit/<entity_type>/<entity_id>", methods=["GET"])
def entity_history(org_id, entity_type, entity_id):
    actor = require_caller()
    role_resolver.require_staff(actor, org_id)

    logs = [
        log for log in AuditTrail.for_entity(entity_type, entity_id)
        if log.organization_id == org_id
    ]
    return jsonify({"items": [log.to_dict() for log in logs], "total": len(logs)})
