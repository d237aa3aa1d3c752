"""
Review Blueprint — the reviewer's side of the engine.

Endpoints:
    GET    /api/v1/me/assignments                        own workload (no conflict/cancelled)
    GET    /api/v1/assignments/<id>/proposal             anonymized proposal; first load opens
    GET    /api/v1/assignments/<id>/review               own review (or null)
    PUT    /api/v1/assignments/<id>/review               save draft
    POST   /api/v1/assignments/<id>/review/submit        submit and seal
    POST   /api/v1/assignments/<id>/conflict             self-declared conflict { reason }
    GET    /api/v1/me/notifications                      own notifications (?unread=1)
    POST   /api/v1/me/notifications/<id>/read            mark one as read

Every route acts on the caller's own assignments and notifications only.
"""

import logging

from flask import Blueprint, jsonify, request

from blindreview.blueprints import json_body
from blindreview.core.exceptions import NotFoundError
from blindreview.middleware.caller_context import require_caller
from blindreview.services import anonymizer, conflict_registry
from blindreview.services import evaluation_lifecycle as ev
from blindreview.services.notification import NotificationService

logger = logging.getLogger(__name__)

review_bp = Blueprint("reviews", __name__, url_prefix="/api/v1")


@review_bp.route("/me/assignments", methods=["GET"])
def my_assignments():
    reviewer = require_caller()
    items = ev.reviewer_workload(reviewer, request.args.get("organization_id"))
    return jsonify({"items": items, "total": len(items)})


@review_bp.route("/assignments/<assignment_id>/proposal", methods=["GET"])
def anonymized_proposal(assignment_id):
    reviewer = require_caller()
    view = anonymizer.project(assignment_id, reviewer)
    if view["assignment_status"] == "assigned":
        view["assignment_status"] = ev.open_assignment(assignment_id, reviewer)["status"]
    return jsonify(view)


@review_bp.route("/assignments/<assignment_id>/review", methods=["GET"])
def get_review(assignment_id):
    reviewer = require_caller()
    return jsonify({"review": ev.get_review(assignment_id, reviewer)})


@review_bp.route("/assignments/<assignment_id>/review", methods=["PUT"])
def save_draft(assignment_id):
    reviewer = require_caller()
    data = json_body()
    return jsonify(ev.save_review_draft(
        assignment_id, reviewer,
        scores=data.get("scores"),
        recommendation=data.get("recommendation"),
        comments=data.get("comments_to_committee"),
    ))


@review_bp.route("/assignments/<assignment_id>/review/submit", methods=["POST"])
def submit(assignment_id):
    reviewer = require_caller()
    data = json_body()
    return jsonify(ev.submit_review(
        assignment_id, reviewer,
        scores=data.get("scores"),
        recommendation=data.get("recommendation"),
        comments=data.get("comments_to_committee"),
    ))


@review_bp.route("/assignments/<assignment_id>/conflict", methods=["POST"])
def declare_conflict(assignment_id):
    reviewer = require_caller()
    result = conflict_registry.declare_on_assignment(
        assignment_id, reviewer, json_body().get("reason"),
    )
    return jsonify(result), 201


# ── Notifications ─────────────────────────────────────────────────────────────


@review_bp.route("/me/notifications", methods=["GET"])
def my_notifications():
    recipient = require_caller()
    unread_only = request.args.get("unread", "").lower() in ("1", "true", "yes")
    try:
        limit = min(int(request.args.get("limit", 50)), 200)
        offset = max(int(request.args.get("offset", 0)), 0)
    except ValueError:
        limit, offset = 50, 0
    items, total = NotificationService.list_for_recipient(
        recipient, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@review_bp.route("/me/notifications/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id):
    recipient = require_caller()
    notif = NotificationService.mark_read(notification_id, recipient)
    if notif is None:
        raise NotFoundError("Notification", str(notification_id))
    return jsonify(notif.to_dict())
