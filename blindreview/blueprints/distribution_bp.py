"""
Distribution Blueprint — staff-side reviewer assignment and conflict records.

Endpoints:
    GET    /api/v1/calls/<call_id>/distribution          coverage overview + stats
    POST   /api/v1/calls/<call_id>/distribution/auto     automatic batch distribution
    POST   /api/v1/proposals/<proposal_id>/assignments   { reviewer_ids: [...] }
    POST   /api/v1/assignments/<assignment_id>/cancel    { reason? }
    POST   /api/v1/conflicts                             staff-recorded conflict
    GET    /api/v1/conflicts/check?reviewer_id=&proposal_id=

The whole blueprint is rate limited per caller (DISTRIBUTION_RATE_LIMIT).
"""

import logging

from flask import Blueprint, jsonify, request

from blindreview.blueprints import json_body
from blindreview.core.exceptions import NotFoundError, ValidationError
from blindreview.middleware.caller_context import require_caller
from blindreview.models import db
from blindreview.models.proposal import Proposal
from blindreview.services import conflict_registry, distribution, role_resolver

logger = logging.getLogger(__name__)

distribution_bp = Blueprint("distribution", __name__, url_prefix="/api/v1")


@distribution_bp.route("/calls/<call_id>/distribution", methods=["GET"])
def overview(call_id):
    actor = require_caller()
    return jsonify(distribution.distribution_overview(call_id, actor))


@distribution_bp.route("/calls/<call_id>/distribution/auto", methods=["POST"])
def auto_distribute(call_id):
    actor = require_caller()
    return jsonify(distribution.distribute_call(call_id, actor))


@distribution_bp.route("/proposals/<proposal_id>/assignments", methods=["POST"])
def assign(proposal_id):
    actor = require_caller()
    reviewer_ids = json_body().get("reviewer_ids")
    if not isinstance(reviewer_ids, list):
        raise ValidationError("reviewer_ids must be a list", details={"missing": ["reviewer_ids"]})
    return jsonify(distribution.assign_reviewers(proposal_id, reviewer_ids, actor)), 201


@distribution_bp.route("/assignments/<assignment_id>/cancel", methods=["POST"])
def cancel(assignment_id):
    actor = require_caller()
    return jsonify(distribution.cancel_assignment(assignment_id, actor, json_body().get("reason")))


@distribution_bp.route("/conflicts", methods=["POST"])
def record_conflict():
    actor = require_caller()
    data = json_body()
    reviewer_id = data.get("reviewer_id")
    if not reviewer_id:
        raise ValidationError("reviewer_id is required", details={"missing": ["reviewer_id"]})
    result = conflict_registry.declare(
        reviewer_id,
        reason=data.get("reason"),
        actor_id=actor,
        proposal_id=data.get("proposal_id"),
        applicant_id=data.get("applicant_id"),
        institution=data.get("institution"),
        organization_id=data.get("organization_id"),
    )
    return jsonify(result), 201


@distribution_bp.route("/conflicts/check", methods=["GET"])
def check_conflict():
    actor = require_caller()
    reviewer_id = request.args.get("reviewer_id")
    proposal_id = request.args.get("proposal_id")
    if not reviewer_id or not proposal_id:
        raise ValidationError("reviewer_id and proposal_id are required")
    proposal = db.session.get(Proposal, proposal_id)
    if proposal is None:
        raise NotFoundError("Proposal", proposal_id)
    role_resolver.require_staff(actor, proposal.organization_id)
    return jsonify({
        "reviewer_id": reviewer_id,
        "proposal_id": proposal_id,
        "has_conflict": conflict_registry.has_conflict(reviewer_id, proposal_id),
    })
