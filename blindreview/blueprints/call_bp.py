"""
Call Blueprint — call lifecycle, criteria, proposals and committee results.

Endpoints:
    POST   /api/v1/organizations/<org_id>/calls        create draft call
    GET    /api/v1/calls/<call_id>                     call with criteria
    POST   /api/v1/calls/<call_id>/transition          { action, override? }
    POST   /api/v1/calls/<call_id>/criteria            { name, max_score, weight, ... }
    POST   /api/v1/calls/<call_id>/schema              { sections: [...] }
    POST   /api/v1/calls/<call_id>/proposals           applicant starts a draft
    POST   /api/v1/proposals/<proposal_id>/submit      draft → submitted (blind code)
    GET    /api/v1/calls/<call_id>/results             consolidated reviews (staff)
    POST   /api/v1/proposals/<proposal_id>/decision    { decision, justification }
    POST   /api/v1/calls/<call_id>/identity-reveal     { reason } (closed calls only)

Layer contract:
    - Blueprint: resolve caller, parse body, call service, return JSON.
    - NO db.session writes here; services own commits.
    - Errors are engine exceptions mapped by the app-level handlers.
"""

import logging

from flask import Blueprint, jsonify

from blindreview.blueprints import json_body
from blindreview.core.exceptions import NotAuthorized
from blindreview.middleware.caller_context import require_caller
from blindreview.services import call_service, results_service, role_resolver

logger = logging.getLogger(__name__)

call_bp = Blueprint("calls", __name__, url_prefix="/api/v1")


# ── Calls ─────────────────────────────────────────────────────────────────────


@call_bp.route("/organizations/<org_id>/calls", methods=["POST"])
def create_call(org_id):
    actor = require_caller()
    return jsonify(call_service.create_call(org_id, actor, json_body())), 201


@call_bp.route("/calls/<call_id>", methods=["GET"])
def get_call(call_id):
    actor = require_caller()
    call = call_service.get_call(call_id)
    if role_resolver.resolve_role(actor, call.organization_id) is None:
        raise NotAuthorized("Caller is not a member of this organization", user_id=actor)
    return jsonify(call.to_dict())


@call_bp.route("/calls/<call_id>/transition", methods=["POST"])
def transition_call(call_id):
    actor = require_caller()
    data = json_body()
    action = (data.get("action") or "").strip()
    return jsonify(call_service.transition_call(
        call_id, action, actor, override=bool(data.get("override")),
    ))


@call_bp.route("/calls/<call_id>/criteria", methods=["POST"])
def add_criterion(call_id):
    actor = require_caller()
    return jsonify(call_service.add_criterion(call_id, actor, json_body())), 201


@call_bp.route("/calls/<call_id>/schema", methods=["POST"])
def freeze_schema(call_id):
    actor = require_caller()
    return jsonify(call_service.freeze_form_schema(call_id, actor, json_body())), 201


# ── Proposals ─────────────────────────────────────────────────────────────────


@call_bp.route("/calls/<call_id>/proposals", methods=["POST"])
def create_proposal(call_id):
    applicant = require_caller()
    return jsonify(call_service.create_proposal_draft(call_id, applicant, json_body())), 201


@call_bp.route("/proposals/<proposal_id>/submit", methods=["POST"])
def submit_proposal(proposal_id):
    applicant = require_caller()
    return jsonify(call_service.submit_proposal(proposal_id, applicant))


# ── Results ───────────────────────────────────────────────────────────────────


@call_bp.route("/calls/<call_id>/results", methods=["GET"])
def results(call_id):
    actor = require_caller()
    return jsonify(results_service.review_summary(call_id, actor))


@call_bp.route("/proposals/<proposal_id>/decision", methods=["POST"])
def record_decision(proposal_id):
    actor = require_caller()
    data = json_body()
    return jsonify(results_service.record_decision(
        proposal_id, actor, data.get("decision"), data.get("justification"),
    ))


@call_bp.route("/calls/<call_id>/identity-reveal", methods=["POST"])
def reveal_identities(call_id):
    actor = require_caller()
    return jsonify(results_service.reveal_identities(call_id, actor, json_body().get("reason")))
