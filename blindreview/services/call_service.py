"""
Call lifecycle, criteria and proposal submission.

Call transitions (CALL_TRANSITIONS):
    publish   draft     → published   (needs at least one criterion)
    close     published → closed
    reopen    closed    → published   (platform admin, override=True only)

A closed call is immutable: criteria and schema changes are refused.

Proposal submission moves draft → submitted and assigns the blind code in
the same transaction (see services.blind_code).
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from blindreview.core.exceptions import (
    NotAuthorized,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from blindreview.models import db
from blindreview.models.audit import AuditTrail
from blindreview.models.call import (
    BLIND_CODE_STRATEGIES,
    CALL_TRANSITIONS,
    Call,
    Criterion,
    FormSchemaSnapshot,
)
from blindreview.models.directory import IDENTITY_FIELDS
from blindreview.models.proposal import Proposal
from blindreview.services import role_resolver
from blindreview.services.blind_code import assign_blind_code
from blindreview.services.lifecycle import apply_transition, status_diff

logger = logging.getLogger(__name__)


def get_call(call_id: str) -> Call:
    call = db.session.get(Call, call_id)
    if call is None:
        raise NotFoundError("Call", call_id)
    return call


def _parse_deadline(value):
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError("review_deadline must be an ISO-8601 datetime") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _positive_decimal(value, field_name):
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field_name} must be a number",
                              details={"field": field_name}) from exc
    if number <= 0:
        raise ValidationError(f"{field_name} must be greater than zero",
                              details={"field": field_name, "value": str(value)})
    return number


def _as_bool(value, default=True):
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "off")
    return bool(value)


def _ensure_not_closed(call: Call, action: str):
    if call.is_closed:
        raise TransitionError("Call", call.id, action, call.status, "call is closed")


# ── Call ──────────────────────────────────────────────────────────────────────


def create_call(organization_id: str, actor_id: str, data: dict) -> dict:
    """Create a draft call. Caller must be staff in ``organization_id``."""
    role_resolver.require_staff(actor_id, organization_id)

    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"missing": ["title"]})

    try:
        min_reviewers = int(data.get("min_reviewers_per_proposal", 2))
    except (TypeError, ValueError) as exc:
        raise ValidationError("min_reviewers_per_proposal must be an integer") from exc
    if min_reviewers < 1:
        raise ValidationError("min_reviewers_per_proposal must be at least 1")

    strategy = data.get("blind_code_strategy") or "sequential"
    if strategy not in BLIND_CODE_STRATEGIES:
        raise ValidationError("Unknown blind_code_strategy",
                              details={"allowed": sorted(BLIND_CODE_STRATEGIES)})

    public_fields = data.get("public_applicant_fields") or []
    unknown = [f for f in public_fields if f not in IDENTITY_FIELDS]
    if unknown:
        raise ValidationError("Unknown public applicant fields",
                              details={"unknown": unknown, "allowed": list(IDENTITY_FIELDS)})

    call = Call(
        organization_id=organization_id,
        title=title,
        min_reviewers_per_proposal=min_reviewers,
        review_deadline=_parse_deadline(data.get("review_deadline")),
        blind_review_enabled=_as_bool(data.get("blind_review_enabled")),
        blind_code_strategy=strategy,
        blind_code_prefix=(data.get("blind_code_prefix") or "").strip() or None,
        created_by=actor_id,
    )
    call.public_applicant_fields = public_fields
    db.session.add(call)
    db.session.flush()
    AuditTrail.append(
        entity_type="call",
        entity_id=call.id,
        action="call.create",
        actor=actor_id,
        organization_id=organization_id,
        metadata=status_diff(None, call.status, title=title),
    )
    db.session.commit()
    logger.info("Call %s created", call.id, extra={"call_id": call.id})
    return call.to_dict()


def transition_call(call_id: str, action: str, actor_id: str, *, override: bool = False) -> dict:
    """Run a call lifecycle action; ``reopen`` needs a platform-admin override."""
    call = get_call(call_id)
    role_resolver.require_staff(actor_id, call.organization_id)

    if action == "reopen":
        if not override:
            raise TransitionError("Call", call.id, action, call.status,
                                  "closed calls are immutable without an administrative override")
        if not role_resolver.is_platform_admin(actor_id, call.organization_id):
            raise NotAuthorized("Only a platform administrator may reopen a closed call",
                                user_id=actor_id)

    if action == "publish" and not call.criteria:
        raise ValidationError("A call needs at least one criterion before publishing",
                              details={"missing": ["criteria"]})

    old, new = apply_transition(call, "Call", action, CALL_TRANSITIONS)
    AuditTrail.append(
        entity_type="call",
        entity_id=call.id,
        action=f"call.{action}",
        actor=actor_id,
        organization_id=call.organization_id,
        metadata=status_diff(old, new, override=override or None),
    )
    db.session.commit()
    logger.info("Call %s: %s → %s", call.id, old, new, extra={"call_id": call.id})
    return call.to_dict()


def add_criterion(call_id: str, actor_id: str, data: dict) -> dict:
    call = get_call(call_id)
    role_resolver.require_staff(actor_id, call.organization_id)
    _ensure_not_closed(call, "add_criterion")

    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"missing": ["name"]})

    try:
        sort_order = int(data.get("sort_order", len(call.criteria)))
    except (TypeError, ValueError) as exc:
        raise ValidationError("sort_order must be an integer",
                              details={"field": "sort_order"}) from exc

    criterion = Criterion(
        call_id=call.id,
        name=name,
        description=data.get("description"),
        max_score=_positive_decimal(data.get("max_score", 10), "max_score"),
        weight=_positive_decimal(data.get("weight", 1), "weight"),
        sort_order=sort_order,
    )
    db.session.add(criterion)
    db.session.flush()
    AuditTrail.append(
        entity_type="call",
        entity_id=call.id,
        action="call.criterion_added",
        actor=actor_id,
        organization_id=call.organization_id,
        metadata={"criterion_id": criterion.id, "weight": str(criterion.weight),
                  "max_score": str(criterion.max_score)},
    )
    db.session.commit()
    return criterion.to_dict()


def freeze_form_schema(call_id: str, actor_id: str, schema: dict) -> dict:
    """Store the next immutable schema version used to group answers."""
    call = get_call(call_id)
    role_resolver.require_staff(actor_id, call.organization_id)
    _ensure_not_closed(call, "freeze_form_schema")
    if not isinstance(schema, dict) or not isinstance(schema.get("sections"), list):
        raise ValidationError("schema must contain a list of sections")

    latest = call.latest_schema()
    snapshot = FormSchemaSnapshot(
        call_id=call.id,
        version=(latest.version + 1) if latest else 1,
    )
    snapshot.schema_json = json.dumps(schema)
    db.session.add(snapshot)
    db.session.commit()
    return {"call_id": call.id, "version": snapshot.version}


# ── Proposal ──────────────────────────────────────────────────────────────────


def create_proposal_draft(call_id: str, applicant_id: str, data: dict) -> dict:
    call = get_call(call_id)
    if call.status != "published":
        raise ValidationError("Proposals can only be started on a published call",
                              details={"call_status": call.status})
    proposal = Proposal(
        organization_id=call.organization_id,
        call_id=call.id,
        applicant_id=applicant_id,
        title=data.get("title"),
        knowledge_area=data.get("knowledge_area"),
        status="draft",
    )
    proposal.answers = data.get("answers") or {}
    db.session.add(proposal)
    db.session.commit()
    return proposal.to_dict()


def submit_proposal(proposal_id: str, applicant_id: str) -> dict:
    """draft → submitted with blind code and submitted_at, one transaction."""
    proposal = db.session.get(Proposal, proposal_id)
    if proposal is None:
        raise NotFoundError("Proposal", proposal_id)
    if proposal.applicant_id != applicant_id:
        raise NotAuthorized("Only the applicant may submit this proposal", user_id=applicant_id)
    if proposal.status != "draft":
        raise TransitionError("Proposal", proposal.id, "submit", proposal.status,
                              "proposal was already submitted")
    if proposal.call.status != "published":
        raise ValidationError("The call is not accepting submissions",
                              details={"call_status": proposal.call.status})

    try:
        code = assign_blind_code(proposal)
        proposal.status = "submitted"
        proposal.submitted_at = datetime.now(timezone.utc)
        AuditTrail.append(
            entity_type="proposal",
            entity_id=proposal.id,
            action="proposal.submit",
            actor=applicant_id,
            organization_id=proposal.organization_id,
            metadata=status_diff("draft", "submitted", blind_code=code),
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Proposal %s submitted as %s", proposal.id, code,
                extra={"call_id": proposal.call_id, "proposal_id": proposal.id})
    return proposal.to_dict()
