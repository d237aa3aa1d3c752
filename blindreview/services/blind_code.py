"""
Blind Code Generator.

Assigns a proposal's public anonymous identifier on its first transition to
``submitted``. Formats:
  - sequential:    {prefix}-{seq:03d}       (e.g. ED2026-001, ED2026-014)
  - random_short:  {prefix}-{6 × base36}    (e.g. ED2026-7KQ2ZD)

Prefix defaults to ED{current year}. Both strategies run while holding a
row lock on the owning Call (SELECT ... FOR UPDATE), so the read-increment-
write for the sequence and the collision probe for random codes happen in
the caller's transaction, atomically with the status change. The unique
index on (call_id, blind_code) is the backstop.

Usage:
    from blindreview.services.blind_code import assign_blind_code

    assign_blind_code(proposal)   # no-op when a code already exists
"""

import logging
import secrets
import string
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func

from blindreview.core.exceptions import ValidationError
from blindreview.models import db
from blindreview.models.call import BLIND_CODE_RANDOM_SHORT, Call
from blindreview.models.proposal import Proposal

logger = logging.getLogger(__name__)

BASE36_ALPHABET = string.digits + string.ascii_uppercase
RANDOM_SUFFIX_LENGTH = 6
DEFAULT_MAX_ATTEMPTS = 10


def default_prefix(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ED{now.year}"


def _lock_call(call_id: str) -> Call:
    """Serialize code generation per call by locking the call row."""
    return (
        db.session.query(Call)
        .filter(Call.id == call_id)
        .with_for_update()
        .one()
    )


def _code_taken(call_id: str, code: str) -> bool:
    return db.session.query(
        Proposal.query.filter_by(call_id=call_id, blind_code=code).exists()
    ).scalar()


def next_sequential_code(call: Call) -> str:
    """{prefix}-{n:03d} where n = proposals already holding a code + 1."""
    prefix = call.blind_code_prefix or default_prefix()
    issued = (
        db.session.query(func.count(Proposal.id))
        .filter(Proposal.call_id == call.id, Proposal.blind_code.isnot(None))
        .scalar()
    ) or 0
    seq = issued + 1
    code = f"{prefix}-{seq:03d}"
    # A call whose strategy changed mid-flight may already hold this number
    while _code_taken(call.id, code):
        seq += 1
        code = f"{prefix}-{seq:03d}"
    return code


def random_short_code(call: Call, max_attempts: int | None = None) -> str:
    """{prefix}-XXXXXX; retries on collision, ValidationError on exhaustion."""
    prefix = call.blind_code_prefix or default_prefix()
    if max_attempts is None:
        max_attempts = current_app.config.get("BLIND_CODE_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)

    for attempt in range(1, max_attempts + 1):
        suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(RANDOM_SUFFIX_LENGTH))
        code = f"{prefix}-{suffix}"
        if not _code_taken(call.id, code):
            return code
        logger.debug("Blind code collision on attempt %d for call %s", attempt, call.id)

    raise ValidationError(
        "Could not generate a unique blind code",
        details={"call_id": call.id, "attempts": max_attempts},
    )


def assign_blind_code(proposal: Proposal) -> str:
    """
    Give ``proposal`` its blind code if it has none; return the code.

    Must run inside the same transaction as the draft → submitted change.
    Never replaces an existing code.
    """
    if proposal.blind_code:
        return proposal.blind_code

    call = _lock_call(proposal.call_id)
    if call.blind_code_strategy == BLIND_CODE_RANDOM_SHORT:
        code = random_short_code(call)
    else:
        code = next_sequential_code(call)

    proposal.blind_code = code
    proposal.blind_code_generated_at = datetime.now(timezone.utc)
    db.session.flush()
    logger.info(
        "Blind code %s assigned to proposal %s", code, proposal.id,
        extra={"call_id": call.id, "proposal_id": proposal.id},
    )
    return code
