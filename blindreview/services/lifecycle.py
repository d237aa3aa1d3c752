"""
Status-transition helpers shared by the call and assignment lifecycles.

Transition tables live next to their models as
    {"action": {"from": [...], "to": "..."}}
and every service validates against them here before touching a row.
"""

from blindreview.core.exceptions import ImmutableViolation, TransitionError


def validate_transition(current: str, action: str, transitions: dict) -> dict:
    """
    Validate whether an action is valid for the current state.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    rule = transitions.get(action)
    if not rule:
        return {"valid": False, "from": current, "to": None,
                "reason": f"Unknown action: {action}"}

    if current not in rule["from"]:
        return {"valid": False, "from": current, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{current}'"}

    return {"valid": True, "from": current, "to": rule["to"], "reason": None}


def apply_transition(entity, entity_name: str, action: str, transitions: dict,
                     *, sealed_statuses=()) -> tuple[str, str]:
    """
    Move ``entity.status`` along ``action`` or raise.

    Statuses in ``sealed_statuses`` raise ImmutableViolation instead of
    TransitionError: they are read-only, not merely terminal.

    Returns:
        (old_status, new_status)
    """
    current = entity.status
    if current in sealed_statuses:
        raise ImmutableViolation(entity_name, entity.id, action)

    check = validate_transition(current, action, transitions)
    if not check["valid"]:
        raise TransitionError(entity_name, entity.id, action, current, check["reason"])

    entity.status = check["to"]
    return current, check["to"]


def status_diff(old: str, new: str, **extra) -> dict:
    """Audit metadata for a transition: {"status": {"old", "new"}, ...}."""
    data = {"status": {"old": old, "new": new}}
    data.update(extra)
    return data
