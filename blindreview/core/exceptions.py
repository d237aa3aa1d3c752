"""
Engine-wide exception hierarchy.

Services raise these types; the app factory registers one error handler per
type so every blueprint returns the same status codes and body shape.

Usage:
    from blindreview.core.exceptions import NotAuthorized, ValidationError

    raise NotAuthorized("Caller is not the reviewer on this assignment")
    raise ValidationError("Review is incomplete", details={"missing_scores": [...]})

Taxonomy:
    NotFoundError        404  resource missing (or outside the caller's scope)
    NotAuthorized        403  role / ownership check failed; never retried
    ValidationError      422  business rule violated; nothing was written
    ConflictBlocked      409  explicit assignment of a conflicted reviewer
    TransitionError      409  invalid lifecycle transition
    AlreadySatisfied     —    benign duplicate insert; swallowed by the engine
    ImmutableViolation   500  write against the audit log or a submitted
                              review; a programming defect, never recoverable
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Call", "Assignment").
        resource_id: The id that was looked up. Included in logs.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class NotAuthorized(Exception):
    """Raised when the caller lacks the role or ownership an operation needs."""

    def __init__(self, message: str, user_id: str | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured breakdown (missing items, field errors).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictBlocked(Exception):
    """Raised when a manual assignment names reviewers with a recorded conflict."""

    def __init__(self, proposal_id: str, reviewer_ids: list[str]) -> None:
        self.proposal_id = proposal_id
        self.reviewer_ids = list(reviewer_ids)
        super().__init__(
            f"Reviewer(s) {', '.join(self.reviewer_ids)} have a recorded conflict "
            f"with proposal {proposal_id}"
        )


class TransitionError(Exception):
    """Raised when a lifecycle action is not valid for the current status."""

    def __init__(self, entity: str, entity_id: str, action: str, current: str,
                 reason: str | None = None) -> None:
        msg = f"Cannot '{action}' {entity} {entity_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.entity = entity
        self.entity_id = entity_id
        self.action = action
        self.current_status = current
        self.reason = reason


class AlreadySatisfied(Exception):
    """A concurrent writer already created the requested assignment.

    Treated as success by the distribution engine; logged at DEBUG only.
    """

    def __init__(self, proposal_id: str, reviewer_id: str) -> None:
        self.proposal_id = proposal_id
        self.reviewer_id = reviewer_id
        super().__init__(f"Reviewer {reviewer_id} already assigned to proposal {proposal_id}")


class ImmutableViolation(Exception):
    """Attempted mutation of an append-only or sealed record. Fatal."""

    def __init__(self, entity: str, entity_id: str | None = None, operation: str = "update") -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.operation = operation
        target = f"{entity} {entity_id}" if entity_id is not None else entity
        super().__init__(f"{target} is immutable: {operation} is not permitted")
