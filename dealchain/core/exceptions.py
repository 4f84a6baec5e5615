"""
Domain exception hierarchy.

Every service in ``dealchain.services`` raises one of these types and
nothing else for business-rule failures. Callers (an HTTP layer, a worker,
a CLI) map them to their own transport once.

Validation always happens before any state mutation, so a raised error
means nothing was written. Only ``StateConflictError`` is retryable:
the caller re-reads the aggregate and re-applies its intent.

Usage:
    from dealchain.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Proposal", resource_id=proposal_id)
    raise ValidationError("title is required", details={"title": "required"})
"""


class DomainError(Exception):
    """Base class for all negotiation/contracting errors."""

    code = "domain_error"
    retryable = False


class ValidationError(DomainError):
    """Raised when input is missing, malformed, or violates a business rule.

    Also covers scope mismatches against a parent contract.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    code = "validation_error"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class NotFoundError(DomainError):
    """Raised when a referenced Opportunity/Proposal/Contract/Engagement is absent.

    Args:
        resource: Human-readable entity name (e.g. "Proposal").
        resource_id: The id that was looked up.
    """

    code = "not_found"

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class StateConflictError(DomainError):
    """Raised when the caller acted on a stale read.

    Examples: accepting a proposal version that is no longer current,
    passing an ``expected_generation`` that another writer already bumped,
    or losing a concurrent commit race. Retryable after a re-read.
    """

    code = "state_conflict"
    retryable = True

    def __init__(self, message: str, *, current: int | str | None = None) -> None:
        self.current = current
        super().__init__(message)


class InvalidStateError(StateConflictError):
    """Raised when an action is attempted from a state that does not allow it.

    Terminal states (REJECTED, CANCELLED, COMPLETED, ...) and one-way gates
    (FINAL_ACCEPTED) land here. Re-reading does not help, so not retryable.
    """

    code = "invalid_state"
    retryable = False

    def __init__(self, resource: str, current: str, action: str) -> None:
        self.resource = resource
        self.action = action
        super().__init__(
            f"Cannot {action} {resource} in status {current}", current=current,
        )


class PreconditionError(DomainError):
    """Raised when an upstream entity is not in the state an operation needs.

    E.g. a sub-contract requested against an unsigned parent, or an
    Engagement requested against an unsigned Contract.
    """

    code = "precondition_failed"


class AuthorizationError(DomainError):
    """Raised when the actor is not a recognized counterpart of the entity.

    Args:
        actor_id: The party id that attempted the action.
        message: What the actor was not allowed to do.
    """

    code = "not_authorized"

    def __init__(self, actor_id: str | None, message: str) -> None:
        self.actor_id = actor_id
        super().__init__(f"{message} (actor={actor_id})")
