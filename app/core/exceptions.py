"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, InvalidTransition

    raise NotFoundError(resource="LogEntry", resource_id=42)
    raise InvalidTransition("approve_for_signature", current="DRAFT")

Workflow errors:
    InvalidTransition               operation not legal from the current status   -> 409
    PermissionDenied                role / identity fails the predicate           -> 403
    InvalidCredentials              signer proof rejected (a PermissionDenied)    -> 403
    MissingTask                     caller has no PENDING task for the action     -> 409
    ConcurrentModificationConflict  version / lock mismatch on write              -> 409

"Already in target state" is deliberately NOT an exception: transition
results carry ``already_in_target_state=True`` and respond 200.
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "LogEntry", "User").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (e.g. unknown status alias, empty consent statement).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Workflow errors ──────────────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base for errors raised by the entry review / signature workflow.

    Every subclass carries enough detail for the UI to render a message:
    the attempted ``action``, the entry's ``current_status`` and a
    human-readable ``reason``.
    """

    def __init__(
        self,
        message: str,
        *,
        action: str | None = None,
        current_status: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.action = action
        self.current_status = current_status
        self.reason = reason

    def to_details(self) -> dict:
        details = {}
        if self.action:
            details["action"] = self.action
        if self.current_status:
            details["current_status"] = self.current_status
        if self.reason:
            details["reason"] = self.reason
        return details


class InvalidTransition(WorkflowError):
    """The operation is not legal from the entry's current status."""

    def __init__(self, action: str, current: str, reason: str | None = None) -> None:
        msg = f"Cannot '{action}' entry (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, action=action, current_status=current, reason=reason)


class PermissionDenied(WorkflowError):
    """The caller's role / identity does not satisfy the operation's predicate."""

    def __init__(self, user_id, action: str, reason: str | None = None) -> None:
        msg = f"User {user_id} does not have permission for '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, action=action, reason=reason)
        self.user_id = user_id


class InvalidCredentials(PermissionDenied):
    """The signer's credential proof or consent was rejected."""

    def __init__(self, user_id, reason: str = "Credential verification failed") -> None:
        super().__init__(user_id, "sign", reason)


class MissingTask(WorkflowError):
    """The caller has no PENDING task for the requested action."""

    def __init__(self, user_id, action: str, task_kind: str) -> None:
        super().__init__(
            f"User {user_id} has no pending {task_kind} task for '{action}'",
            action=action,
            reason=f"no pending {task_kind} task",
        )
        self.user_id = user_id
        self.task_kind = task_kind


class ConcurrentModificationConflict(WorkflowError):
    """The entry changed underneath the caller; re-read and re-evaluate.

    Args:
        entry_id: The contested entry.
        expected_version: Version the caller based its request on (if any).
        current_version: Latest committed version, when known.
    """

    retryable = True

    def __init__(
        self,
        entry_id,
        expected_version: int | None = None,
        current_version: int | None = None,
    ) -> None:
        msg = f"LogEntry id={entry_id} was modified concurrently"
        if expected_version is not None and current_version is not None:
            msg += f" (expected version {expected_version}, current {current_version})"
        super().__init__(msg, reason="concurrent modification")
        self.entry_id = entry_id
        self.expected_version = expected_version
        self.current_version = current_version

    def to_details(self) -> dict:
        details = super().to_details()
        details["retryable"] = True
        if self.current_version is not None:
            details["current_version"] = self.current_version
        return details
