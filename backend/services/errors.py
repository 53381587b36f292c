"""Client lifecycle error taxonomy.

Every error carries an HTTP status, a stable error_code for logs/clients and a
short user_message. Internal detail stays in the exception message and is only
ever logged server-side.
"""
from typing import Optional


class LifecycleError(Exception):
    """Base class for lifecycle engine errors."""
    status_code = 500
    error_code = "LIFECYCLE_ERROR"
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if user_message:
            self.user_message = user_message


class ValidationError(LifecycleError):
    """Missing or malformed input. Never retried."""
    status_code = 400
    error_code = "VALIDATION_ERROR"
    user_message = "Some of the details provided are invalid."

    def __init__(self, message: str, field: Optional[str] = None):
        # Validation messages are written for end users already
        super().__init__(message, user_message=message)
        self.field = field


class DuplicateIdentity(LifecycleError):
    status_code = 409
    error_code = "DUPLICATE_IDENTITY"
    user_message = "An account with these details already exists."

    def __init__(self, email_taken: bool = False, company_taken: bool = False):
        if email_taken:
            user_message = "An account with this email already exists"
        elif company_taken:
            user_message = "This company number is already registered with our service"
        else:
            user_message = self.user_message
        super().__init__(
            f"duplicate identity email_taken={email_taken} company_taken={company_taken}",
            user_message=user_message,
        )
        self.email_taken = email_taken
        self.company_taken = company_taken


class InvalidTransition(LifecycleError):
    status_code = 409
    error_code = "INVALID_TRANSITION"

    def __init__(self, current_status: str, attempted: str):
        super().__init__(
            f"Cannot apply {attempted} to a subscription in status {current_status}",
            user_message=f"This action is not available while the subscription is {current_status}.",
        )
        self.current_status = current_status
        self.attempted = attempted


class TransitionConflict(InvalidTransition):
    """Another writer changed the subscription between read and write. Safe to re-run."""
    error_code = "TRANSITION_CONFLICT"


class DuplicateEvent(LifecycleError):
    """Payment event already applied. Webhook callers treat this as a no-op."""
    status_code = 409
    error_code = "DUPLICATE_EVENT"
    user_message = "Event already processed."

    def __init__(self, idempotency_key: str):
        super().__init__(f"Payment event {idempotency_key} already applied")
        self.idempotency_key = idempotency_key


class RateLimited(LifecycleError):
    status_code = 429
    error_code = "RATE_LIMITED"
    user_message = "Too many requests. Please try again later."


class NotFound(LifecycleError):
    status_code = 404
    error_code = "NOT_FOUND"
    user_message = "Not found."


class ExternalServiceFailure(LifecycleError):
    """Storage, email or payment gateway call failed. Never fatal to a core write."""
    status_code = 502
    error_code = "EXTERNAL_SERVICE_FAILURE"
    user_message = "A downstream service is unavailable."

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class PersistenceFailure(LifecycleError):
    status_code = 500
    error_code = "PERSISTENCE_FAILURE"
    user_message = "We could not save your request. Please try again."
