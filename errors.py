"""
Error kinds raised by the reservation services.

Services raise these; only the Flask error handler registered in
``create_app`` turns them into HTTP responses.
"""


class ReservationError(Exception):
    status_code = 400
    kind = "error"
    default_message = "Request failed"

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"error": self.message, "kind": self.kind}
        body.update(self.details)
        return body


class ValidationError(ReservationError):
    status_code = 400
    kind = "validation_error"
    default_message = "Invalid request"


class ForbiddenError(ReservationError):
    status_code = 403
    kind = "forbidden"
    default_message = "Forbidden"


class NotFoundError(ReservationError):
    status_code = 404
    kind = "not_found"
    default_message = "Not found"


class ConflictError(ReservationError):
    status_code = 409
    kind = "conflict"
    default_message = "Conflict"


class StateError(ReservationError):
    status_code = 409
    kind = "invalid_state"
    default_message = "Invalid state transition"


class PolicyError(ReservationError):
    status_code = 400
    kind = "policy_violation"
    default_message = "Not allowed by booking policy"


class RetryableError(ReservationError):
    # transient datastore failure; callers (e.g. the gateway) should retry
    status_code = 503
    kind = "retryable"
    default_message = "Temporarily unavailable, retry later"
