# errors.py — Error taxonomy shared by services and routers
# Each error carries the HTTP status and a short, user-facing message.
# main.py renders them as {"detail", "error", "request_id"}.


class AppError(Exception):
    status_code = 400
    kind = "error"
    default_message = "Request failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(AppError):
    status_code = 401
    kind = "unauthenticated"
    default_message = "Authentication required"


class Forbidden(AppError):
    status_code = 403
    kind = "forbidden"
    default_message = "You do not have access to this resource"


class NotFound(AppError):
    status_code = 404
    kind = "not_found"
    default_message = "Not found"


class InvalidTransition(AppError):
    status_code = 409
    kind = "invalid_transition"
    default_message = "Invalid status transition"


class ConstraintViolation(AppError):
    status_code = 400
    kind = "constraint_violation"
    default_message = "Request violates a data constraint"


class AlreadyExists(ConstraintViolation):
    status_code = 409
    kind = "already_exists"
    default_message = "Resource already exists"


class TooLarge(ConstraintViolation):
    status_code = 413
    kind = "too_large"
    default_message = "File size must be less than 5MB"


class UpstreamFailure(AppError):
    status_code = 503
    kind = "upstream_failure"
    default_message = "A backing service is unavailable"
