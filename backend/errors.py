class ExamError(Exception):
    """Base class for user-safe errors raised by the attempt engine."""

    status_code = 400
    code = "exam_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ExamError):
    status_code = 400
    code = "validation_error"


class AuthorizationError(ExamError):
    status_code = 403
    code = "forbidden"


class NotActiveError(AuthorizationError):
    status_code = 400
    code = "not_active"


class NotFoundError(ExamError):
    status_code = 404
    code = "not_found"


class SessionError(ExamError):
    status_code = 401
    code = "invalid_session"


class ConflictError(ExamError):
    status_code = 409
    code = "conflict"


class DeviceConflictError(ConflictError):
    code = "device_conflict"

    def __init__(self, message: str = "Single device policy violated for this exam"):
        super().__init__(message)


class AlreadyFinalizedError(ConflictError):
    code = "already_finalized"

    def __init__(self, status: str):
        super().__init__(f"Attempt already {status}")
        self.status = status


class AttemptLimitReachedError(ConflictError):
    status_code = 400
    code = "attempt_limit_reached"

    def __init__(self, message: str = "Attempt limit reached"):
        super().__init__(message)


class DuplicateAttemptError(Exception):
    """Raised by a record store when an insert violates an attempt uniqueness rule."""
