# errors.py — Domain error taxonomy
# Every failed call surfaces exactly one of these; main.py maps them to HTTP
# responses of the shape {"detail", "error", "request_id"}.

from typing import Optional


class BugBoardError(Exception):
    """Base class for expected, caller-facing failures"""

    status_code = 500
    kind = "internal"
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidInputError(BugBoardError):
    status_code = 400
    kind = "validation_error"
    default_detail = "Invalid input"


class UnauthorizedError(BugBoardError):
    status_code = 401
    kind = "unauthorized"
    default_detail = "Not authenticated"


class TokenExpiredError(UnauthorizedError):
    kind = "token_expired"
    default_detail = "Token expired"


class TokenInvalidError(UnauthorizedError):
    kind = "token_invalid"
    default_detail = "Invalid token"


class TokenUserNotFoundError(UnauthorizedError):
    kind = "user_not_found"
    default_detail = "User not found or inactive"


class ForbiddenError(BugBoardError):
    status_code = 403
    kind = "forbidden"
    default_detail = "Operation not permitted"


class NotFoundError(BugBoardError):
    status_code = 404
    kind = "not_found"
    default_detail = "Resource not found"


class ConflictError(BugBoardError):
    status_code = 409
    kind = "conflict"
    default_detail = "Resource already exists"


class AlreadyArchivedError(ConflictError):
    kind = "already_archived"
    default_detail = "Issue is already archived"


class TooManyAttemptsError(BugBoardError):
    status_code = 429
    kind = "too_many_attempts"
    default_detail = "Too many login attempts"


class InternalError(BugBoardError):
    """Collaborator failure. The detail is logged, never returned to the caller."""

    status_code = 500
    kind = "internal"
