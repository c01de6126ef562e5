# Hearsay error taxonomy
# Every failure the core raises is one of these. The HTTP layer maps them to
# status codes; the finalization sweep logs them per rumor and moves on.


class HearsayError(Exception):
    """Base class. `retryable` tells the caller whether trying again can help."""

    code = "error"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(HearsayError):
    """Malformed or out-of-range input. The caller must fix the request."""

    code = "validation_error"
    status_code = 400


class VotingClosedError(ValidationError):
    code = "voting_closed"
    status_code = 403


class AuthorizationError(HearsayError):
    """Invalid signature, identity mismatch, or vote-to-see denial."""

    code = "unauthorized"
    status_code = 401


class ForbiddenError(AuthorizationError):
    code = "forbidden"
    status_code = 403


class ProbationError(ForbiddenError):
    code = "probation"


class NotFoundError(HearsayError):
    code = "not_found"
    status_code = 404


class ConflictError(HearsayError):
    """The operation already happened (duplicate vote, duplicate registration)."""

    code = "conflict"
    status_code = 409


class UnavailableError(HearsayError):
    """Store or collaborator transiently unreachable."""

    code = "unavailable"
    status_code = 503
    retryable = True
