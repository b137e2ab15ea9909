"""Error taxonomy shared by services and HTTP controllers.

Services raise these exceptions; `main` registers a single handler that
turns them into `{"detail": ..., "code": ...}` responses with the
matching status code. Nothing in the core retries.
"""


class AppError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 400
    code = "app_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class Unauthenticated(AppError):
    status_code = 401
    code = "unauthenticated"


class InvalidInput(AppError):
    """Missing or malformed request input."""
    status_code = 400
    code = "invalid_input"


class MissingSelection(InvalidInput):
    code = "missing_selection"


class MissingResponse(InvalidInput):
    code = "missing_response"


class UnsupportedType(InvalidInput):
    code = "unsupported_type"


class NotFound(AppError):
    status_code = 404
    code = "not_found"


class MissingAnswerKey(AppError):
    """The version exists but its answer key is absent or unusable.

    This is a data-authoring defect, so it is reported rather than recovered.
    """
    status_code = 400
    code = "missing_answer_key"


class UpstreamFailure(AppError):
    """The persistence layer raised; the upstream message is kept."""
    status_code = 500
    code = "upstream_failure"
