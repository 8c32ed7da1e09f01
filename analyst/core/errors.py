"""Error taxonomy for the chat subsystem.

Every error carries the HTTP status it maps to so the API layer can render
it uniformly. Tool-scoped errors additionally carry an ``error_code`` that is
fed back to the reasoning provider, which lets it correct itself.
"""

from fastapi import status


class AnalystError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Internal error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


# ── Request / access errors ──────────────────────────────────

class ValidationError(AnalystError):
    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    default_detail = "Invalid request"


class NotFound(AnalystError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class Forbidden(AnalystError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You do not have access to this conversation"


class SessionBusy(AnalystError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "A response is already being generated for this conversation."


class WorkerAuthError(AnalystError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Invalid worker signature"


class DispatchError(AnalystError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Failed to start the response. Please try again."


# ── Turn-scoped errors ───────────────────────────────────────

class ContextUnavailable(AnalystError):
    status_code = status.HTTP_424_FAILED_DEPENDENCY
    default_detail = "Failed to load required dataset content."


class ProviderError(AnalystError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "The reasoning provider is unavailable"


class PersistenceConflict(AnalystError):
    """A conditional transition did not match: another attempt owns the turn."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Message status changed concurrently"


# ── Tool-scoped errors (recoverable by the agent loop) ───────

class ToolError(AnalystError):
    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    error_code: str = "TOOL_ERROR"


class ToolNotFound(ToolError):
    error_code = "UNKNOWN_TOOL"


class InvalidArguments(ToolError):
    error_code = "INVALID_ARGUMENTS"


class ToolExecutionError(ToolError):
    error_code = "TOOL_EXECUTION_FAILED"

    def __init__(self, detail: str | None = None, error_code: str | None = None) -> None:
        super().__init__(detail)
        if error_code:
            self.error_code = error_code
