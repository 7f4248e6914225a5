"""
Error taxonomy shared by the store, gateways, chat service and HTTP layer.
"""


class ChatDeskError(Exception):
    """Base class for errors the service reports to callers."""

    status_code = 500


class ValidationError(ChatDeskError):
    """Malformed submission, rejected before any state change."""

    status_code = 400


class Unauthorized(ChatDeskError):
    """Admin-only action attempted without admin credentials."""

    status_code = 401


class NotFound(ChatDeskError):
    """Lookup for a session or roster entry that does not exist."""

    status_code = 404


class UpstreamUnavailable(ChatDeskError):
    """Text generation or a notification gateway failed or is not configured."""

    status_code = 503

    def __init__(self, service: str, reason: str) -> None:
        self.service = service
        self.reason = reason
        super().__init__(f"{service} unavailable: {reason}")


class PersistenceFailure(ChatDeskError):
    """The session store could not durably save or read a record."""

    status_code = 500

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Persistence failure during {operation}{detail}")
