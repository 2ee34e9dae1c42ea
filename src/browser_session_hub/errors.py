"""Error taxonomy shared by the coordinator and the HTTP surfaces."""

from __future__ import annotations

from typing import Any, Optional


class SessionHubError(Exception):
    """Base class for errors reported to callers with a kind and a message."""

    status_code = 500
    kind = "internal_error"

    def __init__(self, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def public_message(self) -> str:
        return self.message


class ValidationError(SessionHubError):
    """Input rejected before any side effect took place."""

    status_code = 400
    kind = "validation_error"


class UnauthorizedError(SessionHubError):
    status_code = 401
    kind = "unauthorized"


class ForbiddenError(SessionHubError):
    status_code = 403
    kind = "forbidden"


class NotFoundError(SessionHubError):
    status_code = 404
    kind = "not_found"


class InvalidStateError(SessionHubError):
    """Operation is not legal for the session's current lifecycle state."""

    status_code = 409
    kind = "invalid_state"


class EngineNotActiveError(SessionHubError):
    """A running session has no live engine handle in this process."""

    status_code = 409
    kind = "engine_not_active"


class EngineInitError(SessionHubError):
    """The automation engine could not be started or navigated."""

    status_code = 502
    kind = "engine_init_failed"


class EngineTimeoutError(SessionHubError, TimeoutError):
    status_code = 504
    kind = "timeout"


class InfrastructureError(SessionHubError):
    """Datastore or registry unreachable. Never retried by the coordinator."""

    status_code = 503
    kind = "infrastructure_error"

    def public_message(self) -> str:
        return "The service is temporarily unavailable"
