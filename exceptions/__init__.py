from __future__ import annotations

from typing import Any


class ControlError(Exception):
    """Base control-plane exception, rendered as ``{error, error_description}``."""

    status_code = 500
    error = "internal_error"

    def __init__(self, description: str = "", *, error: str | None = None, **extra: Any):
        super().__init__(description)
        if error:
            self.error = error
        self.error_description = description
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error, "error_description": self.error_description}
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


class ValidationError(ControlError):
    """Malformed or missing input."""

    status_code = 400
    error = "validation_error"


class UnauthorizedError(ControlError):
    """Bad or missing credential."""

    status_code = 401
    error = "unauthorized"


class BlockedCommandError(ControlError):
    """Console command refused by the command policy."""

    status_code = 403
    error = "blocked_command"


class NotFoundError(ControlError):
    status_code = 404
    error = "not_found"


class ConflictError(ControlError):
    """Operation not allowed in the current lifecycle state."""

    status_code = 409
    error = "conflict"


class AlreadyOfflineError(ConflictError):
    status_code = 400
    error = "server_offline"


class ServerNotRunningError(ConflictError):
    status_code = 400
    error = "server_not_running"


class NotConfiguredError(ControlError):
    """A runtime secret or recorded field needed by the call is absent."""

    status_code = 500
    error = "not_configured"


class InternalError(ControlError):
    status_code = 500
    error = "internal_error"


class UpstreamError(ControlError):
    """Provider, DNS, identity or RCON call failed."""

    status_code = 502
    error = "upstream_error"


class RconError(Exception):
    """Raised when RCON fails."""


class RconAuthFailed(RconError):
    """Server rejected the RCON password."""


class RconConnectionFailed(RconError):
    """Socket-level RCON failure."""
