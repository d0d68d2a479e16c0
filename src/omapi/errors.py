"""Exception hierarchy for the OMAPI client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .status import Status

__all__ = [
    "OmapiError",
    "OmapiConfigurationError",
    "OmapiConnectionError",
    "OmapiHandshakeError",
    "OmapiAuthenticationError",
    "OmapiProtocolError",
    "OmapiStatusError",
]


class OmapiError(Exception):
    """Base class for every error raised by this package."""


class OmapiConfigurationError(OmapiError, ValueError):
    """Raised when the caller supplies unusable credentials or options."""


class OmapiConnectionError(OmapiError, RuntimeError):
    """Raised when the connection is disrupted; the client cannot be reused."""


class OmapiHandshakeError(OmapiConnectionError):
    """Raised when the server's startup frame does not match ours."""


class OmapiAuthenticationError(OmapiHandshakeError):
    """Raised when the server refuses to bind the authenticator."""


class OmapiProtocolError(OmapiConnectionError):
    """Raised when the server sends something the stream can no longer be trusted after."""


@dataclass
class OmapiStatusError(OmapiError):
    """A non-success status returned for an otherwise well-formed exchange."""

    status: "Status"
    message: Optional[str] = None

    @property
    def code(self) -> int:
        return self.status.code

    def __str__(self) -> str:  # pragma: no cover - trivial repr
        if self.message:
            return f"{self.status.code}: {self.status.message} ({self.message})"
        return f"{self.status.code}: {self.status.message}"
