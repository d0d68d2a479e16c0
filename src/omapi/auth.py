"""Message authenticators.

OMAPI signs every message with the authenticator bound to the connection.
Without credentials that is the null authenticator (id 0, empty signature).
With a username and shared secret the server allocates an authenticator id
during connection setup, and every later message carries an HMAC-MD5 over its
signing serialization.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import TYPE_CHECKING, Dict, Protocol

from .errors import OmapiConfigurationError

if TYPE_CHECKING:  # pragma: no cover
    from .message import Message

NULL_AUTH_ID = 0
UNBOUND_AUTH_ID = -1
HMAC_MD5_ALGORITHM = b"hmac-md5.SIG-ALG.REG.INT."
HMAC_MD5_DIGEST_SIZE = 16

__all__ = [
    "Authenticator",
    "NullAuthenticator",
    "HMACMD5Authenticator",
    "decode_key",
    "NULL_AUTH_ID",
    "UNBOUND_AUTH_ID",
]


class Authenticator(Protocol):
    """Signing capability shared by every authenticator."""

    @property
    def auth_id(self) -> int:  # pragma: no cover - protocol definition
        ...

    @property
    def signature_length(self) -> int:  # pragma: no cover - protocol definition
        ...

    def auth_object(self) -> Dict[str, bytes]:  # pragma: no cover - protocol definition
        ...

    def bind(self, auth_id: int) -> None:  # pragma: no cover - protocol definition
        ...

    def sign(self, message: "Message") -> bytes:  # pragma: no cover - protocol definition
        ...


class NullAuthenticator:
    auth_id = NULL_AUTH_ID
    signature_length = 0

    def auth_object(self) -> Dict[str, bytes]:
        return {}

    def bind(self, auth_id: int) -> None:
        raise RuntimeError("The null authenticator cannot be bound to an id")

    def sign(self, message: "Message") -> bytes:
        return b""

    def __repr__(self) -> str:
        return "NullAuthenticator()"


class HMACMD5Authenticator:
    """HMAC-MD5 authenticator, as configured by ``key`` statements in dhcpd.conf.

    The id starts out unbound (``-1``) and is set exactly once, from the handle
    the server returns when the authenticator object is opened.
    """

    signature_length = HMAC_MD5_DIGEST_SIZE

    def __init__(self, username: str, key: bytes) -> None:
        if not username:
            raise OmapiConfigurationError("username must be provided")
        if not key:
            raise OmapiConfigurationError("key must not be empty")
        self._username = username
        self._key = bytes(key)
        self._auth_id = UNBOUND_AUTH_ID

    @property
    def username(self) -> str:
        return self._username

    @property
    def auth_id(self) -> int:
        return self._auth_id

    @property
    def bound(self) -> bool:
        return self._auth_id != UNBOUND_AUTH_ID

    def auth_object(self) -> Dict[str, bytes]:
        return {
            "name": self._username.encode("utf-8"),
            "algorithm": HMAC_MD5_ALGORITHM,
        }

    def bind(self, auth_id: int) -> None:
        if self.bound:
            raise RuntimeError(f"Authenticator is already bound to id {self._auth_id}")
        if auth_id == UNBOUND_AUTH_ID:
            raise ValueError("auth_id -1 is reserved for unbound authenticators")
        self._auth_id = auth_id

    def sign(self, message: "Message") -> bytes:
        return hmac.new(self._key, message.to_bytes(for_signing=True), hashlib.md5).digest()

    def __repr__(self) -> str:
        return f"HMACMD5Authenticator(username={self._username!r}, auth_id={self._auth_id})"


def decode_key(key: str) -> bytes:
    """Decode a base64 secret as printed by ``dnssec-keygen`` / ``tsig-keygen``."""

    try:
        decoded = base64.b64decode(key.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise OmapiConfigurationError("key is not valid base64") from exc
    if not decoded:
        raise OmapiConfigurationError("key must not be empty")
    return decoded
