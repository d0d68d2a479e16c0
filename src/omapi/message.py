"""OMAPI messages and their wire encoding.

A message on the wire (big-endian throughout)::

    [int32 auth_id] uint32 sig_len  int32 opcode  int32 handle
    int32 transaction_id  int32 response_id  map control  map object
    [bytes signature]

Maps are ``{uint16 key_len, key, uint32 value_len, value}`` entries sorted by
key and closed by two zero bytes. The bracketed fields are left out of the
signing serialization, which is what the authenticator signs.
"""

from __future__ import annotations

import hmac
import random
import struct
import threading
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Union

from .errors import OmapiProtocolError
from .stream import StreamAssembler

if TYPE_CHECKING:  # pragma: no cover
    from .auth import Authenticator

MAX_INT32 = 2**31 - 1
MIN_INT32 = -(2**31)
MAX_KEY_LENGTH = 0xFFFF
MAX_VALUE_LENGTH = 0xFFFFFFFF
DEFAULT_MAX_VALUE_LENGTH = 8 * 1024 * 1024

_HEADER = struct.Struct(">Iiiii")
_AUTH_ID = struct.Struct(">i")
_KEY_LENGTH = struct.Struct(">H")
_VALUE_LENGTH = struct.Struct(">I")
_MAP_END = b"\x00\x00"

__all__ = [
    "Opcode",
    "Unset",
    "UNSET",
    "Value",
    "Message",
    "TransactionIdGenerator",
    "TRUE",
    "FALSE",
    "int32_to_bytes",
    "bytes_to_int32",
    "encode_map",
    "decode_map",
    "decode_message",
    "open_message",
    "create_message",
    "delete_message",
    "update_message",
]


class Opcode(IntEnum):
    OPEN = 1
    REFRESH = 2
    UPDATE = 3
    NOTIFY = 4
    STATUS = 5
    DELETE = 6

    def __str__(self) -> str:
        return self.name.lower()


class Unset(Enum):
    """Marks a map entry that must not be sent at all."""

    UNSET = "unset"

    def __repr__(self) -> str:
        return "UNSET"


UNSET = Unset.UNSET

Value = Union[bytes, Unset]


def int32_to_bytes(value: int) -> bytes:
    return struct.pack(">i", value)


def bytes_to_int32(data: Optional[bytes]) -> int:
    """Read a big-endian int32; anything shorter than four bytes reads as 0."""

    if not data or len(data) < 4:
        return 0
    return struct.unpack(">i", data[:4])[0]


TRUE = int32_to_bytes(1)
FALSE = int32_to_bytes(0)


class TransactionIdGenerator:
    """Thread-safe source of transaction ids.

    Ids only have to be unique among the requests of one connection, so a
    seedable PRNG is enough; pass ``seed`` to make the sequence repeatable.
    """

    def __init__(self, seed: Optional[int] = None) -> None:
        self._random = random.Random(seed)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return self._random.randint(0, MAX_INT32)


def _check_int32(name: str, value: int) -> None:
    if not MIN_INT32 <= value <= MAX_INT32:
        raise ValueError(f"{name} does not fit in a signed 32-bit integer: {value}")


def encode_map(data: Mapping[str, Value]) -> bytes:
    """Serialize a map with its keys in ascending order, skipping ``UNSET`` values."""

    entries = []
    for key, value in data.items():
        if value is UNSET:
            continue
        encoded_key = key.encode("utf-8")
        if not encoded_key:
            raise ValueError("map keys must not be empty")
        if len(encoded_key) > MAX_KEY_LENGTH:
            raise ValueError(f"map key is too long: {len(encoded_key)} bytes")
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"map value for {key!r} must be bytes or UNSET, not {type(value).__name__}")
        if len(value) > MAX_VALUE_LENGTH:
            raise ValueError(f"map value for {key!r} is too long: {len(value)} bytes")
        entries.append((encoded_key, bytes(value)))

    entries.sort(key=lambda entry: entry[0])
    out = bytearray()
    for encoded_key, value in entries:
        out += _KEY_LENGTH.pack(len(encoded_key))
        out += encoded_key
        out += _VALUE_LENGTH.pack(len(value))
        out += value
    out += _MAP_END
    return bytes(out)


def decode_map(stream: StreamAssembler, max_length: int = DEFAULT_MAX_VALUE_LENGTH) -> Dict[str, bytes]:
    result: Dict[str, bytes] = {}
    while True:
        (key_length,) = _KEY_LENGTH.unpack(stream.read_exactly(_KEY_LENGTH.size))
        if key_length == 0:
            return result
        raw_key = stream.read_exactly(key_length)
        try:
            key = raw_key.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise OmapiProtocolError(f"Map key is not valid UTF-8: {raw_key!r}") from exc

        (value_length,) = _VALUE_LENGTH.unpack(stream.read_exactly(_VALUE_LENGTH.size))
        if value_length > max_length:
            raise OmapiProtocolError(
                f"Value for {key!r} declares {value_length} bytes, above the {max_length} byte limit"
            )
        if key in result:
            raise OmapiProtocolError(f"Duplicate map key {key!r}")
        result[key] = stream.read_exactly(value_length)


@dataclass(eq=True)
class Message:
    """One OMAPI request or reply."""

    opcode: Opcode = Opcode.OPEN
    handle: int = 0
    transaction_id: int = 0
    response_id: int = 0
    control: Dict[str, Value] = field(default_factory=dict)
    object: Dict[str, Value] = field(default_factory=dict)
    auth_id: int = 0
    signature: bytes = b""

    def to_bytes(self, for_signing: bool = False) -> bytes:
        for name in ("auth_id", "handle", "transaction_id", "response_id"):
            _check_int32(name, getattr(self, name))

        out = bytearray()
        if not for_signing:
            out += _AUTH_ID.pack(self.auth_id)
        out += _HEADER.pack(
            len(self.signature),
            int(self.opcode),
            self.handle,
            self.transaction_id,
            self.response_id,
        )
        out += encode_map(self.control)
        out += encode_map(self.object)
        if not for_signing:
            out += self.signature
        return bytes(out)

    @classmethod
    def from_bytes(cls, data: bytes, *, max_length: int = DEFAULT_MAX_VALUE_LENGTH) -> "Message":
        """Decode exactly one complete on-wire message."""

        stream = StreamAssembler()
        stream.feed(data)
        message = decode_message(stream, max_length=max_length)
        if len(stream):
            raise OmapiProtocolError(f"{len(stream)} trailing bytes after message")
        return message

    def sign(self, authenticator: "Authenticator") -> None:
        """Stamp the authenticator's id and signature onto this message.

        The signed ``sig_len`` field already carries the final signature size,
        so a zero placeholder of that size is set before signing.
        """

        self.auth_id = authenticator.auth_id
        self.signature = bytes(authenticator.signature_length)
        self.signature = authenticator.sign(self)

    def verify(self, authenticator: "Authenticator") -> bool:
        return hmac.compare_digest(authenticator.sign(self), self.signature)

    def is_response_to(self, request: "Message") -> bool:
        return self.response_id == request.transaction_id

    def present_object(self) -> Dict[str, bytes]:
        """The object map as it would arrive at the server, without ``UNSET`` entries."""

        return {key: value for key, value in self.object.items() if value is not UNSET}


def decode_message(stream: StreamAssembler, max_length: int = DEFAULT_MAX_VALUE_LENGTH) -> Message:
    """Read the next on-wire message from ``stream``."""

    (auth_id,) = _AUTH_ID.unpack(stream.read_exactly(_AUTH_ID.size))
    sig_length, raw_opcode, handle, transaction_id, response_id = _HEADER.unpack(
        stream.read_exactly(_HEADER.size)
    )
    if sig_length > max_length:
        raise OmapiProtocolError(
            f"Signature declares {sig_length} bytes, above the {max_length} byte limit"
        )
    try:
        opcode = Opcode(raw_opcode)
    except ValueError as exc:
        raise OmapiProtocolError(f"Unknown opcode {raw_opcode}") from exc

    control = decode_map(stream, max_length)
    obj = decode_map(stream, max_length)
    signature = stream.read_exactly(sig_length)

    return Message(
        opcode=opcode,
        handle=handle,
        transaction_id=transaction_id,
        response_id=response_id,
        control=dict(control),
        object=dict(obj),
        auth_id=auth_id,
        signature=signature,
    )


def open_message(type_name: str, *, transaction_id: int) -> Message:
    return Message(
        opcode=Opcode.OPEN,
        transaction_id=transaction_id,
        control={"type": type_name.encode("utf-8")},
    )


def create_message(type_name: str, *, transaction_id: int) -> Message:
    message = open_message(type_name, transaction_id=transaction_id)
    message.control["create"] = TRUE
    message.control["exclusive"] = TRUE
    return message


def delete_message(handle: int, *, transaction_id: int) -> Message:
    return Message(opcode=Opcode.DELETE, handle=handle, transaction_id=transaction_id)


def update_message(handle: int, obj: Mapping[str, Value], *, transaction_id: int) -> Message:
    # Empty values are dropped as well; the server cannot unset fields.
    return Message(
        opcode=Opcode.UPDATE,
        handle=handle,
        transaction_id=transaction_id,
        object={key: value for key, value in obj.items() if value is not UNSET and len(value) > 0},
    )
