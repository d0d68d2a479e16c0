"""Typed views of the host, lease and failover-state objects served by dhcpd.

Each record converts to and from the raw object map of a message. Fields the
caller leaves empty become ``UNSET`` so they are not sent at all, which the
server reads differently from a zero-length value.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional, Type, TypeVar, Union

from .message import UNSET, Message, Value, bytes_to_int32, int32_to_bytes

__all__ = [
    "HardwareType",
    "LeaseState",
    "FailoverState",
    "FailoverHierarchy",
    "Host",
    "Lease",
    "Failover",
    "parse_mac",
    "format_mac",
    "describe_object",
    "describe_message",
]

E = TypeVar("E", bound=IntEnum)


class HardwareType(IntEnum):
    ETHERNET = 1
    TOKEN_RING = 6
    FDDI = 8

    def __str__(self) -> str:
        return {1: "Ethernet", 6: "Token ring", 8: "FDDI"}[self.value]


class LeaseState(IntEnum):
    FREE = 1
    ACTIVE = 2
    EXPIRED = 3
    RELEASED = 4
    ABANDONED = 5
    RESET = 6
    BACKUP = 7
    RESERVED = 8
    BOOTP = 9

    def __str__(self) -> str:
        return self.name.lower()


class FailoverState(IntEnum):
    STARTUP = 1
    NORMAL = 2
    COMMUNICATIONS_INTERRUPTED = 3
    PARTNER_DOWN = 4
    POTENTIAL_CONFLICT = 5
    RECOVER = 6
    PAUSED = 7
    SHUTDOWN = 8
    RECOVER_DONE = 9
    RESOLUTION_INTERRUPTED = 10
    CONFLICT_DONE = 11
    RECOVER_WAIT = 254

    def __str__(self) -> str:
        return self.name.lower().replace("_", " ")


class FailoverHierarchy(IntEnum):
    PRIMARY = 0
    SECONDARY = 1

    def __str__(self) -> str:
        return self.name.lower()


def parse_mac(text: str) -> bytes:
    """Parse ``aa:bb:cc:dd:ee:ff`` (or ``-`` separated) into raw bytes."""

    parts = text.replace("-", ":").split(":")
    try:
        raw = bytes(int(part, 16) for part in parts)
    except ValueError as exc:
        raise ValueError(f"invalid hardware address: {text!r}") from exc
    if any(len(part) not in (1, 2) for part in parts):
        raise ValueError(f"invalid hardware address: {text!r}")
    return raw


def format_mac(raw: bytes) -> str:
    return ":".join(f"{octet:02x}" for octet in raw)


def _enum_or_int(enum_cls: Type[E], value: int) -> Union[E, int]:
    try:
        return enum_cls(value)
    except ValueError:
        return value


def _optional_enum(enum_cls: Type[E], raw: Optional[bytes]) -> Union[E, int, None]:
    if not raw:
        return None
    value = bytes_to_int32(raw)
    if value == 0:
        return None
    return _enum_or_int(enum_cls, value)


def _ipv4(raw: Optional[bytes]) -> Optional[ipaddress.IPv4Address]:
    if raw is None or len(raw) != 4:
        return None
    return ipaddress.IPv4Address(raw)


def _timestamp(raw: Optional[bytes]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromtimestamp(bytes_to_int32(raw), tz=timezone.utc)


def _text(raw: Optional[bytes]) -> str:
    return raw.decode("utf-8", errors="replace") if raw else ""


def _bytes_or_unset(value: Optional[bytes]) -> Value:
    return bytes(value) if value else UNSET


def _text_or_unset(value: str) -> Value:
    return value.encode("utf-8") if value else UNSET


def _enum_or_unset(value: Optional[int]) -> Value:
    return int32_to_bytes(int(value)) if value else UNSET


def _address_or_unset(value: Optional[ipaddress.IPv4Address]) -> Value:
    return value.packed if value is not None else UNSET


@dataclass
class Host:
    """A ``host`` declaration. ``statements`` is write-only; the server never returns it."""

    name: str = ""
    ip: Optional[ipaddress.IPv4Address] = None
    hardware_address: Optional[bytes] = None
    hardware_type: Union[HardwareType, int, None] = None
    dhcp_client_identifier: Optional[bytes] = None
    statements: str = ""
    handle: int = 0

    def to_object(self) -> Dict[str, Value]:
        return {
            "name": _text_or_unset(self.name),
            "ip-address": _address_or_unset(self.ip),
            "hardware-address": _bytes_or_unset(self.hardware_address),
            "hardware-type": _enum_or_unset(self.hardware_type),
            "dhcp-client-identifier": _bytes_or_unset(self.dhcp_client_identifier),
            "statements": _text_or_unset(self.statements),
        }

    @classmethod
    def from_object(cls, obj: Mapping[str, bytes], *, handle: int = 0) -> "Host":
        return cls(
            name=_text(obj.get("name")),
            ip=_ipv4(obj.get("ip-address")),
            hardware_address=obj.get("hardware-address") or None,
            hardware_type=_optional_enum(HardwareType, obj.get("hardware-type")),
            dhcp_client_identifier=obj.get("dhcp-client-identifier") or None,
            handle=handle,
        )


@dataclass
class Lease:
    state: Union[LeaseState, int, None] = None
    ip: Optional[ipaddress.IPv4Address] = None
    dhcp_client_identifier: Optional[bytes] = None
    client_hostname: str = ""
    host: int = 0
    hardware_address: Optional[bytes] = None
    hardware_type: Union[HardwareType, int, None] = None
    ends: Optional[datetime] = None
    tstp: Optional[datetime] = None
    atsfp: Optional[datetime] = None
    cltt: Optional[datetime] = None
    handle: int = 0

    def to_object(self) -> Dict[str, Value]:
        return {
            "state": _enum_or_unset(self.state),
            "ip-address": _address_or_unset(self.ip),
            "dhcp-client-identifier": _bytes_or_unset(self.dhcp_client_identifier),
            "client-hostname": _text_or_unset(self.client_hostname),
            "hardware-address": _bytes_or_unset(self.hardware_address),
            "hardware-type": _enum_or_unset(self.hardware_type),
        }

    @classmethod
    def from_object(cls, obj: Mapping[str, bytes], *, handle: int = 0) -> "Lease":
        return cls(
            state=_optional_enum(LeaseState, obj.get("state")),
            ip=_ipv4(obj.get("ip-address")),
            dhcp_client_identifier=obj.get("dhcp-client-identifier") or None,
            client_hostname=_text(obj.get("client-hostname")),
            host=bytes_to_int32(obj.get("host")),
            hardware_address=obj.get("hardware-address") or None,
            hardware_type=_optional_enum(HardwareType, obj.get("hardware-type")),
            ends=_timestamp(obj.get("ends")),
            tstp=_timestamp(obj.get("tstp")),
            atsfp=_timestamp(obj.get("atsfp")),
            cltt=_timestamp(obj.get("cltt")),
            handle=handle,
        )


@dataclass
class Failover:
    """Read-only view of a ``failover-state`` object."""

    name: str = ""
    partner_address: Optional[ipaddress.IPv4Address] = None
    local_address: Optional[ipaddress.IPv4Address] = None
    partner_port: int = 0
    local_port: int = 0
    max_outstanding_updates: int = 0
    mclt: int = 0
    load_balance_max_secs: int = 0
    load_balance_hba: bytes = b""
    local_state: Union[FailoverState, int, None] = None
    partner_state: Union[FailoverState, int, None] = None
    local_stos: Optional[datetime] = None
    partner_stos: Optional[datetime] = None
    hierarchy: Union[FailoverHierarchy, int] = FailoverHierarchy.PRIMARY
    last_packet_sent: Optional[datetime] = None
    last_timestamp_received: Optional[datetime] = None
    skew: int = 0
    max_response_delay: int = 0
    cur_unacked_updates: int = 0

    @classmethod
    def from_object(cls, obj: Mapping[str, bytes]) -> "Failover":
        def number(key: str) -> int:
            return bytes_to_int32(obj.get(key))

        return cls(
            name=_text(obj.get("name")),
            partner_address=_ipv4(obj.get("partner-address")),
            local_address=_ipv4(obj.get("local-address")),
            partner_port=number("partner-port"),
            local_port=number("local-port"),
            max_outstanding_updates=number("max-outstanding-updates"),
            mclt=number("mclt"),
            load_balance_max_secs=number("load-balance-max-secs"),
            load_balance_hba=obj.get("load-balance-hba") or b"",
            local_state=_optional_enum(FailoverState, obj.get("local-state")),
            partner_state=_optional_enum(FailoverState, obj.get("partner-state")),
            local_stos=_timestamp(obj.get("local-stos")),
            partner_stos=_timestamp(obj.get("partner-stos")),
            hierarchy=_enum_or_int(FailoverHierarchy, number("hierarchy")),
            last_packet_sent=_timestamp(obj.get("last-packet-sent")),
            last_timestamp_received=_timestamp(obj.get("last-timestamp-received")),
            skew=number("skew"),
            max_response_delay=number("max-response-delay"),
            cur_unacked_updates=number("cur-unacked-updates"),
        )


_TIME_KEYS = frozenset({"atsfp", "cltt", "tstp", "tsfp", "starts", "ends"})
_INT_KEYS = frozenset({"remote-handle", "subnet", "pool", "flags", "result"})


def _describe_value(key: str, value: Value) -> Any:
    if value is UNSET:
        return None
    if key in _TIME_KEYS and len(value) >= 4:
        return _timestamp(value).isoformat()
    if key == "hardware-address":
        return format_mac(value)
    if key == "hardware-type" and len(value) >= 4:
        return str(_enum_or_int(HardwareType, bytes_to_int32(value)))
    if key == "state" and len(value) >= 4:
        return str(_enum_or_int(LeaseState, bytes_to_int32(value)))
    if key == "ip-address" and len(value) == 4:
        return str(ipaddress.IPv4Address(value))
    if key in _INT_KEYS:
        return bytes_to_int32(value)
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.hex()


def describe_object(obj: Mapping[str, Value]) -> Dict[str, Any]:
    """Render a raw map with well-known keys decoded, for logs and debugging."""

    return {key: _describe_value(key, value) for key, value in sorted(obj.items())}


def describe_message(message: Message) -> Dict[str, Any]:
    return {
        "auth-id": message.auth_id,
        "opcode": str(message.opcode),
        "handle": message.handle,
        "transaction-id": message.transaction_id,
        "response-id": message.response_id,
        "message": describe_object(message.control),
        "object": describe_object(message.object),
        "signature": message.signature.hex(),
    }
