"""Result codes carried by OMAPI status messages."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = ["Status", "STATUSES", "SUCCESS", "status_for"]


@dataclass(frozen=True, slots=True)
class Status:
    code: int
    message: str

    @property
    def is_error(self) -> bool:
        return self.code != 0

    def __str__(self) -> str:
        return self.message


_MESSAGES = (
    "success",
    "out of memory",
    "timed out",
    "no available threads",
    "address not available",
    "address in use",
    "permission denied",
    "no pending connections",
    "network unreachable",
    "host unreachable",
    "network down",
    "host down",
    "connection refused",
    "not enough free resources",
    "end of file",
    "socket already bound",
    "task is done",
    "lock busy",
    "already exists",
    "ran out of space",
    "operation canceled",
    "sending events is not allowed",
    "shutting down",
    "not found",
    "unexpected end of input",
    "failure",
    "I/O error",
    "not implemented",
    "unbalanced parentheses",
    "no more",
    "invalid file",
    "bad base64 encoding",
    "unexpected token",
    "quota reached",
    "unexpected error",
    "already running",
    "host unknown",
    "protocol version mismatch",
    "protocol error",
    "invalid argument",
    "not connected",
    "data not yet available",
    "object unchanged",
    "more than one object matches key",
    "key conflict",
    "parse error(s) occurred",
    "no key specified",
    "zone TSIG key not known",
    "invalid TSIG key",
    "operation in progress",
    "DNS format error",
    "DNS server failed",
    "no such domain",
    "not implemented",
    "refused",
    "domain already exists",
    "RRset already exists",
    "no such RRset",
    "not authorized",
    "not a zone",
    "bad DNS signature",
    "bad DNS key",
    "clock skew too great",
    "no root zone",
    "destination address required",
    "cross-zone update",
    "no TSIG signature",
    "not equal",
    "connection reset by peer",
    "unknown attribute",
)

STATUSES: tuple[Status, ...] = tuple(Status(code, message) for code, message in enumerate(_MESSAGES))
SUCCESS = STATUSES[0]


def status_for(code: int) -> Status:
    """Return the table entry for ``code``, or an "unknown status" outside the table."""

    if 0 <= code < len(STATUSES):
        return STATUSES[code]
    return Status(code, "unknown status")
