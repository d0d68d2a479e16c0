"""OMAPI client package for the ISC DHCP server."""

__version__ = "0.1.0"

from .auth import Authenticator, HMACMD5Authenticator, NullAuthenticator, decode_key
from .client import (
    DEFAULT_PORT,
    ByteTransport,
    ConnectionOptions,
    ConnectionState,
    ObjectResult,
    OmapiClient,
    dial,
)
from .errors import (
    OmapiAuthenticationError,
    OmapiConfigurationError,
    OmapiConnectionError,
    OmapiError,
    OmapiHandshakeError,
    OmapiProtocolError,
    OmapiStatusError,
)
from .message import FALSE, TRUE, UNSET, Message, Opcode, TransactionIdGenerator, Unset
from .objects import (
    Failover,
    FailoverHierarchy,
    FailoverState,
    HardwareType,
    Host,
    Lease,
    LeaseState,
    describe_message,
    format_mac,
    parse_mac,
)
from .status import STATUSES, SUCCESS, Status, status_for
from .stream import StreamAssembler

__all__ = [
    "OmapiClient",
    "dial",
    "DEFAULT_PORT",
    "ByteTransport",
    "ConnectionOptions",
    "ConnectionState",
    "ObjectResult",
    "OmapiError",
    "OmapiConfigurationError",
    "OmapiConnectionError",
    "OmapiHandshakeError",
    "OmapiAuthenticationError",
    "OmapiProtocolError",
    "OmapiStatusError",
    "Message",
    "Opcode",
    "UNSET",
    "Unset",
    "TRUE",
    "FALSE",
    "TransactionIdGenerator",
    "StreamAssembler",
    "Authenticator",
    "NullAuthenticator",
    "HMACMD5Authenticator",
    "decode_key",
    "Status",
    "STATUSES",
    "SUCCESS",
    "status_for",
    "Host",
    "Lease",
    "Failover",
    "HardwareType",
    "LeaseState",
    "FailoverState",
    "FailoverHierarchy",
    "describe_message",
    "parse_mac",
    "format_mac",
    "__version__",
]
