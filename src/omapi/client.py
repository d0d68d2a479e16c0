"""TCP client for the OMAPI control protocol of the ISC DHCP server."""

from __future__ import annotations

import socket
import struct
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol, Tuple

import structlog

from .auth import Authenticator, HMACMD5Authenticator, NullAuthenticator, decode_key
from .errors import (
    OmapiAuthenticationError,
    OmapiConfigurationError,
    OmapiConnectionError,
    OmapiHandshakeError,
    OmapiProtocolError,
    OmapiStatusError,
)
from .message import (
    DEFAULT_MAX_VALUE_LENGTH,
    Message,
    Opcode,
    TransactionIdGenerator,
    Value,
    bytes_to_int32,
    create_message,
    decode_message,
    delete_message,
    int32_to_bytes,
    open_message,
    update_message,
)
from .objects import Failover, Host, Lease
from .status import SUCCESS, Status, status_for
from .stream import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_EMPTY_READS, StreamAssembler

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7911
PROTOCOL_VERSION = 100
HEADER_SIZE = 24
CONTROL_STATE_SHUTDOWN = 2

_STARTUP = struct.Struct(">ii")

__all__ = [
    "OmapiClient",
    "ByteTransport",
    "ConnectionOptions",
    "ConnectionState",
    "ObjectResult",
    "dial",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    "PROTOCOL_VERSION",
    "HEADER_SIZE",
]

log = structlog.get_logger(__name__)


class ByteTransport(Protocol):
    """Abstraction for a reliable, ordered, bidirectional byte stream."""

    def send(self, data: bytes) -> None:  # pragma: no cover - protocol definition
        ...

    def recv(self, size: int) -> bytes:  # pragma: no cover - protocol definition
        ...

    def close(self) -> None:  # pragma: no cover - protocol definition
        ...


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    HANDSHAKE_SENT = "handshake_sent"
    HANDSHAKE_VERIFIED = "handshake_verified"
    AUTHENTICATOR_PENDING = "authenticator_pending"
    READY = "ready"


@dataclass(slots=True)
class ObjectResult:
    handle: int
    object: Dict[str, bytes]


@dataclass(slots=True)
class ConnectionOptions:
    """Tuning knobs for reading and validating server replies."""

    read_chunk_size: int = DEFAULT_CHUNK_SIZE
    max_value_length: int = DEFAULT_MAX_VALUE_LENGTH
    max_empty_reads: int = DEFAULT_MAX_EMPTY_READS
    verify_replies: bool = False

    def __post_init__(self) -> None:
        if self.read_chunk_size <= 0:
            raise OmapiConfigurationError("read_chunk_size must be greater than zero")
        if self.max_value_length < 0:
            raise OmapiConfigurationError("max_value_length cannot be negative")
        if self.max_empty_reads <= 0:
            raise OmapiConfigurationError("max_empty_reads must be greater than zero")

    @classmethod
    def from_config(cls, config: ConnectionOptions | Mapping[str, Any] | None) -> "ConnectionOptions":
        if config is None:
            return cls()
        if isinstance(config, ConnectionOptions):
            return cls(
                read_chunk_size=config.read_chunk_size,
                max_value_length=config.max_value_length,
                max_empty_reads=config.max_empty_reads,
                verify_replies=config.verify_replies,
            )

        def pick(snake: str, camel: str, default: Any) -> Any:
            value = config.get(snake)
            if value is None:
                value = config.get(camel, default)
            return value

        return cls(
            read_chunk_size=int(pick("read_chunk_size", "readChunkSize", DEFAULT_CHUNK_SIZE)),
            max_value_length=int(pick("max_value_length", "maxValueLength", DEFAULT_MAX_VALUE_LENGTH)),
            max_empty_reads=int(pick("max_empty_reads", "maxEmptyReads", DEFAULT_MAX_EMPTY_READS)),
            verify_replies=_parse_bool("verify_replies", pick("verify_replies", "verifyReplies", False)),
        )


_TRUE_WORDS = frozenset({"true", "1", "yes"})
_FALSE_WORDS = frozenset({"false", "0", "no"})


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise OmapiConfigurationError(f"{name} must be a boolean, got {value!r}")


class _SocketTransport:
    """Raw TCP socket; a zero-byte read means the server closed the connection."""

    def __init__(self, sock: socket.socket) -> None:
        self._socket = sock

    def send(self, data: bytes) -> None:
        self._socket.sendall(data)

    def recv(self, size: int) -> bytes:
        chunk = self._socket.recv(size)
        if not chunk:
            raise OmapiConnectionError("Connection closed while reading from socket")
        return chunk

    def close(self) -> None:
        try:
            self._socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._socket.close()


class OmapiClient:
    """Blocking OMAPI connection.

    The connection is established, the startup frames are exchanged and, when
    ``username`` and ``key`` are given, an HMAC-MD5 authenticator is bound, all
    from the constructor. Any failure there or later on the transport leaves the
    client disconnected for good; status errors from the server do not.

    One request is outstanding at a time: a client must not be shared between
    threads without external locking.
    """

    def __init__(
        self,
        *,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        username: str | None = None,
        key: str | None = None,
        connect_timeout: float | None = None,
        read_timeout: float | None = None,
        transport: ByteTransport | None = None,
        options: ConnectionOptions | Mapping[str, Any] | None = None,
        transaction_ids: TransactionIdGenerator | None = None,
    ) -> None:
        if bool(username) != bool(key):
            raise OmapiConfigurationError("username and key must be provided together")

        pending: HMACMD5Authenticator | None = None
        if username and key:
            pending = HMACMD5Authenticator(username, decode_key(key))

        self._host = host
        self._port = port
        self._options = ConnectionOptions.from_config(options)
        self._ids = transaction_ids or TransactionIdGenerator()
        self._authenticator: Authenticator = NullAuthenticator()
        self._state = ConnectionState.DISCONNECTED
        self._transport: ByteTransport | None = None

        if transport is None:
            transport = self._open_socket(connect_timeout, read_timeout)
        self._transport = transport
        self._stream = StreamAssembler(
            transport,
            chunk_size=self._options.read_chunk_size,
            max_empty_reads=self._options.max_empty_reads,
        )

        with self._fatal_on_error("setup"):
            self._handshake()
            self._bind_authenticator(pending)

        log.info(
            "omapi_connected",
            host=self._host,
            port=self._port,
            auth_id=self._authenticator.auth_id,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self._state = ConnectionState.DISCONNECTED

    def __enter__(self) -> "OmapiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def authenticator(self) -> Authenticator:
        return self._authenticator

    def new_message(self, opcode: Opcode = Opcode.OPEN) -> Message:
        return Message(opcode=opcode, transaction_id=self._ids.next_id())

    def new_open_message(self, type_name: str) -> Message:
        return open_message(type_name, transaction_id=self._ids.next_id())

    def new_create_message(self, type_name: str) -> Message:
        return create_message(type_name, transaction_id=self._ids.next_id())

    def new_delete_message(self, handle: int) -> Message:
        return delete_message(handle, transaction_id=self._ids.next_id())

    def new_update_message(self, handle: int, obj: Mapping[str, Value]) -> Message:
        return update_message(handle, obj, transaction_id=self._ids.next_id())

    def query(self, message: Message) -> Tuple[Message, Status]:
        """Send ``message`` and return the server's reply with its status.

        Replies that are not status messages count as success; the caller
        reads their meaning from the opcode and maps.
        """

        if self._state is not ConnectionState.READY:
            raise OmapiConnectionError(f"Connection is not ready (state: {self._state.value})")
        return self._exchange(message)

    # ------------------------------------------------------------------
    # Object operations
    # ------------------------------------------------------------------

    def open_object(self, type_name: str, template: Mapping[str, Value] | None = None) -> ObjectResult:
        """Look up an object of ``type_name`` matching ``template``.

        Raises :class:`OmapiStatusError` when the server does not return the object.
        """

        message = self.new_open_message(type_name)
        if template:
            message.object.update(template)

        response, status = self.query(message)
        if response.opcode is Opcode.UPDATE:
            return self._object_result(response)
        raise self._status_error(response, status)

    def create_object(self, type_name: str, obj: Mapping[str, Value]) -> ObjectResult:
        message = self.new_create_message(type_name)
        message.object.update(obj)

        response, status = self.query(message)
        if status.is_error:
            raise self._status_error(response, status)
        return self._object_result(response)

    def update_object(self, handle: int, obj: Mapping[str, Value]) -> Optional[ObjectResult]:
        response, status = self.query(self.new_update_message(handle, obj))
        if status.is_error:
            raise self._status_error(response, status)
        if response.opcode is Opcode.UPDATE:
            return self._object_result(response)
        return None

    def delete_object(self, handle: int) -> None:
        response, status = self.query(self.new_delete_message(handle))
        if status.is_error:
            raise self._status_error(response, status)

    def shutdown_server(self) -> None:
        """Ask the server to shut down through its control object."""

        control = self.open_object("control")
        self.update_object(control.handle, {"state": int32_to_bytes(CONTROL_STATE_SHUTDOWN)})
        log.info("omapi_server_shutdown_requested", host=self._host, port=self._port)

    def find_host(self, host: Host) -> Host:
        result = self.open_object("host", host.to_object())
        return Host.from_object(result.object, handle=result.handle)

    def create_host(self, host: Host) -> Host:
        """Create ``host`` on the server and return the server's view of it.

        The server does not echo every field back, so the result may be less
        complete than the argument.
        """

        result = self.create_object("host", host.to_object())
        return Host.from_object(result.object, handle=result.handle)

    def find_lease(self, lease: Lease) -> Lease:
        # dhcpd only matches leases on ip-address, dhcp-client-identifier and
        # hardware-address; state and client-hostname are ignored.
        result = self.open_object("lease", lease.to_object())
        return Lease.from_object(result.object, handle=result.handle)

    def find_failover(self, name: str) -> Failover:
        result = self.open_object("failover-state", {"name": name.encode("utf-8")})
        return Failover.from_object(result.object)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _open_socket(self, connect_timeout: float | None, read_timeout: float | None) -> ByteTransport:
        try:
            sock = socket.create_connection((self._host, self._port), timeout=connect_timeout)
        except OSError as exc:
            raise OmapiConnectionError(f"Cannot connect to {self._host}:{self._port}: {exc}") from exc
        sock.settimeout(read_timeout)
        return _SocketTransport(sock)

    @contextmanager
    def _fatal_on_error(self, operation: str) -> Iterator[None]:
        try:
            yield
        except OSError as exc:
            self._abort(operation, exc)
            raise OmapiConnectionError(f"Transport failure during {operation}: {exc}") from exc
        except OmapiStatusError:
            raise
        except Exception as exc:
            self._abort(operation, exc)
            raise

    def _abort(self, operation: str, exc: BaseException) -> None:
        if self._transport is None:
            return
        log.warning(
            "omapi_connection_aborted",
            operation=operation,
            state=self._state.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        self.close()

    def _handshake(self) -> None:
        if self._transport is None:
            raise OmapiConnectionError("Transport is not available")

        self._transport.send(_STARTUP.pack(PROTOCOL_VERSION, HEADER_SIZE))
        self._state = ConnectionState.HANDSHAKE_SENT

        version, header_size = _STARTUP.unpack(self._stream.read_exactly(_STARTUP.size))
        if version != PROTOCOL_VERSION:
            raise OmapiHandshakeError(
                f"protocol version mismatch: server sent {version}, expected {PROTOCOL_VERSION}"
            )
        if header_size != HEADER_SIZE:
            raise OmapiHandshakeError(
                f"header size mismatch: server sent {header_size}, expected {HEADER_SIZE}"
            )
        self._state = ConnectionState.HANDSHAKE_VERIFIED

    def _bind_authenticator(self, authenticator: HMACMD5Authenticator | None) -> None:
        if authenticator is None:
            self._state = ConnectionState.READY
            return

        self._state = ConnectionState.AUTHENTICATOR_PENDING
        message = self.new_open_message("authenticator")
        message.object.update(authenticator.auth_object())

        # Still signed by the null authenticator: the server has no id for us yet.
        response, status = self._exchange(message)
        if response.opcode is not Opcode.UPDATE:
            raise OmapiAuthenticationError(
                f"received non-update response for open: {self._server_message(response) or status.message}"
            )
        if response.handle == 0:
            raise OmapiAuthenticationError("received invalid authid from server")

        authenticator.bind(response.handle)
        self._authenticator = authenticator
        self._state = ConnectionState.READY
        log.info("omapi_authenticator_bound", username=authenticator.username, auth_id=authenticator.auth_id)

    def _exchange(self, message: Message) -> Tuple[Message, Status]:
        if self._transport is None:
            raise OmapiConnectionError("Transport is not available")

        message.sign(self._authenticator)
        payload = message.to_bytes()

        with self._fatal_on_error("query"):
            log.debug(
                "omapi_query",
                opcode=str(message.opcode),
                handle=message.handle,
                transaction_id=message.transaction_id,
            )
            self._transport.send(payload)
            response = decode_message(self._stream, self._options.max_value_length)
            if not response.is_response_to(message):
                raise OmapiProtocolError(
                    "Mismatched response identifier: "
                    f"expected {message.transaction_id}, got {response.response_id}"
                )
            if self._options.verify_replies:
                self._verify_reply(response)

        status = self._status_of(response)
        log.debug(
            "omapi_reply",
            opcode=str(response.opcode),
            handle=response.handle,
            transaction_id=response.transaction_id,
            status=status.code,
        )
        return response, status

    def _verify_reply(self, response: Message) -> None:
        if response.auth_id != self._authenticator.auth_id:
            raise OmapiProtocolError(
                f"Reply signed by authenticator {response.auth_id}, expected {self._authenticator.auth_id}"
            )
        if not response.verify(self._authenticator):
            raise OmapiProtocolError("Reply signature verification failed")

    @staticmethod
    def _status_of(response: Message) -> Status:
        if response.opcode is not Opcode.STATUS:
            return SUCCESS
        result = response.control.get("result")
        return status_for(bytes_to_int32(result if isinstance(result, bytes) else None))

    @staticmethod
    def _server_message(response: Message) -> Optional[str]:
        text = response.control.get("message")
        if isinstance(text, bytes) and text:
            return text.decode("utf-8", errors="replace")
        return None

    def _status_error(self, response: Message, status: Status) -> OmapiStatusError:
        return OmapiStatusError(status=status, message=self._server_message(response))

    @staticmethod
    def _object_result(response: Message) -> ObjectResult:
        return ObjectResult(
            handle=response.handle,
            object={key: value for key, value in response.object.items() if isinstance(value, bytes)},
        )


def dial(address: str, username: str | None = None, key: str | None = None, **kwargs: Any) -> OmapiClient:
    """Connect to ``host[:port]`` (``[v6addr]:port`` for IPv6 literals)."""

    host, port = _split_address(address)
    return OmapiClient(host=host, port=port, username=username, key=key, **kwargs)


def _split_address(address: str) -> Tuple[str, int]:
    if not address:
        raise OmapiConfigurationError("address must be provided")
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif address.count(":") == 1:
        host, _, port_text = address.partition(":")
    else:
        host, port_text = address, ""
    if not port_text:
        return host, DEFAULT_PORT
    try:
        return host, int(port_text)
    except ValueError as exc:
        raise OmapiConfigurationError(f"invalid port in address {address!r}") from exc
