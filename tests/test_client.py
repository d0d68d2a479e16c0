"""Tests for the OMAPI connection: handshake, authenticator binding and queries."""

from __future__ import annotations

import base64
import ipaddress
import socket
import struct
import threading
import time
from collections import deque
from typing import Any, Callable, Mapping, Union

import pytest
from structlog.testing import capture_logs

from omapi.auth import HMACMD5Authenticator
from omapi.client import (
    ConnectionOptions,
    ConnectionState,
    ObjectResult,
    OmapiClient,
    _SocketTransport,
    _split_address,
    dial,
)
from omapi.errors import (
    OmapiAuthenticationError,
    OmapiConfigurationError,
    OmapiConnectionError,
    OmapiHandshakeError,
    OmapiProtocolError,
    OmapiStatusError,
)
from omapi.message import TRUE, Message, Opcode, TransactionIdGenerator, int32_to_bytes
from omapi.objects import FailoverState, HardwareType, Host, Lease, LeaseState
from omapi.status import SUCCESS

STARTUP = struct.pack(">ii", 100, 24)
SECRET = b"super secret key"
SECRET_B64 = base64.b64encode(SECRET).decode("ascii")

Handler = Callable[[Message], Union[Message, bytes]]


class FakeTransport:
    """Scripted server: every request is decoded and answered by the next queued handler."""

    def __init__(self, *, startup: bytes = STARTUP, chunk_size: int | None = None) -> None:
        self.sent: list[bytes] = []
        self.requests: list[Message] = []
        self.closed = False
        self._handlers: deque[Handler] = deque()
        self._pending = bytearray(startup)
        self._chunk_size = chunk_size

    def queue_reply(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def send(self, data: bytes) -> None:
        if self.closed:
            raise OSError("transport closed")
        self.sent.append(data)
        if len(self.sent) == 1:
            return
        request = Message.from_bytes(data)
        self.requests.append(request)
        if not self._handlers:
            return
        reply = self._handlers.popleft()(request)
        self._pending += reply if isinstance(reply, bytes) else reply.to_bytes()

    def recv(self, size: int) -> bytes:
        if self.closed:
            raise OSError("transport closed")
        if not self._pending:
            raise OmapiConnectionError("Connection closed while reading from socket")
        size = min(size, self._chunk_size or size)
        data = bytes(self._pending[:size])
        del self._pending[:size]
        return data

    def close(self) -> None:
        self.closed = True


class FailingSendTransport(FakeTransport):
    def send(self, data: bytes) -> None:
        if self.sent:
            raise ConnectionResetError("connection reset by peer")
        super().send(data)


def reply(
    opcode: Opcode,
    *,
    handle: int = 0,
    control: Mapping[str, bytes] | None = None,
    obj: Mapping[str, bytes] | None = None,
    signer: HMACMD5Authenticator | None = None,
) -> Handler:
    def handler(request: Message) -> Message:
        message = Message(
            opcode=opcode,
            handle=handle,
            transaction_id=(request.transaction_id + 1) & 0x7FFFFFFF,
            response_id=request.transaction_id,
            control=dict(control or {}),
            object=dict(obj or {}),
        )
        if signer is not None:
            message.sign(signer)
        return message

    return handler


def status_reply(code: int, text: str = "") -> Handler:
    control = {"result": int32_to_bytes(code)}
    if text:
        control["message"] = text.encode()
    return reply(Opcode.STATUS, control=control)


def _make_client(
    *,
    transport: FakeTransport | None = None,
    options: ConnectionOptions | Mapping[str, Any] | None = None,
) -> tuple[OmapiClient, FakeTransport]:
    if transport is None:
        transport = FakeTransport()
    client = OmapiClient(transport=transport, options=options, transaction_ids=TransactionIdGenerator(seed=7))
    return client, transport


def _make_authenticated_client(
    *,
    auth_id: int = 5,
    options: ConnectionOptions | Mapping[str, Any] | None = None,
) -> tuple[OmapiClient, FakeTransport]:
    transport = FakeTransport()
    transport.queue_reply(reply(Opcode.UPDATE, handle=auth_id))
    client = OmapiClient(username="omapi_key", key=SECRET_B64, transport=transport, options=options)
    return client, transport


def test_handshake_sends_startup_frame_and_becomes_ready() -> None:
    client, transport = _make_client()

    assert transport.sent == [STARTUP]
    assert client.state is ConnectionState.READY
    assert client.connected
    assert client.authenticator.auth_id == 0


def test_version_mismatch_fails_setup() -> None:
    transport = FakeTransport(startup=struct.pack(">ii", 99, 24))

    with pytest.raises(OmapiHandshakeError, match="protocol version mismatch"):
        OmapiClient(transport=transport)

    assert transport.closed


def test_header_size_mismatch_fails_setup() -> None:
    transport = FakeTransport(startup=struct.pack(">ii", 100, 16))

    with pytest.raises(OmapiHandshakeError, match="header size mismatch"):
        OmapiClient(transport=transport)

    assert transport.closed


def test_server_closing_during_handshake_is_fatal() -> None:
    transport = FakeTransport(startup=b"\x00\x00\x00")

    with pytest.raises(OmapiConnectionError):
        OmapiClient(transport=transport)

    assert transport.closed


def test_open_host_returns_object_map() -> None:
    client, transport = _make_client()
    address = ipaddress.IPv4Address("10.0.0.1").packed
    transport.queue_reply(reply(Opcode.UPDATE, handle=7, obj={"name": b"h1", "ip-address": address}))

    message = client.new_open_message("host")
    message.object["name"] = b"h1"
    response, status = client.query(message)

    assert status == SUCCESS
    assert not status.is_error
    assert response.opcode is Opcode.UPDATE
    assert response.handle == 7
    assert response.object == {"name": b"h1", "ip-address": address}

    sent = transport.requests[0]
    assert sent.opcode is Opcode.OPEN
    assert sent.control == {"type": b"host"}
    assert sent.object == {"name": b"h1"}
    assert sent.auth_id == 0
    assert sent.signature == b""


def test_open_host_survives_single_byte_reads() -> None:
    client, transport = _make_client(transport=FakeTransport(chunk_size=1))
    address = ipaddress.IPv4Address("10.0.0.1").packed
    transport.queue_reply(reply(Opcode.UPDATE, handle=7, obj={"name": b"h1", "ip-address": address}))

    result = client.open_object("host", {"name": b"h1"})

    assert result == ObjectResult(handle=7, object={"name": b"h1", "ip-address": address})


def test_open_object_raises_status_when_not_found() -> None:
    client, transport = _make_client()
    transport.queue_reply(status_reply(23, "no object matches specification"))

    with pytest.raises(OmapiStatusError) as exc:
        client.open_object("host", {"name": b"missing"})

    assert exc.value.code == 23
    assert exc.value.status.message == "not found"
    assert exc.value.message == "no object matches specification"
    assert client.connected


def test_create_reports_already_exists() -> None:
    client, transport = _make_client()
    transport.queue_reply(status_reply(18))

    with pytest.raises(OmapiStatusError) as exc:
        client.create_host(Host(name="h1", hardware_address=b"\xaa\xbb\xcc\xdd\xee\xff"))

    assert exc.value.code == 18
    assert exc.value.status.message == "already exists"
    sent = transport.requests[0]
    assert sent.control == {"type": b"host", "create": TRUE, "exclusive": TRUE}
    assert client.connected


def test_status_error_leaves_connection_usable() -> None:
    client, transport = _make_client()
    transport.queue_reply(status_reply(18))
    transport.queue_reply(reply(Opcode.UPDATE, handle=9, obj={"name": b"h2"}))

    with pytest.raises(OmapiStatusError):
        client.create_object("host", {"name": b"h1"})
    result = client.create_object("host", {"name": b"h2"})

    assert result.handle == 9
    assert client.state is ConnectionState.READY


def test_create_host_returns_server_view() -> None:
    client, transport = _make_client()
    transport.queue_reply(
        reply(
            Opcode.UPDATE,
            handle=11,
            obj={
                "name": b"printer",
                "hardware-address": b"\x00\x11\x22\x33\x44\x55",
                "hardware-type": int32_to_bytes(1),
                "ip-address": bytes([192, 168, 1, 20]),
            },
        )
    )

    host = client.create_host(
        Host(
            name="printer",
            hardware_address=b"\x00\x11\x22\x33\x44\x55",
            hardware_type=HardwareType.ETHERNET,
            ip=ipaddress.IPv4Address("192.168.1.20"),
            statements='ddns-hostname "printer";',
        )
    )

    assert host.handle == 11
    assert host.name == "printer"
    assert host.hardware_type is HardwareType.ETHERNET
    assert host.ip == ipaddress.IPv4Address("192.168.1.20")
    assert transport.requests[0].object["statements"] == b'ddns-hostname "printer";'
    assert "dhcp-client-identifier" not in transport.requests[0].object


def test_delete_object_sends_handle() -> None:
    client, transport = _make_client()
    transport.queue_reply(status_reply(0))

    client.delete_object(42)

    sent = transport.requests[0]
    assert sent.opcode is Opcode.DELETE
    assert sent.handle == 42


def test_delete_unknown_handle_raises() -> None:
    client, transport = _make_client()
    transport.queue_reply(status_reply(23))

    with pytest.raises(OmapiStatusError) as exc:
        client.delete_object(42)

    assert exc.value.code == 23


def test_update_object_skips_empty_values() -> None:
    client, transport = _make_client()
    transport.queue_reply(reply(Opcode.UPDATE, handle=3, obj={"name": b"h1"}))

    result = client.update_object(3, {"name": b"h1", "statements": b""})

    assert result == ObjectResult(handle=3, object={"name": b"h1"})
    sent = transport.requests[0]
    assert sent.opcode is Opcode.UPDATE
    assert sent.handle == 3
    assert sent.object == {"name": b"h1"}


def test_update_object_without_update_reply_returns_none() -> None:
    client, transport = _make_client()
    transport.queue_reply(status_reply(0))

    assert client.update_object(3, {"name": b"h1"}) is None


def test_shutdown_server_updates_control_object() -> None:
    client, transport = _make_client()
    transport.queue_reply(reply(Opcode.UPDATE, handle=3, obj={"state": int32_to_bytes(1)}))
    transport.queue_reply(reply(Opcode.UPDATE, handle=3))

    client.shutdown_server()

    open_request, update_request = transport.requests
    assert open_request.control == {"type": b"control"}
    assert update_request.opcode is Opcode.UPDATE
    assert update_request.handle == 3
    assert update_request.object == {"state": int32_to_bytes(2)}


def test_find_failover_decodes_states() -> None:
    client, transport = _make_client()
    transport.queue_reply(
        reply(
            Opcode.UPDATE,
            handle=4,
            obj={
                "name": b"dhcp-failover",
                "local-state": int32_to_bytes(2),
                "partner-state": int32_to_bytes(3),
                "partner-port": int32_to_bytes(647),
            },
        )
    )

    failover = client.find_failover("dhcp-failover")

    assert transport.requests[0].control == {"type": b"failover-state"}
    assert failover.name == "dhcp-failover"
    assert failover.local_state is FailoverState.NORMAL
    assert failover.partner_state is FailoverState.COMMUNICATIONS_INTERRUPTED
    assert failover.partner_port == 647


def test_find_host_sends_only_set_fields() -> None:
    client, transport = _make_client()
    transport.queue_reply(
        reply(
            Opcode.UPDATE,
            handle=6,
            obj={"name": b"printer", "hardware-address": b"\x00\x11\x22\x33\x44\x55"},
        )
    )

    host = client.find_host(Host(name="printer"))

    assert transport.requests[0].object == {"name": b"printer"}
    assert host.handle == 6
    assert host.hardware_address == b"\x00\x11\x22\x33\x44\x55"


def test_find_lease_by_address() -> None:
    client, transport = _make_client()
    transport.queue_reply(
        reply(
            Opcode.UPDATE,
            handle=8,
            obj={
                "ip-address": bytes([10, 0, 0, 5]),
                "state": int32_to_bytes(2),
                "client-hostname": b"laptop",
            },
        )
    )

    lease = client.find_lease(Lease(ip=ipaddress.IPv4Address("10.0.0.5")))

    assert transport.requests[0].control == {"type": b"lease"}
    assert transport.requests[0].object == {"ip-address": bytes([10, 0, 0, 5])}
    assert lease.handle == 8
    assert lease.state is LeaseState.ACTIVE
    assert lease.client_hostname == "laptop"


def test_mismatched_response_id_disconnects() -> None:
    client, transport = _make_client()

    def wrong_reply(request: Message) -> Message:
        return Message(opcode=Opcode.UPDATE, handle=1, response_id=request.transaction_id ^ 1)

    transport.queue_reply(wrong_reply)

    with pytest.raises(OmapiProtocolError, match="Mismatched response identifier"):
        client.open_object("host", {"name": b"h1"})

    assert client.state is ConnectionState.DISCONNECTED
    assert transport.closed
    with pytest.raises(OmapiConnectionError, match="not ready"):
        client.query(client.new_open_message("host"))


def test_declared_length_above_limit_disconnects() -> None:
    client, transport = _make_client(options={"max_value_length": 16})
    transport.queue_reply(reply(Opcode.UPDATE, handle=1, obj={"blob": b"x" * 32}))

    with pytest.raises(OmapiProtocolError, match="limit"):
        client.open_object("host")

    assert client.state is ConnectionState.DISCONNECTED


def test_huge_declared_length_is_rejected_before_reading() -> None:
    client, transport = _make_client()

    def hostile_reply(request: Message) -> bytes:
        header = struct.pack(">iIiiii", 0, 0, int(Opcode.UPDATE), 1, 0, request.transaction_id)
        return header + b"\x00\x01x" + struct.pack(">I", 0xFFFFFFFF)

    transport.queue_reply(hostile_reply)

    with pytest.raises(OmapiProtocolError):
        client.open_object("host")
    assert transport.closed


def test_transport_failure_wraps_os_error() -> None:
    client, transport = _make_client(transport=FailingSendTransport())

    with pytest.raises(OmapiConnectionError, match="Transport failure"):
        client.open_object("host")

    assert client.state is ConnectionState.DISCONNECTED


def test_query_after_close_raises() -> None:
    client, _transport = _make_client()
    client.close()

    with pytest.raises(OmapiConnectionError):
        client.query(client.new_open_message("host"))


def test_context_manager_closes_transport() -> None:
    transport = FakeTransport()
    with OmapiClient(transport=transport) as client:
        assert client.connected

    assert transport.closed


def test_authenticator_binding_and_signed_traffic() -> None:
    client, transport = _make_authenticated_client(auth_id=5)

    bind_request = transport.requests[0]
    assert bind_request.opcode is Opcode.OPEN
    assert bind_request.control == {"type": b"authenticator"}
    assert bind_request.object == {"name": b"omapi_key", "algorithm": b"hmac-md5.SIG-ALG.REG.INT."}
    assert bind_request.auth_id == 0
    assert bind_request.signature == b""
    assert client.authenticator.auth_id == 5

    transport.queue_reply(reply(Opcode.UPDATE, handle=7, obj={"name": b"h1"}))
    client.open_object("host", {"name": b"h1"})

    signed = transport.requests[1]
    assert signed.auth_id == 5
    assert len(signed.signature) == 16
    assert signed.verify(HMACMD5Authenticator("omapi_key", SECRET))
    assert not signed.verify(HMACMD5Authenticator("omapi_key", b"another key"))


def test_authenticator_binding_with_zero_handle_fails() -> None:
    transport = FakeTransport()
    transport.queue_reply(reply(Opcode.UPDATE, handle=0))

    with pytest.raises(OmapiAuthenticationError, match="invalid authid"):
        OmapiClient(username="omapi_key", key=SECRET_B64, transport=transport)

    assert transport.closed


def test_authenticator_binding_with_status_reply_fails() -> None:
    transport = FakeTransport()
    transport.queue_reply(status_reply(23, "key not found"))

    with pytest.raises(OmapiAuthenticationError, match="non-update response"):
        OmapiClient(username="omapi_key", key=SECRET_B64, transport=transport)

    assert transport.closed


def test_malformed_key_fails_before_connecting() -> None:
    transport = FakeTransport()

    with pytest.raises(OmapiConfigurationError, match="base64"):
        OmapiClient(username="omapi_key", key="not*base64", transport=transport)

    assert transport.sent == []


def test_username_without_key_is_rejected() -> None:
    with pytest.raises(OmapiConfigurationError):
        OmapiClient(username="omapi_key", transport=FakeTransport())


def test_verify_replies_accepts_signed_replies() -> None:
    client, transport = _make_authenticated_client(auth_id=5, options={"verify_replies": True})
    server_auth = HMACMD5Authenticator("omapi_key", SECRET)
    server_auth.bind(5)
    transport.queue_reply(reply(Opcode.UPDATE, handle=7, obj={"name": b"h1"}, signer=server_auth))

    result = client.open_object("host", {"name": b"h1"})

    assert result.handle == 7


def test_verify_replies_rejects_bad_signature() -> None:
    client, transport = _make_authenticated_client(auth_id=5, options={"verifyReplies": True})
    forger = HMACMD5Authenticator("omapi_key", b"wrong secret")
    forger.bind(5)
    transport.queue_reply(reply(Opcode.UPDATE, handle=7, signer=forger))

    with pytest.raises(OmapiProtocolError, match="signature"):
        client.open_object("host")

    assert client.state is ConnectionState.DISCONNECTED


def test_verify_replies_rejects_foreign_auth_id() -> None:
    client, transport = _make_authenticated_client(auth_id=5, options={"verify_replies": True})
    other = HMACMD5Authenticator("omapi_key", SECRET)
    other.bind(6)
    transport.queue_reply(reply(Opcode.UPDATE, handle=7, signer=other))

    with pytest.raises(OmapiProtocolError, match="authenticator 6"):
        client.open_object("host")


def test_transaction_ids_come_from_injected_generator() -> None:
    client, transport = _make_client()
    transport.queue_reply(status_reply(0))
    expected = TransactionIdGenerator(seed=7).next_id()

    client.delete_object(1)

    assert transport.requests[0].transaction_id == expected


def test_connection_options_from_config() -> None:
    options = ConnectionOptions.from_config({"readChunkSize": 64, "max_value_length": 1024})

    assert options.read_chunk_size == 64
    assert options.max_value_length == 1024
    assert options.verify_replies is False
    assert ConnectionOptions.from_config(options) == options
    assert ConnectionOptions.from_config(None) == ConnectionOptions()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("false", False), ("0", False), ("No", False), ("TRUE", True), ("1", True), ("yes", True), (True, True), (0, False)],
)
def test_connection_options_parse_boolean_strings(raw: Any, expected: bool) -> None:
    assert ConnectionOptions.from_config({"verify_replies": raw}).verify_replies is expected
    assert ConnectionOptions.from_config({"verifyReplies": raw}).verify_replies is expected


@pytest.mark.parametrize("raw", ["maybe", "", 2, 1.5])
def test_connection_options_reject_non_boolean(raw: Any) -> None:
    with pytest.raises(OmapiConfigurationError, match="verify_replies"):
        ConnectionOptions.from_config({"verify_replies": raw})


def test_connection_options_validation() -> None:
    with pytest.raises(OmapiConfigurationError):
        ConnectionOptions(read_chunk_size=0)
    with pytest.raises(OmapiConfigurationError):
        ConnectionOptions(max_empty_reads=0)


def test_split_address() -> None:
    assert _split_address("10.0.0.1:7912") == ("10.0.0.1", 7912)
    assert _split_address("dhcp.example.com") == ("dhcp.example.com", 7911)
    assert _split_address("[::1]:7913") == ("::1", 7913)
    assert _split_address("[::1]") == ("::1", 7911)
    with pytest.raises(OmapiConfigurationError):
        _split_address("host:port")


def test_dial_uses_supplied_transport() -> None:
    transport = FakeTransport()

    client = dial("10.0.0.1:7912", transport=transport)

    assert client.connected
    assert transport.sent == [STARTUP]


def test_socket_transport_raises_when_peer_closes() -> None:
    ours, peer = socket.socketpair()
    transport = _SocketTransport(ours)
    peer.sendall(b"ab")
    peer.close()

    try:
        assert transport.recv(16) == b"ab"
        with pytest.raises(OmapiConnectionError, match="Connection closed"):
            transport.recv(16)
    finally:
        transport.close()


def test_handshake_over_socket_with_single_byte_writes() -> None:
    ours, peer = socket.socketpair()
    ours.settimeout(5)
    peer.settimeout(5)
    received = bytearray()

    def serve() -> None:
        for octet in STARTUP:
            peer.sendall(bytes([octet]))
            time.sleep(0.005)
        while len(received) < len(STARTUP):
            chunk = peer.recv(len(STARTUP) - len(received))
            if not chunk:
                break
            received.extend(chunk)

    server = threading.Thread(target=serve)
    server.start()
    try:
        client = OmapiClient(transport=_SocketTransport(ours))
        server.join(timeout=5)

        assert client.state is ConnectionState.READY
        assert bytes(received) == STARTUP
        client.close()
    finally:
        server.join(timeout=5)
        peer.close()


def test_server_closing_socket_during_handshake_is_fatal() -> None:
    ours, peer = socket.socketpair()
    peer.sendall(STARTUP[:3])
    peer.close()

    with pytest.raises(OmapiConnectionError, match="Connection closed"):
        OmapiClient(transport=_SocketTransport(ours))


def test_connect_to_closed_port_fails() -> None:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    listener.close()

    with pytest.raises(OmapiConnectionError, match="Cannot connect to 127.0.0.1"):
        OmapiClient(host="127.0.0.1", port=port, connect_timeout=2)


def test_reply_debug_log_carries_header_fields_only() -> None:
    client, transport = _make_client()
    transport.queue_reply(reply(Opcode.UPDATE, handle=7, obj={"name": b"h1", "statements": b"secret;"}))

    with capture_logs() as logs:
        client.open_object("host", {"name": b"h1"})

    (event,) = [entry for entry in logs if entry["event"] == "omapi_reply"]
    assert event["log_level"] == "debug"
    assert event["opcode"] == "update"
    assert event["handle"] == 7
    assert event["status"] == 0
    assert "h1" not in repr(event)
    assert "secret" not in repr(event)
