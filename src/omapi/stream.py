"""Buffering reader that turns an arbitrarily fragmented byte stream into exact reads."""

from __future__ import annotations

from typing import Optional, Protocol

from .errors import OmapiConnectionError, OmapiProtocolError

DEFAULT_CHUNK_SIZE = 2048
DEFAULT_MAX_EMPTY_READS = 8

__all__ = ["StreamAssembler", "Readable", "DEFAULT_CHUNK_SIZE", "DEFAULT_MAX_EMPTY_READS"]


class Readable(Protocol):
    def recv(self, size: int) -> bytes:  # pragma: no cover - protocol definition
        ...


class StreamAssembler:
    """Accumulates transport reads so the decoder can ask for exact byte counts.

    ``ensure_available`` blocks on the transport until enough bytes are
    buffered; ``take`` hands them out. The transport decides how the bytes are
    split; callers never see it.

    A ``recv`` that returns no bytes is a stall, not a close: transports are
    expected to raise on close. After ``max_empty_reads`` consecutive stalls the
    assembler gives up with :class:`OmapiConnectionError`.

    Without a transport the assembler decodes only what was :meth:`feed`-ed to
    it, and running short raises :class:`OmapiProtocolError`.
    """

    def __init__(
        self,
        transport: Optional[Readable] = None,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_empty_reads: int = DEFAULT_MAX_EMPTY_READS,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be greater than zero")
        if max_empty_reads <= 0:
            raise ValueError("max_empty_reads must be greater than zero")
        self._transport = transport
        self._chunk_size = chunk_size
        self._max_empty_reads = max_empty_reads
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def ensure_available(self, size: int) -> None:
        empty_reads = 0
        while len(self._buffer) < size:
            if self._transport is None:
                raise OmapiProtocolError(
                    f"Truncated input: needed {size} bytes, only {len(self._buffer)} available"
                )
            chunk = self._transport.recv(self._chunk_size)
            if not chunk:
                empty_reads += 1
                if empty_reads >= self._max_empty_reads:
                    raise OmapiConnectionError("Transport stalled while reading from the server")
                continue
            empty_reads = 0
            self._buffer.extend(chunk)

    def take(self, size: int) -> bytes:
        if size > len(self._buffer):
            raise OmapiProtocolError(f"Cannot take {size} bytes, only {len(self._buffer)} buffered")
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def read_exactly(self, size: int) -> bytes:
        """Block until ``size`` bytes are buffered and return them."""

        self.ensure_available(size)
        return self.take(size)
