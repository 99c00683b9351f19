"""Adaptive serialization buffers.

Small payloads are built in one preallocated ``FixedBuffer`` sized at the
chunking threshold. The first write that would overflow it migrates the
bytes written so far into a ``GrowableBuffer`` (a list of byte chunks) and
carries on there. The payload then reports ``TransportStrategy.CHUNKED``
so the transport streams it in fixed-size pieces instead of one body.

The switch is invisible to the writer and never truncates: a payload of
exactly ``threshold`` bytes stays on the simple path, ``threshold + 1``
bytes goes chunked, and the bytes are identical either way.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping, Sequence
from typing import Any

import structlog

from telemark.bridge.errors import BufferOverflowError, PayloadTooLargeError, SerializationError
from telemark.bridge.escaping import quote_json_string
from telemark.contracts.enums import TransportStrategy

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 8_192


class FixedBuffer:
    """Preallocated, fixed-capacity byte buffer."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._data = bytearray(capacity)
        self._size = 0

    @property
    def capacity(self) -> int:
        return len(self._data)

    @property
    def size(self) -> int:
        return self._size

    def write(self, data: bytes) -> None:
        """Append data.

        Raises:
            BufferOverflowError: If the data does not fit; nothing is written.
        """
        end = self._size + len(data)
        if end > len(self._data):
            raise BufferOverflowError(f"write of {len(data)} bytes exceeds remaining capacity {len(self._data) - self._size}")
        self._data[self._size : end] = data
        self._size = end

    def getvalue(self) -> bytes:
        return bytes(self._data[: self._size])


class GrowableBuffer:
    """Append-only buffer that grows by keeping a list of chunks."""

    def __init__(self, initial: bytes = b"") -> None:
        self._parts: list[bytes] = [initial] if initial else []
        self._size = len(initial)

    @property
    def size(self) -> int:
        return self._size

    @property
    def parts(self) -> list[bytes]:
        return list(self._parts)

    def write(self, data: bytes) -> None:
        if data:
            self._parts.append(data)
            self._size += len(data)

    def getvalue(self) -> bytes:
        return b"".join(self._parts)


def iter_fixed_chunks(parts: Sequence[bytes], chunk_size: int) -> Iterator[bytes]:
    """Re-slice a sequence of byte parts into chunks of exactly chunk_size
    (the last one may be shorter) without joining everything first.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    pending = bytearray()
    for part in parts:
        pending.extend(part)
        while len(pending) >= chunk_size:
            yield bytes(pending[:chunk_size])
            del pending[:chunk_size]
    if pending:
        yield bytes(pending)


class SerializedPayload:
    """A finished wire body plus the transport strategy it needs."""

    def __init__(self, strategy: TransportStrategy, parts: list[bytes]) -> None:
        self.strategy = strategy
        self._parts = parts
        self.size = sum(len(p) for p in parts)

    def body(self) -> bytes:
        return b"".join(self._parts)

    def iter_chunks(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        return iter_fixed_chunks(self._parts, chunk_size)


class AdaptiveBuffer:
    """Fixed buffer that migrates to a growable one on first overflow.

    Args:
        threshold: Fixed buffer capacity; larger payloads go chunked
        max_size: Hard limit; writes past it raise PayloadTooLargeError
    """

    def __init__(self, threshold: int, *, max_size: int | None = None) -> None:
        self._threshold = threshold
        self._max_size = max_size
        self._fixed = FixedBuffer(threshold)
        self._growable: GrowableBuffer | None = None

    @property
    def size(self) -> int:
        return self._growable.size if self._growable is not None else self._fixed.size

    @property
    def strategy(self) -> TransportStrategy:
        return TransportStrategy.SIMPLE if self._growable is None else TransportStrategy.CHUNKED

    def write(self, data: bytes) -> None:
        if self._max_size is not None and self.size + len(data) > self._max_size:
            raise PayloadTooLargeError(self.size + len(data), self._max_size)
        if self._growable is None:
            try:
                self._fixed.write(data)
                return
            except BufferOverflowError:
                self._growable = GrowableBuffer(self._fixed.getvalue())
                logger.debug("Payload exceeded fixed buffer, switching to chunked", threshold=self._threshold)
        self._growable.write(data)

    def finish(self) -> SerializedPayload:
        if self._growable is None:
            return SerializedPayload(TransportStrategy.SIMPLE, [self._fixed.getvalue()])
        return SerializedPayload(TransportStrategy.CHUNKED, self._growable.parts)


class JsonWriter:
    """Streams a JSON value into a buffer as compact UTF-8.

    Output matches ``json.dumps(value, separators=(",", ":"),
    ensure_ascii=False)`` for the types it accepts: dict (string keys),
    list/tuple, str, bool, None, int and finite float.
    """

    def __init__(self, buffer: AdaptiveBuffer | FixedBuffer | GrowableBuffer) -> None:
        self._buffer = buffer

    def _emit(self, text: str) -> None:
        self._buffer.write(text.encode("utf-8"))

    def write(self, value: Any) -> None:
        match value:
            case None:
                self._emit("null")
            case bool():
                self._emit("true" if value else "false")
            case int():
                self._emit(int.__repr__(value))
            case float():
                if not math.isfinite(value):
                    raise SerializationError(f"non-finite number {value!r} cannot be serialized")
                self._emit(float.__repr__(value))
            case str():
                self._emit(quote_json_string(value))
            case Mapping():
                self._emit("{")
                for index, (key, item) in enumerate(value.items()):
                    if not isinstance(key, str):
                        raise SerializationError(f"object keys must be strings, got {type(key).__name__}")
                    if index:
                        self._emit(",")
                    self._emit(quote_json_string(key))
                    self._emit(":")
                    self.write(item)
                self._emit("}")
            case list() | tuple():
                self._emit("[")
                for index, item in enumerate(value):
                    if index:
                        self._emit(",")
                    self.write(item)
                self._emit("]")
            case _:
                raise SerializationError(f"unsupported type for JSON serialization: {type(value).__name__}")


def serialize_json(value: Any, *, threshold: int, max_size: int | None = None) -> SerializedPayload:
    """Serialize a JSON-compatible value with the adaptive buffer strategy."""
    buffer = AdaptiveBuffer(threshold, max_size=max_size)
    JsonWriter(buffer).write(value)
    return buffer.finish()
