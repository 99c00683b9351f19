"""Trace and span identifier generation.

Identifiers are random, not sequential, so concurrent sessions and
separate processes never need to coordinate. Trace ids are 128-bit and
span ids 64-bit, both as lowercase hex, which is exactly the form the
wire protocol carries.
"""

import re
import secrets

TRACE_ID_HEX_LENGTH = 32
SPAN_ID_HEX_LENGTH = 16

_HEX = re.compile(r"^[0-9a-f]+$")


def _random_hex(nbytes: int) -> str:
    # All-zero ids are invalid on the wire
    while True:
        value = secrets.token_hex(nbytes)
        if value.strip("0"):
            return value


def new_trace_id() -> str:
    """Generate a 128-bit trace id (32 hex chars)."""
    return _random_hex(TRACE_ID_HEX_LENGTH // 2)


def new_span_id() -> str:
    """Generate a 64-bit span id (16 hex chars)."""
    return _random_hex(SPAN_ID_HEX_LENGTH // 2)


def _is_valid(value: object, length: int) -> bool:
    return isinstance(value, str) and len(value) == length and _HEX.match(value) is not None and value.strip("0") != ""


def is_valid_trace_id(value: object) -> bool:
    """True for a non-zero 32-char lowercase hex string."""
    return _is_valid(value, TRACE_ID_HEX_LENGTH)


def is_valid_span_id(value: object) -> bool:
    """True for a non-zero 16-char lowercase hex string."""
    return _is_valid(value, SPAN_ID_HEX_LENGTH)
