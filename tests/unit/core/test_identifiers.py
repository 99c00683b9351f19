# tests/unit/core/test_identifiers.py
"""Tests for trace/span id generation and validation."""

from unittest.mock import patch

import pytest

from telemark.core.identifiers import (
    SPAN_ID_HEX_LENGTH,
    TRACE_ID_HEX_LENGTH,
    is_valid_span_id,
    is_valid_trace_id,
    new_span_id,
    new_trace_id,
)


class TestGeneration:
    def test_trace_id_is_32_lowercase_hex(self) -> None:
        trace_id = new_trace_id()
        assert len(trace_id) == TRACE_ID_HEX_LENGTH == 32
        assert trace_id == trace_id.lower()
        int(trace_id, 16)

    def test_span_id_is_16_lowercase_hex(self) -> None:
        span_id = new_span_id()
        assert len(span_id) == SPAN_ID_HEX_LENGTH == 16
        int(span_id, 16)

    def test_ids_are_unique(self) -> None:
        assert len({new_trace_id() for _ in range(1000)}) == 1000
        assert len({new_span_id() for _ in range(1000)}) == 1000

    def test_all_zero_draw_is_regenerated(self) -> None:
        """All-zero ids are invalid on the wire, so the generator redraws."""
        with patch("telemark.core.identifiers.secrets.token_hex", side_effect=["0" * 16, "00000000000000ab"]):
            assert new_span_id() == "00000000000000ab"


class TestValidation:
    def test_generated_ids_are_valid(self) -> None:
        assert is_valid_trace_id(new_trace_id())
        assert is_valid_span_id(new_span_id())

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "0" * 32,
            "ABCDEF0123456789ABCDEF0123456789",
            "g" * 32,
            "a" * 31,
            "a" * 33,
            None,
            12345,
        ],
    )
    def test_invalid_trace_ids(self, value: object) -> None:
        assert not is_valid_trace_id(value)

    def test_span_id_length_is_checked(self) -> None:
        assert is_valid_span_id("a" * 16)
        assert not is_valid_span_id("a" * 32)
        assert not is_valid_trace_id("a" * 16)
