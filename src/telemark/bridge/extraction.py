"""Dual-strategy field extraction from generic envelopes.

Two extractors read an envelope's fields back into a dict:

- ``NativeExtractor``: the structured ``json`` parser
- ``PatternExtractor``: sequential regular-expression scanning of the flat
  envelope shape (top-level scalars plus one level of nested object),
  with its own string unescaping

For every well-formed envelope both return identical values: strings are
unescaped the same way (including ``\\uXXXX`` surrogate pairs), numbers
become ``int`` unless they carry a fraction or exponent, and duplicate
keys resolve last-wins.

The strategy is chosen once, when an exporter is configured
(``select_extractor``), never per call.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol

from telemark.bridge.errors import ExtractionError
from telemark.contracts.enums import JsonParseMode


class FieldExtractor(Protocol):
    mode: JsonParseMode

    def extract(self, text: str) -> dict[str, Any]:
        """Parse envelope text into a field dict.

        Raises:
            ExtractionError: If the text is not a flat JSON object
        """
        ...


class NativeExtractor:
    mode = JsonParseMode.NATIVE

    def extract(self, text: str) -> dict[str, Any]:
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"envelope is not valid JSON: {e}") from e
        if not isinstance(value, dict):
            raise ExtractionError(f"envelope must be a JSON object, got {type(value).__name__}")
        return value


_WS = re.compile(r"\s*")
_STRING = re.compile(r'"((?:[^"\\\x00-\x1f]|\\.)*)"', re.DOTALL)
_NUMBER = re.compile(r"-?(?:0|[1-9][0-9]*)(\.[0-9]+)?([eE][+-]?[0-9]+)?")
_LITERAL = re.compile(r"true|false|null")
_COLON = re.compile(r"\s*:\s*")
_ESCAPE = re.compile(
    r"\\u([dD][89abAB][0-9a-fA-F]{2})\\u([dD][c-fC-F][0-9a-fA-F]{2})"
    r"|\\u([0-9a-fA-F]{4})"
    r"|\\(.)",
    re.DOTALL,
)
_SIMPLE_UNESCAPES: dict[str, str] = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}
_LITERALS: dict[str, Any] = {"true": True, "false": False, "null": None}


def _unescape_match(match: re.Match[str]) -> str:
    high, low, single, simple = match.groups()
    if high is not None:
        code = 0x10000 + ((int(high, 16) - 0xD800) << 10) + (int(low, 16) - 0xDC00)
        return chr(code)
    if single is not None:
        return chr(int(single, 16))
    replacement = _SIMPLE_UNESCAPES.get(simple)
    if replacement is None:
        raise ExtractionError(f"invalid escape sequence '\\{simple}'")
    return replacement


def unescape_json_string(raw: str) -> str:
    """Decode the body of a JSON string literal (without its quotes)."""
    if "\\" not in raw:
        return raw
    return _ESCAPE.sub(_unescape_match, raw)


class PatternExtractor:
    """Regex-based extraction for the flat envelope shape.

    Supports objects nested one level deep (the ``attributes`` object).
    Arrays and deeper nesting are rejected: envelopes never contain them.
    """

    mode = JsonParseMode.FALLBACK

    _MAX_DEPTH = 2

    def extract(self, text: str) -> dict[str, Any]:
        pos = _WS.match(text, 0).end()  # type: ignore[union-attr]  # \s* always matches
        value, pos = self._object(text, pos, depth=1)
        pos = _WS.match(text, pos).end()  # type: ignore[union-attr]
        if pos != len(text):
            raise ExtractionError(f"unexpected trailing data at offset {pos}")
        return value

    def _object(self, text: str, pos: int, *, depth: int) -> tuple[dict[str, Any], int]:
        if depth > self._MAX_DEPTH:
            raise ExtractionError("envelope nesting deeper than one object level")
        if not text.startswith("{", pos):
            raise ExtractionError(f"expected '{{' at offset {pos}")
        pos = _WS.match(text, pos + 1).end()  # type: ignore[union-attr]
        result: dict[str, Any] = {}
        if text.startswith("}", pos):
            return result, pos + 1
        while True:
            key_match = _STRING.match(text, pos)
            if key_match is None:
                raise ExtractionError(f"expected string key at offset {pos}")
            key = unescape_json_string(key_match.group(1))
            colon = _COLON.match(text, key_match.end())
            if colon is None:
                raise ExtractionError(f"expected ':' after key '{key}'")
            value, pos = self._value(text, colon.end(), depth=depth)
            result[key] = value
            pos = _WS.match(text, pos).end()  # type: ignore[union-attr]
            if text.startswith(",", pos):
                pos = _WS.match(text, pos + 1).end()  # type: ignore[union-attr]
                continue
            if text.startswith("}", pos):
                return result, pos + 1
            raise ExtractionError(f"expected ',' or '}}' at offset {pos}")

    def _value(self, text: str, pos: int, *, depth: int) -> tuple[Any, int]:
        if text.startswith('"', pos):
            match = _STRING.match(text, pos)
            if match is None:
                raise ExtractionError(f"unterminated string at offset {pos}")
            return unescape_json_string(match.group(1)), match.end()
        if text.startswith("{", pos):
            return self._object(text, pos, depth=depth + 1)
        if text.startswith("[", pos):
            raise ExtractionError(f"arrays are not supported in envelopes (offset {pos})")
        literal = _LITERAL.match(text, pos)
        if literal is not None:
            return _LITERALS[literal.group(0)], literal.end()
        number = _NUMBER.match(text, pos)
        if number is not None and number.end() > pos:
            token = number.group(0)
            if number.group(1) is None and number.group(2) is None:
                return int(token), number.end()
            return float(token), number.end()
        raise ExtractionError(f"unexpected value at offset {pos}")


def native_json_available() -> bool:
    """Capability check for the structured parser."""
    try:
        return json.loads('{"check":[1]}') == {"check": [1]}
    except Exception:
        return False


def select_extractor(mode: JsonParseMode) -> FieldExtractor:
    """Pick the extraction strategy for an exporter's lifetime.

    AUTO resolves to NATIVE when the structured parser passes the
    capability check, else FALLBACK.
    """
    match mode:
        case JsonParseMode.NATIVE:
            return NativeExtractor()
        case JsonParseMode.FALLBACK:
            return PatternExtractor()
        case JsonParseMode.AUTO:
            return NativeExtractor() if native_json_available() else PatternExtractor()


def extract_envelope(text: str, mode: JsonParseMode = JsonParseMode.AUTO) -> dict[str, Any]:
    """One-shot extraction with the strategy for ``mode``."""
    return select_extractor(mode).extract(text)
