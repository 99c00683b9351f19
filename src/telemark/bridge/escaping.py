"""JSON string escaping for values embedded in wire payloads.

Escapes quotes, backslashes, the short control escapes (\\n \\r \\t \\b
\\f), every other control character as \\u00XX, and lone surrogates as
\\uXXXX so the body always encodes as valid UTF-8. Other non-ASCII text is
passed through unchanged.
"""

import re

_SHORT_ESCAPES: dict[str, str] = {
    '"': '\\"',
    "\\": "\\\\",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\b": "\\b",
    "\f": "\\f",
}

_NEEDS_ESCAPE = re.compile('["\\\\\x00-\x1f\ud800-\udfff]')


def _replace(match: re.Match[str]) -> str:
    char = match.group(0)
    short = _SHORT_ESCAPES.get(char)
    if short is not None:
        return short
    return f"\\u{ord(char):04x}"


def escape_json_string(value: str) -> str:
    """Escape a string for embedding between JSON double quotes."""
    return _NEEDS_ESCAPE.sub(_replace, value)


def quote_json_string(value: str) -> str:
    """Escape and wrap in double quotes."""
    return f'"{escape_json_string(value)}"'
