"""Attribute construction helpers.

Attributes are string key -> string value pairs. Within one attachment
(one span, event, metric, or log) keys are unique; on duplicates the last
write wins.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from typing import Any

AttributeSource = Mapping[str, Any] | Iterable[tuple[str, Any]] | None

_SURROGATE = re.compile("[\ud800-\udfff]")


def clean_text(value: str) -> str:
    """Make text storable as UTF-8.

    Unpaired surrogates (typical of ``surrogateescape``-decoded paths and
    environment variables) become U+FFFD; a surrogate pair is joined into
    the character it encodes. Text without surrogates is returned as is.
    """
    if _SURROGATE.search(value) is None:
        return value
    return value.encode("utf-16", "surrogatepass").decode("utf-16", "replace")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return clean_text(str(value))


def attribute(key: str, value: Any) -> tuple[str, str]:
    """Build one attribute pair, coercing the value to a string."""
    return key, _stringify(value)


def format_attribute(key: str, value: Any) -> str:
    """Render an attribute in its textual ``key=value`` form."""
    return f"{key}={_stringify(value)}"


def merge_attributes(*sources: AttributeSource) -> dict[str, str]:
    """Merge attribute sources left to right; later keys win.

    Each source may be a mapping or an iterable of ``(key, value)`` pairs.
    Pairs with an empty or non-string key, or a ``None`` value, are dropped.
    """
    merged: dict[str, str] = {}
    for source in sources:
        if source is None:
            continue
        pairs = source.items() if isinstance(source, Mapping) else source
        for key, value in pairs:
            if not isinstance(key, str) or not key or value is None:
                continue
            merged[clean_text(key)] = _stringify(value)
    return merged


def attributes_to_json(attributes: Mapping[str, str]) -> str:
    """Serialize an attribute set as a JSON object (storage form)."""
    return json.dumps(dict(attributes), separators=(",", ":"), ensure_ascii=False)


def attributes_from_json(text: str | None) -> dict[str, str]:
    """Parse the storage form back; empty or missing text is an empty set."""
    if not text:
        return {}
    loaded = json.loads(text)
    return {str(k): str(v) for k, v in loaded.items()}
