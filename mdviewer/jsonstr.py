"""Hand-written JSON string literal encoding for render request bodies."""

from __future__ import annotations

_SHORT_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


def json_string(text: str) -> str:
    """Return `text` as a double-quoted JSON string literal.

    Non-ASCII characters are emitted as-is; only quotes, backslashes and
    C0 control characters are escaped.
    """
    parts = ['"']
    for char in text:
        escaped = _SHORT_ESCAPES.get(char)
        if escaped is not None:
            parts.append(escaped)
        elif ord(char) < 0x20:
            parts.append(f"\\u{ord(char):04x}")
        else:
            parts.append(char)
    parts.append('"')
    return "".join(parts)


def json_object(fields: dict[str, str]) -> str:
    """Encode a flat mapping of string keys to string values as a JSON object."""
    members = ",".join(f"{json_string(key)}:{json_string(value)}" for key, value in fields.items())
    return "{" + members + "}"
