"""Key and value encoding shared by every store backend.

Keys are packed into strings whose lexicographic order equals the key
order (bytes < str < number < bool, then by value, shorter prefix first).
The packed form is the storage identity, the list cursor, and, in Redis,
the member of the lexicographic index.
"""

from __future__ import annotations

import base64
import json
import math
import struct

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Union


KeyPart = Union[str, int, float, bool, bytes]
KvKey = tuple[KeyPart, ...]

_BYTES = "\x01"
_STRING = "\x02"
_NUMBER = "\x03"
_BOOL = "\x04"
# Sorts after every type tag.
_PAST_TAGS = "\x05"

_MAX_SAFE_INT = 2**53
_BYTES_TAG = "__bytes__"


def validate_key(key: Sequence[Any]) -> KvKey:
    """Validate and normalize a key.

    Integral floats are folded into ints so ``1`` and ``1.0`` address the
    same entry.

    Parameters
    ----------
    key : sequence
        Key parts.

    Returns
    -------
    tuple
        The normalized key.

    Raises
    ------
    TypeError
        If the key is not a sequence of supported parts.
    ValueError
        If the key is empty or contains NaN, an infinity or an integer
        outside 53 bits.
    """
    if isinstance(key, (str, bytes)) or not isinstance(key, Sequence):
        msg = f"Key must be a tuple or list of parts, got {type(key).__name__}"
        raise TypeError(msg)
    if not key:
        msg = "Key must have at least one part"
        raise ValueError(msg)

    parts: list[KeyPart] = []
    for part in key:
        if isinstance(part, (bool, str, bytes)):
            parts.append(part)
        elif isinstance(part, (bytearray, memoryview)):
            parts.append(bytes(part))
        elif isinstance(part, int):
            if abs(part) > _MAX_SAFE_INT:
                msg = f"Integer key part {part} does not fit in 53 bits"
                raise ValueError(msg)
            parts.append(part)
        elif isinstance(part, float):
            if not math.isfinite(part):
                msg = f"NaN and infinities are not valid key parts, got {part}"
                raise ValueError(msg)
            if part.is_integer() and abs(part) <= _MAX_SAFE_INT:
                parts.append(int(part))
            else:
                parts.append(part)
        else:
            msg = f"Unsupported key part type: {type(part).__name__}"
            raise TypeError(msg)
    return tuple(parts)


def _pack_number(number: float) -> str:
    (bits,) = struct.unpack(">Q", struct.pack(">d", float(number)))
    bits = bits ^ 0xFFFFFFFFFFFFFFFF if bits >> 63 else bits | (1 << 63)
    return f"{bits:016x}"


def _pack_part(part: KeyPart) -> str:
    # bool before int: bool is an int subclass
    if isinstance(part, bool):
        return _BOOL + ("1" if part else "0")
    if isinstance(part, bytes):
        return _BYTES + part.hex() + "\x00"
    if isinstance(part, str):
        return _STRING + part.replace("\x00", "\x00\xff") + "\x00"
    return _NUMBER + _pack_number(part)


def pack_key(key: Sequence[Any]) -> str:
    """Pack a key into its order-preserving string form.

    Parameters
    ----------
    key : sequence
        Key parts (validated and normalized first).

    Returns
    -------
    str
        Packed key.
    """
    return "".join(_pack_part(part) for part in validate_key(key))


def prefix_upper_bound(packed_prefix: str) -> str:
    """Exclusive upper bound of every key strictly under a packed prefix."""
    return packed_prefix + _PAST_TAGS


def encode_cursor(packed: str) -> str:
    """Encode a packed key as an opaque URL-safe cursor."""
    return base64.urlsafe_b64encode(packed.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> str:
    """Decode a cursor produced by :func:`encode_cursor`.

    Raises
    ------
    ValueError
        If the cursor is malformed.
    """
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (ValueError, UnicodeError) as exc:
        msg = f"Malformed list cursor: {cursor!r}"
        raise ValueError(msg) from exc


# ── Key ranges ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class KeyRange:
    """A contiguous range of packed keys.

    ``None`` bounds are open. ``lower_inclusive`` applies to the lower
    bound; the upper bound is always exclusive.
    """

    lower: str | None = None
    lower_inclusive: bool = True
    upper: str | None = None

    def contains(self, packed: str) -> bool:
        """Check whether a packed key lies in the range."""
        if self.lower is not None:
            if packed < self.lower or (packed == self.lower and not self.lower_inclusive):
                return False
        return self.upper is None or packed < self.upper

    def after(self, packed: str, reverse: bool = False) -> KeyRange:
        """Narrow the range to keys strictly past ``packed`` in iteration order."""
        if reverse:
            upper = packed if self.upper is None else min(self.upper, packed)
            return KeyRange(self.lower, self.lower_inclusive, upper)
        if self.lower is None or packed >= self.lower:
            return KeyRange(packed, False, self.upper)
        return self

    def redis_bounds(self) -> tuple[str, str]:
        """Return ``(min, max)`` arguments for ``ZRANGEBYLEX``."""
        if self.lower is None:
            lo = "-"
        else:
            lo = ("[" if self.lower_inclusive else "(") + self.lower
        hi = "+" if self.upper is None else "(" + self.upper
        return lo, hi


def selector_range(selector: dict[str, Any]) -> KeyRange:
    """Translate a list selector into a key range.

    Supported shapes: ``{"prefix"}``, ``{"prefix", "start"}``,
    ``{"prefix", "end"}`` and ``{"start", "end"}``. ``start`` is
    inclusive, ``end`` exclusive, and a prefix never matches itself.

    Raises
    ------
    ValueError
        If the selector has an unsupported shape.
    """
    keys = set(selector)
    if keys not in ({"prefix"}, {"prefix", "start"}, {"prefix", "end"}, {"start", "end"}):
        msg = f"Unsupported list selector with fields {sorted(keys)}"
        raise ValueError(msg)

    lower: str | None = None
    lower_inclusive = True
    upper: str | None = None

    # An empty prefix selects every key.
    if selector.get("prefix"):
        packed_prefix = pack_key(selector["prefix"])
        lower, lower_inclusive = packed_prefix, False
        upper = prefix_upper_bound(packed_prefix)

    if "start" in selector:
        start = pack_key(selector["start"])
        if lower is None or start > lower:
            lower, lower_inclusive = start, True
    if "end" in selector:
        end = pack_key(selector["end"])
        if upper is None or end < upper:
            upper = end

    return KeyRange(lower, lower_inclusive, upper)


# ── Values ──────────────────────────────────────────────────────────


def _tag(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {str(k): _tag(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_tag(v) for v in value]
    return value


def _untag(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1 and _BYTES_TAG in value:
            return base64.b64decode(value[_BYTES_TAG])
        return {k: _untag(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_untag(v) for v in value]
    return value


def encode_value(value: Any) -> str:
    """Serialize a stored value to JSON, preserving ``bytes``.

    Raises
    ------
    TypeError
        If the value is not JSON-serializable.
    """
    return json.dumps(_tag(value), separators=(",", ":"), allow_nan=False)


def decode_value(data: str) -> Any:
    """Inverse of :func:`encode_value`. Tuples come back as lists."""
    return _untag(json.loads(data))
