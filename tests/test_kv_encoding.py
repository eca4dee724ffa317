"""Tests for key packing, ranges, cursors and value encoding."""

from __future__ import annotations

import math

import pytest

from kvauth.kv.encoding import (
    KeyRange,
    decode_cursor,
    decode_value,
    encode_cursor,
    encode_value,
    pack_key,
    selector_range,
    validate_key,
)


# --- Key validation Tests ---


class TestValidateKey:
    """Tests for validate_key."""

    def test_accepts_mixed_parts(self) -> None:
        """Every supported part type passes through."""
        key = validate_key(["users", 1, 2.5, True, b"\x00\x01"])
        assert key == ("users", 1, 2.5, True, b"\x00\x01")

    def test_integral_float_folds_to_int(self) -> None:
        """1.0 and 1 are the same key."""
        assert validate_key(("n", 1.0)) == ("n", 1)
        assert isinstance(validate_key(("n", 1.0))[1], int)
        assert pack_key(("n", 1.0)) == pack_key(("n", 1))

    def test_rejects_empty_key(self) -> None:
        """An empty key is invalid."""
        with pytest.raises(ValueError, match="at least one part"):
            validate_key(())

    def test_rejects_string_as_key(self) -> None:
        """A bare string is not a key."""
        with pytest.raises(TypeError):
            validate_key("users")

    def test_rejects_nan(self) -> None:
        """NaN has no position in the key order."""
        with pytest.raises(ValueError, match="NaN"):
            validate_key(("n", math.nan))

    @pytest.mark.parametrize("part", [math.inf, -math.inf])
    def test_rejects_infinity(self, part) -> None:
        """Infinities cannot be stored by the JSON envelope."""
        with pytest.raises(ValueError, match="infinities"):
            validate_key(("n", part))

    def test_rejects_large_int(self) -> None:
        """Integers beyond 53 bits would lose precision."""
        with pytest.raises(ValueError, match="53 bits"):
            validate_key(("n", 2**53 + 1))
        assert validate_key(("n", 2**53)) == ("n", 2**53)

    def test_rejects_unsupported_type(self) -> None:
        """Dicts and None are not key parts."""
        with pytest.raises(TypeError, match="Unsupported"):
            validate_key(("n", None))
        with pytest.raises(TypeError):
            validate_key(("n", {"a": 1}))


# --- Key ordering Tests ---


class TestKeyOrdering:
    """Packed keys sort in key order."""

    def test_type_order(self) -> None:
        """bytes < str < number < bool."""
        packed = [pack_key((p,)) for p in (b"z", "a", 0, False)]
        assert packed == sorted(packed)

    def test_numbers_sort_numerically(self) -> None:
        """Negative, zero, fractions and large numbers keep numeric order."""
        values = [-1e300, -10, -1.5, -0.25, 0, 0.5, 1, 2, 10, 1e300]
        packed = [pack_key((v,)) for v in values]
        assert packed == sorted(packed)

    def test_strings_sort_lexicographically(self) -> None:
        """Strings compare by code point, shorter first."""
        values = ["", "a", "a\x00", "a\x00b", "ab", "b", "é"]
        packed = [pack_key((v,)) for v in values]
        assert packed == sorted(packed)

    def test_bytes_sort_bytewise(self) -> None:
        """Bytes compare by value, shorter first."""
        values = [b"", b"\x00", b"\x00\x00", b"\x01", b"\xff"]
        packed = [pack_key((v,)) for v in values]
        assert packed == sorted(packed)

    def test_prefix_sorts_before_extensions(self) -> None:
        """A key sorts before every key it prefixes."""
        assert pack_key(("a",)) < pack_key(("a", 0))
        assert pack_key(("a", "z")) < pack_key(("ab",))

    def test_bool_order(self) -> None:
        """False sorts before True."""
        assert pack_key((False,)) < pack_key((True,))
        assert pack_key((True,)) != pack_key((1,))


# --- Selector Tests ---


class TestSelectorRange:
    """Tests for selector_range."""

    def test_prefix_excludes_itself(self) -> None:
        """The prefix key is not part of its own range."""
        key_range = selector_range({"prefix": ("users",)})
        assert not key_range.contains(pack_key(("users",)))
        assert key_range.contains(pack_key(("users", 1)))
        assert key_range.contains(pack_key(("users", "z", "deep")))
        assert not key_range.contains(pack_key(("usersx",)))
        assert not key_range.contains(pack_key(("a",)))

    def test_empty_prefix_selects_everything(self) -> None:
        """An empty prefix is an unbounded range."""
        key_range = selector_range({"prefix": ()})
        assert key_range == KeyRange()
        assert key_range.contains(pack_key((b"",)))
        assert key_range.contains(pack_key((True,)))

    def test_prefix_with_start(self) -> None:
        """start narrows the lower bound inclusively."""
        key_range = selector_range({"prefix": ("u",), "start": ("u", 5)})
        assert not key_range.contains(pack_key(("u", 4)))
        assert key_range.contains(pack_key(("u", 5)))
        assert key_range.contains(pack_key(("u", 6)))
        assert not key_range.contains(pack_key(("v",)))

    def test_prefix_start_equal_to_prefix(self) -> None:
        """A start equal to the prefix keeps the prefix excluded."""
        key_range = selector_range({"prefix": ("u",), "start": ("u",)})
        assert not key_range.contains(pack_key(("u",)))
        assert key_range.contains(pack_key(("u", 0)))

    def test_prefix_with_end(self) -> None:
        """end narrows the upper bound exclusively."""
        key_range = selector_range({"prefix": ("u",), "end": ("u", 5)})
        assert key_range.contains(pack_key(("u", 4)))
        assert not key_range.contains(pack_key(("u", 5)))

    def test_start_end(self) -> None:
        """start is inclusive, end exclusive."""
        key_range = selector_range({"start": ("a",), "end": ("c",)})
        assert key_range.contains(pack_key(("a",)))
        assert key_range.contains(pack_key(("b", 1)))
        assert not key_range.contains(pack_key(("c",)))

    def test_unsupported_shape(self) -> None:
        """Unknown or partial shapes are rejected."""
        with pytest.raises(ValueError, match="Unsupported list selector"):
            selector_range({"start": ("a",)})
        with pytest.raises(ValueError):
            selector_range({"prefix": ("a",), "start": ("a", 1), "end": ("a", 2)})
        with pytest.raises(ValueError):
            selector_range({})


class TestKeyRange:
    """Tests for KeyRange helpers."""

    def test_after_forward(self) -> None:
        """after() makes the position an exclusive lower bound."""
        narrowed = KeyRange("a", True, "z").after("m")
        assert narrowed == KeyRange("m", False, "z")

    def test_after_reverse(self) -> None:
        """after() in reverse lowers the exclusive upper bound."""
        narrowed = KeyRange("a", True, "z").after("m", reverse=True)
        assert narrowed == KeyRange("a", True, "m")

    def test_redis_bounds(self) -> None:
        """Bounds map onto ZRANGEBYLEX syntax."""
        assert KeyRange().redis_bounds() == ("-", "+")
        assert KeyRange("a", True, "b").redis_bounds() == ("[a", "(b")
        assert KeyRange("a", False).redis_bounds() == ("(a", "+")


# --- Cursor Tests ---


class TestCursor:
    """Tests for list cursors."""

    def test_cursor_is_url_safe(self) -> None:
        """Cursors carry no padding or URL-reserved characters."""
        cursor = encode_cursor(pack_key(("users", "ada", 1)))
        assert "=" not in cursor
        assert "+" not in cursor
        assert "/" not in cursor
        assert decode_cursor(cursor) == pack_key(("users", "ada", 1))

    def test_malformed_cursor(self) -> None:
        """Garbage cursors raise ValueError."""
        with pytest.raises(ValueError, match="Malformed"):
            decode_cursor("_w")


# --- Value Tests ---


class TestValues:
    """Tests for value encoding."""

    def test_bytes_survive_nested(self) -> None:
        """bytes are preserved inside containers."""
        value = {"blob": b"\x00\xff", "list": [b"a", 1, "x"], "n": None}
        assert decode_value(encode_value(value)) == value

    def test_tuples_become_lists(self) -> None:
        """Tuples are stored as JSON arrays."""
        assert decode_value(encode_value((1, 2))) == [1, 2]

    def test_rejects_unserializable(self) -> None:
        """Non-JSON values are refused."""
        with pytest.raises(TypeError):
            encode_value({"when": object()})

    def test_rejects_nan_values(self) -> None:
        """NaN is not valid JSON."""
        with pytest.raises(ValueError):
            encode_value(math.nan)
