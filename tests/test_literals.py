import pytest

from diagnostics import MalformedLiteral
from literals import (I32, I64, U8, U32, U64, IntType, builtin_int_type, from_value, parse_literal,
                      rust_literal, to_c_spelling)


@pytest.mark.parametrize("text, width, signed", [
    ("10", 32, True),
    ("0x1c00", 32, True),
    ("0xffff'ffff", 32, True),
    ("0xffff'ffffU", 32, False),
    ("0xffff'ffffUL", 32, False),
    ("0x8000'0000L", 32, True),
    ("0x1'0000'0000", 64, True),
    ("0x1'0000'0000u", 64, False),
    ("5LL", 64, True),
    ("5ull", 64, False),
    ("5llu", 64, False),
])
def test_width_comes_from_suffix(text, width, signed):
    lit = parse_literal(text)
    assert (lit.width, lit.signed) == (width, signed)


def test_unsigned_hex_max_keeps_its_value():
    lit = parse_literal("0xffff'ffffU")
    assert lit.value == 4294967295
    assert lit.int_type == U32


def test_all_ones_long_long_is_minus_one():
    lit = parse_literal("0xffff'ffff'ffff'ffffLL")
    assert lit.magnitude == 0xFFFFFFFFFFFFFFFF
    assert lit.int_type == I64
    assert lit.value == -1


def test_digit_separators_do_not_change_magnitude():
    assert parse_literal("0x4'0000'0000ULL").magnitude == parse_literal("0x400000000ULL").magnitude
    assert parse_literal("1'000'000").value == 1000000


@pytest.mark.parametrize("text", ["0x", "017", "0b101", "1.5", "10lL", "1'", "'1", "0x'1", "abc", "1uu"])
def test_malformed(text):
    with pytest.raises(MalformedLiteral):
        parse_literal(text)


def test_too_large_for_64_bits():
    with pytest.raises(MalformedLiteral, match="64 bits"):
        parse_literal("0x1'0000'0000'0000'0000")


def test_rust_literal_groups_hex_digits():
    assert rust_literal(parse_literal("0x1c00")) == "0x1C00"
    assert rust_literal(parse_literal("0x4'0000'0000ULL")) == "0x4_0000_0000"


def test_rust_literal_negative_hex_is_a_bit_pattern_cast():
    assert rust_literal(parse_literal("0xffff'ffff")) == "0xFFFF_FFFFu32 as i32"
    assert rust_literal(parse_literal("0x8000'0000'0000'0000LL")) == "0x8000_0000_0000_0000u64 as i64"


def test_rust_literal_decimal():
    assert rust_literal(parse_literal("3000")) == "3000"
    assert rust_literal(from_value(-5, I32)) == "-5"


def test_from_value_wraps_into_type():
    lit = from_value(-1, U32, 16)
    assert lit.magnitude == 0xFFFFFFFF
    assert lit.value == 0xFFFFFFFF
    assert lit.text == "0xFFFFFFFFU"
    assert to_c_spelling(from_value(7, I64)) == "7LL"


def test_same_value_compares_bit_pattern_and_type():
    assert parse_literal("0x10").same_value(parse_literal("16"))
    assert not parse_literal("16").same_value(parse_literal("16U"))


def test_int_type_wrap_and_holds():
    assert I32.wrap(0x80000000) == -0x80000000
    assert U8.wrap(256 + 3) == 3
    assert U64.holds(0xFFFFFFFFFFFFFFFF)
    assert not I32.holds(0x80000000)
    assert IntType(16, True).rust_name == "i16"


@pytest.mark.parametrize("words, expected", [
    (["int"], I32),
    (["unsigned", "long"], U32),
    (["long", "long"], I64),
    (["unsigned", "long", "long", "int"], U64),
    (["char"], IntType(8, True)),
    (["unsigned", "char"], U8),
    (["short", "int"], IntType(16, True)),
    (["unsigned"], U32),
    (["__int64"], I64),
    (["unsigned", "__int8"], U8),
    (["const", "int"], I32),
])
def test_builtin_int_types(words, expected):
    assert builtin_int_type(words) == expected


def test_non_integer_builtin():
    assert builtin_int_type(["float"]) is None
    assert builtin_int_type(["long", "double"]) is None
