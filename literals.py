"""
Integer literal normalization.

A numeric token is turned into a NumericLiteral whose width and signedness are
chosen from its suffix alone. The data model is fixed, so the same header
produces the same constants on every host.
"""
import re
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from diagnostics import MalformedLiteral


@dataclass(frozen=True)
class IntType:
    width: int
    signed: bool

    @property
    def rust_name(self) -> str:
        return f"{'i' if self.signed else 'u'}{self.width}"

    @property
    def mask(self) -> int:
        return (1 << self.width) - 1

    @property
    def min_value(self) -> int:
        return -(1 << (self.width - 1)) if self.signed else 0

    @property
    def max_value(self) -> int:
        return (1 << (self.width - 1)) - 1 if self.signed else self.mask

    def wrap(self, value: int) -> int:
        """Reduces an arbitrary integer to this type's range (two's complement)."""
        bits = value & self.mask
        if self.signed and bits >> (self.width - 1):
            return bits - (1 << self.width)
        return bits

    def holds(self, value: int) -> bool:
        return self.min_value <= value <= self.max_value

    def __str__(self) -> str:
        return self.rust_name


I8 = IntType(8, True)
U8 = IntType(8, False)
I16 = IntType(16, True)
U16 = IntType(16, False)
I32 = IntType(32, True)
U32 = IntType(32, False)
I64 = IntType(64, True)
U64 = IntType(64, False)

INT_TYPES_BY_RUST_NAME = {t.rust_name: t for t in (I8, U8, I16, U16, I32, U32, I64, U64)}


@dataclass(frozen=True)
class NumericLiteral:
    text: str
    magnitude: int  # bit pattern within `width`, never negative
    width: int
    signed: bool
    suffix: str = ""
    radix: int = 10

    @property
    def int_type(self) -> IntType:
        return IntType(self.width, self.signed)

    @property
    def value(self) -> int:
        return self.int_type.wrap(self.magnitude)

    def key(self) -> Tuple[int, int, bool]:
        return (self.magnitude, self.width, self.signed)

    def same_value(self, other: "NumericLiteral") -> bool:
        return self.key() == other.key()


_LITERAL_RE = re.compile(
    r"^(?:0[xX](?P<hex>[0-9a-fA-F](?:'?[0-9a-fA-F])*)"
    r"|(?P<dec>0|[1-9](?:'?[0-9])*))"
    r"(?P<suffix>[uU](?:ll|LL|l|L)?|(?:ll|LL|l|L)[uU]?)?$"
)


def _canonical_suffix(suffix: str) -> str:
    upper = suffix.upper()
    unsigned = "U" if "U" in upper else ""
    return unsigned + upper.replace("U", "")


def _width_for(magnitude: int, suffix: str) -> int:
    if "LL" in suffix:
        return 64
    return 32 if magnitude < (1 << 32) else 64


def parse_literal(text: str, location: Optional[str] = None) -> NumericLiteral:
    """Parses a C/C++ integer token such as `0xffff'ffffULL` or `20`."""
    m = _LITERAL_RE.match(text)
    if not m:
        raise MalformedLiteral(f"'{text}' is not a hex or decimal integer literal", location)

    if m.group("hex") is not None:
        radix = 16
        digits = m.group("hex")
    else:
        radix = 10
        digits = m.group("dec")
    magnitude = int(digits.replace("'", ""), radix)
    suffix = _canonical_suffix(m.group("suffix") or "")

    if magnitude >= (1 << 64):
        raise MalformedLiteral(f"'{text}' does not fit in 64 bits", location)

    width = _width_for(magnitude, suffix)
    return NumericLiteral(
        text=text,
        magnitude=magnitude,
        width=width,
        signed="U" not in suffix,
        suffix=suffix,
        radix=radix,
    )


def from_value(value: int, int_type: IntType, radix: int = 10) -> NumericLiteral:
    """Builds the literal a computed value has once stored in `int_type`."""
    magnitude = value & int_type.mask
    lit = NumericLiteral(text="", magnitude=magnitude, width=int_type.width,
                         signed=int_type.signed, suffix=_suffix_for(int_type), radix=radix)
    return NumericLiteral(text=to_c_spelling(lit), magnitude=lit.magnitude, width=lit.width,
                          signed=lit.signed, suffix=lit.suffix, radix=radix)


def _suffix_for(int_type: IntType) -> str:
    unsigned = "" if int_type.signed else "U"
    return unsigned + ("LL" if int_type.width == 64 else "")


def _group_hex(magnitude: int) -> str:
    digits = f"{magnitude:X}"
    groups = []
    while digits:
        groups.insert(0, digits[-4:])
        digits = digits[:-4]
    return "_".join(groups)


def to_c_spelling(lit: NumericLiteral) -> str:
    if lit.radix == 16:
        return f"0x{lit.magnitude:X}{lit.suffix}"
    return f"{lit.value}{lit.suffix}"


def rust_literal(lit: NumericLiteral) -> str:
    """
    Spells a literal as a Rust constant expression of type `lit.int_type`.

    Hex stays hex; a signed hex value with its top bit set is written as its
    unsigned bit pattern cast back to the signed type, so the bit pattern is
    preserved exactly.
    """
    t = lit.int_type
    if lit.radix == 16:
        digits = _group_hex(lit.magnitude)
        if lit.value < 0:
            return f"0x{digits}u{t.width} as {t.rust_name}"
        return f"0x{digits}"
    return str(lit.value)


# --- Fixed integer data model (LLP64) ---

_FIXED_KEYWORD_TYPES = {
    "__int8": I8, "__int16": I16, "__int32": I32, "__int64": I64,
    "wchar_t": U16, "char8_t": U8, "char16_t": U16, "char32_t": U32,
}

STDINT_TYPES = {
    "int8_t": I8, "uint8_t": U8, "int16_t": I16, "uint16_t": U16,
    "int32_t": I32, "uint32_t": U32, "int64_t": I64, "uint64_t": U64,
    "intptr_t": I64, "uintptr_t": U64, "ptrdiff_t": I64,
    "size_t": U64, "ssize_t": I64,
}


def builtin_int_type(words: Sequence[str]) -> Optional[IntType]:
    """
    Maps a builtin integer spelling (`unsigned long`, `short int`, ...) to its type.

    `long` is 32 bits and `char` is signed, whatever the host does.
    """
    words = [w for w in words if w not in ("const", "volatile")]
    unsigned = "unsigned" in words
    signed = "signed" in words
    rest = [w for w in words if w not in ("unsigned", "signed")]
    if not rest:
        return IntType(32, not unsigned) if (unsigned or signed) else None
    if len(rest) == 1 and rest[0] in _FIXED_KEYWORD_TYPES:
        fixed = _FIXED_KEYWORD_TYPES[rest[0]]
        if unsigned or signed:
            return IntType(fixed.width, not unsigned)
        return fixed

    longs = rest.count("long")
    other = [w for w in rest if w not in ("long", "int")]
    if other == ["char"] and longs == 0 and "int" not in rest:
        width = 8
    elif other == ["short"] and longs == 0:
        width = 16
    elif not other and longs <= 2:
        width = 64 if longs == 2 else 32
    else:
        return None
    return IntType(width, not unsigned)
