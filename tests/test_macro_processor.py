from conftest import parse_source

from diagnostics import DiagnosticKind
from literals import I32, I64, U32, U64
from macro_processor import EvalContext, MacroKind, MacroProcessor, common_type


def processor_for(src, reporter, context=None):
    unit = parse_source(src, reporter)
    return MacroProcessor(unit.macros, reporter, context)


def test_object_like_constants(full_header, reporter):
    processor = processor_for(full_header, reporter)
    expected = {
        "FOO_A": (10, I32),
        "FOO_HEX_VALUE": (0x1C00, I32),
        "FOO_HEX_VALUE_2": (0x400000000, U64),
        "FOO_HEX_MAX": (-1, I32),
        "FOO_HEX_MAX_U": (0xFFFFFFFF, U32),
        "FOO_HEX_MAX_UL": (0xFFFFFFFF, U32),
        "FOO_HEX_MAX_LL": (-1, I64),
        "FOO_HEX_MAX_ULL": (0xFFFFFFFFFFFFFFFF, U64),
        "FOO_HEX_MIN_L": (-0x80000000, I32),
        "FOO_HEX_MIN_LL": (-0x8000000000000000, I64),
        "FOO_PAREN": (100, I32),
    }
    for name, (value, int_type) in expected.items():
        resolved = processor.resolve(name)
        assert resolved.kind == MacroKind.CONSTANT, name
        assert resolved.value.value == value, name
        assert resolved.value.int_type == int_type, name


def test_composed_hresult_macro(full_header, reporter):
    processor = processor_for(full_header, reporter)
    status = processor.resolve("STATUS_CREATE_COMPAT_BMP_ERROR")
    assert status.kind == MacroKind.CONSTANT
    assert status.value.value == 0x803F0008
    assert status.value.int_type == U32
    # the HRESULT typedef is not visible, so its cast is dropped with a warning
    assert any(d.subject == "HRESULT" for d in reporter.of_kind(DiagnosticKind.DROPPED_CAST))


def test_hresult_with_code_nine(reporter):
    src = (
        "#define SEVERITY_ERROR 1\n"
        "#define FACILITY_WIN32K_NTGDI 0x3F\n"
        "#define MAKE_HRESULT(sev,fac,code) "
        "(((unsigned long)(sev)<<31) | ((unsigned long)(fac)<<16) | ((unsigned long)(code)))\n"
        "#define STATUS MAKE_HRESULT(SEVERITY_ERROR, FACILITY_WIN32K_NTGDI, 0x9)\n"
    )
    value = processor_for(src, reporter).resolve("STATUS").value
    assert value.value == 0x803F0009
    assert value.radix == 16


def test_pure_function_macro(full_header, reporter):
    processor = processor_for(full_header, reporter)
    resolved = processor.resolve("MAKE_HRESULT")
    assert resolved.kind == MacroKind.EXPRESSION
    fn = resolved.function
    assert not fn.mutating
    assert [p.name for p in fn.params] == ["sev", "fac", "code"]
    assert all(p.int_type == I32 for p in fn.params)
    assert fn.returns == U32
    assert fn.body == ("(((sev as u32) << 31) | ((fac as u32) << 16)) | (code as u32)",)


def test_increment_macro(reporter):
    processor = processor_for("#define BAR_INCREMENT(x) (x + 1)\n", reporter)
    fn = processor.resolve("BAR_INCREMENT").function
    assert fn.body == ("x + 1",)
    assert fn.returns == I32


def test_mutator_macro_returns_previous_value(full_header, reporter):
    context = EvalContext(find_field_owner=lambda field: ("FooStuff", I32))
    processor = processor_for(full_header, reporter, context)
    fn = processor.resolve("FOO_DECREMENT").function
    assert fn.mutating
    assert fn.owner == "FooStuff"
    assert fn.params[0].int_type is None
    assert fn.body == ("let old = f.a;", "f.a = old.wrapping_sub(1);", "old")


def test_prefix_mutator_returns_new_value(reporter):
    context = EvalContext(find_field_owner=lambda field: ("Counter", U32))
    processor = processor_for("#define BUMP(c) (++(c)->hits)\n", reporter, context)
    fn = processor.resolve("BUMP").function
    assert fn.returns == U32
    assert fn.body == ("c.hits = c.hits.wrapping_add(1);", "c.hits")


def test_unsigned_arithmetic_wraps(reporter):
    processor = processor_for("#define ZERO 0u\n#define MINUS_ONE (ZERO - 1)\n", reporter)
    value = processor.resolve("MINUS_ONE").value
    assert value.int_type == U32
    assert value.value == 0xFFFFFFFF


def test_unsupported_bodies_are_reported_not_raised(reporter):
    src = (
        '#define NAME "hello"\n'
        "#define SELF SELF\n"
        "#define DIVIDE (1 / 0)\n"
        "#define COMPARE (1 < 2)\n"
        "#define UNKNOWN (MISSING + 1)\n"
        "#define GLUE(a, b) a ## b\n"
        "#define LOG(...) 0\n"
    )
    processor = processor_for(src, reporter)
    for name in ("NAME", "SELF", "DIVIDE", "COMPARE", "UNKNOWN", "GLUE", "LOG"):
        assert processor.resolve(name).kind == MacroKind.UNSUPPORTED, name
    subjects = {d.subject for d in reporter.of_kind(DiagnosticKind.UNSUPPORTED_MACRO_BODY)}
    assert {"NAME", "SELF", "DIVIDE", "COMPARE", "UNKNOWN", "GLUE", "LOG"} <= subjects


def test_malformed_literal_only_affects_its_macro(reporter):
    processor = processor_for("#define BAD 0b101\n#define GOOD 7\n", reporter)
    assert processor.resolve("BAD").kind == MacroKind.UNSUPPORTED
    assert processor.resolve("GOOD").value.value == 7
    assert [d.subject for d in reporter.of_kind(DiagnosticKind.MALFORMED_LITERAL)] == ["BAD"]


def test_conflicting_redefinition(reporter):
    processor = processor_for("#define X 1\n#define X 2\n#define Y X\n", reporter)
    assert reporter.of_kind(DiagnosticKind.DUPLICATE_DEFINITION_CONFLICT)
    assert processor.resolve("X").kind == MacroKind.UNSUPPORTED
    assert processor.resolve("Y").kind == MacroKind.UNSUPPORTED


def test_identical_redefinition_merges(reporter):
    processor = processor_for("#define X 1\n#define X 1\n", reporter)
    assert processor.resolve("X").value.value == 1
    assert not reporter.of_kind(DiagnosticKind.DUPLICATE_DEFINITION_CONFLICT)


def test_undef_removes_definition(reporter):
    processor = processor_for("#define X 1\n#undef X\n#define Y 2\n", reporter)
    assert "X" not in processor.macros


def test_empty_macros_are_skipped(reporter):
    processor = processor_for("#define GUARD_H\n#define V 3\n", reporter)
    assert [r.definition.name for r in processor.resolve_all()] == ["V"]


def test_common_type_follows_c_conversions():
    assert common_type(I32, U32) == U32
    assert common_type(U32, I64) == I64
    assert common_type(I64, U64) == U64
