import pytest
from conftest import model_of, parse_source

from diagnostics import DiagnosticKind, LayoutError
from literals import I32, U32
from out_types import (DeclKind, Field, Named, Opaque, OpaqueType, Pointer, Primitive, QualifiedName,
                       Record, SourceIndex)
from decl_parser import MethodSyntax, RecordSyntax, TypeSpec
from semantic_model import LayoutCalculator, SymbolTable, _is_interface, unit_module_name


def q(text):
    return QualifiedName.parse(text)


@pytest.fixture
def foo_model(full_header, second_header, reporter):
    return model_of(("foo.h", full_header), ("bar.h", second_header), reporter=reporter)


def test_symbol_table_is_read_only_after_freeze(reporter):
    unit = parse_source("struct A { int x; };\nstruct B { int y; };\n", reporter)
    table = SymbolTable()
    table.add(unit.declarations[0])
    table.freeze()
    assert table.frozen
    with pytest.raises(RuntimeError):
        table.add(unit.declarations[1])
    assert q("A") in table and q("B") not in table


def test_class_hierarchy_is_flattened(foo_model):
    classy = foo_model.get(q("Classy"))
    assert classy.kind == DeclKind.CLASS
    assert [f.name for f in classy.fields] == ["count", "klass", "uaf"]
    assert classy.fields[0].declared_in == q("Bassy")
    assert classy.fields[2].type == Named(q("UsedAsField"))
    assert classy.model.data_bases == (Named(q("Bassy")),)
    assert classy.model.interface_bases == (q("IWhatever"),)
    (capability,) = classy.model.capabilities
    assert capability.interface == q("IWhatever")
    assert [m.name for m in capability.methods] == ["whatever"]


def test_interface_and_missing_implementation(foo_model, reporter):
    assert foo_model.get(q("IWhatever")).kind == DeclKind.INTERFACE
    incomplete = reporter.of_kind(DiagnosticKind.INCOMPLETE_IMPLEMENTATION)
    assert [d.subject for d in incomplete] == ["Classy"]


def test_undefined_type_becomes_orphan(foo_model, reporter):
    orphan = foo_model.get(q("IsOrphan"))
    assert isinstance(orphan, OpaqueType) and orphan.reason == "orphan"
    field = foo_model.get(q("HasOrphan")).fields[0]
    assert field.type == Pointer(Opaque(q("IsOrphan")))
    assert [d.subject for d in reporter.of_kind(DiagnosticKind.UNRESOLVED_TYPE)] == ["IsOrphan"]


def test_enums_and_enum_typed_constants(foo_model):
    flavor = foo_model.get(q("FooFlavor"))
    assert flavor.kind == DeclKind.ENUM and flavor.storage == Primitive(32, True)
    assert [(e.name, e.value.value) for e in flavor.enumerators] == [
        ("Reversi", 0), ("Mocha", 1), ("HighGround", 2),
    ]
    assert foo_model.get(q("IcecreamFlavor")).kind == DeclKind.ENUM_CLASS

    d1 = foo_model.get(q("N1::N2::d1"))
    assert d1.kind == DeclKind.CONSTANT
    assert d1.type == Named(q("Directions"))
    assert d1.enumerator == q("Directions::Up")
    d2 = foo_model.get(q("N1::N2::N3::d2"))
    assert d2.value.value == 3 and d2.type == Primitive(32, True)
    assert d2.origin == "variable"


def test_namespaces_are_recorded(foo_model):
    namespaces = {str(d.name) for d in foo_model.of_kind(DeclKind.NAMESPACE)}
    assert namespaces == {"N1", "N1::N2", "N1::N2::N3"}


def test_macros_across_units(foo_model):
    first = foo_model.get(q("STATUS_CREATE_COMPAT_BMP_ERROR"))
    assert first.value.value == 0x803F0008 and first.value.int_type == U32
    second = foo_model.get(q("STATUS_SOME_OTHER_ERROR"))
    assert second.value.value == 0x803F0009
    assert foo_model.get(q("BAR_SOMETHING")).value.int_type == I32
    increment = foo_model.get(q("BAR_INCREMENT"))
    assert increment.kind == DeclKind.MACRO_FUNCTION
    decrement = foo_model.get(q("FOO_DECREMENT"))
    assert decrement.mutating and decrement.owner == q("FooStuff")


def test_functions_need_c_linkage(foo_model, reporter):
    assert foo_model.get(q("bar")) is None
    skipped = reporter.of_kind(DiagnosticKind.SKIPPED_DECLARATION)
    assert [d.subject for d in skipped] == ["bar"]
    add_flavor = foo_model.get(q("add_flavor"))
    assert add_flavor.params[0].type == Named(q("FooFlavor"))


def test_assume_c_linkage():
    model = model_of("int plain(int x);\n", assume_c_linkage=True)
    assert model.get(q("plain")).kind == DeclKind.FUNCTION


def test_record_layouts(foo_model):
    assert (foo_model.get(q("FooStuff")).size, foo_model.get(q("FooStuff")).align) == (16, 4)
    assert foo_model.get(q("Classy")).size == 12
    assert foo_model.get(q("UseAsPointer")).size == 1
    assert foo_model.get(q("HasOrphan")).size == 8
    assert foo_model.get(q("BarState")).size == 24
    assert foo_model.get(q("IWhatever")).size is None


def test_declarations_keep_source_order(foo_model):
    indexes = [d.index for d in foo_model.declarations]
    assert indexes == sorted(indexes)
    assert foo_model.units[1].module == "bar"


def test_conflicting_definitions(reporter):
    model = model_of("struct S { int a; };\n", "struct S { float a; };\n", reporter=reporter)
    s = model.get(q("S"))
    assert isinstance(s, OpaqueType) and s.reason == "conflict"
    assert reporter.of_kind(DiagnosticKind.DUPLICATE_DEFINITION_CONFLICT)


def test_identical_definitions_merge(reporter):
    model = model_of("struct S { int a; };\n", "struct S; struct S { int a; };\n", reporter=reporter)
    assert isinstance(model.get(q("S")), Record)
    assert not reporter.of_kind(DiagnosticKind.DUPLICATE_DEFINITION_CONFLICT)


def test_forward_declared_type_is_opaque(reporter):
    model = model_of('struct Fwd;\nextern "C" void use_fwd(Fwd* f);\n', reporter=reporter)
    fwd = model.get(q("Fwd"))
    assert isinstance(fwd, OpaqueType) and fwd.reason == "forward"
    assert model.get(q("use_fwd")).params[0].type == Pointer(Opaque(q("Fwd")))


def test_by_value_cycle_is_a_layout_error(reporter):
    model = model_of("struct A { struct B b; };\nstruct B { A a; };\n", reporter=reporter)
    assert model.get(q("A")).reason == "layout-cycle"
    assert model.get(q("B")).reason == "layout-cycle"
    assert reporter.of_kind(DiagnosticKind.LAYOUT_CYCLE)


def test_nested_types_are_hoisted(reporter):
    model = model_of("struct Outer { struct Inner { int v; } in; };\n", reporter=reporter)
    assert isinstance(model.get(q("Outer__Inner")), Record)
    assert model.get(q("Outer")).fields[0].type == Named(q("Outer__Inner"))


def test_unit_module_name():
    assert unit_module_name("foo.h") == "foo"
    assert unit_module_name("include/my-header.hpp") == "my_header"
    assert unit_module_name("3d.h") == "_3d"


def test_layout_calculator():
    def record(name, kind, *types):
        qname = q(name)
        fields = tuple(Field(f"f{i}", t, qname) for i, t in enumerate(types))
        return Record(qname, SourceIndex(0, 0), "", record_kind=kind, fields=fields)

    u8, i64, i32 = Primitive(8, False), Primitive(64, True), Primitive(32, True)
    decls = {
        q("U"): record("U", DeclKind.UNION, u8, i64),
        q("S"): record("S", DeclKind.STRUCT, u8, i32),
        q("Loop"): record("Loop", DeclKind.STRUCT, Named(q("Loop"))),
    }
    calculator = LayoutCalculator(decls)
    assert calculator.of_name(q("U")) == (8, 8)
    assert calculator.of_name(q("S")) == (8, 4)
    assert calculator.of_type(Pointer(Named(q("S")))) == (8, 8)
    with pytest.raises(LayoutError):
        calculator.of_name(q("Loop"))


def test_interfaces_derive_only_from_interfaces(reporter):
    model = model_of(
        "struct IBase { virtual int id() const = 0; };\n"
        "struct IMore : IBase { virtual void more() = 0; };\n"
        "struct Data { int x; };\n"
        "struct NotAnInterface : Data { virtual void f() = 0; };\n",
        reporter=reporter,
    )
    assert model.get(q("IMore")).kind == DeclKind.INTERFACE
    assert model.get(q("IMore")).model.interface_bases == (q("IBase"),)
    not_interface = model.get(q("NotAnInterface"))
    assert not_interface.kind == DeclKind.STRUCT
    assert [f.name for f in not_interface.fields] == ["x"]


def test_record_with_unknown_field_is_opaque(reporter):
    model = model_of("struct A { Undefined u; int x; };\nstruct B { A* a; };\n", reporter=reporter)
    a = model.get(q("A"))
    assert isinstance(a, OpaqueType) and a.reason == "unsized"
    unsized = [d for d in reporter.of_kind(DiagnosticKind.UNSUPPORTED_DECLARATION) if d.subject == "A"]
    assert len(unsized) == 1 and "'u'" in unsized[0].message
    assert model.get(q("B")).fields[0].type == Pointer(Opaque(q("A")))


def test_interface_methods_are_implicitly_pure(reporter):
    model = model_of("__interface IPlain { void run(); };\n", reporter=reporter)
    assert model.get(q("IPlain")).kind == DeclKind.INTERFACE
    record = RecordSyntax(name="IPlain", scope=(), unit=0, offset=0, location="", keyword="__interface",
                          methods=[MethodSyntax("run", TypeSpec("void"), [])])
    assert _is_interface(record)
    record.keyword = "struct"
    assert not _is_interface(record)
