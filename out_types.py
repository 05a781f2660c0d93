from dataclasses import dataclass, field
import enum
from types import MappingProxyType
from typing import List, Mapping, Optional, Tuple

from literals import IntType, NumericLiteral

RUST_KEYWORDS = {
    "as", "async", "await", "break", "const", "continue", "dyn", "else", "enum", "extern",
    "false", "fn", "for", "if", "impl", "in", "let", "loop", "match", "mod", "move", "mut",
    "pub", "ref", "return", "static", "struct", "trait", "true", "type", "unsafe", "use",
    "where", "while", "abstract", "become", "box", "do", "final", "macro", "override",
    "priv", "try", "typeof", "unsized", "virtual", "yield", "gen",
}

# Keywords that cannot be written as raw identifiers.
_NON_RAW_KEYWORDS = {"self", "Self", "super", "crate", "_"}


def rust_ident(name: str) -> str:
    """Makes a C identifier usable as a Rust identifier."""
    if name in _NON_RAW_KEYWORDS:
        return f"{name}_"
    if name in RUST_KEYWORDS:
        return f"r#{name}"
    return name


@dataclass(frozen=True, order=True)
class QualifiedName:
    path: Tuple[str, ...]
    leaf: str

    @classmethod
    def parse(cls, text: str) -> "QualifiedName":
        parts = [p for p in text.strip().split("::") if p]
        return cls(tuple(parts[:-1]), parts[-1])

    @property
    def segments(self) -> Tuple[str, ...]:
        return self.path + (self.leaf,)

    def nested(self, leaf: str) -> "QualifiedName":
        return QualifiedName(self.segments, leaf)

    def __str__(self) -> str:
        return "::".join(self.segments)


@dataclass(frozen=True, order=True)
class SourceIndex:
    unit: int
    offset: int


# --- Type references ---

class TypeRef: ...

@dataclass(frozen=True)
class Primitive(TypeRef):
    width: int
    signed: bool
    flavor: str = "int"  # int, size, float, bool, void

    @classmethod
    def from_int(cls, t: IntType) -> "Primitive":
        return cls(t.width, t.signed)

    @property
    def int_type(self) -> Optional[IntType]:
        if self.flavor in ("int", "size"):
            return IntType(self.width, self.signed)
        return None

    @property
    def rust_name(self) -> str:
        if self.flavor == "void":
            return "::core::ffi::c_void"
        if self.flavor == "bool":
            return "bool"
        if self.flavor == "float":
            return f"f{self.width}"
        if self.flavor == "size":
            return "isize" if self.signed else "usize"
        return f"{'i' if self.signed else 'u'}{self.width}"

@dataclass(frozen=True)
class Pointer(TypeRef):
    pointee: TypeRef
    const: bool = False

@dataclass(frozen=True)
class Reference(TypeRef):
    referent: TypeRef
    const: bool = False

@dataclass(frozen=True)
class RvalueReference(TypeRef):
    referent: TypeRef

@dataclass(frozen=True)
class FixedArray(TypeRef):
    element: TypeRef
    length: int

@dataclass(frozen=True)
class Named(TypeRef):
    name: QualifiedName

@dataclass(frozen=True)
class Opaque(TypeRef):
    name: QualifiedName


VOID = Primitive(0, False, "void")
BOOL = Primitive(8, False, "bool")
F32 = Primitive(32, True, "float")
F64 = Primitive(64, True, "float")


def referenced_names(t: TypeRef) -> List[QualifiedName]:
    if isinstance(t, (Named, Opaque)):
        return [t.name]
    if isinstance(t, Pointer):
        return referenced_names(t.pointee)
    if isinstance(t, (Reference, RvalueReference)):
        return referenced_names(t.referent)
    if isinstance(t, FixedArray):
        return referenced_names(t.element)
    return []


def by_value_names(t: TypeRef) -> List[QualifiedName]:
    """Names a type embeds by value (its layout depends on theirs)."""
    if isinstance(t, (Named, Opaque)):
        return [t.name]
    if isinstance(t, FixedArray):
        return by_value_names(t.element)
    return []


# --- Declarations ---

class DeclKind(enum.Enum):
    STRUCT = "Struct"
    CLASS = "Class"
    UNION = "Union"
    INTERFACE = "Interface"
    ENUM = "Enum"
    ENUM_CLASS = "EnumClass"
    TYPEDEF = "Typedef"
    FUNCTION = "Function"
    NAMESPACE = "Namespace"
    CONSTANT = "Constant"
    MACRO_FUNCTION = "MacroFunction"
    VARIABLE = "Variable"
    OPAQUE = "Opaque"


TYPE_KINDS = {DeclKind.STRUCT, DeclKind.CLASS, DeclKind.UNION, DeclKind.INTERFACE,
              DeclKind.ENUM, DeclKind.ENUM_CLASS, DeclKind.TYPEDEF, DeclKind.OPAQUE}


@dataclass(frozen=True)
class Field:
    name: str
    type: TypeRef
    declared_in: QualifiedName

@dataclass(frozen=True)
class Param:
    name: Optional[str]
    type: TypeRef

@dataclass(frozen=True)
class MethodSignature:
    name: str
    params: Tuple[Param, ...]
    returns: TypeRef
    const: bool = False
    pure: bool = False

@dataclass(frozen=True)
class Capability:
    interface: QualifiedName
    methods: Tuple[MethodSignature, ...]

@dataclass(frozen=True)
class ClassModel:
    data_bases: Tuple[TypeRef, ...] = ()
    interface_bases: Tuple[QualifiedName, ...] = ()
    own_fields: Tuple[Field, ...] = ()
    virtual_methods: Tuple[MethodSignature, ...] = ()
    capabilities: Tuple[Capability, ...] = ()

@dataclass(frozen=True)
class Enumerator:
    name: str
    value: NumericLiteral

@dataclass(frozen=True)
class MacroParam:
    name: str
    int_type: Optional[IntType] = None  # None: `&mut` reference to the mutated owner


@dataclass(frozen=True)
class Declaration:
    name: QualifiedName
    index: SourceIndex
    location: str

    @property
    def kind(self) -> DeclKind:
        raise NotImplementedError

@dataclass(frozen=True)
class Record(Declaration):
    record_kind: DeclKind = DeclKind.STRUCT
    model: ClassModel = field(default_factory=ClassModel)
    fields: Tuple[Field, ...] = ()  # flattened: data bases first, then own fields
    size: Optional[int] = None
    align: Optional[int] = None

    @property
    def kind(self) -> DeclKind:
        return self.record_kind

@dataclass(frozen=True)
class Enum(Declaration):
    scoped: bool = False
    storage: Primitive = Primitive(32, True)
    enumerators: Tuple[Enumerator, ...] = ()
    anonymous: bool = False

    @property
    def kind(self) -> DeclKind:
        return DeclKind.ENUM_CLASS if self.scoped else DeclKind.ENUM

@dataclass(frozen=True)
class Typedef(Declaration):
    target: TypeRef = VOID

    @property
    def kind(self) -> DeclKind:
        return DeclKind.TYPEDEF

@dataclass(frozen=True)
class Function(Declaration):
    returns: TypeRef = VOID
    params: Tuple[Param, ...] = ()
    variadic: bool = False
    calling_convention: str = "C"

    @property
    def kind(self) -> DeclKind:
        return DeclKind.FUNCTION

@dataclass(frozen=True)
class Namespace(Declaration):
    @property
    def kind(self) -> DeclKind:
        return DeclKind.NAMESPACE

@dataclass(frozen=True)
class Constant(Declaration):
    type: TypeRef = Primitive(32, True)
    value: Optional[NumericLiteral] = None
    origin: str = "macro"  # macro, variable
    enumerator: Optional[QualifiedName] = None  # enum-typed constants naming one enumerator

    @property
    def kind(self) -> DeclKind:
        return DeclKind.CONSTANT

@dataclass(frozen=True)
class MacroFunction(Declaration):
    params: Tuple[MacroParam, ...] = ()
    returns: IntType = IntType(32, True)
    body: Tuple[str, ...] = ()
    owner: Optional[QualifiedName] = None
    mutating: bool = False

    @property
    def kind(self) -> DeclKind:
        return DeclKind.MACRO_FUNCTION

@dataclass(frozen=True)
class Variable(Declaration):
    type: TypeRef = VOID
    const: bool = False

    @property
    def kind(self) -> DeclKind:
        return DeclKind.VARIABLE

@dataclass(frozen=True)
class OpaqueType(Declaration):
    reason: str = "orphan"  # orphan, forward, blocklisted, conflict, unsupported, layout-cycle, unsized
    size: Optional[int] = None
    align: Optional[int] = None

    @property
    def kind(self) -> DeclKind:
        return DeclKind.OPAQUE


@dataclass(frozen=True)
class UnitInfo:
    name: str
    module: str


@dataclass(frozen=True)
class SemanticModel:
    """The frozen result of modeling: read-only from here on."""
    units: Tuple[UnitInfo, ...]
    declarations: Tuple[Declaration, ...]  # source order
    by_name: Mapping[QualifiedName, Declaration] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(cls, units, declarations) -> "SemanticModel":
        ordered = tuple(sorted(declarations, key=lambda d: (d.index, str(d.name))))
        names = {d.name: d for d in ordered if not isinstance(d, Namespace)}
        return cls(units=tuple(units), declarations=ordered, by_name=MappingProxyType(names))

    def get(self, name: QualifiedName) -> Optional[Declaration]:
        return self.by_name.get(name)

    def of_kind(self, *kinds: DeclKind) -> List[Declaration]:
        return [d for d in self.declarations if d.kind in kinds]
