"""
Semantic model builder.

Collects the syntax of every input buffer into one symbol table, freezes it, then
resolves types, flattens class hierarchies, evaluates constants and computes
layouts. The result is an immutable `SemanticModel`; nothing downstream changes it.
"""
import logging
import re
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from decl_parser import (EnumSyntax, FunctionSyntax, NamespaceSyntax, RecordSyntax,
                         SyntaxDecl, SyntaxUnit, TypeSpec, TypedefSyntax,
                         UnsupportedSyntax, VariableSyntax)
from diagnostics import (BindgenError, DeclarationError, DiagnosticKind, DiagnosticReporter,
                         LayoutError, MacroError, MalformedLiteral, Severity)
from expr_ast import Identifier, parse_macro_replacement
from literals import I32, I64, IntType, NumericLiteral, STDINT_TYPES, U32, U64, builtin_int_type, from_value
from macro_processor import EvalContext, MacroKind, MacroProcessor
from out_types import (BOOL, F32, F64, VOID, Capability, ClassModel, Constant, DeclKind, Declaration,
                       Enum, Enumerator, Field, FixedArray, Function, MacroFunction, MethodSignature,
                       Named, Namespace, Opaque, OpaqueType, Param, Pointer, Primitive, QualifiedName,
                       Record, Reference, RvalueReference, SemanticModel, SourceIndex, TypeRef, Typedef,
                       UnitInfo, Variable)

logger = logging.getLogger(__name__)

SIZE_TYPES = {"size_t", "ssize_t", "intptr_t", "uintptr_t", "ptrdiff_t"}
POINTER_LAYOUT = (8, 8)

_RECORD_KINDS = {"struct": DeclKind.STRUCT, "class": DeclKind.CLASS,
                 "union": DeclKind.UNION, "__interface": DeclKind.INTERFACE}


# --- Symbol table ---

class SymbolTable:
    """Every declaration of every buffer, by qualified name. Read-only once frozen."""

    def __init__(self):
        self._entries: Dict[QualifiedName, List[SyntaxDecl]] = {}
        self._namespaces: Dict[QualifiedName, SyntaxDecl] = {}
        self._frozen = False

    def add(self, decl: SyntaxDecl):
        if self._frozen:
            raise RuntimeError(f"symbol table is frozen, cannot add '{decl.name}'")
        qname = QualifiedName(tuple(decl.scope), decl.name)
        if isinstance(decl, NamespaceSyntax):
            self._namespaces.setdefault(qname, decl)
        else:
            self._entries.setdefault(qname, []).append(decl)

    def freeze(self):
        self._frozen = True
        logger.debug("Symbol table frozen with %d names", len(self._entries))

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, qname: QualifiedName) -> bool:
        return qname in self._entries

    def get(self, qname: QualifiedName) -> List[SyntaxDecl]:
        return self._entries.get(qname, [])

    def names(self) -> List[QualifiedName]:
        return list(self._entries)

    def namespaces(self) -> Dict[QualifiedName, SyntaxDecl]:
        return dict(self._namespaces)


def _shape(decl: SyntaxDecl):
    """A comparable description of a declaration, for duplicate detection."""
    if isinstance(decl, RecordSyntax):
        return ("record", decl.keyword if decl.keyword != "class" else "struct",
                tuple(b.name for b in decl.bases),
                tuple((f.name, str(f.type)) for f in decl.fields),
                tuple((m.name, str(m.returns), tuple(str(p.type) for p in m.params), m.pure)
                      for m in decl.methods))
    if isinstance(decl, EnumSyntax):
        return ("enum", decl.scoped, str(decl.underlying) if decl.underlying else None,
                tuple((e.name, e.value) for e in decl.enumerators))
    if isinstance(decl, TypedefSyntax):
        return ("typedef", str(decl.target))
    if isinstance(decl, FunctionSyntax):
        return ("function", str(decl.returns), tuple(str(p.type) for p in decl.params), decl.variadic)
    if isinstance(decl, VariableSyntax):
        return ("variable", str(decl.type))
    return ("unsupported",)


def _is_definition(decl: SyntaxDecl) -> bool:
    if isinstance(decl, (RecordSyntax, EnumSyntax)):
        return decl.is_definition
    if isinstance(decl, VariableSyntax):
        return decl.init is not None or not decl.extern
    return True


def unit_module_name(unit_name: str) -> str:
    stem = Path(unit_name).stem or "unit"
    module = re.sub(r"\W", "_", stem)
    return f"_{module}" if module[0].isdigit() else module


# --- Flattening ---

def flatten_fields(name: QualifiedName, records: Dict[QualifiedName, Record],
                   resolve: Callable[[TypeRef], Optional[QualifiedName]] = None) -> Tuple[Field, ...]:
    """
    Lays out a class's stored fields: each data base's flattened fields in base
    order, then the class's own fields. A base that cannot be flattened (opaque)
    is kept whole as a `_base_{Leaf}` field. Names that collide are prefixed with
    the leaf name of the class that declares them.
    """
    fields = _collect_fields(name, records, resolve or _named_target, ())
    counts: Dict[str, int] = {}
    for f in fields:
        counts[f.name] = counts.get(f.name, 0) + 1
    return tuple(
        replace(f, name=f"{f.declared_in.leaf}_{f.name}") if counts[f.name] > 1 else f
        for f in fields
    )


def _named_target(t: TypeRef) -> Optional[QualifiedName]:
    return t.name if isinstance(t, Named) else None


def _collect_fields(name: QualifiedName, records: Dict[QualifiedName, Record],
                    resolve: Callable[[TypeRef], Optional[QualifiedName]],
                    visiting: Tuple[QualifiedName, ...]) -> List[Field]:
    if name in visiting:
        chain = " -> ".join(str(n) for n in visiting + (name,))
        raise LayoutError(f"class derives from itself: {chain}")
    record = records[name]
    fields: List[Field] = []
    for base in record.model.data_bases:
        target = resolve(base)
        if target is not None and target in records:
            fields.extend(_collect_fields(target, records, resolve, visiting + (name,)))
        else:
            leaf = base.name.leaf if isinstance(base, (Named, Opaque)) else "base"
            fields.append(Field(f"_base_{leaf}", base, name))
    fields.extend(record.model.own_fields)
    return fields


# --- Type rewriting ---

def map_decl_types(decl: Declaration, fn: Callable[[TypeRef, str], TypeRef]) -> Declaration:
    """Applies `fn(type, site)` to every type a declaration mentions."""
    if isinstance(decl, Record):
        model = decl.model
        model = replace(
            model,
            data_bases=tuple(fn(b, "base") for b in model.data_bases),
            own_fields=tuple(replace(f, type=fn(f.type, f"field '{f.name}'")) for f in model.own_fields),
            virtual_methods=tuple(_map_method(m, fn) for m in model.virtual_methods),
            capabilities=tuple(replace(c, methods=tuple(_map_method(m, fn) for m in c.methods))
                               for c in model.capabilities),
        )
        fields = tuple(replace(f, type=fn(f.type, f"field '{f.name}'")) for f in decl.fields)
        return replace(decl, model=model, fields=fields)
    if isinstance(decl, Typedef):
        return replace(decl, target=fn(decl.target, "typedef target"))
    if isinstance(decl, Function):
        return replace(
            decl,
            returns=fn(decl.returns, "return type"),
            params=tuple(replace(p, type=fn(p.type, f"parameter '{p.name or i}'"))
                         for i, p in enumerate(decl.params)),
        )
    if isinstance(decl, Variable):
        return replace(decl, type=fn(decl.type, "variable type"))
    if isinstance(decl, Constant):
        return replace(decl, type=fn(decl.type, "constant type"))
    return decl


def _map_method(m: MethodSignature, fn) -> MethodSignature:
    return replace(
        m,
        returns=fn(m.returns, f"return type of '{m.name}'"),
        params=tuple(replace(p, type=fn(p.type, f"parameter of '{m.name}'")) for p in m.params),
    )


def rewrite_type(t: TypeRef, fn: Callable[[TypeRef], Optional[TypeRef]]) -> TypeRef:
    """Rebuilds `t` bottom-up, replacing every named leaf `fn` maps to something."""
    if isinstance(t, (Named, Opaque)):
        return fn(t) or t
    if isinstance(t, Pointer):
        return Pointer(rewrite_type(t.pointee, fn), t.const)
    if isinstance(t, Reference):
        return Reference(rewrite_type(t.referent, fn), t.const)
    if isinstance(t, RvalueReference):
        return RvalueReference(rewrite_type(t.referent, fn))
    if isinstance(t, FixedArray):
        return FixedArray(rewrite_type(t.element, fn), t.length)
    return t


# --- Layout ---

class LayoutCalculator:
    """C layout rules over the fixed data model. Empty C++ records occupy one byte."""

    def __init__(self, declarations: Dict[QualifiedName, Declaration]):
        self.declarations = declarations
        self._layouts: Dict[QualifiedName, Optional[Tuple[int, int]]] = {}
        self._stack: List[QualifiedName] = []

    def of_type(self, t: TypeRef) -> Optional[Tuple[int, int]]:
        if isinstance(t, Primitive):
            if t.flavor == "void":
                return None
            size = max(t.width // 8, 1)
            return size, size
        if isinstance(t, (Pointer, Reference, RvalueReference)):
            return POINTER_LAYOUT
        if isinstance(t, FixedArray):
            element = self.of_type(t.element)
            if element is None:
                return None
            return element[0] * t.length, element[1]
        if isinstance(t, (Named, Opaque)):
            return self.of_name(t.name)
        return None

    def of_name(self, name: QualifiedName) -> Optional[Tuple[int, int]]:
        if name in self._layouts:
            return self._layouts[name]
        if name in self._stack:
            cycle = self._stack[self._stack.index(name):] + [name]
            raise LayoutError(" -> ".join(str(n) for n in cycle))
        decl = self.declarations.get(name)
        self._stack.append(name)
        try:
            layout = self._compute(decl)
        finally:
            self._stack.pop()
        self._layouts[name] = layout
        return layout

    def _compute(self, decl: Optional[Declaration]) -> Optional[Tuple[int, int]]:
        if isinstance(decl, Record):
            return self._record(decl)
        if isinstance(decl, Enum):
            return self.of_type(decl.storage)
        if isinstance(decl, Typedef):
            return self.of_type(decl.target)
        if isinstance(decl, OpaqueType) and decl.size is not None:
            return decl.size, decl.align or 1
        return None

    def _record(self, record: Record) -> Optional[Tuple[int, int]]:
        if record.kind == DeclKind.INTERFACE:
            return None
        size = 0
        align = 1
        for f in record.fields:
            layout = self.of_type(f.type)
            if layout is None:
                return None
            f_size, f_align = layout
            align = max(align, f_align)
            if record.kind == DeclKind.UNION:
                size = max(size, f_size)
            else:
                size = (size + f_align - 1) // f_align * f_align + f_size
        if size == 0:
            return 1, 1
        return (size + align - 1) // align * align, align


# --- Builder ---

class ModelBuilder:
    def __init__(self, units: Sequence[SyntaxUnit], reporter: DiagnosticReporter,
                 assume_c_linkage: bool = False):
        self.units = list(units)
        self.reporter = reporter
        self.assume_c_linkage = assume_c_linkage
        self.table = SymbolTable()

        self._chosen: Dict[QualifiedName, SyntaxDecl] = {}
        self._opaque_reasons: Dict[QualifiedName, str] = {}
        self._orphans: Dict[QualifiedName, SyntaxDecl] = {}
        self._interfaces: Set[QualifiedName] = set()
        self._records: Dict[QualifiedName, Record] = {}
        self._enums: Dict[QualifiedName, Enum] = {}
        self._typedefs: Dict[QualifiedName, Typedef] = {}
        self._enum_storage: Dict[QualifiedName, Primitive] = {}
        self._implemented_methods: Dict[QualifiedName, Set[Tuple[str, int]]] = {}

        # constant table: enumerators and constexpr variables
        self._value_sources: Dict[QualifiedName, Tuple[str, object]] = {}
        self._values: Dict[QualifiedName, NumericLiteral] = {}
        self._values_in_progress: Set[QualifiedName] = set()
        self._enumerator_owner: Dict[QualifiedName, QualifiedName] = {}

        macros = [m for unit in self.units for m in unit.macros]
        self.processor = MacroProcessor(macros, reporter, self._context(()))

    # --- Phase 1: symbol table ---

    def _register(self):
        for unit in self.units:
            for decl in unit.declarations:
                if isinstance(decl, TypedefSyntax) and _is_identity(decl):
                    logger.debug("Identity typedef %s treated as a forward declaration", decl.name)
                    self.table.add(RecordSyntax(
                        name=decl.name, scope=decl.scope, unit=decl.unit, offset=decl.offset,
                        location=decl.location, keyword=decl.target.elaborated or "struct",
                        is_definition=False,
                    ))
                    continue
                self.table.add(decl)
        self.table.freeze()

    def _choose_definitions(self):
        for qname in self.table.names():
            entries = self.table.get(qname)
            supported = [d for d in entries if not isinstance(d, UnsupportedSyntax)]
            if not supported:
                self._opaque_reasons[qname] = "unsupported"
                self._chosen[qname] = entries[0]
                continue
            definitions = [d for d in supported if _is_definition(d)]
            if not definitions:
                self._chosen[qname] = supported[0]
                if isinstance(supported[0], RecordSyntax):
                    self._opaque_reasons[qname] = "forward"
                continue
            first = definitions[0]
            kinds = {type(d) for d in supported}
            # forward declarations of the same kind merge with the definition
            conflicting = [d for d in definitions[1:] if _shape(d) != _shape(first)]
            if len(kinds) > 1 and not (kinds <= {RecordSyntax} or kinds <= {EnumSyntax}
                                       or kinds <= {VariableSyntax}):
                conflicting = [d for d in supported if d is not first] or conflicting
            if conflicting:
                other = conflicting[0]
                self.reporter.report(
                    DiagnosticKind.DUPLICATE_DEFINITION_CONFLICT,
                    f"'{qname}' is defined incompatibly at {first.location} and {other.location}",
                    subject=str(qname), location=other.location,
                )
                self._opaque_reasons[qname] = "conflict"
                self._chosen[qname] = first
                continue
            if len(definitions) > 1:
                logger.debug("Merged %d identical definitions of %s", len(definitions), qname)
            self._chosen[qname] = first

    # --- Name lookup ---

    def _candidates(self, text: str, scope: Tuple[str, ...], owners: Tuple[str, ...] = ()) -> Iterable[QualifiedName]:
        absolute = text.startswith("::")
        parts = [p for p in text.split("::") if p]
        scopes = [()] if absolute else [scope[:k] for k in range(len(scope), -1, -1)]
        for prefix in scopes:
            # nested types live at namespace scope as `Outer__Inner`
            if not absolute:
                for j in range(len(owners), 0, -1):
                    yield QualifiedName(prefix, "__".join(owners[:j] + tuple(parts)))
            for i in range(len(parts) - 1, -1, -1):
                yield QualifiedName(prefix + tuple(parts[:i]), "__".join(parts[i:]))

    def lookup_type_name(self, text: str, scope: Tuple[str, ...], owners: Tuple[str, ...] = ()) -> Optional[QualifiedName]:
        for candidate in self._candidates(text, scope, owners):
            if candidate in self._chosen and not isinstance(self._chosen[candidate], (FunctionSyntax, VariableSyntax)):
                return candidate
        return None

    def _find_value(self, text: str, scope: Tuple[str, ...]) -> Optional[QualifiedName]:
        for candidate in self._candidates(text, scope):
            if candidate in self._value_sources:
                return candidate
        return None

    # --- Type mapping ---

    def map_type(self, spec: TypeSpec, scope: Tuple[str, ...], owners: Tuple[str, ...],
                 where: SyntaxDecl) -> TypeRef:
        t = self._map_base(spec, scope, owners, where)
        const = spec.const
        for op in spec.ops:
            if op[0] == "ptr":
                t = Pointer(t, const)
                const = op[1]
            elif op[0] == "lref":
                t = Reference(t, const)
            elif op[0] == "rref":
                t = RvalueReference(t)
            else:
                t = FixedArray(t, op[1])
        return t

    def _map_base(self, spec: TypeSpec, scope, owners, where: SyntaxDecl) -> TypeRef:
        base = spec.base
        words = base.split()
        if words[0] in ("void",):
            return VOID
        if words[0] in ("bool", "_Bool"):
            return BOOL
        if "float" in words:
            return F32
        if "double" in words:
            return F64
        if spec.elaborated is None:
            int_type = builtin_int_type(words)
            if int_type is not None:
                return Primitive.from_int(int_type)
        bare = base.lstrip(":")
        if bare in STDINT_TYPES and self.lookup_type_name(base, scope, owners) is None:
            t = STDINT_TYPES[bare]
            return Primitive(t.width, t.signed, "size" if bare in SIZE_TYPES else "int")

        qname = self.lookup_type_name(base, scope, owners)
        if qname is None:
            return Opaque(self._orphan(base, scope, where))
        if qname in self._opaque_reasons:
            return Opaque(qname)
        return Named(qname)

    def _orphan(self, text: str, scope: Tuple[str, ...], where: SyntaxDecl) -> QualifiedName:
        if text.startswith("::"):
            qname = QualifiedName.parse(text)
        else:
            parsed = QualifiedName.parse(text)
            qname = QualifiedName(scope + parsed.path, parsed.leaf)
        if qname not in self._orphans:
            self._orphans[qname] = where
            self.reporter.report(
                DiagnosticKind.UNRESOLVED_TYPE,
                f"type '{text}' is never defined; modeled as an opaque placeholder",
                subject=str(qname), location=where.location,
            )
        return qname

    def _int_type_of(self, text: str, scope: Tuple[str, ...]) -> Optional[IntType]:
        """Follows typedef chains to a primitive integer type (for casts)."""
        qname = self.lookup_type_name(text, scope)
        seen: Set[QualifiedName] = set()
        while qname is not None and qname not in seen:
            seen.add(qname)
            decl = self._chosen.get(qname)
            if isinstance(decl, EnumSyntax):
                storage = self._enum_storage.get(qname)
                return storage.int_type if storage else I32
            if not isinstance(decl, TypedefSyntax) or decl.target.ops:
                return None
            target = decl.target
            int_type = builtin_int_type(target.base.split())
            if int_type is not None:
                return int_type
            if target.base.lstrip(":") in STDINT_TYPES:
                return STDINT_TYPES[target.base.lstrip(":")]
            qname = self.lookup_type_name(target.base, tuple(decl.scope), decl.owners)
        return None

    # --- Constant table ---

    def _context(self, scope: Tuple[str, ...]) -> EvalContext:
        return EvalContext(
            lookup_value=lambda name: self._value_by_text(name, scope),
            lookup_type=lambda name: self._int_type_of(name, scope),
            is_value=lambda name: self._find_value(name, scope) is not None,
            find_field_owner=self._find_field_owner,
        )

    def _value_by_text(self, text: str, scope: Tuple[str, ...]) -> Optional[NumericLiteral]:
        qname = self._find_value(text, scope)
        if qname is None:
            return None
        return self.value_of(qname)

    def value_of(self, qname: QualifiedName) -> NumericLiteral:
        if qname in self._values:
            return self._values[qname]
        if qname in self._values_in_progress:
            raise MacroError(f"recursive self-reference to '{qname}'")
        self._values_in_progress.add(qname)
        try:
            kind, source = self._value_sources[qname]
            if kind == "enumerator":
                value = self._evaluate_enumerator(*source)
            else:
                value = self._evaluate_variable(source)
        finally:
            self._values_in_progress.discard(qname)
        self._values[qname] = value
        return value

    def _enumerator_names(self, enum: EnumSyntax) -> List[QualifiedName]:
        enum_name = QualifiedName(tuple(enum.scope), enum.name)
        if enum.scoped:
            return [enum_name.nested(e.name) for e in enum.enumerators]
        return [QualifiedName(tuple(enum.scope), e.name) for e in enum.enumerators]

    def _evaluate_enumerator(self, enum: EnumSyntax, position: int) -> NumericLiteral:
        enumerator = enum.enumerators[position]
        radix = enumerator.radix
        if radix is None:
            radix = self.value_of(self._enumerator_names(enum)[position - 1]).radix if position else 10
        return from_value(enumerator.value, _smallest_holding([enumerator.value]) or U64, radix)

    def _evaluate_variable(self, var: VariableSyntax) -> NumericLiteral:
        target = self._int_type_of_spec(var)
        lit = self.processor.evaluate(var.init, self._context(tuple(var.scope)), var.location)
        if target is None:
            return lit
        return from_value(target.wrap(lit.value), target, lit.radix)

    def _int_type_of_spec(self, var: VariableSyntax) -> Optional[IntType]:
        spec = var.type
        if spec.ops:
            return None
        found = builtin_int_type(spec.base.split())
        if found is not None:
            return found
        if spec.base.lstrip(":") in STDINT_TYPES:
            return STDINT_TYPES[spec.base.lstrip(":")]
        return self._int_type_of(spec.base, tuple(var.scope))

    def _find_field_owner(self, field: str) -> Tuple[QualifiedName, IntType]:
        owners = []
        for qname, record in self._records.items():
            for f in record.model.own_fields:
                if f.name == field:
                    owners.append((qname, f.type))
        if len(owners) != 1:
            found = ", ".join(str(q) for q, _ in owners) or "no struct"
            raise MacroError(f"field '{field}' needs exactly one declaring struct, found {found}")
        qname, field_type = owners[0]
        if not isinstance(field_type, Primitive) or field_type.int_type is None:
            raise MacroError(f"field '{qname}::{field}' is not an integer")
        return qname, field_type.int_type

    # --- Phase 2: declarations ---

    def build(self) -> SemanticModel:
        self._register()
        self._choose_definitions()

        for qname, decl in self._chosen.items():
            if qname in self._opaque_reasons:
                continue
            if isinstance(decl, EnumSyntax):
                for position, enumerator in enumerate(self._enumerator_names(decl)):
                    self._value_sources[enumerator] = ("enumerator", (decl, position))
                    self._enumerator_owner[enumerator] = qname
            elif isinstance(decl, VariableSyntax) and decl.init is not None and \
                    (decl.constexpr or decl.type.const) and not decl.type.ops:
                self._value_sources[qname] = ("variable", decl)
            elif isinstance(decl, RecordSyntax) and qname not in self._opaque_reasons and _is_interface(decl):
                self._interfaces.add(qname)
        self._prune_interfaces()

        declarations: List[Declaration] = []
        for qname, decl in self._chosen.items():
            if qname in self._opaque_reasons:
                continue
            if isinstance(decl, EnumSyntax):
                self._build_enum(qname, decl)
        for qname, decl in self._chosen.items():
            if qname in self._opaque_reasons:
                continue
            try:
                built = self._build(qname, decl)
            except BindgenError as e:
                self._report_unbuilt(qname, decl, e)
                continue
            if built is not None:
                declarations.append(built)

        self._flatten()
        declarations = [self._records.get(d.name, d) if isinstance(d, Record) else d for d in declarations]
        declarations.extend(self._macros())
        declarations.extend(self._namespaces())
        declarations.extend(self._placeholders())
        declarations = self._apply_layout(declarations)

        units = [UnitInfo(u.name, unit_module_name(u.name)) for u in self.units]
        model = SemanticModel.build(units, declarations)
        logger.debug("Semantic model: %d declarations", len(model.declarations))
        return model

    def _prune_interfaces(self):
        """An interface derives from interfaces only; anything else makes it a class."""
        changed = True
        while changed:
            changed = False
            for qname in sorted(self._interfaces):
                decl = self._chosen[qname]
                for base in decl.bases:
                    base_name = self._through_typedefs(
                        self.lookup_type_name(base.name, tuple(decl.scope), decl.owners))
                    if base_name not in self._interfaces:
                        logger.debug("%s has data base %s; not an interface", qname, base.name)
                        self._interfaces.discard(qname)
                        changed = True
                        break

    def _report_unbuilt(self, qname: QualifiedName, decl: SyntaxDecl, error: BindgenError):
        if error.location is None:
            error.location = decl.location
        kind = DiagnosticKind.MALFORMED_LITERAL if isinstance(error, MalformedLiteral) \
            else DiagnosticKind.UNSUPPORTED_DECLARATION
        self.reporter.report_error(kind, error, subject=str(qname))
        if isinstance(decl, (RecordSyntax, TypedefSyntax)):
            self._opaque_reasons[qname] = "unsupported"

    def _index(self, decl: SyntaxDecl) -> SourceIndex:
        return SourceIndex(decl.unit, decl.offset)

    def _build(self, qname: QualifiedName, decl: SyntaxDecl) -> Optional[Declaration]:
        if isinstance(decl, EnumSyntax):
            return self._enums[qname]
        if isinstance(decl, RecordSyntax):
            return self._build_record(qname, decl)
        if isinstance(decl, TypedefSyntax):
            target = self.map_type(decl.target, tuple(decl.scope), decl.owners, decl)
            typedef = Typedef(qname, self._index(decl), decl.location, target=target)
            self._typedefs[qname] = typedef
            return typedef
        if isinstance(decl, FunctionSyntax):
            return self._build_function(qname, decl)
        if isinstance(decl, VariableSyntax):
            return self._build_variable(qname, decl)
        return None

    def _build_enum(self, qname: QualifiedName, decl: EnumSyntax):
        scope = tuple(decl.scope)
        values = []
        try:
            values = [self.value_of(n) for n in self._enumerator_names(decl)]
        except (MacroError, MalformedLiteral) as e:
            self._report_unbuilt(qname, decl, e)
            self._opaque_reasons[qname] = "unsupported"
            return
        if decl.underlying is not None:
            storage = self._map_base(decl.underlying, scope, decl.owners, decl)
            if not isinstance(storage, Primitive) or storage.int_type is None:
                self.reporter.report(DiagnosticKind.UNSUPPORTED_DECLARATION,
                                     f"enum '{qname}' has a non-integer underlying type",
                                     subject=str(qname), location=decl.location)
                self._opaque_reasons[qname] = "unsupported"
                return
        else:
            storage = Primitive.from_int(_smallest_holding([v.value for v in values]) or U64)
        self._enum_storage[qname] = storage
        int_type = storage.int_type
        enumerators = tuple(
            Enumerator(e.name, from_value(int_type.wrap(v.value), int_type, v.radix))
            for e, v in zip(decl.enumerators, values)
        )
        self._enums[qname] = Enum(qname, self._index(decl), decl.location, scoped=decl.scoped,
                                  storage=storage, enumerators=enumerators, anonymous=decl.anonymous)
        logger.debug("Enum %s: %d enumerators stored as %s", qname, len(enumerators), storage.rust_name)

    def _build_record(self, qname: QualifiedName, decl: RecordSyntax) -> Record:
        scope = tuple(decl.scope)
        owners = decl.owners + (qname.leaf.split("__")[-1],)
        data_bases: List[TypeRef] = []
        interface_bases: List[QualifiedName] = []
        for base in decl.bases:
            if base.virtual:
                raise DeclarationError(f"virtual base '{base.name}' is not supported", decl.location)
            base_name = self.lookup_type_name(base.name, scope, decl.owners)
            base_name = self._through_typedefs(base_name)
            if base_name in self._interfaces:
                interface_bases.append(base_name)
            elif base_name is None:
                data_bases.append(Opaque(self._orphan(base.name, scope, decl)))
            elif base_name in self._opaque_reasons:
                data_bases.append(Opaque(base_name))
            else:
                data_bases.append(Named(base_name))

        own_fields = tuple(
            Field(f.name, self.map_type(f.type, scope, owners, decl), qname) for f in decl.fields
        )
        methods = []
        for m in decl.methods:
            try:
                methods.append(self._method(m, scope, owners, decl))
            except DeclarationError as e:
                logger.debug("Dropping method %s::%s: %s", qname, m.name, e)

        is_interface = qname in self._interfaces
        capabilities = tuple(self._capability(b) for b in interface_bases)
        if is_interface:
            kind = DeclKind.INTERFACE
        else:
            kind = _RECORD_KINDS[decl.keyword]
            if kind == DeclKind.INTERFACE:
                kind = DeclKind.STRUCT
        model = ClassModel(
            data_bases=tuple(data_bases),
            interface_bases=tuple(interface_bases),
            own_fields=own_fields,
            virtual_methods=tuple(m for m, s in zip(methods, decl.methods) if s.virtual or s.pure),
            capabilities=capabilities,
        )
        record = Record(qname, self._index(decl), decl.location, record_kind=kind, model=model,
                        fields=own_fields)
        self._records[qname] = record
        self._implemented_methods[qname] = {(m.name, len(m.params)) for m in methods}
        return record

    def _through_typedefs(self, qname: Optional[QualifiedName]) -> Optional[QualifiedName]:
        seen = set()
        while qname is not None and qname not in seen:
            seen.add(qname)
            decl = self._chosen.get(qname)
            if not isinstance(decl, TypedefSyntax) or decl.target.ops:
                return qname
            qname = self.lookup_type_name(decl.target.base, tuple(decl.scope), decl.owners)
        return qname

    def _method(self, m, scope, owners, decl: SyntaxDecl) -> MethodSignature:
        params = tuple(Param(p.name, self.map_type(p.type, scope, owners, decl)) for p in m.params)
        return MethodSignature(m.name, params, self.map_type(m.returns, scope, owners, decl),
                               const=m.const, pure=m.pure)

    def _capability(self, interface: QualifiedName) -> Capability:
        """An interface's methods, including the ones its own interface bases require."""
        decl = self._chosen[interface]
        scope = tuple(decl.scope)
        owners = decl.owners + (interface.leaf,)
        methods: List[MethodSignature] = []
        for base in decl.bases:
            base_name = self._through_typedefs(self.lookup_type_name(base.name, scope, decl.owners))
            if base_name in self._interfaces and base_name != interface:
                methods.extend(m for m in self._capability(base_name).methods if m not in methods)
        for m in decl.methods:
            try:
                signature = self._method(m, scope, owners, decl)
            except DeclarationError:
                continue
            if signature not in methods:
                methods.append(signature)
        return Capability(interface, tuple(methods))

    def _build_function(self, qname: QualifiedName, decl: FunctionSyntax) -> Optional[Function]:
        c_linkage = decl.c_linkage or (self.assume_c_linkage and not decl.scope)
        if not c_linkage:
            self.reporter.report(DiagnosticKind.SKIPPED_DECLARATION,
                                 f"function '{qname}' does not have C linkage",
                                 subject=str(qname), location=decl.location)
            return None
        scope = tuple(decl.scope)
        params = tuple(Param(p.name, self.map_type(p.type, scope, (), decl)) for p in decl.params)
        returns = self.map_type(decl.returns, scope, (), decl)
        logger.debug("Function %s(%d params) -> %s", qname, len(params), returns)
        return Function(qname, self._index(decl), decl.location, returns=returns, params=params,
                        variadic=decl.variadic, calling_convention=decl.calling_convention)

    def _build_variable(self, qname: QualifiedName, decl: VariableSyntax) -> Optional[Declaration]:
        scope = tuple(decl.scope)
        var_type = self.map_type(decl.type, scope, (), decl)
        if qname in self._value_sources:
            enum_name = self._through_typedefs(var_type.name) if isinstance(var_type, Named) else None
            if enum_name in self._enums:
                return self._enum_constant(qname, decl, var_type, enum_name)
            if isinstance(var_type, Primitive) and var_type.int_type is not None:
                value = self.value_of(qname)
                return Constant(qname, self._index(decl), decl.location, type=var_type,
                                value=value, origin="variable")
            self.reporter.report(DiagnosticKind.UNSUPPORTED_DECLARATION,
                                 f"constant '{qname}' of non-integer type is not bound",
                                 subject=str(qname), location=decl.location)
            return None
        c_linkage = decl.c_linkage or (self.assume_c_linkage and not decl.scope)
        if not c_linkage:
            self.reporter.report(DiagnosticKind.SKIPPED_DECLARATION,
                                 f"variable '{qname}' does not have C linkage",
                                 subject=str(qname), location=decl.location)
            return None
        return Variable(qname, self._index(decl), decl.location, type=var_type, const=decl.type.const)

    def _enum_constant(self, qname: QualifiedName, decl: VariableSyntax, var_type: Named,
                       enum_name: QualifiedName) -> Constant:
        enum = self._enums[enum_name]
        value = self.value_of(qname)
        storage = enum.storage.int_type
        value = from_value(storage.wrap(value.value), storage, value.radix)
        enumerator = None
        expr = parse_macro_replacement(list(decl.init))
        if isinstance(expr, Identifier):
            named = self._find_value(expr.name, tuple(decl.scope))
            if named is not None and self._enumerator_owner.get(named) == enum_name:
                enumerator = named
        if enumerator is None:
            for e in enum.enumerators:
                if e.value.value == value.value:
                    enumerator = _enumerator_qname(enum, e.name)
                    break
        return Constant(qname, self._index(decl), decl.location, type=var_type, value=value,
                        origin="variable", enumerator=enumerator)

    # --- Phase 3: flattening, interfaces, macros ---

    def _flatten(self):
        for qname in list(self._records):
            record = self._records[qname]
            try:
                fields = flatten_fields(qname, self._records, self._record_target)
            except LayoutError as e:
                self.reporter.report_error(DiagnosticKind.LAYOUT_CYCLE, e, subject=str(qname))
                self._opaque_reasons[qname] = "layout-cycle"
                continue
            self._records[qname] = replace(record, fields=fields)
            self._check_implementation(qname)

    def _record_target(self, t: TypeRef) -> Optional[QualifiedName]:
        if not isinstance(t, Named):
            return None
        target = self._through_typedefs(t.name)
        return target if target in self._records else None

    def _check_implementation(self, qname: QualifiedName):
        record = self._records[qname]
        if record.kind == DeclKind.INTERFACE or not record.model.capabilities:
            return
        implemented = set(self._all_implemented(qname, ()))
        for capability in record.model.capabilities:
            for m in capability.methods:
                if (m.name, len(m.params)) not in implemented:
                    self.reporter.report(
                        DiagnosticKind.INCOMPLETE_IMPLEMENTATION,
                        f"'{qname}' does not declare '{m.name}' required by '{capability.interface}'",
                        subject=str(qname), location=record.location,
                    )

    def _all_implemented(self, qname: QualifiedName, seen: Tuple[QualifiedName, ...]) -> Set[Tuple[str, int]]:
        if qname in seen or qname not in self._records:
            return set()
        found = set(self._implemented_methods.get(qname, set()))
        for base in self._records[qname].model.data_bases:
            target = self._record_target(base)
            if target is not None:
                found |= self._all_implemented(target, seen + (qname,))
        return found

    def _macros(self) -> List[Declaration]:
        out: List[Declaration] = []
        for resolved in self.processor.resolve_all():
            mac = resolved.definition
            qname = QualifiedName((), mac.name)
            index = SourceIndex(mac.unit, mac.offset)
            if resolved.kind == MacroKind.CONSTANT:
                out.append(Constant(qname, index, mac.location,
                                    type=Primitive.from_int(resolved.value.int_type),
                                    value=resolved.value, origin="macro"))
            elif resolved.kind == MacroKind.EXPRESSION:
                fn = resolved.function
                out.append(MacroFunction(qname, index, mac.location, params=fn.params, returns=fn.returns,
                                         body=fn.body, owner=fn.owner, mutating=fn.mutating))
        return out

    def _namespaces(self) -> List[Declaration]:
        return [Namespace(qname, self._index(decl), decl.location)
                for qname, decl in self.table.namespaces().items()]

    def _placeholders(self) -> List[Declaration]:
        out: List[Declaration] = []
        for qname, reason in self._opaque_reasons.items():
            decl = self._chosen[qname]
            if reason == "forward":
                self.reporter.report(DiagnosticKind.UNRESOLVED_TYPE,
                                     f"'{qname}' is declared but never defined; modeled as opaque",
                                     subject=str(qname), location=decl.location, severity=Severity.INFO)
            if reason == "layout-cycle" or isinstance(decl, (FunctionSyntax, VariableSyntax)):
                continue
            out.append(OpaqueType(qname, self._index(decl), decl.location, reason=reason))
        for qname, where in self._orphans.items():
            if qname in self._opaque_reasons or qname in self._chosen:
                continue
            out.append(OpaqueType(qname, self._index(where), where.location, reason="orphan"))
        return out

    # --- Phase 4: layout ---

    def _apply_layout(self, declarations: List[Declaration]) -> List[Declaration]:
        by_name = {d.name: d for d in declarations if not isinstance(d, Namespace)}
        failed: Dict[QualifiedName, str] = {}
        calculator = LayoutCalculator(by_name)
        for d in declarations:
            if not isinstance(d, Record) or d.kind == DeclKind.INTERFACE:
                continue
            try:
                calculator.of_name(d.name)
            except LayoutError as e:
                failed[d.name] = str(e)

        # records whose flattening already failed
        for qname, reason in self._opaque_reasons.items():
            if reason == "layout-cycle" and qname in self._records:
                failed.setdefault(qname, "class derives from itself")

        for qname in sorted(failed):
            if self._opaque_reasons.get(qname) != "layout-cycle":
                self.reporter.report(DiagnosticKind.LAYOUT_CYCLE,
                                     f"'{qname}' cannot be laid out: {failed[qname]}",
                                     subject=str(qname), location=by_name[qname].location if qname in by_name else None)

        # a by-value member of unknown size leaves the whole record unsized
        unsized: Dict[QualifiedName, Record] = {}
        for d in declarations:
            if isinstance(d, Record) and d.kind != DeclKind.INTERFACE and d.name not in failed \
                    and calculator.of_name(d.name) is None:
                unsized[d.name] = d
        for qname, record in unsized.items():
            member = next(f for f in record.fields if calculator.of_type(f.type) is None)
            self.reporter.report(DiagnosticKind.UNSUPPORTED_DECLARATION,
                                 f"'{qname}' cannot be laid out: field '{member.name}' has no known size",
                                 subject=str(qname), location=record.location)

        def opaque(t: TypeRef) -> Optional[TypeRef]:
            if isinstance(t, Named) and (t.name in failed or t.name in unsized):
                return Opaque(t.name)
            return None

        out: List[Declaration] = []
        for d in declarations:
            if d.name in failed and isinstance(d, Record):
                out.append(OpaqueType(d.name, d.index, d.location, reason="layout-cycle"))
                continue
            if d.name in unsized:
                out.append(OpaqueType(d.name, d.index, d.location, reason="unsized"))
                continue
            if failed or unsized:
                d = map_decl_types(d, lambda t, site: rewrite_type(t, opaque))
            if isinstance(d, Record) and d.kind != DeclKind.INTERFACE:
                layout = calculator.of_name(d.name)
                if layout is not None:
                    d = replace(d, size=layout[0], align=layout[1])
            out.append(d)
        return out


def _is_identity(decl: TypedefSyntax) -> bool:
    target = decl.target
    return (not target.ops and target.elaborated is not None
            and target.base.split("::")[-1] == decl.name)


def _is_interface(decl: RecordSyntax) -> bool:
    if not decl.is_definition or decl.fields or decl.has_other_members or not decl.methods:
        return False
    # every __interface method is implicitly pure virtual
    return decl.keyword == "__interface" or all(m.virtual and m.pure for m in decl.methods)


def _smallest_holding(values: Sequence[int]) -> Optional[IntType]:
    for t in (I32, U32, I64, U64):
        if all(t.holds(v) for v in values):
            return t
    return None


def _enumerator_qname(enum: Enum, name: str) -> QualifiedName:
    if enum.scoped:
        return enum.name.nested(name)
    return QualifiedName(enum.name.path, name)


def build_model(units: Sequence[SyntaxUnit], reporter: DiagnosticReporter,
                assume_c_linkage: bool = False) -> SemanticModel:
    return ModelBuilder(units, reporter, assume_c_linkage).build()
