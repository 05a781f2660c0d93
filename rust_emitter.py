"""
Rust code emitter.

Serializes a frozen SemanticModel into one Rust source file per input unit:
constants, macro functions, type aliases, enums, types (bases before
dependents), then `extern` blocks, with namespaces as nested `pub mod`s.
The emitter only reads the model, so emitting twice gives identical text.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from num2words import num2words

from diagnostics import DiagnosticKind, DiagnosticReporter
from literals import INT_TYPES_BY_RUST_NAME, IntType, NumericLiteral, from_value, rust_literal
from options import Options
from out_types import (Constant, Declaration, Enum, FixedArray, Function, MacroFunction,
                       Named, Namespace, Opaque, OpaqueType, Pointer, Primitive, QualifiedName,
                       Record, Reference, RvalueReference, SemanticModel, Typedef, TypeRef,
                       Variable, DeclKind, by_value_names, referenced_names, rust_ident)

logger = logging.getLogger(__name__)

HEADER = "// Generated Rust bindings\n// This file was automatically generated by cxxbindgen.\n"
CRATE_ALLOWS = "#![allow(non_camel_case_types, non_snake_case, non_upper_case_globals, dead_code)]"
INDENT = "    "

_OPAQUE_REASONS = {
    "orphan": "is never defined in the input",
    "forward": "is only forward-declared",
    "blocklisted": "is blocklisted",
    "conflict": "has conflicting definitions",
    "unsupported": "could not be translated",
    "layout-cycle": "has no computable layout",
    "unsized": "has a member of unknown size",
}

# Calling conventions that accept C variadic functions.
_VARIADIC_ABIS = {"C", "cdecl"}


@dataclass
class _Module:
    name: str
    items: List[Declaration] = field(default_factory=list)
    children: Dict[str, "_Module"] = field(default_factory=dict)  # insertion order = first use

    def child(self, name: str) -> "_Module":
        if name not in self.children:
            self.children[name] = _Module(name)
        return self.children[name]


class RustEmitter:
    def __init__(self, model: SemanticModel, options: Optional[Options] = None,
                 reporter: Optional[DiagnosticReporter] = None):
        self.model = model
        self.options = options or Options()
        self.reporter = reporter or DiagnosticReporter()
        self._debuggable: Dict[QualifiedName, bool] = {}
        self._uses_moved: Set[int] = set()

    # --- Paths ---

    def unit_root(self, unit: int) -> str:
        root = self.options.rust_mod_name or "crate"
        if len(self.model.units) > 1:
            return f"{root}::{self.model.units[unit].module}"
        return root

    def path(self, name: QualifiedName, unit: Optional[int] = None) -> str:
        """Absolute Rust path of a declaration (or of an enumerator, given its unit)."""
        decl = self.model.get(name)
        if decl is not None:
            unit = decl.index.unit
        segments = [rust_ident(s) for s in name.segments]
        return "::".join([self.unit_root(unit or 0)] + segments)

    # --- Types ---

    def render_type(self, t: TypeRef, unit: int, context: str = "field") -> str:
        """
        Spells a type reference in Rust.

        `context` is one of "field", "param", "return" or "method"; borrowed
        references get elided lifetimes only where Rust can infer them.
        """
        if isinstance(t, Primitive):
            return t.rust_name
        if isinstance(t, Pointer):
            inner = self.render_type(t.pointee, unit, "pointee")
            return f"*const {inner}" if t.const else f"*mut {inner}"
        if isinstance(t, Reference):
            inner = self.render_type(t.referent, unit, "pointee")
            lifetime = "" if context in ("param", "method") else "'static "
            return f"&{lifetime}{inner}" if t.const else f"&{lifetime}mut {inner}"
        if isinstance(t, RvalueReference):
            inner = self.render_type(t.referent, unit, "pointee")
            self._uses_moved.add(unit)
            return f"{self.unit_root(unit)}::Moved<{inner}>"
        if isinstance(t, FixedArray):
            return f"[{self.render_type(t.element, unit, context)}; {t.length}]"
        if isinstance(t, (Named, Opaque)):
            decl = self.model.get(t.name)
            if isinstance(decl, Enum) and decl.anonymous:
                return decl.storage.rust_name
            return self.path(t.name)
        raise TypeError(f"cannot render {t!r}")

    def _is_debuggable_type(self, t: TypeRef) -> bool:
        if isinstance(t, (Reference, RvalueReference)):
            return self._is_debuggable_type(t.referent)
        if isinstance(t, FixedArray):
            return self._is_debuggable_type(t.element)
        if isinstance(t, (Named, Opaque)):
            return self._is_debuggable(t.name)
        return True

    def _is_debuggable(self, name: QualifiedName) -> bool:
        if name in self._debuggable:
            return self._debuggable[name]
        self._debuggable[name] = True  # self-references through pointers
        decl = self.model.get(name)
        if isinstance(decl, Record):
            result = (decl.kind != DeclKind.UNION
                      and all(self._is_debuggable_type(f.type) for f in decl.fields))
        elif isinstance(decl, Typedef):
            result = self._is_debuggable_type(decl.target)
        else:
            result = True
        self._debuggable[name] = result
        return result

    def _is_copy(self, t: TypeRef) -> bool:
        if isinstance(t, (Primitive, Pointer)):
            return True
        if isinstance(t, Reference):
            return t.const
        if isinstance(t, FixedArray):
            return self._is_copy(t.element)
        if isinstance(t, Named):
            decl = self.model.get(t.name)
            if isinstance(decl, Enum):
                return True
            if isinstance(decl, Typedef):
                return self._is_copy(decl.target)
        return False

    # --- Literals ---

    def literal(self, lit: NumericLiteral, t: Primitive) -> str:
        int_type = t.int_type
        text = rust_literal(from_value(int_type.wrap(lit.value), int_type, lit.radix))
        if t.flavor == "size" and " as " in text:
            text = f"{text} as {t.rust_name}"
        return text

    # --- Selection ---

    def _dependencies(self, decl: Declaration) -> List[QualifiedName]:
        types: List[TypeRef] = []
        names: List[QualifiedName] = []
        if isinstance(decl, Record):
            types.extend(f.type for f in decl.fields)
            types.extend(decl.model.data_bases)
            names.extend(decl.model.interface_bases)
            names.extend(c.interface for c in decl.model.capabilities)
            for method in decl.model.virtual_methods:
                types.append(method.returns)
                types.extend(p.type for p in method.params)
        elif isinstance(decl, Typedef):
            types.append(decl.target)
        elif isinstance(decl, Function):
            types.append(decl.returns)
            types.extend(p.type for p in decl.params)
        elif isinstance(decl, (Variable, Constant)):
            types.append(decl.type)
        elif isinstance(decl, MacroFunction) and decl.owner is not None:
            names.append(decl.owner)
        for t in types:
            names.extend(referenced_names(t))
        return [n for n in names if self.model.get(n) is not None]

    def _item_patterns(self, decl: Declaration) -> Tuple[str, str]:
        """Allowlist and blocklist option names governing a declaration."""
        if isinstance(decl, Function):
            return "allowlist_function", "blocklist_function"
        if isinstance(decl, Variable) or (isinstance(decl, Constant) and decl.origin == "variable"):
            return "allowlist_variable", "blocklist_variable"
        if isinstance(decl, (Constant, MacroFunction)):
            return "allowlist_macro", "blocklist_macro"
        return "allowlist_type", ""

    def select(self) -> List[Declaration]:
        """Declarations to emit, in source order, after allowlists and item blocklists."""
        patterns = {}

        def matches(option: str, decl: Declaration) -> bool:
            if not option:
                return False
            if option not in patterns:
                patterns[option] = self.options.patterns(option)
            text = str(decl.name)
            return any(p.fullmatch(text) or p.fullmatch(f"::{text}") for p in patterns[option])

        candidates = []
        for decl in self.model.declarations:
            if isinstance(decl, Namespace):
                continue
            allow, block = self._item_patterns(decl)
            if matches(block, decl):
                logger.debug("Not emitting blocklisted item %s", decl.name)
                continue
            candidates.append((decl, allow))

        if not self.options.has_allowlist:
            return [decl for decl, _ in candidates]

        chosen: Set[QualifiedName] = set()
        pending = [decl.name for decl, allow in candidates if matches(allow, decl)]
        while pending:
            name = pending.pop()
            if name in chosen:
                continue
            chosen.add(name)
            pending.extend(self._dependencies(self.model.get(name)))
        logger.debug("Allowlists select %d of %d declarations", len(chosen), len(candidates))
        return [decl for decl, _ in candidates if decl.name in chosen]

    # --- Emission ---

    def emit(self) -> Dict[str, str]:
        """Generates Rust source per unit, keyed by unit module name."""
        self._uses_moved.clear()
        roots = [_Module(unit.module) for unit in self.model.units]
        for decl in self.select():
            module = roots[decl.index.unit]
            for segment in decl.name.path:
                module = module.child(segment)
            module.items.append(decl)

        outputs: Dict[str, str] = {}
        for unit, root in enumerate(roots):
            body = self.generate_module(root, unit)
            parts = [HEADER]
            if self.options.standalone:
                parts.append(CRATE_ALLOWS + "\n")
            if unit in self._uses_moved:
                parts.append("/// Ownership-transferring (C++ rvalue reference) parameter.\n"
                             "pub type Moved<T> = *mut T;\n")
            parts.append("\n\n".join(body))
            outputs[root.name] = "\n".join(parts).rstrip("\n") + "\n"
            logger.debug("Emitted unit %s (%d top-level items)", root.name, len(root.items))
        return outputs

    def generate_module(self, module: _Module, unit: int) -> List[str]:
        """Renders one module's sections, then its child modules, as blocks of text."""
        items = module.items

        def generate_constants():
            lines = []
            for decl in items:
                if isinstance(decl, Constant):
                    lines.append(self.constant(decl))
            for decl in items:
                if isinstance(decl, Enum) and decl.anonymous:
                    for e in decl.enumerators:
                        lines.append(f"pub const {rust_ident(e.name)}: {decl.storage.rust_name} = "
                                     f"{self.literal(e.value, decl.storage)};")
            return "\n".join(["// Constants"] + lines) if lines else ""

        def generate_macro_functions():
            blocks = [self.macro_function(d, unit) for d in items if isinstance(d, MacroFunction)]
            blocks = [b for b in blocks if b]
            return "\n\n".join(["// Macro functions"] + blocks) if blocks else ""

        def generate_typedefs():
            lines = [f"pub type {rust_ident(d.name.leaf)} = {self.render_type(d.target, unit)};"
                     for d in items if isinstance(d, Typedef)]
            return "\n".join(["// Type aliases"] + lines) if lines else ""

        def generate_enums():
            blocks = [self.enum(d) for d in items if isinstance(d, Enum) and not d.anonymous]
            return "\n\n".join(["// Enums"] + blocks) if blocks else ""

        def generate_types():
            blocks = []
            for decl in self._topological([d for d in items if isinstance(d, (Record, OpaqueType))]):
                if isinstance(decl, OpaqueType):
                    blocks.append(self.opaque(decl))
                elif decl.kind == DeclKind.INTERFACE:
                    blocks.append(self.interface(decl, unit))
                else:
                    blocks.append(self.record(decl, unit))
            return "\n\n".join(["// Types"] + blocks) if blocks else ""

        def generate_externs():
            by_abi: Dict[str, List[str]] = {}
            for decl in items:
                if isinstance(decl, Function):
                    line = self.function(decl, unit)
                    if line:
                        by_abi.setdefault(decl.calling_convention, []).append(line)
                elif isinstance(decl, Variable):
                    mutability = "" if decl.const else "mut "
                    by_abi.setdefault("C", []).append(
                        f"pub static {mutability}{rust_ident(decl.name.leaf)}: "
                        f"{self.render_type(decl.type, unit)};")
            blocks = []
            for abi in sorted(by_abi, key=lambda a: (a != "C", a)):
                body = "\n".join(INDENT + line for line in by_abi[abi])
                blocks.append(f'extern "{abi}" {{\n{body}\n}}')
            return "\n\n".join(["// Functions"] + blocks) if blocks else ""

        sections = [
            generate_constants(),
            generate_macro_functions(),
            generate_typedefs(),
            generate_enums(),
            generate_types(),
            generate_externs(),
        ]
        for child in module.children.values():
            inner = "\n\n".join(self.generate_module(child, unit))
            indented = "\n".join(INDENT + line if line else line for line in inner.split("\n"))
            sections.append(f"pub mod {rust_ident(child.name)} {{\n{indented}\n}}")
        return [s for s in sections if s]

    def _topological(self, decls: List[Declaration]) -> List[Declaration]:
        """Source order, except that a type embedded by value comes before its user."""
        local = {d.name: d for d in decls}
        ordered: List[Declaration] = []
        visited: Set[QualifiedName] = set()

        def visit(decl: Declaration):
            if decl.name in visited:
                return
            visited.add(decl.name)
            if isinstance(decl, Record):
                for f in decl.fields:
                    for dep in by_value_names(f.type):
                        if dep in local:
                            visit(local[dep])
            ordered.append(decl)

        for decl in decls:
            visit(decl)
        return ordered

    # --- Items ---

    def constant(self, decl: Constant) -> str:
        unit = decl.index.unit
        name = rust_ident(decl.name.leaf)
        if isinstance(decl.type, Primitive):
            return f"pub const {name}: {decl.type.rust_name} = {self.literal(decl.value, decl.type)};"

        target = self.model.get(decl.type.name)
        type_path = self.render_type(decl.type, unit)
        if isinstance(target, Enum):
            if decl.enumerator is not None:
                value = self.path(decl.enumerator, target.index.unit)
            elif target.anonymous:
                value = self.literal(decl.value, target.storage)
            else:
                value = f"{type_path}({self.literal(decl.value, target.storage)})"
        else:
            value = self.literal(decl.value, Primitive.from_int(decl.value.int_type))
        return f"pub const {name}: {type_path} = {value};"

    def macro_function(self, decl: MacroFunction, unit: int) -> Optional[str]:
        params = []
        for p in decl.params:
            if p.int_type is not None:
                params.append(f"{p.name}: {p.int_type.rust_name}")
                continue
            owner = self.model.get(decl.owner)
            if not isinstance(owner, Record):
                self.reporter.report(DiagnosticKind.UNSUPPORTED_MACRO_BODY,
                                     f"'{decl.name}' writes through '{decl.owner}', which has no visible fields",
                                     subject=str(decl.name), location=decl.location)
                return None
            params.append(f"{p.name}: &mut {self.path(decl.owner)}")
        qualifier = "pub fn" if decl.mutating else "pub const fn"
        body = "\n".join(INDENT + line for line in decl.body)
        return (f"{qualifier} {rust_ident(decl.name.leaf)}({', '.join(params)}) -> "
                f"{decl.returns.rust_name} {{\n{body}\n}}")

    def enum(self, decl: Enum) -> str:
        name = rust_ident(decl.name.leaf)
        storage = decl.storage
        lines = [
            "#[repr(transparent)]",
            "#[derive(Clone, Copy, PartialEq, Eq, Hash)]",
            f"pub struct {name}(pub {storage.rust_name});",
        ]
        if decl.scoped:
            if decl.enumerators:
                lines.append(f"impl {name} {{")
                for e in decl.enumerators:
                    lines.append(f"{INDENT}pub const {rust_ident(e.name)}: Self = Self({self.literal(e.value, storage)});")
                lines.append("}")
        else:
            for e in decl.enumerators:
                lines.append(f"pub const {rust_ident(e.name)}: {name} = {name}({self.literal(e.value, storage)});")

        if self.options.derive_debug:
            arms, seen = [], set()
            for e in decl.enumerators:
                value = storage.int_type.wrap(e.value.value)
                if value not in seen:
                    seen.add(value)
                    arms.append(f'{INDENT * 3}{value} => f.write_str("{e.name}"),')
            lines.extend([
                f"impl ::core::fmt::Debug for {name} {{",
                f"{INDENT}fn fmt(&self, f: &mut ::core::fmt::Formatter<'_>) -> ::core::fmt::Result {{",
                f"{INDENT * 2}match self.0 {{",
                *arms,
                f'{INDENT * 3}other => write!(f, "{decl.name.leaf}({{}})", other),',
                f"{INDENT * 2}}}",
                f"{INDENT}}}",
                "}",
            ])
        return "\n".join(lines)

    def record(self, decl: Record, unit: int) -> str:
        name = rust_ident(decl.name.leaf)
        lines = []
        for capability in decl.model.capabilities:
            methods = ", ".join(f"`{m.name}`" for m in capability.methods)
            lines.append(f"/// Implements `{self.path(capability.interface)}`: {methods}.")
        lines.append("#[repr(C)]")
        is_union = decl.kind == DeclKind.UNION
        if self.options.derive_debug and self._is_debuggable(decl.name):
            lines.append("#[derive(Debug)]")
        lines.append(f"pub {'union' if is_union else 'struct'} {name} {{")
        if not decl.fields:
            lines.append(f"{INDENT}pub _address: u8,")
        for f in decl.fields:
            rendered = self.render_type(f.type, unit)
            if is_union and not self._is_copy(f.type):
                rendered = f"::core::mem::ManuallyDrop<{rendered}>"
            lines.append(f"{INDENT}pub {rust_ident(f.name)}: {rendered},")
        lines.append("}")
        return "\n".join(lines)

    def interface(self, decl: Record, unit: int) -> str:
        name = rust_ident(decl.name.leaf)
        bases = " + ".join(self.path(b) for b in decl.model.interface_bases)
        lines = [f"pub trait {name}{': ' + bases if bases else ''} {{"]
        for method in decl.model.virtual_methods:
            receiver = "&self" if method.const else "&mut self"
            params = [receiver] + [
                f"{rust_ident(p.name) if p.name else f'arg{i}'}: {self.render_type(p.type, unit, 'method')}"
                for i, p in enumerate(method.params)
            ]
            lines.append(f"{INDENT}fn {rust_ident(method.name)}({', '.join(params)}){self._returns(method.returns, unit, 'method')};")
        lines.append("}")
        return "\n".join(lines)

    def opaque(self, decl: OpaqueType) -> str:
        name = rust_ident(decl.name.leaf)
        reason = _OPAQUE_REASONS.get(decl.reason, decl.reason)
        if decl.size is not None:
            unit_word = "byte" if decl.size == 1 else "bytes"
            size = f"{num2words(decl.size)} {unit_word}"
        else:
            size = "size unknown"
        lines = [f"/// `{decl.name}` {reason}; opaque placeholder ({size})."]
        if decl.size is not None:
            lines.append(f"#[repr(C, align({decl.align or 1}))]")
        else:
            lines.append("#[repr(C)]")
        if self.options.derive_debug:
            lines.append("#[derive(Debug)]")
        lines.extend([
            f"pub struct {name} {{",
            f"{INDENT}_opaque: [u8; {decl.size or 0}],",
            "}",
        ])
        return "\n".join(lines)

    def function(self, decl: Function, unit: int) -> Optional[str]:
        params = [
            f"{rust_ident(p.name) if p.name else f'arg{i}'}: {self.render_type(p.type, unit, 'param')}"
            for i, p in enumerate(decl.params)
        ]
        if decl.variadic:
            if decl.calling_convention not in _VARIADIC_ABIS or not params:
                self.reporter.report(DiagnosticKind.SKIPPED_DECLARATION,
                                     f"variadic function '{decl.name}' cannot be declared in Rust",
                                     subject=str(decl.name), location=decl.location)
                return None
            params.append("...")
        return f"pub fn {rust_ident(decl.name.leaf)}({', '.join(params)}){self._returns(decl.returns, unit, 'return')};"

    def _returns(self, t: TypeRef, unit: int, context: str) -> str:
        if isinstance(t, Primitive) and t.flavor == "void":
            return ""
        return f" -> {self.render_type(t, unit, context)}"


def emit(model: SemanticModel, options: Optional[Options] = None,
         reporter: Optional[DiagnosticReporter] = None) -> Dict[str, str]:
    return RustEmitter(model, options, reporter).emit()


_CONST_ITEM_RE = re.compile(r"^\s*pub const (?P<name>\w+): (?P<type>[\w:]+) = (?P<value>.+);\s*$")
_CONST_VALUE_RE = re.compile(
    r"^(?:(?P<path>[\w:]+)\()?"
    r"(?P<number>-?(?:0x[0-9A-Fa-f_]+|\d+))"
    r"(?:u(?P<bits>\d+) as (?P<cast>[iu]\d+))?"
    r"(?: as [iu]size)?"
    r"\)?$"
)


def parse_const_item(line: str, storage: Optional[IntType] = None) -> Optional[Tuple[str, NumericLiteral]]:
    """
    Reads an emitted `pub const` line back into its name and NumericLiteral.

    Enum-typed constants need `storage` unless their literal carries a cast.
    Returns None for constants whose value is a path (an enumerator).
    """
    m = _CONST_ITEM_RE.match(line)
    if not m:
        raise ValueError(f"not a const item: {line!r}")
    v = _CONST_VALUE_RE.match(m.group("value"))
    if not v:
        return None

    type_name = m.group("type")
    if v.group("cast"):
        int_type = INT_TYPES_BY_RUST_NAME[v.group("cast")]
    elif type_name in INT_TYPES_BY_RUST_NAME:
        int_type = INT_TYPES_BY_RUST_NAME[type_name]
    elif type_name in ("usize", "isize"):
        int_type = IntType(64, type_name == "isize")
    elif storage is not None:
        int_type = storage
    else:
        raise ValueError(f"cannot tell the integer type of {m.group('name')}")

    number = v.group("number").replace("_", "")
    negative = number.startswith("-")
    digits = number.lstrip("-")
    radix = 16 if digits.startswith("0x") else 10
    value = int(digits, radix)
    return m.group("name"), from_value(-value if negative else value, int_type, radix)
