"""
Declaration parser: reads a header's libclang translation unit into an untyped
syntax model.

Only cursors spelled in the unit's own buffer are visited; an included input is
parsed as a unit of its own. A declaration libclang rejects, or one that uses a
construct bindings cannot express, is reported and skipped. Type names are kept
fully qualified (`::N1::Outer__Inner`); the semantic model resolves them across
all units.
"""
import logging
import re
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from clang.cindex import Cursor, CursorKind, Diagnostic as ClangDiagnostic, SourceRange, Type, TypeKind

from diagnostics import DeclarationError, DiagnosticKind, DiagnosticReporter
from lexer import SourceBuffer, Token
from literals import STDINT_TYPES
from macro_processor import MacroDefinition

logger = logging.getLogger(__name__)

RECORD_KEYWORDS = {"struct", "class", "union", "__interface"}
CALLING_CONVENTIONS = {"__cdecl": "C", "__stdcall": "stdcall", "__fastcall": "fastcall",
                       "__vectorcall": "vectorcall", "__thiscall": "thiscall"}

RECORD_CURSORS = {CursorKind.STRUCT_DECL: "struct", CursorKind.CLASS_DECL: "class",
                  CursorKind.UNION_DECL: "union"}
TYPEDEF_CURSORS = {CursorKind.TYPEDEF_DECL, CursorKind.TYPE_ALIAS_DECL}
TEMPLATE_CURSORS = {
    CursorKind.CLASS_TEMPLATE: "class templates",
    CursorKind.CLASS_TEMPLATE_PARTIAL_SPECIALIZATION: "class template specializations",
    CursorKind.FUNCTION_TEMPLATE: "function templates",
}
# Declarations with nothing to bind.
IGNORED_KINDS = {"USING_DIRECTIVE", "USING_DECLARATION", "NAMESPACE_ALIAS", "STATIC_ASSERT",
                 "FRIEND_DECL", "CXX_ACCESS_SPEC_DECL"}
OUT_OF_LINE_MEMBERS = {CursorKind.CXX_METHOD, CursorKind.CONSTRUCTOR, CursorKind.DESTRUCTOR,
                       CursorKind.CONVERSION_FUNCTION}

BUILTIN_SPELLINGS = {
    TypeKind.VOID: "void",
    TypeKind.BOOL: "bool",
    TypeKind.CHAR_U: "char",
    TypeKind.CHAR_S: "char",
    TypeKind.SCHAR: "signed char",
    TypeKind.UCHAR: "unsigned char",
    TypeKind.WCHAR: "wchar_t",
    TypeKind.CHAR16: "char16_t",
    TypeKind.CHAR32: "char32_t",
    TypeKind.SHORT: "short",
    TypeKind.USHORT: "unsigned short",
    TypeKind.INT: "int",
    TypeKind.UINT: "unsigned int",
    TypeKind.LONG: "long",
    TypeKind.ULONG: "unsigned long",
    TypeKind.LONGLONG: "long long",
    TypeKind.ULONGLONG: "unsigned long long",
    TypeKind.FLOAT: "float",
    TypeKind.DOUBLE: "double",
}
FUNCTION_TYPES = {TypeKind.FUNCTIONPROTO, TypeKind.FUNCTIONNOPROTO}

# libclang errors that still leave a usable declaration behind. An unknown type
# name is replaced by `int` in the AST; the parser puts the spelled name back.
_UNKNOWN_TYPE = re.compile(r"unknown type name '([A-Za-z_]\w*)'")
_RECOVERABLE = ("incomplete type", "file not found")
_OPERATOR = re.compile(r"operator(\W|$)")


# --- Syntax model ---

@dataclass(frozen=True)
class TypeSpec:
    base: str  # `int`, `unsigned long`, `uint32_t`, `::N1::Foo`
    const: bool = False
    elaborated: Optional[str] = None  # struct, class, union, enum when spelled
    # Applied innermost first: ('ptr', const), ('lref',), ('rref',), ('array', length)
    ops: Tuple[tuple, ...] = ()

    def with_ops(self, ops) -> "TypeSpec":
        return TypeSpec(self.base, self.const, self.elaborated, self.ops + tuple(ops))

    def __str__(self) -> str:
        text = ("const " if self.const else "") + self.base
        for op in self.ops:
            if op[0] == 'ptr':
                text += " *" + (" const" if op[1] else "")
            elif op[0] == 'lref':
                text += " &"
            elif op[0] == 'rref':
                text += " &&"
            else:
                text = f"{text}[{op[1] or ''}]"
        return text


@dataclass
class SyntaxDecl:
    name: str
    scope: Tuple[str, ...]
    unit: int
    offset: int
    location: str

@dataclass
class ParamSyntax:
    name: Optional[str]
    type: TypeSpec

@dataclass
class FieldSyntax:
    name: str
    type: TypeSpec

@dataclass
class MethodSyntax:
    name: str
    returns: TypeSpec
    params: List[ParamSyntax]
    virtual: bool = False
    pure: bool = False
    const: bool = False

@dataclass
class BaseSyntax:
    name: str
    access: str = "public"
    virtual: bool = False

@dataclass
class EnumeratorSyntax:
    name: str
    value: int
    radix: Optional[int] = None  # None when the value follows the previous enumerator

@dataclass
class RecordSyntax(SyntaxDecl):
    keyword: str = "struct"
    owners: Tuple[str, ...] = ()  # enclosing record names, for nested-type lookup
    bases: List[BaseSyntax] = field(default_factory=list)
    fields: List[FieldSyntax] = field(default_factory=list)
    methods: List[MethodSyntax] = field(default_factory=list)
    is_definition: bool = True
    has_other_members: bool = False

@dataclass
class EnumSyntax(SyntaxDecl):
    scoped: bool = False
    owners: Tuple[str, ...] = ()
    underlying: Optional[TypeSpec] = None
    enumerators: List[EnumeratorSyntax] = field(default_factory=list)
    is_definition: bool = True
    anonymous: bool = False

@dataclass
class TypedefSyntax(SyntaxDecl):
    target: TypeSpec = None
    owners: Tuple[str, ...] = ()

@dataclass
class FunctionSyntax(SyntaxDecl):
    returns: TypeSpec = None
    params: List[ParamSyntax] = field(default_factory=list)
    variadic: bool = False
    c_linkage: bool = False
    calling_convention: str = "C"

@dataclass
class VariableSyntax(SyntaxDecl):
    type: TypeSpec = None
    init: Optional[Tuple[Token, ...]] = None
    constexpr: bool = False
    extern: bool = False
    c_linkage: bool = False

@dataclass
class NamespaceSyntax(SyntaxDecl):
    pass

@dataclass
class UnsupportedSyntax(SyntaxDecl):
    reason: str = ""

@dataclass
class SyntaxUnit:
    name: str
    index: int
    declarations: List[SyntaxDecl] = field(default_factory=list)
    macros: List[MacroDefinition] = field(default_factory=list)


# --- Parser ---

class DeclarationParser:
    def __init__(self, buffer: SourceBuffer, unit_index: int, reporter: DiagnosticReporter):
        self.buffer = buffer
        self.unit_name = buffer.name
        self.unit_index = unit_index
        self.reporter = reporter
        self.result = SyntaxUnit(buffer.name, unit_index)
        self.tokens = buffer.tokens
        self._starts = [t.offset for t in buffer.tokens]
        self._leaves: Dict[Tuple[str, int], str] = {}
        self._unknown_types: Dict[int, str] = {}
        self._errors: List[Tuple[int, str, str]] = []  # (offset, location, message)
        self._collect_errors()

    # --- Source helpers ---

    def _where(self, location) -> str:
        return f"{self.unit_name}:{location.line}:{location.column}"

    def _own(self, cursor: Cursor) -> bool:
        f = cursor.location.file
        return f is not None and f.name == self.buffer.path

    def _is_input(self, cursor: Cursor) -> bool:
        f = cursor.location.file
        return f is not None and f.name in self.buffer.paths

    def _tokens_of(self, extent: SourceRange) -> List[Token]:
        lo = bisect_left(self._starts, extent.start.offset)
        hi = bisect_left(self._starts, extent.end.offset)
        return self.tokens[lo:hi]

    def _token_after(self, extent: SourceRange) -> Optional[Token]:
        hi = bisect_left(self._starts, extent.end.offset)
        return self.tokens[hi] if hi < len(self.tokens) else None

    def _collect_errors(self):
        for diag in self.buffer.tu.diagnostics:
            if diag.severity < ClangDiagnostic.Error:
                continue
            loc = diag.location
            if loc.file is None or loc.file.name != self.buffer.path:
                logger.debug("libclang, outside %s: %s", self.unit_name, diag.spelling)
                continue
            unknown = _UNKNOWN_TYPE.match(diag.spelling)
            if unknown:
                self._unknown_types[loc.offset] = unknown.group(1)
            elif any(text in diag.spelling for text in _RECOVERABLE):
                logger.debug("%s: %s", self._where(loc), diag.spelling)
            else:
                self._errors.append((loc.offset, self._where(loc), diag.spelling))

    def _raise_errors(self, cursor: Cursor, subject: Optional[str]):
        """A libclang error inside a declaration rejects the whole declaration."""
        start, end = cursor.extent.start.offset, cursor.extent.end.offset
        inside = [e for e in self._errors if start <= e[0] <= end]
        if not inside:
            return
        for e in inside:
            self._errors.remove(e)
        _, location, message = inside[0]
        raise DeclarationError(message, location, subject)

    def _unknown_in(self, start: int, end: int) -> Optional[str]:
        for offset in sorted(self._unknown_types):
            if start <= offset < end:
                return self._unknown_types.pop(offset)
        return None

    # --- Names ---

    def _is_unnamed(self, decl: Cursor) -> bool:
        spelling = decl.spelling
        if not spelling or "(" in spelling or " " in spelling:
            return True
        # newer libclang spells a typedef-named record with its typedef name
        for token in decl.get_tokens():
            if token.spelling == spelling:
                return False
            if token.spelling in ("{", ";"):
                break
        return True

    def _leaf(self, decl: Cursor) -> str:
        loc = decl.location
        key = (loc.file.name if loc.file else "", loc.offset)
        if key not in self._leaves:
            self._leaves[key] = self._find_leaf(decl)
        return self._leaves[key]

    def _find_leaf(self, decl: Cursor) -> str:
        """An unnamed record or enum takes the name of the typedef or member that declares it."""
        if not self._is_unnamed(decl):
            return decl.spelling
        parent = decl.lexical_parent or decl.semantic_parent
        if parent is not None:
            for sibling in parent.get_children():
                if sibling.kind in TYPEDEF_CURSORS:
                    found = _declared(sibling.underlying_typedef_type)
                elif sibling.kind == CursorKind.FIELD_DECL and sibling.spelling:
                    found = _declared(sibling.type, through_pointers=True)
                else:
                    continue
                if found is not None and found == decl:
                    return sibling.spelling
        return f"$anon{decl.location.offset}"

    def _context(self, parent: Optional[Cursor]) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        """Namespace path and enclosing record names of a semantic parent."""
        scope: List[str] = []
        owners: List[str] = []
        while parent is not None and parent.kind != CursorKind.TRANSLATION_UNIT:
            if parent.kind == CursorKind.NAMESPACE:
                if parent.spelling:
                    scope.append(parent.spelling)
            elif parent.kind in RECORD_CURSORS or parent.kind == CursorKind.CLASS_TEMPLATE:
                owners.append(self._leaf(parent))
            elif parent.kind.is_invalid():
                break
            parent = parent.semantic_parent
        return tuple(reversed(scope)), tuple(reversed(owners))

    def _type_name(self, decl: Cursor) -> str:
        scope, owners = self._context(decl.semantic_parent)
        return "::" + "::".join(scope + (_hoisted(owners, self._leaf(decl)),))

    def _subject(self, cursor: Cursor) -> Optional[str]:
        kind = cursor.kind
        if kind in RECORD_CURSORS or kind in TYPEDEF_CURSORS \
                or kind in (CursorKind.ENUM_DECL, CursorKind.CLASS_TEMPLATE):
            leaf = self._leaf(cursor)
            if leaf.startswith("$anon"):
                return None
            _, owners = self._context(cursor.semantic_parent)
            return _hoisted(owners, leaf)
        return cursor.spelling or None

    # --- Types ---

    def _type_spec(self, t: Type, unknown: Optional[str] = None) -> TypeSpec:
        outer: List[tuple] = []
        while True:
            kind = t.kind
            if kind == TypeKind.POINTER:
                if t.get_pointee().kind in FUNCTION_TYPES:
                    raise DeclarationError("function pointers are not supported")
                outer.append(('ptr', t.is_const_qualified()))
                t = t.get_pointee()
            elif kind == TypeKind.LVALUEREFERENCE:
                outer.append(('lref',))
                t = t.get_pointee()
            elif kind == TypeKind.RVALUEREFERENCE:
                outer.append(('rref',))
                t = t.get_pointee()
            elif kind == TypeKind.CONSTANTARRAY:
                outer.append(('array', t.get_array_size()))
                t = t.get_array_element_type()
            elif kind == TypeKind.INCOMPLETEARRAY:
                outer.append(('array', 0))
                t = t.get_array_element_type()
            else:
                break
        return self._leaf_spec(t, unknown).with_ops(reversed(outer))

    def _leaf_spec(self, t: Type, unknown: Optional[str]) -> TypeSpec:
        const = t.is_const_qualified()
        elaborated = None
        if t.kind == TypeKind.ELABORATED:
            words = [w for w in t.spelling.split() if w not in ("const", "volatile")]
            if words and (words[0] in RECORD_KEYWORDS or words[0] == "enum"):
                elaborated = words[0]
            t = t.get_named_type()
        kind = t.kind

        if unknown is not None and kind == TypeKind.INT:
            return TypeSpec(unknown, const)
        if kind in BUILTIN_SPELLINGS:
            return TypeSpec(BUILTIN_SPELLINGS[kind], const)
        if kind in (TypeKind.RECORD, TypeKind.ENUM):
            if t.get_num_template_arguments() > 0:
                raise DeclarationError(f"template type '{t.spelling}' is not supported")
            decl = t.get_declaration()
            if self._leaf(decl).startswith("$anon"):
                raise DeclarationError(f"unnamed type '{t.spelling}' is not supported")
            return TypeSpec(self._type_name(decl), const, elaborated)
        if kind == TypeKind.TYPEDEF:
            decl = t.get_declaration()
            if self._is_input(decl):
                return TypeSpec(self._type_name(decl), const, elaborated)
            if decl.spelling in STDINT_TYPES:
                return TypeSpec(decl.spelling, const)
            # other system typedefs are seen through
            return self._type_spec(t.get_canonical())
        if kind in FUNCTION_TYPES:
            raise DeclarationError("function types are not supported")
        canonical = t.get_canonical()
        if canonical.kind != kind and kind != TypeKind.INVALID:
            return self._type_spec(canonical, unknown)
        raise DeclarationError(f"type '{t.spelling}' is not supported")

    def _params(self, cursor: Cursor) -> List[ParamSyntax]:
        params: List[ParamSyntax] = []
        for arg in cursor.get_arguments():
            spec = self._type_spec(arg.type, self._unknown_in(arg.extent.start.offset, arg.extent.end.offset))
            if spec.ops and spec.ops[-1][0] == 'array':
                # array parameters decay to pointers
                spec = TypeSpec(spec.base, spec.const, spec.elaborated, spec.ops[:-1] + (('ptr', False),))
            params.append(ParamSyntax(arg.spelling or None, spec))
        return params

    # --- Macros ---

    def _collect_macros(self):
        events = []
        for cursor in self.buffer.tu.cursor.get_children():
            if cursor.kind == CursorKind.MACRO_DEFINITION and self._own(cursor):
                events.append((cursor.location.offset, 'define', cursor.spelling))
        toks = self.tokens
        for i, t in enumerate(toks):
            if t.is_('op', '#') and (i == 0 or toks[i - 1].line != t.line) and i + 2 < len(toks) \
                    and toks[i + 1].is_('ident', 'undef') and toks[i + 2].line == t.line:
                events.append((toks[i + 2].offset, 'undef', toks[i + 2].text))

        for offset, what, name in sorted(events):
            if what == 'define':
                self._define(bisect_left(self._starts, offset))
                continue
            for k in range(len(self.result.macros) - 1, -1, -1):
                if self.result.macros[k].name == name:
                    logger.debug("#undef %s removes its earlier definition", name)
                    del self.result.macros[k]
                    break

    def _define(self, at: int):
        name_tok = self.tokens[at]
        end = at + 1
        while end < len(self.tokens) and self.tokens[end].line == name_tok.line:
            end += 1
        rest = self.tokens[at + 1:end]
        location = f"{self.unit_name}:{name_tok.line}:{name_tok.column}"
        params = None
        variadic = False
        if rest and rest[0].is_('paren', '(') and rest[0].offset == name_tok.end:
            params = []
            k = 1
            while k < len(rest) and not rest[k].is_('paren', ')'):
                t = rest[k]
                if t.kind == 'ident':
                    params.append(t.text)
                elif t.is_('op', '...'):
                    variadic = True
                elif t.kind != 'comma':
                    self.reporter.report(
                        DiagnosticKind.UNSUPPORTED_MACRO_BODY,
                        f"malformed parameter list for macro '{name_tok.text}'",
                        subject=name_tok.text, location=location,
                    )
                    return
                k += 1
            rest = rest[k + 1:]
            params = tuple(params)
        self.result.macros.append(MacroDefinition(
            name=name_tok.text,
            params=params,
            body=tuple(rest),
            unit=self.unit_index,
            offset=name_tok.offset,
            location=location,
            variadic=variadic,
        ))

    # --- Declarations ---

    def parse(self) -> SyntaxUnit:
        logger.debug("Parsing declarations of %s", self.unit_name)
        self._collect_macros()
        self._visit_scope(self.buffer.tu.cursor, c_linkage=False)
        for _, location, message in self._errors:
            self.reporter.report(DiagnosticKind.UNSUPPORTED_DECLARATION, message, location=location)
        logger.debug("Parsed %s: %d declarations, %d macros", self.unit_name,
                     len(self.result.declarations), len(self.result.macros))
        return self.result

    def _add(self, decl: SyntaxDecl):
        self.result.declarations.append(decl)

    def _new(self, cls, name: str, scope: Tuple[str, ...], cursor: Cursor, **kwargs):
        return cls(name=name, scope=scope, unit=self.unit_index, offset=cursor.location.offset,
                   location=self._where(cursor.location), **kwargs)

    def _visit_scope(self, parent: Cursor, c_linkage: bool):
        for cursor in parent.get_children():
            if not self._own(cursor):
                continue
            kind = cursor.kind
            if kind == CursorKind.NAMESPACE:
                if cursor.spelling:
                    scope, _ = self._context(cursor.semantic_parent)
                    self._add(self._new(NamespaceSyntax, cursor.spelling, scope, cursor))
                self._visit_scope(cursor, c_linkage)
            elif kind == CursorKind.LINKAGE_SPEC:
                self._visit_scope(cursor, self._linkage(cursor) == "C")
            elif kind == CursorKind.UNEXPOSED_DECL:
                self._visit_scope(cursor, c_linkage)
            elif kind.is_preprocessing():
                continue
            else:
                self._declaration(cursor, c_linkage)

    def _linkage(self, cursor: Cursor) -> Optional[str]:
        for t in self._tokens_of(cursor.extent):
            if t.kind == 'string':
                return t.text.strip('"')
        return None

    def _declaration(self, cursor: Cursor, c_linkage: bool):
        kind = cursor.kind
        subject = self._subject(cursor)
        try:
            self._raise_errors(cursor, subject)
            if kind in RECORD_CURSORS:
                self._record(cursor)
            elif kind == CursorKind.ENUM_DECL:
                self._enum(cursor)
            elif kind in TYPEDEF_CURSORS:
                self._typedef(cursor)
            elif kind == CursorKind.FUNCTION_DECL:
                self._function(cursor, c_linkage)
            elif kind == CursorKind.VAR_DECL:
                self._variable(cursor, c_linkage)
            elif kind in TEMPLATE_CURSORS:
                raise DeclarationError(f"{TEMPLATE_CURSORS[kind]} are not supported")
            elif kind in OUT_OF_LINE_MEMBERS:
                logger.debug("Skipping out-of-line member %s at %s", cursor.spelling, self._where(cursor.location))
            elif kind.name in IGNORED_KINDS:
                logger.debug("Ignoring %s at %s", kind.name, self._where(cursor.location))
            else:
                raise DeclarationError(f"unsupported declaration kind {kind.name}")
        except DeclarationError as e:
            if e.name is None:
                e.name = subject
            if e.location is None:
                e.location = self._where(cursor.location)
            self.reporter.report_error(DiagnosticKind.UNSUPPORTED_DECLARATION, e, subject=e.name)
            names_type = kind in RECORD_CURSORS or kind in TYPEDEF_CURSORS or kind in (
                CursorKind.ENUM_DECL, CursorKind.CLASS_TEMPLATE, CursorKind.CLASS_TEMPLATE_PARTIAL_SPECIALIZATION)
            if e.name and names_type:
                scope, _ = self._context(cursor.semantic_parent)
                self._add(self._new(UnsupportedSyntax, e.name, scope, cursor, reason=str(e)))

    # --- Records ---

    def _record(self, cursor: Cursor):
        scope, owners = self._context(cursor.semantic_parent)
        if not cursor.is_definition():
            follows = self._token_after(cursor.extent)
            if follows is None or not follows.is_('op', ';'):
                # `struct X *p;` names X without declaring it on its own
                return
        leaf = self._leaf(cursor)
        if leaf.startswith("$anon"):
            raise DeclarationError("anonymous struct or union members are not supported" if owners
                                   else "anonymous record at namespace scope")
        if cursor.type.get_num_template_arguments() > 0:
            raise DeclarationError("template specializations are not supported")
        name = _hoisted(owners, leaf)
        keyword = next((t.text for t in self._tokens_of(cursor.extent) if t.text in RECORD_KEYWORDS),
                       RECORD_CURSORS[cursor.kind])
        record = self._new(RecordSyntax, name, scope, cursor, keyword=keyword, owners=owners,
                           is_definition=cursor.is_definition())
        if not record.is_definition:
            self._add(record)
            return

        for child in cursor.get_children():
            kind = child.kind
            if kind == CursorKind.CXX_BASE_SPECIFIER:
                record.bases.append(self._base(child, keyword))
            elif kind == CursorKind.FIELD_DECL:
                if child.is_bitfield():
                    raise DeclarationError(f"bit-field '{child.spelling}' is not supported",
                                           self._where(child.location))
                unknown = self._unknown_in(child.extent.start.offset, child.extent.end.offset)
                record.fields.append(FieldSyntax(child.spelling, self._type_spec(child.type, unknown)))
            elif kind == CursorKind.CXX_METHOD:
                if child.is_static_method():
                    continue
                if _OPERATOR.match(child.spelling):
                    record.has_other_members = True
                    continue
                method = self._method(child)
                if keyword == "__interface":
                    method.virtual = method.pure = True
                record.methods.append(method)
            elif kind in (CursorKind.CONSTRUCTOR, CursorKind.CONVERSION_FUNCTION):
                record.has_other_members = True
            elif kind == CursorKind.DESTRUCTOR:
                # a destructor alone does not stop a class from being an interface
                continue
            elif kind in TEMPLATE_CURSORS:
                raise DeclarationError("member templates are not supported", self._where(child.location))
            elif kind in RECORD_CURSORS or kind in TYPEDEF_CURSORS or kind == CursorKind.ENUM_DECL:
                if kind in RECORD_CURSORS and child.is_definition() and self._leaf(child).startswith("$anon"):
                    raise DeclarationError("anonymous struct or union members are not supported",
                                           self._where(child.location))
                self._declaration(child, c_linkage=False)
        self._add(record)

    def _base(self, cursor: Cursor, keyword: str) -> BaseSyntax:
        t = cursor.type
        if t.kind == TypeKind.ELABORATED:
            t = t.get_named_type()
        if t.get_num_template_arguments() > 0:
            raise DeclarationError(f"template base '{t.spelling}' is not supported", self._where(cursor.location))
        access = cursor.access_specifier.name.lower()
        if access not in ("public", "protected", "private"):
            access = "private" if keyword == "class" else "public"
        virtual = any(tok.is_('ident', 'virtual') for tok in self._tokens_of(cursor.extent))
        return BaseSyntax(self._type_name(t.get_declaration()), access, virtual)

    def _method(self, cursor: Cursor) -> MethodSyntax:
        returns = self._type_spec(cursor.result_type,
                                  self._unknown_in(cursor.extent.start.offset, cursor.location.offset))
        return MethodSyntax(cursor.spelling, returns, self._params(cursor),
                            virtual=cursor.is_virtual_method(), pure=cursor.is_pure_virtual_method(),
                            const=cursor.is_const_method())

    # --- Enums ---

    def _enum(self, cursor: Cursor):
        scope, owners = self._context(cursor.semantic_parent)
        if not cursor.is_definition():
            follows = self._token_after(cursor.extent)
            if follows is None or not follows.is_('op', ';'):
                return
        leaf = self._leaf(cursor)
        anonymous = leaf.startswith("$anon")
        name = leaf if anonymous else _hoisted(owners, leaf)

        head: List[Token] = []
        for t in self._tokens_of(cursor.extent):
            if t.is_('brace', '{'):
                break
            head.append(t)
        underlying = None
        colon = next((t for t in head if t.is_('op', ':')), None)
        if colon is not None:
            unknown = self._unknown_in(colon.offset, head[-1].end)
            underlying = self._type_spec(cursor.enum_type, unknown)

        enum = self._new(EnumSyntax, name, scope, cursor, scoped=cursor.is_scoped_enum(), owners=owners,
                         underlying=underlying, anonymous=anonymous)
        if not cursor.is_definition():
            if not enum.scoped and underlying is None:
                raise DeclarationError("opaque enum declaration without an underlying type",
                                       name=None if anonymous else name)
            enum.is_definition = False
            self._add(enum)
            return
        for child in cursor.get_children():
            if child.kind == CursorKind.ENUM_CONSTANT_DECL:
                enum.enumerators.append(EnumeratorSyntax(
                    child.spelling, child.enum_value, _radix(self._tokens_of(child.extent))))
        self._add(enum)

    # --- Typedefs, functions, variables ---

    def _typedef(self, cursor: Cursor):
        scope, owners = self._context(cursor.semantic_parent)
        target = cursor.underlying_typedef_type
        declared = _declared(target)
        if declared is not None and self._is_unnamed(declared) and self._leaf(declared) == cursor.spelling:
            logger.debug("typedef %s names its own %s", cursor.spelling, declared.kind.name.lower())
            return
        unknown = self._unknown_in(cursor.extent.start.offset, cursor.extent.end.offset)
        self._add(self._new(TypedefSyntax, _hoisted(owners, cursor.spelling), scope, cursor,
                            target=self._type_spec(target, unknown), owners=owners))

    def _function(self, cursor: Cursor, c_linkage: bool):
        scope, _ = self._context(cursor.semantic_parent)
        if _OPERATOR.match(cursor.spelling):
            raise DeclarationError("operator functions are not supported")
        head = [t for t in self._tokens_of(cursor.extent) if t.offset < cursor.location.offset]
        convention = next((CALLING_CONVENTIONS[t.text] for t in head if t.text in CALLING_CONVENTIONS), "C")
        returns = self._type_spec(cursor.result_type,
                                  self._unknown_in(cursor.extent.start.offset, cursor.location.offset))
        params = self._params(cursor)
        variadic = cursor.type.kind == TypeKind.FUNCTIONPROTO and cursor.type.is_function_variadic()
        self._add(self._new(FunctionSyntax, cursor.spelling, scope, cursor, returns=returns, params=params,
                            variadic=variadic, c_linkage=c_linkage, calling_convention=convention))

    def _variable(self, cursor: Cursor, c_linkage: bool):
        scope, _ = self._context(cursor.semantic_parent)
        tokens = self._tokens_of(cursor.extent)
        head = [t for t in tokens if t.offset < cursor.location.offset]
        spec = self._type_spec(cursor.type, self._unknown_in(cursor.extent.start.offset, cursor.location.offset))
        self._add(self._new(
            VariableSyntax, cursor.spelling, scope, cursor, type=spec,
            init=_initializer(tokens, cursor.location.offset),
            constexpr=any(t.is_('ident', 'constexpr') for t in head),
            extern=not cursor.is_definition(), c_linkage=c_linkage,
        ))


def _hoisted(owners: Tuple[str, ...], name: str) -> str:
    """Nested types are lifted to namespace scope as `Outer__Inner`."""
    return '__'.join(owners + (name,)) if owners else name


def _declared(t: Type, through_pointers: bool = False) -> Optional[Cursor]:
    """The record or enum a type names directly."""
    while through_pointers and t.kind in (TypeKind.POINTER, TypeKind.CONSTANTARRAY, TypeKind.INCOMPLETEARRAY):
        t = t.get_pointee() if t.kind == TypeKind.POINTER else t.get_array_element_type()
    if t.kind == TypeKind.ELABORATED:
        t = t.get_named_type()
    if t.kind in (TypeKind.RECORD, TypeKind.ENUM):
        return t.get_declaration()
    return None


def _radix(tokens: List[Token]) -> Optional[int]:
    """Radix of an enumerator's initializer, for spelling its value back."""
    assigned = False
    for t in tokens:
        if t.kind == 'assign':
            assigned = True
        elif assigned and t.kind == 'number':
            return 16 if t.text.lower().startswith("0x") else 10
    return 10 if assigned else None


def _initializer(tokens: List[Token], name_offset: int) -> Optional[Tuple[Token, ...]]:
    after = [t for t in tokens if t.offset > name_offset]
    for i, t in enumerate(after):
        if t.kind == 'assign':
            return tuple(after[i + 1:]) or None
        if t.is_('brace', '{'):
            inner = after[i + 1:-1] if after[-1].is_('brace', '}') else after[i + 1:]
            return tuple(inner) or None
    return None


def parse_unit(buffer: SourceBuffer, unit_index: int, reporter: DiagnosticReporter) -> SyntaxUnit:
    return DeclarationParser(buffer, unit_index, reporter).parse()
