"""
Blocklist / opacity engine.

A single rewrite pass over a frozen model: every blocklisted type loses its body
and becomes a placeholder, and every field, parameter, base or alias that names
it is rewritten to reference `Opaque(name)`. Produces a new model.
"""
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from diagnostics import DiagnosticKind, DiagnosticReporter, OptionsError
from literals import from_value
from out_types import (Constant, Declaration, DeclKind, Enum, Named, Namespace, Opaque, OpaqueType,
                       QualifiedName, Record, SemanticModel, TypeRef)
from semantic_model import LayoutCalculator, flatten_fields, map_decl_types, rewrite_type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Blocklist:
    names: Tuple[QualifiedName, ...] = ()
    patterns: Tuple[Pattern, ...] = field(default_factory=tuple)

    @classmethod
    def create(cls, names: Sequence[str] = (), patterns: Sequence[str] = ()) -> "Blocklist":
        compiled = []
        for p in patterns:
            try:
                compiled.append(re.compile(p))
            except re.error as e:
                raise OptionsError(f"invalid blocklist pattern '{p}': {e}") from e
        return cls(tuple(QualifiedName.parse(n) for n in names), tuple(compiled))

    def __bool__(self) -> bool:
        return bool(self.names or self.patterns)

    def matches(self, name: QualifiedName) -> bool:
        if name in self.names:
            return True
        text = f"::{name}"
        return any(p.fullmatch(text) or p.fullmatch(str(name)) for p in self.patterns)


def apply_blocklist(model: SemanticModel, blocklist: Blocklist,
                    reporter: DiagnosticReporter) -> SemanticModel:
    if not blocklist:
        return model

    blocked: Dict[QualifiedName, Declaration] = {
        d.name: d for d in model.declarations
        if d.kind in (DeclKind.STRUCT, DeclKind.CLASS, DeclKind.UNION, DeclKind.INTERFACE,
                      DeclKind.ENUM, DeclKind.ENUM_CLASS, DeclKind.TYPEDEF, DeclKind.OPAQUE)
        and blocklist.matches(d.name)
    }
    for name in blocklist.names:
        if name not in blocked:
            logger.debug("Blocklisted name %s does not name a type in the input", name)
    if not blocked:
        return model
    logger.debug("Blocklisting %s", ", ".join(str(n) for n in blocked))

    def opaque(t: TypeRef) -> Optional[TypeRef]:
        if isinstance(t, Named) and t.name in blocked:
            return Opaque(t.name)
        return None

    declarations: List[Declaration] = []
    for decl in model.declarations:
        if decl.name in blocked:
            declarations.append(_placeholder(decl, model))
            continue

        reported = set()

        def rewrite(t: TypeRef, site: str, decl=decl, reported=reported) -> TypeRef:
            rewritten = rewrite_type(t, opaque)
            # own and flattened fields name the same site once
            if rewritten != t and site not in reported:
                reported.add(site)
                reporter.report(
                    DiagnosticKind.BLOCKLIST_REWRITE,
                    f"{site} of '{decl.name}' now references an opaque placeholder",
                    subject=str(decl.name), location=decl.location,
                )
            return rewritten

        if isinstance(decl, Constant) and isinstance(decl.type, Named) and decl.type.name in blocked \
                and isinstance(model.get(decl.type.name), Enum):
            # enum-typed constants keep their value as the enum's storage type
            storage = model.get(decl.type.name).storage
            value = from_value(storage.int_type.wrap(decl.value.value), storage.int_type, decl.value.radix)
            declarations.append(replace(decl, type=storage, value=value, enumerator=None))
            continue
        declarations.append(map_decl_types(decl, rewrite))

    declarations = _reflatten(declarations, blocked)
    return SemanticModel.build(model.units, declarations)


def _placeholder(decl: Declaration, model: SemanticModel) -> OpaqueType:
    if isinstance(decl, OpaqueType):
        return replace(decl, reason="blocklisted")
    layout = None
    if isinstance(decl, Record) and decl.size is not None:
        layout = (decl.size, decl.align)
    elif decl.kind != DeclKind.INTERFACE:
        layout = LayoutCalculator(dict(model.by_name)).of_name(decl.name)
    size, align = layout if layout else (None, None)
    logger.debug("Blocklisted %s becomes an opaque placeholder (size %s)", decl.name, size)
    return OpaqueType(decl.name, decl.index, decl.location, reason="blocklisted", size=size, align=align)


def _reflatten(declarations: List[Declaration], blocked: Dict[QualifiedName, Declaration]) -> List[Declaration]:
    """Classes with a blocklisted data base keep it whole as an opaque field."""
    records = {d.name: d for d in declarations if isinstance(d, Record)}
    affected = [r for r in records.values()
                if any(isinstance(b, Opaque) and b.name in blocked for b in _all_bases(r, records))]
    for record in affected:
        records[record.name] = replace(record, fields=flatten_fields(record.name, records))
    declarations = [records.get(d.name, d) if isinstance(d, Record) else d for d in declarations]
    if not affected:
        return declarations

    # the opaque base field may pad differently from the fields it replaces
    calculator = LayoutCalculator({d.name: d for d in declarations if not isinstance(d, Namespace)})
    out: List[Declaration] = []
    for d in declarations:
        if isinstance(d, Record) and d.kind != DeclKind.INTERFACE:
            layout = calculator.of_name(d.name)
            size, align = layout if layout else (None, None)
            d = replace(d, size=size, align=align)
        out.append(d)
    return out


def _all_bases(record: Record, records: Dict[QualifiedName, Record], seen=()) -> List[TypeRef]:
    out: List[TypeRef] = []
    for base in record.model.data_bases:
        out.append(base)
        if isinstance(base, Named) and base.name in records and base.name not in seen:
            out.extend(_all_bases(records[base.name], records, seen + (record.name,)))
    return out
