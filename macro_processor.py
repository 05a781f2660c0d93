import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from diagnostics import (DiagnosticKind, DiagnosticReporter, MacroError,
                         MalformedLiteral)
from expr_ast import (Assign, Binary, Call, Cast, Conditional, Expr, Identifier,
                      Member, Number, Postfix, String, Unary, render_expr,
                      parse_macro_replacement)
from lexer import Token
from literals import (I32, IntType, NumericLiteral, STDINT_TYPES, builtin_int_type,
                      from_value, parse_literal, rust_literal)
from out_types import MacroParam, rust_ident

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MacroDefinition:
    name: str
    params: Optional[Tuple[str, ...]]  # None for object-like macros
    body: Tuple[Token, ...]
    unit: int = 0
    offset: int = 0
    location: str = ""
    variadic: bool = False

    @property
    def is_function_like(self) -> bool:
        return self.params is not None

    def same_shape(self, other: "MacroDefinition") -> bool:
        return (self.params == other.params and self.variadic == other.variadic
                and [t.text for t in self.body] == [t.text for t in other.body])


class MacroKind(Enum):
    CONSTANT = "ConstantValue"
    EXPRESSION = "Expression"
    UNSUPPORTED = "Unsupported"


@dataclass(frozen=True)
class MacroFunctionBody:
    params: Tuple[MacroParam, ...]
    returns: IntType
    body: Tuple[str, ...]  # Rust statements, last one is the value
    owner: Any = None  # QualifiedName of the struct a mutator writes through
    mutating: bool = False


@dataclass(frozen=True)
class ResolvedMacro:
    definition: MacroDefinition
    kind: MacroKind
    value: Optional[NumericLiteral] = None
    function: Optional[MacroFunctionBody] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class EvalContext:
    """Hooks into the symbol table for names a macro body can mention."""
    lookup_value: Callable[[str], Optional[NumericLiteral]] = lambda name: None
    lookup_type: Callable[[str], Optional[IntType]] = lambda name: None
    is_value: Callable[[str], bool] = lambda name: False
    find_field_owner: Optional[Callable[[str], Tuple[Any, IntType]]] = None


@dataclass(frozen=True)
class Lowered:
    """A typed expression: its C type, its value when constant, and its Rust spelling."""
    type: IntType
    value: Optional[int]
    rust: str
    radix: int = 10


def promote(t: IntType) -> IntType:
    return I32 if t.width < 32 else t


def common_type(a: IntType, b: IntType) -> IntType:
    """C usual arithmetic conversions over the fixed data model."""
    a, b = promote(a), promote(b)
    if a == b:
        return a
    if a.signed == b.signed:
        return a if a.width >= b.width else b
    unsigned, signed = (a, b) if not a.signed else (b, a)
    if unsigned.width >= signed.width:
        return unsigned
    return signed


def cast_type(type_name: str, ctx: EvalContext) -> Optional[IntType]:
    words = type_name.split()
    found = builtin_int_type(words)
    if found is not None:
        return found
    name = type_name.strip()
    if name in STDINT_TYPES:
        return STDINT_TYPES[name]
    return ctx.lookup_type(name)


class _ValueNames:
    def __init__(self, processor: "MacroProcessor", ctx: EvalContext, params: Sequence[str] = ()):
        self.processor = processor
        self.ctx = ctx
        self.params = set(params)

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        return name in self.params or name in self.processor.macros or self.ctx.is_value(name)


class MacroProcessor:
    """
    Expands and evaluates preprocessor macros.

    Object-like macros evaluate to typed constants; function-like macros become
    Rust functions, either pure `const fn`s or mutators that write through a
    `&mut` reference. Results are memoized per macro name.
    """

    def __init__(self, macros: Sequence[MacroDefinition], reporter: DiagnosticReporter,
                 context: Optional[EvalContext] = None):
        self.reporter = reporter
        self.context = context or EvalContext()
        self.macros: Dict[str, MacroDefinition] = {}
        self.conflicts: Dict[str, List[MacroDefinition]] = {}
        self._resolved: Dict[str, ResolvedMacro] = {}
        self._in_progress: set = set()

        for mac in macros:
            existing = self.macros.get(mac.name)
            if existing is None:
                self.macros[mac.name] = mac
            elif not existing.same_shape(mac):
                self.conflicts.setdefault(mac.name, [existing]).append(mac)
                self.reporter.report(
                    DiagnosticKind.DUPLICATE_DEFINITION_CONFLICT,
                    f"macro '{mac.name}' is redefined differently (first at {existing.location})",
                    subject=mac.name, location=mac.location,
                )
            else:
                logger.debug("Identical redefinition of macro %s merged", mac.name)

    # --- Expansion ---

    def expand(self, tokens: Sequence[Token], active: FrozenSet[str] = frozenset(),
               protected: FrozenSet[str] = frozenset()) -> List[Token]:
        """Fully macro-expands `tokens`; `protected` names are never expanded."""
        out: List[Token] = []
        i = 0
        while i < len(tokens):
            t = tokens[i]
            if t.kind == 'ident' and t.text in self.conflicts and t.text not in protected:
                raise MacroError(f"'{t.text}' has conflicting definitions")
            if t.kind != 'ident' or t.text in protected or t.text not in self.macros:
                out.append(t)
                i += 1
                continue
            if t.text in active:
                raise MacroError(f"recursive self-reference to '{t.text}'")

            mac = self.macros[t.text]
            if not mac.is_function_like:
                out.extend(self.expand(mac.body, active | {mac.name}, protected))
                i += 1
                continue
            if i + 1 >= len(tokens) or not tokens[i + 1].is_('paren', '('):
                # A function-like macro name without arguments is not an invocation.
                out.append(t)
                i += 1
                continue

            args, i = self._collect_args(tokens, i + 1, mac)
            expanded_args = [self.expand(a, active, protected) for a in args]
            body = self._substitute(mac, expanded_args)
            out.extend(self.expand(body, active | {mac.name}, protected))
        return out

    def _collect_args(self, tokens: Sequence[Token], start: int,
                      mac: MacroDefinition) -> Tuple[List[List[Token]], int]:
        depth = 0
        args: List[List[Token]] = [[]]
        i = start
        while i < len(tokens):
            t = tokens[i]
            if t.is_('paren', '('):
                depth += 1
                if depth > 1:
                    args[-1].append(t)
            elif t.is_('paren', ')'):
                depth -= 1
                if depth == 0:
                    break
                args[-1].append(t)
            elif t.kind == 'comma' and depth == 1:
                args.append([])
            else:
                args[-1].append(t)
            i += 1
        else:
            raise MacroError(f"unterminated invocation of '{mac.name}'")

        if len(mac.params) == 0 and args == [[]]:
            args = []
        if len(args) != len(mac.params):
            raise MacroError(f"'{mac.name}' expects {len(mac.params)} arguments, got {len(args)}")
        return args, i + 1

    def _substitute(self, mac: MacroDefinition, args: List[List[Token]]) -> List[Token]:
        bindings = dict(zip(mac.params, args))
        body: List[Token] = []
        for t in mac.body:
            if t.kind == 'op' and t.text in ('#', '##'):
                raise MacroError(f"'{t.text}' operator in '{mac.name}' is not supported")
            if t.kind == 'ident' and t.text in bindings:
                body.extend(bindings[t.text])
            else:
                body.append(t)
        return body

    # --- Typed evaluation ---

    def evaluate(self, tokens: Sequence[Token], context: Optional[EvalContext] = None,
                 location: Optional[str] = None, active: FrozenSet[str] = frozenset()) -> NumericLiteral:
        """Expands and evaluates a constant expression (enumerator, initializer, macro body)."""
        ctx = context or self.context
        expanded = self.expand(tokens, active)
        if not expanded:
            raise MacroError("empty expression", location)
        expr = parse_macro_replacement(expanded, _ValueNames(self, ctx))
        if expr is None:
            text = ' '.join(t.text for t in expanded)
            raise MacroError(f"unrecognized expression '{text}'", location)
        lowered = self.lower(expr, ctx, {}, location)
        return from_value(lowered.value, lowered.type, lowered.radix)

    def lower(self, expr: Expr, ctx: EvalContext, params: Dict[str, IntType],
              location: Optional[str] = None) -> Lowered:
        if isinstance(expr, Number):
            lit = parse_literal(expr.text, location)
            return Lowered(lit.int_type, lit.value, rust_literal(lit), lit.radix)

        if isinstance(expr, Identifier):
            if expr.name in params:
                return Lowered(params[expr.name], None, rust_ident(expr.name))
            if expr.name in self.macros:
                raise MacroError(f"function-like macro '{expr.name}' used without arguments", location)
            lit = ctx.lookup_value(expr.name)
            if lit is None:
                raise MacroError(f"unresolved identifier '{expr.name}'", location)
            return Lowered(lit.int_type, lit.value, rust_literal(lit), lit.radix)

        if isinstance(expr, String):
            raise MacroError("string literals are not supported", location)

        if isinstance(expr, Unary):
            return self._lower_unary(expr, ctx, params, location)

        if isinstance(expr, Binary):
            return self._lower_binary(expr, ctx, params, location)

        if isinstance(expr, Cast):
            inner = self.lower(expr.expr, ctx, params, location)
            if '*' in expr.type_name:
                raise MacroError(f"pointer cast '({expr.type_name})' is not supported", location)
            target = cast_type(expr.type_name, ctx)
            if target is None:
                self.reporter.report(
                    DiagnosticKind.DROPPED_CAST,
                    f"cast to unknown type '{expr.type_name}' dropped from '{render_expr(expr)}'",
                    subject=expr.type_name, location=location,
                )
                return inner
            return _convert(inner, target)

        if isinstance(expr, Conditional):
            raise MacroError("operator '?:' is not supported", location)
        if isinstance(expr, Call):
            raise MacroError(f"call to unknown function '{expr.func.name}'", location)
        if isinstance(expr, (Postfix, Assign, Member)):
            raise MacroError(f"side effect in constant expression '{render_expr(expr)}'", location)
        raise MacroError(f"unsupported expression '{render_expr(expr)}'", location)

    def _lower_unary(self, expr: Unary, ctx: EvalContext, params: Dict[str, IntType],
                     location: Optional[str]) -> Lowered:
        if expr.op not in ('+', '-', '~'):
            raise MacroError(f"operator '{expr.op}' is not supported", location)
        operand = self.lower(expr.expr, ctx, params, location)
        t = promote(operand.type)
        operand = _convert(operand, t)
        if expr.op == '+':
            return operand
        if expr.op == '-':
            value = None if operand.value is None else t.wrap(-operand.value)
            rust = f"(-{operand.rust})" if t.signed else f"{t.rust_name}::wrapping_neg({operand.rust})"
        else:
            value = None if operand.value is None else t.wrap(~operand.value)
            rust = f"(!{operand.rust})"
        return _fold(Lowered(t, value, rust, operand.radix))

    def _lower_binary(self, expr: Binary, ctx: EvalContext, params: Dict[str, IntType],
                      location: Optional[str]) -> Lowered:
        op = expr.op
        if op not in ('*', '/', '%', '+', '-', '<<', '>>', '&', '^', '|'):
            raise MacroError(f"operator '{op}' is not supported", location)
        left = self.lower(expr.left, ctx, params, location)
        right = self.lower(expr.right, ctx, params, location)
        radix = max(left.radix, right.radix)

        if op in ('<<', '>>'):
            t = promote(left.type)
            left = _convert(left, t)
            right = _convert(right, promote(right.type))
            if right.value is not None and not 0 <= right.value < t.width:
                raise MacroError(f"shift count {right.value} out of range for {t}", location)
            value = None
            if left.value is not None and right.value is not None:
                shifted = left.value << right.value if op == '<<' else left.value >> right.value
                value = t.wrap(shifted)
            return _fold(Lowered(t, value, f"({left.rust} {op} {right.rust})", radix))

        t = common_type(left.type, right.type)
        left = _convert(left, t)
        right = _convert(right, t)
        value = None
        if left.value is not None and right.value is not None:
            value = _compute(op, left.value, right.value, t, location)
        elif op in ('/', '%') and right.value == 0:
            raise MacroError("division by zero", location)

        if op in ('+', '-', '*') and not t.signed:
            method = {'+': 'wrapping_add', '-': 'wrapping_sub', '*': 'wrapping_mul'}[op]
            rust = f"{t.rust_name}::{method}({left.rust}, {right.rust})"
        else:
            rust = f"({left.rust} {op} {right.rust})"
        return _fold(Lowered(t, value, rust, radix))

    # --- Resolution ---

    def resolve(self, name: str) -> ResolvedMacro:
        if name in self._resolved:
            return self._resolved[name]
        mac = self.macros[name]
        if name in self.conflicts:
            result = ResolvedMacro(mac, MacroKind.UNSUPPORTED, reason="conflicting definitions")
            self._resolved[name] = result
            return result
        if name in self._in_progress:
            raise MacroError(f"recursive self-reference to '{name}'", mac.location)

        self._in_progress.add(name)
        try:
            result = self._resolve_definition(mac)
        finally:
            self._in_progress.discard(name)
        self._resolved[name] = result
        return result

    def _resolve_definition(self, mac: MacroDefinition) -> ResolvedMacro:
        logger.debug("Resolving macro %s", mac.name)
        try:
            if mac.is_function_like:
                function = self._classify_function(mac)
                logger.debug("Macro %s -> %s function returning %s", mac.name,
                             "mutating" if function.mutating else "pure", function.returns)
                return ResolvedMacro(mac, MacroKind.EXPRESSION, function=function)
            value = self.evaluate(mac.body, location=mac.location, active=frozenset({mac.name}))
            logger.debug("Macro %s -> %s (%s)", mac.name, value.text, value.int_type)
            return ResolvedMacro(mac, MacroKind.CONSTANT, value=value)
        except MalformedLiteral as e:
            self.reporter.report_error(DiagnosticKind.MALFORMED_LITERAL, e, subject=mac.name)
            return ResolvedMacro(mac, MacroKind.UNSUPPORTED, reason=str(e))
        except MacroError as e:
            if e.location is None:
                e.location = mac.location
            self.reporter.report_error(DiagnosticKind.UNSUPPORTED_MACRO_BODY, e, subject=mac.name)
            return ResolvedMacro(mac, MacroKind.UNSUPPORTED, reason=str(e))

    def _classify_function(self, mac: MacroDefinition) -> MacroFunctionBody:
        if mac.variadic:
            raise MacroError("variadic macros are not supported")
        body = self.expand(mac.body, frozenset({mac.name}), frozenset(mac.params))
        expr = parse_macro_replacement(body, _ValueNames(self, self.context, mac.params))
        if expr is None:
            raise MacroError(f"unrecognized expression '{' '.join(t.text for t in body)}'")

        mutation = _match_mutation(expr, mac.params)
        if mutation is not None:
            return self._mutator(mac, *mutation)

        params = {p: I32 for p in mac.params}
        lowered = self.lower(expr, self.context, params, mac.location)
        return MacroFunctionBody(
            params=tuple(MacroParam(rust_ident(p), I32) for p in mac.params),
            returns=lowered.type,
            body=(_strip_parens(lowered.rust),),
        )

    def _mutator(self, mac: MacroDefinition, target: str, field: str, op: str,
                 prefix: bool, amount: Optional[Expr]) -> MacroFunctionBody:
        if self.context.find_field_owner is None:
            raise MacroError(f"no struct declares field '{field}'")
        owner, field_type = self.context.find_field_owner(field)

        others = {p: I32 for p in mac.params if p != target}
        if amount is None:
            step = "1"
        else:
            if _mentions(amount, target):
                raise MacroError(f"'{target}' used on both sides of '{op}'")
            step = _strip_parens(_convert(self.lower(amount, self.context, others, mac.location), field_type).rust)

        method = "wrapping_sub" if op in ('--', '-=') else "wrapping_add"
        place = f"{rust_ident(target)}.{rust_ident(field)}"
        if prefix:
            body = (f"{place} = {place}.{method}({step});", place)
        else:
            body = (f"let old = {place};", f"{place} = old.{method}({step});", "old")
        params = tuple(
            MacroParam(rust_ident(p), None if p == target else I32) for p in mac.params
        )
        return MacroFunctionBody(params=params, returns=field_type, body=body,
                                 owner=owner, mutating=True)

    def resolve_all(self) -> List[ResolvedMacro]:
        """Resolves every macro, in source order. Empty object-like macros are skipped."""
        results: List[ResolvedMacro] = []
        for mac in sorted(self.macros.values(), key=lambda m: (m.unit, m.offset)):
            if not mac.is_function_like and not mac.body:
                logger.debug("Skipping empty macro %s", mac.name)
                continue
            results.append(self.resolve(mac.name))
        return results


def _compute(op: str, a: int, b: int, t: IntType, location: Optional[str]) -> int:
    if op == '+':
        return t.wrap(a + b)
    if op == '-':
        return t.wrap(a - b)
    if op == '*':
        return t.wrap(a * b)
    if op in ('/', '%'):
        if b == 0:
            raise MacroError("division by zero", location)
        q = abs(a) // abs(b)
        if (a < 0) != (b < 0):
            q = -q
        return t.wrap(q) if op == '/' else t.wrap(a - b * q)
    if op == '&':
        return t.wrap((a & t.mask) & (b & t.mask))
    if op == '|':
        return t.wrap((a & t.mask) | (b & t.mask))
    return t.wrap((a & t.mask) ^ (b & t.mask))


def _literal_text(value: int, t: IntType, radix: int) -> str:
    text = rust_literal(from_value(value, t, radix))
    if ' ' in text or text.startswith('-'):
        return f"({text})"
    return text


def _fold(lowered: Lowered) -> Lowered:
    if lowered.value is None:
        return lowered
    return Lowered(lowered.type, lowered.value,
                   _literal_text(lowered.value, lowered.type, lowered.radix), lowered.radix)


def _convert(lowered: Lowered, t: IntType) -> Lowered:
    if lowered.type == t:
        return lowered
    if lowered.value is not None:
        return _fold(Lowered(t, t.wrap(lowered.value), lowered.rust, lowered.radix))
    return Lowered(t, None, f"({lowered.rust} as {t.rust_name})", lowered.radix)


def _strip_parens(text: str) -> str:
    if not (text.startswith('(') and text.endswith(')')):
        return text
    depth = 0
    for i, ch in enumerate(text):
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
            if depth == 0 and i != len(text) - 1:
                return text
    return text[1:-1]


def _mentions(expr: Expr, name: str) -> bool:
    if isinstance(expr, Identifier):
        return expr.name == name
    if isinstance(expr, (Unary, Postfix, Cast)):
        return _mentions(expr.expr, name)
    if isinstance(expr, Binary):
        return _mentions(expr.left, name) or _mentions(expr.right, name)
    if isinstance(expr, Member):
        return _mentions(expr.expr, name)
    if isinstance(expr, Assign):
        return _mentions(expr.target, name) or _mentions(expr.value, name)
    if isinstance(expr, Conditional):
        return any(_mentions(e, name) for e in (expr.cond, expr.then, expr.otherwise))
    if isinstance(expr, Call):
        return any(_mentions(a, name) for a in expr.args)
    return False


def _match_mutation(expr: Expr, params: Sequence[str]):
    """
    Recognizes `(p)->field--`, `++(p)->field`, `(p)->field += n` and friends.

    Returns (param, field, op, prefix, amount) or None.
    """
    if isinstance(expr, Postfix) and expr.op in ('++', '--'):
        target, op, prefix, amount = expr.expr, expr.op, False, None
    elif isinstance(expr, Unary) and expr.op in ('++', '--'):
        target, op, prefix, amount = expr.expr, expr.op, True, None
    elif isinstance(expr, Assign) and expr.op in ('+=', '-='):
        target, op, prefix, amount = expr.target, expr.op, True, expr.value
    else:
        if _has_side_effect(expr):
            raise MacroError(f"unsupported side effect in '{render_expr(expr)}'")
        return None

    if not (isinstance(target, Member) and target.arrow and isinstance(target.expr, Identifier)
            and target.expr.name in params):
        raise MacroError(f"unsupported mutation target '{render_expr(target)}'")
    if amount is not None and _has_side_effect(amount):
        raise MacroError(f"unsupported side effect in '{render_expr(amount)}'")
    return target.expr.name, target.field, op, prefix, amount


def _has_side_effect(expr: Expr) -> bool:
    if isinstance(expr, (Postfix, Assign, Member)):
        return True
    if isinstance(expr, Unary):
        return expr.op in ('++', '--', '*', '&') or _has_side_effect(expr.expr)
    if isinstance(expr, Cast):
        return _has_side_effect(expr.expr)
    if isinstance(expr, Binary):
        return _has_side_effect(expr.left) or _has_side_effect(expr.right)
    if isinstance(expr, Conditional):
        return any(_has_side_effect(e) for e in (expr.cond, expr.then, expr.otherwise))
    if isinstance(expr, Call):
        return any(_has_side_effect(a) for a in expr.args)
    return False
