from __future__ import annotations
from dataclasses import dataclass
from typing import Container, List, Optional, Tuple

from lexer import Token


# Type keywords that always start a cast when they follow '('.
TYPE_KEYWORDS = {
    "void", "char", "short", "int", "long", "signed", "unsigned", "float", "double",
    "bool", "_Bool", "const", "volatile", "struct", "enum", "class", "union",
    "__int8", "__int16", "__int32", "__int64", "wchar_t", "char8_t", "char16_t", "char32_t",
}


# --- AST Nodes ---

class Expr: ...

@dataclass(frozen=True)
class Number(Expr):
    text: str

@dataclass(frozen=True)
class String(Expr):
    text: str

@dataclass(frozen=True)
class Identifier(Expr):
    name: str  # may be qualified, e.g. `IcecreamFlavor::Chocolate`

@dataclass(frozen=True)
class Unary(Expr):
    op: str
    expr: Expr

@dataclass(frozen=True)
class Postfix(Expr):
    op: str
    expr: Expr

@dataclass(frozen=True)
class Binary(Expr):
    left: Expr
    op: str
    right: Expr

@dataclass(frozen=True)
class Conditional(Expr):
    cond: Expr
    then: Expr
    otherwise: Expr

@dataclass(frozen=True)
class Call(Expr):
    func: Identifier
    args: Tuple[Expr, ...]

@dataclass(frozen=True)
class Cast(Expr):
    type_name: str
    expr: Expr

@dataclass(frozen=True)
class Member(Expr):
    expr: Expr
    field: str
    arrow: bool

@dataclass(frozen=True)
class Assign(Expr):
    target: Expr
    op: str
    value: Expr


BINARY_PRECEDENCE = {
    '||': 1,
    '&&': 2,
    '|': 3,
    '^': 4,
    '&': 5,
    '==': 6, '!=': 6,
    '<': 7, '>': 7, '<=': 7, '>=': 7,
    '<<': 8, '>>': 8,
    '+': 9, '-': 9,
    '*': 10, '/': 10, '%': 10,
}

ASSIGN_OPS = {'=', '+=', '-=', '*=', '/=', '%=', '<<=', '>>=', '&=', '|=', '^='}
PREFIX_OPS = {'-', '+', '~', '!', '++', '--', '*', '&'}


# --- Parser ---

class Parser:
    """
    Pratt parser for macro bodies and constant initializers.

    `value_names` lists identifiers known to denote values (macro parameters,
    constants); a parenthesized identifier that is not one of them is read as
    a C cast when an operand follows.
    """

    def __init__(self, tokens: List[Token], value_names: Container[str] = frozenset()):
        self.toks = tokens
        self.i = 0
        self.value_names = value_names

    def _peek(self, k: int = 0) -> Optional[Token]:
        j = self.i + k
        return self.toks[j] if 0 <= j < len(self.toks) else None

    def _eat(self, kind: Optional[str] = None, text: Optional[str] = None) -> Optional[Token]:
        t = self._peek()
        if not t:
            return None
        if kind is not None and t.kind != kind:
            return None
        if text is not None and t.text != text:
            return None
        self.i += 1
        return t

    def parse(self) -> Optional[Expr]:
        expr = self._parse_assignment()
        if expr is None or self._peek() is not None:
            return None
        return expr

    def _parse_assignment(self) -> Optional[Expr]:
        left = self._parse_conditional()
        if left is None:
            return None
        t = self._peek()
        if t is not None and t.kind in ('op', 'assign') and t.text in ASSIGN_OPS:
            self._eat()
            right = self._parse_assignment()
            if right is None:
                return None
            return Assign(left, t.text, right)
        return left

    def _parse_conditional(self) -> Optional[Expr]:
        cond = self._parse_expr()
        if cond is None or not self._eat('op', '?'):
            return cond
        then = self._parse_assignment()
        if then is None or not self._eat('op', ':'):
            return None
        otherwise = self._parse_conditional()
        if otherwise is None:
            return None
        return Conditional(cond, then, otherwise)

    def _parse_expr(self, min_prec: int = 0) -> Optional[Expr]:
        left = self._parse_unary()
        if left is None:
            return None

        def get_prec(tok: Optional[Token]) -> int:
            if tok and tok.kind == 'op' and tok.text in BINARY_PRECEDENCE:
                return BINARY_PRECEDENCE[tok.text]
            return -1

        while True:
            op_tok = self._peek()
            prec = get_prec(op_tok)
            if op_tok is None or prec < min_prec:
                break
            self._eat()
            right = self._parse_expr(prec + 1)
            if right is None:
                return None
            left = Binary(left, op_tok.text, right)
        return left

    def _parse_unary(self) -> Optional[Expr]:
        tok = self._peek()
        if tok is None:
            return None
        if tok.kind == 'op' and tok.text in PREFIX_OPS:
            self._eat()
            operand = self._parse_unary()
            return Unary(tok.text, operand) if operand is not None else None
        if tok.kind == 'paren' and tok.text == '(':
            cast = self._try_cast()
            if cast is not None:
                return cast
        return self._parse_postfix()

    def _try_cast(self) -> Optional[Expr]:
        save = self.i
        self._eat('paren', '(')
        parts: List[str] = []
        while True:
            t = self._peek()
            if t is None:
                break
            if t.kind == 'ident' or (t.kind == 'op' and t.text in ('::', '*')):
                parts.append(t.text)
                self._eat()
                continue
            break
        names = [p for p in parts if p not in ('::', '*')]
        if not names:
            is_type = False
        elif names[0] in TYPE_KEYWORDS or '*' in parts:
            is_type = True
        else:
            is_type = ''.join(parts) not in self.value_names
        if is_type and self._eat('paren', ')') and self._starts_operand(self._peek()):
            operand = self._parse_unary()
            if operand is not None:
                return Cast(_join_type(parts), operand)
        self.i = save
        return None

    @staticmethod
    def _starts_operand(tok: Optional[Token]) -> bool:
        if tok is None:
            return False
        if tok.kind in ('number', 'ident', 'string', 'char'):
            return True
        if tok.kind == 'paren' and tok.text == '(':
            return True
        return tok.kind == 'op' and tok.text in ('-', '+', '~', '!', '::')

    def _parse_qualified_name(self) -> Optional[str]:
        parts: List[str] = []
        if self._eat('op', '::'):
            parts.append('::')
        ident = self._eat('ident')
        if ident is None:
            return None
        parts.append(ident.text)
        while self._peek() is not None and self._peek().is_('op', '::') \
                and self._peek(1) is not None and self._peek(1).kind == 'ident':
            self._eat()
            parts.append('::')
            parts.append(self._eat('ident').text)
        return ''.join(parts)

    def _parse_postfix(self) -> Optional[Expr]:
        tok = self._peek()
        if tok is None:
            return None
        if tok.kind in ('number', 'char'):
            self._eat()
            left: Expr = Number(tok.text)
        elif tok.kind == 'string':
            self._eat()
            left = String(tok.text)
        elif tok.kind == 'ident' or tok.is_('op', '::'):
            name = self._parse_qualified_name()
            if name is None:
                return None
            # call?
            if self._eat('paren', '('):
                args: List[Expr] = []
                if not self._eat('paren', ')'):
                    while True:
                        arg = self._parse_assignment()
                        if arg is None:
                            return None
                        args.append(arg)
                        if self._eat('paren', ')'):
                            break
                        if not self._eat('comma', ','):
                            return None
                left = Call(Identifier(name), tuple(args))
            else:
                left = Identifier(name)
        elif tok.kind == 'paren' and tok.text == '(':
            self._eat('paren', '(')
            inner = self._parse_assignment()
            if inner is None or not self._eat('paren', ')'):
                return None
            left = inner
        else:
            return None

        while True:
            t = self._peek()
            if t is None or t.kind != 'op':
                break
            if t.text in ('++', '--'):
                self._eat()
                left = Postfix(t.text, left)
            elif t.text in ('->', '.'):
                self._eat()
                fld = self._eat('ident')
                if fld is None:
                    return None
                left = Member(left, fld.text, t.text == '->')
            else:
                break
        return left


def _join_type(parts: List[str]) -> str:
    out = ''
    for p in parts:
        if p in ('::', '*') or out.endswith('::') or not out:
            out += p
        else:
            out += ' ' + p
    return out


# --- Rendering back to C ---

def render_expr(e: Expr) -> str:
    if isinstance(e, (Number, String)):
        return e.text
    if isinstance(e, Identifier):
        return e.name
    if isinstance(e, Unary):
        return f"{e.op}{render_expr(e.expr)}"
    if isinstance(e, Postfix):
        return f"{render_expr(e.expr)}{e.op}"
    if isinstance(e, Binary):
        return f"({render_expr(e.left)} {e.op} {render_expr(e.right)})"
    if isinstance(e, Conditional):
        return f"({render_expr(e.cond)} ? {render_expr(e.then)} : {render_expr(e.otherwise)})"
    if isinstance(e, Call):
        args = ', '.join(render_expr(a) for a in e.args)
        return f"{e.func.name}({args})"
    if isinstance(e, Cast):
        return f"(({e.type_name}){render_expr(e.expr)})"
    if isinstance(e, Member):
        return f"{render_expr(e.expr)}{'->' if e.arrow else '.'}{e.field}"
    if isinstance(e, Assign):
        return f"({render_expr(e.target)} {e.op} {render_expr(e.value)})"
    return "<unknown>"


def parse_macro_replacement(tokens: List[Token], value_names: Container[str] = frozenset()) -> Optional[Expr]:
    return Parser(tokens, value_names).parse()
