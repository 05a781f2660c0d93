from expr_ast import (Assign, Binary, Call, Cast, Identifier, Member, Number, Postfix, Unary,
                      parse_macro_replacement, render_expr)
from lexer import tokenize


def parse(text, value_names=frozenset()):
    return parse_macro_replacement(tokenize(text), value_names)


def test_precedence():
    expr = parse("1 + 2 * 3 << 4")
    assert expr == Binary(Binary(Number("1"), "+", Binary(Number("2"), "*", Number("3"))), "<<", Number("4"))


def test_left_associative():
    assert parse("8 - 4 - 2") == Binary(Binary(Number("8"), "-", Number("4")), "-", Number("2"))


def test_builtin_cast():
    assert parse("(unsigned long)(1)") == Cast("unsigned long", Number("1"))


def test_parenthesized_value_is_not_a_cast():
    assert parse("(x) + 1", {"x"}) == Binary(Identifier("x"), "+", Number("1"))


def test_parenthesized_unknown_name_before_operand_is_a_cast():
    assert parse("(HRESULT) (5)") == Cast("HRESULT", Number("5"))


def test_qualified_identifier():
    assert parse("IcecreamFlavor::Vanilla") == Identifier("IcecreamFlavor::Vanilla")


def test_call():
    assert parse("MAKE(1, X)") == Call(Identifier("MAKE"), (Number("1"), Identifier("X")))


def test_member_postfix_decrement():
    expr = parse("((f)->a--)", {"f"})
    assert expr == Postfix("--", Member(Identifier("f"), "a", True))


def test_prefix_increment_and_compound_assignment():
    assert parse("++p->n", {"p"}) == Unary("++", Member(Identifier("p"), "n", True))
    assert parse("p->n += 2", {"p"}) == Assign(Member(Identifier("p"), "n", True), "+=", Number("2"))


def test_unparseable_returns_none():
    assert parse("1 +") is None
    assert parse("(1") is None
    assert parse("1 2") is None


def test_render_expr():
    assert render_expr(parse("(1 + 2) * ~X")) == "((1 + 2) * ~X)"
    assert render_expr(parse("(int)A")) == "((int)A)"
