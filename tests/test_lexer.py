import pytest

from diagnostics import LexError
from lexer import logical_lines, tokenize


def test_token_kinds():
    tokens = tokenize('extern "C" int f(int a[4], char c = \'x\');')
    kinds = [(t.kind, t.text) for t in tokens]
    assert kinds[:3] == [("ident", "extern"), ("string", '"C"'), ("ident", "int")]
    assert ("paren", "(") in kinds
    assert ("bracket", "[") in kinds
    assert ("number", "4") in kinds
    assert ("comma", ",") in kinds
    assert ("assign", "=") in kinds
    assert ("char", "'x'") in kinds
    assert kinds[-1] == ("op", ";")


def test_comments_are_dropped():
    tokens = tokenize("int a; // trailing\n/* block */ int b;")
    assert [t.text for t in tokens] == ["int", "a", ";", "int", "b", ";"]


def test_digit_separators_stay_in_one_token():
    tokens = tokenize("#define X 0xffff'ffff'ffff'ffffLL\n")
    assert tokens[-1].kind == "number"
    assert tokens[-1].text == "0xffff'ffff'ffff'ffffLL"


def test_continued_lines_share_a_logical_line():
    src = "#define A(x) \\\n    ((x) + 1)\nint y;"
    tokens = tokenize(src)
    define_line = tokens[0].line
    plus = next(t for t in tokens if t.text == "+")
    y = next(t for t in tokens if t.text == "y")
    assert plus.line == define_line
    assert y.line != define_line


def test_offsets_detect_function_like_macros():
    tokens = tokenize("#define F(x) x\n#define G (x)\n")
    f_name, f_paren = tokens[2], tokens[3]
    g_name, g_paren = tokens[9], tokens[10]
    assert f_name.text == "F" and f_paren.offset == f_name.end
    assert g_name.text == "G" and g_paren.offset > g_name.end


def test_stray_character_is_untokenizable():
    with pytest.raises(LexError):
        tokenize("int a; ` int b;")


def test_logical_lines_mapping():
    assert logical_lines("a \\\nb\nc") == [0, 1, 1, 3]


def test_token_is():
    token = tokenize("struct")[0]
    assert token.is_("ident")
    assert token.is_("ident", "struct")
    assert not token.is_("ident", "class")
