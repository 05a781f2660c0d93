import logging
import os
import posixpath
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Sequence, Tuple

from clang.cindex import Config, Index, TranslationUnit, TranslationUnitLoadError

from diagnostics import LexError

logger = logging.getLogger(__name__)

# A stray character outside any literal or comment means the buffer is not
# C/C++ declaration text at all.
_STRAY_CHARACTERS = {"`", "@"}

_PUNCT_KINDS = {
    "(": "paren", ")": "paren",
    "{": "brace", "}": "brace",
    "[": "bracket", "]": "bracket",
    ",": "comma",
    "=": "assign",
}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    line: int = 0  # logical line: backslash-continued lines share one number
    column: int = 0
    offset: int = 0
    end: int = 0

    def is_(self, kind: str, text: Optional[str] = None) -> bool:
        return self.kind == kind and (text is None or self.text == text)

    def __repr__(self) -> str:
        return f"Token({self.kind}, {self.text!r}, L{self.line}:{self.column})"


def _configure_libclang():
    library = os.getenv("LIBCLANG_PATH")
    if library and not Config.loaded:
        Config.set_library_file(library)


def logical_lines(src: str) -> List[int]:
    """Maps each physical line (1-based index) to the logical line it belongs to."""
    mapping = [0]
    current = 1
    continued = False
    for number, text in enumerate(src.split("\n"), start=1):
        if not continued:
            current = number
        mapping.append(current)
        continued = text.rstrip("\r").endswith("\\")
    return mapping


def _token_kind(clang_kind: str, spelling: str) -> str:
    if clang_kind in ("KEYWORD", "IDENTIFIER"):
        return "ident"
    if clang_kind == "LITERAL":
        if spelling[0].isdigit() or (spelling[0] == "." and len(spelling) > 1):
            return "number"
        if spelling.endswith("'"):
            return "char"
        return "string"
    return _PUNCT_KINDS.get(spelling, "op")


# Inputs are handed to libclang as unsaved files under one virtual directory,
# so `#include "other.h"` finds another input of the same run.
VIRTUAL_ROOT = "/cxxbindgen-input"
CLANG_ARGS = ["-x", "c++", "-std=c++17", "-fms-extensions", "-fno-spell-checking"]


def virtual_path(name: str) -> str:
    return posixpath.join(VIRTUAL_ROOT, name.replace(os.sep, "/"))


@dataclass
class SourceBuffer:
    name: str
    path: str  # virtual path libclang knows the buffer by
    tu: TranslationUnit
    tokens: List[Token]
    paths: FrozenSet[str] = frozenset()  # virtual paths of every input of the run


def load(src: str, name: str = "input.h", clang_args: Optional[List[str]] = None,
         headers: Sequence[Tuple[str, str]] = ()) -> SourceBuffer:
    """
    Parses one header buffer with libclang and lexes it, comments dropped.

    `headers` are the other inputs of the run as (name, text) pairs; they are
    visible to `#include` but only `src` is lexed. Raises LexError when libclang
    cannot load the buffer or it contains a character no C++ token can start with.
    """
    _configure_libclang()
    args = CLANG_ARGS + (clang_args or [])
    path = virtual_path(name)
    unsaved = [(path, src)] + [(virtual_path(n), text) for n, text in headers if n != name]
    logger.debug("Parsing %s as %s with args %s", name, path, args)

    index = Index.create()
    try:
        tu = index.parse(
            path,
            args=args,
            unsaved_files=unsaved,
            options=TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD | TranslationUnit.PARSE_SKIP_FUNCTION_BODIES,
        )
    except TranslationUnitLoadError as e:
        raise LexError(f"libclang could not load {name}: {e}", name) from e

    lines = logical_lines(src)
    tokens: List[Token] = []
    for clang_token in tu.get_tokens(extent=tu.cursor.extent):
        clang_kind = clang_token.kind.name
        if clang_kind == "COMMENT":
            continue
        spelling = clang_token.spelling
        loc = clang_token.location
        if clang_kind == "PUNCTUATION" and spelling in _STRAY_CHARACTERS:
            raise LexError(f"stray '{spelling}' in program", f"{name}:{loc.line}:{loc.column}")
        line = lines[loc.line] if loc.line < len(lines) else loc.line
        tokens.append(Token(
            kind=_token_kind(clang_kind, spelling),
            text=spelling,
            line=line,
            column=loc.column,
            offset=loc.offset,
            end=clang_token.extent.end.offset,
        ))

    logger.debug("Tokenized %s: %d tokens", name, len(tokens))
    paths = frozenset([path] + [virtual_path(n) for n, _ in headers])
    return SourceBuffer(name, path, tu, tokens, paths)


def tokenize(src: str, name: str = "input.h", clang_args: Optional[List[str]] = None) -> List[Token]:
    """Lexes one header buffer on its own and returns its tokens."""
    return load(src, name, clang_args).tokens
