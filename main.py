#!/usr/bin/env python3
import argparse
import logging
import os
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from blocklist import Blocklist, apply_blocklist
from decl_parser import SyntaxUnit, parse_unit
from diagnostics import (BindgenError, Diagnostic, DiagnosticKind, DiagnosticReporter, LexError,
                         Severity)
from lexer import load
from options import Options
from out_types import DeclKind, SemanticModel
from rust_emitter import RustEmitter
from semantic_model import build_model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationResult:
    outputs: Dict[str, str]  # unit module name -> Rust source
    diagnostics: Tuple[Diagnostic, ...]
    model: Optional[SemanticModel] = None

    @property
    def fatal(self) -> bool:
        return any(d.severity == Severity.FATAL for d in self.diagnostics)

    @property
    def ok(self) -> bool:
        return not any(d.severity >= Severity.ERROR for d in self.diagnostics)


# --- Core Binding Generator ---

class BindingGenerator:
    """
    Generates Rust FFI bindings from C/C++ header text.

    Headers are added as named text buffers; `generate()` runs the whole
    pipeline over them from a clean state, so the same inputs always give
    the same outputs.
    """

    def __init__(self, options: Optional[Options] = None):
        self.options = options or Options()
        self.sources: List[Tuple[str, str]] = []

    def add_source(self, name: str, text: str):
        self.sources.append((name, text))

    def add_header(self, path: str):
        with open(path, "r", encoding="utf-8") as f:
            self.add_source(os.path.basename(path), f.read())

    def generate(self) -> GenerationResult:
        reporter = DiagnosticReporter()

        units: List[SyntaxUnit] = []
        for index, (name, text) in enumerate(self.sources):
            try:
                buffer = load(text, name, list(self.options.clang_args), self.sources)
            except LexError as e:
                reporter.report_error(DiagnosticKind.UNTOKENIZABLE_INPUT, e, subject=name)
                logger.debug("Aborting: %s cannot be tokenized", name)
                return GenerationResult({}, reporter.snapshot())
            units.append(parse_unit(buffer, index, reporter))
            logger.debug("Parsed %s: %d declarations, %d macros",
                         name, len(units[-1].declarations), len(units[-1].macros))

        model = build_model(units, reporter, self.options.assume_c_linkage)
        blocklist = Blocklist.create(self.options.blocklist, self.options.blocklist_type_patterns)
        model = apply_blocklist(model, blocklist, reporter)
        outputs = RustEmitter(model, self.options, reporter).emit()
        return GenerationResult(outputs, reporter.snapshot(), model)


def generate(sources: Sequence[Tuple[str, str]], options: Optional[Options] = None) -> GenerationResult:
    """Runs one generation over `(name, text)` header buffers."""
    generator = BindingGenerator(options)
    for name, text in sources:
        generator.add_source(name, text)
    return generator.generate()


def print_summary(result: GenerationResult, file=None):
    file = sys.stderr if file is None else file
    model = result.model
    print("\n--- Parsing Summary ---", file=file)
    if model is not None:
        records = model.of_kind(DeclKind.STRUCT, DeclKind.CLASS, DeclKind.UNION)
        print(f"Records: {len(records)}, Interfaces: {len(model.of_kind(DeclKind.INTERFACE))}, "
              f"Enums: {len(model.of_kind(DeclKind.ENUM, DeclKind.ENUM_CLASS))}, "
              f"Opaque: {len(model.of_kind(DeclKind.OPAQUE))}", file=file)
        print(f"Functions: {len(model.of_kind(DeclKind.FUNCTION))}, "
              f"Constants: {len(model.of_kind(DeclKind.CONSTANT))}, "
              f"Macro functions: {len(model.of_kind(DeclKind.MACRO_FUNCTION))}, "
              f"Typedefs: {len(model.of_kind(DeclKind.TYPEDEF))}", file=file)
    print(f"Diagnostics: {len(result.diagnostics)}", file=file)
    print("-----------------------", file=file)
    for diag in result.diagnostics:
        print(diag, file=file)


def write_outputs(result: GenerationResult, output: str):
    """One unit goes to the `output` file; several go into the `output` directory."""
    if len(result.outputs) == 1:
        (code,) = result.outputs.values()
        with open(output, "w", encoding="utf-8") as f:
            f.write(code)
        return [output]

    os.makedirs(output, exist_ok=True)
    written = []
    for module, code in result.outputs.items():
        path = os.path.join(output, f"{module}.rs")
        with open(path, "w", encoding="utf-8") as f:
            f.write(code)
        written.append(path)
    return written


# --- Main Execution ---
def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line interface for the binding generator."""
    parser = argparse.ArgumentParser(
        prog="cxxbindgen",
        description="Generate Rust FFI bindings from C/C++ header files."
    )
    parser.add_argument("headers", nargs="+", help="Paths to the header files to parse.")
    parser.add_argument(
        "-o", "--output", default="bindings.rs",
        help="Output Rust file, or directory when several headers are given (default: bindings.rs)."
    )
    parser.add_argument("--config", help="TOML file with a [cxxbindgen] table of options.")
    parser.add_argument(
        "--blocklist", action="append", default=[], metavar="NAME",
        help="Treat a type as opaque (e.g. --blocklist N1::Foo). Repeatable."
    )
    parser.add_argument(
        "--allowlist-type", action="append", default=[], metavar="REGEX",
        help="Only emit matching types and what they reference. Repeatable."
    )
    parser.add_argument("--rust-mod-name", help="Path the generated code is mounted at (default: crate).")
    parser.add_argument("--assume-c-linkage", action="store_true",
                        help="Treat every global prototype as extern \"C\".")
    parser.add_argument(
        "-I", dest="include_dirs", action="append", default=[],
        help="Add a directory to the Clang include path (e.g., -I/usr/include)."
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug).")

    args = parser.parse_args(argv)

    level = logging.WARNING if args.verbose == 0 else logging.INFO if args.verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        options = Options.from_toml(args.config) if args.config else Options()
        options = options.merged(
            blocklist=args.blocklist,
            allowlist_type=args.allowlist_type,
            rust_mod_name=args.rust_mod_name,
            assume_c_linkage=args.assume_c_linkage or None,
            clang_args=[f"-I{d}" for d in args.include_dirs],
        )
        generator = BindingGenerator(options)
        for header in args.headers:
            generator.add_header(header)
        result = generator.generate()
    except (OSError, BindgenError) as e:
        print(f"An error occurred: {e}", file=sys.stderr)
        return 1

    print_summary(result)
    if result.fatal:
        print("\nNo bindings generated.", file=sys.stderr)
        return 1

    try:
        written = write_outputs(result, args.output)
    except OSError as e:
        print(f"An error occurred: {e}", file=sys.stderr)
        return 1
    print(f"\nSuccessfully generated Rust bindings at: {', '.join(written)}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
