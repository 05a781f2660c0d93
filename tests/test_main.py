import pytest
from conftest import FULL_HEADER, MINIMAL_HEADER, SECOND_HEADER

from diagnostics import DiagnosticKind, Severity
from main import BindingGenerator, generate, main, print_summary


def test_generate_two_units():
    result = generate([("foo.h", FULL_HEADER), ("bar.h", SECOND_HEADER)])
    assert set(result.outputs) == {"foo", "bar"}
    assert not result.fatal
    assert result.ok
    kinds = {d.kind for d in result.diagnostics}
    assert DiagnosticKind.INCOMPLETE_IMPLEMENTATION in kinds
    assert DiagnosticKind.UNRESOLVED_TYPE in kinds


def test_untokenizable_input_is_fatal():
    result = generate([("good.h", MINIMAL_HEADER), ("bad.h", "int `x`;\n")])
    assert result.fatal and not result.ok
    assert result.outputs == {}
    assert result.model is None
    (diag,) = result.diagnostics
    assert diag.kind == DiagnosticKind.UNTOKENIZABLE_INPUT
    assert diag.severity == Severity.FATAL
    assert diag.subject == "bad.h"


def test_generator_runs_from_clean_state():
    generator = BindingGenerator()
    generator.add_source("point.h", MINIMAL_HEADER)
    first = generator.generate()
    second = generator.generate()
    assert first.outputs == second.outputs
    assert first.diagnostics == second.diagnostics


def test_add_header_uses_file_name(tmp_path):
    header = tmp_path / "point.h"
    header.write_text(MINIMAL_HEADER)
    generator = BindingGenerator()
    generator.add_header(str(header))
    assert list(generator.generate().outputs) == ["point"]


def test_cli_writes_single_file(tmp_path, capsys):
    header = tmp_path / "point.h"
    header.write_text(MINIMAL_HEADER)
    out = tmp_path / "bindings.rs"
    assert main([str(header), "-o", str(out)]) == 0
    text = out.read_text()
    assert "pub struct Point {" in text
    assert "pub const LIMIT: i32 = 16;" in text
    assert "--- Parsing Summary ---" in capsys.readouterr().err


def test_cli_writes_one_file_per_unit(tmp_path):
    foo = tmp_path / "foo.h"
    foo.write_text(FULL_HEADER)
    bar = tmp_path / "bar.h"
    bar.write_text(SECOND_HEADER)
    out = tmp_path / "generated"
    assert main([str(foo), str(bar), "-o", str(out), "--blocklist", "IsBlocked"]) == 0
    assert sorted(p.name for p in out.iterdir()) == ["bar.rs", "foo.rs"]
    assert "is blocklisted; opaque placeholder" in (out / "foo.rs").read_text()


def test_cli_reads_config(tmp_path):
    header = tmp_path / "point.h"
    header.write_text(MINIMAL_HEADER)
    config = tmp_path / "cxxbindgen.toml"
    config.write_text('[cxxbindgen]\nrust-mod-name = "ffi"\n')
    out = tmp_path / "bindings.rs"
    assert main([str(header), "-o", str(out), "--config", str(config)]) == 0
    assert "*const ffi::Point" in out.read_text()


def test_cli_fatal_input(tmp_path, capsys):
    header = tmp_path / "bad.h"
    header.write_text("struct S { int `x`; };\n")
    out = tmp_path / "bindings.rs"
    assert main([str(header), "-o", str(out)]) == 1
    assert not out.exists()
    assert "No bindings generated." in capsys.readouterr().err


@pytest.mark.parametrize("argv", [
    ["missing.h"],
    ["--config", "missing.toml", "x.h"],
])
def test_cli_errors(tmp_path, capsys, argv):
    argv = [str(tmp_path / a) if a.endswith((".h", ".toml")) else a for a in argv]
    assert main(argv) == 1
    assert "An error occurred:" in capsys.readouterr().err


def test_summary_goes_to_current_stderr(capsys):
    # capsys swaps sys.stderr after main was imported
    print_summary(generate([("foo.h", FULL_HEADER)]))
    captured = capsys.readouterr()
    assert "--- Parsing Summary ---" in captured.err
    assert not captured.out
