import pytest

from diagnostics import OptionsError
from options import Options


def test_defaults():
    options = Options()
    assert options.derive_debug and options.standalone
    assert options.rust_mod_name is None
    assert not options.has_allowlist


def test_from_toml(tmp_path):
    config = tmp_path / "cxxbindgen.toml"
    config.write_text(
        "[cxxbindgen]\n"
        'blocklist = ["N1::Foo"]\n'
        'allowlist-function = ["get_.*"]\n'
        "derive-debug = false\n"
        'rust_mod_name = "ffi"\n'
    )
    options = Options.from_toml(str(config))
    assert options.blocklist == ("N1::Foo",)
    assert options.allowlist_function == ("get_.*",)
    assert options.has_allowlist
    assert not options.derive_debug
    assert options.rust_mod_name == "ffi"


def test_missing_table_gives_defaults(tmp_path):
    config = tmp_path / "other.toml"
    config.write_text("[tool.something]\nvalue = 1\n")
    assert Options.from_toml(str(config)) == Options()


@pytest.mark.parametrize("body", [
    "[cxxbindgen]\nunknown = 1\n",
    "[cxxbindgen]\nderive-debug = \"yes\"\n",
    "[cxxbindgen]\nblocklist = \"Foo\"\n",
    "[cxxbindgen]\nblocklist-function = [\"(\"]\n",
    "[cxxbindgen\n",
    "cxxbindgen = 3\n",
])
def test_invalid_config(tmp_path, body):
    config = tmp_path / "bad.toml"
    config.write_text(body)
    with pytest.raises(OptionsError):
        Options.from_toml(str(config))


def test_missing_file(tmp_path):
    with pytest.raises(OptionsError):
        Options.from_toml(str(tmp_path / "absent.toml"))


def test_invalid_pattern():
    with pytest.raises(OptionsError):
        Options(allowlist_type=["[a-"])


def test_merged_appends_and_replaces():
    base = Options(blocklist=("A",), rust_mod_name="ffi")
    merged = base.merged(blocklist=["B"], rust_mod_name=None, allowlist_type=[], assume_c_linkage=True)
    assert merged.blocklist == ("A", "B")
    assert merged.rust_mod_name == "ffi"
    assert merged.allowlist_type == ()
    assert merged.assume_c_linkage
    assert base.blocklist == ("A",)


def test_patterns():
    options = Options(blocklist_function=["set_.*"])
    (pattern,) = options.patterns("blocklist_function")
    assert pattern.fullmatch("set_foo")
