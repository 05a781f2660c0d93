import logging
import re
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, List, Mapping, Optional, Pattern, Sequence

from diagnostics import OptionsError

logger = logging.getLogger(__name__)

TOML_TABLE = "cxxbindgen"

# Options holding regular expressions, validated when the options are created.
PATTERN_OPTIONS = (
    "blocklist_type_patterns",
    "allowlist_type", "allowlist_function", "allowlist_variable", "allowlist_macro",
    "blocklist_function", "blocklist_variable", "blocklist_macro",
)


@dataclass(frozen=True)
class Options:
    """Generation settings. Every run starts from a fresh, immutable set."""
    blocklist: Sequence[str] = ()  # exact qualified type names, in order
    blocklist_type_patterns: Sequence[str] = ()
    allowlist_type: Sequence[str] = ()
    allowlist_function: Sequence[str] = ()
    allowlist_variable: Sequence[str] = ()
    allowlist_macro: Sequence[str] = ()
    blocklist_function: Sequence[str] = ()
    blocklist_variable: Sequence[str] = ()
    blocklist_macro: Sequence[str] = ()
    derive_debug: bool = True
    standalone: bool = True
    rust_mod_name: Optional[str] = None
    assume_c_linkage: bool = False
    clang_args: Sequence[str] = field(default_factory=tuple)

    def __post_init__(self):
        for name in PATTERN_OPTIONS:
            for pattern in getattr(self, name):
                _compile(name, pattern)

    @property
    def has_allowlist(self) -> bool:
        return bool(self.allowlist_type or self.allowlist_function
                    or self.allowlist_variable or self.allowlist_macro)

    def patterns(self, name: str) -> List[Pattern]:
        return [_compile(name, p) for p in getattr(self, name)]

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "Options":
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in values.items():
            name = key.replace("-", "_")
            if name not in known:
                raise OptionsError(f"unknown option '{key}'")
            default = known[name].default
            if isinstance(default, bool):
                if not isinstance(value, bool):
                    raise OptionsError(f"option '{key}' must be true or false")
            elif name == "rust_mod_name":
                if value is not None and not isinstance(value, str):
                    raise OptionsError(f"option '{key}' must be a string")
            else:
                if isinstance(value, str) or not all(isinstance(v, str) for v in value):
                    raise OptionsError(f"option '{key}' must be a list of strings")
                value = tuple(value)
            kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_toml(cls, path: str) -> "Options":
        """Reads the `[cxxbindgen]` table of a TOML file."""
        try:
            with open(path, "rb") as f:
                document = tomllib.load(f)
        except OSError as e:
            raise OptionsError(f"cannot read config file {path}: {e}") from e
        except tomllib.TOMLDecodeError as e:
            raise OptionsError(f"invalid TOML in {path}: {e}") from e
        table = document.get(TOML_TABLE, {})
        if not isinstance(table, dict):
            raise OptionsError(f"'{TOML_TABLE}' in {path} must be a table")
        logger.debug("Loaded %d options from %s", len(table), Path(path).name)
        return cls.from_mapping(table)

    def merged(self, **overrides) -> "Options":
        """Returns a copy with the given (non-empty) values replaced or appended."""
        changes = {}
        for name, value in overrides.items():
            if value is None or value == () or value == []:
                continue
            current = getattr(self, name)
            if isinstance(current, tuple) or (isinstance(current, Sequence) and not isinstance(current, str)):
                changes[name] = tuple(current) + tuple(value)
            else:
                changes[name] = value
        return replace(self, **changes)


def _compile(option: str, pattern: str) -> Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise OptionsError(f"invalid regular expression '{pattern}' in {option}: {e}") from e
