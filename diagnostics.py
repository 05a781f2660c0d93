import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Severity(IntEnum):
    INFO = 0
    WARNING = 1
    ERROR = 2
    FATAL = 3


class DiagnosticKind(Enum):
    MALFORMED_LITERAL = "MalformedLiteral"
    UNSUPPORTED_MACRO_BODY = "UnsupportedMacroBody"
    UNSUPPORTED_DECLARATION = "UnsupportedDeclaration"
    UNRESOLVED_TYPE = "UnresolvedType"
    BLOCKLIST_REWRITE = "BlocklistRewrite"
    LAYOUT_CYCLE = "LayoutCycle"
    DUPLICATE_DEFINITION_CONFLICT = "DuplicateDefinitionConflict"
    UNTOKENIZABLE_INPUT = "UntokenizableInput"
    INCOMPLETE_IMPLEMENTATION = "IncompleteImplementation"
    DROPPED_CAST = "DroppedCast"
    SKIPPED_DECLARATION = "SkippedDeclaration"


DEFAULT_SEVERITY: Dict[DiagnosticKind, Severity] = {
    DiagnosticKind.MALFORMED_LITERAL: Severity.ERROR,
    DiagnosticKind.UNSUPPORTED_MACRO_BODY: Severity.WARNING,
    DiagnosticKind.UNSUPPORTED_DECLARATION: Severity.WARNING,
    DiagnosticKind.UNRESOLVED_TYPE: Severity.WARNING,
    DiagnosticKind.BLOCKLIST_REWRITE: Severity.INFO,
    DiagnosticKind.LAYOUT_CYCLE: Severity.ERROR,
    DiagnosticKind.DUPLICATE_DEFINITION_CONFLICT: Severity.ERROR,
    DiagnosticKind.UNTOKENIZABLE_INPUT: Severity.FATAL,
    DiagnosticKind.INCOMPLETE_IMPLEMENTATION: Severity.WARNING,
    DiagnosticKind.DROPPED_CAST: Severity.WARNING,
    DiagnosticKind.SKIPPED_DECLARATION: Severity.INFO,
}

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.FATAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class Diagnostic:
    kind: DiagnosticKind
    severity: Severity
    message: str
    subject: Optional[str] = None
    location: Optional[str] = None

    def __str__(self) -> str:
        where = f"{self.location}: " if self.location else ""
        what = f" [{self.subject}]" if self.subject else ""
        return f"{where}{self.severity.name.lower()}: {self.kind.value}{what}: {self.message}"


class DiagnosticReporter:
    """
    Collects diagnostics for one generation run, in the order they are raised.

    Every component reports through the same reporter, so the final list reads
    in pipeline order: tokenizing, parsing, modeling, blocklisting, emitting.
    """

    def __init__(self):
        self.diagnostics: List[Diagnostic] = []

    def report(self, kind: DiagnosticKind, message: str, subject: Optional[str] = None,
               location: Optional[str] = None, severity: Optional[Severity] = None) -> Diagnostic:
        diag = Diagnostic(
            kind=kind,
            severity=DEFAULT_SEVERITY[kind] if severity is None else severity,
            message=message,
            subject=subject,
            location=location,
        )
        self.diagnostics.append(diag)
        logger.log(_LOG_LEVELS[diag.severity], "%s", diag)
        return diag

    def report_error(self, kind: DiagnosticKind, error: "BindgenError", subject: Optional[str] = None) -> Diagnostic:
        """Turns an internal exception into a diagnostic at a component boundary."""
        return self.report(kind, str(error), subject=subject, location=error.location)

    def extend(self, diagnostics: Iterable[Diagnostic]):
        for diag in diagnostics:
            self.diagnostics.append(diag)

    def of_kind(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == kind]

    @property
    def has_fatal(self) -> bool:
        return any(d.severity == Severity.FATAL for d in self.diagnostics)

    def snapshot(self) -> Tuple[Diagnostic, ...]:
        return tuple(self.diagnostics)


# --- Internal exceptions ---
# Raised inside a component and converted to diagnostics where the component
# hands its result to the next one.

class BindgenError(Exception):
    def __init__(self, message: str, location: Optional[str] = None):
        super().__init__(message)
        self.location = location


class LexError(BindgenError):
    pass


class MalformedLiteral(BindgenError):
    pass


class MacroError(BindgenError):
    pass


class DeclarationError(BindgenError):
    def __init__(self, message: str, location: Optional[str] = None, name: Optional[str] = None):
        super().__init__(message, location)
        self.name = name


class LayoutError(BindgenError):
    pass


class OptionsError(BindgenError):
    pass
