"""Structured diagnostics for the clar2wasm compiler.

Every diagnostic is machine-readable: a kind, a severity, the pipeline stage
that produced it and the exact source span it refers to, so tooling can
underline the offending text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    SYNTAX_ERROR = "syntax_error"
    TYPE_ERROR = "type_error"
    CODEGEN_ERROR = "codegen_error"
    COST_WARNING = "cost_warning"


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


class Stage(Enum):
    PARSE = "parse"
    CHECK = "check"
    COST = "cost"
    CODEGEN = "codegen"


@dataclass(frozen=True)
class SourceSpan:
    """A half-open region of source text, 1-based lines and columns."""
    start_line: int
    start_column: int
    end_line: int
    end_column: int
    file: str = "<stdin>"

    @classmethod
    def point(cls, line: int, column: int, file: str = "<stdin>") -> SourceSpan:
        return cls(line, column, line, column + 1, file)

    def contains(self, other: SourceSpan) -> bool:
        return ((self.start_line, self.start_column) <= (other.start_line, other.start_column)
                and (other.end_line, other.end_column) <= (self.end_line, self.end_column))

    def merge(self, other: SourceSpan) -> SourceSpan:
        start = min((self.start_line, self.start_column), (other.start_line, other.start_column))
        end = max((self.end_line, self.end_column), (other.end_line, other.end_column))
        return SourceSpan(start[0], start[1], end[0], end[1], self.file)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "start": {"line": self.start_line, "column": self.start_column},
            "end": {"line": self.end_line, "column": self.end_column},
        }

    def __str__(self) -> str:
        return f"{self.file}:{self.start_line}:{self.start_column}"


@dataclass
class Diagnostic:
    kind: ErrorKind
    message: str
    span: Optional[SourceSpan] = None
    stage: Stage = Stage.CHECK
    severity: Severity = Severity.ERROR
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "stage": self.stage.value,
            "message": self.message,
        }
        if self.span:
            d["span"] = self.span.to_dict()
        if self.details:
            d["details"] = self.details
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def __str__(self) -> str:
        loc = f" at {self.span}" if self.span else ""
        return f"[{self.kind.value}]{loc}: {self.message}"


def syntax_error(
    message: str,
    span: Optional[SourceSpan] = None,
    expected: Optional[str] = None,
) -> Diagnostic:
    details: dict[str, Any] = {}
    if expected:
        details["expected"] = expected
    return Diagnostic(
        kind=ErrorKind.SYNTAX_ERROR,
        message=message,
        span=span,
        stage=Stage.PARSE,
        details=details,
    )


def type_error(
    expected_type: str,
    actual_type: str,
    span: Optional[SourceSpan] = None,
    context: Optional[str] = None,
) -> Diagnostic:
    details: dict[str, Any] = {
        "expected_type": expected_type,
        "actual_type": actual_type,
    }
    if context:
        details["context"] = context
    return Diagnostic(
        kind=ErrorKind.TYPE_ERROR,
        message=f"Expected type '{expected_type}', got '{actual_type}'",
        span=span,
        details=details,
    )


def check_error(message: str, span: Optional[SourceSpan] = None, **details: Any) -> Diagnostic:
    """A type-checking failure that is not a plain expected/actual mismatch."""
    return Diagnostic(
        kind=ErrorKind.TYPE_ERROR,
        message=message,
        span=span,
        details=dict(details),
    )


def arity_error(
    callee: str,
    expected: str,
    actual: int,
    span: Optional[SourceSpan] = None,
) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.TYPE_ERROR,
        message=f"'{callee}' expects {expected} argument(s), got {actual}",
        span=span,
        details={"callee": callee, "expected_args": expected, "actual_args": actual},
    )


def name_error(name: str, span: Optional[SourceSpan] = None) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.TYPE_ERROR,
        message=f"Unresolved identifier '{name}'",
        span=span,
        details={"name": name},
    )


def bound_error(
    declared: str,
    actual: str,
    span: Optional[SourceSpan] = None,
) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.TYPE_ERROR,
        message=f"Value of type '{actual}' exceeds declared bound '{declared}'",
        span=span,
        details={"expected_type": declared, "actual_type": actual, "bound_violation": True},
    )


def cost_warning(
    function: str,
    dimension: str,
    estimate: int,
    limit: int,
    span: Optional[SourceSpan] = None,
) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.COST_WARNING,
        message=f"Estimated {dimension} cost of '{function}' ({estimate}) exceeds limit {limit}",
        span=span,
        stage=Stage.COST,
        severity=Severity.WARNING,
        details={"function": function, "dimension": dimension,
                 "estimate": estimate, "limit": limit},
    )


class CompileError(Exception):
    """Exception wrapping one or more Diagnostics."""

    def __init__(self, diagnostics: list[Diagnostic] | Diagnostic):
        if isinstance(diagnostics, Diagnostic):
            diagnostics = [diagnostics]
        self.diagnostics = diagnostics
        super().__init__(self._format())

    def _format(self) -> str:
        return "\n".join(str(d) for d in self.diagnostics)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps([d.to_dict() for d in self.diagnostics], indent=indent)


class CodegenError(Exception):
    """Internal-consistency failure in the code generator.

    Raised only when a checked tree contains a construct the emitter cannot
    lower; it indicates a compiler bug rather than a user error.
    """

    def __init__(self, message: str, span: Optional[SourceSpan] = None):
        self.span = span
        super().__init__(message)

    def to_diagnostic(self) -> Diagnostic:
        return Diagnostic(
            kind=ErrorKind.CODEGEN_ERROR,
            message=str(self),
            span=self.span,
            stage=Stage.CODEGEN,
        )


class ConfigError(Exception):
    """Raised for an unreadable or malformed configuration file."""
