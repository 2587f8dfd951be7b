"""clar2wasm driver — runs the passes over one compilation unit.

    source --parse--> Program --check--> CheckResult --cost--> CostReport
                                                   \\--emit--> ModuleArtifact

Diagnostics from every stage are collected in source order. Checking runs
over whatever parsed; cost analysis runs even when some functions failed to
check; code generation runs only when there is no error at all.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from clar2wasm.config import Clar2WasmConfig
from clar2wasm.costs import ExecutionCost
from clar2wasm.errors import CodegenError, CompileError, Diagnostic, SourceSpan, syntax_error
from clar2wasm.parser import parse
from clar2wasm.pass1_check import CheckResult, check
from clar2wasm.pass2_cost import CostReport, analyze
from clar2wasm.pass3_emit import CompileMode, ModuleArtifact, DEFAULT_MEMORY_PAGES, emit
from clar2wasm.principal import DEFAULT_DEPLOYER, Principal, PrincipalError, parse_principal

logger = logging.getLogger(__name__)

__all__ = [
    "CompileMode", "CompileState", "CompileResult",
    "read_source", "check_source", "compile_source", "compile_or_raise", "compile_file",
]


class CompileState(Enum):
    PARSING = "parsing"
    CHECKING = "checking"
    COST_ANALYSIS = "cost_analysis"
    CODEGEN = "codegen"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CompileResult:
    artifact: Optional[ModuleArtifact]
    diagnostics: list[Diagnostic] = field(default_factory=list)
    state: CompileState = CompileState.DONE
    cost_report: Optional[CostReport] = None
    filename: str = "<stdin>"

    @property
    def ok(self) -> bool:
        return self.state == CompileState.DONE

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.is_error]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if not d.is_error]

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "file": self.filename,
            "state": self.state.value,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }
        if self.artifact is not None:
            d["module"] = {
                "size": len(self.artifact.wasm),
                "exports": list(self.artifact.exports),
                "imports": list(self.artifact.imports),
            }
        if self.cost_report is not None:
            d["costs"] = self.cost_report.to_dict()
        return d


def _source_order(diagnostics: list[Diagnostic]) -> list[Diagnostic]:
    def key(d: Diagnostic):
        if d.span is None:
            return (1, 0, 0)
        return (0, d.span.start_line, d.span.start_column)
    return sorted(diagnostics, key=key)


def _contract_identity(filename: str, deployer: str,
                       contract_name: Optional[str]) -> Optional[Principal]:
    if contract_name is None:
        contract_name = os.path.splitext(os.path.basename(filename))[0]
    try:
        return parse_principal(f".{contract_name}", deployer)
    except PrincipalError:
        # names that are not valid contract names still compile, just without
        # a local identity for trait resolution
        return None


def _front_end(source: str, filename: str, deployer: str,
               contract_name: Optional[str]) -> tuple[CheckResult, list[Diagnostic]]:
    logger.debug("%s: %s", filename, CompileState.PARSING.value)
    program = parse(source, filename=filename, deployer=deployer)
    diagnostics = list(program.diagnostics)

    logger.debug("%s: %s", filename, CompileState.CHECKING.value)
    checked = check(program, contract=_contract_identity(filename, deployer, contract_name))
    diagnostics.extend(checked.diagnostics)
    return checked, diagnostics


def read_source(path: str) -> str:
    """Read a contract as UTF-8.

    Raises:
        OSError: The file cannot be read.
        CompileError: The bytes are not valid UTF-8; the diagnostic points at
            the first undecodable byte.
    """
    with open(path, "rb") as f:
        raw = f.read()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        line = raw.count(b"\n", 0, e.start) + 1
        line_start = raw.rfind(b"\n", 0, e.start) + 1
        column = len(raw[line_start:e.start].decode("utf-8", errors="replace")) + 1
        raise CompileError(syntax_error(
            f"Source is not valid UTF-8: {e.reason} (byte 0x{raw[e.start]:02x})",
            SourceSpan.point(line, column, path),
        ))


def check_source(source: str, filename: str = "<stdin>",
                 deployer: str = DEFAULT_DEPLOYER,
                 contract_name: Optional[str] = None) -> CompileResult:
    """Parse and type check only. The result never carries a module."""
    _, diagnostics = _front_end(source, filename, deployer, contract_name)
    state = CompileState.FAILED if any(d.is_error for d in diagnostics) else CompileState.DONE
    return CompileResult(None, _source_order(diagnostics), state, None, filename)


def compile_source(source: str, filename: str = "<stdin>",
                   mode: CompileMode = CompileMode.MODULE,
                   deployer: str = DEFAULT_DEPLOYER,
                   contract_name: Optional[str] = None,
                   cost_limits: Optional[ExecutionCost] = None,
                   memory_pages: int = DEFAULT_MEMORY_PAGES) -> CompileResult:
    """Compile Clarity source text to a wasm module.

    Never raises for problems in the source; they are reported as
    diagnostics and the result's state is FAILED.
    """
    start = time.time()
    checked, diagnostics = _front_end(source, filename, deployer, contract_name)

    state = CompileState.COST_ANALYSIS
    logger.debug("%s: %s", filename, state.value)
    report = analyze(checked, limits=cost_limits)
    diagnostics.extend(report.diagnostics)

    if any(d.is_error for d in diagnostics):
        logger.debug("%s: failed with %d error(s)", filename,
                     sum(1 for d in diagnostics if d.is_error))
        return CompileResult(None, _source_order(diagnostics), CompileState.FAILED, report, filename)

    state = CompileState.CODEGEN
    logger.debug("%s: %s", filename, state.value)
    try:
        artifact = emit(checked, mode=mode, memory_pages=memory_pages)
    except CodegenError as e:
        logger.error("%s: code generation failed: %s", filename, e)
        diagnostics.append(e.to_diagnostic())
        return CompileResult(None, _source_order(diagnostics), CompileState.FAILED, report, filename)

    elapsed = (time.time() - start) * 1000
    logger.debug("%s: done in %.1fms (%d bytes)", filename, elapsed, len(artifact.wasm))
    return CompileResult(artifact, _source_order(diagnostics), CompileState.DONE, report, filename)


def compile_or_raise(source: str, filename: str = "<stdin>", **options: Any) -> ModuleArtifact:
    """Like ``compile_source`` but raises CompileError instead of returning diagnostics."""
    result = compile_source(source, filename, **options)
    if result.artifact is None:
        raise CompileError(result.errors)
    return result.artifact


def compile_file(path: str, config: Optional[Clar2WasmConfig] = None,
                 mode: Optional[CompileMode] = None) -> CompileResult:
    """Read and compile one ``.clar`` file with the given (or default) configuration."""
    config = config or Clar2WasmConfig()
    try:
        source = read_source(path)
    except CompileError as e:
        logger.error("%s: %s", path, e)
        return CompileResult(None, list(e.diagnostics), CompileState.FAILED, None, path)
    return compile_source(
        source,
        filename=path,
        mode=mode or config.compile_mode(),
        deployer=config.deployer,
        contract_name=config.contract_name or None,
        cost_limits=config.limits(),
        memory_pages=config.stack_size_pages,
    )
