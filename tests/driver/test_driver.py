"""Driver Tests — DRV-001 through DRV-006.

End-to-end behaviour of ``compile_source``: stage outcomes, diagnostic
collection and ordering, and the convenience wrappers.
"""

import json

import pytest

from clar2wasm.config import Clar2WasmConfig
from clar2wasm.costs import ExecutionCost
from clar2wasm.driver import (
    CompileMode, CompileState, check_source, compile_file, compile_or_raise, compile_source,
    read_source,
)
from clar2wasm.errors import CompileError, ErrorKind, Severity, Stage
from clar2wasm.parallel import compile_many
from clar2wasm.tools import inspect_module


def _position(source, text):
    index = source.index(text)
    line = source.count("\n", 0, index) + 1
    column = index - (source.rfind("\n", 0, index) + 1) + 1
    return line, column


def _start(diag):
    return diag.span.start_line, diag.span.start_column


class TestDRV001:
    """DRV-001: Final states.
    Priority: P0
    """

    def test_done(self):
        """priority_p0: A valid contract produces a module and no diagnostics."""
        result = compile_source("(define-read-only (f) u1)")
        assert result.state == CompileState.DONE
        assert result.ok
        assert result.diagnostics == []
        assert result.artifact.exports == ("f", ".top-level")

    def test_failed_has_no_artifact(self):
        """priority_p0: Any error means no module at all."""
        result = compile_source("(define-read-only (f) missing)")
        assert result.state == CompileState.FAILED
        assert result.artifact is None
        assert not result.ok

    def test_cost_warning_still_done(self):
        """priority_p0: Exceeding a cost limit does not stop code generation."""
        source = "(define-read-only (f (x (buff 1000))) (sha256 x))"
        result = compile_source(source, cost_limits=ExecutionCost(runtime=10))
        assert result.state == CompileState.DONE
        assert result.artifact is not None
        (warning,) = result.warnings
        assert warning.kind == ErrorKind.COST_WARNING
        assert result.errors == []

    def test_cost_report_on_failure(self):
        """priority_p2: Functions that did check still get an estimate."""
        source = "(define-read-only (good) u1)\n(define-read-only (bad) missing)"
        result = compile_source(source)
        assert result.state == CompileState.FAILED
        assert "good" in result.cost_report.functions


class TestDRV002:
    """DRV-002: Diagnostics point at the offending source.
    Priority: P0
    """

    def test_bound_error_at_literal(self):
        """priority_p0: An oversized literal is flagged at the literal."""
        source = "(define-data-var v (buff 2) 0x010203)"
        (diag,) = compile_source(source).errors
        assert diag.kind == ErrorKind.TYPE_ERROR
        assert diag.details["bound_violation"] is True
        assert _start(diag) == _position(source, "0x010203")

    def test_arity_error_at_call(self):
        """priority_p0: Wrong argument count is flagged at the call."""
        source = "(define-private (f (a int)) a)\n(define-read-only (g) (f))"
        (diag,) = compile_source(source).errors
        assert _start(diag) == _position(source, "(f)")
        assert diag.details["callee"] == "f"

    def test_filename_in_spans(self):
        """priority_p2: Spans carry the file being compiled."""
        (diag,) = compile_source("(define-read-only (f) x)", filename="a.clar").errors
        assert diag.span.file == "a.clar"


class TestDRV003:
    """DRV-003: Multi-error collection.
    Priority: P0
    """

    def test_errors_in_source_order(self):
        """priority_p0: Every error is reported, sorted by position."""
        source = """(define-read-only (d) (not 1))
(define-read-only (a) (+ 1 u1))
(define-read-only (b) missing)
(define-public (c) u1)
"""
        errors = compile_source(source).errors
        lines = [d.span.start_line for d in errors]
        assert lines == sorted(lines)
        assert set(lines) == {1, 2, 3, 4}

    def test_parse_and_check_errors_together(self):
        """priority_p0: A syntax error does not hide type errors elsewhere."""
        source = "(define-constant a 0x1)\n(define-read-only (f) missing)"
        errors = compile_source(source).errors
        assert [d.stage for d in errors] == [Stage.PARSE, Stage.CHECK]
        assert [d.span.start_line for d in errors] == [1, 2]

    def test_forward_reference_compiles(self):
        """priority_p0: Functions may call functions defined later in the file."""
        source = "(define-read-only (a) (b))\n(define-private (b) u7)"
        result = compile_source(source)
        assert result.ok
        assert inspect_module(result.artifact.wasm).export_names() == ["a", ".top-level"]


class TestDRV004:
    """DRV-004: Wrappers.
    Priority: P1
    """

    def test_compile_or_raise(self):
        """priority_p1: Errors become a CompileError carrying every diagnostic."""
        with pytest.raises(CompileError) as info:
            compile_or_raise("(define-read-only (a) x)\n(define-read-only (b) y)")
        assert len(info.value.diagnostics) == 2
        assert all(d.severity == Severity.ERROR for d in info.value.diagnostics)
        payload = json.loads(info.value.to_json())
        assert [d["details"]["name"] for d in payload] == ["x", "y"]

    def test_compile_or_raise_returns_artifact(self):
        """priority_p1: Success returns the module artifact itself."""
        artifact = compile_or_raise("(define-read-only (f) true)")
        assert artifact.wasm.startswith(b"\x00asm")

    def test_compile_file(self, tmp_path):
        """priority_p1: Files are compiled with the configuration's options."""
        path = tmp_path / "counter.clar"
        path.write_text("(define-data-var n uint u0)\n(define-read-only (get) (var-get n))\n")
        config = Clar2WasmConfig(stack_size_pages=2)
        result = compile_file(str(path), config)
        assert result.ok
        assert result.filename == str(path)
        assert inspect_module(result.artifact.wasm).memory_pages == 2

    def test_compile_file_debug_mode(self, tmp_path):
        """priority_p2: An explicit mode overrides the configuration."""
        path = tmp_path / "token.clar"
        path.write_text("(define-read-only (f) u1)\n")
        result = compile_file(str(path), mode=CompileMode.DEBUG)
        assert "clarity.debug" in inspect_module(result.artifact.wasm).custom


class TestDRV005:
    """DRV-005: Serialisation of results.
    Priority: P2
    """

    def test_to_dict_done(self):
        """priority_p2: Successful results describe the module."""
        d = compile_source("(define-read-only (f) u1)", filename="f.clar").to_dict()
        assert d["state"] == "done"
        assert d["file"] == "f.clar"
        assert d["module"]["exports"] == ["f", ".top-level"]
        assert "costs" in d

    def test_to_dict_failed(self):
        """priority_p2: Failed results list errors and no module."""
        d = compile_source("(define-read-only (f) x)").to_dict()
        assert d["state"] == "failed"
        assert "module" not in d
        assert d["errors"][0]["kind"] == "type_error"

    def test_invalid_contract_name_still_compiles(self):
        """priority_p2: A file name that is not a contract name only loses local traits."""
        result = compile_source("(define-read-only (f) u1)", filename="my contract!.clar")
        assert result.ok


class TestDRV006:
    """DRV-006: Source files that cannot be decoded, and check-only runs.
    Priority: P1
    """

    BAD_BYTES = b'(define-read-only (f) u1)\n(define-read-only (g) "a\xffb")\n'

    def test_undecodable_file_is_one_failed_unit(self, tmp_path):
        """priority_p1: Invalid UTF-8 becomes a syntax error at the first bad byte."""
        path = tmp_path / "bad.clar"
        path.write_bytes(self.BAD_BYTES)
        result = compile_file(str(path))
        assert result.state == CompileState.FAILED
        assert result.artifact is None
        (diag,) = result.errors
        assert diag.kind == ErrorKind.SYNTAX_ERROR
        assert "UTF-8" in diag.message
        assert _start(diag) == (2, 25)
        assert diag.span.file == str(path)
        assert result.to_dict()["state"] == "failed"

    def test_read_source_raises_compile_error(self, tmp_path):
        """priority_p2: read_source reports decoding problems as CompileError."""
        path = tmp_path / "bad.clar"
        path.write_bytes(self.BAD_BYTES)
        with pytest.raises(CompileError):
            read_source(str(path))

    def test_batch_with_one_bad_file(self, tmp_path):
        """priority_p1: One undecodable file does not abort the other units."""
        ok = tmp_path / "ok.clar"
        ok.write_text("(define-read-only (f) u1)\n")
        bad = tmp_path / "bad.clar"
        bad.write_bytes(self.BAD_BYTES)
        results = compile_many([str(ok), str(bad)], workers=1)
        assert [r["state"] for r in results] == ["done", "failed"]
        assert "UTF-8" in results[1]["errors"][0]["message"]

    def test_check_source(self):
        """priority_p1: check_source stops after Pass 1 and never builds a module."""
        clean = check_source("(define-read-only (f) u1)")
        assert clean.state == CompileState.DONE
        assert clean.artifact is None and clean.cost_report is None
        broken = check_source("(define-read-only (f) x)\n(define-constant c (")
        assert broken.state == CompileState.FAILED
        assert [d.stage for d in broken.errors] == [Stage.CHECK, Stage.PARSE]
