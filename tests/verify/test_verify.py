"""Stdlib Verification Tests — VER-001 through VER-003.

Requires z3-solver. Each proof quantifies over all 2^256 argument pairs,
so these are slower than the rest of the suite.
"""

import pytest
import z3

from clar2wasm import stdlib
from clar2wasm.abi import RuntimeErrorCode
from clar2wasm.verify import UnsupportedInstruction, execute, verify_helper, verify_stdlib
from clar2wasm.wasm import InstrBuilder, ValType
from clar2wasm.wasm.module import Function


class TestVER001:
    """VER-001: The integer helpers match 128-bit arithmetic.
    Priority: P0
    """

    @pytest.mark.parametrize("name", stdlib.VERIFIED_HELPERS)
    def test_helper_proven(self, name):
        """priority_p0: No counterexample exists."""
        result = verify_helper(name)
        assert result.proven, result.to_dict()

    def test_verify_all(self):
        """priority_p1: The default run covers every verifiable helper."""
        results = verify_stdlib()
        assert [r.helper for r in results] == list(stdlib.VERIFIED_HELPERS)

    def test_subset(self):
        """priority_p2: Helpers can be selected by name."""
        results = verify_stdlib(["add-uint"])
        assert len(results) == 1 and results[0].proven


class TestVER002:
    """VER-002: Symbolic execution.
    Priority: P1
    """

    def test_trap_codes_collected(self):
        """priority_p1: Unsigned subtraction traps with the underflow code only."""
        fn = stdlib.build_helper("sub-uint")
        args = list(z3.BitVecs("a b c d", 64))
        run = execute(fn, args)
        assert run.codes == {int(RuntimeErrorCode.UNDERFLOW)}
        assert len(run.results) == 2

    def test_unsupported_branch(self):
        """priority_p1: Control flow other than a trap guard is refused."""
        body = InstrBuilder().i32_const(1).if_().op("nop").end()
        fn = Function("f", (), (), body=list(body))
        with pytest.raises(UnsupportedInstruction):
            execute(fn, [])


class TestVER003:
    """VER-003: Result reporting.
    Priority: P2
    """

    def test_to_dict(self):
        """priority_p2: Proven results carry no counterexample."""
        assert verify_helper("lt-uint").to_dict() == {"helper": "lt-uint", "proven": True}

    def test_missing_trap_reported(self, monkeypatch):
        """priority_p2: An adder without its overflow guard is rejected."""
        def unguarded(name):
            b = InstrBuilder().local_get(0).local_get(1)
            return Function(f"stdlib.{name}", (ValType.I64,) * 4, (ValType.I64,) * 2, body=list(b))
        monkeypatch.setattr(stdlib, "build_helper", unguarded)
        result = verify_helper("add-uint")
        assert not result.proven
        assert "traps with code" in result.message

    def test_counterexample_reported(self, monkeypatch):
        """priority_p2: A wrong comparison yields a counterexample over its inputs."""
        def always_true(name):
            b = InstrBuilder().i32_const(1)
            return Function(f"stdlib.{name}", (ValType.I64,) * 4, (ValType.I32,), body=list(b))
        monkeypatch.setattr(stdlib, "build_helper", always_true)
        result = verify_helper("lt-uint")
        assert not result.proven
        assert result.message == "counterexample found"
        assert len(result.counterexample) == 4
