"""Stdlib verification via Z3.

Symbolically executes the generated 128-bit helpers over 64-bit bit-vectors
and proves them equivalent to 128-bit arithmetic:

    * when the helper does not trap, its (low, high) result equals the
      128-bit result of the operation;
    * it traps exactly when the operation overflows (or underflows), and
      with the runtime error code for that condition.

Only the straight-line subset the helpers are written in is understood,
plus trap guards (see ``stdlib``); anything else is reported as unsupported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import z3

from clar2wasm import stdlib
from clar2wasm.abi import RuntimeErrorCode
from clar2wasm.wasm import Instr, ValType

logger = logging.getLogger(__name__)


class UnsupportedInstruction(Exception):
    pass


@dataclass
class VerificationResult:
    helper: str
    proven: bool
    message: str = ""
    counterexample: Optional[dict[str, int]] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"helper": self.helper, "proven": self.proven}
        if self.message:
            d["message"] = self.message
        if self.counterexample:
            d["counterexample"] = self.counterexample
        return d


@dataclass
class _Execution:
    results: list[Any]
    trap: Any
    codes: set[int]


def _bits(vt: ValType) -> int:
    return 32 if vt == ValType.I32 else 64


def _flag(cond) -> Any:
    return z3.If(cond, z3.BitVecVal(1, 32), z3.BitVecVal(0, 32))


_BINARY = {
    "add": lambda a, b: a + b,
    "sub": lambda a, b: a - b,
    "and": lambda a, b: a & b,
    "or": lambda a, b: a | b,
    "xor": lambda a, b: a ^ b,
}

_COMPARE = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "lt_u": z3.ULT, "le_u": z3.ULE, "gt_u": z3.UGT, "ge_u": z3.UGE,
    "lt_s": lambda a, b: a < b, "le_s": lambda a, b: a <= b,
    "gt_s": lambda a, b: a > b, "ge_s": lambda a, b: a >= b,
}


def execute(function, args: list[Any]) -> _Execution:
    """Run a helper body over symbolic arguments."""
    local_types = list(function.params) + list(function.locals)
    env = {i: (args[i] if i < len(args) else z3.BitVecVal(0, _bits(vt)))
           for i, vt in enumerate(local_types)}
    stack: list[Any] = []
    trap = z3.BoolVal(False)
    codes: set[int] = set()
    body: list[Instr] = function.body
    pc = 0
    while pc < len(body):
        ins = body[pc]
        op = ins.op
        if op == "local.get":
            stack.append(env[ins.args[0]])
        elif op == "local.set":
            env[ins.args[0]] = stack.pop()
        elif op == "local.tee":
            env[ins.args[0]] = stack[-1]
        elif op == "i32.const":
            stack.append(z3.BitVecVal(ins.args[0], 32))
        elif op == "i64.const":
            stack.append(z3.BitVecVal(ins.args[0], 64))
        elif op == "i64.extend_i32_u":
            stack.append(z3.ZeroExt(32, stack.pop()))
        elif op in ("i32.eqz", "i64.eqz"):
            value = stack.pop()
            stack.append(_flag(value == 0))
        elif op == "if":
            guard = body[pc + 1:pc + 5]
            shape = [i.op for i in guard]
            if ins.args[0] or shape != ["i32.const", "call", "unreachable", "end"] \
                    or guard[1].args[0] != stdlib.RUNTIME_ERROR:
                raise UnsupportedInstruction("branch that is not a trap guard")
            cond = stack.pop() != 0
            trap = z3.Or(trap, cond)
            codes.add(guard[0].args[0])
            pc += 5
            continue
        else:
            kind, _, name = op.partition(".")
            if kind not in ("i32", "i64"):
                raise UnsupportedInstruction(op)
            b, a = stack.pop(), stack.pop()
            if name in _BINARY:
                stack.append(_BINARY[name](a, b))
            elif name in _COMPARE:
                stack.append(_flag(_COMPARE[name](a, b)))
            else:
                raise UnsupportedInstruction(op)
        pc += 1
    return _Execution(stack, trap, codes)


# ---------------------------------------------------------------------------
# Reference semantics
# ---------------------------------------------------------------------------

def _wide(lo, hi):
    return z3.Concat(hi, lo)


def _arithmetic(op: str, signed: bool) -> tuple[Callable, Callable, RuntimeErrorCode]:
    extend = z3.SignExt if signed else z3.ZeroExt

    def result(a, b):
        return a + b if op == "add" else a - b

    def overflows(a, b):
        exact = extend(1, a) + extend(1, b) if op == "add" else extend(1, a) - extend(1, b)
        return exact != extend(1, result(a, b))

    code = RuntimeErrorCode.UNDERFLOW if op == "sub" and not signed else RuntimeErrorCode.OVERFLOW
    return result, overflows, code


_ORDER = {
    ("lt", True): lambda a, b: a < b, ("le", True): lambda a, b: a <= b,
    ("gt", True): lambda a, b: a > b, ("ge", True): lambda a, b: a >= b,
    ("lt", False): z3.ULT, ("le", False): z3.ULE,
    ("gt", False): z3.UGT, ("ge", False): z3.UGE,
}


def _model_values(model, names: list[Any]) -> dict[str, int]:
    return {str(v): model.eval(v, model_completion=True).as_long() for v in names}


def verify_helper(name: str) -> VerificationResult:
    """Prove one helper from ``stdlib.VERIFIED_HELPERS`` correct."""
    op, _, kind = name.partition("-")
    signed = kind == "int"
    function = stdlib.build_helper(name)
    a_lo, a_hi, b_lo, b_hi = z3.BitVecs(f"{name}.a_lo {name}.a_hi {name}.b_lo {name}.b_hi", 64)
    inputs = [a_lo, a_hi, b_lo, b_hi]
    try:
        run = execute(function, inputs)
    except UnsupportedInstruction as e:
        return VerificationResult(name, False, f"unsupported instruction: {e}")
    a, b = _wide(a_lo, a_hi), _wide(b_lo, b_hi)

    if op in ("add", "sub"):
        if len(run.results) != 2:
            return VerificationResult(name, False, "expected a (low, high) result")
        result, overflows, code = _arithmetic(op, signed)
        claim = z3.And(
            run.trap == overflows(a, b),
            z3.Implies(z3.Not(run.trap), _wide(*run.results) == result(a, b)),
        )
        if run.codes != {int(code)}:
            return VerificationResult(name, False, f"traps with code(s) {sorted(run.codes)}, expected {int(code)}")
    else:
        if len(run.results) != 1:
            return VerificationResult(name, False, "expected a single i32 result")
        claim = z3.And(z3.Not(run.trap), (run.results[0] != 0) == _ORDER[(op, signed)](a, b))

    solver = z3.Solver()
    solver.add(z3.Not(claim))
    outcome = solver.check()
    if outcome == z3.unsat:
        logger.debug("verified %s", name)
        return VerificationResult(name, True)
    if outcome == z3.sat:
        return VerificationResult(name, False, "counterexample found",
                                  _model_values(solver.model(), inputs))
    return VerificationResult(name, False, f"solver returned {outcome}")


def verify_stdlib(names: Optional[list[str]] = None) -> list[VerificationResult]:
    """Verify every helper in ``names`` (default: all verifiable helpers)."""
    return [verify_helper(n) for n in (names or stdlib.VERIFIED_HELPERS)]
