"""Generated runtime helpers.

Clarity integers are 128 bits wide and travel as (low i64, high i64) pairs;
these helpers implement their arithmetic and comparisons, plus the byte
sequence routines shared by comparisons, equality and buffer conversion, and
the arena's memory growth.
The emitter asks for helpers by name and only the ones reachable from the
contract end up in the module.

Addition, subtraction and the integer comparisons are straight-line code
whose only branches are trap guards of the form

    <condition> if  i32.const <code>  call runtime_error  unreachable  end

which is the shape ``verify`` knows how to execute symbolically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from clar2wasm.abi import RuntimeErrorCode, host_function
from clar2wasm.wasm import Function, InstrBuilder, ValType

I32, I64 = ValType.I32, ValType.I64
U128 = (I64, I64)

RUNTIME_ERROR = host_function("runtime_error").symbol

_LOW32 = 0xFFFFFFFF
_TOP_BIT = 1 << 63


class _Writer:
    """Builds one helper: params come first in the local index space."""

    def __init__(self, name: str, params: tuple[ValType, ...], results: tuple[ValType, ...]):
        self.function = Function(name, params, results)
        self.b = InstrBuilder()

    def local(self, valtype: ValType) -> int:
        self.function.locals.append(valtype)
        return len(self.function.params) + len(self.function.locals) - 1

    def get(self, *indices: int) -> _Writer:
        for i in indices:
            self.b.local_get(i)
        return self

    def trap(self, code: RuntimeErrorCode) -> None:
        """Trap with ``code`` if the i32 on the stack is non-zero."""
        self.b.if_()
        self.b.i32_const(int(code))
        self.b.call(RUNTIME_ERROR)
        self.b.op("unreachable")
        self.b.end()

    def finish(self) -> Function:
        self.function.body = list(self.b.instrs)
        return self.function


@dataclass
class _Helper:
    params: tuple[ValType, ...]
    results: tuple[ValType, ...]
    build: Callable[[_Writer], None]
    deps: tuple[str, ...] = ()
    traps: bool = False


_HELPERS: dict[str, _Helper] = {}


def _helper(name: str, params, results, deps=(), traps=False):
    def register(build):
        _HELPERS[name] = _Helper(tuple(params), tuple(results), build, tuple(deps), traps)
        return build
    return register


# ---------------------------------------------------------------------------
# Addition and subtraction
# ---------------------------------------------------------------------------

def _add(w: _Writer, signed: bool) -> None:
    b = w.b
    lo, hi = w.local(I64), w.local(I64)
    w.get(0, 2)
    b.op("i64.add").local_tee(lo)
    w.get(0)
    b.op("i64.lt_u", "i64.extend_i32_u")
    w.get(1)
    b.op("i64.add")
    w.get(3)
    b.op("i64.add").local_set(hi)
    if signed:
        # both operands share a sign the result does not have
        w.get(1, hi)
        b.op("i64.xor")
        w.get(3, hi)
        b.op("i64.xor", "i64.and")
        b.i64_const(0).op("i64.lt_s")
    else:
        # the sum wrapped iff it is smaller than the first operand
        w.get(hi, 1)
        b.op("i64.lt_u")
        w.get(hi, 1)
        b.op("i64.eq")
        w.get(lo, 0)
        b.op("i64.lt_u", "i32.and", "i32.or")
    w.trap(RuntimeErrorCode.OVERFLOW)
    w.get(lo, hi)


def _sub(w: _Writer, signed: bool) -> None:
    b = w.b
    lo, hi = w.local(I64), w.local(I64)
    w.get(0, 2)
    b.op("i64.sub").local_set(lo)
    w.get(1, 3)
    b.op("i64.sub")
    w.get(0, 2)
    b.op("i64.lt_u", "i64.extend_i32_u", "i64.sub").local_set(hi)
    if signed:
        w.get(1, 3)
        b.op("i64.xor")
        w.get(1, hi)
        b.op("i64.xor", "i64.and")
        b.i64_const(0).op("i64.lt_s")
        w.trap(RuntimeErrorCode.OVERFLOW)
    else:
        w.get(1, 3)
        b.op("i64.lt_u")
        w.get(1, 3)
        b.op("i64.eq")
        w.get(0, 2)
        b.op("i64.lt_u", "i32.and", "i32.or")
        w.trap(RuntimeErrorCode.UNDERFLOW)
    w.get(lo, hi)


_helper("add-int", U128 + U128, U128, traps=True)(lambda w: _add(w, True))
_helper("add-uint", U128 + U128, U128, traps=True)(lambda w: _add(w, False))
_helper("sub-int", U128 + U128, U128, traps=True)(lambda w: _sub(w, True))
_helper("sub-uint", U128 + U128, U128, traps=True)(lambda w: _sub(w, False))


# ---------------------------------------------------------------------------
# Integer comparisons
# ---------------------------------------------------------------------------

def _compare(w: _Writer, hi_op: str, lo_op: str) -> None:
    b = w.b
    w.get(1, 3)
    b.op(hi_op)
    w.get(1, 3)
    b.op("i64.eq")
    w.get(0, 2)
    b.op(lo_op, "i32.and", "i32.or")


for _suffix, _sign in (("int", "s"), ("uint", "u")):
    for _name, _strict, _lo in (("lt", "lt", "lt_u"), ("le", "lt", "le_u"),
                                ("gt", "gt", "gt_u"), ("ge", "gt", "ge_u")):
        _helper(f"{_name}-{_suffix}", U128 + U128, (I32,))(
            lambda w, hi_op=f"i64.{_strict}_{_sign}", lo_op=f"i64.{_lo}": _compare(w, hi_op, lo_op))


# ---------------------------------------------------------------------------
# Multiplication
# ---------------------------------------------------------------------------

@_helper("neg", U128, U128)
def _neg(w: _Writer) -> None:
    b = w.b
    b.i64_const(0)
    w.get(0)
    b.op("i64.sub")
    b.i64_const(0)
    w.get(1)
    b.op("i64.sub")
    w.get(0)
    b.i64_const(0).op("i64.ne", "i64.extend_i32_u", "i64.sub")


@_helper("mul-wide", (I64, I64), U128)
def _mul_wide(w: _Writer) -> None:
    """64 x 64 -> 128 bit product through 32-bit halves."""
    b = w.b
    a0, a1, b0, b1 = (w.local(I64) for _ in range(4))
    p00, p01, p10, p11, mid = (w.local(I64) for _ in range(5))
    for src, low, high in ((0, a0, a1), (1, b0, b1)):
        w.get(src)
        b.i64_const(_LOW32).op("i64.and").local_set(low)
        w.get(src)
        b.i64_const(32).op("i64.shr_u").local_set(high)
    for x, y, dest in ((a0, b0, p00), (a0, b1, p01), (a1, b0, p10), (a1, b1, p11)):
        w.get(x, y)
        b.op("i64.mul").local_set(dest)
    w.get(p00)
    b.i64_const(32).op("i64.shr_u")
    w.get(p01)
    b.i64_const(_LOW32).op("i64.and", "i64.add")
    w.get(p10)
    b.i64_const(_LOW32).op("i64.and", "i64.add").local_set(mid)
    # low word
    w.get(p00)
    b.i64_const(_LOW32).op("i64.and")
    w.get(mid)
    b.i64_const(32).op("i64.shl", "i64.or")
    # high word
    w.get(p11, p01)
    b.i64_const(32).op("i64.shr_u", "i64.add")
    w.get(p10)
    b.i64_const(32).op("i64.shr_u", "i64.add")
    w.get(mid)
    b.i64_const(32).op("i64.shr_u", "i64.add")


@_helper("mul-uint", U128 + U128, U128, deps=("mul-wide",), traps=True)
def _mul_uint(w: _Writer) -> None:
    b = w.b
    lo, hi, c1lo, c1hi, c2lo, c2hi, total = (w.local(I64) for _ in range(7))
    w.get(1)
    b.i64_const(0).op("i64.ne")
    w.get(3)
    b.i64_const(0).op("i64.ne", "i32.and")
    w.trap(RuntimeErrorCode.OVERFLOW)
    for x, y, low, high in ((0, 2, lo, hi), (1, 2, c1lo, c1hi), (0, 3, c2lo, c2hi)):
        w.get(x, y)
        b.call("stdlib.mul-wide").local_set(high).local_set(low)
    w.get(c1hi)
    b.i64_const(0).op("i64.ne")
    w.get(c2hi)
    b.i64_const(0).op("i64.ne", "i32.or")
    w.trap(RuntimeErrorCode.OVERFLOW)
    # at most one cross product is non-zero
    w.get(hi, c1lo)
    b.op("i64.add")
    w.get(c2lo)
    b.op("i64.add").local_set(total)
    w.get(total, hi)
    b.op("i64.lt_u")
    w.trap(RuntimeErrorCode.OVERFLOW)
    w.get(lo, total)


def _magnitude(w: _Writer, lo: int, hi: int, dest_lo: int, dest_hi: int) -> None:
    b = w.b
    w.get(hi)
    b.i64_const(0).op("i64.lt_s")
    b.if_(U128)
    w.get(lo, hi)
    b.call("stdlib.neg")
    b.else_()
    w.get(lo, hi)
    b.end()
    b.local_set(dest_hi).local_set(dest_lo)


def _apply_sign(w: _Writer, negative: int, lo: int, hi: int) -> None:
    b = w.b
    w.get(negative)
    b.if_(U128)
    w.get(lo, hi)
    b.call("stdlib.neg")
    b.else_()
    w.get(lo, hi)
    b.end()


@_helper("mul-int", U128 + U128, U128, deps=("mul-uint", "neg"), traps=True)
def _mul_int(w: _Writer) -> None:
    b = w.b
    negative = w.local(I32)
    mlo, mhi, tlo, thi = (w.local(I64) for _ in range(4))
    w.get(1)
    b.i64_const(0).op("i64.lt_s")
    w.get(3)
    b.i64_const(0).op("i64.lt_s", "i32.xor").local_set(negative)
    _magnitude(w, 0, 1, mlo, mhi)
    _magnitude(w, 2, 3, tlo, thi)
    w.get(mlo, mhi, tlo, thi)
    b.call("stdlib.mul-uint").local_set(mhi).local_set(mlo)
    # a negative product may reach 2^127, a positive one must stay below it
    w.get(negative)
    b.if_((I32,))
    w.get(mhi)
    b.i64_const(_TOP_BIT).op("i64.gt_u")
    w.get(mhi)
    b.i64_const(_TOP_BIT).op("i64.eq")
    w.get(mlo)
    b.i64_const(0).op("i64.ne", "i32.and", "i32.or")
    b.else_()
    w.get(mhi)
    b.i64_const(0).op("i64.lt_s")
    b.end()
    w.trap(RuntimeErrorCode.OVERFLOW)
    _apply_sign(w, negative, mlo, mhi)


# ---------------------------------------------------------------------------
# Division
# ---------------------------------------------------------------------------

def _shift_in(w: _Writer, lo: int, hi: int) -> None:
    """(hi, lo) <<= 1, leaving the low word's new bit 0 for the caller."""
    b = w.b
    w.get(hi)
    b.i64_const(1).op("i64.shl")
    w.get(lo)
    b.i64_const(63).op("i64.shr_u", "i64.or").local_set(hi)
    w.get(lo)
    b.i64_const(1).op("i64.shl").local_set(lo)


@_helper("divmod-uint", U128 + U128, U128 + U128, deps=("ge-uint",), traps=True)
def _divmod_uint(w: _Writer) -> None:
    """Restoring long division, one dividend bit per iteration."""
    b = w.b
    qlo, qhi, rlo, rhi = (w.local(I64) for _ in range(4))
    count = w.local(I32)
    bit, carry = w.local(I64), w.local(I64)
    w.get(2, 3)
    b.op("i64.or", "i64.eqz")
    w.trap(RuntimeErrorCode.DIVISION_BY_ZERO)
    b.i32_const(128).local_set(count)
    b.block()
    b.loop()
    w.get(count)
    b.op("i32.eqz").br_if(1)
    w.get(1)
    b.i64_const(63).op("i64.shr_u").local_set(bit)
    _shift_in(w, 0, 1)
    w.get(rhi)
    b.i64_const(63).op("i64.shr_u").local_set(carry)
    _shift_in(w, rlo, rhi)
    w.get(rlo, bit)
    b.op("i64.or").local_set(rlo)
    _shift_in(w, qlo, qhi)
    # a bit shifted out of the remainder means it exceeds any divisor
    w.get(carry)
    b.i64_const(0).op("i64.ne")
    w.get(rlo, rhi, 2, 3)
    b.call("stdlib.ge-uint").op("i32.or")
    b.if_()
    w.get(rhi, 3)
    b.op("i64.sub")
    w.get(rlo, 2)
    b.op("i64.lt_u", "i64.extend_i32_u", "i64.sub").local_set(rhi)
    w.get(rlo, 2)
    b.op("i64.sub").local_set(rlo)
    w.get(qlo)
    b.i64_const(1).op("i64.or").local_set(qlo)
    b.end()
    w.get(count)
    b.i32_const(1).op("i32.sub").local_set(count)
    b.br(0)
    b.end()
    b.end()
    w.get(qlo, qhi, rlo, rhi)


@_helper("div-uint", U128 + U128, U128, deps=("divmod-uint",), traps=True)
def _div_uint(w: _Writer) -> None:
    w.get(0, 1, 2, 3)
    w.b.call("stdlib.divmod-uint").op("drop", "drop")


@_helper("mod-uint", U128 + U128, U128, deps=("divmod-uint",), traps=True)
def _mod_uint(w: _Writer) -> None:
    rlo, rhi = w.local(I64), w.local(I64)
    w.get(0, 1, 2, 3)
    w.b.call("stdlib.divmod-uint").local_set(rhi).local_set(rlo).op("drop", "drop")
    w.get(rlo, rhi)


def _signed_divmod(w: _Writer) -> tuple[int, int, int, int, int, int]:
    """Divide magnitudes; returns the (dividend sign, divisor sign, q, r) locals."""
    b = w.b
    neg_a, neg_b = w.local(I32), w.local(I32)
    alo, ahi, blo, bhi = (w.local(I64) for _ in range(4))
    qlo, qhi, rlo, rhi = (w.local(I64) for _ in range(4))
    w.get(1)
    b.i64_const(0).op("i64.lt_s").local_set(neg_a)
    w.get(3)
    b.i64_const(0).op("i64.lt_s").local_set(neg_b)
    _magnitude(w, 0, 1, alo, ahi)
    _magnitude(w, 2, 3, blo, bhi)
    w.get(alo, ahi, blo, bhi)
    b.call("stdlib.divmod-uint")
    b.local_set(rhi).local_set(rlo).local_set(qhi).local_set(qlo)
    return neg_a, neg_b, qlo, qhi, rlo, rhi


@_helper("div-int", U128 + U128, U128, deps=("divmod-uint", "neg"), traps=True)
def _div_int(w: _Writer) -> None:
    """Truncating division; only the most negative value divided by -1 overflows."""
    b = w.b
    neg_a, neg_b, qlo, qhi, _, _ = _signed_divmod(w)
    negative = w.local(I32)
    w.get(neg_a, neg_b)
    b.op("i32.xor").local_set(negative)
    w.get(negative)
    b.op("i32.eqz")
    w.get(qhi)
    b.i64_const(0).op("i64.lt_s", "i32.and")
    w.trap(RuntimeErrorCode.OVERFLOW)
    _apply_sign(w, negative, qlo, qhi)


@_helper("mod-int", U128 + U128, U128, deps=("divmod-uint", "neg"), traps=True)
def _mod_int(w: _Writer) -> None:
    """The remainder takes the sign of the dividend."""
    neg_a, _, _, _, rlo, rhi = _signed_divmod(w)
    _apply_sign(w, neg_a, rlo, rhi)


# ---------------------------------------------------------------------------
# Byte sequences
# ---------------------------------------------------------------------------

@_helper("cmp-buff", (I32, I32, I32, I32), (I32,))
def _cmp_buff(w: _Writer) -> None:
    """Lexicographic comparison of two byte ranges: -1, 0 or 1."""
    b = w.b
    i, n, ca, cb = (w.local(I32) for _ in range(4))
    w.get(1, 3, 1, 3)
    b.op("i32.lt_u", "select").local_set(n)
    b.i32_const(0).local_set(i)
    b.block()
    b.loop()
    w.get(i, n)
    b.op("i32.ge_u").br_if(1)
    w.get(0, i)
    b.op("i32.add").load("i32.load8_u").local_set(ca)
    w.get(2, i)
    b.op("i32.add").load("i32.load8_u").local_set(cb)
    w.get(ca, cb)
    b.op("i32.ne")
    b.if_()
    b.i32_const(-1).i32_const(1)
    w.get(ca, cb)
    b.op("i32.lt_u", "select", "return")
    b.end()
    w.get(i)
    b.i32_const(1).op("i32.add").local_set(i)
    b.br(0)
    b.end()
    b.end()
    # one is a prefix of the other: the shorter sorts first
    w.get(1, 3)
    b.op("i32.eq")
    b.if_((I32,))
    b.i32_const(0)
    b.else_()
    b.i32_const(-1).i32_const(1)
    w.get(1, 3)
    b.op("i32.lt_u", "select")
    b.end()


for _name, _op in (("lt", "i32.lt_s"), ("le", "i32.le_s"), ("gt", "i32.gt_s"), ("ge", "i32.ge_s")):
    def _buff_compare(w: _Writer, op: str = _op) -> None:
        w.get(0, 1, 2, 3)
        w.b.call("stdlib.cmp-buff").i32_const(0).op(op)
    _helper(f"{_name}-buff", (I32, I32, I32, I32), (I32,), deps=("cmp-buff",))(_buff_compare)


@_helper("memeq", (I32, I32, I32, I32), (I32,), deps=("cmp-buff",))
def _memeq(w: _Writer) -> None:
    b = w.b
    w.get(1, 3)
    b.op("i32.ne")
    b.if_()
    b.i32_const(0).op("return")
    b.end()
    w.get(0, 1, 2, 3)
    b.call("stdlib.cmp-buff").op("i32.eqz")


def _buff_to_uint(w: _Writer, big_endian: bool) -> None:
    b = w.b
    i, addr = w.local(I32), w.local(I32)
    lo, hi = w.local(I64), w.local(I64)
    b.block()
    b.loop()
    w.get(i, 1)
    b.op("i32.ge_u").br_if(1)
    if big_endian:
        w.get(0, i)
        b.op("i32.add").local_set(addr)
    else:
        w.get(0, 1)
        b.op("i32.add")
        w.get(i)
        b.op("i32.sub").i32_const(1).op("i32.sub").local_set(addr)
    w.get(hi)
    b.i64_const(8).op("i64.shl")
    w.get(lo)
    b.i64_const(56).op("i64.shr_u", "i64.or").local_set(hi)
    w.get(lo)
    b.i64_const(8).op("i64.shl")
    w.get(addr)
    b.load("i64.load8_u").op("i64.or").local_set(lo)
    w.get(i)
    b.i32_const(1).op("i32.add").local_set(i)
    b.br(0)
    b.end()
    b.end()
    w.get(lo, hi)


_helper("buff-to-uint-be", (I32, I32), U128)(lambda w: _buff_to_uint(w, True))
_helper("buff-to-uint-le", (I32, I32), U128)(lambda w: _buff_to_uint(w, False))


# ---------------------------------------------------------------------------
# Arena growth
# ---------------------------------------------------------------------------

PAGE_BITS = 16


@_helper("reserve", (I32,), ())
def _reserve(w: _Writer) -> None:
    """Grow memory until it holds ``end`` bytes; traps if the host refuses to grow."""
    b = w.b
    w.get(0)
    b.memory_size().i32_const(PAGE_BITS).op("i32.shl", "i32.gt_u")
    b.if_()
    w.get(0)
    b.i32_const((1 << PAGE_BITS) - 1).op("i32.add")
    b.i32_const(PAGE_BITS).op("i32.shr_u")
    b.memory_size().op("i32.sub")
    b.memory_grow().i32_const(-1).op("i32.eq")
    b.if_().op("unreachable").end()
    b.end()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

# Helpers whose bodies ``verify`` proves against 128-bit arithmetic.
VERIFIED_HELPERS = (
    "add-int", "add-uint", "sub-int", "sub-uint",
    "lt-int", "le-int", "gt-int", "ge-int",
    "lt-uint", "le-uint", "gt-uint", "ge-uint",
)


def helper_names() -> list[str]:
    return list(_HELPERS)


def build_helper(name: str) -> Function:
    """Build ``stdlib.<name>`` on its own."""
    helper = _HELPERS[name]
    writer = _Writer(f"stdlib.{name}", helper.params, helper.results)
    helper.build(writer)
    return writer.finish()


def closure(names) -> list[str]:
    """``names`` plus every helper they call, in definition order."""
    wanted: set[str] = set()
    pending = list(names)
    while pending:
        name = pending.pop()
        if name in wanted:
            continue
        if name not in _HELPERS:
            raise KeyError(f"unknown stdlib helper '{name}'")
        wanted.add(name)
        pending.extend(_HELPERS[name].deps)
    return [n for n in _HELPERS if n in wanted]


def needs_runtime_error(names) -> bool:
    return any(_HELPERS[n].traps for n in closure(names))


def build(names) -> list[Function]:
    return [build_helper(n) for n in closure(names)]
