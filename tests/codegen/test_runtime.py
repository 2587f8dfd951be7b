"""Runtime Tests — RUN-001 through RUN-006.

Compiled modules are instantiated under wasmtime against the recording host
in ``wasm_host`` and their exports are called directly. Arguments and results
are in the flat form: two i64 per integer, one i32 per bool, and
(offset, byte length) for anything stored in memory.
"""

import pytest
import wasmtime

from clar2wasm.abi import RuntimeErrorCode
from clar2wasm.driver import compile_or_raise
from clar2wasm.lexer import MAX_INT, MIN_INT
from clar2wasm.pass3_emit import DEFAULT_MEMORY_PAGES

from wasm_host import CONTRACT, SENDER, RecordingHost, join, split

ARITHMETIC = """
(define-read-only (plus (a int) (b int)) (+ a b))
(define-read-only (minus-u (a uint) (b uint)) (- a b))
(define-read-only (times (a int) (b int)) (* a b))
(define-read-only (quotient (a int) (b int)) (/ a b))
(define-read-only (remainder (a int) (b int)) (mod a b))
(define-read-only (negate (a int)) (- a))
(define-read-only (negate-u (a uint)) (- a))
(define-read-only (below (a int) (b int)) (< a b))
(define-read-only (as-uint (a int)) (to-uint a))
(define-read-only (unwrapped (o (optional int))) (unwrap-panic o))
"""

SEQUENCES = """
(define-private (double (x int)) (* x 2))
(define-private (positive (x int)) (> x 0))
(define-private (sum (x int) (acc int)) (+ x acc))
(define-read-only (doubled) (map double (list 1 -2 3)))
(define-read-only (positives) (filter positive (list 1 -2 3 -4 5)))
(define-read-only (total) (fold sum (list 1 2 3 4) 0))
(define-read-only (greet (n uint)) (concat 0x6869 (if (> n u0) 0x21 0x3f)))
"""

CONTEXTS = """
(define-public (guarded (n uint))
  (as-contract
    (begin
      (asserts! (> n u0) (err u1))
      (ok n))))
(define-public (whoami) (ok (as-contract tx-sender)))
(define-read-only (sender) tx-sender)
"""

STORAGE = """
(define-data-var counter uint u0)
(define-map squares uint uint)
(define-public (bump)
  (begin
    (var-set counter (+ (var-get counter) u1))
    (ok (var-get counter))))
(define-public (remember (n uint)) (ok (map-set squares n (* n n))))
(define-read-only (recall (n uint)) (default-to u0 (map-get? squares n)))
(define-read-only (shout) (print u7))
"""

LARGE_VALUES = """
(define-data-var big (buff 600000) 0x00)
(define-read-only (both) (is-eq (var-get big) (var-get big)))
"""


def _host(source):
    host = RecordingHost(compile_or_raise(source, filename="runtime.clar").wasm)
    host.deploy()
    return host


def _int(host, name, *values, signed=True):
    args = []
    for v in values:
        args += split(v)
    return join(*host.call(name, *args), signed=signed)


@pytest.fixture(scope="module")
def arithmetic():
    return _host(ARITHMETIC)


class TestRUN001:
    """RUN-001: 128-bit arithmetic.
    Priority: P0
    """

    def test_carry_between_halves(self, arithmetic):
        """priority_p0: Addition carries from the low i64 into the high one."""
        assert _int(arithmetic, "plus", 2 ** 64 - 1, 1) == 2 ** 64
        assert _int(arithmetic, "plus", -1, -(2 ** 64)) == -(2 ** 64) - 1

    def test_wide_products_and_division(self, arithmetic):
        """priority_p0: Products past 64 bits; division truncates toward zero."""
        assert _int(arithmetic, "times", -3, 2 ** 70) == -3 * 2 ** 70
        assert _int(arithmetic, "quotient", -7, 2) == -3
        assert _int(arithmetic, "remainder", -7, 2) == -1
        assert _int(arithmetic, "quotient", 2 ** 100, 2 ** 36) == 2 ** 64

    def test_unary_minus(self, arithmetic):
        """priority_p1: (- x) negates; (- u0) is u0."""
        assert _int(arithmetic, "negate", 5) == -5
        assert _int(arithmetic, "negate", MIN_INT + 1) == MAX_INT
        assert _int(arithmetic, "negate-u", 0, signed=False) == 0

    def test_signed_comparison(self, arithmetic):
        """priority_p1: Comparisons look at the sign of the high half."""
        assert arithmetic.call("below", *split(-1), *split(1)) == [1]
        assert arithmetic.call("below", *split(2 ** 64), *split(1)) == [0]

    @pytest.mark.parametrize("name, args, code", [
        ("plus", (MAX_INT, 1), RuntimeErrorCode.OVERFLOW),
        ("times", (2 ** 64, 2 ** 64), RuntimeErrorCode.OVERFLOW),
        ("negate", (MIN_INT,), RuntimeErrorCode.OVERFLOW),
        ("minus-u", (1, 2), RuntimeErrorCode.UNDERFLOW),
        ("negate-u", (1,), RuntimeErrorCode.UNDERFLOW),
        ("quotient", (1, 0), RuntimeErrorCode.DIVISION_BY_ZERO),
        ("as-uint", (-1,), RuntimeErrorCode.NEGATIVE_TO_UINT),
    ])
    def test_trap_codes(self, name, args, code):
        """priority_p0: Each failure reports its code to the host, then traps."""
        host = _host(ARITHMETIC)
        flat_args = []
        for v in args:
            flat_args += split(v)
        with pytest.raises(wasmtime.Trap):
            host.call(name, *flat_args)
        assert host.errors == [code]

    def test_unwrap_panic(self):
        """priority_p1: unwrap-panic on none is an unwrap failure."""
        host = _host(ARITHMETIC)
        assert join(*host.call("unwrapped", 1, *split(9))) == 9
        with pytest.raises(wasmtime.Trap):
            host.call("unwrapped", 0, 0, 0)
        assert host.errors == [RuntimeErrorCode.UNWRAP_FAILURE]


class TestRUN002:
    """RUN-002: Sequences, copy-out and the arena.
    Priority: P0
    """

    def test_map_filter_fold(self):
        """priority_p0: Element-wise application over list literals."""
        host = _host(SEQUENCES)
        off, length = host.call("doubled")
        assert host.ints_at(off, length) == [2, -4, 6]
        host.stack_pointer = off
        off, length = host.call("positives")
        assert host.ints_at(off, length) == [1, 3, 5]
        assert join(*host.call("total")) == 10

    def test_result_copied_to_frame_base(self):
        """priority_p0: A returned list sits at the entry pointer and nothing else survives."""
        host = _host(SEQUENCES)
        base = host.stack_pointer
        off, length = host.call("positives")
        assert (off, length) == (base, 48)
        assert host.stack_pointer == base + 48

    def test_flat_result_releases_everything(self):
        """priority_p0: A function returning only flat values leaves the arena as it found it."""
        host = _host(SEQUENCES)
        base = host.stack_pointer
        host.call("total")
        host.call("total")
        assert host.stack_pointer == base

    def test_arena_reused_after_reset(self):
        """priority_p1: Resetting the pointer between calls reuses the same region."""
        host = _host(SEQUENCES)
        base = host.stack_pointer
        first = host.call("greet", *split(1))
        assert host.bytes_at(*first) == b"hi!"
        host.stack_pointer = base
        second = host.call("greet", *split(0))
        assert second == first
        assert host.bytes_at(*second) == b"hi?"


class TestRUN003:
    """RUN-003: Early returns and execution contexts.
    Priority: P0
    """

    def test_asserts_inside_as_contract(self):
        """priority_p0: An early return leaves the as-contract context exactly once."""
        host = _host(CONTEXTS)
        assert host.call("guarded", *split(0)) == [0, 0, 0, 1, 0]
        assert host.calls == ["enter_as_contract", "exit_as_contract"]
        assert host.senders == [SENDER]

    def test_normal_exit(self):
        """priority_p0: Falling off the end of the body also leaves the context once."""
        host = _host(CONTEXTS)
        assert host.call("guarded", *split(5)) == [1, 5, 0, 0, 0]
        assert host.calls == ["enter_as_contract", "exit_as_contract"]

    def test_sender_switches(self):
        """priority_p1: tx-sender is the contract inside as-contract only."""
        host = _host(CONTEXTS)
        indicator, off, length, _ = host.call("whoami")
        assert indicator == 1
        assert host.bytes_at(off, length) == CONTRACT
        assert host.bytes_at(*host.call("sender")) == SENDER


class TestRUN004:
    """RUN-004: Storage through the host.
    Priority: P1
    """

    def test_deploy_defines_storage(self):
        """priority_p1: .top-level defines the variable with its marshalled initial value."""
        host = _host(STORAGE)
        assert host.variables == {"counter": bytes(16)}
        assert host.maps == {"squares": {}}

    def test_data_var_round_trip(self):
        """priority_p1: var-set writes what the next var-get reads."""
        host = _host(STORAGE)
        host.call("bump")
        assert host.call("bump") == [1, 2, 0, 0]
        assert host.variables["counter"] == (2).to_bytes(16, "little")

    def test_map_entries(self):
        """priority_p1: map-set stores the marshalled value; map-get? wraps it in some."""
        host = _host(STORAGE)
        assert host.call("remember", *split(3)) == [1, 1, 0]
        assert join(*host.call("recall", *split(3))) == 9
        assert join(*host.call("recall", *split(4))) == 0

    def test_print(self):
        """priority_p2: print hands the host the value and its type."""
        host = _host(STORAGE)
        assert join(*host.call("shout")) == 7
        assert host.printed == [("uint", (7).to_bytes(16, "little"))]


class TestRUN005:
    """RUN-005: Memory growth.
    Priority: P1
    """

    def test_values_beyond_initial_memory(self):
        """priority_p1: Two live 600 KB values grow memory instead of overrunning it."""
        host = _host(LARGE_VALUES)
        assert host.pages == DEFAULT_MEMORY_PAGES
        assert host.call("both") == [1]
        assert host.pages > DEFAULT_MEMORY_PAGES
        assert host.stack_pointer <= host.pages * 65536


class TestRUN006:
    """RUN-006: Every corpus contract instantiates.
    Priority: P1
    """

    def test_modules_validate(self, contract_source):
        """priority_p1: wasmtime accepts every module the compiler produces."""
        name, source = contract_source
        wasm = compile_or_raise(source, filename=f"{name}.clar").wasm
        engine = wasmtime.Engine()
        wasmtime.Module.validate(engine, wasm)
