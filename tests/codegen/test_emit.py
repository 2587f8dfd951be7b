"""Code Generation Tests — EMIT-001 through EMIT-008.

Modules are compiled through the driver and decoded again with
``clar2wasm.tools.inspect_module``; nothing here needs a wasm runtime.
"""

import pytest

from clar2wasm.abi import marshal_size
from clar2wasm.driver import CompileMode, CompileState, compile_source
from clar2wasm.errors import CodegenError
from clar2wasm.parser import parse
from clar2wasm.pass1_check import check
from clar2wasm.pass2_cost import analyze
from clar2wasm.pass3_emit import (
    DEBUG_SECTION, STACK_POINTER, TOP_LEVEL, WasmEmitter, emit, flat, needs_conversion,
    stored_size,
)
from clar2wasm.tools import inspect_module
from clar2wasm.types import (
    BOOL, INT, NO_TYPE, PRINCIPAL, UINT, BufferType, ListType, OptionalType,
    ResponseType, StringType, TupleType,
)
from clar2wasm.wasm.encoding import ExternKind, ValType
from clar2wasm.wasm.instructions import check_nesting

from conftest import ARITHMETIC, BLOCKS, COUNTER, TOKENS

I32, I64 = ValType.I32, ValType.I64


def _compile(source, mode=CompileMode.MODULE, **options):
    result = compile_source(source, filename="contract.clar", mode=mode, **options)
    assert result.state == CompileState.DONE, [d.to_dict() for d in result.diagnostics]
    return result


def _summary(source, **options):
    return inspect_module(_compile(source, **options).artifact.wasm)


class TestEMIT001:
    """EMIT-001: Every corpus contract compiles to a well-formed module.
    Priority: P0
    """

    def test_compiles_and_decodes(self, contract_source):
        """priority_p0: The driver reaches DONE and the module decodes."""
        _, source = contract_source
        result = _compile(source)
        summary = inspect_module(result.artifact.wasm)
        assert len(summary.code_sizes) == len(summary.functions)
        assert summary.memory_pages is not None

    def test_blocks_are_balanced(self, contract_source):
        """priority_p0: Every function body closes every block it opens."""
        _, source = contract_source
        checked = check(parse(source))
        analyze(checked)
        emitter = WasmEmitter(checked)
        emitter.emit_module()
        for fn in emitter.module.functions:
            assert check_nesting(fn.body), fn.name

    def test_sections_in_order(self, contract_source):
        """priority_p1: Known sections appear in ascending id order."""
        _, source = contract_source
        order = [s for s in _summary(source).section_order if s != 0]
        assert order == sorted(order)


class TestEMIT002:
    """EMIT-002: Exports follow visibility.
    Priority: P0
    """

    def test_public_and_read_only_exported(self):
        """priority_p0: Private functions are internal; .top-level is always exported."""
        names = set(_summary(COUNTER).export_names())
        assert names == {"get-counter", "increment", "deposit", "twice", "greet", TOP_LEVEL}

    def test_memory_and_stack_pointer(self):
        """priority_p0: The module exports its memory and the arena pointer."""
        summary = _summary(COUNTER)
        assert summary.export_names(ExternKind.MEMORY) == ["memory"]
        assert summary.export_names(ExternKind.GLOBAL) == [STACK_POINTER]
        sp = summary.globals[0]
        assert sp.valtype == I32 and sp.mutable

    def test_signatures_are_flat(self):
        """priority_p0: Parameters and results use the flat representation."""
        summary = _summary(COUNTER)
        assert summary.function_signature("get-counter") == ((), (I64, I64))
        assert summary.function_signature("increment") == ((I64, I64), (I32, I64, I64, I64, I64))
        assert summary.function_signature("greet") == ((I32, I32), (I32, I32))
        assert summary.function_signature(TOP_LEVEL) == ((), ())


class TestEMIT003:
    """EMIT-003: Imports and the runtime library.
    Priority: P0
    """

    def test_only_used_host_functions(self):
        """priority_p0: The import list is exactly what the contract uses."""
        imports = set(_summary(COUNTER).import_names())
        expected = {
            "clarity.define_variable", "clarity.define_map", "clarity.get_variable",
            "clarity.set_variable", "clarity.map_get", "clarity.map_set",
            "clarity.tx_sender", "clarity.runtime_error",
        }
        assert imports == expected

    def test_pure_contract_needs_no_host(self):
        """priority_p0: Boolean logic alone imports nothing."""
        summary = _summary("(define-read-only (f (a bool) (b bool)) (and a (not b)))")
        assert summary.imports == []
        assert len(summary.functions) == 2

    def test_helpers_are_internal(self):
        """priority_p1: 128-bit helpers are module functions, never exports."""
        summary = _summary(ARITHMETIC)
        exports = summary.export_names()
        assert not any(name.startswith("stdlib.") for name in exports)
        # calc uses add, sub, mul, div, mod and gt on signed ints
        assert len(summary.functions) > len(exports)

    def test_token_imports(self):
        """priority_p1: Token built-ins map to their host functions."""
        imports = set(_summary(TOKENS).import_names())
        assert {"clarity.define_ft", "clarity.define_nft", "clarity.ft_mint",
                "clarity.nft_mint", "clarity.nft_get_owner", "clarity.ft_get_balance"} <= imports
        assert all(name.startswith("clarity.") for name in imports)

    def test_runtime_error_signature(self):
        """priority_p1: runtime_error takes the error code."""
        summary = _summary(ARITHMETIC)
        assert summary.import_signature("runtime_error") == ((I32,), ())


class TestEMIT004:
    """EMIT-004: Memory layout.
    Priority: P1
    """

    def test_arena_starts_after_literals(self):
        """priority_p1: stack-pointer starts at the 8-aligned end of the data segment."""
        summary = _summary(COUNTER)
        ((offset, data),) = summary.data
        assert offset == 0
        assert summary.globals[0].init == (len(data) + 7) & ~7
        assert b"hello " in data
        assert b"counter" in data

    def test_identical_literals_are_shared(self):
        """priority_p2: The same bytes are stored once."""
        source = '(define-read-only (a) "same")\n(define-read-only (b) "same")'
        ((_, data),) = _summary(source).data
        assert data.count(b"same") == 1

    def test_memory_pages_configurable(self):
        """priority_p1: The memory size comes from the options."""
        assert _summary(COUNTER, memory_pages=3).memory_pages == 3

    def test_memory_covers_literals(self):
        """priority_p1: Literals larger than the configured memory raise the initial size."""
        source = "(define-read-only (f) 0x" + "ab" * 70000 + ")"
        summary = _summary(source, memory_pages=1)
        assert summary.memory_pages == 2
        assert summary.globals[0].init <= 2 * 65536

    def test_allocations_reserve_memory(self):
        """priority_p1: Functions that allocate call the growth helper."""
        checked = check(parse(COUNTER))
        analyze(checked)
        emitter = WasmEmitter(checked)
        emitter.emit_module()
        assert "stdlib.reserve" in [fn.name for fn in emitter.module.functions]

    def test_constants_become_globals(self):
        """priority_p2: One global per flat value of each constant, set by .top-level."""
        summary = _summary("(define-constant limit u10)\n(define-read-only (f) limit)")
        consts = summary.globals[1:]
        assert [g.valtype for g in consts] == [I64, I64]
        assert summary.export_names(ExternKind.GLOBAL) == [STACK_POINTER]


class TestEMIT005:
    """EMIT-005: Determinism and debug output.
    Priority: P0
    """

    def test_same_input_same_bytes(self, contract_source):
        """priority_p0: Compiling twice gives byte-identical modules."""
        _, source = contract_source
        assert _compile(source).artifact.wasm == _compile(source).artifact.wasm

    def test_module_mode_has_no_custom_sections(self):
        """priority_p1: MODULE output carries no debug payload."""
        assert _summary(COUNTER).custom == {}

    def test_debug_sections(self):
        """priority_p1: DEBUG adds a name section and per-function metadata."""
        result = _compile(COUNTER, mode=CompileMode.DEBUG)
        summary = inspect_module(result.artifact.wasm)
        assert {"name", DEBUG_SECTION} <= set(summary.custom)
        info = summary.debug_info()
        assert info["abi_version"] == 1
        functions = info["functions"]
        assert functions["double"]["visibility"] == "private"
        assert functions["increment"]["returns"] == "(response uint uint)"
        assert functions["increment"]["params"] == [["by", "uint"]]
        assert functions["greet"]["cost"]["runtime"] > 0

    def test_debug_is_deterministic(self):
        """priority_p2: Debug metadata is serialised with sorted keys."""
        a = _compile(COUNTER, mode=CompileMode.DEBUG).artifact.wasm
        b = _compile(COUNTER, mode=CompileMode.DEBUG).artifact.wasm
        assert a == b

    def test_code_identical_across_modes(self):
        """priority_p2: DEBUG only appends sections; the code is the same."""
        plain = _summary(COUNTER)
        debug = inspect_module(_compile(COUNTER, mode=CompileMode.DEBUG).artifact.wasm)
        assert plain.code_sizes == debug.code_sizes
        assert plain.exports == debug.exports


class TestEMIT006:
    """EMIT-006: Value representation.
    Priority: P0
    """

    @pytest.mark.parametrize("t, expected", [
        (INT, (I64, I64)),
        (UINT, (I64, I64)),
        (BOOL, (I32,)),
        (NO_TYPE, (I32,)),
        (BufferType(8), (I32, I32)),
        (StringType(4, True), (I32, I32)),
        (ListType(INT, 3), (I32, I32)),
        (PRINCIPAL, (I32, I32)),
        (OptionalType(UINT), (I32, I64, I64)),
        (ResponseType(BOOL, UINT), (I32, I32, I64, I64)),
        (TupleType((("b", BOOL), ("a", INT))), (I64, I64, I32)),
    ])
    def test_flat(self, t, expected):
        """priority_p0: Flat wasm values of each type; tuple fields in name order."""
        assert flat(t) == expected

    def test_stored_size(self):
        """priority_p1: List elements take 4 bytes per i32 and 8 per i64."""
        assert stored_size(INT) == 16
        assert stored_size(BufferType(100)) == 8
        assert stored_size(OptionalType(INT)) == 20

    @pytest.mark.parametrize("t, size", [
        (INT, 16),
        (BOOL, 4),
        (BufferType(10), 14),
        (StringType(2, True), 12),
        (ListType(INT, 3), 52),
        (OptionalType(UINT), 20),
        (ResponseType(BOOL, UINT), 24),
        (TupleType((("a", INT), ("b", BOOL))), 20),
        (PRINCIPAL, 154),
    ])
    def test_marshal_size(self, t, size):
        """priority_p1: Host layout sizes."""
        assert marshal_size(t) == size

    def test_conversions(self):
        """priority_p1: Only NoType holes need a representation change."""
        assert needs_conversion(OptionalType(NO_TYPE), OptionalType(INT))
        assert needs_conversion(ResponseType(UINT, NO_TYPE), ResponseType(UINT, UINT))
        assert not needs_conversion(BufferType(2), BufferType(5))
        assert not needs_conversion(ListType(NO_TYPE, 0), ListType(INT, 4))
        assert not needs_conversion(INT, INT)


class TestEMIT007:
    """EMIT-007: Emission is only attempted on checked trees.
    Priority: P0
    """

    def test_refuses_failed_check(self):
        """priority_p0: A check result with errors cannot be emitted."""
        checked = check(parse("(define-read-only (f) missing)"))
        with pytest.raises(CodegenError):
            emit(checked)

    def test_early_exit_paths(self):
        """priority_p1: asserts!, try! and unwrap! all compile inside public functions."""
        source = """
(define-private (half (n uint)) (if (> n u0) (ok (/ n u2)) (err u7)))
(define-public (run (n uint) (m (optional uint)))
  (begin
    (asserts! (> n u1) (err u1))
    (let ((h (try! (half n)))
          (v (unwrap! m (err u2))))
      (ok (+ h v)))))
"""
        summary = _summary(source)
        assert summary.function_signature("run") == (
            (I64, I64, I32, I64, I64), (I32, I64, I64, I64, I64))


class TestEMIT008:
    """EMIT-008: Block information and execution contexts.
    Priority: P1
    """

    def test_block_imports(self):
        """priority_p1: Block info, at-block and as-contract use their host functions."""
        imports = set(_summary(BLOCKS).import_names())
        assert {"clarity.get_block_info", "clarity.get_burn_block_info",
                "clarity.enter_at_block", "clarity.exit_at_block",
                "clarity.enter_as_contract", "clarity.exit_as_contract"} <= imports

    def test_block_info_signatures(self):
        """priority_p1: Block properties come back as optionals."""
        summary = _summary(BLOCKS)
        assert summary.function_signature("block-time") == ((I64, I64), (I32, I64, I64))
        assert summary.function_signature("decode") == ((I32, I32), (I64, I64))
        assert summary.function_signature("as-self") == ((), (I32, I32, I32, I32))

    def test_property_names_in_data(self):
        """priority_p2: Property names are passed to the host from the data section."""
        ((_, data),) = _summary(BLOCKS).data
        assert b"time" in data
        assert b"pox-addrs" in data

    def test_buff_conversion_needs_no_trap(self):
        """priority_p2: Buffer to integer conversion never traps."""
        source = "(define-read-only (f (b (buff 16))) (buff-to-uint-be b))"
        assert "clarity.runtime_error" not in _summary(source).import_names()
