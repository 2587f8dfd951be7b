"""Wasm Encoding Tests — WASM-001 through WASM-004.

Covers the binary encoder in ``clar2wasm.wasm`` and the reader in
``clar2wasm.tools`` independently of any Clarity source.
"""

import pytest

from clar2wasm.tools import ModuleFormatError, inspect_module
from clar2wasm.wasm import Instr, InstrBuilder, ValType
from clar2wasm.wasm.encoding import (
    MAGIC, VERSION, ExternKind, decode_sleb128, decode_uleb128, sleb128, to_signed, uleb128,
)
from clar2wasm.wasm.instructions import check_nesting
from clar2wasm.wasm.module import DataSegment, Function, Global, Import, Module

I32, I64 = ValType.I32, ValType.I64


class TestWASM001:
    """WASM-001: LEB128 and two's complement helpers.
    Priority: P0
    """

    def test_uleb128(self):
        """priority_p0: Reference encodings."""
        assert uleb128(0) == b"\x00"
        assert uleb128(127) == b"\x7f"
        assert uleb128(128) == b"\x80\x01"
        assert uleb128(624485) == b"\xe5\x8e\x26"

    def test_uleb128_rejects_negative(self):
        """priority_p1: Unsigned encoding of a negative value is an error."""
        with pytest.raises(ValueError):
            uleb128(-1)

    def test_sleb128(self):
        """priority_p0: Reference encodings."""
        assert sleb128(0) == b"\x00"
        assert sleb128(-1) == b"\x7f"
        assert sleb128(63) == b"\x3f"
        assert sleb128(64) == b"\xc0\x00"
        assert sleb128(-123456) == b"\xc0\xbb\x78"

    @pytest.mark.parametrize("value", [0, 1, 300, 2**32 - 1, 2**63])
    def test_decode_uleb128(self, value):
        """priority_p1: Decoding returns the value and the next position."""
        data = b"\xff" + uleb128(value)
        assert decode_uleb128(data, 1) == (value, len(data))

    @pytest.mark.parametrize("value", [0, -1, 64, -65, 2**31, -(2**63)])
    def test_decode_sleb128(self, value):
        """priority_p1: Signed decoding sign-extends the last group."""
        data = sleb128(value)
        assert decode_sleb128(data, 0) == (value, len(data))

    def test_to_signed(self):
        """priority_p1: Unsigned bit patterns reinterpreted."""
        assert to_signed(0xFFFFFFFF, 32) == -1
        assert to_signed(0x7FFFFFFF, 32) == 2**31 - 1
        assert to_signed(2**64 - 2, 64) == -2
        assert to_signed(-1, 64) == -1


class TestWASM002:
    """WASM-002: Instruction building.
    Priority: P1
    """

    def test_unknown_instruction(self):
        """priority_p1: Only known simple opcodes are accepted."""
        with pytest.raises(KeyError):
            InstrBuilder().op("i64.frobnicate")

    def test_constants_are_stored_signed(self):
        """priority_p1: Constants are kept in two's complement form."""
        b = InstrBuilder().i64_const(2**64 - 1).i32_const(0x80000000)
        assert [i.args[0] for i in b] == [-1, -(2**31)]

    def test_nesting(self):
        """priority_p0: Blocks must be closed exactly once."""
        balanced = InstrBuilder().block().loop().op("nop").end().end()
        assert check_nesting(list(balanced))
        assert not check_nesting([Instr("block", ((),))])
        assert not check_nesting([Instr("end")])
        assert check_nesting([])


class TestWASM003:
    """WASM-003: Module assembly.
    Priority: P0
    """

    def test_empty_module(self):
        """priority_p0: A module with nothing in it still has a memory export."""
        wasm = Module().to_bytes()
        assert wasm[:8] == MAGIC + VERSION
        summary = inspect_module(wasm)
        assert summary.memory_pages == 1
        assert summary.export_names(ExternKind.MEMORY) == ["memory"]
        assert summary.functions == []

    def test_function_round_trip(self):
        """priority_p0: A function's signature and code decode as written."""
        module = Module()
        body = InstrBuilder().local_get(0).local_get(1).op("i64.add")
        module.add_function(Function("add", (I64, I64), (I64,), body=list(body), export="add"))
        summary = inspect_module(module.to_bytes())
        assert summary.function_signature("add") == ((I64, I64), (I64,))
        # no locals, three instructions of two, two and one byte, end
        assert summary.code_sizes == [7]

    def test_duplicate_function(self):
        """priority_p1: Function names are unique."""
        module = Module()
        module.add_function(Function("f", (), ()))
        with pytest.raises(ValueError):
            module.add_function(Function("f", (), ()))

    def test_imports_deduplicated(self):
        """priority_p1: Importing the same symbol twice keeps one entry."""
        module = Module()
        module.add_import(Import("clarity", "tx_sender", (), (I32, I32)))
        module.add_import(Import("clarity", "tx_sender", (), (I32, I32)))
        assert len(module.imports) == 1
        assert module.function_index("clarity.tx_sender") == 0

    def test_imports_precede_functions(self):
        """priority_p1: Defined functions are indexed after every import."""
        module = Module()
        module.add_function(Function("f", (), ()))
        module.add_import(Import("clarity", "block_height", (), (I64, I64)))
        assert module.function_index("f") == 1
        with pytest.raises(KeyError):
            module.function_index("g")

    def test_unbalanced_body_rejected(self):
        """priority_p1: Serialising an unbalanced body fails."""
        module = Module()
        module.add_function(Function("f", (), (), body=[Instr("block", ((),))]))
        with pytest.raises(ValueError):
            module.to_bytes()

    def test_globals_and_data(self):
        """priority_p1: Globals, their exports and data segments decode."""
        module = Module()
        module.add_global(Global("g", I32, mutable=False, init=-5, export="g"))
        module.add_global(Global("h", I64, init=2**40))
        module.data.append(DataSegment(0, b"abc"))
        summary = inspect_module(module.to_bytes())
        assert [(g.valtype, g.mutable, g.init) for g in summary.globals] == [
            (I32, False, -5), (I64, True, 2**40)]
        assert summary.export_names(ExternKind.GLOBAL) == ["g"]
        assert summary.data == [(0, b"abc")]

    def test_multi_value_block_type(self):
        """priority_p2: Blocks with several results get their own type entry."""
        module = Module()
        body = InstrBuilder().block((I64, I64)).i64_const(1).i64_const(2).end().op("drop", "drop")
        module.add_function(Function("f", (), (), body=list(body)))
        summary = inspect_module(module.to_bytes())
        assert ((), (I64, I64)) in summary.types


class TestWASM004:
    """WASM-004: Reader rejects what it does not understand.
    Priority: P1
    """

    def test_bad_magic(self):
        """priority_p1: Non-wasm input is rejected."""
        with pytest.raises(ModuleFormatError):
            inspect_module(b"\x7fELF\x01\x00\x00\x00")

    def test_truncated_section(self):
        """priority_p1: A section running past the end is rejected."""
        wasm = Module().to_bytes()
        with pytest.raises(ModuleFormatError):
            inspect_module(wasm[:-1])

    def test_unknown_section(self):
        """priority_p2: Sections the encoder never writes are rejected."""
        with pytest.raises(ModuleFormatError):
            inspect_module(MAGIC + VERSION + b"\x04\x00")
