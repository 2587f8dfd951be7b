"""Structured wasm instructions.

Instructions are kept symbolic until the module is serialised: calls and
global accesses name their target, and block types list their results. This
lets a function body be built before the import table is complete and keeps
bodies readable for the stdlib verifier.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator

from clar2wasm.wasm.encoding import ValType, uleb128, sleb128, to_signed, EMPTY_BLOCK

# Opcodes without immediates.
SIMPLE_OPCODES: dict[str, int] = {
    "unreachable": 0x00, "nop": 0x01, "else": 0x05, "end": 0x0B, "return": 0x0F,
    "drop": 0x1A, "select": 0x1B,
    "i32.eqz": 0x45, "i32.eq": 0x46, "i32.ne": 0x47,
    "i32.lt_s": 0x48, "i32.lt_u": 0x49, "i32.gt_s": 0x4A, "i32.gt_u": 0x4B,
    "i32.le_s": 0x4C, "i32.le_u": 0x4D, "i32.ge_s": 0x4E, "i32.ge_u": 0x4F,
    "i64.eqz": 0x50, "i64.eq": 0x51, "i64.ne": 0x52,
    "i64.lt_s": 0x53, "i64.lt_u": 0x54, "i64.gt_s": 0x55, "i64.gt_u": 0x56,
    "i64.le_s": 0x57, "i64.le_u": 0x58, "i64.ge_s": 0x59, "i64.ge_u": 0x5A,
    "i32.clz": 0x67, "i32.ctz": 0x68, "i32.add": 0x6A, "i32.sub": 0x6B,
    "i32.mul": 0x6C, "i32.div_s": 0x6D, "i32.div_u": 0x6E,
    "i32.rem_s": 0x6F, "i32.rem_u": 0x70,
    "i32.and": 0x71, "i32.or": 0x72, "i32.xor": 0x73,
    "i32.shl": 0x74, "i32.shr_s": 0x75, "i32.shr_u": 0x76,
    "i64.clz": 0x79, "i64.ctz": 0x7A, "i64.add": 0x7C, "i64.sub": 0x7D,
    "i64.mul": 0x7E, "i64.div_s": 0x7F, "i64.div_u": 0x80,
    "i64.rem_s": 0x81, "i64.rem_u": 0x82,
    "i64.and": 0x83, "i64.or": 0x84, "i64.xor": 0x85,
    "i64.shl": 0x86, "i64.shr_s": 0x87, "i64.shr_u": 0x88,
    "i32.wrap_i64": 0xA7, "i64.extend_i32_s": 0xAC, "i64.extend_i32_u": 0xAD,
}

MEMORY_OPCODES: dict[str, tuple[int, int]] = {
    # name: (opcode, natural alignment as log2)
    "i32.load": (0x28, 2), "i64.load": (0x29, 3),
    "i32.load8_u": (0x2D, 0), "i64.load8_u": (0x31, 0),
    "i32.store": (0x36, 2), "i64.store": (0x37, 3),
    "i32.store8": (0x3A, 0), "i64.store8": (0x3C, 0),
}

BLOCK_OPCODES = {"block": 0x02, "loop": 0x03, "if": 0x04}
BRANCH_OPCODES = {"br": 0x0C, "br_if": 0x0D}
VARIABLE_OPCODES = {
    "local.get": 0x20, "local.set": 0x21, "local.tee": 0x22,
    "global.get": 0x23, "global.set": 0x24,
}


@dataclass(frozen=True)
class Instr:
    op: str
    args: tuple = ()

    def __str__(self) -> str:
        if not self.args:
            return self.op
        return f"{self.op} {' '.join(str(a) for a in self.args)}"


class InstrBuilder:
    """Append-only instruction sequence with one method per instruction family."""

    def __init__(self) -> None:
        self.instrs: list[Instr] = []

    def __iter__(self) -> Iterator[Instr]:
        return iter(self.instrs)

    def __len__(self) -> int:
        return len(self.instrs)

    def emit(self, op: str, *args) -> InstrBuilder:
        self.instrs.append(Instr(op, tuple(args)))
        return self

    def extend(self, other: InstrBuilder) -> InstrBuilder:
        self.instrs.extend(other.instrs)
        return self

    def op(self, *names: str) -> InstrBuilder:
        for n in names:
            if n not in SIMPLE_OPCODES:
                raise KeyError(f"unknown instruction '{n}'")
            self.emit(n)
        return self

    def i32_const(self, value: int) -> InstrBuilder:
        return self.emit("i32.const", to_signed(value, 32))

    def i64_const(self, value: int) -> InstrBuilder:
        return self.emit("i64.const", to_signed(value, 64))

    def local_get(self, index: int) -> InstrBuilder:
        return self.emit("local.get", index)

    def local_set(self, index: int) -> InstrBuilder:
        return self.emit("local.set", index)

    def local_tee(self, index: int) -> InstrBuilder:
        return self.emit("local.tee", index)

    def global_get(self, name: str) -> InstrBuilder:
        return self.emit("global.get", name)

    def global_set(self, name: str) -> InstrBuilder:
        return self.emit("global.set", name)

    def call(self, function: str) -> InstrBuilder:
        return self.emit("call", function)

    def block(self, results: tuple[ValType, ...] = ()) -> InstrBuilder:
        return self.emit("block", tuple(results))

    def loop(self, results: tuple[ValType, ...] = ()) -> InstrBuilder:
        return self.emit("loop", tuple(results))

    def if_(self, results: tuple[ValType, ...] = ()) -> InstrBuilder:
        return self.emit("if", tuple(results))

    def else_(self) -> InstrBuilder:
        return self.emit("else")

    def end(self) -> InstrBuilder:
        return self.emit("end")

    def br(self, depth: int) -> InstrBuilder:
        return self.emit("br", depth)

    def br_if(self, depth: int) -> InstrBuilder:
        return self.emit("br_if", depth)

    def load(self, op: str, offset: int = 0) -> InstrBuilder:
        return self.emit(op, MEMORY_OPCODES[op][1], offset)

    def store(self, op: str, offset: int = 0) -> InstrBuilder:
        return self.emit(op, MEMORY_OPCODES[op][1], offset)

    def memory_copy(self) -> InstrBuilder:
        return self.emit("memory.copy")

    def memory_size(self) -> InstrBuilder:
        return self.emit("memory.size")

    def memory_grow(self) -> InstrBuilder:
        return self.emit("memory.grow")


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

Resolver = Callable[[str], int]


def encode_instructions(instrs: list[Instr], func_index: Resolver, global_index: Resolver,
                        block_type_index: Callable[[tuple[ValType, ...]], int]) -> bytes:
    out = bytearray()
    for ins in instrs:
        op = ins.op
        if op in SIMPLE_OPCODES:
            out.append(SIMPLE_OPCODES[op])
        elif op == "i32.const":
            out.append(0x41)
            out += sleb128(ins.args[0])
        elif op == "i64.const":
            out.append(0x42)
            out += sleb128(ins.args[0])
        elif op in VARIABLE_OPCODES:
            out.append(VARIABLE_OPCODES[op])
            target = ins.args[0]
            if op.startswith("global"):
                target = global_index(target)
            out += uleb128(target)
        elif op == "call":
            out.append(0x10)
            out += uleb128(func_index(ins.args[0]))
        elif op in BLOCK_OPCODES:
            out.append(BLOCK_OPCODES[op])
            results = ins.args[0]
            if not results:
                out.append(EMPTY_BLOCK)
            elif len(results) == 1:
                out.append(results[0])
            else:
                out += sleb128(block_type_index(results))
        elif op in BRANCH_OPCODES:
            out.append(BRANCH_OPCODES[op])
            out += uleb128(ins.args[0])
        elif op in MEMORY_OPCODES:
            out.append(MEMORY_OPCODES[op][0])
            out += uleb128(ins.args[0]) + uleb128(ins.args[1])
        elif op == "memory.copy":
            out += b"\xfc" + uleb128(10) + b"\x00\x00"
        elif op == "memory.size":
            out += b"\x3f\x00"
        elif op == "memory.grow":
            out += b"\x40\x00"
        else:
            raise ValueError(f"cannot encode instruction '{op}'")
    return bytes(out)


def check_nesting(instrs: list[Instr]) -> bool:
    """Every block/loop/if is closed by exactly one end, and no end is unmatched."""
    depth = 0
    for ins in instrs:
        if ins.op in BLOCK_OPCODES:
            depth += 1
        elif ins.op == "end":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0
