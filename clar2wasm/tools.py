"""Reading produced modules back.

``inspect_module`` decodes the sections a clar2wasm module uses into a
``ModuleSummary``. It understands exactly what the encoder writes (function
imports, one memory, i32/i64 globals with constant initialisers, active data
segments at constant offsets) and rejects anything else.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from clar2wasm.wasm.encoding import (
    MAGIC, VERSION, SectionId, ExternKind, ValType, FUNC_TYPE_TAG,
    decode_uleb128, decode_sleb128,
)


class ModuleFormatError(ValueError):
    pass


@dataclass
class ImportEntry:
    module: str
    name: str
    type_index: int


@dataclass
class ExportEntry:
    name: str
    kind: ExternKind
    index: int


@dataclass
class GlobalEntry:
    valtype: ValType
    mutable: bool
    init: int


@dataclass
class ModuleSummary:
    types: list[tuple[tuple[ValType, ...], tuple[ValType, ...]]] = field(default_factory=list)
    imports: list[ImportEntry] = field(default_factory=list)
    functions: list[int] = field(default_factory=list)  # type index per defined function
    memory_pages: Optional[int] = None
    globals: list[GlobalEntry] = field(default_factory=list)
    exports: list[ExportEntry] = field(default_factory=list)
    code_sizes: list[int] = field(default_factory=list)
    data: list[tuple[int, bytes]] = field(default_factory=list)
    custom: dict[str, bytes] = field(default_factory=dict)
    section_order: list[int] = field(default_factory=list)

    def export_names(self, kind: ExternKind = ExternKind.FUNC) -> list[str]:
        return [e.name for e in self.exports if e.kind == kind]

    def import_names(self) -> list[str]:
        return [f"{i.module}.{i.name}" for i in self.imports]

    def function_signature(self, export_name: str) -> tuple[tuple[ValType, ...], tuple[ValType, ...]]:
        """Signature of an exported function."""
        for e in self.exports:
            if e.kind == ExternKind.FUNC and e.name == export_name:
                index = e.index - len(self.imports)
                return self.types[self.functions[index]]
        raise KeyError(export_name)

    def import_signature(self, name: str) -> tuple[tuple[ValType, ...], tuple[ValType, ...]]:
        for i in self.imports:
            if i.name == name:
                return self.types[i.type_index]
        raise KeyError(name)

    def debug_info(self) -> Optional[dict[str, Any]]:
        payload = self.custom.get("clarity.debug")
        return json.loads(payload.decode("utf-8")) if payload is not None else None

    def to_dict(self) -> dict[str, Any]:
        def sig(t):
            return {"params": [str(p) for p in t[0]], "results": [str(r) for r in t[1]]}
        return {
            "imports": {f"{i.module}.{i.name}": sig(self.types[i.type_index]) for i in self.imports},
            "exports": {e.name: e.kind.name.lower() for e in self.exports},
            "functions": len(self.functions),
            "memory_pages": self.memory_pages,
            "globals": [{"type": str(g.valtype), "mutable": g.mutable, "init": g.init}
                        for g in self.globals],
            "data_bytes": sum(len(d) for _, d in self.data),
            "custom_sections": sorted(self.custom),
        }


class _Reader:
    def __init__(self, data: bytes, pos: int = 0, end: Optional[int] = None):
        self.data = data
        self.pos = pos
        self.end = len(data) if end is None else end

    def byte(self) -> int:
        if self.pos >= self.end:
            raise ModuleFormatError("unexpected end of module")
        b = self.data[self.pos]
        self.pos += 1
        return b

    def u32(self) -> int:
        value, self.pos = decode_uleb128(self.data, self.pos)
        return value

    def s64(self) -> int:
        value, self.pos = decode_sleb128(self.data, self.pos)
        return value

    def bytes(self, n: int) -> bytes:
        if self.pos + n > self.end:
            raise ModuleFormatError("unexpected end of module")
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def name(self) -> str:
        return self.bytes(self.u32()).decode("utf-8")

    def valtype(self) -> ValType:
        b = self.byte()
        try:
            return ValType(b)
        except ValueError:
            raise ModuleFormatError(f"unsupported value type 0x{b:02x}") from None

    def const_expr(self) -> int:
        op = self.byte()
        if op not in (0x41, 0x42):
            raise ModuleFormatError(f"unsupported constant expression opcode 0x{op:02x}")
        value = self.s64()
        if self.byte() != 0x0B:
            raise ModuleFormatError("constant expression not terminated")
        return value


def inspect_module(wasm: bytes) -> ModuleSummary:
    """Decode the header and sections of a module produced by clar2wasm."""
    if wasm[:4] != MAGIC or wasm[4:8] != VERSION:
        raise ModuleFormatError("not a wasm version 1 module")
    summary = ModuleSummary()
    r = _Reader(wasm, 8)
    while r.pos < len(wasm):
        section_id = r.byte()
        size = r.u32()
        if r.pos + size > len(wasm):
            raise ModuleFormatError(f"section {section_id} runs past the end of the module")
        s = _Reader(wasm, r.pos, r.pos + size)
        r.pos += size
        summary.section_order.append(section_id)
        if section_id == SectionId.CUSTOM:
            cname = s.name()
            summary.custom[cname] = wasm[s.pos:s.end]
        elif section_id == SectionId.TYPE:
            for _ in range(s.u32()):
                if s.byte() != FUNC_TYPE_TAG:
                    raise ModuleFormatError("malformed function type")
                params = tuple(s.valtype() for _ in range(s.u32()))
                results = tuple(s.valtype() for _ in range(s.u32()))
                summary.types.append((params, results))
        elif section_id == SectionId.IMPORT:
            for _ in range(s.u32()):
                module, iname = s.name(), s.name()
                if s.byte() != ExternKind.FUNC:
                    raise ModuleFormatError(f"import '{module}.{iname}' is not a function")
                summary.imports.append(ImportEntry(module, iname, s.u32()))
        elif section_id == SectionId.FUNCTION:
            summary.functions = [s.u32() for _ in range(s.u32())]
        elif section_id == SectionId.MEMORY:
            if s.u32() != 1:
                raise ModuleFormatError("expected exactly one memory")
            flags = s.byte()
            summary.memory_pages = s.u32()
            if flags & 1:
                s.u32()
        elif section_id == SectionId.GLOBAL:
            for _ in range(s.u32()):
                vt = s.valtype()
                mutable = bool(s.byte())
                summary.globals.append(GlobalEntry(vt, mutable, s.const_expr()))
        elif section_id == SectionId.EXPORT:
            for _ in range(s.u32()):
                ename = s.name()
                kind = ExternKind(s.byte())
                summary.exports.append(ExportEntry(ename, kind, s.u32()))
        elif section_id == SectionId.CODE:
            for _ in range(s.u32()):
                body_size = s.u32()
                summary.code_sizes.append(body_size)
                s.bytes(body_size)
        elif section_id == SectionId.DATA:
            for _ in range(s.u32()):
                if s.u32() != 0:
                    raise ModuleFormatError("only active data segments are supported")
                offset = s.const_expr()
                summary.data.append((offset, s.bytes(s.u32())))
        else:
            raise ModuleFormatError(f"unsupported section id {section_id}")
    if len(summary.code_sizes) != len(summary.functions):
        raise ModuleFormatError("function and code section sizes differ")
    return summary
