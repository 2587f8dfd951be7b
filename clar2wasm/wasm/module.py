"""In-memory wasm module and its serialisation to the binary format."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from clar2wasm.wasm.encoding import (
    MAGIC, VERSION, ValType, SectionId, ExternKind,
    uleb128, sleb128, name, vector, section, func_type,
)
from clar2wasm.wasm.instructions import Instr, encode_instructions, check_nesting

FuncSig = tuple[tuple[ValType, ...], tuple[ValType, ...]]


@dataclass
class Import:
    module: str
    name: str
    params: tuple[ValType, ...]
    results: tuple[ValType, ...]

    @property
    def symbol(self) -> str:
        return f"{self.module}.{self.name}"


@dataclass
class Function:
    name: str
    params: tuple[ValType, ...]
    results: tuple[ValType, ...]
    locals: list[ValType] = field(default_factory=list)
    body: list[Instr] = field(default_factory=list)
    export: Optional[str] = None


@dataclass
class Global:
    name: str
    valtype: ValType
    mutable: bool = True
    init: int = 0
    export: Optional[str] = None


@dataclass
class DataSegment:
    offset: int
    data: bytes


class Module:
    """A module under construction; functions and globals are referenced by name."""

    def __init__(self) -> None:
        self.types: list[FuncSig] = []
        self.imports: list[Import] = []
        self.functions: list[Function] = []
        self.globals: list[Global] = []
        self.data: list[DataSegment] = []
        self.memory_pages = 1
        self.memory_export: Optional[str] = "memory"
        self.custom_sections: list[tuple[str, bytes]] = []

    # -------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------

    def type_index(self, params: tuple[ValType, ...], results: tuple[ValType, ...]) -> int:
        sig = (tuple(params), tuple(results))
        if sig not in self.types:
            self.types.append(sig)
        return self.types.index(sig)

    def add_import(self, imp: Import) -> None:
        if not any(i.symbol == imp.symbol for i in self.imports):
            self.imports.append(imp)

    def add_function(self, function: Function) -> None:
        if self.has_function(function.name):
            raise ValueError(f"duplicate function '{function.name}'")
        self.functions.append(function)

    def has_function(self, fname: str) -> bool:
        return any(f.name == fname for f in self.functions)

    def add_global(self, glob: Global) -> None:
        self.globals.append(glob)

    def add_custom_section(self, section_name: str, payload: bytes) -> None:
        self.custom_sections.append((section_name, payload))

    # -------------------------------------------------------------------
    # Index spaces
    # -------------------------------------------------------------------

    def function_index(self, fname: str) -> int:
        for i, imp in enumerate(self.imports):
            if imp.symbol == fname:
                return i
        for i, fn in enumerate(self.functions):
            if fn.name == fname:
                return len(self.imports) + i
        raise KeyError(f"unknown function '{fname}'")

    def global_index(self, gname: str) -> int:
        for i, glob in enumerate(self.globals):
            if glob.name == gname:
                return i
        raise KeyError(f"unknown global '{gname}'")

    def function_names(self) -> list[str]:
        return [i.symbol for i in self.imports] + [f.name for f in self.functions]

    # -------------------------------------------------------------------
    # Serialisation
    # -------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        # Register every signature (including multi-value block types) first
        for imp in self.imports:
            self.type_index(imp.params, imp.results)
        for fn in self.functions:
            self.type_index(fn.params, fn.results)
        bodies = [self._encode_body(fn) for fn in self.functions]

        out = bytearray(MAGIC + VERSION)
        out += section(SectionId.TYPE, vector(func_type(p, r) for p, r in self.types))
        if self.imports:
            out += section(SectionId.IMPORT, vector(
                name(i.module) + name(i.name) + bytes([ExternKind.FUNC])
                + uleb128(self.type_index(i.params, i.results))
                for i in self.imports))
        out += section(SectionId.FUNCTION, vector(
            uleb128(self.type_index(f.params, f.results)) for f in self.functions))
        out += section(SectionId.MEMORY, vector([b"\x00" + uleb128(self.memory_pages)]))
        if self.globals:
            out += section(SectionId.GLOBAL, vector(self._encode_global(g) for g in self.globals))
        out += section(SectionId.EXPORT, vector(self._exports()))
        out += section(SectionId.CODE, vector(uleb128(len(b)) + b for b in bodies))
        if self.data:
            out += section(SectionId.DATA, vector(
                b"\x00" + b"\x41" + sleb128(seg.offset) + b"\x0b" + uleb128(len(seg.data)) + seg.data
                for seg in self.data))
        for section_name, payload in self.custom_sections:
            out += section(SectionId.CUSTOM, name(section_name) + payload)
        return bytes(out)

    def _exports(self) -> list[bytes]:
        exports = []
        for fn in self.functions:
            if fn.export is not None:
                exports.append(name(fn.export) + bytes([ExternKind.FUNC])
                               + uleb128(self.function_index(fn.name)))
        if self.memory_export:
            exports.append(name(self.memory_export) + bytes([ExternKind.MEMORY]) + uleb128(0))
        for i, glob in enumerate(self.globals):
            if glob.export is not None:
                exports.append(name(glob.export) + bytes([ExternKind.GLOBAL]) + uleb128(i))
        return exports

    @staticmethod
    def _encode_global(glob: Global) -> bytes:
        const = b"\x41" if glob.valtype == ValType.I32 else b"\x42"
        return (bytes([glob.valtype, 1 if glob.mutable else 0])
                + const + sleb128(glob.init) + b"\x0b")

    def _encode_body(self, fn: Function) -> bytes:
        if not check_nesting(fn.body):
            raise ValueError(f"unbalanced blocks in function '{fn.name}'")
        groups: list[tuple[int, ValType]] = []
        for vt in fn.locals:
            if groups and groups[-1][1] == vt:
                groups[-1] = (groups[-1][0] + 1, vt)
            else:
                groups.append((1, vt))
        locals_bytes = vector(uleb128(n) + bytes([vt]) for n, vt in groups)
        code = encode_instructions(
            fn.body, self.function_index, self.global_index,
            lambda results: self.type_index((), results))
        return locals_bytes + code + b"\x0b"


def name_section(module: Module, module_name: str) -> bytes:
    """Payload of the standard ``name`` custom section: module and function names."""
    module_sub = name(module_name)
    funcs = vector(uleb128(i) + name(n) for i, n in enumerate(module.function_names()))
    return (bytes([0]) + uleb128(len(module_sub)) + module_sub
            + bytes([1]) + uleb128(len(funcs)) + funcs)
