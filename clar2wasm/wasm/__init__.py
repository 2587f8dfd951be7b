"""Minimal WebAssembly module builder and binary encoder."""

from clar2wasm.wasm.encoding import ValType
from clar2wasm.wasm.instructions import Instr, InstrBuilder
from clar2wasm.wasm.module import Module, Function, Global, Import, DataSegment, name_section

__all__ = [
    "ValType", "Instr", "InstrBuilder",
    "Module", "Function", "Global", "Import", "DataSegment", "name_section",
]
