"""clar2wasm Pass 3 — Emit.

Checked tree -> WebAssembly binary module.

Every Clarity value is a fixed sequence of wasm values (its *flat* form):

    int, uint                  i64 low, i64 high
    bool, NoType               i32
    buff, string, list,
    principal, trait           i32 offset, i32 byte length
    optional                   i32 indicator, payload
    response                   i32 indicator, ok value, err value
    tuple                      fields in sorted-name order

Inside linear memory (list elements) a value is stored as its flat form
written out sequentially, little-endian, 4 bytes per i32 and 8 per i64.
Payloads that are not active are always zero.

Memory is an arena. Literal data sits in the data section from offset 0 and
the exported ``stack-pointer`` global bumps upward from the end of it. Memory
starts at the configured size, or larger if the literals need it, and every
allocation that runs past its end grows it by whole pages. A function
remembers the pointer on entry; on return the in-memory parts of its result
are copied to the top of the arena, pointers already adjusted, and the whole
block is moved down to the entry pointer, so everything else the call
allocated is released and the caller owns the result.

Nothing here reports user errors: a tree that passed the checker always
lowers, and anything else raises ``CodegenError``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from clar2wasm import abi, stdlib
from clar2wasm.abi import RuntimeErrorCode, HASH_IMPORTS, KEYWORD_IMPORTS, host_function, marshal_size
from clar2wasm.ast_nodes import (
    Expr, Atom, IntLiteral, BoolLiteral, BufferLiteral, StringLiteral,
    PrincipalLiteral, ListLiteral, TupleLiteral, SomeLiteral, NoneLiteral,
    ResponseLiteral, ListExpr, DefineFunction, DefineConstant, DefineDataVar,
    DefineMap, DefineFungibleToken, DefineNonFungibleToken, TopLevelExpr,
    Visibility,
)
from clar2wasm.builtins import KEYWORDS
from clar2wasm.errors import CodegenError
from clar2wasm.pass1_check import CheckResult
from clar2wasm.principal import MAX_PRINCIPAL_SIZE
from clar2wasm.types import (
    ClarityType, IntType, UIntType, BoolType, NoType, PrincipalType, TraitType,
    BufferType, StringType, ListType, OptionalType, ResponseType, TupleType,
    INT, UINT, BOOL, PRINCIPAL, NO_TYPE,
    element_type, has_memory_parts, least_supertype, sequence_length,
)
from clar2wasm.wasm import (
    Module, Function, Global, Import, DataSegment, InstrBuilder, ValType, name_section,
)

logger = logging.getLogger(__name__)

I32, I64 = ValType.I32, ValType.I64

STACK_POINTER = "stack-pointer"
TOP_LEVEL = ".top-level"
DEBUG_SECTION = "clarity.debug"
DEFAULT_MEMORY_PAGES = 16
_MASK64 = (1 << 64) - 1


def _pages(size: int) -> int:
    return (size + (1 << stdlib.PAGE_BITS) - 1) >> stdlib.PAGE_BITS


class CompileMode(Enum):
    MODULE = "module"
    DEBUG = "debug"


@dataclass(frozen=True)
class ModuleArtifact:
    """A finished module: its bytes plus what it exports and imports."""
    wasm: bytes
    exports: tuple[str, ...]
    imports: tuple[str, ...]
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def write(self, path) -> None:
        with open(path, "wb") as f:
            f.write(self.wasm)


# ---------------------------------------------------------------------------
# Representation
# ---------------------------------------------------------------------------

def flat(t: ClarityType) -> tuple[ValType, ...]:
    """The wasm values a value of type ``t`` occupies."""
    if isinstance(t, (IntType, UIntType)):
        return (I64, I64)
    if isinstance(t, (BoolType, NoType)):
        return (I32,)
    if isinstance(t, (BufferType, StringType, ListType, PrincipalType, TraitType)):
        return (I32, I32)
    if isinstance(t, OptionalType):
        return (I32,) + flat(t.inner)
    if isinstance(t, ResponseType):
        return (I32,) + flat(t.ok) + flat(t.err)
    if isinstance(t, TupleType):
        return sum((flat(ft) for _, ft in t.fields), ())
    raise CodegenError(f"type '{t}' has no wasm representation")


def stored_size(t: ClarityType) -> int:
    """Bytes a value of type ``t`` takes as a list element."""
    return sum(4 if vt == I32 else 8 for vt in flat(t))


def unit_size(seq: ClarityType) -> int:
    """Bytes per element of a sequence."""
    if isinstance(seq, ListType):
        return stored_size(seq.element)
    if isinstance(seq, StringType) and seq.utf8:
        return 4
    return 1


def parts(t: ClarityType) -> list[ClarityType]:
    """Components of a compound value; the indicator of optional/response is a bool."""
    if isinstance(t, OptionalType):
        return [BOOL, t.inner]
    if isinstance(t, ResponseType):
        return [BOOL, t.ok, t.err]
    if isinstance(t, TupleType):
        return [ft for _, ft in t.fields]
    raise CodegenError(f"type '{t}' is not compound")


def needs_conversion(src: ClarityType, dst: ClarityType) -> bool:
    """Whether admitting ``src`` where ``dst`` is expected changes the representation."""
    if src == dst:
        return False
    if isinstance(src, NoType):
        return not isinstance(dst, NoType)
    if isinstance(src, ListType) and isinstance(dst, ListType):
        return src.max_len > 0 and needs_conversion(src.element, dst.element)
    if isinstance(src, (OptionalType, ResponseType, TupleType)) and type(src) is type(dst):
        return any(needs_conversion(s, d) for s, d in zip(parts(src), parts(dst)))
    return False


def string_bytes(literal: StringLiteral) -> bytes:
    if literal.utf8:
        return b"".join(ord(c).to_bytes(4, "big") for c in literal.value)
    return literal.value.encode("ascii")


# ---------------------------------------------------------------------------
# Function state
# ---------------------------------------------------------------------------

class _Body(InstrBuilder):
    """Instruction builder that tracks how many blocks are open."""

    def __init__(self) -> None:
        super().__init__()
        self.depth = 0

    def block(self, results=()):
        self.depth += 1
        return super().block(results)

    def loop(self, results=()):
        self.depth += 1
        return super().loop(results)

    def if_(self, results=()):
        self.depth += 1
        return super().if_(results)

    def end(self):
        self.depth -= 1
        return super().end()


class _Scope:
    def __init__(self, parent: Optional[_Scope] = None):
        self.parent = parent
        self.bindings: dict[str, tuple[ClarityType, list[int]]] = {}

    def bind(self, name: str, typ: ClarityType, values: list[int]) -> None:
        self.bindings[name] = (typ, values)

    def lookup(self, name: str) -> Optional[tuple[ClarityType, list[int]]]:
        if name in self.bindings:
            return self.bindings[name]
        return self.parent.lookup(name) if self.parent else None

    def child(self) -> _Scope:
        return _Scope(self)


@dataclass
class _FunctionState:
    name: str
    params: tuple[ValType, ...]
    return_type: Optional[ClarityType]
    body: _Body = field(default_factory=_Body)
    locals: list[ValType] = field(default_factory=list)
    frame: int = -1
    # exit imports of the as-contract / at-block forms currently open
    contexts: list[str] = field(default_factory=list)

    def local(self, valtype: ValType) -> int:
        self.locals.append(valtype)
        return len(self.params) + len(self.locals) - 1


_ARITHMETIC = {"+": "add", "-": "sub", "*": "mul", "/": "div", "mod": "mod"}
_COMPARISON = {"<": "lt", "<=": "le", ">": "gt", ">=": "ge"}

# built-in -> (host import, operand kinds)
_TOKEN_CALLS: dict[str, tuple[str, tuple[str, ...]]] = {
    "ft-get-supply": ("ft_get_supply", ("ft",)),
    "ft-get-balance": ("ft_get_balance", ("ft", "principal")),
    "ft-mint?": ("ft_mint", ("ft", "uint", "principal")),
    "ft-transfer?": ("ft_transfer", ("ft", "uint", "principal", "principal")),
    "ft-burn?": ("ft_burn", ("ft", "uint", "principal")),
    "nft-mint?": ("nft_mint", ("nft", "asset", "principal")),
    "nft-transfer?": ("nft_transfer", ("nft", "asset", "principal", "principal")),
    "nft-burn?": ("nft_burn", ("nft", "asset", "principal")),
    "stx-get-balance": ("stx_get_balance", ("principal",)),
    "stx-transfer?": ("stx_transfer", ("uint", "principal", "principal")),
    "stx-burn?": ("stx_burn", ("uint", "principal")),
}


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------

class WasmEmitter:
    """Lowers a checked contract to a wasm module."""

    def __init__(self, check_result: CheckResult, mode: CompileMode = CompileMode.MODULE,
                 memory_pages: int = DEFAULT_MEMORY_PAGES):
        if not check_result.ok:
            raise CodegenError("cannot emit a contract that failed checking")
        self.result = check_result
        self.program = check_result.program
        self.globals = check_result.signatures
        self.mode = mode
        self.module = Module()
        self.module.memory_pages = memory_pages
        self._data = bytearray()
        self._interned: dict[bytes, int] = {}
        self._helpers: set[str] = set()
        self._fn: Optional[_FunctionState] = None
        self._handlers: dict[str, Callable[[ListExpr, _Scope], None]] = {
            **{op: self._emit_arithmetic for op in _ARITHMETIC},
            **{op: self._emit_comparison for op in _COMPARISON},
            "is-eq": self._emit_is_eq,
            "and": self._emit_logic, "or": self._emit_logic, "not": self._emit_not,
            "if": self._emit_if,
            "begin": self._emit_begin,
            "asserts!": self._emit_asserts,
            "let": self._emit_let,
            "match": self._emit_match,
            "unwrap!": self._emit_unwrap, "unwrap-panic": self._emit_unwrap,
            "unwrap-err!": self._emit_unwrap, "unwrap-err-panic": self._emit_unwrap,
            "try!": self._emit_try,
            "default-to": self._emit_default_to,
            "is-some": self._emit_indicator, "is-none": self._emit_indicator,
            "is-ok": self._emit_indicator, "is-err": self._emit_indicator,
            "len": self._emit_len,
            "concat": self._emit_concat,
            "append": self._emit_append,
            "as-max-len?": self._emit_as_max_len,
            "element-at": self._emit_element_at, "element-at?": self._emit_element_at,
            "index-of": self._emit_index_of, "index-of?": self._emit_index_of,
            "map": self._emit_map,
            "filter": self._emit_filter,
            "fold": self._emit_fold,
            "to-int": self._emit_to_int, "to-uint": self._emit_to_int,
            "buff-to-int-be": self._emit_buff_to_int, "buff-to-int-le": self._emit_buff_to_int,
            "buff-to-uint-be": self._emit_buff_to_int, "buff-to-uint-le": self._emit_buff_to_int,
            "get": self._emit_get,
            "merge": self._emit_merge,
            "var-get": self._emit_var_get, "var-set": self._emit_var_set,
            "map-get?": self._emit_map_get,
            "map-set": self._emit_map_write, "map-insert": self._emit_map_write,
            "map-delete": self._emit_map_write,
            **{op: self._emit_token for op in _TOKEN_CALLS},
            "nft-get-owner?": self._emit_nft_owner,
            **{op: self._emit_hash for op in HASH_IMPORTS},
            "print": self._emit_print,
            "contract-call?": self._emit_contract_call,
            "as-contract": self._emit_as_contract,
            "at-block": self._emit_at_block,
            "get-block-info?": self._emit_block_info,
            "get-burn-block-info?": self._emit_block_info,
        }

    def emit_module(self) -> ModuleArtifact:
        self.module.add_global(Global(STACK_POINTER, I32, mutable=True, export=STACK_POINTER))
        for name, typ in self.globals.constants.items():
            for i, vt in enumerate(flat(typ)):
                self.module.add_global(Global(f"const.{name}.{i}", vt))

        for decl in self.program.functions():
            self._emit_function(decl)
        self._emit_top_level()

        if stdlib.needs_runtime_error(self._helpers):
            self._import("runtime_error")
        for helper in stdlib.build(self._helpers):
            self.module.add_function(helper)

        if self._data:
            self.module.data.append(DataSegment(0, bytes(self._data)))
        # The arena starts at the first 8-byte boundary after the literals
        arena = (len(self._data) + 7) & ~7
        self.module.globals[0].init = arena
        self.module.memory_pages = max(self.module.memory_pages, _pages(arena))

        metadata = self._metadata()
        if self.mode == CompileMode.DEBUG:
            self.module.add_custom_section("name", name_section(self.module, self.program.filename))
            self.module.add_custom_section(
                DEBUG_SECTION, json.dumps(metadata, sort_keys=True).encode("utf-8"))
        wasm = self.module.to_bytes()
        exports = tuple(f.export for f in self.module.functions if f.export is not None)
        imports = tuple(i.name for i in self.module.imports)
        logger.debug("emitted %s: %d bytes, %d function(s), %d import(s)",
                     self.program.filename, len(wasm), len(self.module.functions), len(imports))
        return ModuleArtifact(wasm=wasm, exports=exports, imports=imports, metadata=metadata)

    def _metadata(self) -> dict[str, Any]:
        functions = {}
        for decl in self.program.functions():
            sig = self.globals.functions[decl.name]
            cost = decl.body.cost
            functions[decl.name] = {
                "visibility": decl.visibility.value,
                "params": [[n, str(t)] for n, t in sig.params],
                "returns": str(sig.return_type),
                "span": decl.span.to_dict() if decl.span else None,
                "cost": cost.to_dict() if cost is not None else None,
            }
        return {"abi_version": abi.ABI_VERSION, "functions": functions}

    # -------------------------------------------------------------------
    # Functions
    # -------------------------------------------------------------------

    @property
    def b(self) -> _Body:
        return self._fn.body

    def _emit_function(self, decl: DefineFunction) -> None:
        sig = self.globals.functions.get(decl.name)
        if sig is None or sig.poisoned or sig.return_type is None:
            raise CodegenError(f"function '{decl.name}' was not checked", decl.span)
        params: tuple[ValType, ...] = ()
        scope = _Scope()
        for pname, ptype in sig.params:
            start = len(params)
            params += flat(ptype)
            scope.bind(pname, ptype, list(range(start, len(params))))

        state = _FunctionState(decl.name, params, sig.return_type)
        self._fn = state
        state.frame = state.local(I32)
        self.b.global_get(STACK_POINTER).local_set(state.frame)
        self.b.block(flat(sig.return_type))
        self._emit(decl.body, scope)
        self._return(decl.body.inferred_type, early=False)
        self.b.end()

        export = decl.name if decl.visibility != Visibility.PRIVATE else None
        self.module.add_function(Function(
            decl.name, params, flat(sig.return_type), state.locals, list(state.body), export))
        self._fn = None

    def _return(self, src: ClarityType, early: bool) -> None:
        """Leave the current function with the value on the stack."""
        state = self._fn
        ret = state.return_type
        if ret is None:
            raise CodegenError(f"early return outside a function in '{state.name}'")
        self._coerce(src, ret)
        if early:
            for exit_import in reversed(state.contexts):
                self._call_host(exit_import)
        b = self.b
        if has_memory_parts(ret):
            values = self._spill(ret)
            top, delta = state.local(I32), state.local(I32)
            b.global_get(STACK_POINTER).local_tee(top)
            b.local_get(state.frame).op("i32.sub").local_set(delta)
            self._copy_out(ret, values, delta)
            # move [top, sp) down to the frame base
            b.local_get(state.frame).local_get(top)
            b.global_get(STACK_POINTER).local_get(top).op("i32.sub")
            b.memory_copy()
            b.local_get(state.frame)
            b.global_get(STACK_POINTER).local_get(top).op("i32.sub", "i32.add")
            b.global_set(STACK_POINTER)
            self._push(values)
        else:
            b.local_get(state.frame).global_set(STACK_POINTER)
        if early:
            b.br(b.depth - 1)

    def _copy_out(self, t: ClarityType, values: list[int], delta: int) -> None:
        """Copy the in-memory parts of ``values`` to the arena top; pointers end up ``delta`` lower."""
        if not has_memory_parts(t):
            return
        b = self.b
        if isinstance(t, ListType) and has_memory_parts(t.element):
            off, length = values
            es = stored_size(t.element)
            new = self._alloc_dynamic(length)
            count = self._count(length, es)

            def copy_element(i: int) -> None:
                element = self._load_element(t.element, off, i, es)
                self._copy_out(t.element, element, delta)
                self._store(t.element, self._address(new, i, es), element)

            self._loop(count, copy_element)
            b.local_get(new).local_get(delta).op("i32.sub").local_set(off)
        elif isinstance(t, (BufferType, StringType, ListType, PrincipalType, TraitType)):
            off, length = values
            new = self._alloc_dynamic(length)
            b.local_get(new).local_get(off).local_get(length).memory_copy()
            b.local_get(new).local_get(delta).op("i32.sub").local_set(off)
        else:
            for pt, pv in self._split(t, values):
                self._copy_out(pt, pv, delta)

    def _emit_top_level(self) -> None:
        self._fn = _FunctionState(TOP_LEVEL, (), None)
        scope = _Scope()
        b = self.b
        for decl in self.program.declarations:
            if isinstance(decl, DefineConstant):
                typ = self.globals.constants[decl.name]
                self._emit_as(decl.value, scope, typ)
                for i, local in enumerate(self._spill(typ)):
                    b.local_get(local).global_set(f"const.{decl.name}.{i}")
            elif isinstance(decl, DefineDataVar):
                typ = self.globals.data_vars[decl.name]
                self._name(decl.name)
                buf, size = self._marshalled(decl.value, scope, typ)
                b.local_get(buf).i32_const(size)
                self._call_host("define_variable")
            elif isinstance(decl, DefineMap):
                self._name(decl.name)
                self._call_host("define_map")
            elif isinstance(decl, DefineFungibleToken):
                self._name(decl.name)
                if decl.supply is not None:
                    b.i32_const(1)
                    self._emit_as(decl.supply, scope, UINT)
                else:
                    b.i32_const(0).i64_const(0).i64_const(0)
                self._call_host("define_ft")
            elif isinstance(decl, DefineNonFungibleToken):
                self._name(decl.name)
                self._call_host("define_nft")
            elif isinstance(decl, TopLevelExpr):
                self._emit(decl.expr, scope)
                self._drop(self._type(decl.expr))
        state = self._fn
        self.module.add_function(Function(TOP_LEVEL, (), (), state.locals, list(state.body), TOP_LEVEL))
        self._fn = None

    # -------------------------------------------------------------------
    # Low-level helpers
    # -------------------------------------------------------------------

    def _type(self, expr: Expr) -> ClarityType:
        if expr.inferred_type is None or expr.poisoned:
            raise CodegenError("expression has no checked type", expr.span)
        return expr.inferred_type

    def _local(self, valtype: ValType) -> int:
        return self._fn.local(valtype)

    def _import(self, name: str) -> str:
        hf = host_function(name)
        self.module.add_import(Import(abi.HOST_MODULE, hf.name, hf.params, hf.results))
        return hf.symbol

    def _call_host(self, name: str) -> None:
        self.b.call(self._import(name))

    def _helper(self, name: str) -> None:
        self._helpers.add(name)
        self.b.call(f"stdlib.{name}")

    def _intern(self, data: bytes) -> int:
        if data not in self._interned:
            self._interned[data] = len(self._data)
            self._data += data
        return self._interned[data]

    def _literal(self, data: bytes) -> None:
        self.b.i32_const(self._intern(data)).i32_const(len(data))

    def _name(self, name: str) -> None:
        self._literal(name.encode("ascii"))

    def _spill(self, t: ClarityType) -> list[int]:
        values = [self._local(vt) for vt in flat(t)]
        for local in reversed(values):
            self.b.local_set(local)
        return values

    def _push(self, values: list[int]) -> None:
        for local in values:
            self.b.local_get(local)

    def _drop(self, t: ClarityType) -> None:
        for _ in flat(t):
            self.b.op("drop")

    def _zeros(self, t: ClarityType) -> None:
        for vt in flat(t):
            if vt == I32:
                self.b.i32_const(0)
            else:
                self.b.i64_const(0)

    def _split(self, t: ClarityType, values: list[int]) -> list[tuple[ClarityType, list[int]]]:
        out = []
        pos = 0
        for pt in parts(t):
            n = len(flat(pt))
            out.append((pt, values[pos:pos + n]))
            pos += n
        return out

    def _panic(self, code: RuntimeErrorCode) -> None:
        self.b.i32_const(int(code))
        self._call_host("runtime_error")
        self.b.op("unreachable")

    def _alloc(self, size: int) -> int:
        """Reserve ``size`` bytes of arena; returns the local holding their address."""
        ptr = self._local(I32)
        self.b.global_get(STACK_POINTER).local_tee(ptr).i32_const(size).op("i32.add")
        self._bump()
        return ptr

    def _alloc_dynamic(self, size: int) -> int:
        ptr = self._local(I32)
        self.b.global_get(STACK_POINTER).local_tee(ptr).local_get(size).op("i32.add")
        self._bump()
        return ptr

    def _bump(self) -> None:
        """Move the stack pointer to the address on the stack, growing memory to cover it."""
        self.b.global_set(STACK_POINTER).global_get(STACK_POINTER)
        self._helper("reserve")

    def _count(self, length: int, unit: int) -> int:
        """Element count of a sequence of ``length`` bytes."""
        count = self._local(I32)
        self.b.local_get(length)
        if unit != 1:
            self.b.i32_const(unit).op("i32.div_u")
        self.b.local_set(count)
        return count

    def _address(self, base: int, index: int, size: int) -> int:
        addr = self._local(I32)
        self.b.local_get(base).local_get(index).i32_const(size).op("i32.mul", "i32.add")
        self.b.local_set(addr)
        return addr

    def _loop(self, count: int, body: Callable[[int], None]) -> None:
        """``for i in range(count): body(i)``"""
        b = self.b
        i = self._local(I32)
        b.i32_const(0).local_set(i)
        b.block()
        b.loop()
        b.local_get(i).local_get(count).op("i32.ge_u").br_if(1)
        body(i)
        b.local_get(i).i32_const(1).op("i32.add").local_set(i)
        b.br(0)
        b.end()
        b.end()

    def _load(self, t: ClarityType, addr: int, offset: int = 0) -> None:
        for vt in flat(t):
            self.b.local_get(addr)
            if vt == I32:
                self.b.load("i32.load", offset)
                offset += 4
            else:
                self.b.load("i64.load", offset)
                offset += 8

    def _store(self, t: ClarityType, addr: int, values: list[int], offset: int = 0) -> None:
        for vt, local in zip(flat(t), values):
            self.b.local_get(addr).local_get(local)
            if vt == I32:
                self.b.store("i32.store", offset)
                offset += 4
            else:
                self.b.store("i64.store", offset)
                offset += 8

    def _load_element(self, t: ClarityType, base: int, index: int, size: int) -> list[int]:
        self._load(t, self._address(base, index, size))
        return self._spill(t)

    def _element(self, seq: ClarityType, off: int, index: int) -> None:
        """Push element ``index`` of a sequence."""
        unit = unit_size(seq)
        addr = self._address(off, index, unit)
        if isinstance(seq, ListType):
            self._load(seq.element, addr)
        else:
            self.b.local_get(addr).i32_const(unit)

    # -------------------------------------------------------------------
    # Coercion and equality
    # -------------------------------------------------------------------

    def _coerce(self, src: ClarityType, dst: ClarityType) -> None:
        if needs_conversion(src, dst):
            self._convert(src, dst, self._spill(src))

    def _convert(self, src: ClarityType, dst: ClarityType, values: list[int]) -> None:
        if not needs_conversion(src, dst):
            self._push(values)
        elif isinstance(src, NoType):
            self._zeros(dst)
        elif isinstance(src, ListType):
            self._convert_list(src, dst, values)
        elif isinstance(src, (OptionalType, ResponseType, TupleType)):
            for (st, sv), dt in zip(self._split(src, values), parts(dst)):
                self._convert(st, dt, sv)
        else:
            raise CodegenError(f"cannot convert '{src}' to '{dst}'")

    def _convert_list(self, src: ListType, dst: ListType, values: list[int]) -> None:
        off, length = values
        src_size, dst_size = stored_size(src.element), stored_size(dst.element)
        count = self._count(length, src_size)
        total = self._local(I32)
        self.b.local_get(count).i32_const(dst_size).op("i32.mul").local_set(total)
        dest = self._alloc_dynamic(total)

        def convert_element(i: int) -> None:
            element = self._load_element(src.element, off, i, src_size)
            self._convert(src.element, dst.element, element)
            self._store(dst.element, self._address(dest, i, dst_size), self._spill(dst.element))

        self._loop(count, convert_element)
        self.b.local_get(dest).local_get(total)

    def _emit_as(self, expr: Expr, scope: _Scope, target: ClarityType) -> None:
        self._emit(expr, scope)
        self._coerce(self._type(expr), target)

    def _equal(self, t: ClarityType, a: list[int], b: list[int]) -> None:
        """Push whether two values of type ``t`` are equal."""
        ins = self.b
        if isinstance(t, (IntType, UIntType)):
            ins.local_get(a[0]).local_get(b[0]).op("i64.eq")
            ins.local_get(a[1]).local_get(b[1]).op("i64.eq", "i32.and")
        elif isinstance(t, (BoolType, NoType)):
            ins.local_get(a[0]).local_get(b[0]).op("i32.eq")
        elif isinstance(t, ListType) and has_memory_parts(t.element):
            raise CodegenError(f"values of type '{t}' cannot be compared")
        elif isinstance(t, (BufferType, StringType, ListType, PrincipalType, TraitType)):
            self._push(a + b)
            self._helper("memeq")
        else:
            pairs = zip(self._split(t, a), self._split(t, b))
            for n, ((pt, pa), (_, pb)) in enumerate(pairs):
                self._equal(pt, pa, pb)
                if n:
                    ins.op("i32.and")

    # -------------------------------------------------------------------
    # Marshalling
    # -------------------------------------------------------------------

    def _marshal(self, t: ClarityType, values: list[int], addr: int, offset: int = 0) -> None:
        """Write ``values`` at ``addr + offset`` in the host layout."""
        b = self.b
        if isinstance(t, (IntType, UIntType)):
            self._store(t, addr, values, offset)
        elif isinstance(t, (BoolType, NoType)):
            self._store(t, addr, values, offset)
        elif isinstance(t, ListType):
            off, length = values
            es = stored_size(t.element)
            count = self._count(length, es)
            b.local_get(addr).local_get(count).store("i32.store", offset)
            if not has_memory_parts(t.element):
                # flat elements are laid out identically on both sides
                b.local_get(addr).i32_const(offset + 4).op("i32.add")
                b.local_get(off).local_get(length).memory_copy()
                return
            ms = marshal_size(t.element)
            base = self._local(I32)
            b.local_get(addr).i32_const(offset + 4).op("i32.add").local_set(base)

            def marshal_element(i: int) -> None:
                element = self._load_element(t.element, off, i, es)
                self._marshal(t.element, element, self._address(base, i, ms))

            self._loop(count, marshal_element)
        elif isinstance(t, (BufferType, StringType, PrincipalType, TraitType)):
            off, length = values
            b.local_get(addr).local_get(length).store("i32.store", offset)
            b.local_get(addr).i32_const(offset + 4).op("i32.add")
            b.local_get(off).local_get(length).memory_copy()
        else:
            pos = offset
            for pt, pv in self._split(t, values):
                self._marshal(pt, pv, addr, pos)
                pos += marshal_size(pt)

    def _unmarshal(self, t: ClarityType, addr: int, offset: int = 0) -> None:
        """Push a value of type ``t`` read from the host layout at ``addr + offset``."""
        b = self.b
        if isinstance(t, (IntType, UIntType, BoolType, NoType)):
            self._load(t, addr, offset)
        elif isinstance(t, ListType) and has_memory_parts(t.element):
            es, ms = stored_size(t.element), marshal_size(t.element)
            count, total, base = self._local(I32), self._local(I32), self._local(I32)
            b.local_get(addr).load("i32.load", offset).local_set(count)
            b.local_get(count).i32_const(es).op("i32.mul").local_set(total)
            b.local_get(addr).i32_const(offset + 4).op("i32.add").local_set(base)
            dest = self._alloc_dynamic(total)

            def unmarshal_element(i: int) -> None:
                self._unmarshal(t.element, self._address(base, i, ms))
                self._store(t.element, self._address(dest, i, es), self._spill(t.element))

            self._loop(count, unmarshal_element)
            b.local_get(dest).local_get(total)
        elif isinstance(t, (BufferType, StringType, ListType, PrincipalType, TraitType)):
            # the value stays where the host wrote it
            b.local_get(addr).i32_const(offset + 4).op("i32.add")
            b.local_get(addr).load("i32.load", offset)
            if isinstance(t, ListType):
                b.i32_const(stored_size(t.element)).op("i32.mul")
        else:
            pos = offset
            for pt in parts(t):
                self._unmarshal(pt, addr, pos)
                pos += marshal_size(pt)

    def _marshalled(self, expr: Expr, scope: _Scope, t: ClarityType) -> tuple[int, int]:
        """Evaluate ``expr`` as ``t`` into a fresh marshal buffer."""
        self._emit_as(expr, scope, t)
        values = self._spill(t)
        size = marshal_size(t)
        buf = self._alloc(size)
        self._marshal(t, values, buf)
        return buf, size

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def _emit(self, expr: Expr, scope: _Scope) -> None:
        t = self._type(expr)
        b = self.b
        if isinstance(expr, IntLiteral):
            value = expr.value & ((1 << 128) - 1)
            b.i64_const(value & _MASK64).i64_const(value >> 64)
        elif isinstance(expr, BoolLiteral):
            b.i32_const(1 if expr.value else 0)
        elif isinstance(expr, BufferLiteral):
            self._literal(expr.value)
        elif isinstance(expr, StringLiteral):
            self._literal(string_bytes(expr))
        elif isinstance(expr, PrincipalLiteral):
            if expr.principal is None:
                raise CodegenError("unresolved principal literal", expr.span)
            self._literal(expr.principal.to_bytes())
        elif isinstance(expr, NoneLiteral):
            b.i32_const(0)
            self._zeros(NO_TYPE)
        elif isinstance(expr, SomeLiteral):
            b.i32_const(1)
            self._emit(expr.value, scope)
        elif isinstance(expr, ResponseLiteral):
            if expr.is_ok:
                b.i32_const(1)
                self._emit(expr.value, scope)
                self._zeros(t.err)
            else:
                b.i32_const(0)
                self._zeros(t.ok)
                self._emit(expr.value, scope)
        elif isinstance(expr, ListLiteral):
            self._emit_list(expr, scope, t)
        elif isinstance(expr, TupleLiteral):
            values = {}
            for fname, value in expr.fields:
                self._emit(value, scope)
                values[fname] = self._spill(self._type(value))
            for fname, _ in t.fields:
                self._push(values[fname])
        elif isinstance(expr, Atom):
            self._emit_atom(expr, scope)
        elif isinstance(expr, ListExpr):
            self._emit_application(expr, scope)
        else:
            raise CodegenError(f"cannot lower {type(expr).__name__}", expr.span)

    def _emit_list(self, expr: ListLiteral, scope: _Scope, t: ListType) -> None:
        es = stored_size(t.element)
        total = es * len(expr.elements)
        dest = self._alloc(total)
        for n, element in enumerate(expr.elements):
            self._emit_as(element, scope, t.element)
            self._store(t.element, dest, self._spill(t.element), n * es)
        self.b.local_get(dest).i32_const(total)

    def _emit_atom(self, expr: Atom, scope: _Scope) -> None:
        name = expr.name
        bound = scope.lookup(name)
        if bound is not None:
            self._push(bound[1])
        elif name in self.globals.constants:
            for i, _ in enumerate(flat(self.globals.constants[name])):
                self.b.global_get(f"const.{name}.{i}")
        elif name in KEYWORDS:
            if KEYWORDS[name] == PRINCIPAL:
                res = self._alloc(MAX_PRINCIPAL_SIZE)
                self.b.local_get(res).i32_const(MAX_PRINCIPAL_SIZE)
            self._call_host(KEYWORD_IMPORTS[name])
        else:
            raise CodegenError(f"unbound name '{name}'", expr.span)

    def _emit_application(self, expr: ListExpr, scope: _Scope) -> None:
        head = expr.head
        sig = self.globals.functions.get(head)
        if sig is not None:
            for arg, (_, ptype) in zip(expr.args, sig.params):
                self._emit_as(arg, scope, ptype)
            self.b.call(head)
            return
        handler = self._handlers.get(head)
        if handler is None:
            raise CodegenError(f"no lowering for '{head}'", expr.span)
        handler(expr, scope)

    # -------------------------------------------------------------------
    # Arithmetic, comparison, logic
    # -------------------------------------------------------------------

    def _emit_arithmetic(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        helper = f"{_ARITHMETIC[expr.head]}-{'int' if isinstance(t, IntType) else 'uint'}"
        args = expr.args
        if expr.head == "-" and len(args) == 1:
            # negation is 0 - x, so uint traps on anything but u0
            self.b.i64_const(0).i64_const(0)
            self._emit(args[0], scope)
            self._helper(helper)
            return
        self._emit(args[0], scope)
        for arg in args[1:]:
            self._emit(arg, scope)
            self._helper(helper)

    def _emit_comparison(self, expr: ListExpr, scope: _Scope) -> None:
        left, right = expr.args
        lt = self._type(left)
        if isinstance(lt, IntType):
            suffix = "int"
        elif isinstance(lt, UIntType):
            suffix = "uint"
        else:
            # utf8 scalars are big-endian, so bytes order like code points
            suffix = "buff"
        self._emit(left, scope)
        self._emit(right, scope)
        self._helper(f"{_COMPARISON[expr.head]}-{suffix}")

    def _common_type(self, exprs: list[Expr]) -> ClarityType:
        common = self._type(exprs[0])
        for e in exprs[1:]:
            common = least_supertype(common, self._type(e))
            if common is None:
                raise CodegenError("operands have no common type", e.span)
        return common

    def _emit_is_eq(self, expr: ListExpr, scope: _Scope) -> None:
        args = expr.args
        common = self._common_type(args)
        values = []
        for arg in args:
            self._emit_as(arg, scope, common)
            values.append(self._spill(common))
        if len(values) == 1:
            self.b.i32_const(1)
            return
        for n, other in enumerate(values[1:]):
            self._equal(common, values[0], other)
            if n:
                self.b.op("i32.and")

    def _emit_logic(self, expr: ListExpr, scope: _Scope) -> None:
        self._short_circuit(expr.args, scope, expr.head == "and")

    def _short_circuit(self, args: list[Expr], scope: _Scope, conjunction: bool) -> None:
        b = self.b
        self._emit(args[0], scope)
        if len(args) == 1:
            return
        b.if_((I32,))
        if conjunction:
            self._short_circuit(args[1:], scope, conjunction)
            b.else_().i32_const(0)
        else:
            b.i32_const(1).else_()
            self._short_circuit(args[1:], scope, conjunction)
        b.end()

    def _emit_not(self, expr: ListExpr, scope: _Scope) -> None:
        self._emit(expr.args[0], scope)
        self.b.op("i32.eqz")

    # -------------------------------------------------------------------
    # Control flow
    # -------------------------------------------------------------------

    def _emit_if(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        cond, then, other = expr.args
        self._emit(cond, scope)
        self.b.if_(flat(t))
        self._emit_as(then, scope, t)
        self.b.else_()
        self._emit_as(other, scope, t)
        self.b.end()

    def _emit_sequence(self, body: list[Expr], scope: _Scope) -> None:
        for e in body[:-1]:
            self._emit(e, scope)
            self._drop(self._type(e))
        self._emit(body[-1], scope)

    def _emit_begin(self, expr: ListExpr, scope: _Scope) -> None:
        self._emit_sequence(expr.args, scope)

    def _emit_asserts(self, expr: ListExpr, scope: _Scope) -> None:
        cond, thrown = expr.args
        self._emit(cond, scope)
        self.b.op("i32.eqz")
        self.b.if_()
        self._emit(thrown, scope)
        self._return(self._type(thrown), early=True)
        self.b.end()
        self.b.i32_const(1)

    def _emit_let(self, expr: ListExpr, scope: _Scope) -> None:
        inner = scope
        for binding in expr.args[0].items:
            name_node, value = binding.items
            self._emit(value, inner)
            values = self._spill(self._type(value))
            inner = inner.child()
            inner.bind(name_node.name, self._type(value), values)
        self._emit_sequence(expr.args[1:], inner)

    def _emit_match(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        args = expr.args
        subject_type = self._type(args[0])
        self._emit(args[0], scope)
        split = self._split(subject_type, self._spill(subject_type))
        indicator = split[0][1][0]
        b = self.b
        b.local_get(indicator)
        b.if_(flat(t))
        some_scope = scope.child()
        some_scope.bind(args[1].name, *split[1])
        self._emit_as(args[2], some_scope, t)
        b.else_()
        if isinstance(subject_type, OptionalType):
            self._emit_as(args[3], scope, t)
        else:
            err_scope = scope.child()
            err_scope.bind(args[3].name, *split[2])
            self._emit_as(args[4], err_scope, t)
        b.end()

    def _emit_unwrap(self, expr: ListExpr, scope: _Scope) -> None:
        head = expr.head
        args = expr.args
        subject_type = self._type(args[0])
        self._emit(args[0], scope)
        split = self._split(subject_type, self._spill(subject_type))
        indicator = split[0][1][0]
        wants_ok = head in ("unwrap!", "unwrap-panic")
        b = self.b
        b.local_get(indicator)
        if wants_ok:
            b.op("i32.eqz")
        b.if_()
        if len(args) == 2:
            self._emit(args[1], scope)
            self._return(self._type(args[1]), early=True)
        else:
            self._panic(RuntimeErrorCode.UNWRAP_FAILURE)
        b.end()
        self._push(split[1][1] if wants_ok else split[2][1])

    def _emit_try(self, expr: ListExpr, scope: _Scope) -> None:
        subject_type = self._type(expr.args[0])
        self._emit(expr.args[0], scope)
        split = self._split(subject_type, self._spill(subject_type))
        b = self.b
        b.local_get(split[0][1][0]).op("i32.eqz")
        b.if_()
        if isinstance(subject_type, OptionalType):
            thrown: ClarityType = OptionalType(NO_TYPE)
            b.i32_const(0)
            self._zeros(NO_TYPE)
        else:
            thrown = ResponseType(NO_TYPE, subject_type.err)
            b.i32_const(0)
            self._zeros(NO_TYPE)
            self._push(split[2][1])
        self._return(thrown, early=True)
        b.end()
        self._push(split[1][1])

    def _emit_default_to(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        default, subject = expr.args
        self._emit_as(default, scope, t)
        fallback = self._spill(t)
        subject_type = self._type(subject)
        self._emit(subject, scope)
        split = self._split(subject_type, self._spill(subject_type))
        b = self.b
        b.local_get(split[0][1][0])
        b.if_(flat(t))
        self._convert(subject_type.inner, t, split[1][1])
        b.else_()
        self._push(fallback)
        b.end()

    def _emit_indicator(self, expr: ListExpr, scope: _Scope) -> None:
        subject_type = self._type(expr.args[0])
        self._emit(expr.args[0], scope)
        values = self._spill(subject_type)
        self.b.local_get(values[0])
        if expr.head in ("is-none", "is-err"):
            self.b.op("i32.eqz")

    # -------------------------------------------------------------------
    # Sequences
    # -------------------------------------------------------------------

    def _emit_sequence_value(self, expr: Expr, scope: _Scope,
                             target: Optional[ClarityType] = None) -> tuple[ClarityType, list[int]]:
        t = target or self._type(expr)
        self._emit_as(expr, scope, t)
        return t, self._spill(t)

    def _emit_len(self, expr: ListExpr, scope: _Scope) -> None:
        seq, (_, length) = self._emit_sequence_value(expr.args[0], scope)
        count = self._count(length, unit_size(seq))
        self.b.local_get(count).op("i64.extend_i32_u").i64_const(0)

    def _operand_type(self, result: ClarityType, operand: ClarityType) -> ClarityType:
        """``operand`` widened to the element type of ``result``, keeping its own bound."""
        if isinstance(result, ListType):
            return ListType(result.element, sequence_length(operand))
        return operand

    def _emit_concat(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        left, right = expr.args
        _, (a_off, a_len) = self._emit_sequence_value(left, scope, self._operand_type(t, self._type(left)))
        _, (b_off, b_len) = self._emit_sequence_value(right, scope, self._operand_type(t, self._type(right)))
        b = self.b
        total = self._local(I32)
        b.local_get(a_len).local_get(b_len).op("i32.add").local_set(total)
        dest = self._alloc_dynamic(total)
        b.local_get(dest).local_get(a_off).local_get(a_len).memory_copy()
        b.local_get(dest).local_get(a_len).op("i32.add")
        b.local_get(b_off).local_get(b_len).memory_copy()
        b.local_get(dest).local_get(total)

    def _emit_append(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        seq, item = expr.args
        _, (off, length) = self._emit_sequence_value(seq, scope, self._operand_type(t, self._type(seq)))
        self._emit_as(item, scope, t.element)
        item_values = self._spill(t.element)
        b = self.b
        total = self._local(I32)
        b.local_get(length).i32_const(stored_size(t.element)).op("i32.add").local_set(total)
        dest = self._alloc_dynamic(total)
        b.local_get(dest).local_get(off).local_get(length).memory_copy()
        slot = self._local(I32)
        b.local_get(dest).local_get(length).op("i32.add").local_set(slot)
        self._store(t.element, slot, item_values)
        b.local_get(dest).local_get(total)

    def _emit_as_max_len(self, expr: ListExpr, scope: _Scope) -> None:
        seq, (off, length) = self._emit_sequence_value(expr.args[0], scope)
        bound = expr.args[1].value
        b = self.b
        fits = self._local(I32)
        count = self._count(length, unit_size(seq))
        b.local_get(count).op("i64.extend_i32_u").i64_const(bound).op("i64.le_u").local_set(fits)
        b.local_get(fits)
        for value in (off, length):
            b.local_get(value).i32_const(0).local_get(fits).op("select")

    def _emit_element_at(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        seq, (off, length) = self._emit_sequence_value(expr.args[0], scope)
        self._emit(expr.args[1], scope)
        lo, hi = self._spill(UINT)
        b = self.b
        count = self._count(length, unit_size(seq))
        b.local_get(hi).op("i64.eqz")
        b.local_get(lo).local_get(count).op("i64.extend_i32_u", "i64.lt_u", "i32.and")
        b.if_(flat(t))
        b.i32_const(1)
        index = self._local(I32)
        b.local_get(lo).op("i32.wrap_i64").local_set(index)
        self._element(seq, off, index)
        b.else_()
        self._zeros(t)
        b.end()

    def _emit_index_of(self, expr: ListExpr, scope: _Scope) -> None:
        seq_expr, item = expr.args
        seq, (off, length) = self._emit_sequence_value(seq_expr, scope)
        element = element_type(seq)
        common = least_supertype(element, self._type(item))
        if common is None:
            raise CodegenError("index-of item does not match the sequence", item.span)
        self._emit_as(item, scope, common)
        item_values = self._spill(common)
        b = self.b
        count = self._count(length, unit_size(seq))
        found, position = self._local(I32), self._local(I32)
        b.i32_const(0).local_set(found)
        b.i32_const(0).local_set(position)

        def compare(i: int) -> None:
            self._element(seq, off, i)
            self._coerce(element, common)
            self._equal(common, self._spill(common), item_values)
            b.if_()
            b.local_get(i).local_set(position)
            b.i32_const(1).local_set(found)
            b.br(2)
            b.end()

        self._loop(count, compare)
        b.local_get(found)
        b.local_get(position).op("i64.extend_i32_u").i64_const(0)

    def _bind_items(self, expr: ListExpr, scope: _Scope, seqs: list[tuple[ClarityType, int]],
                    index: int) -> _Scope:
        inner = scope.child()
        for n, (seq, off) in enumerate(seqs):
            self._element(seq, off, index)
            element = element_type(seq)
            inner.bind(f"#item{n}", element, self._spill(element))
        return inner

    def _synthetic(self, expr: ListExpr) -> ListExpr:
        if expr.synthetic is None:
            raise CodegenError(f"'{expr.head}' has no element application", expr.span)
        return expr.synthetic

    def _emit_map(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        call = self._synthetic(expr)
        b = self.b
        seqs = []
        count = self._local(I32)
        for n, arg in enumerate(expr.args[1:]):
            seq, (off, length) = self._emit_sequence_value(arg, scope)
            seqs.append((seq, off))
            this = self._count(length, unit_size(seq))
            if n == 0:
                b.local_get(this).local_set(count)
            else:
                b.local_get(this).local_get(count).local_get(this).local_get(count)
                b.op("i32.lt_u", "select").local_set(count)
        es = stored_size(t.element)
        total = self._local(I32)
        b.local_get(count).i32_const(es).op("i32.mul").local_set(total)
        dest = self._alloc_dynamic(total)

        def apply(i: int) -> None:
            inner = self._bind_items(expr, scope, seqs, i)
            self._emit_as(call, inner, t.element)
            self._store(t.element, self._address(dest, i, es), self._spill(t.element))

        self._loop(count, apply)
        b.local_get(dest).local_get(total)

    def _emit_filter(self, expr: ListExpr, scope: _Scope) -> None:
        call = self._synthetic(expr)
        seq, (off, length) = self._emit_sequence_value(expr.args[1], scope)
        unit = unit_size(seq)
        b = self.b
        count = self._count(length, unit)
        dest = self._alloc_dynamic(length)
        kept = self._local(I32)
        b.i32_const(0).local_set(kept)

        def keep(i: int) -> None:
            inner = self._bind_items(expr, scope, [(seq, off)], i)
            self._emit(call, inner)
            b.if_()
            b.local_get(dest).local_get(kept).op("i32.add")
            b.local_get(off).local_get(i).i32_const(unit).op("i32.mul", "i32.add")
            b.i32_const(unit).memory_copy()
            b.local_get(kept).i32_const(unit).op("i32.add").local_set(kept)
            b.end()

        self._loop(count, keep)
        b.local_get(dest).local_get(kept)

    def _emit_fold(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        call = self._synthetic(expr)
        seq, (off, length) = self._emit_sequence_value(expr.args[1], scope)
        self._emit_as(expr.args[2], scope, t)
        acc = self._spill(t)
        count = self._count(length, unit_size(seq))

        def step(i: int) -> None:
            inner = self._bind_items(expr, scope, [(seq, off)], i)
            inner.bind("#acc", t, acc)
            self._emit_as(call, inner, t)
            for local in reversed(acc):
                self.b.local_set(local)

        self._loop(count, step)
        self._push(acc)

    # -------------------------------------------------------------------
    # Conversions and tuples
    # -------------------------------------------------------------------

    def _emit_to_int(self, expr: ListExpr, scope: _Scope) -> None:
        self._emit(expr.args[0], scope)
        lo, hi = self._spill(INT)
        b = self.b
        b.local_get(hi).i64_const(0).op("i64.lt_s")
        b.if_()
        if expr.head == "to-int":
            self._panic(RuntimeErrorCode.OVERFLOW)
        else:
            self._panic(RuntimeErrorCode.NEGATIVE_TO_UINT)
        b.end()
        self._push([lo, hi])

    def _emit_buff_to_int(self, expr: ListExpr, scope: _Scope) -> None:
        self._emit(expr.args[0], scope)
        endian = "be" if expr.head.endswith("-be") else "le"
        self._helper(f"buff-to-uint-{endian}")

    def _emit_get(self, expr: ListExpr, scope: _Scope) -> None:
        field_name = expr.args[0].name
        subject = expr.args[1]
        subject_type = self._type(subject)
        self._emit(subject, scope)
        values = self._spill(subject_type)
        if isinstance(subject_type, OptionalType):
            (_, indicator), (tup, inner) = self._split(subject_type, values)
            self._push(indicator)
        else:
            tup, inner = subject_type, values
        for (fname, _), (_, fvalues) in zip(tup.fields, self._split(tup, inner)):
            if fname == field_name:
                self._push(fvalues)
                return
        raise CodegenError(f"tuple has no field '{field_name}'", expr.span)

    def _emit_merge(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        sources = []
        for arg in expr.args:
            at = self._type(arg)
            self._emit(arg, scope)
            fields = {fname: fv for (fname, _), (_, fv) in zip(at.fields, self._split(at, self._spill(at)))}
            sources.append(fields)
        base, update = sources
        for fname, _ in t.fields:
            self._push(update[fname] if fname in update else base[fname])

    # -------------------------------------------------------------------
    # Storage and tokens
    # -------------------------------------------------------------------

    def _emit_var_get(self, expr: ListExpr, scope: _Scope) -> None:
        name = expr.args[0].name
        t = self.globals.data_vars[name]
        size = marshal_size(t)
        res = self._alloc(size)
        self._name(name)
        self.b.local_get(res).i32_const(size)
        self._call_host("get_variable")
        self._unmarshal(t, res)

    def _emit_var_set(self, expr: ListExpr, scope: _Scope) -> None:
        name = expr.args[0].name
        buf, size = self._marshalled(expr.args[1], scope, self.globals.data_vars[name])
        self._name(name)
        self.b.local_get(buf).i32_const(size)
        self._call_host("set_variable")
        self.b.i32_const(1)

    def _emit_map_get(self, expr: ListExpr, scope: _Scope) -> None:
        name = expr.args[0].name
        key_type, value_type = self.globals.maps[name]
        key, key_size = self._marshalled(expr.args[1], scope, key_type)
        result = OptionalType(value_type)
        size = marshal_size(result)
        res = self._alloc(size)
        self._name(name)
        self.b.local_get(key).i32_const(key_size).local_get(res).i32_const(size)
        self._call_host("map_get")
        self._unmarshal(result, res)

    def _emit_map_write(self, expr: ListExpr, scope: _Scope) -> None:
        name = expr.args[0].name
        key_type, value_type = self.globals.maps[name]
        operands = [self._marshalled(expr.args[1], scope, key_type)]
        if expr.head != "map-delete":
            operands.append(self._marshalled(expr.args[2], scope, value_type))
        self._name(name)
        for buf, size in operands:
            self.b.local_get(buf).i32_const(size)
        self._call_host(expr.head.replace("-", "_"))

    def _emit_token(self, expr: ListExpr, scope: _Scope) -> None:
        host, kinds = _TOKEN_CALLS[expr.head]
        args = expr.args
        # marshal the asset before anything is pushed for the call
        asset = None
        if "asset" in kinds:
            asset_type = self.globals.non_fungible_tokens[args[0].name]
            asset = self._marshalled(args[1], scope, asset_type)
        for arg, kind in zip(args, kinds):
            if kind in ("ft", "nft"):
                self._name(arg.name)
            elif kind == "asset":
                self.b.local_get(asset[0]).i32_const(asset[1])
            elif kind == "uint":
                self._emit_as(arg, scope, UINT)
            else:
                self._emit_as(arg, scope, PRINCIPAL)
        self._call_host(host)

    def _emit_nft_owner(self, expr: ListExpr, scope: _Scope) -> None:
        name = expr.args[0].name
        asset, asset_size = self._marshalled(
            expr.args[1], scope, self.globals.non_fungible_tokens[name])
        result = OptionalType(PRINCIPAL)
        size = marshal_size(result)
        res = self._alloc(size)
        self._name(name)
        self.b.local_get(asset).i32_const(asset_size).local_get(res).i32_const(size)
        self._call_host("nft_get_owner")
        self._unmarshal(result, res)

    # -------------------------------------------------------------------
    # Hashing and chain interaction
    # -------------------------------------------------------------------

    def _emit_hash(self, expr: ListExpr, scope: _Scope) -> None:
        arg = expr.args[0]
        t = self._type(arg)
        self._emit(arg, scope)
        values = self._spill(t)
        b = self.b
        if isinstance(t, (IntType, UIntType)):
            buf = self._alloc(16)
            self._store(t, buf, values)
            off, length = buf, None
        else:
            off, length = values
        digest = self._type(expr).length
        res = self._alloc(digest)
        b.local_get(off)
        if length is None:
            b.i32_const(16)
        else:
            b.local_get(length)
        b.local_get(res)
        self._call_host(HASH_IMPORTS[expr.head])

    def _emit_print(self, expr: ListExpr, scope: _Scope) -> None:
        arg = expr.args[0]
        t = self._type(arg)
        self._emit(arg, scope)
        values = self._spill(t)
        size = marshal_size(t)
        buf = self._alloc(size)
        self._marshal(t, values, buf)
        self.b.local_get(buf).i32_const(size)
        self._literal(str(t).encode("ascii"))
        self._call_host("print")
        self._push(values)

    def _emit_contract_call(self, expr: ListExpr, scope: _Scope) -> None:
        target, method_node, call_args = expr.args[0], expr.args[1], expr.args[2:]
        trait = self.globals.trait(self._type(target).name)
        if trait is None or method_node.name not in trait.methods:
            raise CodegenError("contract-call? target has no known interface", target.span)
        method = trait.methods[method_node.name]
        self._emit(target, scope)
        contract = self._spill(PRINCIPAL)
        total = sum(marshal_size(p) for p in method.params)
        buf = self._alloc(total)
        pos = 0
        for arg, ptype in zip(call_args, method.params):
            self._emit_as(arg, scope, ptype)
            self._marshal(ptype, self._spill(ptype), buf, pos)
            pos += marshal_size(ptype)
        size = marshal_size(method.return_type)
        res = self._alloc(size)
        b = self.b
        self._push(contract)
        self._name(method.name)
        b.local_get(buf).i32_const(total).local_get(res).i32_const(size)
        self._call_host("contract_call")
        self._unmarshal(method.return_type, res)

    def _in_context(self, enter_args: Callable[[], None], enter: str, leave: str,
                    body: Expr, scope: _Scope) -> None:
        enter_args()
        self._call_host(enter)
        self._fn.contexts.append(leave)
        self._emit(body, scope)
        self._fn.contexts.pop()
        self._call_host(leave)

    def _emit_as_contract(self, expr: ListExpr, scope: _Scope) -> None:
        self._in_context(lambda: None, "enter_as_contract", "exit_as_contract", expr.args[0], scope)

    def _emit_at_block(self, expr: ListExpr, scope: _Scope) -> None:
        self._in_context(lambda: self._emit_as(expr.args[0], scope, BufferType(32)),
                         "enter_at_block", "exit_at_block", expr.args[1], scope)

    def _emit_block_info(self, expr: ListExpr, scope: _Scope) -> None:
        t = self._type(expr)
        size = marshal_size(t)
        res = self._alloc(size)
        self._name(expr.args[0].name)
        self._emit_as(expr.args[1], scope, UINT)
        self.b.local_get(res)
        self._call_host("get_burn_block_info" if expr.head == "get-burn-block-info?" else "get_block_info")
        self._unmarshal(t, res)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def emit(check_result: CheckResult, mode: CompileMode = CompileMode.MODULE,
         memory_pages: int = DEFAULT_MEMORY_PAGES) -> ModuleArtifact:
    """Run Pass 3: lower a checked contract to a wasm module.

    Raises CodegenError if the tree contains something that cannot be lowered.
    """
    return WasmEmitter(check_result, mode, memory_pages).emit_module()
