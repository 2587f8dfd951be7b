"""Built-in functions, special forms and keywords of Clarity.

The table records what every stage needs to know about a built-in without
looking at its arguments: arity bounds, the effect it has on chain state and
whether its arguments are ordinary expressions or have a special shape
(binding lists, function names, property names).

Typing rules live in the checker; cost functions in ``costs``; lowering in
the emitter. All three are keyed by the names defined here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from clar2wasm.types import (
    ClarityType, BufferType, ListType, OptionalType, TupleType,
    UINT, BOOL, PRINCIPAL,
)


class Effect(Enum):
    PURE = "pure"
    READ = "read"
    WRITE = "write"


class Category(Enum):
    ARITHMETIC = "arithmetic"
    COMPARISON = "comparison"
    LOGIC = "logic"
    CONTROL = "control"
    BINDING = "binding"
    OPTION = "option"
    SEQUENCE = "sequence"
    CONVERSION = "conversion"
    TUPLE = "tuple"
    STORAGE = "storage"
    TOKEN = "token"
    HASH = "hash"
    CHAIN = "chain"


@dataclass(frozen=True)
class Builtin:
    name: str
    category: Category
    min_args: int
    max_args: Optional[int] = None
    effect: Effect = Effect.PURE
    special: bool = False

    def accepts(self, count: int) -> bool:
        if count < self.min_args:
            return False
        return self.max_args is None or count <= self.max_args

    def arity_text(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.max_args == self.min_args:
            return str(self.min_args)
        return f"{self.min_args} to {self.max_args}"


def _b(name: str, category: Category, min_args: int, max_args: Optional[int] = -1,
       effect: Effect = Effect.PURE, special: bool = False) -> Builtin:
    if max_args == -1:
        max_args = min_args
    return Builtin(name, category, min_args, max_args, effect, special)


_A, _C, _L = Category.ARITHMETIC, Category.COMPARISON, Category.LOGIC
_CTL, _BIND, _OPT = Category.CONTROL, Category.BINDING, Category.OPTION
_SEQ, _CONV, _TUP = Category.SEQUENCE, Category.CONVERSION, Category.TUPLE
_ST, _TOK, _H, _CH = Category.STORAGE, Category.TOKEN, Category.HASH, Category.CHAIN
_R, _W = Effect.READ, Effect.WRITE

_BUILTIN_LIST = [
    # Arithmetic
    _b("+", _A, 1, None),
    _b("-", _A, 1, None),
    _b("*", _A, 1, None),
    _b("/", _A, 2, None),
    _b("mod", _A, 2),

    # Comparison and equality
    _b("<", _C, 2),
    _b("<=", _C, 2),
    _b(">", _C, 2),
    _b(">=", _C, 2),
    _b("is-eq", _C, 1, None),

    # Logic
    _b("and", _L, 1, None),
    _b("or", _L, 1, None),
    _b("not", _L, 1),

    # Control flow
    _b("if", _CTL, 3),
    _b("begin", _CTL, 1, None),
    _b("asserts!", _CTL, 2),
    _b("match", _CTL, 4, 5, special=True),
    _b("let", _BIND, 2, None, special=True),

    # Optionals and responses
    _b("unwrap!", _OPT, 2),
    _b("unwrap-err!", _OPT, 2),
    _b("unwrap-panic", _OPT, 1),
    _b("unwrap-err-panic", _OPT, 1),
    _b("try!", _OPT, 1),
    _b("default-to", _OPT, 2),
    _b("is-some", _OPT, 1),
    _b("is-none", _OPT, 1),
    _b("is-ok", _OPT, 1),
    _b("is-err", _OPT, 1),

    # Sequences
    _b("len", _SEQ, 1),
    _b("concat", _SEQ, 2),
    _b("append", _SEQ, 2),
    _b("as-max-len?", _SEQ, 2, special=True),
    _b("element-at", _SEQ, 2),
    _b("element-at?", _SEQ, 2),
    _b("index-of", _SEQ, 2),
    _b("index-of?", _SEQ, 2),
    _b("map", _SEQ, 2, None, special=True),
    _b("filter", _SEQ, 2, special=True),
    _b("fold", _SEQ, 3, special=True),

    # Conversions
    _b("to-int", _CONV, 1),
    _b("to-uint", _CONV, 1),
    _b("buff-to-int-be", _CONV, 1),
    _b("buff-to-int-le", _CONV, 1),
    _b("buff-to-uint-be", _CONV, 1),
    _b("buff-to-uint-le", _CONV, 1),

    # Tuples
    _b("get", _TUP, 2, special=True),
    _b("merge", _TUP, 2),

    # Data storage
    _b("var-get", _ST, 1, effect=_R, special=True),
    _b("var-set", _ST, 2, effect=_W, special=True),
    _b("map-get?", _ST, 2, effect=_R, special=True),
    _b("map-set", _ST, 3, effect=_W, special=True),
    _b("map-insert", _ST, 3, effect=_W, special=True),
    _b("map-delete", _ST, 2, effect=_W, special=True),

    # Tokens
    _b("ft-mint?", _TOK, 3, effect=_W, special=True),
    _b("ft-transfer?", _TOK, 4, effect=_W, special=True),
    _b("ft-burn?", _TOK, 3, effect=_W, special=True),
    _b("ft-get-balance", _TOK, 2, effect=_R, special=True),
    _b("ft-get-supply", _TOK, 1, effect=_R, special=True),
    _b("nft-mint?", _TOK, 3, effect=_W, special=True),
    _b("nft-transfer?", _TOK, 4, effect=_W, special=True),
    _b("nft-burn?", _TOK, 3, effect=_W, special=True),
    _b("nft-get-owner?", _TOK, 2, effect=_R, special=True),
    _b("stx-transfer?", _TOK, 3, effect=_W),
    _b("stx-burn?", _TOK, 2, effect=_W),
    _b("stx-get-balance", _TOK, 1, effect=_R),

    # Hashing
    _b("sha256", _H, 1),
    _b("sha512", _H, 1),
    _b("sha512/256", _H, 1),
    _b("keccak256", _H, 1),
    _b("hash160", _H, 1),

    # Chain interaction
    _b("print", _CH, 1),
    _b("contract-call?", _CH, 2, None, effect=_W, special=True),
    _b("as-contract", _CH, 1),
    _b("at-block", _CH, 2),
    _b("get-block-info?", _CH, 2, effect=_R, special=True),
    _b("get-burn-block-info?", _CH, 2, effect=_R, special=True),
]

BUILTINS: dict[str, Builtin] = {b.name: b for b in _BUILTIN_LIST}

# Keyword atoms evaluate by asking the host.
KEYWORDS: dict[str, ClarityType] = {
    "tx-sender": PRINCIPAL,
    "contract-caller": PRINCIPAL,
    "block-height": UINT,
    "burn-block-height": UINT,
    "stx-liquid-supply": UINT,
    "is-in-mainnet": BOOL,
    "chain-id": UINT,
}

# Forms that leave the enclosing function early.
EARLY_RETURN_FORMS = frozenset({"asserts!", "unwrap!", "unwrap-err!", "try!"})

_HASH32 = BufferType(32)

BLOCK_INFO_PROPERTIES: dict[str, ClarityType] = {
    "time": UINT,
    "header-hash": _HASH32,
    "burnchain-header-hash": _HASH32,
    "id-header-hash": _HASH32,
    "miner-address": PRINCIPAL,
    "block-reward": UINT,
    "miner-spend-total": UINT,
    "miner-spend-winner": UINT,
}

_POX_ADDR = TupleType((("hashbytes", _HASH32), ("version", BufferType(1))))

BURN_BLOCK_INFO_PROPERTIES: dict[str, ClarityType] = {
    "header-hash": _HASH32,
    "pox-addrs": TupleType((("addrs", ListType(_POX_ADDR, 2)), ("payout", UINT))),
}

HASH_RESULT_SIZES: dict[str, int] = {
    "sha256": 32,
    "sha512": 64,
    "sha512/256": 32,
    "keccak256": 32,
    "hash160": 20,
}


def block_info_type(prop: str, burn: bool = False) -> Optional[OptionalType]:
    table = BURN_BLOCK_INFO_PROPERTIES if burn else BLOCK_INFO_PROPERTIES
    if prop not in table:
        return None
    return OptionalType(table[prop])


def lookup(name: str) -> Optional[Builtin]:
    return BUILTINS.get(name)


def is_reserved(name: str) -> bool:
    """Names that user definitions may not shadow."""
    return name in BUILTINS or name in KEYWORDS or name in (
        "true", "false", "none", "some", "ok", "err", "list", "tuple")
