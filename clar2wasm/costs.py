"""Static execution cost model.

Every built-in has a cost function of a single static size (argument count,
serialised value size or list bound). The table is a module-level constant
shared by every compilation; nothing in it is mutated at runtime.

All cost functions are non-decreasing in their input, so widening any bound
in a contract can never lower its estimated cost.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Optional


@dataclass(frozen=True)
class ExecutionCost:
    runtime: int = 0
    read_count: int = 0
    read_length: int = 0
    write_count: int = 0
    write_length: int = 0
    memory: int = 0

    def __add__(self, other: ExecutionCost) -> ExecutionCost:
        return ExecutionCost(*(getattr(self, f.name) + getattr(other, f.name) for f in fields(self)))

    def max(self, other: ExecutionCost) -> ExecutionCost:
        """Component-wise maximum, used where only one of several branches runs."""
        return ExecutionCost(*(max(getattr(self, f.name), getattr(other, f.name)) for f in fields(self)))

    def scale(self, n: int) -> ExecutionCost:
        return ExecutionCost(*(getattr(self, f.name) * n for f in fields(self)))

    def exceeded(self, limits: ExecutionCost) -> list[tuple[str, int, int]]:
        """(dimension, estimate, limit) for every dimension over a non-zero limit."""
        over = []
        for f in fields(self):
            limit = getattr(limits, f.name)
            value = getattr(self, f.name)
            if limit and value > limit:
                over.append((f.name, value, limit))
        return over

    def to_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


ZERO = ExecutionCost()

# Limits of a single block.
BLOCK_LIMITS = ExecutionCost(
    runtime=5_000_000_000,
    read_count=15_000,
    read_length=100_000_000,
    write_count=15_000,
    write_length=15_000_000,
)


# ---------------------------------------------------------------------------
# Cost functions
# ---------------------------------------------------------------------------

def _log2(n: int) -> int:
    return math.ceil(math.log2(n)) if n > 1 else 0


@dataclass(frozen=True)
class CostFunction:
    def evaluate(self, n: int) -> int:
        raise NotImplementedError


@dataclass(frozen=True)
class Constant(CostFunction):
    c: int

    def evaluate(self, n: int) -> int:
        return self.c


@dataclass(frozen=True)
class Linear(CostFunction):
    a: int
    b: int

    def evaluate(self, n: int) -> int:
        return self.a * max(n, 0) + self.b


@dataclass(frozen=True)
class LogN(CostFunction):
    a: int
    b: int

    def evaluate(self, n: int) -> int:
        return self.a * _log2(n) + self.b


@dataclass(frozen=True)
class NLogN(CostFunction):
    a: int
    b: int

    def evaluate(self, n: int) -> int:
        n = max(n, 0)
        return self.a * n * _log2(n) + self.b


class SizeInput:
    """What the size argument of a built-in's cost function measures."""
    ARG_COUNT = "arg_count"
    ARG_SIZE = "arg_size"
    RESULT_SIZE = "result_size"
    LIST_BOUND = "list_bound"
    NONE = "none"


@dataclass(frozen=True)
class BuiltinCost:
    runtime: CostFunction
    size_input: str = SizeInput.NONE
    read_count: int = 0
    write_count: int = 0
    # storage traffic is the serialised size of the value moved
    reads_value: bool = False
    writes_value: bool = False

    def evaluate(self, size: int) -> ExecutionCost:
        return ExecutionCost(
            runtime=self.runtime.evaluate(size),
            read_count=self.read_count,
            read_length=size if self.reads_value else 0,
            write_count=self.write_count,
            write_length=size if self.writes_value else 0,
        )


_S = SizeInput

COST_TABLE: dict[str, BuiltinCost] = {
    # Arithmetic
    "+": BuiltinCost(Linear(11, 125), _S.ARG_COUNT),
    "-": BuiltinCost(Linear(11, 125), _S.ARG_COUNT),
    "*": BuiltinCost(Linear(13, 125), _S.ARG_COUNT),
    "/": BuiltinCost(Linear(13, 125), _S.ARG_COUNT),
    "mod": BuiltinCost(Constant(141)),
    "<": BuiltinCost(Linear(7, 128), _S.ARG_SIZE),
    "<=": BuiltinCost(Linear(7, 128), _S.ARG_SIZE),
    ">": BuiltinCost(Linear(7, 128), _S.ARG_SIZE),
    ">=": BuiltinCost(Linear(7, 128), _S.ARG_SIZE),
    "is-eq": BuiltinCost(Linear(7, 151), _S.ARG_SIZE),

    # Logic and control
    "and": BuiltinCost(Linear(3, 120), _S.ARG_COUNT),
    "or": BuiltinCost(Linear(3, 120), _S.ARG_COUNT),
    "not": BuiltinCost(Constant(138)),
    "if": BuiltinCost(Constant(168)),
    "begin": BuiltinCost(Constant(151)),
    "asserts!": BuiltinCost(Constant(170)),
    "let": BuiltinCost(Linear(117, 178), _S.ARG_COUNT),
    "match": BuiltinCost(Constant(264)),

    # Optionals and responses
    "unwrap!": BuiltinCost(Constant(252)),
    "unwrap-err!": BuiltinCost(Constant(248)),
    "unwrap-panic": BuiltinCost(Constant(274)),
    "unwrap-err-panic": BuiltinCost(Constant(302)),
    "try!": BuiltinCost(Constant(240)),
    "default-to": BuiltinCost(Constant(268)),
    "is-some": BuiltinCost(Constant(214)),
    "is-none": BuiltinCost(Constant(214)),
    "is-ok": BuiltinCost(Constant(258)),
    "is-err": BuiltinCost(Constant(245)),

    # Sequences
    "len": BuiltinCost(Constant(429)),
    "concat": BuiltinCost(Linear(37, 220), _S.RESULT_SIZE),
    "append": BuiltinCost(Linear(73, 285), _S.RESULT_SIZE),
    "as-max-len?": BuiltinCost(Constant(475)),
    "element-at": BuiltinCost(Constant(498)),
    "element-at?": BuiltinCost(Constant(498)),
    "index-of": BuiltinCost(Linear(1, 211), _S.ARG_SIZE),
    "index-of?": BuiltinCost(Linear(1, 211), _S.ARG_SIZE),
    "map": BuiltinCost(Linear(1198, 3067), _S.LIST_BOUND),
    "filter": BuiltinCost(Constant(407)),
    "fold": BuiltinCost(Constant(460)),

    # Conversions and tuples
    "to-int": BuiltinCost(Constant(135)),
    "to-uint": BuiltinCost(Constant(135)),
    "buff-to-int-be": BuiltinCost(Constant(141)),
    "buff-to-int-le": BuiltinCost(Constant(141)),
    "buff-to-uint-be": BuiltinCost(Constant(141)),
    "buff-to-uint-le": BuiltinCost(Constant(141)),
    "get": BuiltinCost(NLogN(4, 1736), _S.ARG_COUNT),
    "merge": BuiltinCost(Linear(4, 408), _S.RESULT_SIZE),

    # Storage
    "var-get": BuiltinCost(Linear(1, 470), _S.RESULT_SIZE, read_count=1, reads_value=True),
    "var-set": BuiltinCost(Linear(5, 520), _S.ARG_SIZE, write_count=1, writes_value=True),
    "map-get?": BuiltinCost(Linear(1, 1025), _S.ARG_SIZE, read_count=1, reads_value=True),
    "map-set": BuiltinCost(Linear(4, 1899), _S.ARG_SIZE, read_count=1, write_count=1,
                           writes_value=True),
    "map-insert": BuiltinCost(Linear(4, 1899), _S.ARG_SIZE, read_count=1, write_count=1,
                              writes_value=True),
    "map-delete": BuiltinCost(Linear(4, 1899), _S.ARG_SIZE, read_count=1, write_count=1,
                              writes_value=True),

    # Tokens
    "ft-mint?": BuiltinCost(Constant(1479), read_count=2, write_count=2),
    "ft-transfer?": BuiltinCost(Constant(549), read_count=2, write_count=2),
    "ft-burn?": BuiltinCost(Constant(549), read_count=2, write_count=2),
    "ft-get-balance": BuiltinCost(Constant(479), read_count=1),
    "ft-get-supply": BuiltinCost(Constant(420), read_count=1),
    "nft-mint?": BuiltinCost(Linear(9, 575), _S.ARG_SIZE, read_count=1, write_count=1),
    "nft-transfer?": BuiltinCost(Linear(9, 572), _S.ARG_SIZE, read_count=1, write_count=1),
    "nft-burn?": BuiltinCost(Linear(9, 572), _S.ARG_SIZE, read_count=1, write_count=1),
    "nft-get-owner?": BuiltinCost(Linear(9, 795), _S.ARG_SIZE, read_count=1),
    "stx-transfer?": BuiltinCost(Constant(4640), read_count=1, write_count=1),
    "stx-burn?": BuiltinCost(Constant(4640), read_count=1, write_count=1),
    "stx-get-balance": BuiltinCost(Constant(4294), read_count=1),

    # Hashing
    "sha256": BuiltinCost(Linear(1, 100), _S.ARG_SIZE),
    "sha512": BuiltinCost(Linear(1, 176), _S.ARG_SIZE),
    "sha512/256": BuiltinCost(Linear(1, 56), _S.ARG_SIZE),
    "keccak256": BuiltinCost(Linear(1, 127), _S.ARG_SIZE),
    "hash160": BuiltinCost(Linear(1, 188), _S.ARG_SIZE),

    # Chain interaction
    "print": BuiltinCost(Linear(15, 1458), _S.ARG_SIZE),
    "contract-call?": BuiltinCost(Constant(134), read_count=1),
    "as-contract": BuiltinCost(Constant(138)),
    "at-block": BuiltinCost(Constant(1327), read_count=1),
    "get-block-info?": BuiltinCost(Constant(6321), read_count=1),
    "get-burn-block-info?": BuiltinCost(Constant(96479), read_count=1),
}

# Costs of evaluation steps that are not built-in applications.
LOOKUP_VARIABLE = Linear(2, 14)
LOOKUP_KEYWORD = Constant(120)
LITERAL = Constant(1)
LIST_CONSTRUCTION = Linear(14, 50)
TUPLE_CONSTRUCTION = NLogN(10, 1876)
USER_FUNCTION_CALL = Linear(26, 5)
WRAP_VALUE = Constant(199)


def lookup(name: str) -> Optional[BuiltinCost]:
    return COST_TABLE.get(name)
