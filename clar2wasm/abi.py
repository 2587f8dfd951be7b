"""Host interface of generated modules.

Every import lives in the ``clarity`` module and takes and returns only
``i32``/``i64`` values. Compound values cross the boundary in the marshal
layout, written to linear memory by whichever side produces them:

    int, uint              16 bytes, little-endian two's complement
    bool, indicator        4 bytes (0 or 1)
    buff, string           4-byte byte length, then the maximum payload
    principal, trait       4-byte byte length, then 150 bytes
    list                   4-byte element count, then max_len marshalled elements
    optional               indicator, then the payload
    response               indicator, then the ok value, then the err value
    tuple                  fields in sorted-name order

Every value has a fixed marshalled size, so a result area can be reserved
before the call. Payloads that are not active (the value of ``none``, the
other half of a response) must be zero.

The table is frozen; any change to it bumps ``ABI_VERSION``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from types import MappingProxyType

from clar2wasm.principal import MAX_PRINCIPAL_SIZE
from clar2wasm.types import (
    ClarityType, IntType, UIntType, BoolType, NoType, PrincipalType, TraitType,
    BufferType, StringType, ListType, OptionalType, ResponseType, TupleType,
)
from clar2wasm.wasm import ValType

ABI_VERSION = 1
HOST_MODULE = "clarity"

I32, I64 = ValType.I32, ValType.I64

# (offset, length) of a name or value in linear memory
_SLICE = (I32, I32)
_U128 = (I64, I64)
# flat (response bool uint): indicator, ok, err low, err high
_TOKEN_RESPONSE = (I32, I32, I64, I64)


class RuntimeErrorCode(IntEnum):
    """Argument of ``runtime_error``; the module traps right after the call."""
    OVERFLOW = 0
    UNDERFLOW = 1
    DIVISION_BY_ZERO = 2
    UNWRAP_FAILURE = 3
    NEGATIVE_TO_UINT = 4


@dataclass(frozen=True)
class HostFunction:
    name: str
    params: tuple[ValType, ...]
    results: tuple[ValType, ...] = ()

    @property
    def symbol(self) -> str:
        return f"{HOST_MODULE}.{self.name}"


def _table(*functions: HostFunction) -> MappingProxyType:
    return MappingProxyType({f.name: f for f in functions})


HOST_IMPORTS: MappingProxyType = _table(
    # Definitions, called from .top-level
    HostFunction("define_variable", _SLICE + _SLICE),
    HostFunction("define_map", _SLICE),
    HostFunction("define_ft", _SLICE + (I32,) + _U128),
    HostFunction("define_nft", _SLICE),

    # Storage: name, then marshalled key/value, then a result area
    HostFunction("get_variable", _SLICE + _SLICE),
    HostFunction("set_variable", _SLICE + _SLICE),
    HostFunction("map_get", _SLICE + _SLICE + _SLICE),
    HostFunction("map_set", _SLICE + _SLICE + _SLICE, (I32,)),
    HostFunction("map_insert", _SLICE + _SLICE + _SLICE, (I32,)),
    HostFunction("map_delete", _SLICE + _SLICE, (I32,)),

    # Tokens; principals are passed as raw bytes, assets marshalled
    HostFunction("ft_get_supply", _SLICE, _U128),
    HostFunction("ft_get_balance", _SLICE + _SLICE, _U128),
    HostFunction("ft_mint", _SLICE + _U128 + _SLICE, _TOKEN_RESPONSE),
    HostFunction("ft_transfer", _SLICE + _U128 + _SLICE + _SLICE, _TOKEN_RESPONSE),
    HostFunction("ft_burn", _SLICE + _U128 + _SLICE, _TOKEN_RESPONSE),
    HostFunction("nft_get_owner", _SLICE + _SLICE + _SLICE),
    HostFunction("nft_mint", _SLICE + _SLICE + _SLICE, _TOKEN_RESPONSE),
    HostFunction("nft_transfer", _SLICE + _SLICE + _SLICE + _SLICE, _TOKEN_RESPONSE),
    HostFunction("nft_burn", _SLICE + _SLICE + _SLICE, _TOKEN_RESPONSE),
    HostFunction("stx_get_balance", _SLICE, _U128),
    HostFunction("stx_transfer", _U128 + _SLICE + _SLICE, _TOKEN_RESPONSE),
    HostFunction("stx_burn", _U128 + _SLICE, _TOKEN_RESPONSE),

    # Context; principal getters write into (result offset, capacity)
    HostFunction("tx_sender", _SLICE, _SLICE),
    HostFunction("contract_caller", _SLICE, _SLICE),
    HostFunction("block_height", (), _U128),
    HostFunction("burn_block_height", (), _U128),
    HostFunction("stx_liquid_supply", (), _U128),
    HostFunction("chain_id", (), _U128),
    HostFunction("is_in_mainnet", (), (I32,)),

    # Block info: property name, height, result area (a marshalled optional)
    HostFunction("get_block_info", _SLICE + _U128 + (I32,)),
    HostFunction("get_burn_block_info", _SLICE + _U128 + (I32,)),
    HostFunction("enter_at_block", _SLICE),
    HostFunction("exit_at_block", ()),

    # Hashing: input, result area; returns the digest slice
    HostFunction("sha256", _SLICE + (I32,), _SLICE),
    HostFunction("sha512", _SLICE + (I32,), _SLICE),
    HostFunction("sha512_256", _SLICE + (I32,), _SLICE),
    HostFunction("keccak256", _SLICE + (I32,), _SLICE),
    HostFunction("hash160", _SLICE + (I32,), _SLICE),

    # Chain interaction
    HostFunction("print", _SLICE + _SLICE),
    HostFunction("contract_call", _SLICE + _SLICE + _SLICE + _SLICE),
    HostFunction("enter_as_contract", ()),
    HostFunction("exit_as_contract", ()),
    HostFunction("runtime_error", (I32,)),
)

# Clarity hash built-in -> host import
HASH_IMPORTS: dict[str, str] = {
    "sha256": "sha256",
    "sha512": "sha512",
    "sha512/256": "sha512_256",
    "keccak256": "keccak256",
    "hash160": "hash160",
}

# Keyword -> host import
KEYWORD_IMPORTS: dict[str, str] = {
    "tx-sender": "tx_sender",
    "contract-caller": "contract_caller",
    "block-height": "block_height",
    "burn-block-height": "burn_block_height",
    "stx-liquid-supply": "stx_liquid_supply",
    "chain-id": "chain_id",
    "is-in-mainnet": "is_in_mainnet",
}


def host_function(name: str) -> HostFunction:
    try:
        return HOST_IMPORTS[name]
    except KeyError:
        raise KeyError(f"'{name}' is not part of ABI version {ABI_VERSION}") from None


def marshal_size(t: ClarityType) -> int:
    """Size in bytes of the marshal layout of ``t``."""
    if isinstance(t, (IntType, UIntType)):
        return 16
    if isinstance(t, (BoolType, NoType)):
        return 4
    if isinstance(t, (PrincipalType, TraitType)):
        return 4 + MAX_PRINCIPAL_SIZE
    if isinstance(t, BufferType):
        return 4 + t.length
    if isinstance(t, StringType):
        return 4 + t.length * (4 if t.utf8 else 1)
    if isinstance(t, ListType):
        return 4 + t.max_len * marshal_size(t.element)
    if isinstance(t, OptionalType):
        return 4 + marshal_size(t.inner)
    if isinstance(t, ResponseType):
        return 4 + marshal_size(t.ok) + marshal_size(t.err)
    if isinstance(t, TupleType):
        return sum(marshal_size(ft) for _, ft in t.fields)
    raise ValueError(f"type '{t}' has no marshal layout")

