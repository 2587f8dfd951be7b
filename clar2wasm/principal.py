"""Principal literals: c32check address decoding and in-memory encoding.

A principal is laid out in memory as
    version (1 byte) | hash160 (20 bytes) | name length (1 byte) | name
so a standard principal takes 22 bytes and a contract principal at most
22 + 128 bytes.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

C32_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

STANDARD_PRINCIPAL_SIZE = 22
MAX_CONTRACT_NAME_LENGTH = 128
MAX_PRINCIPAL_SIZE = STANDARD_PRINCIPAL_SIZE + MAX_CONTRACT_NAME_LENGTH

# Address used for relative contract literals when no deployer is configured.
DEFAULT_DEPLOYER = "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM"


class PrincipalError(ValueError):
    pass


@dataclass(frozen=True)
class Principal:
    version: int
    hash160: bytes
    contract_name: Optional[str] = None

    def to_bytes(self) -> bytes:
        name = (self.contract_name or "").encode("ascii")
        return bytes([self.version]) + self.hash160 + bytes([len(name)]) + name

    @property
    def is_contract(self) -> bool:
        return self.contract_name is not None


def _normalize(text: str) -> str:
    return text.upper().replace("O", "0").replace("L", "1").replace("I", "1")


def c32_decode(text: str) -> bytes:
    """Decode a c32 string into bytes, keeping one zero byte per leading '0'."""
    text = _normalize(text)
    value = 0
    for ch in text:
        idx = C32_ALPHABET.find(ch)
        if idx < 0:
            raise PrincipalError(f"Invalid c32 character '{ch}'")
        value = value * 32 + idx
    leading = len(text) - len(text.lstrip("0"))
    body = value.to_bytes((value.bit_length() + 7) // 8, "big") if value else b""
    return b"\x00" * leading + body


def _checksum(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()[:4]


def decode_address(address: str) -> tuple[int, bytes]:
    """Decode a c32check address ('S' + version + payload) to (version, hash160)."""
    if len(address) < 5 or address[0] != "S":
        raise PrincipalError(f"Invalid principal address '{address}'")
    version = C32_ALPHABET.find(_normalize(address[1]))
    if version < 0:
        raise PrincipalError(f"Invalid address version in '{address}'")
    data = c32_decode(address[2:])
    if len(data) < 4:
        raise PrincipalError(f"Address '{address}' is too short")
    payload, checksum = data[:-4], data[-4:]
    if len(payload) > 20:
        raise PrincipalError(f"Address '{address}' has an invalid length")
    payload = payload.rjust(20, b"\x00")
    if _checksum(bytes([version]) + payload) != checksum:
        raise PrincipalError(f"Address '{address}' has an invalid checksum")
    return version, payload


def _valid_contract_name(name: str) -> bool:
    if not name or len(name) > MAX_CONTRACT_NAME_LENGTH or not name[0].isalpha():
        return False
    return all(c.isalnum() or c in "-_" for c in name) and name.isascii()


def parse_principal(text: str, deployer: str = DEFAULT_DEPLOYER) -> Principal:
    """Parse the body of a principal literal.

    Accepts ``SP...`` (standard), ``SP....name`` (contract) and ``.name``
    (contract relative to ``deployer``).
    """
    address, _, name = text.partition(".")
    if not address:
        address = deployer
    version, hash160 = decode_address(address)
    if "." in text:
        if not _valid_contract_name(name):
            raise PrincipalError(f"Invalid contract name '{name}'")
        return Principal(version, hash160, name)
    return Principal(version, hash160)
