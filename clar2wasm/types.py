"""Clarity type system.

Primitive types: int, uint, bool, principal
Parametric types: (buff N), (string-ascii N), (string-utf8 N), (list N T),
(optional T), (response OK ERR), tuples.

Types compare structurally; parametric types are equal only when their bounds
and element types match exactly. Admission of a value into a slot of a
different type goes through the enumerated coercions in ``admits``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from clar2wasm.principal import MAX_PRINCIPAL_SIZE

MAX_VALUE_SIZE = 1024 * 1024


# ---------------------------------------------------------------------------
# Type Representations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClarityType:
    """Base type."""
    def __str__(self) -> str:
        return "unknown"


@dataclass(frozen=True)
class IntType(ClarityType):
    def __str__(self) -> str:
        return "int"


@dataclass(frozen=True)
class UIntType(ClarityType):
    def __str__(self) -> str:
        return "uint"


@dataclass(frozen=True)
class BoolType(ClarityType):
    def __str__(self) -> str:
        return "bool"


@dataclass(frozen=True)
class PrincipalType(ClarityType):
    def __str__(self) -> str:
        return "principal"


@dataclass(frozen=True)
class NoType(ClarityType):
    """The unknown half of ``none``, ``(ok x)`` or ``(err x)``."""
    def __str__(self) -> str:
        return "UnknownType"


@dataclass(frozen=True)
class BufferType(ClarityType):
    length: int = 0

    def __str__(self) -> str:
        return f"(buff {self.length})"


@dataclass(frozen=True)
class StringType(ClarityType):
    length: int = 0
    utf8: bool = False

    def __str__(self) -> str:
        kind = "string-utf8" if self.utf8 else "string-ascii"
        return f"({kind} {self.length})"


@dataclass(frozen=True)
class ListType(ClarityType):
    element: ClarityType = field(default_factory=ClarityType)
    max_len: int = 0

    def __str__(self) -> str:
        return f"(list {self.max_len} {self.element})"


@dataclass(frozen=True)
class OptionalType(ClarityType):
    inner: ClarityType = field(default_factory=ClarityType)

    def __str__(self) -> str:
        return f"(optional {self.inner})"


@dataclass(frozen=True)
class ResponseType(ClarityType):
    ok: ClarityType = field(default_factory=ClarityType)
    err: ClarityType = field(default_factory=ClarityType)

    def __str__(self) -> str:
        return f"(response {self.ok} {self.err})"


@dataclass(frozen=True)
class TupleType(ClarityType):
    fields: tuple[tuple[str, ClarityType], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(sorted(self.fields, key=lambda f: f[0])))

    def get(self, name: str) -> Optional[ClarityType]:
        for fname, ftype in self.fields:
            if fname == name:
                return ftype
        return None

    def __str__(self) -> str:
        inner = ", ".join(f"{n}: {t}" for n, t in self.fields)
        return f"{{{inner}}}"


@dataclass(frozen=True)
class TraitType(ClarityType):
    name: str = ""

    def __str__(self) -> str:
        return f"<{self.name}>"


# ---------------------------------------------------------------------------
# Built-in Types
# ---------------------------------------------------------------------------

INT = IntType()
UINT = UIntType()
BOOL = BoolType()
PRINCIPAL = PrincipalType()
NO_TYPE = NoType()

BUILTIN_TYPES: dict[str, ClarityType] = {
    "int": INT,
    "uint": UINT,
    "bool": BOOL,
    "principal": PRINCIPAL,
}


def is_integer(t: Optional[ClarityType]) -> bool:
    return isinstance(t, (IntType, UIntType))


def is_sequence(t: Optional[ClarityType]) -> bool:
    return isinstance(t, (BufferType, StringType, ListType))


def sequence_length(t: ClarityType) -> int:
    if isinstance(t, ListType):
        return t.max_len
    if isinstance(t, (BufferType, StringType)):
        return t.length
    raise ValueError(f"{t} is not a sequence type")


def element_type(t: ClarityType) -> ClarityType:
    """The type of one element of a sequence: a 1-long buffer/string for bytes/chars."""
    if isinstance(t, ListType):
        return t.element
    if isinstance(t, BufferType):
        return BufferType(1)
    if isinstance(t, StringType):
        return StringType(1, t.utf8)
    raise ValueError(f"{t} is not a sequence type")


def with_length(t: ClarityType, n: int) -> ClarityType:
    if isinstance(t, ListType):
        return ListType(t.element, n)
    if isinstance(t, BufferType):
        return BufferType(n)
    if isinstance(t, StringType):
        return StringType(n, t.utf8)
    raise ValueError(f"{t} is not a sequence type")


def same_sequence_kind(a: ClarityType, b: ClarityType) -> bool:
    if isinstance(a, BufferType) and isinstance(b, BufferType):
        return True
    if isinstance(a, StringType) and isinstance(b, StringType):
        return a.utf8 == b.utf8
    return isinstance(a, ListType) and isinstance(b, ListType)


def contains_no_type(t: ClarityType) -> bool:
    if isinstance(t, NoType):
        return True
    if isinstance(t, ListType):
        return contains_no_type(t.element)
    if isinstance(t, OptionalType):
        return contains_no_type(t.inner)
    if isinstance(t, ResponseType):
        return contains_no_type(t.ok) or contains_no_type(t.err)
    if isinstance(t, TupleType):
        return any(contains_no_type(ft) for _, ft in t.fields)
    return False


# ---------------------------------------------------------------------------
# Coercions
# ---------------------------------------------------------------------------

def admits(expected: ClarityType, actual: ClarityType) -> bool:
    """Whether a value of type ``actual`` may fill a slot of type ``expected``.

    The admitted coercions are exactly:
      1. sequence size-widening (a shorter bound fits a longer one),
      2. NoType fits anywhere,
      3. the two rules above applied componentwise through list, optional,
         response and tuple types (tuples need identical field sets).
    Everything else requires structural equality.
    """
    if expected == actual or isinstance(actual, NoType):
        return True
    if isinstance(expected, BufferType) and isinstance(actual, BufferType):
        return actual.length <= expected.length
    if isinstance(expected, StringType) and isinstance(actual, StringType):
        return expected.utf8 == actual.utf8 and actual.length <= expected.length
    if isinstance(expected, ListType) and isinstance(actual, ListType):
        if actual.max_len == 0:
            return True
        return actual.max_len <= expected.max_len and admits(expected.element, actual.element)
    if isinstance(expected, OptionalType) and isinstance(actual, OptionalType):
        return admits(expected.inner, actual.inner)
    if isinstance(expected, ResponseType) and isinstance(actual, ResponseType):
        return admits(expected.ok, actual.ok) and admits(expected.err, actual.err)
    if isinstance(expected, TupleType) and isinstance(actual, TupleType):
        if [n for n, _ in expected.fields] != [n for n, _ in actual.fields]:
            return False
        return all(admits(et, at) for (_, et), (_, at) in zip(expected.fields, actual.fields))
    if isinstance(expected, (PrincipalType, TraitType)) and isinstance(actual, TraitType):
        return True
    return False


def same_shape(expected: ClarityType, actual: ClarityType) -> bool:
    """``admits`` with every sequence bound ignored; tells narrowing from mismatch."""
    if isinstance(actual, NoType) or expected == actual:
        return True
    if isinstance(expected, (BufferType, StringType, ListType)):
        if not same_sequence_kind(expected, actual):
            return False
        if isinstance(expected, ListType):
            return same_shape(expected.element, actual.element)
        return True
    if isinstance(expected, OptionalType) and isinstance(actual, OptionalType):
        return same_shape(expected.inner, actual.inner)
    if isinstance(expected, ResponseType) and isinstance(actual, ResponseType):
        return same_shape(expected.ok, actual.ok) and same_shape(expected.err, actual.err)
    if isinstance(expected, TupleType) and isinstance(actual, TupleType):
        if [n for n, _ in expected.fields] != [n for n, _ in actual.fields]:
            return False
        return all(same_shape(et, at) for (_, et), (_, at) in zip(expected.fields, actual.fields))
    return admits(expected, actual)


def least_supertype(a: ClarityType, b: ClarityType) -> Optional[ClarityType]:
    """The tightest type admitting both ``a`` and ``b``, or None if there is none."""
    if a == b:
        return a
    if isinstance(a, NoType):
        return b
    if isinstance(b, NoType):
        return a
    if isinstance(a, BufferType) and isinstance(b, BufferType):
        return BufferType(max(a.length, b.length))
    if isinstance(a, StringType) and isinstance(b, StringType) and a.utf8 == b.utf8:
        return StringType(max(a.length, b.length), a.utf8)
    if isinstance(a, ListType) and isinstance(b, ListType):
        if a.max_len == 0:
            return b
        if b.max_len == 0:
            return a
        elem = least_supertype(a.element, b.element)
        if elem is None:
            return None
        return ListType(elem, max(a.max_len, b.max_len))
    if isinstance(a, OptionalType) and isinstance(b, OptionalType):
        inner = least_supertype(a.inner, b.inner)
        return OptionalType(inner) if inner is not None else None
    if isinstance(a, ResponseType) and isinstance(b, ResponseType):
        ok = least_supertype(a.ok, b.ok)
        err = least_supertype(a.err, b.err)
        if ok is None or err is None:
            return None
        return ResponseType(ok, err)
    if isinstance(a, TupleType) and isinstance(b, TupleType):
        if [n for n, _ in a.fields] != [n for n, _ in b.fields]:
            return None
        merged = []
        for (name, at), (_, bt) in zip(a.fields, b.fields):
            ft = least_supertype(at, bt)
            if ft is None:
                return None
            merged.append((name, ft))
        return TupleType(tuple(merged))
    if isinstance(a, (PrincipalType, TraitType)) and isinstance(b, (PrincipalType, TraitType)):
        return PRINCIPAL
    return None


# ---------------------------------------------------------------------------
# Sizes
# ---------------------------------------------------------------------------

def value_size(t: ClarityType) -> int:
    """Upper bound on the size in bytes of any value of type ``t``."""
    if isinstance(t, (IntType, UIntType)):
        return 16
    if isinstance(t, (BoolType, NoType)):
        return 1
    if isinstance(t, (PrincipalType, TraitType)):
        return MAX_PRINCIPAL_SIZE
    if isinstance(t, BufferType):
        return t.length
    if isinstance(t, StringType):
        return t.length * (4 if t.utf8 else 1)
    if isinstance(t, ListType):
        return t.max_len * value_size(t.element)
    if isinstance(t, OptionalType):
        return 1 + value_size(t.inner)
    if isinstance(t, ResponseType):
        return 1 + max(value_size(t.ok), value_size(t.err))
    if isinstance(t, TupleType):
        return sum(len(name) + value_size(ft) for name, ft in t.fields)
    return 0


def type_depth(t: ClarityType) -> int:
    if isinstance(t, ListType):
        return 1 + type_depth(t.element)
    if isinstance(t, OptionalType):
        return 1 + type_depth(t.inner)
    if isinstance(t, ResponseType):
        return 1 + max(type_depth(t.ok), type_depth(t.err))
    if isinstance(t, TupleType):
        return 1 + max((type_depth(ft) for _, ft in t.fields), default=0)
    return 1


# ---------------------------------------------------------------------------
# Type Environment
# ---------------------------------------------------------------------------

class BindingKind(Enum):
    PARAMETER = "parameter"
    LOCAL = "local"
    CONSTANT = "constant"


class TypeEnvironment:
    """Scoped environment of local bindings; lookup walks outward."""

    def __init__(self, parent: Optional[TypeEnvironment] = None):
        self.parent = parent
        self._variables: dict[str, tuple[ClarityType, BindingKind]] = {}

    def define_variable(self, name: str, typ: ClarityType,
                        kind: BindingKind = BindingKind.LOCAL) -> None:
        self._variables[name] = (typ, kind)

    def lookup(self, name: str) -> Optional[tuple[ClarityType, BindingKind]]:
        if name in self._variables:
            return self._variables[name]
        if self.parent:
            return self.parent.lookup(name)
        return None

    def lookup_variable(self, name: str) -> Optional[ClarityType]:
        found = self.lookup(name)
        return found[0] if found else None

    def child_scope(self) -> TypeEnvironment:
        return TypeEnvironment(parent=self)


class TypeResolutionError(Exception):
    def __init__(self, message: str, span=None):
        self.span = span
        super().__init__(message)


def resolve_type_annotation(annotation, traits: Optional[dict[str, str]] = None) -> ClarityType:
    """Resolve a TypeAnnotation AST node to a ClarityType."""
    from clar2wasm.ast_nodes import TypeAnnotation

    if not isinstance(annotation, TypeAnnotation):
        raise TypeResolutionError("Missing type annotation")

    name = annotation.name
    if name.startswith("<") and name.endswith(">"):
        trait = name[1:-1]
        if traits is not None and trait not in traits:
            raise TypeResolutionError(f"Unknown trait '{trait}'", annotation.span)
        return TraitType(trait)
    if name in BUILTIN_TYPES:
        return BUILTIN_TYPES[name]
    if name == "buff":
        return BufferType(annotation.size or 0)
    if name == "string-ascii":
        return StringType(annotation.size or 0, utf8=False)
    if name == "string-utf8":
        return StringType(annotation.size or 0, utf8=True)
    if name == "list":
        elem = resolve_type_annotation(annotation.args[0], traits)
        return ListType(elem, annotation.size or 0)
    if name == "optional":
        return OptionalType(resolve_type_annotation(annotation.args[0], traits))
    if name == "response":
        ok = resolve_type_annotation(annotation.args[0], traits)
        err = resolve_type_annotation(annotation.args[1], traits)
        return ResponseType(ok, err)
    if name == "tuple":
        seen: set[str] = set()
        fields = []
        for fname, fann in annotation.fields:
            if fname in seen:
                raise TypeResolutionError(f"Duplicate tuple field '{fname}'", annotation.span)
            seen.add(fname)
            fields.append((fname, resolve_type_annotation(fann, traits)))
        if not fields:
            raise TypeResolutionError("Tuple types must have at least one field", annotation.span)
        return TupleType(tuple(fields))
    raise TypeResolutionError(f"Unknown type '{name}'", annotation.span)


def has_memory_parts(t: ClarityType) -> bool:
    """Whether values of ``t`` hold (offset, length) references into linear memory."""
    if isinstance(t, (BufferType, StringType, ListType, PrincipalType, TraitType)):
        return True
    if isinstance(t, OptionalType):
        return has_memory_parts(t.inner)
    if isinstance(t, ResponseType):
        return has_memory_parts(t.ok) or has_memory_parts(t.err)
    if isinstance(t, TupleType):
        return any(has_memory_parts(ft) for _, ft in t.fields)
    return False


def is_comparable(t: ClarityType) -> bool:
    """Equality is decided bytewise, so lists may not nest further references."""
    if isinstance(t, ListType):
        return not has_memory_parts(t.element)
    if isinstance(t, OptionalType):
        return is_comparable(t.inner)
    if isinstance(t, ResponseType):
        return is_comparable(t.ok) and is_comparable(t.err)
    if isinstance(t, TupleType):
        return all(is_comparable(ft) for _, ft in t.fields)
    return True
