"""Clarity AST node definitions.

Expressions are s-expression forms: atoms, literals and parenthesised lists.
The shape of special forms (``let``, ``match``, ``if`` ...) is interpreted by
the checker; only top-level ``define-*`` forms get dedicated declaration
nodes, since their head token fully determines their structure.

After pass 1 every expression carries ``inferred_type``; after pass 2 it
carries ``cost``. A node marked ``poisoned`` was structurally malformed and is
skipped by later analysis.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from clar2wasm.errors import SourceSpan
from clar2wasm.principal import Principal


# ---------------------------------------------------------------------------
# Type Annotations (in source)
# ---------------------------------------------------------------------------

@dataclass
class TypeAnnotation:
    """A type as written: ``int``, ``(buff 32)``, ``(list 10 uint)``, ``{a: int}``."""
    name: str
    size: Optional[int] = None
    args: list[TypeAnnotation] = field(default_factory=list)
    fields: list[tuple[str, TypeAnnotation]] = field(default_factory=list)
    span: Optional[SourceSpan] = None

    def __str__(self) -> str:
        if self.name == "tuple":
            inner = ", ".join(f"{n}: {t}" for n, t in self.fields)
            return f"{{{inner}}}"
        parts = [self.name]
        if self.size is not None:
            parts.append(str(self.size))
        parts.extend(str(a) for a in self.args)
        if len(parts) == 1:
            return self.name
        return f"({' '.join(parts)})"


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class Expr:
    span: Optional[SourceSpan] = None
    inferred_type: Any = None
    cost: Any = None
    poisoned: bool = False

    def children(self) -> Iterator[Expr]:
        return iter(())

    def walk(self) -> Iterator[Expr]:
        yield self
        for child in self.children():
            yield from child.walk()


@dataclass(eq=False)
class Atom(Expr):
    name: str = ""


@dataclass(eq=False)
class IntLiteral(Expr):
    value: int = 0
    unsigned: bool = False


@dataclass(eq=False)
class BoolLiteral(Expr):
    value: bool = False


@dataclass(eq=False)
class BufferLiteral(Expr):
    value: bytes = b""


@dataclass(eq=False)
class StringLiteral(Expr):
    value: str = ""
    utf8: bool = False


@dataclass(eq=False)
class PrincipalLiteral(Expr):
    principal: Optional[Principal] = None
    text: str = ""


@dataclass(eq=False)
class ListLiteral(Expr):
    """``(list a b c)``"""
    elements: list[Expr] = field(default_factory=list)

    def children(self) -> Iterator[Expr]:
        return iter(self.elements)


@dataclass(eq=False)
class TupleLiteral(Expr):
    """``{a: 1, b: u2}`` or ``(tuple (a 1) (b u2))``"""
    fields: list[tuple[str, Expr]] = field(default_factory=list)

    def children(self) -> Iterator[Expr]:
        return iter(v for _, v in self.fields)


@dataclass(eq=False)
class SomeLiteral(Expr):
    value: Expr = field(default_factory=Expr)

    def children(self) -> Iterator[Expr]:
        yield self.value


@dataclass(eq=False)
class NoneLiteral(Expr):
    pass


@dataclass(eq=False)
class ResponseLiteral(Expr):
    """``(ok x)`` or ``(err x)``"""
    value: Expr = field(default_factory=Expr)
    is_ok: bool = True

    def children(self) -> Iterator[Expr]:
        yield self.value


@dataclass(eq=False)
class ListExpr(Expr):
    """A parenthesised form: a function application or a special form."""
    items: list[Expr] = field(default_factory=list)
    # Application built by the checker for map/filter/fold element calls.
    synthetic: Optional[ListExpr] = None

    @property
    def head(self) -> Optional[str]:
        if self.items and isinstance(self.items[0], Atom):
            return self.items[0].name
        return None

    @property
    def args(self) -> list[Expr]:
        return self.items[1:]

    def children(self) -> Iterator[Expr]:
        return iter(self.items)


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

class Visibility(Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    READ_ONLY = "read-only"


@dataclass
class Declaration:
    span: Optional[SourceSpan] = None

    def expressions(self) -> Iterator[Expr]:
        return iter(())


@dataclass
class Parameter:
    name: str = ""
    type_annotation: Optional[TypeAnnotation] = None
    span: Optional[SourceSpan] = None


@dataclass
class DefineFunction(Declaration):
    visibility: Visibility = Visibility.PRIVATE
    name: str = ""
    params: list[Parameter] = field(default_factory=list)
    body: Expr = field(default_factory=Expr)
    name_span: Optional[SourceSpan] = None

    def expressions(self) -> Iterator[Expr]:
        yield self.body


@dataclass
class DefineConstant(Declaration):
    name: str = ""
    value: Expr = field(default_factory=Expr)

    def expressions(self) -> Iterator[Expr]:
        yield self.value


@dataclass
class DefineDataVar(Declaration):
    name: str = ""
    type_annotation: Optional[TypeAnnotation] = None
    value: Expr = field(default_factory=Expr)

    def expressions(self) -> Iterator[Expr]:
        yield self.value


@dataclass
class DefineMap(Declaration):
    name: str = ""
    key_type: Optional[TypeAnnotation] = None
    value_type: Optional[TypeAnnotation] = None


@dataclass
class DefineFungibleToken(Declaration):
    name: str = ""
    supply: Optional[Expr] = None

    def expressions(self) -> Iterator[Expr]:
        if self.supply is not None:
            yield self.supply


@dataclass
class DefineNonFungibleToken(Declaration):
    name: str = ""
    asset_type: Optional[TypeAnnotation] = None


@dataclass
class TraitFunction:
    name: str = ""
    param_types: list[TypeAnnotation] = field(default_factory=list)
    return_type: Optional[TypeAnnotation] = None
    span: Optional[SourceSpan] = None


@dataclass
class DefineTrait(Declaration):
    name: str = ""
    functions: list[TraitFunction] = field(default_factory=list)


@dataclass
class UseTrait(Declaration):
    alias: str = ""
    trait: Optional[PrincipalLiteral] = None
    trait_name: str = ""


@dataclass
class ImplTrait(Declaration):
    trait: Optional[PrincipalLiteral] = None
    trait_name: str = ""


@dataclass
class TopLevelExpr(Declaration):
    expr: Expr = field(default_factory=Expr)

    def expressions(self) -> Iterator[Expr]:
        yield self.expr


@dataclass
class Program:
    declarations: list[Declaration] = field(default_factory=list)
    diagnostics: list = field(default_factory=list)
    filename: str = "<stdin>"

    def functions(self) -> list[DefineFunction]:
        return [d for d in self.declarations if isinstance(d, DefineFunction)]
