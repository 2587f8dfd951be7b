"""clar2wasm Pass 2 — Cost.

Annotates every typed expression with a static upper bound on its execution
cost and totals the cost of each function. Sizes come from the bounds in the
checked types, never from values, so the estimate is a property of the source
alone.

The pass only reads types and writes ``cost``; it never changes a type or the
shape of the tree. Going over a block limit is reported as a warning.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional
import logging

from clar2wasm import costs
from clar2wasm.ast_nodes import (
    Expr, Atom, ListExpr, ListLiteral, TupleLiteral, SomeLiteral,
    ResponseLiteral, BufferLiteral, StringLiteral, DefineFunction, DefineConstant,
    DefineDataVar, DefineFungibleToken, TopLevelExpr,
)
from clar2wasm.builtins import BUILTINS, KEYWORDS, Category
from clar2wasm.costs import ExecutionCost, SizeInput, ZERO, BLOCK_LIMITS
from clar2wasm.errors import Diagnostic, cost_warning
from clar2wasm.pass1_check import CheckResult, FunctionSignature
from clar2wasm.types import value_size, is_sequence, sequence_length

logger = logging.getLogger(__name__)

# Forms where exactly one of several sub-expressions runs after the first.
_BRANCHING = frozenset({"if", "match"})

_NAMED_OPERAND = frozenset({
    "get", "var-get", "var-set", "map-get?", "map-set", "map-insert", "map-delete",
    "ft-mint?", "ft-transfer?", "ft-burn?", "ft-get-balance", "ft-get-supply",
    "nft-mint?", "nft-transfer?", "nft-burn?", "nft-get-owner?",
    "get-block-info?", "get-burn-block-info?",
})


@dataclass
class CostReport:
    functions: dict[str, ExecutionCost] = field(default_factory=dict)
    top_level: ExecutionCost = ZERO
    limits: ExecutionCost = BLOCK_LIMITS
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "functions": {name: c.to_dict() for name, c in self.functions.items()},
            "top_level": self.top_level.to_dict(),
            "limits": self.limits.to_dict(),
        }


def _typed(expr: Expr) -> bool:
    return expr.inferred_type is not None and not expr.poisoned


class CostAnalyzer:
    """Computes static execution costs over a checked contract."""

    def __init__(self, check_result: CheckResult, limits: Optional[ExecutionCost] = None):
        self.result = check_result
        self.globals = check_result.signatures
        self.limits = limits or BLOCK_LIMITS
        self._function_costs: dict[str, Optional[ExecutionCost]] = {}

    def analyze(self) -> CostReport:
        report = CostReport(limits=self.limits)
        top = ZERO
        for decl in self.result.program.declarations:
            if isinstance(decl, DefineFunction):
                total = self.function_cost(decl.name)
                if total is not None:
                    report.functions[decl.name] = total
            elif isinstance(decl, (DefineConstant, DefineDataVar, TopLevelExpr, DefineFungibleToken)):
                for expr in decl.expressions():
                    if _typed(expr):
                        top = top + self.cost(expr)
        report.top_level = top

        for name, total in report.functions.items():
            sig = self.globals.functions[name]
            span = sig.decl.name_span if sig.decl else None
            for dimension, estimate, limit in total.exceeded(self.limits):
                report.diagnostics.append(cost_warning(name, dimension, estimate, limit, span))
        for dimension, estimate, limit in top.exceeded(self.limits):
            report.diagnostics.append(cost_warning(".top-level", dimension, estimate, limit))
        logger.debug("cost analysis: %d function(s), %d warning(s)",
                     len(report.functions), len(report.diagnostics))
        return report

    def function_cost(self, name: str) -> Optional[ExecutionCost]:
        if name in self._function_costs:
            return self._function_costs[name]
        sig: Optional[FunctionSignature] = self.globals.functions.get(name)
        total = None
        if sig is not None and sig.decl is not None and not sig.poisoned and _typed(sig.decl.body):
            total = self.cost(sig.decl.body)
        self._function_costs[name] = total
        return total

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def cost(self, expr: Expr) -> ExecutionCost:
        c = self._do_cost(expr)
        expr.cost = c
        return c

    def _children(self, exprs: list[Expr]) -> ExecutionCost:
        total = ZERO
        for e in exprs:
            total = total + self.cost(e)
        return total

    def _do_cost(self, expr: Expr) -> ExecutionCost:
        typ = expr.inferred_type
        if isinstance(expr, Atom):
            if expr.name in KEYWORDS:
                return ExecutionCost(runtime=costs.LOOKUP_KEYWORD.evaluate(0))
            return ExecutionCost(runtime=costs.LOOKUP_VARIABLE.evaluate(value_size(typ)))
        if isinstance(expr, (BufferLiteral, StringLiteral)):
            return ExecutionCost(runtime=costs.LITERAL.evaluate(0), memory=value_size(typ))
        if isinstance(expr, ListLiteral):
            own = ExecutionCost(runtime=costs.LIST_CONSTRUCTION.evaluate(len(expr.elements)),
                                memory=value_size(typ))
            return own + self._children(expr.elements)
        if isinstance(expr, TupleLiteral):
            own = ExecutionCost(runtime=costs.TUPLE_CONSTRUCTION.evaluate(len(expr.fields)))
            return own + self._children([v for _, v in expr.fields])
        if isinstance(expr, (SomeLiteral, ResponseLiteral)):
            return ExecutionCost(runtime=costs.WRAP_VALUE.evaluate(0)) + self.cost(expr.value)
        if isinstance(expr, ListExpr):
            return self._application(expr)
        return ExecutionCost(runtime=costs.LITERAL.evaluate(0))

    def _application(self, expr: ListExpr) -> ExecutionCost:
        head = expr.head
        args = expr.args
        if head in self.globals.functions:
            callee = self.function_cost(head) or ZERO
            arg_size = sum(value_size(a.inferred_type) for a in args)
            own = ExecutionCost(runtime=costs.USER_FUNCTION_CALL.evaluate(arg_size))
            return own + self._children(args) + callee

        entry = costs.lookup(head)
        own = entry.evaluate(self._size_input(entry.size_input, expr, args))
        if BUILTINS[head].category == Category.SEQUENCE:
            own = own + ExecutionCost(memory=value_size(expr.inferred_type))
        if head in ("map", "filter", "fold"):
            return own + self._iteration(expr, args)
        if head == "let":
            return own + self._let(args)
        if head in _BRANCHING:
            return own + self._branches(head, args)
        if head == "as-max-len?":
            return own + self.cost(args[0])
        if head == "contract-call?":
            return own + self._children(args[2:])
        if head in _NAMED_OPERAND:
            # the first operand names a definition, field or property
            return own + self._children(args[1:])
        return own + self._children(args)

    def _size_input(self, kind: str, expr: ListExpr, args: list[Expr]) -> int:
        if kind == SizeInput.ARG_COUNT:
            return len(args)
        if kind == SizeInput.ARG_SIZE:
            return sum(value_size(a.inferred_type) for a in args
                       if a.inferred_type is not None and not self._names_definition(expr, a))
        if kind == SizeInput.RESULT_SIZE:
            return value_size(expr.inferred_type)
        if kind == SizeInput.LIST_BOUND:
            return self._list_bound(args[1:])
        return 0

    def _names_definition(self, expr: ListExpr, arg: Expr) -> bool:
        head = expr.head
        return arg is expr.args[0] and isinstance(arg, Atom) and head in (
            "var-set", "map-get?", "map-set", "map-insert", "map-delete",
            "nft-mint?", "nft-transfer?", "nft-burn?", "nft-get-owner?")

    def _list_bound(self, seqs: list[Expr]) -> int:
        bounds = [sequence_length(s.inferred_type) for s in seqs if is_sequence(s.inferred_type)]
        return min(bounds) if bounds else 0

    def _iteration(self, expr: ListExpr, args: list[Expr]) -> ExecutionCost:
        """Sequence operands once, the applied function once per element."""
        head = expr.head
        seqs = args[1:] if head == "map" else args[1:2]
        total = self._children(seqs)
        if head == "fold":
            total = total + self.cost(args[2])
        bound = self._list_bound(seqs)
        if expr.synthetic is not None:
            total = total + self.cost(expr.synthetic).scale(bound)
        return total

    def _let(self, args: list[Expr]) -> ExecutionCost:
        bindings = args[0]
        total = ZERO
        if isinstance(bindings, ListExpr):
            for binding in bindings.items:
                if isinstance(binding, ListExpr) and len(binding.items) == 2:
                    total = total + self.cost(binding.items[1])
        return total + self._children(args[1:])

    def _branches(self, head: str, args: list[Expr]) -> ExecutionCost:
        subject = self.cost(args[0])
        if head == "if":
            return subject + self.cost(args[1]).max(self.cost(args[2]))
        if len(args) == 4:
            return subject + self.cost(args[2]).max(self.cost(args[3]))
        return subject + self.cost(args[2]).max(self.cost(args[4]))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def analyze(check_result: CheckResult, limits: Optional[ExecutionCost] = None) -> CostReport:
    """Run Pass 2: static cost analysis. Never produces an error."""
    return CostAnalyzer(check_result, limits).analyze()
