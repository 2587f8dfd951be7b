"""clar2wasm Pass 1 — Check.

Type checking + effect checking.

Pass 1a registers every top-level definition before any body is looked at,
so functions may refer to functions, variables, maps and tokens defined later
in the file. Pass 1b checks the bodies bottom-up. A function body is checked
the first time it is needed (its definition, or an earlier call site), which
fixes its return type once; reaching a function again while its body is still
being checked means the definitions are recursive, which Clarity forbids.

Errors are collected, never raised. A malformed form is marked poisoned and
typed ``None``; any rule that sees a ``None`` operand gives up silently so a
single mistake produces a single diagnostic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional
import logging

from clar2wasm.ast_nodes import (
    Program, Declaration, DefineFunction, DefineConstant, DefineDataVar,
    DefineMap, DefineFungibleToken, DefineNonFungibleToken, DefineTrait,
    UseTrait, ImplTrait, TopLevelExpr, Visibility, TypeAnnotation,
    Expr, Atom, IntLiteral, BoolLiteral, BufferLiteral, StringLiteral,
    PrincipalLiteral, ListLiteral, TupleLiteral, SomeLiteral, NoneLiteral,
    ResponseLiteral, ListExpr,
)
from clar2wasm.builtins import (
    BUILTINS, KEYWORDS, Effect, HASH_RESULT_SIZES, EARLY_RETURN_FORMS,
    block_info_type, is_reserved,
)
from clar2wasm.errors import (
    Diagnostic, SourceSpan, type_error, check_error, arity_error, name_error,
    bound_error,
)
from clar2wasm.principal import Principal
from clar2wasm.types import (
    ClarityType, IntType, UIntType, BoolType, BufferType, StringType,
    ListType, OptionalType, ResponseType, TupleType, TraitType, NoType,
    INT, UINT, BOOL, PRINCIPAL, NO_TYPE, MAX_VALUE_SIZE,
    TypeEnvironment, BindingKind, TypeResolutionError, resolve_type_annotation,
    admits, same_shape, least_supertype, value_size, is_integer, is_sequence,
    is_comparable, element_type, with_length, sequence_length, same_sequence_kind,
)

logger = logging.getLogger(__name__)

# Export names the module itself uses; a callable function may not take them.
_MODULE_EXPORTS = ("memory", "stack-pointer")


# ---------------------------------------------------------------------------
# Global definitions
# ---------------------------------------------------------------------------

@dataclass
class FunctionSignature:
    name: str
    visibility: Visibility
    params: list[tuple[str, ClarityType]] = field(default_factory=list)
    return_type: Optional[ClarityType] = None
    decl: Optional[DefineFunction] = None
    writes: bool = False
    checked: bool = False
    poisoned: bool = False

    @property
    def span(self) -> Optional[SourceSpan]:
        return self.decl.span if self.decl else None


@dataclass
class TraitMethod:
    name: str
    params: list[ClarityType]
    return_type: ClarityType


@dataclass
class TraitSignature:
    name: str
    methods: dict[str, TraitMethod] = field(default_factory=dict)


@dataclass
class GlobalTable:
    """Every top-level name of a contract and what it denotes."""
    functions: dict[str, FunctionSignature] = field(default_factory=dict)
    constants: dict[str, Optional[ClarityType]] = field(default_factory=dict)
    data_vars: dict[str, Optional[ClarityType]] = field(default_factory=dict)
    maps: dict[str, Optional[tuple[ClarityType, ClarityType]]] = field(default_factory=dict)
    fungible_tokens: dict[str, bool] = field(default_factory=dict)
    non_fungible_tokens: dict[str, Optional[ClarityType]] = field(default_factory=dict)
    traits: dict[str, TraitSignature] = field(default_factory=dict)
    # use-trait alias -> local trait name, or None for a trait of another contract
    trait_aliases: dict[str, Optional[str]] = field(default_factory=dict)

    def trait(self, name: str) -> Optional[TraitSignature]:
        if name in self.traits:
            return self.traits[name]
        local = self.trait_aliases.get(name)
        return self.traits.get(local) if local else None

    def trait_names(self) -> dict[str, str]:
        names = {n: n for n in self.traits}
        names.update({alias: target or alias for alias, target in self.trait_aliases.items()})
        return names


@dataclass
class CheckResult:
    program: Program
    signatures: GlobalTable
    diagnostics: list[Diagnostic]

    @property
    def ok(self) -> bool:
        return not any(d.is_error for d in self.diagnostics)


@dataclass
class _Context:
    """State of the body currently being checked."""
    function: Optional[FunctionSignature] = None
    read_only_depth: int = 0
    writes: bool = False
    early_returns: list[tuple[ClarityType, Optional[SourceSpan]]] = field(default_factory=list)


def _poison(expr: Expr) -> None:
    expr.poisoned = True
    expr.inferred_type = None


# ---------------------------------------------------------------------------
# Checker
# ---------------------------------------------------------------------------

class TypeChecker:
    """Type and effect checks a Clarity contract."""

    def __init__(self, contract: Optional[Principal] = None):
        self.contract = contract
        self.globals = GlobalTable()
        self.errors: list[Diagnostic] = []
        self._defined: dict[str, Optional[SourceSpan]] = {}
        self._in_progress: list[str] = []
        self._constants_done: set[str] = set()
        self._ctx = _Context()
        self._rules: dict[str, Callable[[ListExpr, list[Expr], TypeEnvironment], Optional[ClarityType]]] = {
            "+": self._rule_arithmetic, "-": self._rule_arithmetic,
            "*": self._rule_arithmetic, "/": self._rule_arithmetic,
            "mod": self._rule_arithmetic,
            "<": self._rule_compare, "<=": self._rule_compare,
            ">": self._rule_compare, ">=": self._rule_compare,
            "is-eq": self._rule_is_eq,
            "and": self._rule_logic, "or": self._rule_logic, "not": self._rule_logic,
            "if": self._rule_if,
            "begin": self._rule_begin,
            "asserts!": self._rule_asserts,
            "let": self._rule_let,
            "match": self._rule_match,
            "unwrap!": self._rule_unwrap, "unwrap-panic": self._rule_unwrap,
            "unwrap-err!": self._rule_unwrap_err, "unwrap-err-panic": self._rule_unwrap_err,
            "try!": self._rule_try,
            "default-to": self._rule_default_to,
            "is-some": self._rule_is_optional, "is-none": self._rule_is_optional,
            "is-ok": self._rule_is_response, "is-err": self._rule_is_response,
            "len": self._rule_len,
            "concat": self._rule_concat,
            "append": self._rule_append,
            "as-max-len?": self._rule_as_max_len,
            "element-at": self._rule_element_at, "element-at?": self._rule_element_at,
            "index-of": self._rule_index_of, "index-of?": self._rule_index_of,
            "map": self._rule_map,
            "filter": self._rule_filter,
            "fold": self._rule_fold,
            "to-int": self._rule_to_int, "to-uint": self._rule_to_int,
            "buff-to-int-be": self._rule_buff_to_int, "buff-to-int-le": self._rule_buff_to_int,
            "buff-to-uint-be": self._rule_buff_to_int, "buff-to-uint-le": self._rule_buff_to_int,
            "get": self._rule_get,
            "merge": self._rule_merge,
            "var-get": self._rule_var_get, "var-set": self._rule_var_set,
            "map-get?": self._rule_map_access, "map-set": self._rule_map_access,
            "map-insert": self._rule_map_access, "map-delete": self._rule_map_access,
            "ft-mint?": self._rule_ft, "ft-transfer?": self._rule_ft,
            "ft-burn?": self._rule_ft, "ft-get-balance": self._rule_ft,
            "ft-get-supply": self._rule_ft,
            "nft-mint?": self._rule_nft, "nft-transfer?": self._rule_nft,
            "nft-burn?": self._rule_nft, "nft-get-owner?": self._rule_nft,
            "stx-transfer?": self._rule_stx, "stx-burn?": self._rule_stx,
            "stx-get-balance": self._rule_stx,
            "sha256": self._rule_hash, "sha512": self._rule_hash,
            "sha512/256": self._rule_hash, "keccak256": self._rule_hash,
            "hash160": self._rule_hash,
            "print": self._rule_print,
            "contract-call?": self._rule_contract_call,
            "as-contract": self._rule_as_contract,
            "at-block": self._rule_at_block,
            "get-block-info?": self._rule_block_info,
            "get-burn-block-info?": self._rule_block_info,
        }

    def check_program(self, program: Program) -> CheckResult:
        """Type check an entire contract."""
        self.errors = []

        # Pass 1a: register every definition before looking at any body
        self._register_traits(program)
        for decl in program.declarations:
            self._register(decl)
        for decl in program.declarations:
            if isinstance(decl, DefineConstant):
                self._check_constant(decl)

        # Pass 1b: bodies and initial values, in source order
        for decl in program.declarations:
            if isinstance(decl, DefineFunction):
                self._ensure_checked(self.globals.functions.get(decl.name), decl.name_span)
            elif isinstance(decl, DefineDataVar):
                self._check_data_var(decl)
            elif isinstance(decl, DefineFungibleToken) and decl.supply is not None:
                self._expect(decl.supply, UINT, TypeEnvironment(), "token supply")
            elif isinstance(decl, TopLevelExpr):
                self._infer(decl.expr, TypeEnvironment())
        for decl in program.declarations:
            if isinstance(decl, ImplTrait):
                self._check_impl_trait(decl)

        logger.debug("checked %s: %d diagnostic(s)", program.filename, len(self.errors))
        return CheckResult(program=program, signatures=self.globals, diagnostics=self.errors)

    # -------------------------------------------------------------------
    # Pass 1a: registration
    # -------------------------------------------------------------------

    def _claim(self, name: str, span: Optional[SourceSpan]) -> bool:
        if is_reserved(name):
            self.errors.append(check_error(
                f"'{name}' is a reserved name and cannot be redefined", span, name=name))
            return False
        if name in self._defined:
            self.errors.append(check_error(f"'{name}' is already defined", span, name=name))
            return False
        self._defined[name] = span
        return True

    def _resolve(self, annotation: Optional[TypeAnnotation],
                 span: Optional[SourceSpan]) -> Optional[ClarityType]:
        try:
            typ = resolve_type_annotation(annotation, self.globals.trait_names())
        except TypeResolutionError as e:
            self.errors.append(check_error(str(e), e.span or span))
            return None
        return self._bounded(typ, getattr(annotation, "span", None) or span)

    def _bounded(self, typ: Optional[ClarityType], span: Optional[SourceSpan]) -> Optional[ClarityType]:
        if typ is not None and value_size(typ) > MAX_VALUE_SIZE:
            self.errors.append(check_error(
                f"Value of type '{typ}' is too large ({value_size(typ)} bytes, limit {MAX_VALUE_SIZE})",
                span, value_too_large=True))
            return None
        return typ

    def _is_local_contract(self, literal: Optional[PrincipalLiteral]) -> bool:
        if literal is None or literal.principal is None or self.contract is None:
            return False
        return literal.principal == self.contract

    def _register_traits(self, program: Program) -> None:
        for decl in program.declarations:
            if isinstance(decl, DefineTrait) and self._claim(decl.name, decl.span):
                self.globals.traits[decl.name] = TraitSignature(decl.name)
        for decl in program.declarations:
            if isinstance(decl, UseTrait) and self._claim(decl.alias, decl.span):
                local = decl.trait_name if self._is_local_contract(decl.trait) else None
                if local is not None and local not in self.globals.traits:
                    self.errors.append(check_error(
                        f"Trait '{local}' is not defined in this contract", decl.span))
                    local = None
                self.globals.trait_aliases[decl.alias] = local
        for decl in program.declarations:
            if isinstance(decl, DefineTrait) and decl.name in self.globals.traits:
                sig = self.globals.traits[decl.name]
                for fn in decl.functions:
                    params = [self._resolve(p, fn.span) for p in fn.param_types]
                    ret = self._resolve(fn.return_type, fn.span)
                    if ret is not None and not isinstance(ret, ResponseType):
                        self.errors.append(check_error(
                            f"Trait function '{fn.name}' must return a response", fn.span))
                        continue
                    if ret is None or any(p is None for p in params):
                        continue
                    sig.methods[fn.name] = TraitMethod(fn.name, params, ret)

    def _register(self, decl: Declaration) -> None:
        if isinstance(decl, DefineFunction):
            if not self._claim(decl.name, decl.name_span):
                return
            sig = FunctionSignature(decl.name, decl.visibility, decl=decl)
            if decl.visibility != Visibility.PRIVATE and decl.name in _MODULE_EXPORTS:
                self.errors.append(check_error(
                    f"'{decl.name}' is exported by every module and cannot name a {decl.visibility.value} function",
                    decl.name_span, name=decl.name))
                sig.poisoned = True
            seen: set[str] = set()
            for p in decl.params:
                ptype = self._resolve(p.type_annotation, p.span)
                if p.name in seen or is_reserved(p.name):
                    self.errors.append(check_error(f"Invalid parameter name '{p.name}'", p.span))
                    sig.poisoned = True
                seen.add(p.name)
                if ptype is None:
                    sig.poisoned = True
                    continue
                sig.params.append((p.name, ptype))
            self.globals.functions[decl.name] = sig
        elif isinstance(decl, DefineConstant):
            if self._claim(decl.name, decl.span):
                self.globals.constants[decl.name] = None
        elif isinstance(decl, DefineDataVar):
            if self._claim(decl.name, decl.span):
                self.globals.data_vars[decl.name] = self._resolve(decl.type_annotation, decl.span)
        elif isinstance(decl, DefineMap):
            if self._claim(decl.name, decl.span):
                key = self._resolve(decl.key_type, decl.span)
                value = self._resolve(decl.value_type, decl.span)
                self.globals.maps[decl.name] = (key, value) if key and value else None
        elif isinstance(decl, DefineFungibleToken):
            if self._claim(decl.name, decl.span):
                self.globals.fungible_tokens[decl.name] = decl.supply is not None
        elif isinstance(decl, DefineNonFungibleToken):
            if self._claim(decl.name, decl.span):
                self.globals.non_fungible_tokens[decl.name] = self._resolve(decl.asset_type, decl.span)

    def _check_constant(self, decl: DefineConstant) -> None:
        if decl.name not in self.globals.constants or self._defined.get(decl.name) != decl.span:
            return
        self.globals.constants[decl.name] = self._infer(decl.value, TypeEnvironment())
        self._constants_done.add(decl.name)

    def _check_data_var(self, decl: DefineDataVar) -> None:
        declared = self.globals.data_vars.get(decl.name)
        if declared is None:
            self._infer(decl.value, TypeEnvironment())
            return
        self._expect(decl.value, declared, TypeEnvironment(), f"initial value of '{decl.name}'")

    def _check_impl_trait(self, decl: ImplTrait) -> None:
        if not self._is_local_contract(decl.trait):
            return
        trait = self.globals.traits.get(decl.trait_name)
        if trait is None:
            self.errors.append(check_error(
                f"Trait '{decl.trait_name}' is not defined in this contract", decl.span))
            return
        for method in trait.methods.values():
            sig = self.globals.functions.get(method.name)
            if sig is None or sig.visibility == Visibility.PRIVATE:
                self.errors.append(check_error(
                    f"Trait method '{method.name}' of '{trait.name}' is not implemented",
                    decl.span, trait=trait.name, method=method.name))
                continue
            if sig.poisoned or sig.return_type is None:
                continue
            params = [t for _, t in sig.params]
            if params != method.params or not admits(method.return_type, sig.return_type):
                self.errors.append(check_error(
                    f"Function '{method.name}' does not match its signature in trait '{trait.name}'",
                    sig.decl.name_span if sig.decl else decl.span, trait=trait.name, method=method.name))

    # -------------------------------------------------------------------
    # Pass 1b: function bodies
    # -------------------------------------------------------------------

    def _ensure_checked(self, sig: Optional[FunctionSignature],
                        call_span: Optional[SourceSpan]) -> None:
        if sig is None or sig.checked or sig.poisoned:
            return
        if sig.name in self._in_progress:
            cycle = " -> ".join(self._in_progress[self._in_progress.index(sig.name):] + [sig.name])
            self.errors.append(check_error(
                f"Recursive definition is not allowed: {cycle}", call_span, cycle=cycle))
            sig.poisoned = True
            return

        decl = sig.decl
        logger.debug("checking function %s", sig.name)
        saved = self._ctx
        self._ctx = _Context(function=sig,
                             read_only_depth=1 if sig.visibility == Visibility.READ_ONLY else 0)
        self._in_progress.append(sig.name)
        try:
            env = TypeEnvironment()
            for name, ptype in sig.params:
                env.define_variable(name, ptype, BindingKind.PARAMETER)
            ret = self._infer(decl.body, env)
            for thrown, span in self._ctx.early_returns:
                if ret is None:
                    break
                merged = least_supertype(ret, thrown)
                if merged is None:
                    self.errors.append(type_error(str(ret), str(thrown), span,
                                                  context=f"early return from '{sig.name}'"))
                ret = merged
            if ret is not None and sig.visibility == Visibility.PUBLIC \
                    and not isinstance(ret, ResponseType):
                self.errors.append(check_error(
                    f"Public function '{sig.name}' must return a response, got '{ret}'",
                    decl.name_span or decl.span, function=sig.name, actual_type=str(ret)))
                ret = None
            sig.writes = self._ctx.writes
        finally:
            self._in_progress.pop()
            self._ctx = saved
        # Signature is fixed from here on
        sig.return_type = ret
        sig.checked = True
        if ret is None:
            sig.poisoned = True

    def _note_write(self, operation: str, span: Optional[SourceSpan]) -> None:
        self._ctx.writes = True
        if self._ctx.read_only_depth > 0:
            self.errors.append(check_error(
                f"write in read-only context: '{operation}'", span, operation=operation))

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def _infer(self, expr: Expr, env: TypeEnvironment) -> Optional[ClarityType]:
        typ = self._bounded(self._do_infer(expr, env), expr.span)
        if expr.poisoned:
            typ = None
        expr.inferred_type = typ
        return typ

    def _do_infer(self, expr: Expr, env: TypeEnvironment) -> Optional[ClarityType]:
        if isinstance(expr, IntLiteral):
            return UINT if expr.unsigned else INT
        if isinstance(expr, BoolLiteral):
            return BOOL
        if isinstance(expr, BufferLiteral):
            return BufferType(len(expr.value))
        if isinstance(expr, StringLiteral):
            return StringType(len(expr.value), expr.utf8)
        if isinstance(expr, PrincipalLiteral):
            return PRINCIPAL
        if isinstance(expr, NoneLiteral):
            return OptionalType(NO_TYPE)
        if isinstance(expr, SomeLiteral):
            inner = self._infer(expr.value, env)
            return OptionalType(inner) if inner is not None else None
        if isinstance(expr, ResponseLiteral):
            inner = self._infer(expr.value, env)
            if inner is None:
                return None
            return ResponseType(inner, NO_TYPE) if expr.is_ok else ResponseType(NO_TYPE, inner)
        if isinstance(expr, ListLiteral):
            return self._infer_list(expr, env)
        if isinstance(expr, TupleLiteral):
            return self._infer_tuple(expr, env)
        if isinstance(expr, Atom):
            return self._infer_atom(expr, env)
        if isinstance(expr, ListExpr):
            return self._infer_application(expr, env)
        _poison(expr)
        self.errors.append(check_error("Unsupported expression", expr.span))
        return None

    def _infer_list(self, expr: ListLiteral, env: TypeEnvironment) -> Optional[ClarityType]:
        types = [self._infer(e, env) for e in expr.elements]
        if any(t is None for t in types):
            return None
        elem: ClarityType = NO_TYPE
        for e, t in zip(expr.elements, types):
            merged = least_supertype(elem, t)
            if merged is None:
                self.errors.append(type_error(str(elem), str(t), e.span, context="list element"))
                return None
            elem = merged
        return ListType(elem, len(types))

    def _infer_tuple(self, expr: TupleLiteral, env: TypeEnvironment) -> Optional[ClarityType]:
        if not expr.fields:
            _poison(expr)
            self.errors.append(check_error("Tuples must have at least one field", expr.span))
            return None
        seen: set[str] = set()
        fields = []
        ok = True
        for name, value in expr.fields:
            if name in seen:
                self.errors.append(check_error(f"Duplicate tuple field '{name}'", value.span, field=name))
                ok = False
            seen.add(name)
            t = self._infer(value, env)
            if t is None:
                ok = False
            fields.append((name, t))
        return TupleType(tuple(fields)) if ok else None

    def _infer_atom(self, expr: Atom, env: TypeEnvironment) -> Optional[ClarityType]:
        name = expr.name
        local = env.lookup_variable(name)
        if local is not None:
            return local
        if name in self.globals.constants:
            if name not in self._constants_done:
                self.errors.append(check_error(
                    f"Constant '{name}' is used before its definition", expr.span, name=name))
            return self.globals.constants[name]
        if name in KEYWORDS:
            return KEYWORDS[name]
        if name in self.globals.functions or name in BUILTINS:
            self.errors.append(check_error(
                f"'{name}' is a function and cannot be used as a value", expr.span, name=name))
        elif name in self.globals.data_vars:
            self.errors.append(check_error(
                f"Data variable '{name}' must be read with var-get", expr.span, name=name))
        else:
            self.errors.append(name_error(name, expr.span))
        return None

    def _infer_application(self, expr: ListExpr, env: TypeEnvironment) -> Optional[ClarityType]:
        if not expr.items:
            _poison(expr)
            self.errors.append(check_error("Empty expression '()'", expr.span))
            return None
        head = expr.head
        args = expr.args
        if head is None:
            _poison(expr)
            self.errors.append(check_error(
                "Expected a function name in head position", expr.items[0].span))
            return None
        if head in ("some", "ok", "err"):
            self.errors.append(arity_error(head, "1", len(args), expr.span))
            self._infer_args(args, env)
            return None
        if env.lookup(head) is not None or head in self.globals.constants:
            self.errors.append(check_error(f"'{head}' is not a function", expr.items[0].span, name=head))
            self._infer_args(args, env)
            return None

        sig = self.globals.functions.get(head)
        if sig is not None:
            return self._check_call(expr, sig, args, env)

        builtin = BUILTINS.get(head)
        if builtin is None:
            self.errors.append(name_error(head, expr.items[0].span))
            self._infer_args(args, env)
            return None
        # Arity first, at the call site, whatever the arguments look like
        if not builtin.accepts(len(args)):
            self.errors.append(arity_error(head, builtin.arity_text(), len(args), expr.span))
            if not builtin.special:
                self._infer_args(args, env)
            return None
        if head in EARLY_RETURN_FORMS and self._ctx.function is None:
            self.errors.append(check_error(
                f"'{head}' may only be used inside a function body", expr.span))
            return None
        if builtin.effect == Effect.WRITE:
            self._note_write(head, expr.span)
        return self._rules[head](expr, args, env)

    def _infer_args(self, args: list[Expr], env: TypeEnvironment) -> list[Optional[ClarityType]]:
        return [self._infer(a, env) for a in args]

    def _check_call(self, expr: ListExpr, sig: FunctionSignature, args: list[Expr],
                    env: TypeEnvironment) -> Optional[ClarityType]:
        decl = sig.decl
        if decl is not None and len(args) != len(decl.params):
            self.errors.append(arity_error(sig.name, str(len(decl.params)), len(args), expr.span))
            self._infer_args(args, env)
            return None
        ok = True
        for arg, (pname, ptype) in zip(args, sig.params):
            if not self._expect(arg, ptype, env, f"argument '{pname}' of '{sig.name}'"):
                ok = False
        self._ensure_checked(sig, expr.span)
        if sig.writes:
            self._note_write(sig.name, expr.span)
        if not ok or sig.poisoned:
            return None
        return sig.return_type

    def _expect(self, arg: Expr, expected: ClarityType, env: TypeEnvironment,
                context: Optional[str] = None) -> bool:
        """Infer ``arg`` and require it to be admissible where ``expected`` is."""
        actual = self._infer(arg, env)
        if actual is None:
            return False
        return self._admit(expected, actual, arg.span, context)

    def _admit(self, expected: ClarityType, actual: ClarityType,
               span: Optional[SourceSpan], context: Optional[str] = None) -> bool:
        if admits(expected, actual):
            return True
        if same_shape(expected, actual):
            self.errors.append(bound_error(str(expected), str(actual), span))
        else:
            self.errors.append(type_error(str(expected), str(actual), span, context))
        return False

    def _mismatch(self, expected: str, actual: Optional[ClarityType], span: Optional[SourceSpan],
                  context: Optional[str] = None) -> None:
        self.errors.append(type_error(expected, str(actual), span, context))

    def _merge(self, a: ClarityType, b: ClarityType, span: Optional[SourceSpan],
               context: str) -> Optional[ClarityType]:
        merged = least_supertype(a, b)
        if merged is None:
            self._mismatch(str(a), b, span, context)
        return merged

    # -------------------------------------------------------------------
    # Built-in rules: arithmetic, comparison, logic
    # -------------------------------------------------------------------

    def _rule_arithmetic(self, expr, args, env):
        types = self._infer_args(args, env)
        if any(t is None for t in types):
            return None
        first = types[0]
        if not is_integer(first):
            self._mismatch("int or uint", first, args[0].span, expr.head)
            return None
        for arg, t in zip(args[1:], types[1:]):
            if t != first:
                self._mismatch(str(first), t, arg.span, expr.head)
                return None
        return first

    def _rule_compare(self, expr, args, env):
        left, right = self._infer_args(args, env)
        if left is None or right is None:
            return None
        if is_integer(left):
            if right != left:
                self._mismatch(str(left), right, args[1].span, expr.head)
                return None
            return BOOL
        if isinstance(left, (BufferType, StringType)):
            if not same_sequence_kind(left, right):
                self._mismatch(str(left), right, args[1].span, expr.head)
                return None
            return BOOL
        self._mismatch("int, uint, buff, string-ascii or string-utf8", left, args[0].span, expr.head)
        return None

    def _rule_is_eq(self, expr, args, env):
        types = self._infer_args(args, env)
        if any(t is None for t in types):
            return None
        common = types[0]
        for arg, t in zip(args[1:], types[1:]):
            common = self._merge(common, t, arg.span, "is-eq")
            if common is None:
                return None
        if not is_comparable(common):
            self.errors.append(check_error(
                f"Values of type '{common}' cannot be compared", expr.span, actual_type=str(common)))
            return None
        return BOOL

    def _rule_logic(self, expr, args, env):
        ok = all([self._expect(a, BOOL, env, expr.head) for a in args])
        return BOOL if ok else None

    # -------------------------------------------------------------------
    # Control flow and bindings
    # -------------------------------------------------------------------

    def _rule_if(self, expr, args, env):
        cond_ok = self._expect(args[0], BOOL, env, "if condition")
        then_t, else_t = self._infer_args(args[1:], env)
        if not cond_ok or then_t is None or else_t is None:
            return None
        return self._merge(then_t, else_t, args[2].span, "if branches")

    def _check_sequence_body(self, body: list[Expr], env: TypeEnvironment) -> Optional[ClarityType]:
        types = self._infer_args(body, env)
        for e, t in zip(body[:-1], types[:-1]):
            if isinstance(t, ResponseType):
                self.errors.append(check_error(
                    "Intermediate response values must be checked (use unwrap!, try! or match)",
                    e.span, actual_type=str(t)))
                return None
        if any(t is None for t in types):
            return None
        return types[-1]

    def _rule_begin(self, expr, args, env):
        return self._check_sequence_body(args, env)

    def _rule_asserts(self, expr, args, env):
        ok = self._expect(args[0], BOOL, env, "asserts! condition")
        thrown = self._infer(args[1], env)
        if thrown is not None:
            self._ctx.early_returns.append((thrown, args[1].span))
        return BOOL if ok and thrown is not None else None

    def _binding_name(self, node: Expr) -> Optional[str]:
        if not isinstance(node, Atom):
            self.errors.append(check_error("Expected a binding name", node.span))
            return None
        if is_reserved(node.name):
            self.errors.append(check_error(
                f"'{node.name}' is a reserved name and cannot be bound", node.span, name=node.name))
            return None
        return node.name

    def _rule_let(self, expr, args, env):
        bindings = args[0]
        if not isinstance(bindings, ListExpr):
            _poison(expr)
            self.errors.append(check_error("let expects a list of bindings", bindings.span))
            return None
        scope = env.child_scope()
        ok = True
        for binding in bindings.items:
            if not isinstance(binding, ListExpr) or len(binding.items) != 2:
                _poison(expr)
                self.errors.append(check_error(
                    "Invalid let binding, expected (name value)", binding.span))
                return None
            name = self._binding_name(binding.items[0])
            if name is None:
                _poison(expr)
                return None
            t = self._infer(binding.items[1], scope)
            if t is None:
                ok = False
                continue
            # Each binding sees the ones before it
            scope = scope.child_scope()
            scope.define_variable(name, t, BindingKind.LOCAL)
        result = self._check_sequence_body(args[1:], scope)
        return result if ok else None

    def _rule_match(self, expr, args, env):
        subject = self._infer(args[0], env)
        if subject is None:
            return None
        if isinstance(subject, OptionalType):
            if len(args) != 4:
                self.errors.append(arity_error("match", "4", len(args), expr.span))
                return None
            name = self._binding_name(args[1])
            if name is None:
                _poison(expr)
                return None
            some_env = env.child_scope()
            some_env.define_variable(name, subject.inner, BindingKind.LOCAL)
            some_t = self._infer(args[2], some_env)
            none_t = self._infer(args[3], env)
            if some_t is None or none_t is None:
                return None
            return self._merge(some_t, none_t, args[3].span, "match branches")
        if isinstance(subject, ResponseType):
            if len(args) != 5:
                self.errors.append(arity_error("match", "5", len(args), expr.span))
                return None
            ok_name = self._binding_name(args[1])
            err_name = self._binding_name(args[3])
            if ok_name is None or err_name is None:
                _poison(expr)
                return None
            ok_env = env.child_scope()
            ok_env.define_variable(ok_name, subject.ok, BindingKind.LOCAL)
            err_env = env.child_scope()
            err_env.define_variable(err_name, subject.err, BindingKind.LOCAL)
            ok_t = self._infer(args[2], ok_env)
            err_t = self._infer(args[4], err_env)
            if ok_t is None or err_t is None:
                return None
            return self._merge(ok_t, err_t, args[4].span, "match branches")
        self._mismatch("optional or response", subject, args[0].span, "match")
        return None

    # -------------------------------------------------------------------
    # Optionals and responses
    # -------------------------------------------------------------------

    def _rule_unwrap(self, expr, args, env):
        subject = self._infer(args[0], env)
        if len(args) == 2:
            thrown = self._infer(args[1], env)
            if thrown is None:
                return None
            self._ctx.early_returns.append((thrown, args[1].span))
        if subject is None:
            return None
        if isinstance(subject, OptionalType):
            return subject.inner
        if isinstance(subject, ResponseType):
            return subject.ok
        self._mismatch("optional or response", subject, args[0].span, expr.head)
        return None

    def _rule_unwrap_err(self, expr, args, env):
        subject = self._infer(args[0], env)
        if len(args) == 2:
            thrown = self._infer(args[1], env)
            if thrown is None:
                return None
            self._ctx.early_returns.append((thrown, args[1].span))
        if subject is None:
            return None
        if isinstance(subject, ResponseType):
            return subject.err
        self._mismatch("response", subject, args[0].span, expr.head)
        return None

    def _rule_try(self, expr, args, env):
        subject = self._infer(args[0], env)
        if subject is None:
            return None
        if isinstance(subject, OptionalType):
            self._ctx.early_returns.append((OptionalType(NO_TYPE), expr.span))
            return subject.inner
        if isinstance(subject, ResponseType):
            self._ctx.early_returns.append((ResponseType(NO_TYPE, subject.err), expr.span))
            return subject.ok
        self._mismatch("optional or response", subject, args[0].span, "try!")
        return None

    def _rule_default_to(self, expr, args, env):
        default, subject = self._infer_args(args, env)
        if default is None or subject is None:
            return None
        if not isinstance(subject, OptionalType):
            self._mismatch("optional", subject, args[1].span, "default-to")
            return None
        return self._merge(default, subject.inner, args[1].span, "default-to")

    def _rule_is_optional(self, expr, args, env):
        subject = self._infer(args[0], env)
        if subject is None:
            return None
        if not isinstance(subject, OptionalType):
            self._mismatch("optional", subject, args[0].span, expr.head)
            return None
        return BOOL

    def _rule_is_response(self, expr, args, env):
        subject = self._infer(args[0], env)
        if subject is None:
            return None
        if not isinstance(subject, ResponseType):
            self._mismatch("response", subject, args[0].span, expr.head)
            return None
        return BOOL

    # -------------------------------------------------------------------
    # Sequences
    # -------------------------------------------------------------------

    def _sequence(self, arg: Expr, env: TypeEnvironment, context: str) -> Optional[ClarityType]:
        t = self._infer(arg, env)
        if t is None:
            return None
        if not is_sequence(t):
            self._mismatch("sequence", t, arg.span, context)
            return None
        return t

    def _rule_len(self, expr, args, env):
        return UINT if self._sequence(args[0], env, "len") else None

    def _rule_concat(self, expr, args, env):
        a = self._sequence(args[0], env, "concat")
        b = self._sequence(args[1], env, "concat")
        if a is None or b is None:
            return None
        if not same_sequence_kind(a, b):
            self._mismatch(str(a), b, args[1].span, "concat")
            return None
        merged = self._merge(a, b, args[1].span, "concat")
        if merged is None:
            return None
        return with_length(merged, sequence_length(a) + sequence_length(b))

    def _rule_append(self, expr, args, env):
        seq, item = self._infer_args(args, env)
        if seq is None or item is None:
            return None
        if not isinstance(seq, ListType):
            self._mismatch("list", seq, args[0].span, "append")
            return None
        elem = self._merge(seq.element, item, args[1].span, "append")
        return ListType(elem, seq.max_len + 1) if elem is not None else None

    def _rule_as_max_len(self, expr, args, env):
        seq = self._sequence(args[0], env, "as-max-len?")
        bound = args[1]
        if not isinstance(bound, IntLiteral) or not bound.unsigned:
            _poison(expr)
            self.errors.append(check_error(
                "as-max-len? expects a uint literal as its bound", bound.span))
            return None
        bound.inferred_type = UINT
        if seq is None:
            return None
        return OptionalType(with_length(seq, bound.value))

    def _rule_element_at(self, expr, args, env):
        seq = self._sequence(args[0], env, expr.head)
        idx_ok = self._expect(args[1], UINT, env, "index")
        if seq is None or not idx_ok:
            return None
        return OptionalType(element_type(seq))

    def _rule_index_of(self, expr, args, env):
        seq = self._sequence(args[0], env, expr.head)
        item = self._infer(args[1], env)
        if seq is None or item is None:
            return None
        common = self._merge(element_type(seq), item, args[1].span, expr.head)
        if common is None:
            return None
        if not is_comparable(common):
            self.errors.append(check_error(
                f"Values of type '{common}' cannot be compared", expr.span))
            return None
        return OptionalType(UINT)

    def _function_value(self, node: Expr) -> Optional[str]:
        if not isinstance(node, Atom):
            self.errors.append(check_error("Expected a function name", node.span))
            return None
        name = node.name
        if name in self.globals.functions:
            return name
        builtin = BUILTINS.get(name)
        if builtin is not None and not builtin.special and name not in EARLY_RETURN_FORMS:
            return name
        if builtin is not None:
            self.errors.append(check_error(
                f"'{name}' cannot be used as a function value", node.span, name=name))
        else:
            self.errors.append(name_error(name, node.span))
        return None

    def _apply_synthetic(self, expr: ListExpr, fname: str, item_types: list[ClarityType],
                         env: TypeEnvironment,
                         extra: Optional[tuple[str, ClarityType]] = None) -> Optional[ClarityType]:
        """Type ``(f #item0 #item1 ...)`` as if written out for one element."""
        scope = env.child_scope()
        atoms: list[Expr] = []
        for i, t in enumerate(item_types):
            name = f"#item{i}"
            scope.define_variable(name, t, BindingKind.LOCAL)
            atoms.append(Atom(span=expr.span, name=name))
        if extra is not None:
            scope.define_variable(extra[0], extra[1], BindingKind.LOCAL)
            atoms.append(Atom(span=expr.span, name=extra[0]))
        call = ListExpr(span=expr.span, items=[Atom(span=expr.items[1].span, name=fname)] + atoms)
        expr.synthetic = call
        return self._infer(call, scope)

    def _rule_map(self, expr, args, env):
        fname = self._function_value(args[0])
        seqs = [self._sequence(a, env, "map") for a in args[1:]]
        if fname is None:
            _poison(expr)
            return None
        if any(s is None for s in seqs):
            return None
        result = self._apply_synthetic(expr, fname, [element_type(s) for s in seqs], env)
        if result is None:
            return None
        return ListType(result, min(sequence_length(s) for s in seqs))

    def _rule_filter(self, expr, args, env):
        fname = self._function_value(args[0])
        seq = self._sequence(args[1], env, "filter")
        if fname is None:
            _poison(expr)
            return None
        if seq is None:
            return None
        result = self._apply_synthetic(expr, fname, [element_type(seq)], env)
        if result is None:
            return None
        if result != BOOL:
            self._mismatch("bool", result, args[0].span, "filter function result")
            return None
        return seq

    def _rule_fold(self, expr, args, env):
        fname = self._function_value(args[0])
        seq = self._sequence(args[1], env, "fold")
        init = self._infer(args[2], env)
        if fname is None:
            _poison(expr)
            return None
        if seq is None or init is None:
            return None
        item = element_type(seq)
        result = self._apply_synthetic(expr, fname, [item], env, ("#acc", init))
        if result is None:
            return None
        if result == init:
            return init
        acc = self._merge(init, result, args[0].span, "fold accumulator")
        if acc is None:
            return None
        again = self._apply_synthetic(expr, fname, [item], env, ("#acc", acc))
        if again is None:
            return None
        if not admits(acc, again):
            self._mismatch(str(acc), again, args[0].span, "fold accumulator")
            return None
        return acc

    # -------------------------------------------------------------------
    # Conversions and tuples
    # -------------------------------------------------------------------

    def _rule_to_int(self, expr, args, env):
        source, target = (UINT, INT) if expr.head == "to-int" else (INT, UINT)
        return target if self._expect(args[0], source, env, expr.head) else None

    def _rule_buff_to_int(self, expr, args, env):
        if not self._expect(args[0], BufferType(16), env, expr.head):
            return None
        return UINT if "uint" in expr.head else INT

    def _rule_get(self, expr, args, env):
        key = args[0]
        if not isinstance(key, Atom):
            _poison(expr)
            self.errors.append(check_error("get expects a field name", key.span))
            return None
        subject = self._infer(args[1], env)
        if subject is None:
            return None
        tup = subject.inner if isinstance(subject, OptionalType) else subject
        if not isinstance(tup, TupleType):
            self._mismatch("tuple", subject, args[1].span, "get")
            return None
        ftype = tup.get(key.name)
        if ftype is None:
            self.errors.append(check_error(
                f"Tuple '{tup}' has no field '{key.name}'", key.span, field=key.name))
            return None
        return OptionalType(ftype) if isinstance(subject, OptionalType) else ftype

    def _rule_merge(self, expr, args, env):
        a, b = self._infer_args(args, env)
        if a is None or b is None:
            return None
        for arg, t in zip(args, (a, b)):
            if not isinstance(t, TupleType):
                self._mismatch("tuple", t, arg.span, "merge")
                return None
        fields = dict(a.fields)
        fields.update(dict(b.fields))
        return TupleType(tuple(fields.items()))

    # -------------------------------------------------------------------
    # Storage and tokens
    # -------------------------------------------------------------------

    def _global_name(self, node: Expr, table: dict, kind: str) -> Optional[str]:
        if not isinstance(node, Atom):
            self.errors.append(check_error(f"Expected a {kind} name", node.span))
            return None
        if node.name not in table:
            self.errors.append(check_error(
                f"Undefined {kind} '{node.name}'", node.span, name=node.name))
            return None
        return node.name

    def _rule_var_get(self, expr, args, env):
        name = self._global_name(args[0], self.globals.data_vars, "data variable")
        if name is None:
            _poison(expr)
            return None
        return self.globals.data_vars[name]

    def _rule_var_set(self, expr, args, env):
        name = self._global_name(args[0], self.globals.data_vars, "data variable")
        if name is None:
            _poison(expr)
            self._infer(args[1], env)
            return None
        declared = self.globals.data_vars[name]
        value_ok = declared is not None and self._expect(args[1], declared, env, f"var-set {name}")
        return BOOL if value_ok else None

    def _rule_map_access(self, expr, args, env):
        name = self._global_name(args[0], self.globals.maps, "map")
        if name is None:
            _poison(expr)
            self._infer_args(args[1:], env)
            return None
        entry = self.globals.maps[name]
        if entry is None:
            return None
        key_type, value_type = entry
        ok = self._expect(args[1], key_type, env, f"key of map '{name}'")
        if len(args) == 3:
            ok = self._expect(args[2], value_type, env, f"value of map '{name}'") and ok
        if not ok:
            return None
        if expr.head == "map-get?":
            return OptionalType(value_type)
        return BOOL

    def _principal_args(self, args: list[Expr], env: TypeEnvironment, context: str) -> bool:
        return all([self._expect(a, PRINCIPAL, env, context) for a in args])

    def _rule_ft(self, expr, args, env):
        head = expr.head
        name = self._global_name(args[0], self.globals.fungible_tokens, "fungible token")
        if name is None:
            _poison(expr)
            return None
        if head == "ft-get-supply":
            return UINT
        if head == "ft-get-balance":
            return UINT if self._principal_args(args[1:], env, head) else None
        amount_ok = self._expect(args[1], UINT, env, f"{head} amount")
        principals_ok = self._principal_args(args[2:], env, head)
        return ResponseType(BOOL, UINT) if amount_ok and principals_ok else None

    def _rule_nft(self, expr, args, env):
        head = expr.head
        name = self._global_name(args[0], self.globals.non_fungible_tokens, "non-fungible token")
        if name is None:
            _poison(expr)
            return None
        asset_type = self.globals.non_fungible_tokens[name]
        if asset_type is None:
            return None
        asset_ok = self._expect(args[1], asset_type, env, f"{head} asset")
        principals_ok = self._principal_args(args[2:], env, head)
        if not (asset_ok and principals_ok):
            return None
        if head == "nft-get-owner?":
            return OptionalType(PRINCIPAL)
        return ResponseType(BOOL, UINT)

    def _rule_stx(self, expr, args, env):
        head = expr.head
        if head == "stx-get-balance":
            return UINT if self._principal_args(args, env, head) else None
        amount_ok = self._expect(args[0], UINT, env, f"{head} amount")
        principals_ok = self._principal_args(args[1:], env, head)
        return ResponseType(BOOL, UINT) if amount_ok and principals_ok else None

    # -------------------------------------------------------------------
    # Hashing and chain interaction
    # -------------------------------------------------------------------

    def _rule_hash(self, expr, args, env):
        t = self._infer(args[0], env)
        if t is None:
            return None
        if not isinstance(t, (BufferType, IntType, UIntType)):
            self._mismatch("buff, int or uint", t, args[0].span, expr.head)
            return None
        return BufferType(HASH_RESULT_SIZES[expr.head])

    def _rule_print(self, expr, args, env):
        return self._infer(args[0], env)

    def _rule_contract_call(self, expr, args, env):
        target, method_node, call_args = args[0], args[1], args[2:]
        if not isinstance(method_node, Atom):
            _poison(expr)
            self.errors.append(check_error("contract-call? expects a function name", method_node.span))
            return None
        target_type = self._infer(target, env)
        if target_type is None:
            self._infer_args(call_args, env)
            return None
        if not isinstance(target_type, TraitType):
            self.errors.append(check_error(
                "contract-call? requires a trait reference; the interface of a literal "
                "contract is not available", target.span, actual_type=str(target_type)))
            self._infer_args(call_args, env)
            return None
        trait = self.globals.trait(target_type.name)
        if trait is None:
            self.errors.append(check_error(
                f"Interface of trait '{target_type.name}' is not available", target.span))
            self._infer_args(call_args, env)
            return None
        method = trait.methods.get(method_node.name)
        if method is None:
            self.errors.append(check_error(
                f"Trait '{trait.name}' has no function '{method_node.name}'", method_node.span))
            self._infer_args(call_args, env)
            return None
        if len(call_args) != len(method.params):
            self.errors.append(arity_error(
                method.name, str(len(method.params)), len(call_args), expr.span))
            self._infer_args(call_args, env)
            return None
        ok = all([self._expect(a, p, env, f"argument of '{method.name}'")
                  for a, p in zip(call_args, method.params)])
        return method.return_type if ok else None

    def _rule_as_contract(self, expr, args, env):
        return self._infer(args[0], env)

    def _rule_at_block(self, expr, args, env):
        hash_ok = self._expect(args[0], BufferType(32), env, "at-block block hash")
        self._ctx.read_only_depth += 1
        try:
            result = self._infer(args[1], env)
        finally:
            self._ctx.read_only_depth -= 1
        return result if hash_ok else None

    def _rule_block_info(self, expr, args, env):
        burn = expr.head == "get-burn-block-info?"
        prop = args[0]
        height_ok = self._expect(args[1], UINT, env, f"{expr.head} height")
        result = block_info_type(prop.name, burn) if isinstance(prop, Atom) else None
        if result is None:
            _poison(expr)
            self.errors.append(check_error(
                f"Unknown property for {expr.head}", prop.span,
                property=getattr(prop, "name", None)))
            return None
        return result if height_ok else None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def check(program: Program, contract: Optional[Principal] = None) -> CheckResult:
    """Run Pass 1: type and effect checking.

    ``contract`` is the identity the contract is deployed under; traits and
    ``impl-trait`` references are matched against it to decide which trait
    definitions are local.
    """
    checker = TypeChecker(contract=contract)
    return checker.check_program(program)
