"""Clarity parser — LL(1) recursive-descent parser.

Parses a token stream into top-level declarations. The grammar is fully
prefix-disambiguated: the head token of every form determines its shape, so
one token of lookahead is enough and nothing is ever backtracked.

Top-level declarations:
  (define-public (name (arg type) ...) body)
  (define-private ...) / (define-read-only ...)
  (define-constant name expr)
  (define-data-var name type expr)
  (define-map name key-type value-type)
  (define-fungible-token name [supply])
  (define-non-fungible-token name type)
  (define-trait name ((fn (arg-types ...) return-type) ...))
  (use-trait alias trait-ref)
  (impl-trait trait-ref)
  any other expression

A syntax error skips the rest of the offending top-level form; parsing
resumes at the next top-level form.
"""

from __future__ import annotations

from typing import Iterator, Optional

from clar2wasm.lexer import Token, TokenType, tokenize
from clar2wasm.ast_nodes import (
    Program, Declaration, DefineFunction, DefineConstant, DefineDataVar,
    DefineMap, DefineFungibleToken, DefineNonFungibleToken, DefineTrait,
    TraitFunction, UseTrait, ImplTrait, TopLevelExpr, Parameter, Visibility,
    TypeAnnotation,
    Expr, Atom, IntLiteral, BoolLiteral, BufferLiteral, StringLiteral,
    PrincipalLiteral, ListLiteral, TupleLiteral, SomeLiteral, NoneLiteral,
    ResponseLiteral, ListExpr,
)
from clar2wasm.errors import Diagnostic, SourceSpan, syntax_error
from clar2wasm.principal import DEFAULT_DEPLOYER, PrincipalError, parse_principal


_VISIBILITY = {
    "define-public": Visibility.PUBLIC,
    "define-private": Visibility.PRIVATE,
    "define-read-only": Visibility.READ_ONLY,
}

_OPENERS = (TokenType.LPAREN, TokenType.LBRACE)
_CLOSERS = (TokenType.RPAREN, TokenType.RBRACE)

# Parens and braces together, counting the top-level form.
MAX_NESTING_DEPTH = 64


class _ParseFailure(Exception):
    def __init__(self, diagnostic: Diagnostic):
        self.diagnostic = diagnostic
        super().__init__(diagnostic.message)


class Parser:
    """LL(1) recursive-descent parser for Clarity."""

    def __init__(self, tokens: Iterator[Token], filename: str = "<stdin>",
                 deployer: str = DEFAULT_DEPLOYER):
        self._tokens = tokens
        self.filename = filename
        self.deployer = deployer
        self.diagnostics: list[Diagnostic] = []
        self._depth = 0
        self._consumed = 0
        self._current: Token = next(self._tokens)

    def _peek(self) -> TokenType:
        return self._current.type

    def _advance(self) -> Token:
        tok = self._current
        if tok.type != TokenType.EOF:
            if tok.type in _OPENERS:
                self._depth += 1
            elif tok.type in _CLOSERS:
                self._depth = max(0, self._depth - 1)
            self._consumed += 1
            self._current = next(self._tokens)
        return tok

    def _open(self) -> Token:
        tok = self._advance()
        if self._depth > MAX_NESTING_DEPTH:
            raise self._fail(f"Nesting depth exceeds the maximum of {MAX_NESTING_DEPTH}", tok.span)
        return tok

    def _fail(self, message: str, span: Optional[SourceSpan] = None,
              expected: Optional[str] = None) -> _ParseFailure:
        return _ParseFailure(syntax_error(message, span or self._current.span, expected))

    def _expect(self, tt: TokenType, what: str) -> Token:
        tok = self._current
        if tok.type == TokenType.ERROR:
            raise self._fail(tok.value)
        if tok.type != tt:
            got = "end of input" if tok.type == TokenType.EOF else f"'{tok.value}'"
            raise self._fail(f"Expected {what}, got {got}", expected=what)
        return self._advance()

    def _expect_name(self, what: str = "identifier") -> Token:
        return self._expect(TokenType.IDENT, what)

    def _span(self, start: SourceSpan, end: SourceSpan) -> SourceSpan:
        return SourceSpan(start.start_line, start.start_column,
                          end.end_line, end.end_column, self.filename)

    # -------------------------------------------------------------------
    # Top-level
    # -------------------------------------------------------------------

    def iter_forms(self) -> Iterator[Declaration]:
        """Lazily yield top-level declarations, recording syntax errors."""
        while self._peek() != TokenType.EOF:
            start_depth, start_count = self._depth, self._consumed
            try:
                yield self._parse_top_level()
            except _ParseFailure as failure:
                self.diagnostics.append(failure.diagnostic)
                self._synchronize(start_depth, start_count)

    def _synchronize(self, depth: int, start_count: int) -> None:
        """Skip to the end of the current top-level form."""
        if self._depth <= depth:
            if self._consumed == start_count and self._peek() != TokenType.EOF:
                self._advance()
            return
        while self._depth > depth and self._peek() != TokenType.EOF:
            self._advance()

    def parse(self) -> Program:
        decls = list(self.iter_forms())
        return Program(declarations=decls, diagnostics=self.diagnostics, filename=self.filename)

    def _parse_top_level(self) -> Declaration:
        if self._peek() == TokenType.RPAREN or self._peek() == TokenType.RBRACE:
            raise self._fail(f"Unexpected '{self._current.value}' at top level")
        if self._peek() != TokenType.LPAREN:
            expr = self._parse_expr()
            return TopLevelExpr(span=expr.span, expr=expr)

        open_tok = self._current
        # Look at the head without consuming the whole form.
        self._advance()
        head = self._current
        if head.type == TokenType.IDENT:
            if head.value in _VISIBILITY:
                return self._parse_define_function(open_tok, _VISIBILITY[head.value])
            parsers = {
                "define-constant": self._parse_define_constant,
                "define-data-var": self._parse_define_data_var,
                "define-map": self._parse_define_map,
                "define-fungible-token": self._parse_define_ft,
                "define-non-fungible-token": self._parse_define_nft,
                "define-trait": self._parse_define_trait,
                "use-trait": self._parse_use_trait,
                "impl-trait": self._parse_impl_trait,
            }
            if head.value in parsers:
                self._advance()
                return parsers[head.value](open_tok)
        expr = self._parse_list_tail(open_tok)
        return TopLevelExpr(span=expr.span, expr=expr)

    def _close(self, open_tok: Token, what: str) -> SourceSpan:
        close = self._expect(TokenType.RPAREN, f"')' closing {what}")
        return self._span(open_tok.span, close.span)

    def _parse_define_function(self, open_tok: Token, visibility: Visibility) -> DefineFunction:
        keyword = self._advance()
        sig_open = self._expect(TokenType.LPAREN, f"function signature after '{keyword.value}'")
        name_tok = self._expect_name("function name")
        params: list[Parameter] = []
        while self._peek() == TokenType.LPAREN:
            p_open = self._advance()
            p_name = self._expect_name("parameter name")
            p_type = self._parse_type()
            p_span = self._close(p_open, "parameter")
            params.append(Parameter(name=p_name.value, type_annotation=p_type, span=p_span))
        self._close(sig_open, "function signature")
        body = self._parse_expr()
        if self._peek() != TokenType.RPAREN:
            raise self._fail(
                f"Function '{name_tok.value}' must have exactly one body expression",
                expected="')'",
            )
        span = self._close(open_tok, keyword.value)
        return DefineFunction(span=span, visibility=visibility, name=name_tok.value,
                              params=params, body=body, name_span=name_tok.span)

    def _parse_define_constant(self, open_tok: Token) -> DefineConstant:
        name = self._expect_name("constant name")
        value = self._parse_expr()
        span = self._close(open_tok, "define-constant")
        return DefineConstant(span=span, name=name.value, value=value)

    def _parse_define_data_var(self, open_tok: Token) -> DefineDataVar:
        name = self._expect_name("data variable name")
        ty = self._parse_type()
        value = self._parse_expr()
        span = self._close(open_tok, "define-data-var")
        return DefineDataVar(span=span, name=name.value, type_annotation=ty, value=value)

    def _parse_define_map(self, open_tok: Token) -> DefineMap:
        name = self._expect_name("map name")
        key_type = self._parse_type()
        value_type = self._parse_type()
        span = self._close(open_tok, "define-map")
        return DefineMap(span=span, name=name.value, key_type=key_type, value_type=value_type)

    def _parse_define_ft(self, open_tok: Token) -> DefineFungibleToken:
        name = self._expect_name("token name")
        supply = None
        if self._peek() != TokenType.RPAREN:
            supply = self._parse_expr()
        span = self._close(open_tok, "define-fungible-token")
        return DefineFungibleToken(span=span, name=name.value, supply=supply)

    def _parse_define_nft(self, open_tok: Token) -> DefineNonFungibleToken:
        name = self._expect_name("token name")
        asset_type = self._parse_type()
        span = self._close(open_tok, "define-non-fungible-token")
        return DefineNonFungibleToken(span=span, name=name.value, asset_type=asset_type)

    def _parse_define_trait(self, open_tok: Token) -> DefineTrait:
        name = self._expect_name("trait name")
        self._expect(TokenType.LPAREN, "trait function list")
        functions: list[TraitFunction] = []
        while self._peek() == TokenType.LPAREN:
            f_open = self._advance()
            f_name = self._expect_name("trait function name")
            self._expect(TokenType.LPAREN, "trait function argument types")
            param_types: list[TypeAnnotation] = []
            while self._peek() != TokenType.RPAREN:
                param_types.append(self._parse_type())
            self._advance()
            ret = self._parse_type()
            f_span = self._close(f_open, "trait function")
            functions.append(TraitFunction(name=f_name.value, param_types=param_types,
                                           return_type=ret, span=f_span))
        self._expect(TokenType.RPAREN, "')' closing trait function list")
        span = self._close(open_tok, "define-trait")
        return DefineTrait(span=span, name=name.value, functions=functions)

    def _parse_trait_identifier(self) -> tuple[PrincipalLiteral, str]:
        tok = self._current
        if tok.type not in (TokenType.CONTRACT_LIT, TokenType.RELATIVE_CONTRACT_LIT):
            raise self._fail("Expected trait identifier", expected="contract.trait-name")
        self._advance()
        text = tok.value if tok.type == TokenType.CONTRACT_LIT else "." + tok.value
        contract, dot, trait_name = text.rpartition(".")
        if not dot or not contract or not trait_name:
            raise self._fail(f"Invalid trait identifier '{text}'", tok.span)
        literal = self._make_principal(contract, tok.span)
        return literal, trait_name

    def _parse_use_trait(self, open_tok: Token) -> UseTrait:
        alias = self._expect_name("trait alias")
        literal, trait_name = self._parse_trait_identifier()
        span = self._close(open_tok, "use-trait")
        return UseTrait(span=span, alias=alias.value, trait=literal, trait_name=trait_name)

    def _parse_impl_trait(self, open_tok: Token) -> ImplTrait:
        literal, trait_name = self._parse_trait_identifier()
        span = self._close(open_tok, "impl-trait")
        return ImplTrait(span=span, trait=literal, trait_name=trait_name)

    # -------------------------------------------------------------------
    # Types
    # -------------------------------------------------------------------

    def _parse_size(self) -> int:
        tok = self._expect(TokenType.INT_LIT, "type size")
        value = int(tok.value)
        if value < 0:
            raise self._fail("Type size must be non-negative", tok.span)
        return value

    def _parse_type(self) -> TypeAnnotation:
        tok = self._current
        if tok.type == TokenType.IDENT:
            self._advance()
            return TypeAnnotation(name=tok.value, span=tok.span)
        if tok.type == TokenType.TRAIT_REF:
            self._advance()
            return TypeAnnotation(name=f"<{tok.value}>", span=tok.span)
        if tok.type == TokenType.LBRACE:
            return self._parse_tuple_type_braces()
        if tok.type != TokenType.LPAREN:
            if tok.type == TokenType.ERROR:
                raise self._fail(tok.value)
            raise self._fail(f"Expected type, got '{tok.value}'", expected="type")

        open_tok = self._open()
        head = self._expect_name("type name")
        name = head.value
        if name in ("buff", "string-ascii", "string-utf8"):
            size = self._parse_size()
            span = self._close(open_tok, name)
            return TypeAnnotation(name=name, size=size, span=span)
        if name == "list":
            size = self._parse_size()
            elem = self._parse_type()
            span = self._close(open_tok, name)
            return TypeAnnotation(name=name, size=size, args=[elem], span=span)
        if name == "optional":
            inner = self._parse_type()
            span = self._close(open_tok, name)
            return TypeAnnotation(name=name, args=[inner], span=span)
        if name == "response":
            ok = self._parse_type()
            err = self._parse_type()
            span = self._close(open_tok, name)
            return TypeAnnotation(name=name, args=[ok, err], span=span)
        if name == "tuple":
            fields: list[tuple[str, TypeAnnotation]] = []
            while self._peek() == TokenType.LPAREN:
                f_open = self._advance()
                f_name = self._expect_name("tuple field name")
                f_type = self._parse_type()
                self._close(f_open, "tuple field")
                fields.append((f_name.value, f_type))
            span = self._close(open_tok, name)
            return TypeAnnotation(name="tuple", fields=fields, span=span)
        raise self._fail(f"Unknown type constructor '{name}'", head.span, expected="type")

    def _parse_tuple_type_braces(self) -> TypeAnnotation:
        open_tok = self._open()
        fields: list[tuple[str, TypeAnnotation]] = []
        while self._peek() != TokenType.RBRACE:
            f_name = self._expect_name("tuple field name")
            self._expect(TokenType.COLON, "':' after tuple field name")
            fields.append((f_name.value, self._parse_type()))
            if self._peek() == TokenType.COMMA:
                self._advance()
        close = self._expect(TokenType.RBRACE, "'}' closing tuple type")
        return TypeAnnotation(name="tuple", fields=fields, span=self._span(open_tok.span, close.span))

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def _make_principal(self, text: str, span: SourceSpan) -> PrincipalLiteral:
        try:
            principal = parse_principal(text, self.deployer)
        except PrincipalError as e:
            raise self._fail(str(e), span)
        return PrincipalLiteral(span=span, principal=principal, text=text)

    def _parse_expr(self) -> Expr:
        tok = self._current
        tt = tok.type

        if tt == TokenType.LPAREN:
            open_tok = self._open()
            return self._parse_list_tail(open_tok)
        if tt == TokenType.LBRACE:
            return self._parse_tuple_braces()
        if tt == TokenType.INT_LIT or tt == TokenType.UINT_LIT:
            self._advance()
            return IntLiteral(span=tok.span, value=int(tok.value), unsigned=tt == TokenType.UINT_LIT)
        if tt == TokenType.BUFFER_LIT:
            self._advance()
            return BufferLiteral(span=tok.span, value=bytes.fromhex(tok.value))
        if tt == TokenType.STRING_LIT or tt == TokenType.UTF8_LIT:
            self._advance()
            return StringLiteral(span=tok.span, value=tok.value, utf8=tt == TokenType.UTF8_LIT)
        if tt == TokenType.PRINCIPAL_LIT or tt == TokenType.CONTRACT_LIT:
            self._advance()
            return self._make_principal(tok.value, tok.span)
        if tt == TokenType.RELATIVE_CONTRACT_LIT:
            self._advance()
            return self._make_principal("." + tok.value, tok.span)
        if tt == TokenType.IDENT:
            self._advance()
            if tok.value == "true" or tok.value == "false":
                return BoolLiteral(span=tok.span, value=tok.value == "true")
            if tok.value == "none":
                return NoneLiteral(span=tok.span)
            return Atom(span=tok.span, name=tok.value)
        if tt == TokenType.ERROR:
            raise self._fail(tok.value)
        if tt == TokenType.EOF:
            raise self._fail("Unexpected end of input", expected="expression")
        if tt == TokenType.TRAIT_REF:
            raise self._fail(f"Trait reference '<{tok.value}>' is only valid in a type position")
        raise self._fail(f"Unexpected '{tok.value}'", expected="expression")

    def _parse_list_tail(self, open_tok: Token) -> Expr:
        """Parse the items of a form whose '(' has been consumed."""
        items: list[Expr] = []
        while self._peek() != TokenType.RPAREN:
            if self._peek() == TokenType.EOF:
                raise self._fail("Unbalanced '(': form is never closed", open_tok.span, expected="')'")
            if self._peek() == TokenType.RBRACE:
                raise self._fail("Mismatched '}' inside '(' form", expected="')'")
            items.append(self._parse_expr())
        close = self._advance()
        span = self._span(open_tok.span, close.span)
        return self._specialize(items, span)

    def _specialize(self, items: list[Expr], span: SourceSpan) -> Expr:
        head = items[0].name if items and isinstance(items[0], Atom) else None
        args = items[1:]
        if head == "list":
            return ListLiteral(span=span, elements=args)
        if head == "some" and len(args) == 1:
            return SomeLiteral(span=span, value=args[0])
        if head in ("ok", "err") and len(args) == 1:
            return ResponseLiteral(span=span, value=args[0], is_ok=head == "ok")
        if head == "tuple":
            fields: list[tuple[str, Expr]] = []
            for pair in args:
                if (not isinstance(pair, ListExpr) or len(pair.items) != 2
                        or not isinstance(pair.items[0], Atom)):
                    raise self._fail("Tuple fields must be (name value) pairs",
                                     pair.span, expected="(name value)")
                fields.append((pair.items[0].name, pair.items[1]))
            return TupleLiteral(span=span, fields=fields)
        return ListExpr(span=span, items=items)

    def _parse_tuple_braces(self) -> TupleLiteral:
        open_tok = self._open()
        fields: list[tuple[str, Expr]] = []
        while self._peek() != TokenType.RBRACE:
            if self._peek() == TokenType.EOF:
                raise self._fail("Unbalanced '{': tuple is never closed", open_tok.span, expected="'}'")
            f_name = self._expect_name("tuple field name")
            self._expect(TokenType.COLON, "':' after tuple field name")
            fields.append((f_name.value, self._parse_expr()))
            if self._peek() == TokenType.COMMA:
                self._advance()
        close = self._advance()
        return TupleLiteral(span=self._span(open_tok.span, close.span), fields=fields)


def iter_forms(source: str, filename: str = "<stdin>",
               deployer: str = DEFAULT_DEPLOYER) -> Iterator[Declaration]:
    """Lazily parse top-level forms; syntax errors are skipped silently."""
    return Parser(tokenize(source, filename), filename, deployer).iter_forms()


def parse(source: str, filename: str = "<stdin>", deployer: str = DEFAULT_DEPLOYER) -> Program:
    """Parse Clarity source into a Program; syntax errors land in ``program.diagnostics``."""
    return Parser(tokenize(source, filename), filename, deployer).parse()
