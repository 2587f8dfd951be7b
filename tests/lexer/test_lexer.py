"""Lexer Tests — LEX-001 through LEX-006.

Tokens carry 1-based line/column spans; lexical failures come back as ERROR
tokens instead of exceptions.
"""

import pytest

from clar2wasm.driver import CompileState, compile_source
from clar2wasm.errors import ErrorKind
from clar2wasm.lexer import TokenType, tokenize, MAX_INT, MAX_UINT


def _types(source):
    return [t.type for t in tokenize(source)]


def _values(source):
    return [(t.type, t.value) for t in tokenize(source) if t.type != TokenType.EOF]


class TestLEX001:
    """LEX-001: Delimiters, identifiers and comments.
    Priority: P0
    """

    def test_simple_form(self):
        """priority_p0: A function application tokenizes head first."""
        assert _types("(+ a b)") == [
            TokenType.LPAREN, TokenType.IDENT, TokenType.IDENT,
            TokenType.IDENT, TokenType.RPAREN, TokenType.EOF,
        ]

    def test_comments_are_skipped(self):
        """priority_p0: ';;' runs to the end of the line."""
        source = ";; header\n(begin ;; trailing\n  true)"
        assert _values(source) == [
            (TokenType.LPAREN, "("), (TokenType.IDENT, "begin"),
            (TokenType.IDENT, "true"), (TokenType.RPAREN, ")"),
        ]

    def test_identifier_punctuation(self):
        """priority_p1: Names may contain -, !, ? and /."""
        values = [v for _, v in _values("(unwrap! map-get? sha512/256 is-eq)")[1:-1]]
        assert values == ["unwrap!", "map-get?", "sha512/256", "is-eq"]

    def test_tuple_braces(self):
        """priority_p1: Braces, colons and commas are their own tokens."""
        assert _types("{a: 1, b: 2}")[:-1] == [
            TokenType.LBRACE, TokenType.IDENT, TokenType.COLON, TokenType.INT_LIT,
            TokenType.COMMA, TokenType.IDENT, TokenType.COLON, TokenType.INT_LIT,
            TokenType.RBRACE,
        ]


class TestLEX002:
    """LEX-002: Integer literals.
    Priority: P0
    """

    def test_signed_and_unsigned(self):
        """priority_p0: 'u' prefix marks an unsigned literal."""
        assert _values("5 u5 -7") == [
            (TokenType.INT_LIT, "5"), (TokenType.UINT_LIT, "5"), (TokenType.INT_LIT, "-7"),
        ]

    def test_minus_alone_is_an_operator(self):
        """priority_p0: '-' not followed by a digit is an identifier."""
        assert _values("(- a 1)")[1] == (TokenType.IDENT, "-")

    def test_range_limits(self):
        """priority_p1: The extreme representable values are accepted."""
        assert _values(str(MAX_INT))[0] == (TokenType.INT_LIT, str(MAX_INT))
        assert _values(f"u{MAX_UINT}")[0] == (TokenType.UINT_LIT, str(MAX_UINT))

    def test_out_of_range(self):
        """priority_p1: One past the limit is a lexical error."""
        assert _types(str(MAX_INT + 1))[0] == TokenType.ERROR
        assert _types(f"u{MAX_UINT + 1}")[0] == TokenType.ERROR

    @pytest.mark.parametrize("bad", ["\u00b2", "1\u0663", "u\u2460", "7\u00b9"])
    def test_non_ascii_digits(self, bad):
        """priority_p1: Only ASCII digits make an integer; anything else is an ERROR token."""
        tokens = list(tokenize(bad))
        assert tokens[0].type == TokenType.ERROR
        assert tokens[-1].type == TokenType.EOF

    def test_unicode_digit_is_a_diagnostic(self):
        """priority_p1: A superscript digit in a body fails the unit without raising."""
        result = compile_source("(define-read-only (g) \u00b2)")
        assert result.state == CompileState.FAILED
        assert result.errors[0].kind == ErrorKind.SYNTAX_ERROR


class TestLEX003:
    """LEX-003: Buffer literals.
    Priority: P0
    """

    def test_buffer_literal(self):
        """priority_p0: 0x-prefixed hex becomes a BUFFER_LIT with lowercased digits."""
        assert _values("0xDEadBEEF") == [(TokenType.BUFFER_LIT, "deadbeef")]

    def test_empty_buffer(self):
        """priority_p1: '0x' alone is the empty buffer."""
        assert _values("0x") == [(TokenType.BUFFER_LIT, "")]

    @pytest.mark.parametrize("bad", ["0x1", "0xzz", "0x123"])
    def test_malformed_buffer(self, bad):
        """priority_p0: Odd digit counts and non-hex digits are errors."""
        tokens = list(tokenize(bad))
        assert tokens[0].type == TokenType.ERROR
        assert "buffer" in tokens[0].value


class TestLEX004:
    """LEX-004: String literals.
    Priority: P0
    """

    def test_ascii_string_with_escapes(self):
        """priority_p0: Escapes are decoded in the token value."""
        assert _values(r'"a\nb\"c"') == [(TokenType.STRING_LIT, 'a\nb"c')]

    def test_utf8_string(self):
        """priority_p0: u"..." is a UTF8_LIT and supports \\u{...} escapes."""
        assert _values(r'u"caf\u{e9}"') == [(TokenType.UTF8_LIT, "café")]

    def test_non_ascii_in_ascii_string(self):
        """priority_p1: string-ascii literals only admit printable ASCII."""
        assert _types('"café"')[0] == TokenType.ERROR

    def test_unterminated(self):
        """priority_p1: A missing closing quote is reported, not raised."""
        tokens = list(tokenize('"abc'))
        assert tokens[0].type == TokenType.ERROR
        assert tokens[-1].type == TokenType.EOF

    def test_surrogate_escape_rejected(self):
        """priority_p2: Surrogate code points are not unicode scalars."""
        assert _types(r'u"\u{d800}"')[0] == TokenType.ERROR


class TestLEX005:
    """LEX-005: Principals, contracts and trait references.
    Priority: P1
    """

    def test_standard_principal(self):
        """priority_p1: A quoted address is a PRINCIPAL_LIT."""
        tok = list(tokenize("'ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM"))[0]
        assert tok.type == TokenType.PRINCIPAL_LIT
        assert tok.value == "ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM"

    def test_contract_principal(self):
        """priority_p1: An address with a contract name is a CONTRACT_LIT."""
        tok = list(tokenize("'ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM.token"))[0]
        assert tok.type == TokenType.CONTRACT_LIT

    def test_relative_contract(self):
        """priority_p1: '.name' refers to a contract of the same deployer."""
        assert _values(".token") == [(TokenType.RELATIVE_CONTRACT_LIT, "token")]

    def test_trait_reference(self):
        """priority_p1: <name> is a trait reference, not two operators."""
        assert _values("<sip-010>") == [(TokenType.TRAIT_REF, "sip-010")]

    def test_comparison_is_not_a_trait(self):
        """priority_p2: '<' and '<=' remain identifiers."""
        assert _values("(<= a b)")[1] == (TokenType.IDENT, "<=")


class TestLEX006:
    """LEX-006: Spans.
    Priority: P0
    """

    def test_spans_are_one_based(self):
        """priority_p0: Line and column start at 1 and track newlines."""
        tokens = list(tokenize("(a\n  bc)"))
        assert (tokens[0].span.start_line, tokens[0].span.start_column) == (1, 1)
        bc = tokens[2]
        assert (bc.span.start_line, bc.span.start_column) == (2, 3)
        assert (bc.span.end_line, bc.span.end_column) == (2, 5)

    def test_filename_in_span(self):
        """priority_p1: Every span carries the source file name."""
        tokens = list(tokenize("x", filename="token.clar"))
        assert all(t.span.file == "token.clar" for t in tokens)

    def test_unexpected_character(self):
        """priority_p1: Unknown characters become ERROR tokens and lexing continues."""
        tokens = list(tokenize("# x"))
        assert tokens[0].type == TokenType.ERROR
        assert tokens[1].type == TokenType.IDENT

    def test_lazy(self):
        """priority_p2: tokenize returns an iterator."""
        stream = tokenize("(a b)")
        assert next(stream).type == TokenType.LPAREN
