"""Clarity lexer — tokenizer with line/column spans.

Produces a lazy stream of tokens from Clarity source. Lexical failures do not
raise: they are yielded as ERROR tokens so the parser can report them against
the enclosing top-level form and resynchronise.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator, Optional

from clar2wasm.errors import SourceSpan


class TokenType(Enum):
    # Delimiters
    LPAREN = auto()
    RPAREN = auto()
    LBRACE = auto()
    RBRACE = auto()
    COLON = auto()
    COMMA = auto()

    # Literals
    INT_LIT = auto()
    UINT_LIT = auto()
    BUFFER_LIT = auto()
    STRING_LIT = auto()
    UTF8_LIT = auto()
    PRINCIPAL_LIT = auto()
    CONTRACT_LIT = auto()
    RELATIVE_CONTRACT_LIT = auto()
    TRAIT_REF = auto()

    # Identifier
    IDENT = auto()

    # Special
    ERROR = auto()
    EOF = auto()


MAX_INT = 2 ** 127 - 1
MIN_INT = -(2 ** 127)
MAX_UINT = 2 ** 128 - 1

_NAME_START = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")
_NAME_CHARS = _NAME_START | set("0123456789-_!?+<>=/*")
_OPERATOR_START = set("-+*/<>=")
_DELIMITERS = set("(){}:,;\" \t\r\n")
_DIGITS = set("0123456789")
_HEX = set("0123456789abcdefABCDEF")
_INTEGER_BODY = re.compile(r"-?[0-9]+")

_ASCII_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "\\": "\\", '"': '"'}


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: str
    span: SourceSpan

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.value!r}, {self.span})"


class Lexer:
    """Tokenizer for Clarity source code."""

    def __init__(self, source: str, filename: str = "<stdin>"):
        self.source = source
        self.filename = filename
        self.pos = 0
        self.line = 1
        self.column = 1

    def _peek(self, offset: int = 0) -> Optional[str]:
        idx = self.pos + offset
        if idx < len(self.source):
            return self.source[idx]
        return None

    def _advance(self) -> str:
        ch = self.source[self.pos]
        self.pos += 1
        if ch == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        return ch

    def _span_from(self, line: int, column: int) -> SourceSpan:
        return SourceSpan(line, column, self.line, self.column, self.filename)

    def _skip_whitespace_and_comments(self) -> None:
        while self.pos < len(self.source):
            ch = self.source[self.pos]
            if ch in (" ", "\t", "\r", "\n"):
                self._advance()
            elif ch == ";" and self._peek(1) == ";":
                while self.pos < len(self.source) and self.source[self.pos] != "\n":
                    self._advance()
            else:
                break

    def _read_word(self) -> str:
        start = self.pos
        while self.pos < len(self.source) and self.source[self.pos] not in _DELIMITERS:
            self._advance()
        return self.source[start:self.pos]

    def _error(self, message: str, line: int, column: int) -> Token:
        return Token(TokenType.ERROR, message, self._span_from(line, column))

    def _read_string(self, utf8: bool) -> Token:
        line, column = self.line, self.column
        if utf8:
            self._advance()  # u
        self._advance()  # opening quote
        chars: list[str] = []
        while self.pos < len(self.source):
            ch = self._advance()
            if ch == '"':
                tt = TokenType.UTF8_LIT if utf8 else TokenType.STRING_LIT
                return Token(tt, "".join(chars), self._span_from(line, column))
            if ch == "\\":
                if self.pos >= len(self.source):
                    break
                esc = self._advance()
                if utf8 and esc == "u":
                    scalar = self._read_unicode_escape()
                    if scalar is None:
                        return self._error("Invalid unicode escape in string literal", line, column)
                    chars.append(scalar)
                elif esc in _ASCII_ESCAPES:
                    chars.append(_ASCII_ESCAPES[esc])
                else:
                    return self._error(f"Invalid escape sequence '\\{esc}'", line, column)
            else:
                if not utf8 and (ord(ch) > 0x7E or (ord(ch) < 0x20 and ch not in "\n\t\r")):
                    return self._error("Non-ASCII character in string-ascii literal", line, column)
                chars.append(ch)
        return self._error("Unterminated string literal", line, column)

    def _read_unicode_escape(self) -> Optional[str]:
        if self._peek() != "{":
            return None
        self._advance()
        digits = ""
        while self.pos < len(self.source) and self.source[self.pos] in _HEX:
            digits += self._advance()
        if self._peek() != "}" or not digits or len(digits) > 6:
            return None
        self._advance()
        code = int(digits, 16)
        if code > 0x10FFFF or 0xD800 <= code <= 0xDFFF:
            return None
        return chr(code)

    def _read_number(self) -> Token:
        line, column = self.line, self.column
        word = self._read_word()
        if word.startswith("0x"):
            digits = word[2:]
            if any(c not in _HEX for c in digits) or len(digits) % 2:
                return self._error(f"Invalid buffer literal '{word}'", line, column)
            return Token(TokenType.BUFFER_LIT, digits.lower(), self._span_from(line, column))
        unsigned = word.startswith("u")
        body = word[1:] if unsigned else word
        if not _INTEGER_BODY.fullmatch(body) or (unsigned and body.startswith("-")):
            return self._error(f"Invalid integer literal '{word}'", line, column)
        value = int(body)
        if unsigned and value > MAX_UINT:
            return self._error(f"Integer literal '{word}' out of range for uint", line, column)
        if not unsigned and not MIN_INT <= value <= MAX_INT:
            return self._error(f"Integer literal '{word}' out of range for int", line, column)
        tt = TokenType.UINT_LIT if unsigned else TokenType.INT_LIT
        return Token(tt, str(value), self._span_from(line, column))

    def _read_principal(self) -> Token:
        line, column = self.line, self.column
        self._advance()  # '
        word = self._read_word()
        if not word:
            return self._error("Expected principal after quote", line, column)
        tt = TokenType.CONTRACT_LIT if "." in word else TokenType.PRINCIPAL_LIT
        return Token(tt, word, self._span_from(line, column))

    def _read_identifier(self) -> Token:
        line, column = self.line, self.column
        word = self._read_word()
        if word.startswith("<") and len(word) > 2 and word.endswith(">") and word[1] in _NAME_START:
            inner = word[1:-1]
            if all(c in _NAME_CHARS for c in inner):
                return Token(TokenType.TRAIT_REF, inner, self._span_from(line, column))
        if not all(c in _NAME_CHARS for c in word):
            return self._error(f"Invalid identifier '{word}'", line, column)
        return Token(TokenType.IDENT, word, self._span_from(line, column))

    def tokens(self) -> Iterator[Token]:
        """Yield tokens lazily, ending with a single EOF token."""
        while True:
            self._skip_whitespace_and_comments()
            if self.pos >= len(self.source):
                break

            ch = self.source[self.pos]
            nxt = self._peek(1)
            line, column = self.line, self.column

            if ch in "(){}:,":
                self._advance()
                tt = {
                    "(": TokenType.LPAREN, ")": TokenType.RPAREN,
                    "{": TokenType.LBRACE, "}": TokenType.RBRACE,
                    ":": TokenType.COLON, ",": TokenType.COMMA,
                }[ch]
                yield Token(tt, ch, self._span_from(line, column))
            elif ch == '"':
                yield self._read_string(utf8=False)
            elif ch == "u" and nxt == '"':
                yield self._read_string(utf8=True)
            elif ch in _DIGITS or (ch == "u" and nxt is not None and nxt in _DIGITS):
                yield self._read_number()
            elif ch == "-" and nxt is not None and nxt in _DIGITS:
                yield self._read_number()
            elif ch == "'":
                yield self._read_principal()
            elif ch == "." and nxt is not None and nxt in _NAME_START:
                self._advance()
                name = self._read_word()
                yield Token(TokenType.RELATIVE_CONTRACT_LIT, name, self._span_from(line, column))
            elif ch in _NAME_START or ch in _OPERATOR_START:
                yield self._read_identifier()
            else:
                self._advance()
                yield self._error(f"Unexpected character '{ch}'", line, column)

        yield Token(TokenType.EOF, "", SourceSpan.point(self.line, self.column, self.filename))


def tokenize(source: str, filename: str = "<stdin>") -> Iterator[Token]:
    """Lazily tokenize Clarity source code."""
    return Lexer(source, filename).tokens()
