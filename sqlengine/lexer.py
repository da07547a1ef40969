"""
SQL tokenizer.

Turns statement text into a flat list of tokens. Words are not classified as
keywords here: the parser decides from context, so that non-reserved words
such as KEY or DATE remain usable as identifiers.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, List

from .errors import SQLSyntaxError


class TokenType(Enum):
    WORD = "WORD"                  # identifier or keyword
    QUOTED_IDENT = "QUOTED_IDENT"  # "identifier"
    NUMBER = "NUMBER"
    STRING = "STRING"
    SYMBOL = "SYMBOL"
    EOF = "EOF"


@dataclass
class Token:
    type: TokenType
    value: Any
    position: int
    text: str = ''

    @property
    def upper(self) -> str:
        return self.value.upper() if self.type == TokenType.WORD else ''

    def __str__(self):
        if self.type == TokenType.EOF:
            return 'end of input'
        return self.text or str(self.value)


# Longest symbols first so that '<=' wins over '<'
SYMBOLS = ('<>', '!=', '<=', '>=', '||', '=', '<', '>', '+', '-', '*', '/', '%',
           '(', ')', ',', '.', ';')

# Only ASCII digits start or continue a numeric literal
DIGITS = '0123456789'


def line_and_column(text: str, position: int):
    """1-based line and column of a character offset."""
    line = text.count('\n', 0, position) + 1
    column = position - (text.rfind('\n', 0, position) + 1) + 1
    return line, column


def syntax_error(text: str, message: str, token: Any, position: int) -> SQLSyntaxError:
    line, column = line_and_column(text, position)
    return SQLSyntaxError(message, token=token, position=position, line=line, column=column)


class Tokenizer:
    """Splits SQL text into tokens."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def tokenize(self) -> List[Token]:
        tokens = []
        text = self.text
        length = len(text)

        while self.pos < length:
            char = text[self.pos]

            if char.isspace():
                self.pos += 1
            elif text.startswith('--', self.pos):
                end = text.find('\n', self.pos)
                self.pos = length if end == -1 else end + 1
            elif text.startswith('/*', self.pos):
                end = text.find('*/', self.pos + 2)
                if end == -1:
                    raise syntax_error(text, "Unterminated block comment", '/*', self.pos)
                self.pos = end + 2
            elif char == "'":
                tokens.append(self._read_string())
            elif char == '"':
                tokens.append(self._read_quoted_identifier())
            elif char in DIGITS or (char == '.' and self.pos + 1 < length and text[self.pos + 1] in DIGITS):
                tokens.append(self._read_number())
            elif char.isalpha() or char == '_':
                tokens.append(self._read_word())
            else:
                for symbol in SYMBOLS:
                    if text.startswith(symbol, self.pos):
                        tokens.append(Token(TokenType.SYMBOL, symbol, self.pos, symbol))
                        self.pos += len(symbol)
                        break
                else:
                    raise syntax_error(text, f"Unexpected character {char!r}", char, self.pos)

        tokens.append(Token(TokenType.EOF, None, length))
        return tokens

    def _read_string(self) -> Token:
        """Single-quoted literal; a doubled quote is an escaped quote."""
        start = self.pos
        self.pos += 1
        chunks = []
        while True:
            end = self.text.find("'", self.pos)
            if end == -1:
                raise syntax_error(self.text, "Unterminated string literal", self.text[start:start + 10], start)
            chunks.append(self.text[self.pos:end])
            if self.text.startswith("''", end):
                chunks.append("'")
                self.pos = end + 2
                continue
            self.pos = end + 1
            break
        return Token(TokenType.STRING, ''.join(chunks), start, self.text[start:self.pos])

    def _read_quoted_identifier(self) -> Token:
        start = self.pos
        end = self.text.find('"', self.pos + 1)
        if end == -1:
            raise syntax_error(self.text, "Unterminated quoted identifier", self.text[start:start + 10], start)
        name = self.text[start + 1:end]
        if not name:
            raise syntax_error(self.text, "Zero-length quoted identifier", '""', start)
        self.pos = end + 1
        return Token(TokenType.QUOTED_IDENT, name, start, self.text[start:self.pos])

    def _read_number(self) -> Token:
        start = self.pos
        text = self.text
        while self.pos < len(text) and text[self.pos] in DIGITS:
            self.pos += 1
        is_decimal = False
        if self.pos < len(text) and text[self.pos] == '.':
            is_decimal = True
            self.pos += 1
            while self.pos < len(text) and text[self.pos] in DIGITS:
                self.pos += 1
        if self.pos < len(text) and text[self.pos] in 'eE':
            exp_end = self.pos + 1
            if exp_end < len(text) and text[exp_end] in '+-':
                exp_end += 1
            if exp_end < len(text) and text[exp_end] in DIGITS:
                is_decimal = True
                self.pos = exp_end
                while self.pos < len(text) and text[self.pos] in DIGITS:
                    self.pos += 1
        if self.pos < len(text) and (text[self.pos].isalpha() or text[self.pos] == '_'):
            raise syntax_error(text, "Invalid numeric literal", text[start:self.pos + 1], start)

        raw = text[start:self.pos]
        value = Decimal(raw) if is_decimal else int(raw)
        return Token(TokenType.NUMBER, value, start, raw)

    def _read_word(self) -> Token:
        start = self.pos
        text = self.text
        while self.pos < len(text) and (text[self.pos].isalnum() or text[self.pos] in '_$'):
            self.pos += 1
        word = text[start:self.pos]
        return Token(TokenType.WORD, word, start, word)


def tokenize(text: str) -> List[Token]:
    return Tokenizer(text).tokenize()
