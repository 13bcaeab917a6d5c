from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class MiniPyError(Exception):
    """Base class for engine errors."""


class MiniPySyntaxError(MiniPyError):
    """Raised when source text cannot be compiled.

    Carries the 1-based ``line`` and ``column`` of the offending token and an
    optional human readable ``suggestion`` that editors can show next to it.
    """

    def __init__(self, message: str, line: int, column: int = 0, suggestion: Optional[str] = None) -> None:
        super().__init__(f"{message} (line {line})")
        self.message = message
        self.line = line
        self.column = column
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": "SyntaxError",
            "message": self.message,
            "line": self.line,
            "column": self.column,
        }
        if self.suggestion:
            data["suggestion"] = self.suggestion
        return data


class LexError(MiniPySyntaxError):
    """Raised when tokenizing fails."""


class TokenType(str, Enum):
    NUMBER = "NUMBER"
    STRING = "STRING"
    IDENTIFIER = "IDENTIFIER"

    IF = "IF"
    ELIF = "ELIF"
    ELSE = "ELSE"
    WHILE = "WHILE"
    DO = "DO"
    REPEAT = "REPEAT"
    TIMES = "TIMES"
    FOR = "FOR"
    IN = "IN"
    RANGE = "RANGE"
    BREAK = "BREAK"
    CONTINUE = "CONTINUE"
    PASS = "PASS"
    DEF = "DEF"
    RETURN = "RETURN"
    TRUE = "TRUE"
    FALSE = "FALSE"
    AND = "AND"
    OR = "OR"
    NOT = "NOT"

    PLUS = "PLUS"
    MINUS = "MINUS"
    STAR = "STAR"
    SLASH = "SLASH"
    PERCENT = "PERCENT"
    FLOOR_DIV = "FLOOR_DIV"
    POWER = "POWER"
    ASSIGN = "ASSIGN"
    PLUS_ASSIGN = "PLUS_ASSIGN"
    MINUS_ASSIGN = "MINUS_ASSIGN"
    STAR_ASSIGN = "STAR_ASSIGN"
    SLASH_ASSIGN = "SLASH_ASSIGN"
    EQ = "EQ"
    NE = "NE"
    LT = "LT"
    GT = "GT"
    LE = "LE"
    GE = "GE"

    LPAREN = "LPAREN"
    RPAREN = "RPAREN"
    LBRACKET = "LBRACKET"
    RBRACKET = "RBRACKET"
    LBRACE = "LBRACE"
    RBRACE = "RBRACE"
    COLON = "COLON"
    COMMA = "COMMA"
    DOT = "DOT"

    NEWLINE = "NEWLINE"
    INDENT = "INDENT"
    DEDENT = "DEDENT"
    EOF = "EOF"


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: Union[float, str, None]
    line: int
    column: int


# Surface spelling -> token type. English first, then the Chinese spellings.
KEYWORDS: Dict[str, TokenType] = {
    "if": TokenType.IF,
    "elif": TokenType.ELIF,
    "else": TokenType.ELSE,
    "while": TokenType.WHILE,
    "repeat": TokenType.REPEAT,
    "times": TokenType.TIMES,
    "for": TokenType.FOR,
    "in": TokenType.IN,
    "range": TokenType.RANGE,
    "break": TokenType.BREAK,
    "continue": TokenType.CONTINUE,
    "pass": TokenType.PASS,
    "def": TokenType.DEF,
    "return": TokenType.RETURN,
    "True": TokenType.TRUE,
    "False": TokenType.FALSE,
    "and": TokenType.AND,
    "or": TokenType.OR,
    "not": TokenType.NOT,
    "如果": TokenType.IF,
    "否则如果": TokenType.ELIF,
    "否则": TokenType.ELSE,
    "当": TokenType.WHILE,
    "时": TokenType.DO,
    "重复": TokenType.REPEAT,
    "次": TokenType.TIMES,
    "对于": TokenType.FOR,
    "从": TokenType.FOR,
    "在": TokenType.IN,
    "范围": TokenType.RANGE,
    "到": TokenType.RANGE,
    "停止": TokenType.BREAK,
    "跳出": TokenType.BREAK,
    "继续": TokenType.CONTINUE,
    "跳过": TokenType.PASS,
    "定义": TokenType.DEF,
    "返回": TokenType.RETURN,
    "真": TokenType.TRUE,
    "假": TokenType.FALSE,
    "和": TokenType.AND,
    "或": TokenType.OR,
    "不": TokenType.NOT,
}


def _build_spellings(table: Dict[str, TokenType]) -> Dict[TokenType, Tuple[str, ...]]:
    spellings: Dict[TokenType, List[str]] = {}
    for word, token_type in table.items():
        spellings.setdefault(token_type, []).append(word)
    return {token_type: tuple(words) for token_type, words in spellings.items()}


# Token type -> every spelling of it, English spelling first.
KEYWORD_SPELLINGS: Dict[TokenType, Tuple[str, ...]] = _build_spellings(KEYWORDS)

TWO_CHAR_OPERATORS: Dict[str, TokenType] = {
    "==": TokenType.EQ,
    "!=": TokenType.NE,
    "<=": TokenType.LE,
    ">=": TokenType.GE,
    "//": TokenType.FLOOR_DIV,
    "**": TokenType.POWER,
    "+=": TokenType.PLUS_ASSIGN,
    "-=": TokenType.MINUS_ASSIGN,
    "*=": TokenType.STAR_ASSIGN,
    "/=": TokenType.SLASH_ASSIGN,
}

SYMBOLS: Dict[str, TokenType] = {
    "+": TokenType.PLUS,
    "-": TokenType.MINUS,
    "*": TokenType.STAR,
    "/": TokenType.SLASH,
    "%": TokenType.PERCENT,
    "=": TokenType.ASSIGN,
    "<": TokenType.LT,
    ">": TokenType.GT,
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    "[": TokenType.LBRACKET,
    "]": TokenType.RBRACKET,
    "{": TokenType.LBRACE,
    "}": TokenType.RBRACE,
    ":": TokenType.COLON,
    ",": TokenType.COMMA,
    ".": TokenType.DOT,
}

_DIGITS = "0123456789"
_OPENERS = "([{"
_CLOSERS = ")]}"

ESCAPES: Dict[str, str] = {
    "n": "\n",
    "t": "\t",
    "\\": "\\",
    '"': '"',
    "'": "'",
}

TAB_WIDTH = 4


class Lexer:
    def __init__(self, text: str, filename: str = "<string>") -> None:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        if not text.endswith("\n"):
            text += "\n"
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1
        self.indent_stack: List[int] = [0]
        # Newlines and indentation inside brackets are not significant.
        self.bracket_depth = 0

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        text = self.text
        n = len(text)
        at_line_start = True

        while self.index < n:
            if at_line_start:
                at_line_start = False
                if self.bracket_depth == 0:
                    self._handle_indentation(tokens)
                    continue
            ch: str = text[self.index]
            if ch == " " or ch == "\t":
                _advance()
                continue
            if ch == "#":
                self._consume_comment()
                continue
            if ch == "\n":
                if self.bracket_depth == 0 and tokens and tokens[-1].type is not TokenType.NEWLINE:
                    tokens_append(Token(TokenType.NEWLINE, None, self.line, self.column))
                _advance()
                at_line_start = True
                continue
            pair = text[self.index:self.index + 2]
            if pair in TWO_CHAR_OPERATORS:
                tokens_append(Token(TWO_CHAR_OPERATORS[pair], pair, self.line, self.column))
                _advance()
                _advance()
                continue
            if ch in SYMBOLS:
                if ch in _OPENERS:
                    self.bracket_depth += 1
                elif ch in _CLOSERS and self.bracket_depth > 0:
                    self.bracket_depth -= 1
                tokens_append(Token(SYMBOLS[ch], ch, self.line, self.column))
                _advance()
                continue
            if ch in _DIGITS:
                tokens_append(self._consume_number())
                continue
            if ch in ('"', "'"):
                tokens_append(self._consume_string())
                continue
            if self._is_identifier_start(ch):
                tokens_append(self._consume_identifier())
                continue
            raise LexError(
                f"Unexpected character '{ch}'",
                self.line,
                self.column,
                "Check for typos or symbols the language does not support",
            )

        if tokens and tokens[-1].type is not TokenType.NEWLINE:
            tokens_append(Token(TokenType.NEWLINE, None, self.line, self.column))
        while len(self.indent_stack) > 1:
            self.indent_stack.pop()
            tokens_append(Token(TokenType.DEDENT, None, self.line, self.column))
        tokens_append(Token(TokenType.EOF, None, self.line, self.column))
        return tokens

    def _handle_indentation(self, tokens: List[Token]) -> None:
        # Blank and comment-only lines are skipped without producing tokens.
        text = self.text
        n = len(text)
        width = 0
        while self.index < n:
            ch = text[self.index]
            if ch == " ":
                width += 1
                self._advance()
            elif ch == "\t":
                width += TAB_WIDTH
                self._advance()
            elif ch == "\n":
                self._advance()
                width = 0
            elif ch == "#":
                self._consume_comment()
            else:
                break
        if self.index >= n:
            return

        current = self.indent_stack[-1]
        if width > current:
            self.indent_stack.append(width)
            tokens.append(Token(TokenType.INDENT, None, self.line, 1))
        elif width < current:
            while len(self.indent_stack) > 1 and self.indent_stack[-1] > width:
                self.indent_stack.pop()
                tokens.append(Token(TokenType.DEDENT, None, self.line, 1))
            if self.indent_stack[-1] != width:
                raise LexError(
                    "Inconsistent indentation",
                    self.line,
                    self.column,
                    "Make sure the line lines up with an enclosing block",
                )

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        start = self.index
        text = self.text
        while not self._eof and self._peek() in _DIGITS:
            self._advance()
        # Only treat '.' as a decimal point when a digit follows it.
        if not self._eof and self._peek() == "." and self.index + 1 < len(text) and text[self.index + 1] in _DIGITS:
            self._advance()
            while not self._eof and self._peek() in _DIGITS:
                self._advance()
        return Token(TokenType.NUMBER, float(text[start:self.index]), line, col)

    def _consume_string(self) -> Token:
        line, col = self.line, self.column
        opening = self._peek()
        self._advance()  # consume opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == opening:
                self._advance()
                return Token(TokenType.STRING, "".join(chars), line, col)
            if ch == "\n":
                break
            if ch == "\\":
                self._advance()
                if self._eof or self._peek() == "\n":
                    break
                escaped = self._peek()
                chars.append(ESCAPES.get(escaped, escaped))
                self._advance()
                continue
            chars.append(ch)
            self._advance()
        raise LexError(
            "Unterminated string literal",
            line,
            col,
            f"Close the string with a matching {opening}",
        )

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        start = self.index
        while not self._eof and self._is_identifier_part(self._peek()):
            self._advance()
        value = self.text[start:self.index]
        token_type = KEYWORDS.get(value, TokenType.IDENTIFIER)
        return Token(token_type, value, line, col)

    def _is_identifier_start(self, ch: str) -> bool:
        return ch == "_" or ch.isalpha()

    def _is_identifier_part(self, ch: str) -> bool:
        return ch == "_" or ch.isalpha() or ch in _DIGITS

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def tokenize(source: str, filename: str = "<string>") -> List[Token]:
    return Lexer(source, filename).tokenize()
