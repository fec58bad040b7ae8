from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional


class EmatrmError(Exception):
    """Base class for interpreter errors."""


class EmatrmLexError(EmatrmError):
    """Raised when the source cannot be turned into instructions."""

    def __init__(self, message: str, *, filename: str, line: int, column: int) -> None:
        super().__init__(f"{message} at {filename}:{line}:{column}")
        self.message = message
        self.filename = filename
        self.line = line
        self.column = column


# Line number carried by atoms the machine creates while running.
NO_LINE = -1


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int = 0


LIT_STR = "LIT_STR"
LIT_CH = "LIT_CH"
LIT_NUM = "LIT_NUM"
LITERALS = (LIT_STR, LIT_CH, LIT_NUM)

HEX_DIGITS = "0123456789abcdef"

TOGGLE_BITS = tuple(f"TOGGLE_BIT_{d.upper()}" for d in HEX_DIGITS)
TOGGLE_COLS = tuple(f"TOGGLE_COL_{d}" for d in range(4))
TOGGLE_ROWS = tuple(f"TOGGLE_ROW_{d}" for d in range(4))
TOGGLE_MAT = "TOGGLE_MAT"

MODE_COL = "MODE_COL"
MODE_ROW = "MODE_ROW"
ORDER_REV = "ORDER_REV"

SYMBOLS: Dict[str, str] = {
    "A": TOGGLE_MAT,
    "C": MODE_COL,
    "R": MODE_ROW,
    "~": ORDER_REV,
    ">": "POP_ATOM",
    "<": "PUSH_ATOM",
    "w": "WRITE",
    "W": "WRITE_NEWLINE",
    "r": "READ",
    "#": "STR_TO_INT",
    ",": "INT_TO_STR",
    "+": "ADD",
    "-": "SUB",
    "*": "MUL",
    "/": "DIV",
    ".": "SAVE_JMP",
    "=": "EQUAL",
    "F": "GREQUAL",
    "G": "GREATER",
    "L": "LESS",
    "M": "LEQUAL",
    "&": "AND",
    "!": "NOT",
}

# Two-character operators: leading character -> (what is expected, follow-up table).
PREFIXED: Dict[str, tuple] = {
    "%": (
        "register number operator",
        {"+": "GRID_ADD", "-": "GRID_SUB", "*": "GRID_MUL", "/": "GRID_DIV"},
    ),
    "[": (
        "register index operator",
        {"+": "RANK_ADD", "-": "RANK_SUB", "*": "RANK_MUL", "/": "RANK_DIV"},
    ),
    "j": (
        "jump stack operator",
        {">": "POP_JMP", "?": "POP_JMP_COND", "<": "PUSH_JMP"},
    ),
    "?": (
        "boolean operator",
        {"|": "OR"},
    ),
}

# Grid selectors: leading character -> (axis name, token types by digit).
GRID_SELECTORS: Dict[str, tuple] = {
    "|": ("column", TOGGLE_COLS),
    "`": ("row", TOGGLE_ROWS),
}

INSTRUCTION_KINDS = frozenset(
    LITERALS
    + TOGGLE_BITS
    + TOGGLE_COLS
    + TOGGLE_ROWS
    + tuple(SYMBOLS.values())
    + tuple(kind for _expected, table in PREFIXED.values() for kind in table.values())
)

WHITESPACE = " \t\n\r\v\f"


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        symbols = SYMBOLS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in WHITESPACE:
                _advance()
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            if ch == "'":
                tokens_append(self._consume_char())
                continue
            if ch == "$":
                tokens_append(self._consume_number())
                continue
            if ch in HEX_DIGITS:
                tokens_append(Token(TOGGLE_BITS[HEX_DIGITS.index(ch)], "", self.line, self.column))
                _advance()
                continue
            if ch in GRID_SELECTORS:
                tokens_append(self._consume_grid_selector())
                continue
            if ch in PREFIXED:
                tokens_append(self._consume_prefixed())
                continue
            if ch in symbols:
                tokens_append(Token(symbols[ch], "", self.line, self.column))
                _advance()
                continue
            self._error(f"Unknown character {ch!r}")
        return tokens

    def _consume_string(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # opening quote
        start = self.index
        end = self.text.find('"', start)
        if end == -1:
            self._error("Unterminated string literal", line=line, column=col)
        value = self.text[start:end]
        while self.index <= end:
            self._advance()
        return Token(LIT_STR, value, line, col)

    def _consume_char(self) -> Token:
        line, col = self.line, self.column
        self._advance()
        if self._eof:
            self._error("Expected a character after \"'\"", line=line, column=col)
        value = self._peek()
        self._advance()
        return Token(LIT_CH, value, line, col)

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        self._advance()
        digits: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == "$":
                self._advance()
                return Token(LIT_NUM, "".join(digits), line, col)
            if ch not in "0123456789":
                self._error(f"Non-decimal digit {ch!r} in number literal")
            digits.append(ch)
            self._advance()
        self._error("Unterminated number literal", line=line, column=col)

    def _consume_grid_selector(self) -> Token:
        line, col = self.line, self.column
        axis, kinds = GRID_SELECTORS[self._peek()]
        lead = self._peek()
        self._advance()
        if self._eof:
            self._error(f"Expected {axis} number after {lead!r}", line=line, column=col)
        digit = self._peek()
        if digit not in "0123":
            self._error(f"Invalid {axis} number {digit!r}")
        self._advance()
        return Token(kinds[int(digit)], "", line, col)

    def _consume_prefixed(self) -> Token:
        line, col = self.line, self.column
        lead = self._peek()
        expected, table = PREFIXED[lead]
        self._advance()
        if self._eof:
            self._error(f"Expected {expected} after {lead!r}", line=line, column=col)
        follow = self._peek()
        kind: Optional[str] = table.get(follow)
        if kind is None:
            self._error(f"Invalid {expected} {lead + follow!r}")
        self._advance()
        return Token(kind, "", line, col)

    def _error(self, message: str, *, line: Optional[int] = None, column: Optional[int] = None):
        raise EmatrmLexError(
            message,
            filename=self.filename,
            line=self.line if line is None else line,
            column=self.column if column is None else column,
        )

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
