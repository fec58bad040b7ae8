"""Register grid, selection mask and traversal order.

The machine has sixteen registers laid out as a 4x4 grid, register index
``row * 4 + column``. A 16-bit mask picks which of them an operator touches,
and the traversal mode (row/column axis, forward/reversed) fixes the order
they are visited in. ``selection`` is the only place that order is derived;
every operator iterates what it returns.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterator, List, Tuple, Union

import numpy as np


TYPE_INT = "INT"
TYPE_STR = "STR"

GRID_SIDE = 4
REGISTER_COUNT = GRID_SIDE * GRID_SIDE

# Longest text a register holds, in UTF-8 bytes.
TEXT_CAPACITY = 37

INT64_MIN = -(2**63)

AXIS_ROW = "ROW"
AXIS_COL = "COL"

FULL_MASK = (1 << REGISTER_COUNT) - 1

_GRID = np.arange(REGISTER_COUNT, dtype=np.int64).reshape(GRID_SIDE, GRID_SIDE)


def _bits(indices: np.ndarray) -> int:
    return int(np.bitwise_or.reduce(np.left_shift(1, indices)))


ROW_MASKS: Tuple[int, ...] = tuple(_bits(_GRID[r, :]) for r in range(GRID_SIDE))
COL_MASKS: Tuple[int, ...] = tuple(_bits(_GRID[:, c]) for c in range(GRID_SIDE))

# Visiting order of all sixteen registers for each (axis, reversed) pair.
# Rows/columns are always walked 0..3; ``reversed`` only flips the walk
# inside each row or column.
TRAVERSAL_ORDERS: Dict[Tuple[str, bool], Tuple[int, ...]] = {
    (AXIS_ROW, False): tuple(int(i) for i in _GRID.flatten()),
    (AXIS_ROW, True): tuple(int(i) for i in _GRID[:, ::-1].flatten()),
    (AXIS_COL, False): tuple(int(i) for i in _GRID.T.flatten()),
    (AXIS_COL, True): tuple(int(i) for i in _GRID.T[:, ::-1].flatten()),
}


def wrap_i64(value: int) -> int:
    """Fold an arbitrary Python int into the signed 64-bit range."""
    return ((value - INT64_MIN) & 0xFFFFFFFFFFFFFFFF) + INT64_MIN


def trunc_div(a: int, b: int) -> int:
    """Integer division rounding toward zero. ``b`` must be non-zero."""
    quotient = abs(a) // abs(b)
    if (a < 0) != (b < 0):
        quotient = -quotient
    return wrap_i64(quotient)


def parse_leading_int(text: str) -> int:
    """Read a decimal integer prefix the way C ``atoi`` does.

    Leading whitespace is skipped, one optional sign is accepted, then the
    longest run of ASCII digits is taken. Anything else (including an empty
    string) yields 0.
    """
    i = 0
    n = len(text)
    while i < n and text[i] in " \t\n\r\v\f":
        i += 1
    negative = False
    if i < n and text[i] in "+-":
        negative = text[i] == "-"
        i += 1
    start = i
    while i < n and text[i] in "0123456789":
        i += 1
    if i == start:
        return 0
    value = int(text[start:i])
    return wrap_i64(-value if negative else value)


def scrub_text(raw: Union[bytes, str]) -> str:
    """Turn raw input into well-formed text.

    Undecodable bytes, including the lone surrogates a ``surrogateescape``
    stream hands back for them, become U+FFFD.
    """
    if isinstance(raw, str):
        try:
            raw = raw.encode("utf-8", errors="surrogateescape")
        except UnicodeEncodeError:
            raw = raw.encode("utf-8", errors="surrogatepass")
    return raw.decode("utf-8", errors="replace")


def clamp_text(text: str) -> str:
    """Cut ``text`` to at most TEXT_CAPACITY UTF-8 bytes, on a character boundary."""
    encoded = text.encode("utf-8", errors="surrogatepass")
    if len(encoded) <= TEXT_CAPACITY:
        return text
    return encoded[:TEXT_CAPACITY].decode("utf-8", errors="ignore")


@dataclass
class Register:
    type: str = TYPE_INT
    value: Union[int, str] = 0

    @property
    def is_int(self) -> bool:
        return self.type == TYPE_INT

    @property
    def is_text(self) -> bool:
        return self.type == TYPE_STR

    def set_int(self, value: int) -> None:
        self.type = TYPE_INT
        self.value = wrap_i64(value)

    def set_text(self, text: str) -> None:
        self.type = TYPE_STR
        self.value = clamp_text(text)

    def render(self) -> str:
        return str(self.value)

    def __str__(self) -> str:
        if self.is_text:
            return f"{self.type}:{self.value!r}"
        return f"{self.type}:{self.value}"


def fresh_registers() -> List[Register]:
    return [Register() for _ in range(REGISTER_COUNT)]


def toggle_bit(mask: int, index: int) -> int:
    return mask ^ (1 << index)


def toggle_row(mask: int, row: int) -> int:
    return mask ^ ROW_MASKS[row]


def toggle_col(mask: int, col: int) -> int:
    return mask ^ COL_MASKS[col]


def toggle_all(mask: int) -> int:
    return mask ^ FULL_MASK


def selection(mask: int, axis: str, reverse: bool) -> Iterator[Tuple[int, int]]:
    """Yield ``(grid_id, rank)`` for every selected register in traversal order.

    ``grid_id`` is the absolute register index 0-15. ``rank`` counts only
    selected registers, starting at 0 for the first one visited.
    """
    rank = 0
    for index in TRAVERSAL_ORDERS[(axis, reverse)]:
        if mask & (1 << index):
            yield index, rank
            rank += 1


def mask_grid(mask: int) -> np.ndarray:
    """Return the mask as a 4x4 boolean array (row-major, like the registers)."""
    bits = np.right_shift(mask, _GRID) & 1
    return bits.astype(bool)
