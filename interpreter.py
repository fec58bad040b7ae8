from __future__ import annotations
import io
import json
import os
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, TextIO, Tuple

from lexer import (
    LIT_CH,
    LIT_NUM,
    LIT_STR,
    LITERALS,
    MODE_COL,
    MODE_ROW,
    NO_LINE,
    ORDER_REV,
    TOGGLE_BITS,
    TOGGLE_COLS,
    TOGGLE_MAT,
    TOGGLE_ROWS,
    EmatrmError,
    Lexer,
    Token,
)
from extensions import HookRegistry, RuntimeServices, StepContext, build_default_services
from registers import (
    AXIS_COL,
    AXIS_ROW,
    GRID_SIDE,
    Register,
    fresh_registers,
    mask_grid,
    parse_leading_int,
    scrub_text,
    selection,
    toggle_all,
    toggle_bit,
    toggle_col,
    toggle_row,
    trunc_div,
)


READ_PROMPT = ">: "
DEFAULT_HISTORY = 10000


class EmatrmRuntimeError(EmatrmError):
    """Raised when execution is aborted by something outside the instruction set."""

    def __init__(self, message: str, *, instr_ptr: Optional[int] = None, token: Optional[Token] = None) -> None:
        super().__init__(message)
        self.message = message
        self.instr_ptr = instr_ptr
        self.token = token
        self.step_index: Optional[int] = None


class ExitSignal(Exception):
    def __init__(self, code: int = 0) -> None:
        super().__init__(code)
        self.code = code


@dataclass
class Machine:
    """All mutable program state. One instance lives for one program run."""

    registers: List[Register] = field(default_factory=fresh_registers)
    mask: int = 0
    axis: str = AXIS_ROW
    reverse: bool = False
    instr_ptr: int = 0
    atoms: List[Token] = field(default_factory=list)
    jumps: List[int] = field(default_factory=list)

    def selected(self) -> Iterator[Tuple[Register, int, int]]:
        """Yield ``(register, grid_id, rank)`` in the current traversal order."""
        registers = self.registers
        for grid_id, rank in selection(self.mask, self.axis, self.reverse):
            yield registers[grid_id], grid_id, rank

    def pop_atom(self) -> Optional[Token]:
        return self.atoms.pop() if self.atoms else None

    def pop_scalar(self) -> Optional[int]:
        atom = self.pop_atom()
        if atom is None:
            return None
        return parse_leading_int(atom.value)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "registers": [str(reg) for reg in self.registers],
            "mask": f"{self.mask:04x}",
            "axis": self.axis,
            "reverse": self.reverse,
            "instr_ptr": self.instr_ptr,
            "atoms": [f"{atom.type}:{atom.value!r}" for atom in self.atoms],
            "jumps": list(self.jumps),
        }

    def render_grid(self) -> str:
        selected = mask_grid(self.mask)
        lines: List[str] = []
        for row in range(GRID_SIDE):
            cells: List[str] = []
            for col in range(GRID_SIDE):
                reg = self.registers[row * GRID_SIDE + col]
                marker = "*" if selected[row, col] else " "
                cells.append(f"{marker}{str(reg):<14}")
            lines.append(" ".join(cells).rstrip())
        return "\n".join(lines)


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    instr_ptr: int
    kind: str
    line: int
    snapshot: Optional[Dict[str, Any]]


class StateLogger:
    def __init__(self, verbose: bool, history: int = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0

    def record(self, *, instr_ptr: int, token: Token, machine: Machine) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            instr_ptr=instr_ptr,
            kind=token.type,
            line=token.line,
            snapshot=machine.snapshot() if self.verbose else None,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    @property
    def last(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


class StdinWords:
    """Hands out whitespace-delimited words from a text stream, one per call."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream
        self.pending: Deque[str] = deque()

    def __call__(self) -> str:
        stream = self.stream if self.stream is not None else sys.stdin
        if isinstance(stream, io.TextIOWrapper) and stream.errors == "strict":
            # Keep undecodable bytes instead of failing the read.
            stream.reconfigure(errors="surrogateescape")
        while not self.pending:
            line = scrub_text(stream.readline())
            if line == "":
                return ""
            self.pending.extend(line.split())
        return self.pending.popleft()


def _stdout_sink(text: str) -> None:
    sys.stdout.write(text)


Handler = Callable[[Machine, Token, List[Token]], None]


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str,
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[], str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self.source = source
        self.filename = filename if filename.startswith("<") else os.path.abspath(filename)
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.input_provider = input_provider or StdinWords()
        self.output_sink = output_sink or _stdout_sink
        self.logger = StateLogger(verbose=verbose, history=history)
        self.machine = Machine()
        self.code: List[Token] = []
        self._current: Optional[Tuple[int, Token]] = None
        self.handlers: Dict[str, Handler] = self._build_dispatch()

    def _build_dispatch(self) -> Dict[str, Handler]:
        table: Dict[str, Handler] = {}
        for kind in LITERALS:
            table[kind] = self._push_literal
        for index, kind in enumerate(TOGGLE_BITS):
            table[kind] = self._mask_op(lambda mask, i=index: toggle_bit(mask, i))
        for row, kind in enumerate(TOGGLE_ROWS):
            table[kind] = self._mask_op(lambda mask, r=row: toggle_row(mask, r))
        for col, kind in enumerate(TOGGLE_COLS):
            table[kind] = self._mask_op(lambda mask, c=col: toggle_col(mask, c))
        table[TOGGLE_MAT] = self._mask_op(toggle_all)
        table.update(
            {
                MODE_COL: self._mode_col,
                MODE_ROW: self._mode_row,
                ORDER_REV: self._order_rev,
                "POP_ATOM": self._pop_atom,
                "PUSH_ATOM": self._push_atom,
                "WRITE": self._write,
                "WRITE_NEWLINE": self._write_newline,
                "READ": self._read,
                "STR_TO_INT": self._str_to_int,
                "INT_TO_STR": self._int_to_str,
                "ADD": self._scalar_op(lambda v, s: v + s),
                "SUB": self._scalar_op(lambda v, s: v - s),
                "MUL": self._scalar_op(lambda v, s: v * s),
                "DIV": self._scalar_op(trunc_div, zero_skips=True),
                "GRID_ADD": self._positional_op(lambda v, n: v + n, by_rank=False),
                "GRID_SUB": self._positional_op(lambda v, n: v - n, by_rank=False),
                "GRID_MUL": self._positional_op(lambda v, n: v * n, by_rank=False),
                "GRID_DIV": self._positional_op(trunc_div, by_rank=False, zero_skips=True),
                "RANK_ADD": self._positional_op(lambda v, n: v + n, by_rank=True),
                "RANK_SUB": self._positional_op(lambda v, n: v - n, by_rank=True),
                "RANK_MUL": self._positional_op(lambda v, n: v * n, by_rank=True),
                "RANK_DIV": self._positional_op(trunc_div, by_rank=True, zero_skips=True),
                "POP_JMP": self._pop_jmp,
                "POP_JMP_COND": self._pop_jmp_cond,
                "PUSH_JMP": self._push_jmp,
                "SAVE_JMP": self._save_jmp,
                "EQUAL": self._equal,
                "GREQUAL": self._scalar_op(lambda v, s: int(v >= s)),
                "GREATER": self._scalar_op(lambda v, s: int(v > s)),
                "LESS": self._scalar_op(lambda v, s: int(v < s)),
                "LEQUAL": self._scalar_op(lambda v, s: int(v <= s)),
                "AND": self._and,
                "OR": self._or,
                "NOT": self._not,
            }
        )
        return table

    def lex(self) -> List[Token]:
        return Lexer(self.source, self.filename).tokenize()

    def run(self) -> None:
        self.code = self.lex()
        self.execute(self.code)

    def execute(self, code: List[Token]) -> None:
        """Run ``code`` on the current machine until the pointer leaves it."""
        machine = self.machine
        machine.instr_ptr = 0
        self.code = code
        self._current = None
        self._emit_event("program_start", code)
        try:
            while machine.instr_ptr < len(code):
                self.step(code)
        except ExitSignal:
            raise
        except EmatrmRuntimeError as error:
            self._emit_event("on_error", error)
            if self.logger.last is not None:
                error.step_index = self.logger.last.step_index
            raise
        except Exception as exc:
            self._emit_event("on_error", exc)
            # Surface Python-level failures as interpreter errors so the CLI
            # can print them with the step trace.
            instr_ptr, token = self._current if self._current is not None else (None, None)
            wrapped = EmatrmRuntimeError(
                f"Internal interpreter error: {exc}",
                instr_ptr=instr_ptr,
                token=token,
            )
            if self.logger.last is not None:
                wrapped.step_index = self.logger.last.step_index
            raise wrapped from exc
        self._emit_event("program_end", 0)

    def step(self, code: List[Token]) -> None:
        """Fetch the instruction under the pointer, advance, then execute it."""
        machine = self.machine
        instr_ptr = machine.instr_ptr
        token = code[instr_ptr]
        self._current = (instr_ptr, token)
        machine.instr_ptr = instr_ptr + 1
        ctx = StepContext(step_index=self.logger.next_state_index, instr_ptr=instr_ptr, token=token, machine=machine)
        self._emit_event("before_instruction", ctx)
        handler = self.handlers.get(token.type)
        if handler is not None:
            handler(machine, token, code)
        self.logger.record(instr_ptr=instr_ptr, token=token, machine=machine)
        self._emit_event("after_instruction", ctx)
        try:
            self.hook_registry.after_step(self, ctx)
        except (EmatrmRuntimeError, ExitSignal):
            raise
        except Exception as exc:
            raise EmatrmRuntimeError(
                f"Extension step rule failed: {exc}",
                instr_ptr=instr_ptr,
                token=token,
            )

    def _emit_event(self, event: str, payload: Any) -> None:
        try:
            self.hook_registry.emit(event, self, payload)
        except (EmatrmRuntimeError, ExitSignal):
            raise
        except Exception as exc:
            instr_ptr, token = self._current if self._current is not None else (None, None)
            raise EmatrmRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                instr_ptr=instr_ptr,
                token=token,
            )

    # ---- atoms, mask and modes ----

    def _push_literal(self, machine: Machine, token: Token, _: List[Token]) -> None:
        machine.atoms.append(token)

    def _mask_op(self, fn: Callable[[int], int]) -> Handler:
        def apply(machine: Machine, _: Token, __: List[Token]) -> None:
            machine.mask = fn(machine.mask)

        return apply

    def _mode_col(self, machine: Machine, _: Token, __: List[Token]) -> None:
        machine.axis = AXIS_COL

    def _mode_row(self, machine: Machine, _: Token, __: List[Token]) -> None:
        machine.axis = AXIS_ROW

    def _order_rev(self, machine: Machine, _: Token, __: List[Token]) -> None:
        machine.reverse = not machine.reverse

    # ---- register transfer ----

    def _pop_atom(self, machine: Machine, _: Token, __: List[Token]) -> None:
        atom = machine.pop_atom()
        if atom is None:
            return
        for reg, _grid_id, _rank in machine.selected():
            if atom.type == LIT_STR:
                reg.set_text(atom.value)
            elif atom.type == LIT_CH:
                reg.set_int(ord(atom.value))
            else:
                reg.set_int(parse_leading_int(atom.value))

    def _push_atom(self, machine: Machine, _: Token, __: List[Token]) -> None:
        for reg, _grid_id, _rank in machine.selected():
            kind = LIT_NUM if reg.is_int else LIT_STR
            machine.atoms.append(Token(kind, reg.render(), NO_LINE))

    def _write(self, machine: Machine, _: Token, __: List[Token]) -> None:
        for reg, _grid_id, _rank in machine.selected():
            self.output_sink(reg.render())

    def _write_newline(self, machine: Machine, _: Token, __: List[Token]) -> None:
        for reg, _grid_id, _rank in machine.selected():
            self.output_sink(reg.render() + "\n")

    def _read(self, machine: Machine, _: Token, __: List[Token]) -> None:
        self.output_sink(READ_PROMPT)
        text = scrub_text(self.input_provider())
        for reg, _grid_id, _rank in machine.selected():
            reg.set_text(text)

    def _str_to_int(self, machine: Machine, _: Token, __: List[Token]) -> None:
        for reg, _grid_id, _rank in machine.selected():
            if reg.is_text:
                reg.set_int(parse_leading_int(reg.value))  # type: ignore[arg-type]

    def _int_to_str(self, machine: Machine, _: Token, __: List[Token]) -> None:
        for reg, _grid_id, _rank in machine.selected():
            if reg.is_int:
                reg.set_text(reg.render())

    # ---- arithmetic and comparison ----

    def _scalar_op(self, fn: Callable[[int, int], int], *, zero_skips: bool = False) -> Handler:
        def apply(machine: Machine, _: Token, __: List[Token]) -> None:
            scalar = machine.pop_scalar()
            if scalar is None:
                return
            if zero_skips and scalar == 0:
                return
            for reg, _grid_id, _rank in machine.selected():
                if reg.is_int:
                    reg.set_int(fn(reg.value, scalar))  # type: ignore[arg-type]

        return apply

    def _positional_op(self, fn: Callable[[int, int], int], *, by_rank: bool, zero_skips: bool = False) -> Handler:
        def apply(machine: Machine, _: Token, __: List[Token]) -> None:
            for reg, grid_id, rank in machine.selected():
                operand = rank if by_rank else grid_id
                if not reg.is_int or (zero_skips and operand == 0):
                    continue
                reg.set_int(fn(reg.value, operand))  # type: ignore[arg-type]

        return apply

    def _equal(self, machine: Machine, _: Token, __: List[Token]) -> None:
        atom = machine.pop_atom()
        if atom is None:
            return
        for reg, _grid_id, _rank in machine.selected():
            if atom.type == LIT_NUM and reg.is_int:
                reg.set_int(int(reg.value == parse_leading_int(atom.value)))
            elif atom.type == LIT_STR and reg.is_text:
                # Text registers turn into integers holding the result.
                reg.set_int(int(reg.value == atom.value))

    def _and(self, machine: Machine, _: Token, __: List[Token]) -> None:
        # Text registers are skipped, not treated as false.
        all_set = all(reg.value != 0 for reg, _g, _r in machine.selected() if reg.is_int)
        machine.atoms.append(Token(LIT_NUM, "1" if all_set else "0", NO_LINE))

    def _or(self, machine: Machine, _: Token, __: List[Token]) -> None:
        any_set = any(reg.value != 0 for reg, _g, _r in machine.selected() if reg.is_int)
        machine.atoms.append(Token(LIT_NUM, "1" if any_set else "0", NO_LINE))

    def _not(self, machine: Machine, _: Token, __: List[Token]) -> None:
        for reg, _grid_id, _rank in machine.selected():
            if reg.is_int:
                reg.set_int(int(reg.value == 0))

    # ---- jumps ----

    def _pop_jmp(self, machine: Machine, _: Token, code: List[Token]) -> None:
        if not machine.jumps:
            return
        target = machine.jumps.pop()
        if 0 <= target < len(code):
            machine.instr_ptr = target

    def _pop_jmp_cond(self, machine: Machine, _: Token, code: List[Token]) -> None:
        if not machine.jumps or not machine.atoms:
            return
        target = machine.jumps.pop()
        condition = machine.pop_scalar()
        if condition and 0 <= target < len(code):
            machine.instr_ptr = target

    def _push_jmp(self, machine: Machine, _: Token, __: List[Token]) -> None:
        for reg, _grid_id, _rank in machine.selected():
            if reg.is_int:
                machine.jumps.append(reg.value)  # type: ignore[arg-type]

    def _save_jmp(self, machine: Machine, _: Token, __: List[Token]) -> None:
        # The pointer has already moved past this instruction.
        machine.jumps.append(machine.instr_ptr - 1)


class TraceFormatter:
    def __init__(self, interpreter: Interpreter, tail: int = 10) -> None:
        self.interpreter = interpreter
        self.tail = tail

    def recent_entries(self) -> List[StateEntry]:
        entries = list(self.interpreter.logger.entries)
        return entries[-self.tail:] if self.tail > 0 else entries

    def format_text(self, error: Optional[EmatrmError] = None) -> str:
        lines = ["Trace (most recent step last):"]
        for entry in self.recent_entries():
            where = f"line {entry.line}" if entry.line != NO_LINE else "<no line>"
            lines.append(f"  [{entry.state_id}] ip={entry.instr_ptr} {entry.kind} ({where})")
            if entry.snapshot is not None:
                snap = entry.snapshot
                lines.append(
                    f"    mask={snap['mask']} axis={snap['axis']} reverse={snap['reverse']}"
                    f" atoms={len(snap['atoms'])} jumps={len(snap['jumps'])}"
                )
        if self.interpreter.verbose:
            lines.append("Registers (* = selected):")
            lines.extend(f"  {row}" for row in self.interpreter.machine.render_grid().splitlines())
        if error is not None:
            lines.append(f"{error.__class__.__name__}: {getattr(error, 'message', str(error))}")
        return "\n".join(lines)

    def to_json(self, error: Optional[EmatrmError] = None) -> str:
        steps: List[Dict[str, Any]] = []
        for entry in self.recent_entries():
            item: Dict[str, Any] = {
                "step_index": entry.step_index,
                "state_id": entry.state_id,
                "instr_ptr": entry.instr_ptr,
                "kind": entry.kind,
                "line": entry.line,
            }
            if entry.snapshot is not None:
                item["snapshot"] = entry.snapshot
            steps.append(item)
        data: Dict[str, Any] = {
            "trace": steps,
            "machine": self.interpreter.machine.snapshot(),
            "extensions": self.interpreter.services.describe(),
        }
        if error is not None:
            data["error"] = {
                "type": error.__class__.__name__,
                "message": getattr(error, "message", str(error)),
                "failing_step_index": getattr(error, "step_index", None),
            }
        return json.dumps(data, indent=2)
