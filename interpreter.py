from __future__ import annotations
import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from assembler import AssembledProgram, SourceLocation
from codec import CodecError, as_word
from lexer import StackVMError
from opcodes import (
    ADD,
    AND,
    CALL,
    DIV,
    DUP,
    FALSE,
    HALT,
    ISEQ,
    ISGE,
    ISGT,
    JIF,
    JMP,
    LOAD,
    MUL,
    NOT,
    OR,
    POP,
    PRNSTK,
    PUSH,
    RET,
    STORE,
    SUB,
    TRUE,
    in_word_range,
    opcode_name,
)


class ExecutionError(StackVMError):
    """Raised for machine faults while executing a program."""

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        address: Optional[int] = None,
        opcode: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.address = address
        self.opcode = opcode
        self.step_index: Optional[int] = None


class LoadError(ExecutionError):
    """Raised when a program cannot be loaded or started."""


@dataclass
class Frame:
    name: str
    frame_id: str
    return_address: int
    call_site: Optional[int] = None
    variables: Dict[int, int] = field(default_factory=dict)

    def get(self, identifier: int) -> int:
        # Variables that were never stored read as 0.
        if identifier in self.variables:
            return self.variables[identifier]
        return 0

    def set(self, identifier: int, value: int) -> None:
        self.variables[identifier] = value

    def snapshot(self) -> Dict[str, int]:
        return {str(k): v for k, v in sorted(self.variables.items())}

    def describe(self) -> str:
        return f"Frame(name={self.name}, return_address={self.return_address}, variables={self.variables})"


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    address: int
    opcode: int
    mnemonic: str
    source_location: Optional[SourceLocation]
    stack_snapshot: Optional[List[int]]
    frame_snapshot: Optional[Dict[str, int]]


class StateLogger:
    """Bounded log of executed instructions, used to build tracebacks."""

    def __init__(self, verbose: bool, history: int) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        address: int,
        opcode: int,
        location: Optional[SourceLocation],
        stack_snapshot: Optional[List[int]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            address=address,
            opcode=opcode,
            mnemonic=opcode_name(opcode),
            source_location=location,
            stack_snapshot=stack_snapshot,
            frame_snapshot=frame.snapshot() if (self.verbose and frame) else None,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def forget_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)

    @property
    def last_step_index(self) -> Optional[int]:
        return self.entries[-1].step_index if self.entries else None


BinaryOp = Callable[[int, int], int]


def _as_bool(value: int) -> bool:
    return value != 0


def _truth(flag: bool) -> int:
    return TRUE if flag else FALSE


class Interpreter:
    """Fetch-decode-execute loop over a flat word stream.

    Each instance owns its operand stack, call frames, instruction pointer
    and halted flag; nothing is shared between instances.

    Arithmetic results that do not fit in a signed 64-bit word trap instead
    of wrapping. ``div`` truncates toward zero and traps on a zero divisor.
    A taken ``jmp``/``jif``/``call`` to an address outside the program traps
    at the transfer, and ``ret`` from the top-level frame traps as a frame
    underflow.
    """

    def __init__(
        self,
        *,
        verbose: bool = False,
        output_sink: Optional[Callable[[str], None]] = None,
        history: int = 256,
    ) -> None:
        if history <= 0:
            raise ValueError("history must be >= 1")
        self.verbose = verbose
        self.output_sink = output_sink or (lambda text: print(text))
        self.history = history
        self.program: Tuple[int, ...] = ()
        self.source_map: Dict[int, SourceLocation] = {}
        self.labels_by_address: Dict[int, str] = {}
        self.table: Dict[int, Callable[[], None]] = {}
        self._install_instructions()
        self._reset()

    def _reset(self) -> None:
        self.stack: List[int] = []
        self.frame_counter = 0
        self.frames: List[Frame] = [self._new_frame("<top-level>", return_address=0, call_site=None)]
        self.instruction_pointer = 0
        self.halted = False
        self.logger = StateLogger(verbose=self.verbose, history=self.history)

    # ---- Loading ----

    def load(self, words: Iterable[int], source_map: Optional[Dict[int, SourceLocation]] = None) -> None:
        program: List[int] = []
        for index, word in enumerate(words):
            try:
                program.append(as_word(word, index))
            except CodecError as exc:
                raise LoadError(str(exc), kind="BAD_WORD", address=index) from exc
        self.program = tuple(program)
        self.source_map = dict(source_map or {})
        self.labels_by_address = {}
        self._reset()

    def load_assembled(self, assembled: AssembledProgram) -> None:
        self.load(assembled.words, source_map=assembled.source_map)
        self.labels_by_address = {address: name for name, address in assembled.labels.items()}

    # ---- Execution ----

    def run(self) -> None:
        if not self.program:
            self.halted = True
            raise LoadError("Loaded empty program", kind="EMPTY_PROGRAM")
        step = self.step
        try:
            while not self.halted:
                step()
        except StackVMError:
            raise
        except Exception as exc:
            # Surface Python-level faults as machine errors so callers can
            # format them like any other execution failure.
            last = self.logger.entries[-1] if self.logger.entries else None
            wrapped = ExecutionError(
                f"Internal machine error: {exc}",
                kind="INTERNAL",
                address=last.address if last else None,
                opcode=last.opcode if last else None,
            )
            wrapped.step_index = self.logger.last_step_index
            raise wrapped from exc

    def step(self) -> None:
        """Fetch and execute exactly one instruction."""
        if self.halted:
            raise ExecutionError(
                "Processing instruction while halted",
                kind="HALTED",
                address=self.instruction_pointer,
            )
        address = self.instruction_pointer
        opcode: Optional[int] = None
        try:
            opcode = self._next_word()
            self._log_step(address, opcode)
            handler = self.table.get(opcode)
            if handler is None:
                raise ExecutionError(f"Received invalid instruction {opcode}", kind="INVALID_INSTRUCTION")
            handler()
        except ExecutionError as error:
            if error.address is None:
                error.address = address
            if error.opcode is None:
                error.opcode = opcode
            error.step_index = self.logger.last_step_index
            raise

    def pop_result(self) -> int:
        return self._pop()

    @property
    def current_frame(self) -> Frame:
        if not self.frames:
            raise ExecutionError("No active call frame", kind="FRAME_UNDERFLOW")
        return self.frames[-1]

    # ---- Instruction table ----

    def _install_instructions(self) -> None:
        self._register(HALT, self._halt)
        self._register(PUSH, self._push_immediate)
        self._register_binary(ADD, lambda a, b: a + b)
        self._register_binary(SUB, lambda a, b: a - b)
        self._register_binary(MUL, lambda a, b: a * b)
        self._register_binary(DIV, self._truncating_div)
        self._register_binary(ISEQ, lambda a, b: _truth(a == b))
        self._register_binary(ISGT, lambda a, b: _truth(a > b))
        self._register_binary(ISGE, lambda a, b: _truth(a >= b))
        self._register_binary(AND, lambda a, b: _truth(_as_bool(a) and _as_bool(b)))
        self._register_binary(OR, lambda a, b: _truth(_as_bool(a) or _as_bool(b)))
        self._register(NOT, self._not)
        self._register(POP, self._discard)
        self._register(DUP, self._dup)
        self._register(JMP, self._jmp)
        self._register(JIF, self._jif)
        self._register(LOAD, self._load)
        self._register(STORE, self._store)
        self._register(CALL, self._call)
        self._register(RET, self._ret)
        self._register(PRNSTK, self._prnstk)

    def _register(self, opcode: int, handler: Callable[[], None]) -> None:
        self.table[opcode] = handler

    def _register_binary(self, opcode: int, func: BinaryOp) -> None:
        name = opcode_name(opcode)

        def impl() -> None:
            # Reverse polish: the right operand is on top.
            right = self._pop()
            left = self._pop()
            self._push(self._checked(func(left, right), name))

        self.table[opcode] = impl

    # ---- Instruction implementations ----

    def _halt(self) -> None:
        self.halted = True

    def _push_immediate(self) -> None:
        self._push(self._next_word())

    def _not(self) -> None:
        self._push(_truth(not _as_bool(self._pop())))

    def _discard(self) -> None:
        self._pop()

    def _dup(self) -> None:
        value = self._pop()
        self._push(value)
        self._push(value)

    def _jmp(self) -> None:
        self._transfer(self._next_word(), "JMP")

    def _jif(self) -> None:
        condition = self._pop()
        target = self._next_word()
        if _as_bool(condition):
            self._transfer(target, "JIF")

    def _load(self) -> None:
        identifier = self._next_word()
        self._push(self.current_frame.get(identifier))

    def _store(self) -> None:
        identifier = self._next_word()
        value = self._pop()
        self.current_frame.set(identifier, value)

    def _call(self) -> None:
        call_site = self.instruction_pointer - 1
        target = self._next_word()
        self._check_target(target, "CALL")
        name = self.labels_by_address.get(target, f"<fn@{target}>")
        self.frames.append(self._new_frame(name, return_address=self.instruction_pointer, call_site=call_site))
        self.instruction_pointer = target

    def _ret(self) -> None:
        if len(self.frames) <= 1:
            raise ExecutionError("Return with no active call frame", kind="FRAME_UNDERFLOW")
        frame = self.frames.pop()
        self.logger.forget_frame(frame.frame_id)
        self.instruction_pointer = frame.return_address

    def _prnstk(self) -> None:
        self.output_sink(self.current_frame.describe())
        self.output_sink(str(self.stack))

    # ---- Helpers ----

    def _truncating_div(self, left: int, right: int) -> int:
        if right == 0:
            raise ExecutionError("Division by zero", kind="DIVISION_BY_ZERO")
        quotient = abs(left) // abs(right)
        return quotient if (left < 0) == (right < 0) else -quotient

    def _checked(self, value: int, rule: str) -> int:
        if not in_word_range(value):
            raise ExecutionError(f"Integer overflow in {rule}: {value} does not fit in 64 bits", kind="OVERFLOW")
        return value

    def _check_target(self, target: int, rule: str) -> None:
        if not 0 <= target < len(self.program):
            raise ExecutionError(
                f"{rule} target {target} is outside the program (0..{len(self.program) - 1})",
                kind="BAD_TARGET",
            )

    def _transfer(self, target: int, rule: str) -> None:
        self._check_target(target, rule)
        self.instruction_pointer = target

    def _next_word(self) -> int:
        pointer = self.instruction_pointer
        if not 0 <= pointer < len(self.program):
            raise ExecutionError(f"Program tried to load out of bounds word at {pointer}.", kind="OUT_OF_BOUNDS")
        self.instruction_pointer = pointer + 1
        return self.program[pointer]

    def _push(self, value: int) -> None:
        self.stack.append(value)

    def _pop(self) -> int:
        if not self.stack:
            raise ExecutionError("Tried to pop empty stack.", kind="STACK_UNDERFLOW")
        return self.stack.pop()

    def _new_frame(self, name: str, *, return_address: int, call_site: Optional[int]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, return_address=return_address, call_site=call_site)

    def _log_step(self, address: int, opcode: int) -> None:
        frame = self.frames[-1] if self.frames else None
        self.logger.record(
            frame=frame,
            address=address,
            opcode=opcode,
            location=self.source_map.get(address),
            stack_snapshot=list(self.stack) if self.verbose else None,
        )


@dataclass
class TracebackFrame:
    name: str
    address: Optional[int]
    location: Optional[SourceLocation]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.frames:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            address = entry.address if entry else frame.call_site
            location = entry.source_location if entry else None
            if location is None and address is not None:
                location = self.interpreter.source_map.get(address)
            frames.append(TracebackFrame(name=frame.name, address=address, location=location, state_entry=entry))
        return frames

    def format_text(self, error: ExecutionError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
                lines.append(f"    {frame.location.statement}")
            elif frame.address is not None:
                lines.append(f"  <address {frame.address}> in {frame.name}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            entry = frame.state_entry
            if entry:
                lines.append(
                    f"    Address: {entry.address}  Opcode: {entry.mnemonic}  "
                    f"State log index: {entry.step_index}  State id: {entry.state_id}"
                )
                if verbose and entry.stack_snapshot is not None:
                    lines.append(f"    Stack: {entry.stack_snapshot}")
                if verbose and entry.frame_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v}" for k, v in entry.frame_snapshot.items())
                    lines.append(f"    Frame snapshot: {snapshot}")
        where = ""
        if error.address is not None:
            where = f" at address {error.address}"
            if error.opcode is not None:
                where += f" ({opcode_name(error.opcode)})"
        lines.append(f"{error.__class__.__name__}: {error.message}{where} (kind: {error.kind})")
        return "\n".join(lines)

    def to_json(self, error: ExecutionError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name, "address": frame.address}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                entry["opcode"] = frame.state_entry.mnemonic
                if frame.state_entry.stack_snapshot is not None:
                    entry["stack_snapshot"] = frame.state_entry.stack_snapshot
                if frame.state_entry.frame_snapshot is not None:
                    entry["frame_snapshot"] = frame.state_entry.frame_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "kind": error.kind,
                "message": error.message,
                "address": error.address,
                "opcode": None if error.opcode is None else opcode_name(error.opcode),
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
