from __future__ import annotations
import copy
import json
import logging
import math
import numpy as np
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from lexer import MiniPyError, tokenize
from natives import KIND_COMMAND, HookRegistry, NativeFunction, NativeRegistry, RuntimeServices, StepContext
from parser import (
    ArrayLiteral,
    Assignment,
    AugmentedAssignment,
    BinaryOp,
    BreakStatement,
    BuiltinCall,
    CallExpression,
    ContinueStatement,
    Expression,
    ExpressionStatement,
    ForEachStatement,
    ForRangeStatement,
    FuncDef,
    Identifier,
    IfStatement,
    IndexAssignment,
    IndexExpression,
    LengthExpression,
    Literal,
    MemberAssignment,
    MemberExpression,
    ObjectLiteral,
    PassStatement,
    Program,
    RandintExpression,
    RandomExpression,
    RepeatStatement,
    ReturnStatement,
    SliceExpression,
    SourceLocation,
    Statement,
    UnaryOp,
    WhileStatement,
    parse,
)
from values import (
    TYPE_ARR,
    TYPE_BOOL,
    TYPE_FUNC,
    TYPE_NUM,
    TYPE_OBJ,
    TYPE_STR,
    Function,
    Value,
    array,
    as_index,
    boolean,
    display,
    from_python,
    is_truthy,
    none_value,
    number,
    obj,
    render,
    string,
    type_name,
    values_equal,
)


logger = logging.getLogger("minipython.vm")
logger.addHandler(logging.NullHandler())

STATUS_READY = "ready"
STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_ERRORED = "errored"

FRAME_PROGRAM = "program"
FRAME_BLOCK = "block"
FRAME_LOOP = "loop"
FRAME_FUNCTION = "function"

MAIN_FRAME_NAME = "<main>"
MAX_STRING_LENGTH = 10_000_000
RESULT_NAME = "<result>"


class MiniPyRuntimeError(MiniPyError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        line: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.line = line if line is not None else (location.line if location else None)
        self.step_index: Optional[int] = None

    def __str__(self) -> str:
        if self.line is None:
            return self.message
        return f"{self.message} (line {self.line})"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "RuntimeError", "message": self.message, "line": self.line}


class _CallRequest(Exception):
    """Raised while evaluating a unit that must first enter a user function."""

    def __init__(self, function: Function, args: List[Value], location: SourceLocation) -> None:
        super().__init__(function.name)
        self.function = function
        self.args = args
        self.location = location


class _Unbound:
    def __repr__(self) -> str:
        return "unbound"

    __str__ = __repr__


# Reported for watched names that have no binding in the current scope.
UNBOUND = _Unbound()


@dataclass(eq=False)
class Environment:
    parent: Optional["Environment"] = None
    values: Dict[str, Value] = field(default_factory=dict)

    def _find_env(self, name: str) -> Optional["Environment"]:
        env: Optional[Environment] = self
        while env is not None:
            if name in env.values:
                return env
            env = env.parent
        return None

    def set(self, name: str, value: Value) -> None:
        # Assignment always binds in this scope; outer scopes are read-only.
        self.values[name] = value

    def get(self, name: str, location: Optional[SourceLocation] = None) -> Value:
        env = self._find_env(name)
        if env is not None:
            return env.values[name]
        raise MiniPyRuntimeError(f"Undefined variable '{name}'", location=location)

    def get_optional(self, name: str) -> Optional[Value]:
        env = self._find_env(name)
        if env is not None:
            return env.values[name]
        return None

    def snapshot(self) -> Dict[str, str]:
        return {name: render(value) for name, value in self.values.items()}


@dataclass(eq=False)
class Frame:
    """One entry of the explicit execution stack.

    ``body`` is the Program or Block being walked and ``cursor`` the index of
    the next statement in it. A loop frame whose cursor has run past the end
    is waiting for its condition re-check. ``journal`` holds the results of
    calls already made by the unit at the cursor, so that re-running the unit
    after a user function returns does not repeat them.
    """

    kind: str
    body: Any
    env: Environment
    frame_id: str
    name: str = MAIN_FRAME_NAME
    node: Optional[Statement] = None
    call_location: Optional[SourceLocation] = None
    cursor: int = 0
    loop_state: Dict[str, Any] = field(default_factory=dict)
    journal: List[Value] = field(default_factory=list)

    @property
    def statements(self) -> List[Statement]:
        return self.body.statements

    def unit_line(self) -> Optional[int]:
        statements = self.body.statements
        if self.cursor < len(statements):
            return statements[self.cursor].location.line
        if self.kind == FRAME_LOOP and self.node is not None:
            return self.node.location.line
        return None


@dataclass(frozen=True)
class StepResult:
    current_line: Optional[int]
    done: bool
    # (command name, arguments) for every native command run during the step.
    actions: Tuple[Tuple[str, Tuple[Value, ...]], ...] = ()

    @property
    def action(self) -> Optional[str]:
        return self.actions[0][0] if self.actions else None

    @property
    def action_args(self) -> Tuple[Value, ...]:
        return self.actions[0][1] if self.actions else ()


@dataclass(frozen=True)
class BreakpointResult:
    result: StepResult
    hit_breakpoint: bool


@dataclass(frozen=True)
class CallStackEntry:
    name: str
    line: Optional[int]
    locals: Dict[str, Value]


@dataclass(frozen=True)
class ExecutionVisualization:
    current_line: Optional[int]
    current_statement: Optional[str]
    variables: Dict[str, Value]
    watched_variables: Dict[str, Any]
    call_stack: List[CallStackEntry]
    can_step_back: bool
    history_length: int
    breakpoints: List[int]
    status: str
    output: List[str]


@dataclass(frozen=True)
class Snapshot:
    frames: List[Frame]
    globals: Environment
    status: str
    step_count: int
    frame_counter: int
    output_length: int
    rng_state: Dict[str, Any]
    log_length: int


@dataclass
class VMOptions:
    max_steps: int = 100000
    max_history: int = 1000
    max_call_depth: int = 200
    seed: Optional[int] = None
    verbose: bool = False


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]
    rule: str


class StepLog:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        rule: str,
    ) -> StateEntry:
        step_index = len(self.entries) + 1
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=location.statement if location else None,
            env_snapshot=frame.env.snapshot() if (self.verbose and frame) else None,
            rule=rule,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        return entry

    def truncate(self, length: int) -> None:
        if length >= len(self.entries):
            return
        del self.entries[length:]
        self.frame_last_entry = {}
        for entry in self.entries:
            if entry.frame_id is not None:
                self.frame_last_entry[entry.frame_id] = entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)


BuiltinImpl = Callable[["VM", List[Value], SourceLocation], Value]


@dataclass(frozen=True)
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl

    def validate(self, supplied: int, location: SourceLocation) -> None:
        if supplied < self.min_args:
            raise MiniPyRuntimeError(f"{self.name}() expects at least {self.min_args} arguments but got {supplied}", location=location)
        if self.max_args is not None and supplied > self.max_args:
            raise MiniPyRuntimeError(f"{self.name}() expects at most {self.max_args} arguments but got {supplied}", location=location)


def _expect_number(value: Value, rule: str, location: SourceLocation) -> float:
    if value.type != TYPE_NUM:
        raise MiniPyRuntimeError(f"{rule} expects a number but got {type_name(value)}", location=location)
    return value.value


def _expect_int(value: Value, rule: str, location: SourceLocation) -> int:
    index = as_index(value)
    if index is None:
        raise MiniPyRuntimeError(f"{rule} expects an integer but got {render(value)}", location=location)
    return index


def _expect_str(value: Value, rule: str, location: SourceLocation) -> str:
    if value.type != TYPE_STR:
        raise MiniPyRuntimeError(f"{rule} expects a string but got {type_name(value)}", location=location)
    return value.value


def _expect_array(value: Value, rule: str, location: SourceLocation) -> List[Value]:
    if value.type != TYPE_ARR:
        raise MiniPyRuntimeError(f"{rule} expects an array but got {type_name(value)}", location=location)
    return value.value


def _power(base: float, exponent: float, location: SourceLocation) -> float:
    try:
        return math.pow(base, exponent)
    except ZeroDivisionError:
        raise MiniPyRuntimeError("Zero can not be raised to a negative power", location=location)
    except ValueError:
        raise MiniPyRuntimeError(f"Can not raise {base:g} to the power {exponent:g}", location=location)
    except OverflowError:
        raise MiniPyRuntimeError("Number too large", location=location)


def _round_half_up(x: float, digits: int, location: SourceLocation) -> float:
    try:
        factor = 10.0 ** digits
    except OverflowError:
        factor = math.inf
    scaled = x * factor
    if factor == 0 or not math.isfinite(scaled):
        raise MiniPyRuntimeError(f"round() can not round {x:g} to {digits} digits", location=location)
    return math.floor(scaled + 0.5) / factor


def _parse_number_text(text: str, rule: str, location: SourceLocation) -> float:
    try:
        parsed = float(text.strip())
    except ValueError:
        raise MiniPyRuntimeError(f"{rule} can not convert \"{text}\" to a number", location=location)
    if not math.isfinite(parsed):
        raise MiniPyRuntimeError(f"{rule} can not convert \"{text}\" to a number", location=location)
    return parsed


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        # Statement forms resolved by the parser.
        self._register(("print",), 0, None, self._print)
        self._register(("append",), 2, 2, self._append)
        self._register(("pop",), 1, 2, self._pop)
        self._register(("insert",), 3, 3, self._insert)
        # Library functions, English name first.
        self._register(("abs", "绝对值"), 1, 1, self._abs)
        self._register(("min", "最小值"), 1, None, self._min)
        self._register(("max", "最大值"), 1, None, self._max)
        self._register(("sum", "求和"), 1, 1, self._sum)
        self._register(("round", "四舍五入"), 1, 2, self._round)
        self._register(("sqrt", "平方根"), 1, 1, self._sqrt)
        self._register(("pow", "幂"), 2, 2, self._pow)
        self._register(("int", "整数"), 1, 1, self._int)
        self._register(("float", "浮点数"), 1, 1, self._float)
        self._register(("str", "字符串"), 1, 1, self._str)
        self._register(("upper", "大写"), 1, 1, self._upper)
        self._register(("lower", "小写"), 1, 1, self._lower)
        self._register(("split", "分割"), 1, 2, self._split)
        self._register(("join", "连接"), 1, 2, self._join)
        self._register(("strip", "去空格"), 1, 1, self._strip)
        self._register(("replace", "替换"), 3, 3, self._replace)
        self._register(("find", "查找"), 2, 2, self._find)
        self._register(("startswith", "以开头"), 2, 2, self._startswith)
        self._register(("endswith", "以结尾"), 2, 2, self._endswith)
        self._register(("sort", "排序"), 1, 1, self._sort)
        self._register(("reverse", "反转"), 1, 1, self._reverse)
        self._register(("index", "索引"), 2, 2, self._index)
        self._register(("count", "计数"), 2, 2, self._count)
        self._register(("clear", "清空"), 1, 1, self._clear)

    def _register(
        self,
        names: Sequence[str],
        min_args: int,
        max_args: Optional[int],
        impl: BuiltinImpl,
    ) -> None:
        builtin = BuiltinFunction(name=names[0], min_args=min_args, max_args=max_args, impl=impl)
        for name in names:
            self.table[name] = builtin

    def has(self, name: str) -> bool:
        return name in self.table

    def invoke(self, vm: "VM", name: str, args: List[Value], location: SourceLocation) -> Value:
        builtin = self.table.get(name)
        if builtin is None:
            raise MiniPyRuntimeError(f"Undefined function '{name}'", location=location)
        builtin.validate(len(args), location)
        return builtin.impl(vm, args, location)

    # ---- statement forms ----

    def _print(self, vm: "VM", args: List[Value], location: SourceLocation) -> Value:
        vm._write_output(" ".join(display(arg) for arg in args))
        return none_value()

    def _append(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        _expect_array(args[0], "append()", location).append(args[1])
        return none_value()

    def _pop(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        items = _expect_array(args[0], "pop()", location)
        if not items:
            raise MiniPyRuntimeError("pop() from an empty array", location=location)
        index = _expect_int(args[1], "pop()", location) if len(args) == 2 else -1
        if not -len(items) <= index < len(items):
            raise MiniPyRuntimeError(f"pop() index {index} out of range", location=location)
        return items.pop(index)

    def _insert(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        items = _expect_array(args[0], "insert()", location)
        index = _expect_int(args[1], "insert()", location)
        if not 0 <= index <= len(items):
            raise MiniPyRuntimeError(f"insert() index {index} out of range 0..{len(items)}", location=location)
        items.insert(index, args[2])
        return none_value()

    # ---- numbers ----

    def _abs(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        return number(abs(_expect_number(args[0], "abs()", location)))

    def _numbers_for_extreme(self, rule: str, args: List[Value], location: SourceLocation) -> List[float]:
        items = args[0].value if len(args) == 1 and args[0].type == TYPE_ARR else args
        if not items:
            raise MiniPyRuntimeError(f"{rule} of an empty array", location=location)
        return [_expect_number(item, rule, location) for item in items]

    def _min(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        return number(min(self._numbers_for_extreme("min()", args, location)))

    def _max(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        return number(max(self._numbers_for_extreme("max()", args, location)))

    def _sum(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        items = _expect_array(args[0], "sum()", location)
        return number(math.fsum(_expect_number(item, "sum()", location) for item in items))

    def _round(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        x = _expect_number(args[0], "round()", location)
        digits = _expect_int(args[1], "round()", location) if len(args) == 2 else 0
        if not math.isfinite(x):
            return number(x)
        return number(_round_half_up(x, digits, location))

    def _sqrt(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        x = _expect_number(args[0], "sqrt()", location)
        if x < 0:
            raise MiniPyRuntimeError("sqrt() of a negative number", location=location)
        return number(math.sqrt(x))

    def _pow(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        base = _expect_number(args[0], "pow()", location)
        exponent = _expect_number(args[1], "pow()", location)
        return number(_power(base, exponent, location))

    # ---- conversions ----

    def _int(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        x = args[0]
        if x.type == TYPE_NUM:
            if not math.isfinite(x.value):
                raise MiniPyRuntimeError("int() can not convert an infinite number", location=location)
            return number(math.trunc(x.value))
        if x.type == TYPE_STR:
            return number(math.trunc(_parse_number_text(x.value, "int()", location)))
        if x.type == TYPE_BOOL:
            return number(1 if x.value else 0)
        raise MiniPyRuntimeError(f"int() can not convert {type_name(x)}", location=location)

    def _float(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        x = args[0]
        if x.type == TYPE_NUM:
            return x
        if x.type == TYPE_STR:
            return number(_parse_number_text(x.value, "float()", location))
        if x.type == TYPE_BOOL:
            return number(1.0 if x.value else 0.0)
        raise MiniPyRuntimeError(f"float() can not convert {type_name(x)}", location=location)

    def _str(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        return string(display(args[0]))

    # ---- strings ----

    def _upper(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        return string(_expect_str(args[0], "upper()", location).upper())

    def _lower(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        return string(_expect_str(args[0], "lower()", location).lower())

    def _split(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        text = _expect_str(args[0], "split()", location)
        if len(args) == 1:
            return array([string(part) for part in text.split()])
        separator = _expect_str(args[1], "split()", location)
        if separator == "":
            raise MiniPyRuntimeError("split() separator can not be empty", location=location)
        return array([string(part) for part in text.split(separator)])

    def _join(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        items = _expect_array(args[0], "join()", location)
        separator = display(args[1]) if len(args) == 2 else ""
        return string(separator.join(display(item) for item in items))

    def _strip(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        return string(_expect_str(args[0], "strip()", location).strip())

    def _replace(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        text = _expect_str(args[0], "replace()", location)
        old = _expect_str(args[1], "replace()", location)
        new = _expect_str(args[2], "replace()", location)
        return string(text.replace(old, new))

    def _find(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        text = _expect_str(args[0], "find()", location)
        return number(text.find(_expect_str(args[1], "find()", location)))

    def _startswith(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        text = _expect_str(args[0], "startswith()", location)
        return boolean(text.startswith(_expect_str(args[1], "startswith()", location)))

    def _endswith(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        text = _expect_str(args[0], "endswith()", location)
        return boolean(text.endswith(_expect_str(args[1], "endswith()", location)))

    # ---- arrays ----

    def _sort(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        items = _expect_array(args[0], "sort()", location)
        kinds = {item.type for item in items}
        if kinds and kinds != {TYPE_NUM} and kinds != {TYPE_STR}:
            raise MiniPyRuntimeError("sort() needs an array of only numbers or only strings", location=location)
        items.sort(key=lambda item: item.value)
        return none_value()

    def _reverse(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        _expect_array(args[0], "reverse()", location).reverse()
        return none_value()

    def _index(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        items = _expect_array(args[0], "index()", location)
        for position, item in enumerate(items):
            if values_equal(item, args[1]):
                return number(position)
        return number(-1)

    def _count(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        items = _expect_array(args[0], "count()", location)
        return number(sum(1 for item in items if values_equal(item, args[1])))

    def _clear(self, _: "VM", args: List[Value], location: SourceLocation) -> Value:
        _expect_array(args[0], "clear()", location).clear()
        return none_value()


class VM:
    """Stepwise, reversible interpreter over a parsed Program.

    Execution state is an explicit stack of ``Frame`` objects. ``step()``
    runs exactly one unit (a simple statement, a loop condition check, or the
    entry into a user function) after saving a ``Snapshot`` that
    ``step_back()`` can restore.
    """

    def __init__(
        self,
        *,
        natives: Optional[NativeRegistry] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        output_truncate: Optional[Callable[[int], None]] = None,
        options: Optional[VMOptions] = None,
        services: Optional[RuntimeServices] = None,
    ) -> None:
        self.services = services or RuntimeServices()
        self.natives: NativeRegistry = natives if natives is not None else self.services.natives
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.output_sink = output_sink or (lambda text: None)
        self.output_truncate = output_truncate
        self.options = options or VMOptions()
        self.builtins = Builtins()
        self.rng = np.random.default_rng(self.options.seed)

        # Breakpoints and watches survive reset() and load().
        self.breakpoints: set = set()
        self.watches: List[str] = []
        self.history: Deque[Snapshot] = deque(maxlen=max(0, self.options.max_history))

        self.program: Optional[Program] = None
        self._reset_state()

    def _reset_state(self) -> None:
        self.frames: List[Frame] = []
        self.globals = Environment()
        self.status = STATUS_READY
        self.error: Optional[MiniPyRuntimeError] = None
        self.step_count = 0
        self.frame_counter = 0
        self.output: List[str] = []
        self.log = StepLog(verbose=self.options.verbose)
        self.history.clear()
        self._actions: List[Tuple[str, Tuple[Value, ...]]] = []
        self._journal: List[Value] = []
        self._journal_pos = 0

    # ---- loading ----

    def load(self, program: Program, global_env: Optional[Environment] = None) -> None:
        """Prepare ``program`` for stepping.

        ``global_env`` lets a REPL keep its bindings across loads; by default
        every load starts from an empty global scope.
        """
        self.program = program
        self._reset_state()
        if global_env is not None:
            self.globals = global_env
        self.frames.append(self._new_frame(FRAME_PROGRAM, program, self.globals))
        logger.debug("Loaded program with %d top-level statements", len(program.statements))
        self._emit_event("program_load", self, program)

    def reset(self) -> None:
        if self.program is None:
            self._reset_state()
            return
        self.load(self.program)

    def set_global(self, name: str, value: Any) -> None:
        self.globals.set(name, from_python(value))

    def get_global(self, name: str) -> Optional[Value]:
        return self.globals.values.get(name)

    # ---- execution control ----

    def step(self) -> StepResult:
        if self.program is None or self.status in (STATUS_DONE, STATUS_ERRORED):
            return StepResult(current_line=self.get_current_line(), done=True)

        try:
            self._save_snapshot()
            self.status = STATUS_RUNNING
            self.step_count += 1
            self._actions = []
            if self.step_count > self.options.max_steps:
                raise MiniPyRuntimeError(
                    "Too many steps, the program may contain an infinite loop",
                    line=self._unit_line(),
                )
            self._settle()
            if self.frames:
                self._execute_unit()
                self._settle()
            if not self.frames:
                self.status = STATUS_DONE
                self._emit_event("program_end", self)
        except MiniPyRuntimeError as error:
            self._fail(error)
            raise
        except RecursionError:
            error = MiniPyRuntimeError("Expression nested too deeply", line=self._unit_line())
            self._fail(error)
            raise error
        except (ArithmeticError, ValueError, MemoryError) as exc:
            error = MiniPyRuntimeError(f"{type(exc).__name__}: {exc}", line=self._unit_line())
            self._fail(error)
            raise error from exc
        return StepResult(
            current_line=self.get_current_line(),
            done=self.status == STATUS_DONE,
            actions=tuple(self._actions),
        )

    def run(self) -> StepResult:
        while True:
            result = self.step()
            if result.done:
                return result

    def run_all(self) -> List[StepResult]:
        """Run to completion and return every step result, for hosts that replay an animation."""
        results: List[StepResult] = []
        while True:
            result = self.step()
            results.append(result)
            if result.done:
                return results

    def run_until_breakpoint(self) -> BreakpointResult:
        """Step until the line about to execute carries a breakpoint.

        The check happens before every step, so a breakpoint on the line the
        VM is already paused at stops immediately; use ``continue_execution``
        to move past it.
        """
        result = StepResult(current_line=self.get_current_line(), done=self._finished())
        while not result.done:
            line = self._unit_line()
            if line is not None and line in self.breakpoints:
                logger.debug("Breakpoint hit at line %d", line)
                return BreakpointResult(result=StepResult(line, False), hit_breakpoint=True)
            result = self.step()
        return BreakpointResult(result=result, hit_breakpoint=False)

    def continue_execution(self) -> BreakpointResult:
        start_line = self._unit_line()
        result = StepResult(current_line=self.get_current_line(), done=self._finished())
        # Leave the line we are paused on before looking for the next breakpoint.
        while not result.done and start_line is not None and self._unit_line() == start_line:
            result = self.step()
        if result.done:
            return BreakpointResult(result=result, hit_breakpoint=False)
        return self.run_until_breakpoint()

    def _finished(self) -> bool:
        return self.program is None or self.status in (STATUS_DONE, STATUS_ERRORED)

    def step_back(self) -> bool:
        if not self.history:
            return False
        self._restore(self.history.pop())
        return True

    # ---- state access ----

    def get_status(self) -> str:
        return self.status

    def get_error(self) -> Optional[MiniPyRuntimeError]:
        return self.error

    def get_output(self) -> List[str]:
        return list(self.output)

    def get_current_line(self) -> Optional[int]:
        if self.status in (STATUS_READY, STATUS_DONE):
            return None
        return self._unit_line()

    def get_variables(self) -> Dict[str, Value]:
        return dict(self._current_env().values)

    def get_call_stack_for_visualization(self) -> List[CallStackEntry]:
        function_frames = [frame for frame in self.frames if frame.kind == FRAME_FUNCTION]
        if function_frames:
            main_line = function_frames[0].call_location.line if function_frames[0].call_location else None
        else:
            main_line = self.get_current_line()
        entries = [CallStackEntry(name=MAIN_FRAME_NAME, line=main_line, locals=dict(self.globals.values))]
        for frame in function_frames:
            entries.append(
                CallStackEntry(
                    name=frame.name,
                    line=frame.call_location.line if frame.call_location else None,
                    locals=dict(frame.env.values),
                )
            )
        return entries

    def get_execution_visualization(self) -> ExecutionVisualization:
        line = self.get_current_line()
        statement: Optional[str] = None
        if line is not None and self.frames:
            top = self.frames[-1]
            node = top.statements[top.cursor] if top.cursor < len(top.statements) else top.node
            statement = node.location.statement if node is not None else None
        return ExecutionVisualization(
            current_line=line,
            current_statement=statement,
            variables=self.get_variables(),
            watched_variables=self.get_watched_values(),
            call_stack=self.get_call_stack_for_visualization(),
            can_step_back=bool(self.history),
            history_length=len(self.history),
            breakpoints=self.get_breakpoints(),
            status=self.status,
            output=self.get_output(),
        )

    def evaluate_expression(self, source: str) -> Value:
        """Evaluate ``source`` against the current bindings without touching this VM.

        Runs on a scratch VM that shares the native registry, so sensors work,
        but output, history and random state stay untouched.
        """
        program = compile_source(source)
        if len(program.statements) != 1 or not isinstance(program.statements[0], ExpressionStatement):
            raise MiniPyRuntimeError("evaluate_expression expects a single expression", line=1)
        expr = program.statements[0].expression
        wrapper = Program(
            location=program.location,
            statements=[Assignment(location=expr.location, target=RESULT_NAME, expression=expr)],
        )
        scratch = VM(
            natives=self.natives,
            options=VMOptions(
                max_steps=self.options.max_steps,
                max_history=0,
                max_call_depth=self.options.max_call_depth,
            ),
        )
        scratch.load(wrapper)
        bindings = dict(self.globals.values)
        bindings.update(self._current_env().values)
        scratch.globals.values.update(copy.deepcopy(bindings))
        scratch.run()
        return scratch.globals.values[RESULT_NAME]

    # ---- breakpoints ----

    def add_breakpoint(self, line: int) -> None:
        self.breakpoints.add(int(line))

    def remove_breakpoint(self, line: int) -> None:
        self.breakpoints.discard(int(line))

    def toggle_breakpoint(self, line: int) -> bool:
        line = int(line)
        if line in self.breakpoints:
            self.breakpoints.discard(line)
            return False
        self.breakpoints.add(line)
        return True

    def clear_breakpoints(self) -> None:
        self.breakpoints.clear()

    def get_breakpoints(self) -> List[int]:
        return sorted(self.breakpoints)

    def has_breakpoint(self, line: int) -> bool:
        return int(line) in self.breakpoints

    # ---- watches ----

    def add_watch(self, name: str) -> None:
        if name not in self.watches:
            self.watches.append(name)

    def remove_watch(self, name: str) -> None:
        if name in self.watches:
            self.watches.remove(name)

    def clear_watches(self) -> None:
        self.watches.clear()

    def get_watch_list(self) -> List[str]:
        return list(self.watches)

    def get_watched_values(self) -> Dict[str, Any]:
        env = self._current_env()
        watched: Dict[str, Any] = {}
        for name in self.watches:
            value = env.get_optional(name)
            watched[name] = UNBOUND if value is None else value
        return watched

    # ---- history ----

    def get_history_length(self) -> int:
        return len(self.history)

    def clear_history(self) -> None:
        self.history.clear()

    def set_max_history_size(self, size: int) -> None:
        size = max(0, int(size))
        self.options.max_history = size
        # deque keeps the newest entries when shrinking.
        self.history = deque(self.history, maxlen=size)

    def _save_snapshot(self) -> None:
        if self.history.maxlen == 0:
            return
        # One deepcopy call keeps aliasing between frames, scopes and values intact.
        try:
            frames, global_env = copy.deepcopy((self.frames, self.globals))
        except RecursionError:
            raise MiniPyRuntimeError("Value nested too deeply to record for step back", line=self._unit_line())
        self.history.append(
            Snapshot(
                frames=frames,
                globals=global_env,
                status=self.status,
                step_count=self.step_count,
                frame_counter=self.frame_counter,
                output_length=len(self.output),
                rng_state=copy.deepcopy(self.rng.bit_generator.state),
                log_length=len(self.log.entries),
            )
        )

    def _restore(self, snapshot: Snapshot) -> None:
        self.frames = snapshot.frames
        self.globals = snapshot.globals
        self.status = snapshot.status
        self.error = None
        self.step_count = snapshot.step_count
        self.frame_counter = snapshot.frame_counter
        self.rng.bit_generator.state = snapshot.rng_state
        self.log.truncate(snapshot.log_length)
        if len(self.output) > snapshot.output_length:
            del self.output[snapshot.output_length:]
            if self.output_truncate is not None:
                self.output_truncate(snapshot.output_length)

    # ---- frame machine ----

    def _new_frame(
        self,
        kind: str,
        body: Any,
        env: Environment,
        *,
        name: str = MAIN_FRAME_NAME,
        node: Optional[Statement] = None,
        call_location: Optional[SourceLocation] = None,
        loop_state: Optional[Dict[str, Any]] = None,
    ) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(
            kind=kind,
            body=body,
            env=env,
            frame_id=frame_id,
            name=name,
            node=node,
            call_location=call_location,
            loop_state=loop_state or {},
        )

    def _push_block(self, frame: Frame, body: Any) -> None:
        if body.statements:
            self.frames.append(self._new_frame(FRAME_BLOCK, body, frame.env, name=frame.name))

    def _push_loop(self, frame: Frame, statement: Statement, body: Any, loop_state: Dict[str, Any]) -> None:
        self.frames.append(
            self._new_frame(FRAME_LOOP, body, frame.env, name=frame.name, node=statement, loop_state=loop_state)
        )

    def _current_env(self) -> Environment:
        return self.frames[-1].env if self.frames else self.globals

    def _unit_line(self) -> Optional[int]:
        if not self.frames:
            return None
        return self.frames[-1].unit_line()

    def _settle(self) -> None:
        # Pop frames with nothing left to run; these transitions cost no step.
        while self.frames:
            frame = self.frames[-1]
            if frame.cursor < len(frame.statements) or frame.kind == FRAME_LOOP:
                return
            self.frames.pop()
            if frame.kind == FRAME_FUNCTION:
                self._deliver_return(frame, none_value())

    def _execute_unit(self) -> None:
        frame = self.frames[-1]
        self._journal = frame.journal
        self._journal_pos = 0
        try:
            if frame.cursor >= len(frame.statements):
                self._log_step(rule="LoopCheck", location=frame.node.location if frame.node else None)
                self._loop_check(frame)
            else:
                statement = frame.statements[frame.cursor]
                self._log_step(rule=statement.__class__.__name__, location=statement.location)
                self._execute_statement(frame, statement)
        except _CallRequest as request:
            self._enter_function(request)

    def _complete(self, frame: Frame) -> None:
        frame.journal = []
        frame.cursor += 1

    def _execute_statement(self, frame: Frame, statement: Statement) -> None:
        env = frame.env
        if isinstance(statement, Assignment):
            value = self._evaluate(statement.expression, env)
            env.set(statement.target, value)
            self._complete(frame)
            return
        if isinstance(statement, ExpressionStatement):
            self._evaluate(statement.expression, env)
            self._complete(frame)
            return
        if isinstance(statement, AugmentedAssignment):
            current = env.get(statement.target, statement.location)
            operand = self._evaluate(statement.expression, env)
            env.set(statement.target, self._binary(statement.operator, current, operand, statement.location))
            self._complete(frame)
            return
        if isinstance(statement, IndexAssignment):
            base = self._evaluate(statement.base, env)
            index = self._evaluate(statement.index, env)
            value = self._evaluate(statement.expression, env)
            self._set_item(base, index, value, statement.location)
            self._complete(frame)
            return
        if isinstance(statement, MemberAssignment):
            base = self._evaluate(statement.base, env)
            value = self._evaluate(statement.expression, env)
            if base.type != TYPE_OBJ:
                raise MiniPyRuntimeError(f"Can not set field '{statement.member}' on {type_name(base)}", location=statement.location)
            base.value[statement.member] = value
            self._complete(frame)
            return
        if isinstance(statement, IfStatement):
            chosen: Optional[Any] = None
            if is_truthy(self._evaluate(statement.condition, env)):
                chosen = statement.then_block
            else:
                for branch in statement.elifs:
                    if is_truthy(self._evaluate(branch.condition, env)):
                        chosen = branch.block
                        break
                else:
                    chosen = statement.else_block
            self._complete(frame)
            if chosen is not None:
                self._push_block(frame, chosen)
            return
        if isinstance(statement, WhileStatement):
            condition = self._evaluate(statement.condition, env)
            self._complete(frame)
            if is_truthy(condition):
                self._push_loop(frame, statement, statement.block, {})
            return
        if isinstance(statement, RepeatStatement):
            count_value = self._evaluate(statement.count, env)
            count = as_index(count_value)
            if count is None or count < 0:
                raise MiniPyRuntimeError(
                    f"repeat count must be a non-negative integer, got {render(count_value)}",
                    location=statement.location,
                )
            self._complete(frame)
            if count > 0:
                self._push_loop(frame, statement, statement.block, {"remaining": count - 1})
            return
        if isinstance(statement, ForRangeStatement):
            start = self._range_bound(statement.start, env, 0, statement.location)
            stop = self._range_bound(statement.stop, env, 0, statement.location)
            step = self._range_bound(statement.step, env, 1, statement.location)
            if step == 0:
                raise MiniPyRuntimeError("range() step must not be zero", location=statement.location)
            self._complete(frame)
            if (start < stop) if step > 0 else (start > stop):
                env.set(statement.counter, number(start))
                self._push_loop(frame, statement, statement.block, {"current": start, "stop": stop, "step": step})
            return
        if isinstance(statement, ForEachStatement):
            iterable = self._evaluate(statement.iterable, env)
            if iterable.type == TYPE_ARR:
                items = list(iterable.value)
            elif iterable.type == TYPE_STR:
                items = [string(ch) for ch in iterable.value]
            else:
                raise MiniPyRuntimeError(
                    f"Can only loop over an array or a string, not {type_name(iterable)}",
                    location=statement.location,
                )
            self._complete(frame)
            if items:
                env.set(statement.counter, items[0])
                self._push_loop(frame, statement, statement.block, {"items": items, "index": 0})
            return
        if isinstance(statement, FuncDef):
            function = Function(name=statement.name, params=list(statement.params), body=statement.body, closure=self.globals)
            env.set(statement.name, Value(TYPE_FUNC, function))
            self._complete(frame)
            return
        if isinstance(statement, ReturnStatement):
            value = none_value() if statement.expression is None else self._evaluate(statement.expression, env)
            self._unwind_return(value, statement)
            return
        if isinstance(statement, BreakStatement):
            index = self._enclosing_loop_index("break", statement)
            del self.frames[index:]
            return
        if isinstance(statement, ContinueStatement):
            index = self._enclosing_loop_index("continue", statement)
            del self.frames[index + 1:]
            loop = self.frames[index]
            loop.cursor = len(loop.statements)
            loop.journal = []
            return
        if isinstance(statement, PassStatement):
            self._complete(frame)
            return
        raise MiniPyRuntimeError(f"Unsupported statement {statement.__class__.__name__}", location=statement.location)

    def _range_bound(self, expr: Optional[Expression], env: Environment, default: int, location: SourceLocation) -> int:
        if expr is None:
            return default
        value = self._evaluate(expr, env)
        bound = as_index(value)
        if bound is None:
            raise MiniPyRuntimeError(f"range() arguments must be integers, got {render(value)}", location=location)
        return bound

    def _loop_check(self, frame: Frame) -> None:
        node = frame.node
        state = frame.loop_state
        again = False
        if isinstance(node, WhileStatement):
            again = is_truthy(self._evaluate(node.condition, frame.env))
        elif isinstance(node, RepeatStatement):
            if state["remaining"] > 0:
                state["remaining"] -= 1
                again = True
        elif isinstance(node, ForRangeStatement):
            current = state["current"] + state["step"]
            state["current"] = current
            again = current < state["stop"] if state["step"] > 0 else current > state["stop"]
            if again:
                frame.env.set(node.counter, number(current))
        elif isinstance(node, ForEachStatement):
            state["index"] += 1
            again = state["index"] < len(state["items"])
            if again:
                frame.env.set(node.counter, state["items"][state["index"]])
        if again:
            frame.cursor = 0
            frame.journal = []
        else:
            self.frames.pop()

    def _enclosing_loop_index(self, keyword: str, statement: Statement) -> int:
        for index in range(len(self.frames) - 1, -1, -1):
            kind = self.frames[index].kind
            if kind == FRAME_LOOP:
                return index
            if kind in (FRAME_FUNCTION, FRAME_PROGRAM):
                break
        raise MiniPyRuntimeError(f"'{keyword}' outside loop", location=statement.location)

    def _unwind_return(self, value: Value, statement: Statement) -> None:
        for index in range(len(self.frames) - 1, -1, -1):
            kind = self.frames[index].kind
            if kind == FRAME_FUNCTION:
                function_frame = self.frames[index]
                del self.frames[index:]
                self._deliver_return(function_frame, value)
                return
            if kind == FRAME_PROGRAM:
                break
        raise MiniPyRuntimeError("'return' outside function", location=statement.location)

    def _deliver_return(self, function_frame: Frame, value: Value) -> None:
        if self.frames:
            self.frames[-1].journal.append(value)
        self._emit_event("function_exit", self, function_frame.name, value)

    def _enter_function(self, request: _CallRequest) -> None:
        function = request.function
        env = Environment(parent=function.closure)
        for param, arg in zip(function.params, request.args):
            env.set(param, arg)
        self.frames.append(
            self._new_frame(
                FRAME_FUNCTION,
                function.body,
                env,
                name=function.name,
                call_location=request.location,
            )
        )
        logger.debug("Entering %s from line %s", function.name, request.location.line)
        self._emit_event("function_enter", self, function.name, request.args)

    # ---- expressions ----

    def _journaled(self, compute: Callable[[], Value]) -> Value:
        position = self._journal_pos
        self._journal_pos += 1
        if position < len(self._journal):
            return self._journal[position]
        result = compute()
        self._journal.append(result)
        return result

    def _evaluate(self, expression: Expression, env: Environment) -> Value:
        if isinstance(expression, Literal):
            if expression.literal_type == "NUM":
                return number(expression.value)  # type: ignore[arg-type]
            if expression.literal_type == "STR":
                return string(expression.value)  # type: ignore[arg-type]
            return boolean(bool(expression.value))
        if isinstance(expression, Identifier):
            return env.get(expression.name, expression.location)
        if isinstance(expression, BinaryOp):
            operator = expression.operator
            left = self._evaluate(expression.left, env)
            if operator == "and":
                return self._evaluate(expression.right, env) if is_truthy(left) else left
            if operator == "or":
                return left if is_truthy(left) else self._evaluate(expression.right, env)
            right = self._evaluate(expression.right, env)
            return self._binary(operator, left, right, expression.location)
        if isinstance(expression, UnaryOp):
            operand = self._evaluate(expression.operand, env)
            if expression.operator == "not":
                return boolean(not is_truthy(operand))
            return number(-_expect_number(operand, "Unary '-'", expression.location))
        if isinstance(expression, CallExpression):
            args = [self._evaluate(arg, env) for arg in expression.args]
            return self._journaled(lambda: self._call(expression.name, args, env, expression.location))
        if isinstance(expression, BuiltinCall):
            args = [self._evaluate(arg, env) for arg in expression.args]
            return self._journaled(lambda: self.builtins.invoke(self, expression.name, args, expression.location))
        if isinstance(expression, ArrayLiteral):
            return array([self._evaluate(item, env) for item in expression.items])
        if isinstance(expression, ObjectLiteral):
            return obj({key: self._evaluate(item, env) for key, item in expression.entries})
        if isinstance(expression, IndexExpression):
            base = self._evaluate(expression.base, env)
            index = self._evaluate(expression.index, env)
            return self._get_item(base, index, expression.location)
        if isinstance(expression, SliceExpression):
            base = self._evaluate(expression.base, env)
            start = None if expression.start is None else self._evaluate(expression.start, env)
            end = None if expression.end is None else self._evaluate(expression.end, env)
            return self._slice(base, start, end, expression.location)
        if isinstance(expression, MemberExpression):
            base = self._evaluate(expression.base, env)
            if base.type != TYPE_OBJ:
                raise MiniPyRuntimeError(f"Can not read field '{expression.member}' of {type_name(base)}", location=expression.location)
            if expression.member not in base.value:
                raise MiniPyRuntimeError(f"Object has no field '{expression.member}'", location=expression.location)
            return base.value[expression.member]
        if isinstance(expression, LengthExpression):
            operand = self._evaluate(expression.operand, env)
            if operand.type not in (TYPE_ARR, TYPE_STR, TYPE_OBJ):
                raise MiniPyRuntimeError(f"len() expects an array, string or object but got {type_name(operand)}", location=expression.location)
            return number(len(operand.value))
        if isinstance(expression, RandomExpression):
            return self._journaled(lambda: number(self.rng.random()))
        if isinstance(expression, RandintExpression):
            low = _expect_int(self._evaluate(expression.low, env), "randint()", expression.location)
            high = _expect_int(self._evaluate(expression.high, env), "randint()", expression.location)
            if low > high:
                raise MiniPyRuntimeError(f"randint() needs min <= max, got {low} and {high}", location=expression.location)
            return self._journaled(lambda: number(int(self.rng.integers(low, high, endpoint=True))))
        raise MiniPyRuntimeError(f"Unsupported expression {expression.__class__.__name__}", location=expression.location)

    def _call(self, name: str, args: List[Value], env: Environment, location: SourceLocation) -> Value:
        native = self.natives.get(name)
        if native is not None:
            return self._call_native(native, args, location)
        bound = env.get_optional(name)
        if bound is not None:
            if bound.type != TYPE_FUNC:
                raise MiniPyRuntimeError(f"'{name}' is a {type_name(bound)}, not a function", location=location)
            function: Function = bound.value
            if len(args) != len(function.params):
                raise MiniPyRuntimeError(
                    f"Function {function.name} expects {len(function.params)} arguments but got {len(args)}",
                    location=location,
                )
            depth = sum(1 for frame in self.frames if frame.kind == FRAME_FUNCTION)
            if depth >= self.options.max_call_depth:
                raise MiniPyRuntimeError("Maximum recursion depth exceeded", location=location)
            raise _CallRequest(function, args, location)
        if self.builtins.has(name):
            return self.builtins.invoke(self, name, args, location)
        raise MiniPyRuntimeError(f"Undefined function '{name}'", location=location)

    def _call_native(self, native: NativeFunction, args: List[Value], location: SourceLocation) -> Value:
        problem = native.validate(len(args))
        if problem is not None:
            raise MiniPyRuntimeError(problem, location=location)
        try:
            result = native.call(args)
        except MiniPyRuntimeError:
            raise
        except Exception as exc:
            raise MiniPyRuntimeError(f"Native function '{native.name}' failed: {exc}", location=location) from exc
        if native.kind == KIND_COMMAND:
            self._actions.append((native.name, tuple(args)))
        return result

    def _binary(self, operator: str, left: Value, right: Value, location: SourceLocation) -> Value:
        if operator == "==":
            return boolean(values_equal(left, right))
        if operator == "!=":
            return boolean(not values_equal(left, right))
        if operator == "in":
            return boolean(self._contains(right, left, location))
        both_numbers = left.type == TYPE_NUM and right.type == TYPE_NUM
        if operator in ("<", ">", "<=", ">="):
            if not both_numbers:
                raise MiniPyRuntimeError(
                    f"Can not compare {type_name(left)} and {type_name(right)} with '{operator}'",
                    location=location,
                )
            a, b = left.value, right.value
            if operator == "<":
                return boolean(a < b)
            if operator == ">":
                return boolean(a > b)
            if operator == "<=":
                return boolean(a <= b)
            return boolean(a >= b)
        if operator == "+":
            if both_numbers:
                return number(left.value + right.value)
            if left.type == TYPE_STR or right.type == TYPE_STR:
                return string(display(left) + display(right))
            if left.type == TYPE_ARR and right.type == TYPE_ARR:
                return array(left.value + right.value)
            raise MiniPyRuntimeError(f"Can not add {type_name(left)} and {type_name(right)}", location=location)
        if operator == "*":
            if both_numbers:
                return number(left.value * right.value)
            if left.type == TYPE_STR or right.type == TYPE_STR:
                text, times = (left, right) if left.type == TYPE_STR else (right, left)
                count = as_index(times)
                if count is None or count < 0:
                    raise MiniPyRuntimeError("A string can only be repeated a non-negative whole number of times", location=location)
                if not text.value:
                    return string("")
                if count and len(text.value) > MAX_STRING_LENGTH // count:
                    raise MiniPyRuntimeError("String too long", location=location)
                return string(text.value * count)
            raise MiniPyRuntimeError(f"Can not multiply {type_name(left)} and {type_name(right)}", location=location)
        if not both_numbers:
            raise MiniPyRuntimeError(
                f"Operator '{operator}' needs numbers but got {type_name(left)} and {type_name(right)}",
                location=location,
            )
        a, b = left.value, right.value
        if operator == "-":
            return number(a - b)
        if operator == "**":
            return number(_power(a, b, location))
        if b == 0:
            raise MiniPyRuntimeError("Division by zero", location=location)
        if operator == "/":
            return number(a / b)
        if operator == "//":
            return number(a // b)
        if operator == "%":
            if not (math.isfinite(a) and math.isfinite(b)):
                raise MiniPyRuntimeError("Operator '%' needs finite numbers", location=location)
            return number(math.fmod(a, b))
        raise MiniPyRuntimeError(f"Unknown operator '{operator}'", location=location)

    def _contains(self, container: Value, item: Value, location: SourceLocation) -> bool:
        if container.type == TYPE_ARR:
            return any(values_equal(element, item) for element in container.value)
        if container.type == TYPE_STR:
            if item.type != TYPE_STR:
                raise MiniPyRuntimeError(f"'in <string>' needs a string on the left, not {type_name(item)}", location=location)
            return item.value in container.value
        if container.type == TYPE_OBJ:
            return item.type == TYPE_STR and item.value in container.value
        raise MiniPyRuntimeError(f"'in' needs an array, string or object on the right, not {type_name(container)}", location=location)

    def _normalize_index(self, index: Value, length: int, kind: str, location: SourceLocation) -> int:
        position = as_index(index)
        if position is None:
            raise MiniPyRuntimeError(f"{kind} index must be an integer, got {render(index)}", location=location)
        actual = position + length if position < 0 else position
        if not 0 <= actual < length:
            raise MiniPyRuntimeError(f"Index {position} out of range for {kind.lower()} of length {length}", location=location)
        return actual

    def _get_item(self, base: Value, index: Value, location: SourceLocation) -> Value:
        if base.type == TYPE_ARR:
            return base.value[self._normalize_index(index, len(base.value), "Array", location)]
        if base.type == TYPE_STR:
            return string(base.value[self._normalize_index(index, len(base.value), "String", location)])
        if base.type == TYPE_OBJ:
            if index.type != TYPE_STR:
                raise MiniPyRuntimeError(f"Object keys are strings, got {type_name(index)}", location=location)
            if index.value not in base.value:
                raise MiniPyRuntimeError(f"Object has no key '{index.value}'", location=location)
            return base.value[index.value]
        raise MiniPyRuntimeError(f"Can not index into {type_name(base)}", location=location)

    def _set_item(self, base: Value, index: Value, value: Value, location: SourceLocation) -> None:
        if base.type == TYPE_ARR:
            base.value[self._normalize_index(index, len(base.value), "Array", location)] = value
            return
        if base.type == TYPE_OBJ:
            if index.type != TYPE_STR:
                raise MiniPyRuntimeError(f"Object keys are strings, got {type_name(index)}", location=location)
            base.value[index.value] = value
            return
        if base.type == TYPE_STR:
            raise MiniPyRuntimeError("Strings can not be changed in place", location=location)
        raise MiniPyRuntimeError(f"Can not assign into {type_name(base)}", location=location)

    def _slice(self, base: Value, start: Optional[Value], end: Optional[Value], location: SourceLocation) -> Value:
        if base.type not in (TYPE_ARR, TYPE_STR):
            raise MiniPyRuntimeError(f"Can only slice arrays and strings, not {type_name(base)}", location=location)
        bounds: List[Optional[int]] = []
        for bound in (start, end):
            if bound is None:
                bounds.append(None)
                continue
            position = as_index(bound)
            if position is None:
                raise MiniPyRuntimeError(f"Slice bounds must be integers, got {render(bound)}", location=location)
            bounds.append(position)
        # Python slicing already clamps out-of-range bounds and handles negatives.
        if base.type == TYPE_ARR:
            return array(base.value[bounds[0]:bounds[1]])
        return string(base.value[bounds[0]:bounds[1]])

    # ---- side channels ----

    def _write_output(self, text: str) -> None:
        self.output.append(text)
        self.output_sink(text)
        self._emit_event("on_print", self, text)

    def _fail(self, error: MiniPyRuntimeError) -> None:
        self.status = STATUS_ERRORED
        if error.line is None:
            error.line = self._unit_line()
        error.step_index = self.step_count
        self.error = error
        logger.debug("Runtime error at step %d: %s", self.step_count, error)
        try:
            self.hook_registry.emit("on_error", self, error)
        except Exception:
            logger.exception("on_error hook failed")

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except MiniPyRuntimeError:
            raise
        except Exception as exc:
            raise MiniPyRuntimeError(f"Extension hook '{event}' failed: {exc}", line=self._unit_line())

    def _log_step(self, *, rule: str, location: Optional[SourceLocation]) -> None:
        frame = self.frames[-1] if self.frames else None
        entry = self.log.record(frame=frame, location=location, rule=rule)
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, rule=rule, location=location, extra=None),
            )
        except MiniPyRuntimeError:
            raise
        except Exception as exc:
            raise MiniPyRuntimeError(f"Extension step rule failed: {exc}", location=location)


def compile_source(source: str, filename: str = "<string>") -> Program:
    tokens = tokenize(source, filename)
    return parse(tokens, source.splitlines(), filename)


@dataclass
class TracebackFrame:
    name: str
    line: Optional[int]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, vm: VM, filename: str = "<string>") -> None:
        self.vm = vm
        self.filename = filename

    def build_frames(self, error: MiniPyRuntimeError) -> List[TracebackFrame]:
        activations = [frame for frame in self.vm.frames if frame.kind in (FRAME_PROGRAM, FRAME_FUNCTION)]
        frames: List[TracebackFrame] = []
        for position, activation in enumerate(activations):
            if position + 1 < len(activations):
                call = activations[position + 1].call_location
                line = call.line if call else None
                statement = call.statement if call else None
            else:
                line = error.line
                statement = error.location.statement if error.location else None
            frames.append(
                TracebackFrame(
                    name=activation.name,
                    line=line,
                    statement=statement,
                    state_entry=self.vm.log.last_entry_for_frame(activation.frame_id),
                )
            )
        return frames

    def format_text(self, error: MiniPyRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            if frame.line is not None:
                lines.append(f"  File \"{self.filename}\", line {frame.line}, in {frame.name}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if verbose and frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if frame.state_entry.env_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v}" for k, v in frame.state_entry.env_snapshot.items())
                    lines.append(f"    Env snapshot: {snapshot}")
        lines.append(f"RuntimeError: {error}")
        return "\n".join(lines)

    def to_json(self, error: MiniPyRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames(error)):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name, "line": frame.line}
            if frame.statement:
                entry["statement"] = frame.statement
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                if frame.state_entry.env_snapshot is not None:
                    entry["env_snapshot"] = frame.state_entry.env_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": "RuntimeError",
                "message": error.message,
                "line": error.line,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2, ensure_ascii=False)
