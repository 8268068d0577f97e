from __future__ import annotations
import bisect
import json
import math
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union, cast

import numpy as np

from lexer import JossError, JossParseError
from extensions import HookRegistry, JossExtensionError, RuntimeServices, StepContext, build_default_services
from parser import (
    Binary,
    Command,
    Conditional,
    Do,
    Expression,
    Let,
    NoOp,
    Number,
    NumericText,
    QuotedText,
    RangeStep,
    RangeValue,
    Reduction,
    Set,
    SourceLocation,
    StoredCommand,
    TextExpression,
    Type,
    ValueRange,
    Variable,
    parse_line,
)

TYPE_NUM = "NUM"
TYPE_BOOL = "BOOL"
TYPE_FN = "FN"

BINDING_SCALAR = "scalar"
BINDING_ARRAY = "array"
BINDING_FUNCTION = "function"


@dataclass
class Value:
    type: str
    value: Any


def number(x: Any) -> Value:
    return Value(TYPE_NUM, float(x))


def boolean(x: Any) -> Value:
    return Value(TYPE_BOOL, bool(x))


def to_number(value: Value) -> float:
    if value.type == TYPE_NUM:
        return float(value.value)
    if value.type == TYPE_BOOL:
        return 1.0 if value.value else 0.0
    return math.nan


def to_bool(value: Value) -> bool:
    if value.type == TYPE_BOOL:
        return bool(value.value)
    if value.type == TYPE_NUM:
        x = float(value.value)
        return x != 0.0 and not math.isnan(x)
    return True


def values_equal(left: Value, right: Value) -> bool:
    if left.type != right.type:
        return False
    if left.type == TYPE_FN:
        return left.value is right.value
    return bool(left.value == right.value)


def _decompose(x: float) -> Tuple[str, int]:
    """Return the shortest round-trip digits of ``abs(x)`` and the decimal
    point position ``n`` such that ``abs(x) == 0.<digits> * 10**n``."""
    _, digit_tuple, exponent = Decimal(repr(abs(x))).as_tuple()
    exponent = cast(int, exponent)  # finite input only
    digits = "".join(str(d) for d in digit_tuple).rstrip("0") or "0"
    return digits, len(digit_tuple) + exponent


def format_number(x: float) -> str:
    if math.isnan(x):
        return "NaN"
    if math.isinf(x):
        return "Infinity" if x > 0 else "-Infinity"
    if x == 0:
        return "0"
    sign = "-" if x < 0 else ""
    digits, n = _decompose(x)
    k = len(digits)
    if k <= n <= 21:
        return sign + digits + "0" * (n - k)
    if 0 < n <= 21:
        return sign + digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return sign + "0." + "0" * (-n) + digits
    e = n - 1
    mantissa = digits[0] + ("." + digits[1:] if k > 1 else "")
    return f"{sign}{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"


def format_value(value: Value) -> str:
    if value.type == TYPE_NUM:
        return format_number(float(value.value))
    if value.type == TYPE_BOOL:
        return "true" if value.value else "false"
    return f"<function {getattr(value.value, 'name', '?')}>"


class JossRuntimeError(JossError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class JossBindingError(JossRuntimeError):
    """Reference to an undefined variable, array or function."""


class JossArityError(JossRuntimeError):
    """Wrong array dimensionality or wrong argument count."""


class JossArrayMissError(JossRuntimeError):
    """Strict array read at an unset index."""


class JossUndefinedStepError(JossRuntimeError):
    """``Do`` of a step or part that is not stored."""


# ---- callables ----

BuiltinImpl = Callable[["Interpreter", List[Value], SourceLocation], Value]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl
    doc: str = ""

    def validate(self, supplied: int, location: Optional[SourceLocation]) -> None:
        if supplied < self.min_args:
            raise JossArityError(f"{self.name} expects at least {self.min_args} arguments", location=location, rule=self.name)
        if self.max_args is not None and supplied > self.max_args:
            raise JossArityError(f"{self.name} expects at most {self.max_args} arguments", location=location, rule=self.name)

    def call(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        self.validate(len(args), location)
        return self.impl(interpreter, args, location)

    def describe(self) -> str:
        if self.max_args == self.min_args:
            arity = str(self.min_args)
        else:
            arity = f"{self.min_args}..{'' if self.max_args is None else self.max_args}"
        return f"{self.name}({arity})" + (f"  {self.doc}" if self.doc else "")


@dataclass
class UserFunction:
    name: str
    params: List[str]
    body: Expression

    def call(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        if len(args) != len(self.params):
            raise JossArityError(
                f"Function {self.name} expects {len(self.params)} arguments but received {len(args)}",
                location=location,
                rule=self.name,
            )
        scope = Scope(values=dict(zip(self.params, args)))
        return interpreter.evaluate_expression(self.body, scope)


class JossArray:
    """Indices-tuple to value mapping with a fixed arity once first set.

    Referenced by name, an array is callable: calling it reads an element.
    """

    def __init__(self, name: str, *, sparse: bool = False) -> None:
        self.name = name
        self.sparse = sparse
        self.dimensions = 0
        self.values: Dict[Tuple[float, ...], Value] = {}

    def set(self, indices: Tuple[float, ...], value: Value) -> None:
        if len(indices) != self.dimensions:
            self.values = {}
            self.dimensions = len(indices)
        self.values[indices] = value

    def get(self, indices: Tuple[float, ...], location: Optional[SourceLocation] = None) -> Value:
        if len(indices) != self.dimensions:
            raise JossArityError(
                f"Attempt to index array '{self.name}' with incorrect dimensionality "
                f"(expected {self.dimensions}, got {len(indices)})",
                location=location,
                rule="INDEX",
            )
        found = self.values.get(indices)
        if found is not None:
            return found
        if self.sparse:
            return number(0)
        key = ",".join(format_number(i) for i in indices)
        raise JossArrayMissError(f"Missing array contents: {self.name}({key})", location=location, rule="INDEX")

    def call(self, interpreter: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        return self.get(tuple(to_number(arg) for arg in args), location)


# ---- environment ----


@dataclass
class Binding:
    kind: str
    value: Any  # Value for scalars and functions, JossArray for arrays


@dataclass
class Step:
    part: str
    step: str
    command: Command

    @property
    def key(self) -> str:
        return f"{self.part}.{self.step}"


def _step_order(step: str) -> Decimal:
    return Decimal(f"0.{step}")


class Environment:
    def __init__(self, *, builtins: Optional["Builtins"] = None, sparse_arrays: bool = False) -> None:
        self.builtins = builtins
        self.sparse_arrays = sparse_arrays
        self.bindings: Dict[str, Binding] = {}
        self.program: Dict[str, Step] = {}
        self.program_parts: Dict[str, List[str]] = {}

    # Each setter replaces the whole binding, so a name holds one kind at a time.
    def set_scalar(self, name: str, value: Value) -> None:
        if value.type == TYPE_FN:
            raise JossRuntimeError(f"Cannot bind a function to scalar '{name}'", rule="SET")
        self.bindings[name] = Binding(BINDING_SCALAR, value)

    def set_function(self, name: str, value: Value) -> None:
        if value.type != TYPE_FN:
            raise JossRuntimeError(f"Cannot bind a non-function to function '{name}'", rule="LET")
        self.bindings[name] = Binding(BINDING_FUNCTION, value)

    def set_array(self, name: str, indices: Tuple[float, ...], value: Value) -> None:
        binding = self.bindings.get(name)
        if binding is None or binding.kind != BINDING_ARRAY:
            binding = Binding(BINDING_ARRAY, JossArray(name, sparse=self.sparse_arrays))
            self.bindings[name] = binding
        binding.value.set(indices, value)

    def kind_of(self, name: str) -> Optional[str]:
        binding = self.bindings.get(name)
        return binding.kind if binding is not None else None

    def get_optional(self, name: str) -> Optional[Value]:
        binding = self.bindings.get(name)
        if binding is not None:
            if binding.kind == BINDING_ARRAY:
                return Value(TYPE_FN, binding.value)
            return binding.value
        if self.builtins is not None:
            builtin = self.builtins.get(name)
            if builtin is not None:
                return Value(TYPE_FN, builtin)
        return None

    def get(self, name: str, location: Optional[SourceLocation] = None) -> Value:
        found = self.get_optional(name)
        if found is None:
            raise JossBindingError(f"No such variable: {name}", location=location, rule="IDENT")
        return found

    def names(self) -> List[str]:
        return sorted(self.bindings)

    def snapshot(self) -> Dict[str, str]:
        def _render(binding: Binding) -> str:
            if binding.kind == BINDING_ARRAY:
                return f"array[{binding.value.dimensions}]:{len(binding.value.values)}"
            rendered = format_value(binding.value)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{binding.kind}:{rendered}"

        return {name: _render(binding) for name, binding in self.bindings.items()}

    # ---- program store ----

    def set_step(self, part: str, step: str, command: Command) -> None:
        key = f"{part}.{step}"
        existing = self.program.get(key)
        self.program[key] = Step(part=part, step=step, command=command)
        if existing is not None:
            return
        ordered = self.program_parts.setdefault(part, [])
        position = bisect.bisect_left([_step_order(s) for s in ordered], _step_order(step))
        ordered.insert(position, step)

    def get_step(self, part: str, step: str, location: Optional[SourceLocation] = None) -> Step:
        found = self.program.get(f"{part}.{step}")
        if found is None:
            raise JossUndefinedStepError(f"No such step: {part}.{step}", location=location, rule="DO")
        return found

    def has_part(self, part: str) -> bool:
        return bool(self.program_parts.get(part))

    def get_part_steps(self, part: str, location: Optional[SourceLocation] = None) -> List[Step]:
        if not self.has_part(part):
            raise JossUndefinedStepError(f"No such part: {part}", location=location, rule="DO")
        return [self.program[f"{part}.{step}"] for step in self.program_parts[part]]


@dataclass
class Scope:
    """Call-local overlay checked before the Environment."""

    values: Dict[str, Value] = field(default_factory=dict)
    parent: Optional["Scope"] = None

    def lookup(self, name: str) -> Optional[Value]:
        scope: Optional[Scope] = self
        while scope is not None:
            if name in scope.values:
                return scope.values[name]
            scope = scope.parent
        return None

    def child(self, values: Dict[str, Value]) -> "Scope":
        return Scope(values=values, parent=self)


# ---- builtins ----


def _numeric(func: Callable[..., Any]) -> Callable[..., float]:
    def apply(*xs: float) -> float:
        with np.errstate(all="ignore"):
            return float(func(*(np.float64(x) for x in xs)))

    return apply


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        # Number dissection
        self._register_numeric("sgn", 1, np.sign)
        self._register_numeric("ip", 1, np.trunc)
        self._register_numeric("fp", 1, lambda x: x - np.trunc(x))
        self._register_numeric("dp", 1, self._digit_part)
        self._register_numeric("xp", 1, self._exponent_part)
        # Elementary functions
        self._register_numeric("sqrt", 1, np.sqrt)
        self._register_numeric("sin", 1, np.sin)
        self._register_numeric("cos", 1, np.cos)
        self._register_numeric("log", 1, np.log)
        self._register_numeric("exp", 1, np.exp)
        self._register_numeric("arg", 2, lambda x, y: np.arctan(y / x))
        # Reductions take any number of arguments; an empty call gives the identity.
        self._register_reduction("sum", np.sum)
        self._register_reduction("prod", np.prod)
        self._register_reduction("min", lambda a: np.min(a, initial=np.inf))
        self._register_reduction("max", lambda a: np.max(a, initial=-np.inf))
        self._register_custom("conj", 0, None, self._conj)
        self._register_custom("disj", 0, None, self._disj)
        self._register_custom("tv", 1, 1, self._tv)

    def _register_numeric(self, name: str, arity: int, func: Callable[..., Any]) -> None:
        apply = _numeric(func)

        def impl(_: "Interpreter", args: List[Value], __: SourceLocation) -> Value:
            return number(apply(*(to_number(arg) for arg in args)))

        self.table[name] = BuiltinFunction(name=name, min_args=arity, max_args=arity, impl=impl)

    def _register_reduction(self, name: str, func: Callable[..., Any]) -> None:
        def impl(_: "Interpreter", args: List[Value], __: SourceLocation) -> Value:
            with np.errstate(all="ignore"):
                return number(func(np.array([to_number(arg) for arg in args], dtype=np.float64)))

        self.table[name] = BuiltinFunction(name=name, min_args=0, max_args=None, impl=impl)

    def _register_custom(self, name: str, min_args: int, max_args: Optional[int], impl: BuiltinImpl) -> None:
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl)

    def register_extension_function(
        self,
        *,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: BuiltinImpl,
        doc: str = "",
    ) -> None:
        if name in self.table:
            raise JossExtensionError(f"Cannot override existing function '{name}'")
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl, doc=doc)

    def get(self, name: str) -> Optional[BuiltinFunction]:
        return self.table.get(name)

    @staticmethod
    def _digit_part(x: np.float64) -> float:
        if x == 0 or not np.isfinite(x):
            return float(x)
        digits, _ = _decompose(float(x))
        mantissa = float(digits[0] + "." + (digits[1:] or "0"))
        return -mantissa if x < 0 else mantissa

    @staticmethod
    def _exponent_part(x: np.float64) -> float:
        if x == 0 or not np.isfinite(x):
            return 0.0
        _, n = _decompose(float(x))
        return float(n - 1)

    def _conj(self, _: "Interpreter", args: List[Value], __: SourceLocation) -> Value:
        return boolean(all(to_bool(arg) for arg in args))

    def _disj(self, _: "Interpreter", args: List[Value], __: SourceLocation) -> Value:
        return boolean(any(to_bool(arg) for arg in args))

    def _tv(self, _: "Interpreter", args: List[Value], __: SourceLocation) -> Value:
        arg = args[0]
        if arg.type == TYPE_BOOL:
            return number(to_number(arg))
        return boolean(to_bool(arg))


# ---- operators ----


def _arithmetic(func: Callable[[np.float64, np.float64], Any]) -> Callable[[Value, Value], Value]:
    def apply(left: Value, right: Value) -> Value:
        with np.errstate(all="ignore"):
            return number(func(np.float64(to_number(left)), np.float64(to_number(right))))

    return apply


def _comparison(func: Callable[[float, float], bool]) -> Callable[[Value, Value], Value]:
    def apply(left: Value, right: Value) -> Value:
        return boolean(func(to_number(left), to_number(right)))

    return apply


def _logical_and(left: Value, right: Value) -> Value:
    return boolean(to_bool(left) and to_bool(right))


BINARY_OPERATORS: Dict[str, Callable[[Value, Value], Value]] = {
    # 'or' is logical AND too. Known quirk, kept as is.
    "or": _logical_and,
    "and": _logical_and,
    "=": lambda a, b: boolean(values_equal(a, b)),
    "!=": lambda a, b: boolean(not values_equal(a, b)),
    "<": _comparison(lambda a, b: a < b),
    ">": _comparison(lambda a, b: a > b),
    "<=": _comparison(lambda a, b: a <= b),
    ">=": _comparison(lambda a, b: a >= b),
    "+": _arithmetic(np.add),
    "-": _arithmetic(np.subtract),
    "/": _arithmetic(np.divide),
    "*": _arithmetic(np.multiply),
}


# ---- state log ----


@dataclass
class Frame:
    name: str
    frame_id: str
    call_location: Optional[SourceLocation]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]
    rewrite_record: Dict[str, Any]


class StepLogger:
    """Append-only record of executed commands, chained by state id."""

    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self._by_frame: Dict[str, StateEntry] = {}

    @property
    def last_state_id(self) -> str:
        return self.entries[-1].state_id if self.entries else "seed"

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        statement: Optional[str],
        rewrite_record: Optional[Dict[str, Any]] = None,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        index = len(self.entries)
        transition = dict(rewrite_record or {})
        transition.setdefault("from_state_id", self.last_state_id)
        transition["to_state_id"] = f"s_{index:06d}"
        entry = StateEntry(
            step_index=index,
            state_id=transition["to_state_id"],
            frame_id=None if frame is None else frame.frame_id,
            source_location=location,
            statement=statement,
            env_snapshot=env_snapshot,
            rewrite_record=transition,
        )
        self.entries.append(entry)
        if frame is not None:
            self._by_frame[frame.frame_id] = entry
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self._by_frame.get(frame_id)


# ---- interpreter ----


class Interpreter:
    def __init__(
        self,
        *,
        output_sink: Optional[Callable[[str], None]] = None,
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        sparse_arrays: bool = False,
        filename: str = "<input>",
    ) -> None:
        self.filename = filename
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.output_sink = output_sink or (lambda text: print(text, end=""))
        self.builtins = Builtins()

        # Extension functions join the built-in table but cannot replace entries.
        for entry in self.services.functions:
            self.builtins.register_extension_function(
                name=entry.name, min_args=entry.min_args, max_args=entry.max_args, impl=entry.impl, doc=entry.doc
            )

        self.environment = Environment(builtins=self.builtins, sparse_arrays=sparse_arrays)
        self.logger = StepLogger(verbose=verbose)
        self.logger.record(frame=None, location=None, statement="<seed>", rewrite_record={"rule": "SEED"})
        self.io_log: List[Dict[str, Any]] = []
        self.frame_counter = 0
        self.top_frame = self._new_frame("<top-level>", None)
        self.call_stack: List[Frame] = [self.top_frame]
        self.line_number = 0

    def evaluate(self, text: str) -> List[JossError]:
        """Evaluate each line of ``text`` in order.

        A failing line is abandoned and the lines after it still run. The
        errors come back in line order; ``on_error`` has already seen each.
        """
        errors: List[JossError] = []
        for line in text.split("\n"):
            try:
                self.evaluate_line(line)
            except (JossParseError, JossRuntimeError) as error:
                errors.append(error)
        return errors

    def evaluate_line(self, text: str) -> None:
        self.line_number += 1
        self.call_stack = [self.top_frame]
        try:
            self._emit_event("line_start", self, text)
            unit = parse_line(text, filename=self.filename, line=self.line_number)
            self.execute(unit)
        except JossParseError as error:
            self._emit_event("on_error", self, error)
            raise
        except JossRuntimeError as error:
            if error.step_index is None and self.logger.entries:
                error.step_index = self.logger.entries[-1].step_index
            self._emit_event("on_error", self, error)
            raise
        except Exception as exc:
            # Unexpected Python-level exceptions (RecursionError from runaway
            # Do recursion, failing extension code) surface as runtime errors.
            loc = self.logger.entries[-1].source_location if self.logger.entries else None
            wrapped = JossRuntimeError(f"Internal interpreter error: {exc}", location=loc, rule="internal")
            if self.logger.entries:
                wrapped.step_index = self.logger.entries[-1].step_index
            raise wrapped from exc

    def execute(self, unit: Union[Command, StoredCommand]) -> None:
        if isinstance(unit, StoredCommand):
            self._log_step(rule="StoredCommand", location=unit.location, extra={"step": f"{unit.part}.{unit.step}"})
            self.environment.set_step(unit.part, unit.step, unit.command)
            return
        self._execute_command(unit)

    # ---- commands ----

    def _execute_command(self, command: Command) -> None:
        self._log_step(rule=command.verb.__class__.__name__, location=command.location)
        self._emit_event("before_command", self, command)
        if command.condition is None or to_bool(self.evaluate_expression(command.condition)):
            self._execute_verb(command)
        self._emit_event("after_command", self, command)

    def _execute_verb(self, command: Command) -> None:
        verb = command.verb
        if isinstance(verb, NoOp):
            return
        if isinstance(verb, Type):
            for item in verb.items:
                self._output(self._render_text(item))
                self._output("\n")
            return
        if isinstance(verb, Set):
            self._assign(verb.target, self.evaluate_expression(verb.expression))
            return
        if isinstance(verb, Let):
            function = UserFunction(name=verb.name, params=list(verb.params), body=verb.body)
            self.environment.set_function(verb.name, Value(TYPE_FN, function))
            return
        if isinstance(verb, Do):
            self._execute_do(verb)
            return
        raise JossRuntimeError(f"Unsupported verb {verb.__class__.__name__}", location=verb.location)

    def _render_text(self, item: TextExpression) -> str:
        if isinstance(item, QuotedText):
            return item.text
        if isinstance(item, NumericText):
            return format_value(self.evaluate_expression(item.expression))
        raise JossRuntimeError(f"Unsupported text item {item.__class__.__name__}", location=item.location)

    def _assign(self, target: Variable, value: Value) -> None:
        env = self.environment
        if target.indices:
            indices = tuple(to_number(self.evaluate_expression(index)) for index in target.indices)
            env.set_array(target.name, indices, value)
        elif value.type == TYPE_FN:
            env.set_function(target.name, value)
        else:
            env.set_scalar(target.name, value)

    def _execute_do(self, verb: Do) -> None:
        if verb.times is not None:
            count = to_number(self.evaluate_expression(verb.times))
            limit = math.floor(count) if math.isfinite(count) else count
            i = 0
            while i < limit:
                self._run_do_target(verb)
                i += 1
        elif verb.for_range is not None:
            if verb.for_variable is None:
                raise JossRuntimeError("Do over a range needs a loop variable", location=verb.location)
            for value in self.iterate_range(verb.for_range):
                self.environment.set_scalar(verb.for_variable, value)
                self._run_do_target(verb)
        else:
            self._run_do_target(verb)

    def _run_do_target(self, verb: Do) -> None:
        env = self.environment
        if verb.step is not None:
            self._run_step(env.get_step(verb.part, verb.step, verb.location), verb.location)
            return
        for step in env.get_part_steps(verb.part, verb.location):
            self._run_step(step, verb.location)

    def _run_step(self, step: Step, call_location: SourceLocation) -> None:
        frame = self._new_frame(f"step {step.key}", call_location)
        self.call_stack.append(frame)
        self._execute_command(step.command)
        # On error the frame stays so the traceback can show it.
        self.call_stack.pop()

    # ---- expressions ----

    def evaluate_expression(self, expression: Expression, scope: Optional[Scope] = None) -> Value:
        if isinstance(expression, Number):
            return number(expression.value)
        if isinstance(expression, Variable):
            found = scope.lookup(expression.name) if scope is not None else None
            if found is None:
                found = self.environment.get(expression.name, expression.location)
            if found.type == TYPE_FN and expression.indices:
                args = [self.evaluate_expression(index, scope) for index in expression.indices]
                return found.value.call(self, args, expression.location)
            return found
        if isinstance(expression, Binary):
            operator = BINARY_OPERATORS[expression.operator]
            left = self.evaluate_expression(expression.lhs, scope)
            right = self.evaluate_expression(expression.rhs, scope)
            return operator(left, right)
        if isinstance(expression, Conditional):
            for branch in expression.branches:
                if to_bool(self.evaluate_expression(branch.condition, scope)):
                    return self.evaluate_expression(branch.result, scope)
            return self.evaluate_expression(expression.default, scope)
        if isinstance(expression, Reduction):
            return self._evaluate_reduction(expression, scope)
        raise JossRuntimeError(f"Unsupported expression {expression.__class__.__name__}", location=expression.location)

    def _evaluate_reduction(self, expression: Reduction, scope: Optional[Scope]) -> Value:
        found = scope.lookup(expression.function) if scope is not None else None
        if found is None:
            found = self.environment.get(expression.function, expression.location)
        if found.type != TYPE_FN:
            raise JossRuntimeError(
                f"'{expression.function}' is not a function", location=expression.location, rule=expression.function
            )
        base = scope if scope is not None else Scope()
        results: List[Value] = []
        for value in self.iterate_range(expression.range, scope):
            inner = base.child({expression.variable: value})
            results.append(self.evaluate_expression(expression.body, inner))
        return found.value.call(self, results, expression.location)

    def iterate_range(self, value_range: ValueRange, scope: Optional[Scope] = None) -> Iterator[Value]:
        """Lazily produce the values of a range; every call starts afresh."""
        for term in value_range.terms:
            if isinstance(term, RangeValue):
                yield self.evaluate_expression(term.value, scope)
                continue
            if not isinstance(term, RangeStep):
                raise JossRuntimeError(f"Unsupported range term {term.__class__.__name__}", location=value_range.location)
            end = to_number(self.evaluate_expression(term.end, scope))
            step = to_number(self.evaluate_expression(term.step, scope))
            current = to_number(self.evaluate_expression(term.start, scope))
            # A non-positive step below the end never terminates.
            while current < end:
                yield number(current)
                current += step

    # ---- plumbing ----

    def _output(self, text: str) -> None:
        self._emit_event("output", self, text)
        self.output_sink(text)
        self.io_log.append({"event": "TYPE", "text": text})

    def _new_frame(self, name: str, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, call_location=call_location)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except (JossError, RecursionError):
            raise
        except Exception as exc:
            loc = self.logger.entries[-1].source_location if self.logger.entries else None
            raise JossRuntimeError(f"Extension hook '{event}' failed: {exc}", location=loc, rule="EXT")

    def _log_step(
        self,
        *,
        rule: str,
        location: Optional[SourceLocation],
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        env_snapshot = self.environment.snapshot() if self.verbose else None
        rewrite: Dict[str, Any] = {"rule": rule}
        if extra:
            rewrite.update(extra)
        entry = self.logger.record(
            frame=frame,
            location=location,
            statement=location.statement if location else None,
            env_snapshot=env_snapshot,
            rewrite_record=rewrite,
        )
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, rule=rule, location=location, extra=extra),
            )
        except (JossError, RecursionError):
            raise
        except Exception as exc:
            raise JossRuntimeError(f"Extension step rule failed: {exc}", location=location, rule="EXT")


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    """Renders the ``Do`` frames that were active when an error was raised."""

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def frames(self) -> List[TracebackFrame]:
        logger = self.interpreter.logger
        result: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            last = logger.last_entry_for_frame(frame.frame_id)
            location = last.source_location if last is not None else frame.call_location
            result.append(TracebackFrame(name=frame.name, location=location, state_entry=last))
        return result

    def format_text(self, error: JossRuntimeError, verbose: bool) -> str:
        out = ["Traceback (innermost Do last):"]
        for tb in self.frames():
            if tb.location is None:
                out.append(f"  {tb.name} at unknown location")
            else:
                out.append(f"  {tb.name} at line {tb.location.line}, column {tb.location.column}")
                if tb.location.statement:
                    out.append(f"    {tb.location.statement}")
            entry = tb.state_entry
            if entry is None:
                continue
            out.append(f"    state {entry.state_id} (log index {entry.step_index})")
            if verbose and entry.env_snapshot:
                out.append("    env: " + ", ".join(f"{name}={shown}" for name, shown in entry.env_snapshot.items()))
        out.append(f"{type(error).__name__}: {error.message} (rule: {error.rule or 'runtime'})")
        return "\n".join(out)

    def to_json(self, error: JossRuntimeError) -> str:
        def _frame(index: int, tb: TracebackFrame) -> Dict[str, Any]:
            data: Dict[str, Any] = {"frame_index": index, "name": tb.name}
            if tb.location is not None:
                data["source_location"] = asdict(tb.location)
            if tb.state_entry is not None:
                data["state_id"] = tb.state_entry.state_id
                data["step_index"] = tb.state_entry.step_index
                if tb.state_entry.env_snapshot is not None:
                    data["env_snapshot"] = tb.state_entry.env_snapshot
            return data

        report = {
            "error": {
                "type": type(error).__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": [_frame(index, tb) for index, tb in enumerate(self.frames())],
        }
        return json.dumps(report, indent=2)
