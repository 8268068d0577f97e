from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple, Union

from lexer import (
    BRACKET_PAIRS,
    CLOSE_BRACKET,
    COLON,
    COMMA,
    END,
    ID,
    NUM,
    OP,
    OPEN_BRACKET,
    PERIOD,
    SEMICOLON,
    STR,
    VAR,
    JossParseError,
    Token,
    TokenStream,
    tokenize,
)


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Expression(Node):
    pass


@dataclass
class Number(Expression):
    value: float


# A Variable also carries its arguments: whether it is a plain read, an
# array index or a function call is only known once the name is resolved.
@dataclass
class Variable(Expression):
    name: str
    indices: List[Expression] = field(default_factory=list)


@dataclass
class Binary(Expression):
    operator: str
    lhs: Expression
    rhs: Expression


@dataclass
class ConditionBranch:
    condition: Expression
    result: Expression


@dataclass
class Conditional(Expression):
    branches: List[ConditionBranch]
    default: Expression


@dataclass
class RangeValue:
    value: Expression


@dataclass
class RangeStep:
    start: Expression
    step: Expression
    end: Expression


RangeTerm = Union[RangeValue, RangeStep]


@dataclass
class ValueRange(Node):
    terms: List[RangeTerm]


@dataclass
class Reduction(Expression):
    function: str
    variable: str
    range: ValueRange
    body: Expression


class TextExpression(Node):
    pass


@dataclass
class QuotedText(TextExpression):
    text: str


@dataclass
class NumericText(TextExpression):
    expression: Expression


class Verb(Node):
    pass


@dataclass
class NoOp(Verb):
    pass


@dataclass
class Type(Verb):
    items: List[TextExpression]


@dataclass
class Set(Verb):
    target: Variable
    expression: Expression


@dataclass
class Let(Verb):
    name: str
    params: List[str]
    body: Expression


@dataclass
class Do(Verb):
    part: str
    step: Optional[str] = None
    times: Optional[Expression] = None
    for_variable: Optional[str] = None
    for_range: Optional[ValueRange] = None


@dataclass
class Command(Node):
    verb: Verb
    condition: Optional[Expression] = None


@dataclass
class StoredCommand(Node):
    part: str
    step: str
    command: Command


# Precedence climbing table, low to high.
BINARY_PRECEDENCE = {
    "or": 0,
    "and": 1,
    "=": 2,
    "!=": 2,
    "<": 3,
    ">": 3,
    "<=": 3,
    ">=": 3,
    "+": 4,
    "-": 4,
    "/": 5,
    "*": 5,
}

TYPE_OPERAND_STARTS = {VAR, NUM, OP, OPEN_BRACKET}


def normalize_step(literal: str) -> Tuple[str, str]:
    """Split a ``part.step`` literal into canonical part and step strings.

    ``1.10`` and ``1.1`` name the same step.
    """
    if "." not in literal:
        raise JossParseError(f"Invalid step '{literal}' (must be like 1.1, not 1)")
    try:
        number = Decimal(literal)
    except InvalidOperation:
        raise JossParseError(f"Invalid step '{literal}'")
    text = format(number.normalize(), "f")
    part, _, step = text.partition(".")
    if not step:
        raise JossParseError(f"Invalid step '{literal}' (step number must not be zero)")
    return normalize_part(part), step


def normalize_part(literal: str) -> str:
    if "." in literal:
        raise JossParseError(f"Invalid part '{literal}' (must be like 1, not 1.1)")
    try:
        return str(int(literal))
    except ValueError:
        raise JossParseError(f"Invalid part '{literal}'")


class Parser:
    def __init__(self, tokens: TokenStream, source_line: str, *, filename: str = "<input>", line: int = 1) -> None:
        self.tokens = tokens
        self.source_line = source_line
        self.filename = filename
        self.line = line

    def parse(self) -> Union[Command, StoredCommand]:
        first = self._peek()
        if first.type == END:
            # Blank and comment lines.
            location = self._location(first)
            return Command(location=location, verb=NoOp(location=location))
        if first.type == NUM:
            stored = self._parse_stored_command()
            self._consume(PERIOD, "end of command")
            return stored
        command = self._parse_command()
        self._consume(PERIOD, "end of command")
        return command

    # ---- commands ----

    def _parse_stored_command(self) -> StoredCommand:
        token = self._next()
        part, step = normalize_step(token.value)
        return StoredCommand(location=self._location(token), part=part, step=step, command=self._parse_command())

    def _parse_command(self) -> Command:
        token = self._next()
        verb: Verb
        if token.type == END:
            verb = NoOp(location=self._location(token))
        elif token.type == ID and token.value == "Type":
            verb = self._parse_type(token)
        elif token.type == ID and token.value == "Set":
            verb = self._parse_set(token)
        elif token.type == ID and token.value == "Let":
            verb = self._parse_let(token)
        elif token.type == ID and token.value == "Do":
            verb = self._parse_do(token)
        elif token.type == ID:
            raise self._error(f"'{token.value}' is not a command", token)
        else:
            raise self._error(f"Expecting verb to start command, got '{token.value}'", token)

        condition: Optional[Expression] = None
        if self._check(ID, "if"):
            self._next()
            condition = self.parse_expression()
        return Command(location=self._location(token), verb=verb, condition=condition)

    def _parse_type(self, keyword: Token) -> Type:
        items: List[TextExpression] = []
        while True:
            token = self._peek()
            if token.type == STR:
                self._next()
                items.append(QuotedText(location=self._location(token), text=token.value[1:-1]))
            elif token.type in TYPE_OPERAND_STARTS:
                items.append(NumericText(location=self._location(token), expression=self.parse_expression()))
            else:
                raise self._error(f"Can't type '{token.value}'", token)
            if not self._match(COMMA):
                break
        return Type(location=self._location(keyword), items=items)

    def _parse_set(self, keyword: Token) -> Set:
        target = self._parse_variable()
        self._consume(OP, "after Set target", "=")
        return Set(location=self._location(keyword), target=target, expression=self.parse_expression())

    def _parse_let(self, keyword: Token) -> Let:
        name = self._consume(VAR, "function name")
        params: List[str] = []
        opening = self._peek()
        if opening.type == OPEN_BRACKET:
            self._next()
            while True:
                params.append(self._consume(VAR, "function argument name").value)
                if not self._match(COMMA):
                    break
            self._consume(CLOSE_BRACKET, "end of function arguments", BRACKET_PAIRS[opening.value])
        self._consume(OP, "after Let target", "=")
        return Let(location=self._location(keyword), name=name.value, params=params, body=self.parse_expression())

    def _parse_do(self, keyword: Token) -> Do:
        kind = self._next()
        if kind.type != ID or kind.value not in ("step", "part"):
            raise self._error("Expecting step or part after Do", kind)
        target = self._consume(NUM, f"{kind.value} number")
        if kind.value == "step":
            part, step = normalize_step(target.value)
            verb = Do(location=self._location(keyword), part=part, step=step)
        else:
            verb = Do(location=self._location(keyword), part=normalize_part(target.value))

        if self._check(ID, "for"):
            self._next()
            verb.for_variable = self._consume(VAR, "variable for range").value
            self._consume(OP, "= for range", "=")
            verb.for_range = self.parse_range(terminators=(".", "if"))
        elif self._match(COMMA):
            verb.times = self.parse_expression()
            self._consume(ID, "times after repeat count", "times")
        return verb

    # ---- expressions ----

    def parse_expression(self) -> Expression:
        return self._parse_binary(self._parse_unary(), 0)

    def _parse_unary(self) -> Expression:
        token = self._peek()
        if token.type == NUM:
            self._next()
            return Number(location=self._location(token), value=float(token.value))
        if token.type == VAR:
            return self._parse_reference()
        if token.type == OPEN_BRACKET:
            return self._parse_group()
        if token.type == OP and token.value in ("-", "+"):
            # Unary sign folds into a Binary against zero.
            self._next()
            zero = Number(location=self._location(token), value=0.0)
            return Binary(location=zero.location, operator=token.value, lhs=zero, rhs=self._parse_unary())
        raise self._error(f"Unexpected token in numeric expression: got '{token.value}'", token)

    def _parse_binary(self, lhs: Expression, min_prec: int) -> Expression:
        # Precedence climbing: https://en.wikipedia.org/wiki/Operator-precedence_parser
        token = self._peek()
        while token.type == OP and self._precedence(token) >= min_prec:
            operator = token.value
            current = self._precedence(token)
            self._next()
            rhs = self._parse_unary()
            token = self._peek()
            while token.type == OP and self._precedence(token) > current:
                rhs = self._parse_binary(rhs, self._precedence(token))
                token = self._peek()
            lhs = Binary(location=lhs.location, operator=operator, lhs=lhs, rhs=rhs)
        return lhs

    def _parse_group(self) -> Expression:
        opening = self._next()
        closing = BRACKET_PAIRS[opening.value]
        branches: List[ConditionBranch] = []
        result = self.parse_expression()
        while self._match(COLON):
            # What looked like a value was really a condition.
            branches.append(ConditionBranch(condition=result, result=self.parse_expression()))
            self._consume(SEMICOLON, "expression for default condition")
            result = self.parse_expression()
        self._consume(CLOSE_BRACKET, "closing bracket", closing)
        if branches:
            return Conditional(location=self._location(opening), branches=branches, default=result)
        return result

    def _parse_variable(self) -> Variable:
        token = self._peek()
        target = self._parse_reference()
        if not isinstance(target, Variable):
            raise self._error("Cannot assign to an iterated function argument", token)
        return target

    def _parse_reference(self) -> Expression:
        name = self._consume(VAR, "variable name")
        location = self._location(name)
        opening = self._peek()
        if opening.type != OPEN_BRACKET:
            return Variable(location=location, name=name.value)
        self._next()
        closing = BRACKET_PAIRS[opening.value]

        first = self.parse_expression()
        if (
            isinstance(first, Binary)
            and first.operator == "="
            and isinstance(first.lhs, Variable)
            and not first.lhs.indices
        ):
            return self._parse_iterated(name, first.lhs.name, first, closing)

        indices: List[Expression] = [first]
        while self._match(COMMA):
            indices.append(self.parse_expression())
        self._consume(CLOSE_BRACKET, "variable argument", closing)
        return Variable(location=location, name=name.value, indices=indices)

    def _parse_iterated(self, name: Token, variable: str, first: Binary, closing: str) -> Expression:
        """Finish ``f(v = ...``: an iterated argument once a ``(step)`` or the ``:`` body
        shows up, otherwise a plain argument list whose first entry is ``v = start``."""
        start = first.rhs
        terms: List[RangeTerm] = []
        arguments: List[Expression] = [first]
        stepped = False
        while True:
            term = self._range_term(start)
            stepped = stepped or isinstance(term, RangeStep)
            terms.append(term)
            if not self._match(COMMA):
                break
            start = self.parse_expression()
            arguments.append(start)
        token = self._peek()
        if token.type == COLON:
            self._next()
            body = self.parse_expression()
            self._consume(CLOSE_BRACKET, "closing bracket", closing)
            return Reduction(
                location=self._location(name),
                function=name.value,
                variable=variable,
                range=ValueRange(location=first.rhs.location, terms=terms),
                body=body,
            )
        if not stepped and token.type == CLOSE_BRACKET and token.value == closing:
            self._next()
            return Variable(location=self._location(name), name=name.value, indices=arguments)
        raise self._error(f"Malformed range: expected ':', got '{token.value}'", token)

    # ---- ranges ----

    def parse_range(self, terminators: Tuple[str, ...]) -> ValueRange:
        token = self._peek()
        terms: List[RangeTerm] = [self._range_term(self.parse_expression())]
        while self._match(COMMA):
            terms.append(self._range_term(self.parse_expression()))
        following = self._peek()
        if following.value not in terminators:
            expected = " or ".join(f"'{t}'" for t in terminators)
            raise self._error(f"Malformed range: expected {expected}, got '{following.value}'", following)
        return ValueRange(location=self._location(token), terms=terms)

    def _range_term(self, start: Expression) -> RangeTerm:
        opening = self._peek()
        if opening.type != OPEN_BRACKET:
            return RangeValue(value=start)
        self._next()
        step = self.parse_expression()
        self._consume(CLOSE_BRACKET, "end of step in range", BRACKET_PAIRS[opening.value])
        return RangeStep(start=start, step=step, end=self.parse_expression())

    # ---- helpers ----

    def _precedence(self, token: Token) -> int:
        try:
            return BINARY_PRECEDENCE[token.value]
        except KeyError:
            raise self._error(f"Unknown operator '{token.value}'", token)

    def _next(self) -> Token:
        return self.tokens.next()

    def _peek(self) -> Token:
        return self.tokens.peek()

    def _check(self, token_type: str, value: Optional[str] = None) -> bool:
        token = self._peek()
        return token.type == token_type and (value is None or token.value == value)

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self._next()
            return True
        return False

    def _consume(self, token_type: str, context: str, value: Optional[str] = None) -> Token:
        return self._expect(self._next(), token_type, context, value)

    def _expect(self, token: Token, token_type: str, context: str, value: Optional[str] = None) -> Token:
        if token.type != token_type or (value is not None and token.value != value):
            wanted = f"{token_type} '{value}'" if value is not None else token_type
            raise self._error(f"{context}: expected {wanted} but found {token.type} '{token.value}'", token)
        return token

    def _error(self, message: str, token: Token) -> JossParseError:
        return JossParseError(f"{message} at column {token.column}")

    def _location(self, token: Token) -> SourceLocation:
        return SourceLocation(file=self.filename, line=self.line, column=token.column, statement=self.source_line.strip())


def parse_line(text: str, *, filename: str = "<input>", line: int = 1) -> Union[Command, StoredCommand]:
    return Parser(tokenize(text, line), text, filename=filename, line=line).parse()
