"""Formula parsing and evaluation.

Formulas are parsed once into a small AST and evaluated against a variable
environment. Nothing is ever handed to Python's ``eval``.

Grammar (lowest to highest precedence)::

    expr        := logical_or ( "?" expr ":" expr )?
    logical_or  := logical_and ( ("||" | "or") logical_and )*
    logical_and := comparison ( ("&&" | "and") comparison )*
    comparison  := additive ( ("<" | "<=" | ">" | ">=" | "==" | "!=") additive )?
    additive    := term ( ("+" | "-") term )*
    term        := unary ( ("*" | "/") unary )*
    unary       := ("-" | "+" | "!" | "not") unary | primary
    primary     := NUMBER | "{" NAME "}" | NAME | NAME "(" args ")" | "(" expr ")"

Variables may be written bare (``hours * rate``) or braced
(``{hours} * {rate}``). Comparisons and logical operators yield 1 or 0.
Supported functions: ``min``, ``max``, ``abs``, ``round`` and ``if``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, DecimalException, InvalidOperation
from typing import Any, Mapping

from pay_structure_engine.calculators.money import ZERO, to_decimal
from pay_structure_engine.errors import ConfigurationError, EvaluationError

ONE = Decimal("1")
MAX_ROUND_PLACES = 10

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?|\.\d+)
  | (?P<braced>\{\s*[A-Za-z_][A-Za-z0-9_.]*\s*\})
  | (?P<name>[A-Za-z_][A-Za-z0-9_.]*)
  | (?P<op><=|>=|==|!=|&&|\|\||[-+*/()<>!?:,])
    """,
    re.VERBOSE,
)

_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}
_KEYWORD_LITERALS = {"true": ONE, "false": ZERO}


@dataclass(frozen=True)
class Token:
    kind: str  # number | name | op | end
    text: str
    position: int


def tokenize(source: str) -> list[Token]:
    """Split a formula into tokens."""
    tokens: list[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise ConfigurationError(
                f"Unexpected character {source[pos]!r} at position {pos} in formula '{source}'"
            )
        kind = match.lastgroup
        text = match.group()
        if kind == "braced":
            tokens.append(Token("name", text.strip("{} \t"), pos))
        elif kind == "name" and text.lower() in _KEYWORD_OPS:
            tokens.append(Token("op", _KEYWORD_OPS[text.lower()], pos))
        elif kind != "ws":
            tokens.append(Token(kind, text, pos))
        pos = match.end()
    tokens.append(Token("end", "", len(source)))
    return tokens


# ===== AST =====


def _truthy(value: Decimal) -> bool:
    return value != 0


def _as_flag(value: bool) -> Decimal:
    return ONE if value else ZERO


class Node:
    """Base class for expression nodes."""

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        raise NotImplementedError

    def variables(self) -> frozenset[str]:
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(Node):
    value: Decimal

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        return self.value

    def variables(self) -> frozenset[str]:
        return frozenset()


@dataclass(frozen=True)
class VariableRef(Node):
    name: str

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        if self.name not in env:
            raise EvaluationError(f"Undefined variable '{self.name}'")
        value = env[self.name]
        if value is None:
            raise EvaluationError(f"Variable '{self.name}' has no value")
        try:
            return to_decimal(value)
        except TypeError as e:
            raise EvaluationError(f"Variable '{self.name}' is not numeric: {value!r}") from e

    def variables(self) -> frozenset[str]:
        return frozenset({self.name})


@dataclass(frozen=True)
class UnaryOp(Node):
    op: str
    operand: Node

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        value = self.operand.evaluate(env)
        if self.op == "-":
            return -value
        if self.op == "!":
            return _as_flag(not _truthy(value))
        return value

    def variables(self) -> frozenset[str]:
        return self.operand.variables()


@dataclass(frozen=True)
class BinaryOp(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        # Logical operators short-circuit
        if self.op == "&&":
            return _as_flag(_truthy(self.left.evaluate(env)) and _truthy(self.right.evaluate(env)))
        if self.op == "||":
            return _as_flag(_truthy(self.left.evaluate(env)) or _truthy(self.right.evaluate(env)))

        left = self.left.evaluate(env)
        right = self.right.evaluate(env)

        if self.op == "+":
            return left + right
        if self.op == "-":
            return left - right
        if self.op == "*":
            return left * right
        if self.op == "/":
            if right == 0:
                raise EvaluationError("Division by zero")
            return left / right
        if self.op == "<":
            return _as_flag(left < right)
        if self.op == "<=":
            return _as_flag(left <= right)
        if self.op == ">":
            return _as_flag(left > right)
        if self.op == ">=":
            return _as_flag(left >= right)
        if self.op == "==":
            return _as_flag(left == right)
        if self.op == "!=":
            return _as_flag(left != right)
        raise EvaluationError(f"Unknown operator '{self.op}'")

    def variables(self) -> frozenset[str]:
        return self.left.variables() | self.right.variables()


@dataclass(frozen=True)
class Conditional(Node):
    condition: Node
    if_true: Node
    if_false: Node

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        if _truthy(self.condition.evaluate(env)):
            return self.if_true.evaluate(env)
        return self.if_false.evaluate(env)

    def variables(self) -> frozenset[str]:
        return self.condition.variables() | self.if_true.variables() | self.if_false.variables()


@dataclass(frozen=True)
class FunctionCall(Node):
    name: str
    args: tuple[Node, ...]

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        values = [arg.evaluate(env) for arg in self.args]
        if self.name == "min":
            return min(values)
        if self.name == "max":
            return max(values)
        if self.name == "abs":
            return abs(values[0])
        if self.name == "round":
            places = values[1] if len(values) > 1 else ZERO
            if places != places.to_integral_value() or not 0 <= places <= MAX_ROUND_PLACES:
                raise EvaluationError(
                    f"round() places must be a whole number from 0 to {MAX_ROUND_PLACES}, "
                    f"got {places}"
                )
            try:
                return values[0].quantize(
                    Decimal(1).scaleb(-int(places)), rounding=ROUND_HALF_UP
                )
            except InvalidOperation as e:
                raise EvaluationError(f"Cannot round {values[0]} to {places} places") from e
        raise EvaluationError(f"Unknown function '{self.name}'")

    def variables(self) -> frozenset[str]:
        names: frozenset[str] = frozenset()
        for arg in self.args:
            names |= arg.variables()
        return names


# name -> (min args, max args)
_FUNCTIONS: dict[str, tuple[int, int]] = {
    "min": (1, 64),
    "max": (1, 64),
    "abs": (1, 1),
    "round": (1, 2),
    "if": (3, 3),
}


# ===== Parser =====


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, *ops: str) -> Token | None:
        if self.current.kind == "op" and self.current.text in ops:
            return self._advance()
        return None

    def _expect(self, op: str) -> None:
        if self._accept(op) is None:
            self._fail(f"expected '{op}'")

    def _fail(self, reason: str) -> None:
        token = self.current
        found = "end of formula" if token.kind == "end" else repr(token.text)
        raise ConfigurationError(
            f"Invalid formula '{self.source}': {reason}, found {found} at position {token.position}"
        )

    def parse(self) -> Node:
        if self.current.kind == "end":
            raise ConfigurationError("Formula is empty")
        node = self._expression()
        if self.current.kind != "end":
            self._fail("unexpected trailing input")
        return node

    def _expression(self) -> Node:
        condition = self._logical_or()
        if self._accept("?"):
            if_true = self._expression()
            self._expect(":")
            if_false = self._expression()
            return Conditional(condition, if_true, if_false)
        return condition

    def _logical_or(self) -> Node:
        node = self._logical_and()
        while self._accept("||"):
            node = BinaryOp("||", node, self._logical_and())
        return node

    def _logical_and(self) -> Node:
        node = self._comparison()
        while self._accept("&&"):
            node = BinaryOp("&&", node, self._comparison())
        return node

    def _comparison(self) -> Node:
        node = self._additive()
        token = self._accept("<", "<=", ">", ">=", "==", "!=")
        if token is not None:
            node = BinaryOp(token.text, node, self._additive())
        return node

    def _additive(self) -> Node:
        node = self._term()
        while True:
            token = self._accept("+", "-")
            if token is None:
                return node
            node = BinaryOp(token.text, node, self._term())

    def _term(self) -> Node:
        node = self._unary()
        while True:
            token = self._accept("*", "/")
            if token is None:
                return node
            node = BinaryOp(token.text, node, self._unary())

    def _unary(self) -> Node:
        token = self._accept("-", "+", "!")
        if token is not None:
            return UnaryOp(token.text, self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self.current

        if token.kind == "number":
            self._advance()
            try:
                return Literal(Decimal(token.text))
            except InvalidOperation:
                self._fail("invalid number")

        if token.kind == "name":
            self._advance()
            lowered = token.text.lower()
            if self._accept("("):
                return self._call(lowered, token)
            if lowered in _KEYWORD_LITERALS:
                return Literal(_KEYWORD_LITERALS[lowered])
            return VariableRef(token.text)

        if self._accept("("):
            node = self._expression()
            self._expect(")")
            return node

        self._fail("expected a number, variable or '('")
        raise AssertionError("unreachable")

    def _call(self, name: str, token: Token) -> Node:
        if name not in _FUNCTIONS:
            raise ConfigurationError(
                f"Unknown function '{token.text}' in formula '{self.source}'"
            )
        args: list[Node] = []
        if not self._accept(")"):
            args.append(self._expression())
            while self._accept(","):
                args.append(self._expression())
            self._expect(")")

        low, high = _FUNCTIONS[name]
        if not low <= len(args) <= high:
            raise ConfigurationError(
                f"Function '{name}' takes {low}-{high} arguments, got {len(args)}"
            )
        if name == "if":
            return Conditional(args[0], args[1], args[2])
        return FunctionCall(name, tuple(args))


@dataclass(frozen=True)
class Expression:
    """A parsed formula."""

    source: str
    root: Node = field(compare=False)
    names: frozenset[str] = field(compare=False, default=frozenset())

    @property
    def variables(self) -> frozenset[str]:
        """Every variable name referenced by the formula."""
        return self.names

    def evaluate(self, env: Mapping[str, Any]) -> Decimal:
        """Evaluate against ``env``; every failure is an EvaluationError."""
        try:
            return self.root.evaluate(env)
        except RecursionError as e:
            raise EvaluationError(f"Formula '{self.source}' is nested too deeply") from e
        except DecimalException as e:
            raise EvaluationError(
                f"Arithmetic error in formula '{self.source}': {type(e).__name__}"
            ) from e


def parse_formula(source: str) -> Expression:
    """Parse formula text, raising ConfigurationError on syntax errors."""
    if not isinstance(source, str):
        raise ConfigurationError("Formula must be a string")
    try:
        root = _Parser(source).parse()
        names = root.variables()
    except RecursionError as e:
        raise ConfigurationError("Formula is nested too deeply") from e
    return Expression(source=source, root=root, names=names)


def extract_variables(source: str) -> list[str]:
    """Sorted unique variable names referenced by a formula."""
    return sorted(parse_formula(source).variables)


def evaluate_formula(source: str, variables: Mapping[str, Any]) -> Decimal:
    """Parse and evaluate in one step."""
    return parse_formula(source).evaluate(variables)


# ===== Validation and templates =====


@dataclass(frozen=True)
class FormulaValidation:
    valid: bool
    message: str
    variables: tuple[str, ...] = ()
    result: Decimal | None = None


def validate_formula(
    source: str, variables: Mapping[str, Any] | None = None
) -> FormulaValidation:
    """Check syntax and, when sample variables are given, evaluate.

    Returns a result object rather than raising, so callers (authoring UIs)
    can show the message directly.
    """
    try:
        expression = parse_formula(source)
    except ConfigurationError as e:
        return FormulaValidation(valid=False, message=e.message)

    names = tuple(sorted(expression.variables))
    if variables is None:
        return FormulaValidation(valid=True, message="Formula is valid", variables=names)

    missing = [name for name in names if name not in variables]
    if missing:
        return FormulaValidation(
            valid=False,
            message=f"Missing variables: {', '.join(missing)}",
            variables=names,
        )
    try:
        result = expression.evaluate(variables)
    except EvaluationError as e:
        return FormulaValidation(valid=False, message=e.message, variables=names)

    return FormulaValidation(
        valid=True,
        message="Formula is valid and evaluates successfully",
        variables=names,
        result=result,
    )


@dataclass(frozen=True)
class FormulaTemplate:
    name: str
    formula: str
    description: str
    variables: tuple[str, ...]
    example: Mapping[str, Decimal]


FORMULA_TEMPLATES: tuple[FormulaTemplate, ...] = (
    FormulaTemplate(
        name="Hourly Pay",
        formula="{hours} * {rate}",
        description="Hours worked multiplied by hourly rate",
        variables=("hours", "rate"),
        example={"hours": Decimal("160"), "rate": Decimal("25")},
    ),
    FormulaTemplate(
        name="Overtime Pay",
        formula="{overtimeHours} * {rate} * 1.5",
        description="Overtime hours at time and a half",
        variables=("overtimeHours", "rate"),
        example={"overtimeHours": Decimal("10"), "rate": Decimal("25")},
    ),
    FormulaTemplate(
        name="Commission",
        formula="{sales} * {commissionRate}",
        description="Sales multiplied by commission rate",
        variables=("sales", "commissionRate"),
        example={"sales": Decimal("10000"), "commissionRate": Decimal("0.05")},
    ),
    FormulaTemplate(
        name="Percentage of Base",
        formula="{baseSalary} * {percentage} / 100",
        description="Percentage of base salary",
        variables=("baseSalary", "percentage"),
        example={"baseSalary": Decimal("3000"), "percentage": Decimal("10")},
    ),
    FormulaTemplate(
        name="Capped Bonus",
        formula="min({sales} * {bonusRate}, {bonusCap})",
        description="Sales bonus limited to a maximum amount",
        variables=("sales", "bonusRate", "bonusCap"),
        example={
            "sales": Decimal("50000"),
            "bonusRate": Decimal("0.02"),
            "bonusCap": Decimal("750"),
        },
    ),
    FormulaTemplate(
        name="Attendance Bonus",
        formula="{daysAbsent} == 0 ? {bonusAmount} : 0",
        description="Fixed bonus paid only with perfect attendance",
        variables=("daysAbsent", "bonusAmount"),
        example={"daysAbsent": Decimal("0"), "bonusAmount": Decimal("150")},
    ),
)
