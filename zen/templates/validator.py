"""Checks caller-supplied variables against an asset's declared variable schema."""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from zen.logging import get_logger
from zen.models import VariableSpec

logger = get_logger("templates")

_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "str": lambda v: isinstance(v, str),
    "int": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "float": lambda v: isinstance(v, float),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "bool": lambda v: isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "list": lambda v: isinstance(v, (list, tuple)),
    "array": lambda v: isinstance(v, (list, tuple)),
    "map": lambda v: isinstance(v, Mapping),
    "object": lambda v: isinstance(v, Mapping),
    "dict": lambda v: isinstance(v, Mapping),
    "any": lambda v: True,
}


@dataclass(frozen=True)
class VariableProblem:
    variable: str
    code: str  # "missing", "type", "constraint"
    message: str

    def __str__(self) -> str:
        return self.message


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _bounds(rule: str) -> tuple[float, float]:
    low, sep, high = rule.partition("-")
    if not sep:
        return float(low), float(low)
    return float(low), float(high)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None


def check_type(value: Any, expected: str) -> bool:
    check = _TYPE_CHECKS.get(expected.lower())
    if check is None:
        return type(value).__name__ == expected
    if value is None:
        return expected.lower() == "any"
    return check(value)


def check_constraint(name: str, value: Any, constraint: str) -> VariableProblem | None:
    """Apply one ``kind:rule`` constraint; returns the problem or ``None``."""
    kind, sep, rule = constraint.partition(":")
    kind, rule = kind.strip().lower(), rule.strip()
    if not sep:
        return VariableProblem(name, "constraint", f"invalid constraint format: {constraint}")

    if kind in ("regex", "regexp"):
        try:
            pattern = re.compile(rule)
        except re.error:
            return VariableProblem(name, "constraint", f"invalid regex pattern: {rule}")
        if not pattern.search(str(value)):
            return VariableProblem(name, "constraint", f"variable '{name}' does not match pattern '{rule}'")
        return None

    if kind in ("range", "min", "max"):
        number = _as_number(value)
        if number is None:
            return VariableProblem(name, "constraint", f"cannot check {kind} of non-numeric '{name}'")
        try:
            if kind == "range":
                low, high = _bounds(rule)
            elif kind == "min":
                low, high = float(rule), float("inf")
            else:
                low, high = float("-inf"), float(rule)
        except ValueError:
            return VariableProblem(name, "constraint", f"invalid {kind} rule: {rule}")
        if not low <= number <= high:
            return VariableProblem(name, "constraint", f"variable '{name}' value {value} is outside {kind} {rule}")
        return None

    if kind in ("length", "len"):
        try:
            low, high = _bounds(rule)
        except ValueError:
            return VariableProblem(name, "constraint", f"invalid length rule: {rule}")
        try:
            size = len(value)
        except TypeError:
            size = len(str(value))
        if not low <= size <= high:
            return VariableProblem(name, "constraint", f"variable '{name}' length {size} is outside {rule}")
        return None

    if kind in ("enum", "oneof"):
        options = [option.strip() for option in re.split(r"[|,]", rule)]
        if str(value) not in options:
            return VariableProblem(name, "constraint", f"variable '{name}' must be one of: {', '.join(options)}")
        return None

    return VariableProblem(name, "constraint", f"unsupported constraint type: {kind}")


def validate(variables: Mapping[str, Any], specs: Iterable[VariableSpec]) -> list[VariableProblem]:
    """Required, type and constraint checks, in declaration order."""
    problems: list[VariableProblem] = []
    for spec in specs:
        if spec.name not in variables or _is_empty(variables[spec.name]):
            if spec.required:
                problems.append(
                    VariableProblem(spec.name, "missing", f"required variable '{spec.name}' is missing or empty")
                )
            continue
        value = variables[spec.name]
        if not check_type(value, spec.type):
            problems.append(
                VariableProblem(
                    spec.name,
                    "type",
                    f"variable '{spec.name}' has invalid type: expected {spec.type}, got {type(value).__name__}",
                )
            )
            continue
        if spec.validation:
            problem = check_constraint(spec.name, value, spec.validation)
            if problem is not None:
                problems.append(problem)
    logger.debug("variable validation found %d problem(s)", len(problems))
    return problems


def apply_defaults(variables: Mapping[str, Any], specs: Iterable[VariableSpec]) -> dict[str, Any]:
    """Copy of ``variables`` with schema defaults filled in for absent names."""
    result = dict(variables)
    for spec in specs:
        if spec.name not in result and spec.default is not None:
            result[spec.name] = spec.default
    return result
