"""
Condition trees and their evaluation.

A tree is either a ConditionGroup (AND/OR over one or more operands) or a
leaf Condition comparing one event field against a literal. Trees are
parsed from their JSON form at the store boundary; evaluate() only ever
sees the typed nodes.

Evaluation is total: type mismatches, missing fields and unknown
operators all evaluate to False instead of raising, so an old rule
version with an operator this code no longer knows cannot break
evaluation of the others.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Union

from core.errors import MalformedRule


class ConditionOperator(str, Enum):
    EQUALS = "="
    NOT_EQUALS = "!="
    GREATER_THAN = ">"
    LESS_THAN = "<"
    GREATER_THAN_OR_EQUAL = ">="
    LESS_THAN_OR_EQUAL = "<="
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    CONTAINS = "contains"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class _Missing:
    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


MISSING = _Missing()

Primitive = Union[str, int, float, bool, None]
LeafValue = Union[Primitive, list]

_VALUELESS = {ConditionOperator.EXISTS, ConditionOperator.NOT_EXISTS}


@dataclass
class Condition:
    field: str
    op: Union[ConditionOperator, str]
    value: LeafValue = None

    def to_dict(self) -> dict:
        op = self.op.value if isinstance(self.op, ConditionOperator) else self.op
        return {"field": self.field, "op": op, "value": self.value}


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    operands: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"operator": self.operator.value, "operands": [o.to_dict() for o in self.operands]}


ConditionNode = Union[Condition, ConditionGroup]


def parse_condition(data: Any, strict: bool = True) -> ConditionNode:
    """Build a typed tree from its JSON form.

    Accepts the canonical shapes ``{"operator", "operands"}`` and
    ``{"field", "op", "value"}`` as well as the older
    ``{"type": "AND"|"OR", "children"}`` / ``{"type": "CONDITION",
    "field", "operator", "value"}`` shapes.

    With strict=True (rule creation) anything malformed raises
    MalformedRule. With strict=False (reading stored rules) unknown
    operators and shapes are kept so that they evaluate to False.
    """
    if not isinstance(data, dict):
        if strict:
            raise MalformedRule(f"Condition must be an object, got {type(data).__name__}")
        return Condition(field="", op="")

    if "type" in data and "operands" not in data and "op" not in data:
        data = _from_legacy(data)

    if "operands" in data or ("operator" in data and "field" not in data):
        return _parse_group(data, strict)
    if "field" in data:
        return _parse_leaf(data, strict)

    if strict:
        raise MalformedRule(f"Unrecognised condition node: {sorted(data)}")
    return Condition(field="", op="")


def _from_legacy(data: dict) -> dict:
    kind = str(data.get("type", "")).upper()
    if kind in ("AND", "OR"):
        return {"operator": kind, "operands": data.get("children") or []}
    return {"field": data.get("field"), "op": data.get("operator"), "value": data.get("value")}


def _parse_group(data: dict, strict: bool) -> ConditionNode:
    try:
        operator = LogicalOperator(data.get("operator"))
    except ValueError:
        if strict:
            raise MalformedRule(f"Unknown logical operator: {data.get('operator')!r}") from None
        return Condition(field="", op=str(data.get("operator")))

    operands = data.get("operands")
    if not isinstance(operands, list):
        if strict:
            raise MalformedRule("Condition group operands must be a list")
        operands = []
    if strict and not operands:
        raise MalformedRule(f"{operator.value} group needs at least one operand")
    return ConditionGroup(operator=operator, operands=[parse_condition(o, strict) for o in operands])


def _parse_leaf(data: dict, strict: bool) -> Condition:
    path = data.get("field")
    if not isinstance(path, str) or not path:
        if strict:
            raise MalformedRule("Condition field must be a non-empty dot path")
        path = ""

    raw_op = data.get("op")
    try:
        op = ConditionOperator(raw_op)
    except ValueError:
        if strict:
            raise MalformedRule(f"Unknown condition operator: {raw_op!r}") from None
        op = str(raw_op)

    value = data.get("value")
    if strict:
        _validate_value(op, value)
    return Condition(field=path, op=op, value=value)


def _is_primitive(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def _validate_value(op: ConditionOperator, value: Any) -> None:
    if op in _VALUELESS:
        return
    if op in (ConditionOperator.IN, ConditionOperator.NOT_IN):
        if not isinstance(value, list) or not all(_is_primitive(v) for v in value):
            raise MalformedRule(f"Operator {op.value!r} needs a list of primitive values")
        return
    if not _is_primitive(value):
        raise MalformedRule(f"Operator {op.value!r} needs a primitive value, got {type(value).__name__}")


def resolve_field(event: Any, path: str) -> Any:
    """Follow a dot path through nested dicts (and list indexes).

    Returns MISSING as soon as a segment does not resolve.
    """
    current = event
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _strict_equals(left: Any, right: Any) -> bool:
    if left is MISSING or right is MISSING:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _compare(check):
    def apply(actual, expected):
        return _is_number(actual) and _is_number(expected) and check(actual, expected)
    return apply


def _member(actual, expected) -> bool:
    return isinstance(expected, list) and any(_strict_equals(actual, item) for item in expected)


def _not_member(actual, expected) -> bool:
    return isinstance(expected, list) and not any(_strict_equals(actual, item) for item in expected)


def _present(actual) -> bool:
    return actual is not MISSING and actual is not None


_OPERATORS = {
    ConditionOperator.EQUALS: _strict_equals,
    ConditionOperator.NOT_EQUALS: lambda a, e: not _strict_equals(a, e),
    ConditionOperator.GREATER_THAN: _compare(lambda a, e: a > e),
    ConditionOperator.LESS_THAN: _compare(lambda a, e: a < e),
    ConditionOperator.GREATER_THAN_OR_EQUAL: _compare(lambda a, e: a >= e),
    ConditionOperator.LESS_THAN_OR_EQUAL: _compare(lambda a, e: a <= e),
    ConditionOperator.IN: _member,
    ConditionOperator.NOT_IN: _not_member,
    ConditionOperator.EXISTS: lambda a, e: _present(a),
    ConditionOperator.NOT_EXISTS: lambda a, e: not _present(a),
    ConditionOperator.CONTAINS: lambda a, e: isinstance(a, str) and isinstance(e, str) and e in a,
}


def evaluate(node: ConditionNode, event: dict) -> bool:
    if isinstance(node, ConditionGroup):
        results = (evaluate(operand, event) for operand in node.operands)
        if node.operator == LogicalOperator.AND:
            return all(results)
        return any(results)

    apply = _OPERATORS.get(node.op) if isinstance(node.op, ConditionOperator) else None
    if apply is None or not node.field:
        return False
    return apply(resolve_field(event, node.field), node.value)
