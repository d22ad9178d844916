"""Control-flow nodes: trigger, condition, ab_test and variable."""

import hashlib
import operator
from typing import Any, Optional

from ..core.logging import get_logger
from ..core.outcomes import Continue, Fail, Outcome
from ..models.core import NodeType
from ..models.node_configs import (
    AbTestConfig,
    AbTestVariant,
    ConditionConfig,
    ConditionRule,
    TriggerConfig,
    VariableConfig,
)
from .base import NodeHandler, NodeRuntime

logger = get_logger(__name__)


class TriggerNode(NodeHandler):
    node_type = NodeType.TRIGGER

    def execute(self, config: TriggerConfig, runtime: NodeRuntime) -> Outcome:
        return Continue()


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _equals(left: Any, right: Any) -> bool:
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return _as_text(left) == _as_text(right)


def _numeric(compare):
    def check(left: Any, right: Any) -> bool:
        left_num, right_num = _as_number(left), _as_number(right)
        if left_num is None or right_num is None:
            return False
        return compare(left_num, right_num)
    return check


OPERATORS = {
    "==": _equals,
    "equals": _equals,
    "!=": lambda left, right: not _equals(left, right),
    "not_equals": lambda left, right: not _equals(left, right),
    ">": _numeric(operator.gt),
    "greater_than": _numeric(operator.gt),
    "<": _numeric(operator.lt),
    "less_than": _numeric(operator.lt),
    ">=": _numeric(operator.ge),
    "greater_equal": _numeric(operator.ge),
    "<=": _numeric(operator.le),
    "less_equal": _numeric(operator.le),
    "contains": lambda left, right: _as_text(right) in _as_text(left),
    "not_contains": lambda left, right: _as_text(right) not in _as_text(left),
    "starts_with": lambda left, right: _as_text(left).startswith(_as_text(right)),
    "ends_with": lambda left, right: _as_text(left).endswith(_as_text(right)),
}


class ConditionNode(NodeHandler):
    """Evaluate ``field operator value`` rules and exit on ``yes`` or ``no``."""

    node_type = NodeType.CONDITION
    render_config = False

    def evaluate(self, rule: ConditionRule, runtime: NodeRuntime) -> bool:
        field = rule.field.strip()
        if "{{" in field:
            actual = runtime.context.render(field)
        else:
            actual = runtime.context.get(field, "")
        expected = runtime.context.render_value(rule.value)

        check = OPERATORS.get(rule.operator.strip().lower())
        if check is None:
            logger.warning(f"Condition node {runtime.node.id}: unknown operator '{rule.operator}'")
            return False
        result = check(actual, expected)
        logger.debug(f"[Condition] {field} ({actual!r}) {rule.operator} {expected!r} = {result}")
        return result

    def execute(self, config: ConditionConfig, runtime: NodeRuntime) -> Outcome:
        results = [self.evaluate(rule, runtime) for rule in config.rules()]
        passed = all(results) if config.logic == "ALL" else any(results)
        return Continue("yes" if passed else "no")


def pick_variant(config: AbTestConfig, point: float) -> AbTestVariant:
    """Select a variant for ``point`` in [0, 1) by cumulative normalized weight."""
    variants = config.variants
    total = sum(variant.weight for variant in variants)
    weights = [variant.weight for variant in variants] if total > 0 else [1.0] * len(variants)
    total = sum(weights)

    target = point * total
    cumulative = 0.0
    for variant, weight in zip(variants, weights):
        cumulative += weight
        if target < cumulative:
            return variant
    return variants[-1]


def sticky_point(value: Any, node_id: str) -> float:
    digest = hashlib.sha256(f"{value}:{node_id}".encode("utf-8")).hexdigest()
    return int(digest[:12], 16) / float(16 ** 12)


class AbTestNode(NodeHandler):
    """Split traffic between variants by weight."""

    node_type = NodeType.AB_TEST

    def execute(self, config: AbTestConfig, runtime: NodeRuntime) -> Outcome:
        sticky_value = runtime.context.get(config.sticky_key) if config.sticky_key else None
        if sticky_value not in (None, ""):
            point = sticky_point(sticky_value, runtime.node.id)
        else:
            point = runtime.rng.random()

        variant = pick_variant(config, point)
        runtime.context.set(f"ab_{runtime.node.id}", variant.id)
        logger.debug(f"[AB-Test] node {runtime.node.id} picked variant {variant.id}")

        if runtime.has_handle(variant.id):
            return Continue(variant.id)
        # Older graphs wire variants by edge label instead of handle.
        for edge in runtime.outgoing:
            if variant.label and edge.label == variant.label:
                return Continue(edge.source_handle)
        return Continue(variant.id)


MATH_OPERATORS = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": operator.mod,
}


class VariableNode(NodeHandler):
    """Set a variable, or store the result of simple arithmetic."""

    node_type = NodeType.VARIABLE

    def _operand(self, raw: Any, runtime: NodeRuntime) -> Optional[float]:
        number = _as_number(raw)
        if number is not None:
            return number
        if isinstance(raw, str) and raw.strip():
            return _as_number(runtime.context.get(raw.strip()))
        return None

    def execute(self, config: VariableConfig, runtime: NodeRuntime) -> Outcome:
        name = config.variable.strip()
        if not name:
            return Fail(f"Variable node {runtime.node.id} has no variable name")

        if config.operation == "set":
            runtime.context.set(name, config.value)
            return Continue()

        math_op = MATH_OPERATORS.get(config.operator.strip())
        if math_op is None:
            return Fail(f"Unsupported math operator '{config.operator}'")

        left = self._operand(config.operand1, runtime)
        right = self._operand(config.operand2, runtime)
        if left is None or right is None:
            return Fail(
                f"Variable node {runtime.node.id}: operands {config.operand1!r} and "
                f"{config.operand2!r} must be numbers or numeric variables"
            )
        if right == 0 and config.operator.strip() in ("/", "%"):
            return Fail(f"Variable node {runtime.node.id}: division by zero")

        result = math_op(left, right)
        if float(result).is_integer():
            result = int(result)
        runtime.context.set(name, result)
        return Continue()
