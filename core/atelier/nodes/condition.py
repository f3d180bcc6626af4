"""
Condition node - selects which labelled edges the engine follows.

Config:
    variable  dotted path (``form.hasModel``) or a single placeholder
    operator  exists | equals | not_equals | truthy | in   (default truthy)
    value     operand for equals / not_equals / in

Publishes ``{"result": bool, "branch": "true" | "false"}``.
"""

from typing import Any

from atelier.errors import NodeErrorKind
from atelier.graph.node import NodeContext, NodeKind, NodeProtocol, NodeResult
from atelier.graph.resolver import PLACEHOLDER_PATTERN, is_missing

OPERATORS = ("exists", "equals", "not_equals", "truthy", "in")
_NEEDS_VALUE = ("equals", "not_equals", "in")


def _variable_path(raw: Any) -> str | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    match = PLACEHOLDER_PATTERN.fullmatch(raw.strip())
    return match.group(1).strip() if match else raw.strip()


def _loosely_equal(left: Any, right: Any) -> bool:
    if left == right:
        return True
    if isinstance(left, bool) or isinstance(right, bool):
        return str(left).lower() == str(right).lower()
    return str(left) == str(right)


def evaluate(operator: str, actual: Any, expected: Any) -> bool:
    missing = is_missing(actual)
    if operator == "exists":
        return not missing and actual is not None
    if operator == "truthy":
        return not missing and bool(actual)
    if missing:
        return operator == "not_equals"
    if operator == "equals":
        return _loosely_equal(actual, expected)
    if operator == "not_equals":
        return not _loosely_equal(actual, expected)
    if operator == "in":
        if isinstance(expected, str):
            return str(actual) in expected
        if isinstance(expected, (list, tuple, set)):
            return any(_loosely_equal(actual, item) for item in expected)
        return False
    raise ValueError(f"Unknown operator '{operator}'")


class ConditionNode(NodeProtocol):
    kind = NodeKind.CONDITION

    def config_errors(self, config: dict[str, Any]) -> list[str]:
        errors = []
        if _variable_path(config.get("variable")) is None:
            errors.append("Condition node requires a 'variable' path")
        operator = config.get("operator", "truthy")
        if operator not in OPERATORS:
            errors.append(f"Unknown operator '{operator}' (expected one of {', '.join(OPERATORS)})")
        elif operator in _NEEDS_VALUE and "value" not in config:
            errors.append(f"Operator '{operator}' requires a 'value'")
        return errors

    async def execute(self, ctx: NodeContext) -> NodeResult:
        path = _variable_path(ctx.node.config.get("variable"))
        if path is None or ctx.resolver is None:
            return NodeResult.fail(
                NodeErrorKind.INVALID_CONFIG, "Condition has no variable to test"
            )

        operator = ctx.config.get("operator", "truthy")
        actual = ctx.resolver.lookup(path)
        try:
            result = evaluate(operator, actual, ctx.config.get("value"))
        except ValueError as e:
            return NodeResult.fail(NodeErrorKind.INVALID_CONFIG, str(e))

        return NodeResult.ok(
            {"result": result, "branch": "true" if result else "false"},
            metadata={"variable": path, "operator": operator},
        )
