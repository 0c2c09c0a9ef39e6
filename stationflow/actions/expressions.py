"""Input/output transforms through a pluggable expression evaluator."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from pydantic import JsonValue

from ..errors import ExpressionError


class ExpressionEvaluator(Protocol):
    """Pure function ``(expression, context) -> value``; may raise."""

    def __call__(self, expression: str, context: Mapping[str, Any]) -> Any: ...


def apply_expression(
    evaluator: Optional[ExpressionEvaluator],
    expression: Optional[str],
    payload: JsonValue,
    context: Mapping[str, Any],
) -> JsonValue:
    """Transform ``payload`` with ``expression`` evaluated against ``context``.

    An empty expression passes ``payload`` through, as does a ``None``
    result. Results that are not objects are wrapped as ``{"value": ...}``.
    Evaluation failures raise :class:`ExpressionError`.
    """
    if not expression or not expression.strip():
        return payload
    if evaluator is None:
        raise ExpressionError(
            f"No expression evaluator configured for {expression!r}"
        )
    try:
        result = evaluator(expression, context)
    except ExpressionError:
        raise
    except Exception as e:
        raise ExpressionError(f"Expression {expression!r} failed: {e}") from e
    if result is None:
        return payload
    if not isinstance(result, dict):
        return {"value": result}
    return result
