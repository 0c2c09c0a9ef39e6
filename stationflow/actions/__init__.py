"""Step executors used by the activity dispatcher."""

from .expressions import ExpressionEvaluator, apply_expression
from .http import ActionExecutor, HttpActionExecutor, HttpResult

__all__ = [
    "ActionExecutor",
    "ExpressionEvaluator",
    "HttpActionExecutor",
    "HttpResult",
    "apply_expression",
]
