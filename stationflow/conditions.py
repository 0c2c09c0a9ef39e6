"""Evaluation of ``<dotted.path> <op> <literal>`` predicates.

Only equality is defined. Other comparisons can be plugged in through the
``operators`` table of :class:`ConditionEvaluator`; their semantics are not
decided here.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Mapping, Optional

logger = logging.getLogger(__name__)

_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


class _Undefined:
    """Result of resolving a path that does not exist in the context."""

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False


UNDEFINED: Any = _Undefined()


def resolve_path(context: Any, path: str) -> Any:
    """Walk ``path`` into ``context``; return ``UNDEFINED`` if any segment is missing."""
    value = context
    for segment in path.split("."):
        if isinstance(value, Mapping) and segment in value:
            value = value[segment]
        elif isinstance(value, list) and segment.isdecimal() and int(segment) < len(value):
            value = value[int(segment)]
        else:
            return UNDEFINED
    return value


def parse_literal(raw: str) -> Any:
    """Number if numeric, unquoted text if quoted, otherwise the raw string."""
    raw = raw.strip()
    if _NUMBER.match(raw):
        return float(raw) if "." in raw else int(raw)
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return raw[1:-1]
    return raw


def _equals(left: Any, right: Any) -> bool:
    # True == 1 in Python; keep booleans and numbers apart
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


EQUALITY: dict[str, Callable[[Any, Any], bool]] = {"==": _equals, "=": _equals}


class ConditionEvaluator:
    """Pure evaluator for simple comparison predicates."""

    def __init__(
        self, operators: Optional[Mapping[str, Callable[[Any, Any], bool]]] = None
    ) -> None:
        self._operators = dict(operators or EQUALITY)
        # longest symbols first so "==" wins over "="
        symbols = sorted(self._operators, key=len, reverse=True)
        ops = "|".join(re.escape(s) for s in symbols)
        self._pattern = re.compile(rf"^\s*([\w.\-]+)\s*({ops})\s*(.+?)\s*$")

    def evaluate(self, expr: Optional[str], context: Any) -> bool:
        """Return whether ``expr`` holds for ``context``.

        Malformed expressions and missing paths evaluate to ``False``.
        """
        match = self._pattern.match(expr or "")
        if not match:
            if expr:
                logger.warning(f"Unparseable condition treated as false: {expr!r}")
            return False
        path, symbol, raw = match.groups()
        value = resolve_path(context, path)
        if value is UNDEFINED:
            return False
        try:
            return bool(self._operators[symbol](value, parse_literal(raw)))
        except TypeError:
            return False

    __call__ = evaluate


__all__ = [
    "ConditionEvaluator",
    "EQUALITY",
    "UNDEFINED",
    "parse_literal",
    "resolve_path",
]
