"""Condition evaluator tests."""

import pytest

from stationflow.conditions import (
    UNDEFINED,
    ConditionEvaluator,
    parse_literal,
    resolve_path,
)


@pytest.fixture
def evaluate():
    return ConditionEvaluator()


def test_resolve_path_walks_dicts_and_lists():
    context = {"order": {"items": [{"sku": "a"}, {"sku": "b"}]}}
    assert resolve_path(context, "order.items.1.sku") == "b"
    assert resolve_path(context, "order.missing.sku") is UNDEFINED
    assert resolve_path(context, "order.items.7") is UNDEFINED


def test_non_ascii_digits_in_paths_never_raise(evaluate):
    assert resolve_path({"items": [1]}, "items.\N{SUPERSCRIPT TWO}") is UNDEFINED
    assert evaluate("items.\N{SUPERSCRIPT TWO} = 1", {"items": [1]}) is False
    assert resolve_path({"items": [1, 2]}, "items.\N{ARABIC-INDIC DIGIT ONE}") == 2


def test_parse_literal():
    assert parse_literal("42") == 42
    assert parse_literal("-1.5") == -1.5
    assert parse_literal('"ok"') == "ok"
    assert parse_literal("'ok'") == "ok"
    assert parse_literal("ok") == "ok"


@pytest.mark.parametrize(
    "expr, expected",
    [
        ('status = "ok"', True),
        ('status == "ok"', True),
        ('status = "failed"', False),
        ("count = 3", True),
        ('count = "3"', False),
        ("status = ok", True),
    ],
)
def test_equality(evaluate, expr, expected):
    assert evaluate(expr, {"status": "ok", "count": 3}) is expected


def test_undefined_never_equals(evaluate):
    assert evaluate('missing.path = "x"', {}) is False
    assert evaluate("missing = undefined", {}) is False


def test_booleans_are_not_numbers(evaluate):
    assert evaluate("flag = 1", {"flag": True}) is False


def test_malformed_expressions_are_false(evaluate):
    assert evaluate("", {"a": 1}) is False
    assert evaluate(None, {"a": 1}) is False
    assert evaluate("just words", {"a": 1}) is False


def test_custom_operator_table():
    evaluator = ConditionEvaluator({"=": lambda a, b: a == b, ">": lambda a, b: a > b})
    assert evaluator.evaluate("total > 10", {"total": 12}) is True
    assert evaluator.evaluate("total > 10", {"total": "x"}) is False
