"""过滤条件求值测试"""

import pytest

from src.core.exceptions import FieldNotFound, InvalidParameter, TypeMismatch, UnsupportedOperator
from src.engines.filter_engine import FilterEvaluator, evaluate, like_to_regex


def _names(schema, rows, conditions):
    return [row["name"] for row in FilterEvaluator(schema, conditions).apply(rows)]


@pytest.mark.parametrize("condition,expected", [
    ({"field": "name", "operator": "eq", "value": "Bob"}, ["Bob"]),
    ({"field": "age", "operator": "ne", "value": 30}, ["Bob", "dave_x"]),
    ({"field": "age", "operator": "gt", "value": 26}, ["Alice", "dave_x"]),
    ({"field": "score", "operator": "gte", "value": 88.5}, ["Alice", "Carol"]),
    ({"field": "joined", "operator": "lt", "value": "2023-01-01"}, ["dave_x"]),
    ({"field": "age", "operator": "lte", "value": "25"}, ["Bob"]),
    ({"field": "name", "operator": "in", "value": ["Alice", "Carol", "Zed"]}, ["Alice", "Carol"]),
    ({"field": "age", "operator": "nin", "value": [30]}, ["Bob", "dave_x"]),
    ({"field": "name", "operator": "like", "value": "%o%"}, ["Bob", "Carol"]),
    ({"field": "name", "operator": "like", "value": "A____"}, ["Alice"]),
    ({"field": "name", "operator": "like", "value": "ob"}, ["Bob"]),
    ({"field": "name", "operator": "like", "value": "dave\\_x"}, ["dave_x"]),
    ({"field": "name", "operator": "regex", "value": "^[A-C]"}, ["Alice", "Bob", "Carol"]),
    ({"field": "age", "operator": "exists"}, ["Alice", "Bob", "dave_x"]),
    ({"field": "age", "operator": "exists", "value": False}, ["Carol"]),
    ({"field": "active", "operator": "eq", "value": True}, ["Alice", "Carol"]),
    ({"field": "tags", "operator": "eq", "value": ["c"]}, ["dave_x"]),
])
def test_each_operator(people_schema, people_rows, condition, expected):
    assert _names(people_schema, people_rows, [condition]) == expected


def test_conditions_are_and_combined(people_schema, people_rows):
    conditions = [
        {"field": "active", "operator": "eq", "value": True},
        {"field": "score", "operator": "gt", "value": 90},
    ]
    assert _names(people_schema, people_rows, conditions) == ["Carol"]


def test_empty_conditions_keep_all(people_schema, people_rows):
    assert len(FilterEvaluator(people_schema, []).apply(people_rows)) == len(people_rows)


def test_null_handling(people_schema):
    """空值：比较类操作符为 false，exists 按是否存在判断"""
    assert evaluate(people_schema, {"age": None}, [{"field": "age", "operator": "eq", "value": 30}]) is False
    assert evaluate(people_schema, {}, [{"field": "age", "operator": "ne", "value": 30}]) is False
    assert evaluate(people_schema, {"age": None}, [{"field": "age", "operator": "exists"}]) is False
    assert evaluate(people_schema, {"age": 3}, [{"field": "age", "operator": "exists"}]) is True


def test_uncoercible_row_value_is_treated_as_null(people_schema):
    assert evaluate(people_schema, {"age": "abc"}, [{"field": "age", "operator": "ne", "value": 1}]) is False


@pytest.mark.parametrize("condition,error", [
    ({"field": "missing", "operator": "eq", "value": 1}, FieldNotFound),
    ({"field": "age", "operator": "between", "value": [1, 2]}, UnsupportedOperator),
    ({"field": "active", "operator": "gt", "value": True}, UnsupportedOperator),
    ({"field": "age", "operator": "like", "value": "1%"}, UnsupportedOperator),
    ({"field": "age", "operator": "in", "value": 30}, TypeMismatch),
    ({"field": "age", "operator": "eq", "value": "abc"}, TypeMismatch),
    ({"field": "name", "operator": "regex", "value": "("}, InvalidParameter),
])
def test_invalid_conditions(people_schema, condition, error):
    with pytest.raises(error):
        FilterEvaluator(people_schema, [condition])


def test_like_to_regex():
    pattern, has_wildcard = like_to_regex("a%b_")
    assert has_wildcard is True
    assert pattern.fullmatch("axxbc")
    assert not pattern.fullmatch("ab")

    pattern, has_wildcard = like_to_regex("50\\%")
    assert has_wildcard is False
    assert pattern.search("rate 50% off")
