"""类型系统测试"""

import pytest
from datetime import date, datetime, timezone

from src.core.exceptions import FieldNotFound, TypeMismatch
from src.engines.type_system import (
    cast_value,
    coerce,
    coerce_operand,
    infer_type,
    resolve_field,
)
from src.models.dataset import DataType
from tests.conftest import make_schema


def test_resolve_field():
    schema = make_schema(("a", "string"))
    assert resolve_field(schema, "a").type is DataType.STRING
    with pytest.raises(FieldNotFound) as exc:
        resolve_field(schema, "b")
    assert exc.value.detail["field"] == "b"


@pytest.mark.parametrize("value,dtype,expected", [
    ("42", DataType.INTEGER, 42),
    (3.0, DataType.INTEGER, 3),
    ("3.5", DataType.FLOAT, 3.5),
    (7, DataType.FLOAT, 7.0),
    ("yes", DataType.BOOLEAN, True),
    ("0", DataType.BOOLEAN, False),
    ('[1, 2]', DataType.ARRAY, [1, 2]),
    ('{"k": 1}', DataType.OBJECT, {"k": 1}),
    (None, DataType.INTEGER, None),
])
def test_coerce_explicit_parse(value, dtype, expected):
    assert coerce(value, dtype) == expected


@pytest.mark.parametrize("value,dtype", [
    (3.7, DataType.INTEGER),
    (True, DataType.INTEGER),
    (True, DataType.FLOAT),
    (12, DataType.STRING),
    ("abc", DataType.FLOAT),
    (2 ** 63, DataType.INTEGER),
    ("maybe", DataType.BOOLEAN),
    ('{"k": 1}', DataType.ARRAY),
])
def test_coerce_rejects(value, dtype):
    with pytest.raises(TypeMismatch):
        coerce(value, dtype)


def test_coerce_datetime_is_utc():
    """无时区时间按 UTC 处理，Z 后缀可解析"""
    aware = coerce("2024-01-02T03:04:05Z", DataType.DATETIME)
    naive = coerce("2024-01-02T03:04:05", DataType.DATETIME)
    assert aware == naive
    assert aware.tzinfo is not None
    assert coerce(date(2024, 1, 2), DataType.DATETIME) == datetime(2024, 1, 2, tzinfo=timezone.utc)


def test_cast_value_is_lenient_but_never_truncates():
    assert cast_value(12, DataType.STRING) == "12"
    assert cast_value([1, "a"], DataType.STRING) == '[1, "a"]'
    assert cast_value(1, DataType.BOOLEAN) is True
    with pytest.raises(TypeMismatch):
        cast_value(2.5, DataType.INTEGER)


def test_coerce_operand_keeps_fraction_for_integer_field():
    assert coerce_operand("10", DataType.INTEGER) == 10
    assert coerce_operand(2.5, DataType.INTEGER) == 2.5


@pytest.mark.parametrize("values,expected", [
    ([1, 2, None], DataType.INTEGER),
    ([1, 2.5], DataType.FLOAT),
    ([True, False], DataType.BOOLEAN),
    (["a", 1], DataType.STRING),
    ([None, None], DataType.STRING),
    ([[1], [2]], DataType.ARRAY),
])
def test_infer_type(values, expected):
    assert infer_type(values) is expected
