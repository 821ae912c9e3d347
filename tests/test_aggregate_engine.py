"""分组聚合测试"""

from datetime import datetime, timezone

import pytest

from src.core.config import Settings
from src.core.exceptions import (
    FieldConflict,
    FieldNotFound,
    InvalidParameter,
    ResultTooLarge,
    TypeMismatch,
    UnsupportedOperator,
)
from src.engines.aggregate_engine import AggregateEngine
from src.models.dataset import DataType
from tests.conftest import make_schema


@pytest.fixture
def engine():
    return AggregateEngine()


SUM_SALES = [{"type": "sum", "field": "sales", "output_name": "total"}]


def test_group_sum(engine, sales_schema, sales_rows):
    schema, rows = engine.aggregate(sales_schema, sales_rows, ["region"], SUM_SALES)
    assert rows == [{"region": "N", "total": 30.0}, {"region": "S", "total": 5.0}]
    assert schema.field_names() == ["region", "total"]
    assert schema.get_field("total").type is DataType.FLOAT


def test_having_filters_aggregated_rows(engine, sales_schema, sales_rows):
    _, rows = engine.aggregate(
        sales_schema, sales_rows, ["region"], SUM_SALES,
        having=[{"field": "total", "operator": "gt", "value": 10}]
    )
    assert rows == [{"region": "N", "total": 30.0}]


def test_all_aggregations(engine, sales_schema):
    rows = [
        {"region": "N", "sales": 10},
        {"region": "N", "sales": None},
        {"region": "N", "sales": 30},
        {"region": "S", "sales": None},
    ]
    _, result = engine.aggregate(sales_schema, rows, ["region"], [
        {"type": "count", "output_name": "rows"},
        {"type": "count", "field": "sales", "output_name": "non_null"},
        {"type": "avg", "field": "sales", "output_name": "avg"},
        {"type": "min", "field": "sales", "output_name": "min"},
        {"type": "max", "field": "sales", "output_name": "max"},
    ])
    assert result[0] == {"region": "N", "rows": 3, "non_null": 2, "avg": 20.0, "min": 10.0, "max": 30.0}
    # 全为空值时 sum/avg/min/max 为空
    assert result[1] == {"region": "S", "rows": 1, "non_null": 0, "avg": None, "min": None, "max": None}


def test_no_group_by_yields_single_group(engine, sales_schema, sales_rows):
    aggs = [{"type": "count", "output_name": "n"}, {"type": "sum", "field": "sales", "output_name": "total"}]
    _, rows = engine.aggregate(sales_schema, sales_rows, [], aggs)
    assert rows == [{"n": 3, "total": 35.0}]

    _, rows = engine.aggregate(sales_schema, [], None, aggs)
    assert rows == [{"n": 0, "total": None}]


def test_sort_and_limit_after_aggregation(engine, sales_schema, sales_rows):
    _, rows = engine.aggregate(
        sales_schema, sales_rows, ["region"], SUM_SALES,
        sort=[{"field": "total", "direction": "asc"}],
        limit=1
    )
    assert rows == [{"region": "S", "total": 5.0}]


@pytest.mark.parametrize("group_by,aggregations,error", [
    (["nope"], SUM_SALES, FieldNotFound),
    (["region"], [{"type": "median", "field": "sales", "output_name": "m"}], UnsupportedOperator),
    (["region"], [{"type": "sum", "field": "region", "output_name": "s"}], TypeMismatch),
    (["region"], [{"type": "sum", "output_name": "s"}], InvalidParameter),
    (["region"], [{"type": "count", "output_name": "region"}], FieldConflict),
    (["region"], [], InvalidParameter),
])
def test_aggregate_validation(engine, sales_schema, sales_rows, group_by, aggregations, error):
    with pytest.raises(error):
        engine.aggregate(sales_schema, sales_rows, group_by, aggregations)


def test_group_ceiling():
    engine = AggregateEngine(Settings(max_result_rows=2))
    schema = make_schema(("k", "integer"))
    rows = [{"k": i} for i in range(3)]
    with pytest.raises(ResultTooLarge):
        engine.aggregate(schema, rows, ["k"], [{"type": "count", "output_name": "n"}])


def test_group_keys_coerced_to_field_type(engine):
    schema = make_schema(("joined", "datetime"), ("age", "integer"))
    rows = [
        {"joined": datetime(2023, 1, 15, tzinfo=timezone.utc), "age": 30},
        {"joined": "2023-01-15T00:00:00Z", "age": "30"},
        {"joined": "2023-06-01T00:00:00Z", "age": 30.0},
    ]
    _, result = engine.aggregate(schema, rows, ["joined"], [{"type": "count", "output_name": "n"}])
    assert result == [
        {"joined": datetime(2023, 1, 15, tzinfo=timezone.utc), "n": 2},
        {"joined": datetime(2023, 6, 1, tzinfo=timezone.utc), "n": 1},
    ]

    _, result = engine.aggregate(schema, rows, ["age"], [{"type": "count", "output_name": "n"}])
    assert result == [{"age": 30, "n": 3}]


def test_uncoercible_group_keys_fall_into_null_group(engine, people_schema, people_rows):
    rows = people_rows + [{"name": "eve", "age": "unknown"}]
    _, result = engine.aggregate(people_schema, rows, ["age"], [{"type": "count", "output_name": "n"}])
    assert {r["age"]: r["n"] for r in result} == {30: 1, 25: 1, None: 2, 41: 1}
