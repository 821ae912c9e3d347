"""连接引擎测试"""

import pytest

from src.core.config import Settings
from src.core.exceptions import FieldNotFound, InvalidParameter, ResultTooLarge, TypeMismatch, UnsupportedJoinType
from src.engines.join_engine import JoinEngine
from tests.conftest import make_schema


LEFT_SCHEMA = make_schema(("id", "integer", False), ("name", "string"))
LEFT_ROWS = [
    {"id": 1, "name": "a"},
    {"id": 2, "name": "b"},
    {"id": 3, "name": "c"},
]
RIGHT_SCHEMA = make_schema(("id", "integer", False), ("score", "float"))
RIGHT_ROWS = [
    {"id": 1, "score": 9.5},
    {"id": 7, "score": 1.0},
]
ON_ID = [{"left_field": "id", "right_field": "id"}]


@pytest.fixture
def engine():
    return JoinEngine()


def _join(engine, join_type, conditions=ON_ID, **kwargs):
    return engine.join(LEFT_SCHEMA, LEFT_ROWS, RIGHT_SCHEMA, RIGHT_ROWS, join_type, conditions, **kwargs)


def test_inner_join(engine):
    schema, rows = _join(engine, "inner")
    assert schema.field_names() == ["id", "name", "id_right", "score"]
    assert rows == [{"id": 1, "name": "a", "id_right": 1, "score": 9.5}]


def test_left_join(engine):
    schema, rows = _join(engine, "left")
    assert len(rows) == 3
    assert [r["score"] for r in rows] == [9.5, None, None]
    assert sum(1 for r in rows if r["id_right"] is None) == 2
    assert schema.get_field("id_right").nullable is True
    assert schema.get_field("id").nullable is False


def test_right_and_full_join(engine):
    _, rows = _join(engine, "right")
    assert rows == [
        {"id": 1, "name": "a", "id_right": 1, "score": 9.5},
        {"id": None, "name": None, "id_right": 7, "score": 1.0},
    ]

    schema, rows = _join(engine, "full")
    assert len(rows) == 4
    assert [r["id"] for r in rows] == [1, 2, 3, None]
    assert schema.get_field("id").nullable is True


def test_cross_join_ignores_conditions(engine):
    _, rows = _join(engine, "cross", conditions=[])
    assert len(rows) == 6
    assert rows[1] == {"id": 1, "name": "a", "id_right": 7, "score": 1.0}


def test_cross_join_ceiling():
    engine = JoinEngine(Settings(max_result_rows=5))
    with pytest.raises(ResultTooLarge) as exc:
        engine.join(LEFT_SCHEMA, LEFT_ROWS, RIGHT_SCHEMA, RIGHT_ROWS, "cross", [])
    assert exc.value.detail["rows"] == 6


def test_join_ceiling_for_hash_join():
    engine = JoinEngine(Settings(max_result_rows=2))
    with pytest.raises(ResultTooLarge):
        engine.join(LEFT_SCHEMA, LEFT_ROWS, RIGHT_SCHEMA, RIGHT_ROWS, "left", ON_ID)


def test_null_keys_never_match(engine):
    left_schema = make_schema(("k", "string"), ("v", "integer"))
    right_schema = make_schema(("k", "string"), ("w", "integer"))
    _, rows = engine.join(
        left_schema, [{"k": None, "v": 1}, {"k": "x", "v": 2}],
        right_schema, [{"k": None, "w": 3}, {"k": "x", "w": 4}],
        "inner", [{"left_field": "k", "right_field": "k"}]
    )
    assert rows == [{"k": "x", "v": 2, "k_right": "x", "w": 4}]


def test_string_keys_parsed_as_other_side_type(engine):
    right_schema = make_schema(("ref", "string"), ("label", "string"))
    _, rows = engine.join(
        LEFT_SCHEMA, LEFT_ROWS,
        right_schema, [{"ref": "2", "label": "two"}],
        "inner", [{"left_field": "id", "right_field": "ref"}]
    )
    assert rows == [{"id": 2, "name": "b", "ref": "2", "label": "two"}]


def test_join_matches_same_pairs_in_both_directions(engine):
    int_schema = make_schema(("k", "integer"))
    str_schema = make_schema(("k", "string"))
    on_k = [{"left_field": "k", "right_field": "k"}]

    _, forward = engine.join(int_schema, [{"k": 2}], str_schema, [{"k": "2"}], "inner", on_k)
    _, backward = engine.join(str_schema, [{"k": "2"}], int_schema, [{"k": 2}], "inner", on_k)
    assert forward == [{"k": 2, "k_right": "2"}]
    assert backward == [{"k": "2", "k_right": 2}]


def test_right_join_mirrors_left_join(engine):
    _, left_rows = _join(engine, "left")
    _, right_rows = engine.join(RIGHT_SCHEMA, RIGHT_ROWS, LEFT_SCHEMA, LEFT_ROWS, "right", ON_ID)
    left_pairs = sorted((r["id"], r["id_right"]) for r in left_rows)
    right_pairs = sorted((r["id_right"], r["id"]) for r in right_rows)
    assert left_pairs == right_pairs


def test_integer_and_float_keys_match(engine):
    float_schema = make_schema(("k", "float"))
    int_schema = make_schema(("k", "integer"))
    on_k = [{"left_field": "k", "right_field": "k"}]
    _, rows = engine.join(float_schema, [{"k": 2.0}], int_schema, [{"k": 2}], "inner", on_k)
    assert len(rows) == 1


def test_incompatible_key_types(engine):
    bool_schema = make_schema(("k", "boolean"))
    time_schema = make_schema(("k", "datetime"))
    with pytest.raises(TypeMismatch) as exc:
        engine.join(
            bool_schema, [{"k": True}], time_schema, [],
            "inner", [{"left_field": "k", "right_field": "k"}]
        )
    assert exc.value.detail["left_type"] == "boolean"
    assert exc.value.detail["right_type"] == "datetime"


def test_repeated_collisions_get_numbered_suffix(engine):
    left_schema = make_schema(("id", "integer"), ("id_right", "integer"))
    schema, _ = engine.merge_schema(left_schema, RIGHT_SCHEMA, "inner")
    assert schema.field_names() == ["id", "id_right", "id_right_2", "score"]


def test_multi_condition_join(engine):
    schema = make_schema(("a", "integer"), ("b", "string"))
    left = [{"a": 1, "b": "x"}, {"a": 1, "b": "y"}]
    right = [{"a": 1, "b": "y"}, {"a": 1, "b": "y"}]
    conditions = [{"left_field": "a", "right_field": "a"}, {"left_field": "b", "right_field": "b"}]
    _, rows = engine.join(schema, left, schema, right, "inner", conditions)
    assert len(rows) == 2
    assert all(r["b"] == "y" for r in rows)


def test_fields_projection(engine):
    schema, rows = _join(engine, "inner", fields=["score", "name"])
    assert schema.field_names() == ["score", "name"]
    assert rows == [{"score": 9.5, "name": "a"}]


def test_join_errors(engine):
    with pytest.raises(UnsupportedJoinType):
        _join(engine, "semi")
    with pytest.raises(InvalidParameter):
        _join(engine, "inner", conditions=[])
    with pytest.raises(FieldNotFound):
        _join(engine, "inner", conditions=[{"left_field": "id", "right_field": "nope"}])
