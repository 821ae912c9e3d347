"""数据集仓库测试"""

import pytest
from datetime import datetime, timedelta, timezone

from src.core.exceptions import DatasetNotFound
from src.engines.dataset_manager import load_dataset_file
from src.models.dataset import DataType, Dataset
from tests.conftest import make_schema


def _dataset(name, created_by="system", minutes=0):
    created_at = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return Dataset(
        name=name,
        data_schema=make_schema(("x", "integer")),
        rows=[{"x": 1}, {"x": None}],
        row_count=2,
        created_by=created_by,
        created_at=created_at,
        updated_at=created_at,
    )


def test_create_and_find(repository):
    dataset = repository.create(_dataset("orders"))
    loaded = repository.find_by_id(dataset.id)
    assert loaded is not None
    assert loaded.name == "orders"
    assert loaded.rows == [{"x": 1}, {"x": None}]
    assert loaded.data_schema.get_field("x").type is DataType.INTEGER
    assert repository.find_by_id("missing") is None


def test_create_duplicate_id(repository):
    dataset = repository.create(_dataset("orders"))
    with pytest.raises(ValueError):
        repository.create(dataset)


def test_find_all_pagination_and_filters(repository):
    repository.create(_dataset("Orders 2023", "alice", minutes=1))
    repository.create(_dataset("orders 2024", "bob", minutes=2))
    repository.create(_dataset("customers", "alice", minutes=3))

    datasets, total = repository.find_all(page=1, page_size=2)
    assert total == 3
    assert [d.name for d in datasets] == ["customers", "orders 2024"]

    datasets, total = repository.find_all(page=2, page_size=2)
    assert [d.name for d in datasets] == ["Orders 2023"]

    datasets, total = repository.find_all(filters={"name": "ORDERS"})
    assert total == 2

    datasets, total = repository.find_all(filters={"created_by": "alice"})
    assert {d.name for d in datasets} == {"Orders 2023", "customers"}


def test_update(repository):
    dataset = repository.create(_dataset("orders"))
    updated = repository.update(dataset.model_copy(update={"description": "月度订单"}))
    assert updated.updated_at > dataset.updated_at
    assert repository.find_by_id(dataset.id).description == "月度订单"

    with pytest.raises(DatasetNotFound):
        repository.update(_dataset("ghost"))


def test_delete(repository):
    dataset = repository.create(_dataset("orders"))
    repository.delete(dataset.id)
    assert repository.find_by_id(dataset.id) is None
    with pytest.raises(DatasetNotFound):
        repository.delete(dataset.id)


def test_load_csv(tmp_path):
    path = tmp_path / "people.csv"
    path.write_text("name,age,score\nAlice,30,1.5\nBob,41,\n", encoding="utf-8")

    dataset = load_dataset_file(path, name="people", created_by="alice")
    assert dataset.format == "csv"
    assert dataset.source == "upload"
    assert dataset.row_count == 2
    assert dataset.created_by == "alice"
    assert [(f.name, f.type) for f in dataset.data_schema.fields] == [
        ("name", DataType.STRING),
        ("age", DataType.INTEGER),
        ("score", DataType.FLOAT),
    ]
    assert dataset.rows[0] == {"name": "Alice", "age": 30, "score": 1.5}
    assert dataset.rows[1]["score"] is None
    assert isinstance(dataset.rows[0]["age"], int)


def test_load_unsupported_file(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("hello", encoding="utf-8")
    with pytest.raises(ValueError):
        load_dataset_file(path, name="notes")
