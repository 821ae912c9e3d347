"""测试公共夹具"""

import pytest
from datetime import datetime, timezone

from src.engines.dataset_manager import DatasetRepository
from src.engines.query_service import QueryService
from src.models.dataset import DataField, DataSchema, DataType, Dataset


def make_schema(*fields):
    """(name, type[, nullable]) 元组构建 Schema"""
    return DataSchema(fields=[
        DataField(name=f[0], type=DataType(f[1]), nullable=f[2] if len(f) > 2 else True)
        for f in fields
    ])


@pytest.fixture
def sales_schema():
    return make_schema(("region", "string"), ("sales", "integer"))


@pytest.fixture
def sales_rows():
    return [
        {"region": "N", "sales": 10},
        {"region": "N", "sales": 20},
        {"region": "S", "sales": 5},
    ]


@pytest.fixture
def people_schema():
    return make_schema(
        ("name", "string"),
        ("age", "integer"),
        ("score", "float"),
        ("active", "boolean"),
        ("joined", "datetime"),
        ("tags", "array"),
    )


@pytest.fixture
def people_rows():
    return [
        {"name": "Alice", "age": 30, "score": 88.5, "active": True,
         "joined": datetime(2023, 1, 15, tzinfo=timezone.utc), "tags": ["a", "b"]},
        {"name": "Bob", "age": 25, "score": 72.0, "active": False,
         "joined": "2023-06-01T00:00:00Z", "tags": []},
        {"name": "Carol", "age": None, "score": 95.25, "active": True,
         "joined": None, "tags": None},
        {"name": "dave_x", "age": 41, "score": None, "active": None,
         "joined": "2022-11-30T12:00:00", "tags": ["c"]},
    ]


@pytest.fixture
def repository(tmp_path):
    return DatasetRepository(tmp_path / "datasets.db")


@pytest.fixture
def service(repository):
    return QueryService(repository)


@pytest.fixture
def sales_dataset(repository, sales_schema, sales_rows):
    dataset = Dataset(
        name="sales",
        data_schema=sales_schema,
        rows=sales_rows,
        format="json",
        row_count=len(sales_rows),
        tags=["finance"],
        created_by="alice"
    )
    return repository.create(dataset)
