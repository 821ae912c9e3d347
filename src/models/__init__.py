"""数据模型包"""

from src.models.dataset import (
    DataType,
    DataField,
    DataSchema,
    Dataset,
    CreateDatasetRequest
)
from src.models.query import (
    FilterCondition,
    SortField,
    QueryRequest,
    TransformStep,
    TransformRequest,
    AggregationField,
    AggregateRequest,
    JoinCondition,
    JoinRequest,
    QueryResult,
    OperationResult
)
from src.models.response import (
    QueryResponse,
    DataResponse,
    SavedDatasetResponse,
    DatasetListResponse,
    ErrorResponse
)

__all__ = [
    # Dataset
    "DataType",
    "DataField",
    "DataSchema",
    "Dataset",
    "CreateDatasetRequest",
    # Query
    "FilterCondition",
    "SortField",
    "QueryRequest",
    "TransformStep",
    "TransformRequest",
    "AggregationField",
    "AggregateRequest",
    "JoinCondition",
    "JoinRequest",
    "QueryResult",
    "OperationResult",
    # Response
    "QueryResponse",
    "DataResponse",
    "SavedDatasetResponse",
    "DatasetListResponse",
    "ErrorResponse",
]
