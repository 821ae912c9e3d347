"""查询、转换、聚合、连接请求模型"""

from typing import List, Optional, Any, Dict, Literal
from pydantic import BaseModel, Field
from src.models.dataset import Dataset


class FilterCondition(BaseModel):
    """过滤条件（多个条件之间为 AND 关系）"""
    field: str = Field(..., description="字段名")
    operator: str = Field(..., description="操作符: eq, ne, gt, gte, lt, lte, in, nin, like, regex, exists")
    value: Any = Field(None, description="过滤值")


class SortField(BaseModel):
    """排序规则"""
    field: str = Field(..., description="排序字段")
    direction: Literal["asc", "desc"] = Field("asc", description="排序方向")


class QueryRequest(BaseModel):
    """数据查询请求"""
    dataset_id: str = Field(..., description="数据集ID")
    fields: Optional[List[str]] = Field(None, description="返回字段（可选）")
    filters: List[FilterCondition] = Field(default_factory=list, description="过滤条件")
    sort: List[SortField] = Field(default_factory=list, description="排序规则")
    limit: Optional[int] = Field(None, ge=0, description="返回行数限制")
    offset: int = Field(0, ge=0, description="偏移量")
    include_raw: bool = Field(False, description="是否返回执行描述")


class TransformStep(BaseModel):
    """转换步骤"""
    type: str = Field(..., description="步骤类型: select, rename, filter, sort, add_column, cast, drop, fill, replace, normalize")
    params: Dict[str, Any] = Field(default_factory=dict, description="步骤参数")


class TransformRequest(BaseModel):
    """数据转换请求"""
    dataset_id: str = Field(..., description="数据集ID")
    steps: List[TransformStep] = Field(..., description="转换步骤（按顺序执行）")
    save_as: Optional[str] = Field(None, description="结果另存为新数据集的名称")


class AggregationField(BaseModel):
    """聚合定义"""
    type: str = Field(..., description="聚合函数: count, sum, avg, min, max")
    field: Optional[str] = Field(None, description="聚合字段（仅 count 可省略）")
    output_name: str = Field(..., min_length=1, description="结果列名")


class AggregateRequest(BaseModel):
    """数据聚合请求"""
    dataset_id: str = Field(..., description="数据集ID")
    group_by: List[str] = Field(default_factory=list, description="分组字段")
    aggregations: List[AggregationField] = Field(..., description="聚合操作")
    having: List[FilterCondition] = Field(default_factory=list, description="聚合后过滤条件")
    sort: List[SortField] = Field(default_factory=list, description="排序规则")
    limit: Optional[int] = Field(None, ge=0, description="返回行数限制")
    save_as: Optional[str] = Field(None, description="结果另存为新数据集的名称")


class JoinCondition(BaseModel):
    """连接条件（等值）"""
    left_field: str = Field(..., description="左表字段")
    right_field: str = Field(..., description="右表字段")


class JoinRequest(BaseModel):
    """数据连接请求"""
    left_dataset_id: str = Field(..., description="左数据集ID")
    right_dataset_id: str = Field(..., description="右数据集ID")
    join_type: str = Field(..., description="连接类型: inner, left, right, full, cross")
    conditions: List[JoinCondition] = Field(default_factory=list, description="连接条件")
    fields: Optional[List[str]] = Field(None, description="输出字段（可选）")
    save_as: Optional[str] = Field(None, description="结果另存为新数据集的名称")


class QueryResult(BaseModel):
    """查询执行结果"""
    data: List[Dict[str, Any]] = Field(..., description="结果数据")
    total: int = Field(..., description="过滤后、分页前的总行数")
    limit: Optional[int] = Field(None, description="实际生效的行数限制")
    offset: int = Field(0, description="偏移量")
    raw_sql: Optional[str] = Field(None, description="类 SQL 执行描述")
    execution_time: float = Field(0.0, description="执行耗时（秒）")


class OperationResult(BaseModel):
    """转换/聚合/连接执行结果"""
    dataset: Dataset = Field(..., description="结果数据集")
    saved: bool = Field(False, description="是否已持久化")
    execution_time: float = Field(0.0, description="执行耗时（秒）")
    trace: Dict[str, Any] = Field(default_factory=dict, description="执行追踪")

    @property
    def rows(self) -> List[Dict[str, Any]]:
        return self.dataset.rows
