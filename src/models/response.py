"""API 响应模型"""

from typing import List, Dict, Any, Optional
from pydantic import BaseModel, Field
from src.models.dataset import Dataset


class QueryResponse(BaseModel):
    """查询响应"""
    data: List[Dict[str, Any]] = Field(..., description="结果数据")
    total: int = Field(..., description="过滤后、分页前的总行数")
    limit: Optional[int] = Field(None, description="返回行数限制")
    offset: int = Field(0, description="偏移量")
    raw_sql: Optional[str] = Field(None, description="执行描述（include_raw 时返回）")
    execution_time: float = Field(0.0, description="执行耗时（秒）")


class DataResponse(BaseModel):
    """转换/聚合/连接的直接返回结果"""
    data: List[Dict[str, Any]] = Field(..., description="结果数据")
    total: int = Field(..., description="结果行数")
    execution_time: float = Field(0.0, description="执行耗时（秒）")


class SavedDatasetResponse(BaseModel):
    """结果已另存为数据集"""
    message: str = Field(..., description="提示信息")
    dataset_id: str = Field(..., description="新数据集ID")
    dataset_name: str = Field(..., description="新数据集名称")
    row_count: int = Field(..., description="行数")
    execution_time: float = Field(0.0, description="执行耗时（秒）")


class DatasetListResponse(BaseModel):
    """数据集分页列表"""
    datasets: List[Dataset] = Field(..., description="数据集列表")
    total: int = Field(..., description="总数")
    page: int = Field(..., description="页码")
    page_size: int = Field(..., description="每页数量")


class ErrorResponse(BaseModel):
    """错误响应"""
    error: str = Field(..., description="错误代码")
    message: str = Field(..., description="错误信息")
    detail: Dict[str, Any] = Field(default_factory=dict, description="错误详情")
