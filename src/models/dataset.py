"""数据集相关模型"""

import uuid
from enum import Enum
from typing import List, Optional, Any, Dict
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, model_validator


class DataType(str, Enum):
    """字段数据类型"""
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    ARRAY = "array"
    OBJECT = "object"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DataField(BaseModel):
    """Schema 字段"""
    name: str = Field(..., min_length=1, description="字段名")
    type: DataType = Field(..., description="数据类型")
    description: Optional[str] = Field(None, description="字段描述")
    required: bool = Field(False, description="是否必填")
    nullable: bool = Field(True, description="是否可空")
    unique: bool = Field(False, description="是否唯一")
    default: Optional[Any] = Field(None, description="默认值")
    metadata: Optional[Dict[str, Any]] = Field(None, description="附加信息")


class DataSchema(BaseModel):
    """数据集 Schema（字段顺序即列顺序）"""
    fields: List[DataField] = Field(default_factory=list, description="字段列表")
    primary_key: Optional[str] = Field(None, description="主键字段")
    foreign_keys: Dict[str, str] = Field(default_factory=dict, description="外键: 字段 → 引用字段")
    indexes: List[str] = Field(default_factory=list, description="索引字段")
    constraints: Dict[str, str] = Field(default_factory=dict, description="约束")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="附加信息")

    @model_validator(mode="after")
    def check_unique_names(self) -> "DataSchema":
        seen = set()
        for f in self.fields:
            if f.name in seen:
                raise ValueError(f"字段名重复: {f.name}")
            seen.add(f.name)
        return self

    def field_names(self) -> List[str]:
        """按顺序返回字段名"""
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> Optional[DataField]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def with_fields(self, fields: List[DataField]) -> "DataSchema":
        """复制 Schema 并替换字段列表，丢弃已失效的键/索引引用"""
        names = {f.name for f in fields}
        return DataSchema(
            fields=fields,
            primary_key=self.primary_key if self.primary_key in names else None,
            foreign_keys={k: v for k, v in self.foreign_keys.items() if k in names},
            indexes=[i for i in self.indexes if i in names],
            constraints=dict(self.constraints),
            metadata=dict(self.metadata)
        )


class Dataset(BaseModel):
    """数据集"""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="数据集唯一标识")
    name: str = Field(..., description="数据集名称")
    description: Optional[str] = Field(None, description="描述")
    data_schema: DataSchema = Field(default_factory=DataSchema, alias="schema", description="Schema")  # 避免与 BaseModel.schema 冲突
    rows: List[Dict[str, Any]] = Field(default_factory=list, alias="data", description="数据行")
    source: Optional[str] = Field(None, description="来源")
    format: Optional[str] = Field(None, description="格式")
    size: int = Field(0, ge=0, description="数据大小（字节）")
    row_count: int = Field(0, ge=0, description="行数")
    tags: List[str] = Field(default_factory=list, description="标签")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="元数据")
    created_by: str = Field("system", description="创建者")
    created_at: datetime = Field(default_factory=_utcnow, description="创建时间")
    updated_at: datetime = Field(default_factory=_utcnow, description="更新时间")


class CreateDatasetRequest(BaseModel):
    """创建数据集请求"""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, description="数据集名称")
    description: Optional[str] = Field(None, description="描述")
    data_schema: DataSchema = Field(..., alias="schema", description="Schema")
    rows: List[Dict[str, Any]] = Field(default_factory=list, alias="data", description="数据行")
    source: Optional[str] = Field(None, description="来源")
    format: Optional[str] = Field(None, description="格式")
    tags: List[str] = Field(default_factory=list, description="标签")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="元数据")
