"""排序、分页与字段投影"""

import math
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from src.core.constants import SORT_DIRECTIONS
from src.core.exceptions import InvalidParameter
from src.engines.type_system import coerce_or_none, resolve_field, sort_key
from src.models.dataset import DataSchema, DataType
from src.models.query import SortField
from src.utils.cancellation import CancellationToken, checkpoint


def to_sort_fields(items: Sequence[Union[SortField, Dict[str, Any]]]) -> List[SortField]:
    """将字典形式的排序规则解析为 SortField"""
    fields = []
    for item in items or []:
        if isinstance(item, SortField):
            fields.append(item)
            continue
        if isinstance(item, dict) and item.get("direction") not in (None, *SORT_DIRECTIONS):
            raise InvalidParameter(f"不支持的排序方向: {item.get('direction')}", field=item.get("field"))
        try:
            fields.append(SortField.model_validate(item))
        except ValidationError as e:
            raise InvalidParameter("排序规则格式错误", errors=str(e)) from e
    return fields


def _null_last_key(value: Any, dtype: DataType, descending: bool) -> Tuple[bool, Any]:
    # 空值在升序和降序下都排在最后
    value = coerce_or_none(value, dtype)
    if isinstance(value, float) and math.isnan(value):
        value = None
    if value is None:
        return (not descending, 0)
    return (descending, sort_key(value, dtype))


def sort_rows(
    schema: DataSchema,
    rows: Sequence[Dict[str, Any]],
    sort_fields: Sequence[Union[SortField, Dict[str, Any]]],
    token: Optional[CancellationToken] = None
) -> List[Dict[str, Any]]:
    """
    多字段稳定排序

    按列出顺序比较，后面的字段用于打破前面字段的平局。

    Args:
        schema: 行对应的 Schema
        rows: 数据行
        sort_fields: 排序规则

    Returns:
        排序后的新列表
    """
    specs = to_sort_fields(sort_fields)
    resolved = [(resolve_field(schema, s.field), s.direction == "desc") for s in specs]

    result = list(rows)
    if token is not None:
        token.check()
    # 稳定排序：从最后一个排序字段开始依次排序
    for data_field, descending in reversed(resolved):
        result.sort(
            key=lambda row: _null_last_key(row.get(data_field.name), data_field.type, descending),
            reverse=descending
        )
    return result


def paginate(rows: Sequence[Dict[str, Any]], limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
    """按 offset/limit 截取，limit 为 None 表示不限制"""
    if offset is None:
        offset = 0
    if offset < 0:
        raise InvalidParameter(f"offset 不能为负数: {offset}", offset=offset)
    if limit is not None and limit < 0:
        raise InvalidParameter(f"limit 不能为负数: {limit}", limit=limit)
    if limit is None:
        return list(rows[offset:])
    return list(rows[offset:offset + limit])


def project(
    schema: DataSchema,
    rows: Sequence[Dict[str, Any]],
    fields: Sequence[str],
    token: Optional[CancellationToken] = None
) -> Tuple[DataSchema, List[Dict[str, Any]]]:
    """按调用方给定的顺序保留字段"""
    selected = [resolve_field(schema, name) for name in fields]
    if len({f.name for f in selected}) != len(selected):
        raise InvalidParameter("投影字段重复", fields=list(fields))
    names = [f.name for f in selected]
    projected = []
    for index, row in enumerate(rows):
        checkpoint(token, index)
        projected.append({name: row.get(name) for name in names})
    return schema.with_fields([f.model_copy() for f in selected]), projected
