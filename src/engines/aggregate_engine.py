"""Aggregate Engine - 分组聚合"""

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from src.core.config import Settings, settings as default_settings
from src.core.constants import ALLOWED_AGGREGATIONS
from src.core.exceptions import (
    FieldConflict,
    InvalidParameter,
    ResultTooLarge,
    TypeMismatch,
    UnsupportedOperator,
)
from src.engines.filter_engine import FilterEvaluator
from src.engines.sorting import paginate, sort_rows
from src.engines.type_system import coerce_or_none, hash_key, is_numeric, resolve_field
from src.models.dataset import DataField, DataSchema, DataType
from src.models.query import AggregationField, FilterCondition, SortField
from src.utils.cancellation import CancellationToken, checkpoint
from src.utils.logger import log


Rows = List[Dict[str, Any]]


class _Accumulator:
    """单个分组内单个聚合的累加状态"""

    __slots__ = ("kind", "count", "total", "minimum", "maximum")

    def __init__(self, kind: str):
        self.kind = kind
        self.count = 0
        self.total = 0.0
        self.minimum: Optional[float] = None
        self.maximum: Optional[float] = None

    def add(self, value: Optional[float]):
        if value is None:
            return
        self.count += 1
        self.total += value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def result(self) -> Any:
        if self.kind == "count":
            return self.count
        if self.count == 0:
            return None
        if self.kind == "sum":
            return self.total
        if self.kind == "avg":
            return self.total / self.count
        if self.kind == "min":
            return self.minimum
        return self.maximum


class _Group:
    """分组状态"""

    __slots__ = ("keys", "size", "accumulators")

    def __init__(self, keys: Dict[str, Any], kinds: List[str]):
        self.keys = keys
        self.size = 0
        self.accumulators = [_Accumulator(kind) for kind in kinds]


class AggregateEngine:
    """分组聚合引擎"""

    def __init__(self, settings: Settings = default_settings):
        self.settings = settings

    def _validate(
        self,
        schema: DataSchema,
        group_by: Sequence[str],
        aggregations: Sequence[AggregationField]
    ) -> Tuple[List[DataField], List[Tuple[AggregationField, Optional[DataField]]]]:
        """校验分组字段与聚合定义，返回解析后的字段"""
        group_fields = [resolve_field(schema, name) for name in group_by]
        if len({f.name for f in group_fields}) != len(group_fields):
            raise InvalidParameter("分组字段重复", group_by=list(group_by))
        if not aggregations:
            raise InvalidParameter("至少需要一个聚合操作")

        used_names = {f.name for f in group_fields}
        resolved = []
        for agg in aggregations:
            if agg.type not in ALLOWED_AGGREGATIONS:
                raise UnsupportedOperator(f"不支持的聚合函数: {agg.type}", aggregation=agg.type)
            if agg.output_name in used_names:
                raise FieldConflict(f"聚合结果列名冲突: {agg.output_name}", field=agg.output_name)
            used_names.add(agg.output_name)

            if agg.field is None:
                if agg.type != "count":
                    raise InvalidParameter(f"聚合函数 {agg.type} 需要指定字段", aggregation=agg.type)
                resolved.append((agg, None))
                continue

            data_field = resolve_field(schema, agg.field)
            if agg.type != "count" and not is_numeric(data_field.type):
                raise TypeMismatch(
                    f"聚合函数 {agg.type} 需要数值字段: {agg.field}",
                    field=agg.field,
                    type=data_field.type.value
                )
            resolved.append((agg, data_field))
        return group_fields, resolved

    def aggregate(
        self,
        schema: DataSchema,
        rows: Sequence[Dict[str, Any]],
        group_by: Optional[Sequence[str]],
        aggregations: Sequence[Union[AggregationField, Dict[str, Any]]],
        having: Optional[Sequence[Union[FilterCondition, Dict[str, Any]]]] = None,
        sort: Optional[Sequence[Union[SortField, Dict[str, Any]]]] = None,
        limit: Optional[int] = None,
        token: Optional[CancellationToken] = None
    ) -> Tuple[DataSchema, Rows]:
        """
        执行分组聚合

        Args:
            schema: 输入 Schema
            rows: 数据行
            group_by: 分组字段（为空时整个数据集为一个分组）
            aggregations: 聚合定义
            having: 聚合后过滤条件（作用于聚合结果）
            sort: 聚合结果排序
            limit: 聚合结果行数限制

        Returns:
            (派生 Schema, 聚合结果行)
        """
        group_by = list(group_by or [])
        aggs = [self._to_aggregation(a) for a in aggregations]
        group_fields, resolved = self._validate(schema, group_by, aggs)

        log.info(f"执行聚合: group_by={group_by}, aggregations={[a.output_name for a in aggs]}, rows={len(rows)}")

        # 分组顺序为首次出现顺序（dict 保持插入顺序）
        kinds = [agg.type for agg, _ in resolved]
        groups: Dict[Tuple, _Group] = {}
        for index, row in enumerate(rows):
            checkpoint(token, index)
            # 分组键按字段类型转换，无法转换的值归入空值分组
            key_values = [coerce_or_none(row.get(f.name), f.type) for f in group_fields]
            key = tuple(hash_key(value) for value in key_values)
            group = groups.get(key)
            if group is None:
                if len(groups) >= self.settings.max_result_rows:
                    raise ResultTooLarge(
                        f"分组数量超过上限: {self.settings.max_result_rows}",
                        limit=self.settings.max_result_rows
                    )
                group = _Group({f.name: value for f, value in zip(group_fields, key_values)}, kinds)
                groups[key] = group

            group.size += 1
            for accumulator, (agg, data_field) in zip(group.accumulators, resolved):
                if data_field is None:
                    continue
                value = row.get(data_field.name)
                if agg.type == "count":
                    if value is not None:
                        accumulator.count += 1
                    continue
                accumulator.add(coerce_or_none(value, DataType.FLOAT))

        # 无分组字段时即使没有数据也输出一行
        if not group_fields and not groups:
            groups[()] = _Group({}, kinds)

        result: Rows = []
        for group in groups.values():
            out = dict(group.keys)
            for accumulator, (agg, data_field) in zip(group.accumulators, resolved):
                if agg.type == "count" and data_field is None:
                    out[agg.output_name] = group.size
                else:
                    out[agg.output_name] = accumulator.result()
            result.append(out)

        derived = DataSchema(
            fields=[f.model_copy() for f in group_fields] + [
                DataField(
                    name=agg.output_name,
                    type=DataType.INTEGER if agg.type == "count" else DataType.FLOAT,
                    nullable=agg.type != "count"
                )
                for agg, _ in resolved
            ]
        )

        if having:
            result = FilterEvaluator(derived, having).apply(result, token)
        if sort:
            result = sort_rows(derived, result, sort, token)
        if limit is not None:
            result = paginate(result, limit)

        log.info(f"聚合完成: {len(groups)} 个分组, 返回 {len(result)} 行")
        return derived, result

    def _to_aggregation(self, item: Union[AggregationField, Dict[str, Any]]) -> AggregationField:
        if isinstance(item, AggregationField):
            return item
        try:
            return AggregationField.model_validate(item)
        except ValidationError as e:
            raise InvalidParameter("聚合定义格式错误", errors=str(e)) from e
