"""Transform Engine - 转换流水线"""

import math
import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from src.core.config import Settings, settings as default_settings
from src.core.constants import TRANSFORM_TYPES
from src.core.exceptions import (
    CastFailure,
    EngineError,
    FieldConflict,
    InvalidParameter,
    QueryTooComplex,
    TypeMismatch,
    UnsupportedOperator,
)
from src.engines.filter_engine import FilterEvaluator
from src.engines.sorting import sort_rows
from src.engines.type_system import (
    cast_value,
    coerce,
    coerce_or_none,
    infer_type,
    is_numeric,
    resolve_field,
)
from src.models.dataset import DataField, DataSchema, DataType
from src.models.query import TransformStep
from src.utils.cancellation import CancellationToken, checkpoint
from src.utils.logger import log
from src.utils.security import SecurityValidator
from src.utils.trace import TraceContext


Rows = List[Dict[str, Any]]
StepResult = Tuple[DataSchema, Rows]


def _parse_type(value: Any) -> DataType:
    try:
        return DataType(value)
    except ValueError:
        raise InvalidParameter(f"不支持的数据类型: {value}", type=str(value)) from None


def _safe_cast(value: Any, dtype: DataType) -> Any:
    try:
        return cast_value(value, dtype)
    except TypeMismatch:
        return None


class TransformEngine:
    """转换流水线：按顺序执行步骤，每一步消费上一步的 Schema 与数据行"""

    def __init__(self, settings: Settings = default_settings):
        self.settings = settings
        self._handlers: Dict[str, Callable[..., StepResult]] = {
            "select": self._step_select,
            "rename": self._step_rename,
            "filter": self._step_filter,
            "sort": self._step_sort,
            "add_column": self._step_add_column,
            "cast": self._step_cast,
            "drop": self._step_drop,
            "fill": self._step_fill,
            "replace": self._step_replace,
            "normalize": self._step_normalize,
        }
        missing = TRANSFORM_TYPES - set(self._handlers)
        if missing:
            raise RuntimeError(f"缺少转换步骤实现: {sorted(missing)}")

    def run(
        self,
        schema: DataSchema,
        rows: Sequence[Dict[str, Any]],
        steps: Sequence[Union[TransformStep, Dict[str, Any]]],
        token: Optional[CancellationToken] = None,
        trace: Optional[TraceContext] = None
    ) -> StepResult:
        """
        执行转换流水线

        Args:
            schema: 输入 Schema
            rows: 输入数据行（不会被修改）
            steps: 转换步骤
            token: 取消令牌
            trace: 执行追踪

        Returns:
            (输出 Schema, 输出数据行)

        Raises:
            EngineError: 第一个失败的步骤，detail 中包含 step_index 与 step_type
        """
        if len(steps) > self.settings.max_transform_steps:
            raise QueryTooComplex(
                f"转换步骤过多: {len(steps)} > {self.settings.max_transform_steps}",
                count=len(steps)
            )

        log.info(f"执行转换流水线: {len(steps)} 个步骤, {len(rows)} 行")
        current_schema, current_rows = schema, list(rows)

        for index, raw_step in enumerate(steps):
            started = time.time()
            rows_in = len(current_rows)
            step_type = raw_step.get("type") if isinstance(raw_step, dict) else raw_step.type
            try:
                step = self._to_step(raw_step)
                handler = self._handlers.get(step.type)
                if handler is None:
                    raise UnsupportedOperator(f"不支持的转换步骤: {step.type}", step=step.type)
                if token is not None:
                    token.check()
                current_schema, current_rows = handler(current_schema, current_rows, step.params or {}, token)
            except EngineError as e:
                log.warning(f"转换步骤失败: index={index}, type={step_type} - {e.message}")
                e.with_detail(step_index=index, step_type=step_type)
                raise

            log.debug(f"步骤 {index} ({step_type}) 完成: {rows_in} → {len(current_rows)} 行")
            if trace is not None:
                trace.add_step(step_type, rows_in, len(current_rows), started, step_index=index)

        return current_schema, current_rows

    def _to_step(self, step: Union[TransformStep, Dict[str, Any]]) -> TransformStep:
        if isinstance(step, TransformStep):
            return step
        try:
            return TransformStep.model_validate(step)
        except ValidationError as e:
            raise InvalidParameter("转换步骤格式错误", errors=str(e)) from e

    # -----------------------------
    # 参数解析
    # -----------------------------

    def _param_names(self, params: Dict[str, Any], key: str = "fields") -> List[str]:
        value = params.get(key)
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
            raise InvalidParameter(f"参数 {key} 需要非空字段名数组", param=key)
        return value

    def _param_mapping(self, params: Dict[str, Any], key: str) -> Dict[str, Any]:
        # 既支持 {key: {...}}，也支持直接传入映射
        value = params.get(key)
        mapping = value if isinstance(value, dict) else params
        if not mapping:
            raise InvalidParameter(f"参数 {key} 不能为空", param=key)
        return mapping

    def _param_list(self, params: Dict[str, Any], *keys: str) -> list:
        for key in keys:
            if key in params:
                value = params[key]
                if not isinstance(value, list):
                    raise InvalidParameter(f"参数 {key} 需要数组", param=key)
                return value
        raise InvalidParameter(f"缺少参数: {keys[0]}", param=keys[0])

    # -----------------------------
    # 步骤实现
    # -----------------------------

    def _step_select(self, schema: DataSchema, rows: Rows, params: Dict[str, Any], token) -> StepResult:
        names = self._param_names(params)
        for name in names:
            resolve_field(schema, name)
        keep = set(names)
        fields = [f for f in schema.fields if f.name in keep]
        ordered = [f.name for f in fields]

        result = []
        for index, row in enumerate(rows):
            checkpoint(token, index)
            result.append({name: row[name] for name in ordered if name in row})
        return schema.with_fields(fields), result

    def _step_rename(self, schema: DataSchema, rows: Rows, params: Dict[str, Any], token) -> StepResult:
        mapping = self._param_mapping(params, "mapping")
        for old, new in mapping.items():
            if not isinstance(new, str) or not new:
                raise InvalidParameter(f"新字段名无效: {old} → {new!r}", field=old)
            resolve_field(schema, old)

        targets = list(mapping.values())
        if len(set(targets)) != len(targets):
            raise FieldConflict("重命名目标字段重复", targets=targets)
        remaining = set(schema.field_names()) - set(mapping)
        for new in targets:
            if new in remaining:
                raise FieldConflict(f"重命名目标与已有字段冲突: {new}", field=new)

        renamed = DataSchema(
            fields=[f.model_copy(update={"name": mapping.get(f.name, f.name)}) for f in schema.fields],
            primary_key=mapping.get(schema.primary_key, schema.primary_key) if schema.primary_key else None,
            foreign_keys={mapping.get(k, k): v for k, v in schema.foreign_keys.items()},
            indexes=[mapping.get(i, i) for i in schema.indexes],
            constraints=dict(schema.constraints),
            metadata=dict(schema.metadata)
        )

        schema_names = set(schema.field_names())
        target_set = set(targets)
        result = []
        for index, row in enumerate(rows):
            checkpoint(token, index)
            new_row = {}
            for key, value in row.items():
                if key in mapping:
                    new_row[mapping[key]] = value
                elif key in schema_names or key not in target_set:
                    new_row[key] = value
            result.append(new_row)
        return renamed, result

    def _step_filter(self, schema: DataSchema, rows: Rows, params: Dict[str, Any], token) -> StepResult:
        conditions = self._param_list(params, "conditions", "filters")
        return schema, FilterEvaluator(schema, conditions).apply(rows, token)

    def _step_sort(self, schema: DataSchema, rows: Rows, params: Dict[str, Any], token) -> StepResult:
        fields = self._param_list(params, "fields", "sort")
        return schema, sort_rows(schema, rows, fields, token)

    def _step_add_column(self, schema: DataSchema, rows: Rows, params: Dict[str, Any], token) -> StepResult:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidParameter("add_column 需要 name 参数", param="name")
        if schema.get_field(name) is not None:
            raise FieldConflict(f"字段已存在: {name}", field=name)

        has_value = "value" in params
        has_expr = "expression" in params
        if has_value == has_expr:
            raise InvalidParameter("add_column 需要 value 或 expression 其中之一", field=name)

        if has_expr:
            evaluate = SecurityValidator.parse_expression(params["expression"], set(schema.field_names()))
            values = []
            for index, row in enumerate(rows):
                checkpoint(token, index)
                values.append(evaluate(row))
            default = None
        else:
            default = params["value"]
            values = [default] * len(rows)

        if params.get("type") is not None:
            dtype = _parse_type(params["type"])
        else:
            dtype = infer_type(values if has_expr else [default])

        if has_value and default is not None:
            default = coerce(default, dtype) if params.get("type") is None else cast_value(default, dtype)
            values = [default] * len(rows)
        else:
            values = [_safe_cast(v, dtype) for v in values]

        new_field = DataField(name=name, type=dtype, nullable=True, default=default if has_value else None)
        result = [{**row, name: value} for row, value in zip(rows, values)]
        return schema.with_fields(schema.fields + [new_field]), result

    def _step_cast(self, schema: DataSchema, rows: Rows, params: Dict[str, Any], token) -> StepResult:
        mapping = self._param_mapping(params, "fields")
        targets: Dict[str, Tuple[DataField, DataType]] = {}
        for name, type_name in mapping.items():
            targets[name] = (resolve_field(schema, name), _parse_type(type_name))

        result = []
        for index, row in enumerate(rows):
            checkpoint(token, index)
            new_row = dict(row)
            for name, (data_field, dtype) in targets.items():
                value = row.get(name)
                if value is None:
                    continue
                try:
                    new_row[name] = cast_value(value, dtype)
                except TypeMismatch:
                    if not data_field.nullable:
                        raise CastFailure(
                            f"第 {index} 行字段 {name} 的值 {value!r} 无法转换为 {dtype.value}",
                            field=name,
                            row_index=index,
                            type=dtype.value
                        ) from None
                    new_row[name] = None
            result.append(new_row)

        fields = [
            f.model_copy(update={"type": targets[f.name][1]}) if f.name in targets else f
            for f in schema.fields
        ]
        return schema.with_fields(fields), result

    def _step_drop(self, schema: DataSchema, rows: Rows, params: Dict[str, Any], token) -> StepResult:
        names = self._param_names(params)
        for name in names:
            resolve_field(schema, name)
        drop = set(names)

        result = []
        for index, row in enumerate(rows):
            checkpoint(token, index)
            result.append({k: v for k, v in row.items() if k not in drop})
        return schema.with_fields([f for f in schema.fields if f.name not in drop]), result

    def _step_fill(self, schema: DataSchema, rows: Rows, params: Dict[str, Any], token) -> StepResult:
        if isinstance(params.get("values"), dict):
            raw_values = params["values"]
        elif "field" in params and "value" in params:
            raw_values = {params["field"]: params["value"]}
        else:
            raise InvalidParameter("fill 需要 field/value 或 values 参数")

        fills: Dict[str, Any] = {}
        for name, value in raw_values.items():
            data_field = resolve_field(schema, name)
            if value is None:
                raise InvalidParameter(f"字段 {name} 的填充值不能为空", field=name)
            fills[name] = coerce(value, data_field.type)

        result = []
        for index, row in enumerate(rows):
            checkpoint(token, index)
            new_row = dict(row)
            for name, value in fills.items():
                if new_row.get(name) is None:
                    new_row[name] = value
            result.append(new_row)
        return schema, result

    def _step_replace(self, schema: DataSchema, rows: Rows, params: Dict[str, Any], token) -> StepResult:
        name = params.get("field")
        if not isinstance(name, str):
            raise InvalidParameter("replace 需要 field 参数", param="field")
        data_field = resolve_field(schema, name)
        dtype = data_field.type

        if params.get("regex"):
            if dtype is not DataType.STRING:
                raise TypeMismatch(f"正则替换仅适用于 string 类型字段: {name}", field=name)
            pattern, replacement = params.get("old"), params.get("new")
            if not isinstance(pattern, str) or not isinstance(replacement, str):
                raise InvalidParameter("正则替换需要字符串 old/new 参数", field=name)
            try:
                compiled = re.compile(pattern)
            except re.error as e:
                raise InvalidParameter(f"正则表达式无效: {pattern}", field=name, cause=str(e)) from e

            def substitute(value: Any) -> Any:
                return compiled.sub(replacement, value) if isinstance(value, str) else value
        else:
            if isinstance(params.get("mapping"), dict):
                pairs = list(params["mapping"].items())
            elif "old" in params and "new" in params:
                pairs = [(params["old"], params["new"])]
            else:
                raise InvalidParameter("replace 需要 old/new 或 mapping 参数", field=name)
            replacements = [(coerce(old, dtype), coerce(new, dtype)) for old, new in pairs]

            def substitute(value: Any) -> Any:
                current = coerce_or_none(value, dtype)
                if current is None:
                    return value
                for old, new in replacements:
                    if current == old:
                        return new
                return value

        result = []
        for index, row in enumerate(rows):
            checkpoint(token, index)
            if row.get(name) is None:
                result.append(row)
                continue
            result.append({**row, name: substitute(row[name])})
        return schema, result

    def _step_normalize(self, schema: DataSchema, rows: Rows, params: Dict[str, Any], token) -> StepResult:
        names = [params["field"]] if isinstance(params.get("field"), str) else self._param_names(params)
        targets = []
        for name in names:
            data_field = resolve_field(schema, name)
            if not is_numeric(data_field.type):
                raise TypeMismatch(f"normalize 仅适用于数值字段: {name}", field=name, type=data_field.type.value)
            targets.append(name)

        # 基于当前数据行（即前序步骤的结果）重新计算最小/最大值
        columns: Dict[str, List[Optional[float]]] = {}
        bounds: Dict[str, Tuple[float, float]] = {}
        for name in targets:
            values = []
            for value in (row.get(name) for row in rows):
                number = coerce_or_none(value, DataType.FLOAT)
                values.append(number if number is not None and math.isfinite(number) else None)
            columns[name] = values
            present = [v for v in values if v is not None]
            if present:
                bounds[name] = (min(present), max(present))

        result = []
        for index, row in enumerate(rows):
            checkpoint(token, index)
            new_row = dict(row)
            for name in targets:
                value = columns[name][index]
                if value is None:
                    new_row[name] = None
                    continue
                low, high = bounds[name]
                new_row[name] = 0.0 if high == low else (value - low) / (high - low)
            result.append(new_row)

        fields = [
            f.model_copy(update={"type": DataType.FLOAT}) if f.name in targets else f
            for f in schema.fields
        ]
        return schema.with_fields(fields), result
