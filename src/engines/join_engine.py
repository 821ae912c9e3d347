"""Join Engine - 数据集连接（哈希连接）"""

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from src.core.config import Settings, settings as default_settings
from src.core.constants import JOIN_TYPES
from src.core.exceptions import InvalidParameter, ResultTooLarge, TypeMismatch, UnsupportedJoinType
from src.engines.sorting import project
from src.engines.type_system import coerce_or_none, hash_key, is_numeric, resolve_field
from src.models.dataset import DataField, DataSchema, DataType
from src.models.query import JoinCondition
from src.utils.cancellation import CancellationToken, checkpoint
from src.utils.logger import log


Rows = List[Dict[str, Any]]


class JoinEngine:
    """连接引擎"""

    def __init__(self, settings: Settings = default_settings):
        self.settings = settings

    def merge_schema(
        self,
        left_schema: DataSchema,
        right_schema: DataSchema,
        join_type: str
    ) -> Tuple[DataSchema, List[Tuple[str, str]]]:
        """
        合并左右 Schema

        右表字段与已有字段重名时追加后缀（_right, _right_2, ...）。

        Returns:
            (合并后的 Schema, [(右表字段名, 输出字段名)])
        """
        suffix = self.settings.join_right_suffix
        left_nullable = join_type in ("right", "full")
        right_nullable = join_type in ("left", "full")

        fields: List[DataField] = []
        names = set()
        for f in left_schema.fields:
            fields.append(f.model_copy(update={"nullable": f.nullable or left_nullable}))
            names.add(f.name)

        right_names: List[Tuple[str, str]] = []
        for f in right_schema.fields:
            out_name = f.name
            if out_name in names:
                out_name = f"{f.name}{suffix}"
                counter = 2
                while out_name in names:
                    out_name = f"{f.name}{suffix}_{counter}"
                    counter += 1
            names.add(out_name)
            right_names.append((f.name, out_name))
            fields.append(f.model_copy(update={"name": out_name, "nullable": f.nullable or right_nullable}))

        return DataSchema(fields=fields), right_names

    def join(
        self,
        left_schema: DataSchema,
        left_rows: Sequence[Dict[str, Any]],
        right_schema: DataSchema,
        right_rows: Sequence[Dict[str, Any]],
        join_type: str,
        conditions: Sequence[Union[JoinCondition, Dict[str, Any]]],
        fields: Optional[Sequence[str]] = None,
        token: Optional[CancellationToken] = None
    ) -> Tuple[DataSchema, Rows]:
        """
        执行连接

        Args:
            left_schema / left_rows: 左数据集
            right_schema / right_rows: 右数据集
            join_type: inner, left, right, full, cross
            conditions: 等值连接条件（AND 组合，cross 忽略）
            fields: 输出字段投影（可选）
            token: 取消令牌

        Returns:
            (输出 Schema, 输出数据行)
        """
        if join_type not in JOIN_TYPES:
            raise UnsupportedJoinType(f"不支持的连接类型: {join_type}", join_type=join_type)

        conds = [self._to_condition(c) for c in conditions or []]
        schema, right_names = self.merge_schema(left_schema, right_schema, join_type)
        left_names = left_schema.field_names()
        ceiling = self.settings.max_result_rows

        log.info(
            f"执行连接: type={join_type}, left={len(left_rows)} 行, right={len(right_rows)} 行, "
            f"conditions={len(conds)}"
        )

        def combine(left: Optional[Dict[str, Any]], right: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            out = {name: (left.get(name) if left is not None else None) for name in left_names}
            for name, out_name in right_names:
                out[out_name] = right.get(name) if right is not None else None
            return out

        result: Rows = []
        if join_type == "cross":
            total = len(left_rows) * len(right_rows)
            if total > ceiling:
                raise ResultTooLarge(
                    f"交叉连接结果行数 {total} 超过上限 {ceiling}",
                    rows=total,
                    limit=ceiling
                )
            for left_row in left_rows:
                for right_row in right_rows:
                    checkpoint(token, len(result))
                    result.append(combine(left_row, right_row))
        else:
            result = self._hash_join(left_schema, left_rows, right_schema, right_rows, join_type, conds, combine, token)

        log.info(f"连接完成: {len(result)} 行")
        if fields:
            return project(schema, result, fields, token)
        return schema, result

    def _hash_join(self, left_schema, left_rows, right_schema, right_rows, join_type, conds, combine, token) -> Rows:
        if not conds:
            raise InvalidParameter(f"{join_type} 连接需要至少一个连接条件", join_type=join_type)

        left_fields = [resolve_field(left_schema, c.left_field) for c in conds]
        right_fields = [resolve_field(right_schema, c.right_field) for c in conds]
        # 两侧键值转换为同一比较类型，与左右顺序无关
        key_types = [
            self._comparison_type(left_field, right_field)
            for left_field, right_field in zip(left_fields, right_fields)
        ]
        ceiling = self.settings.max_result_rows

        def make_key(row: Dict[str, Any], key_fields: List[DataField]) -> Optional[Tuple]:
            values = []
            for data_field, dtype in zip(key_fields, key_types):
                value = coerce_or_none(row.get(data_field.name), dtype)
                if value is None:
                    # 含空值的键不参与匹配
                    return None
                values.append(hash_key(value))
            return tuple(values)

        index: Dict[Tuple, List[int]] = {}
        for position, right_row in enumerate(right_rows):
            checkpoint(token, position)
            key = make_key(right_row, right_fields)
            if key is not None:
                index.setdefault(key, []).append(position)

        result: Rows = []
        matched_right = set()
        for position, left_row in enumerate(left_rows):
            checkpoint(token, position)
            key = make_key(left_row, left_fields)
            matches = index.get(key, []) if key is not None else []
            if matches:
                for right_position in matches:
                    result.append(combine(left_row, right_rows[right_position]))
                    matched_right.add(right_position)
            elif join_type in ("left", "full"):
                result.append(combine(left_row, None))
            if len(result) > ceiling:
                raise ResultTooLarge(f"连接结果行数超过上限 {ceiling}", limit=ceiling)

        if join_type in ("right", "full"):
            for position, right_row in enumerate(right_rows):
                if position not in matched_right:
                    result.append(combine(None, right_row))
            if len(result) > ceiling:
                raise ResultTooLarge(f"连接结果行数超过上限 {ceiling}", limit=ceiling)

        return result

    @staticmethod
    def _comparison_type(left_field: DataField, right_field: DataField) -> DataType:
        """
        确定连接键的比较类型

        类型相同时直接使用；整数与浮点数按浮点比较；字符串一侧按另一侧类型解析。
        其余组合抛出 TypeMismatch。
        """
        left_type, right_type = DataType(left_field.type), DataType(right_field.type)
        if left_type is right_type:
            return left_type
        if is_numeric(left_type) and is_numeric(right_type):
            return DataType.FLOAT
        if left_type is DataType.STRING:
            return right_type
        if right_type is DataType.STRING:
            return left_type
        raise TypeMismatch(
            f"连接键类型不兼容: {left_field.name}({left_type.value}) 与 {right_field.name}({right_type.value})",
            left_field=left_field.name,
            right_field=right_field.name,
            left_type=left_type.value,
            right_type=right_type.value
        )

    def _to_condition(self, item: Union[JoinCondition, Dict[str, Any]]) -> JoinCondition:
        if isinstance(item, JoinCondition):
            return item
        try:
            return JoinCondition.model_validate(item)
        except ValidationError as e:
            raise InvalidParameter("连接条件格式错误", errors=str(e)) from e
