"""Filter Engine - 过滤条件求值"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Pattern, Sequence, Union

from pydantic import ValidationError

from src.core.constants import ALLOWED_FILTER_OPERATORS, ORDERED_OPERATORS
from src.core.exceptions import InvalidParameter, TypeMismatch, UnsupportedOperator
from src.engines.type_system import coerce, coerce_operand, coerce_or_none, resolve_field
from src.models.dataset import DataSchema, DataType
from src.models.query import FilterCondition
from src.utils.cancellation import CancellationToken, checkpoint


ORDERED_TYPES = {DataType.INTEGER, DataType.FLOAT, DataType.DATETIME, DataType.STRING}


@dataclass
class CompiledCondition:
    """预处理后的过滤条件"""
    field: str
    dtype: DataType
    operator: str
    operand: Any = None
    pattern: Optional[Pattern] = None
    full_match: bool = False
    expected: bool = True


def like_to_regex(pattern: str):
    """
    将 SQL LIKE 模式转换为正则

    % 匹配任意长度，_ 匹配单个字符，反斜杠转义。
    不含通配符的模式按子串匹配。

    Returns:
        (编译后的正则, 是否需要整串匹配)
    """
    parts: List[str] = []
    has_wildcard = False
    index = 0
    while index < len(pattern):
        ch = pattern[index]
        if ch == "\\" and index + 1 < len(pattern):
            parts.append(re.escape(pattern[index + 1]))
            index += 2
            continue
        if ch == "%":
            parts.append(".*")
            has_wildcard = True
        elif ch == "_":
            parts.append(".")
            has_wildcard = True
        else:
            parts.append(re.escape(ch))
        index += 1
    return re.compile("".join(parts), re.DOTALL), has_wildcard


def to_conditions(items: Sequence[Union[FilterCondition, Dict[str, Any]]]) -> List[FilterCondition]:
    """将字典形式的条件解析为 FilterCondition"""
    conditions = []
    for item in items or []:
        if isinstance(item, FilterCondition):
            conditions.append(item)
            continue
        try:
            conditions.append(FilterCondition.model_validate(item))
        except ValidationError as e:
            raise InvalidParameter("过滤条件格式错误", errors=str(e)) from e
    return conditions


class FilterEvaluator:
    """过滤条件求值器（所有条件 AND 组合）"""

    def __init__(self, schema: DataSchema, conditions: Sequence[Union[FilterCondition, Dict[str, Any]]]):
        self.schema = schema
        self.conditions = [self._compile(c) for c in to_conditions(conditions)]

    def _compile(self, condition: FilterCondition) -> CompiledCondition:
        op = condition.operator
        if op not in ALLOWED_FILTER_OPERATORS:
            raise UnsupportedOperator(f"不支持的操作符: {op}", operator=op, field=condition.field)

        data_field = resolve_field(self.schema, condition.field)
        dtype = data_field.type
        compiled = CompiledCondition(field=data_field.name, dtype=dtype, operator=op)
        value = condition.value

        if op == "exists":
            compiled.expected = True if value is None else coerce(value, DataType.BOOLEAN)
            return compiled

        if op in ORDERED_OPERATORS:
            if dtype not in ORDERED_TYPES:
                raise UnsupportedOperator(
                    f"操作符 {op} 不适用于 {dtype.value} 类型字段: {condition.field}",
                    operator=op, field=condition.field
                )
            if value is None:
                raise InvalidParameter(f"操作符 {op} 需要比较值", operator=op, field=condition.field)
            compiled.operand = coerce_operand(value, dtype)
            return compiled

        if op in ("in", "nin"):
            if not isinstance(value, (list, tuple)):
                raise TypeMismatch(f"{op} 操作符需要数组值", operator=op, field=condition.field)
            compiled.operand = [coerce_operand(v, dtype) for v in value]
            return compiled

        if op in ("like", "regex"):
            if dtype is not DataType.STRING:
                raise UnsupportedOperator(
                    f"操作符 {op} 仅适用于 string 类型字段: {condition.field}",
                    operator=op, field=condition.field
                )
            if not isinstance(value, str):
                raise TypeMismatch(f"{op} 操作符需要字符串值", operator=op, field=condition.field)
            if op == "like":
                compiled.pattern, compiled.full_match = like_to_regex(value)
            else:
                try:
                    compiled.pattern = re.compile(value)
                except re.error as e:
                    raise InvalidParameter(f"正则表达式无效: {value}", field=condition.field, cause=str(e)) from e
            return compiled

        # eq / ne
        compiled.operand = coerce_operand(value, dtype)
        return compiled

    def _match(self, cond: CompiledCondition, row: Dict[str, Any]) -> bool:
        raw = row.get(cond.field)
        if cond.operator == "exists":
            return (raw is not None) == cond.expected

        if raw is None:
            return False
        value = coerce_or_none(raw, cond.dtype)
        if value is None:
            return False

        op = cond.operator
        if op == "eq":
            return value == cond.operand
        if op == "ne":
            return value != cond.operand
        if op == "gt":
            return value > cond.operand
        if op == "gte":
            return value >= cond.operand
        if op == "lt":
            return value < cond.operand
        if op == "lte":
            return value <= cond.operand
        if op == "in":
            return value in cond.operand
        if op == "nin":
            return value not in cond.operand
        if op == "like":
            if cond.full_match:
                return cond.pattern.fullmatch(value) is not None
            return cond.pattern.search(value) is not None
        if op == "regex":
            return cond.pattern.search(value) is not None
        raise UnsupportedOperator(f"不支持的操作符: {op}", operator=op)

    def matches(self, row: Dict[str, Any]) -> bool:
        """行是否满足全部条件"""
        for cond in self.conditions:
            if not self._match(cond, row):
                return False
        return True

    def apply(self, rows: Sequence[Dict[str, Any]], token: Optional[CancellationToken] = None) -> List[Dict[str, Any]]:
        """过滤行，返回新的行列表"""
        if not self.conditions:
            return list(rows)
        result = []
        for index, row in enumerate(rows):
            checkpoint(token, index)
            if self.matches(row):
                result.append(row)
        return result


def evaluate(schema: DataSchema, row: Dict[str, Any], conditions: Sequence[Union[FilterCondition, Dict[str, Any]]]) -> bool:
    """对单行求值"""
    return FilterEvaluator(schema, conditions).matches(row)
