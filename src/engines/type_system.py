"""类型系统：字段解析、值转换与比较"""

import json
import math
from datetime import datetime, date, timezone
from typing import Any, Callable, Dict, Iterable

from src.core.constants import INT64_MIN, INT64_MAX
from src.core.exceptions import FieldNotFound, TypeMismatch
from src.models.dataset import DataField, DataSchema, DataType


TRUE_STRINGS = {"true", "1", "yes", "y", "t"}
FALSE_STRINGS = {"false", "0", "no", "n", "f"}

NUMERIC_TYPES = {DataType.INTEGER, DataType.FLOAT}


def resolve_field(schema: DataSchema, name: str) -> DataField:
    """按名称解析字段，不存在时抛出 FieldNotFound"""
    data_field = schema.get_field(name)
    if data_field is None:
        raise FieldNotFound(f"字段不存在: {name}", field=name)
    return data_field


def is_numeric(dtype: DataType) -> bool:
    return dtype in NUMERIC_TYPES


def _mismatch(value: Any, dtype: DataType) -> TypeMismatch:
    return TypeMismatch(
        f"无法将 {value!r} 转换为 {dtype.value} 类型",
        value=repr(value),
        type=dtype.value
    )


def _check_int64(value: int, original: Any) -> int:
    if value < INT64_MIN or value > INT64_MAX:
        raise _mismatch(original, DataType.INTEGER)
    return value


def _to_integer(value: Any, lenient: bool) -> int:
    if isinstance(value, bool):
        if lenient:
            return int(value)
        raise _mismatch(value, DataType.INTEGER)
    if isinstance(value, int):
        return _check_int64(value, value)
    if isinstance(value, float):
        # 不做隐式截断
        if not math.isfinite(value) or not value.is_integer():
            raise _mismatch(value, DataType.INTEGER)
        return _check_int64(int(value), value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return _check_int64(int(text), value)
        except ValueError:
            pass
        try:
            parsed = float(text)
        except ValueError:
            raise _mismatch(value, DataType.INTEGER) from None
        return _to_integer(parsed, lenient)
    raise _mismatch(value, DataType.INTEGER)


def _to_float(value: Any, lenient: bool) -> float:
    if isinstance(value, bool):
        if lenient:
            return float(value)
        raise _mismatch(value, DataType.FLOAT)
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except OverflowError:
            raise _mismatch(value, DataType.FLOAT) from None
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise _mismatch(value, DataType.FLOAT) from None
    raise _mismatch(value, DataType.FLOAT)


def _to_boolean(value: Any, lenient: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        raise _mismatch(value, DataType.BOOLEAN)
    if lenient and isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise _mismatch(value, DataType.BOOLEAN)


def _ensure_aware(value: datetime) -> datetime:
    # 无时区的时间按 UTC 处理，保证任意两个时间可比较
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_datetime(value: Any, lenient: bool) -> datetime:
    if isinstance(value, datetime):
        return _ensure_aware(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            return _ensure_aware(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            raise _mismatch(value, DataType.DATETIME) from None
    if lenient and isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise _mismatch(value, DataType.DATETIME) from None
    raise _mismatch(value, DataType.DATETIME)


def _to_string(value: Any, lenient: bool) -> str:
    if isinstance(value, str):
        return value
    if not lenient:
        raise _mismatch(value, DataType.STRING)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def _parse_json(value: str, expected: type, dtype: DataType) -> Any:
    try:
        parsed = json.loads(value)
    except ValueError:
        raise _mismatch(value, dtype) from None
    if not isinstance(parsed, expected):
        raise _mismatch(value, dtype)
    return parsed


def _to_array(value: Any, lenient: bool) -> list:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        return _parse_json(value, list, DataType.ARRAY)
    raise _mismatch(value, DataType.ARRAY)


def _to_object(value: Any, lenient: bool) -> dict:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        return _parse_json(value, dict, DataType.OBJECT)
    raise _mismatch(value, DataType.OBJECT)


_COERCERS: Dict[DataType, Callable[[Any, bool], Any]] = {
    DataType.STRING: _to_string,
    DataType.INTEGER: _to_integer,
    DataType.FLOAT: _to_float,
    DataType.BOOLEAN: _to_boolean,
    DataType.DATETIME: _to_datetime,
    DataType.ARRAY: _to_array,
    DataType.OBJECT: _to_object,
}

_uncovered = set(DataType) - set(_COERCERS)
if _uncovered:
    raise RuntimeError(f"缺少类型转换函数: {sorted(t.value for t in _uncovered)}")


def coerce(value: Any, dtype: DataType) -> Any:
    """
    严格转换：字符串仅通过显式解析转为数值/布尔，数值不会隐式转为字符串

    Raises:
        TypeMismatch: 无法转换
    """
    if value is None:
        return None
    return _COERCERS[DataType(dtype)](value, False)


def cast_value(value: Any, dtype: DataType) -> Any:
    """cast 步骤使用的宽松转换（允许任意值渲染为字符串）"""
    if value is None:
        return None
    return _COERCERS[DataType(dtype)](value, True)


def coerce_or_none(value: Any, dtype: DataType) -> Any:
    """转换失败时返回 None（用于处理行中的脏数据）"""
    try:
        return coerce(value, dtype)
    except TypeMismatch:
        return None


def coerce_operand(value: Any, dtype: DataType) -> Any:
    """转换过滤条件中的比较值；整数字段允许与非整数数值比较"""
    try:
        return coerce(value, dtype)
    except TypeMismatch:
        if DataType(dtype) is DataType.INTEGER:
            return _to_float(value, False)
        raise


def infer_type(values: Iterable[Any], default: DataType = DataType.STRING) -> DataType:
    """根据值推断字段类型"""
    seen = set()
    for value in values:
        if value is None:
            continue
        if isinstance(value, bool):
            seen.add(DataType.BOOLEAN)
        elif isinstance(value, int):
            seen.add(DataType.INTEGER)
        elif isinstance(value, float):
            seen.add(DataType.FLOAT)
        elif isinstance(value, (datetime, date)):
            seen.add(DataType.DATETIME)
        elif isinstance(value, (list, tuple)):
            seen.add(DataType.ARRAY)
        elif isinstance(value, dict):
            seen.add(DataType.OBJECT)
        else:
            seen.add(DataType.STRING)

    if not seen:
        return default
    if len(seen) == 1:
        return seen.pop()
    if seen == NUMERIC_TYPES:
        return DataType.FLOAT
    return DataType.STRING


def sort_key(value: Any, dtype: DataType) -> Any:
    """返回已转换值的可比较键"""
    if DataType(dtype) in (DataType.ARRAY, DataType.OBJECT):
        return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)
    return value


def hash_key(value: Any) -> Any:
    """将值转换为可哈希形式（用于分组与连接键）"""
    if isinstance(value, dict):
        return tuple(sorted((str(k), hash_key(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(hash_key(v) for v in value)
    return value
