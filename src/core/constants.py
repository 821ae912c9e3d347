"""系统常量定义"""

from typing import Set

# 支持的文件类型
SUPPORTED_FILE_EXTENSIONS: Set[str] = {".xlsx", ".xls", ".csv"}

# 过滤操作符白名单
ALLOWED_FILTER_OPERATORS: Set[str] = {
    "eq", "ne", "gt", "gte", "lt", "lte",
    "in", "nin", "like", "regex", "exists"
}

# 有序比较操作符
ORDERED_OPERATORS: Set[str] = {"gt", "gte", "lt", "lte"}

# 聚合函数白名单
ALLOWED_AGGREGATIONS: Set[str] = {
    "count", "sum", "avg", "min", "max"
}

# 转换步骤类型
TRANSFORM_TYPES: Set[str] = {
    "select", "rename", "filter", "sort", "add_column",
    "cast", "drop", "fill", "replace", "normalize"
}

# 连接类型
JOIN_TYPES: Set[str] = {
    "inner", "left", "right", "full", "cross"
}

# 排序方向
SORT_DIRECTIONS: Set[str] = {"asc", "desc"}

# 衍生列表达式允许的函数
ALLOWED_EXPR_FUNCTIONS: Set[str] = {
    "coalesce", "nullif", "round", "abs",
    "concat", "upper", "lower", "length"
}

# pandas dtype → DataType 映射
DTYPE_MAPPING = {
    "int64": "integer",
    "Int64": "integer",
    "float64": "float",
    "object": "string",
    "string": "string",
    "str": "string",
    "bool": "boolean",
    "boolean": "boolean",
    "datetime64[ns]": "datetime",
    "datetime64[us]": "datetime",
}

# 有符号 64 位整数范围
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

# 行循环中检查取消信号的间隔
CHECK_INTERVAL = 1024

# 最大限制
MAX_COLUMNS = 500
