"""引擎错误类型"""

from typing import Any, Dict


class EngineError(Exception):
    """引擎错误（结构化）"""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = {k: v for k, v in detail.items() if v is not None}

    def with_detail(self, **detail: Any) -> "EngineError":
        """补充诊断信息（如失败的步骤序号）"""
        self.detail.update({k: v for k, v in detail.items() if v is not None})
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "detail": self.detail
        }


class DatasetNotFound(EngineError):
    """数据集不存在"""
    code = "DATASET_NOT_FOUND"


class FieldNotFound(EngineError):
    """引用了 Schema 中不存在的字段"""
    code = "FIELD_NOT_FOUND"


class TypeMismatch(EngineError):
    """值无法转换为字段声明的类型"""
    code = "TYPE_MISMATCH"


class FieldConflict(EngineError):
    """字段名冲突"""
    code = "FIELD_CONFLICT"


class CastFailure(EngineError):
    """cast 步骤在不可空字段上失败"""
    code = "CAST_FAILURE"


class UnsupportedOperator(EngineError):
    """不支持的操作符/步骤/聚合类型"""
    code = "UNSUPPORTED_OPERATOR"


class UnsupportedJoinType(EngineError):
    """不支持的连接类型"""
    code = "UNSUPPORTED_JOIN_TYPE"


class ResultTooLarge(EngineError):
    """结果行数超过上限"""
    code = "RESULT_TOO_LARGE"


class InvalidParameter(EngineError):
    """请求参数不合法"""
    code = "INVALID_PARAMETER"


class QueryTooComplex(EngineError):
    """请求复杂度超出限制"""
    code = "QUERY_TOO_COMPLEX"


class QueryTimeout(EngineError):
    """执行超时"""
    code = "QUERY_TIMEOUT"


class QueryCancelled(EngineError):
    """执行被取消"""
    code = "QUERY_CANCELLED"
