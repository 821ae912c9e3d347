"""安全防护工具：请求复杂度校验与衍生列表达式解析"""

import re
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from src.core.config import Settings
from src.core.constants import ALLOWED_EXPR_FUNCTIONS
from src.core.exceptions import FieldNotFound, InvalidParameter, QueryTooComplex
from src.utils.logger import log


Evaluator = Callable[[Dict[str, Any]], Any]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _arith(op: str, left: Any, right: Any) -> Any:
    """二元运算；空值传播，除零与类型不匹配得到空值"""
    if left is None or right is None:
        return None
    if op == "+":
        if isinstance(left, str) and isinstance(right, str):
            return left + right
        if _is_number(left) and _is_number(right):
            return left + right
        return None
    if not (_is_number(left) and _is_number(right)):
        return None
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if right == 0:
        return None
    return left / right


def _fn_coalesce(*args):
    for arg in args:
        if arg is not None:
            return arg
    return None


def _fn_nullif(a, b):
    return None if a == b else a


def _fn_round(value, digits=0):
    if not _is_number(value) or not _is_number(digits):
        return None
    return round(value, int(digits))


def _fn_abs(value):
    return abs(value) if _is_number(value) else None


def _fn_concat(*args):
    return "".join("" if a is None else str(a) for a in args)


def _fn_upper(value):
    return value.upper() if isinstance(value, str) else None


def _fn_lower(value):
    return value.lower() if isinstance(value, str) else None


def _fn_length(value):
    return len(value) if isinstance(value, (str, list, dict)) else None


EXPR_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "coalesce": _fn_coalesce,
    "nullif": _fn_nullif,
    "round": _fn_round,
    "abs": _fn_abs,
    "concat": _fn_concat,
    "upper": _fn_upper,
    "lower": _fn_lower,
    "length": _fn_length,
}

# 函数参数个数范围 (最少, 最多)，None 表示不限
EXPR_ARITY: Dict[str, Tuple[int, Optional[int]]] = {
    "coalesce": (1, None),
    "nullif": (2, 2),
    "round": (1, 2),
    "abs": (1, 1),
    "concat": (1, None),
    "upper": (1, 1),
    "lower": (1, 1),
    "length": (1, 1),
}


class SecurityValidator:
    """安全校验器"""

    @classmethod
    def validate_request_complexity(cls, request: Dict[str, Any], settings: Settings) -> None:
        """
        验证请求复杂度

        Args:
            request: 请求字典
            settings: 系统配置

        Raises:
            QueryTooComplex: 超出限制
        """
        limits = {
            "filters": settings.max_filter_conditions,
            "having": settings.max_filter_conditions,
            "steps": settings.max_transform_steps,
            "aggregations": settings.max_aggregations,
            "conditions": settings.max_join_conditions,
        }
        for key, limit in limits.items():
            count = len(request.get(key) or [])
            if count > limit:
                log.warning(f"{key} 数量过多: {count} > {limit}")
                raise QueryTooComplex(f"{key} 数量超出限制: {count} > {limit}", key=key, count=count, limit=limit)

    @classmethod
    def parse_expression(cls, expr: str, allowed_identifiers: Set[str]) -> Evaluator:
        """
        安全解析表达式并编译为逐行求值函数

        支持数字、单引号字符串、字段名、+ - * /、括号以及白名单函数。

        Args:
            expr: 原始表达式
            allowed_identifiers: 允许引用的字段集合

        Returns:
            接收一行数据、返回计算结果的函数
        """
        if not isinstance(expr, str) or not expr.strip():
            raise InvalidParameter("表达式不能为空")

        token_spec = re.compile(
            r"\s*(?:(\d+(?:\.\d+)?)|'((?:[^'\\]|\\.)*)'|([A-Za-z_\u4e00-\u9fa5][\w\u4e00-\u9fa5]*)|([+\-*/(),]))"
        )

        tokens: List[Tuple[str, str]] = []
        pos = 0
        text = expr.rstrip()
        while pos < len(text):
            match = token_spec.match(text, pos)
            if not match:
                raise InvalidParameter(f"表达式包含非法字符: {expr}", expression=expr, position=pos)
            number, string, ident, op = match.groups()
            if number:
                tokens.append(("number", number))
            elif string is not None:
                tokens.append(("string", re.sub(r"\\(.)", r"\1", string)))
            elif ident:
                tokens.append(("ident", ident))
            elif op:
                tokens.append(("op", op))
            pos = match.end()

        index = 0

        def peek() -> Optional[Tuple[str, str]]:
            return tokens[index] if index < len(tokens) else None

        def consume(expected: str | None = None) -> Tuple[str, str]:
            nonlocal index
            if index >= len(tokens):
                raise InvalidParameter(f"表达式不完整: {expr}", expression=expr)
            token = tokens[index]
            if expected and token[1] != expected:
                raise InvalidParameter(f"表达式语法错误: {expr}", expression=expr)
            index += 1
            return token

        def binary(op: str, left: Evaluator, right: Evaluator) -> Evaluator:
            return lambda row: _arith(op, left(row), right(row))

        def parse_expression() -> Evaluator:
            node = parse_term()
            while True:
                token = peek()
                if token and token[0] == "op" and token[1] in {"+", "-"}:
                    op = consume()[1]
                    node = binary(op, node, parse_term())
                else:
                    break
            return node

        def parse_term() -> Evaluator:
            node = parse_factor()
            while True:
                token = peek()
                if token and token[0] == "op" and token[1] in {"*", "/"}:
                    op = consume()[1]
                    node = binary(op, node, parse_factor())
                else:
                    break
            return node

        def parse_factor() -> Evaluator:
            token = peek()
            if not token:
                raise InvalidParameter(f"表达式不完整: {expr}", expression=expr)

            if token[0] == "op" and token[1] in {"+", "-"}:
                op = consume()[1]
                operand = parse_factor()
                if op == "+":
                    return operand
                return lambda row: _arith("-", 0, operand(row))

            if token[0] == "number":
                literal = consume()[1]
                number = float(literal) if "." in literal else int(literal)
                return lambda row: number

            if token[0] == "string":
                literal = consume()[1]
                return lambda row: literal

            if token[0] == "ident":
                ident = consume()[1]
                next_token = peek()
                if next_token and next_token[0] == "op" and next_token[1] == "(":
                    name = ident.lower()
                    if name not in ALLOWED_EXPR_FUNCTIONS:
                        raise InvalidParameter(f"表达式包含未授权函数: {ident}", expression=expr, function=ident)
                    consume("(")
                    args: List[Evaluator] = []
                    if peek() and not (peek()[0] == "op" and peek()[1] == ")"):
                        args.append(parse_expression())
                        while peek() and peek()[0] == "op" and peek()[1] == ",":
                            consume(",")
                            args.append(parse_expression())
                    consume(")")
                    min_args, max_args = EXPR_ARITY[name]
                    if len(args) < min_args or (max_args is not None and len(args) > max_args):
                        raise InvalidParameter(
                            f"函数 {ident} 参数个数错误: {len(args)}",
                            expression=expr,
                            function=ident,
                            arguments=len(args)
                        )
                    func = EXPR_FUNCTIONS[name]

                    def call(row, func=func, args=args):
                        return func(*(a(row) for a in args))
                    return call

                if ident not in allowed_identifiers:
                    raise FieldNotFound(f"表达式引用了不存在的字段: {ident}", field=ident, expression=expr)
                return lambda row: row.get(ident)

            if token[0] == "op" and token[1] == "(":
                consume("(")
                inner = parse_expression()
                consume(")")
                return inner

            raise InvalidParameter(f"表达式语法错误: {expr}", expression=expr)

        result = parse_expression()
        if index != len(tokens):
            raise InvalidParameter(f"表达式语法错误: {expr}", expression=expr)
        return result
