"""Query Service - 查询、转换、聚合、连接的统一入口"""

import json
import time
from typing import Any, Dict, List, Optional, Sequence

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import DatasetNotFound
from src.engines.aggregate_engine import AggregateEngine
from src.engines.dataset_manager import get_dataset_repository
from src.engines.filter_engine import FilterEvaluator
from src.engines.join_engine import JoinEngine
from src.engines.sorting import paginate, project, sort_rows
from src.engines.transform_engine import TransformEngine
from src.models.dataset import DataSchema, Dataset
from src.models.query import (
    AggregateRequest,
    FilterCondition,
    JoinRequest,
    OperationResult,
    QueryRequest,
    QueryResult,
    SortField,
    TransformRequest,
)
from src.utils.cancellation import CancellationToken
from src.utils.logger import log
from src.utils.security import SecurityValidator
from src.utils.trace import TraceContext


_SQL_OPERATORS = {
    "eq": "=",
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "in": "IN",
    "nin": "NOT IN",
    "like": "LIKE",
    "regex": "REGEXP",
}


def _quote_identifier(name: str) -> str:
    """安全引用标识符"""
    escaped = name.replace('"', '""')
    return f'"{escaped}"'


def _sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (list, tuple)):
        return f"({', '.join(_sql_literal(v) for v in value)})"
    if isinstance(value, dict):
        value = json.dumps(value, ensure_ascii=False, default=str)
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


def _render_where(conditions: Sequence[FilterCondition]) -> str:
    parts = []
    for cond in conditions:
        column = _quote_identifier(cond.field)
        if cond.operator == "exists":
            negate = cond.value is False
            parts.append(f"{column} IS NULL" if negate else f"{column} IS NOT NULL")
        else:
            op = _SQL_OPERATORS.get(cond.operator, cond.operator.upper())
            parts.append(f"{column} {op} {_sql_literal(cond.value)}")
    return " AND ".join(parts)


def _render_order_by(sort: Sequence[SortField]) -> str:
    return ", ".join(f"{_quote_identifier(s.field)} {s.direction.upper()}" for s in sort)


def payload_size(rows: List[Dict[str, Any]]) -> int:
    return len(json.dumps(rows, ensure_ascii=False, default=str).encode("utf-8"))


class QueryService:
    """
    查询服务

    从仓库解析数据集，调用过滤/排序/转换/聚合/连接引擎，
    并在请求指定 save_as 时将结果保存为新数据集。
    """

    def __init__(self, repository, settings: Settings = default_settings, logger=log):
        self.repository = repository
        self.settings = settings
        self.log = logger
        self.transform_engine = TransformEngine(settings)
        self.aggregate_engine = AggregateEngine(settings)
        self.join_engine = JoinEngine(settings)

    def _resolve(self, dataset_id: str) -> Dataset:
        dataset = self.repository.find_by_id(dataset_id)
        if dataset is None:
            raise DatasetNotFound(f"数据集不存在: {dataset_id}", dataset_id=dataset_id)
        return dataset

    def _token(self, token: Optional[CancellationToken]) -> CancellationToken:
        if token is None:
            token = CancellationToken(self.settings.query_timeout_seconds)
        token.check()
        return token

    def build_raw_sql(self, dataset: Dataset, req: QueryRequest, limit: Optional[int]) -> str:
        """生成类 SQL 的执行描述（仅用于展示）"""
        columns = ", ".join(_quote_identifier(f) for f in req.fields) if req.fields else "*"
        sql = f"SELECT {columns} FROM {_quote_identifier(dataset.name)}"
        if req.filters:
            sql += f" WHERE {_render_where(req.filters)}"
        if req.sort:
            sql += f" ORDER BY {_render_order_by(req.sort)}"
        if limit is not None:
            sql += f" LIMIT {limit}"
        if req.offset:
            sql += f" OFFSET {req.offset}"
        return sql

    def execute_query(self, req: QueryRequest, token: Optional[CancellationToken] = None) -> QueryResult:
        """
        执行数据查询：过滤 → 排序 → 投影 → 分页

        Args:
            req: 查询请求
            token: 取消令牌（为空时按配置的超时创建）

        Returns:
            QueryResult: total 为过滤后、分页前的行数
        """
        start_time = time.time()
        self.log.info(f"执行查询: dataset={req.dataset_id}")

        dataset = self._resolve(req.dataset_id)
        SecurityValidator.validate_request_complexity(req.model_dump(), self.settings)
        token = self._token(token)

        schema = dataset.data_schema
        rows = FilterEvaluator(schema, req.filters).apply(dataset.rows, token)
        total = len(rows)
        if req.sort:
            rows = sort_rows(schema, rows, req.sort, token)
        if req.fields:
            schema, rows = project(schema, rows, req.fields, token)

        limit = self.settings.max_query_rows if req.limit is None else min(req.limit, self.settings.max_query_rows)
        rows = paginate(rows, limit, req.offset)

        raw_sql = self.build_raw_sql(dataset, req, limit) if req.include_raw else None
        execution_time = time.time() - start_time
        self.log.info(f"查询完成: 返回 {len(rows)}/{total} 行, 耗时 {execution_time:.3f}s")

        return QueryResult(
            data=rows,
            total=total,
            limit=limit,
            offset=req.offset,
            raw_sql=raw_sql,
            execution_time=execution_time
        )

    def execute_transform(
        self,
        req: TransformRequest,
        created_by: str = "system",
        token: Optional[CancellationToken] = None
    ) -> OperationResult:
        """执行转换流水线"""
        trace = TraceContext("transform")
        self.log.info(f"执行转换: dataset={req.dataset_id}, steps={len(req.steps)}")

        source = self._resolve(req.dataset_id)
        SecurityValidator.validate_request_complexity(req.model_dump(), self.settings)
        token = self._token(token)

        schema, rows = self.transform_engine.run(source.data_schema, source.rows, req.steps, token, trace)

        dataset = self._build_result(
            name=req.save_as or f"{source.name}_transformed",
            description=f"Transformed from {source.name}",
            schema=schema,
            rows=rows,
            source_kind="transform",
            source_format=source.format,
            tags=list(source.tags),
            metadata={
                "source_dataset": source.id,
                "transform_steps": [step.model_dump() for step in req.steps],
            },
            created_by=created_by
        )
        return self._finish(dataset, req.save_as, trace)

    def execute_aggregate(
        self,
        req: AggregateRequest,
        created_by: str = "system",
        token: Optional[CancellationToken] = None
    ) -> OperationResult:
        """执行分组聚合"""
        trace = TraceContext("aggregate")
        self.log.info(f"执行聚合: dataset={req.dataset_id}, group_by={req.group_by}")

        source = self._resolve(req.dataset_id)
        SecurityValidator.validate_request_complexity(req.model_dump(), self.settings)
        token = self._token(token)

        started = time.time()
        schema, rows = self.aggregate_engine.aggregate(
            source.data_schema,
            source.rows,
            req.group_by,
            req.aggregations,
            having=req.having,
            sort=req.sort,
            limit=req.limit,
            token=token
        )
        trace.add_step("aggregate", len(source.rows), len(rows), started, group_by=req.group_by)

        dataset = self._build_result(
            name=req.save_as or f"{source.name}_aggregated",
            description=f"Aggregated from {source.name}",
            schema=schema,
            rows=rows,
            source_kind="aggregate",
            source_format=source.format,
            tags=list(source.tags),
            metadata={
                "source_dataset": source.id,
                "group_by": list(req.group_by),
                "aggregations": [agg.model_dump() for agg in req.aggregations],
            },
            created_by=created_by
        )
        return self._finish(dataset, req.save_as, trace)

    def execute_join(
        self,
        req: JoinRequest,
        created_by: str = "system",
        token: Optional[CancellationToken] = None
    ) -> OperationResult:
        """执行数据集连接"""
        trace = TraceContext("join")
        self.log.info(
            f"执行连接: {req.left_dataset_id} {req.join_type} {req.right_dataset_id}"
        )

        left = self._resolve(req.left_dataset_id)
        right = self._resolve(req.right_dataset_id)
        SecurityValidator.validate_request_complexity(req.model_dump(), self.settings)
        token = self._token(token)

        started = time.time()
        schema, rows = self.join_engine.join(
            left.data_schema,
            left.rows,
            right.data_schema,
            right.rows,
            req.join_type,
            req.conditions,
            fields=req.fields,
            token=token
        )
        trace.add_step(
            "join",
            len(left.rows) + len(right.rows),
            len(rows),
            started,
            join_type=req.join_type
        )

        tags = list(left.tags)
        tags.extend(tag for tag in right.tags if tag not in tags)

        dataset = self._build_result(
            name=req.save_as or f"{left.name}_{right.name}_joined",
            description=f"Joined from {left.name} and {right.name}",
            schema=schema,
            rows=rows,
            source_kind="join",
            source_format=left.format,
            tags=tags,
            metadata={
                "left_dataset": left.id,
                "right_dataset": right.id,
                "join_type": req.join_type,
                "conditions": [cond.model_dump() for cond in req.conditions],
            },
            created_by=created_by
        )
        return self._finish(dataset, req.save_as, trace)

    def _build_result(
        self,
        name: str,
        description: str,
        schema: DataSchema,
        rows: List[Dict[str, Any]],
        source_kind: str,
        source_format: Optional[str],
        tags: List[str],
        metadata: Dict[str, Any],
        created_by: str
    ) -> Dataset:
        return Dataset(
            name=name,
            description=description,
            data_schema=schema,
            rows=rows,
            source=source_kind,
            format=source_format,
            size=payload_size(rows),
            row_count=len(rows),
            tags=tags,
            metadata=metadata,
            created_by=created_by
        )

    def _finish(self, dataset: Dataset, save_as: Optional[str], trace: TraceContext) -> OperationResult:
        saved = False
        if save_as:
            dataset = self.repository.create(dataset)
            saved = True

        execution_time = trace.elapsed_seconds()
        self.log.info(
            f"{trace.operation} 完成: {dataset.row_count} 行, saved={saved}, 耗时 {execution_time:.3f}s"
        )
        return OperationResult(
            dataset=dataset,
            saved=saved,
            execution_time=execution_time,
            trace=trace.to_dict()
        )


# 全局单例
_query_service = None


def get_query_service() -> QueryService:
    """获取 QueryService 单例"""
    global _query_service
    if _query_service is None:
        _query_service = QueryService(get_dataset_repository())
    return _query_service
