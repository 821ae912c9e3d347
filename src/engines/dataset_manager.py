"""Dataset Manager - 数据集存储（DuckDB）"""

import duckdb
import pandas as pd
from pathlib import Path
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime, timezone

from src.core.config import settings
from src.core.constants import DTYPE_MAPPING, MAX_COLUMNS, SUPPORTED_FILE_EXTENSIONS
from src.core.exceptions import DatasetNotFound
from src.models.dataset import DataField, DataSchema, DataType, Dataset
from src.utils.logger import log


class DatasetRepository:
    """数据集仓库：每个数据集以 JSON 形式保存在 DuckDB 表中"""

    TABLE_NAME = "datasets"

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else settings.duckdb_dir / "datasets.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_table()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """获取 DuckDB 连接"""
        return duckdb.connect(str(self.db_path))

    def _init_table(self):
        conn = self._get_connection()
        try:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.TABLE_NAME} (
                    id VARCHAR PRIMARY KEY,
                    name VARCHAR NOT NULL,
                    created_by VARCHAR,
                    created_at VARCHAR,
                    updated_at VARCHAR,
                    payload VARCHAR NOT NULL
                )
            """)
        finally:
            conn.close()

    def find_by_id(self, dataset_id: str) -> Optional[Dataset]:
        """按 ID 查找数据集，不存在时返回 None"""
        conn = self._get_connection()
        try:
            row = conn.execute(
                f"SELECT payload FROM {self.TABLE_NAME} WHERE id = ?",
                [str(dataset_id)]
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return Dataset.model_validate_json(row[0])

    def find_all(
        self,
        page: int = 1,
        page_size: int = 20,
        filters: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[Dataset], int]:
        """
        分页列出数据集

        Args:
            page: 页码（从1开始）
            page_size: 每页数量
            filters: 过滤条件，支持 name（模糊匹配）和 created_by

        Returns:
            (数据集列表, 总数)
        """
        filters = filters or {}
        clauses: List[str] = []
        params: List[Any] = []
        if filters.get("name"):
            clauses.append("name ILIKE ?")
            params.append(f"%{filters['name']}%")
        if filters.get("created_by"):
            clauses.append("created_by = ?")
            params.append(str(filters["created_by"]))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        page = max(page, 1)
        page_size = max(page_size, 1)

        conn = self._get_connection()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM {self.TABLE_NAME} {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT payload FROM {self.TABLE_NAME} {where} "
                f"ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
                params + [page_size, (page - 1) * page_size]
            ).fetchall()
        finally:
            conn.close()

        return [Dataset.model_validate_json(r[0]) for r in rows], int(total)

    def create(self, dataset: Dataset) -> Dataset:
        """保存新数据集"""
        if self.find_by_id(dataset.id) is not None:
            raise ValueError(f"数据集已存在: {dataset.id}")

        conn = self._get_connection()
        try:
            conn.execute(
                f"INSERT INTO {self.TABLE_NAME} VALUES (?, ?, ?, ?, ?, ?)",
                [
                    dataset.id,
                    dataset.name,
                    dataset.created_by,
                    dataset.created_at.isoformat(),
                    dataset.updated_at.isoformat(),
                    dataset.model_dump_json(by_alias=True),
                ]
            )
        finally:
            conn.close()

        log.info(f"数据集已保存: {dataset.id} ({dataset.name}, {dataset.row_count} 行)")
        return dataset

    def update(self, dataset: Dataset) -> Dataset:
        """更新已有数据集"""
        if self.find_by_id(dataset.id) is None:
            raise DatasetNotFound(f"数据集不存在: {dataset.id}", dataset_id=dataset.id)

        updated = dataset.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        conn = self._get_connection()
        try:
            conn.execute(
                f"UPDATE {self.TABLE_NAME} SET name = ?, created_by = ?, updated_at = ?, payload = ? WHERE id = ?",
                [
                    updated.name,
                    updated.created_by,
                    updated.updated_at.isoformat(),
                    updated.model_dump_json(by_alias=True),
                    updated.id,
                ]
            )
        finally:
            conn.close()

        log.info(f"数据集已更新: {updated.id}")
        return updated

    def delete(self, dataset_id: str):
        """删除数据集"""
        if self.find_by_id(dataset_id) is None:
            raise DatasetNotFound(f"数据集不存在: {dataset_id}", dataset_id=dataset_id)

        conn = self._get_connection()
        try:
            conn.execute(f"DELETE FROM {self.TABLE_NAME} WHERE id = ?", [str(dataset_id)])
        finally:
            conn.close()
        log.info(f"数据集 {dataset_id} 已删除")

    def get_stats(self) -> Dict[str, Any]:
        """获取数据集统计信息"""
        conn = self._get_connection()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM {self.TABLE_NAME}").fetchone()[0]
        finally:
            conn.close()
        return {"total_datasets": int(total)}


def _normalize_dtype(dtype: Any) -> DataType:
    """标准化 pandas 数据类型"""
    dtype_str = str(dtype)
    if dtype_str.startswith("datetime64"):
        return DataType.DATETIME
    return DataType(DTYPE_MAPPING.get(dtype_str, "string"))


def _to_native(value: Any) -> Any:
    """将 pandas/numpy 标量转换为 Python 原生值"""
    if value is None:
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if hasattr(value, "item"):
        return value.item()
    return value


def extract_schema(df: pd.DataFrame) -> DataSchema:
    """提取 DataFrame 的 Schema"""
    fields = []
    for col in df.columns:
        null_count = int(df[col].isna().sum())
        fields.append(DataField(
            name=str(col),
            type=_normalize_dtype(df[col].dtype),
            nullable=null_count > 0,
            unique=bool(df[col].is_unique)
        ))
    return DataSchema(fields=fields)


def load_dataset_file(
    file_path: Path,
    name: str,
    created_by: str = "system",
    sheet: Optional[str] = None,
    header_row: int = 1
) -> Dataset:
    """
    从 CSV/Excel 文件创建数据集

    Args:
        file_path: 文件路径
        name: 数据集名称
        created_by: 创建者
        sheet: Excel Sheet 名称
        header_row: 表头行号（从1开始）

    Returns:
        Dataset: 未持久化的数据集
    """
    file_path = Path(file_path)
    suffix = file_path.suffix.lower()
    log.info(f"读取数据文件: {file_path.name}")

    if suffix not in SUPPORTED_FILE_EXTENSIONS:
        raise ValueError(f"不支持的文件类型: {file_path.suffix}")
    if suffix in [".xlsx", ".xls"]:
        df = pd.read_excel(file_path, sheet_name=sheet or 0, header=header_row - 1)
        source_format = "excel"
    else:
        df = pd.read_csv(file_path, header=header_row - 1)
        source_format = "csv"

    # 检查列数限制
    if len(df.columns) > MAX_COLUMNS:
        raise ValueError(f"列数超过限制: {len(df.columns)} > {MAX_COLUMNS}")

    schema = extract_schema(df)
    names = [f.name for f in schema.fields]
    rows = [
        {name: (None if pd.isna(value) else _to_native(value)) for name, value in zip(names, record)}
        for record in df.itertuples(index=False, name=None)
    ]

    log.info(f"数据文件读取成功: {len(rows)} 行, {len(names)} 列")
    return Dataset(
        name=name,
        data_schema=schema,
        rows=rows,
        source="upload",
        format=source_format,
        size=file_path.stat().st_size,
        row_count=len(rows),
        created_by=created_by
    )


# 全局单例
_dataset_repository = None


def get_dataset_repository() -> DatasetRepository:
    """获取 DatasetRepository 单例"""
    global _dataset_repository
    if _dataset_repository is None:
        _dataset_repository = DatasetRepository()
    return _dataset_repository
