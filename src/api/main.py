"""FastAPI 主应用"""

import asyncio
import shutil
from pathlib import Path
from typing import Any, Callable, Optional, Union

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.core.config import settings
from src.core.constants import SUPPORTED_FILE_EXTENSIONS
from src.core.exceptions import DatasetNotFound, EngineError, QueryTimeout
from src.engines.dataset_manager import DatasetRepository, get_dataset_repository, load_dataset_file
from src.engines.query_service import QueryService, get_query_service, payload_size
from src.models.dataset import CreateDatasetRequest, Dataset
from src.models.query import AggregateRequest, JoinRequest, OperationResult, QueryRequest, TransformRequest
from src.models.response import (
    DataResponse,
    DatasetListResponse,
    ErrorResponse,
    QueryResponse,
    SavedDatasetResponse,
)
from src.utils.cancellation import CancellationToken
from src.utils.logger import log


# 检查客户端连接状态的间隔（秒）
DISCONNECT_POLL_SECONDS = 0.5


# 创建应用
app = FastAPI(
    title="Dataset Query Engine",
    description="通用数据集查询、转换、聚合与连接服务",
    version="0.1.0",
    debug=settings.debug
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# 错误处理
# -----------------------------

def _error_status(exc: EngineError) -> int:
    if isinstance(exc, DatasetNotFound):
        return 404
    if isinstance(exc, QueryTimeout):
        return 408
    return 400


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    log.warning(f"请求失败: {request.url.path} - {exc.code}: {exc.message}")
    body = ErrorResponse(**exc.to_dict())
    return JSONResponse(status_code=_error_status(exc), content=body.model_dump(mode="json"))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    body = ErrorResponse(error="INVALID_REQUEST", message="请求参数校验失败", detail={"errors": errors})
    return JSONResponse(status_code=400, content=body.model_dump(mode="json"))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = {401: "UNAUTHORIZED", 404: "NOT_FOUND"}.get(exc.status_code, "INVALID_REQUEST")
    body = ErrorResponse(error=code, message=str(exc.detail), detail={})
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception(f"未处理的异常: {request.url.path} - {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": "Internal server error"}
    )


def _require_user(save_as: Optional[str], user_id: Optional[str]) -> str:
    """save_as 需要已认证用户"""
    if save_as and not user_id:
        raise HTTPException(status_code=401, detail="保存结果需要提供 X-User-ID")
    return user_id or "system"


async def _run_cancellable(http_request: Request, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """
    在工作线程中执行引擎调用

    每个请求持有一个取消令牌；客户端断开连接时取消令牌，
    引擎在下一个检查点抛出 QueryCancelled。
    """
    token = CancellationToken(settings.query_timeout_seconds)
    task = asyncio.ensure_future(asyncio.to_thread(func, *args, token=token, **kwargs))
    while True:
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
        if done:
            return task.result()
        if await http_request.is_disconnected():
            log.warning(f"客户端已断开，取消执行: {http_request.url.path}")
            token.cancel()
            return await task


def _operation_response(result: OperationResult) -> Union[DataResponse, SavedDatasetResponse]:
    dataset = result.dataset
    if result.saved:
        return SavedDatasetResponse(
            message="结果已保存为新数据集",
            dataset_id=dataset.id,
            dataset_name=dataset.name,
            row_count=dataset.row_count,
            execution_time=result.execution_time
        )
    return DataResponse(data=dataset.rows, total=dataset.row_count, execution_time=result.execution_time)


@app.get("/")
async def root():
    """根路径"""
    return {
        "name": "Dataset Query Engine",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/health")
def health(repository: DatasetRepository = Depends(get_dataset_repository)):
    """健康检查（包含存储统计）"""
    return {"status": "healthy", **repository.get_stats()}


# -----------------------------
# 数据操作
# -----------------------------

@app.post("/data/query", response_model=QueryResponse)
async def query_data(
    http_request: Request,
    request: QueryRequest,
    service: QueryService = Depends(get_query_service)
):
    """查询数据：过滤、排序、投影、分页"""
    result = await _run_cancellable(http_request, service.execute_query, request)
    return QueryResponse(**result.model_dump())


@app.post("/data/transform", response_model=Union[SavedDatasetResponse, DataResponse])
async def transform_data(
    http_request: Request,
    request: TransformRequest,
    x_user_id: Optional[str] = Header(None),
    service: QueryService = Depends(get_query_service)
):
    """执行转换流水线"""
    created_by = _require_user(request.save_as, x_user_id)
    result = await _run_cancellable(http_request, service.execute_transform, request, created_by=created_by)
    return _operation_response(result)


@app.post("/data/aggregate", response_model=Union[SavedDatasetResponse, DataResponse])
async def aggregate_data(
    http_request: Request,
    request: AggregateRequest,
    x_user_id: Optional[str] = Header(None),
    service: QueryService = Depends(get_query_service)
):
    """分组聚合"""
    created_by = _require_user(request.save_as, x_user_id)
    result = await _run_cancellable(http_request, service.execute_aggregate, request, created_by=created_by)
    return _operation_response(result)


@app.post("/data/join", response_model=Union[SavedDatasetResponse, DataResponse])
async def join_data(
    http_request: Request,
    request: JoinRequest,
    x_user_id: Optional[str] = Header(None),
    service: QueryService = Depends(get_query_service)
):
    """连接两个数据集"""
    created_by = _require_user(request.save_as, x_user_id)
    result = await _run_cancellable(http_request, service.execute_join, request, created_by=created_by)
    return _operation_response(result)



# -----------------------------
# 数据集管理
# -----------------------------

@app.post("/datasets", response_model=Dataset, status_code=201)
def create_dataset(
    request: CreateDatasetRequest,
    x_user_id: Optional[str] = Header(None),
    repository: DatasetRepository = Depends(get_dataset_repository)
):
    """根据 Schema 与数据行创建数据集"""
    dataset = Dataset(
        name=request.name,
        description=request.description,
        data_schema=request.data_schema,
        rows=request.rows,
        source=request.source,
        format=request.format,
        size=payload_size(request.rows),
        row_count=len(request.rows),
        tags=request.tags,
        metadata=request.metadata,
        created_by=x_user_id or "system"
    )
    return repository.create(dataset)


@app.get("/datasets", response_model=DatasetListResponse)
def list_datasets(
    page: int = 1,
    page_size: int = 20,
    name: Optional[str] = None,
    created_by: Optional[str] = None,
    repository: DatasetRepository = Depends(get_dataset_repository)
):
    """分页列出数据集"""
    datasets, total = repository.find_all(
        page=page,
        page_size=page_size,
        filters={"name": name, "created_by": created_by}
    )
    return DatasetListResponse(datasets=datasets, total=total, page=page, page_size=page_size)


@app.get("/datasets/{dataset_id}", response_model=Dataset)
def get_dataset(dataset_id: str, repository: DatasetRepository = Depends(get_dataset_repository)):
    """获取数据集详情"""
    dataset = repository.find_by_id(dataset_id)
    if dataset is None:
        raise DatasetNotFound(f"数据集不存在: {dataset_id}", dataset_id=dataset_id)
    return dataset


@app.delete("/datasets/{dataset_id}")
def delete_dataset(dataset_id: str, repository: DatasetRepository = Depends(get_dataset_repository)):
    """删除数据集"""
    repository.delete(dataset_id)
    return {"message": "数据集已删除", "dataset_id": dataset_id}


@app.post("/datasets/upload", response_model=Dataset, status_code=201)
def upload_dataset(
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    sheet: Optional[str] = Form(None),
    header_row: int = Form(1),
    x_user_id: Optional[str] = Header(None),
    repository: DatasetRepository = Depends(get_dataset_repository)
):
    """
    上传 CSV/Excel 文件并创建数据集

    支持格式：Excel (.xlsx, .xls), CSV (.csv)
    """
    log.info(f"接收文件上传: {file.filename}")

    # 检查文件类型
    file_path = Path(file.filename or "")
    if file_path.suffix.lower() not in SUPPORTED_FILE_EXTENSIONS:
        raise HTTPException(status_code=400, detail=f"不支持的文件类型: {file_path.suffix}")

    # 检查文件大小
    file.file.seek(0, 2)
    size = file.file.tell()
    file.file.seek(0)

    max_size = settings.max_upload_size_mb * 1024 * 1024
    if size > max_size:
        raise HTTPException(status_code=400, detail=f"文件大小超过限制: {size} > {max_size}")

    save_path = settings.upload_dir / file_path.name
    with open(save_path, "wb") as buffer:
        shutil.copyfileobj(file.file, buffer)
    log.info(f"文件保存成功: {save_path}")

    try:
        dataset = load_dataset_file(
            save_path,
            name=name or file_path.stem,
            created_by=x_user_id or "system",
            sheet=sheet,
            header_row=header_row
        )
    except ValueError as e:
        log.error(f"创建数据集失败: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    return repository.create(dataset)


if __name__ == "__main__":
    import uvicorn

    log.info(f"启动服务: {settings.api_host}:{settings.api_port}")

    uvicorn.run(
        "src.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
