"""启动脚本"""

import uvicorn
from src.core.config import settings
from src.utils.logger import log


if __name__ == "__main__":
    log.info("="*60)
    log.info("Dataset Query Engine - 启动中")
    log.info("="*60)
    log.info(f"服务地址: http://{settings.api_host}:{settings.api_port}")
    log.info(f"API 文档: http://{settings.api_host}:{settings.api_port}/docs")
    log.info(f"调试模式: {settings.debug}")
    log.info(f"查询超时: {settings.query_timeout_seconds}s")
    log.info(f"结果行数上限: {settings.max_result_rows}")
    log.info("="*60)

    uvicorn.run(
        "src.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="info"
    )
