"""系统配置管理"""

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """系统配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )

    # 查询限制
    max_query_rows: int = 10000
    max_result_rows: int = 1_000_000
    query_timeout_seconds: int = 30

    # 请求复杂度限制
    max_filter_conditions: int = 50
    max_transform_steps: int = 50
    max_aggregations: int = 50
    max_join_conditions: int = 10

    # 连接时右表重名字段后缀
    join_right_suffix: str = "_right"

    # 服务器配置
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = True
    max_upload_size_mb: int = 50

    # 存储路径
    upload_dir: Path = Path("./data/uploads")
    duckdb_dir: Path = Path("./data/duckdb")

    # 日志配置
    log_level: str = "INFO"
    log_file: Path = Path("./logs/app.log")

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # 确保目录存在
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.duckdb_dir.mkdir(parents=True, exist_ok=True)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)


# 全局配置实例
settings = Settings()
