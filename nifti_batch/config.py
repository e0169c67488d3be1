"""全局配置加载模块：从环境变量构建客户端、执行节点与日志参数并提供缓存访问。"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """系统运行配置对象，从环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    batch_service_url: str = "https://batchapps.example.net/api"
    batch_request_timeout_seconds: int = 60

    # 形如 "ClientId=...;TenantId=..."；为空时走无鉴权模式。
    unattended_account_id: str = ""
    unattended_account_key: str | None = None
    aad_instance: str = "https://login.windows.net/{0}"
    batch_apps_resource: str = "https://batchapps.core.windows.net/"
    token_max_attempts: int = 3
    token_retry_delay_seconds: float = 3.0
    token_expiry_skew_seconds: int = 300

    job_name: str = "NiftiProcessing Test"
    job_type: str = "NiftiProcessing"
    poll_interval_seconds: float = 5.0
    # None 表示不设上限，沿用服务端终态作为唯一退出条件。
    monitor_timeout_seconds: float | None = 6 * 60 * 60
    output_dir: Path = Field(default=Path("."))

    local_storage_path: Path = Field(default=Path("./data/task-storage"))
    executables_root: Path = Field(default=Path("./data/executables"))
    completion_file_name: str = "completion.txt"

    redis_url: str = "redis://localhost:6379/0"
    celery_task_always_eager: bool = False
    task_soft_timeout_seconds: int = 60 * 60
    task_hard_timeout_seconds: int = 90 * 60

    log_dir: Path = Field(default=Path("./logs"))
    log_level: str = "INFO"
    log_debug_modules: str = ""
    log_debug_job_ids: str = ""
    log_redaction_mode: Literal["standard", "off"] = "standard"
    log_payload_preview_chars: int = 512
    log_max_bytes: int = 20 * 1024 * 1024
    log_backup_count: int = 5

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)

    def log_debug_job_ids_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_job_ids)


def _resolve(path: Path) -> Path:
    # 相对路径统一按当前工作目录解析，避免不同启动方式下语义漂移。
    if path.is_absolute():
        return path
    return (Path.cwd() / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings，同时把相对路径解析为绝对路径。"""
    settings = Settings()
    settings.output_dir = _resolve(settings.output_dir)
    settings.local_storage_path = _resolve(settings.local_storage_path)
    settings.executables_root = _resolve(settings.executables_root)
    settings.log_dir = _resolve(settings.log_dir)
    return settings
