"""依赖容器模块，负责单例化创建凭据、令牌、服务客户端与执行器对象。"""

from __future__ import annotations

from functools import lru_cache

from nifti_batch.application.executor import TaskExecutor
from nifti_batch.application.monitor import JobMonitor
from nifti_batch.application.orchestrator import JobClientService
from nifti_batch.config import get_settings
from nifti_batch.infra.auth.credentials import Credential, parse
from nifti_batch.infra.auth.token_provider import BearerTokenAuth, TokenProvider
from nifti_batch.infra.batch.client import BatchServiceClient
from nifti_batch.infra.process.runner import ProcessRunner
from nifti_batch.infra.storage.workspace import LocalStorage


@lru_cache(maxsize=1)
def get_credential() -> Credential:
    """获取无人值守账号凭据；未配置账号时返回空凭据。"""
    settings = get_settings()
    if not settings.unattended_account_id.strip():
        return Credential.empty()
    return parse(settings.unattended_account_id, settings.unattended_account_key)


@lru_cache(maxsize=1)
def get_token_provider() -> TokenProvider:
    settings = get_settings()
    return TokenProvider(
        authority_template=settings.aad_instance,
        resource=settings.batch_apps_resource,
        max_attempts=settings.token_max_attempts,
        retry_delay_seconds=settings.token_retry_delay_seconds,
        expiry_skew_seconds=settings.token_expiry_skew_seconds,
    )


@lru_cache(maxsize=1)
def get_batch_client() -> BatchServiceClient:
    """获取批处理服务客户端单例。"""
    settings = get_settings()
    credential = get_credential()
    # 空凭据在此处过滤，不会进入令牌获取流程。
    auth = BearerTokenAuth(get_token_provider(), credential) if credential.supports_real_authentication else None
    return BatchServiceClient(
        settings.batch_service_url,
        auth=auth,
        timeout_seconds=settings.batch_request_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_job_monitor() -> JobMonitor:
    settings = get_settings()
    return JobMonitor(
        get_batch_client(),
        poll_interval_seconds=settings.poll_interval_seconds,
        timeout_seconds=settings.monitor_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_job_client_service() -> JobClientService:
    """获取客户端编排服务单例。"""
    return JobClientService(
        settings=get_settings(),
        client=get_batch_client(),
        monitor=get_job_monitor(),
    )


@lru_cache(maxsize=1)
def get_local_storage() -> LocalStorage:
    settings = get_settings()
    return LocalStorage(settings.local_storage_path, settings.executables_root)


@lru_cache(maxsize=1)
def get_executor() -> TaskExecutor:
    """获取任务执行器单例（计算节点侧）。"""
    return TaskExecutor(
        settings=get_settings(),
        storage=get_local_storage(),
        runner=ProcessRunner(),
    )


def shutdown_container_resources() -> None:
    """关闭共享客户端并清理依赖容器缓存。"""
    if get_batch_client.cache_info().currsize:
        get_batch_client().close()
    if get_token_provider.cache_info().currsize:
        get_token_provider().close()

    # 按依赖顺序清理缓存，确保后续调用可重新构建全新实例。
    for provider in (
        get_executor,
        get_local_storage,
        get_job_client_service,
        get_job_monitor,
        get_batch_client,
        get_token_provider,
        get_credential,
    ):
        provider.cache_clear()
