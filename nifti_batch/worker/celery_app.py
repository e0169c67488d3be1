"""Celery 应用配置：计算节点侧任务执行的队列、超时策略与关闭资源回收。"""

from __future__ import annotations

import logging
import sys

from celery import Celery
from celery.signals import worker_process_shutdown

from nifti_batch.application.container import shutdown_container_resources
from nifti_batch.config import get_settings
from nifti_batch.infra.logging.setup import configure_logging, shutdown_logging

settings = get_settings()


def _detect_process_role() -> str | None:
    argv = [item.lower() for item in sys.argv[1:]]
    if "worker" in argv:
        return "worker"
    return None


process_role = _detect_process_role()
logger = logging.getLogger(__name__)
if process_role:
    configure_logging(settings, process_role=process_role)

celery_app = Celery("nifti_batch", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.update(
    imports=("nifti_batch.worker.tasks",),
    task_default_queue="nifti",
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_connection_retry_on_startup=True,
    task_soft_time_limit=settings.task_soft_timeout_seconds,
    task_time_limit=settings.task_hard_timeout_seconds,
    task_track_started=True,
)

if settings.celery_task_always_eager:
    celery_app.conf.update(task_always_eager=True, task_eager_propagates=True)

if process_role:
    logger.info(
        "celery app configured",
        extra={
            "event": "celery.config.loaded",
            "external_service": "redis",
            "op": process_role,
            "payload_preview": {
                "broker": settings.redis_url,
                "always_eager": settings.celery_task_always_eager,
                "storage": str(settings.local_storage_path),
            },
        },
    )


@worker_process_shutdown.connect
def _shutdown_worker_resources(**_: object) -> None:
    """Worker 进程关闭时释放共享资源。"""
    shutdown_container_resources()
    shutdown_logging()
