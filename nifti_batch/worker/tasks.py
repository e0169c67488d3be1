"""异步任务定义：按任务图顺序执行处理阶段，任一阶段永久失败即中断后续派发。"""

from __future__ import annotations

import logging
from typing import Any

from celery import chain

from nifti_batch.application.container import get_executor
from nifti_batch.application.executor import coerce_task_id
from nifti_batch.domain.enums import TaskId
from nifti_batch.domain.errors import TaskProcessFailedError
from nifti_batch.domain.graph import build_graph
from nifti_batch.domain.models import FileSpecifier, Job, TaskSpecifier
from nifti_batch.infra.logging.context import bind_log_context
from nifti_batch.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="nifti_batch.worker.tasks.process_task_task")
def process_task_task(
    self,
    job_id: str,
    task_id: int,
    required_files: list[str],
    parameters: dict[str, str],
) -> dict[str, Any]:
    """执行单个处理阶段；永久失败时抛出 TaskProcessFailedError，链上后续任务不再执行。"""
    with bind_log_context(job_id=job_id):
        spec = TaskSpecifier(
            task_id=coerce_task_id(task_id),
            required_files=tuple(FileSpecifier(name=name) for name in required_files),
            parameters=dict(parameters),
        )
        logger.info(
            "worker task started",
            extra={
                "event": "task.worker.started",
                "retry": self.request.retries,
                "payload_preview": {"task_id": task_id, "required_files": required_files},
            },
        )
        try:
            result = get_executor().execute(spec)
        except Exception as exc:
            logger.exception(
                "worker task crashed",
                extra={"event": "task.worker.crashed", "error_type": type(exc).__name__, "error": str(exc)},
            )
            raise
        if not result.succeeded:
            logger.error(
                "worker task failed",
                extra={
                    "event": "task.worker.failed",
                    "payload_preview": {"task_id": task_id, "processor_output": result.processor_output},
                },
            )
            # 永久失败不重试，直接中断链路。
            raise TaskProcessFailedError(spec.task_id.value, result.processor_output)

        logger.info("worker task finished", extra={"event": "task.worker.succeeded"})
        return {
            "task_id": spec.task_id.value,
            "success": result.success.value,
            "output_files": [str(item.file_name) for item in result.output_files],
            "processor_output": result.processor_output,
        }


@celery_app.task(bind=True, name="nifti_batch.worker.tasks.merge_job_task")
def merge_job_task(self, job_id: str) -> dict[str, Any]:
    """全部处理阶段成功后写入作业完成标记。"""
    with bind_log_context(job_id=job_id, task_id=str(TaskId.merge.value), stage=TaskId.merge.name):
        logger.info("merge task started", extra={"event": "task.merge.started"})
        job_result = get_executor().merge()
        return {"output_file": str(job_result.output_file)}


def build_job_chain(job: Job) -> chain:
    """按任务图拓扑顺序构造 Celery 链，merge 固定位于链尾。"""
    graph = build_graph(job, include_merge=True)
    signatures = []
    for spec in graph.ordered_specs():
        if spec.task_id == TaskId.merge:
            signatures.append(merge_job_task.si(job.id))
            continue
        signatures.append(
            process_task_task.si(
                job.id,
                spec.task_id.value,
                [item.name for item in spec.required_files],
                dict(spec.parameters),
            )
        )
    return chain(*signatures)
