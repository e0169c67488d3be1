"""作业生命周期监控：轮询作业状态直到终态，逐个下载新出现的任务产物并在失败时输出日志。

状态机：
- NotStarted / InProgress 继续轮询；
- Complete 为成功终态；
- Error / Cancelled / OnHold / Cancelling 统一按失败上报，立即停止轮询并打印全部日志。

每个任务的产物最多下载一次，以任务 ID 作为去重键。
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Protocol, TextIO

from nifti_batch.domain.enums import JobStatus, OutputKind
from nifti_batch.domain.errors import MonitorCancelledError
from nifti_batch.domain.models import Job, JobLogEntry, MonitorOutcome, TaskOutput
from nifti_batch.infra.logging.context import bind_log_context
from nifti_batch.infra.storage.workspace import sanitize_filename

logger = logging.getLogger(__name__)

LOG_SEPARATOR = "-------------------------------------"
_UNSET = object()


class JobServiceClient(Protocol):
    """监控器依赖的托管服务能力子集。"""

    def get_job(self, job_id: str) -> Job: ...

    def list_intermediate_outputs(self, job_id: str) -> list[TaskOutput]: ...

    def download_file(self, job_id: str, name: str, target: Path) -> Path: ...

    def iter_logs(self, job_id: str) -> Iterable[JobLogEntry]: ...


class JobMonitor:
    """单次作业监控器；已下载任务集合仅在本次 run 内部持有。"""
    def __init__(
        self,
        client: JobServiceClient,
        *,
        poll_interval_seconds: float = 5.0,
        timeout_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        out: TextIO | None = None,
        err: TextIO | None = None,
    ) -> None:
        self._client = client
        self._poll_interval_seconds = poll_interval_seconds
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._clock = clock
        self._out = out
        self._err = err

    def run(
        self,
        job: Job,
        output_dir: Path,
        *,
        cancel_event: threading.Event | None = None,
        timeout_seconds: float | None | object = _UNSET,
    ) -> MonitorOutcome:
        """轮询至终态；超时抛出 TimeoutError，取消抛出 MonitorCancelledError。

        timeout_seconds 仅作用于本次运行，未传入时沿用构造参数，None 表示不设上限。
        """
        if timeout_seconds is _UNSET:
            timeout_seconds = self._timeout_seconds
        output_dir.mkdir(parents=True, exist_ok=True)
        downloaded_task_ids: set[int] = set()
        downloaded_order: list[int] = []
        downloaded_files: list[Path] = []
        deadline = None if timeout_seconds is None else self._clock() + timeout_seconds

        with bind_log_context(job_id=job.id):
            self._print(f"Job Id: {job.id}\n")
            logger.info("job monitor started", extra={"event": "monitor.started", "payload_preview": {"status": job.status.value}})

            while job.status.is_running:
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning("job monitor cancelled", extra={"event": "monitor.cancelled"})
                    raise MonitorCancelledError(f"monitoring of job {job.id} was cancelled")
                if deadline is not None and self._clock() >= deadline:
                    logger.error(
                        "job monitor timed out",
                        extra={"event": "monitor.timeout", "payload_preview": {"timeout_seconds": timeout_seconds}},
                    )
                    raise TimeoutError(f"job {job.id} did not reach a terminal status within {timeout_seconds}s")

                self._sleep(self._poll_interval_seconds)
                job = self._client.get_job(job.id)
                self._print_status(job)

                if job.status.has_failed:
                    break

                for task_id, path in self._download_new_outputs(job.id, output_dir, downloaded_task_ids):
                    downloaded_order.append(task_id)
                    downloaded_files.append(path)

            outcome = MonitorOutcome(
                status=job.status,
                downloaded_task_ids=downloaded_order,
                downloaded_files=downloaded_files,
            )
            if outcome.succeeded:
                self._print("-----Job successfully completed-----")
                logger.info("job completed", extra={"event": "monitor.succeeded"})
            else:
                self._print_err("\n\n-----------Job has failed-------------")
                logger.error("job failed", extra={"event": "monitor.failed", "payload_preview": {"status": job.status.value}})
                self.print_job_logs(job.id)
            return outcome

    def _download_new_outputs(
        self,
        job_id: str,
        output_dir: Path,
        downloaded_task_ids: set[int],
    ) -> list[tuple[int, Path]]:
        fetched: list[tuple[int, Path]] = []
        for output in self._client.list_intermediate_outputs(job_id):
            if output.kind != OutputKind.task_output:
                continue
            # 下载前先登记任务 ID，保证同一任务至多下载一次。
            if output.task_id in downloaded_task_ids:
                continue
            downloaded_task_ids.add(output.task_id)
            self._print(f"Downloading: {output.name}")
            target = output_dir / sanitize_filename(output.name)
            fetched.append((output.task_id, self._client.download_file(job_id, output.name, target)))
        return fetched

    def print_job_logs(self, job_id: str) -> list[JobLogEntry]:
        """按服务端顺序打印作业全部日志条目。"""
        self._print_err("----------------logs------------------")
        entries: list[JobLogEntry] = []
        for entry in self._client.iter_logs(job_id):
            entries.append(entry)
            self._print_err(f"TaskId:    {entry.task_id}")
            self._print_err(f"Timestamp: {entry.timestamp}")
            self._print_err(f"Text:      {entry.text}")
            self._print_err(LOG_SEPARATOR)
        return entries

    def _print_status(self, job: Job) -> None:
        if job.status == JobStatus.not_started:
            self._print("Waiting for compute resource...")
        else:
            self._print(f"Percent complete: {job.percent_complete}")

    def _print(self, text: str) -> None:
        print(text, file=self._out or sys.stdout)

    def _print_err(self, text: str) -> None:
        print(text, file=self._err or sys.stderr)
