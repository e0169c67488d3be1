"""客户端编排门面：上传输入、构建并提交作业、监控至终态并按需下载最终产物。"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from nifti_batch.application.monitor import JobMonitor
from nifti_batch.config import Settings
from nifti_batch.domain.errors import ConfigurationError
from nifti_batch.domain.models import FileSpecifier, Job, JobSubmission, MonitorOutcome
from nifti_batch.infra.batch.client import BatchServiceClient
from nifti_batch.infra.storage.workspace import sanitize_filename

logger = logging.getLogger(__name__)


class JobClientService:
    """客户端作业生命周期门面。"""
    def __init__(
        self,
        *,
        settings: Settings,
        client: BatchServiceClient,
        monitor: JobMonitor,
    ) -> None:
        self._settings = settings
        self._client = client
        self._monitor = monitor

    def build_submission(
        self,
        files: list[FileSpecifier],
        parameters: dict[str, str] | None = None,
        *,
        name: str | None = None,
        job_type: str | None = None,
    ) -> JobSubmission:
        """构建提交请求；每个输入文件分配一个计算实例。"""
        if not files:
            raise ConfigurationError("at least one input file is required")
        return JobSubmission(
            name=name or self._settings.job_name,
            type=job_type or self._settings.job_type,
            required_files=list(files),
            parameters={str(key): str(value) for key, value in (parameters or {}).items()},
            instance_count=len(files),
        )

    def upload_inputs(self, paths: list[Path]) -> list[FileSpecifier]:
        missing = [str(path) for path in paths if not path.is_file()]
        if missing:
            raise ConfigurationError(f"input file not found: {', '.join(missing)}")
        return [self._client.upload_file(path) for path in paths]

    def submit_job(self, submission: JobSubmission) -> Job:
        print("-----Submitting Job-----")
        job = self._client.submit_job(submission)
        logger.info(
            "job submitted",
            extra={
                "event": "job.submitted",
                "job_id": job.id,
                "payload_preview": {"type": submission.type, "instance_count": submission.instance_count},
            },
        )
        return job

    def monitor_job(
        self,
        job: Job,
        output_dir: Path | None = None,
        *,
        cancel_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> MonitorOutcome:
        """监控作业至终态；timeout_seconds 为空时沿用配置的超时。"""
        print("\n-----Starting Job-----\n")
        target_dir = output_dir or self._settings.output_dir
        if timeout_seconds is None:
            return self._monitor.run(job, target_dir, cancel_event=cancel_event)
        return self._monitor.run(job, target_dir, cancel_event=cancel_event, timeout_seconds=timeout_seconds)

    def download_final_output(self, job: Job, output_dir: Path | None = None) -> Path:
        """下载作业最终产物（merge 阶段的终态文件）。"""
        print("\n\n-----Downloading Final Job Output-----\n")
        name = self._client.get_output_file_name(job.id)
        target = (output_dir or self._settings.output_dir) / sanitize_filename(name)
        return self._client.download_output(job.id, target)

    def run(
        self,
        paths: list[Path],
        parameters: dict[str, str] | None = None,
        *,
        output_dir: Path | None = None,
        download_final_output: bool = False,
        cancel_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> MonitorOutcome:
        """上传、提交并监控一个作业，返回监控结果。"""
        files = self.upload_inputs(paths)
        submission = self.build_submission(files, parameters)
        job = self.submit_job(submission)
        outcome = self.monitor_job(job, output_dir, cancel_event=cancel_event, timeout_seconds=timeout_seconds)
        if outcome.succeeded and download_final_output:
            outcome.downloaded_files.append(self.download_final_output(job, output_dir))
        return outcome
