"""批处理服务 HTTP 客户端：封装文件上传、作业提交、状态轮询、产物与日志读取接口。"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Iterator

import httpx

from nifti_batch.domain.models import FileSpecifier, Job, JobLogEntry, JobSubmission, TaskOutput
from nifti_batch.infra.batch.schemas import (
    FileSpecifierPayload,
    JobResponse,
    JobSubmissionRequest,
    LogEntryPayload,
    TaskOutputPayload,
)
from nifti_batch.infra.storage.workspace import save_stream_to_file, sha256_file

logger = logging.getLogger(__name__)


class BatchServiceClient:
    """批处理服务同步 HTTP 客户端封装。"""
    def __init__(
        self,
        base_url: str,
        *,
        auth: httpx.Auth | None = None,
        timeout_seconds: int = 60,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._closed = False
        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            auth=auth,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
            transport=transport,
        )

    def _client_or_raise(self) -> httpx.Client:
        """返回可用客户端；若已关闭则抛出异常。"""
        if self._closed:
            raise RuntimeError("BatchServiceClient is already closed")
        return self._client

    def close(self) -> None:
        """关闭底层 HTTP 客户端连接池。"""
        if self._closed:
            return
        self._client.close()
        self._closed = True

    def _log_failure(self, exc: Exception, *, op: str, started: float, payload_preview: Any) -> None:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        status_code = None
        if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
            status_code = exc.response.status_code
        logger.error(
            "batch service request failed",
            extra={
                "event": "batch.request.failed",
                "external_service": "batch",
                "op": op,
                "duration_ms": duration_ms,
                "status_code": status_code,
                "error_type": type(exc).__name__,
                "error": str(exc),
                "payload_preview": payload_preview,
            },
        )

    def _request(
        self,
        *,
        method: str,
        path: str,
        op: str,
        json_body: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
        payload_preview: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """发送 HTTP 请求并记录结构化日志。"""
        started = time.perf_counter()
        try:
            response = self._client_or_raise().request(method, path, json=json_body, files=files)
            response.raise_for_status()
        except Exception as exc:
            self._log_failure(exc, op=op, started=started, payload_preview=payload_preview)
            raise
        logger.debug(
            "batch service request completed",
            extra={
                "event": "batch.request.completed",
                "external_service": "batch",
                "op": op,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "status_code": response.status_code,
            },
        )
        return response

    def _download(self, path: str, target: Path, *, op: str) -> Path:
        """以流式方式下载文件，避免大体积影像整体驻留内存。"""
        started = time.perf_counter()
        preview = {"path": path, "target": str(target)}
        try:
            with self._client_or_raise().stream("GET", path) as response:
                response.raise_for_status()
                save_stream_to_file(response.iter_bytes(), target)
        except Exception as exc:
            self._log_failure(exc, op=op, started=started, payload_preview=preview)
            raise
        logger.info(
            "batch service file downloaded",
            extra={
                "event": "batch.file.downloaded",
                "external_service": "batch",
                "op": op,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "payload_preview": preview,
            },
        )
        return target

    def upload_file(self, path: Path) -> FileSpecifier:
        """上传本地输入文件，返回服务端登记的文件描述。"""
        with path.open("rb") as handle:
            response = self._request(
                method="POST",
                path="/files",
                op="files.upload",
                files={"file": (path.name, handle, "application/octet-stream")},
                payload_preview={"path": str(path)},
            )
        spec = FileSpecifierPayload.model_validate(response.json()).to_domain()
        if spec.original_path is None or spec.hash is None:
            # 服务端未回填的字段以本地文件补齐。
            spec = FileSpecifier(
                name=spec.name,
                original_path=spec.original_path or str(path),
                hash=spec.hash or sha256_file(path),
                timestamp=spec.timestamp,
            )
        return spec

    def submit_job(self, submission: JobSubmission) -> Job:
        body = JobSubmissionRequest.from_domain(submission).model_dump(by_alias=True, mode="json")
        response = self._request(
            method="POST",
            path="/jobs",
            op="jobs.submit",
            json_body=body,
            payload_preview={
                "name": submission.name,
                "type": submission.type,
                "file_count": len(submission.required_files),
                "instance_count": submission.instance_count,
            },
        )
        return JobResponse.model_validate(response.json()).to_domain()

    def get_job(self, job_id: str) -> Job:
        response = self._request(method="GET", path=f"/jobs/{job_id}", op="jobs.get")
        return JobResponse.model_validate(response.json()).to_domain()

    def list_intermediate_outputs(self, job_id: str) -> list[TaskOutput]:
        response = self._request(method="GET", path=f"/jobs/{job_id}/outputs/intermediate", op="jobs.outputs")
        return [TaskOutputPayload.model_validate(item).to_domain() for item in response.json()]

    def iter_logs(self, job_id: str) -> Iterator[JobLogEntry]:
        """按服务端返回顺序逐条产出作业日志。"""
        response = self._request(method="GET", path=f"/jobs/{job_id}/log", op="jobs.log")
        for item in response.json():
            yield LogEntryPayload.model_validate(item).to_domain()

    def download_file(self, job_id: str, name: str, target: Path) -> Path:
        return self._download(f"/jobs/{job_id}/files/{name}", target, op="jobs.file")

    def get_output_file_name(self, job_id: str) -> str:
        response = self._request(method="GET", path=f"/jobs/{job_id}/output/filename", op="jobs.output.name")
        payload = response.json()
        name = payload.get("name") if isinstance(payload, dict) else payload
        if not name:
            raise RuntimeError("missing final output name from batch service response")
        return str(name)

    def download_output(self, job_id: str, target: Path) -> Path:
        return self._download(f"/jobs/{job_id}/output", target, op="jobs.output")
