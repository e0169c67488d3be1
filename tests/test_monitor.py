"""作业监控测试：覆盖产物去重下载、失败日志输出、超时与取消。"""

from __future__ import annotations

import io
import itertools
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from nifti_batch.application.monitor import JobMonitor
from nifti_batch.domain.enums import JobStatus, OutputKind
from nifti_batch.domain.errors import MonitorCancelledError
from nifti_batch.domain.models import Job, JobLogEntry, TaskOutput


class _ClientStub:
    def __init__(
        self,
        script: list[tuple[JobStatus, int, list[TaskOutput]]],
        *,
        logs: list[JobLogEntry] | None = None,
    ) -> None:
        self._script = list(script)
        self._current: list[TaskOutput] = []
        self.logs = logs or []
        self.downloads: list[tuple[str, Path]] = []
        self.get_job_calls = 0

    def get_job(self, job_id: str) -> Job:
        self.get_job_calls += 1
        status, percent, outputs = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        self._current = outputs
        return Job(id=job_id, status=status, percent_complete=percent)

    def list_intermediate_outputs(self, job_id: str) -> list[TaskOutput]:
        return list(self._current)

    def download_file(self, job_id: str, name: str, target: Path) -> Path:
        self.downloads.append((name, target))
        target.write_bytes(name.encode("utf-8"))
        return target

    def iter_logs(self, job_id: str):
        yield from self.logs


def _output(name: str, task_id: int, kind: OutputKind = OutputKind.task_output) -> TaskOutput:
    return TaskOutput(name=name, kind=kind, task_id=task_id)


def _monitor(client: _ClientStub, sleeps: list[float], **kwargs) -> tuple[JobMonitor, io.StringIO, io.StringIO]:
    out = io.StringIO()
    err = io.StringIO()
    monitor = JobMonitor(client, sleep=sleeps.append, out=out, err=err, **kwargs)
    return monitor, out, err


def test_each_task_output_is_downloaded_once(tmp_path: Path) -> None:
    """验证重复轮询看到同一任务产物时只下载一次。"""
    resliced = _output("resliced.nii", 1)
    stripped = _output("skull-stripped.nii", 2)
    client = _ClientStub(
        [
            (JobStatus.in_progress, 40, [resliced]),
            (JobStatus.in_progress, 60, [resliced]),
            (JobStatus.complete, 100, [resliced, stripped, _output("preview.png", 2, OutputKind.task_preview)]),
        ]
    )
    sleeps: list[float] = []
    monitor, out, _ = _monitor(client, sleeps)

    outcome = monitor.run(Job(id="job-1", status=JobStatus.not_started), tmp_path)

    assert outcome.succeeded
    assert outcome.downloaded_task_ids == [1, 2]
    assert [name for name, _ in client.downloads] == ["resliced.nii", "skull-stripped.nii"]
    assert (tmp_path / "resliced.nii").read_bytes() == b"resliced.nii"
    assert sleeps == [5.0, 5.0, 5.0]
    assert "Percent complete: 60" in out.getvalue()
    assert "-----Job successfully completed-----" in out.getvalue()


def test_waiting_message_while_not_started(tmp_path: Path) -> None:
    """验证作业未开始时打印等待资源提示。"""
    client = _ClientStub([(JobStatus.not_started, 0, []), (JobStatus.complete, 100, [])])
    monitor, out, _ = _monitor(client, [])

    monitor.run(Job(id="job-1", status=JobStatus.not_started), tmp_path)

    assert "Waiting for compute resource..." in out.getvalue()


def test_failed_job_prints_logs_and_skips_downloads(tmp_path: Path) -> None:
    """验证失败终态立即停止轮询、打印全部日志且不下载产物。"""
    logs = [
        JobLogEntry(task_id=1, timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc), text="reslice exited 1"),
        JobLogEntry(task_id=None, timestamp=None, text="job aborted"),
    ]
    client = _ClientStub([(JobStatus.error, 50, [_output("resliced.nii", 1)])], logs=logs)
    monitor, _, err = _monitor(client, [])

    outcome = monitor.run(Job(id="job-1", status=JobStatus.in_progress), tmp_path)

    assert not outcome.succeeded
    assert outcome.status == JobStatus.error
    assert client.downloads == []
    assert client.get_job_calls == 1
    text = err.getvalue()
    assert "-----------Job has failed-------------" in text
    assert "TaskId:    1" in text
    assert "Text:      reslice exited 1" in text
    assert text.count("-------------------------------------") == 2


@pytest.mark.parametrize("status", [JobStatus.cancelled, JobStatus.on_hold, JobStatus.cancelling])
def test_other_terminal_statuses_are_failures(tmp_path: Path, status: JobStatus) -> None:
    """验证 Cancelled / OnHold / Cancelling 均按失败上报。"""
    client = _ClientStub([(status, 10, [])])
    monitor, _, _ = _monitor(client, [])

    assert not monitor.run(Job(id="job-1", status=JobStatus.in_progress), tmp_path).succeeded


def test_already_terminal_job_is_not_polled(tmp_path: Path) -> None:
    """验证传入已完成作业时不再轮询。"""
    client = _ClientStub([(JobStatus.complete, 100, [])])
    sleeps: list[float] = []
    monitor, _, _ = _monitor(client, sleeps)

    outcome = monitor.run(Job(id="job-1", status=JobStatus.complete), tmp_path)

    assert outcome.succeeded
    assert client.get_job_calls == 0
    assert sleeps == []


def test_monitor_timeout_raises(tmp_path: Path) -> None:
    """验证超过截止时间仍未终态时抛出 TimeoutError。"""
    client = _ClientStub([(JobStatus.in_progress, 10, [])])
    ticks = itertools.count(start=0, step=30)
    monitor, _, _ = _monitor(client, [], timeout_seconds=60, clock=lambda: float(next(ticks)))

    with pytest.raises(TimeoutError):
        monitor.run(Job(id="job-1", status=JobStatus.not_started), tmp_path)
    assert client.get_job_calls >= 1


def test_monitor_cancel_event_stops_polling(tmp_path: Path) -> None:
    """验证取消事件置位后抛出 MonitorCancelledError 且不再请求服务。"""
    client = _ClientStub([(JobStatus.in_progress, 10, [])])
    cancel = threading.Event()
    cancel.set()
    monitor, _, _ = _monitor(client, [])

    with pytest.raises(MonitorCancelledError):
        monitor.run(Job(id="job-1", status=JobStatus.not_started), tmp_path, cancel_event=cancel)
    assert client.get_job_calls == 0


def test_download_target_name_is_sanitized(tmp_path: Path) -> None:
    """验证服务端返回的文件名不会逃逸输出目录。"""
    client = _ClientStub([(JobStatus.complete, 100, [_output("../../etc/passwd", 1)])])
    monitor, _, _ = _monitor(client, [])

    monitor.run(Job(id="job-1", status=JobStatus.in_progress), tmp_path)

    assert client.downloads == [("../../etc/passwd", tmp_path / "passwd")]


def test_per_run_timeout_overrides_configured_limit(tmp_path: Path) -> None:
    """验证单次运行传入的超时覆盖构造参数，且不影响后续运行。"""
    client = _ClientStub([(JobStatus.in_progress, 10, [])])
    ticks = itertools.count(start=0, step=30)
    monitor, _, _ = _monitor(client, [], timeout_seconds=None, clock=lambda: float(next(ticks)))

    with pytest.raises(TimeoutError, match="60"):
        monitor.run(Job(id="job-1", status=JobStatus.not_started), tmp_path, timeout_seconds=60)

    finishing = _ClientStub([(JobStatus.in_progress, 50, []), (JobStatus.complete, 100, [])])
    unbounded, _, _ = _monitor(finishing, [], timeout_seconds=1, clock=lambda: float(next(ticks)))
    assert unbounded.run(Job(id="job-2", status=JobStatus.not_started), tmp_path, timeout_seconds=None).succeeded


def test_download_keeps_logical_name(tmp_path: Path) -> None:
    """验证下载文件按逻辑名落盘，空格等字符不被改写。"""
    client = _ClientStub([(JobStatus.complete, 100, [_output("brain scan.nii", 1)])])
    monitor, _, _ = _monitor(client, [])

    outcome = monitor.run(Job(id="job-1", status=JobStatus.in_progress), tmp_path)

    assert outcome.downloaded_files == [tmp_path / "brain scan.nii"]
    assert (tmp_path / "brain scan.nii").exists()
