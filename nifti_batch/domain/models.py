"""领域数据结构定义：作业、任务规格、文件描述与执行结果等核心值对象。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from nifti_batch.domain.enums import JobStatus, OutputKind, TaskId, TaskOutputFileKind, TaskProcessSuccess


@dataclass(frozen=True, slots=True)
class FileSpecifier:
    """任务所需或产出的文件描述，尚未绑定到具体本地路径。"""
    name: str
    original_path: str | None = None
    hash: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True, slots=True)
class TaskSpecifier:
    """拆分器产出的不可变任务规格。"""
    task_id: TaskId
    required_files: tuple[FileSpecifier, ...]
    parameters: dict[str, str]
    depends_on: TaskId | None = None


@dataclass(slots=True)
class Job:
    """客户端持有的作业只读投影，由轮询刷新。"""
    id: str
    status: JobStatus
    percent_complete: int = 0
    files: list[FileSpecifier] = field(default_factory=list)
    parameters: dict[str, str] = field(default_factory=dict)
    instance_count: int = 1
    name: str | None = None
    type: str | None = None


@dataclass(slots=True)
class JobSubmission:
    """作业提交请求，type 决定服务端选用的拆分器。"""
    name: str
    type: str
    required_files: list[FileSpecifier]
    parameters: dict[str, str] = field(default_factory=dict)
    instance_count: int = 1


@dataclass(slots=True)
class TaskOutputFile:
    """任务产出文件及其类型标记。"""
    file_name: Path
    kind: TaskOutputFileKind = TaskOutputFileKind.output


@dataclass(slots=True)
class TaskProcessResult:
    """单个任务执行结果，诊断文本无论成败都会附带。"""
    success: TaskProcessSuccess
    output_files: list[TaskOutputFile]
    processor_output: str

    @property
    def succeeded(self) -> bool:
        return self.success == TaskProcessSuccess.succeeded


@dataclass(slots=True)
class JobResult:
    """merge 阶段产出的作业终态产物。"""
    output_file: Path


@dataclass(slots=True)
class TaskOutput:
    """作业中间产物条目。"""
    name: str
    kind: OutputKind
    task_id: int


@dataclass(slots=True)
class JobLogEntry:
    """作业日志条目。"""
    task_id: int | None
    timestamp: datetime | None
    text: str


@dataclass(slots=True)
class MonitorOutcome:
    """一次监控运行的汇总结果。"""
    status: JobStatus
    downloaded_task_ids: list[int]
    downloaded_files: list[Path]

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.complete
