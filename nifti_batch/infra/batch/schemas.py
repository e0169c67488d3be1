"""托管批处理服务的报文模型，约束请求体与轮询响应结构。"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nifti_batch.domain.enums import JobStatus, OutputKind
from nifti_batch.domain.models import FileSpecifier, Job, JobLogEntry, JobSubmission, TaskOutput


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FileSpecifierPayload(_WireModel):
    """文件描述报文。"""
    name: str
    original_path: str | None = Field(default=None, alias="originalPath")
    hash: str | None = None
    timestamp: datetime | None = None

    @classmethod
    def from_domain(cls, spec: FileSpecifier) -> FileSpecifierPayload:
        return cls(name=spec.name, original_path=spec.original_path, hash=spec.hash, timestamp=spec.timestamp)

    def to_domain(self) -> FileSpecifier:
        return FileSpecifier(
            name=self.name,
            original_path=self.original_path,
            hash=self.hash,
            timestamp=self.timestamp,
        )


class JobSubmissionRequest(_WireModel):
    """作业提交请求体。"""
    name: str
    type: str
    required_files: list[FileSpecifierPayload] = Field(alias="requiredFiles")
    parameters: dict[str, str] = Field(default_factory=dict)
    instance_count: int = Field(default=1, alias="instanceCount")

    @classmethod
    def from_domain(cls, submission: JobSubmission) -> JobSubmissionRequest:
        return cls(
            name=submission.name,
            type=submission.type,
            required_files=[FileSpecifierPayload.from_domain(item) for item in submission.required_files],
            parameters=dict(submission.parameters),
            instance_count=submission.instance_count,
        )


class JobResponse(_WireModel):
    """作业状态轮询响应。"""
    id: str
    status: JobStatus
    percent_complete: float = Field(default=0, alias="percentComplete")
    name: str | None = None
    type: str | None = None
    required_files: list[FileSpecifierPayload] = Field(default_factory=list, alias="requiredFiles")
    parameters: dict[str, str] = Field(default_factory=dict)
    instance_count: int = Field(default=1, alias="instanceCount")

    def to_domain(self) -> Job:
        return Job(
            id=self.id,
            status=self.status,
            percent_complete=int(self.percent_complete),
            files=[item.to_domain() for item in self.required_files],
            parameters=dict(self.parameters),
            instance_count=self.instance_count,
            name=self.name,
            type=self.type,
        )


class TaskOutputPayload(_WireModel):
    """中间产物条目报文。"""
    name: str
    kind: OutputKind
    task_id: int = Field(alias="taskId")

    @field_validator("kind", mode="before")
    @classmethod
    def _unknown_kind_as_other(cls, value: object) -> object:
        if isinstance(value, str) and value not in {item.value for item in OutputKind}:
            return OutputKind.other
        return value

    def to_domain(self) -> TaskOutput:
        return TaskOutput(name=self.name, kind=self.kind, task_id=self.task_id)


class LogEntryPayload(_WireModel):
    """作业日志条目报文。"""
    task_id: int | None = Field(default=None, alias="taskId")
    timestamp: datetime | None = None
    text: str = ""

    def to_domain(self) -> JobLogEntry:
        return JobLogEntry(task_id=self.task_id, timestamp=self.timestamp, text=self.text)
