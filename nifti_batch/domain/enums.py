"""领域枚举定义：统一任务标识、作业状态、执行结果与产物类型取值。"""

from __future__ import annotations

from enum import Enum


class TaskId(int, Enum):
    """流水线任务标识，每个处理阶段一个取值，merge 为终结任务。"""
    reslice = 1
    skull_strip = 2
    merge = 3


class JobStatus(str, Enum):
    """托管服务返回的作业生命周期状态枚举。"""
    not_started = "NotStarted"
    in_progress = "InProgress"
    complete = "Complete"
    error = "Error"
    cancelled = "Cancelled"
    on_hold = "OnHold"
    cancelling = "Cancelling"

    @property
    def is_running(self) -> bool:
        """是否仍需继续轮询。"""
        return self in _RUNNING_STATUSES

    @property
    def has_failed(self) -> bool:
        """是否按失败上报；OnHold 与 Cancelling 也视为失败。"""
        return self in _FAILED_STATUSES


_RUNNING_STATUSES = frozenset({JobStatus.not_started, JobStatus.in_progress})
_FAILED_STATUSES = frozenset({JobStatus.error, JobStatus.cancelled, JobStatus.on_hold, JobStatus.cancelling})


class TaskProcessSuccess(str, Enum):
    """单个任务执行结果分类，仅有成功与永久失败两种。"""
    succeeded = "Succeeded"
    permanent_failure = "PermanentFailure"


class TaskOutputFileKind(str, Enum):
    """任务产物文件类型。"""
    output = "Output"


class OutputKind(str, Enum):
    """作业中间产物类型。"""
    task_output = "TaskOutput"
    task_preview = "TaskPreview"
    job_output = "JobOutput"
    other = "Other"
