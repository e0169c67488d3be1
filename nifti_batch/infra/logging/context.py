"""日志上下文：基于 contextvars 透传 job/task/stage 标识。"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Iterator

_UNSET = object()

_job_id_var: ContextVar[str | None] = ContextVar("log_job_id", default=None)
_task_id_var: ContextVar[str | None] = ContextVar("log_task_id", default=None)
_stage_var: ContextVar[str | None] = ContextVar("log_stage", default=None)


def get_log_context() -> dict[str, str | None]:
    """返回当前线程下的日志上下文字段。"""
    return {
        "job_id": _job_id_var.get(),
        "task_id": _task_id_var.get(),
        "stage": _stage_var.get(),
    }


@contextmanager
def bind_log_context(
    *,
    job_id: str | None | object = _UNSET,
    task_id: str | None | object = _UNSET,
    stage: str | None | object = _UNSET,
) -> Iterator[None]:
    """在上下文范围内绑定日志字段，并在退出时自动恢复。"""
    tokens: list[tuple[ContextVar[Any], Token[Any]]] = []
    if job_id is not _UNSET:
        tokens.append((_job_id_var, _job_id_var.set(job_id)))
    if task_id is not _UNSET:
        tokens.append((_task_id_var, _task_id_var.set(task_id)))
    if stage is not _UNSET:
        tokens.append((_stage_var, _stage_var.set(stage)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
