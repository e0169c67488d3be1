from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from nifti_batch.config import Settings
from nifti_batch.domain.enums import TaskId, TaskOutputFileKind, TaskProcessSuccess
from nifti_batch.domain.errors import ConfigurationError, UnknownTaskError
from nifti_batch.domain.graph import AUX_BIN_DIR, INSTALL_DIR, PIPELINE, StageDefinition, stage_for
from nifti_batch.domain.models import JobResult, TaskOutputFile, TaskProcessResult, TaskSpecifier
from nifti_batch.infra.logging.context import bind_log_context
from nifti_batch.infra.process.runner import ExternalProcess, ProcessRunner
from nifti_batch.infra.storage.workspace import LocalStorage, strip_nifti_suffix

logger = logging.getLogger(__name__)


def format_processor_output(stdout: str, stderr: str) -> str:
    return "--- STDOUT --- " + stdout + "--- STDERR --- " + stderr


def coerce_task_id(raw: TaskId | int | str) -> TaskId:
    if isinstance(raw, TaskId):
        return raw
    try:
        if isinstance(raw, str) and not raw.isdigit():
            return TaskId[raw]
        return TaskId(int(raw))
    except (KeyError, ValueError) as exc:
        raise UnknownTaskError(f"No such task: {raw}.") from exc


class TaskExecutor:
    def __init__(
        self,
        *,
        settings: Settings,
        storage: LocalStorage,
        runner: ProcessRunner,
    ) -> None:
        self._settings = settings
        self._storage = storage
        self._runner = runner
        self._handlers: dict[TaskId, Callable[[TaskSpecifier], TaskProcessResult]] = {
            stage.task_id: self._run_stage for stage in PIPELINE
        }

    def execute(self, task: TaskSpecifier) -> TaskProcessResult:
        task_id = coerce_task_id(task.task_id)
        if task_id == TaskId.merge:
            raise ValueError("merge task must be executed through merge()")
        handler = self._handlers.get(task_id)
        if handler is None:
            raise UnknownTaskError(f"No such task: {task_id!r}.")
        with bind_log_context(task_id=str(task_id.value), stage=task_id.name):
            return handler(task)

    def merge(self, merge_task: TaskSpecifier | None = None) -> JobResult:
        completion = self._storage.write_completion_marker(self._settings.completion_file_name)
        logger.info(
            "merge completion marker written",
            extra={"event": "task.merge.succeeded", "payload_preview": {"path": str(completion)}},
        )
        return JobResult(output_file=completion)

    def _run_stage(self, task: TaskSpecifier) -> TaskProcessResult:
        stage = stage_for(task.task_id)
        if stage is None:
            raise UnknownTaskError(f"No such task: {task.task_id!r}.")
        if not task.required_files:
            raise ConfigurationError(f"task {task.task_id.name} has no required file")

        # 按位置读取：首个必需文件即本阶段唯一相关输入，名称可能是拆分器合成的。
        input_file = self._storage.local_path(task.required_files[0].name)
        output_file = self._storage.local_path(stage.output_name)
        process = self._build_process(stage, input_file, output_file)

        logger.info(
            "task stage started",
            extra={
                "event": "task.stage.started",
                "op": stage.script,
                "payload_preview": {"input": str(input_file), "output": str(output_file)},
            },
        )
        output = self._runner.run(process)

        success = TaskProcessSuccess.succeeded if output.exit_code == 0 else TaskProcessSuccess.permanent_failure
        if success == TaskProcessSuccess.succeeded:
            logger.info("task stage succeeded", extra={"event": "task.stage.succeeded"})
        else:
            logger.warning(
                "task stage failed",
                extra={"event": "task.stage.failed", "payload_preview": {"exit_code": output.exit_code}},
            )
        return TaskProcessResult(
            success=success,
            output_files=[TaskOutputFile(file_name=output_file, kind=TaskOutputFileKind.output)],
            processor_output=format_processor_output(output.stdout, output.stderr),
        )

    def _build_process(self, stage: StageDefinition, input_file: Path, output_file: Path) -> ExternalProcess:
        return ExternalProcess(
            command_path=self._storage.executable_path(stage.script),
            arguments=[strip_nifti_suffix(input_file), strip_nifti_suffix(output_file)],
            working_directory=self._storage.executable_path(INSTALL_DIR),
            path_prefix=[self._storage.executable_path(AUX_BIN_DIR)],
        )
