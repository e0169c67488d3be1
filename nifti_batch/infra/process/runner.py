"""外部进程封装：同步执行处理脚本，按调用叠加环境变量并捕获输出。"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessOutput:
    """进程执行结果。"""
    exit_code: int
    stdout: str
    stderr: str


@dataclass(slots=True)
class ExternalProcess:
    """一次外部进程调用的描述。"""
    command_path: Path
    arguments: list[str]
    working_directory: Path
    path_prefix: list[Path] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)

    def build_env(self) -> dict[str, str]:
        """基于当前进程环境的副本构建本次调用的环境，不修改 os.environ。"""
        env = os.environ.copy()
        env.update(self.environment)
        if self.path_prefix:
            # 辅助二进制目录置于 PATH 最前，优先于系统同名工具。
            parts = [str(item) for item in self.path_prefix] + [env.get("PATH", "")]
            env["PATH"] = os.pathsep.join(part for part in parts if part)
        return env


class ProcessRunner:
    """外部进程执行器，统一记录耗时与退出码。"""

    def run(self, process: ExternalProcess) -> ProcessOutput:
        args = [str(process.command_path), *process.arguments]
        started = time.perf_counter()
        try:
            completed = subprocess.run(
                args,
                cwd=str(process.working_directory),
                env=process.build_env(),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.error(
                "external process failed to start",
                extra={
                    "event": "process.spawn.failed",
                    "op": process.command_path.name,
                    "duration_ms": duration_ms,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "external process finished",
            extra={
                "event": "process.finished",
                "op": process.command_path.name,
                "duration_ms": duration_ms,
                "payload_preview": {"exit_code": completed.returncode, "args": process.arguments},
            },
        )
        return ProcessOutput(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
