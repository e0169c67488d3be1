"""外部进程封装测试：验证环境叠加只作用于子进程并捕获输出。"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from nifti_batch.infra.process.runner import ExternalProcess, ProcessRunner


def test_run_captures_output_and_prefixes_path(tmp_path: Path) -> None:
    """验证子进程看到前置的 PATH，且当前进程环境不被修改。"""
    before = os.environ.get("PATH")
    aux_bin = tmp_path / "bin"
    process = ExternalProcess(
        command_path=Path(sys.executable),
        arguments=["-c", "import os, sys; print(os.environ['PATH'].split(os.pathsep)[0]); sys.stderr.write('e')"],
        working_directory=tmp_path,
        path_prefix=[aux_bin],
    )

    output = ProcessRunner().run(process)

    assert output.exit_code == 0
    assert output.stdout.strip() == str(aux_bin)
    assert output.stderr == "e"
    assert os.environ.get("PATH") == before


def test_run_reports_nonzero_exit_code(tmp_path: Path) -> None:
    """验证非零退出码原样返回。"""
    process = ExternalProcess(
        command_path=Path(sys.executable),
        arguments=["-c", "import sys; sys.exit(3)"],
        working_directory=tmp_path,
    )

    assert ProcessRunner().run(process).exit_code == 3


def test_run_missing_command_raises_os_error(tmp_path: Path) -> None:
    """验证命令不存在时抛出 OSError。"""
    process = ExternalProcess(
        command_path=tmp_path / "missing-tool",
        arguments=[],
        working_directory=tmp_path,
    )

    with pytest.raises(OSError):
        ProcessRunner().run(process)


def test_build_env_applies_extra_variables() -> None:
    """验证额外环境变量只出现在构建出的副本中。"""
    process = ExternalProcess(
        command_path=Path("tool"),
        arguments=[],
        working_directory=Path("."),
        environment={"NIFTI_BATCH_TEST_FLAG": "1"},
    )

    env = process.build_env()

    assert env["NIFTI_BATCH_TEST_FLAG"] == "1"
    assert "NIFTI_BATCH_TEST_FLAG" not in os.environ
