"""日志测试：覆盖脱敏、上下文注入与 JSON 行格式。"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from nifti_batch.config import Settings
from nifti_batch.infra.logging.context import bind_log_context, get_log_context
from nifti_batch.infra.logging.setup import (
    ContextInjectionFilter,
    DebugRoutingFilter,
    StructuredJsonFormatter,
    configure_logging,
    redact_text,
    render_payload_preview,
    shutdown_logging,
)


def _record(msg: str, level: int = logging.INFO, name: str = "nifti_batch.test", **extra) -> logging.LogRecord:
    record = logging.LogRecord(name, level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_redact_text_masks_tokens_and_secrets() -> None:
    """验证 Bearer 令牌与客户端密钥被脱敏。"""
    text = redact_text("Authorization: Bearer abc.def client_secret=s3cr3t&x=1", "standard")

    assert "abc.def" not in text
    assert "s3cr3t" not in text
    assert redact_text("client_secret=s3cr3t", "off") == "client_secret=s3cr3t"


def test_payload_preview_is_truncated() -> None:
    """验证超长预览被截断。"""
    preview = render_payload_preview({"data": "x" * 100}, max_chars=20, redaction_mode="standard")

    assert preview.endswith("...(truncated)")
    assert len(preview) == 20 + len("...(truncated)")


def test_bind_log_context_restores_previous_values() -> None:
    """验证上下文在退出后恢复。"""
    with bind_log_context(job_id="job-1"):
        with bind_log_context(task_id="1", stage="reslice"):
            assert get_log_context() == {"job_id": "job-1", "task_id": "1", "stage": "reslice"}
        assert get_log_context()["task_id"] is None
    assert get_log_context()["job_id"] is None


def test_formatter_emits_context_fields() -> None:
    """验证 JSON 行包含上下文字段与事件名。"""
    formatter = StructuredJsonFormatter(
        service="nifti-batch",
        process_role="worker",
        redaction_mode="standard",
        payload_preview_chars=256,
    )
    record = _record("task stage started", event="task.stage.started", payload_preview={"exit_code": 0})
    with bind_log_context(job_id="job-1", task_id="1", stage="reslice"):
        ContextInjectionFilter().filter(record)

    entry = json.loads(formatter.format(record))

    assert entry["service"] == "nifti-batch"
    assert entry["process_role"] == "worker"
    assert entry["event"] == "task.stage.started"
    assert entry["job_id"] == "job-1"
    assert entry["stage"] == "reslice"
    assert json.loads(entry["payload_preview"]) == {"exit_code": 0}


def test_debug_routing_by_module_and_job() -> None:
    """验证 DEBUG 仅对指定模块或作业放行。"""
    routing = DebugRoutingFilter(
        min_level=logging.INFO,
        debug_modules={"nifti_batch.infra.batch"},
        debug_job_ids={"job-9"},
    )

    assert routing.filter(_record("x", logging.WARNING))
    assert not routing.filter(_record("x", logging.DEBUG))
    assert routing.filter(_record("x", logging.DEBUG, name="nifti_batch.infra.batch.client"))
    assert routing.filter(_record("x", logging.DEBUG, job_id="job-9"))


def test_redaction_mode_is_limited_to_standard_and_off() -> None:
    """验证脱敏模式只接受 standard 与 off，未知取值在加载配置时报错。"""
    assert Settings(log_redaction_mode="off").log_redaction_mode == "off"
    with pytest.raises(ValueError):
        Settings(log_redaction_mode="strict")


def test_formatter_coerces_numeric_fields() -> None:
    """验证数值字段转为数字，无法解析时写 null。"""
    formatter = StructuredJsonFormatter(
        service="nifti-batch",
        process_role="client",
        redaction_mode="standard",
        payload_preview_chars=64,
    )

    entry = json.loads(formatter.format(_record("x", status_code=401, duration_ms="12.5", retry="n/a")))

    assert entry["status_code"] == 401
    assert entry["duration_ms"] == 12.5
    assert entry["retry"] is None


def test_configure_logging_writes_jsonl_and_detaches_on_shutdown(tmp_path: Path) -> None:
    """验证日志经队列写入角色目录下的 JSONL 文件，关闭后根 logger 不再挂载队列句柄。"""
    root = logging.getLogger()
    before = list(root.handlers)
    settings = Settings(log_dir=tmp_path, log_level="INFO")

    log_file = configure_logging(settings, process_role="client")
    try:
        logging.getLogger("nifti_batch.test").info("client ready", extra={"event": "client.ready"})
        logging.getLogger("nifti_batch.test").debug("dropped", extra={"event": "client.debug"})
    finally:
        shutdown_logging()

    assert log_file == tmp_path / "client" / "nifti-batch.jsonl"
    events = [json.loads(line)["event"] for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert events == ["client.ready"]
    assert root.handlers == before
