"""日志初始化：JSON 行格式、队列异步落盘，以及按模块或作业放行 DEBUG。"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from nifti_batch.config import Settings
from nifti_batch.infra.logging.context import get_log_context

SERVICE_NAME = "nifti-batch"

_listener: QueueListener | None = None
_queue_handler: QueueHandler | None = None

_CONTEXT_KEYS = ("job_id", "task_id", "stage")
_TEXT_KEYS = ("external_service", "op", "error_type")
_NUMBER_KEYS = ("duration_ms", "status_code", "retry")
_NOISY_LOGGERS = ("httpx", "httpcore", "celery", "kombu")

_SENSITIVE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(authorization\s*[:=]\s*bearer\s+)[^\s,;]+"), r"\1***"),
    (re.compile(r"(?i)(client_secret\s*[:=]\s*)[^\s,;&]+"), r"\1***"),
    (re.compile(r"(?i)(access_token\"?\s*[:=]\s*\"?)[^\s,;\"]+"), r"\1***"),
    (re.compile(r"(?i)(password\s*[:=]\s*)[^\s,;]+"), r"\1***"),
)


def redact_text(value: str | None, mode: str) -> str | None:
    """屏蔽 Bearer 令牌与客户端密钥；mode 为 off 时原样返回。"""
    if value is None or mode == "off":
        return value
    text = str(value)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def render_payload_preview(payload: Any, *, max_chars: int, redaction_mode: str) -> str | None:
    if payload is None:
        return None
    serialized = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
    redacted = redact_text(serialized, redaction_mode) or ""
    if len(redacted) <= max_chars:
        return redacted
    return f"{redacted[:max_chars]}...(truncated)"


class DebugRoutingFilter(logging.Filter):
    """低于 min_level 的记录只有 DEBUG 且命中模块前缀或 job_id 时放行。"""

    def __init__(self, *, min_level: int, debug_modules: set[str], debug_job_ids: set[str]) -> None:
        super().__init__()
        self._min_level = min_level
        self._debug_modules = tuple(debug_modules)
        self._debug_job_ids = debug_job_ids

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._min_level:
            return True
        if record.levelno != logging.DEBUG:
            return False
        name = record.name
        if any(name == module or name.startswith(f"{module}.") for module in self._debug_modules):
            return True
        job_id = getattr(record, "job_id", None) or get_log_context().get("job_id")
        return job_id in self._debug_job_ids


class ContextInjectionFilter(logging.Filter):
    """入队前把 contextvars 中的作业上下文拷到 record 上，监听线程里读不到 contextvars。"""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = get_log_context()
        for key in _CONTEXT_KEYS:
            if getattr(record, key, None) is None and ctx.get(key) is not None:
                setattr(record, key, ctx[key])
        return True


def _as_number(value: Any) -> int | float | None:
    if value is None or isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class StructuredJsonFormatter(logging.Formatter):
    """每条记录输出一行 JSON，字段集合固定，缺失值写 null。"""

    def __init__(self, *, service: str, process_role: str, redaction_mode: str, payload_preview_chars: int) -> None:
        super().__init__()
        self._service = service
        self._process_role = process_role
        self._redaction_mode = redaction_mode
        self._payload_preview_chars = payload_preview_chars

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        error_text = getattr(record, "error", None)
        if error_text is None and record.exc_info:
            error_text = self.formatException(record.exc_info)

        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self._service,
            "process_role": self._process_role,
            "module": record.name,
            "event": getattr(record, "event", None),
        }
        entry.update({key: getattr(record, key, None) or ctx.get(key) for key in _CONTEXT_KEYS})
        entry.update({key: getattr(record, key, None) for key in _TEXT_KEYS})
        entry.update({key: _as_number(getattr(record, key, None)) for key in _NUMBER_KEYS})
        entry["message"] = redact_text(record.getMessage(), self._redaction_mode)
        entry["error"] = redact_text(str(error_text), self._redaction_mode) if error_text is not None else None
        entry["payload_preview"] = render_payload_preview(
            getattr(record, "payload_preview", None),
            max_chars=self._payload_preview_chars,
            redaction_mode=self._redaction_mode,
        )
        return json.dumps(entry, ensure_ascii=False)


def configure_logging(settings: Settings, *, process_role: str) -> Path:
    """挂载队列日志：JSONL 文件记录全部放行级别，ERROR 另写 stderr。返回日志文件路径。"""
    global _listener, _queue_handler
    shutdown_logging()

    role_dir = settings.log_dir / process_role
    role_dir.mkdir(parents=True, exist_ok=True)
    log_file = role_dir / f"{SERVICE_NAME}.jsonl"

    formatter = StructuredJsonFormatter(
        service=SERVICE_NAME,
        process_role=process_role,
        redaction_mode=settings.log_redaction_mode,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    stderr_handler = logging.StreamHandler(stream=sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    queue_obj: SimpleQueue[logging.LogRecord] = SimpleQueue()
    _queue_handler = QueueHandler(queue_obj)
    _queue_handler.addFilter(ContextInjectionFilter())
    _queue_handler.addFilter(
        DebugRoutingFilter(
            min_level=getattr(logging, settings.log_level.upper(), logging.INFO),
            debug_modules=set(settings.log_debug_modules_list()),
            debug_job_ids=set(settings.log_debug_job_ids_list()),
        )
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(_queue_handler)

    _listener = QueueListener(queue_obj, file_handler, stderr_handler, respect_handler_level=True)
    _listener.start()

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_file


def shutdown_logging() -> None:
    """摘下队列句柄、排空监听器并关闭文件。可重复调用。"""
    global _listener, _queue_handler
    if _queue_handler is not None:
        logging.getLogger().removeHandler(_queue_handler)
        _queue_handler = None
    if _listener is not None:
        _listener.stop()
        for handler in _listener.handlers:
            handler.close()
        _listener = None
