"""有界重试组合子：仅对判定为瞬时的异常按固定间隔重试。"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def retry_call(
    operation: Callable[[], T],
    *,
    is_transient: Callable[[BaseException], bool],
    max_attempts: int = 3,
    delay_seconds: float = 3.0,
    op: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """执行 operation，瞬时错误最多重试到 max_attempts 次，其余错误立即抛出。"""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:
            if not is_transient(exc) or attempt >= max_attempts:
                raise
            logger.warning(
                "transient failure, retrying",
                extra={
                    "event": "retry.scheduled",
                    "op": op,
                    "retry": attempt,
                    "payload_preview": {"delay_seconds": delay_seconds, "max_attempts": max_attempts},
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            sleep(delay_seconds)
