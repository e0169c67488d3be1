"""领域异常定义：配置类错误快速失败，鉴权与执行失败携带分类信息。"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """配置或编程缺陷导致的错误，不做重试。"""


class CredentialFormatError(ConfigurationError):
    """凭据字符串格式不合法。"""


class UnknownTaskError(ConfigurationError):
    """任务标识不在执行器支持范围内，通常意味着拆分器与执行器版本不一致。"""


class AuthenticationError(RuntimeError):
    """身份提供方未返回可用访问令牌。"""


class IdentityProviderError(RuntimeError):
    """身份提供方返回的错误响应，保留原始错误码用于判断是否可重试。"""

    def __init__(self, message: str, *, error_code: str | None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.error_code == "temporarily_unavailable"


class TaskProcessFailedError(RuntimeError):
    """任务外部进程以非零退出码结束，依赖它的任务不得继续派发。"""

    def __init__(self, task_id: int, diagnostics: str) -> None:
        super().__init__(f"task {task_id} failed permanently")
        self.task_id = task_id
        self.diagnostics = diagnostics


class MonitorCancelledError(RuntimeError):
    """作业监控被调用方主动取消。"""
