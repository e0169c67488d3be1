"""无人值守账号凭据：解析 ``ClientId=...;TenantId=...`` 形式的账号串。"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import quote

from nifti_batch.domain.errors import CredentialFormatError

_WHITESPACE_RE = re.compile(r"\s+")

FORMAT_HINT = "UnattendedAccountId should be of form 'ClientId=...;TenantId=...'"


@dataclass(frozen=True, slots=True)
class Credential:
    """结构化身份；supports_real_authentication 为 False 时跳过全部鉴权逻辑。"""
    tenant: str | None
    client_id: str | None
    secret: str | None = None
    supports_real_authentication: bool = True

    @classmethod
    def empty(cls) -> Credential:
        """离线或本地调试场景使用的空凭据。"""
        return cls(tenant=None, client_id=None, secret=None, supports_real_authentication=False)

    def __repr__(self) -> str:
        return (
            f"Credential(tenant={self.tenant!r}, client_id={self.client_id!r}, "
            f"secret={'***' if self.secret else None}, "
            f"supports_real_authentication={self.supports_real_authentication})"
        )


def parse(raw_credential: str, secret: str | None) -> Credential:
    """解析账号串并附加密钥；任一键缺失或为空时抛出格式错误。"""
    tenant: str | None = None
    client_id: str | None = None
    # 先移除全部空白再按分号切分，键名大小写不敏感。
    for item in _WHITESPACE_RE.sub("", raw_credential or "").split(";"):
        key, sep, value = item.partition("=")
        if not sep:
            continue
        if key.lower() == "tenantid":
            tenant = quote(value, safe="")
        elif key.lower() == "clientid":
            client_id = value

    if not tenant or not client_id:
        raise CredentialFormatError(FORMAT_HINT)
    return Credential(tenant=tenant, client_id=client_id, secret=secret)
