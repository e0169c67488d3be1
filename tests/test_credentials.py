"""凭据解析测试。"""

from __future__ import annotations

import pytest

from nifti_batch.domain.errors import ConfigurationError, CredentialFormatError
from nifti_batch.infra.auth.credentials import Credential, parse


def test_parse_client_and_tenant() -> None:
    """验证标准账号串解析出 client 与 tenant。"""
    credential = parse("ClientId=abc;TenantId=xyz", "s3cr3t")

    assert credential.client_id == "abc"
    assert credential.tenant == "xyz"
    assert credential.secret == "s3cr3t"
    assert credential.supports_real_authentication


def test_parse_ignores_whitespace_and_key_case() -> None:
    """验证空白与键名大小写不影响解析。"""
    credential = parse("  tenantid = xyz ;\n CLIENTID=abc ; ", None)

    assert credential.client_id == "abc"
    assert credential.tenant == "xyz"


def test_parse_escapes_tenant_for_url() -> None:
    """验证租户按 URL 片段转义。"""
    assert parse("ClientId=abc;TenantId=a/b", None).tenant == "a%2Fb"


@pytest.mark.parametrize("raw", ["ClientId=abc", "TenantId=xyz", "ClientId=;TenantId=xyz", "", "garbage"])
def test_parse_missing_key_is_format_error(raw: str) -> None:
    """验证缺少任一键时抛出格式错误，且属于配置错误族。"""
    with pytest.raises(CredentialFormatError, match="ClientId=...;TenantId=..."):
        parse(raw, "secret")
    assert issubclass(CredentialFormatError, ConfigurationError)


def test_repr_masks_secret() -> None:
    """验证 repr 不泄露密钥。"""
    text = repr(parse("ClientId=abc;TenantId=xyz", "s3cr3t"))

    assert "s3cr3t" not in text
    assert "***" in text


def test_empty_credential_skips_real_authentication() -> None:
    """验证空凭据标记为不支持真实鉴权。"""
    assert not Credential.empty().supports_real_authentication
