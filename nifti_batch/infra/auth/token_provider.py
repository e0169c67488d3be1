"""访问令牌获取：以客户端凭据向身份提供方换取令牌，带进程内缓存与瞬时错误重试。"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generator

import httpx

from nifti_batch.domain.errors import AuthenticationError, IdentityProviderError
from nifti_batch.infra.auth.credentials import Credential
from nifti_batch.infra.retry import retry_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AccessToken:
    """不透明的 Bearer 令牌及其过期时刻（单调时钟秒）。"""
    token: str
    expires_at: float
    token_type: str = "Bearer"

    def __repr__(self) -> str:
        return f"AccessToken(token='***', expires_at={self.expires_at!r}, token_type={self.token_type!r})"


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, IdentityProviderError) and exc.is_transient


class TokenProvider:
    """身份提供方令牌客户端，未过期的缓存令牌不会触发网络请求。"""
    def __init__(
        self,
        *,
        authority_template: str,
        resource: str,
        http_client: httpx.Client | None = None,
        max_attempts: int = 3,
        retry_delay_seconds: float = 3.0,
        expiry_skew_seconds: float = 300,
        timeout_seconds: float = 30,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._authority_template = authority_template
        self._resource = resource
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))
        self._max_attempts = max_attempts
        self._retry_delay_seconds = retry_delay_seconds
        self._expiry_skew_seconds = expiry_skew_seconds
        self._sleep = sleep
        self._clock = clock
        self._cache: dict[tuple[str, str, str], AccessToken] = {}
        self._lock = threading.Lock()

    def authority_for(self, credential: Credential) -> str:
        # 模板沿用 "{0}" 占位符写法，租户已在解析时做过 URL 转义。
        return self._authority_template.format(credential.tenant).rstrip("/")

    def acquire_token(self, credential: Credential) -> AccessToken:
        """返回可用令牌；瞬时不可用最多重试两次，每次间隔固定秒数。"""
        if not credential.supports_real_authentication:
            raise ValueError("empty credential must be filtered before token acquisition")
        authority = self.authority_for(credential)
        key = (authority, self._resource, str(credential.client_id))

        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and cached.expires_at > self._clock():
                return cached

        token = retry_call(
            lambda: self._request_token(authority, credential),
            is_transient=_is_transient,
            max_attempts=self._max_attempts,
            delay_seconds=self._retry_delay_seconds,
            op="aad.acquire_token",
            sleep=self._sleep,
        )
        with self._lock:
            self._cache[key] = token
        return token

    def invalidate(self, credential: Credential) -> None:
        authority = self.authority_for(credential)
        with self._lock:
            self._cache.pop((authority, self._resource, str(credential.client_id)), None)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _request_token(self, authority: str, credential: Credential) -> AccessToken:
        started = time.perf_counter()
        response = self._client.post(
            f"{authority}/oauth2/token",
            data={
                "grant_type": "client_credentials",
                "client_id": credential.client_id,
                "client_secret": credential.secret or "",
                "resource": self._resource,
            },
        )
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        payload = self._json_or_empty(response)

        if response.is_error:
            error_code = payload.get("error")
            logger.error(
                "identity provider request failed",
                extra={
                    "event": "aad.token.failed",
                    "external_service": "aad",
                    "op": "oauth2.token",
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "error_type": str(error_code),
                    "error": payload.get("error_description"),
                },
            )
            raise IdentityProviderError(
                str(payload.get("error_description") or f"identity provider returned {response.status_code}"),
                error_code=error_code,
                status_code=response.status_code,
            )

        access_token = payload.get("access_token")
        if not access_token:
            raise AuthenticationError("Failed to retrieve access token")
        expires_in = float(payload.get("expires_in") or 3600)
        logger.info(
            "identity provider token acquired",
            extra={
                "event": "aad.token.succeeded",
                "external_service": "aad",
                "op": "oauth2.token",
                "duration_ms": duration_ms,
                "status_code": response.status_code,
            },
        )
        return AccessToken(
            token=str(access_token),
            expires_at=self._clock() + max(0.0, expires_in - self._expiry_skew_seconds),
            token_type=str(payload.get("token_type") or "Bearer"),
        )

    @staticmethod
    def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}


class BearerTokenAuth(httpx.Auth):
    """httpx 认证钩子：每次请求前向 TokenProvider 取令牌。"""
    requires_request_body = True

    def __init__(self, provider: TokenProvider, credential: Credential) -> None:
        self._provider = provider
        self._credential = credential

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        token = self._provider.acquire_token(self._credential)
        request.headers["Authorization"] = f"{token.token_type} {token.token}"
        response = yield request
        if response.status_code != 401:
            return
        # 服务端拒绝缓存令牌时作废并重取一次，仍失败则交由调用方处理。
        logger.warning(
            "cached token rejected, refreshing",
            extra={"event": "aad.token.rejected", "external_service": "batch", "status_code": 401},
        )
        self._provider.invalidate(self._credential)
        token = self._provider.acquire_token(self._credential)
        request.headers["Authorization"] = f"{token.token_type} {token.token}"
        yield request
