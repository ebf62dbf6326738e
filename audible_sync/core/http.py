"""
HTTP 基础设施。
统一创建 httpx 客户端、映射状态码到错误类型，并提供有界退避重试。
"""

import logging
from typing import Optional, Any

import httpx
from tenacity import (
    Retrying,
    retry_if_exception,
    wait_random_exponential,
    stop_after_attempt,
    before_sleep_log,
)

from .config import HttpConfig, RetryConfig
from .errors import AuthError, NetworkError, InvalidInput


logger = logging.getLogger(__name__)


def create_client(
    config: Optional[HttpConfig] = None,
    transport: Optional[httpx.BaseTransport] = None,
    headers: Optional[dict[str, str]] = None,
) -> httpx.Client:
    """创建同步 HTTP 客户端。"""
    config = config or HttpConfig()
    client_kwargs: dict[str, Any] = {
        "headers": {
            "User-Agent": config.user_agent,
            "Accept-Charset": "utf-8",
            **(headers or {}),
        },
        "follow_redirects": True,
        "timeout": config.timeout,
    }
    if transport is not None:
        client_kwargs["transport"] = transport
    elif config.proxy:
        client_kwargs["proxy"] = config.proxy
    return httpx.Client(**client_kwargs)


def is_retryable(exc: BaseException) -> bool:
    """仅可重试的网络错误进入退避；认证错误立即上抛。"""
    return isinstance(exc, NetworkError) and exc.retryable


def create_retrying(config: Optional[RetryConfig] = None) -> Retrying:
    """按配置构建 tenacity 重试器。"""
    config = config or RetryConfig()
    return Retrying(
        retry=retry_if_exception(is_retryable),
        wait=wait_random_exponential(multiplier=config.initial_delay, max=config.max_delay),
        stop=stop_after_attempt(config.max_attempts),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def send(client: httpx.Client, method: str, url: str, **kwargs) -> httpx.Response:
    """发送请求，传输层异常转换为 NetworkError。"""
    try:
        return client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise NetworkError(f"Request to {_host(url)} timed out") from e
    except httpx.TransportError as e:
        raise NetworkError(f"Transport failure contacting {_host(url)}: {type(e).__name__}") from e


def check_response(response: httpx.Response, context: str = "") -> httpx.Response:
    """根据状态码抛出对应错误；响应体不会写入错误消息。"""
    status = response.status_code
    if status < 400:
        return response

    label = context or _host(str(response.request.url))
    if status in (401, 403):
        raise AuthError(f"{label} rejected the credentials (HTTP {status})")
    if status == 404:
        raise InvalidInput(f"{label} not found (HTTP 404)")
    if status == 429 or status >= 500:
        raise NetworkError(f"{label} unavailable (HTTP {status})", retryable=True, status_code=status)
    raise NetworkError(f"{label} failed (HTTP {status})", retryable=False, status_code=status)


def _host(url: str) -> str:
    try:
        return httpx.URL(url).host or url
    except (httpx.InvalidURL, TypeError):
        return "remote host"
