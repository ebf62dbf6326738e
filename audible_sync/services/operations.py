"""
边界操作。
每个操作返回统一结果：成功为 {success, data}，失败为 {success: false, error}。
错误消息经过遮蔽，不会包含令牌或激活字节。
"""

from __future__ import annotations
import functools
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
from pydantic import ValidationError

from ..core import activation, auth, library
from ..core.aax import DecryptionEngine
from ..core.config import AppConfig
from ..core.download import DownloadManager
from ..core.errors import AudibleSyncError
from ..core.locale import supported_locales
from ..core.types import Account, Book, format_validation_error
from ..core.utils import CancelToken, redact
from .logger import LoggerInterface, configure_logging, get_logger


# 这些参数的值在错误消息中一律遮蔽
SECRET_ARGS = (
    "access_token",
    "refresh_token",
    "pkce_verifier",
    "code",
    "callback_url",
    "activation_bytes",
)


@dataclass
class OperationResult:
    """边界操作的统一结果。"""
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: dict[str, Any]) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "OperationResult":
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error}


def _collect_secrets(kwargs: dict[str, Any]) -> tuple:
    secrets = []
    for name in SECRET_ARGS:
        value = kwargs.get(name)
        if isinstance(value, str) and len(value) >= 4:
            secrets.append(value)
    account = kwargs.get("account")
    if isinstance(account, Account):
        secrets += [account.tokens.access_token, account.tokens.refresh_token]
    elif isinstance(account, dict):
        tokens = account.get("tokens") if isinstance(account.get("tokens"), dict) else account
        secrets += [v for k, v in tokens.items() if str(k).endswith("_token") and isinstance(v, str)]
    return tuple(secrets)


def operation(func: Callable[..., dict[str, Any]]) -> Callable[..., OperationResult]:
    """将核心异常转换为失败结果。"""

    @functools.wraps(func)
    def wrapper(self: "AudibleOperations", *args, **kwargs) -> OperationResult:
        bound = dict(zip(func.__code__.co_varnames[1:func.__code__.co_argcount], args))
        bound.update(kwargs)
        secrets = _collect_secrets(bound)
        try:
            return OperationResult.ok(func(self, *args, **kwargs))
        except AudibleSyncError as e:
            message = redact(f"{e.code}: {e}", secrets)
            self.logger.warning(f"[Operations] {func.__name__} failed: {message}")
            return OperationResult.fail(message)
        except ValidationError as e:
            message = redact(f"InvalidInput: {format_validation_error(e)}", secrets)
            self.logger.warning(f"[Operations] {func.__name__} failed: {message}")
            return OperationResult.fail(message)
        except Exception as e:
            self.logger.exception(
                redact(f"[Operations] {func.__name__} raised {type(e).__name__}", secrets)
            )
            return OperationResult.fail(f"InternalError: unexpected {type(e).__name__}")

    return wrapper


class AudibleOperations:
    """
    对外暴露的操作集合。

    不持有任何会话或令牌，每个调用显式接收所需的账号与设备上下文，
    因此同一实例可被多个线程并发使用。
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        client: Optional[httpx.Client] = None,
        logger: Optional[LoggerInterface] = None,
    ):
        self.config = config or AppConfig()
        self.client = client
        self.logger = logger or get_logger()
        if self.config.debug_mode:
            configure_logging(debug_mode=True)

    # ------------------------------------------------------------------
    # 认证
    # ------------------------------------------------------------------

    @operation
    def begin_authorization(self, locale: str, device_serial: str) -> dict:
        challenge = auth.begin_authorization(locale, device_serial, self.config)
        return challenge.to_dict()

    @operation
    def parse_callback(self, callback_url: str, expected_state: Optional[str] = None) -> dict:
        callback = auth.parse_callback(callback_url, expected_state, self.config.auth.verify_state)
        return {"authorization_code": callback.authorization_code}

    @operation
    def exchange_code(self, locale: str, code: str, device_serial: str, pkce_verifier: str) -> dict:
        tokens = auth.exchange_code(locale, code, device_serial, pkce_verifier, self.config, self.client)
        return tokens.to_dict()

    @operation
    def refresh(self, locale: str, refresh_token: str, device_serial: str) -> dict:
        tokens = auth.refresh(locale, refresh_token, device_serial, self.config, self.client)
        return tokens.to_dict()

    @operation
    def get_activation_bytes(self, locale: str, access_token: str) -> dict:
        value = activation.get_activation_bytes(locale, access_token, self.config, self.client)
        return {"activation_bytes": value}

    @operation
    def validate_activation_bytes(self, activation_bytes: str) -> dict:
        return {"valid": activation.validate_activation_bytes(activation_bytes)}

    # ------------------------------------------------------------------
    # 书库
    # ------------------------------------------------------------------

    @operation
    def init_store(self, path: str) -> dict:
        library.init_store(path, self.config)
        return {"initialized": True}

    @operation
    def sync(self, path: str, account: Any) -> dict:
        result = library.sync(path, Account.from_dict(account), self.config, self.client)
        return result.model_dump()

    @operation
    def get_books(self, path: str, offset: int, limit: int) -> dict:
        books, total = library.LibraryStore(path, self.config).get_books(offset, limit)
        return {"books": [b.to_dict() for b in books], "total_count": total}

    @operation
    def search(self, path: str, query: str) -> dict:
        books = library.LibraryStore(path, self.config).search(query)
        return {"books": [b.to_dict() for b in books]}

    # ------------------------------------------------------------------
    # 下载与解密
    # ------------------------------------------------------------------

    @operation
    def download(
        self,
        asin: str,
        access_token: str,
        locale: str,
        output_path: str,
        cancel: Optional[CancelToken] = None,
    ) -> dict:
        descriptor = DownloadManager(self.config, self.client).download(
            asin, access_token, locale, output_path, cancel
        )
        return descriptor.to_dict()

    @operation
    def build_output_path(self, book: Any, extension: str = "aax") -> dict:
        path = DownloadManager(self.config, self.client).output_path_for(Book.model_validate(book), extension)
        return {"output_path": path}

    @operation
    def decrypt(
        self,
        input_path: str,
        output_path: str,
        activation_bytes: str,
        cancel: Optional[CancelToken] = None,
    ) -> dict:
        result = DecryptionEngine(self.config).decrypt(input_path, output_path, activation_bytes, cancel)
        return result.to_dict()

    @operation
    def get_supported_locales(self) -> dict:
        return {"locales": [locale.to_dict() for locale in supported_locales()]}


_default = AudibleOperations()


def begin_authorization(locale: str, device_serial: str) -> dict:
    return _default.begin_authorization(locale, device_serial).to_dict()


def parse_callback(callback_url: str, expected_state: Optional[str] = None) -> dict:
    return _default.parse_callback(callback_url, expected_state).to_dict()


def exchange_code(locale: str, code: str, device_serial: str, pkce_verifier: str) -> dict:
    return _default.exchange_code(locale, code, device_serial, pkce_verifier).to_dict()


def refresh(locale: str, refresh_token: str, device_serial: str) -> dict:
    return _default.refresh(locale, refresh_token, device_serial).to_dict()


def get_activation_bytes(locale: str, access_token: str) -> dict:
    return _default.get_activation_bytes(locale, access_token).to_dict()


def init_store(path: str) -> dict:
    return _default.init_store(path).to_dict()


def sync(path: str, account: Any) -> dict:
    return _default.sync(path, account).to_dict()


def get_books(path: str, offset: int, limit: int) -> dict:
    return _default.get_books(path, offset, limit).to_dict()


def search(path: str, query: str) -> dict:
    return _default.search(path, query).to_dict()


def download(asin: str, access_token: str, locale: str, output_path: str) -> dict:
    return _default.download(asin, access_token, locale, output_path).to_dict()


def build_output_path(book: Any, extension: str = "aax") -> dict:
    return _default.build_output_path(book, extension).to_dict()


def decrypt(input_path: str, output_path: str, activation_bytes: str) -> dict:
    return _default.decrypt(input_path, output_path, activation_bytes).to_dict()


def validate_activation_bytes(activation_bytes: str) -> dict:
    return _default.validate_activation_bytes(activation_bytes).to_dict()


def get_supported_locales() -> dict:
    return _default.get_supported_locales().to_dict()
