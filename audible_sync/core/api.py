"""
Audible 内容 API 客户端。
提供书库分页、内容授权与用户信息请求。
"""

import logging
from typing import Optional, Iterator

import httpx
from pydantic import ValidationError

from .auth import AuthSession
from .config import AppConfig
from .errors import AuthError, FormatError
from .http import create_client, create_retrying, send, check_response
from .locale import Locale, get_locale
from .models import LibraryItem, LibraryPage, LicenseResponse, ContentLicense
from .types import Account
from .utils import mask_secret


logger = logging.getLogger(__name__)


class AudibleClient:
    """
    用于 Audible 内容 API 的客户端。

    传入 Account 时会在请求前检查令牌有效期，过期则通过 AuthSession 刷新一次；
    仅传入 access_token 时按原样使用，由服务端判定有效性。
    """

    def __init__(
        self,
        account: Optional[Account] = None,
        *,
        locale: Optional[str] = None,
        access_token: Optional[str] = None,
        config: Optional[AppConfig] = None,
        client: Optional[httpx.Client] = None,
        auto_refresh: bool = True,
    ):
        if account is None and not access_token:
            raise AuthError("An account or an access token is required")

        self.account = account
        self.locale: Locale = get_locale(account.locale if account else locale)
        self.config = config or AppConfig()
        self.auto_refresh = auto_refresh
        self._access_token = access_token
        self._client = client
        self._owns_client = client is None
        self._retrying = create_retrying(self.config.retry)

        logger.debug(f"[API] Client created for locale={self.locale.country_code}")

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = create_client(self.config.http)
        return self._client

    def close(self) -> None:
        """关闭 HTTP 客户端。"""
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "AudibleClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def base_url(self) -> str:
        return self.locale.api_url

    def _ensure_token(self) -> str:
        """返回可用的访问令牌，过期令牌不会被发送。"""
        if self.account is None:
            return self._access_token

        margin = self.config.auth.expiry_margin_seconds
        if not self.account.tokens.is_expired(margin):
            return self.account.tokens.access_token

        if not self.auto_refresh:
            raise AuthError("Access token expired, refresh required")

        logger.info("[API] Access token expired, refreshing")
        with AuthSession(self.account.locale, self.account.device_serial, self.config, self._client) as session:
            session.restore(self.account.tokens)
            tokens = session.refresh()
        self.account = self.account.with_tokens(tokens)
        return tokens.access_token

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        token = self._ensure_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "client-id": "0",
            "Accept": "application/json",
            **kwargs.pop("headers", {}),
        }
        url = path if path.startswith("https://") else f"{self.base_url}{path}"
        response = send(self.client, method, url, headers=headers, **kwargs)
        return check_response(response, f"{method} {httpx.URL(url).path}")

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """执行请求，瞬时网络错误按退避策略重试。"""
        return self._retrying(self._send, method, path, **kwargs)

    def get_library_page(self, page: int, page_size: Optional[int] = None) -> LibraryPage:
        """获取书库的单页数据。"""
        library = self.config.library
        resp = self._request(
            "GET",
            "/1.0/library",
            params={
                "num_results": page_size or library.page_size,
                "page": page,
                "response_groups": ",".join(library.response_groups),
                "sort_by": "-PurchaseDate",
            },
        )
        try:
            return LibraryPage.model_validate(resp.json())
        except (ValueError, ValidationError):
            raise FormatError(f"Library page {page} has an unexpected shape") from None

    def iter_library(self) -> Iterator[LibraryItem]:
        """逐页遍历书库，直到服务端不再返回更多数据。"""
        page_size = self.config.library.page_size
        page = 1
        seen = 0
        while True:
            library_page = self.get_library_page(page, page_size)
            items = library_page.items
            logger.debug(f"[API] Library page {page}: {len(items)} items")
            yield from items
            seen += len(items)

            if len(items) < page_size:
                break
            if library_page.total_results is not None and seen >= library_page.total_results:
                break
            page += 1

    def get_library(self) -> list[LibraryItem]:
        """获取完整书库。"""
        items = list(self.iter_library())
        logger.info(f"[API] Fetched {len(items)} library items")
        return items

    def request_license(self, asin: str, quality: Optional[str] = None) -> ContentLicense:
        """为指定 ASIN 申请下载授权。"""
        resp = self._request(
            "POST",
            f"/1.0/content/{asin}/licenserequest",
            json={
                "drm_type": "Adrm",
                "consumption_type": "Download",
                "quality": quality or self.config.download.quality,
            },
        )
        try:
            license_response = LicenseResponse.model_validate(resp.json())
        except (ValueError, ValidationError):
            raise FormatError(f"License response for {asin} has an unexpected shape") from None

        content_license = license_response.content_license
        if content_license is None:
            raise FormatError(f"License response for {asin} has no content_license")
        return content_license

    def get_customer_information(self) -> dict:
        """获取用户信息。"""
        resp = self._request(
            "GET",
            "/1.0/customer/information",
            params={"response_groups": "migration_details,subscription_details_rodizio,subscription_details_premium,customer_segment,subscription_details_channels"},
        )
        try:
            return resp.json()
        except ValueError:
            raise FormatError("Customer information response is not JSON") from None

    def __repr__(self) -> str:
        token = self.account.tokens.access_token if self.account else self._access_token
        return f"AudibleClient(locale={self.locale.country_code!r}, token={mask_secret(token)})"
