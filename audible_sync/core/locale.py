"""
Audible 地区注册表。
维护地区代码到 API 域名、登录域名与 marketplace ID 的映射。
"""

from dataclasses import dataclass

from .errors import UnsupportedLocale, InvalidInput


@dataclass(frozen=True)
class Locale:
    """单个 Audible 市场。"""
    country_code: str
    name: str
    domain: str
    marketplace_id: str

    @property
    def audible_domain(self) -> str:
        return f"audible.{self.domain}"

    @property
    def api_domain(self) -> str:
        return f"api.audible.{self.domain}"

    @property
    def auth_domain(self) -> str:
        return f"amazon.{self.domain}"

    @property
    def api_url(self) -> str:
        return f"https://{self.api_domain}"

    @property
    def auth_url(self) -> str:
        """设备注册与令牌刷新所用的 Amazon API 根地址。"""
        return f"https://api.{self.auth_domain}"

    @property
    def signin_url(self) -> str:
        return f"https://www.{self.auth_domain}/ap/signin"

    @property
    def return_url(self) -> str:
        return f"https://www.{self.auth_domain}/ap/maplanding"

    def to_dict(self) -> dict:
        return {
            "country_code": self.country_code,
            "name": self.name,
            "domain": self.domain,
        }


# 顺序即 get_supported_locales 的返回顺序
LOCALES: dict[str, Locale] = {
    "us": Locale("us", "United States", "com", "AF2M0KC94RCEA"),
    "uk": Locale("uk", "United Kingdom", "co.uk", "A2I9A3Q2GNFNGQ"),
    "de": Locale("de", "Germany", "de", "AN7V1F1VY261K"),
    "fr": Locale("fr", "France", "fr", "A2728XDNODOQ8T"),
    "ca": Locale("ca", "Canada", "ca", "A2CQZ5RBY40XE"),
    "au": Locale("au", "Australia", "com.au", "AN7EY7DTAW63G"),
    "it": Locale("it", "Italy", "it", "A2N7FU2W2BU2ZC"),
    "in": Locale("in", "India", "in", "AJO3FBRUE6J4S"),
    "jp": Locale("jp", "Japan", "co.jp", "A1QAP3MOU4173J"),
    "es": Locale("es", "Spain", "es", "ALMIKO4SZCSAR"),
}


def get_locale(code: str) -> Locale:
    """按代码查找地区，不区分大小写。"""
    if not isinstance(code, str) or not code.strip():
        raise InvalidInput("Locale code must be a non-empty string")

    locale = LOCALES.get(code.strip().lower())
    if locale is None:
        raise UnsupportedLocale(f"Unsupported locale: {code!r}")
    return locale


def supported_locales() -> list[Locale]:
    """获取全部受支持地区。"""
    return list(LOCALES.values())


def is_supported(code: str) -> bool:
    return isinstance(code, str) and code.strip().lower() in LOCALES
