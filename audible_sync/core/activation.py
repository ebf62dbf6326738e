"""
激活字节获取与校验。
激活字节是解密 AAX 所需的 8 位十六进制账号密钥材料。
"""

import logging
import struct
from typing import Optional

import httpx
import regex

from .config import AppConfig
from .errors import AuthError, FormatError, InvalidInput
from .http import create_client, create_retrying, send, check_response
from .locale import get_locale


logger = logging.getLogger(__name__)

ACTIVATION_PATTERN = regex.compile(r"^[0-9a-fA-F]{8}$")

# 激活数据块末尾 0x238 字节处为小端序 32 位激活值
ACTIVATION_BLOB_TAIL = 0x238

AUTH_FAILURE_MARKERS = (b"BAD_LOGIN", b"Whoops")


def validate_activation_bytes(value: object) -> bool:
    """当且仅当为 8 个十六进制字符时返回 True，不区分大小写。"""
    return isinstance(value, str) and ACTIVATION_PATTERN.match(value) is not None


def normalize_activation_bytes(value: object) -> str:
    """校验并统一为小写，非法时抛出 InvalidInput。"""
    if not validate_activation_bytes(value):
        raise InvalidInput("Activation bytes must be exactly 8 hexadecimal characters")
    return value.lower()


def extract_activation_bytes(blob: bytes) -> str:
    """从激活数据块中提取激活字节。"""
    if any(marker in blob for marker in AUTH_FAILURE_MARKERS):
        raise AuthError("Activation endpoint rejected the access token")
    if len(blob) < ACTIVATION_BLOB_TAIL:
        raise FormatError(
            f"Activation response too short ({len(blob)} bytes, expected at least {ACTIVATION_BLOB_TAIL})"
        )

    (value,) = struct.unpack_from("<I", blob, len(blob) - ACTIVATION_BLOB_TAIL)
    activation_bytes = f"{value:08x}"
    if not validate_activation_bytes(activation_bytes):
        raise FormatError("Activation response contained an invalid value")
    return activation_bytes


def get_activation_bytes(
    locale: str,
    access_token: str,
    config: Optional[AppConfig] = None,
    client: Optional[httpx.Client] = None,
) -> str:
    """使用访问令牌向激活端点注册播放器并取回激活字节。"""
    market = get_locale(locale)
    if not isinstance(access_token, str) or not access_token.strip():
        raise InvalidInput("Access token is required")
    config = config or AppConfig()

    url = f"https://www.{market.audible_domain}/license/token"
    params = {
        "action": "register",
        "player_manuf": "Audible,iPhone",
        "player_model": "iPhone",
    }
    headers = {"Authorization": f"Bearer {access_token}"}

    owns_client = client is None
    client = client or create_client(config.http)
    try:
        def _fetch() -> httpx.Response:
            resp = send(client, "GET", url, params=params, headers=headers)
            return check_response(resp, "Activation endpoint")

        logger.info(f"[Activation] Requesting activation blob for locale={market.country_code}")
        response = create_retrying(config.retry)(_fetch)
    finally:
        if owns_client:
            client.close()

    activation_bytes = extract_activation_bytes(response.content)
    logger.info("[Activation] Activation bytes retrieved")
    return activation_bytes
