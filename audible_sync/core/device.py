"""
设备身份。
所有认证请求均绑定到一个 32 位十六进制设备序列号。
"""

import secrets
from dataclasses import dataclass, field

import regex

from .errors import InvalidInput
from .locale import Locale, get_locale


DEVICE_TYPE = "A2CZJZGLK2JJVM"
SERIAL_PATTERN = regex.compile(r"^[0-9a-fA-F]{32}$")


def validate_serial(serial: str) -> str:
    """校验设备序列号并统一为大写。"""
    if not isinstance(serial, str) or not SERIAL_PATTERN.match(serial):
        raise InvalidInput("Device serial must be exactly 32 hexadecimal characters")
    return serial.upper()


def generate_serial() -> str:
    """生成新的随机设备序列号。"""
    return secrets.token_hex(16).upper()


@dataclass(frozen=True)
class DeviceIdentity:
    """设备序列号与所属地区。"""
    serial: str
    locale: Locale
    device_type: str = field(default=DEVICE_TYPE)

    def __post_init__(self):
        object.__setattr__(self, "serial", validate_serial(self.serial))
        if isinstance(self.locale, str):
            object.__setattr__(self, "locale", get_locale(self.locale))

    @classmethod
    def create(cls, locale: str, serial: str) -> "DeviceIdentity":
        return cls(serial=serial, locale=get_locale(locale))

    @property
    def client_id(self) -> str:
        """OAuth client_id：序列号与设备类型拼接后的十六进制编码。"""
        return f"{self.serial}#{self.device_type}".encode("ascii").hex()

    @property
    def oauth_client_id(self) -> str:
        return f"device:{self.client_id}"
