"""
audible-sync 核心类型。
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .device import DeviceIdentity, validate_serial
from .errors import InvalidInput
from .locale import get_locale


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_validation_error(exc: ValidationError) -> str:
    """将 pydantic 校验错误格式化为不含输入值的消息。"""
    parts = []
    for err in exc.errors(include_input=False, include_url=False):
        loc = ".".join(str(p) for p in err.get("loc", ())) or "value"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts) or "Invalid input"


class AuthChallenge(BaseModel):
    """一次授权尝试的 PKCE 挑战，仅在单次流程内有效。"""
    model_config = ConfigDict(frozen=True)

    locale: str
    device_serial: str
    pkce_verifier: str = Field(repr=False)
    code_challenge: str
    state: str = Field(repr=False)
    authorization_url: str

    def to_dict(self) -> dict:
        return {
            "authorization_url": self.authorization_url,
            "pkce_verifier": self.pkce_verifier,
            "state": self.state,
        }


class TokenSet(BaseModel):
    """绑定设备序列号的访问令牌集合。"""
    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False, min_length=1)
    refresh_token: str = Field(repr=False, min_length=1)
    token_type: str = "Bearer"
    expires_at: datetime
    device_serial: str

    @field_validator("device_serial")
    @classmethod
    def _check_serial(cls, v: str) -> str:
        try:
            return validate_serial(v)
        except InvalidInput as e:
            raise ValueError(str(e)) from None

    @field_validator("expires_at")
    @classmethod
    def _ensure_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def from_expires_in(
        cls,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        device_serial: str,
        token_type: str = "Bearer",
        now: Optional[datetime] = None,
    ) -> "TokenSet":
        """以接收时刻加相对有效期计算绝对过期时间。"""
        received_at = now or utcnow()
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type=token_type or "Bearer",
            expires_at=received_at + timedelta(seconds=int(expires_in)),
            device_serial=device_serial,
        )

    def expires_in(self, now: Optional[datetime] = None) -> int:
        """剩余有效秒数，不小于 0。"""
        remaining = (self.expires_at - (now or utcnow())).total_seconds()
        return max(0, int(remaining))

    def is_expired(self, margin_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) + timedelta(seconds=margin_seconds) >= self.expires_at

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in(now),
            "token_type": self.token_type,
        }


class Account(BaseModel):
    """认证上下文：设备身份与其取得的令牌必须一同传递。"""
    model_config = ConfigDict(frozen=True)

    locale: str
    device_serial: str
    tokens: TokenSet
    customer_name: Optional[str] = None

    @field_validator("locale")
    @classmethod
    def _check_locale(cls, v: str) -> str:
        return get_locale(v).country_code

    @field_validator("device_serial")
    @classmethod
    def _check_serial(cls, v: str) -> str:
        try:
            return validate_serial(v)
        except InvalidInput as e:
            raise ValueError(str(e)) from None

    @model_validator(mode="after")
    def _check_binding(self) -> "Account":
        if self.tokens.device_serial != self.device_serial:
            raise ValueError("Token set was issued to a different device serial")
        return self

    @classmethod
    def from_dict(cls, data: Any) -> "Account":
        """从字典构建账号，校验失败抛出 InvalidInput。"""
        if isinstance(data, Account):
            return data
        if not isinstance(data, dict):
            raise InvalidInput("Account must be a mapping")

        payload = dict(data)
        tokens = payload.get("tokens")
        # 支持扁平结构：access_token/refresh_token/expires_in 直接位于顶层
        if tokens is None and "access_token" in payload:
            tokens = {
                "access_token": payload.pop("access_token"),
                "refresh_token": payload.pop("refresh_token", None),
                "token_type": payload.pop("token_type", "Bearer"),
                "device_serial": payload.get("device_serial"),
            }
            if "expires_at" in payload:
                tokens["expires_at"] = payload.pop("expires_at")
            else:
                expires_in = payload.pop("expires_in", 0)
                try:
                    tokens["expires_at"] = utcnow() + timedelta(seconds=int(expires_in))
                except (TypeError, ValueError):
                    raise InvalidInput("expires_in must be an integer") from None
            payload["tokens"] = tokens

        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise InvalidInput(f"Invalid account: {format_validation_error(e)}") from None

    @property
    def identity(self) -> DeviceIdentity:
        return DeviceIdentity(serial=self.device_serial, locale=get_locale(self.locale))

    def with_tokens(self, tokens: TokenSet) -> "Account":
        return self.model_copy(update={"tokens": tokens})


class Book(BaseModel):
    """书库条目，以 (locale, asin) 唯一。"""
    asin: str
    locale: str
    title: str
    subtitle: Optional[str] = None
    authors: list[str] = Field(default_factory=list)
    narrators: list[str] = Field(default_factory=list)
    runtime_minutes: Optional[int] = None
    purchase_date: Optional[str] = None
    release_date: Optional[str] = None
    cover_url: Optional[str] = None
    series: Optional[str] = None
    series_position: Optional[str] = None
    version: str = ""

    def to_dict(self) -> dict:
        return self.model_dump()


class LibrarySyncResult(BaseModel):
    """同步结果摘要。"""
    total_items: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0


class DownloadDescriptor(BaseModel):
    """一次完成的下载。"""
    asin: str
    output_path: str
    bytes_downloaded: int
    resumed_from: int = 0

    def to_dict(self) -> dict:
        return {"bytes_downloaded": self.bytes_downloaded, "output_path": self.output_path}


class DownloadState(BaseModel):
    """未完成下载的续传状态，与 .part 文件一同保存。"""
    asin: str
    url: str = Field(repr=False)
    bytes_downloaded: int = Field(ge=0)
    total_bytes: Optional[int] = None


class Chapter(BaseModel):
    title: str
    start_ms: int = 0
    duration_ms: int = 0


class DecryptResult(BaseModel):
    """一次完成的 AAX 解密。"""
    output_path: str
    file_size: int
    title: Optional[str] = None
    chapters: list[Chapter] = Field(default_factory=list)
    has_cover: bool = False
    checksum_verified: bool = False

    def to_dict(self) -> dict:
        return {"output_path": self.output_path, "file_size": self.file_size}
