"""
OAuth2 + PKCE 认证会话。
包含状态机、授权 URL 构建、回调解析、授权码交换与令牌刷新。
"""

from __future__ import annotations
import base64
import hashlib
import hmac
import logging
import os
import secrets
from enum import Enum
from typing import Optional, FrozenSet

import httpx
from pydantic import ValidationError

from .config import AppConfig
from .device import DeviceIdentity
from .errors import AudibleSyncError, AuthError, NetworkError, FormatError
from .http import create_client, create_retrying, send, check_response
from .models import RegistrationResponse, RefreshResponse
from .types import AuthChallenge, TokenSet, Account
from .url import CallbackURL, build_authorization_url
from .utils import mask_secret


logger = logging.getLogger(__name__)


class AuthState(Enum):
    """认证会话生命周期状态。"""
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    CODE_RECEIVED = "code_received"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    FAILED = "failed"
    REVOKED = "revoked"

    @property
    def is_terminal(self) -> bool:
        return self in (AuthState.FAILED, AuthState.REVOKED)


class AuthStateMachine:
    """认证状态流转校验器。"""

    _TRANSITIONS: dict[AuthState, FrozenSet[AuthState]] = {
        AuthState.UNAUTHENTICATED: frozenset({
            AuthState.AUTHORIZATION_REQUESTED,
            # 回调由其他上下文解析后直接交换授权码
            AuthState.CODE_RECEIVED,
            # 使用已保存的刷新令牌恢复会话
            AuthState.REFRESHING,
            AuthState.AUTHENTICATED,
        }),
        AuthState.AUTHORIZATION_REQUESTED: frozenset({
            AuthState.AUTHORIZATION_REQUESTED,
            AuthState.CODE_RECEIVED,
            AuthState.FAILED,
        }),
        AuthState.CODE_RECEIVED: frozenset({
            AuthState.AUTHENTICATED,
            AuthState.FAILED,
        }),
        AuthState.AUTHENTICATED: frozenset({
            AuthState.REFRESHING,
            AuthState.REVOKED,
        }),
        AuthState.REFRESHING: frozenset({
            AuthState.AUTHENTICATED,
            AuthState.UNAUTHENTICATED,
            AuthState.REVOKED,
            AuthState.FAILED,
        }),
        AuthState.FAILED: frozenset(),
        AuthState.REVOKED: frozenset(),
    }

    @classmethod
    def can_transition(cls, from_state: AuthState, to_state: AuthState) -> bool:
        return to_state in cls._TRANSITIONS.get(from_state, frozenset())

    @classmethod
    def validate_transition(cls, from_state: AuthState, to_state: AuthState) -> None:
        """校验状态流转，非法则抛出 AuthError。"""
        if not cls.can_transition(from_state, to_state):
            raise AuthError(
                f"Invalid auth state transition: {from_state.value} -> {to_state.value}"
            )


def generate_verifier() -> str:
    """生成 32 字节随机数的 URL 安全编码（43 字符）。"""
    return base64.urlsafe_b64encode(os.urandom(32)).rstrip(b"=").decode("ascii")


def derive_challenge(verifier: str) -> str:
    """S256：对 verifier 做 SHA-256 后 URL 安全编码，去掉填充。"""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    return secrets.token_hex(16)


class AuthSession:
    """绑定单个设备序列号的 OAuth2 + PKCE 会话。"""

    def __init__(
        self,
        locale: str,
        device_serial: str,
        config: Optional[AppConfig] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.identity = DeviceIdentity.create(locale, device_serial)
        self.config = config or AppConfig()
        self._client = client
        self._owns_client = client is None
        self._state = AuthState.UNAUTHENTICATED
        self.challenge: Optional[AuthChallenge] = None
        self.authorization_code: Optional[str] = None
        self.tokens: Optional[TokenSet] = None
        self.customer_name: Optional[str] = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def locale(self) -> str:
        return self.identity.locale.country_code

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = create_client(self.config.http)
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "AuthSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _transition(self, new_state: AuthState) -> None:
        AuthStateMachine.validate_transition(self._state, new_state)
        logger.debug("[Auth] %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    def _fail(self, new_state: AuthState = AuthState.FAILED) -> None:
        if AuthStateMachine.can_transition(self._state, new_state):
            self._transition(new_state)

    # ------------------------------------------------------------------
    # 授权流程
    # ------------------------------------------------------------------

    def begin_authorization(self) -> AuthChallenge:
        """生成 PKCE 挑战与 state，返回授权 URL。"""
        self._transition(AuthState.AUTHORIZATION_REQUESTED)

        verifier = generate_verifier()
        challenge = derive_challenge(verifier)
        state = generate_state()
        url = build_authorization_url(self.identity, challenge, state)

        self.challenge = AuthChallenge(
            locale=self.locale,
            device_serial=self.identity.serial,
            pkce_verifier=verifier,
            code_challenge=challenge,
            state=state,
            authorization_url=url,
        )
        self.authorization_code = None
        logger.info(f"[Auth] Authorization requested for locale={self.locale}")
        return self.challenge

    def parse_callback(self, callback_url: str, expected_state: Optional[str] = None) -> str:
        """从回调 URL 提取授权码，并校验 state。"""
        expected = expected_state or (self.challenge.state if self.challenge else None)
        try:
            callback = parse_callback(callback_url, expected, self.config.auth.verify_state)
        except AuthError:
            self._fail()
            raise

        self._transition(AuthState.CODE_RECEIVED)
        self.authorization_code = callback.authorization_code
        logger.info("[Auth] Authorization code received")
        return callback.authorization_code

    def accept_code(self, code: str) -> None:
        """接收已在其他上下文解析出的授权码。"""
        self._transition(AuthState.CODE_RECEIVED)
        self.authorization_code = code

    def exchange_code(self, code: Optional[str] = None, verifier: Optional[str] = None) -> TokenSet:
        """提交授权码与 verifier 注册设备，获取令牌。"""
        code = code or self.authorization_code
        if self._state == AuthState.UNAUTHENTICATED and code:
            self.accept_code(code)
        if self._state != AuthState.CODE_RECEIVED:
            raise AuthError(f"Cannot exchange code in state {self._state.value}")
        if not code:
            self._fail()
            raise AuthError("No authorization code to exchange")

        if self.challenge is not None:
            issued = self.challenge.pkce_verifier
            if verifier is not None and not hmac.compare_digest(verifier.encode(), issued.encode()):
                self._fail()
                raise AuthError("PKCE verifier does not belong to this authorization request")
            verifier = issued
        if not verifier:
            self._fail()
            raise AuthError("PKCE verifier is required to exchange the authorization code")

        # 挑战只能被消费一次
        self.challenge = None
        self.authorization_code = None

        try:
            response = send(
                self.client,
                "POST",
                f"{self.identity.locale.auth_url}/auth/register",
                json=self._registration_body(code, verifier),
                headers={"Accept": "application/json"},
            )
            if response.status_code in (400, 401, 403):
                raise AuthError(
                    f"Token endpoint rejected the authorization code (HTTP {response.status_code})"
                )
            check_response(response, "Token endpoint")
            tokens = self._parse_registration(response)
        except AudibleSyncError:
            self._fail()
            raise

        self.tokens = tokens
        self._transition(AuthState.AUTHENTICATED)
        logger.info(
            f"[Auth] Device registered, access token {mask_secret(tokens.access_token)} "
            f"expires at {tokens.expires_at.isoformat()}"
        )
        return tokens

    def _registration_body(self, code: str, verifier: str) -> dict:
        auth = self.config.auth
        return {
            "requested_token_type": [
                "bearer",
                "mac_dms",
                "website_cookies",
                "store_authentication_cookie",
            ],
            "cookies": {"website_cookies": [], "domain": f".{self.identity.locale.auth_domain}"},
            "registration_data": {
                "domain": "Device",
                "app_version": auth.app_version,
                "device_serial": self.identity.serial,
                "device_type": self.identity.device_type,
                "device_name": auth.device_name,
                "os_version": auth.os_version,
                "software_version": auth.software_version,
                "device_model": auth.device_model,
                "app_name": auth.app_name,
            },
            "auth_data": {
                "client_id": self.identity.client_id,
                "authorization_code": code,
                "code_verifier": verifier,
                "code_algorithm": "SHA-256",
                "client_domain": "DeviceLegacy",
            },
            "requested_extensions": ["device_info", "customer_info"],
        }

    def _parse_registration(self, response: httpx.Response) -> TokenSet:
        try:
            registration = RegistrationResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            raise FormatError("Token endpoint returned an unexpected response") from None

        body = registration.response
        if body.success is None:
            code = body.error.code if body.error and body.error.code else "unknown"
            raise AuthError(f"Device registration failed ({code})")

        bearer = body.success.tokens.bearer
        if not bearer.refresh_token:
            raise AuthError("Token endpoint did not issue a refresh token")

        extensions = body.success.extensions
        if extensions and extensions.customer_info:
            self.customer_name = extensions.customer_info.name or extensions.customer_info.given_name

        return TokenSet.from_expires_in(
            access_token=bearer.access_token,
            refresh_token=bearer.refresh_token,
            expires_in=bearer.expires_in,
            device_serial=self.identity.serial,
        )

    # ------------------------------------------------------------------
    # 令牌刷新
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: Optional[str] = None) -> TokenSet:
        """
        用刷新令牌换取新的访问令牌。
        服务端不轮换刷新令牌，原令牌随新 TokenSet 一并保留，可重复使用。
        """
        refresh_token = refresh_token or (self.tokens.refresh_token if self.tokens else None)
        if not refresh_token:
            raise AuthError("No refresh token available")

        previous = self._state
        self._transition(AuthState.REFRESHING)

        try:
            response = create_retrying(self.config.retry)(self._request_refresh, refresh_token)
            tokens = self._parse_refresh(response, refresh_token)
        except AuthError:
            self._fail(AuthState.REVOKED)
            logger.warning("[Auth] Refresh token rejected, re-authorization required")
            raise
        except NetworkError:
            # 令牌本身仍可能有效，回退到刷新前状态
            self._transition(previous if previous != AuthState.REFRESHING else AuthState.UNAUTHENTICATED)
            raise
        except FormatError:
            self._fail()
            raise

        self.tokens = tokens
        self._transition(AuthState.AUTHENTICATED)
        logger.info(f"[Auth] Access token refreshed, expires at {tokens.expires_at.isoformat()}")
        return tokens

    def _request_refresh(self, refresh_token: str) -> httpx.Response:
        auth = self.config.auth
        response = send(
            self.client,
            "POST",
            f"{self.identity.locale.auth_url}/auth/token",
            data={
                "app_name": auth.app_name,
                "app_version": auth.app_version,
                "source_token": refresh_token,
                "requested_token_type": "access_token",
                "source_token_type": "refresh_token",
            },
            headers={
                "Accept": "application/json",
                "x-amzn-identity-auth-domain": f"api.{self.identity.locale.auth_domain}",
            },
        )
        if response.status_code in (400, 401, 403):
            raise AuthError(f"Refresh token rejected (HTTP {response.status_code})")
        return check_response(response, "Token endpoint")

    def _parse_refresh(self, response: httpx.Response, refresh_token: str) -> TokenSet:
        try:
            payload = RefreshResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            raise FormatError("Token endpoint returned an unexpected response") from None

        return TokenSet.from_expires_in(
            access_token=payload.access_token,
            refresh_token=payload.refresh_token or refresh_token,
            expires_in=payload.expires_in,
            device_serial=self.identity.serial,
            token_type=_normalize_token_type(payload.token_type),
        )

    def restore(self, tokens: TokenSet) -> None:
        """从已保存的令牌恢复会话。"""
        if tokens.device_serial != self.identity.serial:
            raise AuthError("Token set was issued to a different device serial")
        self._transition(AuthState.AUTHENTICATED)
        self.tokens = tokens

    @property
    def account(self) -> Account:
        if self.tokens is None or self._state != AuthState.AUTHENTICATED:
            raise AuthError("Session is not authenticated")
        return Account(
            locale=self.locale,
            device_serial=self.identity.serial,
            tokens=self.tokens,
            customer_name=self.customer_name,
        )


def parse_callback(callback_url: str, expected_state: Optional[str] = None, verify_state: bool = True) -> CallbackURL:
    """
    解析回调并与签发的 state 比对。
    已知签发值且开启校验时，回调缺少 state 与 state 不一致同样视为失败。
    """
    callback = CallbackURL.parse_url(callback_url)
    if not expected_state or not verify_state:
        return callback
    if callback.state is None:
        raise AuthError("Callback carries no state but one was issued for this authorization")
    if not hmac.compare_digest(callback.state.encode(), expected_state.encode()):
        raise AuthError("State returned in callback does not match the authorization request")
    return callback


def _normalize_token_type(token_type: Optional[str]) -> str:
    if not token_type or token_type.lower() == "bearer":
        return "Bearer"
    return token_type


def begin_authorization(locale: str, device_serial: str, config: Optional[AppConfig] = None) -> AuthChallenge:
    """开始一次新的授权尝试。"""
    return AuthSession(locale, device_serial, config).begin_authorization()


def exchange_code(
    locale: str,
    code: str,
    device_serial: str,
    verifier: str,
    config: Optional[AppConfig] = None,
    client: Optional[httpx.Client] = None,
) -> TokenSet:
    """以授权码与 verifier 换取令牌。"""
    with AuthSession(locale, device_serial, config, client) as session:
        return session.exchange_code(code, verifier)


def refresh(
    locale: str,
    refresh_token: str,
    device_serial: str,
    config: Optional[AppConfig] = None,
    client: Optional[httpx.Client] = None,
) -> TokenSet:
    """以刷新令牌换取新的令牌集合。"""
    with AuthSession(locale, device_serial, config, client) as session:
        return session.refresh(refresh_token)
