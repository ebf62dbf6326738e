"""
OAuth 授权 URL 构建与回调解析。
"""

from urllib.parse import urlencode, urlparse, parse_qs
from typing import Optional

import regex
from pydantic import BaseModel

from .device import DeviceIdentity
from .errors import InvalidCallback


OPENID_NS = "http://specs.openid.net/auth/2.0"
OPENID_IDENTIFIER_SELECT = "http://specs.openid.net/auth/2.0/identifier_select"
OAUTH_SCOPE = "device_auth_access"
CHALLENGE_METHOD = "S256"

# 回调中可能携带授权码的参数名，按优先级排列
CODE_PARAMS = ("openid.oa2.authorization_code", "code")
CODE_PATTERN = regex.compile(r"^[A-Za-z0-9\-._~]{1,2048}$")


def build_authorization_url(identity: DeviceIdentity, code_challenge: str, state: str) -> str:
    """在地区登录域名下构建授权 URL。"""
    locale = identity.locale
    params = {
        "openid.oa2.response_type": "code",
        "openid.oa2.code_challenge_method": CHALLENGE_METHOD,
        "openid.oa2.code_challenge": code_challenge,
        "openid.return_to": locale.return_url,
        "openid.assoc_handle": f"amzn_audible_ios_{locale.country_code}",
        "openid.identity": OPENID_IDENTIFIER_SELECT,
        "pageId": "amzn_audible_ios",
        "accountStatusPolicy": "P1",
        "openid.claimed_id": OPENID_IDENTIFIER_SELECT,
        "openid.mode": "checkid_setup",
        "openid.ns.oa2": "http://www.amazon.com/ap/ext/oauth/2",
        "openid.oa2.client_id": identity.oauth_client_id,
        "openid.ns.pape": "http://specs.openid.net/extensions/pape/1.0",
        "marketPlaceId": locale.marketplace_id,
        "openid.oa2.scope": OAUTH_SCOPE,
        "forceMobileLayout": "true",
        "openid.ns": OPENID_NS,
        "openid.pape.max_auth_age": "0",
        "state": state,
        "device_serial": identity.serial,
    }
    return f"{locale.signin_url}?{urlencode(params)}"


class CallbackURL(BaseModel):
    """解析后的授权回调。"""
    url: str
    authorization_code: str
    state: Optional[str] = None

    @classmethod
    def parse_url(cls, url: str) -> "CallbackURL":
        """从回调 URL 的查询参数提取授权码。"""
        if not isinstance(url, str) or not url.strip():
            raise InvalidCallback("Callback URL is empty")

        parsed_url = urlparse(url.strip())
        if parsed_url.scheme not in ("http", "https") or not parsed_url.netloc:
            raise InvalidCallback("Callback URL is not an absolute http(s) URL")

        query = parse_qs(parsed_url.query, keep_blank_values=True)

        codes = []
        for name in CODE_PARAMS:
            codes = query.get(name) or []
            if codes:
                break

        match codes:
            case []:
                raise InvalidCallback("Callback URL does not contain an authorization code")
            case [code] if CODE_PATTERN.match(code):
                pass
            case [_]:
                raise InvalidCallback("Authorization code in callback URL is malformed")
            case _:
                raise InvalidCallback("Callback URL contains more than one authorization code")

        states = query.get("state") or []
        if len(states) > 1:
            raise InvalidCallback("Callback URL contains more than one state value")

        return cls(url=url, authorization_code=codes[0], state=states[0] if states else None)
