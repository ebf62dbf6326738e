"""设备注册与令牌刷新响应模型。"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict


class BearerToken(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600


class MacDmsToken(BaseModel):
    device_private_key: Optional[str] = None
    adp_token: Optional[str] = None


class RegistrationTokens(BaseModel):
    bearer: BearerToken
    mac_dms: Optional[MacDmsToken] = None


class CustomerInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    name: Optional[str] = None
    given_name: Optional[str] = None
    home_region: Optional[str] = None


class DeviceInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    device_name: Optional[str] = None
    device_serial_number: Optional[str] = None
    device_type: Optional[str] = None


class RegistrationExtensions(BaseModel):
    device_info: Optional[DeviceInfo] = None
    customer_info: Optional[CustomerInfo] = None


class RegistrationSuccess(BaseModel):
    tokens: RegistrationTokens
    extensions: Optional[RegistrationExtensions] = None
    customer_id: Optional[str] = None


class RegistrationError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: Optional[str] = None
    message: Optional[str] = None


class RegistrationBody(BaseModel):
    success: Optional[RegistrationSuccess] = None
    error: Optional[RegistrationError] = None


class RegistrationResponse(BaseModel):
    """POST /auth/register 响应。"""
    response: RegistrationBody
    request_id: Optional[str] = None


class RefreshResponse(BaseModel):
    """POST /auth/token 响应。"""
    access_token: str
    expires_in: int = 3600
    token_type: str = "bearer"
    refresh_token: Optional[str] = None
