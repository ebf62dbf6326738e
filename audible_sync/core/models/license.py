"""内容授权响应模型。"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict


class ContentUrl(BaseModel):
    model_config = ConfigDict(extra="ignore")

    offline_url: Optional[str] = None


class ContentReference(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content_format: Optional[str] = None
    content_size_in_bytes: Optional[int] = None
    codec: Optional[str] = None


class ContentMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content_url: Optional[ContentUrl] = None
    content_reference: Optional[ContentReference] = None


class ContentLicense(BaseModel):
    model_config = ConfigDict(extra="ignore")

    asin: Optional[str] = None
    status_code: Optional[str] = None
    message: Optional[str] = None
    drm_type: Optional[str] = None
    content_metadata: Optional[ContentMetadata] = None

    @property
    def offline_url(self) -> Optional[str]:
        if self.content_metadata and self.content_metadata.content_url:
            return self.content_metadata.content_url.offline_url
        return None


class LicenseResponse(BaseModel):
    """POST /1.0/content/{asin}/licenserequest 响应。"""
    model_config = ConfigDict(extra="ignore")

    content_license: Optional[ContentLicense] = None
