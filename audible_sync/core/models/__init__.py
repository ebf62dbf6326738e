"""
Audible API 数据模型
"""

from .registration import RegistrationResponse, RefreshResponse
from .library_item import LibraryItem, LibraryPage, Contributor, SeriesRef
from .license import LicenseResponse, ContentLicense

__all__ = [
    "RegistrationResponse",
    "RefreshResponse",
    "LibraryItem",
    "LibraryPage",
    "Contributor",
    "SeriesRef",
    "LicenseResponse",
    "ContentLicense",
]
