"""
audible-sync Core Module


This module provides the core functionality for syncing and decrypting an
Audible library, including:
- Locale registry and device identity
- OAuth2 + PKCE authentication with device registration
- Activation bytes retrieval
- Audible content API client
- SQLite library store with incremental sync
- Asset download with optional resume
- AAX parsing, decryption and M4B re-mux
"""

from .errors import (
    AudibleSyncError,
    InvalidInput,
    InvalidCallback,
    UnsupportedLocale,
    NetworkError,
    AuthError,
    StorageError,
    FormatError,
    IoError,
    OperationCancelled,
)

from .locale import Locale, get_locale, supported_locales

from .device import DeviceIdentity, generate_serial

from .types import (
    AuthChallenge,
    TokenSet,
    Account,
    Book,
    LibrarySyncResult,
    DownloadDescriptor,
    DecryptResult,
    Chapter,
)

from .config import (
    AppConfig,
    HttpConfig,
    RetryConfig,
    AuthConfig,
    LibraryConfig,
    DownloadConfig,
    DecryptConfig,
    PathConfig,
)

from .auth import AuthSession, AuthState

from .api import AudibleClient

from .activation import get_activation_bytes, validate_activation_bytes

from .library import LibraryStore

from .download import DownloadManager

from .aax import DecryptionEngine, read_container, is_aax_file, verify_activation_bytes

from .metadata import BookMetadata, write_metadata

from .utils import CancelToken, get_book_path

__all__ = [
    # 错误
    "AudibleSyncError",
    "InvalidInput",
    "InvalidCallback",
    "UnsupportedLocale",
    "NetworkError",
    "AuthError",
    "StorageError",
    "FormatError",
    "IoError",
    "OperationCancelled",
    # 地区与设备
    "Locale",
    "get_locale",
    "supported_locales",
    "DeviceIdentity",
    "generate_serial",
    # 类型
    "AuthChallenge",
    "TokenSet",
    "Account",
    "Book",
    "LibrarySyncResult",
    "DownloadDescriptor",
    "DecryptResult",
    "Chapter",
    # 配置
    "AppConfig",
    "HttpConfig",
    "RetryConfig",
    "AuthConfig",
    "LibraryConfig",
    "DownloadConfig",
    "DecryptConfig",
    "PathConfig",
    # 组件
    "AuthSession",
    "AuthState",
    "AudibleClient",
    "get_activation_bytes",
    "validate_activation_bytes",
    "LibraryStore",
    "DownloadManager",
    "DecryptionEngine",
    "read_container",
    "is_aax_file",
    "verify_activation_bytes",
    "BookMetadata",
    "write_metadata",
    "CancelToken",
    "get_book_path",
]
