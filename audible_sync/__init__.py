"""
audible-sync

Audible 账号认证、书库同步、下载与 AAX 解密。
"""

from .core import (
    AppConfig,
    Account,
    AuthSession,
    AudibleClient,
    LibraryStore,
    DownloadManager,
    DecryptionEngine,
    CancelToken,
)
from .services.operations import AudibleOperations, OperationResult

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "Account",
    "AuthSession",
    "AudibleClient",
    "LibraryStore",
    "DownloadManager",
    "DecryptionEngine",
    "CancelToken",
    "AudibleOperations",
    "OperationResult",
]
