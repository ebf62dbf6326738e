"""
错误类型定义。
所有核心操作抛出的异常均继承自 AudibleSyncError。
"""

from typing import Optional


class AudibleSyncError(Exception):
    """核心异常基类。"""

    code: str = "InternalError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message or self.code


class InvalidInput(AudibleSyncError):
    """输入参数不合法。"""
    code = "InvalidInput"


class InvalidCallback(InvalidInput):
    """授权回调 URL 缺少或包含畸形授权码。"""
    code = "InvalidCallback"


class UnsupportedLocale(AudibleSyncError):
    """地区代码未注册。"""
    code = "UnsupportedLocale"


class NetworkError(AudibleSyncError):
    """传输层失败或超时。"""
    code = "NetworkError"

    def __init__(self, message: str = "", retryable: bool = True, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class AuthError(AudibleSyncError):
    """令牌无效、过期、吊销，或 PKCE/state 不匹配。"""
    code = "AuthError"


class StorageError(AudibleSyncError):
    """本地书库打开或写入失败。"""
    code = "StorageError"


class FormatError(AudibleSyncError):
    """容器结构损坏或解码值非法。"""
    code = "FormatError"


class IoError(AudibleSyncError):
    """文件系统读写失败。"""
    code = "IoError"


class OperationCancelled(AudibleSyncError):
    """调用方取消或操作超时。"""
    code = "Cancelled"
