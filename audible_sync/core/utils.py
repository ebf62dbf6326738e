"""
audible-sync 工具函数。
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Optional

import regex

from .config import NAMING_PATTERNS, PathConfig
from .errors import InvalidInput, OperationCancelled, IoError


logger = logging.getLogger(__name__)


# 日志与错误消息中需要遮蔽的敏感片段
_SECRET_PATTERNS = [
    regex.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/|=]+", regex.IGNORECASE),
    regex.compile(r"Atn[ar]\|[A-Za-z0-9\-._~+/|=]+"),
    regex.compile(r"((?:access|refresh)_token[\"']?\s*[:=]\s*[\"']?)[^\s\"'&,}]+", regex.IGNORECASE),
    regex.compile(r"((?:code_verifier|authorization_code|source_token)[\"']?\s*[:=]\s*[\"']?)[^\s\"'&,}]+", regex.IGNORECASE),
    regex.compile(r"((?:activation_bytes|activation bytes)[\"']?\s*[:=]?\s*[\"']?)[0-9a-fA-F]{8}\b", regex.IGNORECASE),
]


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """仅保留前几位字符用于日志。"""
    if not value:
        return "<empty>"
    if len(value) <= visible:
        return "*" * len(value)
    return f"{value[:visible]}…({len(value)} chars)"


def redact(message: str, secrets: tuple = ()) -> str:
    """从消息中移除令牌、验证码与激活字节。"""
    text = str(message)
    for secret in secrets:
        if secret:
            text = text.replace(secret, "[REDACTED]")
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            text = pattern.sub(lambda m: m.group(1) + "[REDACTED]", text)
        else:
            text = pattern.sub("[REDACTED]", text)
    return text


class CancelToken:
    """调用方提供的取消标志与超时期限。"""

    def __init__(self, event: Optional[threading.Event] = None, timeout: Optional[float] = None):
        self.event = event or threading.Event()
        self.deadline = time.monotonic() + timeout if timeout else None

    def cancel(self) -> None:
        self.event.set()

    @property
    def cancelled(self) -> bool:
        return self.event.is_set()

    @property
    def timed_out(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def raise_if_cancelled(self) -> None:
        """已取消或超时则抛出 OperationCancelled。"""
        if self.cancelled:
            raise OperationCancelled("Operation cancelled by caller")
        if self.timed_out:
            raise OperationCancelled("Operation timed out")


def part_path(output_path: str) -> str:
    """未完成文件使用的临时路径。"""
    return f"{output_path}.part"


def ensure_parent_dir(path: str) -> None:
    """创建输出路径的父目录。"""
    parent = Path(path).parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IoError(f"Cannot create directory {parent}: {e.strerror or e}") from e


def remove_quietly(path: str) -> bool:
    """删除文件，不存在时返回 False。"""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("[Utils] Failed to remove %s: %s", path, e)
        return False


# 单个路径段的最大字符数
MAX_COMPONENT_LENGTH = 120

_INVALID_FILENAME_CHARS = frozenset('<>:"/\\|?*')


def get_valid_filename(filename: str) -> str:
    """清理文件名中的非法字符与控制字符，合并空白。"""
    cleaned = "".join(c for c in filename if c not in _INVALID_FILENAME_CHARS and c.isprintable())
    return regex.sub(r"\s+", " ", cleaned).strip()


def get_valid_dir_name(dirname: str) -> str:
    """清理目录名中的非法字符与末尾的点。"""
    return regex.sub(r"\.+$", "", get_valid_filename(dirname)).strip()


def get_path_safe_dict(param: dict) -> dict:
    """将字典中的字符串值转换为安全路径格式。"""
    return {key: get_valid_filename(val) if isinstance(val, str) else val for key, val in param.items()}


def book_path_params(book: Any) -> dict:
    """提取书目字段用于路径格式化。"""
    authors = list(book.authors or [])
    return {
        "title": book.title or book.asin,
        "subtitle": book.subtitle or "",
        "author": authors[0] if authors else "Unknown Author",
        "authors": ", ".join(authors) or "Unknown Author",
        "narrator": ", ".join(book.narrators or []),
        "series": book.series or "",
        "series_position": book.series_position or "",
        "asin": book.asin,
        "year": (book.release_date or "")[:4],
    }


def _clean_component(part: str) -> str:
    # 去掉空占位符留下的连接符与开头的点
    part = regex.sub(r"^[\s.\-]+|[\s\-]+$", "", part)
    return part[:MAX_COMPONENT_LENGTH].rstrip()


def get_book_path(book: Any, config: PathConfig, extension: str = "m4b") -> Path:
    """
    按命名模式生成相对输出路径。

    模式为 flat、author_book 或 author_series_book；
    后者在书目不属于任何系列时退回 author_book。
    """
    pattern = config.naming_pattern
    match pattern:
        case "flat":
            template = config.flat_format
        case "author_book":
            template = config.author_book_format
        case "author_series_book":
            template = config.author_series_book_format if book.series else config.author_book_format
        case _:
            raise InvalidInput(f"Unknown naming pattern {pattern!r}, expected one of {', '.join(NAMING_PATTERNS)}")

    try:
        rendered = template.format(**get_path_safe_dict(book_path_params(book)))
    except (KeyError, IndexError, ValueError) as e:
        raise InvalidInput(f"Invalid naming template {template!r}: {e}") from None

    parts = [p for p in (_clean_component(part) for part in rendered.split("/")) if p]
    if not parts:
        raise InvalidInput("Naming template produced an empty path")

    dirs = [d for d in (get_valid_dir_name(part) for part in parts[:-1]) if d]
    return Path(*dirs, f"{parts[-1]}.{extension.lstrip('.')}")
