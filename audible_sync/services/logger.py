"""
日志抽象层。
边界操作通过 LoggerInterface 写日志，写出前统一遮蔽令牌与激活字节。
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..core.utils import redact


PACKAGE_LOGGER = "audible_sync"

_TRACEBACK_FORMATTER = logging.Formatter()


class LoggerInterface(ABC):
    """边界层使用的日志接口"""

    @abstractmethod
    def debug(self, msg: str, *args, **kwargs) -> None:
        pass

    @abstractmethod
    def info(self, msg: str, *args, **kwargs) -> None:
        pass

    @abstractmethod
    def warning(self, msg: str, *args, **kwargs) -> None:
        pass

    @abstractmethod
    def exception(self, msg: str, *args, **kwargs) -> None:
        """记录异常及堆栈"""
        pass


class PythonLogger(LoggerInterface):
    """转发到 logging 的实现"""

    def __init__(self, name: str = PACKAGE_LOGGER):
        self._logger = logging.getLogger(name)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(redact(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(redact(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(redact(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(redact(msg), *args, **kwargs)


class RedactingFilter(logging.Filter):
    """处理器级过滤器，覆盖 core 各模块传播上来的记录。"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact(record.getMessage())
        record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = redact(_TRACEBACK_FORMATTER.formatException(record.exc_info))
        return True


def configure_logging(debug_mode: bool = False, handler: Optional[logging.Handler] = None) -> logging.Logger:
    """按 debug_mode 设置包日志级别，并为处理器挂上遮蔽过滤器。"""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(logging.DEBUG if debug_mode else logging.INFO)

    if handler is None:
        if package_logger.handlers:
            return package_logger
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    if not any(isinstance(f, RedactingFilter) for f in handler.filters):
        handler.addFilter(RedactingFilter())
    if handler not in package_logger.handlers:
        package_logger.addHandler(handler)
    return package_logger


def get_logger(name: str = PACKAGE_LOGGER) -> LoggerInterface:
    return PythonLogger(name)
