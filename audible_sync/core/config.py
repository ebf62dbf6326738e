"""
audible-sync 配置管理。
将外部配置字典转换为内部配置对象。
"""

from dataclasses import dataclass, field
import logging
from typing import Optional


logger = logging.getLogger(__name__)


DEFAULT_USER_AGENT = "Audible/671 CFNetwork/1240.0.4 Darwin/20.6.0"

DEFAULT_RESPONSE_GROUPS = [
    "contributors",
    "media",
    "product_attrs",
    "product_desc",
    "product_extended_attrs",
    "series",
]


NAMING_PATTERNS = ("flat", "author_book", "author_series_book")


@dataclass
class HttpConfig:
    """HTTP 客户端配置。"""
    timeout: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    proxy: str = ""


@dataclass
class RetryConfig:
    """瞬时网络错误的重试配置。"""
    max_attempts: int = 4
    initial_delay: float = 1.0
    max_delay: float = 30.0


@dataclass
class AuthConfig:
    """认证与设备注册配置。"""
    app_name: str = "Audible"
    app_version: str = "3.56.2"
    software_version: str = "35602678"
    os_version: str = "15.0.0"
    device_model: str = "iPhone"
    device_name: str = "%FIRST_NAME%%FIRST_NAME_POSSESSIVE_STRING%%DUPE_STRATEGY_1ST%Audible for iPhone"
    # 访问令牌剩余有效期低于该值即视为过期
    expiry_margin_seconds: int = 60
    verify_state: bool = True


@dataclass
class LibraryConfig:
    """书库同步配置。"""
    page_size: int = 50
    response_groups: list[str] = field(default_factory=lambda: list(DEFAULT_RESPONSE_GROUPS))
    remove_missing: bool = True
    busy_timeout_seconds: float = 30.0


@dataclass
class DownloadConfig:
    """下载设置配置。"""
    quality: str = "High"
    chunk_size: int = 64 * 1024
    timeout_seconds: Optional[float] = None
    # 开启后失败或取消时保留 .part 与续传状态，下次从断点继续
    resume: bool = False


@dataclass
class PathConfig:
    """输出路径命名配置，最后一段为文件名。"""
    download_dir: str = "downloads"
    naming_pattern: str = "author_book"
    flat_format: str = "{title}"
    author_book_format: str = "{author}/{title}/{title}"
    author_series_book_format: str = "{author}/{series}/{series_position} - {title}"


@dataclass
class DecryptConfig:
    """AAX 解密配置。"""
    # 每处理多少个采样检查一次取消/超时
    check_interval: int = 256
    timeout_seconds: Optional[float] = None


@dataclass
class AppConfig:
    """主配置容器。"""
    http: HttpConfig = field(default_factory=HttpConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    library: LibraryConfig = field(default_factory=LibraryConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    decrypt: DecryptConfig = field(default_factory=DecryptConfig)
    path: PathConfig = field(default_factory=PathConfig)
    debug_mode: bool = False

    @classmethod
    def from_dict(cls, config: Optional[dict] = None) -> "AppConfig":
        """从配置字典构建 AppConfig，缺省项使用默认值。"""
        config = config or {}
        instance = cls()

        http_cfg = config.get("http_config", {})
        instance.http = HttpConfig(
            timeout=http_cfg.get("timeout", 30.0),
            user_agent=http_cfg.get("user_agent", DEFAULT_USER_AGENT),
            proxy=http_cfg.get("proxy", ""),
        )

        retry_cfg = config.get("retry_config", {})
        instance.retry = RetryConfig(
            max_attempts=max(1, retry_cfg.get("max_attempts", 4)),
            initial_delay=retry_cfg.get("initial_delay", 1.0),
            max_delay=retry_cfg.get("max_delay", 30.0),
        )

        auth_cfg = config.get("auth_config", {})
        defaults = AuthConfig()
        instance.auth = AuthConfig(
            app_name=auth_cfg.get("app_name", defaults.app_name),
            app_version=auth_cfg.get("app_version", defaults.app_version),
            software_version=auth_cfg.get("software_version", defaults.software_version),
            os_version=auth_cfg.get("os_version", defaults.os_version),
            device_model=auth_cfg.get("device_model", defaults.device_model),
            device_name=auth_cfg.get("device_name", defaults.device_name),
            expiry_margin_seconds=auth_cfg.get("expiry_margin_seconds", 60),
            verify_state=auth_cfg.get("verify_state", True),
        )

        # 响应分组（逗号分隔）
        library_cfg = config.get("library_config", {})
        groups = library_cfg.get("response_groups", ",".join(DEFAULT_RESPONSE_GROUPS))
        if isinstance(groups, str):
            groups = [g.strip() for g in groups.split(",") if g.strip()]
        instance.library = LibraryConfig(
            page_size=library_cfg.get("page_size", 50),
            response_groups=list(groups),
            remove_missing=library_cfg.get("remove_missing", True),
            busy_timeout_seconds=library_cfg.get("busy_timeout_seconds", 30.0),
        )

        download_cfg = config.get("download_config", {})
        instance.download = DownloadConfig(
            quality=download_cfg.get("quality", "High"),
            chunk_size=download_cfg.get("chunk_size", 64 * 1024),
            timeout_seconds=download_cfg.get("timeout_seconds"),
            resume=download_cfg.get("resume", False),
        )

        decrypt_cfg = config.get("decrypt_config", {})
        instance.decrypt = DecryptConfig(
            check_interval=max(1, decrypt_cfg.get("check_interval", 256)),
            timeout_seconds=decrypt_cfg.get("timeout_seconds"),
        )

        path_cfg = config.get("path_config", {})
        path_defaults = PathConfig()
        instance.path = PathConfig(
            download_dir=path_cfg.get("download_dir", path_defaults.download_dir),
            naming_pattern=path_cfg.get("naming_pattern", path_defaults.naming_pattern),
            flat_format=path_cfg.get("flat_format", path_defaults.flat_format),
            author_book_format=path_cfg.get("author_book_format", path_defaults.author_book_format),
            author_series_book_format=path_cfg.get(
                "author_series_book_format", path_defaults.author_series_book_format
            ),
        )

        instance.debug_mode = config.get("debug_mode", False)
        if instance.library.page_size <= 0:
            logger.warning("[Config] Invalid page_size %s, falling back to 50", instance.library.page_size)
            instance.library.page_size = 50
        if instance.path.naming_pattern not in NAMING_PATTERNS:
            logger.warning("[Config] Unknown naming_pattern %s, falling back to author_book", instance.path.naming_pattern)
            instance.path.naming_pattern = "author_book"

        return instance
