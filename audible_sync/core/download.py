"""
下载流程。
申请内容授权后将有时效的资源流式写入本地文件，可选从中断处续传。
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

import httpx
import regex
from pydantic import ValidationError

from .api import AudibleClient
from .config import AppConfig
from .errors import AuthError, FormatError, InvalidInput, IoError, NetworkError, OperationCancelled
from .http import create_client, check_response
from .types import Book, DownloadDescriptor, DownloadState
from .utils import CancelToken, ensure_parent_dir, get_book_path, part_path, remove_quietly, mask_secret


logger = logging.getLogger(__name__)

ASIN_PATTERN = regex.compile(r"^[A-Za-z0-9]{1,32}$")
CONTENT_RANGE_PATTERN = regex.compile(r"^bytes\s+(?P<start>\d+)-(?P<end>\d+)/(?P<total>\d+|\*)$")


class DownloadStatus(Enum):
    """下载任务状态。"""
    PENDING = "pending"
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class DownloadJob:
    """单次下载的运行状态。"""
    asin: str
    output_path: str
    status: DownloadStatus = DownloadStatus.PENDING
    url: Optional[str] = field(default=None, repr=False)
    bytes_downloaded: int = 0
    total_bytes: Optional[int] = None
    resumed_from: int = 0
    error_message: Optional[str] = None
    cancel: CancelToken = field(default_factory=CancelToken, repr=False)

    @property
    def part_path(self) -> str:
        return part_path(self.output_path)

    @property
    def state_path(self) -> str:
        return f"{self.part_path}.json"


def _content_length(response: httpx.Response) -> Optional[int]:
    length = response.headers.get("Content-Length")
    return int(length) if length and length.isdigit() else None


def _content_range(response: httpx.Response) -> Optional[tuple[int, Optional[int]]]:
    """解析 206 响应的 Content-Range，返回 (起始字节, 总长度)。"""
    match = CONTENT_RANGE_PATTERN.match(response.headers.get("Content-Range", "").strip())
    if match is None:
        return None
    total = match["total"]
    return int(match["start"]), int(total) if total.isdigit() else None


class DownloadManager:
    """
    将已购资源下载到本地路径。

    数据先写入 ``<output>.part``，校验长度后原子重命名。
    默认在失败或取消时删除临时文件；开启 ``download.resume`` 时保留
    ``.part`` 并在 ``<output>.part.json`` 记录续传状态，下次以 Range 请求继续。
    """

    def __init__(self, config: Optional[AppConfig] = None, client: Optional[httpx.Client] = None):
        self.config = config or AppConfig()
        self._client = client

    def resolve(self, asin: str, access_token: str, locale: str) -> str:
        """申请下载授权，返回有时效的资源地址。"""
        with AudibleClient(locale=locale, access_token=access_token, config=self.config,
                           client=self._client) as api:
            content_license = api.request_license(asin)

        if content_license.status_code != "Granted":
            status = content_license.status_code or "unknown"
            raise AuthError(f"License for {asin} was not granted ({status})")

        url = content_license.offline_url
        if not url:
            raise FormatError(f"License for {asin} carries no download URL")
        return url

    def output_path_for(self, book: Book, extension: str = "aax") -> str:
        """按配置的命名模式生成位于下载目录下的输出路径。"""
        return str(Path(self.config.path.download_dir) / get_book_path(book, self.config.path, extension))

    def download(
        self,
        asin: str,
        access_token: str,
        locale: str,
        output_path: str,
        cancel: Optional[CancelToken] = None,
    ) -> DownloadDescriptor:
        """下载指定 ASIN 的资源到 output_path。"""
        if not isinstance(asin, str) or not ASIN_PATTERN.match(asin):
            raise InvalidInput("ASIN must be 1-32 alphanumeric characters")
        if not isinstance(output_path, str) or not output_path.strip():
            raise InvalidInput("Output path must be a non-empty string")
        if not isinstance(access_token, str) or not access_token.strip():
            raise InvalidInput("Access token is required")

        job = DownloadJob(
            asin=asin,
            output_path=output_path,
            cancel=cancel or CancelToken(timeout=self.config.download.timeout_seconds),
        )
        resume = self.config.download.resume
        state = self._load_state(job) if resume else None

        try:
            if state is not None:
                job.url = state.url
                job.bytes_downloaded = job.resumed_from = state.bytes_downloaded
                job.total_bytes = state.total_bytes
                logger.info(f"[Download] {asin}: resuming at byte {state.bytes_downloaded}")
            else:
                job.status = DownloadStatus.RESOLVING
                job.url = self.resolve(asin, access_token, locale)
            job.cancel.raise_if_cancelled()

            job.status = DownloadStatus.DOWNLOADING
            logger.info(f"[Download] {asin}: streaming to {output_path}")
            try:
                self._stream(job)
            except AuthError:
                if state is None:
                    raise
                # 保存的资源地址已过期，重新申请后从同一位置继续
                logger.info(f"[Download] {asin}: saved download URL rejected, requesting a new license")
                job.status = DownloadStatus.RESOLVING
                job.url = self.resolve(asin, access_token, locale)
                job.status = DownloadStatus.DOWNLOADING
                self._stream(job)
        except BaseException as e:
            cancelled = isinstance(e, OperationCancelled)
            job.status = DownloadStatus.CANCELLED if cancelled else DownloadStatus.FAILED
            job.error_message = str(e)
            if resume and self._save_state(job):
                logger.info(
                    f"[Download] {asin}: kept {job.bytes_downloaded} bytes for resume after {job.status.value}"
                )
            else:
                if remove_quietly(job.part_path):
                    logger.info(f"[Download] {asin}: removed partial file after {job.status.value}")
                remove_quietly(job.state_path)
            raise

        remove_quietly(job.state_path)
        job.status = DownloadStatus.DONE
        logger.info(f"[Download] {asin}: done, {job.bytes_downloaded} bytes")
        return DownloadDescriptor(
            asin=asin,
            output_path=output_path,
            bytes_downloaded=job.bytes_downloaded,
            resumed_from=job.resumed_from,
        )

    # ------------------------------------------------------------------
    # 续传状态
    # ------------------------------------------------------------------

    def _load_state(self, job: DownloadJob) -> Optional[DownloadState]:
        """读取续传状态；状态与 .part 文件不一致时从头下载。"""
        try:
            raw = Path(job.state_path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise IoError(f"Cannot read resume state {job.state_path}: {e.strerror or e}") from e

        try:
            state = DownloadState.model_validate_json(raw)
        except ValidationError:
            logger.warning(f"[Download] {job.asin}: resume state is unreadable, starting over")
            return None

        try:
            size = os.path.getsize(job.part_path)
        except OSError:
            size = -1
        if state.asin != job.asin or size != state.bytes_downloaded or not state.bytes_downloaded:
            logger.info(f"[Download] {job.asin}: resume state does not match the partial file, starting over")
            return None
        return state

    def _save_state(self, job: DownloadJob) -> bool:
        """记录已写入 .part 的字节数；没有可续传的数据时返回 False。"""
        if not job.url:
            return False
        try:
            size = os.path.getsize(job.part_path)
        except OSError:
            return False
        if not size:
            return False

        state = DownloadState(asin=job.asin, url=job.url, bytes_downloaded=size, total_bytes=job.total_bytes)
        try:
            Path(job.state_path).write_text(state.model_dump_json(), encoding="utf-8")
        except OSError as e:
            logger.warning(f"[Download] {job.asin}: cannot write resume state: {e.strerror or e}")
            return False
        job.bytes_downloaded = size
        return True

    # ------------------------------------------------------------------
    # 传输
    # ------------------------------------------------------------------

    def _stream(self, job: DownloadJob) -> None:
        ensure_parent_dir(job.output_path)

        owns_client = self._client is None
        client = self._client or create_client(self.config.http)
        try:
            self._fetch(client, job)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Download of {job.asin} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Download of {job.asin} failed: {type(e).__name__}") from e
        finally:
            if owns_client:
                client.close()

        if job.total_bytes is not None and job.bytes_downloaded != job.total_bytes:
            raise NetworkError(
                f"Incomplete download of {job.asin}: {job.bytes_downloaded}/{job.total_bytes} bytes"
            )

        try:
            os.replace(job.part_path, job.output_path)
        except OSError as e:
            raise IoError(f"Cannot move download into place: {e.strerror or e}") from e

    def _fetch(self, client: httpx.Client, job: DownloadJob) -> None:
        """请求资源并写入 .part；续传请求未被服务端接受时从头开始。"""
        while True:
            offset = job.bytes_downloaded
            headers = {"Range": f"bytes={offset}-"} if offset else {}
            with client.stream("GET", job.url, headers=headers) as response:
                check_response(response, f"Download of {job.asin}")

                if offset:
                    content_range = _content_range(response) if response.status_code == 206 else None
                    resumed = (
                        content_range is not None
                        and content_range[0] == offset
                        and (job.total_bytes is None or content_range[1] in (None, job.total_bytes))
                    )
                    if not resumed:
                        logger.info(f"[Download] {job.asin}: server did not resume at byte {offset}, restarting")
                        job.bytes_downloaded = job.resumed_from = 0
                        job.total_bytes = None
                        if response.status_code == 206:
                            continue
                        offset = 0
                    elif job.total_bytes is None:
                        job.total_bytes = content_range[1]

                if not offset:
                    job.total_bytes = _content_length(response)

                self._write(response, job, append=bool(offset))
                return

    def _write(self, response: httpx.Response, job: DownloadJob, append: bool) -> None:
        try:
            f = open(job.part_path, "ab" if append else "wb")
        except OSError as e:
            raise IoError(f"Cannot open {job.part_path} for writing: {e.strerror or e}") from e

        with f:
            for chunk in response.iter_bytes(self.config.download.chunk_size):
                job.cancel.raise_if_cancelled()
                try:
                    f.write(chunk)
                except OSError as e:
                    raise IoError(f"Write to {job.part_path} failed: {e.strerror or e}") from e
                job.bytes_downloaded += len(chunk)


def download(
    asin: str,
    access_token: str,
    locale: str,
    output_path: str,
    config: Optional[AppConfig] = None,
    client: Optional[httpx.Client] = None,
    cancel: Optional[CancelToken] = None,
) -> DownloadDescriptor:
    logger.debug(f"[Download] Using access token {mask_secret(access_token)}")
    return DownloadManager(config, client).download(asin, access_token, locale, output_path, cancel)
