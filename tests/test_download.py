"""
下载流程测试
"""

import sys
from pathlib import Path

import httpx
import pytest

# 将项目根目录加入路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from audible_sync.core.download import DownloadManager
from audible_sync.core.errors import AuthError, InvalidInput, IoError, NetworkError, OperationCancelled
from audible_sync.core.types import Book
from audible_sync.core.utils import CancelToken

TOKEN = "Atna|initial-access"
ASIN = "B000000001"


class BrokenStream(httpx.SyncByteStream):
    """发送部分数据后连接中断。"""

    def __iter__(self):
        yield b"x" * 1024
        raise httpx.ReadError("connection reset by peer")


class CancellingStream(httpx.SyncByteStream):
    """在传输途中触发调用方取消。"""

    def __init__(self, token: CancelToken):
        self.token = token

    def __iter__(self):
        yield b"a" * 64
        self.token.cancel()
        yield b"b" * 64


@pytest.fixture
def manager(config, client):
    config.download.chunk_size = 16
    return DownloadManager(config, client)


def leftovers(directory: Path) -> list[str]:
    return sorted(p.name for p in directory.iterdir())


class TestDownload:
    """下载测试"""

    def test_download(self, manager, fake, tmp_path):
        """测试下载完成后文件完整"""
        output = tmp_path / "books" / f"{ASIN}.aax"
        descriptor = manager.download(ASIN, TOKEN, "us", str(output))
        assert descriptor.bytes_downloaded == len(fake.content)
        assert descriptor.output_path == str(output)
        assert output.read_bytes() == fake.content
        assert leftovers(output.parent) == [f"{ASIN}.aax"]
        assert fake.count(f"/1.0/content/{ASIN}/licenserequest") == 1

    def test_license_not_granted(self, manager, fake, tmp_path):
        """测试未授予下载授权"""
        fake.license_status = "Denied"
        with pytest.raises(AuthError):
            manager.download(ASIN, TOKEN, "us", str(tmp_path / "out.aax"))
        assert leftovers(tmp_path) == []

    def test_invalid_token(self, manager, tmp_path):
        """测试访问令牌被拒绝"""
        with pytest.raises(AuthError):
            manager.download(ASIN, "Atna|bogus", "us", str(tmp_path / "out.aax"))

    def test_connection_lost(self, manager, fake, tmp_path):
        """测试传输中断时删除未完成文件"""
        fake.download_stream = BrokenStream()
        with pytest.raises(NetworkError):
            manager.download(ASIN, TOKEN, "us", str(tmp_path / "out.aax"))
        assert leftovers(tmp_path) == []

    def test_truncated_body(self, manager, fake, tmp_path):
        """测试响应长度不足时视为失败"""
        fake.content = b"short"
        fake.download_headers = {"Content-Length": "4096"}
        with pytest.raises(NetworkError):
            manager.download(ASIN, TOKEN, "us", str(tmp_path / "out.aax"))
        assert leftovers(tmp_path) == []

    def test_cancel(self, manager, fake, tmp_path):
        """测试调用方取消"""
        token = CancelToken()
        fake.download_stream = CancellingStream(token)
        with pytest.raises(OperationCancelled):
            manager.download(ASIN, TOKEN, "us", str(tmp_path / "out.aax"), cancel=token)
        assert leftovers(tmp_path) == []

    def test_cancel_before_start(self, manager, fake, tmp_path):
        """测试开始前已取消则不会创建文件"""
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            manager.download(ASIN, TOKEN, "us", str(tmp_path / "out.aax"), cancel=token)
        assert leftovers(tmp_path) == []
        assert fake.count(f"/{ASIN}.aax") == 0

    def test_unwritable_output(self, manager, tmp_path):
        """测试输出目录不可创建"""
        blocker = tmp_path / "file.txt"
        blocker.write_text("x")
        with pytest.raises(IoError):
            manager.download(ASIN, TOKEN, "us", str(blocker / "out.aax"))

    @pytest.mark.parametrize("asin,output", [("", "out.aax"), ("B00/../x", "out.aax"), (ASIN, " ")])
    def test_invalid_arguments(self, manager, fake, asin, output):
        """测试非法参数不会发起请求"""
        with pytest.raises(InvalidInput):
            manager.download(asin, TOKEN, "us", output)
        assert fake.requests == []


class TestResume:
    """断点续传测试"""

    @pytest.fixture
    def resuming(self, manager, config):
        config.download.resume = True
        return manager

    def test_resume_after_connection_lost(self, resuming, fake, tmp_path):
        """测试连接中断后保留部分文件并以 Range 请求续传"""
        fake.content = b"x" * 1024 + b"tail" * 500
        fake.download_stream = BrokenStream()
        output = tmp_path / "out.aax"

        with pytest.raises(NetworkError):
            resuming.download(ASIN, TOKEN, "us", str(output))
        assert leftovers(tmp_path) == ["out.aax.part", "out.aax.part.json"]
        state = (tmp_path / "out.aax.part.json").read_text()
        assert '"bytes_downloaded":1024' in state
        assert "Atna" not in state

        fake.download_stream = None
        descriptor = resuming.download(ASIN, TOKEN, "us", str(output))
        assert descriptor.resumed_from == 1024
        assert descriptor.bytes_downloaded == len(fake.content)
        assert output.read_bytes() == fake.content
        assert fake.download_ranges == [None, "bytes=1024-"]
        assert fake.count(f"/1.0/content/{ASIN}/licenserequest") == 1
        assert leftovers(tmp_path) == ["out.aax"]

    def test_resume_after_cancel(self, resuming, fake, tmp_path):
        """测试取消后从已写入位置继续"""
        token = CancelToken()
        fake.content = b"a" * 64 + b"b" * 64
        fake.download_stream = CancellingStream(token)
        output = tmp_path / "out.aax"

        with pytest.raises(OperationCancelled):
            resuming.download(ASIN, TOKEN, "us", str(output), cancel=token)
        assert (tmp_path / "out.aax.part").read_bytes() == b"a" * 64

        fake.download_stream = None
        descriptor = resuming.download(ASIN, TOKEN, "us", str(output))
        assert descriptor.resumed_from == 64
        assert output.read_bytes() == fake.content

    def test_server_ignores_range(self, resuming, fake, tmp_path):
        """测试服务端返回完整内容时从头写入"""
        fake.content = b"x" * 1024 + b"tail" * 500
        fake.download_stream = BrokenStream()
        output = tmp_path / "out.aax"
        with pytest.raises(NetworkError):
            resuming.download(ASIN, TOKEN, "us", str(output))

        fake.download_stream = None
        fake.accept_ranges = False
        descriptor = resuming.download(ASIN, TOKEN, "us", str(output))
        assert descriptor.resumed_from == 0
        assert output.read_bytes() == fake.content

    def test_expired_saved_url(self, resuming, fake, tmp_path):
        """测试保存的资源地址过期后重新申请授权再续传"""
        fake.content = b"0123456789" * 50
        output = tmp_path / "out.aax"
        (tmp_path / "out.aax.part").write_bytes(fake.content[:100])
        (tmp_path / "out.aax.part.json").write_text(
            f'{{"asin": "{ASIN}", "url": "https://cdn.audible.com/{ASIN}.aax?sig=expired", '
            f'"bytes_downloaded": 100, "total_bytes": {len(fake.content)}}}'
        )

        descriptor = resuming.download(ASIN, TOKEN, "us", str(output))
        assert descriptor.resumed_from == 100
        assert output.read_bytes() == fake.content
        assert fake.download_ranges == ["bytes=100-", "bytes=100-"]
        assert fake.count(f"/1.0/content/{ASIN}/licenserequest") == 1

    def test_stale_state_starts_over(self, resuming, fake, tmp_path):
        """测试状态与部分文件长度不一致时重新下载"""
        output = tmp_path / "out.aax"
        (tmp_path / "out.aax.part").write_bytes(b"junk")
        (tmp_path / "out.aax.part.json").write_text(
            f'{{"asin": "{ASIN}", "url": "https://cdn.audible.com/{ASIN}.aax?sig=abc", "bytes_downloaded": 100}}'
        )
        descriptor = resuming.download(ASIN, TOKEN, "us", str(output))
        assert descriptor.resumed_from == 0
        assert output.read_bytes() == fake.content
        assert fake.download_ranges == [None]
        assert leftovers(tmp_path) == ["out.aax"]

    def test_nothing_kept_before_streaming(self, resuming, fake, tmp_path):
        """测试授权失败时不留下续传状态"""
        fake.license_status = "Denied"
        with pytest.raises(AuthError):
            resuming.download(ASIN, TOKEN, "us", str(tmp_path / "out.aax"))
        assert leftovers(tmp_path) == []


class TestOutputPath:
    """命名模式输出路径测试"""

    def test_output_path_for(self, manager, config, tmp_path):
        config.path.download_dir = str(tmp_path)
        config.path.naming_pattern = "author_series_book"
        book = Book(asin=ASIN, locale="us", title="Heaven's River", authors=["Dennis E. Taylor"],
                    series="Bobiverse", series_position="4")
        path = Path(manager.output_path_for(book))
        assert path == tmp_path / "Dennis E. Taylor" / "Bobiverse" / "4 - Heaven's River.aax"
