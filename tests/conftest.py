"""
测试公共设施

提供内存中的 Audible/Amazon 模拟服务端，以及合成 AAX 文件的构建器。
"""

import hashlib
import json
import struct
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs

import httpx
import pytest
from Cryptodome.Cipher import AES

# 将项目根目录加入路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from audible_sync.core.auth import derive_challenge
from audible_sync.core.config import AppConfig, RetryConfig
from audible_sync.core.types import Account, TokenSet


SERIAL = "0123456789ABCDEF0123456789ABCDEF"
ACTIVATION_BYTES = "1ceb00da"
FIXED_KEY = bytes.fromhex("77214d4b196a87cd520045fd20a51d67")


# ----------------------------------------------------------------------
# 模拟服务端
# ----------------------------------------------------------------------

def library_item(index: int, **overrides) -> dict:
    item = {
        "asin": f"B{index:09d}",
        "title": f"Book {index:02d}",
        "subtitle": None,
        "authors": [{"asin": None, "name": f"Author {index % 3}"}],
        "narrators": [{"name": "Reader"}],
        "runtime_length_min": 60 + index,
        "purchase_date": f"2023-01-{(index % 28) + 1:02d}T00:00:00Z",
        "release_date": "2020-05-01",
        "product_images": {"500": f"https://m.media-amazon.com/{index}.jpg"},
    }
    item.update(overrides)
    return item


@dataclass
class FakeAudible:
    """按 URL 分派的模拟服务端，记录收到的请求。"""
    library: list[dict] = field(default_factory=lambda: [library_item(i) for i in range(25)])
    access_tokens: set[str] = field(default_factory=lambda: {"Atna|initial-access"})
    refresh_tokens: set[str] = field(default_factory=lambda: {"Atnr|initial-refresh"})
    content: bytes = b"AAX-CONTENT" * 1000
    license_status: str = "Granted"
    activation_value: int = 0x1CEB00DA
    # 下列计数大于 0 时，对应端点先返回若干次 503
    library_failures: int = 0
    token_failures: int = 0
    download_stream: Optional[httpx.SyncByteStream] = None
    download_headers: dict = field(default_factory=dict)
    accept_ranges: bool = True
    download_ranges: list[Optional[str]] = field(default_factory=list)
    requests: list[tuple[str, str]] = field(default_factory=list)
    _codes: dict[str, str] = field(default_factory=dict)
    _counter: int = 0

    def issue_code(self, code_challenge: str) -> str:
        """模拟用户在登录页完成授权，签发绑定挑战的授权码。"""
        self._counter += 1
        code = f"ANcode{self._counter:04d}"
        self._codes[code] = code_challenge
        return code

    def count(self, path: str) -> int:
        return sum(1 for _, p in self.requests if p == path)

    def _bearer_ok(self, request: httpx.Request) -> bool:
        header = request.headers.get("Authorization", "")
        return header.startswith("Bearer ") and header[7:] in self.access_tokens

    def _new_tokens(self) -> str:
        self._counter += 1
        token = f"Atna|access-{self._counter:04d}"
        self.access_tokens.add(token)
        return token

    def handler(self, request: httpx.Request) -> httpx.Response:
        host, path = request.url.host, request.url.path
        self.requests.append((host, path))

        match (host, path):
            case ("api.amazon.com", "/auth/register"):
                return self._register(request)
            case ("api.amazon.com", "/auth/token"):
                return self._refresh(request)
            case ("www.audible.com", "/license/token"):
                if not self._bearer_ok(request):
                    return httpx.Response(200, content=b"<html>BAD_LOGIN</html>")
                blob = bytearray(0x300)
                struct.pack_into("<I", blob, len(blob) - 0x238, self.activation_value)
                return httpx.Response(200, content=bytes(blob))
            case ("api.audible.com", "/1.0/library"):
                return self._library_page(request)
            case ("api.audible.com", "/1.0/customer/information"):
                if not self._bearer_ok(request):
                    return httpx.Response(401)
                return httpx.Response(200, json={"customer_details": {"name": "Test Listener"}})
            case ("api.audible.com", _) if path.endswith("/licenserequest"):
                return self._license(request)
            case ("cdn.audible.com", _):
                return self._content(request)
        return httpx.Response(404)

    def _register(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        code = body["auth_data"]["authorization_code"]
        verifier = body["auth_data"]["code_verifier"]
        challenge = self._codes.pop(code, None)
        if challenge is None or derive_challenge(verifier) != challenge:
            return httpx.Response(400, json={"response": {"error": {"code": "InvalidValue"}}})

        self._counter += 1
        refresh_token = f"Atnr|refresh-{self._counter:04d}"
        self.refresh_tokens.add(refresh_token)
        return httpx.Response(200, json={
            "response": {
                "success": {
                    "tokens": {
                        "bearer": {
                            "access_token": self._new_tokens(),
                            "refresh_token": refresh_token,
                            "expires_in": "3600",
                        },
                    },
                    "extensions": {"customer_info": {"name": "Test Listener"}},
                },
            },
            "request_id": "req-1",
        })

    def _refresh(self, request: httpx.Request) -> httpx.Response:
        if self.token_failures > 0:
            self.token_failures -= 1
            return httpx.Response(503)
        form = parse_qs(request.content.decode())
        source = form.get("source_token", [""])[0]
        if source not in self.refresh_tokens:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": source})
        # 刷新令牌不轮换：响应中不返回新的刷新令牌
        return httpx.Response(200, json={
            "access_token": self._new_tokens(),
            "expires_in": 3600,
            "token_type": "bearer",
        })

    def _library_page(self, request: httpx.Request) -> httpx.Response:
        if not self._bearer_ok(request):
            return httpx.Response(401)
        if self.library_failures > 0:
            self.library_failures -= 1
            return httpx.Response(503)
        page = int(request.url.params["page"])
        size = int(request.url.params["num_results"])
        items = self.library[(page - 1) * size:page * size]
        return httpx.Response(200, json={"items": items, "total_results": len(self.library)})

    def _content(self, request: httpx.Request) -> httpx.Response:
        range_header = request.headers.get("Range")
        self.download_ranges.append(range_header)
        if request.url.params.get("sig") == "expired":
            return httpx.Response(403)
        if self.download_stream is not None:
            return httpx.Response(200, headers=self.download_headers, stream=self.download_stream)
        if range_header and self.accept_ranges:
            start = int(range_header.removeprefix("bytes=").rstrip("-"))
            total = len(self.content)
            headers = {"Content-Range": f"bytes {start}-{total - 1}/{total}", **self.download_headers}
            return httpx.Response(206, headers=headers, content=self.content[start:])
        return httpx.Response(200, headers=self.download_headers, content=self.content)

    def _license(self, request: httpx.Request) -> httpx.Response:
        if not self._bearer_ok(request):
            return httpx.Response(401)
        asin = request.url.path.split("/")[3]
        return httpx.Response(200, json={
            "content_license": {
                "asin": asin,
                "status_code": self.license_status,
                "drm_type": "Adrm",
                "content_metadata": {
                    "content_url": {"offline_url": f"https://cdn.audible.com/{asin}.aax?sig=abc"},
                },
            },
        })


@pytest.fixture
def fake() -> FakeAudible:
    return FakeAudible()


@pytest.fixture
def client(fake):
    with httpx.Client(transport=httpx.MockTransport(fake.handler)) as c:
        yield c


@pytest.fixture
def config() -> AppConfig:
    cfg = AppConfig()
    cfg.retry = RetryConfig(max_attempts=3, initial_delay=0, max_delay=0)
    cfg.library.page_size = 10
    return cfg


@pytest.fixture
def account() -> Account:
    tokens = TokenSet.from_expires_in(
        access_token="Atna|initial-access",
        refresh_token="Atnr|initial-refresh",
        expires_in=3600,
        device_serial=SERIAL,
    )
    return Account(locale="us", device_serial=SERIAL, tokens=tokens)


# ----------------------------------------------------------------------
# 合成 AAX
# ----------------------------------------------------------------------

def atom(kind: bytes, payload: bytes) -> bytes:
    return struct.pack(">I", 8 + len(payload)) + kind + payload


def full_atom(kind: bytes, payload: bytes, version: int = 0, flags: int = 0) -> bytes:
    return atom(kind, struct.pack(">I", (version << 24) | flags) + payload)


def encrypt_sample(data: bytes, key: bytes, iv: bytes) -> bytes:
    blocks = len(data) >> 4 << 4
    if not blocks:
        return data
    return AES.new(key, AES.MODE_CBC, iv=iv).encrypt(data[:blocks]) + data[blocks:]


def build_adrm(activation_bytes: str, file_key: bytes, seed: bytes, with_checksum: bool = True) -> bytes:
    """按 FFmpeg 的推导过程反向构造 adrm atom。"""
    ab = bytes.fromhex(activation_bytes)
    ik = hashlib.sha1(FIXED_KEY + ab).digest()
    iiv = hashlib.sha1(FIXED_KEY + ik + ab).digest()
    plain = ab[::-1] + bytes(4) + file_key + bytes(2) + seed + bytes(6)
    blob = AES.new(ik[:16], AES.MODE_CBC, iv=iiv[:16]).encrypt(plain) + bytes(8)
    checksum = hashlib.sha1(ik[:16] + iiv[:16]).digest() if with_checksum else bytes(20)
    return atom(b"adrm", bytes(8) + blob + bytes(4) + checksum)


def sound_entry(kind: bytes, children: bytes, version: int = 0) -> bytes:
    """QuickTime 声音采样描述，版本 0/1/2 的固定头长度分别为 28/44/64。"""
    prefix = (
        bytes(6) + struct.pack(">H", 1)
        + struct.pack(">HH", version, 0) + bytes(4)
    )
    if version == 2:
        prefix += (
            struct.pack(">HHhH", 3, 16, -2, 0)
            + struct.pack(">II", 65536, 72)
            + struct.pack(">d", 44100.0)
            + struct.pack(">IIIIII", 2, 0x7F000000, 0, 0, 0, 1024)
        )
    else:
        prefix += struct.pack(">HHHH", 2, 16, 0, 0) + struct.pack(">I", 44100 << 16)
        if version == 1:
            prefix += struct.pack(">IIII", 1024, 0, 2, 2)
    return atom(kind, prefix + children)


def sample_to_chunk(layout: list[int]) -> bytes:
    """将每个 chunk 的采样数压缩为 stsc 区段。"""
    entries = []
    for index, count in enumerate(layout, start=1):
        if not entries or entries[-1][1] != count:
            entries.append((index, count, 1))
    return struct.pack(">I", len(entries)) + b"".join(struct.pack(">III", *e) for e in entries)


def track(handler: bytes, entry: bytes, sizes: list[int], layout: list[int], chunk_offsets: list[int],
          delta: int, timescale: int, offset_box: bytes = b"stco") -> bytes:
    n = len(sizes)
    if offset_box == b"co64":
        offsets = b"".join(struct.pack(">Q", o) for o in chunk_offsets)
    else:
        offsets = b"".join(struct.pack(">I", o) for o in chunk_offsets)
    stbl = atom(
        b"stbl",
        full_atom(b"stsd", struct.pack(">I", 1) + entry)
        + full_atom(b"stts", struct.pack(">III", 1, n, delta))
        + full_atom(b"stsc", sample_to_chunk(layout))
        + full_atom(b"stsz", struct.pack(">II", 0, n) + b"".join(struct.pack(">I", s) for s in sizes))
        + full_atom(offset_box, struct.pack(">I", len(chunk_offsets)) + offsets),
    )
    mdhd = full_atom(b"mdhd", struct.pack(">IIIIHH", 0, 0, timescale, n * delta, 0x55C4, 0))
    hdlr = full_atom(b"hdlr", struct.pack(">I", 0) + handler + bytes(12) + b"\x00")
    return atom(b"trak", atom(b"mdia", mdhd + hdlr + atom(b"minf", stbl)))


def user_data(title: str, cover: Optional[bytes]) -> bytes:
    items = atom(b"\xa9nam", atom(b"data", struct.pack(">II", 1, 0) + title.encode("utf-8")))
    if cover:
        items += atom(b"covr", atom(b"data", struct.pack(">II", 13, 0) + cover))
    hdlr = full_atom(b"hdlr", struct.pack(">I", 0) + b"mdir" + b"appl" + bytes(9))
    return atom(b"udta", full_atom(b"meta", hdlr + atom(b"ilst", items)))


# chunk 之间填充的非采样字节，解密后必须保持不变
CHUNK_FILLER = b"\xee" * 5


@dataclass
class AaxFixture:
    data: bytes
    plain_samples: list[bytes]
    sample_offsets: list[int]
    activation_bytes: str
    title: str
    chapters: list[str]
    filler_offsets: list[int] = field(default_factory=list)

    def write(self, path: Path) -> str:
        path.write_bytes(self.data)
        return str(path)

    def patch_table(self, box: bytes, offset: int, value: int) -> "AaxFixture":
        """改写第一个 box 载荷中 offset 处的 32 位字段，返回新的夹具。"""
        data = bytearray(self.data)
        pos = data.index(box) + 4 + offset
        struct.pack_into(">I", data, pos, value)
        return AaxFixture(
            data=bytes(data),
            plain_samples=self.plain_samples,
            sample_offsets=self.sample_offsets,
            activation_bytes=self.activation_bytes,
            title=self.title,
            chapters=self.chapters,
            filler_offsets=self.filler_offsets,
        )


def build_aax(
    activation_bytes: str = ACTIVATION_BYTES,
    *,
    sample_sizes: tuple = (100, 64, 257, 7, 512, 33),
    chunk_layout: Optional[tuple] = None,
    offset_box: bytes = b"stco",
    entry_version: int = 0,
    with_checksum: bool = True,
    title: str = "Test Book",
    chapters: tuple = ("Opening Credits", "Chapter One"),
    cover: Optional[bytes] = b"\xff\xd8\xff\xe0fake-jpeg",
) -> AaxFixture:
    """
    构建一个单音频轨、可选章节轨的最小 AAX 文件。

    chunk_layout 给出音频轨每个 chunk 的采样数，缺省时全部采样位于同一 chunk；
    多个 chunk 之间插入 CHUNK_FILLER。
    """
    layout = list(chunk_layout or (len(sample_sizes),))
    assert sum(layout) == len(sample_sizes)

    file_key = bytes(range(16))
    seed = bytes(range(16, 32))
    file_iv = hashlib.sha1(seed + file_key + FIXED_KEY).digest()[:16]

    plain = [bytes((i * 7 + j) % 256 for j in range(size)) for i, size in enumerate(sample_sizes)]
    encrypted = [encrypt_sample(p, file_key, file_iv) for p in plain]
    chapter_samples = [struct.pack(">H", len(c.encode())) + c.encode() for c in chapters]

    ftyp = atom(b"ftyp", b"aax " + struct.pack(">I", 0x200) + b"aax M4B mp42isom")
    entry = sound_entry(
        b"aavd",
        atom(b"esds", bytes(8))
        + build_adrm(activation_bytes, file_key, seed, with_checksum)
        + atom(b"aabd", bytes(16)),
        entry_version,
    )
    text_entry = atom(b"text", bytes(6) + struct.pack(">H", 1) + bytes(8))

    def moov(audio_offsets: list[int], text_offset: int) -> bytes:
        traks = track(b"soun", entry, [len(s) for s in encrypted], layout, audio_offsets,
                      1024, 44100, offset_box)
        if chapter_samples:
            traks += track(b"text", text_entry, [len(s) for s in chapter_samples],
                           [len(chapter_samples)], [text_offset], 60000, 1000)
        return atom(b"moov", traks + user_data(title, cover))

    mdat_start = len(ftyp) + len(moov([0] * len(layout), 0)) + 8

    # 依次写入各 chunk，第一个 chunk 之后每个 chunk 前插入填充
    payload = bytearray()
    chunk_offsets, sample_offsets, filler_offsets = [], [], []
    index = 0
    for chunk_number, count in enumerate(layout):
        if chunk_number:
            filler_offsets.append(mdat_start + len(payload))
            payload += CHUNK_FILLER
        chunk_offsets.append(mdat_start + len(payload))
        for sample in encrypted[index:index + count]:
            sample_offsets.append(mdat_start + len(payload))
            payload += sample
        index += count

    text_offset = mdat_start + len(payload)
    payload += b"".join(chapter_samples)
    data = ftyp + moov(chunk_offsets, text_offset) + atom(b"mdat", bytes(payload))

    return AaxFixture(
        data=data,
        plain_samples=plain,
        sample_offsets=sample_offsets,
        activation_bytes=activation_bytes,
        title=title,
        chapters=list(chapters),
        filler_offsets=filler_offsets,
    )
