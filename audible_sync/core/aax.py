"""
AAX 容器处理模块。
负责解析 atom 结构、由激活字节推导密钥、解密音频采样并重新封装为 M4B。
"""

from __future__ import annotations
import logging
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from Cryptodome.Cipher import AES
from Cryptodome.Hash import SHA1

from .activation import normalize_activation_bytes
from .config import AppConfig
from .errors import FormatError, InvalidInput, IoError
from .metadata import BookMetadata, write_metadata
from .types import Book, Chapter, DecryptResult
from .utils import CancelToken, ensure_parent_dir, part_path, remove_quietly


logger = logging.getLogger(__name__)

# 与 FFmpeg mov_read_adrm 一致的固定密钥
AUDIBLE_FIXED_KEY = bytes.fromhex("77214d4b196a87cd520045fd20a51d67")

DRM_BLOB_SIZE = 56
DRM_BLOB_OFFSET = 8
CHECKSUM_OFFSET = DRM_BLOB_OFFSET + DRM_BLOB_SIZE + 4
CHECKSUM_SIZE = 20
ADRM_MIN_PAYLOAD = CHECKSUM_OFFSET + CHECKSUM_SIZE

ENCRYPTED_ENTRY = b"aavd"
DECRYPTED_ENTRY = b"mp4a"
AAX_BRAND = b"aax "
M4B_BRAND = b"M4B "
DRM_ATOMS = (b"adrm", b"aabd")

# 直接包含子 atom 的容器
CONTAINERS = {
    b"moov", b"trak", b"mdia", b"minf", b"stbl", b"udta",
    b"edts", b"dinf", b"tref", b"ilst",
}
SOUND_ENTRIES = {b"mp4a", b"aavd"}
MAX_DEPTH = 16


@dataclass
class Atom:
    """一个 atom 的位置与子节点。"""
    type: bytes
    offset: int
    size: int
    header_size: int
    children: list[Atom] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.type.decode("latin-1")

    @property
    def payload_offset(self) -> int:
        return self.offset + self.header_size

    @property
    def payload_size(self) -> int:
        return self.size - self.header_size

    @property
    def end(self) -> int:
        return self.offset + self.size

    def find(self, *path: bytes) -> Optional[Atom]:
        """按类型路径查找后代。"""
        node: Optional[Atom] = self
        for atom_type in path:
            node = next((c for c in node.children if c.type == atom_type), None)
            if node is None:
                return None
        return node

    def find_all(self, atom_type: bytes) -> list[Atom]:
        return [c for c in self.children if c.type == atom_type]

    def walk(self) -> Iterator[Atom]:
        for child in self.children:
            yield child
            yield from child.walk()


@dataclass
class Track:
    """一条轨道的采样表。"""
    handler: str
    entry_type: bytes
    timescale: int
    entry: Optional[Atom]
    samples: list[tuple[int, int]] = field(default_factory=list)
    # stts 原样保存为 (采样数, 时长) 区段
    duration_runs: list[tuple[int, int]] = field(default_factory=list)

    def sample_durations(self) -> Iterator[int]:
        for count, delta in self.duration_runs:
            for _ in range(count):
                yield delta

    @property
    def encrypted(self) -> bool:
        return self.entry_type == ENCRYPTED_ENTRY


@dataclass
class AaxContainer:
    """解析后的容器：顶层 atom 序列、轨道与元数据。"""
    file_size: int
    atoms: list[Atom]
    tracks: list[Track]
    title: Optional[str] = None
    has_cover: bool = False
    chapters: list[Chapter] = field(default_factory=list)

    @property
    def root(self) -> Atom:
        return Atom(type=b"root", offset=0, size=self.file_size, header_size=0, children=self.atoms)

    @property
    def adrm(self) -> Optional[Atom]:
        return next((a for a in self.root.walk() if a.type == b"adrm"), None)

    @property
    def encrypted_tracks(self) -> list[Track]:
        return [t for t in self.tracks if t.encrypted]


@dataclass(frozen=True)
class AaxKey:
    """由激活字节推导出的文件密钥。"""
    key: bytes = field(repr=False)
    iv: bytes = field(repr=False)
    checksum_verified: bool = False


# ----------------------------------------------------------------------
# atom 解析
# ----------------------------------------------------------------------

def _read_exact(f: BinaryIO, offset: int, size: int) -> bytes:
    f.seek(offset)
    data = f.read(size)
    if len(data) != size:
        raise FormatError(f"Unexpected end of file at offset {offset}")
    return data


def _child_skip(f: BinaryIO, atom: Atom) -> Optional[int]:
    """返回子 atom 起始位置相对载荷的偏移；非容器返回 None。"""
    if atom.type in CONTAINERS:
        return 0
    if atom.type == b"meta":
        # QuickTime 风格的 meta 没有 version/flags
        if atom.payload_size >= 8 and _read_exact(f, atom.payload_offset + 4, 4) == b"hdlr":
            return 0
        return 4
    if atom.type == b"stsd":
        return 8
    if atom.type in SOUND_ENTRIES:
        if atom.payload_size < 28:
            raise FormatError(f"Sample entry '{atom.name}' is truncated")
        (version,) = struct.unpack(">H", _read_exact(f, atom.payload_offset + 8, 2))
        match version:
            case 0:
                return 28
            case 1:
                return 44
            case 2:
                return 64
            case _:
                raise FormatError(f"Unsupported sound sample entry version {version}")
    return None


def parse_atoms(f: BinaryIO, start: int, end: int, parent: bytes = b"", depth: int = 0) -> list[Atom]:
    """解析 [start, end) 范围内的 atom 序列，越界即抛出 FormatError。"""
    if depth > MAX_DEPTH:
        raise FormatError("Atom nesting is too deep")

    atoms = []
    pos = start
    while pos < end:
        if end - pos < 8:
            raise FormatError(f"Truncated atom header at offset {pos}")
        size, atom_type = struct.unpack(">I4s", _read_exact(f, pos, 8))
        header_size = 8
        if size == 1:
            if end - pos < 16:
                raise FormatError(f"Truncated 64-bit atom header at offset {pos}")
            (size,) = struct.unpack(">Q", _read_exact(f, pos + 8, 8))
            header_size = 16
        elif size == 0:
            size = end - pos

        if size < header_size or pos + size > end:
            raise FormatError(
                f"Atom '{atom_type.decode('latin-1')}' at offset {pos} overruns its container"
            )

        atom = Atom(type=atom_type, offset=pos, size=size, header_size=header_size)
        # ilst 下的条目本身也是容器（其内为 data atom）
        skip = 0 if parent == b"ilst" else _child_skip(f, atom)
        if skip is not None:
            child_start = atom.payload_offset + skip
            if child_start > atom.end:
                raise FormatError(f"Atom '{atom.name}' at offset {pos} is truncated")
            atom.children = parse_atoms(f, child_start, atom.end, atom.type, depth + 1)

        atoms.append(atom)
        pos += size
    return atoms


def _table(f: BinaryIO, atom: Optional[Atom], name: str) -> bytes:
    if atom is None:
        raise FormatError(f"Sample table is missing '{name}'")
    return _read_exact(f, atom.payload_offset, atom.payload_size)


def _entries(data: bytes, name: str, entry_format: str, header: int = 8) -> list[tuple]:
    if len(data) < header:
        raise FormatError(f"'{name}' atom is truncated")
    (count,) = struct.unpack_from(">I", data, header - 4)
    entry_size = struct.calcsize(entry_format)
    if header + count * entry_size > len(data):
        raise FormatError(f"'{name}' declares {count} entries but is too short")
    return list(struct.iter_unpack(entry_format, data[header:header + count * entry_size]))


def _sample_sizes(data: bytes, file_size: int) -> list[int]:
    if len(data) < 12:
        raise FormatError("'stsz' atom is truncated")
    sample_size, count = struct.unpack_from(">II", data, 4)
    if sample_size:
        if sample_size * count > file_size:
            raise FormatError(f"'stsz' declares {count} samples of {sample_size} bytes, more than the file holds")
        return [sample_size] * count
    if 12 + count * 4 > len(data):
        raise FormatError(f"'stsz' declares {count} samples but is too short")
    return list(struct.unpack_from(f">{count}I", data, 12))


def _parse_track(f: BinaryIO, trak: Atom, file_size: int) -> Track:
    mdia = trak.find(b"mdia")
    if mdia is None:
        raise FormatError("Track has no 'mdia' atom")

    handler = ""
    hdlr = mdia.find(b"hdlr")
    if hdlr is not None and hdlr.payload_size >= 12:
        handler = _read_exact(f, hdlr.payload_offset + 8, 4).decode("latin-1")

    timescale = 0
    mdhd = mdia.find(b"mdhd")
    if mdhd is not None and mdhd.payload_size >= 24:
        version = _read_exact(f, mdhd.payload_offset, 1)[0]
        (timescale,) = struct.unpack(">I", _read_exact(f, mdhd.payload_offset + (20 if version == 1 else 12), 4))

    stbl = mdia.find(b"minf", b"stbl")
    if stbl is None:
        raise FormatError("Track has no sample table")

    stsd = stbl.find(b"stsd")
    entry = stsd.children[0] if stsd is not None and stsd.children else None
    entry_type = entry.type if entry is not None else b""

    sizes = _sample_sizes(_table(f, stbl.find(b"stsz"), "stsz"), file_size)
    stsc = _entries(_table(f, stbl.find(b"stsc"), "stsc"), "stsc", ">III")
    if stbl.find(b"co64") is not None:
        offsets = [o for (o,) in _entries(_table(f, stbl.find(b"co64"), "co64"), "co64", ">Q")]
    else:
        offsets = [o for (o,) in _entries(_table(f, stbl.find(b"stco"), "stco"), "stco", ">I")]

    duration_runs: list[tuple[int, int]] = []
    stts = stbl.find(b"stts")
    if stts is not None:
        duration_runs = _entries(_table(f, stts, "stts"), "stts", ">II")
        declared = sum(count for count, _ in duration_runs)
        if declared > len(sizes):
            raise FormatError(f"'stts' covers {declared} samples but 'stsz' declares {len(sizes)}")

    samples = []
    sample_index = 0
    for chunk_number, chunk_offset in enumerate(offsets, start=1):
        per_chunk = 0
        for first_chunk, samples_per_chunk, _ in stsc:
            if first_chunk > chunk_number:
                break
            per_chunk = samples_per_chunk
        position = chunk_offset
        for _ in range(per_chunk):
            if sample_index >= len(sizes):
                raise FormatError("Sample-to-chunk table references more samples than 'stsz' declares")
            size = sizes[sample_index]
            if position + size > file_size:
                raise FormatError(f"Sample {sample_index} lies outside the file")
            samples.append((position, size))
            position += size
            sample_index += 1

    if sample_index != len(sizes):
        raise FormatError(f"Chunk tables cover {sample_index} of {len(sizes)} samples")

    return Track(handler=handler, entry_type=entry_type, timescale=timescale, entry=entry,
                 samples=samples, duration_runs=duration_runs)


def _ilst_text(f: BinaryIO, ilst: Optional[Atom], key: bytes) -> Optional[str]:
    if ilst is None:
        return None
    item = ilst.find(key, b"data")
    if item is None or item.payload_size < 8:
        return None
    raw = _read_exact(f, item.payload_offset + 8, item.payload_size - 8)
    return raw.decode("utf-8", errors="replace") or None


def _read_chapters(f: BinaryIO, track: Track) -> list[Chapter]:
    chapters = []
    start = 0
    scale = track.timescale or 1000
    durations = track.sample_durations()
    for index, (offset, size) in enumerate(track.samples):
        duration = next(durations, 0)
        title = f"Chapter {index + 1}"
        if size >= 2:
            data = _read_exact(f, offset, size)
            (length,) = struct.unpack_from(">H", data)
            if 0 < length <= size - 2:
                title = data[2:2 + length].decode("utf-8", errors="replace")
        chapters.append(Chapter(
            title=title,
            start_ms=start * 1000 // scale,
            duration_ms=duration * 1000 // scale,
        ))
        start += duration
    return chapters


def parse_container(f: BinaryIO) -> AaxContainer:
    """解析整个文件，定位元数据与加密采样。"""
    f.seek(0, os.SEEK_END)
    file_size = f.tell()
    atoms = parse_atoms(f, 0, file_size)

    container = AaxContainer(file_size=file_size, atoms=atoms, tracks=[])
    root = container.root
    moov = root.find(b"moov")
    if moov is None:
        raise FormatError("File has no 'moov' atom")
    if root.find(b"mdat") is None:
        raise FormatError("File has no 'mdat' atom")

    container.tracks = [_parse_track(f, trak, file_size) for trak in moov.find_all(b"trak")]

    ilst = moov.find(b"udta", b"meta", b"ilst")
    container.title = _ilst_text(f, ilst, b"\xa9nam")
    container.has_cover = ilst is not None and ilst.find(b"covr", b"data") is not None

    text_track = next((t for t in container.tracks if t.handler == "text"), None)
    if text_track is not None:
        container.chapters = _read_chapters(f, text_track)
    return container


def read_container(input_path: str) -> AaxContainer:
    """读取并解析容器文件。"""
    try:
        with open(input_path, "rb") as f:
            return parse_container(f)
    except OSError as e:
        raise IoError(f"Cannot read {input_path}: {e.strerror or e}") from e


def is_aax_file(path: str) -> bool:
    """检查 ftyp 主品牌是否为 aax。"""
    try:
        with open(path, "rb") as f:
            header = f.read(12)
    except OSError:
        return False
    return len(header) == 12 and header[4:8] == b"ftyp" and header[8:12] == AAX_BRAND


# ----------------------------------------------------------------------
# 密钥推导（与 FFmpeg mov_read_adrm 一致）
# ----------------------------------------------------------------------

def _sha1(*parts: bytes) -> bytes:
    h = SHA1.new()
    for part in parts:
        h.update(part)
    return h.digest()


def derive_key(adrm_payload: bytes, activation_bytes: str) -> AaxKey:
    """
    由 adrm 载荷与激活字节推导文件密钥。

    文件校验和全零时视为未携带校验和，跳过校验；
    此时错误的激活字节不会报错，只会得到无法播放的采样。
    """
    if len(adrm_payload) < ADRM_MIN_PAYLOAD:
        raise FormatError("'adrm' atom is truncated")

    ab = bytes.fromhex(normalize_activation_bytes(activation_bytes))
    blob = adrm_payload[DRM_BLOB_OFFSET:DRM_BLOB_OFFSET + DRM_BLOB_SIZE]
    file_checksum = adrm_payload[CHECKSUM_OFFSET:CHECKSUM_OFFSET + CHECKSUM_SIZE]

    intermediate_key = _sha1(AUDIBLE_FIXED_KEY, ab)
    intermediate_iv = _sha1(AUDIBLE_FIXED_KEY, intermediate_key, ab)

    verify = any(file_checksum)
    if verify and _sha1(intermediate_key[:16], intermediate_iv[:16]) != file_checksum:
        raise FormatError("Activation bytes do not match this file (checksum mismatch)")

    cipher = AES.new(intermediate_key[:16], AES.MODE_CBC, iv=intermediate_iv[:16])
    plain = cipher.decrypt(blob[:(DRM_BLOB_SIZE >> 4) << 4])

    # 数据块内以大端序保存激活字节
    if verify and plain[3::-1] != ab:
        raise FormatError("DRM blob did not decrypt to the activation bytes")
    if not verify:
        logger.warning("[AAX] File carries no DRM checksum, activation bytes cannot be verified")

    file_key = plain[8:24]
    file_iv = _sha1(plain[26:42], file_key, AUDIBLE_FIXED_KEY)[:16]
    return AaxKey(key=file_key, iv=file_iv, checksum_verified=verify)


def decrypt_sample(data: bytes, key: AaxKey) -> bytes:
    """每个采样使用新的 IV 解密整块部分，末尾不足 16 字节的部分保持原样。"""
    blocks = len(data) >> 4 << 4
    if not blocks:
        return data
    cipher = AES.new(key.key, AES.MODE_CBC, iv=key.iv)
    return cipher.decrypt(data[:blocks]) + data[blocks:]


def _container_key(f: BinaryIO, container: AaxContainer, activation_bytes: str) -> AaxKey:
    adrm = container.adrm
    if adrm is None:
        raise FormatError("File has no 'adrm' DRM atom")
    return derive_key(_read_exact(f, adrm.payload_offset, adrm.payload_size), activation_bytes)


def verify_activation_bytes(input_path: str, activation_bytes: str) -> bool:
    """文件携带校验和时判断激活字节是否匹配；无校验和时返回 False。"""
    normalize_activation_bytes(activation_bytes)
    try:
        with open(input_path, "rb") as f:
            container = parse_container(f)
            key = _container_key(f, container, activation_bytes)
    except FormatError as e:
        logger.debug(f"[AAX] Activation bytes rejected: {e}")
        return False
    except OSError as e:
        raise IoError(f"Cannot read {input_path}: {e.strerror or e}") from e
    return key.checksum_verified


# ----------------------------------------------------------------------
# 解密与重新封装
# ----------------------------------------------------------------------

class DecryptionEngine:
    """
    将 AAX 解密为 M4B。

    输出先复制为 ``<output>.part`` 再原地修补：采样解密、``aavd`` 改为 ``mp4a``、
    DRM atom 改为等长的 ``free``、品牌改为 ``M4B ``。所有 atom 长度不变，
    因此 chunk 偏移无需重写。
    """

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config or AppConfig()

    def decrypt(
        self,
        input_path: str,
        output_path: str,
        activation_bytes: str,
        cancel: Optional[CancelToken] = None,
        book: Optional[Book] = None,
        cover: Optional[bytes] = None,
    ) -> DecryptResult:
        """解密 input_path 并写入 output_path；提供 book 时同时写入标签。"""
        activation_bytes = normalize_activation_bytes(activation_bytes)
        for name, value in (("input_path", input_path), ("output_path", output_path)):
            if not isinstance(value, str) or not value.strip():
                raise InvalidInput(f"{name} must be a non-empty string")
        if Path(input_path).resolve() == Path(output_path).resolve():
            raise InvalidInput("Output path must differ from input path")

        cancel = cancel or CancelToken(timeout=self.config.decrypt.timeout_seconds)
        tmp_path = part_path(output_path)

        try:
            src = open(input_path, "rb")
        except OSError as e:
            raise IoError(f"Cannot read {input_path}: {e.strerror or e}") from e

        try:
            with src:
                container = parse_container(src)
                tracks = container.encrypted_tracks
                if not tracks:
                    raise FormatError("File has no encrypted audio track")
                key = _container_key(src, container, activation_bytes)

                logger.info(
                    f"[AAX] Decrypting {sum(len(t.samples) for t in tracks)} samples "
                    f"from {input_path}"
                )
                ensure_parent_dir(output_path)
                self._copy(src, tmp_path, cancel)

            self._patch(tmp_path, container, key, cancel)
            if book is not None:
                write_metadata(tmp_path, BookMetadata.parse_from_book(book, cover))
            os.replace(tmp_path, output_path)
        except OSError as e:
            remove_quietly(tmp_path)
            raise IoError(f"Decryption I/O failed: {e.strerror or e}") from e
        except BaseException:
            if remove_quietly(tmp_path):
                logger.info(f"[AAX] Removed partial output {tmp_path}")
            raise

        file_size = os.path.getsize(output_path)
        logger.info(f"[AAX] Wrote {output_path} ({file_size} bytes)")
        return DecryptResult(
            output_path=output_path,
            file_size=file_size,
            title=container.title,
            chapters=container.chapters,
            has_cover=container.has_cover,
            checksum_verified=key.checksum_verified,
        )

    def _copy(self, src: BinaryIO, tmp_path: str, cancel: CancelToken) -> None:
        src.seek(0)
        with open(tmp_path, "wb") as dst:
            while True:
                cancel.raise_if_cancelled()
                chunk = src.read(1024 * 1024)
                if not chunk:
                    break
                dst.write(chunk)

    def _patch(self, tmp_path: str, container: AaxContainer, key: AaxKey, cancel: CancelToken) -> None:
        interval = self.config.decrypt.check_interval
        with open(tmp_path, "r+b") as f:
            samples = sorted(s for t in container.encrypted_tracks for s in t.samples)
            for index, (offset, size) in enumerate(samples):
                if index % interval == 0:
                    cancel.raise_if_cancelled()
                f.seek(offset)
                data = f.read(size)
                f.seek(offset)
                f.write(decrypt_sample(data, key))

            for atom in container.root.walk():
                if atom.type == ENCRYPTED_ENTRY:
                    f.seek(atom.offset + 4)
                    f.write(DECRYPTED_ENTRY)
                elif atom.type in DRM_ATOMS:
                    f.seek(atom.offset + 4)
                    f.write(b"free")
                    f.seek(atom.payload_offset)
                    f.write(b"\x00" * atom.payload_size)

            ftyp = container.root.find(b"ftyp")
            if ftyp is not None:
                brands = _read_exact(f, ftyp.payload_offset, ftyp.payload_size)
                # 主品牌、版本号后为兼容品牌列表，每项 4 字节
                patched = bytearray(brands)
                for pos in range(0, len(patched) - 3, 4):
                    if pos != 4 and patched[pos:pos + 4] == AAX_BRAND:
                        patched[pos:pos + 4] = M4B_BRAND
                f.seek(ftyp.payload_offset)
                f.write(bytes(patched))


def decrypt(input_path: str, output_path: str, activation_bytes: str,
            config: Optional[AppConfig] = None, cancel: Optional[CancelToken] = None,
            book: Optional[Book] = None) -> DecryptResult:
    return DecryptionEngine(config).decrypt(input_path, output_path, activation_bytes, cancel, book)
