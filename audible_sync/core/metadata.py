"""
有声书元数据处理器。
用于生成并写入 M4B 标签。
"""

import logging
from typing import Optional, List

import mutagen
import mutagen.mp4
from mutagen.mp4 import MP4Cover
from pydantic import BaseModel

from .errors import FormatError, IoError
from .types import Book


logger = logging.getLogger(__name__)


# 元数据字段与 MP4 标签原子映射
TAG_MAPPING = {
    "title": "©nam",  # MP4 标题
    "subtitle": "----:com.apple.iTunes:SUBTITLE",
    "author": "©ART",  # 作者写入艺术家
    "album_artist": "aART",
    "album": "©alb",
    "narrator": "©wrt",  # 朗读者写入作曲
    "release_date": "©day",
    "purchase_date": "purd",
    "genre": "©gen",
    "series": "----:com.apple.iTunes:SERIES",
    "series_part": "----:com.apple.iTunes:SERIES-PART",
    "asin": "----:com.audible:ASIN",
    "media_type": "stik",
    "cover": "covr",
}

# stik = 2 表示有声书
AUDIOBOOK_MEDIA_TYPE = 2


class BookMetadata(BaseModel):
    """有声书元数据容器。"""

    title: Optional[str] = None
    subtitle: Optional[str] = None
    author: Optional[str] = None
    album_artist: Optional[str] = None
    album: Optional[str] = None
    narrator: Optional[str] = None
    release_date: Optional[str] = None
    purchase_date: Optional[str] = None
    series: Optional[str] = None
    series_part: Optional[str] = None
    genre: Optional[List[str]] = None
    asin: Optional[str] = None
    media_type: int = AUDIOBOOK_MEDIA_TYPE
    cover: Optional[bytes] = None

    def to_mutagen_tags(self) -> dict:
        """转换为 Mutagen MP4 标签格式。"""
        tags = {}

        for key, value in self.model_dump().items():
            if not value:
                continue

            match key:
                case "cover":
                    image_format = MP4Cover.FORMAT_PNG if value.startswith(b"\x89PNG") else MP4Cover.FORMAT_JPEG
                    tags[TAG_MAPPING[key]] = [MP4Cover(value, imageformat=image_format)]
                case "subtitle" | "asin" | "series" | "series_part":
                    tags[TAG_MAPPING[key]] = [value.encode("utf-8")]
                case "media_type":
                    tags[TAG_MAPPING[key]] = [value]
                case "genre":
                    tags[TAG_MAPPING[key]] = value
                case _:
                    tags[TAG_MAPPING[key]] = [str(value)]

        return tags

    @classmethod
    def parse_from_book(cls, book: Book, cover: Optional[bytes] = None) -> "BookMetadata":
        """从书库条目生成元数据。"""
        authors = ", ".join(book.authors) or None
        return cls(
            title=book.title or None,
            subtitle=book.subtitle,
            author=authors,
            album_artist=authors,
            album=book.title or None,
            narrator=", ".join(book.narrators) or None,
            release_date=book.release_date,
            purchase_date=book.purchase_date,
            series=book.series,
            series_part=book.series_position,
            asin=book.asin,
            cover=cover,
        )


def write_metadata(path: str, metadata: BookMetadata) -> None:
    """使用 mutagen 写入 M4B 标签。"""
    try:
        mp4 = mutagen.mp4.MP4(path)
        if mp4.tags is None:
            mp4.add_tags()
        mp4.tags.update(metadata.to_mutagen_tags())
        mp4.save()
    except mutagen.MutagenError as e:
        raise FormatError(f"Cannot write tags to {path}: {e}") from e
    except OSError as e:
        raise IoError(f"Cannot write tags to {path}: {e.strerror or e}") from e
    logger.info(f"[Metadata] Tagged {path}")
