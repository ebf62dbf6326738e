"""
输出路径命名测试
"""

import sys
from pathlib import Path

import pytest

# 将项目根目录加入路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from audible_sync.core.config import AppConfig, PathConfig
from audible_sync.core.errors import InvalidInput
from audible_sync.core.types import Book
from audible_sync.core.utils import get_book_path, get_valid_dir_name, get_valid_filename


def make_book(**overrides) -> Book:
    fields = {
        "asin": "B000000001",
        "locale": "us",
        "title": "We Are Legion (We Are Bob)",
        "authors": ["Dennis E. Taylor"],
        "narrators": ["Ray Porter"],
        "series": "Bobiverse",
        "series_position": "1",
        "release_date": "2016-09-20",
    }
    fields.update(overrides)
    return Book(**fields)


class TestNamingPatterns:
    """三种命名模式测试"""

    def test_flat(self):
        path = get_book_path(make_book(), PathConfig(naming_pattern="flat"))
        assert path == Path("We Are Legion (We Are Bob).m4b")

    def test_author_book(self):
        path = get_book_path(make_book(), PathConfig(naming_pattern="author_book"))
        assert path == Path("Dennis E. Taylor", "We Are Legion (We Are Bob)", "We Are Legion (We Are Bob).m4b")

    def test_author_series_book(self):
        path = get_book_path(make_book(), PathConfig(naming_pattern="author_series_book"), "aax")
        assert path == Path("Dennis E. Taylor", "Bobiverse", "1 - We Are Legion (We Are Bob).aax")

    def test_series_pattern_without_series(self):
        """测试无系列的书目退回作者/书名目录"""
        book = make_book(title="The Martian", authors=["Andy Weir"], series=None, series_position=None)
        path = get_book_path(book, PathConfig(naming_pattern="author_series_book"))
        assert path == Path("Andy Weir", "The Martian", "The Martian.m4b")

    def test_series_without_position(self):
        """测试缺少系列序号时去掉多余的连接符"""
        book = make_book(series_position=None)
        path = get_book_path(book, PathConfig(naming_pattern="author_series_book"))
        assert path.name == "We Are Legion (We Are Bob).m4b"

    def test_missing_author(self):
        path = get_book_path(make_book(authors=[]), PathConfig(naming_pattern="author_book"))
        assert path.parts[0] == "Unknown Author"

    def test_custom_template(self):
        """测试自定义模板字段"""
        config = PathConfig(naming_pattern="flat", flat_format="{year} - {title} [{asin}]")
        path = get_book_path(make_book(title="Outland"), config)
        assert path == Path("2016 - Outland [B000000001].m4b")

    def test_unknown_pattern(self):
        with pytest.raises(InvalidInput):
            get_book_path(make_book(), PathConfig(naming_pattern="by_genre"))

    def test_unknown_placeholder(self):
        """测试模板包含未知字段"""
        with pytest.raises(InvalidInput):
            get_book_path(make_book(), PathConfig(naming_pattern="flat", flat_format="{publisher}"))


class TestSanitizing:
    """路径清理测试"""

    def test_colon_and_slash_in_title(self):
        """测试标题中的冒号与斜杠不会产生目录"""
        book = make_book(title="Cirque: A Tale/Of Two Rings", series=None)
        path = get_book_path(book, PathConfig(naming_pattern="flat"))
        assert path == Path("Cirque A TaleOf Two Rings.m4b")

    def test_no_parent_traversal(self):
        """测试书名中的点不会生成上级目录或隐藏文件"""
        book = make_book(title="../../etc/passwd", authors=["..hidden"])
        path = get_book_path(book, PathConfig(naming_pattern="author_book"))
        assert path == Path("hidden", "etcpasswd", "etcpasswd.m4b")
        assert not path.is_absolute()
        assert ".." not in path.parts
        assert all(not part.startswith(".") for part in path.parts)

    def test_empty_result(self):
        with pytest.raises(InvalidInput):
            get_book_path(make_book(title="..."), PathConfig(naming_pattern="flat"))

    def test_long_component_is_truncated(self):
        path = get_book_path(make_book(title="A" * 300), PathConfig(naming_pattern="flat"))
        assert len(path.stem) == 120

    def test_helpers(self):
        assert get_valid_filename('a<b>c:"d|e?*') == "abcde"
        assert get_valid_filename("tab\there  and   spaces") == "tabhere and spaces"
        assert get_valid_dir_name("Vol. 2...") == "Vol. 2"


class TestPathConfig:
    """命名配置测试"""

    def test_from_dict(self):
        config = AppConfig.from_dict({"path_config": {"naming_pattern": "flat", "download_dir": "/books"}})
        assert config.path.naming_pattern == "flat"
        assert config.path.download_dir == "/books"
        assert config.path.flat_format == "{title}"

    def test_unknown_pattern_falls_back(self):
        config = AppConfig.from_dict({"path_config": {"naming_pattern": "nonsense"}})
        assert config.path.naming_pattern == "author_book"
