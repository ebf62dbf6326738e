"""
本地书库存储与同步。
以 SQLite 持久化书目，按 (locale, asin) 唯一，支持分页读取与子串搜索。
"""

from __future__ import annotations
import hashlib
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Final, Iterator, Optional

import httpx

from .api import AudibleClient
from .config import AppConfig
from .errors import InvalidInput, StorageError
from .models import LibraryItem
from .types import Account, Book, LibrarySyncResult


logger = logging.getLogger(__name__)

_BOOK_COLUMNS: Final[str] = (
    "asin, locale, title, subtitle, authors, narrators, runtime_minutes, "
    "purchase_date, release_date, cover_url, series, series_position, version"
)

_INSERT_BOOK: Final[str] = (
    f"INSERT OR REPLACE INTO books ({_BOOK_COLUMNS}, author_names, synced_at) "
    f"VALUES ({', '.join('?' * (_BOOK_COLUMNS.count(',') + 3))})"
)

# 购买日期倒序，缺失日期排在最后，同日期按 asin 升序
_ORDER_BY: Final[str] = "ORDER BY purchase_date IS NULL, purchase_date DESC, asin ASC"


class _ReadWriteLock:
    """多读单写锁，等待中的写者会阻止新读者进入。"""

    def __init__(self):
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


_locks: dict[str, _ReadWriteLock] = {}
_locks_guard = threading.Lock()


def _lock_for(path: Path) -> _ReadWriteLock:
    """同一路径的书库在进程内共享一把锁。"""
    key = str(path)
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = _ReadWriteLock()
        return lock


def _casefold(value: Optional[str]) -> str:
    return value.casefold() if value else ""


def compute_version(book: Book) -> str:
    """对规范化后的远端字段计算指纹，作为同步比较用的版本标记。"""
    payload = book.model_dump(exclude={"version", "locale"})
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


def book_from_item(item: LibraryItem, locale: str) -> Book:
    """将远端书库条目转换为 Book。"""
    series = item.primary_series
    book = Book(
        asin=item.asin,
        locale=locale,
        title=(item.title or "").strip(),
        subtitle=item.subtitle or None,
        authors=[a.name.strip() for a in item.authors or [] if a.name],
        narrators=[n.name.strip() for n in item.narrators or [] if n.name],
        runtime_minutes=item.runtime_length_min,
        purchase_date=item.purchase_date or None,
        release_date=item.release_date or None,
        cover_url=item.cover_url,
        series=series.title.strip() if series else None,
        series_position=(series.sequence or None) if series else None,
    )
    return book.model_copy(update={"version": compute_version(book)})


def _check_window(offset: object, limit: object) -> None:
    for name, value in (("offset", offset), ("limit", limit)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidInput(f"{name} must be an integer")
        if value < 0:
            raise InvalidInput(f"{name} must be non-negative")


class LibraryStore:
    """持久化书库。书目只由同步写入，读取方仅获得副本。"""

    _SCHEMA: Final[str] = """
    PRAGMA journal_mode=WAL;

    CREATE TABLE IF NOT EXISTS books (
        locale TEXT NOT NULL,
        asin TEXT NOT NULL,
        title TEXT NOT NULL,
        subtitle TEXT,
        authors TEXT NOT NULL,
        narrators TEXT NOT NULL,
        author_names TEXT NOT NULL,
        runtime_minutes INTEGER,
        purchase_date TEXT,
        release_date TEXT,
        cover_url TEXT,
        series TEXT,
        series_position TEXT,
        version TEXT NOT NULL,
        synced_at TEXT NOT NULL,
        PRIMARY KEY (locale, asin)
    );

    CREATE INDEX IF NOT EXISTS idx_books_order ON books (purchase_date DESC, asin ASC);

    CREATE TABLE IF NOT EXISTS sync_state (
        locale TEXT PRIMARY KEY,
        last_sync TEXT NOT NULL,
        total_items INTEGER NOT NULL
    );
    """

    # 早期书库缺少的列
    _ADDED_COLUMNS: Final[dict[str, str]] = {
        "series": "ALTER TABLE books ADD COLUMN series TEXT",
        "series_position": "ALTER TABLE books ADD COLUMN series_position TEXT",
    }

    def __init__(self, path: str, config: Optional[AppConfig] = None):
        if not isinstance(path, (str, Path)) or not str(path).strip():
            raise InvalidInput("Store path must be a non-empty string")
        self.path = Path(path).expanduser().absolute()
        self.config = config or AppConfig()
        self._lock = _lock_for(self.path)

    def _connect(self, create: bool = False) -> sqlite3.Connection:
        if not create and not self.path.is_file():
            raise StorageError(f"Library store not initialized at {self.path}")
        try:
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.config.library.busy_timeout_seconds,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open library store at {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.create_function("casefold", 1, _casefold, deterministic=True)
        return conn

    @contextmanager
    def _connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        conn = self._connect(create)
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Library store operation failed: {e}") from e
        finally:
            conn.close()

    def init(self) -> None:
        """打开或创建书库，可重复调用。"""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create directory for library store: {e.strerror or e}") from e
        if self.path.is_dir():
            raise StorageError(f"Library store path is a directory: {self.path}")

        with self._lock.write(), self._connection(create=True) as conn:
            conn.executescript(self._SCHEMA)
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(books)")}
            for column, statement in self._ADDED_COLUMNS.items():
                if column not in columns:
                    conn.execute(statement)
                    logger.info(f"[Library] Added column {column} to existing store")
        logger.info(f"[Library] Store ready at {self.path}")

    # ------------------------------------------------------------------
    # 同步
    # ------------------------------------------------------------------

    def sync(self, account: Account, client: Optional[httpx.Client] = None) -> LibrarySyncResult:
        """
        拉取远端全部分页后在单个事务内对账。

        本地缺失的条目计为新增，版本标记变化的条目计为更新；
        remove_missing 开启时，该地区本地存在但远端缺失的条目被删除。
        """
        self.init()

        with AudibleClient(account, config=self.config, client=client) as api:
            items = api.get_library()

        remote: dict[str, Book] = {}
        for item in items:
            book = book_from_item(item, account.locale)
            remote[book.asin] = book
        if len(remote) != len(items):
            logger.warning(f"[Library] Remote catalog returned {len(items) - len(remote)} duplicate entries")

        result = self._reconcile(account.locale, remote)
        logger.info(
            f"[Library] Sync complete locale={account.locale} total={result.total_items} "
            f"added={result.added} updated={result.updated} removed={result.removed}"
        )
        return result

    def _reconcile(self, locale: str, remote: dict[str, Book]) -> LibrarySyncResult:
        now = datetime.now(timezone.utc).isoformat()
        result = LibrarySyncResult(total_items=len(remote))

        with self._lock.write(), self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                existing = {
                    row["asin"]: row["version"]
                    for row in conn.execute("SELECT asin, version FROM books WHERE locale = ?", (locale,))
                }

                for asin, book in remote.items():
                    if asin not in existing:
                        result.added += 1
                    elif existing[asin] != book.version:
                        result.updated += 1
                    else:
                        continue
                    conn.execute(
                        _INSERT_BOOK,
                        _book_row(book) + ("\n".join(book.authors), now),
                    )

                if self.config.library.remove_missing:
                    missing = sorted(set(existing) - set(remote))
                    conn.executemany(
                        "DELETE FROM books WHERE locale = ? AND asin = ?",
                        [(locale, asin) for asin in missing],
                    )
                    result.removed = len(missing)

                conn.execute(
                    "INSERT OR REPLACE INTO sync_state (locale, last_sync, total_items) VALUES (?, ?, ?)",
                    (locale, now, len(remote)),
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

        return result

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    def get_books(self, offset: int = 0, limit: int = 50) -> tuple[list[Book], int]:
        """按稳定顺序返回一页书目与总数。"""
        _check_window(offset, limit)
        with self._lock.read(), self._connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            rows = conn.execute(
                f"SELECT {_BOOK_COLUMNS} FROM books {_ORDER_BY} LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_row_to_book(row) for row in rows], total

    def search(self, query: str) -> list[Book]:
        """
        在标题与作者中做不区分大小写的子串匹配。
        空查询或全空白查询返回空列表。
        """
        if not isinstance(query, str):
            raise InvalidInput("Search query must be a string")
        needle = query.strip().casefold()
        if not needle:
            return []

        with self._lock.read(), self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_BOOK_COLUMNS} FROM books "
                "WHERE instr(casefold(title), ?) > 0 OR instr(casefold(author_names), ?) > 0 "
                f"{_ORDER_BY}",
                (needle, needle),
            ).fetchall()
        return [_row_to_book(row) for row in rows]

    def get_book(self, asin: str, locale: Optional[str] = None) -> Optional[Book]:
        """按 ASIN 查找单本书。"""
        sql = f"SELECT {_BOOK_COLUMNS} FROM books WHERE asin = ?"
        params: tuple = (asin,)
        if locale:
            sql += " AND locale = ?"
            params += (locale.lower(),)
        with self._lock.read(), self._connection() as conn:
            row = conn.execute(f"{sql} {_ORDER_BY} LIMIT 1", params).fetchone()
        return _row_to_book(row) if row else None

    def last_sync(self, locale: str) -> Optional[str]:
        with self._lock.read(), self._connection() as conn:
            row = conn.execute("SELECT last_sync FROM sync_state WHERE locale = ?", (locale,)).fetchone()
        return row["last_sync"] if row else None


def _book_row(book: Book) -> tuple:
    return (
        book.asin,
        book.locale,
        book.title,
        book.subtitle,
        json.dumps(book.authors, ensure_ascii=False),
        json.dumps(book.narrators, ensure_ascii=False),
        book.runtime_minutes,
        book.purchase_date,
        book.release_date,
        book.cover_url,
        book.series,
        book.series_position,
        book.version,
    )


def _row_to_book(row: sqlite3.Row) -> Book:
    return Book(
        asin=row["asin"],
        locale=row["locale"],
        title=row["title"],
        subtitle=row["subtitle"],
        authors=json.loads(row["authors"]),
        narrators=json.loads(row["narrators"]),
        runtime_minutes=row["runtime_minutes"],
        purchase_date=row["purchase_date"],
        release_date=row["release_date"],
        cover_url=row["cover_url"],
        series=row["series"],
        series_position=row["series_position"],
        version=row["version"],
    )


def init_store(path: str, config: Optional[AppConfig] = None) -> LibraryStore:
    store = LibraryStore(path, config)
    store.init()
    return store


def sync(path: str, account: Account, config: Optional[AppConfig] = None,
         client: Optional[httpx.Client] = None) -> LibrarySyncResult:
    return LibraryStore(path, config).sync(account, client)


def get_books(path: str, offset: int, limit: int) -> tuple[list[Book], int]:
    return LibraryStore(path).get_books(offset, limit)


def search(path: str, query: str) -> list[Book]:
    return LibraryStore(path).search(query)
