from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Generator, Optional

from .memory import PAGE_SIZE, Memory, page_spans

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Cols:
    pages: str = "pages"
    meta: str = "meta"
    page_no: str = "page_no"
    data: str = "data"
    key: str = "key"
    value: str = "value"


_COLS = _Cols()
_SIZE_KEY = "size_in_pages"


class SQLiteMemory(Memory):
    """
    Durable flat memory kept in a SQLite file.

    Each touched page is one BLOB row; the logical size lives in a meta
    table so that growth survives restarts even before pages are written.

    Outside transaction() every call commits on its own; inside it all
    calls share one connection and one SQLite transaction.
    """

    def __init__(self, db_path: str, max_pages: Optional[int] = None) -> None:
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._db_path = db_path
        self._max_pages = max_pages
        self._tx: Optional[sqlite3.Connection] = None
        self._init_db()
        self._size = self._load_size()
        logger.info("SQLiteMemory ready db=%s pages=%s", self._db_path, self._size)

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        if self._tx is not None:
            yield
            return
        conn = sqlite3.connect(self._db_path, timeout=30.0, isolation_level=None)
        size = self._size
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._tx = conn
            try:
                yield
                conn.execute("COMMIT")
            except BaseException:
                self._size = size
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.warning("SQLiteMemory transaction rolled back db=%s", self._db_path)
                raise
        finally:
            self._tx = None
            conn.close()

    @contextmanager
    def _conn(self) -> Generator[sqlite3.Connection, None, None]:
        if self._tx is not None:
            yield self._tx
            return
        conn = sqlite3.connect(self._db_path, timeout=30.0)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_COLS.pages} (
                    {_COLS.page_no} INTEGER PRIMARY KEY,
                    {_COLS.data} BLOB NOT NULL
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_COLS.meta} (
                    {_COLS.key} TEXT PRIMARY KEY,
                    {_COLS.value} INTEGER NOT NULL
                )
                """
            )

    def _load_size(self) -> int:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT {_COLS.value} FROM {_COLS.meta} WHERE {_COLS.key} = ?", (_SIZE_KEY,)
            ).fetchone()
            return int(row[0]) if row else 0

    def _fetch_pages(self, conn: sqlite3.Connection, first: int, last: int) -> Dict[int, bytes]:
        rows = conn.execute(
            f"SELECT {_COLS.page_no}, {_COLS.data} FROM {_COLS.pages} "
            f"WHERE {_COLS.page_no} BETWEEN ? AND ?",
            (first, last),
        ).fetchall()
        return {int(no): bytes(data) for no, data in rows}

    def size(self) -> int:
        return self._size

    def grow(self, pages: int) -> int:
        if self._max_pages is not None and self._size + pages > self._max_pages:
            return -1
        previous = self._size
        with self._conn() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {_COLS.meta} ({_COLS.key}, {_COLS.value}) VALUES (?, ?)",
                (_SIZE_KEY, previous + pages),
            )
        self._size = previous + pages
        return previous

    def read(self, offset: int, length: int) -> bytes:
        self._check_bounds(offset, length)
        if length == 0:
            return b""
        spans = list(page_spans(offset, length))
        with self._conn() as conn:
            pages = self._fetch_pages(conn, spans[0][0], spans[-1][0])
        out = bytearray()
        for page_no, start, end in spans:
            page = pages.get(page_no)
            out += page[start:end] if page is not None else bytes(end - start)
        return bytes(out)

    def write(self, offset: int, data: bytes) -> None:
        self._check_bounds(offset, len(data))
        if not data:
            return
        spans = list(page_spans(offset, len(data)))
        with self._conn() as conn:
            pages = self._fetch_pages(conn, spans[0][0], spans[-1][0])
            pos = 0
            for page_no, start, end in spans:
                page = bytearray(pages.get(page_no) or bytes(PAGE_SIZE))
                page[start:end] = data[pos:pos + end - start]
                pos += end - start
                conn.execute(
                    f"INSERT OR REPLACE INTO {_COLS.pages} ({_COLS.page_no}, {_COLS.data}) VALUES (?, ?)",
                    (page_no, bytes(page)),
                )
