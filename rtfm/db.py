"""记录存储模块

提供基于 SQLite 的结构化命令记录存储，以 (name, lang) 为主键。
每个操作使用独立连接和单个事务，可在多个线程中调用。
"""

import sqlite3
import time
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

from pydantic import TypeAdapter

from rtfm.config import settings
from rtfm.models import Example, StructuredRecord


_EXAMPLES_ADAPTER = TypeAdapter(List[Example])


class RecordStore(Protocol):
    """记录存储协作方接口"""

    def get(self, name: str, lang: str) -> Optional[StructuredRecord]: ...

    def put(self, record: StructuredRecord) -> None: ...

    def put_many(self, records: Iterable[StructuredRecord]) -> int: ...

    def delete(self, name: str, lang: str) -> bool: ...

    def list(self, lang: Optional[str] = None) -> List[StructuredRecord]: ...

    def count(self) -> int: ...

    def clear(self) -> None: ...


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """获取数据库连接

    创建并配置 SQLite 数据库连接，设置 row_factory 为 sqlite3.Row
    以支持字典式访问查询结果。

    Args:
        db_path: 数据库路径，默认使用配置中的 db_path

    Returns:
        sqlite3.Connection: 配置好的数据库连接对象
    """
    # 确保数据库目录存在
    db_path = Path(db_path or settings.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row

    return conn


def init_db(conn: Optional[sqlite3.Connection] = None) -> None:
    """初始化数据库表结构

    创建 commands 表用于存储结构化记录。如果表已存在则不会重复创建。

    Args:
        conn: 可选的数据库连接，如果不提供则创建新连接
    """
    should_close = False
    if conn is None:
        conn = get_connection()
        should_close = True

    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS commands (
                name TEXT NOT NULL,
                lang TEXT NOT NULL,
                description TEXT NOT NULL,
                category TEXT NOT NULL,
                platform TEXT NOT NULL,
                examples TEXT NOT NULL,
                content TEXT NOT NULL,
                updated_at REAL NOT NULL,
                PRIMARY KEY (name, lang)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_commands_lang ON commands (lang)
        """)

        conn.commit()
    finally:
        if should_close:
            conn.close()


def close_connection(conn: sqlite3.Connection) -> None:
    """关闭数据库连接"""
    if conn:
        conn.close()


def _row_to_record(row: sqlite3.Row) -> StructuredRecord:
    return StructuredRecord(
        name=row['name'],
        lang=row['lang'],
        description=row['description'],
        category=row['category'],
        platform=row['platform'],
        examples=_EXAMPLES_ADAPTER.validate_json(row['examples']),
        content=row['content'],
    )


_UPSERT_SQL = """
    INSERT INTO commands (name, lang, description, category, platform, examples, content, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(name, lang) DO UPDATE SET
        description = excluded.description,
        category = excluded.category,
        platform = excluded.platform,
        examples = excluded.examples,
        content = excluded.content,
        updated_at = excluded.updated_at
"""


def _record_params(record: StructuredRecord) -> tuple:
    return (
        record.name,
        record.lang,
        record.description,
        record.category,
        record.platform,
        _EXAMPLES_ADAPTER.dump_json(record.examples).decode('utf-8'),
        record.content,
        time.time(),
    )


class SqliteRecordStore:
    """SQLite 记录存储

    重复写入同一个 (name, lang) 会替换原有记录。
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or settings.db_path)
        conn = get_connection(self.db_path)
        try:
            init_db(conn)
        finally:
            close_connection(conn)

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    def get(self, name: str, lang: str) -> Optional[StructuredRecord]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM commands WHERE name = ? AND lang = ?",
                (name, lang),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return _row_to_record(row)
        finally:
            close_connection(conn)

    def put(self, record: StructuredRecord) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(_UPSERT_SQL, _record_params(record))
        finally:
            close_connection(conn)

    def put_many(self, records: Iterable[StructuredRecord]) -> int:
        """在一个事务中写入多条记录

        Returns:
            int: 写入的记录数
        """
        params = [_record_params(record) for record in records]
        if not params:
            return 0
        conn = self._connect()
        try:
            with conn:
                conn.executemany(_UPSERT_SQL, params)
        finally:
            close_connection(conn)
        return len(params)

    def delete(self, name: str, lang: str) -> bool:
        """删除记录

        Returns:
            bool: 记录存在并被删除时返回 True
        """
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute(
                    "DELETE FROM commands WHERE name = ? AND lang = ?",
                    (name, lang),
                )
            return cursor.rowcount > 0
        finally:
            close_connection(conn)

    def list(self, lang: Optional[str] = None) -> List[StructuredRecord]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            if lang is None:
                cursor.execute("SELECT * FROM commands ORDER BY name, lang")
            else:
                cursor.execute(
                    "SELECT * FROM commands WHERE lang = ? ORDER BY name",
                    (lang,),
                )
            return [_row_to_record(row) for row in cursor.fetchall()]
        finally:
            close_connection(conn)

    def count(self) -> int:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS total FROM commands")
            return cursor.fetchone()['total']
        finally:
            close_connection(conn)

    def clear(self) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM commands")
        finally:
            close_connection(conn)
