# -*- coding: utf-8 -*-
"""
geohub/storage.py
SQLite（aiosqlite）持久化：
- 首次使用时建表 + 抽样 + 建 classification_view（已存在的库只连接，不重建）
- 作者写入（主键冲突即视为已存在，不更新）
- 推文定位（坐标 -> 外接框中点 -> 丢弃）+ 国家解析 + 写入
- 所有写操作（作者、推文、重新抽样、关闭）串行化
- 训练 / 分类查询（独立的只读连接，不加锁）
表字段对齐 geohub.models：
author: id, name, lang, location, normalized_location, utc_offset, timezone
post:   id, lat, lon, country, author_id
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiosqlite
import pandas as pd

from geohub.geography import UNKNOWN_COUNTRY, CountryResolver, midpoint
from geohub.models import UTC_OFFSET_UNKNOWN, Author, GeoPoint, Post
from geohub.utils import normalize_location

logger = logging.getLogger(__name__)

# 分类时带上的未标注作者数量
CLASSIFICATION_LIMIT = 200

CLASSIFICATION_VIEW = "classification_view"

TRAINING_COLUMNS = ["lang", "location", "utc_offset", "timezone", "country"]
CLASSIFICATION_COLUMNS = ["id", "lang", "location", "utc_offset", "timezone", "country"]


class StorageError(Exception):
    """单条记录写入失败；调用方可以记日志后继续处理下一条。"""


class StorageInitError(StorageError):
    """打开/初始化数据库失败；进程不应继续运行。"""


# --------- 建表 SQL ---------
SCHEMA_AUTHOR = """
CREATE TABLE author (
    id                  INTEGER PRIMARY KEY NOT NULL,
    name                TEXT NOT NULL,
    lang                VARCHAR(10),
    location            TEXT,
    normalized_location VARCHAR(100),
    utc_offset          INTEGER,
    timezone            VARCHAR(50)
);
"""

SCHEMA_POST = """
CREATE TABLE post (
    id        INTEGER PRIMARY KEY NOT NULL,
    lat       REAL NOT NULL,
    lon       REAL NOT NULL,
    country   VARCHAR(50) NOT NULL,
    author_id INTEGER NOT NULL,
    FOREIGN KEY(author_id) REFERENCES author(id)
);
"""

SCHEMA_SAMPLE = """
CREATE TABLE unlabeled_sample (
    author_id INTEGER PRIMARY KEY NOT NULL,
    FOREIGN KEY(author_id) REFERENCES author(id)
);
"""

SCHEMA_IDX = """
CREATE INDEX idx_post_author ON post(author_id);
"""

# 抽样结果存成普通行：视图每次查询看到的都是同一批未标注作者
SCHEMA_VIEW = f"""
CREATE VIEW {CLASSIFICATION_VIEW} AS
SELECT author.id                  AS id,
       author.lang                AS lang,
       author.normalized_location AS location,
       author.utc_offset          AS utc_offset,
       author.timezone            AS timezone,
       NULL                       AS country
  FROM author
  JOIN unlabeled_sample ON unlabeled_sample.author_id = author.id
 WHERE author.id NOT IN (SELECT author_id FROM post)
UNION
SELECT author.id,
       author.lang,
       author.normalized_location,
       author.utc_offset,
       author.timezone,
       post.country
  FROM author
  JOIN post ON author.id = post.author_id;
"""

DRAW_SAMPLE = """
INSERT INTO unlabeled_sample(author_id)
SELECT id FROM author
 WHERE id NOT IN (SELECT author_id FROM post)
 ORDER BY RANDOM()
 LIMIT ?;
"""

TRAINING_QUERY = """
SELECT author.lang, author.normalized_location, author.utc_offset, author.timezone, post.country
  FROM author
  JOIN post ON author.id = post.author_id
 ORDER BY post.id;
"""

CLASSIFICATION_QUERY = f"""
SELECT id, lang, location, utc_offset, timezone, country
  FROM {CLASSIFICATION_VIEW}
 ORDER BY id, country;
"""

INSERT_AUTHOR = """
INSERT INTO author(id, name, lang, location, normalized_location, utc_offset, timezone)
VALUES(?,?,?,?,?,?,?);
"""

INSERT_POST = """
INSERT INTO post(id, lat, lon, country, author_id)
VALUES(?,?,?,?,?);
"""

REQUIRED_OBJECTS = {"author", "post", "unlabeled_sample", CLASSIFICATION_VIEW}


# --------- 小工具 ---------
def _is_duplicate(e: sqlite3.IntegrityError) -> bool:
    """主键/唯一约束冲突 = 重复投递；外键、NOT NULL 之类不算。"""
    name = getattr(e, "sqlite_errorname", "")
    if name:
        return name in ("SQLITE_CONSTRAINT_PRIMARYKEY", "SQLITE_CONSTRAINT_UNIQUE")
    return "UNIQUE constraint failed" in str(e)


def _remove_store_files(p: Path) -> None:
    for f in (p, p.with_name(p.name + "-wal"), p.with_name(p.name + "-shm")):
        try:
            f.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("[storage] could not remove half-initialized %s: %s", f, e)


def effective_point(post: Post) -> Optional[GeoPoint]:
    """
    推文的定位优先级：
    1) 自带 GPS 坐标
    2) place 的外接框：取第一个环的第一个点和最后一个环的最后一个点的中点
    3) 都没有 -> None（这条推文不入库）
    """
    if post.coordinates is not None:
        return post.coordinates

    rings = post.place.bounding_box if post.place is not None else None
    if rings and rings[0] and rings[-1]:
        return midpoint(rings[0][0], rings[-1][-1])

    return None


def author_row(author: Author) -> tuple:
    utc_offset = author.utc_offset
    if utc_offset == UTC_OFFSET_UNKNOWN:
        utc_offset = None
    return (
        author.id,
        author.name or "",
        author.lang,
        author.location,
        normalize_location(author.location),
        utc_offset,
        author.timezone,
    )


# --------- 写锁 ---------
class WriteLock:
    """
    可重入的 asyncio 锁：同一个 task 里嵌套 async with 不会死锁，
    不同 task 之间严格互斥。
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None
        self._depth = 0

    def locked(self) -> bool:
        return self._lock.locked()

    async def __aenter__(self) -> "WriteLock":
        task = asyncio.current_task()
        if self._owner is not None and self._owner is task:
            self._depth += 1
            return self
        await self._lock.acquire()
        self._owner = task
        self._depth = 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
            self._lock.release()


# --------- 存储 ---------
class Storage:
    """
    持有唯一的写连接（以及一个只读连接），open() 时获取，close() 时释放一次。
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        resolver: CountryResolver,
        classification_limit: int = CLASSIFICATION_LIMIT,
        register_unlocated_authors: bool = True,
    ):
        self.db_path = Path(db_path)
        self.resolver = resolver
        self.classification_limit = int(classification_limit)
        self.register_unlocated_authors = register_unlocated_authors
        self.lock = WriteLock()
        self._db: Optional[aiosqlite.Connection] = None
        self._read_db: Optional[aiosqlite.Connection] = None

    @classmethod
    async def open(
        cls,
        db_path: Union[str, Path],
        resolver: CountryResolver,
        classification_limit: int = CLASSIFICATION_LIMIT,
        register_unlocated_authors: bool = True,
    ) -> "Storage":
        storage = cls(db_path, resolver, classification_limit, register_unlocated_authors)
        await storage.connect()
        return storage

    @property
    def closed(self) -> bool:
        return self._db is None

    # --------- 初始化 ---------
    async def connect(self) -> None:
        """
        连接数据库。文件不存在时建表并抽样；已存在时只连接 + 检查表是否齐全。
        任何失败都抛 StorageInitError，新建到一半的文件会被删掉。
        """
        p = self.db_path
        exists = p.exists()
        db = None
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(str(p))
            await db.execute("PRAGMA journal_mode=WAL;")
            await db.execute("PRAGMA synchronous=NORMAL;")
            await db.execute("PRAGMA foreign_keys=ON;")
            logger.debug("[storage] database opened: %s", p)

            if exists:
                await self._check_schema(db)
            else:
                await self._init_schema(db)

            read_db = await aiosqlite.connect(p.resolve().as_uri() + "?mode=ro", uri=True)
        except (sqlite3.Error, OSError, StorageInitError) as e:
            if db is not None:
                try:
                    await db.close()
                except sqlite3.Error:
                    pass
            if not exists:
                _remove_store_files(p)
            logger.critical("[storage] error while connecting to / initializing %s: %s", p, e)
            if isinstance(e, StorageInitError):
                raise
            raise StorageInitError(f"cannot open store {p}: {e}") from e

        self._db = db
        self._read_db = read_db

    async def _init_schema(self, db: aiosqlite.Connection) -> None:
        for stmt in (SCHEMA_AUTHOR, SCHEMA_POST, SCHEMA_SAMPLE, SCHEMA_IDX):
            await db.execute(stmt)
        await db.execute(DRAW_SAMPLE, (self.classification_limit,))
        await db.execute(SCHEMA_VIEW)
        await db.commit()
        logger.info("[storage] schema created at %s (sample limit %d)", self.db_path, self.classification_limit)

    async def _check_schema(self, db: aiosqlite.Connection) -> None:
        async with db.execute(
            "SELECT name FROM sqlite_master WHERE type IN ('table', 'view');"
        ) as cur:
            names = {row[0] async for row in cur}
        missing = REQUIRED_OBJECTS - names
        if missing:
            raise StorageInitError(f"store {self.db_path} is missing {sorted(missing)}")

    def _writer(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("storage is closed")
        return self._db

    def _reader(self) -> aiosqlite.Connection:
        if self._read_db is None:
            raise StorageError("storage is closed")
        return self._read_db

    # --------- 作者 ---------
    async def insert_author(self, author: Author) -> bool:
        """
        写入作者；已存在则什么都不做（不更新）。
        返回 True 表示新写入，False 表示已存在。
        其它数据库错误记日志后以 StorageError 抛出。
        """
        row = author_row(author)
        async with self.lock:
            db = self._writer()
            try:
                await db.execute(INSERT_AUTHOR, row)
                await db.commit()
            except sqlite3.IntegrityError as e:
                await db.rollback()
                if _is_duplicate(e):
                    logger.debug("[storage] author %s - %s already exists", author.id, author.name)
                    return False
                logger.error("[storage] error while inserting author %s %s: %s", author.id, author.name, e)
                raise StorageError(f"author {author.id}: {e}") from e
            except (sqlite3.Error, OverflowError) as e:
                # 超出 64 位整数范围的 id / 偏移由驱动抛 OverflowError
                await db.rollback()
                logger.error("[storage] error while inserting author %s %s: %s", author.id, author.name, e)
                raise StorageError(f"author {author.id}: {e}") from e
        return True

    # --------- 推文 ---------
    async def ingest(self, post: Post) -> bool:
        """
        定位 -> 解析国家 -> 写作者 -> 写推文。
        返回 True 表示推文行已在库中（新写入或重复投递），
        False 表示没有任何位置信息、推文被丢弃（作者默认仍会登记）。
        作者写入失败时整条推文跳过，错误抛给调用方。
        """
        point = effective_point(post)
        if point is None:
            logger.debug("[storage] post %s has no location, dropped", post.id)
            # 作者照样登记：没有带位置推文的作者就是分类时的未标注样本
            if self.register_unlocated_authors:
                await self.insert_author(post.author)
            return False

        # 解析放在锁外面，锁内只有两次单行写入
        country = self.resolver.resolve(point.lon, point.lat)
        if country == UNKNOWN_COUNTRY:
            logger.warning(
                "[storage] post %s country is %s: (%s, %s)",
                post.id, UNKNOWN_COUNTRY, point.lat, point.lon,
            )
        logger.debug("[storage] post %s: %s", post.id, country)

        async with self.lock:
            try:
                await self.insert_author(post.author)
            except StorageError:
                logger.warning(
                    "[storage] skipping post %s because of error while inserting author %s",
                    post.id, post.author.id,
                )
                raise

            db = self._writer()
            try:
                await db.execute(INSERT_POST, (post.id, point.lat, point.lon, country, post.author.id))
                await db.commit()
            except sqlite3.IntegrityError as e:
                await db.rollback()
                if _is_duplicate(e):
                    logger.debug("[storage] post %s already exists", post.id)
                    return True
                logger.error("[storage] error while inserting post %s: %s", post.id, e)
                raise StorageError(f"post {post.id}: {e}") from e
            except (sqlite3.Error, OverflowError) as e:
                await db.rollback()
                logger.error("[storage] error while inserting post %s: %s", post.id, e)
                raise StorageError(f"post {post.id}: {e}") from e
        return True

    # --------- 抽样（管理操作） ---------
    async def resample_unlabeled(self, limit: Optional[int] = None) -> int:
        """
        重新抽取未标注作者样本。只在显式调用时发生，重新打开库不会触发。
        返回新样本的行数。
        """
        limit = self.classification_limit if limit is None else int(limit)
        async with self.lock:
            db = self._writer()
            try:
                await db.execute("DELETE FROM unlabeled_sample;")
                cur = await db.execute(DRAW_SAMPLE, (limit,))
                n = cur.rowcount
                await cur.close()
                await db.commit()
            except sqlite3.Error as e:
                await db.rollback()
                logger.error("[storage] error while resampling unlabeled authors: %s", e)
                raise StorageError(f"resample: {e}") from e
        logger.info("[storage] unlabeled sample redrawn: %d authors", n)
        return n

    # --------- 查询（不加锁） ---------
    async def _fetch(self, sql: str, columns: List[str]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        async with self._reader().execute(sql) as cur:
            async for row in cur:
                out.append(dict(zip(columns, row)))
        return out

    async def training_rows(self) -> List[Dict[str, Any]]:
        """所有已标注的 (作者特征, 国家) 行，列顺序见 TRAINING_COLUMNS。"""
        return await self._fetch(TRAINING_QUERY, TRAINING_COLUMNS)

    async def classification_rows(self) -> List[Dict[str, Any]]:
        """classification_view 全量：已标注行 + 固定样本的未标注行（country 为 None）。"""
        return await self._fetch(CLASSIFICATION_QUERY, CLASSIFICATION_COLUMNS)

    async def training_frame(self) -> pd.DataFrame:
        return _to_frame(await self.training_rows(), TRAINING_COLUMNS)

    async def classification_frame(self) -> pd.DataFrame:
        return _to_frame(await self.classification_rows(), CLASSIFICATION_COLUMNS)

    async def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for table in ("author", "post", "unlabeled_sample"):
            async with self._reader().execute(f"SELECT COUNT(*) FROM {table};") as cur:
                row = await cur.fetchone()
            out[table] = row[0]
        return out

    async def unlabeled_authors(self) -> int:
        """没有任何已入库推文的作者数，即可供抽样的未标注总体大小。"""
        async with self._reader().execute(
            "SELECT COUNT(*) FROM author WHERE id NOT IN (SELECT author_id FROM post);"
        ) as cur:
            row = await cur.fetchone()
        return row[0]

    # --------- 关闭 ---------
    async def close(self) -> None:
        """在写锁内关闭连接；重复调用什么都不做。"""
        async with self.lock:
            if self._db is None:
                logger.debug("[storage] already closed")
                return
            db, read_db = self._db, self._read_db
            self._db = None
            self._read_db = None
            try:
                if read_db is not None:
                    await read_db.close()
            finally:
                await db.close()
        logger.debug("[storage] closed %s", self.db_path)


def _to_frame(rows: List[Dict[str, Any]], columns: List[str]) -> pd.DataFrame:
    df = pd.DataFrame.from_records(rows, columns=columns)
    # 没有值的时区偏移保持为 <NA>，不要变成 0
    df["utc_offset"] = df["utc_offset"].astype("Int64")
    return df
