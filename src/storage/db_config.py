import os
from pathlib import Path

import aiosqlite

from logger import logger

_SQL_DIR = Path(__file__).with_name("sql")
SCHEMA_VERSION = 1


async def init_db(db_path: str) -> aiosqlite.Connection:
    """打开数据库连接并按 user_version 执行建表/升级脚本

    db_path 为 ":memory:" 时使用内存数据库 (测试用)。
    """
    if db_path != ":memory:":
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    await conn.execute("PRAGMA foreign_keys = ON")
    if db_path != ":memory:":
        await conn.execute("PRAGMA journal_mode = WAL")

    async with conn.execute("PRAGMA user_version") as cursor:
        row = await cursor.fetchone()
        user_version = row[0]

    if user_version == 0:
        init_sql = (_SQL_DIR / "db_init_v1.sql").read_text(encoding="utf-8")
        await conn.executescript(init_sql)
        await conn.execute("PRAGMA user_version = 1")
        logger.info(f"数据库已初始化: {db_path}, schema v1")

    # 数据库升级逻辑可以在这里继续添加
    await conn.commit()
    return conn


__all__ = ["init_db", "SCHEMA_VERSION"]
