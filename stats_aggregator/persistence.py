"""
快照持久化

核心只依赖 SnapshotPersistence 接口；启动加载与定期落盘使用同一份快照格式，
保证可以对称恢复。默认实现基于 SQLite。
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import SnapshotFormatError
from .models import format_ts

logger = logging.getLogger(__name__)


class SnapshotPersistence:
    """持久化接口"""

    def load(self) -> Optional[Dict[str, Any]]:
        """读取最近一次保存的快照，没有时返回 None"""
        raise NotImplementedError

    def save(self, data: Dict[str, Any]) -> None:
        """保存快照"""
        raise NotImplementedError


class SqlitePersistence(SnapshotPersistence):
    """SQLite 快照存储（保留最近 keep 份）"""

    def __init__(self, db_path: str, keep: int = 5):
        """
        Args:
            db_path: 数据库文件路径
            keep: 保留的快照份数
        """
        self.db_path = Path(db_path)
        self.keep = max(1, keep)

        # 确保目录存在
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def get_conn(self):
        """
        获取数据库连接（上下文管理器）

        使用方式：
            with persistence.get_conn() as conn:
                cursor = conn.execute("SELECT ...")
        """
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self):
        with self.get_conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    taken_at TEXT NOT NULL,
                    client_count INTEGER NOT NULL,
                    body TEXT NOT NULL
                );
            """)

    def save(self, data: Dict[str, Any]) -> None:
        body = json.dumps(data, ensure_ascii=False)
        taken_at = format_ts(time.time())
        with self.get_conn() as conn:
            conn.execute(
                "INSERT INTO snapshots (taken_at, client_count, body) VALUES (?, ?, ?)",
                (taken_at, len(data), body)
            )
            # 只保留最近 keep 份
            conn.execute("""
                DELETE FROM snapshots
                WHERE id NOT IN (SELECT id FROM snapshots ORDER BY id DESC LIMIT ?)
            """, (self.keep,))
        logger.debug(f"Saved snapshot with {len(data)} clients to {self.db_path}")

    def load(self) -> Optional[Dict[str, Any]]:
        with self.get_conn() as conn:
            row = conn.execute(
                "SELECT id, taken_at, body FROM snapshots ORDER BY id DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        try:
            data = json.loads(row["body"])
        except json.JSONDecodeError as e:
            raise SnapshotFormatError(f"Snapshot {row['id']} is not valid JSON: {e}") from e
        logger.info(f"Loaded snapshot {row['id']} taken at {row['taken_at']}")
        return data

    def count(self) -> int:
        """已保存的快照份数"""
        with self.get_conn() as conn:
            return conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0]
