"""
单元测试：SQLite 快照持久化
"""

import pytest

from stats_aggregator.exceptions import SnapshotFormatError
from stats_aggregator.persistence import SqlitePersistence


@pytest.fixture
def persistence(tmp_path):
    """创建临时快照库"""
    return SqlitePersistence(str(tmp_path / "data" / "stats.db"), keep=3)


def test_empty_returns_none(persistence):
    """测试：没有快照时返回 None"""
    assert persistence.load() is None
    assert persistence.count() == 0


def test_save_and_load_latest(persistence):
    """测试：读取最近一次保存的快照"""
    persistence.save({"dev-1": {"cpu": {"last": 1, "count": 1, "min": 1, "max": 1, "sum": 1}}})
    persistence.save({"dev-2": {"state": {"last": "正常", "count": 2}}})

    assert persistence.load() == {"dev-2": {"state": {"last": "正常", "count": 2}}}


def test_keeps_only_recent(persistence):
    """测试：只保留最近 keep 份"""
    for i in range(10):
        persistence.save({f"dev-{i}": {}})

    assert persistence.count() == 3
    assert persistence.load() == {"dev-9": {}}


def test_creates_parent_directory(tmp_path):
    """测试：自动创建目录"""
    path = tmp_path / "a" / "b" / "stats.db"
    SqlitePersistence(str(path))

    assert path.exists()


def test_corrupt_body(persistence):
    """测试：快照内容损坏时报 SnapshotFormatError"""
    with persistence.get_conn() as conn:
        conn.execute(
            "INSERT INTO snapshots (taken_at, client_count, body) VALUES (?, ?, ?)",
            ("2026-01-20T10:00:00Z", 0, "{broken"),
        )

    with pytest.raises(SnapshotFormatError):
        persistence.load()
