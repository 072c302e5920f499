"""
单元测试：统计管理器

测试覆盖：
- report 返回字节数、非法上报不修改存储
- 告警评估异常不影响上报
- 快照 JSON 与打开时清理
- 持久化加载 / 落盘
"""

import json

import pytest

from stats_aggregator.config import AppConfig
from stats_aggregator.exceptions import InvalidPayload, StoreConcurrencyViolation
from stats_aggregator.manager import StatsManager
from stats_aggregator.persistence import SqlitePersistence

from conftest import MemoryPersistence


def _config(**overrides) -> AppConfig:
    data = {
        "notifier": {
            "rules": [{"metric": "cpu", "comparator": ">", "threshold": 90, "cooldown": 60}],
            "backoff_base": 0,
            "backoff_max": 0,
        },
        "store": {"ttl_seconds": 300},
    }
    data.update(overrides)
    return AppConfig(**data)


@pytest.fixture
def manager(channel, clock):
    m = StatsManager(_config(), channel=channel, clock=clock)
    m.start()
    yield m
    m.stop()


class TestReport:
    """上报"""

    def test_returns_size(self, manager):
        """测试：返回请求体字节数"""
        body = b'{"client_id": "dev-1", "ts": 1000, "cpu": 87.5}'

        assert manager.report(body) == len(body)

    def test_str_body_size_in_bytes(self, manager):
        """测试：字符串请求体按 UTF-8 字节计算大小"""
        body = '{"client_id": "设备-1", "state": "正常"}'

        assert manager.report(body) == len(body.encode("utf-8"))

    def test_concrete_scenario(self, manager):
        """测试：两次上报后快照结果"""
        manager.report(b'{"client_id":"dev-1","ts":1000,"cpu":87.5}')
        manager.report(b'{"client_id":"dev-1","ts":2000,"cpu":92.0}')

        data = json.loads(manager.snapshot_json())
        assert data == {"dev-1": {"cpu": {"last": 92.0, "count": 2, "min": 87.5, "max": 92.0}}}

    def test_invalid_payload_leaves_store_unchanged(self, manager):
        """测试：非法上报抛出 InvalidPayload 且快照不变"""
        manager.report(b'{"client_id": "dev-1", "cpu": 10}')
        before = manager.snapshot_json()

        with pytest.raises(InvalidPayload):
            manager.report(b"{not json")
        with pytest.raises(InvalidPayload):
            manager.report(b'{"cpu": 99}')

        assert manager.snapshot_json() == before

    def test_partial_report_merged(self, manager):
        """测试：不支持的指标被丢弃，其余正常合并"""
        manager.report(b'{"client_id": "dev-1", "cpu": 10, "disks": [1, 2]}')

        data = json.loads(manager.snapshot_json())
        assert list(data["dev-1"]) == ["cpu"]

    def test_out_of_range_integer_then_float(self, manager):
        """测试：超大整数上报后再上报浮点值，两次都成功且记录完整"""
        manager.report(b'{"client_id": "c", "m": 1' + b"0" * 400 + b"}")

        assert manager.report(b'{"client_id": "c", "m": 1.5}') > 0
        data = json.loads(manager.snapshot_json())
        assert data["c"]["m"] == {"last": 1.5, "count": 1, "min": 1.5, "max": 1.5}

    def test_notification_fired(self, manager, channel):
        """测试：重复超过阈值 10 次只通知一次，冷却后再次通知"""
        for _ in range(10):
            manager.report(b'{"client_id": "dev-1", "cpu": 95}')
        manager.notifier.join()

        assert len(channel.payloads) == 1

        manager._clock.advance(61)
        manager.report(b'{"client_id": "dev-1", "cpu": 96}')
        manager.notifier.join()

        assert len(channel.payloads) == 2

    def test_notifier_error_not_propagated(self, manager, monkeypatch):
        """测试：告警评估异常不影响上报"""
        def _boom(record):
            raise RuntimeError("rule engine exploded")

        monkeypatch.setattr(manager.notifier, "evaluate", _boom)

        assert manager.report(b'{"client_id": "dev-1", "cpu": 95}') > 0
        assert "dev-1" in manager.snapshot()

    def test_store_violation_is_fatal(self, manager, monkeypatch):
        """测试：存储不变量破坏直接抛出"""
        def _broken(report):
            raise StoreConcurrencyViolation("lock state corrupted")

        monkeypatch.setattr(manager.store, "merge", _broken)

        with pytest.raises(StoreConcurrencyViolation):
            manager.report(b'{"client_id": "dev-1", "cpu": 1}')


class TestEviction:
    """过期清理"""

    def test_evicted_before_snapshot(self, manager, clock):
        """测试：超过 TTL 的客户端不出现在下一次快照中"""
        manager.report(b'{"client_id": "old", "cpu": 1}')
        clock.advance(400)
        manager.report(b'{"client_id": "new", "cpu": 1}')

        data = json.loads(manager.snapshot_json())
        assert list(data) == ["new"]

        manager.report(b'{"client_id": "old", "cpu": 5}')
        data = json.loads(manager.snapshot_json())
        assert data["old"]["cpu"]["count"] == 1

    def test_no_eviction_on_snapshot_when_disabled(self, channel, clock):
        """测试：关闭 evict_on_snapshot 后快照不触发清理"""
        m = StatsManager(
            _config(store={"ttl_seconds": 10, "evict_on_snapshot": False}),
            channel=channel,
            clock=clock,
        )
        m.report(b'{"client_id": "old", "cpu": 1}')
        clock.advance(100)

        assert "old" in m.snapshot()
        assert m.evict_stale() == ["old"]


class TestPersistence:
    """持久化"""

    def test_flush_and_load(self, channel, clock):
        """测试：落盘后新实例可以恢复"""
        storage = MemoryPersistence()
        first = StatsManager(_config(), channel=channel, persistence=storage, clock=clock)
        first.report(b'{"client_id": "dev-1", "cpu": 10}')
        first.report(b'{"client_id": "dev-1", "cpu": 30}')

        assert first.flush() is True
        assert storage.saved[-1]["dev-1"]["cpu"]["sum"] == 40

        second = StatsManager(_config(), channel=channel, persistence=storage, clock=clock)
        assert second.load() == 1
        assert second.snapshot_json() == first.snapshot_json()

    def test_stop_flushes(self, channel, clock):
        """测试：停止时落盘"""
        storage = MemoryPersistence()
        m = StatsManager(_config(), channel=channel, persistence=storage, clock=clock)
        m.start()
        m.report(b'{"client_id": "dev-1", "cpu": 10}')
        m.stop()

        assert "dev-1" in storage.saved[-1]

    def test_persistence_errors_absorbed(self, channel, clock):
        """测试：持久化失败只记录日志"""
        storage = MemoryPersistence(fail=True)
        m = StatsManager(_config(), channel=channel, persistence=storage, clock=clock)

        assert m.load() == 0
        assert m.flush() is False

    def test_corrupt_snapshot_starts_empty(self, channel, clock):
        """测试：快照损坏时以空存储启动"""
        storage = MemoryPersistence(data=["not", "a", "snapshot"])
        m = StatsManager(_config(), channel=channel, persistence=storage, clock=clock)

        assert m.load() == 0
        assert len(m.store) == 0

    def test_sqlite_from_config(self, tmp_path, channel, clock):
        """测试：配置启用持久化时使用 SQLite"""
        config = _config(persistence={"enabled": True, "path": str(tmp_path / "stats.db")})
        m = StatsManager(config, channel=channel, clock=clock)

        assert isinstance(m.persistence, SqlitePersistence)
        m.report(b'{"client_id": "dev-1", "up": true}')
        assert m.flush() is True

        restored = StatsManager(config, channel=channel, clock=clock)
        assert restored.load() == 1
        assert json.loads(restored.snapshot_json()) == {"dev-1": {"up": {"last": True, "count": 1}}}

    def test_no_persistence(self, manager):
        """测试：未配置持久化时 flush/load 为空操作"""
        assert manager.persistence is None
        assert manager.flush() is False
        assert manager.load() == 0
