"""
测试公共夹具
"""

import sys
import threading
from pathlib import Path

import pytest

# 添加项目路径到 sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from stats_aggregator.exceptions import NotifierDispatchError
from stats_aggregator.notifier import NotificationChannel
from stats_aggregator.persistence import SnapshotPersistence


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float):
        with self._lock:
            self.now += seconds


class RecordingChannel(NotificationChannel):
    """记录投递内容；前 fail_times 次投递抛出 NotifierDispatchError"""

    name = "recording"

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.attempts = 0
        self.payloads = []
        self.closed = False
        self._lock = threading.Lock()

    def send(self, payload):
        with self._lock:
            self.attempts += 1
            if self.attempts <= self.fail_times:
                raise NotifierDispatchError("channel unavailable")
            self.payloads.append(payload)

    def close(self):
        self.closed = True


class MemoryPersistence(SnapshotPersistence):
    """内存持久化；fail=True 时读写都抛出 OSError"""

    def __init__(self, data=None, fail=False):
        self.data = data
        self.fail = fail
        self.saved = []

    def load(self):
        if self.fail:
            raise OSError("disk unavailable")
        return self.data

    def save(self, data):
        if self.fail:
            raise OSError("disk unavailable")
        self.saved.append(data)
        self.data = data


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return RecordingChannel()
