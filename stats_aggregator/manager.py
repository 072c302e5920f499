"""
统计管理器

串联 解析 -> 存储合并 -> 告警评估，对外提供：
- report(raw) -> size
- snapshot_json() -> str

进程内只创建一个实例，由入口构造后显式传给 API 层。
"""

import logging
import time
from typing import Callable, List, Optional, Union

from . import payload
from .config import AppConfig
from .exceptions import SnapshotFormatError
from .models import ClientRecord, Snapshot
from .notifier import NotificationChannel, Notifier, build_channel
from .persistence import SnapshotPersistence, SqlitePersistence
from .store import MetricStore

logger = logging.getLogger(__name__)


def build_persistence(config: AppConfig) -> Optional[SnapshotPersistence]:
    """根据配置创建持久化实现（未启用时返回 None）"""
    if not config.persistence.enabled:
        return None
    return SqlitePersistence(config.persistence.path, keep=config.persistence.keep)


class StatsManager:
    """上报聚合的编排对象"""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        channel: Optional[NotificationChannel] = None,
        persistence: Optional[SnapshotPersistence] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or AppConfig()
        self._clock = clock
        self.store = MetricStore(clock=clock)

        notifier_config = self.config.notifier
        self.notifier = Notifier(
            rules=notifier_config.rules,
            channel=channel or build_channel(notifier_config),
            queue_size=notifier_config.queue_size,
            workers=notifier_config.workers,
            max_attempts=notifier_config.max_attempts,
            backoff_base=notifier_config.backoff_base,
            backoff_max=notifier_config.backoff_max,
            clock=clock,
        )
        self.persistence = persistence if persistence is not None else build_persistence(self.config)

    # =========================================================================
    # 生命周期
    # =========================================================================

    def start(self) -> None:
        """从持久化恢复并启动告警投递"""
        self.load()
        self.notifier.start()

    def stop(self) -> None:
        """投递剩余告警并落盘"""
        self.notifier.stop(drain=True)
        self.flush()

    # =========================================================================
    # 上报 / 查询
    # =========================================================================

    def report(self, raw: Union[bytes, str]) -> int:
        """
        处理一次上报

        Args:
            raw: 原始请求体

        Returns:
            请求体字节数

        Raises:
            InvalidPayload: 解析失败（存储不变）
        """
        if isinstance(raw, str):
            raw = raw.encode("utf-8")

        report = payload.parse(raw, now=self._clock())
        if report.dropped:
            logger.info(f"Client {report.client_id}: dropped unsupported metrics {list(report.dropped)}")

        record = self.store.merge(report)
        self._evaluate(record)
        return len(raw)

    def _evaluate(self, record: ClientRecord) -> None:
        # 告警失败不影响上报结果
        try:
            self.notifier.evaluate(record)
        except Exception as e:
            logger.error(f"Notifier evaluation failed for {record.client_id}: {e}", exc_info=True)

    def snapshot(self) -> Snapshot:
        if self.config.store.evict_on_snapshot:
            self.evict_stale()
        return self.store.snapshot()

    def snapshot_json(self) -> str:
        return self.snapshot().to_json()

    def evict_stale(self) -> List[str]:
        evicted = self.store.evict_stale(self.config.store.ttl_seconds)
        for client_id in evicted:
            self.notifier.forget(client_id)
        return evicted

    # =========================================================================
    # 持久化
    # =========================================================================

    def load(self) -> int:
        """
        从持久化快照恢复存储

        Returns:
            恢复的客户端数量（失败或未配置时为 0）
        """
        if self.persistence is None:
            return 0
        try:
            data = self.persistence.load()
            if data is None:
                logger.info("No persisted snapshot found, starting empty")
                return 0
            return self.store.reload(data)
        except SnapshotFormatError as e:
            logger.error(f"Persisted snapshot is corrupt, starting empty: {e}")
        except Exception as e:
            logger.error(f"Failed to load persisted snapshot: {e}", exc_info=True)
        return 0

    def flush(self) -> bool:
        """将当前快照写入持久化"""
        if self.persistence is None:
            return False
        try:
            snapshot = self.store.snapshot()
            self.persistence.save(snapshot.to_dict(include_sum=True))
        except Exception as e:
            logger.error(f"Failed to flush snapshot: {e}", exc_info=True)
            return False
        logger.info(f"Flushed snapshot with {len(snapshot)} clients")
        return True
