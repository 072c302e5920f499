"""
指标存储

按客户端维护聚合记录：
- merge: 合并一次上报（同一客户端串行，不同客户端互不阻塞）
- snapshot: 逐条加锁拷贝，生成时间点快照
- evict_stale: 清理超过 TTL 未上报的客户端
- reload: 从持久化快照恢复

锁约定：
- _registry_lock 只保护字典成员关系，持有时间仅为一次查找/插入/删除
- 每个客户端一把锁，保护该记录的原地修改
- 可以在持有客户端锁时获取 _registry_lock（清理），反之不允许
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Union

from .exceptions import StoreConcurrencyViolation
from .models import ClientRecord, MetricAggregate, Report, Snapshot, records_from_dict

logger = logging.getLogger(__name__)


class _Slot:
    """单个客户端的存储槽（锁 + 记录）"""

    __slots__ = ("lock", "record", "evicted")

    def __init__(self, record: Optional[ClientRecord] = None):
        self.lock = threading.Lock()
        # 首次合并完成前为 None，读方跳过
        self.record = record
        # 已被清理的槽不可再写入，合并方需要重新获取
        self.evicted = False


class MetricStore:
    """线程安全的客户端聚合存储"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._slots: Dict[str, _Slot] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.client_ids())

    def client_ids(self) -> List[str]:
        with self._registry_lock:
            slots = list(self._slots.items())
        return sorted(cid for cid, slot in slots if slot.record is not None and not slot.evicted)

    def get(self, client_id: str) -> Optional[ClientRecord]:
        """获取单个客户端记录的拷贝"""
        with self._registry_lock:
            slot = self._slots.get(client_id)
        if slot is None:
            return None
        with slot.lock:
            if slot.evicted or slot.record is None:
                return None
            return slot.record.copy()

    def _acquire_slot(self, client_id: str) -> _Slot:
        with self._registry_lock:
            slot = self._slots.get(client_id)
            if slot is None:
                slot = _Slot()
                self._slots[client_id] = slot
            return slot

    # =========================================================================
    # 写入
    # =========================================================================

    def merge(self, report: Report) -> ClientRecord:
        """
        合并一次上报

        Returns:
            合并后的记录拷贝

        Raises:
            StoreConcurrencyViolation: 内部不变量被破坏
        """
        while True:
            slot = self._acquire_slot(report.client_id)
            with slot.lock:
                if slot.evicted:
                    # 与清理并发，槽已失效，重新创建
                    continue
                if slot.record is None:
                    slot.record = ClientRecord(client_id=report.client_id)
                record = slot.record
                if record.client_id != report.client_id:
                    raise StoreConcurrencyViolation(
                        f"Slot for {report.client_id} holds record of {record.client_id}"
                    )
                self._apply(record, report)
                return record.copy()

    def _apply(self, record: ClientRecord, report: Report) -> None:
        if record.last_seen is not None and report.timestamp < record.last_seen:
            logger.warning(
                f"Out-of-order report from {report.client_id}: "
                f"ts={report.timestamp} < last_seen={record.last_seen}"
            )

        for name, value in report.metrics.items():
            agg = record.metrics.get(name)
            if agg is None:
                record.metrics[name] = MetricAggregate.start(value)
                continue
            if agg.kind is not value.kind:
                logger.warning(
                    f"Metric {name} of {report.client_id} changed type "
                    f"{agg.kind.value} -> {value.kind.value}, restarting aggregate"
                )
                record.metrics[name] = MetricAggregate.start(value)
                continue
            agg.update(value)
            agg.check(name)

        if record.last_seen is None or report.timestamp > record.last_seen:
            record.last_seen = report.timestamp
        record.updated_at = self._clock()

    # =========================================================================
    # 读取
    # =========================================================================

    def snapshot(self) -> Snapshot:
        """生成全量快照（逐条加锁拷贝，不阻塞其他客户端写入）"""
        with self._registry_lock:
            slots = list(self._slots.items())

        records: Dict[str, ClientRecord] = {}
        for client_id, slot in slots:
            with slot.lock:
                if slot.evicted or slot.record is None:
                    continue
                records[client_id] = slot.record.copy()
        return Snapshot(records, taken_at=self._clock())

    # =========================================================================
    # 清理与恢复
    # =========================================================================

    def evict_stale(self, ttl: float, now: Optional[float] = None) -> List[str]:
        """
        清理超过 TTL 未上报的客户端

        Args:
            ttl: 过期时间（秒），<= 0 时不清理
            now: 当前时间（缺省使用存储时钟）

        Returns:
            被清理的客户端 ID 列表
        """
        if ttl <= 0:
            return []
        cutoff = (now if now is not None else self._clock()) - ttl

        with self._registry_lock:
            candidates = list(self._slots.items())

        evicted = []
        for client_id, slot in candidates:
            with slot.lock:
                if slot.evicted or slot.record is None or slot.record.updated_at >= cutoff:
                    continue
                slot.evicted = True
                with self._registry_lock:
                    if self._slots.get(client_id) is slot:
                        del self._slots[client_id]
                evicted.append(client_id)

        if evicted:
            logger.info(f"Evicted {len(evicted)} stale clients (ttl={ttl}s): {', '.join(evicted)}")
        return evicted

    def reload(self, snapshot: Union[Snapshot, dict]) -> int:
        """
        从快照恢复记录（同 ID 记录被替换）

        Returns:
            恢复的客户端数量

        Raises:
            SnapshotFormatError: 快照结构错误
        """
        data = snapshot.to_dict(include_sum=True) if isinstance(snapshot, Snapshot) else snapshot
        records = records_from_dict(data, updated_at=self._clock())

        for record in records:
            while True:
                slot = self._acquire_slot(record.client_id)
                with slot.lock:
                    if slot.evicted:
                        continue
                    slot.record = record
                    break

        logger.info(f"Reloaded {len(records)} clients from snapshot")
        return len(records)
