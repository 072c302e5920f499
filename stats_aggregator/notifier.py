"""
告警通知

- evaluate: 在上报路径上评估规则、检查冷却时间，触发的事件放入有界队列后立即返回
- 工作线程从队列取事件投递到外部渠道（Webhook / 日志）
- 投递失败按指数退避重试，超过次数后丢弃并记录日志，不影响上报
"""

import logging
import queue
import random
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import httpx

from .exceptions import NotifierDispatchError
from .models import ClientRecord, MetricValue, NotificationEvent, NotificationRule

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_NUM_WORKERS = 1


# =============================================================================
# 通知渠道
# =============================================================================

class NotificationChannel:
    """通知渠道基类"""

    name = "base"

    def send(self, payload: Dict[str, Any]) -> None:
        """
        投递一条通知

        Raises:
            NotifierDispatchError: 投递失败
        """
        raise NotImplementedError

    def close(self) -> None:
        pass


class LogChannel(NotificationChannel):
    """仅写日志（未配置 Webhook 时使用）"""

    name = "log"

    def send(self, payload: Dict[str, Any]) -> None:
        logger.warning(
            f"ALERT client={payload['client_id']} {payload['metric_name']}="
            f"{payload['observed_value']} (threshold {payload['threshold']}) at {payload['fired_at']}"
        )


class WebhookChannel(NotificationChannel):
    """HTTP Webhook（POST JSON）"""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout, headers=headers or {})

    def send(self, payload: Dict[str, Any]) -> None:
        try:
            response = self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotifierDispatchError(f"Webhook {self.url} failed: {e}") from e

    def close(self) -> None:
        self._client.close()


def build_channel(config) -> NotificationChannel:
    """根据 NotifierConfig 创建渠道"""
    webhook = config.webhook
    if webhook is not None and webhook.url:
        logger.info(f"Notifications will be delivered to webhook {webhook.url}")
        return WebhookChannel(webhook.url, timeout=webhook.timeout, headers=webhook.headers)
    return LogChannel()


# =============================================================================
# 通知器
# =============================================================================

class Notifier:
    """规则评估 + 异步投递"""

    def __init__(
        self,
        rules: Iterable[NotificationRule],
        channel: NotificationChannel,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        workers: int = DEFAULT_NUM_WORKERS,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.rules: Tuple[NotificationRule, ...] = tuple(rules)
        self.channel = channel
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self._num_workers = max(1, workers)

        self._queue: "queue.Queue[NotificationEvent]" = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self._workers: List[threading.Thread] = []

        # 冷却记录：{(client_id, rule): fired_at}
        self._last_fired: Dict[Tuple[str, NotificationRule], float] = {}
        self._cooldown_lock = threading.Lock()

        # 计数
        self._enqueued = 0
        self._dropped = 0
        self._delivered = 0
        self._failed = 0
        self._stats_lock = threading.Lock()

    # =========================================================================
    # 生命周期
    # =========================================================================

    def start(self) -> None:
        """启动投递线程"""
        if self._workers:
            return
        self._stop_event.clear()
        for i in range(self._num_workers):
            t = threading.Thread(
                target=self._worker_loop,
                args=(i,),
                daemon=True,
                name=f"notifier-worker-{i}",
            )
            t.start()
            self._workers.append(t)
        logger.info(
            f"Notifier started: rules={len(self.rules)} channel={self.channel.name} "
            f"workers={self._num_workers} queue_max={self._queue.maxsize}"
        )

    def stop(self, drain: bool = True) -> None:
        """停止投递线程；drain=True 时先投递完队列中的事件"""
        if drain and self._workers:
            self._queue.join()
        self._stop_event.set()
        for t in self._workers:
            t.join(timeout=5.0)
        self._workers.clear()
        self.channel.close()
        logger.info(f"Notifier stopped. {self.stats}")

    def join(self) -> None:
        """等待队列中的事件全部处理完"""
        self._queue.join()

    @property
    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return {
                "queue_depth": self._queue.qsize(),
                "queue_max": self._queue.maxsize,
                "enqueued": self._enqueued,
                "dropped": self._dropped,
                "delivered": self._delivered,
                "failed": self._failed,
            }

    # =========================================================================
    # 评估（上报路径，不阻塞）
    # =========================================================================

    def evaluate(self, record: ClientRecord) -> List[NotificationEvent]:
        """
        对合并后的记录评估所有规则

        Returns:
            本次成功入队的事件
        """
        fired = []
        for rule in self.rules:
            agg = record.metrics.get(rule.metric)
            if agg is None:
                continue
            value = MetricValue(agg.kind, agg.last_value)
            if not rule.matches(value):
                continue

            event = self._claim(record.client_id, rule, value)
            if event is not None:
                fired.append(event)
        return fired

    def _claim(self, client_id: str, rule: NotificationRule, value: MetricValue) -> Optional[NotificationEvent]:
        """检查冷却并入队；检查与记录在同一把锁内完成"""
        key = (client_id, rule)
        with self._cooldown_lock:
            now = self._clock()
            last = self._last_fired.get(key)
            if last is not None and now - last < rule.cooldown:
                logger.debug(f"Suppressed alert {rule.describe()} for {client_id} (cooldown)")
                return None

            event = NotificationEvent(
                client_id=client_id,
                rule=rule,
                observed_value=value.value,
                fired_at=now,
            )
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                with self._stats_lock:
                    self._dropped += 1
                logger.warning(f"Notification queue full, dropped alert {rule.describe()} for {client_id}")
                return None

            self._last_fired[key] = now

        with self._stats_lock:
            self._enqueued += 1
        logger.info(f"Alert fired: {rule.describe()} for {client_id} (observed {value.value})")
        return event

    def forget(self, client_id: str) -> None:
        """移除客户端的冷却记录（客户端被清理后调用）"""
        with self._cooldown_lock:
            for key in [k for k in self._last_fired if k[0] == client_id]:
                del self._last_fired[key]

    # =========================================================================
    # 投递（工作线程）
    # =========================================================================

    def _backoff(self, attempt: int) -> float:
        delay = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        return delay + random.uniform(0, delay * 0.1)

    def _deliver(self, event: NotificationEvent) -> bool:
        payload = event.to_payload()
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.channel.send(payload)
                return True
            except Exception as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        f"Dropping alert {event.rule.describe()} for {event.client_id} "
                        f"after {attempt} attempts: {e}"
                    )
                    return False
                delay = self._backoff(attempt)
                logger.warning(
                    f"Notification dispatch failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                if self._stop_event.wait(delay):
                    logger.error(f"Notifier stopping, dropped alert {event.rule.describe()} for {event.client_id}")
                    return False
        return False

    def _worker_loop(self, worker_id: int) -> None:
        while not self._stop_event.is_set():
            try:
                event = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue

            try:
                delivered = self._deliver(event)
                with self._stats_lock:
                    if delivered:
                        self._delivered += 1
                    else:
                        self._failed += 1
            except Exception as e:
                with self._stats_lock:
                    self._failed += 1
                logger.error(f"Notifier worker {worker_id} error: {e}", exc_info=True)
            finally:
                self._queue.task_done()
