"""
后台定时任务

- 定期清理过期客户端
- 定期将快照写入持久化
"""

import asyncio
import logging

from .manager import StatsManager

logger = logging.getLogger(__name__)


async def run_evictor(manager: StatsManager):
    """
    运行过期客户端清理任务

    每隔 store.evict_interval 秒清理一次，ttl_seconds <= 0 时直接退出。
    """
    store_config = manager.config.store
    if store_config.ttl_seconds <= 0:
        logger.info("Stale client eviction disabled (ttl_seconds <= 0)")
        return

    logger.info(
        f"Starting evictor task (interval={store_config.evict_interval}s, ttl={store_config.ttl_seconds}s)"
    )

    while True:
        try:
            await asyncio.sleep(store_config.evict_interval)
            manager.evict_stale()
        except asyncio.CancelledError:
            logger.info("Evictor task cancelled")
            raise
        except Exception as e:
            logger.error(f"Evictor error: {e}", exc_info=True)


async def run_flusher(manager: StatsManager):
    """
    运行快照落盘任务

    每隔 persistence.flush_interval 秒写一次；未启用持久化时直接退出。
    """
    if manager.persistence is None:
        logger.info("Snapshot persistence disabled")
        return

    interval = manager.config.persistence.flush_interval
    logger.info(f"Starting flusher task (interval={interval}s)")

    while True:
        try:
            await asyncio.sleep(interval)
            # SQLite 写入放到线程中，避免阻塞事件循环
            await asyncio.to_thread(manager.flush)
        except asyncio.CancelledError:
            logger.info("Flusher task cancelled")
            raise
        except Exception as e:
            logger.error(f"Flusher error: {e}", exc_info=True)
