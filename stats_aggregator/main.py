"""
主程序入口

启动三个并发任务：
1. REST API 服务（上报 / 快照）
2. 过期客户端清理
3. 快照定期落盘
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn

from . import __version__
from .config import AppConfig, load_config
from .manager import StatsManager
from .tasks import run_evictor, run_flusher


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# 告警 Webhook 每次投递都会产生 httpx 请求日志
QUIET_LOGGERS = ("httpx", "uvicorn.access")


def setup_logging(config: AppConfig):
    """配置根日志：stdout，配置了 logging.file 时同时写文件"""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_path), encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


async def run_api_server(manager: StatsManager):
    """运行上报 / 快照 HTTP 服务，Ctrl+C 时返回"""
    from .api.app import create_app

    api = manager.config.api
    server = uvicorn.Server(uvicorn.Config(
        app=create_app(manager),
        host=api.host,
        port=api.port,
        log_level=logging.getLevelName(logging.getLogger().getEffectiveLevel()).lower(),
        access_log=False,
    ))
    await server.serve()


async def main(config: AppConfig):
    """主函数：启动所有任务"""
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info(f"Stats Aggregator v{__version__}")
    logger.info("=" * 60)
    logger.info(f"Config loaded: API={config.api.host}:{config.api.port}")
    logger.info(
        f"Rules: {len(config.notifier.rules)}, TTL: {config.store.ttl_seconds}s, "
        f"persistence: {config.persistence.path if config.persistence.enabled else 'disabled'}"
    )

    manager = StatsManager(config)
    manager.start()

    logger.info("Starting concurrent tasks...")

    api_task = asyncio.create_task(run_api_server(manager))
    background = [
        asyncio.create_task(run_evictor(manager)),
        asyncio.create_task(run_flusher(manager)),
    ]
    try:
        # API 服务退出（收到 Ctrl+C）即整体退出
        await api_task
    except asyncio.CancelledError:
        logger.info("Tasks cancelled, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        raise
    finally:
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        manager.stop()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="stats-aggregator", description="客户端状态上报聚合服务")
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="配置文件路径（默认读取 STATS_CONFIG_PATH 或 config.yaml）"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def cli(argv: Optional[List[str]] = None):
    """命令行入口"""
    args = parse_args(argv)
    config = load_config(args.config)
    setup_logging(config)
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        print("\nShutdown requested, exiting...")
        sys.exit(0)


if __name__ == "__main__":
    cli()
