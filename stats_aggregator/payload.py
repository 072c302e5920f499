"""
上报内容解析

将原始请求体解析为 Report：
- 请求体必须是 JSON 对象
- client_id 必须是非空字符串
- timestamp（或 ts）为数字或省略，省略时使用接收时间
- 其余顶层字段均视为指标，不支持的值类型仅丢弃该指标
"""

import json
import logging
import time
from types import MappingProxyType
from typing import Dict, Optional, Union

from .exceptions import InvalidMetricValue, InvalidPayload
from .models import MetricValue, Number, Report, fits_float

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "client_id"
TIMESTAMP_KEYS = ("timestamp", "ts")


def _decode(raw: Union[bytes, str]) -> dict:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidPayload(f"Body is not valid UTF-8: {e}") from e
    try:
        data = json.loads(raw)
    except ValueError as e:
        # JSONDecodeError 以及超长整数字面量（3.11+ 位数限制）
        raise InvalidPayload(f"Body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidPayload(f"Body must be a JSON object, got {type(data).__name__}")
    return data


def _parse_timestamp(data: dict, now: Optional[float]) -> Number:
    for key in TIMESTAMP_KEYS:
        if key not in data:
            continue
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidPayload(f"{key} must be a number, got {type(value).__name__}")
        if not fits_float(value):
            raise InvalidPayload(f"{key} must be a finite number")
        return value
    return int(now if now is not None else time.time())


def parse(raw: Union[bytes, str], now: Optional[float] = None) -> Report:
    """
    解析上报内容

    Args:
        raw: 原始请求体
        now: 接收时间（缺省时使用当前时间，主要用于测试）

    Returns:
        Report

    Raises:
        InvalidPayload: 非 JSON / 非对象 / client_id 缺失或非法 / 时间戳类型错误
    """
    data = _decode(raw)

    client_id = data.get(CLIENT_ID_KEY)
    if not isinstance(client_id, str) or not client_id.strip():
        raise InvalidPayload("client_id must be a non-empty string")

    timestamp = _parse_timestamp(data, now)

    metrics: Dict[str, MetricValue] = {}
    dropped = []
    for name, value in data.items():
        if name == CLIENT_ID_KEY or name in TIMESTAMP_KEYS:
            continue
        try:
            metrics[name] = MetricValue.from_json(value)
        except InvalidMetricValue as e:
            dropped.append(name)
            logger.debug(f"Dropped metric {name} from client {client_id}: {e}")

    return Report(
        client_id=client_id,
        timestamp=timestamp,
        metrics=MappingProxyType(metrics),
        dropped=tuple(dropped),
    )
