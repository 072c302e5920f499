"""
数据模型定义

包括：
- 指标值（Number / Bool / Text 三类）
- 上报、客户端聚合记录、快照
- 告警规则与告警事件
- Pydantic 响应模型（用于 API）
"""

import json
import logging
import math
import operator
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator

from .exceptions import InvalidMetricValue, SnapshotFormatError, StoreConcurrencyViolation

logger = logging.getLogger(__name__)

Number = Union[int, float]
RawValue = Union[int, float, bool, str]


def format_ts(ts: float) -> str:
    """Unix 时间戳 -> ISO 8601（UTC）"""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def fits_float(value: Number) -> bool:
    """有限且可以转换为 float（超大整数会在求和时溢出）"""
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def _accumulate(total: float, value: Number) -> Optional[float]:
    """累加 sum；溢出为 inf 时返回 None（平均值不再可用）"""
    result = total + float(value)
    return result if math.isfinite(result) else None


# =============================================================================
# 指标值
# =============================================================================

class MetricKind(str, Enum):
    """指标值类型"""
    NUMBER = "number"
    BOOL = "bool"
    TEXT = "text"


@dataclass(frozen=True)
class MetricValue:
    """单个指标值（带类型标签）"""
    kind: MetricKind
    value: RawValue

    @classmethod
    def from_json(cls, raw: Any) -> "MetricValue":
        """
        JSON 值 -> MetricValue

        Raises:
            InvalidMetricValue: null / 数组 / 对象 / 非有限数字 / 超出 float 范围的整数
        """
        # bool 是 int 的子类，必须先判断
        if isinstance(raw, bool):
            return cls(MetricKind.BOOL, raw)
        if isinstance(raw, (int, float)):
            if not fits_float(raw):
                raise InvalidMetricValue(f"Number out of range: {raw!r}")
            return cls(MetricKind.NUMBER, raw)
        if isinstance(raw, str):
            return cls(MetricKind.TEXT, raw)
        raise InvalidMetricValue(f"Unsupported metric type: {type(raw).__name__}")

    @property
    def is_numeric(self) -> bool:
        return self.kind is MetricKind.NUMBER


# =============================================================================
# 上报与聚合
# =============================================================================

@dataclass(frozen=True)
class Report:
    """一次上报（解析后不可变）"""
    client_id: str
    timestamp: Number
    metrics: Mapping[str, MetricValue]
    dropped: Tuple[str, ...] = ()


@dataclass
class MetricAggregate:
    """单个客户端单个指标的聚合值"""
    kind: MetricKind
    last_value: RawValue
    count: int = 1
    min_value: Optional[Number] = None
    max_value: Optional[Number] = None
    total: Optional[float] = None

    @classmethod
    def start(cls, value: MetricValue) -> "MetricAggregate":
        if value.is_numeric:
            return cls(
                kind=value.kind,
                last_value=value.value,
                min_value=value.value,
                max_value=value.value,
                total=float(value.value),
            )
        return cls(kind=value.kind, last_value=value.value)

    @property
    def is_numeric(self) -> bool:
        return self.kind is MetricKind.NUMBER

    @property
    def average(self) -> Optional[float]:
        if not self.is_numeric or self.total is None:
            return None
        return self.total / self.count

    def update(self, value: MetricValue) -> None:
        """合并一个同类型的新值（last-write-wins），新字段全部算完后才写回"""
        min_value, max_value, total = self.min_value, self.max_value, self.total
        if value.is_numeric:
            min_value = min(min_value, value.value)
            max_value = max(max_value, value.value)
            # 从旧快照恢复时可能没有 sum
            if total is not None:
                total = _accumulate(total, value.value)

        self.last_value = value.value
        self.count += 1
        self.min_value, self.max_value, self.total = min_value, max_value, total

    def check(self, name: str) -> None:
        """校验 count >= 1 且 min <= last <= max"""
        if self.count < 1:
            raise StoreConcurrencyViolation(f"Metric {name}: count={self.count}")
        if self.is_numeric and not (self.min_value <= self.last_value <= self.max_value):
            raise StoreConcurrencyViolation(
                f"Metric {name}: last={self.last_value} outside [{self.min_value}, {self.max_value}]"
            )

    def to_dict(self, include_sum: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {"last": self.last_value, "count": self.count}
        if self.is_numeric:
            data["min"] = self.min_value
            data["max"] = self.max_value
            if include_sum and self.total is not None:
                data["sum"] = self.total
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "MetricAggregate":
        """
        从快照格式恢复

        Raises:
            SnapshotFormatError: 字段缺失或类型错误
        """
        if not isinstance(data, dict):
            raise SnapshotFormatError(f"Aggregate must be an object, got {type(data).__name__}")
        try:
            last = MetricValue.from_json(data.get("last"))
        except InvalidMetricValue as e:
            raise SnapshotFormatError(f"Invalid last value: {e}") from e

        count = data.get("count")
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise SnapshotFormatError(f"Invalid count: {count!r}")

        if not last.is_numeric:
            return cls(kind=last.kind, last_value=last.value, count=count)

        bounds = []
        for key in ("min", "max"):
            value = data.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not fits_float(value):
                raise SnapshotFormatError(f"Invalid {key}: {value!r}")
            bounds.append(value)
        total = data.get("sum")
        if total is not None:
            if isinstance(total, bool) or not isinstance(total, (int, float)) or not fits_float(total):
                raise SnapshotFormatError(f"Invalid sum: {total!r}")
            total = float(total)

        agg = cls(
            kind=last.kind,
            last_value=last.value,
            count=count,
            min_value=bounds[0],
            max_value=bounds[1],
            total=total,
        )
        if not (agg.min_value <= agg.last_value <= agg.max_value):
            raise SnapshotFormatError(f"last={agg.last_value} outside [{agg.min_value}, {agg.max_value}]")
        return agg


@dataclass
class ClientRecord:
    """单个客户端的聚合记录"""
    client_id: str
    last_seen: Optional[Number] = None  # 客户端时间戳最大值，从快照恢复后为 None
    updated_at: float = 0.0  # 服务端最后一次合并时间，用于 TTL 清理
    metrics: Dict[str, MetricAggregate] = field(default_factory=dict)

    def copy(self) -> "ClientRecord":
        # MetricAggregate 字段均为不可变值，逐个浅拷贝即可
        return ClientRecord(
            client_id=self.client_id,
            last_seen=self.last_seen,
            updated_at=self.updated_at,
            metrics={name: replace(agg) for name, agg in self.metrics.items()},
        )

    def to_dict(self, include_sum: bool = False) -> Dict[str, Any]:
        return {name: agg.to_dict(include_sum) for name, agg in self.metrics.items()}


def records_from_dict(data: Any, updated_at: float) -> List[ClientRecord]:
    """
    快照字典 -> ClientRecord 列表

    格式：{client_id: {metric: {last, count, min, max[, sum]}}}
    单个指标格式错误时跳过并记录日志；整体结构错误时抛出 SnapshotFormatError。
    """
    if not isinstance(data, dict):
        raise SnapshotFormatError(f"Snapshot must be an object, got {type(data).__name__}")

    records = []
    for client_id, metrics in data.items():
        if not isinstance(client_id, str) or not client_id.strip():
            raise SnapshotFormatError(f"Invalid client id: {client_id!r}")
        if not isinstance(metrics, dict):
            raise SnapshotFormatError(f"Client {client_id}: metrics must be an object")

        record = ClientRecord(client_id=client_id, updated_at=updated_at)
        for name, raw in metrics.items():
            try:
                record.metrics[name] = MetricAggregate.from_dict(raw)
            except SnapshotFormatError as e:
                logger.warning(f"Skipping metric {name} of client {client_id}: {e}")
        records.append(record)
    return records


class Snapshot:
    """
    全量记录的时间点拷贝

    生成后不再随存储变化。
    """

    def __init__(self, records: Dict[str, ClientRecord], taken_at: float):
        self._records = records
        self.taken_at = taken_at

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._records))

    def get(self, client_id: str) -> Optional[ClientRecord]:
        record = self._records.get(client_id)
        return record.copy() if record else None

    def to_dict(self, include_sum: bool = False) -> Dict[str, Dict[str, Any]]:
        return {
            client_id: self._records[client_id].to_dict(include_sum)
            for client_id in sorted(self._records)
        }

    def to_json(self, include_sum: bool = False) -> str:
        return json.dumps(self.to_dict(include_sum), ensure_ascii=False)


# =============================================================================
# 告警
# =============================================================================

Comparator = Literal[">", "<", ">=", "<=", "=="]

_ORDERING = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}


class NotificationRule(BaseModel):
    """告警规则（外部配置，核心只读）"""
    model_config = ConfigDict(frozen=True)

    metric: str = Field(..., min_length=1)
    comparator: Comparator = ">"
    threshold: Union[StrictBool, float, str]
    cooldown: float = Field(default=300.0, ge=0, description="同一客户端同一规则的最小通知间隔（秒）")

    @field_validator("threshold")
    @classmethod
    def _finite_threshold(cls, value):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("threshold must be finite")
        return value

    def matches(self, value: MetricValue) -> bool:
        """比较运算：大小比较仅对数值生效，== 要求类型一致"""
        threshold = MetricValue.from_json(self.threshold)
        if self.comparator == "==":
            return value.kind is threshold.kind and value.value == threshold.value
        if not (value.is_numeric and threshold.is_numeric):
            return False
        return _ORDERING[self.comparator](value.value, threshold.value)

    def describe(self) -> str:
        return f"{self.metric} {self.comparator} {self.threshold}"


@dataclass(frozen=True)
class NotificationEvent:
    """一次触发的告警（仅用于投递和冷却记录）"""
    client_id: str
    rule: NotificationRule
    observed_value: RawValue
    fired_at: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "metric_name": self.rule.metric,
            "observed_value": self.observed_value,
            "threshold": self.rule.threshold,
            "fired_at": format_ts(self.fired_at),
        }


# =============================================================================
# Pydantic 响应模型
# =============================================================================

class ReportResponse(BaseModel):
    """上报响应（POST /report）"""
    code: int = 0
    size: int
