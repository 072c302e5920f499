"""
错误类型定义

只有 InvalidPayload 会穿透到上报调用方，其余错误均在内部处理并记录日志。
"""


class StatsError(Exception):
    """所有聚合服务错误的基类"""


class InvalidPayload(StatsError, ValueError):
    """上报内容无法解析（非 JSON、非对象、client_id 缺失等）"""


class InvalidMetricValue(StatsError, ValueError):
    """单个指标值类型不受支持，仅丢弃该指标"""


class StoreConcurrencyViolation(StatsError, RuntimeError):
    """存储内部不变量被破坏，属于致命错误，进程应重启并从快照恢复"""


class NotifierDispatchError(StatsError):
    """通知渠道不可达或返回错误"""


class SnapshotFormatError(StatsError, ValueError):
    """持久化快照格式错误，无法重新加载"""
