"""
Stats Aggregator - 状态上报聚合服务

负责：
- 接收客户端推送的 JSON 状态报告
- 按客户端维护指标聚合（last/count/min/max）
- 清理长期未上报的客户端
- 按阈值规则触发告警通知
- 提供统一快照供前端展示
"""

__version__ = "1.0.0"
__author__ = "AI-B"
