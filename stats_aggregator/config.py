"""
配置加载模块

从 config.yaml 加载配置，支持 Pydantic 验证和环境变量覆盖。

环境变量前缀为 STATS_，嵌套字段用双下划线分隔，例如：
    STATS_API__PORT=9000
    STATS_STORE__TTL_SECONDS=600
"""

import os
import secrets
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import NotificationRule

DEFAULT_CONFIG_PATH = "config.yaml"


class APIConfig(BaseModel):
    """API 服务配置"""
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: List[str] = ["http://localhost:8080", "http://127.0.0.1:8080"]


class UserConfig(BaseModel):
    """上报账号"""
    name: str
    password: str


class AuthConfig(BaseModel):
    """上报认证配置（users 为空时不校验）"""
    users: List[UserConfig] = Field(default_factory=list)

    @property
    def enabled(self) -> bool:
        return bool(self.users)

    def verify(self, name: str, password: str) -> bool:
        matched = False
        for user in self.users:
            # 全部比较完再返回
            if secrets.compare_digest(user.name.encode(), name.encode()) and secrets.compare_digest(
                user.password.encode(), password.encode()
            ):
                matched = True
        return matched


class StoreConfig(BaseModel):
    """存储配置"""
    ttl_seconds: float = Field(default=3600, description="客户端超过该时间未上报则被清理，<= 0 关闭")
    evict_interval: float = Field(default=60, gt=0)
    evict_on_snapshot: bool = True


class WebhookConfig(BaseModel):
    """Webhook 通知渠道"""
    url: str
    timeout: float = 5.0
    headers: Dict[str, str] = Field(default_factory=dict)


class NotifierConfig(BaseModel):
    """告警配置"""
    rules: List[NotificationRule] = Field(default_factory=list)
    queue_size: int = Field(default=1000, ge=1)
    workers: int = Field(default=1, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base: float = Field(default=0.5, ge=0)
    backoff_max: float = Field(default=30.0, ge=0)
    webhook: Optional[WebhookConfig] = None


class PersistenceConfig(BaseModel):
    """快照持久化配置"""
    enabled: bool = False
    path: str = "data/stats.db"
    flush_interval: float = Field(default=300, gt=0)
    keep: int = Field(default=5, ge=1)


class FrontendConfig(BaseModel):
    """前端配置"""
    path: str = "web"
    enabled: bool = False


class LoggingConfig(BaseModel):
    """日志配置"""
    level: str = "INFO"
    file: Optional[str] = None


class AppConfig(BaseSettings):
    """应用配置（完整配置）"""
    model_config = SettingsConfigDict(env_prefix="STATS_", env_nested_delimiter="__")

    api: APIConfig = Field(default_factory=APIConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    frontend: FrontendConfig = Field(default_factory=FrontendConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # 环境变量优先于配置文件
        return env_settings, init_settings, file_secret_settings


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    加载配置文件

    优先级：
    1. 参数指定的路径
    2. 环境变量 STATS_CONFIG_PATH
    3. 默认路径 config.yaml

    文件中的相对路径按配置文件所在目录解析。
    """
    if config_path is None:
        config_path = os.environ.get("STATS_CONFIG_PATH", DEFAULT_CONFIG_PATH)

    config_file = Path(config_path)
    if not config_file.exists():
        # 配置文件不存在时使用默认配置
        return AppConfig()

    with open(config_file, "r", encoding="utf-8") as f:
        raw_config = yaml.safe_load(f) or {}

    base_dir = config_file.resolve().parent

    def _resolve_path(value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        path = Path(value)
        if path.is_absolute():
            return str(path)
        return str((base_dir / path).resolve())

    for section, key in (("persistence", "path"), ("frontend", "path"), ("logging", "file")):
        if isinstance(raw_config.get(section), dict) and raw_config[section].get(key):
            raw_config[section][key] = _resolve_path(raw_config[section][key])

    return AppConfig(**raw_config)
