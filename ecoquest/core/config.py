"""
配置管理模块
加载 YAML 配置，支持默认配置 + 本地覆盖 + 环境变量
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


class QuestsConfig(BaseModel):
    max_active_quests: int = 3
    auto_generate: bool = True
    generation_interval: int = 86400   # 秒，每日生成
    progress_interval: int = 60        # 秒，进度批处理
    throttle_seconds: float = 10.0
    batch_limit: int = 50
    history_size: int = 2000           # 每个用户保留的最近读数


class StorageConfig(BaseModel):
    database: str = "data/ecoquest.db"


class WebConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8888


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class NotificationConfig(BaseModel):
    enabled: bool = True
    max_pending: int = 100


class SimulationConfig(BaseModel):
    enabled: bool = False
    interval: int = 30
    users: list[str] = Field(default_factory=lambda: ["demo"])
    seed: int = 42


class SystemConfig(BaseModel):
    name: str = "EcoQuest"
    version: str = "0.1.0"
    timezone: str = "Asia/Kolkata"


class Config(BaseModel):
    system: SystemConfig = Field(default_factory=SystemConfig)
    quests: QuestsConfig = Field(default_factory=QuestsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)


# 环境变量 -> (配置段, 字段)
ENV_OVERRIDES = {
    "ECOQUEST_DATABASE": ("storage", "database"),
    "ECOQUEST_LOG_LEVEL": ("logging", "level"),
}


def load_config(config_dir: str | Path = "config") -> Config:
    """加载配置文件，优先级: 环境变量 > local.yaml > default.yaml"""
    config_dir = Path(config_dir)
    data: dict[str, Any] = {}

    # 加载默认配置
    default_path = config_dir / "default.yaml"
    if default_path.exists():
        with open(default_path) as f:
            data = yaml.safe_load(f) or {}

    # 加载本地覆盖
    local_path = config_dir / "local.yaml"
    if local_path.exists():
        with open(local_path) as f:
            local_data = yaml.safe_load(f) or {}
            data = _deep_merge(data, local_data)

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name, "")
        if value:
            data.setdefault(section, {})[key] = value

    return Config(**data)


def _deep_merge(base: dict, override: dict) -> dict:
    """深度合并两个字典"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
