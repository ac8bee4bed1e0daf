import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from loguru import logger
from pydantic import BaseModel, Field

from carelink_voice.handlers.realtime.consultation.models import Actor, ConsultationConfig, Doctor, Pet
from carelink_voice.handlers.realtime.consultation.record_store import InMemoryRecordStore
from carelink_voice.service.service_utils.logger_utils import LoggerConfig

API_KEY_ENV = "GEMINI_API_KEY"
DEFAULT_ENV = "default"


class RecordStoreSeed(BaseModel):
    """控制台演示用的内存记录"""

    actor: Optional[Actor] = None
    pets: List[Pet] = Field(default_factory=list)
    doctors: List[Doctor] = Field(default_factory=list)

    def build_store(self) -> InMemoryRecordStore:
        return InMemoryRecordStore(actor=self.actor, pets=self.pets, doctors=self.doctors)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config_file(config_path: str, env: str = DEFAULT_ENV) -> Dict[str, Any]:
    """
    读取 YAML 配置，env 对应的段覆盖 default 段

    Args:
        config_path: 配置文件路径
        env: 环境名

    Returns:
        Dict[str, Any]: 合并后的配置
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"config file not found: {config_path}")
    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"config file {config_path} must contain a mapping")

    merged = dict(raw.get(DEFAULT_ENV) or {})
    if env != DEFAULT_ENV:
        if env not in raw:
            raise ValueError(f"environment '{env}' not found in {config_path}")
        merged = _deep_merge(merged, raw.get(env) or {})
    return merged


def load_configs(args) -> Tuple[LoggerConfig, ConsultationConfig, RecordStoreSeed]:
    """按命令行参数加载日志、会话和记录存储配置"""
    data = load_config_file(args.config, getattr(args, "env", DEFAULT_ENV) or DEFAULT_ENV)

    logger_config = LoggerConfig(**(data.get("logger") or {}))
    consultation_data = dict(data.get("consultation") or {})
    api_key = os.environ.get(API_KEY_ENV)
    if api_key:
        consultation_data["api_key"] = api_key
    consultation_config = ConsultationConfig(**consultation_data)
    seed = RecordStoreSeed(**(data.get("record_store") or {}))

    logger.debug(f"Loaded config {args.config} (env={getattr(args, 'env', DEFAULT_ENV)})")
    return logger_config, consultation_config, seed
