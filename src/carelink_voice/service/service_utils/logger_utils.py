import sys
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field


class LoggerConfig(BaseModel):
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)
    rotation: str = Field(default="10 MB")
    retention: str = Field(default="7 days")


def config_loggers(logger_config: LoggerConfig):
    """按配置重新安装 loguru 输出"""
    logger.remove()
    logger.add(sys.stderr, level=logger_config.log_level.upper())
    if logger_config.log_file:
        logger.add(
            logger_config.log_file,
            level=logger_config.log_level.upper(),
            rotation=logger_config.rotation,
            retention=logger_config.retention,
            encoding="utf-8",
            enqueue=True,
        )
    logger.info(f"Logger configured: level={logger_config.log_level}, file={logger_config.log_file}")
