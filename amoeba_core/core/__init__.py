# Core utilities shared by the job execution subsystems

from amoeba_core.core.logging import (
    LogFormat,
    LogLevel,
    get_logger,
    setup_logging,
)

__all__ = [
    "LogFormat",
    "LogLevel",
    "get_logger",
    "setup_logging",
]
