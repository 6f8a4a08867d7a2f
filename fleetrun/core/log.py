"""
Logging configuration for fleetrun.

Logging goes through loguru and is disabled by default, as befits a library.
Applications (and the fleetrun CLI) turn it on with configure_logging().

Example:
    from fleetrun.core.log import LogConfig, configure_logging

    configure_logging(LogConfig(level="DEBUG", file="fleetrun.log"))
"""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True)
class LogConfig:
    """
    Attributes:
        level: Minimum level for the console sink.
        file: Optional log file; always written at DEBUG.
        console: Whether to log to stderr.
        rotation: File rotation policy (e.g. "50 MB", "1 day").
        retention: Number of rotated files to keep.
    """
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def configure_logging(config: LogConfig) -> List[int]:
    """Install sinks for fleetrun and return their handler ids."""
    logger.remove()
    logger.enable("fleetrun")
    handler_ids: List[int] = []

    if config.console:
        handler_ids.append(logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="fleetrun",
        ))

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            diagnose=False,
        ))

    return handler_ids


def reset_logging(handler_ids: List[int]):
    """Remove handlers added by configure_logging() and silence fleetrun again."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("fleetrun")
