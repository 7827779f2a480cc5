# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Logging setup for procshell.

Console output goes to stderr: stdout belongs to the child processes
whose output is being composed. An optional rotating log file receives
everything down to DEBUG.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

from .config import ProcShellConfig, get_config


class ProcShellLogger:
    """
    Configures one named logger.

    Features:
    - Console logging on stderr
    - Optional file logging with automatic rotation
    - Structured log format with timestamps
    """

    def __init__(
        self,
        name: str = "procshell",
        level: str = "WARNING",
        log_dir: Optional[Path] = None,
        console_output: bool = True,
        file_output: bool = False,
    ):
        self.name = name
        self.logger = logging.getLogger(name)

        self.logger.handlers.clear()
        self.logger.setLevel(self._parse_level(level))

        console_formatter = logging.Formatter(
            fmt="[%(asctime)s] [%(name)s:%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        file_formatter = logging.Formatter(
            fmt="%(asctime)s | %(name)s | %(levelname)s | %(filename)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        if console_output:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(console_formatter)
            console_handler.setLevel(self._parse_level(level))
            self.logger.addHandler(console_handler)

        if file_output:
            if log_dir is None:
                log_dir = Path.home() / ".procshell" / "logs"

            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"{name}.log"

            # Rotate after 10MB, keep 5 backup files
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setFormatter(file_formatter)
            file_handler.setLevel(logging.DEBUG)
            self.logger.addHandler(file_handler)
            # the file handler wants DEBUG records even when the console does not
            self.logger.setLevel(logging.DEBUG)

    def _parse_level(self, level: str) -> int:
        """Convert string level to logging constant"""
        levels = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL,
        }
        return levels.get(level.upper(), logging.WARNING)

    def set_level(self, level: str):
        """Change log level dynamically"""
        parsed = self._parse_level(level)
        for handler in self.logger.handlers:
            if not isinstance(handler, RotatingFileHandler):
                handler.setLevel(parsed)
        if not any(isinstance(h, RotatingFileHandler) for h in self.logger.handlers):
            self.logger.setLevel(parsed)


_loggers: Dict[str, ProcShellLogger] = {}


def get_logger(name: str = "procshell", config: Optional[ProcShellConfig] = None) -> ProcShellLogger:
    """
    Get or create a configured logger.

    Args:
        name: Logger name, "procshell" or a dotted child of it
        config: Configuration to read levels and file settings from

    Returns:
        ProcShellLogger instance
    """
    if name not in _loggers:
        cfg = (config if config is not None else get_config()).logging
        _loggers[name] = ProcShellLogger(
            name=name,
            level=cfg.log_level,
            log_dir=cfg.log_dir,
            file_output=cfg.file_logging,
        )

    return _loggers[name]


def configure_logging(
    config: Optional[ProcShellConfig] = None, level: Optional[str] = None
) -> ProcShellLogger:
    """
    Configure the root "procshell" logger for a front end.

    Library modules log through logging.getLogger("procshell.<component>")
    and inherit these handlers.
    """
    shell_logger = get_logger("procshell", config)
    if level:
        shell_logger.set_level(level)
    return shell_logger
