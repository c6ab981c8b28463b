"""Structured logging for plan execution."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for console output."""

    def __init__(self, fmt: str, datefmt: str, colors: dict):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        original = record.levelname
        color = self.colors.get(original, self.colors["RESET"])
        record.levelname = f"{color}{original}{self.colors['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class PipelineLogger:
    """Structured logging for plan execution.

    Writes a detailed plan log file and colored console output, with
    structured events for run start, completion and failure. Module loggers
    of the package propagate into it, so engine progress lands in the same
    file.

    Parameters
    ----------
    log_dir : str or Path
        Directory for log files
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str, optional
        Logger name. Default: "pseudorep"
    console : bool
        Also log to stdout

    Example
    -------
    >>> logger = PipelineLogger("logs/", log_level="INFO")
    >>> logger.setup()
    >>> logger.log_run_start("astro_pb", "pseudobulk")
    >>> logger.log_run_complete("astro_pb", 12.5, {"n_aggregates": 66})
    """

    COLORS = {
        "DEBUG": "\033[0;36m",  # Cyan
        "INFO": "\033[0;34m",  # Blue
        "WARNING": "\033[1;33m",  # Yellow
        "ERROR": "\033[0;31m",  # Red
        "CRITICAL": "\033[1;31m",  # Bold Red
        "RESET": "\033[0m",
    }

    def __init__(
        self,
        log_dir,
        log_level: str = "INFO",
        log_name: str = "pseudorep",
        console: bool = True,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = self.log_dir / f"plan_{timestamp}.log"

        self.log_level = getattr(logging, log_level.upper())
        self.console = console
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)
        self.close()

    def setup(self) -> None:
        """Configure file and (optionally) console handlers."""
        file_handler = logging.FileHandler(self.log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        self.logger.addHandler(file_handler)

        if self.console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(
                ColoredFormatter(
                    fmt="%(asctime)s - %(levelname)s - %(message)s",
                    datefmt="%H:%M:%S",
                    colors=self.COLORS,
                )
            )
            self.logger.addHandler(console_handler)

    def close(self) -> None:
        """Detach and close all handlers."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

    def log_run_start(self, name: str, kind: str) -> None:
        separator = "=" * 80
        self.logger.info(separator)
        self.logger.info(f"Starting run '{name}' ({kind})")
        self.logger.info(separator)

    def log_run_complete(self, name: str, duration: float, summary: Optional[Dict[str, Any]] = None) -> None:
        """Log successful completion of a run with its headline numbers."""
        duration_str = self.format_duration(duration)
        details = ""
        if summary:
            keys = ("n_aggregates", "n_units_excluded", "n_rows", "sizes")
            details = " (" + ", ".join(f"{k}={summary[k]}" for k in keys if k in summary) + ")"
        self.logger.info(f"Run '{name}' completed in {duration_str}{details}")

    def log_run_error(self, name: str, error: str) -> None:
        self.logger.error(f"Run '{name}' failed: {error}")

    def log_info(self, message: str) -> None:
        self.logger.info(message)

    def log_warning(self, message: str) -> None:
        self.logger.warning(message)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format duration in seconds to human-readable string.

        Returns
        -------
        str
            Formatted string (e.g., "45.2s", "1m 23s", "2h 15m")
        """
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = int(seconds % 60)
            return f"{mins}m {secs}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            return f"{hours}h {mins}m"
