"""Run logs for pseudorep commands.

Each command writes ``<output>/logs/<command>_<YYYYmmdd_HHMMSS>.log``; the
effective configuration is recorded in it as a YAML document and plan
executions append one JSON line per finished run to ``runs.jsonl``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple, Union

import yaml

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def run_log_path(log_dir: PathLike, command: str, when: Optional[datetime] = None) -> Path:
    """Log file for one invocation of ``command``.

    >>> run_log_path("out/logs", "pseudobulk")  # doctest: +SKIP
    PosixPath('out/logs/pseudobulk_20260301_101500.log')
    """
    stamp = (when or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return Path(log_dir) / f"{command}_{stamp}.log"


def get_logger(
    name: str,
    log_dir: PathLike,
    command: str,
    level: int = logging.INFO,
    console: bool = False,
) -> Tuple[logging.Logger, Path]:
    """Attach a fresh run log to the ``name`` logger.

    Engine loggers below ``name`` (``pseudorep.core.pseudobulk.engine`` and
    so on) propagate into it. Handlers from an earlier command in the same
    process are closed first.

    Parameters
    ----------
    name : str
        Logger name, typically the package name
    log_dir : PathLike
        Directory for log files; created if missing
    command : str
        Command name used as the file stem
    level : int
        Logging level (default: INFO)
    console : bool
        Also write records to stderr

    Returns
    -------
    Tuple[logging.Logger, Path]
        The logger and the log file it writes to
    """
    log_path = run_log_path(log_dir, command)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = [logging.FileHandler(log_path, mode="a", encoding="utf-8")]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger, log_path


def log_config(logger: logging.Logger, title: str, config: Mapping[str, Any]) -> None:
    """Record an effective configuration as a YAML document in the run log."""
    body = yaml.safe_dump(dict(config), sort_keys=False).rstrip("\n")
    logger.info("%s:\n---\n%s\n...", title, body)


def log_json(path: PathLike, record: Mapping[str, Any]) -> None:
    """Append one JSON line (a run summary) to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(dict(record), default=str))
        handle.write("\n")
