"""Logging setup for the raffle service.

`get_logger(name)` configures the root logger on first use: console output
always, a file when LOG_FILE is set, level from LOG_LEVEL. Chatty client
libraries (web3 providers, urllib3, the uvicorn access log) are held at
WARNING unless the service itself runs at DEBUG.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

NOISY_LOGGERS = ('web3.providers', 'web3.RequestManager', 'urllib3', 'uvicorn.access')

_configured = False


def _resolve_level(level: Union[str, int, None]) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level or 'INFO').upper(), logging.INFO)


def _quiet_libraries(level: int) -> None:
    library_level = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def _ensure_configured() -> None:
    global _configured
    if _configured:
        return

    level = _resolve_level(os.getenv('LOG_LEVEL', 'INFO'))
    log_file = os.getenv('LOG_FILE', '')

    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding='utf-8')
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError:
            root.exception(f'Cannot write log file {log_file}; logging to console only')

    _quiet_libraries(level)
    _configured = True


def set_log_level(level: Union[str, int]) -> int:
    """Change the service log level at runtime, e.g. from a CLI flag."""
    _ensure_configured()
    resolved = _resolve_level(level)
    logging.getLogger().setLevel(resolved)
    _quiet_libraries(resolved)
    return resolved


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger for `name`, configuring logging on the first call."""
    _ensure_configured()
    return logging.getLogger(name)
