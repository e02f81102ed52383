"""
Общая настройка логирования конвейера чата.

Каждый модуль получает логгер через get_logger(); записи идут
в ротируемый файл logs/portal_chat.log и в stdout.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler

from config import LOG_FILE, LOG_LEVEL

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-18s | %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"
_formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FMT)

_handlers: list[logging.Handler] = []


def _shared_handlers() -> list[logging.Handler]:
    """Обработчики создаются один раз на процесс и переиспользуются всеми логгерами."""
    if not _handlers:
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=10 * 1024 * 1024,  # 10 МБ
            backupCount=5,
            encoding="utf-8",
        )
        console_handler = logging.StreamHandler(sys.stdout)
        for handler in (file_handler, console_handler):
            handler.setFormatter(_formatter)
            _handlers.append(handler)
    return _handlers


def get_logger(name: str) -> logging.Logger:
    """Логгер модуля с общими обработчиками (файл + консоль)."""
    logger = logging.getLogger(f"portal.{name}")
    if not logger.handlers:
        logger.setLevel(LOG_LEVEL)
        for handler in _shared_handlers():
            logger.addHandler(handler)
        logger.propagate = False
    return logger
