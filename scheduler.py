"""
Планировщик фонового обслуживания.

Периодически чистит просроченные записи кешей и окна rate limiter,
пересобирает индекс товаров из свежего снимка фидов и удаляет
давно неактивные сессии чата.
"""

from __future__ import annotations

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from chat_service import ChatService
from config import (
    CACHE_SWEEP_INTERVAL,
    INDEX_REFRESH_INTERVAL,
    RATE_LIMIT_SWEEP_INTERVAL,
    SESSION_SWEEP_INTERVAL,
)
from logger import get_logger

log = get_logger(__name__)


def sweep_caches_job(service: ChatService) -> None:
    removed = service.sweep_caches()
    if any(removed.values()):
        log.info("Очистка кешей: %s", removed)


def sweep_rate_limits_job(service: ChatService) -> None:
    removed = service.rate_limiter.cleanup()
    log.debug("Rate limiter: закрыто окон %d", removed)


async def refresh_index_job(service: ChatService) -> None:
    """Перечитывает снимок базы знаний и пересобирает индекс товаров."""
    try:
        await service.store.reload()
        await service.product_index.refresh()
    except Exception as exc:
        log.exception("Ошибка при обновлении индекса товаров: %s", exc)


def sweep_sessions_job(service: ChatService) -> None:
    if service.sessions is not None:
        service.sessions.cleanup()


def start_scheduler(
    service: ChatService,
    scheduler: Optional[AsyncIOScheduler] = None,
) -> AsyncIOScheduler:
    """Настраивает и запускает планировщик APScheduler."""
    scheduler = scheduler or AsyncIOScheduler()
    jobs = (
        (sweep_caches_job, CACHE_SWEEP_INTERVAL, "cache_sweep", "Очистка просроченных кешей"),
        (sweep_rate_limits_job, RATE_LIMIT_SWEEP_INTERVAL, "rate_limit_sweep", "Очистка окон rate limiter"),
        (refresh_index_job, INDEX_REFRESH_INTERVAL, "index_refresh", "Обновление индекса товаров"),
        (sweep_sessions_job, SESSION_SWEEP_INTERVAL, "session_sweep", "Удаление неактивных сессий"),
    )
    for func, seconds, job_id, name in jobs:
        scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            args=[service],
            id=job_id,
            name=name,
            replace_existing=True,
        )
    scheduler.start()
    log.info("Планировщик запущен: задач %d", len(jobs))
    return scheduler
