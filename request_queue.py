"""
Очередь запросов к LLM.

Ограничивает число одновременных обращений к провайдеру, держит
ожидающие запросы в порядке приоритета, снимает их по таймауту
и повторяет временные сбои провайдера (rate limit, 5xx, обрывы).

Работает в одном event loop: состояние меняется только из корутин
этого цикла, поэтому блокировки не нужны.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from config import (
    QUEUE_MAX_CONCURRENT,
    QUEUE_MAX_SIZE,
    QUEUE_REQUEST_TIMEOUT,
    QUEUE_RETRY_ATTEMPTS,
    QUEUE_RETRY_DELAY,
)
from logger import get_logger

log = get_logger(__name__)

# Среднее время обработки, пока нет ни одного замера (секунды)
DEFAULT_PROCESS_TIME = 3.0

RETRYABLE_MARKERS = ("rate limit", "timeout", "econnreset", "503", "529")


class QueueFullError(Exception):
    """Очередь заполнена: сигнал перегрузки, а не ошибка запроса."""


class QueueTimeoutError(Exception):
    """Запрос не успел выполниться за отведённое время."""


def is_retryable_error(exc: BaseException) -> bool:
    """
    Временный сбой провайдера, который имеет смысл повторить.

    Список признаков намеренно узкий: всё остальное (ошибки авторизации,
    неверный запрос) падает сразу. Имя класса учитывается наравне с
    текстом, т.к. у таймаутов HTTP-клиентов текст бывает пустым.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    text = f"{type(exc).__name__} {exc}".lower()
    return any(marker in text for marker in RETRYABLE_MARKERS)


@dataclass
class QueuedRequest:
    id: str
    execute: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    priority: int
    timestamp: float
    timer: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None
    wait_time: float = 0.0
    started_at: Optional[float] = None


@dataclass
class QueueStats:
    total_processed: int = 0
    total_failed: int = 0
    total_timeout: int = 0
    average_wait_time: float = 0.0
    average_process_time: float = 0.0


@dataclass
class RequestQueue:
    """
    Приоритетная очередь с ограничением параллелизма и повторами.

    Параметры:
        max_concurrent: сколько запросов выполняется одновременно
        max_queue_size: сколько запросов может ждать; сверх — QueueFullError
        request_timeout: таймаут по умолчанию (секунды), считается от постановки
        retry_attempts: число повторов после первой попытки
        retry_delay: базовая пауза; перед n-м повтором ждём retry_delay × n
    """

    max_concurrent: int = QUEUE_MAX_CONCURRENT
    max_queue_size: int = QUEUE_MAX_SIZE
    request_timeout: float = QUEUE_REQUEST_TIMEOUT
    retry_attempts: int = QUEUE_RETRY_ATTEMPTS
    retry_delay: float = QUEUE_RETRY_DELAY
    stats: QueueStats = field(default_factory=QueueStats)

    def __post_init__(self) -> None:
        self._queue: list[QueuedRequest] = []
        self._active = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def active_requests(self) -> int:
        return self._active

    # ─── Постановка в очередь ──────────────────────────────────────────────────

    async def enqueue(
        self,
        execute: Callable[[], Awaitable[Any]],
        priority: int = 0,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Ставит вызов в очередь и ждёт его результата.

        Чем выше priority, тем раньше запрос стартует; при равном
        приоритете сохраняется порядок постановки. Отмена ожидающего
        вызывающего кода снимает запрос с очереди или прерывает его.
        """
        if len(self._queue) >= self.max_queue_size:
            log.warning("Очередь LLM заполнена (%d), запрос отклонён", len(self._queue))
            raise QueueFullError("Очередь запросов к AI заполнена. Попробуйте позже.")

        loop = asyncio.get_running_loop()
        request = QueuedRequest(
            id=uuid.uuid4().hex[:12],
            execute=execute,
            future=loop.create_future(),
            priority=priority,
            timestamp=loop.time(),
        )

        position = next(
            (i for i, queued in enumerate(self._queue) if queued.priority < priority),
            len(self._queue),
        )
        self._queue.insert(position, request)
        request.timer = loop.call_later(
            self.request_timeout if timeout is None else timeout,
            self._on_timeout,
            request,
        )
        self._dispatch()

        try:
            return await request.future
        except asyncio.CancelledError:
            self._withdraw(request)
            raise

    def _withdraw(self, request: QueuedRequest) -> None:
        if request.timer is not None:
            request.timer.cancel()
        if request in self._queue:
            self._queue.remove(request)
        elif request.task is not None and not request.task.done():
            request.task.cancel()
        log.debug("Запрос %s отозван вызывающей стороной", request.id)

    def _on_timeout(self, request: QueuedRequest) -> None:
        if request.future.done():
            return
        self.stats.total_timeout += 1
        if request in self._queue:
            self._queue.remove(request)
            request.future.set_exception(QueueTimeoutError("Истекло время ожидания в очереди"))
            log.warning("Запрос %s снят с очереди по таймауту", request.id)
            return
        request.future.set_exception(QueueTimeoutError("Истекло время выполнения запроса"))
        if request.task is not None:
            request.task.cancel()
        log.warning("Запрос %s прерван по таймауту во время выполнения", request.id)

    # ─── Выполнение ────────────────────────────────────────────────────────────

    def _dispatch(self) -> None:
        loop = asyncio.get_running_loop()
        while self._queue and self._active < self.max_concurrent:
            request = self._queue.pop(0)
            self._active += 1
            request.wait_time = loop.time() - request.timestamp
            task = asyncio.create_task(self._run(request))
            request.task = task
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            task.add_done_callback(partial(self._on_settled, request))

    async def _run(self, request: QueuedRequest) -> Any:
        request.started_at = asyncio.get_running_loop().time()
        return await self._call_with_retry(request.execute)

    def _on_settled(self, request: QueuedRequest, task: asyncio.Task) -> None:
        # Вызывается и для задач, отменённых до первого шага
        now = asyncio.get_running_loop().time()
        if request.timer is not None:
            request.timer.cancel()

        error = None if task.cancelled() else task.exception()
        failed = task.cancelled() or error is not None
        if error is not None:
            log.error("Запрос %s завершился ошибкой: %s", request.id, error)

        if not request.future.done():
            if task.cancelled():
                request.future.cancel()
            elif error is not None:
                request.future.set_exception(error)
            else:
                request.future.set_result(task.result())

        started = request.started_at if request.started_at is not None else now
        self._update_stats(request.wait_time, now - started, failed)
        self._active -= 1
        self._dispatch()

    async def _call_with_retry(self, execute: Callable[[], Awaitable[Any]]) -> Any:
        # execute часто lambda, возвращающая корутину: ждём её внутри попытки
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts + 1),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            retry=retry_if_exception(is_retryable_error),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                return await execute()

    def _update_stats(self, wait_time: float, process_time: float, failed: bool) -> None:
        stats = self.stats
        stats.total_processed += 1
        if failed:
            stats.total_failed += 1
        n = stats.total_processed
        stats.average_wait_time = (stats.average_wait_time * (n - 1) + wait_time) / n
        stats.average_process_time = (stats.average_process_time * (n - 1) + process_time) / n

    # ─── Состояние ─────────────────────────────────────────────────────────────

    def has_capacity(self) -> bool:
        return len(self._queue) < self.max_queue_size

    def get_estimated_wait_time(self) -> float:
        """Оценка ожидания в секундах для нового запроса."""
        average = self.stats.average_process_time or DEFAULT_PROCESS_TIME
        return (len(self._queue) / self.max_concurrent) * average

    def get_status(self) -> dict:
        return {
            "queue_length": len(self._queue),
            "active_requests": self._active,
            "max_concurrent": self.max_concurrent,
            "max_queue_size": self.max_queue_size,
            "capacity": self.max_concurrent - self._active,
            "stats": asdict(self.stats),
        }


def _log_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "Повтор запроса к LLM (попытка %d) после ошибки: %s",
        retry_state.attempt_number + 1,
        exc,
    )
