# src/core/notifications/dispatcher.py
"""
Фоновая доставка push-уведомлений.

Задания кладутся в ограниченную очередь без ожидания: при переполнении
задание отбрасывается, создание уведомления не блокируется.
Временные сбои повторяются с экспоненциальной задержкой до push_retry_max
попыток, после чего токен отключается. Недействительный токен отключается сразу.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info, log_warning
from src.core.notifications.models import PushJob
from src.core.notifications.repository import NotificationRepository
from src.infra.push_provider import PushError, PushProvider, PushTokenInvalidError, PushTransientError

if TYPE_CHECKING:
    from src.config.runtime import RuntimeConfig


class PushDispatcher:
    """Очередь и воркер отправки push."""

    def __init__(
        self,
        provider: PushProvider,
        repository: NotificationRepository,
        runtime: "RuntimeConfig",
        queue_size: int = 1000,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
    ) -> None:
        self._provider = provider
        self._repository = repository
        self._runtime = runtime
        self._queue: asyncio.Queue[PushJob] = asyncio.Queue(maxsize=queue_size)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._task: Optional[asyncio.Task] = None
        self._retries: set[asyncio.Task] = set()
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="push-dispatcher")
            await log_info("Диспетчер push запущен", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        tasks = [t for t in (self._task, *self._retries) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._retries.clear()
        await log_info("Диспетчер push остановлен", type_msg=TypeMsg.INFO)

    def enqueue(self, job: PushJob) -> bool:
        """
        Ставит задание в очередь без ожидания.

        Returns:
            False, если очередь заполнена и задание отброшено
        """
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def drain(self) -> None:
        """Ждёт обработки всех заданий в очереди."""
        await self._queue.join()

    def backoff(self, attempt: int) -> float:
        """Задержка перед попыткой attempt (с 1)."""
        return min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.deliver(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await log_error(
                    f"Ошибка доставки push для уведомления {job.notification_id}: {e}",
                    extra={"notification_id": job.notification_id},
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def deliver(self, job: PushJob) -> None:
        """Одна попытка отправки с обработкой исхода."""
        job.attempt += 1
        try:
            await self._provider.send(job.token, job.title, job.body, job.data)
        except PushTokenInvalidError as e:
            await self._repository.disable_token(job.token, str(e))
            await log_warning(
                f"Токен устройства отключён: {e}",
                extra={"notification_id": job.notification_id},
            )
            return
        except PushTransientError as e:
            await self._retry_or_disable(job, str(e))
            return
        except PushError as e:
            await log_error(
                f"Push-провайдер отклонил уведомление {job.notification_id}: {e}",
                extra={"notification_id": job.notification_id},
            )
            return

        await self._repository.mark_delivered(job.notification_id)
        await log_info(
            f"Push для уведомления {job.notification_id} доставлен (попытка {job.attempt})",
            type_msg=TypeMsg.DEBUG,
        )

    async def _retry_or_disable(self, job: PushJob, error: str) -> None:
        config = await self._runtime.get()
        if job.attempt >= config.push_retry_max:
            await self._repository.disable_token(job.token, error)
            await log_warning(
                f"Push для уведомления {job.notification_id} не доставлен за {job.attempt} попыток, токен отключён: {error}",
                extra={"notification_id": job.notification_id},
            )
            return

        delay = self.backoff(job.attempt)
        await log_info(
            f"Push для уведомления {job.notification_id} повторится через {delay:.1f}с: {error}",
            type_msg=TypeMsg.DEBUG,
        )
        task = asyncio.create_task(self._requeue_later(job, delay))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _requeue_later(self, job: PushJob, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self.enqueue(job):
            await log_warning(
                f"Очередь push заполнена, повтор для уведомления {job.notification_id} отброшен",
                extra={"notification_id": job.notification_id},
            )
