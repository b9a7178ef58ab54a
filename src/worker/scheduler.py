# src/worker/scheduler.py
"""
Планировщик периодических задач на APScheduler.

Каждая задача перед запуском захватывает advisory-лок PostgreSQL
с ключом CRC32 от имени задачи. Если лок занят другим процессом,
запуск пропускается до следующего срока.
"""

from __future__ import annotations

import asyncio
import time
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.util import undefined

from src.common.constants import NotificationKind, TypeMsg
from src.common.errors import CoreError
from src.common.logger import log_critical, log_error, log_info
from src.infra.event_bus import DomainEvent, EventTypes

if TYPE_CHECKING:
    from src.core.environment import Environment
    from src.infra.database import DatabaseManager


JobFunc = Callable[[], Awaitable[Any]]


def job_lock_key(name: str) -> int:
    """Стабильный ключ advisory-лока для задачи."""
    return zlib.crc32(name.encode("utf-8"))


@dataclass
class ScheduledJob:
    name: str
    interval: float
    func: JobFunc
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    last_duration: Optional[float] = None


class Scheduler:
    """
    Обёртка над AsyncIOScheduler.

    Один экземпляр задачи за раз внутри процесса (max_instances=1),
    пропущенные сроки схлопываются в один запуск (coalesce).
    Между процессами запуски разводит advisory-лок.
    """

    def __init__(self, db: "DatabaseManager", misfire_grace_seconds: int = 60) -> None:
        self.db = db
        self.jobs: dict[str, ScheduledJob] = {}
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_seconds,
            },
            timezone="UTC",
        )

    def add_job(self, name: str, interval: float, func: JobFunc, run_immediately: bool = True) -> ScheduledJob:
        if name in self.jobs:
            raise ValueError(f"Задача {name} уже зарегистрирована")
        job = ScheduledJob(name=name, interval=interval, func=func)
        self.scheduler.add_job(
            self.run_job,
            trigger=IntervalTrigger(seconds=interval),
            args=[job],
            id=name,
            name=name,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc) if run_immediately else undefined,
        )
        self.jobs[name] = job
        return job

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        await log_info(
            f"Планировщик запущен: {', '.join(self.jobs)}",
            type_msg=TypeMsg.INFO,
        )

    async def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        await log_info("Планировщик остановлен", type_msg=TypeMsg.INFO)

    async def run_job(self, job: ScheduledJob) -> bool:
        """
        Один запуск задачи под advisory-локом.

        Returns:
            True, если задача выполнилась (успешно или с ошибкой)
        """
        async with self.db.advisory_lock(job_lock_key(job.name)) as acquired:
            if not acquired:
                job.skipped += 1
                await log_info(f"Задача {job.name} выполняется в другом процессе, пропуск", type_msg=TypeMsg.DEBUG)
                return False

            started = time.monotonic()
            try:
                result = await job.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                job.failures += 1
                await log_error(
                    f"Задача {job.name} завершилась ошибкой: {e}",
                    extra={"job": job.name, "duration": round(time.monotonic() - started, 3)},
                    exc_info=True,
                )
                return True

            job.runs += 1
            job.last_duration = time.monotonic() - started
            await log_info(
                f"Задача {job.name} выполнена за {job.last_duration:.3f}с, результат: {result}",
                type_msg=TypeMsg.DEBUG,
                extra={"job": job.name},
            )
            return True


# =============================================================================
# ЗАДАЧИ
# =============================================================================

class MaintenanceJobs:
    """Тела периодических задач поверх сервисов окружения."""

    def __init__(self, env: "Environment") -> None:
        self.env = env

    async def expire_holds(self) -> int:
        return await self.env.bookings.expire_holds()

    async def expire_quotes(self) -> int:
        return await self.env.bookings.expire_quotes()

    async def retry_pending_orders(self) -> int:
        return await self.env.payments.retry_pending_orders()

    async def resume_paid_bookings(self) -> int:
        return await self.env.bookings.resume_paid_bookings()

    async def withdrawal_reminders(self) -> int:
        """Напоминание администраторам о давно ожидающих выводах."""
        config = await self.env.runtime.get()
        hours = config.withdrawal_reminder_after_hours
        pending = await self.env.payments.pending_withdrawals_older_than(hours)
        if not pending:
            return 0

        total = sum(p.amount for p in pending)
        try:
            await self.env.notifications.notify_admins(
                NotificationKind.WITHDRAWAL_PENDING_REMINDER,
                "Pending withdrawals",
                f"{len(pending)} withdrawal request(s) totalling ₹{total} are waiting for more than {hours} hours.",
                {"payment_ids": [p.id for p in pending], "total": str(total)},
            )
        except CoreError as e:
            await log_error(f"Не удалось напомнить о выводах: {e.message}")
        return len(pending)

    async def reconcile_balances(self) -> int:
        """Сверка балансов с цепочками записей кошелька."""
        drifts = await self.env.ledger.find_drifts()
        for drift in drifts:
            await log_critical(
                f"Расхождение баланса пользователя {drift.user_id}",
                extra=drift.to_dict(),
            )
            await self.env.event_bus.publish(DomainEvent(
                event_type=EventTypes.LEDGER_DRIFT,
                payload={"entity_kind": "user", "entity_id": drift.user_id, **drift.to_dict()},
            ))

        if drifts:
            try:
                await self.env.notifications.notify_admins(
                    NotificationKind.BALANCE_DRIFT,
                    "Wallet balance drift",
                    f"{len(drifts)} wallet(s) disagree with their ledger.",
                    {"user_ids": [d.user_id for d in drifts]},
                )
            except CoreError as e:
                await log_error(f"Не удалось уведомить о расхождении балансов: {e.message}")
        else:
            await log_info("Балансы сходятся с цепочками записей", type_msg=TypeMsg.DEBUG)
        return len(drifts)


def build_scheduler(env: "Environment") -> Scheduler:
    """Планировщик со всеми задачами обслуживания."""
    intervals = env.settings.scheduler
    jobs = MaintenanceJobs(env)
    scheduler = Scheduler(env.db, misfire_grace_seconds=intervals.MISFIRE_GRACE_SECONDS)
    scheduler.add_job("expire_holds", intervals.EXPIRE_HOLDS_INTERVAL, jobs.expire_holds)
    scheduler.add_job("expire_quotes", intervals.EXPIRE_QUOTES_INTERVAL, jobs.expire_quotes)
    scheduler.add_job("withdrawal_reminders", intervals.WITHDRAWAL_REMINDERS_INTERVAL, jobs.withdrawal_reminders)
    scheduler.add_job("reconcile_balances", intervals.RECONCILE_BALANCES_INTERVAL, jobs.reconcile_balances)
    scheduler.add_job("retry_pending_orders", intervals.RETRY_GATEWAY_ORDERS_INTERVAL, jobs.retry_pending_orders)
    scheduler.add_job("resume_paid_bookings", intervals.RESUME_PAID_BOOKINGS_INTERVAL, jobs.resume_paid_bookings)
    return scheduler
