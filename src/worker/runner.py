# src/worker/runner.py
"""
Запускалка фоновых компонентов: воркер аудита и планировщик задач.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List, Optional

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.worker.audit import AuditWorker
from src.worker.base import BaseWorker
from src.worker.scheduler import build_scheduler

if TYPE_CHECKING:
    from src.core.environment import Environment


async def run_workers(env: "Environment", stop_event: Optional[asyncio.Event] = None) -> None:
    """
    Запускает воркеры и планировщик до сигнала остановки.

    Args:
        env: Запущенное окружение процесса
        stop_event: Событие остановки (по умолчанию ждём отмены задачи)
    """
    workers: List[BaseWorker] = [AuditWorker(env.event_bus, env.db)]
    scheduler = build_scheduler(env)

    try:
        for worker in workers:
            await worker.start()
        await scheduler.start()

        await log_info(
            f"Запущено {len(workers)} воркеров и {len(scheduler.jobs)} периодических задач",
            type_msg=TypeMsg.INFO,
        )
        await (stop_event or asyncio.Event()).wait()
    except asyncio.CancelledError:
        await log_info("Воркеры: получен сигнал остановки", type_msg=TypeMsg.INFO)
        raise
    finally:
        await scheduler.stop()
        for worker in workers:
            await worker.stop()
        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)
