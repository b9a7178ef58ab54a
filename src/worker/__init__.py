# src/worker/__init__.py
"""
Фоновые компоненты: воркер аудита и планировщик задач.
"""

from src.worker.audit import AuditWorker
from src.worker.base import BaseWorker
from src.worker.runner import run_workers
from src.worker.scheduler import MaintenanceJobs, ScheduledJob, Scheduler, build_scheduler

__all__ = [
    "AuditWorker",
    "BaseWorker",
    "MaintenanceJobs",
    "ScheduledJob",
    "Scheduler",
    "build_scheduler",
    "run_workers",
]
