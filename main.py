#!/usr/bin/env python3
# main.py
"""
Главная точка входа TreesIndia.
Запускает HTTP API, Realtime WebSocket Gateway или воркеры в зависимости от аргументов.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import TYPE_CHECKING

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg
from src.core.environment import build_environment

if TYPE_CHECKING:
    from fastapi import FastAPI
    from src.core.environment import Environment


VALID_MODES = ("api", "realtime_ws", "worker", "all")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def serve_app(app: "FastAPI", name: str, host: str, port: int) -> None:
    """Запускает FastAPI приложение через uvicorn в текущем event loop."""
    import uvicorn

    await log_info(f"Запуск {name} на {host}:{port}...", type_msg=TypeMsg.INFO)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="debug" if settings.system.DEBUG else "info",
    )
    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info(f"{name}: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_api(env: "Environment | None" = None) -> None:
    """HTTP API. Без env приложение само собирает окружение в lifespan."""
    from src.services.api.app import create_app

    await serve_app(
        create_app(env),
        "HTTP API",
        settings.deployment.API_HOST,
        settings.deployment.API_PORT,
    )


async def run_realtime_ws(env: "Environment | None" = None) -> None:
    """Realtime WebSocket Gateway."""
    from src.services.realtime_ws.app import create_app

    await serve_app(
        create_app(env),
        "Realtime WS Gateway",
        settings.deployment.REALTIME_WS_HOST,
        settings.deployment.REALTIME_WS_PORT,
    )


async def run_worker(env: "Environment | None" = None) -> None:
    """Воркер аудита и планировщик периодических задач."""
    from src.worker.runner import run_workers

    owns_env = env is None
    if owns_env:
        env = build_environment(settings)
        await env.start(apply_schema=True)
    try:
        await run_workers(env, _shutdown_event)
    finally:
        if owns_env:
            await env.close()


async def run_all() -> None:
    """Все компоненты в одном процессе на общем окружении."""
    global _running_tasks

    env = build_environment(settings)
    await env.start(apply_schema=True)
    _running_tasks = [
        asyncio.create_task(run_api(env), name="api"),
        asyncio.create_task(run_realtime_ws(env), name="realtime_ws"),
        asyncio.create_task(run_worker(env), name="worker"),
    ]
    try:
        await asyncio.gather(*_running_tasks, return_exceptions=True)
    except asyncio.CancelledError:
        await log_info("Отмена всех компонентов...", type_msg=TypeMsg.INFO)
        for task in _running_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*_running_tasks, return_exceptions=True)
        raise
    finally:
        await env.close()


def resolve_mode(mode: str | None) -> str:
    """Режим из аргумента, RUN_DEV_MODE или COMPONENT_MODE."""
    if mode is not None:
        return mode
    if settings.system.RUN_DEV_MODE:
        return "all"
    component_mode = settings.system.COMPONENT_MODE
    if component_mode in VALID_MODES:
        return component_mode
    raise ValueError(f"Неизвестный COMPONENT_MODE: {component_mode!r}")


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (api, realtime_ws, worker, all).
              Если None, определяется из настроек.
    """
    setup_logging()
    setup_signal_handlers()

    mode = resolve_mode(mode)
    await log_info(
        f"TreesIndia v{settings.system.VERSION}, запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    try:
        if mode == "api":
            await run_api()
        elif mode == "realtime_ws":
            await run_realtime_ws()
        elif mode == "worker":
            await run_worker()
        elif mode == "all":
            await run_all()
        else:
            await log_error(f"Неизвестный режим: {mode}")
    except asyncio.CancelledError:
        await log_info("Задача отменена, выполняется graceful shutdown", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        raise
    finally:
        await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)


def print_usage() -> None:
    """Выводит справку по использованию."""
    print(f"""
TreesIndia v{settings.system.VERSION}, ядро маркетплейса услуг

Использование:
    python main.py [mode]

Режимы:
    api           : HTTP API (:{settings.deployment.API_PORT})
    realtime_ws   : Realtime WebSocket Gateway (:{settings.deployment.REALTIME_WS_PORT})
    worker        : воркер аудита и планировщик задач
    all           : все компоненты в одном процессе

Без аргумента режим берётся из RUN_DEV_MODE / COMPONENT_MODE.
    """)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
