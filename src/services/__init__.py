# src/services/__init__.py
"""
Внешние поверхности приложения.

Сервисы:
- api: HTTP API поверх доменного слоя (FastAPI)
- realtime_ws: WebSocket-шлюз присутствия, события приходят через Redis Pub/Sub
"""

__all__: list[str] = []
