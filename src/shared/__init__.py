# src/shared/__init__.py
"""
Общие модели ответов для HTTP API и WebSocket-шлюза.
"""

__all__: list[str] = []
