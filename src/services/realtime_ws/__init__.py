# src/services/realtime_ws/__init__.py
"""
Realtime WebSocket Gateway: живые каналы присутствия.

Обеспечивает:
- WebSocket каналы уведомлений, бесед и надзора администраторов
- Рассылку событий из Redis Pub/Sub в локальные каналы
- Ограниченные исходящие очереди и отключение медленных клиентов
"""
