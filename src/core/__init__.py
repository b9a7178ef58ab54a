# src/core/__init__.py
"""
Доменный слой маркетплейса.
Кошелёк, платежи, доступность, бронирования, уведомления, переписка.
"""
