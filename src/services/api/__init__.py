# src/services/api/__init__.py
"""HTTP API маркетплейса."""
