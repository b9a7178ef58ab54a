# src/core/auth/__init__.py
"""Аутентификация по JWT."""

from src.core.auth.tokens import AuthenticationError, TokenClaims, TokenPair, TokenService

__all__ = ["AuthenticationError", "TokenClaims", "TokenPair", "TokenService"]
