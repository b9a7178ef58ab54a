# src/core/auth/tokens.py
"""
JWT токены доступа (HS256, python-jose).

Claims: user_id, user_type, exp (unix seconds), type (access | refresh).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable

from jose import JWTError, jwt

from src.common.constants import ActorKind, TokenType, TypeMsg
from src.common.errors import ForbiddenError
from src.common.logger import log_info, log_warning
from src.core.users.models import Actor

if TYPE_CHECKING:
    from src.config.loader import AuthSettings
    from src.core.users.repository import UserRepository


class AuthenticationError(ForbiddenError):
    """Токен отсутствует, просрочен или подделан."""


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    user_type: ActorKind
    exp: int
    type: TokenType


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Выпуск, проверка и обновление токенов."""

    def __init__(
        self,
        config: "AuthSettings",
        users: "UserRepository",
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if not config.JWT_SECRET:
            raise ValueError("JWT_SECRET не задан")
        self._secret = config.JWT_SECRET
        self._algorithm = config.JWT_ALGORITHM
        self._access_ttl = timedelta(minutes=config.ACCESS_TOKEN_TTL_MINUTES)
        self._refresh_ttl = timedelta(days=config.REFRESH_TOKEN_TTL_DAYS)
        self._users = users
        self._clock = clock

    def issue(self, actor: Actor, token_type: TokenType = TokenType.ACCESS) -> str:
        ttl = self._access_ttl if token_type == TokenType.ACCESS else self._refresh_ttl
        claims: dict[str, Any] = {
            "user_id": actor.id,
            "user_type": actor.kind.value,
            "exp": int((self._clock() + ttl).timestamp()),
            "type": token_type.value,
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def issue_pair(self, actor: Actor) -> TokenPair:
        return TokenPair(
            access_token=self.issue(actor, TokenType.ACCESS),
            refresh_token=self.issue(actor, TokenType.REFRESH),
            expires_in=int(self._access_ttl.total_seconds()),
        )

    def verify(self, token: str, expected: TokenType = TokenType.ACCESS) -> TokenClaims:
        """
        Проверяет подпись, срок и тип токена.

        Raises:
            AuthenticationError: Токен недействителен
        """
        if not token:
            raise AuthenticationError("Токен не передан")
        try:
            # exp проверяется по собственным часам сервиса
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError as e:
            raise AuthenticationError("Недействительный токен") from e

        try:
            claims = TokenClaims(
                user_id=int(payload["user_id"]),
                user_type=ActorKind(payload["user_type"]),
                exp=int(payload["exp"]),
                type=TokenType(payload["type"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AuthenticationError("Неполные claims токена") from e

        if claims.exp <= int(self._clock().timestamp()):
            raise AuthenticationError("Токен просрочен")
        if claims.type != expected:
            raise AuthenticationError(f"Ожидался токен {expected.value}", {"type": claims.type.value})
        return claims

    async def authenticate(self, token: str) -> Actor:
        """
        Участник по access-токену.

        Raises:
            AuthenticationError: Токен недействителен или участник неактивен
        """
        claims = self.verify(token, TokenType.ACCESS)
        return await self._active_actor(claims)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """
        Новая пара токенов по refresh-токену.

        Raises:
            AuthenticationError: Токен недействителен или участник неактивен
        """
        claims = self.verify(refresh_token, TokenType.REFRESH)
        actor = await self._active_actor(claims)
        await log_info(f"Токены обновлены для участника {actor.id}", type_msg=TypeMsg.DEBUG)
        return self.issue_pair(actor)

    async def _active_actor(self, claims: TokenClaims) -> Actor:
        actor = await self._users.get_by_id(claims.user_id)
        if actor is None or not actor.active:
            await log_warning(f"Токен участника {claims.user_id}, который не найден или неактивен")
            raise AuthenticationError("Участник не найден или неактивен", {"user_id": claims.user_id})
        return actor
