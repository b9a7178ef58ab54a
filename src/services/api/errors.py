# src/services/api/errors.py
"""
Отображение ошибок ядра в HTTP ответы.
"""

from __future__ import annotations

from dataclasses import is_dataclass
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.common.constants import ErrorKind
from src.common.errors import AlreadyTerminalError, CoreError
from src.common.logger import log_critical, log_error, log_warning
from src.shared.models.common import ErrorResponse

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICTING_TRANSITION: 409,
    ErrorKind.INSUFFICIENT_FUNDS: 402,
    ErrorKind.SIGNATURE_MISMATCH: 400,
    ErrorKind.AMOUNT_MISMATCH: 400,
    ErrorKind.GATEWAY_FAILURE: 502,
    ErrorKind.ALREADY_TERMINAL: 200,
    ErrorKind.INTERNAL: 500,
}


def to_jsonable(value: Any) -> Any:
    """Результат сервиса в JSON-совместимый вид."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if is_dataclass(value):
        raise TypeError(f"{type(value).__name__} не сериализуется без to_dict()")
    return value


async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
    status = STATUS_BY_KIND.get(exc.kind, 500)

    # Повтор завершённой операции отвечает прежним результатом
    if isinstance(exc, AlreadyTerminalError) and exc.result is not None:
        return JSONResponse(status_code=status, content=to_jsonable(exc.result))

    if exc.kind == ErrorKind.INTERNAL:
        await log_critical(
            f"{request.method} {request.url.path}: {exc.message}",
            extra={"kind": exc.kind.value, "details": exc.details},
        )
    elif status >= 500:
        await log_error(
            f"{request.method} {request.url.path} -> {status}: {exc.message}",
            extra={"kind": exc.kind.value, "details": exc.details},
        )
    else:
        await log_warning(
            f"{request.method} {request.url.path} -> {status}: {exc.message}",
            extra={"kind": exc.kind.value},
        )

    body = ErrorResponse.from_error(exc, request.headers.get("X-Request-ID"))
    return JSONResponse(status_code=status, content=body.model_dump(mode="json"))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CoreError, core_error_handler)
