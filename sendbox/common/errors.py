# sendbox/common/errors.py
"""
Иерархия бизнес-ошибок.

Сервисы поднимают эти исключения вместо голых ValueError; HTTP-слой
превращает их в ответ {success: false, error, field, code} с нужным
кодом статуса. Всё, что не является DomainError, считается
инфраструктурным сбоем и отдаётся клиенту как обезличенная 500.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Базовая бизнес-ошибка."""

    code: str = "domain_error"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Тело ответа для клиента."""
        body: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "field": self.field,
            "code": self.code,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(DomainError):
    """Некорректные входные данные (до любых побочных эффектов)."""
    code = "validation_error"
    http_status = 400

    @classmethod
    def from_errors(cls, errors: list[dict[str, Any]]) -> "ValidationError":
        """Первая ошибка pydantic в виде {error, field}."""
        if not errors:
            return cls("Некорректные данные")
        first = errors[0]
        loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
        return cls(
            first.get("msg", "Некорректные данные"),
            field=loc[-1] if loc else None,
        )


class AuthorizationError(DomainError):
    """Нет аутентификации, чужой ресурс или отказ шлюза допуска."""
    code = "forbidden"
    http_status = 403


class AuthenticationError(AuthorizationError):
    """Запрос без контекста пользователя."""
    code = "unauthenticated"
    http_status = 401


class NotFoundError(DomainError):
    code = "not_found"
    http_status = 404


class CapacityError(DomainError):
    """Недостаточно свободного веса в объявлении."""
    code = "insufficient_capacity"
    http_status = 409


class ConflictError(DomainError):
    """Повторное действие, которое нельзя свести к идемпотентному ответу."""
    code = "conflict"
    http_status = 409


class StateError(DomainError):
    """Переход из несовместимого статуса."""
    code = "invalid_state"
    http_status = 409


class ExternalServiceError(DomainError):
    """Платёжный провайдер недоступен или отклонил вызов."""
    code = "external_service_error"
    http_status = 502

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["retryable"] = self.retryable
        return body


class EventAuthenticityError(DomainError):
    """Подпись входящего события провайдера не прошла проверку."""
    code = "invalid_signature"
    http_status = 400
