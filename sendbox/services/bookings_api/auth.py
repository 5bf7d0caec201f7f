# sendbox/services/bookings_api/auth.py
"""
Контекст пользователя из заголовков шлюза аутентификации.

Сессию проверяет внешний шлюз; сюда приходят уже доверенные
X-User-Id и X-User-Role.
"""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import Header

from sendbox.common.constants import UserRole
from sendbox.common.errors import AuthenticationError
from sendbox.core.profiles.models import AuthContext

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"


def get_auth_context(
    x_user_id: Annotated[str | None, Header(alias=USER_ID_HEADER)] = None,
    x_user_role: Annotated[str | None, Header(alias=USER_ROLE_HEADER)] = None,
) -> AuthContext:
    """
    Raises:
        AuthenticationError: Заголовок отсутствует или не UUID
    """
    if not x_user_id:
        raise AuthenticationError("Требуется аутентификация", field=USER_ID_HEADER)
    try:
        user_id = str(UUID(x_user_id))
    except ValueError as e:
        raise AuthenticationError("Некорректный идентификатор пользователя", field=USER_ID_HEADER) from e

    try:
        role = UserRole(x_user_role) if x_user_role else UserRole.USER
    except ValueError:
        role = UserRole.USER

    return AuthContext(user_id=user_id, role=role)
