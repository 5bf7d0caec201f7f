# sendbox/services/bookings_api/app.py
"""
FastAPI приложение Bookings Service.

Бизнес-ошибки (DomainError) отдаются как {success: false, error, field, code}
со своим кодом статуса; всё остальное логируется и отдаётся как 500
без внутренних подробностей.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from sendbox.common.errors import DomainError, ValidationError
from sendbox.common.logger import log_error, log_info, log_warning
from sendbox.common.constants import TypeMsg
from sendbox.config import settings
from sendbox.services.bookings_api.routes import router

SERVICE_NAME = "bookings_service"


class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""

    service: str
    status: str = "healthy"  # healthy, degraded
    version: str | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)


# === LIFESPAN ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Жизненный цикл приложения."""
    from sendbox.core.payments.gateway import build_gateway
    from sendbox.infra.database import close_db, get_db, init_db
    from sendbox.infra.event_bus import close_event_bus, get_event_bus, init_event_bus
    from sendbox.infra.redis_client import close_redis, get_redis, init_redis
    from sendbox.services.bookings_api.dependencies import cleanup_dependencies, init_dependencies

    await init_db()
    await init_redis()
    await init_event_bus()
    await init_dependencies(get_db(), get_redis(), get_event_bus(), build_gateway())
    await log_info(
        f"{SERVICE_NAME} запущен (платежи: {settings.payments.PAYMENTS_MODE.value})",
        type_msg=TypeMsg.INFO,
    )

    yield

    await cleanup_dependencies()
    await close_event_bus()
    await close_redis()
    await close_db()


# === ERROR HANDLERS ===

async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.http_status >= 500:
        await log_error(
            f"{request.method} {request.url.path}: {exc.message}",
            extra={"code": exc.code},
        )
    else:
        await log_warning(
            f"{request.method} {request.url.path}: {exc.code} ({exc.message})",
            extra={"code": exc.code, "field": exc.field},
        )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationError.from_errors(list(exc.errors()))
    return JSONResponse(status_code=error.http_status, content=error.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    await log_error(
        f"Необработанная ошибка {request.method} {request.url.path}: {exc}",
        extra={"path": request.url.path},
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Внутренняя ошибка сервера", "field": None, "code": "internal_error"},
    )


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Args:
        use_lifespan: Подключать ли инфраструктуру при старте (в тестах False)
    """
    application = FastAPI(
        title="Bookings Service",
        description="Бронирования, эскроу и выплаты между отправителями и путешественниками.",
        version=settings.system.VERSION,
        lifespan=lifespan if use_lifespan else None,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    application.add_exception_handler(DomainError, domain_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_handler)
    application.add_exception_handler(Exception, unhandled_error_handler)
    application.include_router(router, prefix="/api/v1")

    @application.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check() -> HealthStatus:
        """Проверка здоровья сервиса и его зависимостей."""
        from sendbox.infra.database import get_db
        from sendbox.infra.event_bus import get_event_bus
        from sendbox.infra.redis_client import get_redis

        checks = {
            "postgres": await get_db().health_check(),
            "redis": await get_redis().health_check(),
            "rabbitmq": await get_event_bus().health_check(),
        }
        deps = {name: "healthy" if ok else "unhealthy" for name, ok in checks.items()}
        overall = "healthy" if all(checks.values()) else "degraded"

        return HealthStatus(
            service=SERVICE_NAME,
            status=overall,
            version=settings.system.VERSION,
            dependencies=deps,
        )

    return application


app = create_app()


# === STARTUP ===

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.deployment.BOOKINGS_SERVICE_HOST, port=settings.deployment.BOOKINGS_SERVICE_PORT)
