# sendbox/services/bookings_api/routes.py
"""
HTTP-маршруты Bookings Service.

Endpoints (prefix /api/v1):
- POST   /bookings                          - создать бронирование
- POST   /bookings/{id}/accept              - принять (путешественник)
- POST   /bookings/{id}/refuse              - отклонить (путешественник)
- POST   /bookings/{id}/pay                 - оплатить (отправитель)
- POST   /bookings/{id}/simulate-payment    - симуляция оплаты
- POST   /bookings/{id}/in-transit          - посылка в пути
- POST   /bookings/{id}/delivered           - посылка доставлена
- POST   /bookings/{id}/confirm-delivery    - подтвердить получение
- POST   /bookings/{id}/cancel              - отменить
- POST   /bookings/{id}/dispute             - открыть спор
- DELETE /bookings/{id}                     - удалить отменённое
- POST   /webhooks/payment                  - события платёжного провайдера
- POST   /payouts/account                   - подключить выплаты
- GET    /payouts/account/status            - статус выплат
- GET    /notifications                     - непрочитанные уведомления
- POST   /notifications/{id}/read           - отметить прочитанным
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request

from sendbox.core.bookings.models import Booking, BookingCreateDTO, ReasonDTO
from sendbox.core.bookings.service import BookingService
from sendbox.core.notifications.service import NotificationService
from sendbox.core.payments.reconciler import PaymentEventReconciler
from sendbox.core.profiles.models import AuthContext
from sendbox.core.profiles.service import PayoutOnboardingService
from sendbox.services.bookings_api.auth import get_auth_context
from sendbox.services.bookings_api.dependencies import (
    get_booking_service,
    get_notification_service,
    get_onboarding_service,
    get_reconciler,
)

router = APIRouter()

Auth = Annotated[AuthContext, Depends(get_auth_context)]
Bookings = Annotated[BookingService, Depends(get_booking_service)]


def _booking_body(booking: Booking, **extra: Any) -> dict[str, Any]:
    return {"success": True, "booking": booking.model_dump(mode="json"), **extra}


# === BOOKINGS ===

@router.post("/bookings", status_code=201, tags=["Bookings"], summary="Создать бронирование")
async def create_booking(request: BookingCreateDTO, ctx: Auth, service: Bookings) -> dict:
    """
    Резервирует вес в объявлении и создаёт бронирование pending.
    Цена фиксируется в момент создания.
    """
    booking = await service.create_booking(ctx, request)
    return _booking_body(booking)


@router.post("/bookings/{booking_id}/accept", tags=["Bookings"], summary="Принять бронирование")
async def accept_booking(booking_id: UUID, ctx: Auth, service: Bookings) -> dict:
    return _booking_body(await service.accept_booking(ctx, str(booking_id)))


@router.post("/bookings/{booking_id}/refuse", tags=["Bookings"], summary="Отклонить бронирование")
async def refuse_booking(booking_id: UUID, request: ReasonDTO, ctx: Auth, service: Bookings) -> dict:
    return _booking_body(await service.refuse_booking(ctx, str(booking_id), request.reason))


@router.post("/bookings/{booking_id}/pay", tags=["Payments"], summary="Оплатить бронирование")
async def pay_booking(booking_id: UUID, ctx: Auth, service: Bookings) -> dict:
    """
    Возвращает client_secret удержания.
    Повторный вызов после оплаты отвечает already_paid=true.
    """
    result = await service.pay(ctx, str(booking_id))
    return {"success": True, **asdict(result)}


@router.post("/bookings/{booking_id}/simulate-payment", tags=["Payments"], summary="Симуляция оплаты")
async def simulate_payment(booking_id: UUID, ctx: Auth, service: Bookings) -> dict:
    return _booking_body(await service.simulate_payment(ctx, str(booking_id)))


@router.post("/bookings/{booking_id}/in-transit", tags=["Bookings"], summary="Посылка в пути")
async def mark_in_transit(booking_id: UUID, ctx: Auth, service: Bookings) -> dict:
    return _booking_body(await service.mark_in_transit(ctx, str(booking_id)))


@router.post("/bookings/{booking_id}/delivered", tags=["Bookings"], summary="Посылка доставлена")
async def mark_delivered(booking_id: UUID, ctx: Auth, service: Bookings) -> dict:
    return _booking_body(await service.mark_delivered(ctx, str(booking_id)))


@router.post("/bookings/{booking_id}/confirm-delivery", tags=["Bookings"], summary="Подтвердить получение")
async def confirm_delivery(booking_id: UUID, ctx: Auth, service: Bookings) -> dict:
    """Завершает бронирование и переводит средства путешественнику."""
    result = await service.confirm_delivery(ctx, str(booking_id))
    return _booking_body(
        result.booking,
        already_completed=result.already_completed,
        payout=result.payout.outcome.value if result.payout else None,
    )


@router.post("/bookings/{booking_id}/cancel", tags=["Bookings"], summary="Отменить бронирование")
async def cancel_booking(
    booking_id: UUID,
    ctx: Auth,
    service: Bookings,
    request: ReasonDTO | None = None,
) -> dict:
    result = await service.cancel_booking(ctx, str(booking_id), request.reason if request else None)
    return _booking_body(
        result.booking,
        already_cancelled=result.already_cancelled,
        refunded=result.refunded,
    )


@router.post("/bookings/{booking_id}/dispute", tags=["Bookings"], summary="Открыть спор")
async def open_dispute(booking_id: UUID, request: ReasonDTO, ctx: Auth, service: Bookings) -> dict:
    return _booking_body(await service.open_dispute(ctx, str(booking_id), request.reason))


@router.delete("/bookings/{booking_id}", tags=["Bookings"], summary="Удалить отменённое бронирование")
async def delete_booking(booking_id: UUID, ctx: Auth, service: Bookings) -> dict:
    await service.delete_booking(ctx, str(booking_id))
    return {"success": True}


# === WEBHOOKS ===

@router.post("/webhooks/payment", tags=["Webhooks"], summary="События платёжного провайдера")
async def payment_webhook(
    request: Request,
    reconciler: Annotated[PaymentEventReconciler, Depends(get_reconciler)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> dict:
    """Тело читается сырым: подпись проверяется по исходным байтам."""
    payload = await request.body()
    outcome = await reconciler.handle_webhook(payload, stripe_signature)
    return {"success": True, "received": True, **outcome.model_dump(mode="json")}


# === PAYOUTS ===

@router.post("/payouts/account", tags=["Payouts"], summary="Подключить выплаты")
async def create_payout_account(
    ctx: Auth,
    service: Annotated[PayoutOnboardingService, Depends(get_onboarding_service)],
) -> dict:
    link = await service.create_payout_account(ctx)
    return {"success": True, **asdict(link)}


@router.get("/payouts/account/status", tags=["Payouts"], summary="Статус выплат")
async def payout_account_status(
    ctx: Auth,
    service: Annotated[PayoutOnboardingService, Depends(get_onboarding_service)],
) -> dict:
    profile = await service.refresh_payout_status(ctx)
    return {
        "success": True,
        "payout_status": profile.payout_status.value,
        "payouts_enabled": profile.payouts_enabled,
        "requirements": profile.payout_requirements,
    }


# === NOTIFICATIONS ===

@router.get("/notifications", tags=["Notifications"], summary="Непрочитанные уведомления")
async def list_notifications(
    ctx: Auth,
    service: Annotated[NotificationService, Depends(get_notification_service)],
    limit: int = Query(default=50, ge=1, le=100),
) -> dict:
    notifications = await service.list_unread(ctx.user_id, limit=limit)
    return {
        "success": True,
        "notifications": [n.model_dump(mode="json") for n in notifications],
    }


@router.post("/notifications/{notification_id}/read", tags=["Notifications"], summary="Отметить прочитанным")
async def mark_notification_read(
    notification_id: UUID,
    ctx: Auth,
    service: Annotated[NotificationService, Depends(get_notification_service)],
) -> dict:
    notification = await service.mark_read(ctx.user_id, str(notification_id))
    return {"success": True, "notification": notification.model_dump(mode="json")}
