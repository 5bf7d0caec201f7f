# sendbox/core/payments/repository.py
"""
Репозиторий денежных записей: платежи, журнал транзакций, переводы
и обработанные события провайдера.
"""

from __future__ import annotations

from typing import Any, Optional

from asyncpg import Record

from sendbox.common.constants import (
    TransactionStatus,
    TransactionType,
    TransferStatus,
    payment_statuses_after,
)
from sendbox.core.payments.models import Payment, Transfer
from sendbox.infra.database import DatabaseManager


class PaymentRepository:
    """Репозиторий платежей и переводов."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # ===== ПЛАТЕЖИ =====

    async def upsert_payment(self, payment: Payment) -> None:
        """Существующий платёж не откатывается из succeeded/refund_* назад."""
        await self._db.execute(
            """
            INSERT INTO payments (
                booking_id, payment_intent_id, amount_total_cents, platform_fee_cents,
                currency, status, last_error
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (payment_intent_id) DO UPDATE
            SET amount_total_cents = EXCLUDED.amount_total_cents,
                platform_fee_cents = EXCLUDED.platform_fee_cents,
                status = CASE
                    WHEN payments.status = ANY($8::text[]) THEN payments.status
                    ELSE EXCLUDED.status
                END,
                updated_at = NOW()
            """,
            payment.booking_id,
            payment.payment_intent_id,
            payment.amount_total_cents,
            payment.platform_fee_cents,
            payment.currency,
            payment.status,
            payment.last_error,
            payment_statuses_after(payment.status),
        )

    async def get_latest_for_booking(self, booking_id: str) -> Optional[Payment]:
        row = await self._db.fetchrow(
            """
            SELECT booking_id, payment_intent_id, amount_total_cents, platform_fee_cents,
                   currency, status, last_error
            FROM payments
            WHERE booking_id = $1
            ORDER BY created_at DESC
            LIMIT 1
            """,
            booking_id,
        )
        return self._row_to_payment(row) if row else None

    async def update_payment_status(
        self,
        payment_intent_id: str,
        status: str,
        last_error: str | None = None,
    ) -> bool:
        """
        Обновляет статус платежа без отката назад.

        Returns:
            False, если платежа нет или он уже в более позднем статусе
        """
        result = await self._db.execute(
            """
            UPDATE payments
            SET status = $2, last_error = COALESCE($3, last_error), updated_at = NOW()
            WHERE payment_intent_id = $1 AND NOT (status = ANY($4::text[]))
            """,
            payment_intent_id,
            status,
            last_error,
            payment_statuses_after(status),
        )
        return result == "UPDATE 1"

    # ===== ЖУРНАЛ ТРАНЗАКЦИЙ =====

    async def record_transaction(
        self,
        *,
        booking_id: str | None,
        user_id: str | None,
        type: TransactionType,
        status: TransactionStatus,
        amount_cents: int,
        currency: str,
        provider_reference: str,
    ) -> bool:
        """
        Добавляет запись журнала или продвигает статус существующей.

        Запись pending принимает любой итог, failed может стать succeeded,
        succeeded не меняется.

        Returns:
            False, если запись с этой ссылкой провайдера и типом уже в итоговом статусе
        """
        result = await self._db.execute(
            """
            INSERT INTO transactions (
                booking_id, user_id, type, status, amount_cents, currency, provider_reference
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (provider_reference, type) DO UPDATE
            SET status = EXCLUDED.status, amount_cents = EXCLUDED.amount_cents
            WHERE transactions.status <> EXCLUDED.status
              AND (
                  transactions.status = 'pending'
                  OR (transactions.status = 'failed' AND EXCLUDED.status = 'succeeded')
              )
            """,
            booking_id,
            user_id,
            type.value,
            status.value,
            amount_cents,
            currency,
            provider_reference,
        )
        return result == "INSERT 0 1"

    # ===== ПЕРЕВОДЫ =====

    async def get_active_transfer(self, booking_id: str) -> Optional[Transfer]:
        row = await self._db.fetchrow(
            """
            SELECT id, booking_id, traveler_id, stripe_transfer_id, amount_cents, currency, status, reason
            FROM transfers
            WHERE booking_id = $1 AND status = ANY($2::text[])
            LIMIT 1
            """,
            booking_id,
            [TransferStatus.PENDING.value, TransferStatus.PAID.value],
        )
        return self._row_to_transfer(row) if row else None

    async def insert_transfer(self, transfer: Transfer) -> bool:
        """False, если по бронированию уже есть действующий перевод."""
        result = await self._db.execute(
            """
            INSERT INTO transfers (
                booking_id, traveler_id, stripe_transfer_id, amount_cents, currency, status, reason
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT DO NOTHING
            """,
            transfer.booking_id,
            transfer.traveler_id,
            transfer.stripe_transfer_id,
            transfer.amount_cents,
            transfer.currency,
            transfer.status,
            transfer.reason,
        )
        return result == "INSERT 0 1"

    # ===== ОБРАБОТАННЫЕ СОБЫТИЯ =====

    async def is_event_processed(self, event_id: str) -> bool:
        value = await self._db.fetchval(
            "SELECT 1 FROM processed_events WHERE event_id = $1",
            event_id,
        )
        return value is not None

    async def mark_event_processed(self, event_id: str, event_type: str) -> None:
        await self._db.execute(
            """
            INSERT INTO processed_events (event_id, event_type)
            VALUES ($1, $2)
            ON CONFLICT (event_id) DO NOTHING
            """,
            event_id,
            event_type,
        )

    @staticmethod
    def _row_to_payment(row: Record) -> Payment:
        return Payment(
            booking_id=str(row["booking_id"]),
            payment_intent_id=row["payment_intent_id"],
            amount_total_cents=row["amount_total_cents"],
            platform_fee_cents=row["platform_fee_cents"],
            currency=row["currency"].strip(),
            status=row["status"],
            last_error=row["last_error"],
        )

    @staticmethod
    def _row_to_transfer(row: Record) -> Transfer:
        data: dict[str, Any] = dict(row)
        data["id"] = str(data["id"])
        data["booking_id"] = str(data["booking_id"])
        data["traveler_id"] = str(data["traveler_id"])
        data["currency"] = data["currency"].strip()
        return Transfer(**data)
