# tests/core/test_payment_repository.py
"""
Тесты SQL репозитория платежей: статус платежа и журнал не откатываются назад.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from sendbox.common.constants import PaymentStatus, TransactionStatus, TransactionType
from sendbox.core.payments.models import Payment
from sendbox.core.payments.repository import PaymentRepository


class TestPaymentStatusGuard:

    @pytest.mark.asyncio
    async def test_failed_does_not_overwrite_settled(self, mock_db: AsyncMock) -> None:
        mock_db.execute = AsyncMock(return_value="UPDATE 0")

        updated = await PaymentRepository(mock_db).update_payment_status(
            "pi_1", PaymentStatus.FAILED.value, last_error="declined",
        )

        sql, *params = mock_db.execute.await_args.args
        assert "NOT (status = ANY($4::text[]))" in sql
        assert params == ["pi_1", "failed", "declined", ["succeeded", "refund_pending", "refunded"]]
        assert updated is False

    @pytest.mark.asyncio
    async def test_refunded_is_terminal(self, mock_db: AsyncMock) -> None:
        mock_db.execute = AsyncMock(return_value="UPDATE 1")

        updated = await PaymentRepository(mock_db).update_payment_status("pi_1", PaymentStatus.REFUNDED.value)

        assert mock_db.execute.await_args.args[-1] == []
        assert updated is True

    @pytest.mark.asyncio
    async def test_upsert_keeps_later_status(self, mock_db: AsyncMock) -> None:
        payment = Payment(
            booking_id="b-1",
            payment_intent_id="pi_1",
            amount_total_cents=5950,
            platform_fee_cents=450,
            status=PaymentStatus.REQUIRES_PAYMENT_METHOD.value,
        )

        await PaymentRepository(mock_db).upsert_payment(payment)

        sql, *params = mock_db.execute.await_args.args
        assert "WHEN payments.status = ANY($8::text[]) THEN payments.status" in sql
        assert params[-1] == ["succeeded", "refund_pending", "refunded"]


class TestTransactionLedger:

    @pytest.mark.asyncio
    async def test_conflict_promotes_pending_and_failed(self, mock_db: AsyncMock) -> None:
        recorded = await PaymentRepository(mock_db).record_transaction(
            booking_id="b-1",
            user_id="u-1",
            type=TransactionType.PAYMENT,
            status=TransactionStatus.SUCCEEDED,
            amount_cents=5950,
            currency="eur",
            provider_reference="pi_1",
        )

        sql, *params = mock_db.execute.await_args.args
        assert "ON CONFLICT (provider_reference, type) DO UPDATE" in sql
        assert "transactions.status = 'pending'" in sql
        assert "transactions.status = 'failed' AND EXCLUDED.status = 'succeeded'" in sql
        assert "DO NOTHING" not in sql
        assert params[2:4] == ["payment", "succeeded"]
        assert recorded is True

    @pytest.mark.asyncio
    async def test_final_row_left_alone(self, mock_db: AsyncMock) -> None:
        mock_db.execute = AsyncMock(return_value="INSERT 0 0")

        recorded = await PaymentRepository(mock_db).record_transaction(
            booking_id="b-1",
            user_id="u-1",
            type=TransactionType.REFUND,
            status=TransactionStatus.SUCCEEDED,
            amount_cents=5950,
            currency="eur",
            provider_reference="pi_1",
        )

        assert recorded is False
