"""Transaction ledger: idempotent prepare/complete bookkeeping.

Every provider attempt is one row in ``transactions``. Expected failures
(replays, unknown correlation, wrong amount) come back as ``LedgerError``
values on the result objects, never as exceptions.
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .models import Plan, Transaction, TransactionStatus
from .utils import utcnow

logger = logging.getLogger(__name__)


class LedgerError(enum.Enum):
    ALREADY_PROCESSED = "already_processed"
    NOT_PREPARED = "not_prepared"
    ALREADY_PAID = "already_paid"
    AMOUNT_MISMATCH = "amount_mismatch"
    CANCELLED = "cancelled"
    PROVIDER_ERROR = "provider_error"
    PLAN_NOT_FOUND = "plan_not_found"


@dataclass(frozen=True)
class PrepareResult:
    ok: bool
    prepare_id: int | None = None
    transaction_id: int | None = None
    error: LedgerError | None = None


@dataclass(frozen=True)
class CompleteResult:
    ok: bool
    error: LedgerError | None = None
    transaction_id: int | None = None
    user_id: int | None = None
    plan_id: int | None = None
    service: str | None = None
    expected_amount: int | None = None


def _new_prepare_id() -> int:
    return int(time.time() * 1000)


class TransactionLedger:
    def __init__(self, Session):
        self.Session = Session

    async def get(self, transaction_id: int) -> Transaction | None:
        async with self.Session() as s:
            return await s.get(Transaction, transaction_id)

    async def find_by_trans_id(self, trans_id: str) -> Transaction | None:
        async with self.Session() as s:
            res = await s.execute(select(Transaction).where(Transaction.trans_id == str(trans_id)))
            return res.scalars().first()

    async def prepare(
        self,
        trans_id: str,
        provider: str,
        plan_id: int,
        user_id: int,
        amount: int,
        service: str | None = None,
        payment_type: str | None = None,
    ) -> PrepareResult:
        trans_id = str(trans_id)
        async with self.Session() as s:
            res = await s.execute(select(Transaction).where(Transaction.trans_id == trans_id))
            existing = res.scalars().first()
            if existing:
                logger.info("prepare replay: trans_id=%s status=%s", trans_id, existing.status)
                return PrepareResult(False, error=LedgerError.ALREADY_PROCESSED)

            txn = Transaction(
                provider=provider,
                payment_type=payment_type,
                trans_id=trans_id,
                prepare_id=_new_prepare_id(),
                amount=int(amount),
                status=TransactionStatus.PENDING,
                user_id=user_id,
                plan_id=plan_id,
                service=service,
            )
            s.add(txn)
            try:
                await s.commit()
            except IntegrityError:
                # parallel prepare with the same trans_id won the insert
                await s.rollback()
                logger.info("prepare race lost: trans_id=%s", trans_id)
                return PrepareResult(False, error=LedgerError.ALREADY_PROCESSED)

            logger.info("prepared trans_id=%s prepare_id=%s", trans_id, txn.prepare_id)
            return PrepareResult(True, prepare_id=txn.prepare_id, transaction_id=txn.id)

    async def complete(
        self,
        trans_id: str,
        prepare_id: int,
        amount: int,
        provider_error: int = 0,
    ) -> CompleteResult:
        trans_id = str(trans_id)
        try:
            prepare_id = int(prepare_id)
        except (TypeError, ValueError):
            return CompleteResult(False, error=LedgerError.NOT_PREPARED)

        async with self.Session() as s:
            res = await s.execute(
                select(Transaction).where(
                    Transaction.trans_id == trans_id,
                    Transaction.prepare_id == prepare_id,
                )
            )
            txn = res.scalars().first()
            if not txn:
                return CompleteResult(False, error=LedgerError.NOT_PREPARED)

            details = dict(
                transaction_id=txn.id, user_id=txn.user_id,
                plan_id=txn.plan_id, service=txn.service,
            )

            if txn.status == TransactionStatus.PAID:
                return CompleteResult(False, error=LedgerError.ALREADY_PAID, **details)
            if txn.status in (TransactionStatus.CANCELED, TransactionStatus.FAILED):
                return CompleteResult(False, error=LedgerError.CANCELLED, **details)

            plan = await s.get(Plan, txn.plan_id) if txn.plan_id is not None else None
            if not plan:
                return CompleteResult(False, error=LedgerError.PLAN_NOT_FOUND, **details)

            # tiyin vs tiyin, butun son
            if int(amount) != int(plan.price):
                logger.warning(
                    "amount mismatch trans_id=%s: received %s, expected %s",
                    trans_id, amount, plan.price,
                )
                return CompleteResult(
                    False, error=LedgerError.AMOUNT_MISMATCH,
                    expected_amount=plan.price, **details,
                )

            now = utcnow()
            if provider_error is not None and int(provider_error) < 0:
                await s.execute(
                    update(Transaction)
                    .where(Transaction.id == txn.id, Transaction.status == TransactionStatus.PENDING)
                    .values(status=TransactionStatus.FAILED, provider_error=int(provider_error))
                )
                await s.commit()
                logger.info("trans_id=%s failed by provider (error=%s)", trans_id, provider_error)
                return CompleteResult(False, error=LedgerError.PROVIDER_ERROR, **details)

            upd = await s.execute(
                update(Transaction)
                .where(Transaction.id == txn.id, Transaction.status == TransactionStatus.PENDING)
                .values(status=TransactionStatus.PAID, performed_at=now)
            )
            if upd.rowcount == 0:
                await s.rollback()
                return CompleteResult(False, error=LedgerError.ALREADY_PAID, **details)
            await s.commit()

        logger.info("Transaction updated to PAID: %s", trans_id)
        return CompleteResult(True, **details)

    async def cancel(self, trans_id: str, reason: int | None = None) -> LedgerError | None:
        """PENDING/PAID -> CANCELED. Terminal rows stay as they are."""
        async with self.Session() as s:
            res = await s.execute(
                update(Transaction)
                .where(
                    Transaction.trans_id == str(trans_id),
                    Transaction.status.in_((TransactionStatus.PENDING, TransactionStatus.PAID)),
                )
                .values(
                    status=TransactionStatus.CANCELED,
                    cancelled_at=utcnow(),
                    provider_error=reason,
                )
            )
            await s.commit()
            if res.rowcount == 0:
                return LedgerError.ALREADY_PROCESSED
        logger.info("Transaction cancelled: %s", trans_id)
        return None

    # ---------------- merchant-initiated charges ----------------
    async def open_charge(
        self,
        provider: str,
        user_id: int,
        plan_id: int,
        amount: int,
        service: str | None,
        payment_type: str | None = None,
    ) -> Transaction:
        async with self.Session() as s:
            txn = Transaction(
                provider=provider,
                payment_type=payment_type,
                prepare_id=_new_prepare_id(),
                amount=int(amount),
                status=TransactionStatus.PENDING,
                user_id=user_id,
                plan_id=plan_id,
                service=service,
            )
            s.add(txn)
            await s.commit()
            return txn

    async def settle_charge(
        self,
        transaction_id: int,
        success: bool,
        receipt_id: str | None = None,
        error_code=None,
    ) -> bool:
        values = {"receipt_id": receipt_id}
        if success:
            values.update(status=TransactionStatus.PAID, performed_at=utcnow())
        else:
            values.update(status=TransactionStatus.FAILED)
            if isinstance(error_code, int):
                values["provider_error"] = error_code
        async with self.Session() as s:
            res = await s.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id, Transaction.status == TransactionStatus.PENDING)
                .values(**values)
            )
            await s.commit()
            return res.rowcount > 0
