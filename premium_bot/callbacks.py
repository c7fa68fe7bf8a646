"""Click merchant callback (prepare/complete) on top of the ledger."""
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from . import config
from .errors import PlanNotFound, UserNotFound
from .ledger import LedgerError
from .models import SubscriptionType
from .notifications import NotificationKind
from .payments import SignaturePhase, phase_for_action, verify_click_signature

logger = logging.getLogger(__name__)


class ClickError:
    SUCCESS = 0
    SIGN_FAILED = -1
    INVALID_AMOUNT = -2
    ACTION_NOT_FOUND = -3
    ALREADY_PAID = -4
    USER_NOT_FOUND = -5
    TRANSACTION_NOT_FOUND = -6
    BAD_REQUEST = -8
    TRANSACTION_CANCELLED = -9


_LEDGER_TO_CLICK = {
    LedgerError.ALREADY_PROCESSED: (ClickError.ALREADY_PAID, "Transaction already processed"),
    LedgerError.NOT_PREPARED: (ClickError.TRANSACTION_NOT_FOUND, "Transaction not found"),
    LedgerError.ALREADY_PAID: (ClickError.ALREADY_PAID, "Already paid"),
    LedgerError.AMOUNT_MISMATCH: (ClickError.INVALID_AMOUNT, "Incorrect amount"),
    LedgerError.CANCELLED: (ClickError.TRANSACTION_CANCELLED, "Transaction cancelled"),
    LedgerError.PROVIDER_ERROR: (ClickError.TRANSACTION_CANCELLED, "Transaction cancelled"),
    LedgerError.PLAN_NOT_FOUND: (ClickError.USER_NOT_FOUND, "Plan not found"),
}


def to_minor_units(amount) -> int | None:
    """So'm as sent by Click ("5555.00") -> tiyin; None when not a whole tiyin."""
    try:
        value = Decimal(str(amount).strip()) * config.CLICK_AMOUNT_MULTIPLIER
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value != value.to_integral_value():
        return None
    return int(value)


def _error(code: int, note: str, **extra) -> dict:
    return {**extra, "error": code, "error_note": note}


class ClickCallbackHandler:
    def __init__(self, secret: str, ledger, lifecycle, users, plans, notifier, service_id: str = ""):
        self.secret = secret
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.users = users
        self.plans = plans
        self.notifier = notifier
        self.service_id = service_id

    async def handle(self, payload: dict) -> dict:
        phase = phase_for_action(payload.get("action"))
        if phase is None:
            return _error(ClickError.ACTION_NOT_FOUND, "Action not found")

        if not verify_click_signature(payload, self.secret, phase):
            logger.warning("Click signature mismatch (click_trans_id=%s)", payload.get("click_trans_id"))
            return _error(ClickError.SIGN_FAILED, "SIGN CHECK FAILED!")

        # bo'sh bo'lsa tekshirilmaydi
        if self.service_id and str(payload.get("service_id", "")).strip() != self.service_id:
            logger.warning("Click callback for foreign service_id=%s", payload.get("service_id"))
            return _error(ClickError.BAD_REQUEST, "Error in request from click")

        if phase is SignaturePhase.PREPARE:
            return await self.prepare(payload)
        return await self.complete(payload)

    def _echo(self, payload: dict) -> dict:
        trans_id = str(payload.get("click_trans_id", "")).strip()
        return {
            "click_trans_id": int(trans_id) if trans_id.isdigit() else trans_id,
            "merchant_trans_id": payload.get("merchant_trans_id"),
        }

    async def prepare(self, payload: dict) -> dict:
        echo = self._echo(payload)
        trans_id = str(payload.get("click_trans_id", "")).strip()
        user_ref = str(payload.get("param2") or "").strip()
        service = str(payload.get("param3") or "").strip() or config.DEFAULT_SERVICE
        if not trans_id or not user_ref.isdigit():
            return _error(ClickError.BAD_REQUEST, "Error in request from click", **echo)

        amount = to_minor_units(payload.get("amount"))
        if amount is None:
            return _error(ClickError.INVALID_AMOUNT, "Incorrect amount", **echo)

        plan = await self.plans.resolve(payload.get("merchant_trans_id"))
        if not plan:
            return _error(ClickError.USER_NOT_FOUND, "Plan not found", **echo)
        user = await self.users.get(int(user_ref))
        if not user:
            return _error(ClickError.USER_NOT_FOUND, "User does not exist", **echo)
        if amount != plan.price:
            logger.warning("Click prepare amount %s != plan price %s", amount, plan.price)
            return _error(ClickError.INVALID_AMOUNT, "Incorrect amount", **echo)

        res = await self.ledger.prepare(
            trans_id, config.Provider.CLICK, plan.id, user.id, amount,
            service=service, payment_type=SubscriptionType.ONETIME,
        )
        if not res.ok:
            code, note = _LEDGER_TO_CLICK[res.error]
            return _error(code, note, **echo)
        return _error(ClickError.SUCCESS, "Success", merchant_prepare_id=res.prepare_id, **echo)

    async def complete(self, payload: dict) -> dict:
        echo = self._echo(payload)
        trans_id = str(payload.get("click_trans_id", "")).strip()
        prepare_id = payload.get("merchant_prepare_id")
        if not trans_id or prepare_id in (None, ""):
            return _error(ClickError.BAD_REQUEST, "Error in request from click", **echo)
        echo["merchant_prepare_id"] = prepare_id

        amount = to_minor_units(payload.get("amount"))
        if amount is None:
            return _error(ClickError.INVALID_AMOUNT, "Incorrect amount", **echo)
        try:
            provider_error = int(payload.get("error") or 0)
        except (TypeError, ValueError):
            return _error(ClickError.BAD_REQUEST, "Error in request from click", **echo)

        res = await self.ledger.complete(trans_id, prepare_id, amount, provider_error)

        if res.error is LedgerError.ALREADY_PAID and res.transaction_id is not None:
            # qayta yuborish: extension yozilmagan bo'lsa hozir yoziladi
            await self._apply(res.transaction_id, res.user_id)

        if not res.ok:
            code, note = _LEDGER_TO_CLICK[res.error]
            return _error(code, note, **echo)

        if not await self._apply(res.transaction_id, res.user_id):
            return _error(ClickError.USER_NOT_FOUND, "User does not exist", **echo)
        return _error(
            ClickError.SUCCESS, "Success",
            merchant_confirm_id=res.transaction_id, **echo,
        )

    async def _apply(self, transaction_id: int, user_id: int | None) -> bool:
        try:
            applied = await self.lifecycle.apply_paid_transaction(transaction_id)
        except (UserNotFound, PlanNotFound):
            logger.exception("Paid transaction %s cannot be applied", transaction_id)
            return False
        if applied.applied and applied.state is not None:
            await self.notifier.notify(
                user_id, NotificationKind.PAYMENT_SUCCESS, end_date=applied.state.end_date,
            )
        return True
