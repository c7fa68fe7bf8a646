from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from .lifecycle import CardRemovalAction, CardRemovalOutcome, SubscriptionState
from .models import SubscriptionType
from .notifications import NotificationKind
from .vault import CardRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenewalResult:
    success: bool
    new_end_date: datetime | None = None
    receipt_id: str | None = None
    qr_code_url: str | None = None
    reason: str | None = None
    transaction_id: int | None = None


@dataclass(frozen=True)
class LinkResult:
    card: CardRef
    bonus: bool
    renewal: RenewalResult | None
    state: SubscriptionState | None


@dataclass(frozen=True)
class RemovalResult:
    removed: bool
    outcome: CardRemovalOutcome


class RenewalService:
    """Card linking, stored-card charges and card removal.

    Every stored-card charge goes through the ledger first: a PENDING row is
    opened, the provider is called, the row is settled, and only a PAID row
    is applied to the subscription.
    """

    def __init__(self, users, subscriptions, vault, ledger, lifecycle, dispatcher, notifier):
        self.users = users
        self.subscriptions = subscriptions
        self.vault = vault
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.notifier = notifier

    async def link_card(
        self,
        user_id: int,
        service: str,
        provider: str,
        token: str,
        masked_number: str,
        plan_ref=None,
        username: str | None = None,
    ) -> LinkResult:
        user = await self.users.ensure(user_id, username)
        card = await self.vault.store(user_id, provider, token, masked_number)
        await self.users.update(user_id, subscription_type=SubscriptionType.SUBSCRIPTION)

        if not user.has_received_free_bonus:
            state = await self.lifecycle.grant(
                user_id, service, plan_ref,
                provider=provider,
                auto_renew=True,
                subscription_type=SubscriptionType.SUBSCRIPTION,
            )
            if state.bonus:
                await self.notifier.notify(
                    user_id, NotificationKind.BONUS_GRANTED,
                    days=self.lifecycle.bonus_days(service, provider),
                    end_date=state.end_date,
                )
            else:
                await self.notifier.notify(
                    user_id, NotificationKind.PAYMENT_SUCCESS, end_date=state.end_date,
                )
            return LinkResult(card, state.bonus, None, state)

        # bonus olingan: avval to'lov, keyin uzaytirish
        renewal = await self.charge_and_extend(user_id, service, plan_ref, card=card)
        if renewal.success:
            await self.notifier.notify(
                user_id, NotificationKind.PAYMENT_SUCCESS,
                end_date=renewal.new_end_date, qr_code_url=renewal.qr_code_url,
            )
        else:
            await self.notifier.notify(user_id, NotificationKind.PAYMENT_FAILED)
        return LinkResult(card, False, renewal, None)

    async def charge_and_extend(
        self,
        user_id: int,
        service: str,
        plan_ref=None,
        card: CardRef | None = None,
        now: datetime | None = None,
    ) -> RenewalResult:
        card = card or await self.vault.find_any(user_id)
        if card is None:
            logger.info("No stored card for user %s", user_id)
            return RenewalResult(False, reason="no_card")
        if not self.dispatcher.supports(card.provider):
            raise LookupError(f"No client for provider {card.provider}")

        plan = await self.lifecycle.resolve_plan(service, plan_ref)
        txn = await self.ledger.open_charge(
            card.provider, user_id, plan.id, plan.price, service,
            payment_type=SubscriptionType.SUBSCRIPTION,
        )
        result = await self.dispatcher.charge(card.provider, card.token, plan.price, str(txn.id))
        await self.ledger.settle_charge(
            txn.id, result.success, receipt_id=result.receipt_id, error_code=result.error_code,
        )

        if not result.success:
            logger.info(
                "Charge declined for user %s (%s): %s", user_id, card.provider, result.error_code,
            )
            reason = str(result.error_code) if result.error_code is not None else "declined"
            return RenewalResult(False, reason=reason, transaction_id=txn.id)

        applied = await self.lifecycle.apply_paid_transaction(txn.id, now=now)
        end_date = applied.state.end_date if applied.state else None
        logger.info("Charged user %s %s via %s, ends %s", user_id, plan.price, card.provider, end_date)
        return RenewalResult(
            True,
            new_end_date=end_date,
            receipt_id=result.receipt_id,
            qr_code_url=result.qr_code_url,
            transaction_id=txn.id,
        )

    async def can_charge(self, user_id: int) -> bool:
        """False only when the user's card belongs to a provider with no client."""
        card = await self.vault.find_any(user_id)
        return card is None or self.dispatcher.supports(card.provider)

    async def renew_with_stored_card(self, user_id: int, service: str, plan_ref=None) -> RenewalResult:
        result = await self.charge_and_extend(user_id, service, plan_ref)
        if result.success:
            await self.notifier.notify(
                user_id, NotificationKind.PAYMENT_SUCCESS,
                end_date=result.new_end_date, qr_code_url=result.qr_code_url,
            )
        else:
            await self.notifier.notify(user_id, NotificationKind.PAYMENT_FAILED)
        return result

    async def remove_card(self, user_id: int, provider: str) -> RemovalResult:
        removed = await self.vault.delete(user_id, provider)
        if not removed:
            return RemovalResult(False, CardRemovalOutcome(CardRemovalAction.NONE))

        if await self.vault.find_any(user_id) is None:
            disabled = await self.subscriptions.disable_auto_renew(user_id)
            logger.info("Auto-renew disabled on %s record(s) for user %s", disabled, user_id)

        outcome = await self.lifecycle.cancel_bonus_on_card_removal(user_id, provider)
        if outcome.action is CardRemovalAction.TERMINATED:
            await self.notifier.notify(user_id, NotificationKind.BONUS_CANCELLED)
        elif outcome.action is CardRemovalAction.ROLLED_BACK:
            await self.notifier.notify(
                user_id, NotificationKind.BONUS_ROLLED_BACK, end_date=outcome.end_date,
            )
        else:
            await self.notifier.notify(user_id, NotificationKind.CARD_DELETED)
        return RemovalResult(True, outcome)

    async def get_subscription_status(self, user_id: int, service: str) -> SubscriptionState:
        return await self.lifecycle.status(user_id, service)
