"""Subscription lifecycle: purchase, renewal, bonus and bonus cancellation.

Date math is calendar-day addition on naive UTC timestamps. A renewal never
shortens a running window: the new end is ``max(end, now) + days``.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update

from . import config
from .errors import PlanNotFound, UserNotFound
from .models import (
    Plan, Subscription, SubscriptionStatus, SubscriptionType,
    Transaction, TransactionStatus, User,
)
from .utils import add_days, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Grant:
    start_date: datetime
    end_date: datetime
    days: int
    bonus: bool


def compute_grant(
    *,
    now: datetime,
    current_start: datetime | None,
    current_end: datetime | None,
    currently_active: bool,
    plan_days: int,
    bonus_days: int,
    bonus_eligible: bool,
) -> Grant:
    days = bonus_days if bonus_eligible else plan_days
    if currently_active and current_end is not None and current_end > now:
        return Grant(current_start or now, add_days(current_end, days), days, bonus_eligible)
    return Grant(now, add_days(now, days), days, bonus_eligible)


def is_window_active(record: Subscription | None, now: datetime) -> bool:
    return bool(record and record.is_active and record.end_date and record.end_date > now)


@dataclass(frozen=True)
class SubscriptionState:
    user_id: int
    service: str
    active: bool
    start_date: datetime | None
    end_date: datetime | None
    bonus: bool = False
    was_kicked_out: bool = False


@dataclass(frozen=True)
class ApplyResult:
    applied: bool
    state: SubscriptionState | None


class CardRemovalAction(enum.Enum):
    NONE = "none"
    TERMINATED = "terminated"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class CardRemovalOutcome:
    action: CardRemovalAction
    end_date: datetime | None = None


def _state(record: Subscription, now: datetime, *, bonus=False, was_kicked_out=False) -> SubscriptionState:
    return SubscriptionState(
        user_id=record.user_id,
        service=record.service,
        active=is_window_active(record, now),
        start_date=record.start_date,
        end_date=record.end_date,
        bonus=bonus,
        was_kicked_out=was_kicked_out,
    )


class SubscriptionLifecycle:
    def __init__(self, Session, plans, services=None):
        self.Session = Session
        self.plans = plans
        self.services = services or config.SERVICES

    def bonus_days(self, service: str, provider: str | None) -> int:
        svc = self.services.get(service)
        if svc is None:
            return config.bonus_days_for(service, provider)
        return svc.bonus_days_for(provider)

    async def resolve_plan(self, service: str, plan_ref=None) -> Plan:
        if plan_ref is None:
            plan = await self.plans.for_service(service)
        elif isinstance(plan_ref, Plan):
            plan = plan_ref
        else:
            plan = await self.plans.resolve(plan_ref)
        if not plan:
            raise PlanNotFound(plan_ref if plan_ref is not None else service)
        return plan

    async def _grant(
        self,
        s,
        user: User,
        plan: Plan,
        service: str,
        *,
        provider: str | None,
        auto_renew: bool,
        subscription_type: str | None,
        now: datetime,
        allow_bonus: bool = True,
    ) -> SubscriptionState:
        bonus_eligible = allow_bonus and bool(auto_renew) and not user.has_received_free_bonus
        if bonus_eligible:
            # bonus bayrog'i faqat bir marta: CAS yutqazilsa plan kunlari
            claimed = await s.execute(
                update(User)
                .where(User.id == user.id, User.has_received_free_bonus == False)  # noqa: E712
                .values(has_received_free_bonus=True, free_bonus_received_at=now)
            )
            if claimed.rowcount == 0:
                logger.info("Bonus already claimed for user %s, granting plan days", user.id)
                bonus_eligible = False

        # CAS dan keyin o'qiladi: parallel grant yozgan muddat ko'rinadi
        res = await s.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user.id,
                Subscription.service == service,
            )
            .with_for_update()
        )
        record = res.scalars().first()
        active = is_window_active(record, now)

        grant = compute_grant(
            now=now,
            current_start=record.start_date if record else None,
            current_end=record.end_date if record else None,
            currently_active=active,
            plan_days=plan.duration_days,
            bonus_days=self.bonus_days(service, provider),
            bonus_eligible=bonus_eligible,
        )

        sub_type = subscription_type or (
            SubscriptionType.SUBSCRIPTION if auto_renew else SubscriptionType.ONETIME
        )

        user_patch = dict(
            is_active=True,
            is_kicked_out=False,
            subscription_type=sub_type,
        )
        if grant.bonus:
            user_patch.update(
                had_paid_subscription_before_bonus=bool(
                    user.had_paid_subscription_before_bonus or active
                ),
            )
        else:
            user_patch["had_paid_subscription_before_bonus"] = True

        record_patch = dict(
            plan_id=plan.id,
            subscription_type=sub_type,
            start_date=grant.start_date,
            end_date=grant.end_date,
            is_active=True,
            status=SubscriptionStatus.ACTIVE,
            auto_renew=bool(auto_renew),
        )
        if provider:
            record_patch["subscribed_by"] = provider
            if not grant.bonus:
                record_patch["paid_by"] = provider
        if grant.bonus:
            record_patch["has_received_free_bonus"] = True

        was_kicked_out = bool(user.is_kicked_out)
        await s.execute(update(User).where(User.id == user.id).values(**user_patch))
        if record:
            await s.execute(
                update(Subscription).where(Subscription.id == record.id).values(**record_patch)
            )
        else:
            s.add(Subscription(user_id=user.id, service=service, **record_patch))

        logger.info(
            "user %s %s: +%s days (%s) -> %s",
            user.id, service, grant.days, "bonus" if grant.bonus else "plan", grant.end_date,
        )
        return SubscriptionState(
            user_id=user.id,
            service=service,
            active=True,
            start_date=grant.start_date,
            end_date=grant.end_date,
            bonus=grant.bonus,
            was_kicked_out=was_kicked_out,
        )

    async def grant(
        self,
        user_id: int,
        service: str,
        plan_ref=None,
        *,
        provider: str | None = None,
        auto_renew: bool = False,
        subscription_type: str | None = None,
        now: datetime | None = None,
    ) -> SubscriptionState:
        """Purchase/renewal/bonus entry point for flows without a ledger row."""
        now = now or utcnow()
        plan = await self.resolve_plan(service, plan_ref)
        async with self.Session() as s:
            user = await s.get(User, user_id)
            if not user:
                raise UserNotFound(user_id)
            state = await self._grant(
                s, user, plan, service,
                provider=provider, auto_renew=auto_renew,
                subscription_type=subscription_type, now=now,
            )
            await s.commit()
            return state

    async def apply_paid_transaction(self, transaction_id: int, now: datetime | None = None) -> ApplyResult:
        """Extend the subscription for a PAID ledger row, at most once.

        The ``applied_at`` stamp and the extension are committed together, so
        calling this again for the same transaction never extends twice.
        """
        now = now or utcnow()
        async with self.Session() as s:
            txn = await s.get(Transaction, transaction_id)
            if not txn or txn.status != TransactionStatus.PAID:
                logger.warning("Transaction %s is not PAID, nothing to apply", transaction_id)
                return ApplyResult(False, None)

            service = txn.service or config.DEFAULT_SERVICE
            if txn.applied_at is not None:
                res = await s.execute(
                    select(Subscription).where(
                        Subscription.user_id == txn.user_id,
                        Subscription.service == service,
                    )
                )
                record = res.scalars().first()
                return ApplyResult(False, _state(record, now) if record else None)

            user = await s.get(User, txn.user_id) if txn.user_id is not None else None
            if not user:
                raise UserNotFound(txn.user_id)
            plan = await s.get(Plan, txn.plan_id) if txn.plan_id is not None else None
            if not plan:
                raise PlanNotFound(txn.plan_id)

            stamped = await s.execute(
                update(Transaction)
                .where(Transaction.id == txn.id, Transaction.applied_at.is_(None))
                .values(applied_at=now)
            )
            if stamped.rowcount == 0:
                await s.rollback()
                return ApplyResult(False, await self.status(txn.user_id, service, now=now))

            # pulli tranzaksiya har doim plan muddatini beradi, bonus emas
            auto_renew = txn.payment_type == SubscriptionType.SUBSCRIPTION
            state = await self._grant(
                s, user, plan, service,
                provider=txn.provider,
                auto_renew=auto_renew,
                subscription_type=txn.payment_type,
                now=now,
                allow_bonus=False,
            )
            await s.commit()
            return ApplyResult(True, state)

    async def cancel_bonus_on_card_removal(
        self, user_id: int, provider: str, now: datetime | None = None
    ) -> CardRemovalOutcome:
        now = now or utcnow()
        async with self.Session() as s:
            user = await s.get(User, user_id)
            if not user:
                raise UserNotFound(user_id)
            if not user.has_received_free_bonus or not user.free_bonus_received_at:
                return CardRemovalOutcome(CardRemovalAction.NONE)

            res = await s.execute(
                select(Subscription).where(
                    Subscription.user_id == user_id,
                    Subscription.is_active == True,  # noqa: E712
                    Subscription.has_received_free_bonus == True,  # noqa: E712
                )
            )
            records = list(res.scalars().all())

            outcome = CardRemovalOutcome(CardRemovalAction.NONE)
            for record in records:
                days = self.bonus_days(record.service, provider)
                if add_days(user.free_bonus_received_at, days) <= now:
                    continue  # bonus davri tugagan

                new_end = add_days(record.end_date, -days)
                if not user.had_paid_subscription_before_bonus or new_end <= now:
                    await s.execute(
                        update(Subscription).where(Subscription.id == record.id).values(
                            end_date=now, is_active=False,
                            status=SubscriptionStatus.CANCELLED, auto_renew=False,
                        )
                    )
                    outcome = CardRemovalOutcome(CardRemovalAction.TERMINATED, now)
                    logger.info("Bonus terminated for user %s (%s)", user_id, record.service)
                else:
                    await s.execute(
                        update(Subscription).where(Subscription.id == record.id).values(
                            end_date=new_end, auto_renew=False,
                        )
                    )
                    if outcome.action is not CardRemovalAction.TERMINATED:
                        outcome = CardRemovalOutcome(CardRemovalAction.ROLLED_BACK, new_end)
                    logger.info(
                        "Bonus rolled back for user %s (%s): -%s days -> %s",
                        user_id, record.service, days, new_end,
                    )

            if outcome.action is CardRemovalAction.TERMINATED:
                still_active = await s.execute(
                    select(Subscription.id).where(
                        Subscription.user_id == user_id,
                        Subscription.is_active == True,  # noqa: E712
                        Subscription.end_date > now,
                    ).limit(1)
                )
                if still_active.first() is None:
                    await s.execute(update(User).where(User.id == user_id).values(is_active=False))
            await s.commit()
            return outcome

    async def status(self, user_id: int, service: str, now: datetime | None = None) -> SubscriptionState:
        now = now or utcnow()
        async with self.Session() as s:
            res = await s.execute(
                select(Subscription).where(
                    Subscription.user_id == user_id,
                    Subscription.service == service,
                )
            )
            record = res.scalars().first()
        if not record:
            return SubscriptionState(user_id, service, False, None, None)
        return _state(record, now)
