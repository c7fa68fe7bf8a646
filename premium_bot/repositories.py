from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select, update, or_

from . import config
from .models import Plan, Subscription, SubscriptionStatus, SubscriptionType, User
from .utils import start_of_day


class UserRepository:
    def __init__(self, Session):
        self.Session = Session

    async def get(self, user_id: int) -> User | None:
        async with self.Session() as s:
            return await s.get(User, user_id)

    async def ensure(self, user_id: int, username: str | None = None) -> User:
        async with self.Session() as s:
            # ✅ id PRIMARY KEY bo'lgani uchun get() ideal ishlaydi
            u = await s.get(User, user_id)
            if u:
                if username and u.username != username:
                    u.username = username
                    await s.commit()
                return u

            u = User(id=user_id, username=username)
            s.add(u)
            await s.commit()
            return u

    async def update(self, user_id: int, **patch) -> bool:
        if not patch:
            return False
        async with self.Session() as s:
            res = await s.execute(update(User).where(User.id == user_id).values(**patch))
            await s.commit()
            return res.rowcount > 0


class PlanRepository:
    def __init__(self, Session):
        self.Session = Session

    async def get(self, plan_id: int) -> Plan | None:
        async with self.Session() as s:
            return await s.get(Plan, plan_id)

    async def get_by_name(self, name: str) -> Plan | None:
        async with self.Session() as s:
            res = await s.execute(select(Plan).where(Plan.name == name))
            return res.scalars().first()

    async def for_service(self, service: str) -> Plan | None:
        async with self.Session() as s:
            res = await s.execute(select(Plan).where(Plan.service == service).order_by(Plan.id))
            return res.scalars().first()

    async def resolve(self, ref) -> Plan | None:
        """Plan by id (int or digit string) or by name."""
        if ref is None:
            return None
        if isinstance(ref, int) or str(ref).strip().isdigit():
            return await self.get(int(ref))
        return await self.get_by_name(str(ref).strip())

    async def seed(self, services=None) -> list[Plan]:
        created = []
        async with self.Session() as s:
            for svc in (services or config.SERVICES).values():
                res = await s.execute(select(Plan).where(Plan.name == svc.plan_name))
                if res.scalars().first():
                    continue
                plan = Plan(
                    name=svc.plan_name, service=svc.kind,
                    price=svc.price, duration_days=svc.duration_days,
                )
                s.add(plan)
                created.append(plan)
            await s.commit()
        return created


class SubscriptionRepository:
    def __init__(self, Session):
        self.Session = Session

    async def get(self, user_id: int, service: str) -> Subscription | None:
        async with self.Session() as s:
            res = await s.execute(
                select(Subscription).where(
                    Subscription.user_id == user_id,
                    Subscription.service == service,
                )
            )
            return res.scalars().first()

    async def get_by_id(self, subscription_id: int) -> Subscription | None:
        async with self.Session() as s:
            return await s.get(Subscription, subscription_id)

    async def list_for_user(self, user_id: int) -> list[Subscription]:
        async with self.Session() as s:
            res = await s.execute(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(Subscription.id)
            )
            return list(res.scalars().all())

    async def update(self, subscription_id: int, **patch) -> bool:
        if not patch:
            return False
        async with self.Session() as s:
            res = await s.execute(
                update(Subscription).where(Subscription.id == subscription_id).values(**patch)
            )
            await s.commit()
            return res.rowcount > 0

    async def disable_auto_renew(self, user_id: int) -> int:
        async with self.Session() as s:
            res = await s.execute(
                update(Subscription)
                .where(Subscription.user_id == user_id, Subscription.auto_renew == True)  # noqa: E712
                .values(auto_renew=False)
            )
            await s.commit()
            return res.rowcount

    async def has_active(self, user_id: int, now: datetime) -> bool:
        async with self.Session() as s:
            res = await s.execute(
                select(Subscription.id).where(
                    Subscription.user_id == user_id,
                    Subscription.is_active == True,  # noqa: E712
                    Subscription.end_date > now,
                ).limit(1)
            )
            return res.first() is not None

    # ---------------- auto-charge ----------------
    async def due_for_auto_charge(self, now: datetime) -> list[Subscription]:
        today = start_of_day(now)
        async with self.Session() as s:
            res = await s.execute(
                select(Subscription).where(
                    Subscription.end_date <= now,
                    Subscription.subscription_type == SubscriptionType.SUBSCRIPTION,
                    Subscription.auto_renew == True,  # noqa: E712
                    or_(
                        Subscription.last_attempted_auto_subscription_at.is_(None),
                        Subscription.last_attempted_auto_subscription_at < today,
                    ),
                ).order_by(Subscription.end_date)
            )
            return list(res.scalars().all())

    async def stamp_attempt(self, subscription_id: int, now: datetime) -> int | None:
        """Stamp the attempt before charging; None when already stamped today."""
        today = start_of_day(now)
        async with self.Session() as s:
            res = await s.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    or_(
                        Subscription.last_attempted_auto_subscription_at.is_(None),
                        Subscription.last_attempted_auto_subscription_at < today,
                    ),
                )
                .values(
                    last_attempted_auto_subscription_at=now,
                    attempt_count=Subscription.attempt_count + 1,
                )
            )
            if res.rowcount == 0:
                await s.rollback()
                return None
            await s.commit()
            count = await s.scalar(
                select(Subscription.attempt_count).where(Subscription.id == subscription_id)
            )
            return int(count or 0)

    # ---------------- expiration ----------------
    async def expire_candidates(self, now: datetime) -> list[Subscription]:
        async with self.Session() as s:
            res = await s.execute(
                select(Subscription).where(
                    Subscription.end_date < now,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                )
            )
            return list(res.scalars().all())

    async def expire(self, subscription_id: int, now: datetime) -> bool:
        # faqat active -> expired; boshqa yo'nalish yo'q
        async with self.Session() as s:
            res = await s.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.end_date < now,
                )
                .values(status=SubscriptionStatus.EXPIRED, is_active=False)
            )
            await s.commit()
            return res.rowcount > 0

    async def warning_candidates(self, now: datetime, days: int) -> list[Subscription]:
        today = start_of_day(now)
        async with self.Session() as s:
            res = await s.execute(
                select(Subscription).where(
                    Subscription.end_date >= now,
                    Subscription.end_date <= now + timedelta(days=days),
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.subscription_type == SubscriptionType.ONETIME,
                    or_(
                        Subscription.last_warning_at.is_(None),
                        Subscription.last_warning_at < today,
                    ),
                )
            )
            return list(res.scalars().all())
