from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import NamedTuple

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from . import config
from .models import SubscriptionStatus, SubscriptionType
from .notifications import NotificationKind
from .utils import utcnow

logger = logging.getLogger(__name__)


class SweepReport(NamedTuple):
    """Counters of one sweep run."""

    candidates: int = 0
    succeeded: int = 0
    failed: int = 0
    terminated: int = 0
    skipped: int = 0
    unsupported: int = 0
    errors: int = 0


class RecurringChargeSweep:
    """Daily charge of expired auto-renew subscriptions.

    Every candidate is stamped (attempt time and counter) before the provider
    is called, so a crash or a second runner on the same day never charges
    twice. A record that keeps failing is terminated once its counter
    reaches ``max_attempts``.
    """

    def __init__(self, subscriptions, users, renewals, notifier, max_attempts: int | None = None):
        self.subscriptions = subscriptions
        self.users = users
        self.renewals = renewals
        self.notifier = notifier
        self.max_attempts = max_attempts or config.MAX_AUTO_CHARGE_ATTEMPTS

    async def run(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        candidates = await self.subscriptions.due_for_auto_charge(now)
        logger.info("Auto-charge sweep: %s candidate(s)", len(candidates))

        counts = dict(succeeded=0, failed=0, terminated=0, skipped=0, unsupported=0, errors=0)
        for record in candidates:
            try:
                outcome = await self._process(record, now)
            except Exception:  # noqa: BLE001
                logger.exception("Auto-charge failed for subscription %s", record.id)
                outcome = "errors"
            counts[outcome] += 1

        report = SweepReport(candidates=len(candidates), **counts)
        logger.info("Auto-charge sweep done: %s", report._asdict())
        return report

    async def _process(self, record, now: datetime) -> str:
        # urinish hisoblagichi provayder sozlanmagani uchun sarflanmaydi
        if not await self.renewals.can_charge(record.user_id):
            logger.error(
                "No charge client for user %s card, subscription %s left untouched",
                record.user_id, record.id,
            )
            return "unsupported"

        attempts = await self.subscriptions.stamp_attempt(record.id, now)
        if attempts is None:
            logger.info("Subscription %s already attempted today", record.id)
            return "skipped"

        result = await self.renewals.charge_and_extend(
            record.user_id, record.service, record.plan_id, now=now,
        )
        if result.success:
            await self.subscriptions.update(record.id, attempt_count=0)
            await self.notifier.notify(
                record.user_id, NotificationKind.AUTO_PAYMENT_SUCCESS,
                end_date=result.new_end_date, qr_code_url=result.qr_code_url,
            )
            return "succeeded"

        if attempts >= self.max_attempts:
            await self.subscriptions.update(
                record.id,
                is_active=False,
                status=SubscriptionStatus.CANCELLED,
                auto_renew=False,
            )
            await self.users.update(record.user_id, is_active=False, is_kicked_out=True)
            await self.notifier.notify(record.user_id, NotificationKind.SUBSCRIPTION_TERMINATED)
            logger.info(
                "Subscription %s terminated after %s failed attempts (%s)",
                record.id, attempts, result.reason,
            )
            return "terminated"

        logger.info(
            "Auto-charge attempt %s/%s failed for user %s: %s",
            attempts, self.max_attempts, record.user_id, result.reason,
        )
        return "failed"


class ExpirationSweeper:
    def __init__(self, subscriptions, users, notifier):
        self.subscriptions = subscriptions
        self.users = users
        self.notifier = notifier

    async def run(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        candidates = await self.subscriptions.expire_candidates(now)
        expired = skipped = errors = 0
        for record in candidates:
            try:
                if not await self.subscriptions.expire(record.id, now):
                    skipped += 1
                    continue
                expired += 1
                if not await self.subscriptions.has_active(record.user_id, now):
                    await self.users.update(record.user_id, is_active=False)
                if record.subscription_type == SubscriptionType.ONETIME:
                    await self.notifier.notify(record.user_id, NotificationKind.SUBSCRIPTION_EXPIRED)
            except Exception:  # noqa: BLE001
                logger.exception("Expiration failed for subscription %s", record.id)
                errors += 1

        if candidates:
            logger.info("Expired %s subscription(s)", expired)
        return SweepReport(len(candidates), succeeded=expired, skipped=skipped, errors=errors)


class ExpiryWarningSweep:
    """Heads-up to one-time subscribers a few days before the end date."""

    def __init__(self, subscriptions, notifier, days: int | None = None):
        self.subscriptions = subscriptions
        self.notifier = notifier
        self.days = days or config.WARNING_DAYS

    async def run(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        candidates = await self.subscriptions.warning_candidates(now, self.days)
        warned = errors = 0
        for record in candidates:
            try:
                days_left = max(1, math.ceil((record.end_date - now).total_seconds() / 86400))
                await self.subscriptions.update(record.id, last_warning_at=now)
                await self.notifier.notify(
                    record.user_id, NotificationKind.EXPIRATION_WARNING, days_left=days_left,
                )
                warned += 1
            except Exception:  # noqa: BLE001
                logger.exception("Expiry warning failed for subscription %s", record.id)
                errors += 1
        return SweepReport(len(candidates), succeeded=warned, errors=errors)


def setup_scheduler(
    charge_sweep: RecurringChargeSweep,
    expiration_sweeper: ExpirationSweeper,
    warning_sweep: ExpiryWarningSweep | None = None,
) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=pytz.utc)
    scheduler.add_job(
        charge_sweep.run,
        CronTrigger(hour=config.AUTO_CHARGE_HOUR, minute=0, timezone=pytz.utc),
        id="auto_charge",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(pytz.utc),
    )
    scheduler.add_job(
        expiration_sweeper.run,
        IntervalTrigger(minutes=config.EXPIRATION_SWEEP_MINUTES, timezone=pytz.utc),
        id="expiration",
        max_instances=1,
        coalesce=True,
    )
    if warning_sweep is not None:
        scheduler.add_job(
            warning_sweep.run,
            CronTrigger(hour=10, minute=0, timezone=pytz.utc),
            id="expiry_warning",
            max_instances=1,
            coalesce=True,
        )
    return scheduler


__all__ = [
    "ExpirationSweeper",
    "ExpiryWarningSweep",
    "RecurringChargeSweep",
    "SweepReport",
    "setup_scheduler",
]
