from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

from sqlalchemy import func, select

from premium_bot.main import build_container
from premium_bot.models import SubscriptionStatus, SubscriptionType, Transaction
from premium_bot.notifications import NotificationKind
from premium_bot.providers import ChargeResult
from premium_bot.scheduler import RecurringChargeSweep, setup_scheduler
from premium_bot.utils import utcnow

from conftest import CLICK_SECRET, add_subscription


NOW = datetime(2025, 3, 1, 12, 0, 0)


async def _due(container, user_id, plan, attempts=0, provider="click", now=None):
    now = now or utcnow()
    record = await add_subscription(
        container, user_id, plan,
        start_date=now - timedelta(days=31),
        end_date=now - timedelta(hours=1),
        attempt_count=attempts,
    )
    await container.vault.store(user_id, provider, f"tok-{user_id}", "8600****0000")
    return record


async def test_successful_auto_charge_extends_and_resets(container, notifier, football_plan):
    record = await _due(container, 40, football_plan, attempts=3)
    now = utcnow()

    report = await container.charge_sweep.run(now)

    assert report.candidates == 1
    assert report.succeeded == 1
    stored = await container.subscriptions.get_by_id(record.id)
    assert stored.attempt_count == 0
    assert stored.end_date == now + timedelta(days=30)
    assert stored.status == SubscriptionStatus.ACTIVE
    kind = notifier.notify.await_args.args[1]
    assert kind is NotificationKind.AUTO_PAYMENT_SUCCESS
    assert notifier.notify.await_args.kwargs["qr_code_url"] == "https://qr.example/1"


async def test_failure_below_threshold_keeps_subscription(container, notifier, providers, football_plan):
    record = await _due(container, 41, football_plan, attempts=28)
    providers["click"].charge.return_value = ChargeResult(False, error_code="insufficient_funds")

    report = await container.charge_sweep.run()

    assert report.failed == 1
    stored = await container.subscriptions.get_by_id(record.id)
    assert stored.attempt_count == 29
    assert stored.auto_renew
    assert stored.status == SubscriptionStatus.ACTIVE
    notifier.notify.assert_not_awaited()


async def test_thirtieth_failure_terminates(container, notifier, providers, football_plan):
    record = await _due(container, 42, football_plan, attempts=29)
    providers["click"].charge.return_value = ChargeResult(False, error_code="insufficient_funds")

    report = await container.charge_sweep.run()

    assert report.terminated == 1
    stored = await container.subscriptions.get_by_id(record.id)
    assert stored.attempt_count == 30
    assert stored.status == SubscriptionStatus.CANCELLED
    assert not stored.auto_renew
    assert not stored.is_active
    user = await container.users.get(42)
    assert user.is_kicked_out
    assert not user.is_active
    notifier.notify.assert_awaited_once_with(42, NotificationKind.SUBSCRIPTION_TERMINATED)

    # terminated records are no longer candidates
    assert (await container.charge_sweep.run(utcnow() + timedelta(days=1))).candidates == 0


async def test_one_attempt_per_day(container, providers, football_plan):
    await _due(container, 43, football_plan, now=NOW)
    providers["click"].charge.return_value = ChargeResult(False)

    first = await container.charge_sweep.run(NOW)
    second = await container.charge_sweep.run(NOW + timedelta(hours=5))

    assert first.failed == 1
    assert second.candidates == 0
    assert providers["click"].charge.await_count == 1


async def test_lost_stamp_skips_charge(container, providers, football_plan):
    record = await _due(container, 44, football_plan)
    now = utcnow()
    assert await container.subscriptions.stamp_attempt(record.id, now) == 1

    stale = SimpleNamespace(due_for_auto_charge=AsyncMock(return_value=[record]))
    stale.stamp_attempt = container.subscriptions.stamp_attempt
    sweep = RecurringChargeSweep(stale, container.users, container.renewals, SimpleNamespace())

    report = await sweep.run(now)

    assert report.skipped == 1
    providers["click"].charge.assert_not_awaited()


async def test_one_bad_candidate_does_not_stop_sweep(container, providers, football_plan):
    await _due(container, 45, football_plan)
    await _due(container, 46, football_plan)
    renewals = SimpleNamespace(
        can_charge=AsyncMock(return_value=True),
        charge_and_extend=AsyncMock(side_effect=[
            RuntimeError("db gone"),
            SimpleNamespace(success=True, new_end_date=utcnow(), qr_code_url=None),
        ]),
    )
    sweep = RecurringChargeSweep(
        container.subscriptions, container.users, renewals,
        SimpleNamespace(notify=AsyncMock()),
    )

    report = await sweep.run()

    assert report.errors == 1
    assert report.succeeded == 1
    providers["click"].charge.assert_not_awaited()


async def test_missing_provider_client_does_not_burn_attempts(engine, notifier, football_plan):
    bare = build_container(engine, notifier, click_secret=CLICK_SECRET)
    record = await _due(bare, 48, football_plan, attempts=29)

    report = await bare.charge_sweep.run()

    assert report.unsupported == 1
    assert report.terminated == 0
    stored = await bare.subscriptions.get_by_id(record.id)
    assert stored.attempt_count == 29
    assert stored.last_attempted_auto_subscription_at is None
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.auto_renew
    assert not (await bare.users.get(48)).is_kicked_out
    notifier.notify.assert_not_awaited()
    async with bare.Session() as s:
        assert await s.scalar(select(func.count()).select_from(Transaction)) == 0


async def test_only_auto_renew_subscriptions_are_charged(container, providers, football_plan):
    await _due(container, 47, football_plan)
    await container.subscriptions.disable_auto_renew(47)

    report = await container.charge_sweep.run()

    assert report.candidates == 0
    providers["click"].charge.assert_not_awaited()


async def test_expiration_sweep(container, notifier, football_plan, yulduz_plan):
    now = utcnow()
    onetime = await add_subscription(
        container, 50, yulduz_plan, subscription_type=SubscriptionType.ONETIME,
        auto_renew=False, end_date=now - timedelta(minutes=1),
    )
    running = await add_subscription(container, 51, football_plan, end_date=now + timedelta(days=3))
    await container.users.update(50, is_active=True)
    await container.users.update(51, is_active=True)

    report = await container.expiration_sweeper.run(now)

    assert report.succeeded == 1
    expired = await container.subscriptions.get_by_id(onetime.id)
    assert expired.status == SubscriptionStatus.EXPIRED
    assert not expired.is_active
    assert not (await container.users.get(50)).is_active
    assert (await container.subscriptions.get_by_id(running.id)).status == SubscriptionStatus.ACTIVE
    assert (await container.users.get(51)).is_active
    notifier.notify.assert_awaited_once_with(50, NotificationKind.SUBSCRIPTION_EXPIRED)

    # expired never goes back through the sweeper
    assert not await container.subscriptions.expire(onetime.id, now)
    assert (await container.expiration_sweeper.run(now)).candidates == 0


async def test_expiry_warning_once_per_day(container, notifier, yulduz_plan):
    await add_subscription(
        container, 52, yulduz_plan, subscription_type=SubscriptionType.ONETIME,
        auto_renew=False, start_date=NOW - timedelta(days=28), end_date=NOW + timedelta(days=2),
    )

    first = await container.warning_sweep.run(NOW)
    second = await container.warning_sweep.run(NOW + timedelta(hours=1))

    assert first.succeeded == 1
    assert second.candidates == 0
    notifier.notify.assert_awaited_once_with(52, NotificationKind.EXPIRATION_WARNING, days_left=2)


async def test_setup_scheduler_registers_jobs(container):
    scheduler = setup_scheduler(container.charge_sweep, container.expiration_sweeper, container.warning_sweep)

    ids = {job.id for job in scheduler.get_jobs()}
    assert ids == {"auto_charge", "expiration", "expiry_warning"}
    assert not scheduler.running
