from datetime import timedelta

import pytest
from sqlalchemy import func, select

from premium_bot.lifecycle import CardRemovalAction
from premium_bot.models import SubscriptionType, Transaction, TransactionStatus
from premium_bot.notifications import NotificationKind
from premium_bot.providers import ChargeResult
from premium_bot.utils import utcnow


def _kinds(notifier):
    return [c.args[1] for c in notifier.notify.await_args_list]


async def test_first_card_link_grants_bonus(container, notifier, providers):
    res = await container.renewals.link_card(30, "football", "uzcard", "tok-u", "8600****1111")

    assert res.bonus
    assert res.renewal is None
    assert res.state.end_date - res.state.start_date == timedelta(days=60)
    providers["uzcard"].charge.assert_not_awaited()

    record = await container.subscriptions.get(30, "football")
    assert record.auto_renew
    assert record.subscription_type == SubscriptionType.SUBSCRIPTION
    assert (await container.users.get(30)).subscription_type == SubscriptionType.SUBSCRIPTION
    assert _kinds(notifier) == [NotificationKind.BONUS_GRANTED]


async def test_relink_after_bonus_charges_first(container, notifier, providers):
    await container.renewals.link_card(31, "football", "click", "tok-1", "8600****1111")
    before = await container.subscriptions.get(31, "football")

    res = await container.renewals.link_card(31, "football", "click", "tok-2", "8600****2222")

    assert not res.bonus
    assert res.renewal.success
    assert res.renewal.receipt_id == "rcpt-1"
    providers["click"].charge.assert_awaited_once()
    assert providers["click"].charge.await_args.args[:2] == ("tok-2", 777700)

    after = await container.subscriptions.get(31, "football")
    assert after.end_date == before.end_date + timedelta(days=30)
    txn = await container.ledger.get(res.renewal.transaction_id)
    assert txn.status == TransactionStatus.PAID
    assert txn.applied_at is not None
    assert _kinds(notifier)[-1] is NotificationKind.PAYMENT_SUCCESS


async def test_declined_charge_does_not_extend(container, providers):
    await container.renewals.link_card(32, "football", "click", "tok-1", "8600****1111")
    before = await container.subscriptions.get(32, "football")
    providers["click"].charge.return_value = ChargeResult(False, error_code="insufficient_funds")

    res = await container.renewals.charge_and_extend(32, "football")

    assert not res.success
    assert res.reason == "insufficient_funds"
    after = await container.subscriptions.get(32, "football")
    assert after.end_date == before.end_date
    txn = await container.ledger.get(res.transaction_id)
    assert txn.status == TransactionStatus.FAILED
    assert txn.applied_at is None


async def test_charge_without_card(container):
    await container.users.ensure(33)
    res = await container.renewals.charge_and_extend(33, "football")
    assert not res.success
    assert res.reason == "no_card"


async def test_interactive_renewal_notifies(container, notifier, providers):
    await container.renewals.link_card(34, "yulduz", "payme", "tok-p", "8600****4444")

    ok = await container.renewals.renew_with_stored_card(34, "yulduz")
    assert ok.success
    last = notifier.notify.await_args_list[-1]
    assert last.args[1] is NotificationKind.PAYMENT_SUCCESS
    assert last.kwargs["qr_code_url"] == "https://qr.example/1"
    assert providers["payme"].charge.await_args.args[1] == 555500

    providers["payme"].charge.return_value = ChargeResult(False, error_code="expired_card")
    failed = await container.renewals.renew_with_stored_card(34, "yulduz")
    assert not failed.success
    assert _kinds(notifier)[-1] is NotificationKind.PAYMENT_FAILED


async def test_remove_card_cancels_fresh_bonus(container, notifier, providers):
    await container.renewals.link_card(35, "football", "uzcard", "tok-u", "8600****1111")

    res = await container.renewals.remove_card(35, "uzcard")

    assert res.removed
    assert res.outcome.action is CardRemovalAction.TERMINATED
    providers["uzcard"].revoke.assert_awaited_once_with("tok-u")
    record = await container.subscriptions.get(35, "football")
    assert not record.auto_renew
    assert not record.is_active
    status = await container.renewals.get_subscription_status(35, "football")
    assert not status.active
    assert _kinds(notifier)[-1] is NotificationKind.BONUS_CANCELLED


async def test_remove_card_keeps_paid_time(container, notifier):
    now = utcnow()
    await container.users.ensure(36)
    paid = await container.lifecycle.grant(36, "football", provider="click", now=now)
    await container.renewals.link_card(36, "football", "click", "tok-c", "8600****1111")

    res = await container.renewals.remove_card(36, "click")

    assert res.outcome.action is CardRemovalAction.ROLLED_BACK
    assert res.outcome.end_date == paid.end_date
    status = await container.renewals.get_subscription_status(36, "football")
    assert status.active
    assert notifier.notify.await_args_list[-1].args[1] is NotificationKind.BONUS_ROLLED_BACK


async def test_remove_card_keeps_auto_renew_with_other_card(container):
    await container.renewals.link_card(37, "football", "uzcard", "tok-u", "8600****1111")
    await container.vault.store(37, "click", "tok-c", "8600****2222")
    await container.users.update(37, has_received_free_bonus=False)

    await container.renewals.remove_card(37, "click")

    record = await container.subscriptions.get(37, "football")
    assert record.auto_renew


async def test_remove_missing_card(container, notifier):
    res = await container.renewals.remove_card(38, "click")
    assert not res.removed
    notifier.notify.assert_not_awaited()


async def test_charge_with_unwired_provider_raises_before_ledger(container, providers):
    await container.renewals.link_card(39, "football", "click", "tok-c", "8600****1111")
    container.dispatcher.clients.pop("click")

    assert not await container.renewals.can_charge(39)
    with pytest.raises(LookupError):
        await container.renewals.charge_and_extend(39, "football")
    async with container.Session() as s:
        assert await s.scalar(select(func.count()).select_from(Transaction)) == 0
