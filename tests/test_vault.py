from unittest.mock import AsyncMock

from sqlalchemy import func, select

from premium_bot.models import Card


async def _cards(container, user_id):
    async with container.Session() as s:
        return await s.scalar(select(func.count()).select_from(Card).where(Card.user_id == user_id))


async def test_store_is_upsert_per_provider(container):
    await container.users.ensure(20)

    first = await container.vault.store(20, "uzcard", "tok-1", "8600****1111")
    second = await container.vault.store(20, "uzcard", "tok-2", "8600****2222")

    assert second.id == first.id
    assert second.token == "tok-2"
    assert second.masked_number == "8600****2222"
    assert await _cards(container, 20) == 1

    other = await container.vault.store(20, "click", "tok-3", "8600****3333")
    assert other.id != first.id
    assert await _cards(container, 20) == 2


async def test_find_any_prefers_latest_verified(container):
    await container.users.ensure(21)
    await container.vault.store(21, "uzcard", "tok-u", "8600****1111")
    await container.vault.store(21, "click", "tok-c", "8600****2222")

    card = await container.vault.find_any(21)
    assert card.provider == "click"
    assert (await container.vault.find(21, "uzcard")).token == "tok-u"
    assert await container.vault.find(21, "payme") is None


async def test_delete_revokes_remote_token(container, providers):
    await container.users.ensure(22)
    await container.vault.store(22, "click", "tok-c", "8600****2222")

    assert await container.vault.delete(22, "click")

    providers["click"].revoke.assert_awaited_once_with("tok-c")
    assert await container.vault.find(22, "click") is None


async def test_delete_succeeds_locally_when_revocation_fails(container, providers):
    await container.users.ensure(23)
    await container.vault.store(23, "uzcard", "tok-u", "8600****1111")
    providers["uzcard"].revoke = AsyncMock(side_effect=RuntimeError("uzcard down"))

    assert await container.vault.delete(23, "uzcard")
    assert await _cards(container, 23) == 0


async def test_delete_missing_card(container):
    assert not await container.vault.delete(24, "payme")
