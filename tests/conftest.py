from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from premium_bot import config
from premium_bot.database import create_all, create_engine
from premium_bot.main import build_container
from premium_bot.models import Subscription, SubscriptionStatus, SubscriptionType
from premium_bot.payments import SignaturePhase, build_click_signature
from premium_bot.providers import ChargeResult
from premium_bot.utils import utcnow

CLICK_SECRET = "test-secret"


def make_provider(success=True, receipt_id="rcpt-1", qr_code_url="https://qr.example/1"):
    result = ChargeResult(success, receipt_id if success else None, qr_code_url if success else None,
                          None if success else "insufficient_funds")
    return SimpleNamespace(
        charge=AsyncMock(return_value=result),
        revoke=AsyncMock(return_value=True),
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'premium.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def notifier():
    return SimpleNamespace(notify=AsyncMock(return_value=True))


@pytest.fixture
def providers():
    return {"click": make_provider(), "uzcard": make_provider(), "payme": make_provider()}


@pytest.fixture(autouse=True)
def click_service_id(monkeypatch):
    monkeypatch.setattr(config, "CLICK_SERVICE_ID", "77")


@pytest.fixture
async def container(engine, notifier, providers):
    c = build_container(engine, notifier, click_secret=CLICK_SECRET, clients=providers)
    await c.plans.seed()
    return c


@pytest.fixture
async def yulduz_plan(container):
    return await container.plans.get_by_name("Yulduz bashorati")


@pytest.fixture
async def football_plan(container):
    return await container.plans.get_by_name("Futbol")


async def add_subscription(container, user_id, plan, **fields):
    now = utcnow()
    values = dict(
        user_id=user_id,
        plan_id=plan.id,
        service=plan.service,
        subscription_type=SubscriptionType.SUBSCRIPTION,
        start_date=now,
        end_date=now,
        is_active=True,
        status=SubscriptionStatus.ACTIVE,
        auto_renew=True,
        attempt_count=0,
    )
    values.update(fields)
    await container.users.ensure(user_id)
    async with container.Session() as s:
        record = Subscription(**values)
        s.add(record)
        await s.commit()
        return record


def click_payload(phase, *, trans_id="1001", plan_id=1, user_id=42, amount="5555.00",
                  service="yulduz", prepare_id=None, error="0", secret=CLICK_SECRET, service_id="77"):
    data = {
        "click_trans_id": trans_id,
        "service_id": service_id,
        "click_paydoc_id": "555",
        "merchant_trans_id": str(plan_id),
        "amount": amount,
        "action": "0" if phase is SignaturePhase.PREPARE else "1",
        "error": error,
        "error_note": "Success",
        "sign_time": "2025-01-15 10:00:00",
        "param2": str(user_id),
        "param3": service,
    }
    if phase is SignaturePhase.COMPLETE:
        data["merchant_prepare_id"] = str(prepare_id)
    data["sign_string"] = build_click_signature(data, secret, phase)
    return data
