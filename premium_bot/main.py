from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI

from . import config
from .api import router
from .callbacks import ClickCallbackHandler
from .database import create_all, create_engine, create_session_factory
from .ledger import TransactionLedger
from .lifecycle import SubscriptionLifecycle
from .logger import setup_logging
from .notifications import TelegramNotifier
from .providers import ChargeDispatcher
from .reports import TransactionReports
from .repositories import PlanRepository, SubscriptionRepository, UserRepository
from .scheduler import ExpirationSweeper, ExpiryWarningSweep, RecurringChargeSweep, setup_scheduler
from .services import RenewalService
from .vault import CardVault

logger = logging.getLogger(__name__)


@dataclass
class Container:
    """Every collaborator, built once at startup and passed explicitly."""

    engine: Any
    Session: Any
    users: UserRepository
    plans: PlanRepository
    subscriptions: SubscriptionRepository
    ledger: TransactionLedger
    dispatcher: ChargeDispatcher
    vault: CardVault
    lifecycle: SubscriptionLifecycle
    notifier: Any
    renewals: RenewalService
    click: ClickCallbackHandler
    charge_sweep: RecurringChargeSweep
    expiration_sweeper: ExpirationSweeper
    warning_sweep: ExpiryWarningSweep
    reports: TransactionReports


def build_container(
    engine,
    notifier,
    *,
    click_secret: str | None = None,
    clients: dict | None = None,
) -> Container:
    Session = create_session_factory(engine)
    users = UserRepository(Session)
    plans = PlanRepository(Session)
    subscriptions = SubscriptionRepository(Session)
    ledger = TransactionLedger(Session)
    dispatcher = ChargeDispatcher(clients)
    vault = CardVault(Session, dispatcher)
    lifecycle = SubscriptionLifecycle(Session, plans)
    renewals = RenewalService(users, subscriptions, vault, ledger, lifecycle, dispatcher, notifier)
    click = ClickCallbackHandler(
        config.require("CLICK_SECRET", click_secret if click_secret is not None else config.CLICK_SECRET),
        ledger, lifecycle, users, plans, notifier,
        service_id=config.CLICK_SERVICE_ID,
    )
    return Container(
        engine=engine,
        Session=Session,
        users=users,
        plans=plans,
        subscriptions=subscriptions,
        ledger=ledger,
        dispatcher=dispatcher,
        vault=vault,
        lifecycle=lifecycle,
        notifier=notifier,
        renewals=renewals,
        click=click,
        charge_sweep=RecurringChargeSweep(subscriptions, users, renewals, notifier),
        expiration_sweeper=ExpirationSweeper(subscriptions, users, notifier),
        warning_sweep=ExpiryWarningSweep(subscriptions, notifier),
        reports=TransactionReports(Session),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "container", None) is not None:
        # tayyor container (testlar) - hech narsa ishga tushirilmaydi
        yield
        return

    setup_logging()
    engine = create_engine(config.require("DATABASE_URL", config.DATABASE_URL))
    notifier = TelegramNotifier.from_token(config.require("BOT_TOKEN", config.BOT_TOKEN))
    container = build_container(engine, notifier)
    missing = container.dispatcher.missing()
    if missing:
        logger.warning("No charge client for: %s; their cards are not auto-charged", ", ".join(missing))

    await create_all(engine)
    seeded = await container.plans.seed()
    if seeded:
        logger.info("Seeded plans: %s", ", ".join(p.name for p in seeded))

    scheduler = setup_scheduler(
        container.charge_sweep, container.expiration_sweeper, container.warning_sweep,
    )
    scheduler.start()
    app.state.container = container
    app.state.scheduler = scheduler
    logger.info("premium_bot started")
    try:
        yield
    finally:
        scheduler.shutdown(wait=False)
        await notifier.close()
        await engine.dispose()
        app.state.container = None
        logger.info("premium_bot stopped")


def create_app(container: Container | None = None) -> FastAPI:
    app = FastAPI(lifespan=lifespan)
    app.state.container = container
    app.include_router(router)
    return app


app = create_app()
