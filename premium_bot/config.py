# premium_bot/config.py
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int = 0) -> int:
    v = (os.getenv(name, "") or "").strip()
    return int(v) if v else default


def _get_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


BOT_TOKEN = _get_str("BOT_TOKEN")
DATABASE_URL = _get_str("DATABASE_URL")

CLICK_SECRET = _get_str("CLICK_SECRET")
CLICK_SERVICE_ID = _get_str("CLICK_SERVICE_ID")

WEBHOOK_TOKEN = _get_str("WEBHOOK_TOKEN", "change-me")

LOG_LEVEL = _get_str("LOG_LEVEL", "INFO").upper()
LOG_PATH = _get_str("LOG_PATH")

# provider calls: Click/Payme/Uzcard answer within ~45s or never
CHARGE_TIMEOUT_SECONDS = _get_int("CHARGE_TIMEOUT_SECONDS", 45)

MAX_AUTO_CHARGE_ATTEMPTS = _get_int("MAX_AUTO_CHARGE_ATTEMPTS", 30)

# all schedules are UTC
AUTO_CHARGE_HOUR = _get_int("AUTO_CHARGE_HOUR", 3)
EXPIRATION_SWEEP_MINUTES = _get_int("EXPIRATION_SWEEP_MINUTES", 15)
WARNING_DAYS = _get_int("WARNING_DAYS", 3)

# Click sends so'm, we keep tiyin
CLICK_AMOUNT_MULTIPLIER = 100


class Provider:
    CLICK = "click"
    PAYME = "payme"
    UZCARD = "uzcard"

    ALL = (CLICK, PAYME, UZCARD)


@dataclass(frozen=True)
class ServiceConfig:
    kind: str
    plan_name: str
    price: int  # tiyin
    duration_days: int = 30
    bonus_days: dict = field(default_factory=lambda: {
        Provider.UZCARD: 60,
        Provider.CLICK: 30,
        Provider.PAYME: 30,
    })

    def bonus_days_for(self, provider: str | None) -> int:
        return self.bonus_days.get(provider or "", DEFAULT_BONUS_DAYS)


DEFAULT_BONUS_DAYS = 30

SERVICES = {
    "football": ServiceConfig("football", "Futbol", 777700),
    "wrestling": ServiceConfig("wrestling", "Yakka kurash", 777700),
    "yulduz": ServiceConfig("yulduz", "Yulduz bashorati", 555500),
}

DEFAULT_SERVICE = _get_str("DEFAULT_SERVICE", "football")


def service_config(kind: str | None) -> ServiceConfig:
    return SERVICES.get(kind or DEFAULT_SERVICE) or SERVICES[DEFAULT_SERVICE]


def bonus_days_for(kind: str | None, provider: str | None) -> int:
    return service_config(kind).bonus_days_for(provider)


def require(name: str, value: str) -> str:
    if not value:
        raise RuntimeError(f"{name} env topilmadi")
    return value
