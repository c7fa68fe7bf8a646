from __future__ import annotations

import enum
import logging
from typing import Protocol

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from .utils import format_date

logger = logging.getLogger(__name__)


class NotificationKind(enum.Enum):
    PAYMENT_SUCCESS = "payment_success"
    AUTO_PAYMENT_SUCCESS = "auto_payment_success"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_TERMINATED = "subscription_terminated"
    BONUS_GRANTED = "bonus_granted"
    BONUS_CANCELLED = "bonus_cancelled"
    BONUS_ROLLED_BACK = "bonus_rolled_back"
    CARD_DELETED = "card_deleted"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    EXPIRATION_WARNING = "expiration_warning"


TEMPLATES = {
    NotificationKind.PAYMENT_SUCCESS:
        "✅ To‘lov tasdiqlandi!\n\n📆 Obuna muddati: {end_date} gacha",
    NotificationKind.AUTO_PAYMENT_SUCCESS:
        "✅ Avtomatik to'lov muvaffaqiyatli amalga oshirildi!\n\n"
        "Sizning obunangiz {end_date} gacha uzaytirildi.",
    NotificationKind.PAYMENT_FAILED:
        "❌ Avtomatik to'lov amalga oshmadi!\n\n"
        "Kartangizda mablag' yetarli emas yoki boshqa muammo yuzaga keldi.",
    NotificationKind.SUBSCRIPTION_TERMINATED:
        "❌ To'lov bir necha marta amalga oshmadi. Obunangiz to'xtatildi.\n\n"
        "Qayta obuna bo'lish uchun /start ni bosing.",
    NotificationKind.BONUS_GRANTED:
        "🎁 {days} kunlik bonus: {end_date} gacha",
    NotificationKind.BONUS_CANCELLED:
        "❌ Karta o'chirildi. Bonus obuna bekor qilindi.",
    NotificationKind.BONUS_ROLLED_BACK:
        "⚠️ Bonus obuna bekor qilindi. Asl obuna muddatingiz {end_date} gacha saqlanib qoladi.",
    NotificationKind.CARD_DELETED:
        "✅ Karta muvaffaqiyatli o'chirildi.",
    NotificationKind.SUBSCRIPTION_EXPIRED:
        "❌ Sizning obunangiz muddati tugadi, iltimos qayta obuna bo'ling.",
    NotificationKind.EXPIRATION_WARNING:
        "⚠️ Ogohlantirish!\n\nSizning obunangiz {days_left} kundan so'ng tugaydi.",
}


def render(kind: NotificationKind, **params) -> str:
    if "end_date" in params and not isinstance(params["end_date"], str):
        params["end_date"] = format_date(params["end_date"])
    text = TEMPLATES[kind].format(**params)
    qr = params.get("qr_code_url")
    if qr:
        text += f"\n\n🧾 <a href=\"{qr}\">To'lov cheki (QR)</a>"
    return text


class Notifier(Protocol):
    async def notify(self, user_id: int, kind: NotificationKind, **params) -> bool: ...


class TelegramNotifier:
    """Fire-and-forget delivery; a failed send never propagates."""

    def __init__(self, bot: Bot):
        self.bot = bot

    @classmethod
    def from_token(cls, token: str) -> "TelegramNotifier":
        return cls(Bot(token, default=DefaultBotProperties(parse_mode=ParseMode.HTML)))

    async def notify(self, user_id: int, kind: NotificationKind, **params) -> bool:
        try:
            text = render(kind, **params)
            await self.bot.send_message(user_id, text)
            return True
        except Exception:  # noqa: BLE001
            logger.warning("Could not notify user %s (%s)", user_id, kind.value, exc_info=True)
            return False

    async def close(self) -> None:
        await self.bot.session.close()
