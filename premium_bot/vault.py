from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from .models import Card
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CardRef:
    id: int
    user_id: int
    provider: str
    token: str
    masked_number: str
    verified: bool
    verified_at: datetime | None

    @classmethod
    def from_row(cls, card: Card) -> "CardRef":
        return cls(
            id=card.id, user_id=card.user_id, provider=card.provider,
            token=card.token, masked_number=card.masked_number,
            verified=card.verified, verified_at=card.verified_at,
        )


class CardVault:
    """One verified recurring token per (user, provider)."""

    def __init__(self, Session, dispatcher):
        self.Session = Session
        self.dispatcher = dispatcher

    async def store(self, user_id: int, provider: str, token: str, masked_number: str) -> CardRef:
        now = utcnow()
        async with self.Session() as s:
            res = await s.execute(
                select(Card).where(Card.user_id == user_id, Card.provider == provider)
            )
            card = res.scalars().first()
            if card:
                if card.masked_number == masked_number:
                    logger.info("Re-issued token for user %s (%s)", user_id, provider)
                else:
                    logger.info("Replacing %s card for user %s", provider, user_id)
                card.token = token
                card.masked_number = masked_number
                card.verified = True
                card.verified_at = now
            else:
                card = Card(
                    user_id=user_id, provider=provider, token=token,
                    masked_number=masked_number, verified=True, verified_at=now,
                )
                s.add(card)
            try:
                await s.commit()
            except IntegrityError:
                # parallel store for the same (user, provider)
                await s.rollback()
                res = await s.execute(
                    select(Card).where(Card.user_id == user_id, Card.provider == provider)
                )
                card = res.scalars().one()
                card.token = token
                card.masked_number = masked_number
                card.verified = True
                card.verified_at = now
                await s.commit()
            return CardRef.from_row(card)

    async def find(self, user_id: int, provider: str) -> CardRef | None:
        async with self.Session() as s:
            res = await s.execute(
                select(Card).where(
                    Card.user_id == user_id,
                    Card.provider == provider,
                    Card.verified == True,  # noqa: E712
                )
            )
            card = res.scalars().first()
            return CardRef.from_row(card) if card else None

    async def find_any(self, user_id: int) -> CardRef | None:
        async with self.Session() as s:
            res = await s.execute(
                select(Card)
                .where(Card.user_id == user_id, Card.verified == True)  # noqa: E712
                .order_by(Card.verified_at.desc(), Card.id.desc())
            )
            card = res.scalars().first()
            return CardRef.from_row(card) if card else None

    async def delete(self, user_id: int, provider: str) -> bool:
        card = await self.find(user_id, provider)
        if not card:
            logger.info("No %s card to delete for user %s", provider, user_id)
            return False

        # Step 1: provayder tomonda tokenni bekor qilish
        try:
            revoked = await self.dispatcher.revoke(provider, card.token)
            if not revoked:
                logger.warning("%s refused token revocation for user %s", provider, user_id)
        except Exception:  # noqa: BLE001
            logger.exception("Card revocation error (%s) for user %s", provider, user_id)

        # Step 2: bizning bazadan
        async with self.Session() as s:
            await s.execute(delete(Card).where(Card.user_id == user_id, Card.provider == provider))
            await s.commit()
        logger.info("Card deleted from database for user %s (%s)", user_id, provider)
        return True
