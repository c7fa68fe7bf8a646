from __future__ import annotations

from datetime import datetime, timedelta
from io import BytesIO
from typing import Dict, List

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from sqlalchemy import select

from .models import Plan, Transaction, TransactionStatus
from .utils import start_of_day, utcnow

HEADERS = [
    "transaction_id",
    "created_at_utc",
    "performed_at_utc",
    "user_id",
    "provider",
    "payment_type",
    "service",
    "plan",
    "amount_som",
    "status",
    "trans_id",
    "receipt_id",
]


def _fmt(moment: datetime | None) -> str:
    return moment.strftime("%Y-%m-%d %H:%M:%S") if moment else ""


class TransactionReports:
    def __init__(self, Session):
        self.Session = Session

    async def since(self, dt_utc: datetime) -> List[dict]:
        async with self.Session() as s:
            q = (
                select(Transaction, Plan.name)
                .join(Plan, Plan.id == Transaction.plan_id, isouter=True)
                .where(Transaction.created_at >= dt_utc)
                .order_by(Transaction.id.desc())
            )
            res = await s.execute(q)
            return [
                {
                    "id": t.id,
                    "created_at": t.created_at,
                    "performed_at": t.performed_at,
                    "user_id": t.user_id,
                    "provider": t.provider,
                    "payment_type": t.payment_type,
                    "service": t.service,
                    "plan": plan_name,
                    "amount": t.amount,
                    "status": t.status,
                    "trans_id": t.trans_id,
                    "receipt_id": t.receipt_id,
                }
                for t, plan_name in res.all()
            ]

    async def today(self) -> List[dict]:
        return await self.since(start_of_day(utcnow()))

    async def last_30_days(self) -> List[dict]:
        return await self.since(utcnow() - timedelta(days=30))


def transactions_stats(rows: List[dict]) -> Dict[str, dict]:
    """
    Only PAID rows count. Sums are in tiyin.
      {"click": {"count":..,"sum":..}, "uzcard": ..., "all": {...}}
    """
    by: Dict[str, dict] = {}
    total_count = 0
    total_sum = 0

    for r in rows:
        if r.get("status") != TransactionStatus.PAID:
            continue
        provider = (r.get("provider") or "unknown").lower()
        amount = int(r.get("amount") or 0)

        by.setdefault(provider, {"count": 0, "sum": 0})
        by[provider]["count"] += 1
        by[provider]["sum"] += amount

        total_count += 1
        total_sum += amount

    by["all"] = {"count": total_count, "sum": total_sum}
    return by


def build_transactions_xlsx(rows: List[dict], title: str) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "transactions"

    ws.append([title])
    ws["A1"].font = Font(bold=True)
    ws.append(["Generated (UTC)", _fmt(utcnow())])
    ws.append([])
    ws.append(HEADERS)

    for r in rows:
        amount = r.get("amount")
        ws.append([
            r.get("id"),
            _fmt(r.get("created_at")),
            _fmt(r.get("performed_at")),
            r.get("user_id"),
            r.get("provider"),
            r.get("payment_type"),
            r.get("service"),
            r.get("plan"),
            amount / 100 if amount is not None else None,
            r.get("status"),
            r.get("trans_id"),
            r.get("receipt_id"),
        ])

    for col in range(1, len(HEADERS) + 1):
        ws.column_dimensions[get_column_letter(col)].width = 18

    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()
