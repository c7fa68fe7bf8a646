from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Naive UTC now; every stored timestamp is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def add_days(moment: datetime, days: int) -> datetime:
    return moment + timedelta(days=days)


def format_date(moment: datetime | None) -> str:
    return moment.strftime("%d.%m.%Y") if moment else ""
