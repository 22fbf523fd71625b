"""Date helpers shared by the ledger, detector and sweeper."""

from __future__ import annotations

from datetime import date, datetime, timezone

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc_today() -> date:
    return utcnow().date()


def as_utc(value: datetime) -> datetime:
    """Normalize naive values (as returned by SQLite) to aware UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def window_end_for(purchased_at: datetime, window_months: int) -> date:
    """Calendar-month arithmetic; Jan 31 + 1 month lands on the last day of February."""

    return (as_utc(purchased_at) + relativedelta(months=window_months)).date()


def months_before(reference: datetime, months: int) -> datetime:
    return as_utc(reference) - relativedelta(months=months)


__all__ = ["as_utc", "months_before", "utc_today", "utcnow", "window_end_for"]
