from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from .models import EntranceLog

MONTH_LABELS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
                "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def attendance_summary(logs: Iterable[EntranceLog], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Visit counts for one member: this week (from Monday), this month, this
    year, plus per-month counts for the current year. Every logged attempt
    counts as a visit, valid or not. Timestamps are compared in local time.
    """
    now = (now or datetime.now().astimezone())
    tz = now.tzinfo
    week_start = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)

    week = month = year = 0
    monthly = [0] * 12
    total = 0
    for entry in logs:
        total += 1
        ts = entry.timestamp.astimezone(tz) if entry.timestamp.tzinfo else entry.timestamp.replace(tzinfo=tz)
        if week_start <= ts <= now:
            week += 1
        if ts.year != now.year:
            continue
        year += 1
        monthly[ts.month - 1] += 1
        if ts.month == now.month:
            month += 1

    return {
        "total": total,
        "this_week": week,
        "this_month": month,
        "this_year": year,
        "monthly": [{"month": MONTH_LABELS[i], "visits": n} for i, n in enumerate(monthly)],
    }
