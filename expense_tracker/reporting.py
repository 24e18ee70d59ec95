from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional

CSV_HEADER = "Date,Title,Amount,Type,Category"


@dataclass(frozen=True)
class ExportRow:
    amount: float
    date: datetime
    title: Optional[str] = None
    category: Optional[str] = None


def direction_of(amount: float) -> str:
    return "expense" if amount < 0 else "income"


def format_locale_date(value: date | datetime) -> str:
    """en-US short date, e.g. 5/1/2024."""
    return f"{value.month}/{value.day}/{value.year}"


def format_amount(value: float) -> str:
    """Render a number the way a JavaScript client prints it (12, 4.5)."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def render_csv(rows: Iterable[ExportRow]) -> str:
    """Build the transactions export.

    The stored ``type`` is not consulted; the Type column is derived from the
    sign of the amount and Amount is its absolute value. Titles are always
    quoted with embedded quotes doubled; other columns are written as-is.
    """
    lines = []
    for row in rows:
        title = (row.title or "").replace('"', '""')
        lines.append(
            ",".join(
                [
                    format_locale_date(row.date),
                    f'"{title}"',
                    format_amount(abs(row.amount)),
                    direction_of(row.amount),
                    row.category or "",
                ]
            )
        )
    return CSV_HEADER + "\n" + "\n".join(lines)


def balance(amounts: Iterable[float]) -> float:
    total = 0.0
    for amount in amounts:
        total += float(amount or 0)
    return total
