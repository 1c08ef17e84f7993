"""Expense statistics for dashboards and summaries.

Turns a list of :class:`~ExpenseSync.core.storage.Expense` records into a pandas DataFrame and
derives totals per category, category shares, date range and current-month selections, and the
overall summary returned by :func:`get_statistics`.
"""
import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd

from ..core.storage import DATE_COLUMN_FORMAT, Expense

DEFAULT_CATEGORY: str = 'Other'
RECENT_COUNT: int = 5

COLUMNS: List[str] = [
    'id',
    'date',
    'amount',
    'category',
    'description',
    'payment_method',
    'created_at',
    'synced',
]

DateLike = Union[str, datetime.date, datetime.datetime, pd.Timestamp]


def to_frame(expenses: Iterable[Expense]) -> pd.DataFrame:
    """Build a DataFrame with one row per expense, in the given order.

    The ``date`` column is parsed to datetime (unparsable dates become ``NaT``) and ``amount`` is
    numeric with invalid values set to zero.
    """
    df = pd.DataFrame([e.to_dict() for e in expenses])
    if df.empty:
        return pd.DataFrame(columns=COLUMNS)

    df = df.rename(columns={'paymentMethod': 'payment_method', 'createdAt': 'created_at'})
    df['date'] = pd.to_datetime(df['date'].astype(str).str[:10], format=DATE_COLUMN_FORMAT, errors='coerce')

    invalid = int(df['date'].isna().sum())
    if invalid:
        logging.warning(f'{invalid} expense(s) have an unparsable date.')

    df['amount'] = pd.to_numeric(df['amount'], errors='coerce').fillna(0.0)
    df['category'] = df['category'].fillna('').astype(str)
    return df[COLUMNS]


def get_category_totals(expenses: Iterable[Expense]) -> Dict[str, float]:
    """Sum of amounts per category. Expenses without a category count as ``Other``."""
    df = to_frame(expenses)
    if df.empty:
        return {}

    categories = df['category'].replace('', DEFAULT_CATEGORY)
    totals = df['amount'].groupby(categories, sort=False).sum()
    return {str(k): float(v) for k, v in totals.items()}


def get_category_percentages(expenses: Iterable[Expense]) -> Dict[str, Dict[str, float]]:
    """Amount and share of the grand total per category.

    Returns:
        dict: ``{category: {'amount': float, 'percentage': float}}``, empty when the total is zero.
    """
    totals = get_category_totals(expenses)
    grand_total = sum(totals.values())
    if grand_total == 0:
        return {}
    return {
        category: {'amount': amount, 'percentage': amount / grand_total * 100.0}
        for category, amount in totals.items()
    }


def _to_timestamp(value: DateLike) -> pd.Timestamp:
    return pd.Timestamp(value).normalize()


def filter_by_date_range(
        expenses: Iterable[Expense],
        start: Optional[DateLike],
        end: Optional[DateLike]
) -> List[Expense]:
    """Return the expenses dated between ``start`` and ``end``, both inclusive.

    When either bound is missing all expenses are returned.
    """
    expenses = list(expenses)
    if start is None or end is None:
        return expenses

    df = to_frame(expenses)
    if df.empty:
        return []

    mask = df['date'].between(_to_timestamp(start), _to_timestamp(end))
    return [e for e, keep in zip(expenses, mask.tolist()) if keep]


def get_monthly_expenses(expenses: Iterable[Expense], today: Optional[datetime.date] = None) -> List[Expense]:
    """Return the expenses of the current calendar month."""
    today = today or datetime.date.today()
    period = pd.Period(year=today.year, month=today.month, freq='M')
    return filter_by_date_range(expenses, period.start_time, period.end_time.normalize())


def get_statistics(expenses: Iterable[Expense], today: Optional[datetime.date] = None) -> Dict[str, Any]:
    """Summary figures for a dashboard.

    Returns:
        dict: ``totalExpenses``, ``totalAmount``, ``monthlyExpenses``, ``monthlyAmount``,
        ``categoryTotals`` and ``recentExpenses`` (the last five added, newest first).
    """
    expenses = list(expenses)
    monthly = get_monthly_expenses(expenses, today=today)

    return {
        'totalExpenses': len(expenses),
        'totalAmount': float(sum(e.amount or 0 for e in expenses)),
        'monthlyExpenses': len(monthly),
        'monthlyAmount': float(sum(e.amount or 0 for e in monthly)),
        'categoryTotals': get_category_totals(expenses),
        'recentExpenses': list(reversed(expenses[-RECENT_COUNT:])),
    }
