"""
ExpenseSync data package: expense statistics.

- :mod:`ExpenseSync.data.data` – pandas based summaries (:func:`ExpenseSync.data.data.get_statistics`,
  category totals and shares, date range and current-month selections).
"""
