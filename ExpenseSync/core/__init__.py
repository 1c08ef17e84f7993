"""
Core package for ExpenseSync providing the storage and sync functionality.

This package includes:

- :mod:`ExpenseSync.core.storage` – Local SQLite backed cache of expenses and settings.
- :mod:`ExpenseSync.core.auth` – Google OAuth2 user consent and service account token management.
- :mod:`ExpenseSync.core.service` – Google Sheets client for the remote expense table.
- :mod:`ExpenseSync.core.sync` – The sync service reconciling the local cache with the spreadsheet.
- :mod:`ExpenseSync.core.signals` – Application-wide Qt signals.
"""
