"""Application-wide Qt signals for ExpenseSync.

Presentation code connects to these to refresh connection indicators and
expense views without polling the sync service.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for expense, sync and authentication events."""
    authenticationRequested = QtCore.Signal()
    authenticationChanged = QtCore.Signal(bool)

    expenseAdded = QtCore.Signal(object)  # Expense
    expensesChanged = QtCore.Signal()

    syncFinished = QtCore.Signal(object)  # SyncResult

    error = QtCore.Signal(str)


signals = Signals()
