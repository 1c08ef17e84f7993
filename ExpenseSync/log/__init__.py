"""
Logging subsystem for ExpenseSync.

Modules:

- :mod:`ExpenseSync.log.log` – Root logger setup, Qt message bridge and the in-memory log tank.
"""
