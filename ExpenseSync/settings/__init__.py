"""
Settings package: configuration surface and application paths.

Modules:

- :mod:`ExpenseSync.settings.lib` – Credential configuration, mode detection and defaults.
"""
