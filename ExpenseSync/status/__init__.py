"""Status package: enums and exceptions for handling application state and errors.

This package defines:
    - Status: a StrEnum of possible application states
    - STATUS_MESSAGE: default user-facing messages per status
    - get_message: helper to retrieve messages for statuses
    - AuthFailureReason, RemoteErrorKind: structured failure tags
    - BaseStatusException: base exception for status-driven error handling
    - Specific exceptions (e.g., SyncPermissionException) tagged with statuses
"""
