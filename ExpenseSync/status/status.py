"""Status definitions and exceptions for ExpenseSync.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., RemoteException) for error handling in the sync core
"""
import enum
import logging
from typing import Dict, Optional


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Configuration status
    ConfigurationInvalid = enum.auto()

    # Authentication status
    AuthenticationFailed = enum.auto()
    NotAuthenticated = enum.auto()

    # Spreadsheet access status
    SpreadsheetIdNotConfigured = enum.auto()
    RemoteError = enum.auto()
    SyncPermissionDenied = enum.auto()

    # Service status
    ServiceUnavailable = enum.auto()

    # Local cache status
    ExpenseNotFound = enum.auto()
    ExpenseInvalid = enum.auto()
    CacheInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.ConfigurationInvalid: 'The Google credentials are not configured, or the configuration is incomplete.',

    Status.AuthenticationFailed: 'Could not sign in to your Google account.',
    Status.NotAuthenticated: 'Authentication error. Try signing in again to your Google account.',

    Status.SpreadsheetIdNotConfigured: 'Could not find a valid spreadsheet id. Have you set up a spreadsheet?',
    Status.RemoteError: 'The Google Sheets request failed.',
    Status.SyncPermissionDenied: 'Permission denied to your spreadsheet.',

    Status.ServiceUnavailable: 'Google Sheets service is unavailable. Please check your connection and settings.',

    Status.ExpenseNotFound: 'Could not find the expense.',
    Status.ExpenseInvalid: 'The expense is incomplete, or contains invalid values.',
    Status.CacheInvalid: 'The local cache could not be written.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class AuthFailureReason(enum.StrEnum):
    """Machine-readable reasons for a failed sign-in."""
    Cancelled = 'cancelled'
    Blocked = 'blocked'
    Network = 'network'
    Unknown = 'unknown'


class RemoteErrorKind(enum.StrEnum):
    """Classification of a failed Google Sheets request, set where the HTTP error is caught."""
    AuthExpired = 'auth_expired'
    PermissionDenied = 'permission_denied'
    NotFound = 'not_found'
    TableMissing = 'table_missing'
    ServiceUnavailable = 'service_unavailable'
    Unknown = 'unknown'


REMOTE_ERROR_MESSAGE: Dict[RemoteErrorKind, str] = {
    RemoteErrorKind.AuthExpired: 'Authentication expired. Please sign in again.',
    RemoteErrorKind.PermissionDenied: 'Permission denied. Make sure you have edit access to the spreadsheet.',
    RemoteErrorKind.NotFound: 'Spreadsheet not found. Please check the spreadsheet ID or create a new one.',
    RemoteErrorKind.TableMissing: 'Sheet "Expenses" not found in the spreadsheet.',
    RemoteErrorKind.ServiceUnavailable: 'Could not reach Google Sheets.',
    RemoteErrorKind.Unknown: 'Unexpected Google Sheets error.',
}


class BaseStatusException(Exception):
    """Base exception for status-based errors in ExpenseSync.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: Optional[str] = None):
        self.status_message = get_message(self.status)
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..core.signals import signals
        signals.error.emit(message or self.status_message)


class ConfigurationException(BaseStatusException):
    """Exception raised when required credential configuration is missing or malformed."""
    status = Status.ConfigurationInvalid


class AuthenticationException(BaseStatusException):
    """Exception raised when an interactive sign-in or a token exchange fails.

    Attributes:
        reason (AuthFailureReason): Why the sign-in failed.
    """
    status = Status.AuthenticationFailed

    def __init__(self, message: Optional[str] = None,
                 reason: AuthFailureReason = AuthFailureReason.Unknown):
        self.reason = AuthFailureReason(reason)
        super().__init__(message)


class NotAuthenticatedException(BaseStatusException):
    """Exception raised when a remote operation is attempted without a valid token."""
    status = Status.NotAuthenticated


class SpreadsheetIdNotConfiguredException(BaseStatusException):
    """Exception raised when no spreadsheet id is known but one is required."""
    status = Status.SpreadsheetIdNotConfigured


class RemoteException(BaseStatusException):
    """Exception raised when a Google Sheets request fails.

    Attributes:
        kind (RemoteErrorKind): Actionable classification of the failure.
        http_status (int | None): HTTP status code, when the failure came with one.
    """
    status = Status.RemoteError

    def __init__(self, message: Optional[str] = None,
                 kind: RemoteErrorKind = RemoteErrorKind.Unknown,
                 http_status: Optional[int] = None):
        self.kind = RemoteErrorKind(kind)
        self.http_status = http_status
        text = REMOTE_ERROR_MESSAGE[self.kind]
        if message:
            text = f'{text} {message}'
        super().__init__(text)

    @property
    def is_permission_error(self) -> bool:
        """True when the caller should re-authenticate or check sharing permissions."""
        return self.kind in (RemoteErrorKind.PermissionDenied, RemoteErrorKind.AuthExpired)


class SyncPermissionException(BaseStatusException):
    """Exception raised when writing to an explicitly configured spreadsheet is not permitted.

    Attributes:
        spreadsheet_id (str): The spreadsheet the write was refused on.
    """
    status = Status.SyncPermissionDenied

    def __init__(self, spreadsheet_id: str, message: Optional[str] = None):
        self.spreadsheet_id = spreadsheet_id
        remediation = (
            f'({spreadsheet_id}) Please check:\n'
            f'1. Are you logged in with the correct Google account?\n'
            f'2. Does that account have edit access to the spreadsheet?\n'
            f'3. Try opening the spreadsheet directly: '
            f'https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit\n'
            f'4. If you cannot access it, ask the owner to share it with you.\n'
            f'To fix: sign in again with the correct Google account.'
        )
        if message:
            remediation = f'{remediation}\n{message}'
        super().__init__(remediation)


class ServiceUnavailableException(BaseStatusException):
    """Exception raised when Google Sheets is not configured or failed to initialize."""
    status = Status.ServiceUnavailable


class ExpenseNotFoundException(BaseStatusException):
    """Exception raised when a local expense lookup misses."""
    status = Status.ExpenseNotFound


class ExpenseInvalidException(BaseStatusException):
    """Exception raised when an expense is missing required fields or has a negative amount."""
    status = Status.ExpenseInvalid


class CacheInvalidException(BaseStatusException):
    """Exception raised when the local cache database cannot be written."""
    status = Status.CacheInvalid
