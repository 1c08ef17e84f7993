"""Sync service reconciling the local expense cache with the remote spreadsheet.

:class:`ExpenseService` is the single entry point for expense data. Which store it reads from and
writes to depends on the credential mode detected at :meth:`ExpenseService.initialize`:

- ``service_account``: the spreadsheet is the source of truth. New expenses are written through to
  the spreadsheet first and mirrored locally; reads come from the spreadsheet and refresh the cache.
- ``user_consent``: the local cache is authoritative. New expenses are stored locally and, when
  auto-sync is on and the user is signed in, appended to the spreadsheet on a background thread.
- ``none``: local cache only.

Remote failures never lose local data; they degrade to local-only behaviour, except permission
errors against an explicitly configured spreadsheet, which raise :class:`SyncPermissionException`.
"""
import dataclasses
import enum
import logging
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from PySide6 import QtCore

from .auth import AuthProvider, ServiceAccountAuthProvider
from .service import SheetsClient
from .signals import signals
from .storage import Expense, LocalCacheStore, validate_expense_input
from ..settings import lib
from ..settings.lib import CredentialMode
from ..status import status


class SyncState(enum.StrEnum):
    """Coarse sync status shown by connection indicators."""
    Synced = 'synced'
    Pending = 'pending'
    NotAuthenticated = 'not_authenticated'
    NoSpreadsheet = 'no_spreadsheet'
    NotConfigured = 'not_configured'
    Error = 'error'


@dataclasses.dataclass
class SyncStatus:
    """Snapshot of the sync state. Recomputed on every query."""
    status: SyncState
    total_expenses: int = 0
    pending_expenses: int = 0
    google_sheets_available: bool = False
    user_authenticated: bool = False
    service_account_enabled: bool = False
    has_spreadsheet: bool = False
    auto_sync_enabled: bool = False
    credential_mode: CredentialMode = CredentialMode.NoCredentials

    def to_dict(self) -> Dict[str, Any]:
        """Return the status with the key names presentation code relies on."""
        return {
            'status': str(self.status),
            'totalExpenses': self.total_expenses,
            'pendingExpenses': self.pending_expenses,
            'googleSheetsAvailable': self.google_sheets_available,
            'userAuthenticated': self.user_authenticated,
            'serviceAccountEnabled': self.service_account_enabled,
            'hasSpreadsheet': self.has_spreadsheet,
            'autoSyncEnabled': self.auto_sync_enabled,
        }


@dataclasses.dataclass
class SyncResult:
    """Outcome of an explicit sync."""
    synced: int = 0
    failed: int = 0
    total: int = 0


class BackgroundAppendWorker(QtCore.QRunnable):
    """Appends a single expense to the spreadsheet on the service's thread pool."""

    def __init__(self, service: 'ExpenseService', expense: Expense) -> None:
        super().__init__()
        self.service = service
        self.expense = expense
        self.setAutoDelete(True)

    def run(self) -> None:
        logging.debug(f'[Thread-{threading.get_ident()}] BackgroundAppendWorker.run: expense {self.expense.id}')
        self.service._background_append(self.expense)


class ExpenseService:
    """Decides per operation whether to use the local cache, the spreadsheet or both.

    Args:
        store: The local expense cache.
        auth_provider: Authentication strategy, or None for local-only operation.
        client: Sheets client. Built from ``auth_provider`` when omitted.
        config: Credential configuration used to detect the credential mode.
    """

    def __init__(
            self,
            store: LocalCacheStore,
            auth_provider: Optional[AuthProvider] = None,
            client: Optional[SheetsClient] = None,
            config: Optional[lib.Config] = None,
    ) -> None:
        self.store = store
        self.auth_provider = auth_provider
        self.client = client
        if self.client is None and auth_provider is not None:
            self.client = SheetsClient(auth_provider)
        self.config = config

        self.credential_mode: CredentialMode = CredentialMode.NoCredentials
        self.remote_available: bool = False
        self.auto_sync_enabled: bool = bool(self.store.get_settings().get('autoSync', False))

        # Serializes Sheets requests between the caller and background appends
        self._remote_lock = threading.RLock()

        self.thread_pool = QtCore.QThreadPool()
        self.thread_pool.setMaxThreadCount(1)

    def _detect_credential_mode(self) -> CredentialMode:
        if self.config is not None:
            return self.config.credential_mode
        if self.auth_provider is None:
            return CredentialMode.NoCredentials
        if isinstance(self.auth_provider, ServiceAccountAuthProvider):
            return CredentialMode.ServiceAccount
        return CredentialMode.UserConsent

    def initialize(self) -> None:
        """Detect the credential mode and prepare remote access.

        Never raises: when remote initialization fails, the service runs local-only.
        """
        self.credential_mode = self._detect_credential_mode()
        self.remote_available = False

        if self.credential_mode == CredentialMode.ServiceAccount:
            self.auto_sync_enabled = True
        else:
            self.auto_sync_enabled = bool(self.store.get_settings().get('autoSync', False))

        if self.credential_mode == CredentialMode.NoCredentials:
            logging.info('Google Sheets not configured, using the local cache only.')
            return

        if self.auth_provider is None or self.client is None:
            logging.error(f'Credential mode is "{self.credential_mode}" but no authentication provider was given.')
            return

        try:
            self.auth_provider.initialize()
            if self.credential_mode == CredentialMode.ServiceAccount:
                self.auth_provider.ensure_valid_token()
        except status.BaseStatusException as ex:
            logging.error(f'Google Sheets unavailable, using the local cache only: {ex}')
            return
        except Exception as ex:
            logging.exception(f'Unexpected error initializing Google Sheets: {ex}')
            return

        self.remote_available = True
        logging.info(f'Google Sheets integration available ({self.credential_mode}).')

    def _is_authenticated(self) -> bool:
        return bool(self.auth_provider and self.auth_provider.is_authenticated())

    def _spreadsheet_id(self) -> Optional[str]:
        if self.client is not None:
            return self.client.get_store_id()
        if self.config is not None:
            return self.config.spreadsheet_id
        return None

    def add_expense(self, expense_input: Union[Mapping[str, Any], Expense]) -> Expense:
        """Record a new expense.

        The expense is always in the local cache when this returns, or when it raises
        :class:`SyncPermissionException`.

        Raises:
            status.ExpenseInvalidException: If the input is invalid.
            status.SyncPermissionException: If the spreadsheet set in the configuration refused the write.
            status.CacheInvalidException: If the expense could not be stored locally.
        """
        fields = validate_expense_input(expense_input)

        if self.credential_mode == CredentialMode.ServiceAccount and self.remote_available:
            expense = self._add_write_through(fields)
        else:
            expense = self.store.add(fields)
            if self.credential_mode == CredentialMode.UserConsent:
                self._schedule_background_append(expense)

        signals.expenseAdded.emit(expense)
        signals.expensesChanged.emit()
        return expense

    def _add_write_through(self, fields: Dict[str, Any]) -> Expense:
        known_id = self._spreadsheet_id()
        configured_id = self.config.spreadsheet_id if self.config is not None else None
        try:
            with self._remote_lock:
                if not known_id:
                    logging.info('No spreadsheet found, creating one for first-time setup...')
                    self.client.create_store()
                self.client.append(fields)
        except status.RemoteException as ex:
            expense = self.store.add(fields)
            # Spreadsheets the app created or remembered degrade to local-only
            if configured_id and known_id == configured_id and ex.is_permission_error:
                signals.expensesChanged.emit()
                raise status.SyncPermissionException(configured_id) from ex
            logging.warning(f'Failed to save expense to Google Sheets, saved locally only: {ex}')
            return expense
        except status.BaseStatusException as ex:
            logging.warning(f'Failed to save expense to Google Sheets, saved locally only: {ex}')
            return self.store.add(fields)

        expense = self.store.add(fields, synced=True)
        logging.debug(f'Expense {expense.id} saved to Google Sheets and the local cache.')
        return expense

    def _schedule_background_append(self, expense: Expense) -> None:
        if not self.auto_sync_enabled or not self.remote_available:
            return
        if not self._is_authenticated():
            logging.debug('Auto-sync skipped: not signed in.')
            signals.authenticationRequested.emit()
            return
        self.thread_pool.start(BackgroundAppendWorker(self, expense))

    def _background_append(self, expense: Expense) -> None:
        # Never start an interactive sign-in from a worker thread
        if not self._is_authenticated():
            logging.debug(f'Background sync of expense {expense.id} skipped: token expired.')
            return
        try:
            with self._remote_lock:
                if not self.client.get_store_id():
                    self.client.create_store()
                self.client.append(expense)
                self.store.mark_synced([expense.id])
        except status.BaseStatusException as ex:
            logging.warning(f'Background sync of expense {expense.id} failed: {ex}')
            return
        except Exception as ex:
            logging.exception(f'Background sync of expense {expense.id} failed: {ex}')
            return

        logging.debug(f'Expense {expense.id} synced in the background.')
        signals.expensesChanged.emit()

    def wait_for_background(self, msecs: int = -1) -> bool:
        """Block until queued background appends finish.

        Returns:
            bool: False if the wait timed out.
        """
        return self.thread_pool.waitForDone(msecs)

    def _remote_is_authoritative(self) -> bool:
        if not self.remote_available or self.client is None or not self._spreadsheet_id():
            return False
        if self.credential_mode == CredentialMode.ServiceAccount:
            return True
        if self.credential_mode == CredentialMode.UserConsent:
            return self._is_authenticated()
        return False

    def get_expenses(self) -> List[Expense]:
        """Return all expenses.

        When the spreadsheet is authoritative its rows replace the local cache. Local records that
        were never written remotely are kept after the remote rows.
        """
        if not self._remote_is_authoritative():
            return self.store.get_all()

        with self._remote_lock:
            try:
                remote = self.client.read_all()
            except status.BaseStatusException as ex:
                logging.warning(f'Failed to load from Google Sheets, using the local cache: {ex}')
                return self.store.get_all()
            expenses = self.store.merge_remote(remote)

        logging.debug(f'Loaded {len(remote)} expense(s) from Google Sheets.')
        return expenses

    def sync_to_remote(self, expenses: Optional[Iterable[Union[Expense, Mapping[str, Any]]]] = None) -> SyncResult:
        """Push expenses to the spreadsheet one by one.

        Args:
            expenses: Expenses to push. Defaults to every local expense not yet synced.

        Returns:
            SyncResult: Counts of pushed and failed expenses.

        Raises:
            status.ServiceUnavailableException: If Google Sheets is not configured or failed to initialize.
            status.ExpenseInvalidException: If a given expense is invalid. Nothing is pushed.
        """
        if self.credential_mode == CredentialMode.NoCredentials or not self.remote_available or self.client is None:
            raise status.ServiceUnavailableException('Google Sheets not available.')

        if expenses is None:
            candidates = self.store.get_unsynced()
        else:
            candidates = [self._as_expense(e) for e in expenses]

        if not candidates:
            logging.info('No expenses to sync.')
            return SyncResult()

        result = SyncResult(total=len(candidates))
        with self._remote_lock:
            self.auth_provider.ensure_valid_token()
            if not self.client.get_store_id():
                spreadsheet_id = self.client.create_store()
                logging.info(f'Created new spreadsheet: {spreadsheet_id}')

            for expense in candidates:
                try:
                    self.client.append(expense)
                except status.BaseStatusException as ex:
                    result.failed += 1
                    logging.error(f'Failed to sync expense {expense.id}: {ex}')
                    continue

                if expense.id is not None:
                    self.store.mark_synced([expense.id])
                result.synced += 1

        logging.info(f'Synced {result.synced}/{result.total} expense(s) to Google Sheets.')
        signals.syncFinished.emit(result)
        signals.expensesChanged.emit()
        return result

    @staticmethod
    def _as_expense(item: Union[Expense, Mapping[str, Any]]) -> Expense:
        if isinstance(item, Expense):
            return item
        validate_expense_input(item)
        return Expense.from_dict(item)

    def get_sync_status(self) -> SyncStatus:
        """Compute the current sync status without authenticating or touching the network."""
        try:
            expenses = self.store.get_all()
            pending = sum(1 for e in expenses if not e.synced)
            authenticated = self._is_authenticated()
            has_spreadsheet = bool(self._spreadsheet_id())

            if self.credential_mode == CredentialMode.NoCredentials or not self.remote_available:
                state = SyncState.NotConfigured
            elif not authenticated:
                state = SyncState.NotAuthenticated
            elif not has_spreadsheet:
                state = SyncState.NoSpreadsheet
            elif pending:
                state = SyncState.Pending
            else:
                state = SyncState.Synced

            return SyncStatus(
                status=state,
                total_expenses=len(expenses),
                pending_expenses=pending,
                google_sheets_available=self.remote_available,
                user_authenticated=authenticated,
                service_account_enabled=self.credential_mode == CredentialMode.ServiceAccount,
                has_spreadsheet=has_spreadsheet,
                auto_sync_enabled=self.auto_sync_enabled,
                credential_mode=self.credential_mode,
            )
        except Exception as ex:
            logging.error(f'Error getting sync status: {ex}')
            return SyncStatus(status=SyncState.Error)

    def authenticate(self) -> bool:
        """Sign in on demand, running the consent flow if needed.

        Raises:
            status.ServiceUnavailableException: If no remote mode is configured.
            status.ConfigurationException: If the credentials are invalid.
            status.AuthenticationException: If the sign-in fails.
        """
        if self.auth_provider is None or self.credential_mode == CredentialMode.NoCredentials:
            raise status.ServiceUnavailableException('Google Sheets not configured.')

        self.auth_provider.initialize()
        self.auth_provider.ensure_valid_token()
        self.remote_available = True
        signals.authenticationChanged.emit(True)
        return True

    def sign_out(self) -> bool:
        """Sign out of Google. Local expenses are kept."""
        if self.credential_mode == CredentialMode.NoCredentials or self.auth_provider is None:
            return True
        self.auth_provider.sign_out()
        signals.authenticationChanged.emit(False)
        return True

    def update_expense(self, expense_id: Any, fields: Mapping[str, Any]) -> Expense:
        """Edit a local expense. The change is not propagated to the spreadsheet."""
        expense = self.store.update(expense_id, fields)
        signals.expensesChanged.emit()
        return expense

    def delete_expense(self, expense_id: Any) -> bool:
        """Delete a local expense. The spreadsheet row is left in place."""
        removed = self.store.delete(expense_id)
        if removed:
            signals.expensesChanged.emit()
        return removed

    def set_auto_sync(self, enabled: bool) -> None:
        """Toggle background syncing of new expenses and persist the choice."""
        self.auto_sync_enabled = bool(enabled)
        settings = self.store.get_settings()
        settings['autoSync'] = self.auto_sync_enabled
        self.store.save_settings(settings)

    def get_settings(self) -> Dict[str, Any]:
        return self.store.get_settings()

    def save_settings(self, settings: Mapping[str, Any]) -> None:
        self.store.save_settings(settings)

    def clear_all_data(self) -> None:
        """Remove every local expense. Settings and the spreadsheet are kept."""
        self.store.clear()
        signals.expensesChanged.emit()

    def get_statistics(self) -> Dict[str, Any]:
        """Summary figures over the local expenses."""
        from ..data import data
        return data.get_statistics(self.store.get_all())
