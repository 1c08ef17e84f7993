"""
Local persistent cache for expense records and user settings.

The backing medium is a small string-keyed table in a SQLite file holding JSON blobs
under fixed keys, one for the expense list, one for the user settings and one for the
persisted authentication state. :class:`LocalCacheStore` builds the expense and settings
operations on top of it. Reads never raise: missing, corrupt or unreadable data is logged
and treated as empty.
"""

import copy
import dataclasses
import datetime
import enum
import json
import pathlib
import logging
import sqlite3
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..settings import lib
from ..status import status

DATE_COLUMN_FORMAT = '%Y-%m-%d'

TABLE_NAME = 'storage'


class StorageKey(enum.StrEnum):
    """Fixed keys of the local key/value storage."""
    Expenses = 'expenseTracker_expenses'
    Settings = 'expenseTracker_settings'
    Auth = 'googleSheetsAuth'


# Serialized names of the Expense fields
FIELD_ALIASES: Dict[str, str] = {
    'paymentMethod': 'payment_method',
    'createdAt': 'created_at',
}


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string.

    Returns:
        str: Current UTC date and time in ISO 8601 format.
    """
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def now_ms() -> int:
    """Return the current time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclasses.dataclass
class Expense:
    """A single expense record."""
    id: Any
    date: str
    amount: float
    category: str
    description: str = ''
    payment_method: str = ''
    created_at: str = ''
    synced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the field names the storage and the UI use."""
        return {
            'id': self.id,
            'date': self.date,
            'amount': self.amount,
            'category': self.category,
            'description': self.description,
            'paymentMethod': self.payment_method,
            'createdAt': self.created_at,
            'synced': self.synced,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Expense':
        """Create an Expense from a serialized dict, accepting camelCase or snake_case keys.

        Raises:
            TypeError: If ``data`` is not a mapping.
            ValueError: If the amount is not numeric.
        """
        if not isinstance(data, Mapping):
            raise TypeError(f'Expense data must be a mapping, got {type(data)}.')
        fields = normalize_fields(data)
        return cls(
            id=fields.get('id'),
            date=str(fields.get('date') or ''),
            amount=float(fields.get('amount') or 0),
            category=str(fields.get('category') or ''),
            description=str(fields.get('description') or ''),
            payment_method=str(fields.get('payment_method') or ''),
            created_at=str(fields.get('created_at') or ''),
            synced=fields.get('synced') is True,
        )


def normalize_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Map serialized field names onto Expense attribute names."""
    return {FIELD_ALIASES.get(k, k): v for k, v in data.items()}


def _normalize_date(value: Any) -> str:
    if isinstance(value, datetime.datetime):
        return value.date().strftime(DATE_COLUMN_FORMAT)
    if isinstance(value, datetime.date):
        return value.strftime(DATE_COLUMN_FORMAT)

    text = str(value or '').strip()
    if not text:
        raise status.ExpenseInvalidException('The expense date is required.')
    try:
        return datetime.date.fromisoformat(text[:10]).strftime(DATE_COLUMN_FORMAT)
    except ValueError as ex:
        raise status.ExpenseInvalidException(f'Invalid expense date "{text}".') from ex


def _normalize_amount(value: Any) -> float:
    if isinstance(value, bool):
        raise status.ExpenseInvalidException(f'Invalid expense amount "{value}".')
    try:
        amount = float(value)
    except (TypeError, ValueError) as ex:
        raise status.ExpenseInvalidException(f'Invalid expense amount "{value}".') from ex
    if amount != amount or amount < 0:
        raise status.ExpenseInvalidException(f'The expense amount must be non-negative, got {value}.')
    return amount


def validate_expense_input(expense_input: Union[Mapping[str, Any], Expense]) -> Dict[str, Any]:
    """Validate and normalize user input for a new or updated expense.

    Args:
        expense_input: A mapping (camelCase or snake_case keys) or an Expense.

    Returns:
        Dict[str, Any]: Normalized input fields (date, amount, category, description, payment_method).

    Raises:
        status.ExpenseInvalidException: If date or category is missing, or amount is negative or not numeric.
    """
    if isinstance(expense_input, Expense):
        fields = dataclasses.asdict(expense_input)
    elif isinstance(expense_input, Mapping):
        fields = normalize_fields(expense_input)
    else:
        raise status.ExpenseInvalidException(f'Unsupported expense input type {type(expense_input)}.')

    category = str(fields.get('category') or '').strip()
    if not category:
        raise status.ExpenseInvalidException('The expense category is required.')

    return {
        'date': _normalize_date(fields.get('date')),
        'amount': _normalize_amount(fields.get('amount', 0)),
        'category': category,
        'description': str(fields.get('description') or ''),
        'payment_method': str(fields.get('payment_method') or ''),
    }


class LocalStorage:
    """Durable string-keyed storage backed by a SQLite file.

    Every call opens its own connection, so instances can be used from worker threads.
    Errors are raised as ``sqlite3.Error``; callers decide how to degrade.
    """

    def __init__(self, db_path) -> None:
        self.db_path = pathlib.Path(db_path)
        self._initialize_schema_if_needed()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the storage database.

        Returns:
            sqlite3.Connection: Database connection object.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(str(self.db_path), timeout=2.0)

    def _initialize_schema_if_needed(self) -> None:
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            conn.execute(
                f'CREATE TABLE IF NOT EXISTS {TABLE_NAME} ("key" TEXT PRIMARY KEY, "value" TEXT NOT NULL)'
            )
            conn.commit()
        except sqlite3.Error as e:
            logging.error(f'SQLite error during schema initialization of {self.db_path}: {e}')
        finally:
            if conn:
                conn.close()

    def get_item(self, key: str) -> Optional[str]:
        """Return the stored string for ``key``, or None."""
        conn = self.connection()
        try:
            self._ensure_table(conn)
            row = conn.execute(f'SELECT value FROM {TABLE_NAME} WHERE key=?', (key,)).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        conn = self.connection()
        try:
            self._ensure_table(conn)
            conn.execute(
                f'INSERT OR REPLACE INTO {TABLE_NAME} (key, value) VALUES (?, ?)',
                (key, value)
            )
            conn.commit()
        finally:
            conn.close()

    def remove_item(self, key: str) -> None:
        """Remove ``key`` if present."""
        conn = self.connection()
        try:
            self._ensure_table(conn)
            conn.execute(f'DELETE FROM {TABLE_NAME} WHERE key=?', (key,))
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _ensure_table(conn: sqlite3.Connection) -> None:
        # The file may have been removed since initialization
        conn.execute(
            f'CREATE TABLE IF NOT EXISTS {TABLE_NAME} ("key" TEXT PRIMARY KEY, "value" TEXT NOT NULL)'
        )

    def get_json(self, key: str, default: Any = None) -> Any:
        """Return the decoded JSON stored under ``key``.

        Unreadable or corrupt values are logged and ``default`` is returned.
        """
        try:
            raw = self.get_item(key)
        except sqlite3.Error as e:
            logging.error(f'Error reading "{key}" from local storage: {e}')
            return default
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logging.error(f'Corrupt data stored under "{key}": {e}')
            return default

    def set_json(self, key: str, value: Any) -> bool:
        """Store ``value`` as JSON under ``key``.

        Returns:
            bool: False if the write failed (the failure is logged).
        """
        try:
            self.set_item(key, json.dumps(value))
            return True
        except (sqlite3.Error, TypeError, ValueError) as e:
            logging.error(f'Error writing "{key}" to local storage: {e}')
            return False


class LocalCacheStore:
    """Expense records and user settings persisted in :class:`LocalStorage`.

    All mutations rewrite the full expense list under a lock, so a read issued after any
    mutation in the same process observes it.
    """

    def __init__(self, storage: LocalStorage, clock: Callable[[], int] = now_ms) -> None:
        self.storage = storage
        self.clock = clock
        self._lock = threading.RLock()
        self._last_id: int = 0

    def _read(self) -> List[Expense]:
        data = self.storage.get_json(StorageKey.Expenses, default=[])
        if not isinstance(data, list):
            logging.error(f'Stored expenses are not a list ({type(data)}), treating as empty.')
            return []

        expenses: List[Expense] = []
        for item in data:
            try:
                expenses.append(Expense.from_dict(item))
            except (TypeError, ValueError) as e:
                logging.warning(f'Skipping malformed stored expense {item!r}: {e}')
        return expenses

    def _write(self, expenses: Iterable[Expense]) -> bool:
        return self.storage.set_json(StorageKey.Expenses, [e.to_dict() for e in expenses])

    def _next_id(self, expenses: List[Expense]) -> int:
        numeric_ids = [e.id for e in expenses if isinstance(e.id, int) and not isinstance(e.id, bool)]
        candidate = max([self.clock(), self._last_id + 1] + [i + 1 for i in numeric_ids])
        self._last_id = candidate
        return candidate

    def get_all(self) -> List[Expense]:
        """Return all stored expenses in insertion order."""
        with self._lock:
            return self._read()

    def add(self, expense_input: Union[Mapping[str, Any], Expense], synced: bool = False) -> Expense:
        """Validate, stamp and append a new expense.

        Args:
            expense_input: The user input.
            synced: Mark the record as already written remotely (write-through mirror).

        Returns:
            Expense: The stored record with its assigned id and creation timestamp.

        Raises:
            status.ExpenseInvalidException: If the input is invalid.
            status.CacheInvalidException: If the record could not be written.
        """
        fields = validate_expense_input(expense_input)
        with self._lock:
            expenses = self._read()
            expense = Expense(
                id=self._next_id(expenses),
                created_at=now_str(),
                synced=synced,
                **fields
            )
            expenses.append(expense)
            if not self._write(expenses):
                raise status.CacheInvalidException(f'Failed to store expense {expense.id}.')

        logging.debug(f'Stored expense {expense.id} locally (synced={expense.synced}).')
        return expense

    def update(self, expense_id: Any, fields: Mapping[str, Any]) -> Expense:
        """Merge ``fields`` into the matching expense and mark it unsynced.

        Raises:
            status.ExpenseNotFoundException: If no expense has ``expense_id``.
            status.ExpenseInvalidException: If the merged record is invalid.
        """
        with self._lock:
            expenses = self._read()
            for idx, expense in enumerate(expenses):
                if expense.id != expense_id:
                    continue

                merged = dataclasses.asdict(expense)
                merged.update({k: v for k, v in normalize_fields(fields).items() if k != 'id'})
                valid = validate_expense_input(merged)

                updated = dataclasses.replace(expense, synced=False, **valid)
                expenses[idx] = updated
                self._write(expenses)
                logging.debug(f'Updated expense {expense_id}.')
                return updated

        raise status.ExpenseNotFoundException(f'No expense with id {expense_id}.')

    def delete(self, expense_id: Any) -> bool:
        """Remove the expense with ``expense_id``.

        Returns:
            bool: True if a record was removed.
        """
        with self._lock:
            expenses = self._read()
            remaining = [e for e in expenses if e.id != expense_id]
            if len(remaining) == len(expenses):
                logging.debug(f'Delete requested for unknown expense {expense_id}.')
                return False
            self._write(remaining)
        logging.debug(f'Deleted expense {expense_id}.')
        return True

    def get_unsynced(self) -> List[Expense]:
        """Return the expenses not yet written to the remote store."""
        return [e for e in self.get_all() if not e.synced]

    def mark_synced(self, expense_ids: Iterable[Any]) -> None:
        """Flag the given expenses as synced. Unknown ids are ignored."""
        ids = set(expense_ids)
        if not ids:
            return
        with self._lock:
            expenses = self._read()
            changed = 0
            for expense in expenses:
                if expense.id in ids and not expense.synced:
                    expense.synced = True
                    changed += 1
            if changed:
                self._write(expenses)
        logging.debug(f'Marked {changed} expense(s) as synced.')

    def replace_all(self, expenses: Iterable[Expense]) -> bool:
        """Overwrite the stored expense list wholesale."""
        expenses = list(expenses)
        with self._lock:
            ok = self._write(expenses)
        logging.debug(f'Replaced local expenses with {len(expenses)} record(s).')
        return ok

    def merge_remote(self, remote: Iterable[Expense]) -> List[Expense]:
        """Replace the stored expenses with ``remote``, keeping the unsynced local records after them.

        A kept record whose id is already taken by a remote row is given a fresh id, so ids stay unique.

        Returns:
            List[Expense]: The stored expenses.
        """
        merged = list(remote)
        with self._lock:
            unsynced = [e for e in self._read() if not e.synced]
            for expense in unsynced:
                if expense.id in {e.id for e in merged}:
                    old_id = expense.id
                    expense.id = self._next_id(merged + unsynced)
                    logging.debug(f'Local expense {old_id} clashes with a remote row, renamed to {expense.id}.')
                merged.append(expense)
            self._write(merged)
        logging.debug(f'Merged {len(merged) - len(unsynced)} remote and {len(unsynced)} local expense(s).')
        return merged

    def clear(self) -> None:
        """Remove all expenses. Settings are kept."""
        with self._lock:
            try:
                self.storage.remove_item(StorageKey.Expenses)
            except sqlite3.Error as e:
                logging.error(f'Error clearing expenses: {e}')

    def get_settings(self) -> Dict[str, Any]:
        """Return the user settings merged over the defaults."""
        settings = copy.deepcopy(lib.DEFAULT_SETTINGS)
        data = self.storage.get_json(StorageKey.Settings, default=None)
        if isinstance(data, dict):
            settings.update(data)
        elif data is not None:
            logging.error(f'Stored settings are not a dict ({type(data)}), using defaults.')
        return settings

    def save_settings(self, settings: Mapping[str, Any]) -> None:
        """Persist the user settings."""
        self.storage.set_json(StorageKey.Settings, dict(settings))
