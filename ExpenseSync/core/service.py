"""Google Sheets API access for the remote expense table.

:class:`SheetsClient` creates and adopts spreadsheets, keeps the ``Expenses`` sheet and its
header row in place, appends expense rows and reads them back. Every request goes through
:meth:`SheetsClient._execute`, which converts ``HttpError`` and transport failures into
:class:`~ExpenseSync.status.status.RemoteException` with an actionable ``kind``.
"""

import datetime
import logging
import socket
import ssl
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import google.auth.exceptions
import google.oauth2.credentials
import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .auth import AuthProvider
from .storage import Expense, now_str
from ..status import status

SHEET_NAME: str = 'Expenses'

HEADERS: List[str] = [
    'Date',
    'Amount',
    'Category',
    'Description',
    'Payment Method',
    'Created At',
]

HEADER_RANGE: str = f'{SHEET_NAME}!A1:F1'
APPEND_RANGE: str = f'{SHEET_NAME}!A:F'
READ_RANGE: str = f'{SHEET_NAME}!A2:F'

#: Sheet row number of the first expense, used as the synthetic id of remote records
FIRST_DATA_ROW: int = 2

HEADER_FORMAT: Dict[str, Any] = {
    'backgroundColor': {'red': 0.2, 'green': 0.5, 'blue': 0.8},
    'textFormat': {
        'foregroundColor': {'red': 1.0, 'green': 1.0, 'blue': 1.0},
        'bold': True,
    },
}

TRANSPORT_ERRORS = (
    socket.timeout,
    ssl.SSLError,
    ConnectionError,
    httplib2.HttpLib2Error,
    google.auth.exceptions.TransportError,
)


def build_service(token: str) -> Any:
    """Build a Sheets v4 API resource authorized with a bearer token."""
    creds = google.oauth2.credentials.Credentials(token=token)
    return build('sheets', 'v4', credentials=creds, cache_discovery=False)


def _http_error_text(ex: HttpError) -> str:
    reason = getattr(ex, 'reason', '') or ''
    content = ex.content.decode('utf-8', errors='replace') if isinstance(ex.content, bytes) else str(ex.content or '')
    return f'{reason} {content}'.strip()


def remote_exception_from_http_error(ex: HttpError, action: str) -> status.RemoteException:
    """Classify a Sheets ``HttpError``.

    Args:
        ex: The error raised by the API client.
        action: Short description of the failed request, used in the message.

    Returns:
        status.RemoteException: With ``kind`` and ``http_status`` set.
    """
    stat: Optional[int] = ex.resp.status if ex.resp else None
    text = _http_error_text(ex)

    if stat == 401:
        kind = status.RemoteErrorKind.AuthExpired
    elif stat == 403:
        kind = status.RemoteErrorKind.PermissionDenied
    elif stat == 404:
        kind = status.RemoteErrorKind.NotFound
    elif stat == 400 and 'Unable to parse range' in text:
        kind = status.RemoteErrorKind.TableMissing
    elif stat is not None and stat >= 500:
        kind = status.RemoteErrorKind.ServiceUnavailable
    else:
        kind = status.RemoteErrorKind.Unknown

    return status.RemoteException(f'{action} failed (HTTP {stat}): {text}', kind=kind, http_status=stat)


def expense_to_row(expense: Union[Expense, Mapping[str, Any]]) -> List[Any]:
    """Return the sheet row for an expense. The last column is the upload time."""
    if not isinstance(expense, Expense):
        expense = Expense.from_dict(expense)
    return [
        expense.date,
        expense.amount,
        expense.category,
        expense.description or '',
        expense.payment_method or '',
        now_str(),
    ]


def _parse_amount(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def expense_from_row(row: List[Any], row_number: int) -> Expense:
    """Map a sheet row positionally onto an Expense.

    The id is the sheet row number, which only stays stable while no rows are deleted or reordered.
    """
    cells = list(row) + [''] * (len(HEADERS) - len(row))
    return Expense(
        id=row_number,
        date=str(cells[0] or ''),
        amount=_parse_amount(cells[1]),
        category=str(cells[2] or ''),
        description=str(cells[3] or ''),
        payment_method=str(cells[4] or ''),
        created_at=str(cells[5] or ''),
        synced=True,
    )


class SheetsClient:
    """Read and append expenses in a single Google spreadsheet.

    The spreadsheet id is held by the authentication provider so it is persisted with the session.

    Args:
        auth_provider: Supplies bearer tokens and stores the spreadsheet id.
        spreadsheet_id: Optional id of an existing spreadsheet.
        service_factory: Callable ``(token) -> Sheets resource``. Defaults to :func:`build_service`.
    """

    def __init__(
            self,
            auth_provider: AuthProvider,
            spreadsheet_id: Optional[str] = None,
            service_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.auth_provider = auth_provider
        self.service_factory = service_factory or build_service

        self._service: Any = None
        self._service_token: Optional[str] = None
        self._table_ready_for: Optional[str] = None

        if spreadsheet_id:
            self.set_store_id(spreadsheet_id)

    def get_store_id(self) -> Optional[str]:
        return self.auth_provider.get_spreadsheet_id()

    def set_store_id(self, spreadsheet_id: Optional[str]) -> None:
        """Point the client at a spreadsheet. No remote call is made."""
        if spreadsheet_id != self.get_store_id():
            self._table_ready_for = None
        self.auth_provider.set_spreadsheet_id(spreadsheet_id)
        logging.debug(f'Spreadsheet id set to "{spreadsheet_id}".')

    def clear_service(self) -> None:
        """Drop the cached API resource."""
        try:
            if self._service is not None and hasattr(self._service, 'close'):
                self._service.close()
        except Exception as ex:
            logging.debug(f'Failed closing cached Sheets service client: {ex}')
        self._service = None
        self._service_token = None

    def _token(self) -> str:
        try:
            token = self.auth_provider.ensure_valid_token()
        except status.AuthenticationException as ex:
            raise status.NotAuthenticatedException(str(ex)) from ex
        if not token:
            raise status.NotAuthenticatedException
        return token

    def get_service(self) -> Any:
        """Return the Sheets resource for the current token, building it when the token changed."""
        token = self._token()
        if self._service is not None and self._service_token == token:
            return self._service

        self.clear_service()
        try:
            self._service = self.service_factory(token)
        except Exception as ex:
            raise status.ServiceUnavailableException(f'Could not build the Sheets client: {ex}') from ex
        self._service_token = token
        logging.debug('Google Sheets service client created successfully.')
        return self._service

    def _require_store_id(self) -> str:
        spreadsheet_id = self.get_store_id()
        if not spreadsheet_id:
            raise status.SpreadsheetIdNotConfiguredException
        return spreadsheet_id

    @staticmethod
    def _execute(request: Any, action: str) -> Dict[str, Any]:
        try:
            return request.execute() or {}
        except HttpError as ex:
            raise remote_exception_from_http_error(ex, action) from ex
        except TRANSPORT_ERRORS as ex:
            raise status.RemoteException(
                f'{action} failed: {ex}', kind=status.RemoteErrorKind.ServiceUnavailable
            ) from ex

    def create_store(self, title: Optional[str] = None) -> str:
        """Create a new spreadsheet with a formatted ``Expenses`` sheet and make it current.

        Args:
            title: Spreadsheet title. Defaults to ``Expense Tracker - <year>``.

        Returns:
            str: The new spreadsheet id.

        Raises:
            status.NotAuthenticatedException: If no token can be obtained.
            status.RemoteException: If a request fails.
        """
        if title is None:
            title = f'Expense Tracker - {datetime.date.today().year}'

        service = self.get_service()
        logging.debug(f'Creating spreadsheet "{title}"...')
        body = {
            'properties': {'title': title},
            'sheets': [{'properties': {'title': SHEET_NAME}}],
        }
        result = self._execute(
            service.spreadsheets().create(body=body, fields='spreadsheetId,sheets(properties(sheetId,title))'),
            'Creating spreadsheet'
        )

        spreadsheet_id = result.get('spreadsheetId')
        if not spreadsheet_id:
            raise status.RemoteException('Failed to create spreadsheet - no spreadsheet id returned.')

        sheets = result.get('sheets') or [{}]
        sheet_id = sheets[0].get('properties', {}).get('sheetId', 0)

        self.set_store_id(spreadsheet_id)
        self._setup_headers(spreadsheet_id, sheet_id)
        self._table_ready_for = spreadsheet_id

        logging.info(f'Created spreadsheet "{spreadsheet_id}".')
        return spreadsheet_id

    def _find_or_add_sheet(self, spreadsheet_id: str) -> Tuple[int, bool]:
        service = self.get_service()
        info = self._execute(
            service.spreadsheets().get(spreadsheetId=spreadsheet_id, fields='sheets(properties(sheetId,title))'),
            'Reading spreadsheet'
        )
        sheet = next(
            (s for s in info.get('sheets', [])
             if s.get('properties', {}).get('title', '') == SHEET_NAME), None)
        if sheet:
            return sheet['properties'].get('sheetId', 0), False

        logging.debug(f'Sheet "{SHEET_NAME}" not found in "{spreadsheet_id}", adding it...')
        response = self._execute(
            service.spreadsheets().batchUpdate(
                spreadsheetId=spreadsheet_id,
                body={'requests': [{'addSheet': {'properties': {'title': SHEET_NAME}}}]}
            ),
            f'Adding sheet "{SHEET_NAME}"'
        )
        replies = response.get('replies') or [{}]
        sheet_id = replies[0].get('addSheet', {}).get('properties', {}).get('sheetId', 0)
        return sheet_id, True

    def ensure_table(self) -> None:
        """Make sure the ``Expenses`` sheet exists, adding it with a header row if missing.

        Raises:
            status.SpreadsheetIdNotConfiguredException: If no spreadsheet id is set.
        """
        spreadsheet_id = self._require_store_id()
        if self._table_ready_for == spreadsheet_id:
            return

        sheet_id, created = self._find_or_add_sheet(spreadsheet_id)
        if created:
            self._setup_headers(spreadsheet_id, sheet_id)
        self._table_ready_for = spreadsheet_id

    def setup_existing_store(self, spreadsheet_id: str) -> None:
        """Adopt an existing spreadsheet: make it current, ensure the sheet and (re)write the header row."""
        self.set_store_id(spreadsheet_id)
        sheet_id, _ = self._find_or_add_sheet(spreadsheet_id)
        self._setup_headers(spreadsheet_id, sheet_id)
        self._table_ready_for = spreadsheet_id
        logging.info(f'Spreadsheet "{spreadsheet_id}" set up for expense tracking.')

    def _setup_headers(self, spreadsheet_id: str, sheet_id: int) -> None:
        service = self.get_service()
        self._execute(
            service.spreadsheets().values().update(
                spreadsheetId=spreadsheet_id,
                range=HEADER_RANGE,
                valueInputOption='RAW',
                body={'values': [HEADERS]}
            ),
            'Writing headers'
        )
        self._execute(
            service.spreadsheets().batchUpdate(
                spreadsheetId=spreadsheet_id,
                body={'requests': [{
                    'repeatCell': {
                        'range': {
                            'sheetId': sheet_id,
                            'startRowIndex': 0,
                            'endRowIndex': 1,
                            'startColumnIndex': 0,
                            'endColumnIndex': len(HEADERS),
                        },
                        'cell': {'userEnteredFormat': HEADER_FORMAT},
                        'fields': 'userEnteredFormat(backgroundColor,textFormat)',
                    }
                }]}
            ),
            'Formatting headers'
        )
        logging.debug(f'Headers set up in "{spreadsheet_id}".')

    def append(self, expense: Union[Expense, Mapping[str, Any]]) -> Dict[str, Any]:
        """Append one expense row to the ``Expenses`` sheet.

        Returns:
            dict: The API response.

        Raises:
            status.NotAuthenticatedException: If no token can be obtained.
            status.SpreadsheetIdNotConfiguredException: If no spreadsheet id is set.
            status.RemoteException: If a request fails.
        """
        service = self.get_service()
        spreadsheet_id = self._require_store_id()
        self.ensure_table()

        row = expense_to_row(expense)
        logging.debug(f'Appending expense row to "{spreadsheet_id}": {row}')
        try:
            return self._append_row(service, spreadsheet_id, row)
        except status.RemoteException as ex:
            if ex.kind != status.RemoteErrorKind.TableMissing:
                raise
            # The sheet was removed since it was last checked
            self._table_ready_for = None
            self.ensure_table()
            return self._append_row(service, spreadsheet_id, row)

    def _append_row(self, service: Any, spreadsheet_id: str, row: List[Any]) -> Dict[str, Any]:
        return self._execute(
            service.spreadsheets().values().append(
                spreadsheetId=spreadsheet_id,
                range=APPEND_RANGE,
                valueInputOption='RAW',
                insertDataOption='INSERT_ROWS',
                body={'values': [row]}
            ),
            'Appending expense'
        )

    def read_all(self) -> List[Expense]:
        """Read every expense row below the header.

        Returns:
            list: Expenses with row-number ids, all flagged synced. Empty if no spreadsheet is set.
        """
        spreadsheet_id = self.get_store_id()
        if not spreadsheet_id:
            logging.debug('No spreadsheet id set, nothing to read.')
            return []

        service = self.get_service()
        result = self._execute(
            service.spreadsheets().values().get(spreadsheetId=spreadsheet_id, range=READ_RANGE),
            'Reading expenses'
        )
        rows: List[List[Any]] = result.get('values', [])
        expenses = [expense_from_row(row, idx + FIRST_DATA_ROW) for idx, row in enumerate(rows)]
        logging.debug(f'Read {len(expenses)} expense(s) from "{spreadsheet_id}".')
        return expenses
