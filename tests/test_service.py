"""Tests for ExpenseSync.core.service against an in-memory Sheets resource.

Three test cases:

* ServiceHelpersTest    – row mapping and HTTP error classification
* SheetsClientTest      – spreadsheet creation, sheet setup, append and read
* SheetsClientErrorTest – authentication, configuration and transport failures

Run: python -m unittest tests.test_service
"""
import socket
import unittest
from unittest import mock

from ExpenseSync.core import service as svc
from ExpenseSync.core.service import SheetsClient
from ExpenseSync.core.storage import Expense
from ExpenseSync.status import status
from tests.base import (
    BaseTestCase,
    FakeAuthProvider,
    FakeSheetsService,
    USER_CONSENT_VALUES,
    make_http_error,
)

EXPENSE = Expense(id=1, date='2024-01-05', amount=12.5, category='Food & Dining', description='Lunch',
                  payment_method='Card')


class ServiceHelpersTest(unittest.TestCase):
    def test_expense_to_row(self):
        row = svc.expense_to_row(EXPENSE)
        self.assertEqual(row[:5], ['2024-01-05', 12.5, 'Food & Dining', 'Lunch', 'Card'])
        self.assertEqual(len(row), len(svc.HEADERS))

    def test_expense_to_row_accepts_mappings(self):
        row = svc.expense_to_row({'date': '2024-01-05', 'amount': 3, 'category': 'Other'})
        self.assertEqual(row[:5], ['2024-01-05', 3.0, 'Other', '', ''])

    def test_expense_from_row_pads_missing_columns(self):
        expense = svc.expense_from_row(['2024-01-05', '7.25', 'Travel'], 5)
        self.assertEqual(expense.id, 5)
        self.assertEqual(expense.amount, 7.25)
        self.assertEqual(expense.description, '')
        self.assertEqual(expense.payment_method, '')
        self.assertTrue(expense.synced)

    def test_expense_from_row_with_bad_amount(self):
        self.assertEqual(svc.expense_from_row(['2024-01-05', 'n/a', 'Other'], 2).amount, 0.0)

    def test_http_error_classification(self):
        cases = [
            (make_http_error(401, 'Request had invalid authentication credentials.'),
             status.RemoteErrorKind.AuthExpired),
            (make_http_error(403, 'The caller does not have permission'), status.RemoteErrorKind.PermissionDenied),
            (make_http_error(404, 'Requested entity was not found.'), status.RemoteErrorKind.NotFound),
            (make_http_error(400, 'Unable to parse range: Expenses!A:F'), status.RemoteErrorKind.TableMissing),
            (make_http_error(400, 'Invalid value'), status.RemoteErrorKind.Unknown),
            (make_http_error(503, 'The service is currently unavailable.'), status.RemoteErrorKind.ServiceUnavailable),
            (make_http_error(429, 'Quota exceeded'), status.RemoteErrorKind.Unknown),
        ]
        for error, kind in cases:
            with self.subTest(kind=kind, code=error.resp.status):
                ex = svc.remote_exception_from_http_error(error, 'Testing')
                self.assertEqual(ex.kind, kind)
                self.assertEqual(ex.http_status, error.resp.status)

    def test_permission_errors(self):
        self.assertTrue(svc.remote_exception_from_http_error(make_http_error(403), 'x').is_permission_error)
        self.assertTrue(svc.remote_exception_from_http_error(make_http_error(401), 'x').is_permission_error)
        self.assertFalse(svc.remote_exception_from_http_error(make_http_error(404), 'x').is_permission_error)


class SheetsClientTestBase(BaseTestCase):
    def setUp(self):
        super().setUp()
        self.config = self.make_config(USER_CONSENT_VALUES)
        self.provider = FakeAuthProvider(self.config, storage=self.make_storage(self.config), clock=self.clock)
        self.sheets = FakeSheetsService()
        self.factory = mock.Mock(return_value=self.sheets)
        self.client = SheetsClient(self.provider, service_factory=self.factory)


class SheetsClientTest(SheetsClientTestBase):
    def test_create_store(self):
        spreadsheet_id = self.client.create_store('My Expenses')

        self.assertEqual(self.client.get_store_id(), spreadsheet_id)
        self.assertEqual(self.provider.get_spreadsheet_id(), spreadsheet_id)
        self.assertEqual(self.sheets.spreadsheets_data[spreadsheet_id]['title'], 'My Expenses')
        self.assertEqual(self.sheets.rows(spreadsheet_id), [svc.HEADERS])
        self.assertEqual(self.sheets.call_names(), ['create', 'values.update', 'batchUpdate'])

        _, body = self.sheets.calls[2]
        repeat = body['body']['requests'][0]['repeatCell']
        self.assertTrue(repeat['cell']['userEnteredFormat']['textFormat']['bold'])

    def test_create_store_default_title(self):
        spreadsheet_id = self.client.create_store()
        self.assertTrue(self.sheets.spreadsheets_data[spreadsheet_id]['title'].startswith('Expense Tracker - '))

    def test_service_is_cached_per_token(self):
        self.client.get_service()
        self.client.get_service()
        self.factory.assert_called_once_with('token-1')

        self.clock.advance(56 * 60 * 1000)
        self.client.get_service()
        self.assertEqual(self.factory.call_count, 2)
        self.factory.assert_called_with('token-2')

    def test_append_to_existing_store(self):
        self.sheets.add_spreadsheet('existing', {'Expenses': [svc.HEADERS]})
        self.client.set_store_id('existing')

        self.client.append(EXPENSE)
        self.client.append(EXPENSE)

        rows = self.sheets.rows('existing')
        self.assertEqual(len(rows), 3)
        self.assertEqual(rows[1][:5], ['2024-01-05', 12.5, 'Food & Dining', 'Lunch', 'Card'])
        # The sheet is only looked up once
        self.assertEqual(self.sheets.call_names(), ['get', 'values.append', 'values.append'])

        _, kwargs = self.sheets.calls[1]
        self.assertEqual(kwargs['range'], svc.APPEND_RANGE)
        self.assertEqual(kwargs['valueInputOption'], 'RAW')
        self.assertEqual(kwargs['insertDataOption'], 'INSERT_ROWS')

    def test_ensure_table_adds_missing_sheet(self):
        self.sheets.add_spreadsheet('existing', {'Sheet1': []})
        self.client.set_store_id('existing')

        self.client.ensure_table()
        self.client.ensure_table()

        self.assertEqual(self.sheets.rows('existing'), [svc.HEADERS])
        self.assertEqual(self.sheets.call_names(), ['get', 'batchUpdate', 'values.update', 'batchUpdate'])

    def test_setup_existing_store(self):
        self.sheets.add_spreadsheet('existing', {'Expenses': [['old', 'header']]})
        self.client.setup_existing_store('existing')

        self.assertEqual(self.client.get_store_id(), 'existing')
        self.assertEqual(self.sheets.rows('existing'), [svc.HEADERS])

    def test_append_recreates_removed_sheet(self):
        self.sheets.add_spreadsheet('existing', {'Expenses': [svc.HEADERS]})
        self.client.set_store_id('existing')
        self.client.append(EXPENSE)

        del self.sheets.spreadsheets_data['existing']['sheets']['Expenses']
        self.client.append(EXPENSE)

        self.assertEqual(len(self.sheets.rows('existing')), 2)

    def test_read_all(self):
        self.sheets.add_spreadsheet('existing', {'Expenses': [
            svc.HEADERS,
            ['2024-01-05', 12.5, 'Food & Dining', 'Lunch', 'Card', '2024-01-05T12:00:00+00:00'],
            ['2024-01-06', '30', 'Transportation'],
        ]})
        self.client.set_store_id('existing')

        expenses = self.client.read_all()
        self.assertEqual([e.id for e in expenses], [2, 3])
        self.assertEqual(expenses[0].description, 'Lunch')
        self.assertEqual(expenses[1].amount, 30.0)
        self.assertTrue(all(e.synced for e in expenses))

        _, kwargs = self.sheets.calls[0]
        self.assertEqual(kwargs['range'], svc.READ_RANGE)

    def test_read_all_empty_sheet(self):
        self.sheets.add_spreadsheet('existing', {'Expenses': [svc.HEADERS]})
        self.client.set_store_id('existing')
        self.assertEqual(self.client.read_all(), [])

    def test_read_all_without_store(self):
        self.assertEqual(self.client.read_all(), [])
        self.factory.assert_not_called()

    def test_initial_spreadsheet_id(self):
        client = SheetsClient(self.provider, spreadsheet_id='given', service_factory=self.factory)
        self.assertEqual(client.get_store_id(), 'given')
        self.factory.assert_not_called()


class SheetsClientErrorTest(SheetsClientTestBase):
    def test_not_authenticated(self):
        self.provider.error = status.AuthenticationException('cancelled', reason=status.AuthFailureReason.Cancelled)
        with self.assertRaises(status.NotAuthenticatedException):
            self.client.create_store()
        self.factory.assert_not_called()

    def test_service_build_failure(self):
        self.factory.side_effect = RuntimeError('discovery document unavailable')
        with self.assertRaises(status.ServiceUnavailableException):
            self.client.get_service()

    def test_append_without_store(self):
        with self.assertRaises(status.SpreadsheetIdNotConfiguredException):
            self.client.append(EXPENSE)

    def test_append_to_missing_spreadsheet(self):
        self.client.set_store_id('missing')
        with self.assertRaises(status.RemoteException) as ctx:
            self.client.append(EXPENSE)
        self.assertEqual(ctx.exception.kind, status.RemoteErrorKind.NotFound)
        self.assertEqual(ctx.exception.http_status, 404)

    def test_append_permission_denied(self):
        self.sheets.add_spreadsheet('shared', {'Expenses': [svc.HEADERS]})
        self.sheets.errors['values.append'] = [make_http_error(403, 'The caller does not have permission')]
        self.client.set_store_id('shared')

        with self.assertRaises(status.RemoteException) as ctx:
            self.client.append(EXPENSE)
        self.assertEqual(ctx.exception.kind, status.RemoteErrorKind.PermissionDenied)
        self.assertTrue(ctx.exception.is_permission_error)

    def test_transport_errors(self):
        self.sheets.add_spreadsheet('existing', {'Expenses': [svc.HEADERS]})
        self.client.set_store_id('existing')
        for error in (socket.timeout('timed out'), ConnectionResetError()):
            with self.subTest(error=error):
                self.sheets.errors['values.get'] = [error]
                with self.assertRaises(status.RemoteException) as ctx:
                    self.client.read_all()
                self.assertEqual(ctx.exception.kind, status.RemoteErrorKind.ServiceUnavailable)
                self.assertIsNone(ctx.exception.http_status)

    def test_table_missing_is_retried_once(self):
        self.sheets.add_spreadsheet('existing', {'Expenses': [svc.HEADERS]})
        self.client.set_store_id('existing')
        table_missing = make_http_error(400, 'Unable to parse range: Expenses!A:F')
        self.sheets.errors['values.append'] = [table_missing, table_missing]

        with self.assertRaises(status.RemoteException) as ctx:
            self.client.append(EXPENSE)
        self.assertEqual(ctx.exception.kind, status.RemoteErrorKind.TableMissing)
        self.assertEqual(self.sheets.call_names().count('values.append'), 2)

    def test_changing_store_resets_table_check(self):
        self.sheets.add_spreadsheet('a', {'Expenses': [svc.HEADERS]})
        self.sheets.add_spreadsheet('b', {'Other': []})
        self.client.set_store_id('a')
        self.client.ensure_table()

        self.client.set_store_id('b')
        self.client.ensure_table()
        self.assertIn('Expenses', self.sheets.spreadsheets_data['b']['sheets'])
