"""Unittest base classes and fakes for creating a clean test environment."""
import enum
import json
import logging
import os
import shutil
import time
import types
import unittest
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httplib2
from PySide6 import QtCore
from googleapiclient.errors import HttpError

from RentalLedger.core import auth
from RentalLedger.core.models import Payment, Property, RepairRequest, Tenant
from RentalLedger.settings import lib

CLIENT_CONFIG: Dict[str, Any] = {
    'web': {
        'client_id': 'test-client-id.apps.googleusercontent.com',
        'project_id': 'rentalledger-test',
        'client_secret': 'test-client-secret',
        'auth_uri': 'https://accounts.google.com/o/oauth2/auth',
        'token_uri': 'https://oauth2.googleapis.com/token',
        'redirect_uris': ['http://localhost:3000/auth/callback'],
    }
}

USER_ID = 'user-1'
DOCUMENT_ID = 'spreadsheet-1'


class TestAuthEnvKeys(enum.Enum):
    """Environment variable keys of the live spreadsheet tests."""
    RL_TEST_SERVICE_ACCOUNT_CREDS = enum.auto()
    RL_TEST_SPREADSHEET_ID = enum.auto()


@contextmanager
def mute_ui_signals():
    from RentalLedger.signals import signals
    blocker = QtCore.QSignalBlocker(signals)
    try:
        yield
    finally:
        del blocker


def http_error(code: int, reason: Optional[str] = None, message: str = 'error') -> HttpError:
    """Return an HttpError shaped like the ones the Sheets API raises."""
    error: Dict[str, Any] = {'code': code, 'message': message}
    if reason:
        error['errors'] = [{'reason': reason, 'message': message}]
    content = json.dumps({'error': error}).encode('utf-8')
    return HttpError(httplib2.Response({'status': code}), content)


def make_property(**kwargs) -> Property:
    values = dict(address='1 Main St', city='Springfield', state='IL', zipcode='62701', rent=1200)
    values.update(kwargs)
    return Property(**values)


def make_tenant(property_id: str, **kwargs) -> Tenant:
    values = dict(
        property_id=property_id,
        name='Jane Doe',
        email='jane@example.com',
        phone='(555) 123-4567',
        lease_start='2026-01-01',
        lease_end='2026-12-31',
        rent_amount=1250,
        payment_method='Zelle',
    )
    values.update(kwargs)
    return Tenant(**values)


def make_payment(property_id: str, **kwargs) -> Payment:
    values = dict(property_id=property_id, amount=1200, amount_paid=0, rent_month='October 2026')
    values.update(kwargs)
    return Payment(**values)


def make_repair_request(tenant_id: str, property_id: str, **kwargs) -> RepairRequest:
    values = dict(
        tenant_id=tenant_id,
        property_id=property_id,
        title='Leaking faucet',
        description='Kitchen faucet drips',
        category='Plumbing',
    )
    values.update(kwargs)
    return RepairRequest(**values)


class _Exec:
    """Deferred call with an .execute() method, like a googleapiclient HttpRequest."""

    def __init__(self, func: Callable[[], Any]):
        self._func = func

    def execute(self):
        return self._func()


def _title(rng: str) -> str:
    return rng.split('!')[0].strip("'")


def _width(rng: str) -> Optional[int]:
    # Number of columns of an 'A1:G' style range, None when unbounded
    if '!' not in rng or ':' not in rng:
        return None
    end = rng.split('!')[-1].split(':')[-1].rstrip('0123456789')
    if not end:
        return None
    width = 0
    for char in end.upper():
        width = width * 26 + ord(char) - ord('A') + 1
    return width


def _trim(row: List[Any]) -> List[Any]:
    # The API omits trailing empty cells
    row = list(row)
    while row and row[-1] in ('', None):
        row.pop()
    return row


class FakeSpreadsheet:
    """In-memory stand-in of a spreadsheet reachable through the Sheets v4 resource chain.

    Attributes:
        sheets: Sheet title to rows.
        calls: Names of the executed API methods, in order.
        failures: Method name to a queue of exceptions raised by the next executions.
    """

    def __init__(self, sheets: Optional[Dict[str, List[List[Any]]]] = None):
        self.sheets: Dict[str, List[List[Any]]] = {
            title: [list(r) for r in rows] for title, rows in (sheets or {}).items()
        }
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _run(self, method: str, func: Callable[[], Any]) -> _Exec:
        def _execute():
            self.calls.append(method)
            queue = self.failures.get(method)
            if queue:
                raise queue.pop(0)
            return func()

        return _Exec(_execute)

    def service(self) -> Any:
        return types.SimpleNamespace(spreadsheets=lambda: _Spreadsheets(self))

    def rows(self, title: str) -> List[List[Any]]:
        return [list(r) for r in self.sheets.get(title, [])]


class _Values:
    def __init__(self, doc: FakeSpreadsheet):
        self._doc = doc

    def batchGet(self, spreadsheetId: str, ranges: List[str], **kwargs):
        def _get():
            value_ranges = []
            for rng in ranges:
                title = _title(rng)
                if title not in self._doc.sheets:
                    raise http_error(400, 'badRequest', f'Unable to parse range: {rng}')
                width = _width(rng)
                rows = [_trim(r[:width]) for r in self._doc.sheets[title]]
                while rows and not rows[-1]:
                    rows.pop()
                vr: Dict[str, Any] = {'range': rng}
                if rows:
                    vr['values'] = rows
                value_ranges.append(vr)
            return {'valueRanges': value_ranges}

        return self._doc._run('batchGet', _get)

    def clear(self, spreadsheetId: str, range: str, body: Dict[str, Any]):
        def _clear():
            self._doc.sheets[_title(range)] = []
            return {}

        return self._doc._run('clear', _clear)

    def update(self, spreadsheetId: str, range: str, valueInputOption: str, body: Dict[str, Any]):
        def _update():
            title = _title(range)
            if title not in self._doc.sheets:
                raise http_error(400, 'badRequest', f'Unable to parse range: {range}')
            self._doc.sheets[title] = [list(r) for r in body['values']]
            return {'updatedRows': len(body['values'])}

        return self._doc._run('update', _update)


class _Spreadsheets:
    def __init__(self, doc: FakeSpreadsheet):
        self._doc = doc

    def get(self, spreadsheetId: str, fields: str = ''):
        return self._doc._run(
            'get',
            lambda: {'sheets': [{'properties': {'title': t}} for t in self._doc.sheets]}
        )

    def batchUpdate(self, spreadsheetId: str, body: Dict[str, Any]):
        def _update():
            for request in body['requests']:
                title = request['addSheet']['properties']['title']
                if title in self._doc.sheets:
                    raise http_error(400, 'badRequest', f'A sheet with the name "{title}" already exists.')
                self._doc.sheets[title] = []
            return {'replies': [{} for _ in body['requests']]}

        return self._doc._run('batchUpdate', _update)

    def values(self):
        return _Values(self._doc)


class BaseTestCase(unittest.TestCase):
    """Base test case that sets up and tears down a temporary config directory."""

    config_paths: lib.ConfigPaths

    def setUp(self) -> None:
        """Set up a clean config directory and reinitialize the settings API."""
        # Standard paths are in test mode, see tests/__init__.py
        self.config_paths = lib.ConfigPaths()
        config_dir: Path = self.config_paths.config_dir
        if config_dir.exists():
            shutil.rmtree(config_dir)
            logging.debug(f'Removed test config directory {config_dir}')

        lib.settings = lib.SettingsAPI()
        logging.debug('SettingsAPI reinitialized.')

    def tearDown(self) -> None:
        config_dir: Path = self.config_paths.config_dir
        if config_dir.exists():
            shutil.rmtree(config_dir, ignore_errors=True)
            logging.debug(f'Removed test config directory {config_dir}')


class BaseSessionTestCase(BaseTestCase):
    """Adds a session manager with a controllable clock and a resumed session for USER_ID."""

    def setUp(self) -> None:
        super().setUp()
        self.now = time.time()
        self.sessions = auth.SessionManager(client_config=CLIENT_CONFIG, clock=lambda: self.now)
        self.sessions.resume(USER_ID, {
            'accessToken': 'access-1',
            'refreshToken': 'refresh-1',
            'idToken': None,
            'expiryEpochMillis': int((self.now + 3600) * 1000),
        }, account_email='jane@example.com')

    def expire_session(self) -> None:
        """Move the clock past the expiry of the current session."""
        session = self.sessions.bundle(USER_ID)
        self.now = session['expiryEpochMillis'] / 1000 + 1


class BaseServiceTestCase(BaseTestCase):
    """Base test case for tests against a live spreadsheet.

    Skipped unless the environment provides service account credentials and
    a spreadsheet shared with that account.
    """

    def setUp(self) -> None:
        super().setUp()

        for key in TestAuthEnvKeys:
            if not os.environ.get(key.name):
                self.skipTest(f'Missing environment variable: {key.name}')

        from google.auth.transport.requests import Request
        from google.oauth2 import service_account

        info = json.loads(os.environ[TestAuthEnvKeys.RL_TEST_SERVICE_ACCOUNT_CREDS.name])
        creds = service_account.Credentials.from_service_account_info(
            info, scopes=['https://www.googleapis.com/auth/spreadsheets']
        )
        creds.refresh(Request())
        logging.debug(f'Service account token obtained; expiry={creds.expiry}')

        self.document_id = os.environ[TestAuthEnvKeys.RL_TEST_SPREADSHEET_ID.name]
        self.session = auth.Session(
            user_id=creds.service_account_email,
            access_token=creds.token,
            refresh_token=None,
            id_token=None,
            expiry_ms=auth.expiry_to_ms(creds.expiry, int(time.time() * 1000)),
            account_email=creds.service_account_email,
        )


class ConfigPathsSmokeTest(BaseTestCase):
    def test_template_exists(self):
        cp = lib.ConfigPaths()
        self.assertTrue(cp.config_template.exists())
        self.assertTrue(cp.config_path.exists())
        self.assertTrue(cp.db_dir.is_dir())
