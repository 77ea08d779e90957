"""Google Sheets API integration.

Maps the four ledger collections onto four sheets of one spreadsheet and
provides the idempotent primitives the sync engine is built on:

- :meth:`RemoteAdapter.ensure_schema` creates missing sheets in one batch.
- :meth:`RemoteAdapter.read_all` reads every sheet, skipping malformed rows.
- :meth:`RemoteAdapter.write_all` overwrites every sheet with a collection.

Only rate-limit errors are retried, with bounded exponential backoff. Every
other failure is raised immediately as the error of the operation.
"""

import json
import logging
import socket
import ssl
import time
from typing import Any, Callable, Dict, List, Optional, Type

import google.oauth2.credentials
import google_auth_httplib2
import httplib2
import pandas as pd
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from . import models
from .auth import Session
from .models import Collection, EntitySet
from ..status import status

MAX_RETRIES: int = 5
BACKOFF_SECONDS: float = 1.0
HTTP_TIMEOUT: int = 60

RATE_LIMIT_REASONS = {'rateLimitExceeded', 'userRateLimitExceeded', 'RATE_LIMIT_EXCEEDED'}

NETWORK_ERRORS = (socket.timeout, ssl.SSLError, httplib2.HttpLib2Error, OSError)


def idx_to_col(idx: int) -> str:
    """Convert zero-based column index to spreadsheet letter(s).

    Args:
        idx: The zero-based column index.

    Returns:
        The spreadsheet column letter(s) (e.g., A, B, AA).
    """
    letters = ''
    while idx >= 0:
        letters = chr((idx % 26) + ord('A')) + letters
        idx = idx // 26 - 1
    return letters


def sheet_range(name: Collection) -> str:
    """Return the full-width range of a collection's sheet, e.g. 'Payments!A1:I'."""
    return f'{models.SHEET_TITLES[name]}!A1:{idx_to_col(len(models.COLUMNS[name]) - 1)}'


def is_rate_limited(ex: HttpError) -> bool:
    """Return True if the error is a quota rejection (HTTP 429, or 403 with a rate-limit reason)."""
    code: Optional[int] = ex.resp.status if ex.resp else None
    if code == 429:
        return True
    if code != 403:
        return False

    try:
        content = ex.content.decode('utf-8') if isinstance(ex.content, bytes) else ex.content
        error = json.loads(content or '{}').get('error', {})
    except (ValueError, AttributeError):
        return False
    if not isinstance(error, dict):
        return False

    reasons = {e.get('reason') for e in error.get('errors', []) if isinstance(e, dict)}
    reasons |= {d.get('reason') for d in error.get('details', []) if isinstance(d, dict)}
    return bool(reasons & RATE_LIMIT_REASONS) or error.get('status') == 'RESOURCE_EXHAUSTED'


class RemoteAdapter:
    """Reads and writes the ledger collections of a spreadsheet on behalf of a session.

    Args:
        service_factory: Returns a Sheets API resource for a session. Builds a
            google-api-python-client resource when omitted.
        max_retries: Retries of a rate-limited call. Read from settings when omitted.
        backoff_seconds: Delay before the first retry; doubled on each retry.
        http_timeout: Socket timeout of a single request in seconds.
        sleep: Used to wait between retries.
    """

    def __init__(self, service_factory: Optional[Callable[[Session], Any]] = None,
                 max_retries: Optional[int] = None, backoff_seconds: Optional[float] = None,
                 http_timeout: Optional[int] = None, sleep: Callable[[float], None] = time.sleep) -> None:
        if None in (max_retries, backoff_seconds, http_timeout):
            from ..settings import lib
            config = lib.settings.get_section('sync')
            max_retries = config.get('max_retries', MAX_RETRIES) if max_retries is None else max_retries
            backoff_seconds = config.get('backoff_seconds', BACKOFF_SECONDS) if backoff_seconds is None else backoff_seconds
            http_timeout = config.get('http_timeout', HTTP_TIMEOUT) if http_timeout is None else http_timeout

        self.max_retries: int = max_retries
        self.backoff_seconds: float = backoff_seconds
        self.http_timeout: int = http_timeout
        self._sleep = sleep
        self._service_factory = service_factory or self._build_service

        # user id -> (access token, resource)
        self._cached_services: Dict[str, Any] = {}

    def _build_service(self, session: Session) -> Any:
        creds = google.oauth2.credentials.Credentials(token=session.access_token)
        http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http(timeout=self.http_timeout),
                                                  refresh_status_codes=())
        return build('sheets', 'v4', http=http, cache_discovery=False)

    def get_service(self, session: Session) -> Any:
        """Return the Sheets resource of a session, reusing it while the access token is unchanged."""
        cached = self._cached_services.get(session.user_id)
        if cached and cached[0] == session.access_token:
            return cached[1]

        service = self._service_factory(session)
        logging.debug(f'Google Sheets service client created for "{session.user_id}".')
        self._cached_services[session.user_id] = (session.access_token, service)
        return service

    def clear_service(self, user_id: Optional[str] = None) -> None:
        """Drop the cached Sheets resource of a user, or of every user."""
        if user_id is None:
            self._cached_services.clear()
        else:
            self._cached_services.pop(user_id, None)

    def _call(self, func: Callable[[], Any], error_cls: Type[status.RemoteError], action: str) -> Any:
        """Execute an API call, retrying while it is rate limited.

        Raises:
            status.RateLimitedException: If the call is still rate limited after all retries.
            error_cls: On any other API or network failure.
        """
        attempt = 0
        while True:
            try:
                return func()
            except HttpError as ex:
                if not is_rate_limited(ex):
                    code = ex.resp.status if ex.resp else None
                    raise error_cls(f'Failed to {action} (HTTP {code}): {ex.reason}') from ex
                if attempt >= self.max_retries:
                    raise status.RateLimitedException(
                        f'Gave up trying to {action} after {attempt + 1} attempts.'
                    ) from ex
                delay = self.backoff_seconds * (2 ** attempt)
                attempt += 1
                logging.warning(f'Rate limited while trying to {action}; retry {attempt} in {delay:.1f}s')
                self._sleep(delay)
            except NETWORK_ERRORS as ex:
                raise error_cls(f'Network error while trying to {action}: {ex}') from ex

    def ensure_schema(self, session: Session, document_id: str) -> List[str]:
        """Create the missing ledger sheets of a spreadsheet.

        Existing sheets are left alone; the missing ones are added with a single
        batchUpdate, so calling this repeatedly is harmless.

        Returns:
            list[str]: Titles of the sheets created.

        Raises:
            status.SchemaCreateFailedException: If the sheets could not be listed or created.
            status.RateLimitedException: If the API kept rejecting the calls over quota.
        """
        service = self.get_service(session)
        result: Dict[str, Any] = self._call(
            lambda: service.spreadsheets().get(
                spreadsheetId=document_id,
                fields='sheets(properties(title))'
            ).execute(),
            status.SchemaCreateFailedException,
            f'list the sheets of "{document_id}"'
        ) or {}

        titles = {s.get('properties', {}).get('title') for s in result.get('sheets', [])}
        missing = [models.SHEET_TITLES[name] for name in Collection if models.SHEET_TITLES[name] not in titles]
        if not missing:
            logging.debug(f'All ledger sheets exist in "{document_id}".')
            return []

        logging.info(f'Creating sheets {missing} in "{document_id}".')
        body = {'requests': [{'addSheet': {'properties': {'title': title}}} for title in missing]}
        self._call(
            lambda: service.spreadsheets().batchUpdate(spreadsheetId=document_id, body=body).execute(),
            status.SchemaCreateFailedException,
            f'create sheets {missing}'
        )
        return missing

    def read_all(self, session: Session, document_id: str) -> EntitySet:
        """Read the four collections from the spreadsheet.

        The first row of each sheet is the header and is skipped; cells are
        mapped to fields by position. Rows with more cells than the schema,
        without an id, or with a cell that cannot be decoded are skipped.

        Raises:
            status.ReadFailedException: If the sheets could not be read.
            status.RateLimitedException: If the API kept rejecting the calls over quota.
        """
        service = self.get_service(session)
        names = list(Collection)
        ranges = [sheet_range(name) for name in names]

        logging.debug(f'Fetching {ranges} from "{document_id}".')
        batch_result: Dict[str, Any] = self._call(
            lambda: service.spreadsheets().values().batchGet(
                spreadsheetId=document_id,
                ranges=ranges,
                valueRenderOption='UNFORMATTED_VALUE',
                dateTimeRenderOption='FORMATTED_STRING',
                fields='valueRanges(values)'
            ).execute(),
            status.ReadFailedException,
            f'read the sheets of "{document_id}"'
        ) or {}

        value_ranges = batch_result.get('valueRanges', [])
        if len(value_ranges) != len(names):
            raise status.ReadFailedException(
                f'Expected {len(names)} value ranges, got {len(value_ranges)}.'
            )

        collections = {}
        for name, vr in zip(names, value_ranges):
            collections[name.value] = tuple(self._decode_sheet(name, vr.get('values', [])))
        entities = EntitySet(**collections)
        logging.debug(f'Read {entities.counts()} from "{document_id}".')
        return entities

    @staticmethod
    def _decode_sheet(name: Collection, values: List[List[Any]]) -> List[models.Entity]:
        title = models.SHEET_TITLES[name]
        if not values:
            return []

        expected = models.headers(name)
        width = len(expected)

        # Row 1 is the header; cells are mapped by position regardless of its text
        header = [str(h).strip() for h in values[0]]
        if header != expected:
            logging.warning(f'Header of "{title}" differs from {expected}: {header}')

        rows: List[List[Any]] = []
        numbers: List[int] = []
        for n, row in enumerate(values[1:], start=2):
            if len(row) > width:
                logging.warning(f'Skipping row {n} of "{title}": {len(row)} cells, expected at most {width}.')
                continue
            rows.append(list(row) + [''] * (width - len(row)))
            numbers.append(n)

        frame: pd.DataFrame = pd.DataFrame(rows, columns=expected, index=numbers, dtype=object)

        entities = []
        seen = set()
        for n, *row in frame.itertuples(index=True, name=None):
            if all(cell is None or str(cell).strip() == '' for cell in row):
                continue
            try:
                entity = models.from_row(name, list(row))
            except (ValueError, TypeError) as ex:
                logging.warning(f'Skipping row {n} of "{title}": {ex}')
                continue
            if entity.id in seen:
                logging.warning(f'Skipping row {n} of "{title}": duplicate id "{entity.id}".')
                continue
            seen.add(entity.id)
            entities.append(entity)
        return entities

    def write_all(self, session: Session, document_id: str, entities: EntitySet) -> Dict[str, int]:
        """Overwrite each sheet with the matching collection.

        Each sheet is cleared and rewritten from A1 with the header and one
        row per entity. A failure leaves the sheet being written in an
        indeterminate state; calling write_all again repairs it.

        Returns:
            dict: Number of rows written per collection.

        Raises:
            status.WriteFailedException: If a sheet could not be cleared or written.
            status.RateLimitedException: If the API kept rejecting the calls over quota.
        """
        service = self.get_service(session)
        written = {}
        for name in Collection:
            title = models.SHEET_TITLES[name]
            values = [models.headers(name)] + [models.to_row(e) for e in entities.collection(name)]

            self._call(
                lambda: service.spreadsheets().values().clear(
                    spreadsheetId=document_id,
                    range=title,
                    body={}
                ).execute(),
                status.WriteFailedException,
                f'clear "{title}"'
            )
            self._call(
                lambda: service.spreadsheets().values().update(
                    spreadsheetId=document_id,
                    range=f'{title}!A1',
                    valueInputOption='RAW',
                    body={'values': values}
                ).execute(),
                status.WriteFailedException,
                f'write "{title}"'
            )
            written[name.value] = len(values) - 1
            logging.debug(f'Wrote {len(values) - 1} rows to "{title}".')
        return written
