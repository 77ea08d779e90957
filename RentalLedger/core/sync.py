"""Synchronization between the local store and the spreadsheet.

:class:`SyncEngine` is the only component that talks to both the
:class:`~RentalLedger.core.store.LocalStore` and the
:class:`~RentalLedger.core.service.RemoteAdapter`. It offers three cycles:

- push: overwrite the spreadsheet with the local store (local wins).
- pull: replace the local store with the spreadsheet (remote wins).
- merge: adopt records that only exist remotely, keep every local record as
  is, then write the union back to the spreadsheet.

Every cycle first obtains a valid session, refreshing it when needed, so no
Sheets call is made with an expired access token. Only one cycle runs per
user at a time; a concurrent request fails fast.
"""
import datetime
import enum
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from PySide6 import QtCore

from .auth import Session, SessionManager
from .models import Collection, EntitySet
from .service import RemoteAdapter
from .store import LocalStore
from ..signals import signals
from ..status import status

_registry_lock = threading.Lock()
_user_locks: Dict[str, threading.Lock] = {}


def user_lock(user_id: str) -> threading.Lock:
    """Return the lock serializing sync cycles of a user."""
    with _registry_lock:
        return _user_locks.setdefault(user_id, threading.Lock())


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class SyncMode(enum.StrEnum):
    Push = 'push'
    Pull = 'pull'
    Merge = 'merge'


@dataclass(frozen=True)
class SyncSummary:
    """Outcome of a successful cycle.

    Attributes:
        mode: The cycle that ran.
        document_id: The spreadsheet synchronized with.
        counts: Records per collection in the local store when the cycle finished.
        adopted: Remote-only records added to the local store (merge only).
        written: Rows written per sheet (push and merge).
        started_at: UTC ISO timestamp.
        finished_at: UTC ISO timestamp.
    """
    mode: SyncMode
    document_id: str
    counts: Dict[str, int]
    adopted: Dict[str, int] = field(default_factory=dict)
    written: Dict[str, int] = field(default_factory=dict)
    started_at: str = ''
    finished_at: str = ''


@dataclass(frozen=True)
class SyncResult:
    """Either the summary of a cycle or the error that stopped it."""
    mode: SyncMode
    summary: Optional[SyncSummary] = None
    error: Optional[Union[status.SyncError, status.AuthError]] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def union(local: EntitySet, remote: EntitySet) -> EntitySet:
    """Return the records of ``remote`` whose ids do not appear in ``local``."""
    remote_only = {}
    for name in Collection:
        local_ids = set(local.ids(name))
        remote_only[name.value] = tuple(e for e in remote.collection(name) if e.id not in local_ids)
    return EntitySet(**remote_only)


def combine(local: EntitySet, extra: EntitySet) -> EntitySet:
    """Append ``extra`` to ``local`` per collection."""
    return EntitySet(**{
        name.value: local.collection(name) + extra.collection(name)
        for name in Collection
    })


class SyncEngine(QtCore.QObject):
    """Runs push, pull and merge cycles for one user and one spreadsheet.

    Args:
        store: The local store to synchronize.
        adapter: The spreadsheet adapter.
        sessions: Supplies valid sessions for the user.
        user_id: The signed-in user the cycles run for.
        document_id: The spreadsheet id. Read from settings when omitted.
        cache: Optional :class:`~RentalLedger.core.database.DatabaseAPI`
            receiving the store contents after each successful cycle.
    """

    def __init__(self, store: LocalStore, adapter: RemoteAdapter, sessions: SessionManager, user_id: str,
                 document_id: Optional[str] = None, cache=None, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.store = store
        self.adapter = adapter
        self.sessions = sessions
        self.user_id = user_id
        self._document_id = document_id
        self.cache = cache
        self._schema_ready: set = set()

    @property
    def document_id(self) -> str:
        if self._document_id:
            return self._document_id
        from ..settings import lib
        return lib.settings.spreadsheet_id

    @contextmanager
    def _exclusive(self):
        lock = user_lock(self.user_id)
        if not lock.acquire(blocking=False):
            raise status.SyncInProgressException(f'A sync is already running for "{self.user_id}".')
        try:
            yield
        finally:
            lock.release()

    def _prepare(self, document_id: str) -> Session:
        """Get a valid session and make sure the ledger sheets exist.

        Raises:
            status.AuthError: If no valid session can be obtained.
            status.RemoteError: If the sheets could not be prepared.
        """
        session = self.sessions.get_valid_session(self.user_id)
        if document_id not in self._schema_ready:
            self.adapter.ensure_schema(session, document_id)
            self._schema_ready.add(document_id)
        return session

    def _cache(self, document_id: str, finished_at: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.save(self.store.snapshot(), spreadsheet_id=document_id, last_sync=finished_at)
        except status.CacheInvalidException as ex:
            logging.warning(f'Could not update the local cache: {ex}')

    def push(self) -> SyncSummary:
        """Overwrite the spreadsheet with the local store.

        Raises:
            status.SyncInProgressException: If another cycle runs for the user.
            status.AbortedBeforeMutationException: If no spreadsheet is configured or
                any remote call failed.
            status.AuthError: If no valid session can be obtained.
        """
        with self._exclusive():
            started_at = now_str()
            document_id = self._document_id_or_abort(SyncMode.Push)
            session = self._prepare_or_abort(document_id, SyncMode.Push)
            snapshot = self.store.snapshot()
            try:
                written = self.adapter.write_all(session, document_id, snapshot)
            except status.RemoteError as ex:
                raise status.AbortedBeforeMutationException(f'push to "{document_id}" failed: {ex}') from ex

            finished_at = now_str()
            self._cache(document_id, finished_at)
            logging.info(f'Pushed {snapshot.counts()} to "{document_id}"')
            return SyncSummary(
                mode=SyncMode.Push,
                document_id=document_id,
                counts=snapshot.counts(),
                written=written,
                started_at=started_at,
                finished_at=finished_at,
            )

    def pull(self) -> SyncSummary:
        """Replace the local store with the contents of the spreadsheet.

        Local records missing from the spreadsheet are lost.

        Raises:
            status.SyncInProgressException: If another cycle runs for the user.
            status.AbortedBeforeMutationException: If no spreadsheet is configured or
                it could not be read.
            status.AuthError: If no valid session can be obtained.
        """
        with self._exclusive():
            started_at = now_str()
            document_id = self._document_id_or_abort(SyncMode.Pull)
            session = self._prepare_or_abort(document_id, SyncMode.Pull)
            try:
                remote = self.adapter.read_all(session, document_id)
            except status.RemoteError as ex:
                raise status.AbortedBeforeMutationException(f'pull from "{document_id}" failed: {ex}') from ex

            self.store.replace_all(remote)

            finished_at = now_str()
            self._cache(document_id, finished_at)
            logging.info(f'Pulled {remote.counts()} from "{document_id}"')
            return SyncSummary(
                mode=SyncMode.Pull,
                document_id=document_id,
                counts=remote.counts(),
                started_at=started_at,
                finished_at=finished_at,
            )

    def merge(self) -> SyncSummary:
        """Union the local store and the spreadsheet, local records taking precedence.

        Remote-only records are added to the local store in one step, then
        every sheet is overwritten with the local snapshot plus the adopted
        records. Running merge again without local changes changes nothing.

        Raises:
            status.SyncInProgressException: If another cycle runs for the user.
            status.AbortedBeforeMutationException: If no spreadsheet is configured or
                it could not be read.
            status.PartialFailureAfterLocalCommitException: If the local store was
                updated but the spreadsheet could not be written. Run merge again.
            status.AuthError: If no valid session can be obtained.
        """
        with self._exclusive():
            started_at = now_str()
            document_id = self._document_id_or_abort(SyncMode.Merge)
            session = self._prepare_or_abort(document_id, SyncMode.Merge)

            local = self.store.snapshot()
            try:
                remote = self.adapter.read_all(session, document_id)
            except status.RemoteError as ex:
                raise status.AbortedBeforeMutationException(f'merge with "{document_id}" failed: {ex}') from ex

            adopted = self.store.adopt(union(local, remote))
            merged = combine(local, adopted)

            try:
                written = self.adapter.write_all(session, document_id, merged)
            except status.RemoteError as ex:
                raise status.PartialFailureAfterLocalCommitException(
                    f'merge adopted {adopted.counts()} but writing "{document_id}" failed: {ex}'
                ) from ex

            finished_at = now_str()
            self._cache(document_id, finished_at)
            logging.info(f'Merged with "{document_id}": adopted {adopted.counts()}, wrote {written}')
            return SyncSummary(
                mode=SyncMode.Merge,
                document_id=document_id,
                counts=self.store.snapshot().counts(),
                adopted=adopted.counts(),
                written=written,
                started_at=started_at,
                finished_at=finished_at,
            )

    def _document_id_or_abort(self, mode: SyncMode) -> str:
        try:
            return self.document_id
        except status.SpreadsheetIdNotConfiguredException as ex:
            raise status.AbortedBeforeMutationException(f'{mode} has no spreadsheet to sync with: {ex}') from ex

    def _prepare_or_abort(self, document_id: str, mode: SyncMode) -> Session:
        try:
            return self._prepare(document_id)
        except status.RemoteError as ex:
            raise status.AbortedBeforeMutationException(f'{mode} could not prepare "{document_id}": {ex}') from ex

    def sync(self, mode: SyncMode) -> SyncResult:
        """Run a cycle and report its outcome.

        Sync errors are returned in the result. Authentication errors are
        raised: the caller has to send the user through authorization again.
        syncFinished is emitted in both cases.

        Args:
            mode: 'push', 'pull' or 'merge'.

        Returns:
            SyncResult: The summary, or the error that stopped the cycle.
        """
        mode = SyncMode(mode)
        cycles = {
            SyncMode.Push: self.push,
            SyncMode.Pull: self.pull,
            SyncMode.Merge: self.merge,
        }

        signals.syncStarted.emit(mode.value)
        try:
            result = SyncResult(mode=mode, summary=cycles[mode]())
        except status.SyncError as ex:
            result = SyncResult(mode=mode, error=ex)
        except status.AuthError as ex:
            signals.syncFinished.emit(SyncResult(mode=mode, error=ex))
            raise

        signals.syncFinished.emit(result)
        return result
