"""
Local SQLite cache of the ledger.

Keeps a copy of the local store between runs: one table per collection, with
text columns named after the sheet headers, plus a metadata table recording
the spreadsheet the data belongs to, the time of the last sync and the
state of the cache. A snapshot is always saved in a single transaction.
"""

import enum
import logging
import pathlib
import sqlite3
from typing import Dict, Optional

from PySide6 import QtCore

from . import models
from .models import Collection, EntitySet
from .sync import now_str
from ..status import status

META_TABLE = 'metatable'

META_SCHEMA: Dict[str, str] = {
    'meta_id': 'INTEGER PRIMARY KEY',
    'last_sync': 'TEXT',
    'state': 'TEXT',
    'spreadsheet_id': 'TEXT',
}


class CacheState(enum.StrEnum):
    """Enum for cache state values."""
    Uninitialized = 'cache is uninitialized'
    Empty = 'cache is empty'
    Error = 'cache has error'
    Valid = 'cache is valid'


def _columns_sql(name: Collection) -> str:
    return ', '.join(f'"{h}" TEXT' for h in models.headers(name))


class DatabaseAPI(QtCore.QObject):
    """Saves and restores snapshots of the local store.

    Args:
        db_path: Location of the database file. Defaults to the cache path of the settings.
    """

    def __init__(self, db_path: Optional[pathlib.Path] = None, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        if db_path is None:
            from ..settings import lib
            db_path = lib.settings.db_path
        self.db_path = pathlib.Path(db_path)
        self._initialize_schema_if_needed()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the cache database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(str(self.db_path), timeout=2.0)

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    @staticmethod
    def _columns_in_conn(conn: sqlite3.Connection, table_name: str) -> list:
        return [row[1] for row in conn.execute(f'PRAGMA table_info("{table_name}")').fetchall()]

    def _schema_is_valid(self, conn: sqlite3.Connection) -> bool:
        if not self._table_exists_in_conn(conn, META_TABLE):
            return False
        if not set(META_SCHEMA).issubset(self._columns_in_conn(conn, META_TABLE)):
            return False
        for name in Collection:
            if self._columns_in_conn(conn, name.value) != models.headers(name):
                logging.warning(f'Cache table "{name.value}" does not match the sheet layout.')
                return False
        return True

    def _initialize_schema_if_needed(self) -> None:
        """Create the tables, or recreate them when the existing schema is outdated."""
        conn = self.connection()
        try:
            if self._schema_is_valid(conn):
                logging.debug('Existing cache schema is valid.')
                return

            logging.info(f'Creating cache schema in "{self.db_path}".')
            with conn:
                conn.execute(f'DROP TABLE IF EXISTS {META_TABLE}')
                for name in Collection:
                    conn.execute(f'DROP TABLE IF EXISTS "{name.value}"')
                    conn.execute(f'CREATE TABLE "{name.value}" ({_columns_sql(name)})')

                meta_cols_sql = ', '.join(f'"{k}" {v}' for k, v in META_SCHEMA.items())
                conn.execute(f'CREATE TABLE {META_TABLE} ({meta_cols_sql})')
                conn.execute(
                    f'INSERT INTO {META_TABLE} (meta_id, state, last_sync, spreadsheet_id) VALUES (1, ?, ?, ?)',
                    (CacheState.Uninitialized.name, '', '')
                )
        except sqlite3.Error as ex:
            raise status.CacheInvalidException(f'Could not create the cache schema: {ex}') from ex
        finally:
            conn.close()

    def save(self, entities: EntitySet, spreadsheet_id: str = '', last_sync: Optional[str] = None) -> None:
        """Replace the cached snapshot in one transaction.

        Raises:
            status.CacheInvalidException: If the database could not be written.
        """
        state = CacheState.Empty if entities.is_empty() else CacheState.Valid
        conn = self.connection()
        try:
            with conn:
                for name in Collection:
                    hdrs = models.headers(name)
                    conn.execute(f'DELETE FROM "{name.value}"')
                    placeholders = ', '.join('?' for _ in hdrs)
                    conn.executemany(
                        f'INSERT INTO "{name.value}" VALUES ({placeholders})',
                        [models.to_row(e) for e in entities.collection(name)]
                    )
                conn.execute(
                    f'UPDATE {META_TABLE} SET state=?, last_sync=?, spreadsheet_id=? WHERE meta_id=1',
                    (state.name, last_sync or now_str(), spreadsheet_id)
                )
            logging.debug(f'Cached {entities.counts()} in "{self.db_path}".')
        except sqlite3.Error as ex:
            raise status.CacheInvalidException(f'Could not write the cache: {ex}') from ex
        finally:
            conn.close()

    def _meta(self) -> Dict[str, str]:
        conn = self.connection()
        try:
            row = conn.execute(
                f'SELECT state, last_sync, spreadsheet_id FROM {META_TABLE} WHERE meta_id=1'
            ).fetchone()
        except sqlite3.Error as ex:
            raise status.CacheInvalidException(f'Could not read the cache metadata: {ex}') from ex
        finally:
            conn.close()
        if not row:
            raise status.CacheInvalidException(f'Metadata entry (meta_id=1) missing in "{META_TABLE}".')
        return {'state': row[0], 'last_sync': row[1], 'spreadsheet_id': row[2]}

    def state(self) -> CacheState:
        return CacheState[self._meta()['state']]

    def last_sync(self) -> str:
        return self._meta()['last_sync']

    def verify(self, spreadsheet_id: Optional[str] = None) -> None:
        """Check the cache holds a snapshot, optionally of the given spreadsheet.

        Raises:
            status.CacheInvalidException: If the cache was never written, is in an
                error state or belongs to another spreadsheet.
        """
        meta = self._meta()
        if meta['state'] in (CacheState.Uninitialized.name, CacheState.Error.name):
            raise status.CacheInvalidException(f'Cache state is "{CacheState[meta["state"]].value}".')
        if spreadsheet_id is not None and meta['spreadsheet_id'] != spreadsheet_id:
            raise status.CacheInvalidException(
                f'Cache belongs to "{meta["spreadsheet_id"]}", not "{spreadsheet_id}".'
            )

    def load(self, spreadsheet_id: Optional[str] = None) -> EntitySet:
        """Return the cached snapshot.

        Raises:
            status.CacheInvalidException: If the cache is invalid or a row cannot be decoded.
        """
        self.verify(spreadsheet_id=spreadsheet_id)
        conn = self.connection()
        collections = {}
        try:
            for name in Collection:
                rows = conn.execute(f'SELECT * FROM "{name.value}"').fetchall()
                collections[name.value] = tuple(models.from_row(name, list(row)) for row in rows)
        except sqlite3.Error as ex:
            raise status.CacheInvalidException(f'Could not read the cache: {ex}') from ex
        except ValueError as ex:
            self._set_state(CacheState.Error)
            raise status.CacheInvalidException(f'The cache holds an invalid row: {ex}') from ex
        finally:
            conn.close()
        return EntitySet(**collections)

    def restore(self, store, spreadsheet_id: Optional[str] = None) -> EntitySet:
        """Load the cached snapshot into a local store."""
        entities = self.load(spreadsheet_id=spreadsheet_id)
        store.replace_all(entities)
        return entities

    def _set_state(self, state: CacheState) -> None:
        conn = self.connection()
        try:
            with conn:
                conn.execute(f'UPDATE {META_TABLE} SET state=? WHERE meta_id=1', (state.name,))
        finally:
            conn.close()

    @QtCore.Slot()
    def reset_cache(self) -> None:
        """Delete the database file and recreate an empty schema."""
        logging.debug(f'Resetting local cache "{self.db_path}".')
        try:
            self.db_path.unlink(missing_ok=True)
        except OSError as ex:
            raise status.CacheInvalidException(f'Could not delete the cache: {ex}') from ex
        self._initialize_schema_if_needed()
