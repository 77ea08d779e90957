"""
RentalLedger: keeps a local rental ledger in sync with a Google Sheets spreadsheet.

This package provides:

- :mod:`RentalLedger.core` – OAuth sessions, the local store, the spreadsheet adapter, the sync engine and the local cache.
- :mod:`RentalLedger.settings` – Configuration of the OAuth client, the spreadsheet and sync behaviour.
- :mod:`RentalLedger.status` – Status codes and the exceptions raised throughout the package.
- :mod:`RentalLedger.log` – Logging setup with an in-memory log tank.
- :mod:`RentalLedger.signals` – Qt signals for the surrounding application.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('RentalLedger requires Python 3.11 or higher.')

__version__ = '0.1.0'
__license__ = 'GPL-3.0'
__description__ = 'RentalLedger: property, tenant, payment and repair records synchronized with Google Sheets.'

from .log import log

log.setup_logging()
