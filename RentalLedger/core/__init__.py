"""
Core package for RentalLedger.

This package includes:

- :mod:`RentalLedger.core.models` – Entity dataclasses, derived fields and the spreadsheet row codec.
- :mod:`RentalLedger.core.store` – The in-process store mutated by the application.
- :mod:`RentalLedger.core.auth` – Per-user Google OAuth2 sessions with inline token refresh.
- :mod:`RentalLedger.core.service` – Google Sheets API adapter: schema creation, full reads and full overwrites.
- :mod:`RentalLedger.core.sync` – Push, pull and merge cycles between the store and the spreadsheet.
- :mod:`RentalLedger.core.database` – Local SQLite cache of the store.
"""
