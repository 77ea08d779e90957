"""
Logging subsystem for RentalLedger.

Modules:

- :mod:`RentalLedger.log.log` – Root logger setup, an in-memory log tank and the Qt message bridge.
"""
