"""
Settings package.

- :mod:`RentalLedger.settings.lib` – Configuration paths, schema validation and the settings API.
"""
