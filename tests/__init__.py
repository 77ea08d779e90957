"""Test suite for RentalLedger.

Qt's test mode is enabled before the package is imported, so the settings
singleton and every test write below a throwaway standard location instead
of the user's application data directory.
"""
from PySide6 import QtCore

QtCore.QStandardPaths.setTestModeEnabled(True)
