"""Application-wide Qt signals for RentalLedger.

The surrounding application (forms, tables, a sign-in page) connects to these
to learn about store mutations, synchronization cycles and session changes.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for configuration, session, store and sync events."""
    authenticationRequested = QtCore.Signal(str)  # user id
    sessionChanged = QtCore.Signal(str)  # user id

    configSectionChanged = QtCore.Signal(str)  # Section

    storeChanged = QtCore.Signal(str)  # Collection name
    storeReplaced = QtCore.Signal()

    syncStarted = QtCore.Signal(str)  # Mode
    syncFinished = QtCore.Signal(object)  # SyncResult

    showLogs = QtCore.Signal()

    error = QtCore.Signal(str)


signals = Signals()
