"""Status definitions and exceptions for RentalLedger.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Family bases (AuthError, RemoteError, SyncError, StoreError) and the specific
      exceptions raised by the session manager, the remote adapter, the sync engine
      and the local store
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    ConfigNotFound = enum.auto()
    ConfigInvalid = enum.auto()
    ClientConfigInvalid = enum.auto()
    SpreadsheetIdNotConfigured = enum.auto()

    # Authentication status
    NotAuthenticated = enum.auto()
    InvalidGrant = enum.auto()
    NoRefreshToken = enum.auto()
    RefreshFailed = enum.auto()

    # Remote status
    SchemaCreateFailed = enum.auto()
    ReadFailed = enum.auto()
    WriteFailed = enum.auto()
    RateLimited = enum.auto()

    # Sync status
    SyncInProgress = enum.auto()
    AbortedBeforeMutation = enum.auto()
    PartialFailureAfterLocalCommit = enum.auto()

    # Local store status
    EntityNotFound = enum.auto()
    ReferenceInvalid = enum.auto()
    EntityInvalid = enum.auto()

    CacheInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.ConfigNotFound: 'Could not find the configuration file.',
    Status.ConfigInvalid: 'The configuration seems to be incomplete, or contains invalid values.',
    Status.ClientConfigInvalid: 'Could not verify the OAuth client configuration. Have you set up a valid Google client?',
    Status.SpreadsheetIdNotConfigured: 'Could not find a valid spreadsheet id. Have you set up a spreadsheet id in the settings?',

    Status.NotAuthenticated: 'Not signed in. Please sign in to your Google account.',
    Status.InvalidGrant: 'The authorization code was rejected. Please sign in again.',
    Status.NoRefreshToken: 'The session has expired and cannot be renewed. Please sign in again.',
    Status.RefreshFailed: 'Could not renew the session. Please sign in again.',

    Status.SchemaCreateFailed: 'Could not prepare the sheets of the spreadsheet.',
    Status.ReadFailed: 'Could not read the spreadsheet.',
    Status.WriteFailed: 'Could not write to the spreadsheet.',
    Status.RateLimited: 'Google Sheets rate limit reached. Please try again later.',

    Status.SyncInProgress: 'A synchronization is already running.',
    Status.AbortedBeforeMutation: 'Synchronization aborted. No local data was changed.',
    Status.PartialFailureAfterLocalCommit: 'Local data was updated but the spreadsheet could not be written. Run merge again.',

    Status.EntityNotFound: 'The record could not be found.',
    Status.ReferenceInvalid: 'The record refers to a record that does not exist.',
    Status.EntityInvalid: 'The record contains invalid values.',

    Status.CacheInvalid: 'The cache is invalid. Try pulling the data from the spreadsheet again.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in RentalLedger.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..signals import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class ConfigNotFoundException(BaseStatusException):
    """Exception raised when the configuration file cannot be found."""
    status = Status.ConfigNotFound


class ConfigInvalidException(BaseStatusException):
    """Exception raised when the configuration is invalid or malformed."""
    status = Status.ConfigInvalid


class SpreadsheetIdNotConfiguredException(BaseStatusException):
    """Exception raised when no spreadsheet id has been configured."""
    status = Status.SpreadsheetIdNotConfigured


class CacheInvalidException(BaseStatusException):
    """Exception raised when the local cache is invalid or outdated."""
    status = Status.CacheInvalid


class AuthError(BaseStatusException):
    """Base for errors that require the user to authorize again."""
    status = Status.NotAuthenticated


class NotAuthenticatedException(AuthError):
    """Exception raised when no session is held for the user."""
    status = Status.NotAuthenticated


class ClientConfigInvalidException(AuthError):
    """Exception raised when the OAuth client configuration is missing or malformed."""
    status = Status.ClientConfigInvalid


class InvalidGrantException(AuthError):
    """Exception raised when the authorization server rejects an authorization code."""
    status = Status.InvalidGrant


class NoRefreshTokenException(AuthError):
    """Exception raised when an expired session holds no refresh token."""
    status = Status.NoRefreshToken


class RefreshFailedException(AuthError):
    """Exception raised when the authorization server rejects a refresh."""
    status = Status.RefreshFailed


class RemoteError(BaseStatusException):
    """Base for errors raised by the spreadsheet adapter."""
    status = Status.UnknownStatus


class SchemaCreateFailedException(RemoteError):
    """Exception raised when the sheets could not be listed or created."""
    status = Status.SchemaCreateFailed


class ReadFailedException(RemoteError):
    """Exception raised when reading the sheets failed."""
    status = Status.ReadFailed


class WriteFailedException(RemoteError):
    """Exception raised when overwriting a sheet failed."""
    status = Status.WriteFailed


class RateLimitedException(RemoteError):
    """Exception raised when the Sheets API keeps rejecting calls over quota."""
    status = Status.RateLimited


class SyncError(BaseStatusException):
    """Base for errors raised by the sync engine."""
    status = Status.UnknownStatus


class SyncInProgressException(SyncError):
    """Exception raised when a sync is requested while another one runs for the same user."""
    status = Status.SyncInProgress


class AbortedBeforeMutationException(SyncError):
    """Exception raised when a sync failed before the local store was changed."""
    status = Status.AbortedBeforeMutation


class PartialFailureAfterLocalCommitException(SyncError):
    """Exception raised when the merged state was committed locally but the remote write failed."""
    status = Status.PartialFailureAfterLocalCommit


class StoreError(BaseStatusException):
    """Base for errors raised by local store mutations."""
    status = Status.UnknownStatus


class EntityNotFoundException(StoreError):
    status = Status.EntityNotFound


class ReferenceInvalidException(StoreError):
    status = Status.ReferenceInvalid


class EntityInvalidException(StoreError):
    status = Status.EntityInvalid
