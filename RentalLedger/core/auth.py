"""
Google OAuth2 session management.

Holds one session (access token, refresh token, expiry) per signed-in user
and hands out sessions whose access token is valid for the next call into
the Sheets API. Expired sessions are refreshed inline, exactly once per
request, through google-auth.
"""

import datetime
import enum
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from oauthlib.oauth2.rfc6749.errors import InvalidGrantError, OAuth2Error

from ..signals import signals
from ..status import status

DEFAULT_SCOPES = [
    'openid',
    'https://www.googleapis.com/auth/userinfo.email',
    'https://www.googleapis.com/auth/spreadsheets',
]

# Lifetime assumed when the token endpoint does not report one
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

RELAX_TOKEN_SCOPE_ENV = 'OAUTHLIB_RELAX_TOKEN_SCOPE'

_env_lock = threading.Lock()


@contextmanager
def relaxed_token_scope():
    """Accept token responses whose scopes differ from the requested ones.

    Google reports the granted scopes in expanded form, which oauthlib
    otherwise rejects. The environment is restored on exit.
    """
    with _env_lock:
        previous = os.environ.get(RELAX_TOKEN_SCOPE_ENV)
        os.environ[RELAX_TOKEN_SCOPE_ENV] = '1'
        try:
            yield
        finally:
            if previous is None:
                os.environ.pop(RELAX_TOKEN_SCOPE_ENV, None)
            else:
                os.environ[RELAX_TOKEN_SCOPE_ENV] = previous


class SessionState(enum.StrEnum):
    Unauthenticated = 'unauthenticated'
    Active = 'active'
    Refreshing = 'refreshing'
    Revoked = 'revoked'


@dataclass(frozen=True)
class Session:
    """Tokens held for one user.

    Attributes:
        user_id: Google account id the session belongs to.
        access_token: Bearer token sent with API calls.
        refresh_token: Long-lived token used to obtain new access tokens.
        id_token: OpenID Connect id token, if granted.
        expiry_ms: Expiry of the access token in epoch milliseconds.
        account_email: Email address of the account.
    """
    user_id: str
    access_token: str
    refresh_token: Optional[str]
    id_token: Optional[str]
    expiry_ms: int
    account_email: str = ''

    def is_expired(self, now_ms: int) -> bool:
        return self.expiry_ms <= now_ms

    def to_bundle(self) -> Dict[str, Any]:
        """Return the opaque bundle an application persists to resume the session."""
        return {
            'accessToken': self.access_token,
            'refreshToken': self.refresh_token,
            'idToken': self.id_token,
            'expiryEpochMillis': self.expiry_ms,
        }

    @classmethod
    def from_bundle(cls, user_id: str, bundle: Dict[str, Any], account_email: str = '') -> 'Session':
        """Build a session from a persisted bundle.

        Raises:
            ValueError: If the bundle has no access token or no valid expiry.
        """
        if not bundle.get('accessToken'):
            raise ValueError('Session bundle has no access token')
        try:
            expiry_ms = int(bundle.get('expiryEpochMillis'))
        except (TypeError, ValueError) as ex:
            raise ValueError('Session bundle has no valid expiry') from ex
        return cls(
            user_id=user_id,
            access_token=bundle['accessToken'],
            refresh_token=bundle.get('refreshToken') or None,
            id_token=bundle.get('idToken') or None,
            expiry_ms=expiry_ms,
            account_email=account_email,
        )


def expiry_to_ms(expiry: Optional[datetime.datetime], now_ms: int) -> int:
    """Convert a google-auth expiry (naive UTC datetime) to epoch milliseconds."""
    if expiry is None:
        return now_ms + DEFAULT_TOKEN_LIFETIME_SECONDS * 1000
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=datetime.timezone.utc)
    return int(expiry.timestamp() * 1000)


class SessionManager:
    """Manages per-user OAuth2 sessions with thread-safe refresh.

    The user id to session map is only touched under ``_lock``. Each user
    also has a refresh lock, so a session is never refreshed twice at the
    same time while different users refresh independently.

    Args:
        client_config: OAuth client configuration in client_secrets.json
            layout. Read from the settings when omitted.
        scopes: Scopes requested during authorization.
        redirect_uri: Redirect uri of the authorization flow. Defaults to the
            first redirect uri of the client configuration.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(self, client_config: Optional[Dict[str, Any]] = None, scopes: Optional[List[str]] = None,
                 redirect_uri: Optional[str] = None, clock: Callable[[], float] = time.time):
        self._client_config = client_config
        self.scopes = list(scopes or DEFAULT_SCOPES)
        self._redirect_uri = redirect_uri
        self._clock = clock

        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._revoked: set = set()
        self._refreshing: set = set()
        self._refresh_locks: Dict[str, threading.Lock] = {}

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def client_config(self) -> Dict[str, Any]:
        """The validated OAuth client configuration.

        Raises:
            status.ClientConfigInvalidException: If the configuration is incomplete.
        """
        from ..settings import lib

        config = self._client_config if self._client_config is not None else lib.settings.client_config
        try:
            key = lib.SettingsAPI.validate_client_config(config)
        except (ValueError, TypeError) as ex:
            raise status.ClientConfigInvalidException(str(ex)) from ex
        if not config[key]['client_id'] or not config[key]['client_secret']:
            raise status.ClientConfigInvalidException('The client id and secret are not set.')
        return config

    def _client_section(self) -> Dict[str, Any]:
        config = self.client_config
        return config.get('web') or config['installed']

    def _redirect(self) -> Optional[str]:
        if self._redirect_uri:
            return self._redirect_uri
        uris = self._client_section().get('redirect_uris') or []
        return uris[0] if uris else None

    def _build_flow(self, state: Optional[str] = None) -> google_auth_oauthlib.flow.Flow:
        return google_auth_oauthlib.flow.Flow.from_client_config(
            self.client_config,
            scopes=self.scopes,
            redirect_uri=self._redirect(),
            state=state,
        )

    # Map access

    def _get(self, user_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(user_id)

    def _put(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.user_id] = session
            self._revoked.discard(session.user_id)

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._lock:
            return self._refresh_locks.setdefault(user_id, threading.Lock())

    # Public API

    def authorization_url(self, state: Optional[str] = None) -> str:
        """Return the consent page url; offline access is requested so a refresh token is issued."""
        url, _ = self._build_flow(state=state).authorization_url(
            access_type='offline',
            include_granted_scopes='true',
            prompt='consent',
        )
        return url

    def exchange_code(self, code: str) -> Session:
        """Exchange an authorization code for tokens and store the session.

        Args:
            code: The authorization code returned to the redirect uri.

        Returns:
            Session: The new session.

        Raises:
            status.InvalidGrantException: If the authorization server rejects the code.
            status.NotAuthenticatedException: If the account could not be resolved.
        """
        flow = self._build_flow()
        try:
            with relaxed_token_scope():
                flow.fetch_token(code=code)
        except InvalidGrantError as ex:
            raise status.InvalidGrantException(str(ex)) from ex
        except OAuth2Error as ex:
            raise status.InvalidGrantException(f'{ex.error}: {ex.description}') from ex

        creds = flow.credentials
        info = self._fetch_user_info(creds)

        session = Session(
            user_id=str(info.get('id') or info.get('email')),
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            id_token=getattr(creds, 'id_token', None),
            expiry_ms=expiry_to_ms(creds.expiry, self.now_ms()),
            account_email=info.get('email', ''),
        )
        self._put(session)
        logging.info(f'Signed in {session.account_email or session.user_id}')
        signals.sessionChanged.emit(session.user_id)
        return session

    @staticmethod
    def _fetch_user_info(creds: google.oauth2.credentials.Credentials) -> Dict[str, Any]:
        try:
            service = build('oauth2', 'v2', credentials=creds, cache_discovery=False)
            info = service.userinfo().get().execute()
        except HttpError as ex:
            raise status.NotAuthenticatedException(f'Could not fetch the account: {ex}') from ex
        if not info or not (info.get('id') or info.get('email')):
            raise status.NotAuthenticatedException('The account has no id.')
        return info

    def resume(self, user_id: str, bundle: Dict[str, Any], account_email: str = '') -> Session:
        """Store a session from a bundle persisted by the application.

        Raises:
            status.NotAuthenticatedException: If the bundle is malformed.
        """
        try:
            session = Session.from_bundle(user_id, bundle, account_email=account_email)
        except ValueError as ex:
            raise status.NotAuthenticatedException(str(ex)) from ex
        self._put(session)
        logging.debug(f'Resumed session of "{user_id}"')
        signals.sessionChanged.emit(user_id)
        return session

    def bundle(self, user_id: str) -> Dict[str, Any]:
        """Return the persistable bundle of a user's session.

        Raises:
            status.NotAuthenticatedException: If no session is held for the user.
        """
        session = self._get(user_id)
        if session is None:
            raise status.NotAuthenticatedException(f'No session for "{user_id}".')
        return session.to_bundle()

    def state(self, user_id: str) -> SessionState:
        with self._lock:
            if user_id in self._revoked:
                return SessionState.Revoked
            if user_id in self._refreshing:
                return SessionState.Refreshing
            if user_id in self._sessions:
                return SessionState.Active
            return SessionState.Unauthenticated

    def invalidate(self, user_id: str) -> None:
        """Drop the session of a user (logout)."""
        with self._lock:
            self._sessions.pop(user_id, None)
            self._revoked.discard(user_id)
        logging.info(f'Signed out "{user_id}"')
        signals.sessionChanged.emit(user_id)

    def get_valid_session(self, user_id: str) -> Session:
        """
        Return the user's session, refreshing the access token first when it has expired.

        At most one refresh call is made. A failed refresh leaves the stored
        session untouched; a rejected refresh also marks the session revoked so
        later calls fail without contacting the server until the user signs in again.

        Raises:
            status.NotAuthenticatedException: If no session is held for the user.
            status.NoRefreshTokenException: If the session expired and holds no refresh token.
            status.RefreshFailedException: If the refresh failed or the session was revoked.
        """
        try:
            return self._get_valid_session(user_id)
        except status.AuthError:
            signals.authenticationRequested.emit(user_id)
            raise

    def _get_valid_session(self, user_id: str) -> Session:
        with self._user_lock(user_id):
            with self._lock:
                session = self._sessions.get(user_id)
                revoked = user_id in self._revoked

            if session is None:
                raise status.NotAuthenticatedException(f'No session for "{user_id}".')
            if revoked:
                raise status.RefreshFailedException(f'The session of "{user_id}" was revoked.')

            if not session.is_expired(self.now_ms()):
                return session

            if not session.refresh_token:
                raise status.NoRefreshTokenException(f'The session of "{user_id}" has expired.')

            with self._lock:
                self._refreshing.add(user_id)
            try:
                refreshed = self._refresh(session)
            finally:
                with self._lock:
                    self._refreshing.discard(user_id)

            with self._lock:
                # Signed out or replaced while the refresh was in flight
                current = self._sessions.get(user_id) is session
                if current:
                    self._sessions[user_id] = refreshed
            if not current:
                raise status.NotAuthenticatedException(f'The session of "{user_id}" ended during the refresh.')

            signals.sessionChanged.emit(user_id)
            return refreshed

    def _refresh(self, session: Session) -> Session:
        section = self._client_section()
        creds = google.oauth2.credentials.Credentials(
            token=session.access_token,
            refresh_token=session.refresh_token,
            id_token=session.id_token,
            token_uri=section['token_uri'],
            client_id=section['client_id'],
            client_secret=section['client_secret'],
            scopes=self.scopes,
        )

        logging.debug(f'Refreshing access token of "{session.user_id}"')
        try:
            creds.refresh(google.auth.transport.requests.Request())
        except google.auth.exceptions.RefreshError as ex:
            with self._lock:
                if self._sessions.get(session.user_id) is session:
                    self._revoked.add(session.user_id)
            raise status.RefreshFailedException(str(ex)) from ex
        except google.auth.exceptions.TransportError as ex:
            raise status.RefreshFailedException(f'Network error: {ex}') from ex

        return replace(
            session,
            access_token=creds.token,
            refresh_token=creds.refresh_token or session.refresh_token,
            id_token=getattr(creds, 'id_token', None) or session.id_token,
            expiry_ms=expiry_to_ms(creds.expiry, self.now_ms()),
        )


session_manager: SessionManager = SessionManager()
