"""
Google OAuth2 authentication and bearer token management.

Two mutually exclusive strategies produce the token used by :class:`~ExpenseSync.core.service.SheetsClient`:

- :class:`UserConsentAuthProvider` runs the interactive installed-app consent flow in the user's browser.
- :class:`ServiceAccountAuthProvider` signs a JWT assertion with a service account key and exchanges
  it for a token without user interaction.

Both persist ``{accessToken, expiryTime, spreadsheetId, savedAt}`` to the local storage so a restarted
session can reuse an unexpired token and the spreadsheet created earlier.
"""

import dataclasses
import datetime
import enum
import logging
import socket
import sqlite3
import threading
import urllib.parse
import webbrowser
from typing import Any, Callable, Dict, Optional

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.service_account
import google_auth_oauthlib.flow
import oauthlib.oauth2.rfc6749.errors
import requests

from .storage import LocalStorage, StorageKey, now_ms
from ..settings import lib
from ..status import status

DEFAULT_SCOPES = [lib.SPREADSHEETS_SCOPE, ]

#: Tokens expiring within this window are treated as unusable
REFRESH_BUFFER_MS: int = 5 * 60 * 1000

#: Token lifetime assumed when the identity provider does not report one
DEFAULT_TOKEN_LIFETIME: int = 3600


class AuthStatus(enum.StrEnum):
    """Lifecycle of an authentication provider."""
    Uninitialized = 'uninitialized'
    Initializing = 'initializing'
    Authenticated = 'authenticated'
    AuthenticationFailed = 'authentication_failed'
    TokenExpiring = 'token_expiring'
    SignedOut = 'signed_out'


class PrincipalKind(enum.StrEnum):
    """Who the current token was issued to."""
    NoPrincipal = 'none'
    User = 'user'
    Service = 'service'


@dataclasses.dataclass
class AuthState:
    """In-memory authentication state.

    ``expiry_time`` is in epoch milliseconds.
    """
    access_token: Optional[str] = None
    expiry_time: Optional[int] = None
    principal: PrincipalKind = PrincipalKind.NoPrincipal


def _expiry_to_ms(expiry: Any) -> Optional[int]:
    # google-auth reports expiry as a naive UTC datetime
    if expiry is None:
        return None
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=datetime.timezone.utc)
    return int(expiry.timestamp() * 1000)


class AuthProvider:
    """Shared token bookkeeping for the authentication strategies.

    Args:
        config: Credential configuration.
        storage: Durable storage used to persist and restore the session. None disables persistence.
        clock: Callable returning the current time in epoch milliseconds.
        request: google-auth transport request used for token exchange and revocation.
    """
    principal: PrincipalKind = PrincipalKind.NoPrincipal

    def __init__(
            self,
            config: lib.Config,
            storage: Optional[LocalStorage] = None,
            clock: Callable[[], int] = now_ms,
            request: Any = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.clock = clock
        self.request = request or google.auth.transport.requests.Request()

        self._lock = threading.RLock()
        self._state = AuthState()
        self._status = AuthStatus.Uninitialized
        self._initialized = False
        self._spreadsheet_id: Optional[str] = config.spreadsheet_id

        self._restore()

    @property
    def state(self) -> AuthState:
        """A copy of the current authentication state."""
        return dataclasses.replace(self._state)

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def auth_status(self) -> AuthStatus:
        """The current lifecycle state, taking token expiry into account."""
        if self._status != AuthStatus.Authenticated:
            return self._status
        if self._state.expiry_time is None or self.clock() >= self._state.expiry_time:
            return AuthStatus.Uninitialized
        if self.needs_token_refresh():
            return AuthStatus.TokenExpiring
        return AuthStatus.Authenticated

    def initialize(self) -> None:
        """Validate configuration and prepare the provider.

        Raises:
            status.ConfigurationException: If the required configuration is missing.
        """
        raise NotImplementedError

    def authenticate(self) -> str:
        """Obtain a new token, returning it.

        Raises:
            status.AuthenticationException: If no token could be obtained.
        """
        raise NotImplementedError

    def needs_token_refresh(self) -> bool:
        """True when there is no token, or it expires within the refresh buffer."""
        if not self._state.access_token or not self._state.expiry_time:
            return True
        return self._state.expiry_time <= self.clock() + REFRESH_BUFFER_MS

    def is_authenticated(self) -> bool:
        """True when the provider holds a usable token. Never triggers a refresh."""
        return not self.needs_token_refresh()

    def ensure_valid_token(self) -> str:
        """Return a usable token, obtaining a new one if needed."""
        with self._lock:
            if not self.needs_token_refresh():
                return self._state.access_token
            logging.debug(f'{self.__class__.__name__}: token missing or expiring, re-authenticating.')
            return self.authenticate()

    def get_spreadsheet_id(self) -> Optional[str]:
        return self._spreadsheet_id

    def set_spreadsheet_id(self, spreadsheet_id: Optional[str]) -> None:
        """Set the remote spreadsheet id and persist it with the session."""
        self._spreadsheet_id = spreadsheet_id or None
        self._persist()

    def sign_out(self) -> None:
        """Forget the token and the persisted session."""
        with self._lock:
            self._clear()
            self._status = AuthStatus.SignedOut
        logging.debug(f'{self.__class__.__name__}: signed out.')

    def _store_token(self, token: str, expiry_time: Optional[int]) -> str:
        if expiry_time is None:
            expiry_time = self.clock() + DEFAULT_TOKEN_LIFETIME * 1000
        self._state = AuthState(access_token=token, expiry_time=expiry_time, principal=self.principal)
        self._status = AuthStatus.Authenticated
        self._persist()
        return token

    def _clear(self) -> None:
        self._state = AuthState()
        # A configured spreadsheet id outlives the session
        self._spreadsheet_id = self.config.spreadsheet_id
        if not self.storage:
            return
        try:
            self.storage.remove_item(StorageKey.Auth)
        except sqlite3.Error as e:
            logging.error(f'Error clearing the authentication state: {e}')

    def _persist(self) -> None:
        if not self.storage:
            return
        data: Dict[str, Any] = {
            'accessToken': self._state.access_token,
            'expiryTime': self._state.expiry_time,
            'spreadsheetId': self._spreadsheet_id,
            'savedAt': self.clock(),
        }
        if self.storage.set_json(StorageKey.Auth, data):
            logging.debug('Authentication state saved.')

    def _restore(self) -> None:
        if not self.storage:
            return

        data = self.storage.get_json(StorageKey.Auth, default=None)
        if data is None:
            return
        if not isinstance(data, dict):
            logging.error('Stored authentication state is malformed, discarding.')
            self._clear()
            return

        # A configured spreadsheet id wins over the persisted one
        if data.get('spreadsheetId') and not self.config.spreadsheet_id:
            self._spreadsheet_id = data['spreadsheetId']

        expiry_time = data.get('expiryTime')
        token = data.get('accessToken')
        if not token or not isinstance(expiry_time, (int, float)) or expiry_time <= self.clock() + REFRESH_BUFFER_MS:
            # The spreadsheet outlives the token
            logging.debug('Stored token has expired, discarding it.')
            self._state = AuthState()
            self._persist()
            return

        self._state = AuthState(access_token=token, expiry_time=int(expiry_time), principal=self.principal)
        self._status = AuthStatus.Authenticated
        logging.debug('Restored authentication state from local storage.')


def _failure_reason(ex: Exception) -> status.AuthFailureReason:
    """Classify why an interactive sign-in failed."""
    if isinstance(ex, oauthlib.oauth2.rfc6749.errors.AccessDeniedError):
        return status.AuthFailureReason.Cancelled
    if isinstance(ex, oauthlib.oauth2.rfc6749.errors.OAuth2Error) and ex.error == 'access_denied':
        return status.AuthFailureReason.Cancelled
    if isinstance(ex, webbrowser.Error):
        return status.AuthFailureReason.Blocked
    if isinstance(ex, (
            google.auth.exceptions.TransportError,
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            socket.timeout,
            ConnectionError,
    )):
        return status.AuthFailureReason.Network
    return status.AuthFailureReason.Unknown


class UserConsentAuthProvider(AuthProvider):
    """Interactive OAuth2 consent in the user's browser.

    Args:
        flow_factory: Callable ``(client_config, scopes) -> flow``. Defaults to
            ``InstalledAppFlow.from_client_config``.
    """
    principal = PrincipalKind.User

    def __init__(
            self,
            config: lib.Config,
            storage: Optional[LocalStorage] = None,
            clock: Callable[[], int] = now_ms,
            request: Any = None,
            flow_factory: Optional[Callable[..., Any]] = None,
            timeout_seconds: Optional[int] = None,
    ) -> None:
        self.flow_factory = flow_factory or google_auth_oauthlib.flow.InstalledAppFlow.from_client_config
        self.timeout_seconds = timeout_seconds
        self.flow: Any = None
        self._credentials: Any = None
        super().__init__(config, storage=storage, clock=clock, request=request)

    def initialize(self) -> None:
        if self._initialized:
            return
        previous = self._status
        self._status = AuthStatus.Initializing
        try:
            client_config = self.config.get_client_config()
            self.flow = self.flow_factory(client_config, scopes=DEFAULT_SCOPES)
        except status.ConfigurationException:
            self._status = AuthStatus.AuthenticationFailed
            raise
        except ValueError as ex:
            self._status = AuthStatus.AuthenticationFailed
            raise status.ConfigurationException(f'Invalid OAuth client configuration: {ex}') from ex

        self._status = previous
        self._initialized = True
        logging.debug('User consent authentication initialized.')

    def authenticate(self) -> str:
        """Obtain a token, refreshing silently when possible, otherwise via the consent flow.

        Raises:
            status.AuthenticationException: With a reason code when the flow fails.
        """
        with self._lock:
            self.initialize()

            if self._credentials is not None and getattr(self._credentials, 'refresh_token', None):
                try:
                    self._credentials.refresh(self.request)
                    logging.debug('Silently refreshed user credentials.')
                    return self._store_token(self._credentials.token, _expiry_to_ms(self._credentials.expiry))
                except google.auth.exceptions.RefreshError as ex:
                    logging.error(f'Refresh failed: {ex}; will perform new flow.')

            self._status = AuthStatus.Initializing
            kwargs: Dict[str, Any] = {'port': 0}
            if self._credentials is None:
                kwargs['prompt'] = 'consent'
            if self.timeout_seconds:
                kwargs['timeout_seconds'] = self.timeout_seconds

            logging.debug('Starting OAuth consent flow...')
            try:
                creds = self.flow.run_local_server(**kwargs)
            except Exception as ex:
                self._status = AuthStatus.AuthenticationFailed
                reason = _failure_reason(ex)
                raise status.AuthenticationException(f'OAuth flow failed: {ex}', reason=reason) from ex

            if not creds or not getattr(creds, 'token', None):
                self._status = AuthStatus.AuthenticationFailed
                raise status.AuthenticationException(
                    'Authentication was cancelled or no credentials obtained.',
                    reason=status.AuthFailureReason.Cancelled
                )

            self._credentials = creds
            logging.debug('OAuth consent flow completed.')
            return self._store_token(creds.token, _expiry_to_ms(getattr(creds, 'expiry', None)))

    def ensure_authenticated(self) -> str:
        """Return the current token, running the consent flow only when it is missing or expiring."""
        return self.ensure_valid_token()

    def sign_out(self) -> None:
        """Revoke the token (best effort) and forget the session."""
        token = self._state.access_token
        if token:
            self._revoke(token)
        self._credentials = None
        super().sign_out()

    def _revoke(self, token: str) -> None:
        try:
            response = self.request(
                lib.REVOKE_URI,
                method='POST',
                body=urllib.parse.urlencode({'token': token}),
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
            )
            if getattr(response, 'status', 200) != 200:
                logging.warning(f'Token revocation returned HTTP {response.status}.')
            else:
                logging.debug('Token revoked.')
        except google.auth.exceptions.TransportError as ex:
            logging.warning(f'Failed to revoke token: {ex}')


class ServiceAccountAuthProvider(AuthProvider):
    """Non-interactive authentication with a service account key.

    Args:
        credentials_factory: Callable ``(info, scopes) -> credentials``. Defaults to
            ``service_account.Credentials.from_service_account_info``.
    """
    principal = PrincipalKind.Service

    def __init__(
            self,
            config: lib.Config,
            storage: Optional[LocalStorage] = None,
            clock: Callable[[], int] = now_ms,
            request: Any = None,
            credentials_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.credentials_factory = (
                credentials_factory or google.oauth2.service_account.Credentials.from_service_account_info
        )
        self._credentials: Any = None
        super().__init__(config, storage=storage, clock=clock, request=request)

    def initialize(self) -> None:
        if self._initialized:
            return
        previous = self._status
        self._status = AuthStatus.Initializing
        try:
            info = self.config.get_service_account_info()
            self._credentials = self.credentials_factory(info, scopes=DEFAULT_SCOPES)
        except status.ConfigurationException:
            self._status = AuthStatus.AuthenticationFailed
            raise
        except ValueError as ex:
            self._status = AuthStatus.AuthenticationFailed
            raise status.ConfigurationException(f'Invalid service account key: {ex}') from ex

        self._status = previous
        self._initialized = True
        logging.debug(f'Service account authentication initialized for {info["client_email"]}.')

    def get_token(self) -> str:
        """Sign a JWT assertion and exchange it for a bearer token.

        Raises:
            status.AuthenticationException: If the exchange fails.
        """
        with self._lock:
            self.initialize()
            self._status = AuthStatus.Initializing
            try:
                self._credentials.refresh(self.request)
            except google.auth.exceptions.TransportError as ex:
                self._status = AuthStatus.AuthenticationFailed
                raise status.AuthenticationException(
                    f'Token exchange failed: {ex}', reason=status.AuthFailureReason.Network) from ex
            except (google.auth.exceptions.RefreshError, ValueError) as ex:
                self._status = AuthStatus.AuthenticationFailed
                raise status.AuthenticationException(
                    f'Token exchange failed: {ex}', reason=status.AuthFailureReason.Unknown) from ex

            token = self._credentials.token
            if not token:
                self._status = AuthStatus.AuthenticationFailed
                raise status.AuthenticationException('The token endpoint returned no access token.')

            logging.debug('Obtained service account access token.')
            return self._store_token(token, _expiry_to_ms(getattr(self._credentials, 'expiry', None)))

    def authenticate(self) -> str:
        return self.get_token()
