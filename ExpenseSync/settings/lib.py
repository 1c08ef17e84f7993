"""Settings library for credential configuration and application paths.

Provides:
    - Application paths (data, config and cache database locations).
    - Loading of the environment-style configuration surface from an optional ``.env``
      file and the process environment.
    - Validation of the Google OAuth client and service account credentials.
    - Detection of the credential mode the sync service should run in.
    - Constants for default user settings and expense categories.
"""

import enum
import logging
import os
import pathlib
from typing import Any, Dict, List, Mapping, Optional

from PySide6 import QtCore
from dotenv import dotenv_values

from ..status import status

app_name: str = 'ExpenseSync'

DATA_DIR_ENV_KEY: str = 'EXPENSE_SYNC_DATA_DIR'
PLACEHOLDER_MARKER: str = 'your_'

SPREADSHEETS_SCOPE: str = 'https://www.googleapis.com/auth/spreadsheets'
AUTH_URI: str = 'https://accounts.google.com/o/oauth2/auth'
TOKEN_URI: str = 'https://oauth2.googleapis.com/token'
REVOKE_URI: str = 'https://oauth2.googleapis.com/revoke'

DEFAULT_CATEGORIES: List[str] = [
    'Food & Dining',
    'Transportation',
    'Shopping',
    'Entertainment',
    'Bills & Utilities',
    'Healthcare',
    'Travel',
    'Other',
]

DEFAULT_SETTINGS: Dict[str, Any] = {
    'autoSync': False,
    'defaultCurrency': 'USD',
    'categories': DEFAULT_CATEGORIES,
}


class ConfigKey(enum.StrEnum):
    """Keys of the environment-style configuration surface."""
    ClientId = 'EXPENSE_SYNC_CLIENT_ID'
    ClientSecret = 'EXPENSE_SYNC_CLIENT_SECRET'
    ApiKey = 'EXPENSE_SYNC_API_KEY'
    ServiceAccountEmail = 'EXPENSE_SYNC_SERVICE_ACCOUNT_EMAIL'
    ServiceAccountPrivateKey = 'EXPENSE_SYNC_SERVICE_ACCOUNT_PRIVATE_KEY'
    SpreadsheetId = 'EXPENSE_SYNC_SPREADSHEET_ID'
    LogLevel = 'EXPENSE_SYNC_LOG_LEVEL'


class CredentialMode(enum.StrEnum):
    """How the sync service reaches Google Sheets."""
    NoCredentials = 'none'
    UserConsent = 'user_consent'
    ServiceAccount = 'service_account'


CONFIG_SCHEMA: Dict[ConfigKey, Dict[str, Any]] = {
    ConfigKey.ClientId: {'mode': CredentialMode.UserConsent, 'required': True},
    ConfigKey.ClientSecret: {'mode': CredentialMode.UserConsent, 'required': True},
    ConfigKey.ApiKey: {'mode': CredentialMode.UserConsent, 'required': False},
    ConfigKey.ServiceAccountEmail: {'mode': CredentialMode.ServiceAccount, 'required': True},
    ConfigKey.ServiceAccountPrivateKey: {'mode': CredentialMode.ServiceAccount, 'required': True},
    ConfigKey.SpreadsheetId: {'mode': None, 'required': False},
    ConfigKey.LogLevel: {'mode': None, 'required': False},
}


def is_placeholder(value: Optional[str]) -> bool:
    """Check whether a configuration value is empty or still a template placeholder.

    Args:
        value: Raw configuration value.

    Returns:
        bool: True if the value should be treated as absent.
    """
    if value is None:
        return True
    value = str(value).strip()
    return not value or PLACEHOLDER_MARKER in value


def normalize_private_key(value: str) -> str:
    """Turn escaped newlines of a PEM key stored on a single line into real newlines."""
    return value.replace('\\n', '\n').strip() + '\n'


def _validate_service_account_email(value: str) -> None:
    """Validate the service account identity.

    Raises:
        status.ConfigurationException: If the value does not look like an email address.
    """
    logging.debug('Validating service account email.')
    if '@' not in value:
        raise status.ConfigurationException(
            f'{ConfigKey.ServiceAccountEmail} must be an email address, got "{value}".'
        )


def _validate_private_key(value: str) -> None:
    """Validate that the signing key is a PEM encoded private key.

    Raises:
        status.ConfigurationException: If PEM markers are missing.
    """
    logging.debug('Validating service account private key.')
    if '-----BEGIN' not in value or 'PRIVATE KEY-----' not in value:
        raise status.ConfigurationException(
            f'{ConfigKey.ServiceAccountPrivateKey} must be a PEM encoded private key.'
        )


class ConfigPaths:
    """Manage application file paths and ensure the required directories exist.

    The data directory defaults to Qt's per-user application data location and can be
    redirected with ``EXPENSE_SYNC_DATA_DIR`` or the ``data_dir`` argument.
    """

    def __init__(self, data_dir: Optional[str] = None) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')

        if data_dir is None:
            data_dir = os.environ.get(DATA_DIR_ENV_KEY) or None
        if data_dir is None:
            data_dir = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        logging.debug(f'Using app data directory: {data_dir}')

        self.data_dir: pathlib.Path = pathlib.Path(data_dir)
        self.config_dir: pathlib.Path = self.data_dir / 'config'
        self.db_dir: pathlib.Path = self.data_dir / 'db'

        self.env_path: pathlib.Path = self.config_dir / '.env'
        self.db_path: pathlib.Path = self.db_dir / 'storage.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Create missing config and db directories."""
        if not self.config_dir.exists():
            logging.debug(f'Creating config directory: {self.config_dir}')
            self.config_dir.mkdir(parents=True, exist_ok=True)

        if not self.db_dir.exists():
            logging.debug(f'Creating db directory: {self.db_dir}')
            self.db_dir.mkdir(parents=True, exist_ok=True)


class Config(ConfigPaths):
    """
    Provides read access to the credential configuration and detects the credential mode.

    Values are read from ``<config_dir>/.env`` and overlaid with the process environment,
    unless an explicit ``values`` mapping is given.
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None, data_dir: Optional[str] = None) -> None:
        """Initialize Config and load configuration values.

        Args:
            values: Optional explicit key/value mapping. Disables .env and environment lookup.
            data_dir: Optional path overriding the application data directory.
        """
        super().__init__(data_dir=data_dir)

        self.values: Dict[str, str] = {}
        if values is not None:
            self.values = {str(k): str(v) for k, v in values.items() if v is not None}
        else:
            self.load()

    def load(self) -> Dict[str, str]:
        """Load configuration from the .env file and the environment.

        Returns:
            The merged configuration values.
        """
        data: Dict[str, str] = {}
        if self.env_path.exists():
            logging.debug(f'Loading configuration from "{self.env_path}"')
            data.update({k: v for k, v in dotenv_values(self.env_path).items() if v is not None})

        for key in ConfigKey:
            if key.value in os.environ:
                data[key.value] = os.environ[key.value]

        self.values = data
        return self.values

    def get(self, key: ConfigKey) -> Optional[str]:
        """Return a configuration value, or None if absent or a placeholder."""
        value = self.values.get(ConfigKey(key).value)
        if is_placeholder(value):
            return None
        return value.strip()

    @property
    def client_id(self) -> Optional[str]:
        return self.get(ConfigKey.ClientId)

    @property
    def client_secret(self) -> Optional[str]:
        return self.get(ConfigKey.ClientSecret)

    @property
    def api_key(self) -> Optional[str]:
        return self.get(ConfigKey.ApiKey)

    @property
    def service_account_email(self) -> Optional[str]:
        return self.get(ConfigKey.ServiceAccountEmail)

    @property
    def service_account_private_key(self) -> Optional[str]:
        value = self.get(ConfigKey.ServiceAccountPrivateKey)
        if value is None:
            return None
        return normalize_private_key(value)

    @property
    def spreadsheet_id(self) -> Optional[str]:
        return self.get(ConfigKey.SpreadsheetId)

    @property
    def log_level(self) -> Optional[str]:
        return self.get(ConfigKey.LogLevel)

    def missing_keys(self, mode: CredentialMode) -> List[str]:
        """Return the required keys of a credential mode that are absent or placeholders."""
        return [
            k.value for k, v in CONFIG_SCHEMA.items()
            if v['mode'] == mode and v['required'] and not self.get(k)
        ]

    def has_service_account_config(self) -> bool:
        """True if both service account identity and signing key are present."""
        return not self.missing_keys(CredentialMode.ServiceAccount)

    def has_user_consent_config(self) -> bool:
        """True if an OAuth client id and secret are present."""
        return not self.missing_keys(CredentialMode.UserConsent)

    @property
    def credential_mode(self) -> CredentialMode:
        """Service account configuration wins over OAuth client configuration."""
        if self.has_service_account_config():
            return CredentialMode.ServiceAccount
        if self.has_user_consent_config():
            return CredentialMode.UserConsent
        return CredentialMode.NoCredentials

    def get_client_config(self) -> Dict[str, Any]:
        """Build an OAuth client configuration for the installed-app flow.

        Returns:
            A client config dict with an ``installed`` section.

        Raises:
            status.ConfigurationException: If the client id or client secret are missing.
        """
        missing = self.missing_keys(CredentialMode.UserConsent)
        if missing:
            raise status.ConfigurationException(f'Missing OAuth client configuration: {missing}.')

        return {
            'installed': {
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'auth_uri': AUTH_URI,
                'token_uri': TOKEN_URI,
                'redirect_uris': ['http://localhost'],
            }
        }

    def get_service_account_info(self) -> Dict[str, Any]:
        """Build the service account info used to sign token assertions.

        Returns:
            A dict accepted by ``google.oauth2.service_account.Credentials.from_service_account_info``.

        Raises:
            status.ConfigurationException: If the identity or key is missing or malformed.
        """
        missing = self.missing_keys(CredentialMode.ServiceAccount)
        if missing:
            raise status.ConfigurationException(f'Missing service account configuration: {missing}.')

        email = self.service_account_email
        private_key = self.service_account_private_key
        _validate_service_account_email(email)
        _validate_private_key(private_key)

        return {
            'type': 'service_account',
            'client_email': email,
            'private_key': private_key,
            'token_uri': TOKEN_URI,
        }
