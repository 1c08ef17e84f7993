"""
ExpenseSync: personal expense tracking with a local cache and optional Google Sheets sync.

This package provides:

- :mod:`ExpenseSync.core` – The local cache, Google authentication, the Sheets client and the sync service.
- :mod:`ExpenseSync.data` – pandas based expense statistics.
- :mod:`ExpenseSync.settings` – Credential configuration, application paths and defaults.
- :mod:`ExpenseSync.status` – Status codes and exceptions.
- :mod:`ExpenseSync.log` – Logging setup with an in-memory log tank.

Use :func:`ExpenseSync.create_service` to build a ready-to-use :class:`~ExpenseSync.core.sync.ExpenseService`.
"""

import sys
from typing import Optional

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('ExpenseSync requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'Gergely Wootsch'
__license__ = 'GPL-3.0'
__copyright__ = 'Copyright (C) 2025 Gergely Wootsch'
__description__ = 'ExpenseSync: expense tracking with a local cache and best-effort Google Sheets sync.'
__url__ = 'https://github.com/wgergely/ExpenseSync'
__email__ = 'hello+ExpenseSync@gergely-wootsch.com'

from .log import log

log.setup_logging()


def create_service(config=None, data_dir: Optional[str] = None, initialize: bool = True):
    """Build the sync service and its collaborators.

    The authentication strategy follows the configuration: service account credentials win over an
    OAuth client, and without either the service runs on the local cache only.

    Args:
        config (ExpenseSync.settings.lib.Config): Credential configuration. Loaded from the ``.env``
            file and the environment when omitted.
        data_dir (str): Optional application data directory, used when ``config`` is omitted.
        initialize (bool): Call :meth:`ExpenseService.initialize` before returning.

    Returns:
        ExpenseSync.core.sync.ExpenseService: The service.
    """
    from .core.auth import ServiceAccountAuthProvider, UserConsentAuthProvider
    from .core.service import SheetsClient
    from .core.storage import LocalCacheStore, LocalStorage
    from .core.sync import ExpenseService
    from .settings import lib

    if config is None:
        config = lib.Config(data_dir=data_dir)

    if config.log_level:
        log.set_logging_level(log.level_from_name(config.log_level))

    storage = LocalStorage(config.db_path)
    store = LocalCacheStore(storage)

    provider = None
    if config.credential_mode == lib.CredentialMode.ServiceAccount:
        provider = ServiceAccountAuthProvider(config, storage=storage)
    elif config.credential_mode == lib.CredentialMode.UserConsent:
        provider = UserConsentAuthProvider(config, storage=storage)

    client = SheetsClient(provider) if provider else None
    service = ExpenseService(store, auth_provider=provider, client=client, config=config)
    if initialize:
        service.initialize()
    return service
