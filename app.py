"""
app.py – Composition root of the authenticator core.

AppContext creates every subsystem in dependency order and hands the
presentation layer concrete references; nothing is looked up at runtime.

  config.py     – AppConfig                 : preferences, file paths, logging
  crypto.py     – CryptoManager             : master password, Fernet
  storage.py    – VaultDatabase + stores    : durable (encrypted) vault
  repository.py – AuthenticatorRepository   : ordering, filtering, reordering
  scheduler.py  – RefreshScheduler          : live TOTP codes

Lifecycle: construct, open() (unlock or set up, load, start ticking),
close() (stop ticking, save preferences, close the vault, forget the key).
AppContext is also a context manager that closes itself.
"""

import logging
from typing import Optional

from config import AppConfig
from crypto import CryptoManager
from errors import InvalidPasswordError
from export import write_excel_backup
from models import Category
from repository import AuthenticatorRepository
from scheduler import Dispatcher, RefreshScheduler, run_inline
from storage import AuthenticatorCategoryStore, AuthenticatorStore, CategoryStore, VaultDatabase

logger = logging.getLogger("OtpAuthenticator")


class AppContext:
    """
    Owns the subsystems of one running application.

    Parameters
    ----------
    data_dir : str, optional
        Directory for the vault, key material, preferences and log;
        defaults to the appdirs user-data directory.
    dispatcher : callable
        Marshals notifications onto the UI thread (inline by default).
    """

    def __init__(self, data_dir: Optional[str] = None, dispatcher: Dispatcher = run_inline) -> None:
        self.config = AppConfig(data_dir)
        self.crypto = CryptoManager(self.config)
        self.database = VaultDatabase(self.config, self.crypto)

        self.authenticator_store = AuthenticatorStore(self.database)
        self.category_store = CategoryStore(self.database)
        self.binding_store = AuthenticatorCategoryStore(self.database)

        self.repository = AuthenticatorRepository(
            self.authenticator_store,
            self.category_store,
            self.binding_store,
            dispatcher=dispatcher,
        )
        self.scheduler = RefreshScheduler(
            lambda: self.repository.authenticators,
            interval=self.config.refresh_interval,
            dispatcher=dispatcher,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def needs_password(self) -> bool:
        """True when the vault is protected and open() requires the password."""
        return self.crypto.has_master_password()

    def open(self, password: Optional[str] = None, start_scheduler: bool = True) -> None:
        """
        Unlock (or first set up) the vault, load it and start refreshing.

        With an existing master password *password* must match it.  Without
        one, a given *password* becomes the new master password and the
        vault is encrypted right away; None leaves the vault unencrypted.
        """
        new_password = None
        if self.crypto.has_master_password():
            if not password:
                raise InvalidPasswordError("The vault is protected by a master password.")
            self.crypto.unlock(password)
        elif password:
            new_password = password

        self.database.open()
        if new_password:
            self.set_master_password(new_password)

        self.repository.sort_mode = self.config.sort_mode
        self.repository.load()
        if start_scheduler:
            self.scheduler.start()
        logger.info("Application context opened")

    def close(self) -> None:
        """Stop the scheduler, save preferences, close the vault and lock it."""
        self.scheduler.stop()
        self.config.sort_mode = self.repository.sort_mode
        self.config.save()
        self.database.close()
        self.crypto.lock()
        logger.info("Application context closed")

    def __enter__(self) -> "AppContext":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Master password
    # ------------------------------------------------------------------

    def set_master_password(self, password: str) -> None:
        """Protect an unencrypted vault and rewrite it encrypted immediately."""
        self.crypto.setup_master_password(password)
        self.database.save()

    def change_master_password(self, current_password: str, new_password: str) -> None:
        self.crypto.change_master_password(current_password, new_password)

    # ------------------------------------------------------------------
    # Preferences backed helpers
    # ------------------------------------------------------------------

    @property
    def selected_category(self) -> Category:
        """The persisted category filter, or "All" if it no longer exists."""
        return self.repository.category_by_id(self.config.selected_category_id)

    def select_category(self, category: Optional[Category]) -> Category:
        self.config.selected_category_id = None if category is None else category.id
        self.config.save()
        return self.selected_category

    def visible_authenticators(self, search_text: str = ""):
        """Authenticators for the current category filter and *search_text*."""
        return self.repository.filter(search_text, self.selected_category)

    def export_backup(self, out_path: str) -> str:
        return write_excel_backup(self.repository.authenticators, out_path, self.config, self.crypto)


def create_app(data_dir: Optional[str] = None, dispatcher: Dispatcher = run_inline) -> AppContext:
    """Build an AppContext; call open() on it before use."""
    return AppContext(data_dir=data_dir, dispatcher=dispatcher)
