"""
config.py – Preferences, file locations and logging.

AppConfig gathers:
  - Application-wide constants (name, version, refresh cadence, limits).
  - The user preferences (sort mode, selected category, display mode, …)
    stored as a JSON file on disk and exposed through a simple dict-like
    interface plus typed accessors that default safely.
  - File paths of the vault, key material and log inside the OS-appropriate
    user-data directory, and the rotating log handler.

Only models.py is imported here, so config.py sits at the bottom of the
dependency graph and can be safely imported by any other module.
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

import appdirs

from models import DisplayMode, SortMode

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

APP_NAME = "OtpAuthenticator"

APP_VERSION = "1.0.0"

# Seconds between two refreshes of the time-based codes.
DEFAULT_REFRESH_INTERVAL = 1.0

# ---------------------------------------------------------------------------
# Default values written to settings.json on first run.
# ---------------------------------------------------------------------------
DEFAULT_CONFIG: dict = {
    # Order of the authenticator list.
    "sort_mode": SortMode.ALPHABETICAL_ASCENDING.value,
    # Id of the category filter in use (None = "All").
    "selected_category_id": None,
    # Card layout used by the presentation layer.
    "display_mode": DisplayMode.DEFAULT.value,
    # Clicking a card copies its code.
    "tap_to_copy": True,
    "show_usernames": True,
    # Digits per group when a code is displayed ("123 456").
    "code_group_size": 3,
    # Minutes of inactivity before the vault locks (0 = never).
    "auto_lock_timeout_minutes": 0,
    "refresh_interval_seconds": DEFAULT_REFRESH_INTERVAL,
    # Column widths (in characters) for the exported Excel file.
    "excel_column_widths": {"A": 24, "B": 30, "C": 8, "D": 10, "E": 8, "F": 8, "G": 10, "H": 60},
}


class AppConfig:
    """
    Manages application preferences, file paths and logging.

    Construction resolves the data directory (appdirs unless one is given,
    e.g. a pytest tmp_path), derives the vault, key and log paths from it,
    attaches the rotating log handler and loads settings.json.

    Attributes
    ----------
    user_data_dir : str
        Directory holding the vault, key material, settings and log.
    vault_path : str
        Plaintext JSON vault (used only while no master password is set).
    vault_enc_path : str
        Encrypted vault (Fernet token of the JSON document).
    salt_path : str
        16-byte random salt used for PBKDF2 key derivation.
    keycheck_path : str
        Small Fernet token used to verify the master password at unlock.
    config_path : str
        JSON preferences file.
    log_path : str
        Rotating application log.
    data : dict
        The currently loaded preference values (mutable at runtime).
    logger : logging.Logger
        The "OtpAuthenticator" logger used by every module.
    """

    def __init__(self, data_dir: Optional[str] = None) -> None:
        self.user_data_dir: str = self._get_user_data_dir(data_dir)

        self.vault_path:     str = os.path.join(self.user_data_dir, "vault.json")
        self.vault_enc_path: str = self.vault_path + ".enc"
        self.salt_path:      str = os.path.join(self.user_data_dir, "salt.bin")
        self.keycheck_path:  str = os.path.join(self.user_data_dir, "keycheck.bin")
        self.config_path:    str = os.path.join(self.user_data_dir, "settings.json")
        self.log_path:       str = os.path.join(self.user_data_dir, "app.log")

        self.logger: logging.Logger = self._setup_logger()

        self.data: dict = self._load()

        self.logger.info("AppConfig initialised; data dir: %s", self.user_data_dir)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _get_user_data_dir(data_dir: Optional[str]) -> str:
        """
        Return (and create if necessary) the directory holding all data.

        Uses *data_dir* when given, otherwise the appdirs user-data
        directory for APP_NAME.
        """
        path = data_dir or appdirs.user_data_dir(APP_NAME)
        os.makedirs(path, exist_ok=True)
        return path

    def _setup_logger(self) -> logging.Logger:
        """
        Attach a RotatingFileHandler (2 MB, 3 backups) to the application
        logger.
        Duplicate handlers are avoided if the logger already exists.
        """
        logger = logging.getLogger(APP_NAME)
        logger.setLevel(logging.DEBUG)

        if not logger.handlers:
            handler = RotatingFileHandler(
                self.log_path,
                maxBytes=2_000_000,
                backupCount=3,
                encoding="utf-8",
            )
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s: %(message)s")
            )
            logger.addHandler(handler)

        return logger

    def _load(self) -> dict:
        """
        Read settings.json from disk.

        Missing keys are back-filled from DEFAULT_CONFIG so that settings
        introduced in later versions are always present.  An unreadable or
        corrupt file yields the defaults.
        """
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, "r", encoding="utf-8") as fh:
                    cfg = json.load(fh)
                if not isinstance(cfg, dict):
                    raise ValueError("settings.json does not hold an object")
                for key, value in DEFAULT_CONFIG.items():
                    cfg.setdefault(key, value)
                return cfg
        except (OSError, ValueError):
            self.logger.exception("Failed to load config; using defaults")

        return json.loads(json.dumps(DEFAULT_CONFIG))

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def save(self) -> None:
        """Persist the current preferences dictionary to disk as JSON."""
        try:
            with open(self.config_path, "w", encoding="utf-8") as fh:
                json.dump(self.data, fh, indent=2)
            self.logger.info("Config saved")
        except OSError:
            self.logger.exception("Failed to save config")

    def get(self, key: str, default=None):
        """Return a preference value by key, or *default* if not found."""
        return self.data.get(key, default)

    def set(self, key: str, value) -> None:
        """
        Update a preference value in memory.

        Not written until save() is called.
        """
        self.data[key] = value

    # ------------------------------------------------------------------
    # Typed accessors – any persisted garbage falls back to the default.
    # ------------------------------------------------------------------

    @property
    def sort_mode(self) -> SortMode:
        try:
            return SortMode(self.data.get("sort_mode"))
        except ValueError:
            return SortMode.ALPHABETICAL_ASCENDING

    @sort_mode.setter
    def sort_mode(self, value: SortMode) -> None:
        self.data["sort_mode"] = SortMode(value).value

    @property
    def display_mode(self) -> DisplayMode:
        try:
            return DisplayMode(self.data.get("display_mode"))
        except ValueError:
            return DisplayMode.DEFAULT

    @display_mode.setter
    def display_mode(self, value: DisplayMode) -> None:
        self.data["display_mode"] = DisplayMode(value).value

    @property
    def selected_category_id(self) -> Optional[str]:
        value = self.data.get("selected_category_id")
        if isinstance(value, str) and value:
            return value
        return None

    @selected_category_id.setter
    def selected_category_id(self, value: Optional[str]) -> None:
        self.data["selected_category_id"] = value or None

    @property
    def refresh_interval(self) -> float:
        value = self.data.get("refresh_interval_seconds")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            return DEFAULT_REFRESH_INTERVAL
        return float(value)

