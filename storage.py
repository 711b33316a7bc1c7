"""
storage.py – Vault persistence: authenticators, categories and bindings.

This module contains:

  VaultDatabase               – the single JSON document holding every table,
                                written durably (and encrypted when a master
                                key is held) before each mutation returns.
  AuthenticatorStore          – CRUD over Authenticator records keyed by secret.
  CategoryStore               – CRUD over Category records keyed by id.
  AuthenticatorCategoryStore  – the many-to-many bindings between the two.

All three stores share one VaultDatabase, so a cascade (deleting an
authenticator together with its bindings) is one commit: either both
changes reach the disk or neither does.

Every access goes through VaultDatabase.transaction(), which holds a
single-writer lock for its whole duration.  Stores hand out fresh entity
objects; mutating a returned entity never changes the store until it is
passed back to update().
"""

import copy
import json
import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator, List, Optional

from errors import DuplicateError, NotFoundError, PersistenceError, ValidationError
from models import Authenticator, AuthenticatorCategory, AuthenticatorType, Category
from otp import normalize_secret, validate_authenticator

logger = logging.getLogger("OtpAuthenticator")

SCHEMA_VERSION = 1


def _empty_tables() -> dict:
    return {"authenticators": {}, "categories": {}, "authenticator_categories": []}


class VaultDatabase:
    """
    In-memory tables backed by one durable vault file.

    Parameters
    ----------
    config : AppConfig
        Provides vault_path / vault_enc_path.
    crypto : CryptoManager
        Encrypts the document whenever a master key is held.

    The database starts closed; open() loads the vault from disk and close()
    refuses every later transaction, which is how pending work is cancelled
    at application shutdown.
    """

    def __init__(self, config, crypto) -> None:
        self.config = config
        self.crypto = crypto

        self._lock = threading.RLock()
        self._tables: dict = _empty_tables()
        self._closed = True

        # Transaction bookkeeping (only touched while holding _lock).
        self._depth = 0
        self._snapshot: Optional[dict] = None
        self._dirty = False
        self._rollback = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return not self._closed

    def open(self) -> None:
        """
        Load the vault from disk.

        Reading strategy (in order of preference):
          1. The encrypted vault, decrypted with the master key.
          2. The plaintext vault.
          3. Empty tables when no vault exists yet.

        Raises PersistenceError when the encrypted vault exists but no key is
        held, or when the file cannot be read, decrypted or parsed.
        """
        cfg = self.config
        with self._lock:
            if os.path.exists(cfg.vault_enc_path):
                if not self.crypto.is_unlocked:
                    raise PersistenceError("The vault is encrypted; unlock it first.")
                raw = self.crypto.decrypt_bytes(self._read(cfg.vault_enc_path))
            elif os.path.exists(cfg.vault_path):
                raw = self._read(cfg.vault_path)
            else:
                raw = None

            self._tables = self._parse(raw) if raw else _empty_tables()
            self._closed = False
            logger.info(
                "Vault opened: %d authenticators, %d categories",
                len(self._tables["authenticators"]),
                len(self._tables["categories"]),
            )

    def close(self) -> None:
        """Refuse every later transaction.  Nothing is pending: writes are never deferred."""
        with self._lock:
            self._closed = True
            logger.info("Vault closed")

    def save(self) -> None:
        """
        Rewrite the whole vault now.

        Used after a master password has been set so the plaintext vault is
        replaced by its encrypted form immediately.
        """
        with self.transaction():
            pass

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[dict]:
        """
        Hold the vault lock and yield the mutable tables.

        Transactions nest; the outermost one commits.  If an exception
        escapes any writing level, the tables are restored to their state
        before the outermost transaction began and nothing is written, even
        when the caller catches that exception; the outermost level then
        raises PersistenceError instead of returning normally.  A failed write
        also restores the tables and raises PersistenceError.
        """
        with self._lock:
            if self._closed:
                raise PersistenceError("The vault is closed.")

            outermost = self._depth == 0
            if outermost:
                self._snapshot = copy.deepcopy(self._tables)
                self._dirty = False
                self._rollback = False
            self._depth += 1
            if write:
                self._dirty = True

            failed = False
            try:
                yield self._tables
            except BaseException:
                failed = True
                # A read-only level cannot have changed the tables.
                if write or outermost:
                    self._rollback = True
                raise
            finally:
                self._depth -= 1
                if outermost:
                    self._finish(aborted=failed)

    def _finish(self, aborted: bool) -> None:
        snapshot, self._snapshot = self._snapshot, None
        if self._rollback:
            self._tables = snapshot
            if not aborted:
                # An inner step failed and its error was swallowed by the caller.
                logger.error("Transaction rolled back after a failed inner step")
                raise PersistenceError("A step of the transaction failed; nothing was saved.")
            return
        if not self._dirty:
            return
        try:
            self._commit()
        except PersistenceError:
            self._tables = snapshot
            raise

    def _commit(self) -> None:
        """
        Write the tables to disk before returning.

        If a master key is held the document is encrypted and stored as
        vault.json.enc and any leftover plaintext vault is removed.
        Otherwise (no master password) plain JSON is written and any
        leftover encrypted vault is removed.
        """
        cfg = self.config
        payload = json.dumps(self._serialize(), indent=2).encode("utf-8")

        if self.crypto.is_unlocked:
            self._atomic_write(cfg.vault_enc_path, self.crypto.encrypt_bytes(payload))
            self._silent_remove(cfg.vault_path)
        elif self.crypto.has_master_password():
            raise PersistenceError("The vault is locked; changes cannot be saved.")
        else:
            self._atomic_write(cfg.vault_path, payload)
            self._silent_remove(cfg.vault_enc_path)

    # ------------------------------------------------------------------
    # (De)serialisation
    # ------------------------------------------------------------------

    def _serialize(self) -> dict:
        return {
            "version": SCHEMA_VERSION,
            "authenticators": list(self._tables["authenticators"].values()),
            "categories": list(self._tables["categories"].values()),
            "authenticator_categories": list(self._tables["authenticator_categories"]),
        }

    @staticmethod
    def _parse(raw: bytes) -> dict:
        try:
            document = json.loads(raw.decode("utf-8"))
            tables = _empty_tables()
            for row in document.get("authenticators", []):
                auth = Authenticator.from_dict(row)
                tables["authenticators"][auth.secret] = auth.to_dict()
            for row in document.get("categories", []):
                category = Category.from_dict(row)
                tables["categories"][category.id] = category.to_dict()
            for row in document.get("authenticator_categories", []):
                tables["authenticator_categories"].append(
                    AuthenticatorCategory.from_dict(row).to_dict()
                )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise PersistenceError(f"The vault file is corrupt: {exc}") from exc
        return tables

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _read(path: str) -> bytes:
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except OSError as exc:
            logger.exception("Failed to read vault %s", path)
            raise PersistenceError(f"Could not read {path}") from exc

    @staticmethod
    def _atomic_write(path: str, data: bytes) -> None:
        """
        Write *data* to a temporary file in the same directory, flush it to
        the device and move it over *path* in one os.replace() step.
        """
        directory = os.path.dirname(path) or "."
        fd, tmp_path = tempfile.mkstemp(prefix=".vault-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            logger.exception("Failed to write vault %s", path)
            VaultDatabase._silent_remove(tmp_path)
            raise PersistenceError(f"Could not write {path}") from exc

    @staticmethod
    def _silent_remove(path: str) -> None:
        """Remove *path* if present; a leftover stale file is only logged."""
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError:
            logger.warning("Could not remove stale file %s", path)


def _remove_bindings(tables: dict, secret: Optional[str] = None, category_id: Optional[str] = None) -> int:
    bindings = tables["authenticator_categories"]
    kept = [
        row for row in bindings
        if not (
            (secret is not None and row["authenticator_secret"] == secret)
            or (category_id is not None and row["category_id"] == category_id)
        )
    ]
    removed = len(bindings) - len(kept)
    tables["authenticator_categories"] = kept
    return removed


class AuthenticatorStore:
    """
    CRUD over Authenticator records keyed by their secret.

    get_all() returns records in custom display order: ranking, then issuer.
    """

    def __init__(self, db: VaultDatabase) -> None:
        self.db = db

    @staticmethod
    def _order_key(auth: Authenticator):
        return auth.ranking, auth.issuer.casefold(), auth.username.casefold()

    def get_all(self) -> List[Authenticator]:
        with self.db.transaction(write=False) as tables:
            records = [Authenticator.from_dict(row) for row in tables["authenticators"].values()]
        return sorted(records, key=self._order_key)

    def get(self, secret: str) -> Authenticator:
        with self.db.transaction(write=False) as tables:
            row = tables["authenticators"].get(secret)
            if row is None:
                raise NotFoundError(f"No authenticator with secret {secret[:4]}…")
            return Authenticator.from_dict(row)

    def exists(self, secret: str) -> bool:
        with self.db.transaction(write=False) as tables:
            return secret in tables["authenticators"]

    def create(self, record: Authenticator) -> Authenticator:
        """
        Validate and insert *record*; return the stored copy (with its
        secret normalised).

        Raises ValidationError for an unusable record and DuplicateError if
        an authenticator with the same secret already exists.
        """
        record = replace(record, secret=normalize_secret(record.secret))
        validate_authenticator(record)
        with self.db.transaction() as tables:
            if record.secret in tables["authenticators"]:
                raise DuplicateError("An authenticator with this secret already exists.", field="secret")
            tables["authenticators"][record.secret] = record.to_dict()
        logger.info("Created authenticator for %s", record.issuer)
        return record

    def update(self, record: Authenticator) -> Authenticator:
        """Replace the stored record with the same secret; NotFoundError if none."""
        validate_authenticator(record)
        with self.db.transaction() as tables:
            if record.secret not in tables["authenticators"]:
                raise NotFoundError(f"No authenticator for {record.issuer} to update.")
            tables["authenticators"][record.secret] = record.to_dict()
        logger.debug("Updated authenticator for %s", record.issuer)
        return record

    def update_many(self, records: List[Authenticator]) -> None:
        """Replace several records in one commit; nothing is written if any is missing."""
        with self.db.transaction():
            for record in records:
                self.update(record)

    def delete(self, record: Authenticator) -> None:
        """Remove *record* and all of its category bindings in one commit."""
        with self.db.transaction() as tables:
            if tables["authenticators"].pop(record.secret, None) is None:
                raise NotFoundError(f"No authenticator for {record.issuer} to delete.")
            removed = _remove_bindings(tables, secret=record.secret)
        logger.info("Deleted authenticator for %s (%d bindings)", record.issuer, removed)

    def increment_counter(self, secret: str) -> Authenticator:
        """
        Advance the counter of a HOTP authenticator by exactly one and
        persist it.  The read-modify-write happens under the vault lock, so
        concurrent callers never lose an increment.
        """
        with self.db.transaction() as tables:
            row = tables["authenticators"].get(secret)
            if row is None:
                raise NotFoundError("No authenticator to increment.")
            if row["type"] != AuthenticatorType.HOTP.value:
                raise ValidationError("Only counter-based authenticators have a counter.", field="type")
            row["counter"] += 1
            return Authenticator.from_dict(row)

    def increment_copy_count(self, secret: str) -> Authenticator:
        with self.db.transaction() as tables:
            row = tables["authenticators"].get(secret)
            if row is None:
                raise NotFoundError("No authenticator to update.")
            row["copy_count"] = row.get("copy_count", 0) + 1
            return Authenticator.from_dict(row)


class CategoryStore:
    """CRUD over categories, ordered by ranking then name."""

    def __init__(self, db: VaultDatabase) -> None:
        self.db = db

    def get_all(self) -> List[Category]:
        with self.db.transaction(write=False) as tables:
            records = [Category.from_dict(row) for row in tables["categories"].values()]
        return sorted(records, key=lambda c: (c.ranking, c.name.casefold()))

    def get(self, category_id: str) -> Category:
        with self.db.transaction(write=False) as tables:
            row = tables["categories"].get(category_id)
            if row is None:
                raise NotFoundError(f"No category with id {category_id}")
            return Category.from_dict(row)

    def create(self, category: Category) -> Category:
        """Insert *category*, assigning a fresh id when it has none."""
        if not category.name or not category.name.strip():
            raise ValidationError("Category name cannot be empty.", field="name")
        if category.id is None:
            category = replace(category, id=uuid.uuid4().hex)
        with self.db.transaction() as tables:
            if category.id in tables["categories"]:
                raise DuplicateError(f"Category {category.id} already exists.", field="id")
            tables["categories"][category.id] = category.to_dict()
        logger.info("Created category %s", category.name)
        return category

    def update(self, category: Category) -> Category:
        if not category.name or not category.name.strip():
            raise ValidationError("Category name cannot be empty.", field="name")
        with self.db.transaction() as tables:
            if category.id not in tables["categories"]:
                raise NotFoundError(f"No category {category.name} to update.")
            tables["categories"][category.id] = category.to_dict()
        return category

    def delete(self, category: Category) -> None:
        """Remove *category* and every binding to it in one commit."""
        with self.db.transaction() as tables:
            if tables["categories"].pop(category.id, None) is None:
                raise NotFoundError(f"No category {category.name} to delete.")
            removed = _remove_bindings(tables, category_id=category.id)
        logger.info("Deleted category %s (%d bindings)", category.name, removed)


class AuthenticatorCategoryStore:
    """
    Bindings between authenticators and categories.

    create() does not deduplicate: binding the same pair twice is a caller
    error.  Bindings to a missing authenticator or category are refused so
    no orphan can be written.
    """

    def __init__(self, db: VaultDatabase) -> None:
        self.db = db

    def get_all(self) -> List[AuthenticatorCategory]:
        with self.db.transaction(write=False) as tables:
            return [AuthenticatorCategory.from_dict(row) for row in tables["authenticator_categories"]]

    def get_all_for_authenticator(self, auth: Authenticator) -> List[AuthenticatorCategory]:
        return [b for b in self.get_all() if b.authenticator_secret == auth.secret]

    def get_all_for_category(self, category: Category) -> List[AuthenticatorCategory]:
        return [b for b in self.get_all() if b.category_id == category.id]

    def create(self, binding: AuthenticatorCategory) -> None:
        with self.db.transaction() as tables:
            if binding.authenticator_secret not in tables["authenticators"]:
                raise NotFoundError("Cannot bind a category to a missing authenticator.")
            if binding.category_id not in tables["categories"]:
                raise NotFoundError(f"Cannot bind to missing category {binding.category_id}.")
            tables["authenticator_categories"].append(binding.to_dict())

    def delete(self, binding: AuthenticatorCategory) -> None:
        with self.db.transaction() as tables:
            rows = tables["authenticator_categories"]
            try:
                rows.remove(binding.to_dict())
            except ValueError:
                raise NotFoundError("No such category binding.") from None

    def delete_all_for_authenticator(self, auth: Authenticator) -> None:
        with self.db.transaction() as tables:
            _remove_bindings(tables, secret=auth.secret)

    def delete_all_for_category(self, category: Category) -> None:
        with self.db.transaction() as tables:
            _remove_bindings(tables, category_id=category.id)
