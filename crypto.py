"""
crypto.py – Cryptographic operations for the authenticator vault.

CryptoManager owns the master password and the vault key:

  - PBKDF2-HMAC-SHA256 turns the master password into a Fernet key.
  - Salt and key-check file management (used to verify the password at
    unlock).
  - Vault and backup bytes are sealed with Fernet from the
    "cryptography" package.
  - Setting up, unlocking, locking and changing the master password; a
    change re-encrypts the vault atomically (rewrap_vault).

The vault may also live unencrypted while no master password has been set
(has_master_password() is False); storage.VaultDatabase then writes plain
JSON.
"""

import base64
import logging
import os
import shutil
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from errors import InvalidPasswordError, PersistenceError, ValidationError

logger = logging.getLogger("OtpAuthenticator")

KDF_ITERATIONS = 390_000
SALT_SIZE = 16
KEYCHECK_PLAINTEXT = b"keycheck"


class CryptoManager:
    """
    Handles all cryptographic operations for the vault.

    Parameters
    ----------
    config : AppConfig
        Application configuration object used for file paths.

    Attributes
    ----------
    master_key : bytes or None
        Fernet key of the unlocked vault.
        None while the vault is locked or has no master password.
    """

    def __init__(self, config) -> None:
        self.config = config
        self.master_key: Optional[bytes] = None

    # ------------------------------------------------------------------
    # Key derivation
    # ------------------------------------------------------------------

    @staticmethod
    def derive_key(password: str, salt: bytes) -> bytes:
        """
        Stretch *password* with *salt* (KDF_ITERATIONS rounds of
        PBKDF2-HMAC-SHA256) into a key that Fernet() accepts as is.
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        raw_key = kdf.derive(password.encode("utf-8"))
        return base64.urlsafe_b64encode(raw_key)

    # ------------------------------------------------------------------
    # Salt and key-check files
    # ------------------------------------------------------------------

    def load_salt(self) -> Optional[bytes]:
        """
        Return the stored salt.

        Returns None when the salt file does not exist, which signals that
        no master password has been set up yet.
        """
        if os.path.exists(self.config.salt_path):
            with open(self.config.salt_path, "rb") as fh:
                return fh.read()
        return None

    def has_master_password(self) -> bool:
        return self.load_salt() is not None

    @property
    def is_unlocked(self) -> bool:
        return self.master_key is not None

    def _write_credentials(self, salt: bytes, key: bytes) -> None:
        """Persist *salt* and a key-check token encrypted with *key*."""
        token = Fernet(key).encrypt(KEYCHECK_PLAINTEXT)
        with open(self.config.salt_path, "wb") as fh:
            fh.write(salt)
        with open(self.config.keycheck_path, "wb") as fh:
            fh.write(token)

    def verify_master_password(self, password: str) -> bool:
        """
        True when *password* opens the key-check token.

        Returns False on a wrong password, a missing salt/keycheck file or
        corrupted data.
        """
        salt = self.load_salt()
        if salt is None:
            return False
        try:
            fernet = Fernet(self.derive_key(password, salt))
            with open(self.config.keycheck_path, "rb") as fh:
                ciphertext = fh.read()
            return fernet.decrypt(ciphertext) == KEYCHECK_PLAINTEXT
        except (OSError, InvalidToken):
            return False

    # ------------------------------------------------------------------
    # Master password lifecycle
    # ------------------------------------------------------------------

    def setup_master_password(self, password: str) -> None:
        """
        First-run set-up: generate a salt, derive the key and write the
        key-check file.  The vault is encrypted from the next write on.

        Raises ValidationError for an empty password or when a master
        password already exists.
        """
        if not password:
            raise ValidationError("Master password cannot be empty.", field="password")
        if self.has_master_password():
            raise ValidationError("A master password is already set.", field="password")

        salt = os.urandom(SALT_SIZE)
        key = self.derive_key(password, salt)
        try:
            self._write_credentials(salt, key)
        except OSError as exc:
            logger.exception("Failed to write salt/key-check files")
            raise PersistenceError("Failed to set up encryption.") from exc
        self.master_key = key
        logger.info("Created master password and key-check file")

    def unlock(self, password: str) -> None:
        """Derive and hold the master key; raise InvalidPasswordError if wrong."""
        if not self.verify_master_password(password):
            logger.warning("Master password rejected")
            raise InvalidPasswordError("The master password is incorrect.")
        self.master_key = self.derive_key(password, self.load_salt())
        logger.info("Master password verified")

    def lock(self) -> None:
        """Forget the master key held in memory."""
        self.master_key = None
        logger.info("Vault locked")

    def change_master_password(self, current_password: str, new_password: str) -> None:
        """
        Change the master password.

        Flow:
          1. Verify the current master password.
          2. Derive a new key with a fresh random salt.
          3. Atomically re-encrypt the vault from the old to the new key.
          4. Persist the new salt and key-check file.
          5. Update the runtime master key.

        Raises InvalidPasswordError, ValidationError or PersistenceError;
        on failure the vault keeps its previous encryption.
        """
        if not self.verify_master_password(current_password):
            raise InvalidPasswordError("The current master password is incorrect.")
        if not new_password:
            raise ValidationError("Master password cannot be empty.", field="password")

        old_key = self.derive_key(current_password, self.load_salt())
        new_salt = os.urandom(SALT_SIZE)
        new_key = self.derive_key(new_password, new_salt)

        if not self.rewrap_vault(old_key, new_key):
            raise PersistenceError("Failed to re-encrypt the vault; no changes were applied.")

        try:
            self._write_credentials(new_salt, new_key)
        except OSError as exc:
            logger.exception("Failed to write new salt/keycheck after password change")
            # Put the vault back under the old key so the old password keeps working.
            self.rewrap_vault(new_key, old_key)
            raise PersistenceError("Failed to persist the new credentials.") from exc

        self.master_key = new_key
        logger.info("Master password changed successfully")

    # ------------------------------------------------------------------
    # Encrypt / decrypt helpers
    # ------------------------------------------------------------------

    def encrypt_bytes(self, data: bytes) -> bytes:
        """
        Encrypt *data* with the current master key.

        Raises PersistenceError if the vault is locked.
        """
        if not self.master_key:
            raise PersistenceError("No master key is set – cannot encrypt.")
        return Fernet(self.master_key).encrypt(data)

    def decrypt_bytes(self, enc_bytes: bytes) -> bytes:
        """
        Decrypt *enc_bytes* with the current master key.

        Raises PersistenceError if the vault is locked or the data was not
        encrypted with this key.
        """
        if not self.master_key:
            raise PersistenceError("No master key is set – cannot decrypt.")
        try:
            return Fernet(self.master_key).decrypt(enc_bytes)
        except InvalidToken as exc:
            raise PersistenceError("Vault could not be decrypted with the master key.") from exc

    # ------------------------------------------------------------------
    # Atomic re-encryption of the vault
    # ------------------------------------------------------------------

    def rewrap_vault(self, old_key: bytes, new_key: bytes) -> bool:
        """
        Re-encrypt the vault file from *old_key* to *new_key* using a
        three-phase strategy:

          Phase 1 – Copy the encrypted vault to a *.bak* backup.
          Phase 2 – Decrypt with old_key, re-encrypt with new_key and write
                    the result to a *.tmp* companion.
          Phase 3 – Atomically replace the original with the *.tmp* file.

        On failure the backup is restored and the *.tmp* file removed.
        Returns True on success (or when there is no vault yet).
        """
        enc_path = self.config.vault_enc_path
        if not os.path.exists(enc_path):
            return True

        bak = enc_path + ".bak"
        tmp = enc_path + ".tmp"

        def _restore_and_cleanup() -> None:
            """Best-effort rollback: restore the .bak file and remove .tmp."""
            try:
                shutil.copy2(bak, enc_path)
            except OSError:
                logger.exception("Failed to restore backup %s -> %s", bak, enc_path)
            try:
                os.remove(tmp)
            except OSError:
                pass

        try:
            shutil.copy2(enc_path, bak)

            with open(enc_path, "rb") as fh:
                enc_blob = fh.read()
            try:
                plaintext = Fernet(old_key).decrypt(enc_blob)
            except InvalidToken:
                logger.error("InvalidToken while re-encrypting %s – aborting", enc_path)
                _restore_and_cleanup()
                return False

            with open(tmp, "wb") as out:
                out.write(Fernet(new_key).encrypt(plaintext))
                out.flush()
                os.fsync(out.fileno())

            os.replace(tmp, enc_path)
        except OSError:
            logger.exception("Unexpected error during re-encryption")
            _restore_and_cleanup()
            return False

        try:
            os.remove(bak)
        except OSError:
            logger.debug("Could not remove vault backup %s", bak)
        return True
