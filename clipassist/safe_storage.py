"""OS-backed string encryption.

A Fernet master key is kept in the operating system's secret store through
``keyring`` (Keychain, Windows Credential Manager/DPAPI, Secret Service or
KWallet). When no secure backend is available the key is written next to
the data files instead and the storage runs in ``basic_text`` mode, which
callers surface as a security warning.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import keyring
from cryptography.fernet import Fernet, InvalidToken
from keyring.errors import KeyringError

from clipassist.errors import DecryptionError, VaultError

logger = logging.getLogger(__name__)

BASIC_TEXT = "basic_text"
UNKNOWN = "unknown"

_KEYRING_MODULES = {
    "macOS": "keychain",
    "Windows": "dpapi",
    "SecretService": "secret_service",
    "libsecret": "secret_service",
    "kwallet": "kwallet",
    "fail": BASIC_TEXT,
    "null": BASIC_TEXT,
}


def detect_storage_backend(backend: Any) -> str:
    """Map a keyring backend instance to a storage backend name."""
    if type(backend).__name__ == "ChainerBackend":
        children = list(getattr(backend, "backends", []))
        if not children:
            return BASIC_TEXT
        backend = children[0]

    module = type(backend).__module__
    if module.startswith("keyring.backends."):
        return _KEYRING_MODULES.get(module.rsplit(".", 1)[-1], UNKNOWN)
    if module.startswith("keyrings.alt") and "Plaintext" in type(backend).__name__:
        return BASIC_TEXT
    return UNKNOWN


class SafeStorage:
    MASTER_KEY_NAME = "master-key"
    KEY_FILE_NAME = "master.key"

    def __init__(
        self,
        data_dir: str,
        service: str = "clipassist",
        backend: Optional[Any] = None,
    ) -> None:
        self._data_dir = data_dir
        self._service = service
        self._backend = backend if backend is not None else keyring.get_keyring()
        self.storage_backend = detect_storage_backend(self._backend)
        self._fernet: Optional[Fernet] = None

    @property
    def key_file(self) -> str:
        return os.path.join(self._data_dir, self.KEY_FILE_NAME)

    def is_encryption_available(self) -> bool:
        try:
            self._get_fernet()
        except VaultError as e:
            logger.error(f"Encryption unavailable: {e}")
            return False
        return True

    def encrypt_string(self, plaintext: str) -> str:
        """Encrypt text into an ASCII Fernet token."""
        token = self._get_fernet().encrypt(plaintext.encode("utf-8"))
        return token.decode("ascii")

    def decrypt_string(self, token: str) -> str:
        """Decrypt a token produced by ``encrypt_string``.

        Raises:
            DecryptionError: If the token is corrupted, was produced with a
                different master key, or the master key is unavailable.
        """
        if not isinstance(token, str):
            raise DecryptionError("Stored value is not an encrypted token")
        try:
            fernet = self._get_fernet()
            return fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise DecryptionError("Unable to decrypt stored value") from e
        except VaultError as e:
            raise DecryptionError(f"Unable to decrypt stored value: {e}") from e

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            key = self._load_or_create_key()
            try:
                self._fernet = Fernet(key)
            except ValueError as e:
                raise VaultError("Master key is corrupted") from e
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        if self.storage_backend != BASIC_TEXT:
            try:
                stored = self._backend.get_password(self._service, self.MASTER_KEY_NAME)
                if stored:
                    return stored.encode("ascii")
                key = Fernet.generate_key()
                self._backend.set_password(
                    self._service, self.MASTER_KEY_NAME, key.decode("ascii")
                )
                logger.info(f"Created master key in {self.storage_backend} storage")
                return key
            except KeyringError as e:
                logger.warning(
                    "OS keyring unavailable (%s), falling back to basic_text storage", e
                )
                self.storage_backend = BASIC_TEXT
        return self._load_or_create_key_file()

    def _load_or_create_key_file(self) -> bytes:
        path = self.key_file
        try:
            if os.path.exists(path):
                with open(path, "rb") as f:
                    return f.read().strip()

            os.makedirs(self._data_dir, exist_ok=True)
            key = Fernet.generate_key()
            with open(path, "wb") as f:
                f.write(key)
        except OSError as e:
            raise VaultError(f"Cannot access key file: {e}") from e

        try:
            os.chmod(path, 0o600)
        except OSError:
            logger.debug("Could not restrict permissions on %s", path)
        logger.warning("Master key stored in plain file %s", path)
        return key
