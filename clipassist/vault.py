"""Encrypted credential and configuration storage."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import sys
import time
from typing import Any, Optional, Union

import httpx
from PyQt6.QtCore import QObject, pyqtSignal

from config import Config
from contracts import (
    BackendConfig,
    ExportResult,
    FormatValidation,
    ImportResult,
    MigrationResult,
    RemoteValidation,
    SecurityAssessment,
    SecurityLevel,
    StoreResult,
)
from clipassist.errors import VaultError
from clipassist.safe_storage import BASIC_TEXT, SafeStorage

logger = logging.getLogger(__name__)

GEMINI_API_KEY = "gemini_api_key"
BACKEND_CONFIG = "backend_config"
GEMINI_ENV_VAR = "GEMINI_API_KEY"

_KEY_CHARS = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_-")
_REMOTE_STATUS_MESSAGES = {
    400: "Invalid API key format",
    401: "API key is invalid or expired",
    403: "API key does not have permission to access Gemini API",
    429: "API rate limit exceeded",
}
_RETRYABLE_REMOTE_ERRORS = ("timed out", "Network error", "rate limit")


def validate_api_key_format(api_key: Any) -> FormatValidation:
    """Check that a string looks like a Gemini API key.

    Only the shape is checked here; ``SecureVault.test_against_remote``
    confirms the key is actually accepted.
    """
    if not api_key or not isinstance(api_key, str):
        return FormatValidation(False, errors=("API key must be a non-empty string",))

    key = api_key.strip()
    warnings: list[str] = []

    if len(key) < 20:
        return FormatValidation(False, errors=("API key is too short (minimum 20 characters)",))
    if len(key) > 100:
        warnings.append("API key is unusually long")
    if not key.startswith("AI"):
        return FormatValidation(
            False, errors=('Gemini API key should start with "AI"',), warnings=tuple(warnings)
        )
    if not set(key) <= _KEY_CHARS:
        return FormatValidation(
            False, errors=("API key contains invalid characters",), warnings=tuple(warnings)
        )

    lowered = key.lower()
    if any(word in lowered for word in ("example", "test", "demo")):
        warnings.append("API key appears to be a test/demo key")

    return FormatValidation(True, warnings=tuple(warnings))


def assess_security(platform: str, storage_backend: str) -> SecurityAssessment:
    warnings: list[str] = []
    recommendations: list[str] = []

    if storage_backend == BASIC_TEXT:
        level = SecurityLevel.LOW
        warnings.append("Using basic text encryption - no secret store available")
        if platform.startswith("linux"):
            recommendations.append("Install kwallet or gnome-libsecret for better security")
        recommendations.append("Consider using a password manager for API key storage")
    elif platform == "darwin":
        if storage_backend == "keychain":
            level = SecurityLevel.HIGH
            recommendations.append("macOS Keychain Access provides strong encryption")
        else:
            level = SecurityLevel.MEDIUM
            warnings.append("Not using macOS Keychain Access")
            recommendations.append("Consider enabling Keychain Access for better security")
    elif platform == "win32":
        if storage_backend == "dpapi":
            level = SecurityLevel.HIGH
            recommendations.append("Windows DPAPI provides strong encryption")
        else:
            level = SecurityLevel.MEDIUM
            warnings.append("Not using Windows DPAPI")
            recommendations.append("Consider enabling DPAPI for better security")
    elif platform.startswith("linux"):
        if storage_backend in ("secret_service", "kwallet"):
            level = SecurityLevel.HIGH
            recommendations.append("Linux Secret Service provides strong encryption")
        else:
            level = SecurityLevel.MEDIUM
            warnings.append("Unknown storage backend on Linux")
            recommendations.append("Verify secret store installation")
    else:
        level = SecurityLevel.UNKNOWN
        warnings.append("Unknown platform")
        recommendations.append("Verify platform compatibility")

    return SecurityAssessment(
        platform=platform,
        storage_backend=storage_backend,
        security_level=level,
        warnings=tuple(warnings),
        recommendations=tuple(recommendations),
    )


class SecretStore:
    """Flat JSON file mapping names to encrypted strings."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._data = self._load()

    def _load(self) -> dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Secret store unreadable, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error("Secret store has unexpected layout, starting empty")
            return {}
        return data

    def _save(self, data: dict[str, str]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            with contextlib.suppress(OSError):
                os.remove(tmp_path)
            raise
        self._data = data

    def get(self, name: str) -> Optional[str]:
        return self._data.get(name)

    def has(self, name: str) -> bool:
        return name in self._data

    def set(self, name: str, value: str) -> None:
        self._save({**self._data, name: value})

    def delete(self, name: str) -> bool:
        if name not in self._data:
            return False
        self._save({k: v for k, v in self._data.items() if k != name})
        return True

    def clear(self) -> None:
        self._save({})

    def keys(self) -> list[str]:
        return list(self._data)


class SecureVault(QObject):
    """Encrypt-at-rest storage for API keys and the backend configuration.

    Values are encrypted with ``SafeStorage`` before they reach the JSON
    store, and decrypted values are returned to callers without being
    cached. Decryption failures are reported and treated as absent keys.

    Signals:
        initialized: Emitted by ``initialize`` with the storage summary.
        api_key_stored, api_key_retrieved, api_key_deleted: Key lifecycle.
        backend_config_stored, backend_config_retrieved: Config lifecycle.
        security_assessment: Emitted with a ``SecurityAssessment``.
        security_warning: Emitted when only basic text storage is available.
        api_key_migrated, api_key_exported, api_key_imported: Transfers.
        storage_cleared: Emitted after ``clear_all``.
        error_occurred: Emitted with an error dict for every failure.
    """

    initialized = pyqtSignal(object)
    api_key_stored = pyqtSignal(object)
    api_key_retrieved = pyqtSignal(object)
    api_key_deleted = pyqtSignal(object)
    backend_config_stored = pyqtSignal(object)
    backend_config_retrieved = pyqtSignal(object)
    security_assessment = pyqtSignal(object)
    security_warning = pyqtSignal(object)
    api_key_migrated = pyqtSignal(object)
    api_key_exported = pyqtSignal(object)
    api_key_imported = pyqtSignal(object)
    storage_cleared = pyqtSignal(object)
    error_occurred = pyqtSignal(object)

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        safe_storage: Optional[SafeStorage] = None,
        store: Optional[SecretStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        platform: Optional[str] = None,
    ) -> None:
        super().__init__()
        self._config = config or Config()
        self.platform = platform or sys.platform
        self._safe = safe_storage or SafeStorage(
            self._config.data_dir, self._config.keyring_service
        )
        self._store = store or SecretStore(
            os.path.join(self._config.data_dir, f"{self._config.store_name}.json")
        )
        self._transport = transport
        self.assessment: Optional[SecurityAssessment] = None

    @property
    def storage_backend(self) -> str:
        return self._safe.storage_backend

    def initialize(self) -> bool:
        available = self._safe.is_encryption_available()
        if not available:
            self._emit_error("encryption-unavailable", "Encryption is not available on this system")
        assessment = self.assess_platform_security()
        self.initialized.emit(
            {
                "storage_backend": self.storage_backend,
                "encryption_available": available,
                "security_level": assessment.security_level.value,
            }
        )
        logger.info(f"Secure storage initialized ({self.storage_backend})")
        return available

    # -- API keys -------------------------------------------------------

    async def store_key(
        self, name: str, value: str, test_against_api: bool = False
    ) -> StoreResult:
        """Validate, optionally live-test, encrypt and persist a key.

        Nothing is written unless every check passes.

        Args:
            name: Storage name for the key.
            value: The plaintext API key.
            test_against_api: Confirm the key against the Gemini API first.

        Returns:
            A ``StoreResult`` whose ``error`` describes any failure.
        """
        details: dict[str, Any] = {}
        if not isinstance(value, str) or not value.strip():
            return self._store_failed(name, "Invalid API key provided", details)

        validation = self.validate_format(value)
        if not validation.is_valid:
            return self._store_failed(
                name,
                f"API key format validation failed: {', '.join(validation.errors)}",
                details,
            )
        if validation.warnings:
            logger.warning(f"API key warnings: {', '.join(validation.warnings)}")
            details["warnings"] = list(validation.warnings)

        if test_against_api:
            logger.info("Testing API key against Gemini API...")
            remote = await self.test_against_remote(value)
            if not remote.is_valid:
                return self._store_failed(name, f"API key test failed: {remote.error}", details)
            details["api_test"] = {"status": remote.status}

        try:
            self._store.set(name, self._safe.encrypt_string(value))
        except (VaultError, OSError) as e:
            return self._store_failed(name, f"Failed to store API key securely: {e}", details)

        logger.info(f"API key stored securely: {name}")
        self.api_key_stored.emit(
            {
                "key_name": name,
                "storage_backend": self.storage_backend,
                "warnings": list(validation.warnings),
                "timestamp": time.time(),
            }
        )
        details.update(key_name=name, storage_backend=self.storage_backend)
        return StoreResult(True, details=details)

    def _store_failed(self, name: str, error: str, details: dict[str, Any]) -> StoreResult:
        logger.error(f"Failed to store API key {name}: {error}")
        self._emit_error("store-failed", error, key_name=name)
        return StoreResult(False, error=error, details=details)

    def retrieve_key(self, name: str) -> Optional[str]:
        ciphertext = self._store.get(name)
        if not ciphertext:
            logger.debug(f"API key not found: {name}")
            return None
        try:
            value = self._safe.decrypt_string(ciphertext)
        except VaultError as e:
            logger.error(f"Failed to retrieve API key {name}: {e}")
            self._emit_error(e.error_type, e.message, key_name=name)
            return None
        self.api_key_retrieved.emit({"key_name": name, "timestamp": time.time()})
        return value

    def delete_key(self, name: str) -> bool:
        try:
            existed = self._store.delete(name)
        except OSError as e:
            logger.error(f"Failed to delete API key {name}: {e}")
            self._emit_error("delete-failed", str(e), key_name=name)
            return False
        if existed:
            logger.info(f"API key deleted: {name}")
            self.api_key_deleted.emit({"key_name": name, "timestamp": time.time()})
        return existed

    def has_key(self, name: str) -> bool:
        return self._store.has(name)

    # -- backend configuration -----------------------------------------

    def store_config(self, config: Union[BackendConfig, dict[str, Any]]) -> bool:
        try:
            if isinstance(config, dict):
                config = BackendConfig.from_dict(config)
            payload = json.dumps(config.to_dict())
            self._store.set(BACKEND_CONFIG, self._safe.encrypt_string(payload))
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid backend configuration: {e}")
            self._emit_error("config-store-failed", f"Invalid configuration: {e}")
            return False
        except (VaultError, OSError) as e:
            logger.error(f"Failed to store backend configuration: {e}")
            self._emit_error("config-store-failed", str(e))
            return False

        self.backend_config_stored.emit(
            {"backend": config.backend.value, "model_name": config.model_name}
        )
        return True

    def retrieve_config(self) -> Optional[BackendConfig]:
        ciphertext = self._store.get(BACKEND_CONFIG)
        if not ciphertext:
            return None
        try:
            config = BackendConfig.from_dict(json.loads(self._safe.decrypt_string(ciphertext)))
        except VaultError as e:
            logger.error(f"Failed to retrieve backend configuration: {e}")
            self._emit_error(e.error_type, e.message, key_name=BACKEND_CONFIG)
            return None
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Stored backend configuration is invalid: {e}")
            self._emit_error("config-retrieve-failed", f"Invalid stored configuration: {e}")
            return None

        self.backend_config_retrieved.emit(
            {"backend": config.backend.value, "model_name": config.model_name}
        )
        return config

    # -- validation -----------------------------------------------------

    def validate_format(self, value: Any) -> FormatValidation:
        return validate_api_key_format(value)

    async def test_against_remote(self, value: str) -> RemoteValidation:
        """Ask the Gemini models endpoint whether it accepts a key."""
        url = f"{self._config.gemini_api_base.rstrip('/')}/models"
        headers = {"x-goog-api-key": value.strip(), "Content-Type": "application/json"}
        timeout = httpx.Timeout(self._config.key_test_timeout_ms / 1000)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException:
            return RemoteValidation(False, error="API request timed out")
        except httpx.TransportError:
            return RemoteValidation(False, error="Network error - unable to reach Gemini API")
        except httpx.HTTPError as e:
            return RemoteValidation(False, error=f"Unexpected error: {type(e).__name__}")

        status = response.status_code
        if response.is_success:
            return RemoteValidation(True, status=status)
        message = _REMOTE_STATUS_MESSAGES.get(
            status, f"API request failed: HTTP {status} {response.reason_phrase}"
        )
        return RemoteValidation(False, error=message, status=status)

    async def validate_stored_key(self, name: str, max_retries: int = 2) -> dict[str, Any]:
        value = self.retrieve_key(name)
        if value is None:
            return {"is_valid": False, "error": "API key not found in secure storage"}

        validation = self.validate_format(value)
        if not validation.is_valid:
            return {
                "is_valid": False,
                "error": f"Invalid format: {', '.join(validation.errors)}",
            }

        attempt = 0
        while True:
            remote = await self.test_against_remote(value)
            retryable = not remote.is_valid and any(
                marker in (remote.error or "") for marker in _RETRYABLE_REMOTE_ERRORS
            )
            if not retryable or attempt >= max_retries:
                return {
                    "is_valid": remote.is_valid,
                    "error": remote.error,
                    "status": remote.status,
                    "attempts": attempt + 1,
                    "warnings": list(validation.warnings),
                }
            attempt += 1
            delay = self._config.retry_delay_ms * 2 * attempt / 1000
            logger.warning(f"API key validation attempt {attempt} failed, retrying in {delay:.1f}s")
            await asyncio.sleep(delay)

    # -- transfers ------------------------------------------------------

    async def migrate_from_environment(
        self, name: str = GEMINI_API_KEY, env_var: str = GEMINI_ENV_VAR
    ) -> MigrationResult:
        if self.has_key(name):
            return MigrationResult(
                False,
                error="API key already exists in secure storage",
                details={"existing_key": True},
            )

        value = os.environ.get(env_var)
        if not value:
            return MigrationResult(False, error=f"No API key found in environment variable {env_var}")

        validation = self.validate_format(value)
        if not validation.is_valid:
            return MigrationResult(
                False,
                error=f"Environment API key format invalid: {', '.join(validation.errors)}",
            )

        stored = await self.store_key(name, value)
        if not stored.success:
            return MigrationResult(False, error=stored.error, details=stored.details)

        details = {"source": "environment", "env_var": env_var, "key_name": name}
        logger.info(f"API key migrated from {env_var} to secure storage")
        self.api_key_migrated.emit(details)
        return MigrationResult(True, migrated=True, details=details)

    def _can_decrypt(self, ciphertext: Any) -> bool:
        try:
            self._safe.decrypt_string(ciphertext)
        except VaultError:
            return False
        return True

    def export_key(self, name: str) -> ExportResult:
        """Export a key's ciphertext for backup.

        The blob can only be imported on a machine holding the same master
        key; the plaintext never leaves storage.
        """
        ciphertext = self._store.get(name)
        if not ciphertext:
            return ExportResult(False, error="API key not found")
        if not self._can_decrypt(ciphertext):
            return ExportResult(False, error="Stored API key cannot be decrypted")

        data = {
            "key_name": name,
            "platform": self.platform,
            "storage_backend": self.storage_backend,
            "export_timestamp": time.time(),
            "encrypted_data": ciphertext,
        }
        self.api_key_exported.emit({"key_name": name, "timestamp": data["export_timestamp"]})
        return ExportResult(True, data=data)

    def import_key(self, blob: Any) -> ImportResult:
        if not isinstance(blob, dict):
            return ImportResult(False, error="Import data must be an object")
        name = blob.get("key_name")
        ciphertext = blob.get("encrypted_data")
        if not isinstance(name, str) or not name or not isinstance(ciphertext, str):
            return ImportResult(False, error="Import data is missing key_name or encrypted_data")
        if self.has_key(name):
            return ImportResult(
                False,
                error="API key already exists - delete existing key first",
                details={"key_name": name},
            )
        if not self._can_decrypt(ciphertext):
            return ImportResult(
                False,
                error="Encrypted data cannot be decrypted on this machine",
                details={"source_platform": blob.get("platform")},
            )

        try:
            self._store.set(name, ciphertext)
        except OSError as e:
            self._emit_error("import-failed", str(e), key_name=name)
            return ImportResult(False, error=f"Failed to import API key: {e}")

        details = {"key_name": name, "source_platform": blob.get("platform")}
        logger.info(f"API key imported: {name}")
        self.api_key_imported.emit(details)
        return ImportResult(True, imported=True, details=details)

    # -- security -------------------------------------------------------

    def assess_platform_security(self) -> SecurityAssessment:
        assessment = assess_security(self.platform, self.storage_backend)
        self.assessment = assessment
        self.security_assessment.emit(assessment)

        if self.storage_backend == BASIC_TEXT:
            logger.warning("SECURITY WARNING: Using basic text encryption instead of OS keychain")
            self.security_warning.emit(
                {
                    "type": "basic-text-encryption",
                    "message": "Using basic text encryption instead of OS keychain",
                    "platform": self.platform,
                    "security_level": assessment.security_level.value,
                    "recommendations": list(assessment.recommendations),
                    "timestamp": time.time(),
                }
            )
        return assessment

    def get_security_recommendations(self) -> dict[str, Any]:
        assessment = self.assessment or assess_security(self.platform, self.storage_backend)
        recommendations = list(assessment.recommendations)
        if self.platform == "darwin":
            recommendations += [
                "Enable FileVault for disk encryption",
                "Keep macOS updated for security patches",
            ]
        elif self.platform == "win32":
            recommendations += [
                "Enable BitLocker for disk encryption",
                "Keep Windows updated for security patches",
            ]
        elif self.platform.startswith("linux"):
            recommendations += [
                "Use full disk encryption (LUKS)",
                "Keep system updated for security patches",
            ]
        return {
            "platform": self.platform,
            "storage_backend": self.storage_backend,
            "security_level": assessment.security_level.value,
            "warnings": list(assessment.warnings),
            "recommendations": recommendations,
        }

    def get_status(self) -> dict[str, Any]:
        level = self.assessment.security_level.value if self.assessment else "unknown"
        return {
            "platform": self.platform,
            "storage_backend": self.storage_backend,
            "security_level": level,
            "has_gemini_api_key": self.has_gemini_api_key(),
            "has_backend_config": self.has_key(BACKEND_CONFIG),
            "stored_keys": self._store.keys(),
            "store_path": self._store.path,
        }

    def clear_all(self) -> bool:
        try:
            self._store.clear()
        except OSError as e:
            logger.error(f"Failed to clear secure storage: {e}")
            self._emit_error("clear-failed", str(e))
            return False
        logger.warning("All secure storage cleared")
        self.storage_cleared.emit({"timestamp": time.time()})
        return True

    # -- Gemini helpers -------------------------------------------------

    async def store_gemini_api_key(self, value: str, test_against_api: bool = True) -> StoreResult:
        return await self.store_key(GEMINI_API_KEY, value, test_against_api=test_against_api)

    def retrieve_gemini_api_key(self) -> Optional[str]:
        return self.retrieve_key(GEMINI_API_KEY)

    def has_gemini_api_key(self) -> bool:
        return self.has_key(GEMINI_API_KEY)

    def delete_gemini_api_key(self) -> bool:
        return self.delete_key(GEMINI_API_KEY)

    def _emit_error(self, error_type: str, message: str, **extra: Any) -> None:
        event = {"type": error_type, "error": message, "timestamp": time.time()}
        event.update(extra)
        self.error_occurred.emit(event)
