import json
import os
import tempfile
import unittest
from unittest.mock import patch

import httpx

from contracts import BackendConfig, BackendName, SecurityLevel
from clipassist.errors import DecryptionError
from clipassist.safe_storage import BASIC_TEXT, SafeStorage, detect_storage_backend
from clipassist.vault import (
    BACKEND_CONFIG,
    GEMINI_API_KEY,
    SecretStore,
    assess_security,
    validate_api_key_format,
)

from fakes import (
    OTHER_KEY,
    VALID_KEY,
    BrokenKeyring,
    MemoryKeyring,
    Recorder,
    keyring_from,
    make_config,
    make_vault,
)


def _transport(status=200, exc=None):
    def handler(request):
        if exc is not None:
            raise exc(request)
        return httpx.Response(status, json={"models": []})

    return httpx.MockTransport(handler)


class VaultTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.config = make_config(self._tmp.name)
        self.keyring = MemoryKeyring()

    def tearDown(self):
        self._tmp.cleanup()


class TestSafeStorage(VaultTestCase):
    def test_round_trip(self):
        safe = SafeStorage(self._tmp.name, backend=self.keyring)
        for text in ["", "plain", "ünïcødé ✓", "x" * 5000]:
            token = safe.encrypt_string(text)
            self.assertTrue(token.isascii())
            self.assertEqual(safe.decrypt_string(token), text)

    def test_master_key_lives_in_keyring(self):
        safe = SafeStorage(self._tmp.name, backend=self.keyring)
        token = safe.encrypt_string("secret")
        self.assertIn(("clipassist", SafeStorage.MASTER_KEY_NAME), self.keyring.passwords)
        self.assertFalse(os.path.exists(safe.key_file))

        reopened = SafeStorage(self._tmp.name, backend=self.keyring)
        self.assertEqual(reopened.decrypt_string(token), "secret")

    def test_other_master_key_cannot_decrypt(self):
        token = SafeStorage(self._tmp.name, backend=self.keyring).encrypt_string("secret")
        other = SafeStorage(self._tmp.name, backend=MemoryKeyring())
        with self.assertRaises(DecryptionError):
            other.decrypt_string(token)
        with self.assertRaises(DecryptionError):
            other.decrypt_string("garbage")
        with self.assertRaises(DecryptionError):
            other.decrypt_string(None)

    def test_falls_back_to_key_file(self):
        safe = SafeStorage(self._tmp.name, backend=BrokenKeyring())
        token = safe.encrypt_string("secret")
        self.assertEqual(safe.storage_backend, BASIC_TEXT)
        self.assertTrue(os.path.exists(safe.key_file))
        self.assertEqual(
            SafeStorage(self._tmp.name, backend=BrokenKeyring()).decrypt_string(token), "secret"
        )

    def test_detect_storage_backend(self):
        cases = {
            "keyring.backends.macOS": "keychain",
            "keyring.backends.Windows": "dpapi",
            "keyring.backends.SecretService": "secret_service",
            "keyring.backends.libsecret": "secret_service",
            "keyring.backends.kwallet": "kwallet",
            "keyring.backends.fail": BASIC_TEXT,
            "keyring.backends.null": BASIC_TEXT,
            "some.third.party": "unknown",
        }
        for module, expected in cases.items():
            with self.subTest(module=module):
                self.assertEqual(detect_storage_backend(keyring_from(module)()), expected)


class TestKeyFormat(unittest.TestCase):
    def test_valid(self):
        result = validate_api_key_format(VALID_KEY)
        self.assertTrue(result.is_valid)
        self.assertEqual(result.warnings, ())

    def test_invalid(self):
        cases = {
            "": "non-empty",
            None: "non-empty",
            "AIza-short": "too short",
            "XXzaSyA1b2C3d4E5f6G7h8I9j0KlMnOpQrStU": 'start with "AI"',
            "AIzaSyA1b2C3d4E5f6G7h8 9j0KlMnOpQrStU": "invalid characters",
            "AIzaSyA1b2C3d4E5f6G7h8!9j0KlMnOpQrStU": "invalid characters",
        }
        for key, fragment in cases.items():
            with self.subTest(key=key):
                result = validate_api_key_format(key)
                self.assertFalse(result.is_valid)
                self.assertIn(fragment, result.errors[0])

    def test_warnings(self):
        self.assertIn(
            "API key appears to be a test/demo key",
            validate_api_key_format("AIzaTESTkey000000000000000000").warnings,
        )
        self.assertIn(
            "API key is unusually long", validate_api_key_format("AI" + "a" * 120).warnings
        )


class TestSecurityAssessment(unittest.TestCase):
    def test_levels(self):
        self.assertEqual(assess_security("darwin", "keychain").security_level, SecurityLevel.HIGH)
        self.assertEqual(assess_security("win32", "dpapi").security_level, SecurityLevel.HIGH)
        self.assertEqual(
            assess_security("linux", "secret_service").security_level, SecurityLevel.HIGH
        )
        self.assertEqual(assess_security("linux", "kwallet").security_level, SecurityLevel.HIGH)
        self.assertEqual(assess_security("linux", "unknown").security_level, SecurityLevel.MEDIUM)
        self.assertEqual(assess_security("darwin", "unknown").security_level, SecurityLevel.MEDIUM)
        self.assertEqual(assess_security("sunos5", "unknown").security_level, SecurityLevel.UNKNOWN)

    def test_basic_text_is_low(self):
        assessment = assess_security("linux", BASIC_TEXT)
        self.assertEqual(assessment.security_level, SecurityLevel.LOW)
        self.assertTrue(assessment.warnings)
        self.assertIn("Install kwallet or gnome-libsecret for better security",
                      assessment.recommendations)


class TestSecretStore(VaultTestCase):
    def test_persists_atomically(self):
        path = os.path.join(self._tmp.name, "nested", "store.json")
        store = SecretStore(path)
        store.set("a", "1")
        store.set("b", "2")
        self.assertTrue(store.delete("a"))
        self.assertFalse(store.delete("a"))

        with open(path, encoding="utf-8") as f:
            self.assertEqual(json.load(f), {"b": "2"})
        self.assertFalse(os.path.exists(path + ".tmp"))
        self.assertEqual(SecretStore(path).get("b"), "2")

    def test_failed_write_keeps_previous_contents(self):
        path = os.path.join(self._tmp.name, "store.json")
        store = SecretStore(path)
        store.set("a", "1")

        with patch("clipassist.vault.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                store.set("b", "2")
            with self.assertRaises(OSError):
                store.delete("a")
            with self.assertRaises(OSError):
                store.clear()

        self.assertEqual(store.keys(), ["a"])
        self.assertFalse(os.path.exists(path + ".tmp"))
        with open(path, encoding="utf-8") as f:
            self.assertEqual(json.load(f), {"a": "1"})

    def test_corrupt_file_starts_empty(self):
        path = os.path.join(self._tmp.name, "store.json")
        with open(path, "w", encoding="utf-8") as f:
            f.write("{not json")
        with self.assertLogs("clipassist.vault", level="ERROR"):
            store = SecretStore(path)
        self.assertEqual(store.keys(), [])


class TestSecureVault(VaultTestCase):
    async def test_failed_key_write_is_not_persisted_later(self):
        vault = make_vault(self.config, self.keyring)
        path = os.path.join(self._tmp.name, "secure-config.json")

        with patch("clipassist.vault.os.replace", side_effect=OSError("disk full")):
            result = await vault.store_key(GEMINI_API_KEY, VALID_KEY)

        self.assertFalse(result.success)
        self.assertIn("disk full", result.error)
        self.assertFalse(vault.has_key(GEMINI_API_KEY))
        self.assertIsNone(vault.retrieve_key(GEMINI_API_KEY))
        self.assertFalse(os.path.exists(path + ".tmp"))

        self.assertTrue(vault.store_config(BackendConfig()))
        with open(path, encoding="utf-8") as f:
            self.assertEqual(list(json.load(f)), [BACKEND_CONFIG])

    async def test_store_and_retrieve_cycles(self):
        vault = make_vault(self.config, self.keyring)
        stored = Recorder(vault.api_key_stored)
        for value in (VALID_KEY, OTHER_KEY, VALID_KEY):
            result = await vault.store_key(GEMINI_API_KEY, value)
            self.assertTrue(result.success, result.error)
            self.assertEqual(vault.retrieve_key(GEMINI_API_KEY), value)
        self.assertEqual(len(stored), 3)

        reopened = make_vault(self.config, self.keyring)
        self.assertEqual(reopened.retrieve_key(GEMINI_API_KEY), VALID_KEY)

    async def test_plaintext_never_written(self):
        vault = make_vault(self.config, self.keyring)
        await vault.store_key(GEMINI_API_KEY, VALID_KEY)
        with open(os.path.join(self._tmp.name, "secure-config.json"), encoding="utf-8") as f:
            raw = f.read()
        self.assertNotIn(VALID_KEY, raw)
        self.assertIn(GEMINI_API_KEY, json.loads(raw))

    async def test_invalid_format_is_not_persisted(self):
        vault = make_vault(self.config, self.keyring)
        errors = Recorder(vault.error_occurred)
        result = await vault.store_key(GEMINI_API_KEY, "sk-not-a-gemini-key-000000")
        self.assertFalse(result.success)
        self.assertIn("format validation failed", result.error)
        self.assertFalse(vault.has_key(GEMINI_API_KEY))
        self.assertEqual(errors.events[0]["type"], "store-failed")

    async def test_live_test_unreachable_network(self):
        vault = make_vault(
            self.config,
            self.keyring,
            transport=_transport(exc=lambda r: httpx.ConnectError("offline", request=r)),
        )
        result = await vault.store_key(GEMINI_API_KEY, VALID_KEY, test_against_api=True)
        self.assertFalse(result.success)
        self.assertIn("Network error", result.error)
        self.assertFalse(vault.has_key(GEMINI_API_KEY))
        self.assertIsNone(vault.retrieve_key(GEMINI_API_KEY))

    async def test_live_test_status_messages(self):
        cases = {
            400: "Invalid API key format",
            401: "API key is invalid or expired",
            403: "does not have permission",
            429: "rate limit exceeded",
            500: "HTTP 500",
        }
        for status, fragment in cases.items():
            with self.subTest(status=status):
                vault = make_vault(self.config, self.keyring, transport=_transport(status))
                remote = await vault.test_against_remote(VALID_KEY)
                self.assertFalse(remote.is_valid)
                self.assertIn(fragment, remote.error)
                self.assertEqual(remote.status, status)

    async def test_live_test_timeout(self):
        vault = make_vault(
            self.config,
            self.keyring,
            transport=_transport(exc=lambda r: httpx.ConnectTimeout("slow", request=r)),
        )
        remote = await vault.test_against_remote(VALID_KEY)
        self.assertEqual(remote.error, "API request timed out")

    async def test_live_test_success(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"models": []})

        vault = make_vault(self.config, self.keyring, transport=httpx.MockTransport(handler))
        result = await vault.store_key(GEMINI_API_KEY, VALID_KEY, test_against_api=True)
        self.assertTrue(result.success)
        self.assertEqual(result.details["api_test"], {"status": 200})
        self.assertEqual(seen[0].headers["x-goog-api-key"], VALID_KEY)
        self.assertEqual(str(seen[0].url), "https://gemini.test/v1beta/models")

    async def test_validate_stored_key_retries_rate_limit(self):
        statuses = [429, 429, 200]

        def handler(request):
            return httpx.Response(statuses.pop(0))

        vault = make_vault(self.config, self.keyring, transport=httpx.MockTransport(handler))
        await vault.store_key(GEMINI_API_KEY, VALID_KEY)
        result = await vault.validate_stored_key(GEMINI_API_KEY)
        self.assertTrue(result["is_valid"])
        self.assertEqual(result["attempts"], 3)

    async def test_corrupted_ciphertext_reads_as_absent(self):
        vault = make_vault(self.config, self.keyring)
        await vault.store_key(GEMINI_API_KEY, VALID_KEY)
        vault._store.set(GEMINI_API_KEY, "gAAAAAB-corrupted")
        errors = Recorder(vault.error_occurred)

        self.assertIsNone(vault.retrieve_key(GEMINI_API_KEY))
        self.assertEqual(errors.events[0]["type"], "decrypt-failed")
        self.assertNotIn(VALID_KEY, json.dumps(errors.events[0], default=str))

    async def test_delete_and_clear(self):
        vault = make_vault(self.config, self.keyring)
        await vault.store_key(GEMINI_API_KEY, VALID_KEY)
        deleted = Recorder(vault.api_key_deleted)
        self.assertTrue(vault.delete_gemini_api_key())
        self.assertFalse(vault.delete_gemini_api_key())
        self.assertEqual(len(deleted), 1)

        await vault.store_key("other_key", OTHER_KEY)
        cleared = Recorder(vault.storage_cleared)
        self.assertTrue(vault.clear_all())
        self.assertFalse(vault.has_key("other_key"))
        self.assertEqual(len(cleared), 1)

    def test_backend_config_round_trip(self):
        vault = make_vault(self.config, self.keyring)
        config = BackendConfig(backend=BackendName.GEMINI, model_name="gemini-2.5-pro", theme="light")
        self.assertTrue(vault.store_config(config))
        self.assertEqual(make_vault(self.config, self.keyring).retrieve_config(), config)

    def test_backend_config_rejects_unknown_backend(self):
        vault = make_vault(self.config, self.keyring)
        self.assertFalse(vault.store_config({"backend": "openai"}))
        self.assertFalse(vault.has_key(BACKEND_CONFIG))
        self.assertIsNone(vault.retrieve_config())

    async def test_migrate_from_environment(self):
        vault = make_vault(self.config, self.keyring)
        migrated = Recorder(vault.api_key_migrated)
        with patch.dict(os.environ, {"GEMINI_API_KEY": VALID_KEY}):
            result = await vault.migrate_from_environment()
            self.assertTrue(result.migrated)
            again = await vault.migrate_from_environment()
        self.assertEqual(vault.retrieve_gemini_api_key(), VALID_KEY)
        self.assertFalse(again.success)
        self.assertIn("already exists", again.error)
        self.assertEqual(migrated.events[0]["source"], "environment")

    async def test_migrate_without_variable(self):
        vault = make_vault(self.config, self.keyring)
        with patch.dict(os.environ, {}, clear=True):
            result = await vault.migrate_from_environment()
        self.assertFalse(result.success)
        self.assertFalse(vault.has_gemini_api_key())

    async def test_export_import_between_stores(self):
        source = make_vault(self.config, self.keyring)
        await source.store_key(GEMINI_API_KEY, VALID_KEY)
        exported = source.export_key(GEMINI_API_KEY)
        self.assertTrue(exported.success)
        self.assertNotIn(VALID_KEY, json.dumps(exported.data))

        target = make_vault(self.config, self.keyring, store_name="restored")
        imported = target.import_key(exported.data)
        self.assertTrue(imported.imported)
        self.assertEqual(target.retrieve_key(GEMINI_API_KEY), VALID_KEY)

        duplicate = target.import_key(exported.data)
        self.assertFalse(duplicate.success)

    async def test_import_from_other_machine_is_rejected(self):
        source = make_vault(self.config, self.keyring)
        await source.store_key(GEMINI_API_KEY, VALID_KEY)
        blob = source.export_key(GEMINI_API_KEY).data

        foreign = make_vault(make_config(self._tmp.name + "/foreign"), MemoryKeyring())
        result = foreign.import_key(blob)
        self.assertFalse(result.success)
        self.assertIn("cannot be decrypted", result.error)
        self.assertFalse(foreign.has_key(GEMINI_API_KEY))

        self.assertFalse(foreign.import_key({"key_name": GEMINI_API_KEY}).success)
        self.assertFalse(foreign.import_key("nonsense").success)

    def test_initialize_warns_on_basic_text(self):
        vault = make_vault(self.config, BrokenKeyring())
        warnings = Recorder(vault.security_warning)
        assessments = Recorder(vault.security_assessment)

        self.assertTrue(vault.initialize())
        self.assertEqual(vault.storage_backend, BASIC_TEXT)
        self.assertEqual(warnings.events[0]["type"], "basic-text-encryption")
        self.assertEqual(assessments.events[0].security_level, SecurityLevel.LOW)

    def test_initialize_secure_backend(self):
        backend = keyring_from("keyring.backends.SecretService")()
        vault = make_vault(self.config, backend)
        warnings = Recorder(vault.security_warning)
        initialized = Recorder(vault.initialized)

        self.assertTrue(vault.initialize())
        self.assertEqual(warnings.events, [])
        self.assertEqual(initialized.events[0]["security_level"], "high")
        status = vault.get_status()
        self.assertEqual(status["storage_backend"], "secret_service")
        self.assertFalse(status["has_gemini_api_key"])
        self.assertIn("Use full disk encryption (LUKS)",
                      vault.get_security_recommendations()["recommendations"])


if __name__ == "__main__":
    unittest.main()
