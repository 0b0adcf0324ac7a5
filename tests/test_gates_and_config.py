import hashlib
import unittest
from pathlib import Path

from imagebed.admission import AdmissionGate, resolve_client_address
from imagebed.auth import PASSWORD_SALT, AuthGate, hash_password
from imagebed.config import MILLIS_PER_DAY, load_settings, months_to_millis
from imagebed.errors import AdmissionDenied, AuthError, ConfigError


class AdmissionGateTests(unittest.TestCase):
    def test_allowed_address_passes(self):
        AdmissionGate("10.0.0.5").authorize("10.0.0.5")

    def test_other_address_is_denied_with_address_in_message(self):
        gate = AdmissionGate("10.0.0.5")
        with self.assertRaises(AdmissionDenied) as ctx:
            gate.authorize("10.0.0.9")
        self.assertEqual(ctx.exception.source_address, "10.0.0.9")
        self.assertIn("10.0.0.9", ctx.exception.to_payload()["message"])
        self.assertEqual(ctx.exception.status_code, 403)

    def test_no_subnet_matching(self):
        self.assertFalse(AdmissionGate("10.0.0.0/24").is_allowed("10.0.0.5"))
        self.assertFalse(AdmissionGate("10.0.0.5").is_allowed("10.0.0.50"))

    def test_forwarded_for_first_hop_wins(self):
        headers = {"X-Forwarded-For": "10.0.0.5, 172.16.0.2"}
        self.assertEqual(resolve_client_address(headers, "172.16.0.3"), "10.0.0.5")

    def test_forwarded_for_ignored_when_untrusted(self):
        headers = {"X-Forwarded-For": "10.0.0.5"}
        self.assertEqual(
            resolve_client_address(headers, "172.16.0.3", trust_forwarded_for=False),
            "172.16.0.3",
        )

    def test_falls_back_to_remote_addr(self):
        self.assertEqual(resolve_client_address({}, "192.168.1.2"), "192.168.1.2")


class AuthGateTests(unittest.TestCase):
    def test_hash_matches_salted_sha256(self):
        expected = hashlib.sha256(("secret" + PASSWORD_SALT).encode("utf-8")).hexdigest()
        self.assertEqual(hash_password("secret"), expected)

    def test_verify(self):
        gate = AuthGate(hash_password("correct"))
        self.assertTrue(gate.verify("correct"))
        for candidate in ["wrong", "", "correct ", "CORRECT", None, 123]:
            with self.subTest(candidate=candidate):
                self.assertFalse(gate.verify(candidate))

    def test_require_raises_auth_error(self):
        gate = AuthGate(hash_password("correct"))
        gate.require("correct")
        with self.assertRaises(AuthError) as ctx:
            gate.require("wrong")
        self.assertEqual(ctx.exception.to_payload(), {"message": "Incorrect password."})

    def test_repr_hides_hash(self):
        digest = hash_password("correct")
        self.assertNotIn(digest, repr(AuthGate(digest)))


class LoadSettingsTests(unittest.TestCase):
    def _environ(self, **overrides):
        environ = {"ALLOWED_IP": "10.0.0.5", "ADMIN_RAW_PASSWORD": "correct"}
        environ.update(overrides)
        return {key: value for key, value in environ.items() if value is not None}

    def test_loads_required_values(self):
        settings = load_settings(self._environ(IMAGEBED_UPLOADS_DIR="/tmp/imagebed-test"))
        self.assertEqual(settings.allowed_ip, "10.0.0.5")
        self.assertEqual(settings.admin_password_hash, hash_password("correct"))
        self.assertEqual(settings.retention_months, 0)
        self.assertFalse(settings.retention_enabled)
        self.assertEqual(settings.uploads_dir, Path("/tmp/imagebed-test").resolve())

    def test_raw_password_not_retained(self):
        settings = load_settings(self._environ())
        self.assertNotIn("correct", [str(value) for value in vars(settings).values()])
        self.assertNotIn(settings.admin_password_hash, repr(settings))

    def test_precomputed_hash(self):
        digest = hash_password("other")
        settings = load_settings(
            self._environ(ADMIN_RAW_PASSWORD=None, ADMIN_PASSWORD_HASH=digest.upper())
        )
        self.assertEqual(settings.admin_password_hash, digest)

    def test_missing_allowed_ip_is_fatal(self):
        with self.assertRaises(ConfigError):
            load_settings(self._environ(ALLOWED_IP=None))
        with self.assertRaises(ConfigError):
            load_settings(self._environ(ALLOWED_IP="  "))

    def test_missing_credential_is_fatal(self):
        with self.assertRaises(ConfigError):
            load_settings(self._environ(ADMIN_RAW_PASSWORD=None))

    def test_negative_retention_is_fatal(self):
        with self.assertRaises(ConfigError):
            load_settings(self._environ(CLEANUP_MONTHS="-1"))

    def test_retention_months_to_millis(self):
        settings = load_settings(self._environ(CLEANUP_MONTHS="2"))
        self.assertTrue(settings.retention_enabled)
        self.assertEqual(settings.retention_max_age_ms, 60 * MILLIS_PER_DAY)
        self.assertEqual(months_to_millis(0), 0)

    def test_invalid_numbers_fall_back_to_defaults(self):
        settings = load_settings(
            self._environ(
                CLEANUP_MONTHS="soon",
                CLEANUP_INTERVAL_MINUTES="often",
                MAX_UPLOAD_SIZE_MB="big",
            )
        )
        self.assertEqual(settings.retention_months, 0)
        self.assertEqual(settings.cleanup_interval_minutes, 1440)
        self.assertEqual(settings.max_upload_size_mb, 500)

    def test_settings_are_immutable(self):
        settings = load_settings(self._environ())
        with self.assertRaises(AttributeError):
            settings.allowed_ip = "10.0.0.9"


if __name__ == "__main__":
    unittest.main()
