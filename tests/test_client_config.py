from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from smart_on_fhir.errors import InvariantViolation
from smart_on_fhir.util.client_config import (
    PUBLIC_AUTH_MODE,
    KnownFhirServer,
    SmartClientConfiguration,
    read_client_configuration,
    resolve_secret_ref,
)

BASE = {
    "clientId": "test-client",
    "scope": "openid fhirUser launch/patient",
    "callbackUrl": "http://app/callback",
    "redirectUrl": "http://app/ready",
}


class ClientConfigurationTest(unittest.TestCase):
    def test_open_configuration(self) -> None:
        config = SmartClientConfiguration.from_doc({**BASE, "allowAnyIssuer": True})

        self.assertTrue(config.is_open)
        self.assertIsNone(config.known_fhir_server("http://anything"))
        self.assertEqual(config.auth_mode("http://anything"), PUBLIC_AUTH_MODE)

    def test_known_servers_are_decoded(self) -> None:
        config = SmartClientConfiguration.from_doc(
            {
                **BASE,
                "knownFhirServers": [
                    {"issuer": "http://known-server/", "name": "Known"},
                    {
                        "issuer": "http://secret-server",
                        "type": "confidential-symmetric",
                        "method": "client_secret_post",
                        "clientSecret": "s3cret",
                    },
                ],
            }
        )

        self.assertFalse(config.is_open)
        known = config.known_fhir_server("http://known-server?foo=bar")
        self.assertIsInstance(known, KnownFhirServer)
        self.assertEqual(known.display_name, "Known")
        self.assertEqual(config.auth_mode("http://secret-server").method, "client_secret_post")
        self.assertIsNone(config.known_fhir_server("http://fhir-server"))

    def test_snake_case_aliases_are_accepted(self) -> None:
        config = SmartClientConfiguration.from_doc(
            {
                "client_id": "test-client",
                "scope": "openid",
                "callback_url": "http://app/callback",
                "redirect_url": "http://app/ready",
                "known_fhir_servers": [
                    {
                        "issuer": "http://known-server",
                        "type": "confidential-symmetric",
                        "method": "client_secret_basic",
                        "client_secret": "s3cret",
                    }
                ],
            }
        )

        self.assertEqual(config.client_id, "test-client")
        self.assertEqual(config.known_fhir_servers[0].client_secret, "s3cret")

    def test_secret_is_not_in_repr(self) -> None:
        server = KnownFhirServer(
            issuer="http://known-server",
            type="confidential-symmetric",
            method="client_secret_basic",
            client_secret="s3cret",
        )

        self.assertNotIn("s3cret", repr(server))

    def test_missing_required_fields(self) -> None:
        for name in BASE:
            with self.subTest(name=name):
                doc = {**BASE, "allowAnyIssuer": True}
                del doc[name]
                with self.assertRaisesRegex(ValueError, "missing"):
                    SmartClientConfiguration.from_doc(doc)

    def test_issuer_modes_are_exclusive(self) -> None:
        with self.assertRaisesRegex(ValueError, "cannot combine"):
            SmartClientConfiguration.from_doc(
                {**BASE, "allowAnyIssuer": True, "knownFhirServers": []}
            )
        with self.assertRaisesRegex(ValueError, "expected allow_any_issuer"):
            SmartClientConfiguration.from_doc(dict(BASE))

    def test_allow_any_issuer_false_is_an_invariant_violation(self) -> None:
        with self.assertRaises(InvariantViolation):
            SmartClientConfiguration.from_doc({**BASE, "allowAnyIssuer": False})

    def test_confidential_server_requires_method_and_secret(self) -> None:
        with self.assertRaisesRegex(ValueError, "requires method"):
            KnownFhirServer(issuer="http://s", type="confidential-symmetric").validate()
        with self.assertRaisesRegex(ValueError, "requires clientSecret"):
            KnownFhirServer(
                issuer="http://s", type="confidential-symmetric", method="client_secret_post"
            ).validate()
        with self.assertRaisesRegex(ValueError, "unknown type"):
            KnownFhirServer(issuer="http://s", type="private_key_jwt").validate()

    def test_env_secret_is_resolved_at_use_time(self) -> None:
        server = KnownFhirServer(
            issuer="http://s",
            type="confidential-symmetric",
            method="client_secret_post",
            client_secret="env://SMART_TEST_SECRET",
        )

        with mock.patch.dict(os.environ, {"SMART_TEST_SECRET": "from-env"}):
            self.assertEqual(server.resolved_secret(), "from-env")
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaisesRegex(ValueError, "SMART_TEST_SECRET"):
                server.resolved_secret()

    def test_dotenv_secret_is_read_from_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env_path = Path(tmp) / "smart.env"
            env_path.write_text('EPIC_SECRET="from-dotenv"\n', encoding="utf-8")

            self.assertEqual(resolve_secret_ref(f".env://{env_path}:EPIC_SECRET"), "from-dotenv")
            with self.assertRaisesRegex(ValueError, "not found in .env file: OTHER"):
                resolve_secret_ref(f".env://{env_path}:OTHER")

        with self.assertRaisesRegex(ValueError, "expected .env://path:VAR"):
            resolve_secret_ref(".env://no-variable")

    def test_plain_secret_is_returned_as_is(self) -> None:
        self.assertEqual(resolve_secret_ref("  s3cret "), "s3cret")


class ReadClientConfigurationTest(unittest.TestCase):
    def test_reads_json5_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "smart.json5"
            path.write_text(
                """
                // EHR test configuration
                {
                  clientId: 'test-client',
                  scope: 'openid fhirUser launch/patient',
                  callbackUrl: 'http://app/callback',
                  redirectUrl: 'http://app/ready',
                  allowAnyIssuer: true,
                }
                """,
                encoding="utf-8",
            )

            config = read_client_configuration(str(path))

        self.assertEqual(config.client_id, "test-client")
        self.assertTrue(config.is_open)

    def test_missing_file(self) -> None:
        with self.assertRaisesRegex(ValueError, "not found"):
            read_client_configuration("/nonexistent/smart.json")

    def test_non_object_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "smart.json"
            path.write_text("[1, 2, 3]", encoding="utf-8")

            with self.assertRaisesRegex(ValueError, "expected object"):
                read_client_configuration(str(path))


if __name__ == "__main__":
    unittest.main()
