from __future__ import annotations

import unittest
from unittest import mock

from smart_on_fhir.errors import ErrorKind, InvariantViolation, SmartError, is_error
from smart_on_fhir.util import common


class CommonTest(unittest.TestCase):
    def test_normalize_issuer(self) -> None:
        self.assertEqual(common.normalize_issuer("http://known-server/"), "http://known-server")
        self.assertEqual(
            common.normalize_issuer("http://known-server?foo=bar"), "http://known-server"
        )
        self.assertEqual(
            common.normalize_issuer("http://known-server/fhir/r4/?x=1"),
            "http://known-server/fhir/r4",
        )

    def test_with_query_params_appends_and_replaces(self) -> None:
        self.assertEqual(
            common.with_query_params("http://app/ready", {"patient": "p-1"}),
            "http://app/ready?patient=p-1",
        )
        self.assertEqual(
            common.with_query_params("http://app/ready?tab=2&patient=old", {"patient": "p-1"}),
            "http://app/ready?tab=2&patient=p-1",
        )

    def test_infer_resource_type(self) -> None:
        self.assertEqual(common.infer_resource_type("Patient/123"), "Patient")
        self.assertEqual(common.infer_resource_type("/Encounter/1"), "Encounter")
        self.assertEqual(common.infer_resource_type("Observation?patient=1"), "Observation")
        self.assertEqual(common.infer_resource_type("///"), "Unknown")

    def test_normalize_url_requires_absolute_url(self) -> None:
        self.assertEqual(common.normalize_url(" http://app/cb ", field="x"), "http://app/cb")
        with self.assertRaisesRegex(ValueError, "callback_url must be an absolute URL"):
            common.normalize_url("/cb", field="callback_url")

    def test_session_id_must_not_be_empty(self) -> None:
        with self.assertRaisesRegex(ValueError, "missing or empty"):
            common.assert_good_session_id("")
        with self.assertRaises(ValueError):
            common.assert_good_session_id(None)

    def test_short_session_id_only_rejected_in_production(self) -> None:
        with mock.patch.dict("os.environ", {"SMART_ON_FHIR_ENV": "development"}):
            self.assertEqual(common.assert_good_session_id("abc"), "abc")
        with mock.patch.dict("os.environ", {"SMART_ON_FHIR_ENV": "production"}):
            with self.assertRaisesRegex(ValueError, "too short"):
                common.assert_good_session_id("abc")
            self.assertEqual(common.assert_good_session_id("0123456789"), "0123456789")


class ErrorsTest(unittest.TestCase):
    def test_smart_error_is_a_value(self) -> None:
        error = SmartError(ErrorKind.NO_STATE)

        self.assertEqual(error, SmartError(ErrorKind.NO_STATE))
        self.assertEqual(str(error), "NO_STATE")
        self.assertTrue(is_error(error))
        self.assertFalse(is_error({"error": "NO_STATE"}))

    def test_invariant_violation_is_prefixed(self) -> None:
        exc = InvariantViolation("cache is disabled")

        self.assertIsInstance(exc, RuntimeError)
        self.assertEqual(str(exc), "Invariant violation: cache is disabled")


if __name__ == "__main__":
    unittest.main()
