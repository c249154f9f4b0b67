import unittest

from ehrcore.errors import ValidationError
from ehrcore.security import (
    extract_client_id,
    request_metadata,
    validate_action,
    validate_identifier,
)


class TestRequestMetadata(unittest.TestCase):

    def test_forwarded_address_preferred(self):
        headers = {"x-forwarded-for": "203.0.113.9, 10.0.0.1", "user-agent": "ehr-web", "x-session-id": "s-1"}
        meta = request_metadata(headers, peer="10.0.0.1")
        self.assertEqual(meta.ip_address, "203.0.113.9")
        self.assertEqual(meta.user_agent, "ehr-web")
        self.assertEqual(meta.session_id, "s-1")

    def test_body_hash_left_for_handler(self):
        meta = request_metadata({}, peer="10.0.0.1")
        self.assertEqual(meta.ip_address, "10.0.0.1")
        self.assertIsNone(meta.request_hash)


class TestClientId(unittest.TestCase):

    def test_user_then_ip_then_anonymous(self):
        self.assertEqual(extract_client_id({}, "u-1"), "user:u-1")
        self.assertEqual(extract_client_id({"x-forwarded-for": "203.0.113.9"}), "ip:203.0.113.9")
        self.assertEqual(extract_client_id({}), "anonymous")


class TestValidation(unittest.TestCase):

    def test_identifier(self):
        self.assertEqual(validate_identifier("  note-1 ", "note_id"), "note-1")
        for bad in ("", "a b", "x" * 129, None, 7):
            with self.subTest(value=bad):
                with self.assertRaises(ValidationError):
                    validate_identifier(bad, "note_id")

    def test_action(self):
        self.assertEqual(validate_action("read"), "read")
        with self.assertRaises(ValidationError):
            validate_action("DROP TABLE")


if __name__ == "__main__":
    unittest.main()
