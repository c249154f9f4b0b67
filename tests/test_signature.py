"""
Signature Engine Test Suite

Critical properties tested:
    A note is signed at most once, even under concurrent signers.
    Any change to signed content is detected by verify.
    Verify is a pure read.
"""

import os
import re
import shutil
import sqlite3
import stat
import tempfile
import threading
import unittest
from unittest import mock

from ehrcore import config, db, keys, metrics
from ehrcore.errors import AlreadySigned, NoteNotFound, NotAProvider
from ehrcore.hashing import signature_hash
from ehrcore.keys import EphemeralKeyProvider
from ehrcore.models import ClinicalNote, Identity
from ehrcore.signature import (
    REASON_CONTENT_MODIFIED,
    REASON_NO_SIGNATURE_LOG,
    REASON_NOT_SIGNED,
    REASON_SEAL_INVALID,
    SignatureEngine,
)

from support import (
    add_provider,
    current_content_hash,
    draft_note,
    identity,
    rewrite_signature_record,
    tamper_note,
)

ISO_MS_Z = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


class SignatureTestCase(unittest.TestCase):

    def setUp(self):
        self.keys = EphemeralKeyProvider()
        self.engine = SignatureEngine(self.keys)
        self.provider_id = add_provider("user-dr-a", "prov-a")
        self.dr = identity("user-dr-a", ip_address="10.0.0.5", user_agent="pytest-agent")
        self.note_id = draft_note(self.dr)


class TestSign(SignatureTestCase):

    def test_sign_marks_note_signed(self):
        result = self.engine.sign(self.note_id, self.dr)

        note = ClinicalNote.from_row(db.get_note(self.note_id))
        self.assertTrue(note.is_signed)
        self.assertEqual(note.signed_by, "prov-a")
        self.assertEqual(note.signed_at, result.signed_at)
        self.assertEqual(note.signature_hash, result.signature_hash)
        self.assertTrue(result.record_written)

    def test_signature_hash_binds_content_signer_and_time(self):
        result = self.engine.sign(self.note_id, self.dr)

        self.assertRegex(result.signed_at, ISO_MS_Z)
        self.assertEqual(result.content_hash, current_content_hash(self.note_id))
        self.assertEqual(
            result.signature_hash,
            signature_hash(result.content_hash, "prov-a", result.signed_at)
        )

    def test_signature_record_written(self):
        result = self.engine.sign(self.note_id, self.dr)

        record = db.latest_signature_record(self.note_id)
        self.assertEqual(record["signer_id"], "prov-a")
        self.assertEqual(record["content_hash"], result.content_hash)
        self.assertEqual(record["signature_hash"], result.signature_hash)
        self.assertEqual(record["signature_method"], "SHA-256")
        self.assertEqual(record["verification_status"], "valid")
        self.assertEqual(record["ip_address"], "10.0.0.5")
        self.assertEqual(record["user_agent"], "pytest-agent")
        self.assertEqual(record["seal_kid"], "ehrcore-ephemeral")
        self.assertTrue(record["seal_b64"])

    def test_sign_twice_rejected(self):
        first = self.engine.sign(self.note_id, self.dr)

        with self.assertRaises(AlreadySigned):
            self.engine.sign(self.note_id, self.dr)

        note = db.get_note(self.note_id)
        self.assertEqual(note["signature_hash"], first.signature_hash)

    def test_non_provider_rejected(self):
        patient = Identity(user_id="user-pat", roles=("patient",))
        with self.assertRaises(NotAProvider):
            self.engine.sign(self.note_id, patient)
        self.assertEqual(db.get_note(self.note_id)["is_signed"], 0)

    def test_missing_note(self):
        with self.assertRaises(NoteNotFound):
            self.engine.sign("no-such-note", self.dr)

    def test_to_dict_wire_shape(self):
        body = self.engine.sign(self.note_id, self.dr).to_dict()
        self.assertEqual(set(body), {"success", "signature_hash", "content_hash", "signed_at"})
        self.assertTrue(body["success"])

    def test_concurrent_signers_exactly_one_wins(self):
        add_provider("user-dr-b", "prov-b")
        signers = [self.dr, identity("user-dr-b")]
        barrier = threading.Barrier(len(signers))
        outcomes = []
        lock = threading.Lock()

        def attempt(signer):
            engine = SignatureEngine(self.keys)
            barrier.wait()
            try:
                engine.sign(self.note_id, signer)
                outcome = "signed"
            except AlreadySigned:
                outcome = "already_signed"
            finally:
                db.close_connection()
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt, args=(s,)) for s in signers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        self.assertEqual(sorted(outcomes), ["already_signed", "signed"])
        count = db._get_connection().execute(
            "SELECT COUNT(*) AS cnt FROM signature_log WHERE note_id=?", (self.note_id,)
        ).fetchone()["cnt"]
        self.assertEqual(count, 1)

    def test_record_write_failure_still_signs(self):
        with mock.patch("ehrcore.db._insert_signature_record",
                        side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertLogs("ehrcore.ops", level="ERROR") as cm:
                result = self.engine.sign(self.note_id, self.dr)

        self.assertFalse(result.record_written)
        self.assertTrue(any("SIGNATURE_RECORD_WRITE_FAILED" in line for line in cm.output))
        self.assertEqual(metrics.get(metrics.SIGNATURE_RECORD_WRITE_FAILURES), 1)
        self.assertEqual(db.get_note(self.note_id)["is_signed"], 1)
        self.assertIsNone(db.latest_signature_record(self.note_id))

        verdict = self.engine.verify(self.note_id)
        self.assertFalse(verdict.valid)
        self.assertEqual(verdict.reason, REASON_NO_SIGNATURE_LOG)


class TestVerify(SignatureTestCase):

    def test_untouched_note_is_valid(self):
        signed = self.engine.sign(self.note_id, self.dr)
        result = self.engine.verify(self.note_id)

        self.assertTrue(result.valid)
        self.assertTrue(result.content_intact)
        self.assertEqual(result.signature_status, "valid")
        self.assertEqual(result.signed_at, signed.signed_at)
        self.assertEqual(result.signer_id, "prov-a")
        self.assertIsNone(result.reason)

    def test_unsigned_note(self):
        result = self.engine.verify(self.note_id)
        self.assertFalse(result.valid)
        self.assertFalse(result.content_intact)
        self.assertEqual(result.reason, REASON_NOT_SIGNED)

    def test_missing_note_raises(self):
        with self.assertRaises(NoteNotFound):
            self.engine.verify("no-such-note")

    def test_verify_is_idempotent(self):
        self.engine.sign(self.note_id, self.dr)
        before = dict(db.get_note(self.note_id))

        first = self.engine.verify(self.note_id).to_dict()
        second = self.engine.verify(self.note_id).to_dict()

        self.assertEqual(first, second)
        self.assertEqual(dict(db.get_note(self.note_id)), before)

    def test_tampered_content_detected(self):
        self.engine.sign(self.note_id, self.dr)
        tamper_note(self.note_id, soap_plan="Oxycodone 30 mg QID")

        result = self.engine.verify(self.note_id)
        self.assertFalse(result.valid)
        self.assertFalse(result.content_intact)
        self.assertEqual(result.reason, REASON_CONTENT_MODIFIED)

    def test_single_whitespace_tamper_detected(self):
        self.engine.sign(self.note_id, self.dr)
        note = db.get_note(self.note_id)
        tamper_note(self.note_id, soap_subjective=note["soap_subjective"] + " ")

        self.assertFalse(self.engine.verify(self.note_id).content_intact)

    def test_rewritten_record_breaks_seal(self):
        self.engine.sign(self.note_id, self.dr)
        tamper_note(self.note_id, soap_assessment="Migraine")
        rewrite_signature_record(self.note_id, content_hash=current_content_hash(self.note_id))

        result = self.engine.verify(self.note_id)
        self.assertTrue(result.content_intact)
        self.assertFalse(result.valid)
        self.assertEqual(result.signature_status, "seal_invalid")
        self.assertEqual(result.reason, REASON_SEAL_INVALID)
        self.assertEqual(metrics.get(metrics.SIGNATURE_SEAL_FAILURES), 1)

    def test_unknown_seal_key(self):
        self.engine.sign(self.note_id, self.dr)

        other = SignatureEngine(EphemeralKeyProvider())
        result = other.verify(self.note_id)
        self.assertFalse(result.valid)
        self.assertEqual(result.signature_status, "seal_invalid")

    def test_signed_content_immutable_in_database(self):
        self.engine.sign(self.note_id, self.dr)
        with self.assertRaises(sqlite3.DatabaseError):
            with db._transaction() as conn:
                conn.execute("UPDATE clinical_notes SET soap_plan='changed' WHERE id=?", (self.note_id,))
        self.assertTrue(self.engine.verify(self.note_id).valid)



class TestKeyProvisioning(unittest.TestCase):
    """Seals made by one engine verify in any other engine of the deployment."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="ehrcore-keys-")
        self.key_path = os.path.join(self.tmpdir, "seal.json")
        patches = [
            mock.patch.object(config, "SIGNER_TYPE", "file"),
            mock.patch.object(config, "SIGNING_KEY_PATH", self.key_path),
            mock.patch.object(keys, "_default_provider", None),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)
        self.addCleanup(shutil.rmtree, self.tmpdir, True)

        add_provider("user-dr-a", "prov-a")
        self.dr = identity("user-dr-a")
        self.note_id = draft_note(self.dr)

    def test_separate_engines_share_the_seal_key(self):
        SignatureEngine().sign(self.note_id, self.dr)
        result = SignatureEngine().verify(self.note_id)
        self.assertTrue(result.valid)
        self.assertEqual(result.signature_status, "valid")

    def test_missing_key_file_is_generated_once(self):
        first = keys.get_key_provider()
        self.assertIsInstance(first, keys.FileKeyProvider)
        self.assertTrue(os.path.exists(self.key_path))
        self.assertEqual(stat.S_IMODE(os.stat(self.key_path).st_mode), 0o600)

        second = keys.get_key_provider()
        self.assertEqual(first.verify_keys(), second.verify_keys())

    def test_seals_survive_restart(self):
        SignatureEngine().sign(self.note_id, self.dr)
        with mock.patch.object(keys, "_default_provider", None):
            self.assertTrue(SignatureEngine().verify(self.note_id).valid)

    def test_production_requires_key_file(self):
        with mock.patch.object(config, "ENV", "prod"):
            with self.assertRaises(FileNotFoundError):
                keys.get_key_provider()
        self.assertFalse(os.path.exists(self.key_path))


if __name__ == "__main__":
    unittest.main()
