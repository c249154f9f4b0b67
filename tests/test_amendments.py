"""
Amendment Manager Test Suite

Critical invariant tested:
    A signed note is never modified; corrections are new linked versions.
"""

import sqlite3
import unittest

from ehrcore import db
from ehrcore.amendments import AmendmentManager
from ehrcore.errors import (
    CannotEditSignedNote,
    MissingJustification,
    NoteNotFound,
    NotAProvider,
    OriginalNotSigned,
)
from ehrcore.keys import EphemeralKeyProvider
from ehrcore.models import Identity
from ehrcore.signature import SignatureEngine

from support import SOAP, add_provider, draft_note, identity


class AmendmentTestCase(unittest.TestCase):

    def setUp(self):
        self.manager = AmendmentManager()
        self.signatures = SignatureEngine(EphemeralKeyProvider())
        add_provider("user-dr-a", "prov-a")
        add_provider("user-dr-b", "prov-b")
        self.dr_a = identity("user-dr-a")
        self.dr_b = identity("user-dr-b")
        self.original_id = draft_note(self.dr_a, encounter_id="enc-42", note_type="consult_note")

    def _signed_original(self):
        self.signatures.sign(self.original_id, self.dr_a)
        return dict(db.get_note(self.original_id))


class TestDrafts(AmendmentTestCase):

    def test_create_note_is_unsigned_draft(self):
        note = self.manager.get(self.original_id)
        self.assertFalse(note.is_signed)
        self.assertFalse(note.is_amendment)
        self.assertEqual(note.author_id, "prov-a")
        self.assertEqual(note.encounter_id, "enc-42")
        self.assertEqual(note.soap_plan, SOAP["soap_plan"])

    def test_default_note_type(self):
        note_id = self.manager.create_note("enc-1", dict(SOAP), self.dr_a)
        self.assertEqual(self.manager.get(note_id).note_type, "progress_note")

    def test_create_note_requires_provider(self):
        with self.assertRaises(NotAProvider):
            self.manager.create_note("enc-1", dict(SOAP), Identity(user_id="someone"))

    def test_update_draft_changes_only_given_fields(self):
        updated = self.manager.update_draft(self.original_id, {"soap_plan": "Naproxen 250 mg"}, self.dr_a)
        self.assertEqual(updated.soap_plan, "Naproxen 250 mg")
        self.assertEqual(updated.soap_subjective, SOAP["soap_subjective"])

    def test_update_draft_ignores_non_content_fields(self):
        updated = self.manager.update_draft(
            self.original_id, {"is_signed": 1, "signed_by": "prov-x", "soap_plan": "Rest"}, self.dr_a
        )
        self.assertFalse(updated.is_signed)
        self.assertIsNone(updated.signed_by)

    def test_update_signed_note_rejected(self):
        before = self._signed_original()
        with self.assertRaises(CannotEditSignedNote):
            self.manager.update_draft(self.original_id, {"soap_plan": "changed"}, self.dr_a)
        self.assertEqual(dict(db.get_note(self.original_id)), before)

    def test_conditional_update_refuses_signed_row(self):
        self._signed_original()
        self.assertFalse(db.update_draft_note(self.original_id, {"soap_plan": "x"}, "2030-01-01T00:00:00.000Z"))


class TestCreateAmendment(AmendmentTestCase):

    def test_amendment_links_to_signed_original(self):
        self._signed_original()
        amended_id = self.manager.create_amendment(
            self.original_id, dict(SOAP, soap_plan="Ibuprofen 200 mg PRN"), "Dose transcription error", self.dr_b
        )

        amended = self.manager.get(amended_id)
        self.assertTrue(amended.is_amendment)
        self.assertFalse(amended.is_signed)
        self.assertEqual(amended.amended_from_id, self.original_id)
        self.assertEqual(amended.amendment_reason, "Dose transcription error")
        self.assertEqual(amended.author_id, "prov-b")
        self.assertEqual(amended.encounter_id, "enc-42")
        self.assertEqual(amended.note_type, "consult_note")

        links = self.manager.amendments_of(self.original_id)
        self.assertEqual(len(links), 1)
        self.assertEqual(links[0].amended_note_id, amended_id)
        self.assertEqual(links[0].amended_by, "prov-b")
        self.assertEqual(links[0].amendment_reason, "Dose transcription error")

    def test_original_untouched_and_still_verifies(self):
        before = self._signed_original()
        self.manager.create_amendment(self.original_id, {"soap_plan": "New plan"}, "Correction", self.dr_a)

        self.assertEqual(dict(db.get_note(self.original_id)), before)
        self.assertTrue(self.signatures.verify(self.original_id).valid)

    def test_amendment_signed_independently(self):
        self._signed_original()
        amended_id = self.manager.create_amendment(self.original_id, {"soap_plan": "New plan"}, "Correction", self.dr_a)

        result = self.signatures.sign(amended_id, self.dr_a)
        self.assertNotEqual(result.signature_hash, db.get_note(self.original_id)["signature_hash"])
        self.assertTrue(self.signatures.verify(amended_id).valid)
        self.assertTrue(self.signatures.verify(self.original_id).valid)

    def test_unsigned_original_rejected(self):
        with self.assertRaises(OriginalNotSigned):
            self.manager.create_amendment(self.original_id, {}, "Correction", self.dr_a)

    def test_blank_reason_rejected(self):
        self._signed_original()
        for reason in ("", "   ", None):
            with self.subTest(reason=reason):
                with self.assertRaises(MissingJustification):
                    self.manager.create_amendment(self.original_id, {}, reason, self.dr_a)
        self.assertEqual(self.manager.amendments_of(self.original_id), [])

    def test_missing_original(self):
        with self.assertRaises(NoteNotFound):
            self.manager.create_amendment("no-such-note", {}, "Correction", self.dr_a)

    def test_requires_provider(self):
        self._signed_original()
        with self.assertRaises(NotAProvider):
            self.manager.create_amendment(self.original_id, {}, "Correction", Identity(user_id="user-admin", roles=("admin",)))

    def test_several_amendments_newest_first(self):
        self._signed_original()
        first = self.manager.create_amendment(self.original_id, {"soap_plan": "A"}, "First", self.dr_a)
        second = self.manager.create_amendment(self.original_id, {"soap_plan": "B"}, "Second", self.dr_b)

        links = self.manager.amendments_of(self.original_id)
        self.assertEqual([l.amended_note_id for l in links], [second, first])


class TestHistory(AmendmentTestCase):

    def test_version_chain_root_first(self):
        self._signed_original()
        a1 = self.manager.create_amendment(self.original_id, {"soap_plan": "A1"}, "First correction", self.dr_a)
        self.signatures.sign(a1, self.dr_a)
        a2 = self.manager.create_amendment(a1, {"soap_plan": "A2"}, "Second correction", self.dr_a)

        expected = [self.original_id, a1, a2]
        for start in expected:
            with self.subTest(start=start):
                self.assertEqual([n.id for n in self.manager.history(start)], expected)

    def test_history_of_unamended_note(self):
        self.assertEqual([n.id for n in self.manager.history(self.original_id)], [self.original_id])

    def test_history_missing_note(self):
        with self.assertRaises(NoteNotFound):
            self.manager.history("no-such-note")


class TestStorageGuards(AmendmentTestCase):

    def test_notes_cannot_be_deleted(self):
        with self.assertRaises(sqlite3.DatabaseError):
            with db._transaction() as conn:
                conn.execute("DELETE FROM clinical_notes WHERE id=?", (self.original_id,))
        self.assertIsNotNone(db.get_note(self.original_id))

    def test_amendment_links_are_append_only(self):
        self._signed_original()
        self.manager.create_amendment(self.original_id, {"soap_plan": "A"}, "Correction", self.dr_a)
        with self.assertRaises(sqlite3.DatabaseError):
            with db._transaction() as conn:
                conn.execute("UPDATE note_amendments SET amendment_reason='rewritten'")


if __name__ == "__main__":
    unittest.main()
