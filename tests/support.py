"""Seeding helpers shared by the test modules."""

import sqlite3

from ehrcore import config, db
from ehrcore.amendments import AmendmentManager
from ehrcore.directory import SqliteDirectory
from ehrcore.hashing import content_hash
from ehrcore.models import Identity, RequestMetadata
from ehrcore.util import generate_id, utc_iso

DIRECTORY = SqliteDirectory()

SOAP = {
    "soap_subjective": "Headache for three days, worse in the morning.",
    "soap_objective": "BP 128/82, HR 72, afebrile. Neuro exam normal.",
    "soap_assessment": "Tension-type headache.",
    "soap_plan": "Ibuprofen 400 mg PRN. Follow up in two weeks.",
}


def add_user(user_id, *roles):
    for role in roles:
        db.add_user_role(user_id, role)


def add_provider(user_id, provider_id=None):
    provider_id = provider_id or f"prov-{user_id}"
    add_user(user_id, "provider")
    db.add_provider(provider_id, user_id)
    return provider_id


def add_patient(patient_id, user_id=None):
    db.add_patient(patient_id, user_id)
    if user_id:
        add_user(user_id, "patient")
    return patient_id


def add_encounter(encounter_id, patient_id):
    db.add_encounter(encounter_id, patient_id)
    return encounter_id


def assign(provider_id, patient_id):
    assignment_id = generate_id()
    db.add_assignment(assignment_id, provider_id, patient_id, utc_iso())
    return assignment_id


def identity(user_id, **request):
    """Resolve an Identity the same way the HTTP layer does."""
    patient = DIRECTORY.get_patient_by_user_id(user_id)
    return Identity(
        user_id=user_id,
        roles=tuple(DIRECTORY.get_roles_for_user(user_id)),
        provider_id=DIRECTORY.get_provider_id(user_id),
        patient_id=patient["id"] if patient else None,
        request=RequestMetadata(**request),
    )


def draft_note(author, encounter_id="enc-1", note_type="progress_note", **overrides):
    fields = dict(SOAP, **overrides)
    return AmendmentManager().create_note(encounter_id, fields, author, note_type)


def raw_connection():
    """A connection outside the app, for simulating direct database tampering."""
    conn = sqlite3.connect(str(config.DB_PATH), timeout=15)
    conn.row_factory = sqlite3.Row
    return conn


def tamper_note(note_id, **changes):
    """Rewrite signed note columns behind the application's back."""
    conn = raw_connection()
    try:
        conn.execute("DROP TRIGGER IF EXISTS trg_clinical_notes_signed_immutable")
        sets = ", ".join(f"{k}=?" for k in changes)
        conn.execute(f"UPDATE clinical_notes SET {sets} WHERE id=?", (*changes.values(), note_id))
        conn.commit()
    finally:
        conn.close()


def rewrite_signature_record(note_id, **changes):
    conn = raw_connection()
    try:
        conn.execute("DROP TRIGGER IF EXISTS trg_signature_log_no_update")
        sets = ", ".join(f"{k}=?" for k in changes)
        conn.execute(f"UPDATE signature_log SET {sets} WHERE note_id=?", (*changes.values(), note_id))
        conn.commit()
    finally:
        conn.close()


def current_content_hash(note_id):
    row = db.get_note(note_id)
    return content_hash({k: row[k] for k in row.keys()})
