"""
Draft notes and amendments.

A signed note is never edited. A correction is a new unsigned note that
points back at the signed version it corrects, linked through an
AmendmentLink. Each amendment is then signed on its own, so the history
of a note is the chain root -> amendment -> amendment ...
"""

from typing import Any, Dict, List, Optional

from . import db
from .errors import (
    CannotEditSignedNote,
    MissingJustification,
    NotAProvider,
    NoteNotFound,
    OriginalNotSigned,
)
from .hashing import CONTENT_FIELDS
from .models import AmendmentLink, ClinicalNote, Identity
from .util import generate_id, utc_iso

DEFAULT_NOTE_TYPE = "progress_note"


def _content(fields: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {name: fields.get(name) for name in CONTENT_FIELDS}


class AmendmentManager:
    """Creates draft notes, edits drafts and creates amendments of signed notes."""

    def _require_provider(self, identity: Identity) -> str:
        if not identity.provider_id:
            raise NotAProvider()
        return identity.provider_id

    def _load(self, note_id: str) -> ClinicalNote:
        row = db.get_note(note_id)
        if row is None:
            raise NoteNotFound()
        return ClinicalNote.from_row(row)

    def create_note(
        self,
        encounter_id: str,
        fields: Dict[str, Any],
        identity: Identity,
        note_type: str = DEFAULT_NOTE_TYPE
    ) -> str:
        """Create an unsigned note authored by the calling provider."""
        author_id = self._require_provider(identity)
        now = utc_iso()
        note = {
            "id": generate_id(),
            "encounter_id": encounter_id,
            "author_id": author_id,
            "note_type": note_type or DEFAULT_NOTE_TYPE,
            **_content(fields),
            "is_amendment": 0,
            "amendment_reason": None,
            "amended_from_id": None,
            "created_at": now,
            "updated_at": now,
        }
        db.insert_note(note)
        return note["id"]

    def update_draft(self, note_id: str, fields: Dict[str, Any], identity: Identity) -> ClinicalNote:
        """
        Replace content fields of an unsigned note.

        Only keys present in fields are changed. A note that is signed,
        including one signed after it was loaded here, raises
        CannotEditSignedNote.
        """
        self._require_provider(identity)
        note = self._load(note_id)
        if note.is_signed:
            raise CannotEditSignedNote()

        changes = {k: v for k, v in fields.items() if k in CONTENT_FIELDS or k == "note_type"}
        if not db.update_draft_note(note_id, changes, utc_iso()):
            raise CannotEditSignedNote()
        return self._load(note_id)

    def create_amendment(
        self,
        original_note_id: str,
        new_fields: Dict[str, Any],
        reason: str,
        identity: Identity
    ) -> str:
        """
        Create an unsigned amendment of a signed note and return its id.

        The original note is only read. The amendment note and its link
        are written in one transaction.

        Raises:
            NotAProvider, NoteNotFound, OriginalNotSigned, MissingJustification
        """
        author_id = self._require_provider(identity)
        original = self._load(original_note_id)
        if not original.is_signed:
            raise OriginalNotSigned()
        if not reason or not reason.strip():
            raise MissingJustification("An amendment reason is required")

        now = utc_iso()
        amended = {
            "id": generate_id(),
            "encounter_id": original.encounter_id,
            "author_id": author_id,
            "note_type": original.note_type,
            **_content(new_fields),
            "is_amendment": 1,
            "amendment_reason": reason,
            "amended_from_id": original.id,
            "created_at": now,
            "updated_at": now,
        }
        link = {
            "id": generate_id(),
            "original_note_id": original.id,
            "amended_note_id": amended["id"],
            "amended_by": author_id,
            "amendment_reason": reason,
            "amended_at": now,
        }
        db.insert_amendment(amended, link)
        return amended["id"]

    def get(self, note_id: str) -> ClinicalNote:
        return self._load(note_id)

    def history(self, note_id: str) -> List[ClinicalNote]:
        """
        Every version of the note, root first.

        Walks amended_from_id back to the root, then forward through the
        newest amendment of each version.
        """
        note = self._load(note_id)
        while note.amended_from_id:
            note = self._load(note.amended_from_id)

        chain = [note]
        children = db.get_notes_amending(note.id)
        while children:
            chain.append(ClinicalNote.from_row(children[-1]))
            children = db.get_notes_amending(chain[-1].id)
        return chain

    def amendments_of(self, note_id: str) -> List[AmendmentLink]:
        """Amendment links of a note, newest first."""
        self._load(note_id)
        return [AmendmentLink.from_row(r) for r in db.get_amendment_links(note_id)]
