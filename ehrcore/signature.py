"""
Clinical note signing and verification.

Signing binds the hash of a note's SOAP content to the signing provider
and a server-generated timestamp:

    content_hash   = SHA-256(CJE(soap fields))
    signature_hash = SHA-256(content_hash | signer_id | signed_at)

The note row records the signature and a separate signature record keeps
the content hash as it was at signing time. Verification recomputes the
content hash from the note's current values and compares it with that
record; a mismatch means the signed content was altered afterwards.

State machine per note version:
    DRAFT --sign--> SIGNED (terminal; corrections go through amendments)
"""

from typing import Optional

from . import db, metrics
from .errors import AlreadySigned, NotAProvider, NoteNotFound
from .hashing import SIGNATURE_METHOD, content_hash, hashes_match, signature_hash
from .keys import KeyProvider, default_key_provider
from .logging_config import ops_log
from .models import (
    ClinicalNote,
    Identity,
    SignatureRecord,
    SignResult,
    VerificationStatus,
    VerifyResult,
)
from .util import canonicalize, generate_id, utc_iso

REASON_NOT_SIGNED = "Note is not signed"
REASON_NO_SIGNATURE_LOG = "No signature log found"
REASON_CONTENT_MODIFIED = "Content has been modified since signing"
REASON_SEAL_INVALID = "Signature record seal is invalid"


class SignatureEngine:
    """Signs notes once and verifies them any number of times."""

    def __init__(self, key_provider: Optional[KeyProvider] = None):
        self.keys = key_provider or default_key_provider()

    def _load(self, note_id: str) -> ClinicalNote:
        row = db.get_note(note_id)
        if row is None:
            raise NoteNotFound()
        return ClinicalNote.from_row(row)

    def sign(self, note_id: str, signer: Identity) -> SignResult:
        """
        Sign a draft note as the calling provider.

        Raises:
            NotAProvider: the caller has no provider record
            NoteNotFound: no such note
            AlreadySigned: the note is signed, including by a concurrent call
        """
        if not signer.provider_id:
            raise NotAProvider()

        note = self._load(note_id)
        if note.is_signed:
            raise AlreadySigned()

        # Never taken from the caller, so a signature cannot be backdated.
        signed_at = utc_iso()
        digest = content_hash(note.content_fields())
        sig_hash = signature_hash(digest, signer.provider_id, signed_at)

        record = SignatureRecord(
            id=generate_id(),
            note_id=note_id,
            signer_id=signer.provider_id,
            content_hash=digest,
            signature_hash=sig_hash,
            signed_at=signed_at,
            signature_method=SIGNATURE_METHOD,
            verification_status=VerificationStatus.VALID.value,
            ip_address=signer.request.ip_address,
            user_agent=signer.request.user_agent,
        )
        kid, seal = self.keys.seal(canonicalize(record.body_for_sealing()))
        row = dict(record.__dict__, seal_kid=kid, seal_b64=seal)

        signed, record_error = db.sign_note(note_id, signed_at, signer.provider_id, sig_hash, row)
        if not signed:
            raise AlreadySigned()

        if record_error is not None:
            metrics.increment(metrics.SIGNATURE_RECORD_WRITE_FAILURES)
            ops_log.signature_record_write_failed(note_id, record_error)

        ops_log.note_signed(note_id, signer.provider_id, sig_hash)
        return SignResult(
            signature_hash=sig_hash,
            content_hash=digest,
            signed_at=signed_at,
            record_written=record_error is None,
        )

    def verify(self, note_id: str) -> VerifyResult:
        """
        Check a note's current content against its signature record.

        Only a missing note raises; every other outcome is a VerifyResult.
        """
        note = self._load(note_id)

        if not note.is_signed or not note.signature_hash:
            result = VerifyResult(valid=False, content_intact=False, reason=REASON_NOT_SIGNED)
            ops_log.signature_verified(note_id, result.valid, result.reason)
            return result

        row = db.latest_signature_record(note_id)
        if row is None:
            result = VerifyResult(valid=False, content_intact=False, reason=REASON_NO_SIGNATURE_LOG)
            ops_log.signature_verified(note_id, result.valid, result.reason)
            return result

        record = SignatureRecord.from_row(row)
        current = content_hash(note.content_fields())
        intact = hashes_match(record.content_hash, current)

        status = record.verification_status
        if not self.keys.verify(record.seal_kid, record.seal_b64, canonicalize(record.body_for_sealing())):
            metrics.increment(metrics.SIGNATURE_SEAL_FAILURES)
            ops_log.security_event("signature_seal_invalid", severity="high", note_id=note_id)
            status = VerificationStatus.SEAL_INVALID.value

        valid = intact and status == VerificationStatus.VALID.value
        if not intact:
            reason = REASON_CONTENT_MODIFIED
        elif status == VerificationStatus.SEAL_INVALID.value:
            reason = REASON_SEAL_INVALID
        else:
            reason = None

        result = VerifyResult(
            valid=valid,
            content_intact=intact,
            signature_status=status,
            signed_at=record.signed_at,
            signer_id=record.signer_id,
            reason=reason,
        )
        ops_log.signature_verified(note_id, result.valid, result.reason)
        return result
