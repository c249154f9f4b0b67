"""
Break-glass emergency access.

A clinician without a care-team assignment may still open a patient's
chart in an emergency. The access is recorded with a mandatory
justification and queued for compliance review. A review is final.
"""

from typing import List, Optional

from . import db
from .audit import AuditLogger
from .errors import AlreadyReviewed, MissingJustification, ResourceNotFound, Unauthorized
from .logging_config import ops_log
from .models import BreakGlassLogEntry, Identity, Role
from .util import generate_id, utc_iso

BREAK_GLASS_ACTION = "BREAK_GLASS"
BREAK_GLASS_RESOURCE = "patient"


class BreakGlassReviewer:
    def __init__(self, audit_logger: Optional[AuditLogger] = None):
        self.audit = audit_logger or AuditLogger()

    def record_emergency_access(
        self,
        identity: Identity,
        patient_id: str,
        reason: str,
        justification: str
    ) -> str:
        """
        Record an emergency access and return the entry id.

        Also appends a BREAK_GLASS entry to the PHI access log; a failure
        there propagates, since the emergency access must not go unrecorded.
        """
        if not justification or not justification.strip():
            raise MissingJustification("Break-glass access requires a justification")

        entry = {
            "id": generate_id(),
            "user_id": identity.user_id,
            "patient_id": patient_id,
            "access_reason": reason,
            "justification": justification,
            "accessed_at": utc_iso(),
        }
        db.insert_break_glass(entry)
        self.audit.record(
            user_id=identity.user_id,
            resource_type=BREAK_GLASS_RESOURCE,
            action=BREAK_GLASS_ACTION,
            patient_id=patient_id,
            resource_id=entry["id"],
            reason=reason,
            request=identity.request,
        )
        ops_log.break_glass(entry["id"], identity.user_id)
        return entry["id"]

    def review(self, entry_id: str, reviewer: Identity, notes: str) -> BreakGlassLogEntry:
        """Mark an entry reviewed. Only compliance officers and admins may review."""
        if not reviewer.has_any_role(Role.COMPLIANCE_OFFICER, Role.ADMIN):
            raise Unauthorized("Only compliance officers can review break-glass access")

        current = self.get(entry_id)
        if current.is_reviewed():
            raise AlreadyReviewed()

        if not db.review_break_glass(entry_id, reviewer.user_id, utc_iso(), notes):
            # Reviewed by someone else between the read and the update
            raise AlreadyReviewed()
        return self.get(entry_id)

    def get(self, entry_id: str) -> BreakGlassLogEntry:
        row = db.get_break_glass(entry_id)
        if row is None:
            raise ResourceNotFound("Break-glass entry not found")
        return BreakGlassLogEntry.from_row(row)

    def pending(self) -> List[BreakGlassLogEntry]:
        """Unreviewed entries, oldest first."""
        return [BreakGlassLogEntry.from_row(r) for r in db.pending_break_glass()]
