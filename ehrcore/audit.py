"""
PHI access audit log.

Every access decision on patient data is appended here. Entries are never
updated or deleted; each one carries a payload hash and a chain hash that
links it to the entry before, so any rewrite of history is detectable by
recomputing the chain.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import config, db
from .hashing import chain_entry_hash
from .log_backends import AccessLogBackend, get_log_backend
from .models import PhiAccessLogEntry, RequestMetadata
from .util import canonicalize, generate_id, sha256_hex, utc_iso

_PAYLOAD_FIELDS = (
    "id", "timestamp", "user_id", "patient_id", "resource_type", "resource_id",
    "action", "access_reason", "ip_address", "user_agent", "session_id", "request_hash",
)


def entry_payload_hash(entry: Dict[str, Any]) -> str:
    """SHA-256 over the canonical form of an entry's recorded fields."""
    return sha256_hex(canonicalize({k: entry.get(k) for k in _PAYLOAD_FIELDS}))


class AuditLogger:
    """Writer and read-only projections for the PHI access log."""

    def __init__(self, backend: Optional[AccessLogBackend] = None):
        self.backend = backend or get_log_backend()

    def record(
        self,
        user_id: str,
        resource_type: str,
        action: str,
        patient_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        reason: Optional[str] = None,
        request: Optional[RequestMetadata] = None
    ) -> str:
        """
        Append one access log entry and return its id.

        The entry is committed before this returns. Backend errors
        propagate; callers that must not block on logging handle them.
        """
        request = request or RequestMetadata()
        entry = {
            "id": generate_id(),
            "timestamp": utc_iso(),
            "user_id": user_id,
            "patient_id": patient_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "action": action,
            "access_reason": reason,
            "ip_address": request.ip_address,
            "user_agent": request.user_agent,
            "session_id": request.session_id,
            "request_hash": request.request_hash,
        }
        entry["payload_hash"] = entry_payload_hash(entry)
        self.backend.write_entry(entry)
        return entry["id"]

    def for_patient(self, patient_id: str, limit: Optional[int] = None) -> List[PhiAccessLogEntry]:
        """A patient's own access history, newest first."""
        limit = limit or config.PATIENT_ACCESS_LOG_LIMIT
        return [PhiAccessLogEntry.from_row(r) for r in db.phi_access_logs_for_patient(patient_id, limit)]

    def between(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[PhiAccessLogEntry]:
        """Compliance view of entries in a time range, newest first."""
        limit = limit or config.COMPLIANCE_ACCESS_LOG_LIMIT
        rows = db.phi_access_logs_between(
            utc_iso(start) if start else None,
            utc_iso(end) if end else None,
            limit
        )
        return [PhiAccessLogEntry.from_row(r) for r in rows]

    def verify_chain(self, entries: Optional[Iterable[Dict[str, Any]]] = None) -> Tuple[bool, Optional[int]]:
        """
        Recompute payload and chain hashes over the whole log.

        Returns (True, None) when intact, otherwise (False, seq) of the
        first entry that does not match.
        """
        if entries is None:
            entries = db.export_phi_access_log_full()
        return verify_entries(entries)


def verify_entries(entries: Iterable[Dict[str, Any]]) -> Tuple[bool, Optional[int]]:
    prev = None
    for entry in entries:
        if entry_payload_hash(entry) != entry["payload_hash"]:
            return False, entry["seq"]
        if entry.get("prev_entry_hash") != prev:
            return False, entry["seq"]
        if chain_entry_hash(prev, entry["payload_hash"]) != entry["entry_hash"]:
            return False, entry["seq"]
        prev = entry["entry_hash"]
    return True, None
