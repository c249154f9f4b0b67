"""
Collaborator lookups consumed by the core.

The user, provider, patient, assignment and encounter records are owned by the
wider EHR. The core only reads them, through the Directory interface.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from . import db
from .util import utc_iso


class Directory(ABC):
    """Read-only view of identities, roles and care-team assignments."""

    @abstractmethod
    def get_roles_for_user(self, user_id: str) -> List[str]:
        pass

    @abstractmethod
    def get_provider_id(self, user_id: str) -> Optional[str]:
        """Provider record id for a user, or None if the user is not a provider."""
        pass

    @abstractmethod
    def get_patient_by_user_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_active_assignment(self, provider_id: str, patient_id: str) -> Optional[Dict[str, Any]]:
        """An assignment between provider and patient with revoked_at unset, or None."""
        pass

    @abstractmethod
    def get_encounter_patient_id(self, encounter_id: str) -> Optional[str]:
        """Patient an encounter belongs to, or None for an unknown encounter."""
        pass


class SqliteDirectory(Directory):
    """Directory backed by the collaborator tables in the ehrcore database."""

    def get_roles_for_user(self, user_id: str) -> List[str]:
        return db.get_roles_for_user(user_id)

    def get_provider_id(self, user_id: str) -> Optional[str]:
        row = db.get_provider_by_user_id(user_id)
        return row['id'] if row else None

    def get_patient_by_user_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        row = db.get_patient_by_user_id(user_id)
        return dict(row) if row else None

    def get_active_assignment(self, provider_id: str, patient_id: str) -> Optional[Dict[str, Any]]:
        row = db.get_active_assignment(provider_id, patient_id)
        return dict(row) if row else None

    def get_encounter_patient_id(self, encounter_id: str) -> Optional[str]:
        row = db.get_encounter(encounter_id)
        return row["patient_id"] if row else None


class InMemoryDirectory(Directory):
    """
    In-memory directory for development/testing.

    WARNING: Not suitable for production.
    """

    def __init__(self):
        self._roles: Dict[str, List[str]] = {}
        self._providers: Dict[str, str] = {}
        self._patients: Dict[str, Dict[str, Any]] = {}
        self._assignments: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._encounters: Dict[str, str] = {}
        self._lock = threading.Lock()

    def add_user(self, user_id: str, *roles: str) -> None:
        with self._lock:
            self._roles.setdefault(user_id, [])
            for role in roles:
                if role not in self._roles[user_id]:
                    self._roles[user_id].append(role)

    def add_provider(self, provider_id: str, user_id: str) -> None:
        with self._lock:
            self._providers[user_id] = provider_id

    def add_patient(self, patient_id: str, user_id: Optional[str] = None) -> None:
        with self._lock:
            self._patients[patient_id] = {"id": patient_id, "user_id": user_id}

    def add_encounter(self, encounter_id: str, patient_id: str) -> None:
        with self._lock:
            self._encounters[encounter_id] = patient_id

    def assign(self, provider_id: str, patient_id: str) -> None:
        with self._lock:
            self._assignments[(provider_id, patient_id)] = {
                "provider_id": provider_id,
                "patient_id": patient_id,
                "assigned_at": utc_iso(),
                "revoked_at": None,
            }

    def revoke(self, provider_id: str, patient_id: str) -> None:
        with self._lock:
            assignment = self._assignments.get((provider_id, patient_id))
            if assignment and assignment["revoked_at"] is None:
                assignment["revoked_at"] = utc_iso()

    def get_roles_for_user(self, user_id: str) -> List[str]:
        with self._lock:
            return sorted(self._roles.get(user_id, []))

    def get_provider_id(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._providers.get(user_id)

    def get_patient_by_user_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for patient in self._patients.values():
                if patient["user_id"] == user_id:
                    return dict(patient)
            return None

    def get_active_assignment(self, provider_id: str, patient_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            assignment = self._assignments.get((provider_id, patient_id))
            if assignment and assignment["revoked_at"] is None:
                return dict(assignment)
            return None

    def get_encounter_patient_id(self, encounter_id: str) -> Optional[str]:
        with self._lock:
            return self._encounters.get(encounter_id)
