"""
Domain types for ehrcore.

Rows read from the database are turned into immutable dataclasses here;
nothing in the core mutates a record object after it has been loaded.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from .hashing import CONTENT_FIELDS


class Role(str, Enum):
    """Application roles (the app_role enum of the EHR)."""
    PATIENT = "patient"
    PROVIDER = "provider"
    ADMIN = "admin"
    COMPLIANCE_OFFICER = "compliance_officer"


class VerificationStatus(str, Enum):
    VALID = "valid"
    SEAL_INVALID = "seal_invalid"


@dataclass(frozen=True)
class RequestMetadata:
    """Caller context copied onto audit rows."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    request_hash: Optional[str] = None


@dataclass(frozen=True)
class Identity:
    """
    The authenticated caller, resolved once per request.

    Passed explicitly into every core operation; the core keeps no
    session state of its own.
    """
    user_id: str
    roles: Tuple[str, ...] = ()
    provider_id: Optional[str] = None
    patient_id: Optional[str] = None
    request: RequestMetadata = field(default_factory=RequestMetadata)

    def has_role(self, role: Role) -> bool:
        return role.value in self.roles

    def has_any_role(self, *roles: Role) -> bool:
        return any(self.has_role(r) for r in roles)


@dataclass(frozen=True)
class ClinicalNote:
    id: str
    encounter_id: str
    author_id: str
    note_type: str
    soap_subjective: Optional[str]
    soap_objective: Optional[str]
    soap_assessment: Optional[str]
    soap_plan: Optional[str]
    content_encrypted: Optional[str]
    is_signed: bool
    signed_at: Optional[str]
    signed_by: Optional[str]
    signature_hash: Optional[str]
    is_amendment: bool
    amendment_reason: Optional[str]
    amended_from_id: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ClinicalNote":
        d = dict(row)
        d["is_signed"] = bool(d["is_signed"])
        d["is_amendment"] = bool(d["is_amendment"])
        return cls(**{k: d[k] for k in cls.__dataclass_fields__})

    def content_fields(self) -> Dict[str, Optional[str]]:
        """The values covered by the content hash."""
        return {name: getattr(self, name) for name in CONTENT_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


@dataclass(frozen=True)
class SignatureRecord:
    id: str
    note_id: str
    signer_id: str
    content_hash: str
    signature_hash: str
    signed_at: str
    signature_method: str
    verification_status: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    seal_kid: Optional[str] = None
    seal_b64: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SignatureRecord":
        d = dict(row)
        return cls(**{k: d.get(k) for k in cls.__dataclass_fields__})

    def body_for_sealing(self) -> Dict[str, Any]:
        """
        The record fields covered by the server seal.

        Request metadata and the seal itself are excluded.
        """
        return {
            "id": self.id,
            "note_id": self.note_id,
            "signer_id": self.signer_id,
            "content_hash": self.content_hash,
            "signature_hash": self.signature_hash,
            "signed_at": self.signed_at,
            "signature_method": self.signature_method,
        }


@dataclass(frozen=True)
class AmendmentLink:
    id: str
    original_note_id: str
    amended_note_id: str
    amended_by: str
    amendment_reason: str
    amended_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AmendmentLink":
        d = dict(row)
        return cls(**{k: d[k] for k in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


@dataclass(frozen=True)
class AccessDecision:
    """Result of an authorization check."""
    allowed: bool
    reason: str
    roles: Tuple[str, ...]
    rule: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason, "roles": list(self.roles)}


@dataclass(frozen=True)
class PhiAccessLogEntry:
    id: str
    seq: int
    timestamp: str
    user_id: str
    patient_id: Optional[str]
    resource_type: str
    resource_id: Optional[str]
    action: str
    access_reason: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    session_id: Optional[str]
    request_hash: Optional[str]
    payload_hash: str
    prev_entry_hash: Optional[str]
    entry_hash: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PhiAccessLogEntry":
        d = dict(row)
        return cls(**{k: d[k] for k in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


@dataclass(frozen=True)
class BreakGlassLogEntry:
    id: str
    user_id: str
    patient_id: str
    access_reason: str
    justification: str
    accessed_at: str
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    review_notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BreakGlassLogEntry":
        d = dict(row)
        return cls(**{k: d[k] for k in cls.__dataclass_fields__})

    def is_reviewed(self) -> bool:
        return self.reviewed_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


@dataclass(frozen=True)
class SignResult:
    signature_hash: str
    content_hash: str
    signed_at: str
    record_written: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "signature_hash": self.signature_hash,
            "content_hash": self.content_hash,
            "signed_at": self.signed_at,
        }


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    content_intact: bool
    signature_status: Optional[str] = None
    signed_at: Optional[str] = None
    signer_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "content_intact": self.content_intact,
            "signature_status": self.signature_status,
            "signed_at": self.signed_at,
            "signer_id": self.signer_id,
            "reason": self.reason,
        }
