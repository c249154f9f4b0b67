"""
ehrcore: clinical note integrity and PHI access control.

Core components:
- hashing: content and signature hashes of SOAP notes
- signature: sign once, verify any number of times
- amendments: corrections of signed notes as new linked versions
- access: role and care-team based access decisions
- audit: hash-chained PHI access log
- break_glass: emergency access and compliance review
"""

__version__ = "1.0.0"

from .access import AccessDecisionEngine, PolicyRule, RuleOutcome, READ_ONLY_ACTIONS
from .amendments import AmendmentManager
from .audit import AuditLogger
from .break_glass import BreakGlassReviewer
from .directory import Directory, InMemoryDirectory, SqliteDirectory
from .errors import (
    EhrCoreError,
    AlreadySigned,
    NotAProvider,
    NoteNotFound,
    OriginalNotSigned,
    MissingJustification,
    CannotEditSignedNote,
    Unauthorized,
    AlreadyReviewed,
    InvalidCredential,
    ResourceNotFound,
    ValidationError,
)
from .hashing import content_hash, signature_hash
from .models import AccessDecision, Identity, RequestMetadata, Role, SignResult, VerifyResult
from .signature import SignatureEngine

__all__ = [
    "__version__",
    "AccessDecisionEngine",
    "PolicyRule",
    "RuleOutcome",
    "READ_ONLY_ACTIONS",
    "AmendmentManager",
    "AuditLogger",
    "BreakGlassReviewer",
    "Directory",
    "InMemoryDirectory",
    "SqliteDirectory",
    "EhrCoreError",
    "AlreadySigned",
    "NotAProvider",
    "NoteNotFound",
    "OriginalNotSigned",
    "MissingJustification",
    "CannotEditSignedNote",
    "Unauthorized",
    "AlreadyReviewed",
    "InvalidCredential",
    "ResourceNotFound",
    "ValidationError",
    "content_hash",
    "signature_hash",
    "AccessDecision",
    "Identity",
    "RequestMetadata",
    "Role",
    "SignResult",
    "VerifyResult",
    "SignatureEngine",
]
