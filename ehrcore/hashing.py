"""
Clinical note content hashing.

All digests are SHA-256 with lowercase hexadecimal output. The set and
order of hashed fields is fixed here, never taken from the caller, so the
same note content always produces the same bytes.
"""

import json
from typing import Any, Mapping, Optional

from .util import sha256_hex, constant_time_compare

# Fields that make up the signed content of a note.
CONTENT_FIELDS = (
    "soap_subjective",
    "soap_objective",
    "soap_assessment",
    "soap_plan",
    "content_encrypted",
)

SOAP_FIELDS = CONTENT_FIELDS[:4]

SIGNATURE_METHOD = "SHA-256"


def content_payload(fields: Mapping[str, Any]) -> bytes:
    """
    Build the byte payload for a note's content.

    Keys appear in CONTENT_FIELDS order, unsorted, as compact UTF-8 JSON
    with non-ASCII text left unescaped. Missing keys serialize as null and
    unknown keys are dropped, so callers cannot influence which fields are
    covered by the digest. The bytes equal JSON.stringify of the same
    object literal, so digests computed by JavaScript signers interoperate.
    """
    body = {}
    for name in CONTENT_FIELDS:
        value = fields.get(name)
        if value is not None and not isinstance(value, str):
            raise TypeError(f"{name} must be a string or None, got {type(value).__name__}")
        body[name] = value
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def content_hash(fields: Mapping[str, Any]) -> str:
    """
    Compute the content hash of a note.

    content_hash = SHA-256(JSON({subjective, objective, assessment, plan, encrypted}))
    """
    return sha256_hex(content_payload(fields))


def signature_hash(content_digest: str, signer_id: str, signed_at: str) -> str:
    """
    Bind a content hash to a signer and a signing time.

    signature_hash = SHA-256("<content_hash>|<signer_id>|<signed_at>")
    """
    return sha256_hex(f"{content_digest}|{signer_id}|{signed_at}")


def hashes_match(expected: Optional[str], actual: Optional[str]) -> bool:
    """Constant-time digest comparison; a missing digest never matches."""
    if not expected or not actual:
        return False
    return constant_time_compare(expected, actual)


def chain_entry_hash(prev_entry_hash: Optional[str], payload_hash: str) -> str:
    """
    Compute the hash chain entry hash.

    Creates a hash that links to the previous entry, forming
    an append-only chain.
    """
    data = (prev_entry_hash or "").encode("utf-8") + payload_hash.encode("utf-8")
    return sha256_hex(data)
