"""
Security module for ehrcore.

Provides input validation, request metadata extraction and rate-limit
keys.
"""

import re
from typing import Any, Dict, Mapping, Optional

from .errors import ValidationError
from .models import RequestMetadata


# ============================================================
# Input Validation
# ============================================================

IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9_.:-]{1,128}$')
ACTION_PATTERN = re.compile(r'^[a-z][a-z0-9_]{0,63}$')

MAX_SOAP_FIELD_LENGTH = 100_000
MAX_REASON_LENGTH = 2000


def validate_identifier(value: Any, field_name: str) -> str:
    """Strip and check a record identifier (note, patient, entry ids)."""
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")

    value = value.strip()

    if not value:
        raise ValidationError(field_name, "cannot be empty")

    if not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(field_name, "invalid format")

    return value


def validate_action(value: Any, field_name: str = "action") -> str:
    """Validate an access-control action name such as 'read' or 'update'."""
    if not isinstance(value, str) or not ACTION_PATTERN.match(value):
        raise ValidationError(field_name, "invalid format")
    return value


def validate_string_length(
    value: str,
    field_name: str,
    min_length: int = 1,
    max_length: int = 1000
) -> str:
    """Type- and length-check a free-text field, returning it unchanged."""
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")

    if len(value) < min_length:
        raise ValidationError(field_name, f"must be at least {min_length} characters")

    if len(value) > max_length:
        raise ValidationError(field_name, f"must not exceed {max_length} characters")

    return value


def validate_note_fields(fields: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
    """Length-check the SOAP and encrypted content fields that are present."""
    result = {}
    for name, value in fields.items():
        if value is not None:
            validate_string_length(value, name, min_length=0, max_length=MAX_SOAP_FIELD_LENGTH)
        result[name] = value
    return result


# ============================================================
# Request Metadata
# ============================================================

def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> Optional[str]:
    """First X-Forwarded-For hop, else the socket peer address."""
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(',')[0].strip()
    return peer


def request_metadata(headers: Mapping[str, str], peer: Optional[str] = None) -> RequestMetadata:
    """
    Caller context copied onto audit rows.

    request_hash is left unset; handlers that parse a body bind its hash
    afterwards, once the body has been validated.
    """
    return RequestMetadata(
        ip_address=client_ip(headers, peer),
        user_agent=headers.get("user-agent"),
        session_id=headers.get("x-session-id"),
    )


# ============================================================
# Rate Limiting Helpers
# ============================================================

def extract_client_id(headers: Mapping[str, str], user_id: Optional[str] = None) -> str:
    """Rate-limit key: the authenticated user when known, else the forwarded client address."""
    if user_id:
        return f"user:{user_id}"
    ip = client_ip(headers)
    return f"ip:{ip}" if ip else "anonymous"
