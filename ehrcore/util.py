"""
Utility functions for ehrcore.

Provides canonical JSON serialization, hashing, encoding, and time utilities.
"""

import json
import hashlib
import base64
import hmac
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Union


def canonicalize(obj: Any) -> bytes:
    """
    Convert object to canonical JSON bytes.

    Canonical JSON:
    - Lexicographically sorted keys
    - No whitespace
    - UTF-8 encoded
    """
    s = json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return s.encode('utf-8')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_iso(dt: Optional[datetime] = None) -> str:
    """
    Format a datetime as ISO-8601 UTC with millisecond precision and a Z suffix.

    This is the only timestamp format written to the database, so string
    comparison orders entries chronologically.
    """
    if dt is None:
        dt = utcnow()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def parse_iso(s: str) -> datetime:
    """Parse an ISO-8601 timestamp (Z or offset suffix) to an aware UTC datetime."""
    dt = datetime.fromisoformat(s.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Base64 decode string to bytes."""
    return base64.b64decode(s.encode('ascii'))


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


def generate_id() -> str:
    """Generate a random UUID4 string, the identifier format of every table."""
    return str(uuid.uuid4())


def mask_sensitive(value: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if not value:
        return ''
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]
