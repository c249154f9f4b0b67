"""
In-process operational counters, exposed on /health.

Counts failures that are recovered locally but must stay visible to
monitoring, such as a dropped PHI access log entry.
"""

import threading
from collections import Counter
from typing import Dict

AUDIT_WRITE_FAILURES = "audit_write_failures"
SIGNATURE_RECORD_WRITE_FAILURES = "signature_record_write_failures"
SIGNATURE_SEAL_FAILURES = "signature_seal_failures"

_counts: Counter = Counter()
_lock = threading.Lock()


def increment(name: str, amount: int = 1) -> None:
    with _lock:
        _counts[name] += amount


def get(name: str) -> int:
    with _lock:
        return _counts[name]


def snapshot() -> Dict[str, int]:
    with _lock:
        return {
            AUDIT_WRITE_FAILURES: _counts[AUDIT_WRITE_FAILURES],
            SIGNATURE_RECORD_WRITE_FAILURES: _counts[SIGNATURE_RECORD_WRITE_FAILURES],
            SIGNATURE_SEAL_FAILURES: _counts[SIGNATURE_SEAL_FAILURES],
        }


def reset() -> None:
    with _lock:
        _counts.clear()
