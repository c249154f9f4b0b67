"""
Operational logging for ehrcore.

Every record is emitted as one JSON object per line. These logs are
diagnostics; the compliance record of PHI access lives in the
phi_access_logs table. PHI values are never passed to the logger.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

from .util import mask_sensitive

_request_id: ContextVar[str] = ContextVar("ehrcore_request_id", default="")


class StructuredFormatter(logging.Formatter):
    """Render a LogRecord as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{created.microsecond // 1000:03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        if _request_id.get():
            payload["request_id"] = _request_id.get()
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        payload.update(getattr(record, "fields", {}))
        return json.dumps(payload, default=str)


class OpsLogger:
    """
    Named operational events. Each method maps one event type to a level
    and a fixed set of fields.
    """

    def __init__(self, name: str = "ehrcore.ops"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, exc_info=None, **fields) -> None:
        if not self._logger.isEnabledFor(level):
            return
        message = fields.pop("message", "")
        record = self._logger.makeRecord(
            self._logger.name, level, "(ops)", 0, f"{event_type}: {message}", (), exc_info
        )
        record.fields = {"event_type": event_type, **fields}
        self._logger.handle(record)

    def note_signed(self, note_id: str, signer_id: str, signature_hash: str) -> None:
        self._log(
            logging.INFO,
            "NOTE_SIGNED",
            note_id=note_id,
            signer_id=signer_id,
            signature_hash=signature_hash,
            message=f"Note {note_id} signed"
        )

    def signature_verified(self, note_id: str, valid: bool, reason: Optional[str]) -> None:
        level = logging.INFO if valid else logging.WARNING
        self._log(
            level,
            "SIGNATURE_VERIFIED",
            note_id=note_id,
            valid=valid,
            reason=reason,
            message=f"Signature verification for {note_id}: {'valid' if valid else 'invalid'}"
        )

    def signature_record_write_failed(self, note_id: str, error: BaseException) -> None:
        """The note is signed but its signature record was not stored."""
        self._log(
            logging.ERROR,
            "SIGNATURE_RECORD_WRITE_FAILED",
            exc_info=(type(error), error, error.__traceback__),
            note_id=note_id,
            error=str(error),
            message=f"Signature record for note {note_id} was not written"
        )

    def access_decision(
        self,
        user_id: str,
        action: str,
        resource_type: str,
        allowed: bool,
        rule: Optional[str]
    ) -> None:
        level = logging.INFO if allowed else logging.WARNING
        self._log(
            level,
            "ACCESS_DECISION",
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            allowed=allowed,
            rule=rule,
            message=f"{'Allowed' if allowed else 'Denied'} {action} on {resource_type}"
        )

    def audit_write_failed(
        self,
        user_id: str,
        action: str,
        resource_type: str,
        error: BaseException
    ) -> None:
        """A PHI access log entry could not be written. Pages on-call."""
        self._log(
            logging.CRITICAL,
            "AUDIT_WRITE_FAILED",
            exc_info=(type(error), error, error.__traceback__),
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            error=str(error),
            message=f"PHI access log write failed for {action} on {resource_type}"
        )

    def break_glass(self, entry_id: str, user_id: str) -> None:
        self._log(
            logging.WARNING,
            "BREAK_GLASS_ACCESS",
            entry_id=entry_id,
            user_id=user_id,
            message=f"Emergency access recorded ({entry_id})"
        )

    _SEVERITY_LEVELS = {
        "low": logging.INFO,
        "medium": logging.WARNING,
        "high": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def security_event(self, event: str, severity: str = "medium", **details) -> None:
        """Integrity failures and other events a security reviewer should see."""
        self._log(
            self._SEVERITY_LEVELS.get(severity, logging.WARNING),
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            message=event,
            **details
        )

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=mask_sensitive(client_id, 6),
            endpoint=endpoint,
            message=f"throttled on {endpoint}"
        )


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Install a single stdout handler on the root logger, replacing any others."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s %(message)s"))
    root.addHandler(handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, generating one if absent."""
    request_id = request_id or uuid.uuid4().hex
    _request_id.set(request_id)
    return request_id


ops_log = OpsLogger()
