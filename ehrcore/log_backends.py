from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from . import config
from .db import append_phi_access_log
from .util import canonicalize


class AccessLogBackend:
    def write_entry(self, entry: Dict[str, Any]) -> str:
        """Durably append one PHI access log entry and return its chain hash."""
        raise NotImplementedError


class SqliteHashChainLog(AccessLogBackend):
    def write_entry(self, entry: Dict[str, Any]) -> str:
        return append_phi_access_log(entry)


class S3ObjectLockLog(SqliteHashChainLog):
    """Appends to the SQLite chain, then writes each entry as a separate immutable
    object to an S3 bucket with Object Lock, so a copy survives even if the
    database is rewritten. Requires bucket with Object Lock enabled.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """
    def __init__(self, bucket: str, prefix: str, retention_days: int, legal_hold: str = "OFF"):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = retention_days
        self.legal_hold = legal_hold
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError("boto3 required for S3 Object Lock logging. Install ehrcore[aws]") from e
            self._client = boto3.client("s3")
        return self._client

    def write_entry(self, entry: Dict[str, Any]) -> str:
        entry_hash = super().write_entry(entry)
        body = dict(entry, entry_hash=entry_hash)
        key = f"{self.prefix}{entry['timestamp']}-{entry['id']}.json"
        retain_until = datetime.now(timezone.utc) + timedelta(days=int(self.retention_days))
        self._get_client().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=canonicalize(body),
            ContentType="application/json",
            ObjectLockMode="COMPLIANCE",
            ObjectLockRetainUntilDate=retain_until,
            ObjectLockLegalHoldStatus=self.legal_hold
        )
        return entry_hash


def get_log_backend() -> AccessLogBackend:
    if config.AUDIT_LOG_BACKEND == "s3_object_lock":
        if not config.S3_BUCKET:
            raise ValueError("S3_BUCKET is required for the s3_object_lock backend")
        return S3ObjectLockLog(
            bucket=config.S3_BUCKET,
            prefix=config.S3_PREFIX,
            retention_days=config.S3_RETENTION_DAYS
        )
    return SqliteHashChainLog()
