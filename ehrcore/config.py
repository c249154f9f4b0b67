"""
Configuration module for ehrcore.

Centralizes all configuration with environment variable support
and validation.
"""

import os
from pathlib import Path
from typing import Dict

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("EHRCORE_ENV", "dev")  # dev|stage|prod

# Persistence
DB_PATH = Path(os.getenv("EHRCORE_DB_PATH", "data/ehrcore.db"))

# Bearer credentials (HS256 JWTs issued by the identity provider)
JWT_SECRET = os.getenv("EHRCORE_JWT_SECRET", "dev-only-jwt-secret-change-me")
JWT_ALGORITHM = os.getenv("EHRCORE_JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("EHRCORE_JWT_AUDIENCE", "authenticated")

# Signature record sealing
SIGNER_TYPE = os.getenv("EHRCORE_SIGNER", "file")  # file|ephemeral
SIGNING_KEY_PATH = os.getenv("SIGNING_KEY_PATH", "secrets/ehrcore_seal_key.json")

# Audit log backend
AUDIT_LOG_BACKEND = os.getenv("AUDIT_LOG_BACKEND", "sqlite_hash_chain")
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "ehrcore/phi-access-log/")
S3_RETENTION_DAYS = int(os.getenv("S3_RETENTION_DAYS", "2190"))  # six years

# Rate limits (requests per minute, per caller)
SIGN_RPM = int(os.getenv("SIGN_RPM", "60"))
AUTHORIZE_RPM = int(os.getenv("AUTHORIZE_RPM", "600"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")

# Audit projections
PATIENT_ACCESS_LOG_LIMIT = int(os.getenv("PATIENT_ACCESS_LOG_LIMIT", "100"))
COMPLIANCE_ACCESS_LOG_LIMIT = int(os.getenv("COMPLIANCE_ACCESS_LOG_LIMIT", "200"))


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that required configuration is present.
    Returns dict of check name -> ok.
    """
    checks = {
        "db_dir": DB_PATH.parent.exists() or not is_production(),
        "jwt_secret": bool(JWT_SECRET) and (
            not is_production() or JWT_SECRET != "dev-only-jwt-secret-change-me"
        ),
    }

    if SIGNER_TYPE == "file":
        checks["signing_key"] = Path(SIGNING_KEY_PATH).exists()

    if AUDIT_LOG_BACKEND == "s3_object_lock":
        checks["s3_bucket"] = bool(S3_BUCKET)

    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("EHRCORE_DEBUG", "").lower() in ("1", "true", "yes")
