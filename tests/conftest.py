import os, sys, tempfile
import pytest

# Ensure the package is importable without installation
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Point the app at a throwaway database and an in-memory seal key before import
_tmpdir = tempfile.mkdtemp(prefix="ehrcore-tests-")
os.environ["EHRCORE_DB_PATH"] = os.path.join(_tmpdir, "ehrcore.db")
os.environ["EHRCORE_ENV"] = "dev"
os.environ["EHRCORE_SIGNER"] = "ephemeral"
os.environ["EHRCORE_JWT_SECRET"] = "test-only-jwt-secret"
os.environ["AUDIT_LOG_BACKEND"] = "sqlite_hash_chain"
os.environ["LOG_JSON"] = "false"

from ehrcore import metrics
from ehrcore.db import init_db, reset_db
from ehrcore.main import _startup, authorize_limiter, sign_limiter

init_db()
_startup()

# Reset database before each test for isolation
@pytest.fixture(autouse=True)
def _reset_db():
    reset_db()
    metrics.reset()
    sign_limiter.reset()
    authorize_limiter.reset()
    yield
