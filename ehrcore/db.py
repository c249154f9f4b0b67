"""
Database module for ehrcore.

Provides SQLite-based storage for clinical notes, signature records,
amendment links, the PHI access log, break-glass entries, and the
collaborator tables (roles, providers, patients, assignments).
Uses thread-local connections and proper indexing for performance.

Append-only tables and signed note content are protected by triggers,
so a stray UPDATE or DELETE fails inside the database as well as in
the application.
"""

import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .hashing import chain_entry_hash

# Thread-local storage for connection pooling
_local = threading.local()

TABLES = [
    "clinical_notes",
    "signature_log",
    "note_amendments",
    "phi_access_logs",
    "break_glass_logs",
    "user_roles",
    "providers",
    "patients",
    "patient_provider_assignments",
    "encounters",
]


def _get_connection() -> sqlite3.Connection:
    """
    Get a thread-local database connection.
    Connections are reused within the same thread for performance.
    """
    conn = getattr(_local, 'conn', None)
    if conn is None or _local.path != str(config.DB_PATH):
        if conn is not None:
            conn.close()
        config.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(config.DB_PATH), timeout=15, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=FULL;")  # audit rows must survive a crash
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        conn.row_factory = sqlite3.Row
        _local.conn = conn
        _local.path = str(config.DB_PATH)
    return conn


@contextmanager
def _transaction(immediate: bool = False):
    """
    Context manager for database transactions.
    Automatically commits on success, rolls back on failure.

    immediate=True takes the write lock up front, which serializes
    read-then-write sequences such as hash chain appends.
    """
    conn = _get_connection()
    if immediate and not conn.in_transaction:
        conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_db() -> None:
    """
    Initialize database schema with proper indexes and guard triggers.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    with _transaction() as conn:
        # Collaborator tables
        conn.execute("""
        CREATE TABLE IF NOT EXISTS user_roles (
            user_id TEXT NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('patient','provider','admin','compliance_officer')),
            PRIMARY KEY (user_id, role)
        );""")
        conn.execute("""
        CREATE TABLE IF NOT EXISTS providers (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL UNIQUE
        );""")
        conn.execute("""
        CREATE TABLE IF NOT EXISTS patients (
            id TEXT PRIMARY KEY,
            user_id TEXT UNIQUE
        );""")
        conn.execute("""
        CREATE TABLE IF NOT EXISTS patient_provider_assignments (
            id TEXT PRIMARY KEY,
            provider_id TEXT NOT NULL REFERENCES providers(id),
            patient_id TEXT NOT NULL REFERENCES patients(id),
            assigned_at TEXT NOT NULL,
            revoked_at TEXT
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_assignments_pair
        ON patient_provider_assignments(provider_id, patient_id);""")
        conn.execute("""
        CREATE TABLE IF NOT EXISTS encounters (
            id TEXT PRIMARY KEY,
            patient_id TEXT NOT NULL REFERENCES patients(id)
        );""")

        # Clinical notes
        conn.execute("""
        CREATE TABLE IF NOT EXISTS clinical_notes (
            id TEXT PRIMARY KEY,
            encounter_id TEXT NOT NULL,
            author_id TEXT NOT NULL,
            note_type TEXT NOT NULL DEFAULT 'progress_note',
            soap_subjective TEXT,
            soap_objective TEXT,
            soap_assessment TEXT,
            soap_plan TEXT,
            content_encrypted TEXT,
            is_signed INTEGER NOT NULL DEFAULT 0,
            signed_at TEXT,
            signed_by TEXT,
            signature_hash TEXT,
            is_amendment INTEGER NOT NULL DEFAULT 0,
            amendment_reason TEXT,
            amended_from_id TEXT REFERENCES clinical_notes(id),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            CHECK (is_amendment = 0 OR (amendment_reason IS NOT NULL AND amended_from_id IS NOT NULL))
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_clinical_notes_amended_from
        ON clinical_notes(amended_from_id);""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_clinical_notes_encounter
        ON clinical_notes(encounter_id);""")
        conn.execute("""
        CREATE TRIGGER IF NOT EXISTS trg_clinical_notes_signed_immutable
        BEFORE UPDATE OF soap_subjective, soap_objective, soap_assessment, soap_plan,
                         content_encrypted, signed_at, signed_by, signature_hash,
                         is_signed, is_amendment, amended_from_id
        ON clinical_notes
        WHEN OLD.is_signed = 1
        BEGIN
            SELECT RAISE(ABORT, 'signed clinical notes are immutable');
        END;""")
        conn.execute("""
        CREATE TRIGGER IF NOT EXISTS trg_clinical_notes_no_delete
        BEFORE DELETE ON clinical_notes
        BEGIN
            SELECT RAISE(ABORT, 'clinical notes are never deleted');
        END;""")

        # Signature log
        conn.execute("""
        CREATE TABLE IF NOT EXISTS signature_log (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            note_id TEXT NOT NULL REFERENCES clinical_notes(id),
            signer_id TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            signature_hash TEXT NOT NULL,
            signed_at TEXT NOT NULL,
            signature_method TEXT NOT NULL,
            verification_status TEXT NOT NULL DEFAULT 'valid',
            ip_address TEXT,
            user_agent TEXT,
            seal_kid TEXT,
            seal_b64 TEXT
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_signature_log_note
        ON signature_log(note_id, signed_at);""")

        # Amendment links
        conn.execute("""
        CREATE TABLE IF NOT EXISTS note_amendments (
            id TEXT PRIMARY KEY,
            original_note_id TEXT NOT NULL REFERENCES clinical_notes(id),
            amended_note_id TEXT NOT NULL UNIQUE REFERENCES clinical_notes(id),
            amended_by TEXT NOT NULL,
            amendment_reason TEXT NOT NULL CHECK (length(trim(amendment_reason)) > 0),
            amended_at TEXT NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_note_amendments_original
        ON note_amendments(original_note_id);""")

        # PHI access log with hash chain
        conn.execute("""
        CREATE TABLE IF NOT EXISTS phi_access_logs (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            timestamp TEXT NOT NULL,
            user_id TEXT NOT NULL,
            patient_id TEXT,
            resource_type TEXT NOT NULL,
            resource_id TEXT,
            action TEXT NOT NULL,
            access_reason TEXT,
            ip_address TEXT,
            user_agent TEXT,
            session_id TEXT,
            request_hash TEXT,
            payload_hash TEXT NOT NULL,
            prev_entry_hash TEXT,
            entry_hash TEXT NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_phi_access_logs_patient
        ON phi_access_logs(patient_id, timestamp);""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_phi_access_logs_timestamp
        ON phi_access_logs(timestamp);""")

        # Break-glass log
        conn.execute("""
        CREATE TABLE IF NOT EXISTS break_glass_logs (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            patient_id TEXT NOT NULL,
            access_reason TEXT NOT NULL,
            justification TEXT NOT NULL CHECK (length(trim(justification)) > 0),
            accessed_at TEXT NOT NULL,
            reviewed_by TEXT,
            reviewed_at TEXT,
            review_notes TEXT
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_break_glass_pending
        ON break_glass_logs(reviewed_at, accessed_at);""")
        conn.execute("""
        CREATE TRIGGER IF NOT EXISTS trg_break_glass_review_once
        BEFORE UPDATE ON break_glass_logs
        WHEN OLD.reviewed_at IS NOT NULL
        BEGIN
            SELECT RAISE(ABORT, 'break-glass review is final');
        END;""")

        for table in ("signature_log", "note_amendments", "phi_access_logs", "break_glass_logs"):
            conn.execute(f"""
            CREATE TRIGGER IF NOT EXISTS trg_{table}_no_delete
            BEFORE DELETE ON {table}
            BEGIN
                SELECT RAISE(ABORT, '{table} is append-only');
            END;""")
        for table in ("signature_log", "note_amendments", "phi_access_logs"):
            conn.execute(f"""
            CREATE TRIGGER IF NOT EXISTS trg_{table}_no_update
            BEFORE UPDATE ON {table}
            BEGIN
                SELECT RAISE(ABORT, '{table} is append-only');
            END;""")


# ============================================================
# Clinical Notes
# ============================================================

_NOTE_COLUMNS = (
    "id", "encounter_id", "author_id", "note_type",
    "soap_subjective", "soap_objective", "soap_assessment", "soap_plan",
    "content_encrypted", "is_amendment", "amendment_reason", "amended_from_id",
    "created_at", "updated_at",
)


def _insert_note(conn: sqlite3.Connection, note: Dict[str, Any]) -> None:
    placeholders = ",".join("?" for _ in _NOTE_COLUMNS)
    conn.execute(
        f"INSERT INTO clinical_notes({','.join(_NOTE_COLUMNS)}) VALUES({placeholders})",
        tuple(note.get(c) for c in _NOTE_COLUMNS)
    )


def insert_note(note: Dict[str, Any]) -> None:
    """Insert a new, unsigned clinical note."""
    with _transaction() as conn:
        _insert_note(conn, note)


def insert_amendment(note: Dict[str, Any], link: Dict[str, Any]) -> None:
    """Insert an amendment note and its link to the original in one transaction."""
    with _transaction() as conn:
        _insert_note(conn, note)
        conn.execute(
            "INSERT INTO note_amendments(id, original_note_id, amended_note_id, "
            "amended_by, amendment_reason, amended_at) VALUES(?,?,?,?,?,?)",
            (link["id"], link["original_note_id"], link["amended_note_id"],
             link["amended_by"], link["amendment_reason"], link["amended_at"])
        )


def get_note(note_id: str) -> Optional[sqlite3.Row]:
    """Retrieve a clinical note row by ID."""
    conn = _get_connection()
    cur = conn.execute("SELECT * FROM clinical_notes WHERE id=?", (note_id,))
    return cur.fetchone()


def get_notes_amending(note_id: str) -> List[sqlite3.Row]:
    """Notes whose amended_from_id is note_id, oldest first."""
    conn = _get_connection()
    cur = conn.execute(
        "SELECT * FROM clinical_notes WHERE amended_from_id=? ORDER BY created_at ASC, rowid ASC",
        (note_id,)
    )
    return cur.fetchall()


def update_draft_note(note_id: str, fields: Dict[str, Any], updated_at: str) -> bool:
    """
    Update the content of an unsigned note.

    Returns True if a row changed, False if the note is missing or signed.
    The is_signed condition makes this safe against a concurrent sign.
    """
    allowed = ("soap_subjective", "soap_objective", "soap_assessment",
               "soap_plan", "content_encrypted", "note_type")
    assignments = [(k, fields[k]) for k in allowed if k in fields]
    sets = ", ".join(f"{k}=?" for k, _ in assignments)
    params = [v for _, v in assignments]
    sql = "UPDATE clinical_notes SET " + (sets + ", " if sets else "") + \
        "updated_at=? WHERE id=? AND is_signed=0"
    with _transaction() as conn:
        cur = conn.execute(sql, (*params, updated_at, note_id))
        return cur.rowcount == 1


def _insert_signature_record(conn: sqlite3.Connection, record: Dict[str, Any]) -> None:
    conn.execute(
        "INSERT INTO signature_log(id, note_id, signer_id, content_hash, signature_hash, "
        "signed_at, signature_method, verification_status, ip_address, user_agent, "
        "seal_kid, seal_b64) VALUES(?,?,?,?,?,?,?,?,?,?,?,?)",
        (record["id"], record["note_id"], record["signer_id"], record["content_hash"],
         record["signature_hash"], record["signed_at"], record["signature_method"],
         record.get("verification_status", "valid"), record.get("ip_address"),
         record.get("user_agent"), record.get("seal_kid"), record.get("seal_b64"))
    )


def sign_note(
    note_id: str,
    signed_at: str,
    signed_by: str,
    signature_hash: str,
    record: Dict[str, Any]
) -> Tuple[bool, Optional[Exception]]:
    """
    Mark a note signed and write its signature record.

    The note update is conditional on is_signed=0, so of two concurrent
    signers exactly one sees rowcount 1. The record insert runs inside a
    savepoint of the same transaction: when it fails only the record is
    rolled back and the note signature still commits.

    Returns (signed, record_error). signed is False when the note was
    already signed or does not exist.
    """
    with _transaction(immediate=True) as conn:
        cur = conn.execute(
            "UPDATE clinical_notes SET is_signed=1, signed_at=?, signed_by=?, "
            "signature_hash=?, updated_at=? WHERE id=? AND is_signed=0",
            (signed_at, signed_by, signature_hash, signed_at, note_id)
        )
        if cur.rowcount != 1:
            return False, None

        conn.execute("SAVEPOINT signature_record")
        try:
            _insert_signature_record(conn, record)
        except sqlite3.Error as e:
            conn.execute("ROLLBACK TO SAVEPOINT signature_record")
            conn.execute("RELEASE SAVEPOINT signature_record")
            return True, e
        conn.execute("RELEASE SAVEPOINT signature_record")
        return True, None


def latest_signature_record(note_id: str) -> Optional[sqlite3.Row]:
    """Most recent signature record for a note."""
    conn = _get_connection()
    cur = conn.execute(
        "SELECT * FROM signature_log WHERE note_id=? ORDER BY signed_at DESC, seq DESC LIMIT 1",
        (note_id,)
    )
    return cur.fetchone()


def get_amendment_links(original_note_id: str) -> List[sqlite3.Row]:
    """Amendment links of a note, newest first."""
    conn = _get_connection()
    cur = conn.execute(
        "SELECT * FROM note_amendments WHERE original_note_id=? "
        "ORDER BY amended_at DESC, rowid DESC",
        (original_note_id,)
    )
    return cur.fetchall()


# ============================================================
# PHI Access Log (hash chained)
# ============================================================

_PHI_LOG_COLUMNS = (
    "id", "timestamp", "user_id", "patient_id", "resource_type", "resource_id",
    "action", "access_reason", "ip_address", "user_agent", "session_id",
    "request_hash", "payload_hash",
)


def latest_entry_hash() -> Optional[str]:
    """Get the hash of the most recent access log entry for chain linking."""
    conn = _get_connection()
    cur = conn.execute("SELECT entry_hash FROM phi_access_logs ORDER BY seq DESC LIMIT 1")
    row = cur.fetchone()
    return row['entry_hash'] if row else None


def append_phi_access_log(entry: Dict[str, Any]) -> str:
    """
    Append an entry to the PHI access log with hash chain linking.

    The previous hash is read under the write lock so concurrent appends
    cannot fork the chain. Returns the new entry hash.
    """
    with _transaction(immediate=True) as conn:
        prev = latest_entry_hash()
        entry_hash = chain_entry_hash(prev, entry["payload_hash"])
        columns = _PHI_LOG_COLUMNS + ("prev_entry_hash", "entry_hash")
        placeholders = ",".join("?" for _ in columns)
        conn.execute(
            f"INSERT INTO phi_access_logs({','.join(columns)}) VALUES({placeholders})",
            tuple(entry.get(c) for c in _PHI_LOG_COLUMNS) + (prev, entry_hash)
        )
        return entry_hash


def phi_access_logs_for_patient(patient_id: str, limit: int) -> List[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute(
        "SELECT * FROM phi_access_logs WHERE patient_id=? ORDER BY seq DESC LIMIT ?",
        (patient_id, limit)
    )
    return cur.fetchall()


def phi_access_logs_between(start: Optional[str], end: Optional[str], limit: int) -> List[sqlite3.Row]:
    conn = _get_connection()
    clauses, params = [], []
    if start:
        clauses.append("timestamp >= ?")
        params.append(start)
    if end:
        clauses.append("timestamp <= ?")
        params.append(end)
    where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
    cur = conn.execute(
        f"SELECT * FROM phi_access_logs {where} ORDER BY seq DESC LIMIT ?",
        (*params, limit)
    )
    return cur.fetchall()


def export_phi_access_log_full() -> List[Dict[str, Any]]:
    """Export the complete access log in chain order."""
    conn = _get_connection()
    cur = conn.execute("SELECT * FROM phi_access_logs ORDER BY seq ASC")
    return [dict(row) for row in cur.fetchall()]


# ============================================================
# Break-Glass Log
# ============================================================

def insert_break_glass(entry: Dict[str, Any]) -> None:
    with _transaction() as conn:
        conn.execute(
            "INSERT INTO break_glass_logs(id, user_id, patient_id, access_reason, "
            "justification, accessed_at) VALUES(?,?,?,?,?,?)",
            (entry["id"], entry["user_id"], entry["patient_id"], entry["access_reason"],
             entry["justification"], entry["accessed_at"])
        )


def get_break_glass(entry_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute("SELECT * FROM break_glass_logs WHERE id=?", (entry_id,))
    return cur.fetchone()


def review_break_glass(entry_id: str, reviewed_by: str, reviewed_at: str, review_notes: str) -> bool:
    """
    Record a compliance review. Returns False if the entry was already reviewed.
    Uses atomic UPDATE with WHERE clause for thread safety.
    """
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE break_glass_logs SET reviewed_by=?, reviewed_at=?, review_notes=? "
            "WHERE id=? AND reviewed_at IS NULL",
            (reviewed_by, reviewed_at, review_notes, entry_id)
        )
        return cur.rowcount == 1


def pending_break_glass() -> List[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute(
        "SELECT * FROM break_glass_logs WHERE reviewed_at IS NULL ORDER BY accessed_at ASC, rowid ASC"
    )
    return cur.fetchall()


# ============================================================
# Collaborator Tables
# ============================================================

def get_roles_for_user(user_id: str) -> List[str]:
    conn = _get_connection()
    cur = conn.execute("SELECT role FROM user_roles WHERE user_id=? ORDER BY role", (user_id,))
    return [row['role'] for row in cur.fetchall()]


def get_provider_by_user_id(user_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute("SELECT * FROM providers WHERE user_id=?", (user_id,))
    return cur.fetchone()


def get_patient_by_user_id(user_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute("SELECT * FROM patients WHERE user_id=?", (user_id,))
    return cur.fetchone()


def get_active_assignment(provider_id: str, patient_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute(
        "SELECT * FROM patient_provider_assignments "
        "WHERE provider_id=? AND patient_id=? AND revoked_at IS NULL LIMIT 1",
        (provider_id, patient_id)
    )
    return cur.fetchone()


def get_encounter(encounter_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute("SELECT * FROM encounters WHERE id=?", (encounter_id,))
    return cur.fetchone()


def add_user_role(user_id: str, role: str) -> None:
    with _transaction() as conn:
        conn.execute("INSERT OR IGNORE INTO user_roles(user_id, role) VALUES(?,?)", (user_id, role))


def add_provider(provider_id: str, user_id: str) -> None:
    with _transaction() as conn:
        conn.execute("INSERT INTO providers(id, user_id) VALUES(?,?)", (provider_id, user_id))


def add_patient(patient_id: str, user_id: Optional[str] = None) -> None:
    with _transaction() as conn:
        conn.execute("INSERT INTO patients(id, user_id) VALUES(?,?)", (patient_id, user_id))


def add_assignment(assignment_id: str, provider_id: str, patient_id: str, assigned_at: str) -> None:
    with _transaction() as conn:
        conn.execute(
            "INSERT INTO patient_provider_assignments(id, provider_id, patient_id, assigned_at) "
            "VALUES(?,?,?,?)",
            (assignment_id, provider_id, patient_id, assigned_at)
        )


def add_encounter(encounter_id: str, patient_id: str) -> None:
    with _transaction() as conn:
        conn.execute("INSERT INTO encounters(id, patient_id) VALUES(?,?)", (encounter_id, patient_id))


def revoke_assignment(assignment_id: str, revoked_at: str) -> bool:
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE patient_provider_assignments SET revoked_at=? WHERE id=? AND revoked_at IS NULL",
            (revoked_at, assignment_id)
        )
        return cur.rowcount == 1


# ============================================================
# Metrics and Health
# ============================================================

def get_db_stats() -> Dict[str, int]:
    """Get database statistics for monitoring."""
    conn = _get_connection()
    stats = {}
    for table in ("clinical_notes", "signature_log", "phi_access_logs", "break_glass_logs"):
        cur = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")
        stats[f"{table}_count"] = cur.fetchone()['cnt']
    cur = conn.execute("SELECT COUNT(*) as cnt FROM break_glass_logs WHERE reviewed_at IS NULL")
    stats["break_glass_pending_count"] = cur.fetchone()['cnt']
    return stats


# ============================================================
# Test Support: Database Reset
# ============================================================

def reset_db() -> None:
    """
    Reset the database for test isolation.
    Drops every table (and with it the guard triggers), then recreates the schema.
    """
    with _transaction() as conn:
        conn.execute("PRAGMA foreign_keys=OFF;")
        for table in reversed(TABLES):
            conn.execute(f"DROP TABLE IF EXISTS {table}")
    _get_connection().execute("PRAGMA foreign_keys=ON;")
    init_db()


def close_connection() -> None:
    """Close the thread-local connection (for cleanup)."""
    if getattr(_local, 'conn', None) is not None:
        _local.conn.close()
        _local.conn = None
