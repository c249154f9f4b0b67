"""Verify the hash chain of the PHI access log.

Reads a JSON export (list of rows in seq order) when a path is given,
otherwise the configured database.
"""
import json, sys
from ehrcore.audit import verify_entries
from ehrcore.db import export_phi_access_log_full

def main(path=None):
    if path:
        entries = json.load(open(path, "r", encoding="utf-8"))
    else:
        entries = export_phi_access_log_full()
    ok, bad_seq = verify_entries(entries)
    if not ok:
        print("FAIL: chain mismatch at seq", bad_seq)
        sys.exit(1)
    print(f"PASS: access log chain valid ({len(entries)} entries)")

if __name__ == "__main__":
    if len(sys.argv) > 2:
        print("Usage: python tools/verify_access_log_chain.py [access_log_export.json]")
        raise SystemExit(2)
    main(sys.argv[1] if len(sys.argv) == 2 else None)
