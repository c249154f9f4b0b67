"""Generate the Ed25519 key that seals signature records."""
import json, os, sys
from nacl.signing import SigningKey
from ehrcore.keys import DEFAULT_KID, write_key_file
from ehrcore.util import b64d, b64e

def main(path: str, kid: str):
    retired = {}
    if os.path.exists(path):
        # Rotation: keep the old public key so existing seals still verify
        with open(path, "r", encoding="utf-8") as f:
            old = json.load(f)
        if old["kid"] == kid:
            print(f"Key {kid} already exists at {path}; pass a new kid to rotate"); raise SystemExit(2)
        retired = dict(old.get("retired_public_keys", {}))
        old_sk = SigningKey(b64d(old["private_key_b64"]))
        retired[old["kid"]] = b64e(bytes(old_sk.verify_key))

    write_key_file(path, SigningKey.generate(), kid, retired)
    print(f"Generated seal key {kid} at {path} ({len(retired)} retired key(s) kept).")

if __name__ == "__main__":
    path = sys.argv[1] if len(sys.argv) > 1 else os.getenv("SIGNING_KEY_PATH", "secrets/ehrcore_seal_key.json")
    kid = sys.argv[2] if len(sys.argv) > 2 else DEFAULT_KID
    main(path, kid)
