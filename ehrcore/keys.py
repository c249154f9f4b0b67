"""
Key management module for ehrcore.

Provides Ed25519 key providers used to seal signature records, so a
record rewritten directly in the database no longer verifies.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from . import config
from .util import b64d, b64e

logger = logging.getLogger(__name__)


class KeyProvider(ABC):
    """Abstract interface for sealing payloads and publishing verification keys."""

    @abstractmethod
    def seal(self, payload: bytes) -> Tuple[str, str]:
        """
        Sign a payload and return (kid, signature_b64).

        Args:
            payload: The canonical JSON bytes to sign

        Returns:
            Tuple of (key_id, base64_encoded_signature)
        """
        pass

    @abstractmethod
    def verify_keys(self) -> Dict[str, str]:
        """Return {kid: public_key_b64} for every key whose seals are accepted."""
        pass

    def verify(self, kid: Optional[str], signature_b64: Optional[str], payload: bytes) -> bool:
        pub = self.verify_keys().get(kid or "")
        if not pub or not signature_b64:
            return False
        return verify_ed25519(signature_b64, payload, pub)


class FileKeyProvider(KeyProvider):
    """
    File-based key provider using an Ed25519 key stored in a JSON file.

    The file holds {"kid", "private_key_b64"} and optionally
    "retired_public_keys" ({kid: public_key_b64}) so seals made with a
    rotated-out key keep verifying.
    """

    def __init__(self, signing_key_path: str):
        with open(signing_key_path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        self._kid = raw["kid"]
        self._sk = SigningKey(b64d(raw["private_key_b64"]))
        self._verify_keys = dict(raw.get("retired_public_keys", {}))
        self._verify_keys[self._kid] = b64e(bytes(self._sk.verify_key))

    def seal(self, payload: bytes) -> Tuple[str, str]:
        sig = self._sk.sign(payload).signature
        return self._kid, b64e(sig)

    def verify_keys(self) -> Dict[str, str]:
        return dict(self._verify_keys)


class EphemeralKeyProvider(KeyProvider):
    """
    In-memory key generated at startup, for development and tests.

    Seals do not survive a restart.
    """

    def __init__(self, kid: str = "ehrcore-ephemeral"):
        self._kid = kid
        self._sk = SigningKey.generate()
        self._lock = threading.Lock()

    def seal(self, payload: bytes) -> Tuple[str, str]:
        with self._lock:
            sig = self._sk.sign(payload).signature
        return self._kid, b64e(sig)

    def verify_keys(self) -> Dict[str, str]:
        return {self._kid: b64e(bytes(self._sk.verify_key))}


def verify_ed25519(signature_b64: str, payload: bytes, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        signature_b64: Base64-encoded signature
        payload: The signed data
        public_key_b64: Base64-encoded public key

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        vk = VerifyKey(b64d(public_key_b64))
        vk.verify(payload, b64d(signature_b64))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


DEFAULT_KID = "ehrcore-seal-01"


def write_key_file(
    path: str,
    signing_key: SigningKey,
    kid: str = DEFAULT_KID,
    retired_public_keys: Optional[Dict[str, str]] = None,
    exclusive: bool = False
) -> None:
    """
    Write a seal key file readable only by its owner.

    With exclusive=True the file must not exist yet (FileExistsError
    otherwise), so two processes racing to create a key cannot both win.
    """
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    flags = os.O_WRONLY | os.O_CREAT | (os.O_EXCL if exclusive else os.O_TRUNC)
    fd = os.open(path, flags, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump({
            "kid": kid,
            "private_key_b64": b64e(bytes(signing_key)),
            "retired_public_keys": dict(retired_public_keys or {}),
        }, f, indent=2)
    os.chmod(path, 0o600)


def get_key_provider(
    signer_type: Optional[str] = None,
    signing_key_path: Optional[str] = None
) -> KeyProvider:
    """
    Factory function to create the configured key provider.

    Outside production a missing key file is generated and written to
    signing_key_path, so seals keep verifying across engines and restarts.
    """
    signer_type = signer_type or config.SIGNER_TYPE
    signing_key_path = signing_key_path or config.SIGNING_KEY_PATH

    if signer_type == "ephemeral":
        if config.is_production():
            raise ValueError("ephemeral seal keys are not allowed in production")
        return EphemeralKeyProvider()

    if not Path(signing_key_path).exists():
        if config.is_production():
            raise FileNotFoundError(f"seal key not found: {signing_key_path}")
        try:
            write_key_file(signing_key_path, SigningKey.generate(), exclusive=True)
            logger.warning("Seal key %s not found, generated a new development key", signing_key_path)
        except FileExistsError:
            pass

    return FileKeyProvider(signing_key_path=signing_key_path)


_default_provider: Optional[KeyProvider] = None
_default_lock = threading.Lock()


def default_key_provider() -> KeyProvider:
    """The process-wide key provider, created from config on first use."""
    global _default_provider
    with _default_lock:
        if _default_provider is None:
            _default_provider = get_key_provider()
        return _default_provider
