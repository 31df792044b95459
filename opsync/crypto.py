"""End-to-end encryption for replicated operations.

Every operation leaving the device is sealed with AES-256-GCM under a key
shared by the user's devices. The remote store only ever sees:

- ``table = "encrypted"``, ``type = "create"``, ``key = <operation id>``
- ``payload = {"ciphertext": ..., "iv": ...}`` (base64)
- ``keyHash``: first 8 bytes of SHA-256 over the raw key, hex encoded

Keys are exchanged between devices as base64 of the raw 32 bytes.
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from opsync.errors import (
    InvalidKeyFormat,
    MissingKeyError,
    RotationNotConfirmed,
    UndecryptableOperation,
)
from opsync.types import (
    ENCRYPTED_TABLE,
    META_RETIRED_KEY_HASHES,
    META_SYNC_KEY,
    Operation,
    OperationType,
)

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12


@dataclass(frozen=True)
class SyncKey:
    """A 256-bit symmetric sync key.

    Attributes:
        raw: The key bytes
        key_hash: Short public fingerprint, safe to send in the clear
    """

    raw: bytes

    @property
    def key_hash(self) -> str:
        return key_hash(self.raw)

    def export(self) -> str:
        return export_key(self)

    def __repr__(self) -> str:
        return f"SyncKey(key_hash={self.key_hash!r})"


def key_hash(raw: bytes) -> str:
    """First 8 bytes of SHA-256 over the raw key, hex encoded."""
    return hashlib.sha256(raw).digest()[:8].hex()


def generate_key() -> SyncKey:
    return SyncKey(AESGCM.generate_key(bit_length=256))


def export_key(key: SyncKey) -> str:
    """Serialize a key for transfer to another device."""
    return base64.b64encode(key.raw).decode("ascii")


def import_key(text: str) -> SyncKey:
    """Parse an exported key.

    Raises:
        InvalidKeyFormat: If ``text`` is not base64 of exactly 32 bytes
    """
    if not isinstance(text, str) or not text.strip():
        raise InvalidKeyFormat("Key is empty")
    try:
        raw = base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidKeyFormat(f"Key is not valid base64: {e}") from e
    if len(raw) != KEY_SIZE:
        raise InvalidKeyFormat(f"Key must be {KEY_SIZE} bytes, got {len(raw)}")
    return SyncKey(raw)


def encrypt_data(data: Any, key: SyncKey) -> Dict[str, str]:
    """Encrypt a JSON-serializable value into a ``{ciphertext, iv}`` envelope."""
    nonce = os.urandom(NONCE_SIZE)
    plaintext = json.dumps(data, separators=(",", ":")).encode("utf-8")
    ciphertext = AESGCM(key.raw).encrypt(nonce, plaintext, None)
    return {
        "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        "iv": base64.b64encode(nonce).decode("ascii"),
    }


def decrypt_data(envelope: Dict[str, str], key: SyncKey) -> Any:
    """Reverse of encrypt_data.

    Raises:
        ValueError: If the envelope is malformed or fails authentication
    """
    try:
        ciphertext = base64.b64decode(envelope["ciphertext"])
        nonce = base64.b64decode(envelope["iv"])
    except (KeyError, TypeError, binascii.Error) as e:
        raise ValueError(f"Malformed envelope: {e}") from e
    try:
        plaintext = AESGCM(key.raw).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise ValueError("Authentication failed") from e
    return json.loads(plaintext.decode("utf-8"))


def verify_key(text: str) -> bool:
    """Return True if ``text`` imports and survives an encrypt/decrypt round trip."""
    try:
        key = import_key(text)
        sample = {"verify": True}
        return decrypt_data(encrypt_data(sample, key), key) == sample
    except (InvalidKeyFormat, ValueError):
        return False


def seal_operation(op: Operation, key: SyncKey) -> Operation:
    """Hide table, type, key and payload of ``op`` inside an envelope."""
    envelope = encrypt_data(
        {
            "table": op.table,
            "type": op.type.value,
            "key": op.key,
            "payload": op.payload,
        },
        key,
    )
    return replace(
        op,
        table=ENCRYPTED_TABLE,
        type=OperationType.CREATE,
        key=op.id,
        payload=envelope,
        key_hash=key.key_hash,
    )


def open_operation(op: Operation, key: Optional[SyncKey]) -> Operation:
    """Recover the plaintext operation from a sealed one.

    Unsealed operations are returned unchanged.

    Raises:
        UndecryptableOperation: With ``key_mismatch`` set when ``op`` names a
            different key fingerprint; without it when no key is configured or
            the envelope fails to authenticate.
    """
    if not op.is_sealed:
        return op
    if key is None:
        raise UndecryptableOperation(op.id, "no encryption key configured")
    if op.key_hash and op.key_hash != key.key_hash:
        raise UndecryptableOperation(
            op.id, f"sealed with key {op.key_hash}, active key is {key.key_hash}", key_mismatch=True
        )
    try:
        inner = decrypt_data(op.payload, key)
        return replace(
            op,
            table=inner["table"],
            type=OperationType(inner["type"]),
            key=inner["key"],
            payload=inner.get("payload"),
        )
    except (ValueError, KeyError, TypeError) as e:
        raise UndecryptableOperation(op.id, str(e)) from e


RotationListener = Callable[[SyncKey, Optional[SyncKey]], None]


class KeyManager:
    """Owns the device's sync key, persisted in the local settings table.

    Args:
        log: A LocalOperationLog (anything with get_meta/set_meta_many/delete_meta).
    """

    def __init__(self, log):
        self._log = log
        self._lock = threading.Lock()
        self._listeners: List[RotationListener] = []
        self._cached: Optional[SyncKey] = None

    def load(self) -> Optional[SyncKey]:
        """Return the active key, or None if this device has none yet."""
        if self._cached is not None:
            return self._cached
        text = self._log.get_meta(META_SYNC_KEY)
        if not text:
            return None
        try:
            self._cached = import_key(text)
        except InvalidKeyFormat as e:
            logger.error(f"Stored sync key is corrupt: {e}")
            return None
        return self._cached

    def require(self) -> SyncKey:
        key = self.load()
        if key is None:
            raise MissingKeyError("No sync key configured; generate or import one first")
        return key

    def has_key(self) -> bool:
        return self.load() is not None

    def store(self, key: SyncKey) -> None:
        """Install ``key`` as the active key on a device that has none.

        Replacing an existing, different key must go through rotate().
        """
        with self._lock:
            current = self.load()
            if current is not None and current.raw != key.raw:
                raise RotationNotConfirmed(
                    "A different sync key is already configured; use rotate() to replace it"
                )
            self._log.set_meta_many({META_SYNC_KEY: export_key(key)})
            self._cached = key
        logger.info(f"Stored sync key {key.key_hash}")

    def import_text(self, text: str) -> SyncKey:
        key = import_key(text)
        self.store(key)
        return key

    def clear(self) -> None:
        with self._lock:
            self._log.delete_meta(META_SYNC_KEY)
            self._cached = None
        logger.info("Cleared sync key")

    def retired_hashes(self) -> List[str]:
        raw = self._log.get_meta(META_RETIRED_KEY_HASHES)
        return json.loads(raw) if raw else []

    def add_rotation_listener(self, listener: RotationListener) -> None:
        self._listeners.append(listener)

    def rotate(self, new_key: SyncKey, *, confirm: bool = False) -> Optional[SyncKey]:
        """Replace the active key.

        The new key and the retired key's fingerprint are written in one
        transaction, then every rotation listener is called with
        ``(new_key, old_key)``. Returns the old key.

        Raises:
            RotationNotConfirmed: Unless ``confirm`` is True
        """
        if not confirm:
            raise RotationNotConfirmed(
                "Key rotation makes existing remote history unreadable; pass confirm=True"
            )
        with self._lock:
            old = self.load()
            retired = self.retired_hashes()
            if old is not None and old.key_hash not in retired and old.raw != new_key.raw:
                retired.append(old.key_hash)
            self._log.set_meta_many(
                {
                    META_SYNC_KEY: export_key(new_key),
                    META_RETIRED_KEY_HASHES: json.dumps(retired),
                }
            )
            self._cached = new_key
        logger.warning(
            f"Rotated sync key {old.key_hash if old else None} -> {new_key.key_hash}"
        )
        for listener in self._listeners:
            listener(new_key, old)
        return old
