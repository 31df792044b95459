"""Exception hierarchy for opsync."""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync errors."""

    pass


class RemoteUnavailableError(SyncError):
    """Remote store could not be reached or answered with a transient failure."""

    pass


class AuthenticationError(SyncError):
    """Remote store rejected the shared access credential."""

    pass


class UndecryptableOperation(SyncError):
    """A pulled operation could not be opened with the active key.

    ``key_mismatch`` is set when the operation carries the fingerprint of a
    different key, i.e. it was sealed before a rotation or by a device that
    holds another key.
    """

    def __init__(self, op_id: str, reason: str, key_mismatch: bool = False):
        super().__init__(f"Cannot decrypt operation {op_id}: {reason}")
        self.op_id = op_id
        self.reason = reason
        self.key_mismatch = key_mismatch


class KeyManagementError(SyncError):
    """Base exception for key management errors."""

    pass


class InvalidKeyFormat(KeyManagementError):
    """Imported key text is not a base64 encoded 256-bit key."""

    pass


class MissingKeyError(KeyManagementError):
    """No encryption key is configured on this device."""

    pass


class RotationNotConfirmed(KeyManagementError):
    """Key rotation was requested without explicit confirmation."""

    pass


class SyncInProgressError(SyncError):
    """Operation refused because a sync cycle is active."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "A sync cycle is already in progress")
