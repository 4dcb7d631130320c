"""
Session-level errors raised by the key lifecycle manager and relay client.

Authentication failures deliberately carry a generic message so callers can
show them verbatim without revealing whether the username exists.
"""

from blindrelay.crypto.srp import UnableToVerifyServerProof


class SessionError(Exception):
    """Base exception for account/session errors"""
    pass


class InvalidCredentials(SessionError):
    """SRP proof mismatch; the user may retry with another password"""

    def __init__(self, message: str = "Invalid username or password"):
        super().__init__(message)


class CorruptKeyMaterial(SessionError):
    """Private keys failed to decrypt after successful authentication"""
    pass


class KeyMaterialUnavailable(SessionError):
    """Operation needs keys that are not loaded yet"""
    pass


class RotationInProgress(SessionError):
    """A transport key rotation is already running"""
    pass


class WeakPassword(SessionError):
    """Password does not meet the minimum policy"""
    pass


class UsernameTaken(SessionError):
    """Registration rejected because the username exists"""
    pass


class RelayError(SessionError):
    """Relay returned an unexpected error response"""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"Relay error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


__all__ = [
    'SessionError',
    'InvalidCredentials',
    'CorruptKeyMaterial',
    'KeyMaterialUnavailable',
    'RotationInProgress',
    'WeakPassword',
    'UsernameTaken',
    'RelayError',
    'UnableToVerifyServerProof',
]
