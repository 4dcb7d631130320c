"""Decryption and identity context handed to sync handlers."""

from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple
from cryptography.hazmat.primitives.asymmetric import rsa


def _never_blocked(handle: str) -> bool:
    return False


@dataclass(frozen=True)
class SyncContext:
    """
    Snapshot of session state taken at dispatch time.

    Attributes:
        user_id: Account id (token subject), None when signed out
        user_handle: Our handle
        session_id: Id of this client session
        master_key: Loaded master key, if any
        transport_private_keys: Current key first, then the grace-period key
        identity_private_key: Raw Ed25519 private key
        public_identity_key: Base64 identity public key
        is_blocked: Predicate over sender handles
    """
    user_id: Optional[str] = None
    user_handle: Optional[str] = None
    session_id: Optional[str] = None
    master_key: Optional[bytes] = None
    transport_private_keys: Tuple[rsa.RSAPrivateKey, ...] = ()
    identity_private_key: Optional[bytes] = None
    public_identity_key: Optional[str] = None
    is_blocked: Callable[[str], bool] = field(default=_never_blocked)

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


SIGNED_OUT = SyncContext()
