"""
Cryptographic module for the blind relay client.

Implements:
- Primitive wrappers (Ed25519, RSA-OAEP, AES-GCM, PBKDF2)
- SRP-6a zero-knowledge password authentication
- Hybrid transit envelopes
"""

from .primitives import (
    derive_key,
    sign,
    verify,
    aead_encrypt,
    aead_decrypt,
    asymmetric_encrypt,
    asymmetric_decrypt,
    EncryptedPayload,
    CryptoError,
    DecryptionFailed
)
from .envelope import HybridEnvelope, LegacyEnvelope, seal, open_envelope, open_with_any
from .srp import SrpClient, SrpServer, InvalidProof, UnableToVerifyServerProof

__all__ = [
    'derive_key',
    'sign',
    'verify',
    'aead_encrypt',
    'aead_decrypt',
    'asymmetric_encrypt',
    'asymmetric_decrypt',
    'EncryptedPayload',
    'CryptoError',
    'DecryptionFailed',
    'HybridEnvelope',
    'LegacyEnvelope',
    'seal',
    'open_envelope',
    'open_with_any',
    'SrpClient',
    'SrpServer',
    'InvalidProof',
    'UnableToVerifyServerProof'
]
