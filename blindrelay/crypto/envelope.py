"""
Transit Envelope Codec

Hybrid encryption for anything sent through the relay: a fresh AES-256-GCM
key encrypts the payload and is itself wrapped with the recipient's RSA-OAEP
transport public key. Messages, call signaling and key-rotation notices all
travel in this one format.

Two variants exist on the wire:

- HybridEnvelope: JSON {"wrapped_key", "iv", "ciphertext"}, all base64
- LegacyEnvelope: base64 of a direct RSA-OAEP ciphertext (older clients)
"""

import os
import json
from dataclasses import dataclass
from typing import Iterable, Optional, Union
from cryptography.hazmat.primitives.asymmetric import rsa

from .primitives import (
    KEY_SIZE,
    DecryptionFailed,
    aead_decrypt,
    aead_encrypt,
    asymmetric_decrypt,
    asymmetric_encrypt,
    b64decode,
    b64encode,
    deserialize_transport_public_key,
)


@dataclass(frozen=True)
class HybridEnvelope:
    """
    Envelope sealed to one recipient.

    Attributes:
        wrapped_key: RSA-OAEP ciphertext of the one-time AES key
        iv: AES-GCM nonce
        ciphertext: AES-GCM ciphertext of the payload
    """
    wrapped_key: bytes
    iv: bytes
    ciphertext: bytes

    def serialize(self) -> str:
        """Serialize to the JSON wire format"""
        return json.dumps({
            'wrapped_key': b64encode(self.wrapped_key),
            'iv': b64encode(self.iv),
            'ciphertext': b64encode(self.ciphertext),
        })


@dataclass(frozen=True)
class LegacyEnvelope:
    """Payload encrypted directly with RSA-OAEP, no symmetric layer"""
    ciphertext: bytes

    def serialize(self) -> str:
        return b64encode(self.ciphertext)


Envelope = Union[HybridEnvelope, LegacyEnvelope]


def _as_public_key(recipient_public_key: Union[bytes, str, rsa.RSAPublicKey]) -> rsa.RSAPublicKey:
    if isinstance(recipient_public_key, rsa.RSAPublicKey):
        return recipient_public_key
    if isinstance(recipient_public_key, str):
        recipient_public_key = b64decode(recipient_public_key)
    return deserialize_transport_public_key(recipient_public_key)


def seal(plaintext: bytes, recipient_public_key: Union[bytes, str, rsa.RSAPublicKey]) -> HybridEnvelope:
    """
    Seal a payload to a recipient's transport public key.

    Args:
        plaintext: Payload bytes of any length
        recipient_public_key: SPKI DER bytes, their base64 form, or a key object

    Returns:
        HybridEnvelope
    """
    public_key = _as_public_key(recipient_public_key)
    message_key = os.urandom(KEY_SIZE)
    ciphertext, iv = aead_encrypt(message_key, plaintext)
    wrapped_key = asymmetric_encrypt(public_key, message_key)
    return HybridEnvelope(wrapped_key=wrapped_key, iv=iv, ciphertext=ciphertext)


def decode_envelope(blob: str) -> Envelope:
    """
    Decode a wire blob into one of the two envelope variants.

    A JSON object carrying a string ``wrapped_key`` is a hybrid envelope;
    anything else is treated as a legacy base64 RSA-OAEP payload.

    Raises:
        DecryptionFailed: If the blob matches neither shape
    """
    try:
        data = json.loads(blob)
    except ValueError:
        data = None

    if isinstance(data, dict) and isinstance(data.get('wrapped_key'), str) and data['wrapped_key']:
        iv = data.get('iv')
        ciphertext = data.get('ciphertext')
        if not isinstance(iv, str) or not isinstance(ciphertext, str):
            raise DecryptionFailed("Envelope is missing iv or ciphertext")
        try:
            return HybridEnvelope(
                wrapped_key=b64decode(data['wrapped_key']),
                iv=b64decode(iv),
                ciphertext=b64decode(ciphertext),
            )
        except ValueError as e:
            raise DecryptionFailed(f"Malformed envelope: {e}")

    try:
        return LegacyEnvelope(ciphertext=b64decode(blob.strip()))
    except ValueError:
        raise DecryptionFailed("Blob is neither a transit envelope nor a legacy payload")


def open_envelope(envelope: Union[Envelope, str], private_key: rsa.RSAPrivateKey) -> bytes:
    """
    Open an envelope with our transport private key.

    Args:
        envelope: Decoded envelope or the raw wire blob
        private_key: Our transport private key

    Returns:
        Plaintext bytes

    Raises:
        DecryptionFailed: If the envelope was not sealed to this key or was tampered with
    """
    if isinstance(envelope, str):
        envelope = decode_envelope(envelope)

    if isinstance(envelope, LegacyEnvelope):
        return asymmetric_decrypt(private_key, envelope.ciphertext)

    message_key = asymmetric_decrypt(private_key, envelope.wrapped_key)
    if len(message_key) != KEY_SIZE:
        raise DecryptionFailed("Wrapped key has the wrong length")
    return aead_decrypt(message_key, envelope.ciphertext, envelope.iv)


def open_with_any(blob: Union[Envelope, str], private_keys: Iterable[rsa.RSAPrivateKey]) -> bytes:
    """
    Try each candidate key in order (current key first, then the previous one
    during its grace period).

    Raises:
        DecryptionFailed: If no key opens the envelope
    """
    envelope = decode_envelope(blob) if isinstance(blob, str) else blob
    last_error: Optional[DecryptionFailed] = None
    for private_key in private_keys:
        try:
            return open_envelope(envelope, private_key)
        except DecryptionFailed as e:
            last_error = e
    raise DecryptionFailed("No available transport key opens this envelope") from last_error
