"""
Cryptographic Primitives for the Blind Relay Client

This module provides the foundational cryptographic operations used by the
key lifecycle manager, the SRP handshake and the transit envelope codec:

- Ed25519 signatures (identity keys)
- RSA-OAEP-SHA256 asymmetric encryption (transport keys)
- AES-256-GCM authenticated encryption
- PBKDF2-HMAC-SHA256 password-based key derivation

Every function here is stateless.
"""

import os
import hmac
import json
import base64
import binascii
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_SIZE = 32
IV_SIZE = 12
SALT_SIZE = 16
TAG_SIZE = 16
TRANSPORT_KEY_BITS = 2048
LEGACY_AUTH_HASH_ITERATIONS = 200_000
MESSAGE_SIGNATURE_PREFIX = "blindrelay:message:v1"


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class DecryptionFailed(CryptoError):
    """Authentication tag mismatch, wrong key, or malformed ciphertext"""
    pass


@dataclass
class EncryptedPayload:
    """
    Anything sealed under a symmetric key.

    Attributes:
        ciphertext: AES-GCM ciphertext including the 16-byte tag
        iv: 12-byte nonce used for this ciphertext
    """
    ciphertext: bytes
    iv: bytes

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary for serialization"""
        return {
            'ciphertext': b64encode(self.ciphertext),
            'iv': b64encode(self.iv),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EncryptedPayload':
        """Create from dictionary"""
        return cls(
            ciphertext=b64decode(data['ciphertext']),
            iv=b64decode(data['iv']),
        )


@dataclass
class IdentityKeyPair:
    """Ed25519 signing keypair, both halves as raw 32-byte strings"""
    public_key: bytes
    private_key: bytes


@dataclass
class TransportKeyPair:
    """RSA-OAEP keypair; public half as SPKI DER, private half as a key handle"""
    public_key: bytes
    private_key: rsa.RSAPrivateKey


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def b64decode(value: str) -> bytes:
    """
    Decode standard base64, rejecting anything that is not.

    Raises:
        ValueError: If the value is not valid base64
    """
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64: {e}") from e


def generate_salt(length: int = SALT_SIZE) -> bytes:
    """Generate a random salt from the OS CSPRNG"""
    return os.urandom(length)


def derive_key(password: str, salt: bytes, iterations: int) -> bytes:
    """
    Derive a 256-bit symmetric key from a password using PBKDF2-SHA256.

    Args:
        password: User's password
        salt: Random salt stored alongside the account
        iterations: PBKDF2 iteration count

    Returns:
        32-byte key suitable for AES-256-GCM
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode())


def derive_auth_hash(password: str, salt: bytes, iterations: int = LEGACY_AUTH_HASH_ITERATIONS) -> str:
    """
    Derive the legacy base64 auth hash.

    Kept only for accounts created before SRP; never used as a key.
    """
    return b64encode(derive_key(password, salt, iterations))


def generate_identity_keypair() -> IdentityKeyPair:
    """
    Generate an Ed25519 keypair for digital signatures (identity keys).

    Returns:
        IdentityKeyPair with raw public and private bytes
    """
    private_key = Ed25519PrivateKey.generate()
    return IdentityKeyPair(
        public_key=serialize_identity_public_key(private_key.public_key()),
        private_key=private_key.private_bytes_raw(),
    )


def identity_public_key(private_key: bytes) -> bytes:
    """Recover the raw Ed25519 public key from a raw private key"""
    key = Ed25519PrivateKey.from_private_bytes(private_key)
    return serialize_identity_public_key(key.public_key())


def generate_transport_keypair() -> TransportKeyPair:
    """
    Generate an RSA-2048 keypair for receiving transit envelopes.

    Returns:
        TransportKeyPair with SPKI DER public key and private key handle
    """
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=TRANSPORT_KEY_BITS,
    )
    return TransportKeyPair(
        public_key=serialize_transport_public_key(private_key.public_key()),
        private_key=private_key,
    )


def sign(message: bytes, private_key: bytes) -> bytes:
    """
    Sign a message with an Ed25519 private key.

    Args:
        message: Bytes to sign
        private_key: Raw 32-byte Ed25519 private key

    Returns:
        64-byte signature
    """
    return Ed25519PrivateKey.from_private_bytes(private_key).sign(message)


def verify(message: bytes, signature: bytes, public_key: bytes) -> bool:
    """
    Verify an Ed25519 signature.

    Returns:
        True if the signature is valid, False otherwise (including
        malformed keys or signatures)
    """
    try:
        key = Ed25519PublicKey.from_public_bytes(public_key)
        key.verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False


def aead_encrypt(key: bytes, plaintext: bytes, associated_data: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """
    Encrypt data using AES-256-GCM with a fresh random IV.

    Args:
        key: 32-byte encryption key
        plaintext: Data to encrypt
        associated_data: Additional authenticated data

    Returns:
        Tuple of (ciphertext with tag, iv)
    """
    iv = os.urandom(IV_SIZE)
    ciphertext = AESGCM(key).encrypt(iv, plaintext, associated_data)
    return ciphertext, iv


def aead_decrypt(key: bytes, ciphertext: bytes, iv: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """
    Decrypt data using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        ciphertext: Ciphertext including the 16-byte tag
        iv: 12-byte IV used at encryption time
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionFailed: If the tag does not verify or inputs are malformed
    """
    if len(ciphertext) < TAG_SIZE:
        raise DecryptionFailed("Ciphertext too short")
    if len(iv) != IV_SIZE:
        raise DecryptionFailed("Invalid IV length")

    try:
        return AESGCM(key).decrypt(iv, ciphertext, associated_data)
    except InvalidTag:
        raise DecryptionFailed("Authentication tag mismatch")
    except ValueError as e:
        raise DecryptionFailed(f"Decryption failed: {e}")


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def asymmetric_encrypt(public_key: rsa.RSAPublicKey, data: bytes) -> bytes:
    """
    Encrypt a short payload with RSA-OAEP-SHA256.

    The payload must fit the OAEP ceiling (190 bytes for RSA-2048); larger
    payloads go through the transit envelope instead.
    """
    return public_key.encrypt(data, _oaep())


def asymmetric_decrypt(private_key: rsa.RSAPrivateKey, data: bytes) -> bytes:
    """
    Decrypt an RSA-OAEP-SHA256 ciphertext.

    Raises:
        DecryptionFailed: If the ciphertext was not produced for this key
    """
    try:
        return private_key.decrypt(data, _oaep())
    except ValueError:
        raise DecryptionFailed("Asymmetric decryption failed")


def encrypt_private_key(master_key: bytes, private_key: bytes) -> EncryptedPayload:
    """Seal serialized private key material under the master key"""
    ciphertext, iv = aead_encrypt(master_key, private_key)
    return EncryptedPayload(ciphertext=ciphertext, iv=iv)


def decrypt_private_key(master_key: bytes, payload: EncryptedPayload) -> bytes:
    """Open private key material sealed with encrypt_private_key"""
    return aead_decrypt(master_key, payload.ciphertext, payload.iv)


def serialize_identity_public_key(public_key: Ed25519PublicKey) -> bytes:
    """Serialize Ed25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def serialize_transport_public_key(public_key: rsa.RSAPublicKey) -> bytes:
    """Serialize RSA public key to SPKI DER"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )


def deserialize_transport_public_key(key_bytes: bytes) -> rsa.RSAPublicKey:
    """
    Deserialize SPKI DER bytes to an RSA public key.

    Raises:
        CryptoError: If the bytes are not an RSA public key
    """
    try:
        key = serialization.load_der_public_key(key_bytes)
    except ValueError as e:
        raise CryptoError(f"Invalid transport public key: {e}")
    if not isinstance(key, rsa.RSAPublicKey):
        raise CryptoError("Transport public key is not an RSA key")
    return key


def export_transport_private_key(private_key: rsa.RSAPrivateKey) -> bytes:
    """Serialize RSA private key to unencrypted PKCS#8 DER (seal it before storing)"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def import_transport_private_key(key_bytes: bytes) -> rsa.RSAPrivateKey:
    """
    Load an RSA private key from PKCS#8 DER.

    Raises:
        CryptoError: If the bytes are not an RSA private key
    """
    try:
        key = serialization.load_der_private_key(key_bytes, password=None)
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Invalid transport private key: {e}")
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CryptoError("Transport private key is not an RSA key")
    return key


def build_message_signature_payload(sender_handle: str, content: str, message_id: Optional[str] = None) -> bytes:
    """
    Build the canonical byte string a sender signs for a message.

    The JSON array is prefixed with a versioned tag so a signature over a
    message can never be replayed as a signature over anything else.
    """
    payload = [MESSAGE_SIGNATURE_PREFIX, sender_handle, content]
    if message_id:
        payload.append(message_id)
    return json.dumps(payload, separators=(',', ':')).encode()


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
