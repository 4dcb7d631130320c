"""
Tests for the transit envelope codec
"""

import json
import pytest

from blindrelay.crypto.envelope import (
    HybridEnvelope,
    LegacyEnvelope,
    decode_envelope,
    open_envelope,
    open_with_any,
    seal,
)
from blindrelay.crypto.primitives import (
    DecryptionFailed,
    asymmetric_encrypt,
    b64encode,
    deserialize_transport_public_key,
)


class TestSealOpen:
    """Hybrid envelopes"""

    def test_open_recovers_plaintext(self, transport_keypair):
        envelope = seal(b"hello", transport_keypair.public_key)
        assert open_envelope(envelope, transport_keypair.private_key) == b"hello"

    def test_large_payload_exceeds_rsa_ceiling(self, transport_keypair):
        payload = b"x" * 64 * 1024
        blob = seal(payload, transport_keypair.public_key).serialize()
        assert open_envelope(blob, transport_keypair.private_key) == payload

    def test_accepts_base64_public_key(self, transport_keypair):
        envelope = seal(b"hi", b64encode(transport_keypair.public_key))
        assert open_envelope(envelope, transport_keypair.private_key) == b"hi"

    def test_wire_format(self, transport_keypair):
        blob = seal(b"hello", transport_keypair.public_key).serialize()
        data = json.loads(blob)
        assert set(data) == {"wrapped_key", "iv", "ciphertext"}
        assert all(isinstance(v, str) for v in data.values())

    def test_wrong_key_fails(self, transport_keypair, other_transport_keypair):
        blob = seal(b"hello", transport_keypair.public_key).serialize()
        with pytest.raises(DecryptionFailed):
            open_envelope(blob, other_transport_keypair.private_key)

    def test_tampered_ciphertext_fails(self, transport_keypair):
        envelope = seal(b"hello", transport_keypair.public_key)
        tampered = HybridEnvelope(
            wrapped_key=envelope.wrapped_key,
            iv=envelope.iv,
            ciphertext=bytes([envelope.ciphertext[0] ^ 1]) + envelope.ciphertext[1:],
        )
        with pytest.raises(DecryptionFailed):
            open_envelope(tampered, transport_keypair.private_key)

    def test_each_seal_uses_fresh_key(self, transport_keypair):
        a = seal(b"same", transport_keypair.public_key)
        b = seal(b"same", transport_keypair.public_key)
        assert a.wrapped_key != b.wrapped_key
        assert a.ciphertext != b.ciphertext


class TestDecode:
    """Structural decoding of wire blobs"""

    def test_legacy_blob(self, transport_keypair):
        public_key = deserialize_transport_public_key(transport_keypair.public_key)
        blob = b64encode(asymmetric_encrypt(public_key, b"old client"))

        envelope = decode_envelope(blob)
        assert isinstance(envelope, LegacyEnvelope)
        assert open_envelope(blob, transport_keypair.private_key) == b"old client"

    def test_hybrid_missing_iv_is_rejected(self, transport_keypair):
        data = json.loads(seal(b"hello", transport_keypair.public_key).serialize())
        del data["iv"]
        with pytest.raises(DecryptionFailed):
            decode_envelope(json.dumps(data))

    def test_hybrid_non_string_ciphertext_is_rejected(self):
        with pytest.raises(DecryptionFailed):
            decode_envelope(json.dumps({"wrapped_key": "AAAA", "iv": "AAAA", "ciphertext": 5}))

    def test_garbage_is_rejected(self):
        with pytest.raises(DecryptionFailed):
            decode_envelope("{not json or base64")

    def test_object_without_wrapped_key_is_not_hybrid(self):
        # Falls through to the legacy path, where the JSON text is not base64
        with pytest.raises(DecryptionFailed):
            decode_envelope(json.dumps({"iv": "AAAA", "ciphertext": "AAAA"}))


class TestOpenWithAny:

    def test_tries_keys_in_order(self, transport_keypair, other_transport_keypair):
        blob = seal(b"for the old key", transport_keypair.public_key).serialize()
        keys = [other_transport_keypair.private_key, transport_keypair.private_key]
        assert open_with_any(blob, keys) == b"for the old key"

    def test_no_matching_key(self, transport_keypair, other_transport_keypair):
        blob = seal(b"hello", transport_keypair.public_key).serialize()
        with pytest.raises(DecryptionFailed):
            open_with_any(blob, [other_transport_keypair.private_key])

    def test_no_keys(self, transport_keypair):
        blob = seal(b"hello", transport_keypair.public_key).serialize()
        with pytest.raises(DecryptionFailed):
            open_with_any(blob, [])
