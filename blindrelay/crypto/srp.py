"""
SRP-6a (Secure Remote Password) Authentication

Zero-knowledge password proof used for login. The relay stores only a
verifier ``v = g^x mod N`` and never sees the password or anything from which
the master key can be derived.

Group: RFC 5054 2048-bit prime, generator 2, hash SHA-256.

    x  = H(s | H(I ":" P))
    k  = H(N | PAD(g))
    u  = H(PAD(A) | PAD(B))
    K  = H(S)
    M1 = H(H(N) xor H(g) | H(I) | s | PAD(A) | PAD(B) | K)
    M2 = H(PAD(A) | M1 | K)

All values cross the wire as base64; group elements are padded to 256 bytes.
"""

import hashlib
import secrets
from typing import Optional

from .primitives import CryptoError, b64decode, b64encode, constant_time_compare


# 2048-bit group from RFC 5054, Appendix A
_N_HEX = (
    "AC6BDB41324A9A9BF166DE5E1389582FAF72B6651987EE07FC3192943DB56050"
    "A37329CBB4A099ED8193E0757767A13DD52312AB4B03310DCD7F48A9DA04FD50"
    "E8083969EDB767B0CF6095179A163AB3661A05FBD5FAAAE82918A9962F0B93B8"
    "55F97993EC975EEAA80D740ADBF4FF747359D041D5C33EA71D281E446B14773B"
    "CA97B43A23FB801676BD207A436C6481F1D2B9078717461A5B9D32E688F87748"
    "544523B524B0D57D5EA77A2775D2ECFA032CFBDBF52FB3786160279004E57AE6"
    "AF874E7303CE53299CCC041C7BC308D82A5698F3A8D0C38271AE35F8E9DBFBB6"
    "94B5C803D89F7AE435DE236D525F54759B65E372FCD68EF20FA7111F9E4AFF73"
)

N = int(_N_HEX, 16)
G = 2
N_BYTES = (N.bit_length() + 7) // 8
SALT_SIZE = 32
EPHEMERAL_BITS = 256


class SrpError(CryptoError):
    """Base exception for SRP protocol errors"""
    pass


class InvalidProof(SrpError):
    """Client proof M1 did not match (wrong password or unknown user)"""
    pass


class UnableToVerifyServerProof(SrpError):
    """Server counter-proof M2 did not match; the relay cannot be trusted"""
    pass


def _int_to_bytes(value: int) -> bytes:
    return value.to_bytes(max(1, (value.bit_length() + 7) // 8), "big")


def _pad(value: int) -> bytes:
    return value.to_bytes(N_BYTES, "big")


def _hash(*parts: bytes) -> bytes:
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part)
    return digest.digest()


def _hash_int(*parts: bytes) -> int:
    return int.from_bytes(_hash(*parts), "big")


def _encode_int(value: int) -> str:
    return b64encode(_pad(value))


def decode_group_element(value: str) -> int:
    """
    Decode a base64 group element (A, B or v).

    Raises:
        SrpError: If the value is not base64, is longer than N or is not
            reduced mod N
    """
    try:
        raw = b64decode(value)
    except ValueError as e:
        raise SrpError(f"Malformed SRP value: {e}")
    if len(raw) > N_BYTES:
        raise SrpError("SRP value longer than the group modulus")
    number = int.from_bytes(raw, "big")
    if number >= N:
        raise SrpError("SRP value outside the group")
    return number


K_MULTIPLIER = _hash_int(_int_to_bytes(N), _pad(G))


def generate_srp_salt() -> bytes:
    """Generate a fresh random SRP salt"""
    return secrets.token_bytes(SALT_SIZE)


def compute_x(username: str, password: str, salt: bytes) -> int:
    """Compute the private value x = H(s | H(I ":" P))"""
    inner = _hash(f"{username}:{password}".encode())
    return _hash_int(salt, inner)


def compute_verifier(username: str, password: str, salt_b64: str) -> str:
    """
    Compute the password verifier uploaded at registration.

    Args:
        username: Account username (the SRP identity I)
        password: User's password
        salt_b64: Base64 SRP salt

    Returns:
        Base64 verifier v = g^x mod N
    """
    x = compute_x(username, password, b64decode(salt_b64))
    return _encode_int(pow(G, x, N))


def _compute_u(A: int, B: int) -> int:
    return _hash_int(_pad(A), _pad(B))


def _compute_m1(username: str, salt: bytes, A: int, B: int, key: bytes) -> bytes:
    h_n = _hash(_int_to_bytes(N))
    h_g = _hash(_int_to_bytes(G))
    h_xor = bytes(a ^ b for a, b in zip(h_n, h_g))
    return _hash(h_xor, _hash(username.encode()), salt, _pad(A), _pad(B), key)


def _compute_m2(A: int, m1: bytes, key: bytes) -> bytes:
    return _hash(_pad(A), m1, key)


def _generate_ephemeral_secret() -> int:
    return secrets.randbits(EPHEMERAL_BITS) % (N - 1) + 1


class SrpClient:
    """
    Client side of one SRP-6a login attempt.

    Usage:
        client = SrpClient(username, password)
        A = client.start()
        M1 = client.process_challenge(salt, B)
        client.verify_server(M2)    # raises if the relay is not genuine
        client.session_key
    """

    def __init__(self, username: str, password: str):
        """
        Initialize a handshake.

        Args:
            username: Account username
            password: User's password (kept only for the life of this object)
        """
        self.username = username
        self._password: Optional[str] = password
        self._a = _generate_ephemeral_secret()
        self._A = pow(G, self._a, N)
        self._m1: Optional[bytes] = None
        self._key: Optional[bytes] = None
        self.verified = False

    def start(self) -> str:
        """Return the client ephemeral public value A (base64)"""
        return _encode_int(self._A)

    def process_challenge(self, salt_b64: str, B_b64: str) -> str:
        """
        Compute the client proof from the server challenge.

        Args:
            salt_b64: Account SRP salt from the relay
            B_b64: Server ephemeral public value

        Returns:
            Client proof M1 (base64)

        Raises:
            SrpError: If the challenge is malformed or unsafe
        """
        if self._password is None:
            raise SrpError("Challenge already processed")

        try:
            salt = b64decode(salt_b64)
        except ValueError:
            raise SrpError("Malformed SRP salt")
        B = decode_group_element(B_b64)
        if B % N == 0:
            raise SrpError("Server sent an invalid ephemeral value")

        u = _compute_u(self._A, B)
        if u == 0:
            raise SrpError("Invalid scrambling parameter")

        x = compute_x(self.username, self._password, salt)
        self._password = None

        base = (B - K_MULTIPLIER * pow(G, x, N)) % N
        S = pow(base, self._a + u * x, N)
        self._key = _hash(_pad(S))
        self._m1 = _compute_m1(self.username, salt, self._A, B, self._key)
        return b64encode(self._m1)

    def verify_server(self, M2_b64: str) -> None:
        """
        Check the server counter-proof before trusting anything it sent.

        Raises:
            UnableToVerifyServerProof: If M2 does not match
        """
        if self._m1 is None or self._key is None:
            raise UnableToVerifyServerProof("Handshake not completed")
        try:
            received = b64decode(M2_b64)
        except ValueError:
            raise UnableToVerifyServerProof("Malformed server proof")
        expected = _compute_m2(self._A, self._m1, self._key)
        if not constant_time_compare(received, expected):
            raise UnableToVerifyServerProof("Unable to verify server proof")
        self.verified = True

    @property
    def session_key(self) -> bytes:
        """Shared session key K, available only after verify_server()"""
        if not self.verified or self._key is None:
            raise SrpError("Session key unavailable before server verification")
        return self._key


class SrpServer:
    """
    Relay side of one SRP-6a login attempt.

    Holds only the stored salt and verifier for the account.
    """

    def __init__(self, username: str, salt_b64: str, verifier_b64: str):
        self.username = username
        self.salt_b64 = salt_b64
        self._salt = b64decode(salt_b64)
        self._v = decode_group_element(verifier_b64)
        self._b = _generate_ephemeral_secret()
        self._B = (K_MULTIPLIER * self._v + pow(G, self._b, N)) % N
        self.session_key: Optional[bytes] = None

    def challenge(self) -> str:
        """Return the server ephemeral public value B (base64)"""
        return _encode_int(self._B)

    def verify(self, A_b64: str, M1_b64: str) -> str:
        """
        Check the client proof and produce the counter-proof.

        Args:
            A_b64: Client ephemeral public value from round 1
            M1_b64: Client proof

        Returns:
            Server proof M2 (base64)

        Raises:
            InvalidProof: If the proof is wrong or A is unsafe
        """
        try:
            A = decode_group_element(A_b64)
        except SrpError:
            raise InvalidProof("Malformed client ephemeral value")
        if A % N == 0:
            raise InvalidProof("Client sent an invalid ephemeral value")

        u = _compute_u(A, self._B)
        S = pow(A * pow(self._v, u, N), self._b, N)
        key = _hash(_pad(S))
        expected = _compute_m1(self.username, self._salt, A, self._B, key)

        try:
            received = b64decode(M1_b64)
        except ValueError:
            raise InvalidProof("Malformed client proof")
        if not constant_time_compare(received, expected):
            raise InvalidProof("Invalid credentials")

        self.session_key = key
        return b64encode(_compute_m2(A, expected, key))
