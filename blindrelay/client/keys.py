"""
Key Lifecycle Manager

Owns every piece of key material for one account session:

- identity keypair (Ed25519, never rotated)
- transport keypair (RSA-OAEP, rotated every 30 days)
- previous transport private key (kept for a 72 hour grace period)
- master key (PBKDF2 of the password, protects the private keys at rest)

State machine:

    UNLOADED -> RESTORING -> READY -> ROTATING -> READY -> ... -> CLEARED

All key material lives on this object; nothing is kept in module globals.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import JWTError, jwt

from blindrelay.crypto.envelope import open_with_any
from blindrelay.crypto.primitives import (
    CryptoError,
    EncryptedPayload,
    DecryptionFailed,
    b64decode,
    b64encode,
    decrypt_private_key,
    derive_key,
    encrypt_private_key,
    export_transport_private_key,
    generate_identity_keypair,
    generate_salt,
    generate_transport_keypair,
    identity_public_key,
    import_transport_private_key,
    serialize_transport_public_key,
)
from blindrelay.crypto.srp import SrpClient, SrpError, compute_verifier, generate_srp_salt
from blindrelay.sync.context import SyncContext, SIGNED_OUT
from .config import ClientConfig, MIN_PASSWORD_LENGTH
from .errors import (
    CorruptKeyMaterial,
    InvalidCredentials,
    KeyMaterialUnavailable,
    RotationInProgress,
    UnableToVerifyServerProof,
    WeakPassword,
)
from .messaging import ROTATION_NOTICE_TYPE, build_rotation_notice, send_payload
from .storage import (
    ACTIVE_SESSION_KEY,
    MASTER_KEY_KEY,
    PREVIOUS_TRANSPORT_KEY_KEY,
    TRANSPORT_KEY_ROTATED_AT_KEY,
    SessionStore,
)


logger = logging.getLogger(__name__)


class SessionState(Enum):
    UNLOADED = "unloaded"
    RESTORING = "restoring"
    READY = "ready"
    ROTATING = "rotating"
    CLEARED = "cleared"


@dataclass
class SessionRecord:
    """
    Persisted session, enough to restore without the password (given the
    cached master key).
    """
    username: str
    handle: str
    kdf_salt: str
    kdf_iterations: int
    identity_private_key: EncryptedPayload
    transport_private_key: EncryptedPayload
    public_identity_key: str
    public_transport_key: str
    token: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'username': self.username,
            'handle': self.handle,
            'kdf_salt': self.kdf_salt,
            'kdf_iterations': self.kdf_iterations,
            'identity_private_key': self.identity_private_key.to_dict(),
            'transport_private_key': self.transport_private_key.to_dict(),
            'public_identity_key': self.public_identity_key,
            'public_transport_key': self.public_transport_key,
            'token': self.token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionRecord':
        """Create from dictionary"""
        return cls(
            username=data['username'],
            handle=data['handle'],
            kdf_salt=data['kdf_salt'],
            kdf_iterations=int(data['kdf_iterations']),
            identity_private_key=EncryptedPayload.from_dict(data['identity_private_key']),
            transport_private_key=EncryptedPayload.from_dict(data['transport_private_key']),
            public_identity_key=data['public_identity_key'],
            public_transport_key=data['public_transport_key'],
            token=data['token'],
        )


@dataclass
class PreviousTransportKeyRecord:
    """The superseded transport private key, sealed, with its expiry (ms)"""
    encrypted: EncryptedPayload
    expires_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {'encrypted': self.encrypted.to_dict(), 'expires_at': self.expires_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PreviousTransportKeyRecord':
        expires_at = data['expires_at']
        if not isinstance(expires_at, int):
            raise ValueError("expires_at must be an integer timestamp")
        return cls(encrypted=EncryptedPayload.from_dict(data['encrypted']), expires_at=expires_at)


@dataclass
class Contact:
    """A peer to notify on rotation"""
    handle: str
    public_transport_key: Optional[str] = None


@dataclass
class NotificationFailure:
    handle: str
    error: str


@dataclass
class RotationResult:
    """
    Outcome of a transport key rotation.

    The rotation itself succeeded if this object exists; failures lists the
    contacts that could not be told about it.
    """
    public_transport_key: str
    rotated_at: int
    notified: List[str] = field(default_factory=list)
    failures: List[NotificationFailure] = field(default_factory=list)


ContactsProvider = Callable[[], Awaitable[List[Contact]]]


def now_ms() -> int:
    return int(time.time() * 1000)


def resolve_local_user(value: str, instance_host: str) -> Tuple[str, str]:
    """
    Split user input into (username, handle) for a local account.

    Raises:
        ValueError: If the input is empty or names another instance
    """
    trimmed = value.strip().lower()
    if not trimmed:
        raise ValueError("Username is required")
    if "@" in trimmed:
        username, _, host = trimmed.partition("@")
        if not username or not host:
            raise ValueError("Enter a valid local handle")
        if host != instance_host:
            raise ValueError("Login is only supported for local users")
        return username, trimmed
    return trimmed, f"{trimmed}@{instance_host}"


class KeyLifecycleManager:
    """
    Owns identity, transport and master keys for the active session.
    """

    def __init__(self, api, store: SessionStore,
                 config: Optional[ClientConfig] = None,
                 contacts_provider: Optional[ContactsProvider] = None,
                 clock: Callable[[], int] = now_ms):
        """
        Initialize the manager.

        Args:
            api: Relay client (see blindrelay.client.api.RelayClient)
            store: Local session store
            config: Client configuration
            contacts_provider: Async callable returning contacts to notify on rotation
            clock: Millisecond clock
        """
        self.api = api
        self.store = store
        self.config = config or ClientConfig()
        self.contacts_provider = contacts_provider
        self.clock = clock

        self._state = SessionState.UNLOADED
        self._session: Optional[SessionRecord] = None
        self._master_key: Optional[bytes] = None
        self._identity_private_key: Optional[bytes] = None
        self._transport_private_key: Optional[rsa.RSAPrivateKey] = None
        self._previous_transport_private_key: Optional[rsa.RSAPrivateKey] = None
        self._previous_expires_at: Optional[int] = None
        self._rotation_in_flight = False
        self._schedule_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[SessionRecord]:
        return self._session

    @property
    def handle(self) -> Optional[str]:
        return self._session.handle if self._session else None

    @property
    def token(self) -> Optional[str]:
        return self._session.token if self._session else None

    @property
    def master_key(self) -> Optional[bytes]:
        return self._master_key

    @property
    def identity_private_key(self) -> Optional[bytes]:
        return self._identity_private_key

    @property
    def public_transport_key(self) -> Optional[str]:
        return self._session.public_transport_key if self._session else None

    @property
    def rotation_in_flight(self) -> bool:
        return self._rotation_in_flight

    def transport_private_keys(self) -> List[rsa.RSAPrivateKey]:
        """
        Keys that may open inbound envelopes: the current key, then the
        previous key while its grace period lasts.
        """
        keys = []
        if self._transport_private_key is not None:
            keys.append(self._transport_private_key)
        if self._previous_transport_private_key is not None:
            if self._previous_expires_at is not None and self._previous_expires_at > self.clock():
                keys.append(self._previous_transport_private_key)
            else:
                self._drop_previous_key()
        return keys

    def open_envelope(self, blob: str) -> bytes:
        """
        Open an inbound envelope with whichever transport key fits.

        Raises:
            KeyMaterialUnavailable: If no transport key is loaded
            DecryptionFailed: If no loaded key opens it
        """
        keys = self.transport_private_keys()
        if not keys:
            raise KeyMaterialUnavailable("No transport key loaded")
        return open_with_any(blob, keys)

    def sync_context(self, is_blocked: Optional[Callable[[str], bool]] = None) -> SyncContext:
        """Snapshot the decryption context for the sync dispatcher"""
        if self._session is None or self._state is SessionState.CLEARED:
            return SIGNED_OUT
        claims = self._token_claims(self._session.token)
        kwargs = {}
        if is_blocked is not None:
            kwargs['is_blocked'] = is_blocked
        return SyncContext(
            user_id=claims.get('sub') or self._session.handle,
            user_handle=self._session.handle,
            session_id=claims.get('sid'),
            master_key=self._master_key,
            transport_private_keys=tuple(self.transport_private_keys()),
            identity_private_key=self._identity_private_key,
            public_identity_key=self._session.public_identity_key,
            **kwargs
        )

    @staticmethod
    def _token_claims(token: str) -> Dict[str, Any]:
        try:
            return jwt.get_unverified_claims(token)
        except JWTError:
            return {}

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    async def register(self, username: str, password: str) -> SessionRecord:
        """
        Create an account and log into it.

        Args:
            username: Desired username or local handle
            password: Password (never leaves this process)

        Returns:
            The persisted SessionRecord

        Raises:
            WeakPassword: If the password is too short
            UsernameTaken: If the relay rejects the username
        """
        username, handle = resolve_local_user(username, self.config.instance_host)
        if len(password) < MIN_PASSWORD_LENGTH:
            raise WeakPassword(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        kdf_salt = generate_salt()
        kdf_iterations = self.config.kdf_iterations
        master_key = derive_key(password, kdf_salt, kdf_iterations)
        srp_salt = b64encode(generate_srp_salt())
        srp_verifier = compute_verifier(username, password, srp_salt)

        identity = generate_identity_keypair()
        transport = generate_transport_keypair()
        encrypted_identity = encrypt_private_key(master_key, identity.private_key)
        encrypted_transport = encrypt_private_key(
            master_key, export_transport_private_key(transport.private_key)
        )

        await self.api.register({
            "username": username,
            "kdf_salt": b64encode(kdf_salt),
            "kdf_iterations": kdf_iterations,
            "public_identity_key": b64encode(identity.public_key),
            "public_transport_key": b64encode(transport.public_key),
            "encrypted_identity_key": b64encode(encrypted_identity.ciphertext),
            "encrypted_identity_iv": b64encode(encrypted_identity.iv),
            "encrypted_transport_key": b64encode(encrypted_transport.ciphertext),
            "encrypted_transport_iv": b64encode(encrypted_transport.iv),
            "srp_salt": srp_salt,
            "srp_verifier": srp_verifier,
        })
        logger.info("Registered %s", handle)

        response = await self._authenticate(username, password)
        record = SessionRecord(
            username=username,
            handle=handle,
            kdf_salt=b64encode(kdf_salt),
            kdf_iterations=kdf_iterations,
            identity_private_key=encrypted_identity,
            transport_private_key=encrypted_transport,
            public_identity_key=b64encode(identity.public_key),
            public_transport_key=b64encode(transport.public_key),
            token=response["token"],
        )
        self._establish(record, master_key, identity.private_key, transport.private_key)
        self.store.put(TRANSPORT_KEY_ROTATED_AT_KEY, self.clock())
        return record

    async def login(self, username: str, password: str) -> SessionRecord:
        """
        Authenticate with SRP and unwrap the account keys.

        Raises:
            InvalidCredentials: If the password proof fails
            UnableToVerifyServerProof: If the relay's counter-proof is wrong
            CorruptKeyMaterial: If the keys do not decrypt after a valid login
        """
        username, handle = resolve_local_user(username, self.config.instance_host)
        params = await self.api.get_kdf_params(username)
        try:
            kdf_salt = b64decode(params["kdf_salt"])
            kdf_iterations = int(params["kdf_iterations"])
        except (KeyError, TypeError, ValueError):
            raise InvalidCredentials()
        master_key = derive_key(password, kdf_salt, kdf_iterations)

        response = await self._authenticate(username, password)
        keys = response.get("keys") or {}
        try:
            encrypted_identity = EncryptedPayload.from_dict({
                'ciphertext': keys["encrypted_identity_key"],
                'iv': keys["encrypted_identity_iv"],
            })
            encrypted_transport = EncryptedPayload.from_dict({
                'ciphertext': keys["encrypted_transport_key"],
                'iv': keys["encrypted_transport_iv"],
            })
            identity_private = decrypt_private_key(master_key, encrypted_identity)
            transport_private = import_transport_private_key(
                decrypt_private_key(master_key, encrypted_transport)
            )
            public_identity = keys["public_identity_key"]
            public_transport = keys["public_transport_key"]
            if identity_public_key(identity_private) != b64decode(public_identity):
                raise CryptoError("Identity key does not match its public half")
            if serialize_transport_public_key(transport_private.public_key()) != b64decode(public_transport):
                raise CryptoError("Transport key does not match its public half")
        except (KeyError, TypeError, ValueError, CryptoError) as e:
            logger.error("Key material for %s failed to decrypt after login", handle)
            raise CorruptKeyMaterial("Account key material could not be decrypted") from e

        record = SessionRecord(
            username=username,
            handle=handle,
            kdf_salt=params["kdf_salt"],
            kdf_iterations=kdf_iterations,
            identity_private_key=encrypted_identity,
            transport_private_key=encrypted_transport,
            public_identity_key=public_identity,
            public_transport_key=public_transport,
            token=response["token"],
        )
        self._establish(record, master_key, identity_private, transport_private)
        logger.info("Logged in as %s", handle)
        return record

    async def _authenticate(self, username: str, password: str) -> Dict[str, Any]:
        """
        Run both SRP rounds and verify the relay's proof.

        Nothing in the response may be used before verify_server() passes.
        """
        srp = SrpClient(username, password)
        A = srp.start()
        challenge = await self.api.srp_start(username, A)
        try:
            M1 = srp.process_challenge(challenge["salt"], challenge["B"])
        except (KeyError, TypeError, SrpError):
            raise UnableToVerifyServerProof("Relay sent an invalid SRP challenge")

        response = await self.api.srp_verify(username, A, M1)
        M2 = response.get("M2") if isinstance(response, dict) else None
        if not isinstance(M2, str):
            raise UnableToVerifyServerProof("Relay did not send a server proof")
        srp.verify_server(M2)

        if not isinstance(response.get("token"), str):
            raise UnableToVerifyServerProof("Relay did not send a session token")
        return response

    def _establish(self, record: SessionRecord, master_key: bytes,
                   identity_private: bytes, transport_private: rsa.RSAPrivateKey):
        self.store.put(ACTIVE_SESSION_KEY, record.to_dict())
        self.store.put(MASTER_KEY_KEY, b64encode(master_key))
        self._activate(record, master_key, identity_private, transport_private)
        self._refresh_previous_key()

    def _activate(self, record: SessionRecord, master_key: bytes,
                  identity_private: bytes, transport_private: rsa.RSAPrivateKey):
        self._session = record
        self._master_key = master_key
        self._identity_private_key = identity_private
        self._transport_private_key = transport_private
        self._state = SessionState.READY
        self.api.set_token(record.token)

    # ------------------------------------------------------------------
    # Restore and teardown
    # ------------------------------------------------------------------

    async def restore_session(self) -> bool:
        """
        Restore a persisted session with the cached master key.

        Either every key is restored or local state is wiped; a partially
        restored session is never exposed.

        Returns:
            True if the session is ready, False if the user must log in
        """
        self._state = SessionState.RESTORING
        try:
            data = self.store.get(ACTIVE_SESSION_KEY)
            if not data:
                logger.debug("No stored session")
                self._wipe_local_state()
                return False

            master_key_b64 = self.store.get(MASTER_KEY_KEY)
            if not master_key_b64:
                logger.warning("Stored session has no master key; clearing")
                self._wipe_local_state()
                return False

            record = SessionRecord.from_dict(data)
            master_key = b64decode(master_key_b64)
            identity_private = decrypt_private_key(master_key, record.identity_private_key)
            transport_private = import_transport_private_key(
                decrypt_private_key(master_key, record.transport_private_key)
            )
        except (KeyError, TypeError, ValueError, CryptoError):
            logger.warning("Session restore failed; clearing local state")
            self._wipe_local_state()
            return False

        self._activate(record, master_key, identity_private, transport_private)
        self._refresh_previous_key()
        return True

    def _clear_memory(self):
        self.stop_rotation_schedule()
        self._session = None
        self._master_key = None
        self._identity_private_key = None
        self._transport_private_key = None
        self._previous_transport_private_key = None
        self._previous_expires_at = None
        self._state = SessionState.CLEARED
        self.api.set_token(None)

    def _wipe_local_state(self):
        self._clear_memory()
        self.store.clear()

    async def logout(self) -> None:
        """
        Sign out. Key material is dropped before the relay is contacted.
        """
        token = self.token
        self._wipe_local_state()
        if not token:
            return
        try:
            await self.api.logout(token)
        except Exception as e:
            logger.warning("Relay logout failed: %s", e)

    async def delete_account(self) -> None:
        """
        Delete the account on the relay after dropping local key material.

        Raises:
            KeyMaterialUnavailable: If no session is active
        """
        token = self.token
        if not token:
            raise KeyMaterialUnavailable("No active session")
        self._clear_memory()
        try:
            await self.api.delete_account(token)
        finally:
            self.store.clear()

    # ------------------------------------------------------------------
    # Previous transport key (grace period)
    # ------------------------------------------------------------------

    def _load_previous_record(self) -> Optional[PreviousTransportKeyRecord]:
        data = self.store.get(PREVIOUS_TRANSPORT_KEY_KEY)
        if not isinstance(data, dict):
            return None
        try:
            return PreviousTransportKeyRecord.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding malformed previous transport key record")
            self.store.delete(PREVIOUS_TRANSPORT_KEY_KEY)
            return None

    def _drop_previous_key(self):
        self._previous_transport_private_key = None
        self._previous_expires_at = None
        self.store.delete(PREVIOUS_TRANSPORT_KEY_KEY)

    def _refresh_previous_key(self):
        record = self._load_previous_record()
        if record is None or self._master_key is None:
            self._previous_transport_private_key = None
            self._previous_expires_at = None
            return
        if record.expires_at <= self.clock():
            logger.info("Previous transport key expired")
            self._drop_previous_key()
            return
        try:
            self._previous_transport_private_key = import_transport_private_key(
                decrypt_private_key(self._master_key, record.encrypted)
            )
            self._previous_expires_at = record.expires_at
        except CryptoError:
            logger.warning("Previous transport key failed to decrypt")
            self._previous_transport_private_key = None
            self._previous_expires_at = None

    def _stash_previous_key(self):
        # Single slot: an older previous key is overwritten here.
        expires_at = self.clock() + self.config.grace_period_ms
        record = PreviousTransportKeyRecord(
            encrypted=self._session.transport_private_key,
            expires_at=expires_at,
        )
        self.store.put(PREVIOUS_TRANSPORT_KEY_KEY, record.to_dict())
        self._previous_transport_private_key = self._transport_private_key
        self._previous_expires_at = expires_at

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def _require_keys(self):
        if (self._master_key is None or self._identity_private_key is None
                or self._session is None or self._transport_private_key is None):
            raise KeyMaterialUnavailable("Key material unavailable")

    def get_transport_key_rotated_at(self) -> Optional[int]:
        value = self.store.get(TRANSPORT_KEY_ROTATED_AT_KEY)
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                return None
        return None

    async def rotate_transport_key(self) -> RotationResult:
        """
        Replace the transport keypair and tell contacts about it.

        Raises:
            KeyMaterialUnavailable: If master or identity key is not loaded
            RotationInProgress: If another rotation is running
        """
        self._require_keys()
        if self._rotation_in_flight:
            raise RotationInProgress("Transport key rotation already in progress")
        self._rotation_in_flight = True
        try:
            return await self._rotate_and_notify()
        finally:
            self._rotation_in_flight = False

    async def _rotate_and_notify(self) -> RotationResult:
        result = await self._rotate()
        notified, failures = await self._notify_contacts(result.public_transport_key, result.rotated_at)
        result.notified = notified
        result.failures = failures
        return result

    async def _rotate(self) -> RotationResult:
        self._require_keys()
        rotated_at = self.clock()
        snapshot = (
            self._session,
            self._transport_private_key,
            self._previous_transport_private_key,
            self._previous_expires_at,
            self.store.get(PREVIOUS_TRANSPORT_KEY_KEY),
        )
        self._state = SessionState.ROTATING
        try:
            # Persist locally (grace record, then new key) before publishing.
            self._stash_previous_key()
            transport = generate_transport_keypair()
            encrypted = encrypt_private_key(
                self._master_key, export_transport_private_key(transport.private_key)
            )
            public_key = b64encode(transport.public_key)
            record = replace(
                self._session,
                transport_private_key=encrypted,
                public_transport_key=public_key,
            )
            self.store.put(ACTIVE_SESSION_KEY, record.to_dict())
            self._session = record
            self._transport_private_key = transport.private_key

            try:
                await self.api.update_transport_key(
                    public_key,
                    b64encode(encrypted.ciphertext),
                    b64encode(encrypted.iv),
                )
            except Exception:
                logger.error("Publishing rotated transport key failed; restoring previous key")
                self._restore_snapshot(snapshot)
                raise

            if self._session is None:
                raise KeyMaterialUnavailable("Session cleared during rotation")
            self.store.put(TRANSPORT_KEY_ROTATED_AT_KEY, rotated_at)
            logger.info("Rotated transport key for %s", record.handle)
            return RotationResult(public_transport_key=public_key, rotated_at=rotated_at)
        finally:
            if self._state is SessionState.ROTATING:
                self._state = SessionState.READY

    def _restore_snapshot(self, snapshot):
        session, transport, previous, previous_expires_at, previous_record = snapshot
        if self._state is SessionState.CLEARED:
            return
        self._session = session
        self._transport_private_key = transport
        self._previous_transport_private_key = previous
        self._previous_expires_at = previous_expires_at
        self.store.put(ACTIVE_SESSION_KEY, session.to_dict())
        if previous_record is None:
            self.store.delete(PREVIOUS_TRANSPORT_KEY_KEY)
        else:
            self.store.put(PREVIOUS_TRANSPORT_KEY_KEY, previous_record)

    async def _notify_contacts(self, public_transport_key: str,
                               rotated_at: int) -> Tuple[List[str], List[NotificationFailure]]:
        """
        Send a signed rotation notice to every contact, one independent task
        per contact. Failures are collected, never raised.
        """
        if self.contacts_provider is None or self._session is None:
            return [], []

        try:
            contacts = await self.contacts_provider()
        except Exception as e:
            logger.warning("Could not load contacts for rotation notice: %s", e)
            return [], [NotificationFailure(handle="*", error=str(e))]

        own_handle = self._session.handle
        targets = [c for c in contacts if c.handle and c.handle != own_handle]
        if not targets:
            return [], []

        notice = build_rotation_notice(
            own_handle, self._identity_private_key, public_transport_key, rotated_at
        )
        outcomes = await asyncio.gather(
            *(
                send_payload(self.api, contact.handle, notice,
                             public_transport_key=contact.public_transport_key,
                             event_type=ROTATION_NOTICE_TYPE)
                for contact in targets
            ),
            return_exceptions=True,
        )

        notified: List[str] = []
        failures: List[NotificationFailure] = []
        for contact, outcome in zip(targets, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("Rotation notice to %s failed: %s", contact.handle, outcome)
                failures.append(NotificationFailure(handle=contact.handle, error=str(outcome) or type(outcome).__name__))
            else:
                notified.append(contact.handle)
        return notified, failures

    async def apply_incoming_rotation(self, payload) -> bool:
        """
        Adopt a transport key rotated by another of our own sessions.

        Args:
            payload: TRANSPORT_KEY_ROTATED event (public_transport_key,
                encrypted_transport_key, encrypted_transport_iv, rotated_at)

        Returns:
            True if the key was replaced, False if it was already current

        Raises:
            KeyMaterialUnavailable: If no master key is loaded
            RotationInProgress: If a local rotation is running
            CorruptKeyMaterial: If the pushed key does not decrypt
        """
        self._require_keys()
        if self._rotation_in_flight:
            raise RotationInProgress("Local rotation in progress")
        if payload.public_transport_key == self._session.public_transport_key:
            return False

        try:
            encrypted = EncryptedPayload(
                ciphertext=b64decode(payload.encrypted_transport_key),
                iv=b64decode(payload.encrypted_transport_iv),
            )
            next_key = import_transport_private_key(decrypt_private_key(self._master_key, encrypted))
            if serialize_transport_public_key(next_key.public_key()) != b64decode(payload.public_transport_key):
                raise DecryptionFailed("Pushed transport key does not match its public half")
        except (ValueError, CryptoError) as e:
            raise CorruptKeyMaterial("Pushed transport key could not be decrypted") from e

        self._stash_previous_key()
        record = replace(
            self._session,
            transport_private_key=encrypted,
            public_transport_key=payload.public_transport_key,
        )
        self.store.put(ACTIVE_SESSION_KEY, record.to_dict())
        self._session = record
        self._transport_private_key = next_key
        rotated_at = getattr(payload, 'rotated_at', None)
        self.store.put(TRANSPORT_KEY_ROTATED_AT_KEY, rotated_at if rotated_at is not None else self.clock())
        logger.info("Applied transport key rotated by another session")
        return True

    async def check_rotation(self) -> bool:
        """
        Rotate the transport key if it is older than the threshold.

        Guarded by a single in-flight flag so overlapping timers never start
        two rotations.

        Returns:
            True if a rotation ran
        """
        if self._rotation_in_flight:
            return False
        if self._state is not SessionState.READY:
            return False
        self._rotation_in_flight = True
        try:
            last_rotated_at = self.get_transport_key_rotated_at()
            now = self.clock()
            if last_rotated_at is None:
                self.store.put(TRANSPORT_KEY_ROTATED_AT_KEY, now)
                return False
            rotated = False
            if now - last_rotated_at >= self.config.rotation_threshold_ms:
                await self._rotate_and_notify()
                rotated = True
            self._refresh_previous_key()
            return rotated
        finally:
            self._rotation_in_flight = False

    async def _rotation_loop(self):
        while True:
            try:
                await self.check_rotation()
            except Exception:
                logger.exception("Transport key rotation check failed")
            await asyncio.sleep(self.config.rotation_check_interval)

    def start_rotation_schedule(self):
        """Start the background rotation check on the running loop"""
        if self._schedule_task is not None and not self._schedule_task.done():
            return
        self._schedule_task = asyncio.get_running_loop().create_task(self._rotation_loop())

    def stop_rotation_schedule(self):
        if self._schedule_task is not None:
            self._schedule_task.cancel()
            self._schedule_task = None
