"""
Sync handlers.

A handler declares the event tags it owns, a gate deciding whether an event
may be applied under the current context, and the effect itself. Effects are
delivered to the application through callbacks, which may be plain functions
or coroutines.
"""

import json
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from blindrelay.client.errors import CorruptKeyMaterial, KeyMaterialUnavailable, RotationInProgress
from blindrelay.client.messaging import ROTATION_NOTICE_TYPE, as_rotation_notice, parse_signed_payload
from blindrelay.crypto.envelope import open_with_any
from blindrelay.crypto.primitives import DecryptionFailed, aead_decrypt, b64decode
from .context import SyncContext
from .events import (
    IncomingMessage,
    IncomingMessageSynced,
    OutgoingMessageSynced,
    PasskeyAdded,
    PasskeyRemoved,
    SessionDeleted,
    SessionInvalidated,
    SettingsUpdated,
    SyncEvent,
    TransportKeyRotated,
    VaultMessageUpdated,
)


logger = logging.getLogger(__name__)


async def _call(callback: Optional[Callable], *args):
    if callback is None:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def decrypt_document(master_key: bytes, ciphertext: str, iv: str) -> Any:
    """
    Open a master-key encrypted JSON document.

    Raises:
        DecryptionFailed: If the blob is malformed or fails authentication
    """
    try:
        plaintext = aead_decrypt(master_key, b64decode(ciphertext), b64decode(iv))
    except ValueError as e:
        raise DecryptionFailed("Malformed encrypted document") from e
    try:
        return json.loads(plaintext.decode())
    except (UnicodeDecodeError, ValueError) as e:
        raise DecryptionFailed("Encrypted document is not JSON") from e


class SyncHandler:
    """Base class for sync handlers"""

    event_types: Sequence[str] = ()

    def should_process(self, event: SyncEvent, context: SyncContext) -> bool:
        return context.authenticated

    async def handle(self, event: SyncEvent, context: SyncContext) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass
class ReceivedMessage:
    """A verified message opened from an inbound envelope"""
    id: str
    sender_handle: str
    sender_identity_key: str
    type: str
    content: str
    message_id: Optional[str]
    created_at: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VaultEntry:
    """A copy of one of our conversations, sealed under the master key"""
    id: str
    data: Any
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    version: Optional[int] = None
    deleted: bool = False
    peer_handle: Optional[str] = None
    outgoing: bool = False
    sender_signature_verified: bool = False


class MessageSyncHandler(SyncHandler):
    """
    Inbound envelopes and synced vault copies.

    Incoming envelopes are opened with the transport keys (current, then the
    grace-period key) and their signature verified against the sender's
    identity key from identity_key_lookup. Envelopes from a sender with no
    known identity key are dropped. Verified payloads are then routed:
    rotation notices go to on_contact_key_rotated, everything else to
    on_message.
    Synced and vault copies are opened with the master key.
    """

    event_types = (
        'INCOMING_MESSAGE',
        'OUTGOING_MESSAGE_SYNCED',
        'INCOMING_MESSAGE_SYNCED',
        'VAULT_MESSAGE_UPDATED',
    )

    def __init__(self, on_message: Optional[Callable] = None,
                 on_contact_key_rotated: Optional[Callable] = None,
                 on_vault_message: Optional[Callable] = None,
                 identity_key_lookup: Optional[Callable] = None):
        """
        Args:
            on_message: Receives a ReceivedMessage
            on_contact_key_rotated: Receives a RotationNotice
            on_vault_message: Receives a VaultEntry
            identity_key_lookup: Returns (or resolves to) the trusted identity
                key for a handle, or None if there is none
        """
        self.on_message = on_message
        self.on_contact_key_rotated = on_contact_key_rotated
        self.on_vault_message = on_vault_message
        self.identity_key_lookup = identity_key_lookup

    def should_process(self, event: SyncEvent, context: SyncContext) -> bool:
        if not context.authenticated:
            return False
        if isinstance(event, IncomingMessage):
            return bool(context.transport_private_keys) and not context.is_blocked(event.sender_handle)
        if context.master_key is None:
            return False
        if isinstance(event, IncomingMessageSynced):
            return not context.is_blocked(event.original_sender_handle)
        return True

    async def handle(self, event: SyncEvent, context: SyncContext) -> None:
        if isinstance(event, IncomingMessage):
            await self._handle_incoming(event, context)
        elif isinstance(event, (OutgoingMessageSynced, IncomingMessageSynced)):
            await self._handle_synced(event, context)
        elif isinstance(event, VaultMessageUpdated):
            await self._handle_vault(event, context)

    async def _handle_incoming(self, event: IncomingMessage, context: SyncContext):
        try:
            plaintext = open_with_any(event.encrypted_blob, context.transport_private_keys)
        except DecryptionFailed:
            logger.info("Dropping envelope %s from %s: not decryptable", event.id, event.sender_handle)
            return

        pinned = await _call(self.identity_key_lookup, event.sender_handle)
        if pinned is None:
            logger.warning("Dropping envelope %s: no trusted identity key for %s",
                           event.id, event.sender_handle)
            return
        payload = parse_signed_payload(plaintext, expected_identity_key=pinned)
        if payload is None:
            return
        if payload.sender_handle != event.sender_handle:
            logger.warning("Envelope %s claims sender %s but was routed from %s",
                           event.id, payload.sender_handle, event.sender_handle)
            return

        notice = as_rotation_notice(payload)
        if notice is not None:
            await _call(self.on_contact_key_rotated, notice)
            return
        if payload.type == ROTATION_NOTICE_TYPE:
            return

        await _call(self.on_message, ReceivedMessage(
            id=event.id,
            sender_handle=payload.sender_handle,
            sender_identity_key=payload.sender_identity_key,
            type=payload.type,
            content=payload.content,
            message_id=payload.message_id or event.message_id,
            created_at=event.created_at,
            fields=payload.fields,
        ))

    async def _handle_synced(self, event, context: SyncContext):
        try:
            data = decrypt_document(context.master_key, event.encrypted_blob, event.iv)
        except DecryptionFailed:
            logger.warning("Dropping synced message: vault blob did not decrypt")
            return
        outgoing = isinstance(event, OutgoingMessageSynced)
        await _call(self.on_vault_message, VaultEntry(
            id=event.message_id if outgoing else event.id,
            data=data,
            created_at=event.created_at,
            peer_handle=event.original_sender_handle,
            outgoing=outgoing,
            sender_signature_verified=event.sender_signature_verified,
        ))

    async def _handle_vault(self, event: VaultMessageUpdated, context: SyncContext):
        data = None
        if event.deleted_at is None:
            try:
                data = decrypt_document(context.master_key, event.encrypted_blob, event.iv)
            except DecryptionFailed:
                logger.warning("Dropping vault update %s: blob did not decrypt", event.id)
                return
        await _call(self.on_vault_message, VaultEntry(
            id=event.id,
            data=data,
            updated_at=event.updated_at,
            version=event.version,
            deleted=event.deleted_at is not None,
        ))


# ---------------------------------------------------------------------------
# Master-key encrypted documents
# ---------------------------------------------------------------------------

class EncryptedDocumentHandler(SyncHandler):
    """Decrypts a {ciphertext, iv} document with the master key and applies it"""

    expected_type: type = object

    def __init__(self, apply: Callable):
        self.apply = apply

    def should_process(self, event: SyncEvent, context: SyncContext) -> bool:
        return context.authenticated and context.master_key is not None

    async def handle(self, event, context: SyncContext) -> None:
        try:
            document = decrypt_document(context.master_key, event.ciphertext, event.iv)
        except DecryptionFailed:
            logger.warning("Dropping %s: document did not decrypt", event.type)
            return
        if not isinstance(document, self.expected_type):
            logger.warning("Dropping %s: unexpected document shape", event.type)
            return
        await _call(self.apply, self.transform(document))

    def transform(self, document):
        return document


class BlockListSyncHandler(EncryptedDocumentHandler):
    """Block list is a JSON array of handles"""

    event_types = ('BLOCK_LIST_UPDATED',)
    expected_type = list

    def transform(self, document: List[Any]) -> List[str]:
        return [h for h in document if isinstance(h, str)]


class ContactsSyncHandler(EncryptedDocumentHandler):
    event_types = ('CONTACTS_UPDATED',)
    expected_type = list


class PrivacySettingsSyncHandler(EncryptedDocumentHandler):
    event_types = ('PRIVACY_SETTINGS_UPDATED',)
    expected_type = dict


# ---------------------------------------------------------------------------
# Keys, settings, sessions, passkeys
# ---------------------------------------------------------------------------

class TransportKeySyncHandler(SyncHandler):
    """Adopts a transport key rotated by another of our sessions"""

    event_types = ('TRANSPORT_KEY_ROTATED',)

    def __init__(self, keys, on_rotated: Optional[Callable] = None):
        """
        Args:
            keys: KeyLifecycleManager for the active session
            on_rotated: Called with the new public key after it is applied
        """
        self.keys = keys
        self.on_rotated = on_rotated

    def should_process(self, event: TransportKeyRotated, context: SyncContext) -> bool:
        return context.authenticated and context.master_key is not None

    async def handle(self, event: TransportKeyRotated, context: SyncContext) -> None:
        try:
            applied = await self.keys.apply_incoming_rotation(event)
        except CorruptKeyMaterial:
            logger.error("Rejected pushed transport key: it does not decrypt under the master key")
            return
        except (RotationInProgress, KeyMaterialUnavailable) as e:
            logger.warning("Skipped pushed transport key: %s", e)
            return
        if applied:
            await _call(self.on_rotated, event.public_transport_key)


class SettingsSyncHandler(SyncHandler):
    event_types = ('SETTINGS_UPDATED',)

    def __init__(self, apply: Callable[[Dict[str, Any]], Any]):
        self.apply = apply

    async def handle(self, event: SettingsUpdated, context: SyncContext) -> None:
        await _call(self.apply, event.updates())


class SessionSyncHandler(SyncHandler):
    """
    SESSION_INVALIDATED without a session id, or naming ours, ends this
    session. SESSION_DELETED for another session is reported as removed.
    """

    event_types = ('SESSION_INVALIDATED', 'SESSION_DELETED')

    def __init__(self, on_invalidated: Callable[[str], Any],
                 on_session_deleted: Optional[Callable[[str], Any]] = None):
        self.on_invalidated = on_invalidated
        self.on_session_deleted = on_session_deleted

    async def handle(self, event, context: SyncContext) -> None:
        if isinstance(event, SessionInvalidated):
            if event.session_id is None or event.session_id == context.session_id:
                await _call(self.on_invalidated, event.reason or "logout")
        elif isinstance(event, SessionDeleted):
            if event.session_id == context.session_id:
                await _call(self.on_invalidated, "deleted")
            else:
                await _call(self.on_session_deleted, event.session_id)


@dataclass
class PasskeyInfo:
    id: str
    credential_id: str
    name: Optional[str]
    created_at: str


class PasskeySyncHandler(SyncHandler):
    event_types = ('PASSKEY_ADDED', 'PASSKEY_REMOVED')

    def __init__(self, on_added: Callable[[PasskeyInfo], Any],
                 on_removed: Callable[[str], Any]):
        self.on_added = on_added
        self.on_removed = on_removed

    async def handle(self, event, context: SyncContext) -> None:
        if isinstance(event, PasskeyAdded):
            await _call(self.on_added, PasskeyInfo(
                id=event.id,
                credential_id=event.credential_id,
                name=event.name,
                created_at=event.created_at,
            ))
        elif isinstance(event, PasskeyRemoved):
            await _call(self.on_removed, event.credential_id)
