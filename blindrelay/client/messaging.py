"""
Signed payloads carried inside transit envelopes.

Every payload a client seals to a peer (chat text, call signaling, transport
key rotation notices) is a JSON object signed with the sender's identity key:

    {
        "type": "message" | "key_rotation" | "call_offer" | ...,
        "content": "...",
        "message_id": "...",              # absent on rotation notices
        "sender_handle": "alice@host",
        "sender_signature": base64,
        "sender_identity_key": base64,
        ...type-specific fields
    }
"""

import json
import uuid
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
import httpx

from blindrelay.crypto.envelope import seal
from blindrelay.crypto.primitives import (
    b64decode,
    b64encode,
    build_message_signature_payload,
    identity_public_key,
    sign,
    verify,
)
from .errors import RelayError


logger = logging.getLogger(__name__)

MESSAGE_TYPE = "message"
ROTATION_NOTICE_TYPE = "key_rotation"


@dataclass
class SignedPayload:
    """A payload whose signature verified against its claimed identity key"""
    type: str
    content: str
    sender_handle: str
    sender_identity_key: str
    message_id: Optional[str]
    fields: Dict[str, Any]


@dataclass
class RotationNotice:
    """A peer announced a new transport public key"""
    sender_handle: str
    sender_identity_key: str
    public_transport_key: str
    rotated_at: int


def rotation_notice_content(rotated_at: int, public_transport_key: str) -> str:
    return f"key-rotation:{rotated_at}:{public_transport_key}"


def build_signed_payload(kind: str, content: str, sender_handle: str,
                         identity_private_key: bytes,
                         message_id: Optional[str] = None,
                         **extra: Any) -> Dict[str, Any]:
    """
    Build and sign a payload.

    Args:
        kind: Payload type tag
        content: Signed content string
        sender_handle: Our handle
        identity_private_key: Our raw Ed25519 private key
        message_id: Included in the signature when given

    Returns:
        JSON-serializable dictionary
    """
    signature = sign(
        build_message_signature_payload(sender_handle, content, message_id),
        identity_private_key
    )
    payload = {
        "type": kind,
        "content": content,
        "sender_handle": sender_handle,
        "sender_signature": b64encode(signature),
        "sender_identity_key": b64encode(identity_public_key(identity_private_key)),
    }
    if message_id:
        payload["message_id"] = message_id
    payload.update(extra)
    return payload


def build_message(content: str, sender_handle: str, identity_private_key: bytes,
                  message_id: Optional[str] = None) -> Dict[str, Any]:
    """Build a signed chat message"""
    return build_signed_payload(
        MESSAGE_TYPE, content, sender_handle, identity_private_key,
        message_id=message_id or str(uuid.uuid4())
    )


def build_rotation_notice(sender_handle: str, identity_private_key: bytes,
                          public_transport_key: str, rotated_at: int) -> Dict[str, Any]:
    """Build the signed, timestamped notice sent to contacts after rotation"""
    return build_signed_payload(
        ROTATION_NOTICE_TYPE,
        rotation_notice_content(rotated_at, public_transport_key),
        sender_handle,
        identity_private_key,
        rotated_at=rotated_at,
        public_transport_key=public_transport_key,
    )


def parse_signed_payload(plaintext: bytes,
                         expected_identity_key: Optional[str] = None) -> Optional[SignedPayload]:
    """
    Parse an opened envelope and verify its signature.

    Args:
        plaintext: Bytes recovered from a transit envelope
        expected_identity_key: Pinned identity key for the sender, if known

    Returns:
        SignedPayload, or None if the payload is malformed or the signature
        does not verify
    """
    try:
        data = json.loads(plaintext.decode())
    except (UnicodeDecodeError, ValueError):
        logger.debug("Envelope payload is not JSON")
        return None
    if not isinstance(data, dict):
        return None

    kind = data.get("type")
    content = data.get("content")
    sender = data.get("sender_handle")
    signature = data.get("sender_signature")
    identity_key = data.get("sender_identity_key")
    message_id = data.get("message_id")
    if not all(isinstance(v, str) for v in (kind, content, sender, signature, identity_key)):
        return None
    if message_id is not None and not isinstance(message_id, str):
        return None
    if expected_identity_key is not None and identity_key != expected_identity_key:
        logger.warning("Identity key mismatch for %s", sender)
        return None

    try:
        valid = verify(
            build_message_signature_payload(sender, content, message_id),
            b64decode(signature),
            b64decode(identity_key),
        )
    except ValueError:
        valid = False
    if not valid:
        logger.warning("Rejected payload with invalid signature from %s", sender)
        return None

    known = {"type", "content", "sender_handle", "sender_signature", "sender_identity_key", "message_id"}
    return SignedPayload(
        type=kind,
        content=content,
        sender_handle=sender,
        sender_identity_key=identity_key,
        message_id=message_id,
        fields={k: v for k, v in data.items() if k not in known},
    )


def as_rotation_notice(payload: SignedPayload) -> Optional[RotationNotice]:
    """
    Interpret a verified payload as a rotation notice.

    The signed content must commit to the same key and timestamp as the
    unsigned convenience fields, otherwise the notice is rejected.
    """
    if payload.type != ROTATION_NOTICE_TYPE:
        return None
    rotated_at = payload.fields.get("rotated_at")
    public_key = payload.fields.get("public_transport_key")
    if not isinstance(rotated_at, int) or isinstance(rotated_at, bool) or not isinstance(public_key, str):
        return None
    if payload.content != rotation_notice_content(rotated_at, public_key):
        logger.warning("Rotation notice content does not match its fields")
        return None
    return RotationNotice(
        sender_handle=payload.sender_handle,
        sender_identity_key=payload.sender_identity_key,
        public_transport_key=public_key,
        rotated_at=rotated_at,
    )


async def resolve_transport_key(api, handle: str, public_transport_key: Optional[str] = None) -> str:
    """Return the known transport key or look it up in the directory"""
    if public_transport_key:
        return public_transport_key
    entry = await api.lookup_directory(handle)
    return entry["public_transport_key"]


async def send_payload(api, recipient_handle: str, payload: Dict[str, Any],
                       public_transport_key: Optional[str] = None,
                       event_type: str = MESSAGE_TYPE) -> str:
    """
    Seal a payload to a recipient and hand it to the relay.

    Returns:
        The message id used for delivery
    """
    recipient_key = await resolve_transport_key(api, recipient_handle, public_transport_key)
    blob = seal(json.dumps(payload).encode(), recipient_key).serialize()
    message_id = payload.get("message_id") or str(uuid.uuid4())
    await api.send_message(recipient_handle, blob, message_id, event_type)
    return message_id


class DirectoryIdentityKeys:
    """
    Identity keys published in the relay directory, cached per handle.

    Inbound payloads are verified against these, never against the
    sender_identity_key a payload carries for itself. A failed lookup is
    not cached, so the next message from that handle tries again.
    """

    def __init__(self, api):
        self.api = api
        self._keys: Dict[str, str] = {}

    async def __call__(self, handle: str) -> Optional[str]:
        if handle in self._keys:
            return self._keys[handle]
        try:
            entry = await self.api.lookup_directory(handle)
        except (RelayError, httpx.HTTPError) as e:
            logger.warning("Directory lookup for %s failed: %s", handle, e)
            return None
        if not isinstance(entry, dict) or entry.get("handle") != handle:
            logger.warning("Directory returned no entry for %s", handle)
            return None
        key = entry.get("public_identity_key")
        if not isinstance(key, str):
            return None
        self._keys[handle] = key
        return key
