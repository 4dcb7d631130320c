"""
FastAPI blind relay.

This server:
- Registers accounts from public keys, sealed private keys and SRP verifiers
- Authenticates with SRP-6a (never sees a password)
- Publishes a directory of public keys
- Relays opaque envelopes, queueing them for offline recipients
- Pushes sync events to live sessions over WebSocket

It never decrypts anything.
"""

import os
import time
import uuid
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, Optional, Tuple
from fastapi import Depends, FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
from cryptography.hazmat.primitives import hashes, hmac

from blindrelay.crypto.primitives import (
    CryptoError,
    SALT_SIZE,
    b64decode,
    b64encode,
    deserialize_transport_public_key,
)
from blindrelay.crypto.srp import InvalidProof, SrpServer, compute_verifier, decode_group_element
from blindrelay.crypto.srp import SALT_SIZE as SRP_SALT_SIZE
from .database import DATABASE_URL, Database, utcnow
from .auth import ACCESS_TOKEN_EXPIRE_MINUTES, SECRET_KEY, TokenData, create_access_token, verify_token


logger = logging.getLogger(__name__)

INSTANCE_HOST = os.environ.get("BLINDRELAY_INSTANCE_HOST", "localhost")
MIN_KDF_ITERATIONS = 300_000
DEFAULT_KDF_ITERATIONS = 310_000
SRP_PENDING_TTL_SECONDS = 300
GENERIC_AUTH_ERROR = "Invalid username or password"


# Pydantic models for API
class RegisterRequest(BaseModel):
    username: str = Field(pattern=r"^[a-z0-9_.-]{3,32}$")
    kdf_salt: str
    kdf_iterations: int = Field(ge=MIN_KDF_ITERATIONS)
    public_identity_key: str
    public_transport_key: str
    encrypted_identity_key: str
    encrypted_identity_iv: str
    encrypted_transport_key: str
    encrypted_transport_iv: str
    srp_salt: str
    srp_verifier: str


class SrpStartRequest(BaseModel):
    username: str
    A: str


class SrpVerifyRequest(BaseModel):
    username: str
    A: str
    M1: str


class TransportKeyUpdate(BaseModel):
    public_transport_key: str
    encrypted_transport_key: str
    encrypted_transport_iv: str


class SendMessageRequest(BaseModel):
    recipient_handle: str
    encrypted_blob: str
    message_id: Optional[str] = None
    event_type: str = "message"


def now_ms() -> int:
    return int(time.time() * 1000)


def decoy_bytes(label: str, username: str, length: int) -> bytes:
    """Stable pseudo-random bytes per username, so unknown users look real"""
    mac = hmac.HMAC(SECRET_KEY.encode(), hashes.SHA256())
    mac.update(f"{label}:{username}".encode())
    return mac.finalize()[:length]


# WebSocket connection manager
class ConnectionManager:
    """Live sync channels, keyed by account id and session id"""

    def __init__(self):
        self.active_connections: Dict[int, Dict[str, WebSocket]] = {}

    def connect(self, user_id: int, session_id: str, websocket: WebSocket):
        self.active_connections.setdefault(user_id, {})[session_id] = websocket

    def disconnect(self, user_id: int, session_id: str):
        sessions = self.active_connections.get(user_id)
        if sessions is None:
            return
        sessions.pop(session_id, None)
        if not sessions:
            del self.active_connections[user_id]

    def is_online(self, user_id: int) -> bool:
        return bool(self.active_connections.get(user_id))

    async def push(self, user_id: int, event: str, payload: dict,
                   exclude_session: Optional[str] = None) -> int:
        """
        Send a sync event to every live session of an account.

        Returns:
            Number of sessions the event was written to
        """
        delivered = 0
        for session_id, websocket in list(self.active_connections.get(user_id, {}).items()):
            if session_id == exclude_session:
                continue
            try:
                await websocket.send_json({"event": event, "payload": payload})
                delivered += 1
            except Exception as e:
                logger.warning("Dropping sync channel %s: %s", session_id, e)
                self.disconnect(user_id, session_id)
        return delivered


def create_app(database_url: Optional[str] = None, instance_host: Optional[str] = None) -> FastAPI:
    """
    Build a relay application.

    Args:
        database_url: SQLAlchemy async URL (defaults to BLINDRELAY_DATABASE_URL)
        instance_host: Host part of handles served by this relay
    """
    db = Database(database_url or DATABASE_URL)
    manager = ConnectionManager()
    host = instance_host or INSTANCE_HOST
    srp_pending: Dict[str, Tuple[SrpServer, Optional[int], float]] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.create_tables()
        logger.info("Database initialized")
        yield
        logger.info("Relay shutting down")
        await db.dispose()

    app = FastAPI(
        title="Blind Relay",
        description="Relay for end-to-end encrypted messaging; stores ciphertext only",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.db = db
    app.state.manager = manager
    app.state.instance_host = host
    app.state.srp_pending = srp_pending

    async def current_session(authorization: Optional[str] = Header(None)) -> TokenData:
        token = None
        if authorization and authorization.lower().startswith("bearer "):
            token = authorization[7:]
        data = verify_token(token)
        if data is None or not await db.is_session_active(data.session_id, data.user_id):
            raise HTTPException(status_code=401, detail="Not authenticated")
        return data

    def prune_pending():
        cutoff = time.monotonic() - SRP_PENDING_TTL_SECONDS
        for key in [k for k, (_, _, created) in srp_pending.items() if created < cutoff]:
            del srp_pending[key]

    @app.post("/auth/register")
    async def register(body: RegisterRequest):
        """
        Register a new account.

        The client generates every key; the relay stores the public halves
        and the private halves sealed under the user's master key.
        """
        try:
            deserialize_transport_public_key(b64decode(body.public_transport_key))
            if len(b64decode(body.public_identity_key)) != 32:
                raise ValueError("identity key must be 32 bytes")
            for value in (body.kdf_salt, body.encrypted_identity_key, body.encrypted_identity_iv,
                          body.encrypted_transport_key, body.encrypted_transport_iv,
                          body.srp_salt, body.srp_verifier):
                b64decode(value)
            decode_group_element(body.srp_verifier)
        except (ValueError, CryptoError) as e:
            raise HTTPException(status_code=422, detail=f"Malformed key material: {e}")

        user = await db.create_user(handle=f"{body.username}@{host}", **body.model_dump())
        if not user:
            raise HTTPException(status_code=409, detail="Username already exists")

        logger.info("Registered %s", user.handle)
        return {
            "id": str(user.id),
            "handle": user.handle,
            "created_at": user.created_at.isoformat(),
            **user.public_keys(),
        }

    @app.get("/auth/params/{username}")
    async def kdf_params(username: str):
        """Master key KDF parameters; unknown users get stable decoys"""
        user = await db.get_user(username.lower())
        if user:
            return {"kdf_salt": user.kdf_salt, "kdf_iterations": user.kdf_iterations}
        return {
            "kdf_salt": b64encode(decoy_bytes("kdf", username.lower(), SALT_SIZE)),
            "kdf_iterations": DEFAULT_KDF_ITERATIONS,
        }

    @app.post("/auth/srp/start")
    async def srp_start(body: SrpStartRequest):
        """SRP round 1. Unknown users get a decoy challenge."""
        prune_pending()
        username = body.username.lower()
        user = await db.get_user(username)
        if user:
            server = SrpServer(username, user.srp_salt, user.srp_verifier)
            user_id = user.id
        else:
            decoy_salt = b64encode(decoy_bytes("srp", username, SRP_SALT_SIZE))
            server = SrpServer(username, decoy_salt, compute_verifier(username, uuid.uuid4().hex, decoy_salt))
            user_id = None
        srp_pending[f"{username}:{body.A}"] = (server, user_id, time.monotonic())
        return {"salt": server.salt_b64, "B": server.challenge()}

    @app.post("/auth/srp/verify")
    async def srp_verify(body: SrpVerifyRequest):
        """SRP round 2: check M1, open a session, return M2 and sealed keys"""
        username = body.username.lower()
        pending = srp_pending.pop(f"{username}:{body.A}", None)
        if pending is None:
            raise HTTPException(status_code=401, detail=GENERIC_AUTH_ERROR)
        server, user_id, _ = pending
        try:
            M2 = server.verify(body.A, body.M1)
        except InvalidProof:
            raise HTTPException(status_code=401, detail=GENERIC_AUTH_ERROR)
        if user_id is None:
            raise HTTPException(status_code=401, detail=GENERIC_AUTH_ERROR)

        user = await db.get_user_by_id(user_id)
        if not user:
            raise HTTPException(status_code=401, detail=GENERIC_AUTH_ERROR)

        session_id = await db.create_session(user.id)
        token = create_access_token(
            data={"sub": str(user.id), "sid": session_id, "handle": user.handle},
            expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        )
        return {
            "token": token,
            "M2": M2,
            "keys": user.key_material(),
            "kdf_params": {"kdf_salt": user.kdf_salt, "kdf_iterations": user.kdf_iterations},
            "handle": user.handle,
        }

    @app.patch("/auth/keys/transport")
    async def update_transport_key(body: TransportKeyUpdate, auth: TokenData = Depends(current_session)):
        """Publish a rotated transport key and tell the account's other sessions"""
        try:
            deserialize_transport_public_key(b64decode(body.public_transport_key))
        except (ValueError, CryptoError):
            raise HTTPException(status_code=422, detail="Malformed transport key")
        if not await db.update_transport_key(auth.user_id, body.public_transport_key,
                                             body.encrypted_transport_key, body.encrypted_transport_iv):
            raise HTTPException(status_code=404, detail="Account not found")

        await manager.push(auth.user_id, "TRANSPORT_KEY_ROTATED", {
            "public_transport_key": body.public_transport_key,
            "encrypted_transport_key": body.encrypted_transport_key,
            "encrypted_transport_iv": body.encrypted_transport_iv,
            "rotated_at": now_ms(),
            "originSessionId": auth.session_id,
        }, exclude_session=auth.session_id)
        return {"ok": True}

    @app.get("/api/directory")
    async def directory(handle: str):
        """Public keys for a handle"""
        handle = handle.strip().lower()
        if "@" not in handle:
            handle = f"{handle}@{host}"
        user = await db.get_user_by_handle(handle)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return {"handle": user.handle, **user.public_keys()}

    @app.post("/messages/send")
    async def send_message(body: SendMessageRequest, auth: TokenData = Depends(current_session)):
        """
        Deliver an opaque envelope to a handle.

        Live sessions get an INCOMING_MESSAGE push; otherwise the envelope is
        queued until the recipient connects.
        """
        recipient = await db.get_user_by_handle(body.recipient_handle.strip().lower())
        if not recipient:
            raise HTTPException(status_code=404, detail="Recipient not found")

        if manager.is_online(recipient.id):
            event = {
                "id": str(uuid.uuid4()),
                "message_id": body.message_id,
                "recipient_id": str(recipient.id),
                "sender_handle": auth.handle,
                "encrypted_blob": body.encrypted_blob,
                "created_at": utcnow().isoformat(),
            }
            if await manager.push(recipient.id, "INCOMING_MESSAGE", event):
                return {"id": event["id"], "delivered": True}

        queued = await db.queue_message(recipient.id, auth.handle, body.encrypted_blob,
                                        body.message_id, body.event_type)
        return {"id": queued.id, "delivered": False}

    @app.post("/auth/logout")
    async def logout(auth: TokenData = Depends(current_session)):
        await db.revoke_session(auth.session_id)
        await manager.push(auth.user_id, "SESSION_DELETED", {
            "sessionId": auth.session_id,
            "deletedAt": utcnow().isoformat(),
        }, exclude_session=auth.session_id)
        return {"ok": True}

    @app.delete("/auth/account")
    async def delete_account(auth: TokenData = Depends(current_session)):
        """Delete the account; every other session is told to sign out"""
        await manager.push(auth.user_id, "SESSION_INVALIDATED", {"reason": "deleted"},
                           exclude_session=auth.session_id)
        await db.delete_user(auth.user_id)
        logger.info("Deleted account %s", auth.handle)
        return {"ok": True}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        Sync channel.

        Protocol:
        1. Client sends: {"type": "auth", "token": "jwt_token"}
        2. Server verifies and responds: {"type": "auth_success", "handle": "...", "session_id": "..."}
        3. Server pushes: {"event": "INCOMING_MESSAGE", "payload": {...}}
        4. Client may send {"type": "ping"}; server answers {"type": "pong"}
        """
        auth = None

        try:
            await websocket.accept()

            auth_data = await websocket.receive_json()
            if not isinstance(auth_data, dict) or auth_data.get("type") != "auth":
                await websocket.send_json({"type": "error", "message": "Authentication required"})
                await websocket.close()
                return

            auth = verify_token(auth_data.get("token"))
            if auth is None or not await db.is_session_active(auth.session_id, auth.user_id):
                auth = None
                await websocket.send_json({"type": "error", "message": "Invalid token"})
                await websocket.close()
                return

            manager.connect(auth.user_id, auth.session_id, websocket)
            await websocket.send_json({
                "type": "auth_success",
                "handle": auth.handle,
                "session_id": auth.session_id,
            })

            for queued in await db.pop_queued_messages(auth.user_id):
                await websocket.send_json({
                    "event": "INCOMING_MESSAGE",
                    "payload": queued.to_event(auth.user_id),
                })

            while True:
                data = await websocket.receive_json()
                if isinstance(data, dict) and data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning("WebSocket error: %s", e)
        finally:
            if auth:
                manager.disconnect(auth.user_id, auth.session_id)

    return app


app = create_app()


def run():
    import uvicorn
    uvicorn.run(app, host=os.environ.get("BLINDRELAY_HOST", "0.0.0.0"),
                port=int(os.environ.get("BLINDRELAY_PORT", "8000")))


if __name__ == "__main__":
    run()
