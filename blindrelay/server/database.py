"""
Database models and operations for the relay.

Uses SQLAlchemy with SQLite. The relay stores public keys, SRP verifiers,
private keys sealed under each user's master key, and envelopes queued for
offline recipients. None of it is readable by the relay.
"""

import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from sqlalchemy import Column, DateTime, Integer, String, Text, delete, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()

DATABASE_URL = os.environ.get("BLINDRELAY_DATABASE_URL", "sqlite+aiosqlite:///./relay.db")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """Account record; everything secret is ciphertext or an SRP verifier"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(64), unique=True, index=True, nullable=False)
    handle = Column(String(255), unique=True, index=True, nullable=False)
    kdf_salt = Column(String(64), nullable=False)
    kdf_iterations = Column(Integer, nullable=False)
    srp_salt = Column(String(64), nullable=False)
    srp_verifier = Column(Text, nullable=False)
    public_identity_key = Column(String(64), nullable=False)
    public_transport_key = Column(Text, nullable=False)
    encrypted_identity_key = Column(Text, nullable=False)
    encrypted_identity_iv = Column(String(32), nullable=False)
    encrypted_transport_key = Column(Text, nullable=False)
    encrypted_transport_iv = Column(String(32), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def public_keys(self) -> Dict[str, str]:
        return {
            "public_identity_key": self.public_identity_key,
            "public_transport_key": self.public_transport_key,
        }

    def key_material(self) -> Dict[str, str]:
        """Sealed private keys and public keys returned after SRP login"""
        return {
            "encrypted_identity_key": self.encrypted_identity_key,
            "encrypted_identity_iv": self.encrypted_identity_iv,
            "encrypted_transport_key": self.encrypted_transport_key,
            "encrypted_transport_iv": self.encrypted_transport_iv,
            **self.public_keys(),
        }


class DeviceSession(Base):
    """One logged-in client session"""
    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True)
    user_id = Column(Integer, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    revoked_at = Column(DateTime, nullable=True)


class QueuedMessage(Base):
    """Envelope waiting for an offline recipient"""
    __tablename__ = "queued_messages"

    id = Column(String(36), primary_key=True)
    recipient_id = Column(Integer, index=True, nullable=False)
    sender_handle = Column(String(255), nullable=False)
    message_id = Column(String(64), nullable=True)
    event_type = Column(String(32), nullable=False, default="message")
    encrypted_blob = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def to_event(self, recipient_id: int) -> Dict[str, Any]:
        """INCOMING_MESSAGE payload for this envelope"""
        return {
            "id": self.id,
            "message_id": self.message_id,
            "recipient_id": str(recipient_id),
            "sender_handle": self.sender_handle,
            "encrypted_blob": self.encrypted_blob,
            "created_at": self.created_at.isoformat(),
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = DATABASE_URL):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_user(self, **fields) -> Optional[User]:
        """
        Create a new account.

        Returns:
            Created User object or None if the username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == fields["username"]))
            if result.scalar_one_or_none():
                return None

            user = User(**fields)
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def get_user_by_handle(self, handle: str) -> Optional[User]:
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.handle == handle))
            return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        async with self.async_session() as session:
            return await session.get(User, user_id)

    async def update_transport_key(self, user_id: int, public_transport_key: str,
                                   encrypted_transport_key: str, encrypted_transport_iv: str) -> bool:
        """
        Replace the account's transport key.

        Returns:
            False if the account does not exist
        """
        async with self.async_session() as session:
            user = await session.get(User, user_id)
            if not user:
                return False
            user.public_transport_key = public_transport_key
            user.encrypted_transport_key = encrypted_transport_key
            user.encrypted_transport_iv = encrypted_transport_iv
            await session.commit()
            return True

    async def delete_user(self, user_id: int):
        """Delete an account with its sessions and queued envelopes"""
        async with self.async_session() as session:
            await session.execute(delete(QueuedMessage).where(QueuedMessage.recipient_id == user_id))
            await session.execute(delete(DeviceSession).where(DeviceSession.user_id == user_id))
            await session.execute(delete(User).where(User.id == user_id))
            await session.commit()

    # Sessions

    async def create_session(self, user_id: int) -> str:
        """Open a session and return its id"""
        async with self.async_session() as session:
            row = DeviceSession(id=str(uuid.uuid4()), user_id=user_id)
            session.add(row)
            await session.commit()
            return row.id

    async def is_session_active(self, session_id: str, user_id: int) -> bool:
        async with self.async_session() as session:
            row = await session.get(DeviceSession, session_id)
            return bool(row and row.user_id == user_id and row.revoked_at is None)

    async def revoke_session(self, session_id: str):
        async with self.async_session() as session:
            row = await session.get(DeviceSession, session_id)
            if row and row.revoked_at is None:
                row.revoked_at = utcnow()
                await session.commit()

    # Transit queue

    async def queue_message(self, recipient_id: int, sender_handle: str, encrypted_blob: str,
                            message_id: Optional[str], event_type: str) -> QueuedMessage:
        async with self.async_session() as session:
            row = QueuedMessage(
                id=str(uuid.uuid4()),
                recipient_id=recipient_id,
                sender_handle=sender_handle,
                message_id=message_id,
                event_type=event_type,
                encrypted_blob=encrypted_blob,
                created_at=utcnow(),
            )
            session.add(row)
            await session.commit()
            return row

    async def pop_queued_messages(self, recipient_id: int) -> List[QueuedMessage]:
        """Return and remove every envelope queued for a recipient, oldest first"""
        async with self.async_session() as session:
            result = await session.execute(
                select(QueuedMessage)
                .where(QueuedMessage.recipient_id == recipient_id)
                .order_by(QueuedMessage.created_at)
            )
            rows = list(result.scalars().all())
            for row in rows:
                await session.delete(row)
            await session.commit()
            return rows
