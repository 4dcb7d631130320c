#!/usr/bin/env python3
"""
CLI Client for the blind relay

Provides a command-line interface for:
- Registration and SRP login (the password never leaves this process)
- Session restore from the local sealed store
- Sending signed messages sealed in transit envelopes
- Receiving sync events (messages, key rotations, block list, contacts,
  settings, passkeys, session changes)
- Manual and scheduled transport key rotation
"""

import os
import sys
import json
import asyncio
import getpass
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set
import httpx
import websockets
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from blindrelay.client.api import RelayClient
from blindrelay.client.config import ClientConfig
from blindrelay.client.errors import RelayError, SessionError, UnableToVerifyServerProof
from blindrelay.client.keys import Contact, KeyLifecycleManager
from blindrelay.client.messaging import DirectoryIdentityKeys, build_message, send_payload
from blindrelay.client.storage import SqliteSessionStore
from blindrelay.sync import (
    BlockListSyncHandler,
    ContactsSyncHandler,
    MessageSyncHandler,
    PasskeySyncHandler,
    PrivacySettingsSyncHandler,
    SessionSyncHandler,
    SettingsSyncHandler,
    SyncManager,
    TransportKeySyncHandler,
)

HELP_TEXT = """Commands:
  /chat <handle> - Start chat with user
  /exit - Exit current chat
  /contacts - List contacts
  /blocked - List blocked handles
  /rotate - Rotate transport key now
  /whoami - Show your handle and key fingerprint
  /logout - Sign out and wipe local keys
  /quit - Quit application"""


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, config: Optional[ClientConfig] = None, api=None, store=None):
        """
        Initialize chat client.

        Args:
            config: Client configuration (defaults to environment)
            api: Relay client (defaults to HTTP against config.server_url)
            store: Session store (defaults to the sealed store in config.storage_dir)
        """
        self.config = config or ClientConfig.from_env()
        self.api = api or RelayClient(self.config.server_url)
        self.store = store if store is not None else SqliteSessionStore.open(self.config.storage_dir)
        self.contacts: Dict[str, Contact] = {}
        self.blocked: Set[str] = set()
        self.settings: Dict[str, Any] = {}
        self.privacy_settings: Dict[str, Any] = {}
        self.passkeys: Dict[str, str] = {}
        self.keys = KeyLifecycleManager(
            self.api, self.store, self.config,
            contacts_provider=self._list_contacts,
        )
        self.sync = SyncManager(lambda: self.keys.sync_context(is_blocked=self._is_blocked))
        self.sync.register_handler(MessageSyncHandler(
            on_message=self._on_message,
            on_contact_key_rotated=self._on_contact_key_rotated,
            identity_key_lookup=DirectoryIdentityKeys(self.api),
        ))
        self.sync.register_handler(BlockListSyncHandler(self._on_block_list))
        self.sync.register_handler(ContactsSyncHandler(self._on_contacts))
        self.sync.register_handler(PrivacySettingsSyncHandler(self.privacy_settings.update))
        self.sync.register_handler(TransportKeySyncHandler(self.keys, on_rotated=self._on_own_key_rotated))
        self.sync.register_handler(SettingsSyncHandler(self._on_settings))
        self.sync.register_handler(SessionSyncHandler(on_invalidated=self._on_session_invalidated))
        self.sync.register_handler(PasskeySyncHandler(on_added=self._on_passkey_added,
                                                      on_removed=self._on_passkey_removed))
        self.websocket = None
        self.running = False
        self.current_chat: Optional[str] = None

    async def _list_contacts(self):
        return list(self.contacts.values())

    def _is_blocked(self, handle: str) -> bool:
        return handle in self.blocked

    async def register(self, username: str, password: str) -> bool:
        try:
            record = await self.keys.register(username, password)
        except UnableToVerifyServerProof:
            print("Registration aborted: the relay could not prove it stored your account. Try again later.")
            return False
        except (SessionError, ValueError) as e:
            print(f"Registration failed: {e}")
            return False
        except httpx.HTTPError as e:
            print(f"Cannot reach relay: {e}")
            return False
        print(f"Registration successful! Welcome, {record.handle}")
        return True

    async def login(self, username: str, password: str) -> bool:
        try:
            record = await self.keys.login(username, password)
        except UnableToVerifyServerProof:
            print("Login aborted: the relay could not prove it knows your account. Try again later.")
            return False
        except (SessionError, ValueError) as e:
            print(f"Login failed: {e}")
            return False
        except httpx.HTTPError as e:
            print(f"Cannot reach relay: {e}")
            return False
        print(f"Login successful! Welcome back, {record.handle}")
        return True

    async def restore(self) -> bool:
        if await self.keys.restore_session():
            print(f"Restored session for {self.keys.handle}")
            return True
        return False

    async def connect_websocket(self) -> bool:
        """Connect to the sync channel and authenticate"""
        try:
            self.websocket = await websockets.connect(self.config.ws_url)
            await self.websocket.send(json.dumps({"type": "auth", "token": self.keys.token}))
            data = json.loads(await self.websocket.recv())

            if data.get("type") == "auth_success":
                print("Connected to relay")
                return True
            print("Authentication failed")
            return False

        except (OSError, websockets.exceptions.WebSocketException) as e:
            print(f"WebSocket connection error: {e}")
            return False

    async def start_chat(self, peer_handle: str):
        """
        Start or continue a chat with a user.

        Args:
            peer_handle: Handle (or local username) to chat with
        """
        peer_handle = peer_handle.strip().lower()
        if "@" not in peer_handle:
            peer_handle = f"{peer_handle}@{self.config.instance_host}"
        try:
            entry = await self.api.lookup_directory(peer_handle)
        except RelayError as e:
            print(f"Cannot chat with {peer_handle}: {e.detail}")
            return
        except httpx.HTTPError as e:
            print(f"Cannot reach relay: {e}")
            return
        self.contacts[peer_handle] = Contact(peer_handle, entry["public_transport_key"])
        self.current_chat = peer_handle
        print(f"Chatting with {peer_handle}. Type '/exit' to leave chat, '/help' for commands.")

    async def send_message(self, peer: str, message: str):
        """
        Send a signed, sealed message.

        Args:
            peer: Recipient handle
            message: Message to send
        """
        contact = self.contacts.get(peer)
        payload = build_message(message, self.keys.handle, self.keys.identity_private_key)
        try:
            await send_payload(self.api, peer, payload,
                               public_transport_key=contact.public_transport_key if contact else None)
        except (RelayError, SessionError, httpx.HTTPError) as e:
            print(f"Failed to send message: {e}")

    async def _on_message(self, message):
        if message.sender_handle not in self.contacts:
            self.contacts[message.sender_handle] = Contact(message.sender_handle)
        timestamp = datetime.now().strftime("%H:%M")
        if message.sender_handle == self.current_chat:
            print(f"\n[{timestamp}] {message.sender_handle}: {message.content}")
        else:
            print(f"\n[New message from {message.sender_handle}]: {message.content}")

    async def _on_contact_key_rotated(self, notice):
        self.contacts[notice.sender_handle] = Contact(notice.sender_handle, notice.public_transport_key)
        print(f"\n[{notice.sender_handle} rotated their transport key]")

    async def _on_own_key_rotated(self, public_transport_key: str):
        print("\n[Transport key rotated by another of your sessions]")

    async def _on_block_list(self, handles: List[str]):
        self.blocked = set(handles)
        print(f"\n[Block list updated: {len(self.blocked)} blocked]")

    async def _on_contacts(self, entries: List[Any]):
        for entry in entries:
            handle = entry.get("handle") if isinstance(entry, dict) else entry
            if isinstance(handle, str) and handle not in self.contacts:
                self.contacts[handle] = Contact(handle)

    async def _on_settings(self, updates: Dict[str, Any]):
        self.settings.update(updates)

    async def _on_passkey_added(self, passkey):
        self.passkeys[passkey.credential_id] = passkey.name or passkey.credential_id
        print(f"\n[Passkey added: {self.passkeys[passkey.credential_id]}]")

    async def _on_passkey_removed(self, credential_id: str):
        name = self.passkeys.pop(credential_id, credential_id)
        print(f"\n[Passkey removed: {name}]")

    async def _on_session_invalidated(self, reason: str):
        print(f"\n[Session ended: {reason}]")
        await self.keys.logout()
        self.running = False

    async def receive_messages(self):
        """Background task feeding the sync channel into the dispatcher"""
        try:
            await self.sync.consume(self.websocket)
            print("\nConnection closed")
        except websockets.exceptions.ConnectionClosed:
            print("\nConnection closed")
        finally:
            self.running = False

    async def rotate(self):
        try:
            result = await self.keys.rotate_transport_key()
        except (SessionError, RelayError, httpx.HTTPError) as e:
            print(f"Rotation failed: {e}")
            return
        print(f"Transport key rotated; notified {len(result.notified)} contact(s)")
        for failure in result.failures:
            print(f"  could not notify {failure.handle}: {failure.error}")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        receive_task = asyncio.create_task(self.receive_messages())
        self.keys.start_rotation_schedule()
        session = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    prompt_text = f"[{self.current_chat}] > " if self.current_chat else "> "

                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.current_chat:
                        await self.send_message(self.current_chat, user_input)
                    else:
                        print("No active chat. Use /chat <handle> to start.")

                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            self.keys.stop_rotation_schedule()
            receive_task.cancel()
            if self.websocket:
                await self.websocket.close()
            await self.api.aclose()
            self.store.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()

        if cmd == "/chat" and len(parts) == 2:
            await self.start_chat(parts[1])
        elif cmd == "/exit":
            self.current_chat = None
            print("Exited chat")
        elif cmd == "/contacts":
            print("Contacts:")
            for handle in sorted(self.contacts):
                print(f"  - {handle}")
        elif cmd == "/blocked":
            print("Blocked:")
            for handle in sorted(self.blocked):
                print(f"  - {handle}")
        elif cmd == "/rotate":
            await self.rotate()
        elif cmd == "/whoami":
            key = self.keys.session.public_identity_key if self.keys.session else "-"
            print(f"{self.keys.handle} (identity key {key[:16]}...)")
        elif cmd == "/logout":
            await self.keys.logout()
            print("Signed out")
            self.running = False
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    client = ChatClient()

    print("=" * 50)
    print("Blind Relay Chat Client")
    print("=" * 50)
    print()

    if not await client.restore():
        while True:
            print("1. Register")
            print("2. Login")
            print("3. Quit")
            choice = input("Choose an option: ").strip()

            if choice == "1":
                username = input("Username: ").strip()
                password = getpass.getpass("Password: ")
                if await client.register(username, password):
                    break
            elif choice == "2":
                username = input("Username: ").strip()
                password = getpass.getpass("Password: ")
                if await client.login(username, password):
                    break
            elif choice == "3":
                await client.api.aclose()
                client.store.close()
                return
            else:
                print("Invalid choice")

    if await client.connect_websocket():
        await client.run_interactive()
    else:
        await client.api.aclose()
        client.store.close()

    print("\nGoodbye!")


def run():
    logging.basicConfig(
        level=os.environ.get("BLINDRELAY_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
