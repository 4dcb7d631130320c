"""
Shared fixtures.

FakeRelay speaks the RelayClient interface in memory, with a real SrpServer
behind it, so key lifecycle tests run without HTTP.
"""

import uuid
import asyncio
import pytest
from jose import jwt

from blindrelay.client.config import ClientConfig, MIN_MASTER_KEY_ITERATIONS
from blindrelay.client.errors import InvalidCredentials, RelayError, UsernameTaken
from blindrelay.client.keys import KeyLifecycleManager
from blindrelay.client.storage import MemorySessionStore
from blindrelay.crypto.primitives import b64encode, generate_transport_keypair
from blindrelay.crypto.srp import InvalidProof, SrpServer


HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock advanced by hand"""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeRelay:
    """In-memory relay shared by several clients"""

    def __init__(self, instance_host: str = "localhost"):
        self.instance_host = instance_host
        self.accounts = {}
        self.pending = {}
        self.sessions = {}
        self.outbox = []
        self.fail_transport_update = False
        self.failing_recipients = set()
        self.tamper_server_proof = False
        self.oversized_challenge = False

    def client(self) -> 'FakeRelayClient':
        return FakeRelayClient(self)


class FakeRelayClient:
    """Per-client view of a FakeRelay (holds its own bearer token)"""

    def __init__(self, relay: FakeRelay):
        self.relay = relay
        self.token = None
        self.logged_out = []
        self.deleted = []

    def set_token(self, token):
        self.token = token

    def _account_for(self, token):
        username = self.relay.sessions.get(token)
        if username is None:
            raise RelayError(401, "Not authenticated")
        return self.relay.accounts[username]

    async def register(self, body):
        if body["username"] in self.relay.accounts:
            raise UsernameTaken("Username already exists")
        account = dict(body)
        account["id"] = str(len(self.relay.accounts) + 1)
        account["handle"] = f"{body['username']}@{self.relay.instance_host}"
        self.relay.accounts[body["username"]] = account
        return {"id": account["id"], "handle": account["handle"]}

    async def get_kdf_params(self, username):
        account = self.relay.accounts.get(username)
        if account is None:
            return {"kdf_salt": "AAAAAAAAAAAAAAAAAAAAAA==", "kdf_iterations": MIN_MASTER_KEY_ITERATIONS}
        return {"kdf_salt": account["kdf_salt"], "kdf_iterations": account["kdf_iterations"]}

    async def srp_start(self, username, A):
        account = self.relay.accounts.get(username)
        if account is None:
            raise InvalidCredentials()
        server = SrpServer(username, account["srp_salt"], account["srp_verifier"])
        self.relay.pending[(username, A)] = server
        B = server.challenge()
        if self.relay.oversized_challenge:
            B = b64encode(b"\x01" * 301)
        return {"salt": account["srp_salt"], "B": B}

    async def srp_verify(self, username, A, M1):
        server = self.relay.pending.pop((username, A), None)
        if server is None:
            raise InvalidCredentials()
        try:
            M2 = server.verify(A, M1)
        except InvalidProof:
            raise InvalidCredentials()
        if self.relay.tamper_server_proof:
            M2 = "AAAA" + M2[4:]

        account = self.relay.accounts[username]
        session_id = str(uuid.uuid4())
        token = jwt.encode({"sub": account["id"], "sid": session_id, "handle": account["handle"]},
                           "test-secret", algorithm="HS256")
        self.relay.sessions[token] = username
        return {
            "token": token,
            "M2": M2,
            "keys": {
                "encrypted_identity_key": account["encrypted_identity_key"],
                "encrypted_identity_iv": account["encrypted_identity_iv"],
                "encrypted_transport_key": account["encrypted_transport_key"],
                "encrypted_transport_iv": account["encrypted_transport_iv"],
                "public_identity_key": account["public_identity_key"],
                "public_transport_key": account["public_transport_key"],
            },
        }

    async def update_transport_key(self, public_transport_key, encrypted_transport_key, encrypted_transport_iv):
        await asyncio.sleep(0)
        if self.relay.fail_transport_update:
            raise RelayError(503, "Relay unavailable")
        account = self._account_for(self.token)
        account["public_transport_key"] = public_transport_key
        account["encrypted_transport_key"] = encrypted_transport_key
        account["encrypted_transport_iv"] = encrypted_transport_iv
        return {"ok": True}

    async def lookup_directory(self, handle):
        for account in self.relay.accounts.values():
            if account["handle"] == handle:
                return {
                    "handle": handle,
                    "public_identity_key": account["public_identity_key"],
                    "public_transport_key": account["public_transport_key"],
                }
        raise RelayError(404, "User not found")

    async def send_message(self, recipient_handle, encrypted_blob, message_id, event_type="message"):
        if recipient_handle in self.relay.failing_recipients:
            raise RelayError(503, f"Cannot deliver to {recipient_handle}")
        sender = self._account_for(self.token)
        self.relay.outbox.append({
            "recipient_handle": recipient_handle,
            "sender_handle": sender["handle"],
            "encrypted_blob": encrypted_blob,
            "message_id": message_id,
            "event_type": event_type,
        })
        return {"id": str(uuid.uuid4()), "delivered": False}

    async def logout(self, token=None):
        self.logged_out.append(token)
        self.relay.sessions.pop(token, None)

    async def delete_account(self, token=None):
        self.deleted.append(token)
        username = self.relay.sessions.pop(token, None)
        self.relay.accounts.pop(username, None)

    async def aclose(self):
        pass


@pytest.fixture(scope="session")
def transport_keypair():
    return generate_transport_keypair()


@pytest.fixture(scope="session")
def other_transport_keypair():
    return generate_transport_keypair()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def config():
    return ClientConfig(kdf_iterations=MIN_MASTER_KEY_ITERATIONS)


@pytest.fixture
def make_manager(relay, config, clock):
    """Factory for managers sharing one relay and clock"""

    def factory(store=None, contacts_provider=None):
        return KeyLifecycleManager(
            relay.client(),
            store if store is not None else MemorySessionStore(),
            config,
            contacts_provider=contacts_provider,
            clock=clock,
        )

    return factory
