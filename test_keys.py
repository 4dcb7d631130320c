"""
Tests for the key lifecycle manager: registration, SRP login, restore,
transport key rotation and teardown.
"""

import os
import json
import asyncio
import pytest

from blindrelay.client.errors import (
    CorruptKeyMaterial,
    InvalidCredentials,
    KeyMaterialUnavailable,
    RelayError,
    RotationInProgress,
    UnableToVerifyServerProof,
    UsernameTaken,
    WeakPassword,
)
from blindrelay.client.keys import Contact, SessionState, resolve_local_user
from blindrelay.client.messaging import as_rotation_notice, parse_signed_payload
from blindrelay.client.storage import (
    ACTIVE_SESSION_KEY,
    MASTER_KEY_KEY,
    PREVIOUS_TRANSPORT_KEY_KEY,
    TRANSPORT_KEY_ROTATED_AT_KEY,
    MemorySessionStore,
)
from blindrelay.crypto.envelope import seal
from blindrelay.crypto.primitives import DecryptionFailed, b64encode
from blindrelay.sync.validation import validate_sync_event
from conftest import DAY_MS, HOUR_MS, START_MS

PASSWORD = "correct-horse"


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def alice(make_manager):
    manager = make_manager()
    run(manager.register("alice", PASSWORD))
    return manager


@pytest.fixture
def bob(make_manager):
    manager = make_manager()
    run(manager.register("bob", PASSWORD))
    return manager


def rotation_event(relay, username):
    account = relay.accounts[username]
    return validate_sync_event("TRANSPORT_KEY_ROTATED", {
        "public_transport_key": account["public_transport_key"],
        "encrypted_transport_key": account["encrypted_transport_key"],
        "encrypted_transport_iv": account["encrypted_transport_iv"],
        "rotated_at": START_MS,
    })


class TestResolveLocalUser:

    def test_bare_username(self):
        assert resolve_local_user("  Alice ", "localhost") == ("alice", "alice@localhost")

    def test_local_handle(self):
        assert resolve_local_user("alice@localhost", "localhost") == ("alice", "alice@localhost")

    def test_foreign_handle_rejected(self):
        with pytest.raises(ValueError):
            resolve_local_user("alice@elsewhere.example", "localhost")

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            resolve_local_user("   ", "localhost")


class TestRegistration:

    def test_register_establishes_session(self, alice, relay, clock):
        assert alice.state is SessionState.READY
        assert alice.handle == "alice@localhost"
        assert alice.master_key is not None
        assert alice.public_transport_key == relay.accounts["alice"]["public_transport_key"]
        assert alice.store.get(ACTIVE_SESSION_KEY)["handle"] == "alice@localhost"
        assert alice.store.get(TRANSPORT_KEY_ROTATED_AT_KEY) == clock.now

    def test_relay_never_sees_password(self, alice, relay):
        assert PASSWORD not in json.dumps(relay.accounts["alice"])

    def test_weak_password(self, make_manager):
        with pytest.raises(WeakPassword):
            run(make_manager().register("carol", "short"))

    def test_username_taken(self, alice, make_manager):
        with pytest.raises(UsernameTaken):
            run(make_manager().register("alice", "another-password"))


class TestLogin:

    def test_login_unwraps_same_keys(self, alice, make_manager):
        other = make_manager()
        record = run(other.login("alice", PASSWORD))

        assert record.public_identity_key == alice.session.public_identity_key
        assert other.identity_private_key == alice.identity_private_key
        assert other.master_key == alice.master_key
        assert other.token != alice.token

    def test_wrong_password(self, alice, make_manager):
        other = make_manager()
        with pytest.raises(InvalidCredentials) as excinfo:
            run(other.login("alice", "wrong-password"))
        assert str(excinfo.value) == "Invalid username or password"
        assert other.state is SessionState.UNLOADED

    def test_unknown_user_same_error(self, make_manager):
        with pytest.raises(InvalidCredentials) as excinfo:
            run(make_manager().login("nobody", PASSWORD))
        assert str(excinfo.value) == "Invalid username or password"

    def test_forged_server_proof_caches_nothing(self, alice, relay, make_manager):
        relay.tamper_server_proof = True
        store = MemorySessionStore()
        other = make_manager(store=store)

        with pytest.raises(UnableToVerifyServerProof):
            run(other.login("alice", PASSWORD))
        assert store.keys() == []
        assert other.master_key is None
        assert other.token is None

    def test_oversized_challenge_is_unverifiable(self, alice, relay, make_manager):
        relay.oversized_challenge = True
        other = make_manager()

        with pytest.raises(UnableToVerifyServerProof):
            run(other.login("alice", PASSWORD))
        assert other.state is SessionState.UNLOADED

    def test_corrupt_key_material(self, alice, relay, make_manager):
        relay.accounts["alice"]["encrypted_transport_key"] = b64encode(os.urandom(1200))
        store = MemorySessionStore()
        other = make_manager(store=store)

        with pytest.raises(CorruptKeyMaterial):
            run(other.login("alice", PASSWORD))
        assert store.get(ACTIVE_SESSION_KEY) is None


class TestRestore:

    def test_restore_from_store(self, alice, make_manager):
        restored = make_manager(store=alice.store)
        assert run(restored.restore_session()) is True
        assert restored.state is SessionState.READY
        assert restored.public_transport_key == alice.public_transport_key

        blob = seal(b"hi", alice.public_transport_key).serialize()
        assert restored.open_envelope(blob) == b"hi"

    def test_no_session(self, make_manager):
        manager = make_manager()
        assert run(manager.restore_session()) is False
        assert manager.state is SessionState.CLEARED

    def test_missing_master_key_clears_store(self, alice, make_manager):
        alice.store.delete(MASTER_KEY_KEY)
        restored = make_manager(store=alice.store)

        assert run(restored.restore_session()) is False
        assert alice.store.keys() == []
        assert restored.session is None

    def test_undecryptable_record_clears_store(self, alice, make_manager):
        alice.store.put(MASTER_KEY_KEY, b64encode(b"\x01" * 32))
        restored = make_manager(store=alice.store)

        assert run(restored.restore_session()) is False
        assert alice.store.keys() == []
        assert restored.identity_private_key is None

    def test_restore_loads_previous_key(self, alice, make_manager):
        old_blob = seal(b"old", alice.public_transport_key).serialize()
        run(alice.rotate_transport_key())

        restored = make_manager(store=alice.store)
        assert run(restored.restore_session())
        assert restored.open_envelope(old_blob) == b"old"


class TestRotation:

    def test_grace_period(self, alice, clock):
        old_public = alice.public_transport_key
        old_blob = seal(b"to old key", old_public).serialize()

        result = run(alice.rotate_transport_key())

        assert result.public_transport_key != old_public
        assert alice.public_transport_key == result.public_transport_key
        assert alice.open_envelope(old_blob) == b"to old key"
        new_blob = seal(b"to new key", result.public_transport_key).serialize()
        assert alice.open_envelope(new_blob) == b"to new key"

        clock.advance(72 * HOUR_MS - 1)
        assert alice.open_envelope(old_blob) == b"to old key"

        clock.advance(1)
        with pytest.raises(DecryptionFailed):
            alice.open_envelope(old_blob)
        assert alice.store.get(PREVIOUS_TRANSPORT_KEY_KEY) is None
        assert alice.open_envelope(new_blob) == b"to new key"

    def test_publishes_to_relay(self, alice, relay):
        result = run(alice.rotate_transport_key())
        assert relay.accounts["alice"]["public_transport_key"] == result.public_transport_key

    def test_single_previous_slot(self, alice):
        first_blob = seal(b"first", alice.public_transport_key).serialize()
        run(alice.rotate_transport_key())
        second_blob = seal(b"second", alice.public_transport_key).serialize()
        run(alice.rotate_transport_key())

        assert alice.open_envelope(second_blob) == b"second"
        with pytest.raises(DecryptionFailed):
            alice.open_envelope(first_blob)

    def test_publish_failure_rolls_back(self, alice, relay):
        before = alice.public_transport_key
        stored = alice.store.get(ACTIVE_SESSION_KEY)
        blob = seal(b"still mine", before).serialize()
        relay.fail_transport_update = True

        with pytest.raises(RelayError):
            run(alice.rotate_transport_key())

        assert alice.public_transport_key == before
        assert alice.store.get(ACTIVE_SESSION_KEY) == stored
        assert alice.store.get(PREVIOUS_TRANSPORT_KEY_KEY) is None
        assert alice.open_envelope(blob) == b"still mine"
        assert alice.state is SessionState.READY
        assert not alice.rotation_in_flight

    def test_requires_keys(self, make_manager):
        with pytest.raises(KeyMaterialUnavailable):
            run(make_manager().rotate_transport_key())

    def test_notifies_contacts_and_collects_failures(self, relay, make_manager, bob):
        contacts = [
            Contact("bob@localhost"),
            Contact("carol@localhost", public_transport_key=bob.public_transport_key),
        ]

        async def provider():
            return contacts

        alice = make_manager(contacts_provider=provider)
        run(alice.register("alice", PASSWORD))
        relay.failing_recipients.add("carol@localhost")

        result = run(alice.rotate_transport_key())

        assert result.notified == ["bob@localhost"]
        assert [f.handle for f in result.failures] == ["carol@localhost"]
        assert relay.accounts["alice"]["public_transport_key"] == result.public_transport_key

        [delivery] = [m for m in relay.outbox if m["recipient_handle"] == "bob@localhost"]
        assert delivery["event_type"] == "key_rotation"
        payload = parse_signed_payload(bob.open_envelope(delivery["encrypted_blob"]))
        notice = as_rotation_notice(payload)
        assert notice.sender_handle == "alice@localhost"
        assert notice.public_transport_key == result.public_transport_key
        assert notice.rotated_at == result.rotated_at
        assert notice.sender_identity_key == alice.session.public_identity_key


class TestRotationSchedule:

    def test_first_check_records_timestamp(self, alice, clock):
        alice.store.delete(TRANSPORT_KEY_ROTATED_AT_KEY)
        assert run(alice.check_rotation()) is False
        assert alice.get_transport_key_rotated_at() == clock.now

    def test_rotates_after_threshold(self, alice, clock):
        before = alice.public_transport_key
        clock.advance(29 * DAY_MS)
        assert run(alice.check_rotation()) is False
        assert alice.public_transport_key == before

        clock.advance(DAY_MS)
        assert run(alice.check_rotation()) is True
        assert alice.public_transport_key != before
        assert alice.get_transport_key_rotated_at() == clock.now

    def test_concurrent_checks_rotate_once(self, alice, relay, clock):
        before = alice.public_transport_key
        clock.advance(31 * DAY_MS)

        async def both():
            return await asyncio.gather(alice.check_rotation(), alice.check_rotation())

        results = run(both())

        assert sorted(results) == [False, True]
        assert alice.public_transport_key != before
        assert relay.accounts["alice"]["public_transport_key"] == alice.public_transport_key

    def test_manual_rotation_blocked_during_check(self, alice, clock):
        clock.advance(31 * DAY_MS)

        async def overlap():
            check = asyncio.ensure_future(alice.check_rotation())
            await asyncio.sleep(0)
            with pytest.raises(RotationInProgress):
                await alice.rotate_transport_key()
            return await check

        assert run(overlap()) is True

    def test_schedule_runs_check(self, alice, config, clock):
        config.rotation_check_interval = 0.01
        clock.advance(31 * DAY_MS)
        before = alice.public_transport_key

        async def scheduled():
            alice.start_rotation_schedule()
            for _ in range(200):
                if alice.public_transport_key != before:
                    break
                await asyncio.sleep(0.01)
            alice.stop_rotation_schedule()

        run(scheduled())
        assert alice.public_transport_key != before


class TestIncomingRotation:

    def test_other_session_adopts_key(self, alice, relay, make_manager):
        second = make_manager()
        run(second.login("alice", PASSWORD))
        old_blob = seal(b"old", second.public_transport_key).serialize()

        result = run(alice.rotate_transport_key())
        applied = run(second.apply_incoming_rotation(rotation_event(relay, "alice")))

        assert applied is True
        assert second.public_transport_key == result.public_transport_key
        assert second.open_envelope(seal(b"new", result.public_transport_key).serialize()) == b"new"
        assert second.open_envelope(old_blob) == b"old"
        assert second.store.get(ACTIVE_SESSION_KEY)["public_transport_key"] == result.public_transport_key

    def test_duplicate_is_ignored(self, alice, relay):
        run(alice.rotate_transport_key())
        assert run(alice.apply_incoming_rotation(rotation_event(relay, "alice"))) is False

    def test_forged_key_leaves_keys_untouched(self, alice, other_transport_keypair):
        before = alice.public_transport_key
        event = validate_sync_event("TRANSPORT_KEY_ROTATED", {
            "public_transport_key": b64encode(other_transport_keypair.public_key),
            "encrypted_transport_key": b64encode(os.urandom(1200)),
            "encrypted_transport_iv": b64encode(os.urandom(12)),
        })

        with pytest.raises(CorruptKeyMaterial):
            run(alice.apply_incoming_rotation(event))
        assert alice.public_transport_key == before
        assert alice.store.get(PREVIOUS_TRANSPORT_KEY_KEY) is None


class TestTeardown:

    def test_logout_clears_everything(self, alice):
        token = alice.token
        run(alice.logout())

        assert alice.state is SessionState.CLEARED
        assert alice.master_key is None
        assert alice.transport_private_keys() == []
        assert alice.store.keys() == []
        assert alice.api.logged_out == [token]
        with pytest.raises(KeyMaterialUnavailable):
            alice.open_envelope("AAAA")

    def test_keys_cleared_before_relay_call(self, alice):
        seen = {}

        async def slow_logout(token=None):
            seen["master_key"] = alice.master_key
            seen["store"] = alice.store.keys()

        alice.api.logout = slow_logout
        run(alice.logout())
        assert seen == {"master_key": None, "store": []}

    def test_logout_survives_relay_failure(self, alice):
        async def failing_logout(token=None):
            raise RelayError(503, "down")

        alice.api.logout = failing_logout
        run(alice.logout())
        assert alice.store.keys() == []

    def test_delete_account(self, alice, relay):
        token = alice.token
        run(alice.delete_account())

        assert alice.api.deleted == [token]
        assert "alice" not in relay.accounts
        assert alice.store.keys() == []
        assert alice.identity_private_key is None

    def test_delete_without_session(self, make_manager):
        with pytest.raises(KeyMaterialUnavailable):
            run(make_manager().delete_account())


class TestSyncContext:

    def test_context_snapshot(self, alice):
        context = alice.sync_context()
        assert context.user_id == "1"
        assert context.user_handle == "alice@localhost"
        assert context.session_id
        assert context.master_key == alice.master_key
        assert len(context.transport_private_keys) == 1

    def test_signed_out_context(self, make_manager):
        context = make_manager().sync_context()
        assert not context.authenticated
        assert context.transport_private_keys == ()
