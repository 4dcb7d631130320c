"""
Tests for the SRP-6a handshake
"""

import pytest

from blindrelay.crypto.primitives import b64encode
from blindrelay.crypto.srp import (
    N,
    N_BYTES,
    InvalidProof,
    SrpClient,
    SrpError,
    SrpServer,
    UnableToVerifyServerProof,
    compute_verifier,
    generate_srp_salt,
)


@pytest.fixture
def account():
    salt = b64encode(generate_srp_salt())
    return {
        "username": "alice",
        "salt": salt,
        "verifier": compute_verifier("alice", "correct-horse", salt),
    }


def handshake(account, password):
    client = SrpClient(account["username"], password)
    server = SrpServer(account["username"], account["salt"], account["verifier"])
    A = client.start()
    M1 = client.process_challenge(account["salt"], server.challenge())
    return client, server, A, M1


def test_correct_password_completes(account):
    client, server, A, M1 = handshake(account, "correct-horse")

    M2 = server.verify(A, M1)
    client.verify_server(M2)

    assert client.verified
    assert client.session_key == server.session_key
    assert len(client.session_key) == 32


def test_wrong_password_fails_verify(account):
    _, server, A, M1 = handshake(account, "wrong-password")

    with pytest.raises(InvalidProof):
        server.verify(A, M1)
    assert server.session_key is None


def test_forged_server_proof_rejected(account):
    client, server, A, M1 = handshake(account, "correct-horse")
    server.verify(A, M1)

    with pytest.raises(UnableToVerifyServerProof):
        client.verify_server(b64encode(b"\x00" * 32))
    assert not client.verified
    with pytest.raises(SrpError):
        client.session_key


def test_impostor_server_cannot_produce_proof(account):
    """A relay without the real verifier cannot answer the client"""
    fake_verifier = compute_verifier("alice", "guess", account["salt"])
    client = SrpClient("alice", "correct-horse")
    impostor = SrpServer("alice", account["salt"], fake_verifier)
    A = client.start()
    M1 = client.process_challenge(account["salt"], impostor.challenge())

    with pytest.raises(InvalidProof):
        impostor.verify(A, M1)


def test_client_rejects_zero_b(account):
    client = SrpClient("alice", "correct-horse")
    client.start()
    with pytest.raises(SrpError):
        client.process_challenge(account["salt"], b64encode(N.to_bytes(N_BYTES, "big")))


def test_server_rejects_zero_a(account):
    server = SrpServer("alice", account["salt"], account["verifier"])
    server.challenge()
    with pytest.raises(InvalidProof):
        server.verify(b64encode(b"\x00" * N_BYTES), b64encode(b"\x00" * 32))


def test_malformed_values(account):
    client = SrpClient("alice", "correct-horse")
    client.start()
    with pytest.raises(SrpError):
        client.process_challenge("***", "AAAA")

    server = SrpServer("alice", account["salt"], account["verifier"])
    with pytest.raises(InvalidProof):
        server.verify("not base64!", "AAAA")


def test_challenge_processed_once(account):
    client, server, A, M1 = handshake(account, "correct-horse")
    with pytest.raises(SrpError):
        client.process_challenge(account["salt"], server.challenge())


def test_verifier_depends_on_salt_and_password(account):
    other_salt = b64encode(generate_srp_salt())
    assert compute_verifier("alice", "correct-horse", other_salt) != account["verifier"]
    assert compute_verifier("alice", "other", account["salt"]) != account["verifier"]


def test_client_rejects_oversized_b(account):
    client = SrpClient("alice", "correct-horse")
    client.start()
    with pytest.raises(SrpError):
        client.process_challenge(account["salt"], b64encode(b"\x01" * (N_BYTES + 45)))


def test_client_rejects_unreduced_b(account):
    client = SrpClient("alice", "correct-horse")
    client.start()
    with pytest.raises(SrpError):
        client.process_challenge(account["salt"], b64encode((N + 2).to_bytes(N_BYTES, "big")))


def test_server_rejects_oversized_a(account):
    server = SrpServer("alice", account["salt"], account["verifier"])
    server.challenge()
    with pytest.raises(InvalidProof):
        server.verify(b64encode(b"\x01" * (N_BYTES + 45)), b64encode(b"\x00" * 32))
