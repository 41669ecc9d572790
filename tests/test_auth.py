from datetime import datetime, timedelta, timezone

import jwt
import pytest

from chatd.auth import IdentityGate
from chatd.errors import AuthError

SECRET = "test-secret-0123456789abcdef0123456789"


@pytest.fixture
def gate(store):
    return IdentityGate(store, secret=SECRET)


def test_valid_token_resolves_user(gate, store) -> None:
    alice = store.create_user("alice")
    user = gate.authenticate(gate.issue_token(alice.id))

    assert user.user_id == alice.id
    assert user.username == "alice"


def test_sub_claim_is_accepted(gate, store) -> None:
    alice = store.create_user("alice")
    token = jwt.encode(
        {"sub": alice.id, "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        SECRET,
        algorithm="HS256",
    )

    assert gate.authenticate(token).user_id == alice.id


def test_expired_token(gate, store) -> None:
    alice = store.create_user("alice")
    token = gate.issue_token(alice.id, expires_in_s=-60)

    with pytest.raises(AuthError) as exc:
        gate.authenticate(token)
    assert exc.value.client_text() == "Authentication error: Token expired"


def test_wrong_secret(store) -> None:
    alice = store.create_user("alice")
    other = IdentityGate(store, secret="another-secret-0123456789abcdef012345")
    token = other.issue_token(alice.id)

    with pytest.raises(AuthError, match="Invalid token"):
        IdentityGate(store, secret=SECRET).authenticate(token)


def test_token_without_expiry_is_refused(gate, store) -> None:
    alice = store.create_user("alice")
    token = jwt.encode({"userId": alice.id}, SECRET, algorithm="HS256")

    with pytest.raises(AuthError, match="Invalid token"):
        gate.authenticate(token)


@pytest.mark.parametrize("token", [None, "", "   ", 42])
def test_missing_token(gate, token) -> None:
    with pytest.raises(AuthError, match="No token provided"):
        gate.authenticate(token)


def test_unknown_user(gate) -> None:
    with pytest.raises(AuthError, match="User not found"):
        gate.authenticate(gate.issue_token("0123456789abcdef01234567"))


def test_banned_user(store) -> None:
    alice = store.create_user("alice")
    gate = IdentityGate(store, secret=SECRET, banned_users=[alice.id])

    with pytest.raises(AuthError, match="banned"):
        gate.authenticate(gate.issue_token(alice.id))


def test_no_secret_refuses_everything(store) -> None:
    alice = store.create_user("alice")
    token = IdentityGate(store, secret=SECRET).issue_token(alice.id)
    gate = IdentityGate(store, secret=None)

    with pytest.raises(AuthError, match="Invalid token"):
        gate.authenticate(token)
    with pytest.raises(AuthError):
        gate.issue_token(alice.id)
