"""
Name: Token Service Tests

Responsibilities:
  - Access/refresh issuance and verification
  - Fingerprint bookkeeping on the user document
  - Single-use rotation and revocation
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import jwt
import pytest
from bson import ObjectId

from tokens import TokenExpired, TokenInvalid, TokenRevoked, TokenService
from users import MAX_REFRESH_SESSIONS

pytestmark = pytest.mark.unit


@pytest.fixture
def tokens(settings, users):
    return TokenService(settings, users)


@pytest.fixture
def user(users):
    return users.create("a@x.com", "secret1", "Alice")


def _stored_fingerprints(db, user_id):
    return db.users.find_one({"_id": user_id})["refresh_tokens"]


def test_access_token_round_trip(tokens, user):
    token = tokens.issue_access_token(user["_id"], user["email"])
    claims = tokens.verify_access_token(token)

    assert claims["sub"] == str(user["_id"])
    assert claims["email"] == "a@x.com"
    assert claims["typ"] == "access"


def test_access_token_verification_does_not_touch_store(settings):
    store = Mock()
    service = TokenService(settings, store)
    token = service.issue_access_token(ObjectId(), "a@x.com")

    service.verify_access_token(token)

    assert store.method_calls == []


def test_expired_access_token_is_reported_as_expired(settings, users, tokens):
    expired = TokenService(replace(settings, access_token_ttl=timedelta(seconds=-1)), users)
    token = expired.issue_access_token(ObjectId(), "a@x.com")

    with pytest.raises(TokenExpired):
        tokens.verify_access_token(token)


def test_access_token_signed_with_other_secret_is_invalid(tokens):
    now = datetime.now(timezone.utc)
    forged = jwt.encode(
        {"sub": str(ObjectId()), "typ": "access", "exp": now + timedelta(minutes=5)},
        "not-the-access-secret",
        algorithm="HS256",
    )

    with pytest.raises(TokenInvalid):
        tokens.verify_access_token(forged)


def test_refresh_token_is_not_accepted_as_access_token(tokens, user):
    refresh = tokens.issue_refresh_token(user["_id"])

    with pytest.raises(TokenInvalid):
        tokens.verify_access_token(refresh)


def test_garbage_token_is_invalid(tokens):
    with pytest.raises(TokenInvalid):
        tokens.verify_access_token("not-a-jwt")
    with pytest.raises(TokenInvalid):
        tokens.verify_refresh_token("")


def test_refresh_token_round_trip(tokens, user):
    token = tokens.issue_refresh_token(user["_id"])

    claims = tokens.verify_refresh_token(token)

    assert claims["sub"] == str(user["_id"])
    assert claims["typ"] == "refresh"


def test_only_the_fingerprint_is_persisted(tokens, user, db):
    token = tokens.issue_refresh_token(user["_id"])

    stored = _stored_fingerprints(db, user["_id"])

    assert stored == [tokens.fingerprint(token)]
    assert token not in stored


def test_fingerprint_is_keyed_by_refresh_secret(settings, users, tokens):
    other = TokenService(replace(settings, refresh_token_secret="another-secret"), users)

    assert tokens.fingerprint("abc") == tokens.fingerprint("abc")
    assert tokens.fingerprint("abc") != other.fingerprint("abc")


def test_refresh_token_without_fingerprint_is_revoked(tokens, user, db):
    token = tokens.issue_refresh_token(user["_id"])
    db.users.update_one({"_id": user["_id"]}, {"$set": {"refresh_tokens": []}})

    with pytest.raises(TokenRevoked):
        tokens.verify_refresh_token(token)


def test_expired_refresh_token_is_reported_as_expired(settings, users, user):
    expired = TokenService(replace(settings, refresh_token_ttl=timedelta(seconds=-1)), users)
    token = expired.issue_refresh_token(user["_id"])

    with pytest.raises(TokenExpired):
        expired.verify_refresh_token(token)


def test_issuing_for_unknown_user_fails(tokens):
    with pytest.raises(TokenInvalid):
        tokens.issue_refresh_token(ObjectId())


def test_rotation_consumes_the_old_token(tokens, user, db):
    old = tokens.issue_refresh_token(user["_id"])

    pair, owner = tokens.rotate_refresh_token(old)

    assert owner["_id"] == user["_id"]
    assert pair.refresh_token != old
    assert tokens.verify_refresh_token(pair.refresh_token)["sub"] == str(user["_id"])
    assert tokens.verify_access_token(pair.access_token)["sub"] == str(user["_id"])
    assert _stored_fingerprints(db, user["_id"]) == [tokens.fingerprint(pair.refresh_token)]
    with pytest.raises(TokenRevoked):
        tokens.verify_refresh_token(old)


def test_rotated_token_never_rotates_twice(tokens, user):
    old = tokens.issue_refresh_token(user["_id"])
    tokens.rotate_refresh_token(old)

    with pytest.raises(TokenRevoked):
        tokens.rotate_refresh_token(old)


def test_rotation_leaves_other_sessions_alone(tokens, user, db):
    laptop = tokens.issue_refresh_token(user["_id"])
    phone = tokens.issue_refresh_token(user["_id"])

    pair, _ = tokens.rotate_refresh_token(laptop)

    assert tokens.verify_refresh_token(phone)
    assert sorted(_stored_fingerprints(db, user["_id"])) == sorted(
        [tokens.fingerprint(phone), tokens.fingerprint(pair.refresh_token)]
    )


def test_rotation_fails_when_fingerprint_vanishes_mid_swap(tokens, user, users):
    old = tokens.issue_refresh_token(user["_id"])
    users.replace_refresh_fingerprint = Mock(return_value=False)

    with pytest.raises(TokenRevoked):
        tokens.rotate_refresh_token(old)


def test_revoke_removes_the_session(tokens, user):
    token = tokens.issue_refresh_token(user["_id"])

    tokens.revoke_refresh_token(token)

    with pytest.raises(TokenRevoked):
        tokens.verify_refresh_token(token)
    with pytest.raises(TokenRevoked):
        tokens.revoke_refresh_token(token)


def test_oldest_sessions_are_dropped_beyond_the_cap(tokens, user, db):
    issued = [tokens.issue_refresh_token(user["_id"]) for _ in range(MAX_REFRESH_SESSIONS + 2)]

    stored = _stored_fingerprints(db, user["_id"])

    assert len(stored) == MAX_REFRESH_SESSIONS
    assert stored == [tokens.fingerprint(token) for token in issued[2:]]
    with pytest.raises(TokenRevoked):
        tokens.verify_refresh_token(issued[0])
    assert tokens.verify_refresh_token(issued[-1])
