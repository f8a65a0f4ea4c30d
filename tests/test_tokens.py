from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from jose import jwt

from lending.database import utcnow
from lending.errors import ExpiredToken, InvalidSignature, InvalidToken
from lending.tokens import TokenService


def test_issue_then_verify(services, member):
    pair = services.tokens.issue(member)
    claims = services.tokens.verify(pair.access_token)

    assert claims.user_id == member.id
    assert claims.role == "member"
    assert claims.email == "member@example.com"
    assert pair.expires_in == 15 * 60
    assert pair.token_type == "Bearer"


def test_verify_expired_access_token(services, settings, member):
    past = TokenService(services.pool, settings, clock=lambda: utcnow() - timedelta(hours=1))
    pair = past.issue(member)

    with pytest.raises(ExpiredToken):
        services.tokens.verify(pair.access_token)


def test_verify_rejects_tampered_and_foreign_tokens(services, settings, member):
    pair = services.tokens.issue(member)
    forged = jwt.encode(
        {"sub": str(member.id), "role": "librarian", "email": member.email, "type": "access",
         "exp": int((utcnow() + timedelta(minutes=5)).timestamp())},
        "some-other-secret",
        algorithm="HS256",
    )
    header, payload, signature = pair.access_token.split(".")
    swapped = ".".join([header, forged.split(".")[1], signature])

    for token in (forged, swapped, "not-a-jwt", pair.refresh_token):
        with pytest.raises(InvalidSignature):
            services.tokens.verify(token)


def test_refresh_rotates_and_rejects_reuse(services, member):
    first = services.tokens.issue(member)
    second = services.tokens.refresh(first.refresh_token)

    assert second.refresh_token != first.refresh_token
    assert services.tokens.verify(second.access_token).user_id == member.id

    with pytest.raises(InvalidToken):
        services.tokens.refresh(first.refresh_token)


def test_replay_revokes_whole_family(services, member):
    first = services.tokens.issue(member)
    second = services.tokens.refresh(first.refresh_token)

    with pytest.raises(InvalidToken):
        services.tokens.refresh(first.refresh_token)
    # the token issued by the legitimate rotation is gone too
    with pytest.raises(InvalidToken):
        services.tokens.refresh(second.refresh_token)


def test_other_sessions_survive_replay(services, member):
    session_a = services.tokens.issue(member)
    session_b = services.tokens.issue(member)
    services.tokens.refresh(session_a.refresh_token)

    with pytest.raises(InvalidToken):
        services.tokens.refresh(session_a.refresh_token)
    assert services.tokens.refresh(session_b.refresh_token).access_token


def test_concurrent_refresh_exactly_one_wins(services, member):
    pair = services.tokens.issue(member)

    def attempt(_):
        try:
            services.tokens.refresh(pair.refresh_token)
            return "ok"
        except InvalidToken:
            return "rejected"

    with ThreadPoolExecutor(max_workers=5) as executor:
        results = list(executor.map(attempt, range(5)))

    assert results.count("ok") == 1
    assert results.count("rejected") == 4


def test_refresh_rejects_garbage_and_access_tokens(services, member):
    pair = services.tokens.issue(member)
    for token in ("garbage", pair.access_token):
        with pytest.raises(InvalidToken):
            services.tokens.refresh(token)


def test_expired_refresh_token(services, settings, member):
    old = TokenService(services.pool, settings, clock=lambda: utcnow() - timedelta(days=8))
    pair = old.issue(member)
    with pytest.raises(InvalidToken):
        services.tokens.refresh(pair.refresh_token)


def test_remember_me_extends_refresh_lifetime(services, member):
    short = jwt.get_unverified_claims(services.tokens.issue(member).refresh_token)
    long = jwt.get_unverified_claims(services.tokens.issue(member, remember_me=True).refresh_token)

    assert short["exp"] - short["iat"] == 7 * 86400
    assert long["exp"] - long["iat"] == 30 * 86400


def test_revoke_ends_session(services, member):
    pair = services.tokens.issue(member)
    assert services.tokens.revoke(pair.refresh_token) == 1
    with pytest.raises(InvalidToken):
        services.tokens.refresh(pair.refresh_token)


def test_revoke_unknown_token_is_noop(services):
    assert services.tokens.revoke("garbage") == 0


def test_revoke_checks_token_owner(services, member, other_member):
    pair = services.tokens.issue(member)
    assert services.tokens.revoke(pair.refresh_token, user_id=other_member.id) == 0
    assert services.tokens.revoke(pair.refresh_token, user_id=member.id) == 1


def test_revoke_all(services, member):
    pairs = [services.tokens.issue(member) for _ in range(3)]
    assert services.tokens.revoke_all(member.id) == 3
    for pair in pairs:
        with pytest.raises(InvalidToken):
            services.tokens.refresh(pair.refresh_token)


def test_purge_expired(services, settings, member):
    old = TokenService(services.pool, settings, clock=lambda: utcnow() - timedelta(days=10))
    old.issue(member)
    services.tokens.issue(member)

    assert services.tokens.purge_expired() == 1
    assert services.tokens.purge_expired() == 0
