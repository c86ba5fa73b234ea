from datetime import datetime, timedelta, timezone

import pytest

from saheli.api.auth import SESSION_COOKIE_NAME, issue_session_token, verify_session_token
from saheli.domain.users.db_models import ROLE_CUSTOMER, ROLE_PROVIDER

SECRET = "s" * 40


def test_session_token_round_trip():
    issued_at = datetime(2026, 3, 9, 6, 0, tzinfo=timezone.utc)
    token = issue_session_token("user-1", ROLE_PROVIDER, secret=SECRET, ttl_minutes=60, issued_at=issued_at)

    identity = verify_session_token(token, secret=SECRET, now=issued_at + timedelta(minutes=30))

    assert identity.user_id == "user-1"
    assert identity.is_provider is True
    assert identity.expires_at == issued_at + timedelta(minutes=60)


def test_expired_token_is_rejected():
    issued_at = datetime(2026, 3, 9, 6, 0, tzinfo=timezone.utc)
    token = issue_session_token("user-1", ROLE_CUSTOMER, secret=SECRET, ttl_minutes=5, issued_at=issued_at)

    with pytest.raises(ValueError, match="token_expired"):
        verify_session_token(token, secret=SECRET, now=issued_at + timedelta(minutes=6))


@pytest.mark.parametrize(
    ("mutate", "reason"),
    [
        (lambda token: token[:-2] + ("AA" if not token.endswith("AA") else "BB"), "invalid_token_signature"),
        (lambda token: "no-dot-here", "invalid_token_format"),
    ],
)
def test_tampered_tokens_are_rejected(mutate, reason):
    token = issue_session_token("user-1", ROLE_CUSTOMER, secret=SECRET)

    with pytest.raises(ValueError, match=reason):
        verify_session_token(mutate(token), secret=SECRET)


def test_token_signed_with_other_secret_is_rejected():
    token = issue_session_token("user-1", ROLE_CUSTOMER, secret="x" * 40)

    with pytest.raises(ValueError, match="invalid_token_signature"):
        verify_session_token(token, secret=SECRET)


def test_api_accepts_session_cookie_and_rejects_garbage(client):
    garbage = client.get("/booking/customer/bookings", headers={"Authorization": "Bearer not.a-token"})
    assert garbage.status_code == 401
    assert garbage.json()["detail"] == "Invalid or expired session"

    client.cookies.set(SESSION_COOKIE_NAME, issue_session_token("customer-1", ROLE_CUSTOMER))
    response = client.get("/booking/customer/bookings")
    assert response.status_code == 200
    assert response.json() == {"bookings": [], "limit": 50, "offset": 0}
