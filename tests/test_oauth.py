import asyncio
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from jose import jwt
from sqlalchemy.orm import Session

import crud
from errors import InvalidOAuthState, TokenExchangeError
from settings import get_settings
from upwork_oauth import (
    RefreshCoordinator,
    UpworkOAuth,
    build_authorization_url,
    extract_upwork_user_id,
    issue_state,
    verify_state,
)


def _oauth(fake_upwork) -> UpworkOAuth:
    return UpworkOAuth(get_settings(), transport=fake_upwork.transport())


def test_authorization_url_carries_client_and_state():
    url = build_authorization_url("cid", "http://localhost/cb", "r_basic r_jobs_browse", "st", "https://upwork.test/auth")
    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    assert parsed.netloc == "upwork.test"
    assert params["response_type"] == ["code"]
    assert params["client_id"] == ["cid"]
    assert params["redirect_uri"] == ["http://localhost/cb"]
    assert params["state"] == ["st"]


def test_state_round_trip_and_binding():
    state = issue_state(7)
    verify_state(state, 7)
    with pytest.raises(InvalidOAuthState):
        verify_state(state, 8)
    with pytest.raises(InvalidOAuthState):
        verify_state(None, 7)
    with pytest.raises(InvalidOAuthState):
        verify_state("not-a-jwt", 7)


def test_expired_state_is_rejected():
    settings = get_settings().model_copy(update={"oauth_state_ttl_seconds": -10})
    state = issue_state(7, settings)
    with pytest.raises(InvalidOAuthState):
        verify_state(state, 7)


def test_extract_upwork_user_id():
    token = jwt.encode({"tenant_id": "tenant-42"}, "irrelevant", algorithm="HS256")
    assert extract_upwork_user_id(token) == "tenant-42"
    assert extract_upwork_user_id("opaque-token") is None


@pytest.mark.asyncio
async def test_exchange_code_returns_token_pair(fake_upwork):
    tokens = await _oauth(fake_upwork).exchange_code("auth-code")

    assert tokens.access_token == "access-1"
    assert tokens.refresh_token == "refresh-1"
    assert tokens.expires_at() is not None
    request = fake_upwork.requests[0]
    body = parse_qs(request.content.decode())
    assert body["grant_type"] == ["authorization_code"]
    assert body["code"] == ["auth-code"]
    assert request.headers["Authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_exchange_code_rejected(fake_upwork):
    fake_upwork.token_status = 400
    fake_upwork.token_body = {"error": "invalid_grant"}

    with pytest.raises(TokenExchangeError) as exc_info:
        await _oauth(fake_upwork).exchange_code("bad-code")
    assert exc_info.value.upstream_status == 400


@pytest.mark.asyncio
async def test_exchange_code_without_access_token(fake_upwork):
    fake_upwork.token_body = {"token_type": "bearer"}
    with pytest.raises(TokenExchangeError):
        await _oauth(fake_upwork).exchange_code("code")


@pytest.mark.asyncio
async def test_exchange_code_transport_failure():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    oauth = UpworkOAuth(get_settings(), transport=httpx.MockTransport(boom))
    with pytest.raises(TokenExchangeError):
        await oauth.exchange_code("code")


@pytest.mark.asyncio
async def test_refresh_failure_requires_reconnect(fake_upwork):
    fake_upwork.token_status = 401
    result = await _oauth(fake_upwork).refresh("refresh-old")
    assert not result.ok
    assert result.requires_reconnect
    assert result.tokens is None


@pytest.mark.asyncio
async def test_refresh_keeps_refresh_token_when_not_rotated(fake_upwork):
    fake_upwork.token_body = {"access_token": "access-2", "expires_in": 3600}
    result = await _oauth(fake_upwork).refresh("refresh-old")
    assert result.ok
    assert result.tokens.access_token == "access-2"
    assert result.tokens.refresh_token == "refresh-old"


# --- RefreshCoordinator ---
@pytest.mark.asyncio
async def test_coordinator_persists_refreshed_tokens(db_session: Session, make_user, fake_upwork):
    user = make_user()
    crud.upsert_upwork_account(db_session, user.id, "access-old", "refresh-old")
    fake_upwork.token_body = {"access_token": "access-new", "refresh_token": "refresh-new", "expires_in": 60}

    result = await RefreshCoordinator().refresh(db_session, user.id, _oauth(fake_upwork), "refresh-old")

    assert result.ok and not result.reused
    account = crud.get_upwork_account(db_session, user.id)
    assert account.access_token == "access-new"
    assert account.refresh_token == "refresh-new"
    assert account.expires_at is not None


@pytest.mark.asyncio
async def test_coordinator_reuses_tokens_refreshed_by_peer(db_session: Session, make_user, fake_upwork):
    user = make_user()
    crud.upsert_upwork_account(db_session, user.id, "access-peer", "refresh-peer")

    # Caller saw the old refresh token; a peer has already rotated it
    result = await RefreshCoordinator().refresh(db_session, user.id, _oauth(fake_upwork), "refresh-old")

    assert result.ok and result.reused
    assert result.tokens.access_token == "access-peer"
    assert fake_upwork.calls["token"] == 0


@pytest.mark.asyncio
async def test_concurrent_refreshes_hit_upstream_once(db_session: Session, make_user, fake_upwork):
    user = make_user()
    crud.upsert_upwork_account(db_session, user.id, "access-old", "refresh-old")
    fake_upwork.token_body = {"access_token": "access-new", "refresh_token": "refresh-new"}
    coordinator = RefreshCoordinator()
    oauth = _oauth(fake_upwork)

    first, second = await asyncio.gather(
        coordinator.refresh(db_session, user.id, oauth, "refresh-old"),
        coordinator.refresh(db_session, user.id, oauth, "refresh-old"),
    )

    assert first.ok and second.ok
    assert fake_upwork.calls["token"] == 1
    assert second.reused
    assert second.tokens.access_token == "access-new"


@pytest.mark.asyncio
async def test_coordinator_without_account(db_session: Session, make_user, fake_upwork):
    user = make_user()
    result = await RefreshCoordinator().refresh(db_session, user.id, _oauth(fake_upwork))
    assert not result.ok
    assert result.requires_reconnect
