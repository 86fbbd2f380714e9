"""Tests for the OAuth exchange engine.

Provider endpoints are served by ``httpx.MockTransport`` handlers, so no
network access is needed.
"""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from trustcore.service.errors import (
    InvalidStateError,
    ProviderExchangeError,
    ProviderNotConfiguredError,
    ValidationError,
)
from trustcore.service.oauth import (
    STATE_KEY_PREFIX,
    GitHubProvider,
    OAuthEngine,
    OAuthProvider,
    ProviderStrategy,
    parse_provider,
)
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import OAuthState, utcnow


class ProviderStub:
    """Routes provider requests to canned responses and records them."""

    def __init__(self, routes=None):
        self.routes = {
            "oauth2.googleapis.com/token": httpx.Response(200, json={"access_token": "g-at"}),
            "www.googleapis.com/oauth2/v2/userinfo": httpx.Response(
                200,
                json={
                    "id": "10769150350006150715",
                    "email": "ada@gmail.com",
                    "name": "Ada Lovelace",
                    "picture": "https://example.com/ada.png",
                },
            ),
            "github.com/login/oauth/access_token": httpx.Response(
                200, json={"access_token": "gh-at", "token_type": "bearer"}
            ),
            "api.github.com/user": httpx.Response(
                200,
                json={"id": 583231, "login": "octocat", "name": None, "email": None,
                      "avatar_url": "https://example.com/octo.png"},
            ),
            "api.github.com/user/emails": httpx.Response(
                200,
                json=[
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "octo@example.com", "primary": True, "verified": True},
                ],
            ),
        }
        self.routes.update(routes or {})
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = f"{request.url.host}{request.url.path}"
        response = self.routes.get(route)
        if response is None:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(response, Exception):
            raise response
        return httpx.Response(
            response.status_code, headers=response.headers, content=response.content
        )

    def paths(self):
        return [r.url.path for r in self.requests]


@pytest.fixture
def store():
    return MemoryStore()


def _engine(store, settings, stub=None, **kwargs):
    transport = httpx.MockTransport(stub or ProviderStub())
    engine = OAuthEngine.from_settings(store, settings, transport=transport)
    for name, value in kwargs.items():
        setattr(engine, name, value)
    return engine


def _state_of(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestProviderParsing:
    def test_known_providers(self):
        assert parse_provider("google") is OAuthProvider.GOOGLE
        assert parse_provider(" GitHub ") is OAuthProvider.GITHUB
        assert parse_provider(OAuthProvider.GITHUB) is OAuthProvider.GITHUB

    def test_unknown_provider_is_a_validation_error(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_provider("myspace")
        assert excinfo.value.status_code == 400

    def test_strategy_base_requires_profile_mapping(self, settings):
        with pytest.raises(TypeError):
            ProviderStrategy(settings.oauth_client("github"))

    def test_strategy_token_headers_are_read_only(self):
        with pytest.raises(TypeError):
            GitHubProvider.token_headers["Accept"] = "text/html"
        assert ProviderStrategy.token_headers == {}


class TestAuthUrl:
    async def test_google_url_carries_required_parameters(self, store, settings):
        engine = _engine(store, settings)

        url = await engine.get_auth_url("google", "https://app.example.com/done")

        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://accounts.google.com/o/oauth2/auth"
        assert query["client_id"] == ["google-client"]
        assert query["redirect_uri"] == [settings.oauth_google_redirect_uri]
        assert query["scope"] == ["email profile"]
        assert query["response_type"] == ["code"]
        assert query["access_type"] == ["offline"]
        assert len(query["state"][0]) >= 43

    async def test_github_url_has_no_offline_access(self, store, settings):
        engine = _engine(store, settings)

        url = await engine.get_auth_url(OAuthProvider.GITHUB, "https://app.example.com/done")

        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://github.com/login/oauth/authorize?")
        assert query["scope"] == ["user:email"]
        assert query["response_type"] == ["code"]
        assert "access_type" not in query

    async def test_pending_state_is_stored_with_redirect(self, store, settings):
        engine = _engine(store, settings)

        url = await engine.get_auth_url("google", "https://app.example.com/done")

        assert len(store) == 1
        record = OAuthState.from_dict(await store.get(STATE_KEY_PREFIX + _state_of(url)))
        assert record.redirect_uri == "https://app.example.com/done"
        assert record.provider == "google"
        assert not record.is_expired()

    async def test_each_url_gets_a_fresh_state(self, store, settings):
        engine = _engine(store, settings)

        first = await engine.get_auth_url("google", "/a")
        second = await engine.get_auth_url("google", "/a")

        assert _state_of(first) != _state_of(second)

    async def test_unconfigured_provider_is_rejected(self, store, settings):
        engine = _engine(store, settings.model_copy(update={"oauth_github_client_id": None}))

        with pytest.raises(ProviderNotConfiguredError):
            await engine.get_auth_url("github", "/a")
        assert len(store) == 0


class TestCallback:
    async def test_google_exchange_normalizes_profile(self, store, settings):
        stub = ProviderStub()
        engine = _engine(store, settings, stub)
        state = _state_of(await engine.get_auth_url("google", "https://app.example.com/done"))

        info, redirect_uri = await engine.validate_callback("google", state, "auth-code")

        assert info.id == "10769150350006150715"
        assert info.email == "ada@gmail.com"
        assert info.name == "Ada Lovelace"
        assert info.avatar_url == "https://example.com/ada.png"
        assert info.provider == "google"
        assert redirect_uri == "https://app.example.com/done"

        token_request = stub.requests[0]
        form = parse_qs(token_request.content.decode())
        assert token_request.method == "POST"
        assert form["code"] == ["auth-code"]
        assert form["grant_type"] == ["authorization_code"]
        assert form["client_secret"] == ["google-secret"]
        assert stub.requests[1].headers["Authorization"] == "Bearer g-at"

    async def test_github_falls_back_to_primary_verified_email(self, store, settings):
        stub = ProviderStub()
        engine = _engine(store, settings, stub)
        state = _state_of(await engine.get_auth_url("github", "/done"))

        info, _ = await engine.validate_callback("github", state, "gh-code")

        assert info.id == "583231"
        assert info.email == "octo@example.com"
        assert info.name == "octocat"
        assert stub.paths() == ["/login/oauth/access_token", "/user", "/user/emails"]
        assert stub.requests[0].headers["Accept"] == "application/json"
        assert stub.requests[1].headers["Accept"] == "application/vnd.github.v3+json"

    async def test_github_uses_any_verified_email_without_primary(self, store, settings):
        stub = ProviderStub({
            "api.github.com/user/emails": httpx.Response(
                200,
                json=[
                    {"email": "unverified@example.com", "primary": True, "verified": False},
                    {"email": "verified@example.com", "primary": False, "verified": True},
                ],
            ),
        })
        engine = _engine(store, settings, stub)
        state = _state_of(await engine.get_auth_url("github", "/done"))

        info, _ = await engine.validate_callback("github", state, "gh-code")

        assert info.email == "verified@example.com"

    async def test_github_without_verified_email_fails(self, store, settings):
        stub = ProviderStub({
            "api.github.com/user/emails": httpx.Response(
                200, json=[{"email": "x@example.com", "primary": True, "verified": False}]
            ),
        })
        engine = _engine(store, settings, stub)
        state = _state_of(await engine.get_auth_url("github", "/done"))

        with pytest.raises(ProviderExchangeError):
            await engine.validate_callback("github", state, "gh-code")

    async def test_github_profile_email_skips_emails_endpoint(self, store, settings):
        stub = ProviderStub({
            "api.github.com/user": httpx.Response(
                200, json={"id": 1, "login": "mona", "name": "Mona", "email": "mona@example.com"}
            ),
        })
        engine = _engine(store, settings, stub)
        state = _state_of(await engine.get_auth_url("github", "/done"))

        info, _ = await engine.validate_callback("github", state, "gh-code")

        assert info.email == "mona@example.com"
        assert "/user/emails" not in stub.paths()

    async def test_state_is_single_use(self, store, settings):
        engine = _engine(store, settings)
        state = _state_of(await engine.get_auth_url("google", "/done"))

        await engine.validate_callback("google", state, "code")

        with pytest.raises(InvalidStateError):
            await engine.validate_callback("google", state, "code")

    async def test_state_is_consumed_even_when_exchange_fails(self, store, settings):
        stub = ProviderStub({"oauth2.googleapis.com/token": httpx.Response(400, json={"error": "bad"})})
        engine = _engine(store, settings, stub)
        state = _state_of(await engine.get_auth_url("google", "/done"))

        with pytest.raises(ProviderExchangeError):
            await engine.validate_callback("google", state, "code")
        with pytest.raises(InvalidStateError):
            await engine.validate_callback("google", state, "code")

    async def test_wrong_state_leaves_pending_state_usable(self, store, settings):
        engine = _engine(store, settings)
        state = _state_of(await engine.get_auth_url("google", "/done"))

        with pytest.raises(InvalidStateError) as excinfo:
            await engine.validate_callback("google", "not-the-state", "code")
        assert excinfo.value.status_code == 401
        assert len(store) == 1

        info, _ = await engine.validate_callback("google", state, "code")
        assert info.provider == "google"

    async def test_expired_state_is_rejected(self, store, settings):
        engine = _engine(store, settings)
        record = OAuthState(
            state="stale",
            redirect_uri="/done",
            expires_at=utcnow() - timedelta(seconds=1),
            provider="google",
        )
        await store.set(STATE_KEY_PREFIX + "stale", record.to_dict(), 60)

        with pytest.raises(InvalidStateError):
            await engine.validate_callback("google", "stale", "code")
        assert len(store) == 0

    async def test_state_ttl_expires_in_store(self, store, settings):
        engine = _engine(store, settings, state_ttl_seconds=0.05)
        state = _state_of(await engine.get_auth_url("google", "/done"))
        await asyncio.sleep(0.1)

        with pytest.raises(InvalidStateError):
            await engine.validate_callback("google", state, "code")

    async def test_state_issued_for_other_provider_is_rejected(self, store, settings):
        engine = _engine(store, settings)
        state = _state_of(await engine.get_auth_url("google", "/done"))

        with pytest.raises(InvalidStateError):
            await engine.validate_callback("github", state, "code")

    async def test_concurrent_callbacks_with_one_state_have_one_winner(self, store, settings):
        engine = _engine(store, settings)
        state = _state_of(await engine.get_auth_url("google", "/done"))

        results = await asyncio.gather(
            *(engine.validate_callback("google", state, "code") for _ in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, InvalidStateError) for r in results if r not in winners)


class TestProviderFailures:
    async def _callback(self, store, settings, routes):
        engine = _engine(store, settings, ProviderStub(routes))
        state = _state_of(await engine.get_auth_url("google", "/done"))
        return await engine.validate_callback("google", state, "code")

    async def test_non_2xx_profile_response(self, store, settings):
        with pytest.raises(ProviderExchangeError) as excinfo:
            await self._callback(
                store, settings, {"www.googleapis.com/oauth2/v2/userinfo": httpx.Response(500)}
            )
        assert excinfo.value.status_code == 502

    async def test_malformed_json(self, store, settings):
        with pytest.raises(ProviderExchangeError):
            await self._callback(
                store, settings,
                {"oauth2.googleapis.com/token": httpx.Response(200, content=b"<html>")},
            )

    async def test_missing_access_token(self, store, settings):
        with pytest.raises(ProviderExchangeError):
            await self._callback(
                store, settings,
                {"oauth2.googleapis.com/token": httpx.Response(200, json={"error": "bad_verification_code"})},
            )

    async def test_transport_error(self, store, settings):
        with pytest.raises(ProviderExchangeError):
            await self._callback(
                store, settings, {"oauth2.googleapis.com/token": httpx.ConnectError("refused")}
            )

    async def test_timeout(self, store, settings):
        with pytest.raises(ProviderExchangeError):
            await self._callback(
                store, settings, {"oauth2.googleapis.com/token": httpx.ReadTimeout("slow")}
            )
