"""OAuth authorization-code exchange with single-use state tokens.

A state token is issued with every authorization URL and stored under
``oauth:state:<state>`` until the callback pops it. Popping is atomic, so a
state is consumed exactly once whether or not the rest of the exchange
succeeds. Provider-specific endpoints and profile shapes live in strategy
classes keyed by :class:`OAuthProvider`.
"""

from __future__ import annotations

import secrets
from abc import ABC, abstractmethod
from datetime import timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

import httpx

from trustcore.config import OAuthClientConfig, Settings
from trustcore.logging import get_logger
from trustcore.service.errors import (
    InvalidStateError,
    ProviderExchangeError,
    ProviderNotConfiguredError,
    ValidationError,
)
from trustcore.storage.common import ExpiringStore
from trustcore.storage.errors import KeyNotFound
from trustcore.storage.models import OAuthState, OAuthUserInfo, utcnow

logger = get_logger(__name__)

STATE_KEY_PREFIX = "oauth:state:"
DEFAULT_STATE_TTL_SECONDS = 10 * 60
DEFAULT_HTTP_TIMEOUT_SECONDS = 5.0


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    GITHUB = "github"


def parse_provider(value: Union[str, OAuthProvider]) -> OAuthProvider:
    """Map a provider tag onto the closed provider set."""
    if isinstance(value, OAuthProvider):
        return value
    try:
        return OAuthProvider(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"unsupported OAuth provider: {value}", detail={"provider": str(value)}
        ) from None


class ProviderStrategy(ABC):
    """Endpoints and profile mapping for one provider.

    Subclasses set the endpoint URLs and implement :meth:`fetch_profile`.
    Any transport failure, timeout, non-2xx status or undecodable body
    raises :class:`ProviderExchangeError`; nothing is retried.
    """

    provider: OAuthProvider
    auth_url: str
    token_url: str
    token_headers: Mapping[str, str] = MappingProxyType({})

    def __init__(self, config: OAuthClientConfig) -> None:
        self.config = config

    def auth_params(self, state: str) -> Dict[str, str]:
        return {
            "client_id": self.config.client_id or "",
            "redirect_uri": self.config.redirect_uri,
            "scope": " ".join(self.config.scopes),
            "response_type": "code",
            "state": state,
        }

    def build_auth_url(self, state: str) -> str:
        return f"{self.auth_url}?{urlencode(self.auth_params(state))}"

    async def exchange_code(self, client: httpx.AsyncClient, code: str) -> OAuthUserInfo:
        access_token = await self.fetch_access_token(client, code)
        return await self.fetch_profile(client, access_token)

    async def fetch_access_token(self, client: httpx.AsyncClient, code: str) -> str:
        form = {
            "client_id": self.config.client_id or "",
            "client_secret": self.config.client_secret or "",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "grant_type": "authorization_code",
        }
        payload = await self._request_json(
            client,
            "POST",
            self.token_url,
            step="token",
            data=form,
            headers=dict(self.token_headers),
        )
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            # GitHub answers 200 with an "error" field for bad codes
            error = payload.get("error") if isinstance(payload, dict) else None
            logger.error("oauth_no_access_token", provider=self.provider.value, error=error)
            raise ProviderExchangeError("failed to exchange code: no access token in response")
        return str(access_token)

    @abstractmethod
    async def fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> OAuthUserInfo:
        """Load the signed-in user's profile with a provider access token."""

    async def _request_json(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        step: str,
        **kwargs: Any,
    ) -> Any:
        provider = self.provider.value
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("oauth_provider_timeout", provider=provider, step=step, error=str(exc))
            raise ProviderExchangeError(f"{provider} {step} request timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_provider_unreachable", provider=provider, step=step, error=str(exc))
            raise ProviderExchangeError(f"{provider} {step} request failed") from exc
        if not response.is_success:
            logger.error(
                "oauth_provider_http_error",
                provider=provider,
                step=step,
                status_code=response.status_code,
            )
            raise ProviderExchangeError(
                f"{provider} {step} request returned status {response.status_code}",
                detail={"status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            logger.error("oauth_provider_parse_error", provider=provider, step=step, error=str(exc))
            raise ProviderExchangeError(f"{provider} {step} response is not valid JSON") from exc


class GoogleProvider(ProviderStrategy):
    provider = OAuthProvider.GOOGLE
    auth_url = "https://accounts.google.com/o/oauth2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"

    def auth_params(self, state: str) -> Dict[str, str]:
        params = super().auth_params(state)
        params["access_type"] = "offline"
        return params

    async def fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> OAuthUserInfo:
        profile = await self._request_json(
            client,
            "GET",
            self.userinfo_url,
            step="userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not isinstance(profile, dict) or not profile.get("id"):
            raise ProviderExchangeError("google profile is missing an id")
        return OAuthUserInfo(
            id=str(profile["id"]),
            email=profile.get("email") or "",
            name=profile.get("name") or "",
            avatar_url=profile.get("picture") or "",
            provider=self.provider.value,
        )


class GitHubProvider(ProviderStrategy):
    provider = OAuthProvider.GITHUB
    auth_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    user_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    token_headers = MappingProxyType({"Accept": "application/json"})

    def _api_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github.v3+json",
        }

    async def fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> OAuthUserInfo:
        headers = self._api_headers(access_token)
        profile = await self._request_json(client, "GET", self.user_url, step="user", headers=headers)
        if not isinstance(profile, dict) or profile.get("id") is None:
            raise ProviderExchangeError("github profile is missing an id")

        email = profile.get("email") or ""
        if not email:
            emails = await self._request_json(
                client, "GET", self.emails_url, step="emails", headers=headers
            )
            email = _pick_github_email(emails)
        if not email:
            raise ProviderExchangeError("no verified email found on github account")

        return OAuthUserInfo(
            id=str(profile["id"]),
            email=email,
            name=profile.get("name") or profile.get("login") or "",
            avatar_url=profile.get("avatar_url") or "",
            provider=self.provider.value,
        )


def _pick_github_email(entries: Any) -> str:
    if not isinstance(entries, list):
        return ""
    verified: List[Dict[str, Any]] = [
        e for e in entries if isinstance(e, dict) and e.get("verified") and e.get("email")
    ]
    for entry in verified:
        if entry.get("primary"):
            return entry["email"]
    return verified[0]["email"] if verified else ""


PROVIDER_STRATEGIES = {
    OAuthProvider.GOOGLE: GoogleProvider,
    OAuthProvider.GITHUB: GitHubProvider,
}


class OAuthEngine:
    def __init__(
        self,
        store: ExpiringStore,
        clients: Mapping[OAuthProvider, OAuthClientConfig],
        *,
        state_ttl_seconds: float = DEFAULT_STATE_TTL_SECONDS,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if state_ttl_seconds <= 0:
            raise ValueError("state TTL must be positive")
        self.store = store
        self.state_ttl_seconds = state_ttl_seconds
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport
        self._strategies = {
            provider: PROVIDER_STRATEGIES[provider](config)
            for provider, config in clients.items()
        }

    @classmethod
    def from_settings(
        cls,
        store: ExpiringStore,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "OAuthEngine":
        clients = {provider: settings.oauth_client(provider.value) for provider in OAuthProvider}
        return cls(
            store,
            clients,
            state_ttl_seconds=settings.oauth_state_ttl_seconds,
            timeout=settings.oauth_http_timeout_seconds,
            transport=transport,
        )

    def strategy(self, provider: Union[str, OAuthProvider]) -> ProviderStrategy:
        """Return the configured strategy for ``provider``."""
        resolved = parse_provider(provider)
        strategy = self._strategies.get(resolved)
        if strategy is None or not strategy.config.configured:
            logger.warning("oauth_not_configured", provider=resolved.value)
            raise ProviderNotConfiguredError(f"{resolved.value} OAuth is not configured")
        return strategy

    async def get_auth_url(self, provider: Union[str, OAuthProvider], redirect_uri: str) -> str:
        strategy = self.strategy(provider)
        state = secrets.token_urlsafe(32)
        record = OAuthState(
            state=state,
            redirect_uri=redirect_uri,
            expires_at=utcnow() + timedelta(seconds=self.state_ttl_seconds),
            provider=strategy.provider.value,
        )
        await self.store.set(STATE_KEY_PREFIX + state, record.to_dict(), self.state_ttl_seconds)
        logger.info("oauth_state_issued", provider=strategy.provider.value)
        return strategy.build_auth_url(state)

    async def consume_state(self, state: str) -> OAuthState:
        """Pop a pending state record; it can never be read again."""
        if not state:
            raise InvalidStateError()
        try:
            raw = await self.store.pop(STATE_KEY_PREFIX + state)
        except KeyNotFound:
            logger.info("oauth_state_not_found")
            raise InvalidStateError() from None
        try:
            record = OAuthState.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("oauth_state_malformed", error=str(exc))
            raise InvalidStateError() from None
        if record.is_expired():
            logger.info("oauth_state_expired", provider=record.provider)
            raise InvalidStateError()
        return record

    async def validate_callback(
        self, provider: Union[str, OAuthProvider], state: str, code: str
    ) -> Tuple[OAuthUserInfo, str]:
        """Consume ``state`` and exchange ``code`` for a normalized profile.

        Returns the profile and the redirect URI bound to the state when the
        authorization URL was issued.
        """
        resolved = parse_provider(provider)
        record = await self.consume_state(state)
        if record.provider and record.provider != resolved.value:
            logger.warning(
                "oauth_state_provider_mismatch",
                expected=record.provider,
                received=resolved.value,
            )
            raise InvalidStateError()
        strategy = self.strategy(resolved)
        if not code:
            raise ValidationError("authorization code is required")

        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport, follow_redirects=False
        ) as client:
            info = await strategy.exchange_code(client, code)
        logger.info("oauth_exchange_success", provider=resolved.value, provider_uid=info.id)
        return info, record.redirect_uri


__all__ = [
    "OAuthProvider",
    "OAuthEngine",
    "ProviderStrategy",
    "GoogleProvider",
    "GitHubProvider",
    "PROVIDER_STRATEGIES",
    "STATE_KEY_PREFIX",
    "parse_provider",
]
