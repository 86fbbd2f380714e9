from __future__ import annotations

import asyncio
import contextlib
import secrets
from dataclasses import replace
from typing import Iterator, List, Optional, Type, TypeVar, Union

import pydantic

from trustcore.logging import get_logger
from trustcore.schemas import SignInRequest, SignUpRequest, normalize_email
from trustcore.service.errors import (
    InvalidCredentialsError,
    InvalidTokenError,
    SignupDisabledError,
    UpstreamError,
    UserExistsError,
    ValidationError,
)
from trustcore.service.oauth import OAuthEngine, OAuthProvider
from trustcore.service.passwords import PasswordHasher
from trustcore.service.sessions import SessionTracker
from trustcore.service.tokens import TokenEngine
from trustcore.service.users import UserStore
from trustcore.storage.errors import ConstraintViolation, UserNotFound
from trustcore.storage.models import (
    PROVIDER_LOCAL,
    AuthResponse,
    BestEffortResult,
    OAuthUserInfo,
    SessionData,
    TokenClaims,
    User,
    utcnow,
)

logger = get_logger(__name__)

_RequestT = TypeVar("_RequestT", bound=pydantic.BaseModel)


def _parse_request(model: Type[_RequestT], **values) -> _RequestT:
    try:
        return model(**values)
    except pydantic.ValidationError as exc:
        errors = exc.errors(include_url=False, include_input=False)
        fields = sorted({str(err["loc"][0]) for err in errors if err.get("loc")})
        message = errors[0]["msg"] if errors else "invalid request"
        raise ValidationError(message, detail={"fields": fields}) from None


@contextlib.contextmanager
def _user_store_call(operation: str) -> Iterator[None]:
    """Wrap unexpected user-store failures in :class:`UpstreamError`."""
    try:
        yield
    except (UserNotFound, ConstraintViolation):
        raise
    except Exception as exc:
        logger.error("user_store_failed", operation=operation, error=str(exc))
        raise UpstreamError(
            f"user store {operation} failed", detail={"operation": operation}
        ) from exc


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not header:
        raise InvalidTokenError("authorization header required")
    scheme, _, token = header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise InvalidTokenError("invalid authorization header format")
    return token


class AuthService:
    """Sign-up, sign-in, OAuth login and token refresh over injected collaborators.

    Every successful authentication returns an access/refresh pair plus a
    best-effort session. Session creation and profile refresh never fail the
    operation; their outcomes are reported in ``AuthResponse.side_effects``.
    """

    def __init__(
        self,
        users: UserStore,
        hasher: PasswordHasher,
        tokens: TokenEngine,
        sessions: SessionTracker,
        oauth: OAuthEngine,
        *,
        allow_signup: bool = True,
        frontend_success_url: str = "",
    ) -> None:
        self.users = users
        self.hasher = hasher
        self.tokens = tokens
        self.sessions = sessions
        self.oauth = oauth
        self.allow_signup = allow_signup
        self.frontend_success_url = frontend_success_url
        self.logger = logger

    @property
    def session_ttl_seconds(self) -> int:
        return int(self.tokens.access_ttl.total_seconds())

    async def sign_up(
        self, email: str, password: str, name: Optional[str] = None
    ) -> AuthResponse:
        if not self.allow_signup:
            raise SignupDisabledError()
        request = _parse_request(SignUpRequest, email=email, password=password, name=name)

        with _user_store_call("user_exists"):
            exists = await self.users.user_exists(request.email)
        if exists:
            self.logger.info("signup_rejected_existing_user", email=request.email)
            raise UserExistsError()

        password_hash = await asyncio.to_thread(self.hasher.hash, request.password)
        now = utcnow()
        user = User(
            id=secrets.token_hex(8),
            email=request.email,
            name=request.name,
            provider=PROVIDER_LOCAL,
            created_at=now,
            updated_at=now,
        )
        try:
            with _user_store_call("create_user"):
                await self.users.create_user(user, password_hash)
        except ConstraintViolation:
            # Another sign-up won the race after the existence check
            raise UserExistsError() from None
        self.logger.info("signup_success", user_id=user.id)
        return await self._issue(user)

    async def sign_in(self, email: str, password: str) -> AuthResponse:
        try:
            request = _parse_request(SignInRequest, email=email, password=password)
        except ValidationError:
            raise InvalidCredentialsError() from None
        try:
            with _user_store_call("get_user_by_email"):
                user, password_hash = await self.users.get_user_by_email(request.email)
        except UserNotFound:
            self.logger.info("signin_failed", reason="unknown_email")
            raise InvalidCredentialsError() from None
        except UpstreamError as exc:
            # Callers only ever see invalid credentials on sign-in
            self.logger.error(
                "signin_failed", reason="user_store_unavailable", error=str(exc.__cause__ or exc)
            )
            raise InvalidCredentialsError() from None

        verified = await asyncio.to_thread(self.hasher.verify, password_hash, request.password)
        if not verified:
            self.logger.info("signin_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        self.logger.info("signin_success", user_id=user.id)
        return await self._issue(user)

    async def oauth_sign_in(
        self, provider: Union[str, OAuthProvider], state: str, code: str
    ) -> AuthResponse:
        info, redirect_uri = await self.oauth.validate_callback(provider, state, code)
        if not info.email:
            raise ValidationError(
                "OAuth profile has no email address", detail={"provider": info.provider}
            )

        side_effects: List[BestEffortResult] = []
        email = normalize_email(info.email)
        try:
            with _user_store_call("get_user_by_email"):
                user, _ = await self.users.get_user_by_email(email)
        except UserNotFound:
            user = await self._create_oauth_user(f"{info.provider}_{info.id}", email, info)
        else:
            user, outcome = await self._refresh_oauth_profile(user, info)
            side_effects.append(outcome)

        response = await self._issue(user, side_effects=side_effects)
        response.redirect_uri = redirect_uri
        return response

    async def _create_oauth_user(self, user_id: str, email: str, info: OAuthUserInfo) -> User:
        now = utcnow()
        user = User(
            id=user_id,
            email=email,
            name=info.name or None,
            avatar_url=info.avatar_url or None,
            provider=info.provider,
            created_at=now,
            updated_at=now,
        )
        try:
            with _user_store_call("create_user"):
                # OAuth accounts carry an empty hash and cannot sign in with a password
                await self.users.create_user(user, "")
        except ConstraintViolation:
            # A concurrent login may have created an account for this email
            try:
                with _user_store_call("get_user_by_email"):
                    existing, _ = await self.users.get_user_by_email(email)
            except UserNotFound:
                self.logger.info("oauth_signup_conflict", provider=info.provider, user_id=user_id)
                raise UserExistsError() from None
            return existing
        self.logger.info("oauth_user_created", user_id=user_id, provider=info.provider)
        return user

    async def _refresh_oauth_profile(
        self, user: User, info: OAuthUserInfo
    ) -> tuple[User, BestEffortResult]:
        updated = replace(
            user,
            name=info.name or user.name,
            avatar_url=info.avatar_url or user.avatar_url,
            updated_at=utcnow(),
        )
        try:
            await self.users.update_user(updated)
        except Exception as exc:
            self.logger.warning("oauth_profile_update_failed", user_id=user.id, error=str(exc))
            return user, BestEffortResult("update_user", exc)
        return updated, BestEffortResult("update_user")

    async def refresh_token(self, refresh_token: str) -> AuthResponse:
        user_id = self.tokens.validate_refresh(refresh_token)
        try:
            with _user_store_call("get_user_by_id"):
                user = await self.users.get_user_by_id(user_id)
        except UserNotFound:
            self.logger.info("refresh_user_missing", user_id=user_id)
            raise InvalidTokenError("user not found") from None
        return await self._issue(user)

    def validate_token(self, token: str) -> TokenClaims:
        return self.tokens.validate_access(token)

    def authenticate_bearer(self, authorization: Optional[str]) -> TokenClaims:
        """Validate the access token carried in an Authorization header value."""
        return self.tokens.validate_access(extract_bearer(authorization))

    async def get_session(self, session_id: str) -> SessionData:
        return await self.sessions.get(session_id)

    async def logout(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        await self.sessions.invalidate(session_id)
        self.logger.info("logout")

    async def get_oauth_url(
        self, provider: Union[str, OAuthProvider], redirect_uri: Optional[str] = None
    ) -> str:
        return await self.oauth.get_auth_url(provider, redirect_uri or self.frontend_success_url)

    async def _issue(
        self, user: User, *, side_effects: Optional[List[BestEffortResult]] = None
    ) -> AuthResponse:
        claims = TokenClaims(
            user_id=user.id,
            email=user.email,
            name=user.name or "",
            provider=user.provider,
        )
        response = AuthResponse(
            user=user,
            access_token=self.tokens.issue_access(claims),
            refresh_token=self.tokens.issue_refresh(user.id),
            expires_in=self.session_ttl_seconds,
            side_effects=list(side_effects or []),
        )
        try:
            response.session_id = await self.sessions.create(
                user.id, user.email, self.session_ttl_seconds
            )
        except Exception as exc:
            self.logger.warning("session_create_failed", user_id=user.id, error=str(exc))
            response.side_effects.append(BestEffortResult("create_session", exc))
        else:
            response.side_effects.append(BestEffortResult("create_session"))
        return response


__all__ = ["AuthService", "extract_bearer"]
