"""Stateless signing and verification of access and refresh tokens.

Both token kinds are HMAC-signed JWTs sharing one key, but their claim sets
differ: access tokens carry identity claims and ``nbf``, refresh tokens carry
only the user id and ``type="refresh"``. Each validator rejects the other
kind's shape, so one can never be replayed as the other.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Union

import jwt as pyjwt

from trustcore.logging import get_logger
from trustcore.service.errors import InvalidTokenError
from trustcore.storage.models import TokenClaims, utcnow

logger = get_logger(__name__)

SIGNING_ALGORITHM = "HS256"
# Only the HMAC family is accepted on decode; "none" and asymmetric
# algorithms are rejected before the signature is looked at.
HMAC_ALGORITHMS = ["HS256", "HS384", "HS512"]
REFRESH_TOKEN_TYPE = "refresh"
REFRESH_TOKEN_LIFETIME = timedelta(days=30)


class TokenEngine:
    def __init__(
        self,
        secret: str,
        issuer: str,
        access_ttl: Union[timedelta, int, float],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        if not isinstance(access_ttl, timedelta):
            access_ttl = timedelta(seconds=access_ttl)
        if access_ttl <= timedelta(0):
            raise ValueError("access token lifetime must be positive")
        self._secret = secret.encode()
        self._issuer = issuer
        self._access_ttl = access_ttl
        self._clock = clock

    @property
    def issuer(self) -> str:
        return self._issuer

    @property
    def access_ttl(self) -> timedelta:
        return self._access_ttl

    def issue_access(self, claims: TokenClaims) -> str:
        if not claims.user_id:
            raise ValueError("user_id is required to issue an access token")
        now = self._clock()
        payload = {
            "user_id": claims.user_id,
            "email": claims.email,
            "name": claims.name,
            "provider": claims.provider,
            "iss": self._issuer,
            "sub": claims.user_id,
            "iat": int(now.timestamp()),
            "nbf": int(now.timestamp()),
            "exp": int((now + self._access_ttl).timestamp()),
        }
        return pyjwt.encode(payload, self._secret, algorithm=SIGNING_ALGORITHM)

    def validate_access(self, token: str) -> TokenClaims:
        payload = self._decode(token, required=["exp", "iat", "nbf", "sub"])
        if "type" in payload:
            logger.info("access_token_type_mismatch", token_type=payload.get("type"))
            raise InvalidTokenError("not an access token")
        user_id = payload.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise InvalidTokenError("user_id not found in token")
        return TokenClaims(
            user_id=user_id,
            email=_as_str(payload.get("email")),
            name=_as_str(payload.get("name")),
            provider=_as_str(payload.get("provider")),
        )

    def issue_refresh(self, user_id: str) -> str:
        if not user_id:
            raise ValueError("user_id is required to issue a refresh token")
        now = self._clock()
        payload = {
            "user_id": user_id,
            "type": REFRESH_TOKEN_TYPE,
            "iss": self._issuer,
            "sub": user_id,
            "iat": int(now.timestamp()),
            "exp": int((now + REFRESH_TOKEN_LIFETIME).timestamp()),
        }
        return pyjwt.encode(payload, self._secret, algorithm=SIGNING_ALGORITHM)

    def validate_refresh(self, token: str) -> str:
        """Verify a refresh token and return the user id it was issued for."""
        payload = self._decode(token, required=["exp", "iat", "sub"])
        if payload.get("type") != REFRESH_TOKEN_TYPE:
            logger.info("refresh_token_type_mismatch", token_type=payload.get("type"))
            raise InvalidTokenError("not a refresh token")
        user_id = payload.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise InvalidTokenError("user_id not found in refresh token")
        return user_id

    def _decode(self, token: str, *, required: list[str]) -> Dict[str, Any]:
        if not token:
            raise InvalidTokenError("token is required")
        try:
            return pyjwt.decode(
                token,
                self._secret,
                algorithms=HMAC_ALGORITHMS,
                issuer=self._issuer,
                options={"require": required},
            )
        except pyjwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("token expired", reason="expired") from exc
        except pyjwt.ImmatureSignatureError as exc:
            raise InvalidTokenError("token not yet valid") from exc
        except pyjwt.InvalidAlgorithmError as exc:
            logger.warning("jwt_invalid_algorithm", error=str(exc))
            raise InvalidTokenError("unexpected signing method") from exc
        except pyjwt.InvalidTokenError as exc:
            raise InvalidTokenError(f"failed to parse token: {exc}") from exc


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


__all__ = [
    "TokenEngine",
    "HMAC_ALGORITHMS",
    "REFRESH_TOKEN_LIFETIME",
    "REFRESH_TOKEN_TYPE",
]
