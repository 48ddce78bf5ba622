from __future__ import annotations

from functools import lru_cache

import jwt
from jwt import InvalidTokenError

from app.core.config import settings

_ASYMMETRIC_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]


class ExternalAuthError(Exception):
    pass


@lru_cache(maxsize=4)
def _jwks_client(url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(url)


def _decode_options() -> dict:
    issuer = settings.auth_issuer.strip()
    audience = settings.auth_audience.strip()

    decode_kwargs: dict = {"options": {"require": ["exp", "iat"]}}
    if audience:
        decode_kwargs["audience"] = audience
    else:
        decode_kwargs["options"]["verify_aud"] = False

    if issuer:
        decode_kwargs["issuer"] = issuer
    return decode_kwargs


def verify_external_jwt(token: str) -> dict:
    """Validate an identity-provider session token and return its claims.

    A shared HS256 secret (AUTH_JWT_SECRET) takes precedence over JWKS.
    """
    secret = settings.auth_jwt_secret.strip()
    jwks_url = settings.auth_jwks_url.strip()

    if not secret and not jwks_url:
        raise ExternalAuthError("external auth misconfigured: AUTH_JWT_SECRET or AUTH_JWKS_URL required")

    decode_kwargs = _decode_options()

    try:
        if secret:
            claims = jwt.decode(token, secret, algorithms=["HS256"], **decode_kwargs)
        else:
            signing_key = _jwks_client(jwks_url).get_signing_key_from_jwt(token).key
            claims = jwt.decode(token, signing_key, algorithms=_ASYMMETRIC_ALGORITHMS, **decode_kwargs)
    except InvalidTokenError as exc:
        raise ExternalAuthError(f"invalid token: {exc}") from exc
    except Exception as exc:  # noqa: BLE001
        raise ExternalAuthError(f"external auth validation failed: {exc}") from exc

    return claims
