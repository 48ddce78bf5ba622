"""Mercado Livre account linking (authorization-code flow).

``initiate`` stores a fresh nonce for the user's scope and returns the
provider authorization URL. ``complete_callback`` consumes that nonce first,
validates the callback, exchanges the code, fetches the seller identity and
writes the linked identity onto the user's profile in one statement.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from app.core.config import settings
from app.services import ml_api_client
from app.services.ml_api_client import MLAPIError, MLConfigError, redact_code, redact_secret
from app.services.oauth_state import OAuthStateStore, new_nonce, scope_for_user
from app.services.persistence import clear_linked_identity, get_linked_identity, set_linked_identity

logger = logging.getLogger(__name__)


class MLAuthError(Exception):
    code = "authorization_failed"
    status_code = 400

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ProviderDenied(MLAuthError):
    code = "provider_denied"


class MissingAuthorizationCode(MLAuthError):
    code = "missing_code"


class StateMismatch(MLAuthError):
    code = "state_mismatch"


class StateNotFound(MLAuthError):
    """The nonce was already consumed by another callback or has expired."""

    code = "state_not_found"
    status_code = 409


class TokenExchangeFailed(MLAuthError):
    code = "token_exchange_failed"
    status_code = 502


class IdentityFetchFailed(MLAuthError):
    code = "identity_fetch_failed"
    status_code = 502


class Unauthenticated(MLAuthError):
    code = "unauthenticated"
    status_code = 401


class PersistenceFailed(MLAuthError):
    code = "persistence_failed"
    status_code = 500


@dataclass
class LinkResult:
    external_nickname: str
    external_user_id: str


def initiate(user: dict, *, state_store: OAuthStateStore) -> str:
    nonce = new_nonce()
    redirect_uri = settings.ml_redirect_uri
    # Build first so a misconfiguration does not leave a dangling nonce.
    url = ml_api_client.build_authorization_url(state=nonce, redirect_uri=redirect_uri)
    state_store.save(scope_for_user(user), nonce, redirect_uri)
    logger.info("Mercado Livre authorization started for user_id=%s", user["id"])
    return url


async def complete_callback(
    *,
    user: dict | None,
    state_scope: str | None,
    code: str | None,
    state: str | None,
    error: str | None,
    state_store: OAuthStateStore,
) -> LinkResult:
    stored = state_store.consume(state_scope) if state_scope else None

    logger.info(
        "Mercado Livre callback received (has_code=%s, has_error=%s, code=%s)",
        bool(code),
        bool(error),
        redact_code(code),
    )

    if error:
        raise ProviderDenied(f"authorization denied by provider: {error}", detail=error)

    if not code:
        raise MissingAuthorizationCode("authorization code not received")

    if stored is not None and state != stored.nonce:
        raise StateMismatch("invalid anti-forgery state")

    if state_scope and stored is None and state:
        logger.info("Mercado Livre callback for %s has no pending authorization; skipping exchange", state_scope)
        raise StateNotFound("no pending authorization for this session")

    redirect_uri = stored.redirect_uri if stored is not None else settings.ml_redirect_uri

    try:
        token = await ml_api_client.exchange_authorization_code(code=code, redirect_uri=redirect_uri)
    except MLConfigError as exc:
        raise TokenExchangeFailed(f"marketplace credentials not configured: {exc}") from exc
    except MLAPIError as exc:
        logger.warning("Mercado Livre token exchange failed: %s (%s)", exc.error, exc.description)
        raise TokenExchangeFailed(
            f"marketplace rejected the authorization: {exc.description or exc.error or exc}",
            detail=exc.error,
        ) from exc

    access_token = token["access_token"]
    external_user_id = token["user_id"]
    logger.info("Mercado Livre token obtained for external user %s", external_user_id)

    try:
        identity = await ml_api_client.fetch_user(user_id=external_user_id, access_token=access_token)
    except MLAPIError as exc:
        raise IdentityFetchFailed("unable to fetch marketplace user profile", detail=exc.error) from exc

    nickname = str(identity.get("nickname") or "").strip()
    if not nickname:
        raise IdentityFetchFailed("marketplace user profile missing nickname")

    if user is None:
        raise Unauthenticated("application session required to link the marketplace account")

    try:
        set_linked_identity(
            int(user["id"]),
            access_token=access_token,
            ml_user_id=external_user_id,
            ml_nickname=nickname,
        )
    except sqlite3.Error as exc:
        logger.exception("Persisting linked identity failed for user_id=%s", user["id"])
        raise PersistenceFailed("unable to save marketplace link") from exc

    logger.info("Mercado Livre account %s linked to user_id=%s", nickname, user["id"])
    return LinkResult(external_nickname=nickname, external_user_id=external_user_id)


def disconnect(user: dict) -> None:
    try:
        clear_linked_identity(int(user["id"]))
    except sqlite3.Error as exc:
        logger.exception("Clearing linked identity failed for user_id=%s", user["id"])
        raise PersistenceFailed("unable to remove marketplace link") from exc
    logger.info("Mercado Livre account unlinked for user_id=%s", user["id"])


def linked_identity_status(user: dict) -> dict:
    identity = get_linked_identity(int(user["id"]))
    return {
        "connected": bool(identity["ml_access_token"]),
        "ml_user_id": identity["ml_user_id"],
        "ml_nickname": identity["ml_nickname"],
    }


def public_oauth_config() -> dict:
    issue = ml_api_client.ml_config_issue(require_secret=False)
    if issue:
        raise MLConfigError(issue)
    return {
        "client_id": settings.ml_client_id.strip(),
        "redirect_uri": settings.ml_redirect_uri,
    }


async def check_credentials() -> dict:
    client_id = settings.ml_client_id.strip()
    client_secret = settings.ml_client_secret.strip()
    connectivity = await ml_api_client.check_site_connectivity()

    authorization_url = None
    if ml_api_client.ml_config_issue(require_secret=False) is None:
        authorization_url = ml_api_client.build_authorization_url(state=None)

    return {
        "ok": bool(client_id and client_secret) and bool(connectivity["working"]),
        "credentials": {
            "has_client_id": bool(client_id),
            "has_client_secret": bool(client_secret),
            "client_id": redact_secret(client_id) if client_id else None,
        },
        "connectivity": connectivity,
        "config": {
            "redirect_uri": settings.ml_redirect_uri,
            "authorization_url": authorization_url,
        },
    }
