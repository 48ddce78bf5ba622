from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from app.core.config import settings
from app.services.persistence import consume_oauth_state, save_oauth_state


@dataclass(frozen=True)
class AuthorizationState:
    nonce: str
    redirect_uri: str
    created_at: datetime

    def is_expired(self, ttl: timedelta, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) - self.created_at > ttl


def new_nonce() -> str:
    return secrets.token_urlsafe(24)


def scope_for_user(user: dict) -> str:
    return f"user:{int(user['id'])}"


class OAuthStateStore:
    """Session-scoped anti-forgery state, one in-flight nonce per scope.

    Saving overwrites the previous nonce for the scope; consuming removes it,
    and at most one concurrent consumer observes it.
    """

    def __init__(self, ttl_minutes: int | None = None) -> None:
        minutes = settings.ml_oauth_state_ttl_minutes if ttl_minutes is None else ttl_minutes
        self.ttl = timedelta(minutes=max(1, int(minutes)))

    def save(self, scope: str, nonce: str, redirect_uri: str) -> None:
        save_oauth_state(scope=scope, nonce=nonce, redirect_uri=redirect_uri)

    def consume(self, scope: str) -> AuthorizationState | None:
        row = consume_oauth_state(scope)
        if row is None:
            return None

        created_at = datetime.fromisoformat(row["created_at"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)

        state = AuthorizationState(
            nonce=row["nonce"],
            redirect_uri=row["redirect_uri"],
            created_at=created_at,
        )
        # Expired nonces are still erased, but behave as if never stored.
        if state.is_expired(self.ttl):
            return None
        return state
