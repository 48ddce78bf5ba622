from __future__ import annotations

import asyncio
import logging
from urllib.parse import quote, urlencode

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

# Tests swap this for an httpx.MockTransport.
_transport: httpx.AsyncBaseTransport | None = None

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class MLConfigError(RuntimeError):
    """Raised when required Mercado Livre configuration is missing."""


class MLAPIError(RuntimeError):
    """Raised when a Mercado Livre API call fails or answers with an error payload."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error: str | None = None,
        description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.description = description


def ml_config_issue(*, require_secret: bool = True) -> str | None:
    if not settings.ml_client_id.strip():
        return "ML_CLIENT_ID missing"

    if require_secret and not settings.ml_client_secret.strip():
        return "ML_CLIENT_SECRET missing"

    if not settings.ml_redirect_uri.strip():
        return "ML_REDIRECT_URI missing"

    return None


def _api_base_url() -> str:
    return settings.ml_api_base_url.strip().rstrip("/") or "https://api.mercadolibre.com"


def _timeout() -> float:
    return max(3.0, float(settings.ml_request_timeout_s))


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=_timeout(), transport=_transport)


def _path_segment(value: str) -> str:
    segment = quote(str(value).strip(), safe="")
    if segment in {"", ".", ".."}:
        raise MLAPIError(f"invalid path identifier: {value!r}", status_code=400, error="invalid_identifier")
    return segment


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        payload = resp.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def build_authorization_url(*, state: str | None, redirect_uri: str | None = None) -> str:
    issue = ml_config_issue(require_secret=False)
    if issue:
        raise MLConfigError(issue)

    base = settings.ml_auth_base_url.strip().rstrip("/")
    params = {
        "response_type": "code",
        "client_id": settings.ml_client_id.strip(),
        "redirect_uri": redirect_uri or settings.ml_redirect_uri,
    }
    if state:
        params["state"] = state
    return f"{base}/authorization?{urlencode(params)}"


async def exchange_authorization_code(*, code: str, redirect_uri: str) -> dict:
    """Trade a one-time authorization code for an access token.

    Never retried: the provider invalidates a code on first use.
    """
    issue = ml_config_issue()
    if issue:
        raise MLConfigError(issue)

    data = {
        "grant_type": "authorization_code",
        "client_id": settings.ml_client_id.strip(),
        "client_secret": settings.ml_client_secret.strip(),
        "code": code,
        "redirect_uri": redirect_uri,
    }

    try:
        async with _client() as client:
            resp = await client.post(
                f"{_api_base_url()}/oauth/token",
                data=data,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
            )
    except httpx.HTTPError as exc:
        raise MLAPIError(f"token endpoint unreachable: {exc}") from exc

    payload = _json_or_empty(resp)
    if resp.status_code >= 400 or payload.get("error"):
        error = str(payload.get("error") or f"http_{resp.status_code}")
        description = str(payload.get("error_description") or payload.get("message") or "")
        raise MLAPIError(
            f"token exchange rejected: {description or error}",
            status_code=resp.status_code,
            error=error,
            description=description or None,
        )

    access_token = str(payload.get("access_token") or "").strip()
    user_id = str(payload.get("user_id") or "").strip()
    if not access_token or not user_id:
        raise MLAPIError(
            "token response missing access_token/user_id",
            status_code=resp.status_code,
            error="invalid_token_response",
        )

    return {
        "access_token": access_token,
        "user_id": user_id,
        "refresh_token": payload.get("refresh_token"),
        "expires_in": payload.get("expires_in"),
    }


async def _get_json(path: str, *, params: dict | None = None, access_token: str | None = None) -> dict:
    retries = max(0, int(settings.ml_max_retries))
    headers = {"Accept": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"

    url = f"{_api_base_url()}{path}"
    last_error: Exception | None = None

    for attempt in range(retries + 1):
        try:
            async with _client() as client:
                resp = await client.get(url, headers=headers, params=params)
        except httpx.HTTPError as exc:
            last_error = exc
            if attempt < retries:
                await asyncio.sleep(0.6 * (attempt + 1))
                continue
            break

        if resp.status_code in _RETRYABLE_STATUS and attempt < retries:
            await asyncio.sleep(0.6 * (attempt + 1))
            continue

        payload = _json_or_empty(resp)
        if resp.status_code >= 400:
            raise MLAPIError(
                f"GET {path} failed with status {resp.status_code}",
                status_code=resp.status_code,
                error=str(payload.get("error") or "") or None,
                description=str(payload.get("message") or "") or None,
            )
        return payload

    raise MLAPIError(f"GET {path} failed: {last_error}") from last_error


async def fetch_user(*, user_id: str, access_token: str) -> dict:
    return await _get_json(f"/users/{_path_segment(user_id)}", access_token=access_token)


async def fetch_item(*, item_id: str, access_token: str) -> dict:
    return await _get_json(f"/items/{_path_segment(item_id)}", access_token=access_token)


async def search_items(*, query: str, limit: int = 20, site_id: str | None = None) -> list[dict]:
    """Unauthenticated marketplace search.

    Returns raw result objects (empty list on no result).
    """
    q = query.strip()
    if not q:
        return []

    site = (site_id or settings.ml_site_id).strip() or "MLB"
    safe_limit = max(1, min(50, int(limit)))
    payload = await _get_json(
        f"/sites/{_path_segment(site)}/search",
        params={"q": q, "limit": str(safe_limit)},
    )

    rows = payload.get("results")
    if not isinstance(rows, list):
        return []
    return [row for row in rows if isinstance(row, dict)]


async def check_site_connectivity(site_id: str | None = None) -> dict:
    site = (site_id or settings.ml_site_id).strip() or "MLB"
    try:
        async with _client() as client:
            resp = await client.get(f"{_api_base_url()}/sites/{site}", headers={"Accept": "application/json"})
    except httpx.HTTPError as exc:
        logger.warning("Mercado Livre connectivity check failed: %s", exc)
        return {"status": None, "working": False, "site_id": None}

    payload = _json_or_empty(resp)
    return {
        "status": resp.status_code,
        "working": resp.is_success,
        "site_id": payload.get("id"),
    }


def redact_secret(raw: str) -> str:
    value = (raw or "").strip()
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"


def redact_code(raw: str | None) -> str | None:
    if not raw:
        return None
    return f"{raw[:8]}..."
