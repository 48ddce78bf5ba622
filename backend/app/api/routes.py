from datetime import UTC, datetime
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from app.core.config import settings
from app.services.competitive_analysis import ProductDescription, run_structured_analysis
from app.services.competitive_monitoring import MonitoringError, analyze_listing, get_snapshot, list_snapshots
from app.services.external_auth import ExternalAuthError, verify_external_jwt
from app.services.ml_api_client import MLConfigError, ml_config_issue
from app.services.ml_oauth import (
    MLAuthError,
    check_credentials,
    complete_callback,
    disconnect,
    initiate,
    linked_identity_status,
    public_oauth_config,
)
from app.services.oauth_state import OAuthStateStore, scope_for_user
from app.services.persistence import (
    authenticate_user,
    create_session,
    create_user,
    delete_session,
    get_db_readiness,
    get_or_create_user_by_email,
    get_user_by_token,
)

router = APIRouter()


class AuthRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=6, max_length=128)


class UserResponse(BaseModel):
    id: int
    email: str


class AuthResponse(BaseModel):
    token: str
    user: UserResponse
    expires_at: str


class MLConnectResponse(BaseModel):
    authorization_url: str


class MLCallbackRequest(BaseModel):
    code: str | None = None
    state: str | None = None
    error: str | None = None


class MLCallbackResponse(BaseModel):
    success: bool
    nickname: str
    user_id: str


class MLStatusResponse(BaseModel):
    connected: bool
    ml_user_id: str | None = None
    ml_nickname: str | None = None


class MLConfigResponse(BaseModel):
    client_id: str
    redirect_uri: str


class AnalyzeRequest(BaseModel):
    # Marketplace item ids: site prefix plus digits, e.g. MLB1234567890.
    listing_id: str = Field(min_length=4, max_length=32, pattern=r"^[A-Z]{3}\d+$")


class ListingSummaryResponse(BaseModel):
    title: str
    price: float
    sold_quantity: int
    shipping_free: bool


class CompetitorResponse(BaseModel):
    listing_id: str
    title: str
    price: float
    sold_quantity: int
    delivery_days: int
    shipping_free: bool
    reputation_level: str


class AnalyzeResponse(BaseModel):
    snapshot_id: int
    listing: ListingSummaryResponse
    competitors: list[CompetitorResponse]
    suggestions: str


class StoredCompetitorResponse(BaseModel):
    competitor_listing_id: str
    competitor_title: str
    price: float
    sold_quantity: int
    delivery_days: int
    shipping_free: bool
    reputation_level: str
    updated_at: str


class SnapshotResponse(BaseModel):
    id: int
    ml_listing_id: str
    product_title: str
    user_price: float
    user_sold_quantity: int
    user_shipping_free: bool
    user_delivery_days: int
    ai_suggestions: str | None = None
    updated_at: str
    competitors: list[StoredCompetitorResponse]


class StructuredAnalysisRequest(BaseModel):
    product_title: str = Field(min_length=3, max_length=300)
    product_price: float = Field(ge=0)
    product_sales: int = Field(default=0, ge=0)
    product_shipping: str = ""
    product_delivery_time: str = ""


def _extract_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    if parts[0].lower() != "bearer":
        return None

    token = parts[1].strip()
    return token if token else None


def _error_detail(code: str, message: str) -> dict:
    return {"code": code, "message": message}


def _integration_redirect_url(params: dict) -> str:
    # Keep any query the integration screen URL already carries.
    parts = urlsplit(settings.ml_integration_url)
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def _external_email_from_claims(claims: dict) -> str | None:
    raw_email = claims.get("email")
    if isinstance(raw_email, str) and raw_email.strip():
        return raw_email.strip().lower()

    sub = claims.get("sub")
    if isinstance(sub, str) and sub.strip():
        fallback = f"external_{sub.strip()}@external.local"
        return fallback.lower()

    return None


def _truthy_claim(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    if isinstance(value, int):
        return value == 1
    return False


def _is_verified_email(claims: dict) -> bool:
    # Supabase can emit email_verified either top-level or nested in user_metadata.
    if _truthy_claim(claims.get("email_verified")):
        return True

    user_metadata = claims.get("user_metadata")
    if isinstance(user_metadata, dict) and _truthy_claim(user_metadata.get("email_verified")):
        return True

    app_metadata = claims.get("app_metadata")
    if isinstance(app_metadata, dict) and _truthy_claim(app_metadata.get("email_verified")):
        return True

    return False


async def require_user(authorization: str | None = Header(default=None)) -> dict:
    token = _extract_bearer(authorization)

    if settings.auth_mode.strip().lower() == "external":
        if not token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")

        try:
            claims = verify_external_jwt(token)
        except ExternalAuthError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

        if settings.auth_require_verified_email and not _is_verified_email(claims):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="email not verified")

        email = _external_email_from_claims(claims)
        if not email:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="external token missing email")

        user = get_or_create_user_by_email(email)
        if not user:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="external user provisioning failed")

        return user

    user = get_user_by_token(token)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")
    return user


async def optional_user(authorization: str | None = Header(default=None)) -> dict | None:
    try:
        return await require_user(authorization)
    except HTTPException:
        return None


def get_state_store() -> OAuthStateStore:
    return OAuthStateStore()


@router.get("/health")
async def health() -> dict:
    db = get_db_readiness()
    db_ok = bool(db.get("ok", False))
    ml_issue = ml_config_issue()

    return {
        "ok": db_ok,
        "status": "ok" if db_ok else "degraded",
        "reason": None if db_ok else (db.get("reason") or "db_not_ready"),
        "time": datetime.now(UTC).isoformat(),
        "environment": settings.environment,
        "db": {
            "ok": db_ok,
            "status": db.get("status") or ("ok" if db_ok else "degraded"),
            "reason": db.get("reason"),
            "sqlite_path": db.get("sqlite_path"),
        },
        "mercado_livre": {
            "configured": ml_issue is None,
            "reason": ml_issue,
        },
        "llm": {
            "configured": bool(settings.openai_api_key.strip()),
            "model": settings.llm_model,
        },
    }


@router.post("/auth/register", response_model=AuthResponse)
async def register(payload: AuthRequest) -> AuthResponse:
    if settings.auth_mode.strip().lower() == "external":
        raise HTTPException(status_code=400, detail="local auth disabled in external mode")

    email = payload.email.strip().lower()
    if "@" not in email:
        raise HTTPException(status_code=400, detail="invalid email")

    user = create_user(email=email, password=payload.password)
    if not user:
        raise HTTPException(status_code=409, detail="user already exists")

    token, expires_at = create_session(user_id=int(user["id"]))
    return AuthResponse(
        token=token,
        expires_at=expires_at,
        user=UserResponse(id=int(user["id"]), email=str(user["email"])),
    )


@router.post("/auth/login", response_model=AuthResponse)
async def login(payload: AuthRequest) -> AuthResponse:
    if settings.auth_mode.strip().lower() == "external":
        raise HTTPException(status_code=400, detail="local auth disabled in external mode")

    email = payload.email.strip().lower()
    user = authenticate_user(email=email, password=payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="invalid credentials")

    token, expires_at = create_session(user_id=int(user["id"]))
    return AuthResponse(
        token=token,
        expires_at=expires_at,
        user=UserResponse(id=int(user["id"]), email=str(user["email"])),
    )


@router.post("/auth/logout")
async def logout(authorization: str | None = Header(default=None)) -> dict:
    token = _extract_bearer(authorization)
    if token:
        delete_session(token)
    return {"ok": True}


@router.get("/auth/me", response_model=UserResponse)
async def me(user: dict = Depends(require_user)) -> UserResponse:
    return UserResponse(id=int(user["id"]), email=str(user["email"]))


@router.get("/ml/config", response_model=MLConfigResponse)
async def ml_config() -> MLConfigResponse:
    try:
        config = public_oauth_config()
    except MLConfigError as exc:
        raise HTTPException(status_code=500, detail=_error_detail("ml_not_configured", str(exc))) from exc
    return MLConfigResponse(**config)


@router.get("/ml/credentials-check")
async def ml_credentials_check(user: dict = Depends(require_user)) -> dict:
    _ = user
    return await check_credentials()


@router.post("/ml/connect", response_model=MLConnectResponse)
async def ml_connect(
    user: dict = Depends(require_user),
    state_store: OAuthStateStore = Depends(get_state_store),
) -> MLConnectResponse:
    try:
        url = initiate(user, state_store=state_store)
    except MLConfigError as exc:
        raise HTTPException(status_code=500, detail=_error_detail("ml_not_configured", str(exc))) from exc
    return MLConnectResponse(authorization_url=url)


@router.get("/ml/callback", include_in_schema=False)
async def ml_provider_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> RedirectResponse:
    # Provider-facing: never exchanges, only hands the parameters to the integration screen.
    if error:
        params = {"error": "provider_denied", "provider_error": error}
    elif not code:
        params = {"error": "missing_code"}
    else:
        params = {"code": code}
        if state:
            params["state"] = state

    return RedirectResponse(
        url=_integration_redirect_url(params),
        status_code=status.HTTP_302_FOUND,
    )


@router.post("/ml/callback", response_model=MLCallbackResponse)
async def ml_complete_callback(
    payload: MLCallbackRequest,
    user: dict | None = Depends(optional_user),
    state_store: OAuthStateStore = Depends(get_state_store),
) -> MLCallbackResponse:
    try:
        result = await complete_callback(
            user=user,
            state_scope=scope_for_user(user) if user else None,
            code=payload.code,
            state=payload.state,
            error=payload.error,
            state_store=state_store,
        )
    except MLAuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=_error_detail(exc.code, exc.message)) from exc

    return MLCallbackResponse(
        success=True,
        nickname=result.external_nickname,
        user_id=result.external_user_id,
    )


@router.get("/ml/status", response_model=MLStatusResponse)
async def ml_status(user: dict = Depends(require_user)) -> MLStatusResponse:
    return MLStatusResponse(**linked_identity_status(user))


@router.delete("/ml/connection")
async def ml_disconnect(user: dict = Depends(require_user)) -> dict:
    try:
        disconnect(user)
    except MLAuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=_error_detail(exc.code, exc.message)) from exc
    return {"ok": True}


@router.post("/monitoring/analyze", response_model=AnalyzeResponse)
async def monitoring_analyze(payload: AnalyzeRequest, user: dict = Depends(require_user)) -> AnalyzeResponse:
    try:
        result = await analyze_listing(listing_id=payload.listing_id, user=user)
    except MonitoringError as exc:
        raise HTTPException(status_code=exc.status_code, detail=_error_detail(exc.code, exc.message)) from exc
    return AnalyzeResponse(**result)


@router.get("/monitoring", response_model=list[SnapshotResponse])
async def monitoring_list(
    limit: int = Query(default=settings.monitoring_list_default_limit, ge=1, le=settings.monitoring_list_max_limit),
    offset: int = Query(default=0, ge=0),
    user: dict = Depends(require_user),
) -> list[SnapshotResponse]:
    rows = list_snapshots(user, limit=limit, offset=offset)
    return [SnapshotResponse(**row) for row in rows]


@router.get("/monitoring/{listing_id}", response_model=SnapshotResponse)
async def monitoring_get(
    listing_id: str = Path(min_length=4, max_length=32, pattern=r"^[A-Z]{3}\d+$"),
    user: dict = Depends(require_user),
) -> SnapshotResponse:
    try:
        snapshot = get_snapshot(user, listing_id)
    except MonitoringError as exc:
        raise HTTPException(status_code=exc.status_code, detail=_error_detail(exc.code, exc.message)) from exc
    return SnapshotResponse(**snapshot)


@router.post("/competitive-analysis")
async def competitive_analysis(payload: StructuredAnalysisRequest, user: dict = Depends(require_user)) -> dict:
    _ = user
    product = ProductDescription(
        title=payload.product_title.strip(),
        price=payload.product_price,
        sales=payload.product_sales,
        shipping=payload.product_shipping,
        delivery_time=payload.product_delivery_time,
    )
    try:
        result = await run_structured_analysis(product)
    except MonitoringError as exc:
        raise HTTPException(status_code=exc.status_code, detail=_error_detail(exc.code, exc.message)) from exc

    result["timestamp"] = datetime.now(UTC).isoformat()
    return result
