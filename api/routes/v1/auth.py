"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/login                 -- email + secret -> access/refresh pair
  POST /api/v1/auth/refresh               -- rotate a refresh token (single use)
  POST /api/v1/auth/logout                -- end one session (requires auth)
  PUT  /api/v1/auth/change-password       -- new secret, ends every session (requires auth)
  GET  /api/v1/auth/profile               -- current operator (requires auth)
  GET  /api/v1/auth/validate              -- is the bearer token accepted (requires auth)
  GET  /api/v1/auth/session-info          -- active sessions, recent logins (requires auth)
  POST /api/v1/auth/sessions/revoke-all   -- end every session (requires auth)

Security:
  login and refresh are in the AUTH admission class (tight budget plus
  escalating delay). Everything else is OPERATOR class, bearer token and
  operator role required.
  Cache-Control: no-store on every response that carries tokens.
  Login failures share one 401 body whatever the cause; see core/errors.py.

Handlers are plain `def`: FastAPI runs them in the threadpool, so a client
disconnect cannot interrupt a transaction half way.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from admission.controller import EndpointClass
from api.interceptors import get_client_info, get_services, interceptor_chain, require_operator
from api.models import (
    ChangePasswordRequest,
    EmptyResponse,
    LoginRequest,
    LoginResponse,
    OperatorSummary,
    ProfileResponse,
    RefreshRequest,
    RevokeAllResponse,
    SessionInfoResponse,
    TokenPairResponse,
    ValidateResponse,
)
from auth.models import AccessTokenClaims, ClientInfo

# Interceptor policy:
# - POST /auth/login, /auth/refresh:   AUTH budget, public
# - everything else:                   OPERATOR budget, bearer + operator role
router = APIRouter()

_AUTH = interceptor_chain(EndpointClass.AUTH)
_OPERATOR = interceptor_chain(EndpointClass.OPERATOR, authenticated=True)

_NO_STORE = "no-store"


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse, dependencies=_AUTH)
def login(
    request: Request,
    body: LoginRequest,
    response: Response,
    client: ClientInfo = Depends(get_client_info),
) -> LoginResponse:
    """Authenticate with email and secret and open a session.

    Unknown email, wrong secret and disabled account all produce the same
    401 invalid_credentials body.
    """
    services = get_services(request)
    result = services.sessions.login(body.email, body.secret, client)
    response.headers["Cache-Control"] = _NO_STORE
    return LoginResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=services.settings.access_token_expire_seconds,
        operator=OperatorSummary.from_account(result.operator),
    )


@router.post("/auth/refresh", response_model=TokenPairResponse, dependencies=_AUTH)
def refresh(
    request: Request,
    body: RefreshRequest,
    response: Response,
    client: ClientInfo = Depends(get_client_info),
) -> TokenPairResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed."""
    services = get_services(request)
    pair = services.sessions.refresh(body.refresh_token, client)
    response.headers["Cache-Control"] = _NO_STORE
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=services.settings.access_token_expire_seconds,
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=EmptyResponse, dependencies=_OPERATOR)
def logout(
    request: Request,
    body: RefreshRequest,
    claims: AccessTokenClaims = Depends(require_operator),
    client: ClientInfo = Depends(get_client_info),
) -> EmptyResponse:
    """End the session the refresh token belongs to. Idempotent."""
    get_services(request).sessions.logout(body.refresh_token, claims.owner_id, client)
    return EmptyResponse()


@router.put("/auth/change-password", response_model=EmptyResponse, dependencies=_OPERATOR)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    claims: AccessTokenClaims = Depends(require_operator),
    client: ClientInfo = Depends(get_client_info),
) -> EmptyResponse:
    """Replace the caller's secret. Every refresh token of the caller stops working."""
    get_services(request).sessions.change_password(
        claims.owner_id,
        body.current_secret,
        body.new_secret,
        body.confirm_secret,
        client,
    )
    return EmptyResponse()


@router.get("/auth/profile", response_model=ProfileResponse, dependencies=_OPERATOR)
def profile(request: Request, claims: AccessTokenClaims = Depends(require_operator)) -> ProfileResponse:
    operator = get_services(request).sessions.get_profile(claims.owner_id)
    return ProfileResponse.from_account(operator)


@router.get("/auth/validate", response_model=ValidateResponse, dependencies=_OPERATOR)
def validate(claims: AccessTokenClaims = Depends(require_operator)) -> ValidateResponse:
    """Report whether the bearer token is accepted. No database access."""
    return ValidateResponse.from_claims(claims)


@router.get("/auth/session-info", response_model=SessionInfoResponse, dependencies=_OPERATOR)
def session_info(
    request: Request,
    claims: AccessTokenClaims = Depends(require_operator),
    client: ClientInfo = Depends(get_client_info),
) -> SessionInfoResponse:
    """Active session count, the last five logins and the calling client."""
    info = get_services(request).sessions.session_info(claims.owner_id)
    return SessionInfoResponse.build(info, client)


@router.post("/auth/sessions/revoke-all", response_model=RevokeAllResponse, dependencies=_OPERATOR)
def revoke_all(
    request: Request,
    claims: AccessTokenClaims = Depends(require_operator),
    client: ClientInfo = Depends(get_client_info),
) -> RevokeAllResponse:
    """End every session of the caller, including the current one."""
    count = get_services(request).sessions.revoke_all_sessions(claims.owner_id, client)
    return RevokeAllResponse(revoked_count=count)
