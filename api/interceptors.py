"""
api/interceptors.py -- FastAPI Depends() chain that runs before every handler.

Order is fixed and explicit:

  1. AdmissionGuard(GENERAL)        -- app-wide budget per client key, counted
                                       for every routed request.
  2. AdmissionGuard(endpoint_class) -- the route class's own budget; 429 on
                                       exhaustion, escalating delay on AUTH.
  3. authenticate                   -- Authorization: Bearer <access token>
                                       -> AccessTokenClaims, else 401.
  4. require_operator               -- claims.role must equal the configured
                                       operator role, else 403.

interceptor_chain() composes the list once, at import time, and routes pass
it to the decorator's `dependencies=` argument. FastAPI resolves
decorator-level dependencies first and in list order, and caches each
dependency per request, so a handler that also asks for Depends(require_operator)
to get the claims does not re-verify the token.

Requests carrying bad tokens are counted too: admission always runs first.

Layer rule: api/ may import from every other layer; nothing imports api/.
"""

from __future__ import annotations

import asyncio

from fastapi import Depends, Request

from admission.client import resolve_client_key
from admission.controller import EndpointClass
from auth.models import AccessTokenClaims, ClientInfo
from core.errors import Forbidden, RateLimited, TokenInvalid

_BEARER_PREFIX = "Bearer "


def get_services(request: Request):
    """The Services container built by the lifespan handler."""
    return request.app.state.services


def client_key(request: Request) -> str:
    services = get_services(request)
    peer = request.client.host if request.client else None
    return resolve_client_key(peer, request.headers, services.trusted_proxies)


def get_client_info(request: Request) -> ClientInfo:
    """Client address and user agent, for audit events and log lines."""
    return ClientInfo(ip=client_key(request), user_agent=request.headers.get("user-agent"))


class AdmissionGuard:
    """Dependency that enforces the budget of one endpoint class."""

    def __init__(self, endpoint_class: EndpointClass) -> None:
        self.endpoint_class = endpoint_class

    async def __call__(self, request: Request) -> None:
        decision = get_services(request).admission.admit(client_key(request), self.endpoint_class)
        if not decision.allowed:
            raise RateLimited(
                f"{self.endpoint_class.value} budget exhausted",
                retry_after=decision.retry_after,
            )
        if decision.delay > 0:
            await asyncio.sleep(decision.delay)


def authenticate(request: Request) -> AccessTokenClaims:
    """Verify the bearer access token. Raises a TokenError (401) on any failure."""
    header = request.headers.get("Authorization", "")
    if not header.startswith(_BEARER_PREFIX):
        raise TokenInvalid("missing bearer token")
    token = header[len(_BEARER_PREFIX):].strip()
    if not token:
        raise TokenInvalid("empty bearer token")
    return get_services(request).issuer.verify_access(token)


def require_operator(request: Request, claims: AccessTokenClaims = Depends(authenticate)) -> AccessTokenClaims:
    """Authenticated AND holding the operator role. Raises Forbidden (403) otherwise."""
    required = get_services(request).settings.operator_role
    if claims.role != required:
        raise Forbidden(f"operator {claims.owner_id} has role {claims.role!r}, needs {required!r}")
    return claims


def interceptor_chain(endpoint_class: EndpointClass, *, authenticated: bool = False) -> list:
    """Ordered decorator dependencies for one route."""
    chain = [Depends(AdmissionGuard(EndpointClass.GENERAL))]
    if endpoint_class is not EndpointClass.GENERAL:
        chain.append(Depends(AdmissionGuard(endpoint_class)))
    if authenticated:
        chain += [Depends(authenticate), Depends(require_operator)]
    return chain
