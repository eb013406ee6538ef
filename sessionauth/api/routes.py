from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from sessionauth.api.error_handling import failure_response
from sessionauth.api.schemas import (
    Envelope,
    LoginRequest,
    MessageResponse,
    ProfileResponse,
    RegisterRequest,
)
from sessionauth.logging import get_correlation_id, get_logger
from sessionauth.service.orchestrator import FlowResult
from sessionauth.service.runtime import Runtime, get_runtime
from sessionauth.service.transport import Carrier, InboundTokens
from sessionauth.storage.models import Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _apply_carriers(response: Response, carriers: list[Carrier]) -> None:
    for carrier in carriers:
        response.set_cookie(
            carrier.name,
            carrier.value,
            max_age=carrier.max_age,
            path=carrier.path,
            domain=carrier.domain,
            secure=carrier.secure,
            httponly=carrier.http_only,
            samesite=carrier.same_site,
        )


def _envelope(data) -> Envelope:
    kwargs = {"status": "ok", "data": data}
    correlation_id = get_correlation_id()
    if correlation_id:
        kwargs["request_id"] = correlation_id
    return Envelope(**kwargs)


def _profile(principal: Principal) -> dict:
    return ProfileResponse(**principal.public_profile()).to_payload()


def _respond(response: Response, result: FlowResult, data) -> Envelope | JSONResponse:
    """Apply the flow's carriers and render either the envelope or its failure."""
    if result.failure is not None:
        failure = failure_response(result.failure)
        _apply_carriers(failure, result.carriers)
        return failure
    _apply_carriers(response, result.carriers)
    return _envelope(data)


def _client_address(request: Request) -> str:
    peer = request.client.host if request.client else None
    return get_runtime().transport.resolve_client_address(request.headers, peer)


def _inbound(request: Request, runtime: Runtime) -> InboundTokens:
    return runtime.transport.decode(
        request.cookies, request.headers.get("authorization")
    )


async def require_principal(request: Request) -> Principal:
    """Dependency for endpoints that need a valid access token."""
    runtime = get_runtime()
    result = await runtime.auth.current_principal(_inbound(request, runtime).access_token)
    if result.failure is not None:
        raise result.failure.to_service_error()
    return result.principal


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username and password.

    Sets the access and refresh cookies; tokens are never returned in the body.

    Raises:
        401: If credentials are invalid
        429: If the address and username pair is locked out
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.username,
        body.password,
        _client_address(request),
        request.headers.get("user-agent"),
    )
    data = _profile(result.principal) if result.ok else None
    return _respond(response, result, data)


@router.post("/refresh", response_model=Envelope)
async def refresh(request: Request, response: Response):
    """Rotate the refresh cookie and issue a new access token."""
    runtime = get_runtime()
    result = await runtime.auth.refresh(
        _inbound(request, runtime).refresh_token,
        _client_address(request),
        request.headers.get("user-agent"),
    )
    return _respond(response, result, MessageResponse(message=result.message or "").model_dump())


@router.post("/logout", response_model=Envelope)
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.logout(_inbound(request, runtime).refresh_token)
    return _respond(response, result, MessageResponse(message=result.message or "").model_dump())


@router.post("/logout-all", response_model=Envelope)
async def logout_all(request: Request, response: Response):
    """Revoke every refresh token of the authenticated principal."""
    runtime = get_runtime()
    result = await runtime.auth.logout_all(_inbound(request, runtime).access_token)
    return _respond(response, result, MessageResponse(message=result.message or "").model_dump())


@router.get("/me", response_model=Envelope)
async def me(principal: Principal = Depends(require_principal)):
    return _envelope(_profile(principal))


@router.post("/register", response_model=Envelope)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a principal. Rate limited by client address.

    Raises:
        400: If the username or email is already taken, or the body is invalid
        429: If the address is locked out
    """
    runtime = get_runtime()
    address = _client_address(request)
    result = await runtime.auth.register(
        body.username,
        body.password,
        body.email,
        body.full_name,
        address,
    )
    data: Optional[dict] = _profile(result.principal) if result.ok else None
    return _respond(response, result, data)
