from __future__ import annotations

from typing import Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from authcore.api.error_handling import (
    NO_STORE_HEADERS,
    error_response,
    oauth_error_response,
    oauth_error_status,
)
from authcore.api.schemas import (
    Envelope,
    IntrospectionResponse,
    IntrospectRequest,
    LoginRequest,
    RevokeRequest,
    RevokeResponse,
    TokenResponse,
)
from authcore.logging import get_logger
from authcore.service.errors import (
    AccountLocked,
    InvalidClient,
    InvalidCredentials,
    InvalidRedirect,
    InvalidRequest,
    ServiceError,
)
from authcore.service.runtime import get_runtime
from authcore.storage.models import ApprovalRedirect, TokenPair

logger = get_logger(__name__)

# /authorize and /token follow RFC 6749 paths and error bodies; the rest use the envelope
oauth_router = APIRouter(tags=["oauth"])
router = APIRouter(prefix="/v1")


def resolve_subject(request: Request) -> Optional[str]:
    """Identity established by the external check in front of ``/authorize``.

    Only a header set by a trusted proxy is honored, and only when enabled.
    Embedding applications replace this through ``app.dependency_overrides``.
    """
    settings = get_runtime().settings
    if not settings.trust_subject_header:
        return None
    subject = request.headers.get(settings.subject_header)
    return subject.strip() if subject and subject.strip() else None


def _redirect_url(target: ApprovalRedirect) -> str:
    separator = "&" if "?" in target.redirect_uri else "?"
    return f"{target.redirect_uri}{separator}{urlencode(target.params)}"


def _redirect(target: ApprovalRedirect) -> RedirectResponse:
    return RedirectResponse(_redirect_url(target), status_code=302, headers=NO_STORE_HEADERS)


@oauth_router.get("/authorize")
async def authorize(
    client_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    response_type: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    code_challenge: Optional[str] = Query(None),
    code_challenge_method: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    subject_id: Optional[str] = Depends(resolve_subject),
):
    """Start a flow, resolve the user's identity, and redirect back with a code.

    Errors before the client and redirect URI are validated are answered with
    a 400 JSON body and never redirect; later errors redirect with ``error``
    and the caller's ``state``.
    """
    coordinator = get_runtime().authorization
    try:
        coordinator.validate_redirect(client_id, redirect_uri)
    except (InvalidClient, InvalidRedirect) as exc:
        return oauth_error_response(exc.error_code, exc.message, status_code=400)

    def _error_redirect(error: str, description: str) -> RedirectResponse:
        params: Dict[str, str] = {"error": error, "error_description": description}
        if state is not None:
            params["state"] = state
        return _redirect(ApprovalRedirect(redirect_uri=redirect_uri, params=params))

    if response_type != "code":
        return _error_redirect("invalid_request", "response_type must be code")
    try:
        request = await coordinator.start_flow(
            client_id,
            redirect_uri,
            code_challenge,
            code_challenge_method,
            scope,
            client_state=state,
        )
        if not subject_id:
            logger.info("authorization_subject_unresolved", client_id=client_id)
            return _redirect(await coordinator.deny_approval(request.state))
        issued = await coordinator.complete_approval(request.state, subject_id)
    except ServiceError as exc:
        return _error_redirect(exc.error_code, exc.message)
    return _redirect(issued.redirect)


def _token_response(pair: TokenPair) -> JSONResponse:
    body = TokenResponse(**pair.as_response())
    return JSONResponse(content=body.model_dump(), headers=NO_STORE_HEADERS)


@oauth_router.post("/token")
async def token(
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
):
    """Exchange an authorization code or a refresh token for a token pair."""
    runtime = get_runtime()
    try:
        if grant_type == "authorization_code":
            if not client_id:
                raise InvalidRequest("client_id is required")
            grant = await runtime.authorization.redeem_code(
                code or "", redirect_uri or "", code_verifier or "", client_id
            )
            return _token_response(grant.pair)
        if grant_type == "refresh_token":
            if not refresh_token:
                raise InvalidRequest("refresh_token is required")
            if client_id:
                runtime.authorization.get_client(client_id)
            pair = await runtime.tokens.rotate_refresh_token(
                refresh_token, client_id=client_id
            )
            return _token_response(pair)
    except ServiceError as exc:
        return oauth_error_response(
            exc.error_code, exc.message, status_code=oauth_error_status(exc)
        )
    if not grant_type:
        return oauth_error_response("invalid_request", "grant_type is required")
    return oauth_error_response(
        "unsupported_grant_type", "grant_type must be authorization_code or refresh_token"
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with an account key and password and start a token family.

    Raises:
        401: invalid credentials or locked account (indistinguishable)
        503: store unavailable
    """
    runtime = get_runtime()
    try:
        pair = await runtime.login.login(body.account_key, body.password, scope=body.scope)
    except AccountLocked as exc:
        headers = dict(NO_STORE_HEADERS)
        if runtime.settings.expose_retry_after:
            headers["Retry-After"] = str(exc.retry_after)
        return error_response(401, "invalid credentials", code="invalid_credentials", headers=headers)
    except InvalidCredentials:
        return error_response(
            401, "invalid credentials", code="invalid_credentials", headers=NO_STORE_HEADERS
        )
    return JSONResponse(
        content=Envelope(status="ok", data=TokenResponse(**pair.as_response())).model_dump(mode="json"),
        headers=NO_STORE_HEADERS,
    )


@router.post("/auth/revoke", response_model=Envelope, tags=["auth"])
async def revoke(body: RevokeRequest):
    """Logout: revoke the token family of a refresh token. Unknown tokens succeed."""
    runtime = get_runtime()
    await runtime.tokens.revoke_by_refresh_token(body.refresh_token)
    return Envelope(status="ok", data=RevokeResponse(revoked=True))


@router.post("/auth/introspect", response_model=Envelope, tags=["auth"])
async def introspect(body: IntrospectRequest):
    """Check an access token's signature and expiry; the store is not consulted."""
    runtime = get_runtime()
    result = runtime.tokens.introspect(body.token)
    return Envelope(
        status="ok",
        data=IntrospectionResponse(
            valid=result.valid,
            subject_id=result.subject_id,
            scope=result.scope,
            family_id=result.family_id,
            client_id=result.client_id,
            expires_at=result.expires_at,
        ),
    )
