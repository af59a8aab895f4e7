from __future__ import annotations

import dataclasses
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from siteguard.api.responses import denial_response
from siteguard.api.schemas import (
    AccountOut,
    AppealOut,
    AppealRequest,
    Envelope,
    FlashOut,
    ImpersonationOut,
    LoginRequest,
    LoginResult,
    PasswordChangeRequest,
    PrincipalOut,
    SessionOut,
    TwoFactorCodeRequest,
    TwoFactorSetupOut,
)
from siteguard.logging import get_logger
from siteguard.service.audit import hash_session_id
from siteguard.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from siteguard.service.pipeline import Denial, RequestContext
from siteguard.service.runtime import Runtime, get_runtime
from siteguard.storage.models import ImpersonationOverlay, Principal, Role

logger = get_logger(__name__)

router = APIRouter()


def get_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "security", None)
    if ctx is None:
        raise ServerError("security pipeline did not run for this request")
    return ctx


def get_current_principal(ctx: RequestContext = Depends(get_context)) -> Principal:
    if ctx.principal is None:
        raise AuthenticationError("authentication required")
    return ctx.principal


def get_admin_principal(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.has_role(Role.ADMIN):
        raise ForbiddenError("administrator access required")
    return principal


def _respond_with_denial(runtime: Runtime, ctx: RequestContext, denial: Denial) -> Response:
    runtime.pipeline.resolve(ctx, denial)
    return denial_response(ctx, denial)


def _landing_url(runtime: Runtime, principal: Principal, now: datetime) -> str:
    if runtime.password_expiry.is_expired(principal, now):
        return runtime.settings.password_change_url
    if principal.has_role(Role.ADMIN):
        return runtime.settings.admin_home_url
    return runtime.settings.home_url


def _impersonation_out(overlay: Optional[ImpersonationOverlay]) -> Optional[ImpersonationOut]:
    if overlay is None:
        return None
    return ImpersonationOut(
        impersonator_id=overlay.impersonator_id,
        target_id=overlay.target_id,
        started_at=overlay.started_at,
        expires_at=overlay.expires_at,
    )


@router.get("/healthz", response_model=Envelope)
async def health() -> Envelope:
    runtime = get_runtime()
    return Envelope(
        data={
            "status": "ok",
            "store": type(runtime.store).__name__,
            "redis": runtime.cache is not None,
        }
    )


@router.get("/login", response_model=Envelope)
async def login_page(ctx: RequestContext = Depends(get_context)) -> Envelope:
    runtime = get_runtime()
    flash = runtime.sessions.pull_flash(ctx.session)
    return Envelope(data=FlashOut(flash=flash, login_url=runtime.settings.login_url))


@router.post("/auth/login")
async def login(body: LoginRequest, ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    guard = runtime.login_guard
    decision = await guard.check(ctx.ip, body.email, now=ctx.now)
    if not decision.allowed:
        return denial_response(ctx, guard.denial(decision))

    principal = runtime.auth.verify_credentials(body.email, body.password)
    if principal is None:
        runtime.audit.failed_login(
            body.email,
            reason="invalid_credentials",
            session_id=ctx.session.id,
            ip=ctx.ip,
            route=ctx.path,
            timestamp=ctx.now,
        )
        decision = await guard.record_failure(ctx.ip, body.email, now=ctx.now)
        if not decision.allowed:
            return denial_response(ctx, guard.denial(decision))
        raise AuthenticationError(
            "invalid email or password", error_code="INVALID_CREDENTIALS"
        )

    await guard.clear(ctx.ip, body.email)
    denial = runtime.account_state.evaluate(principal, ctx.now)
    if denial is not None:
        # Nothing is logged in yet, so there is no session to tear down
        return _respond_with_denial(
            runtime, ctx, dataclasses.replace(denial, invalidate_session=False)
        )

    if principal.has_confirmed_two_factor():
        runtime.two_factor.begin_challenge(
            ctx.session, principal, remember=body.remember, now=ctx.now
        )
        return Envelope(
            data=LoginResult(
                two_factor_required=True, redirect_to=runtime.settings.two_factor_url
            )
        )

    runtime.auth.complete_login(ctx, principal, remember=body.remember)
    return Envelope(
        data=LoginResult(
            redirect_to=_landing_url(runtime, principal, ctx.now),
            principal=PrincipalOut.from_principal(principal),
        )
    )


@router.get("/auth/two-factor", response_model=Envelope)
async def two_factor_status(ctx: RequestContext = Depends(get_context)) -> Envelope:
    runtime = get_runtime()
    challenge = ctx.two_factor_challenge
    elapsed = (ctx.now - challenge.started_at).total_seconds()
    remaining = runtime.settings.two_factor_challenge_ttl_seconds - elapsed
    return Envelope(data={"expires_in": max(0, math.floor(remaining))})


@router.post("/auth/two-factor")
async def two_factor_verify(
    body: TwoFactorCodeRequest, ctx: RequestContext = Depends(get_context)
):
    runtime = get_runtime()
    challenge = await runtime.two_factor.verify_code(ctx, ctx.two_factor_challenge, body.code)
    principal = challenge.principal
    denial = runtime.account_state.evaluate(principal, ctx.now)
    if denial is not None:
        return _respond_with_denial(
            runtime, ctx, dataclasses.replace(denial, invalidate_session=False)
        )
    runtime.auth.complete_login(ctx, principal, remember=challenge.remember)
    return Envelope(
        data=LoginResult(
            redirect_to=_landing_url(runtime, principal, ctx.now),
            principal=PrincipalOut.from_principal(principal),
        )
    )


@router.post("/auth/logout", response_model=Envelope)
async def logout(ctx: RequestContext = Depends(get_context)) -> Envelope:
    runtime = get_runtime()
    runtime.auth.logout(ctx)
    return Envelope(data={"redirect_to": runtime.settings.login_url})


@router.get("/account", response_model=Envelope)
async def account(
    ctx: RequestContext = Depends(get_context),
    principal: Principal = Depends(get_current_principal),
) -> Envelope:
    return Envelope(
        data=AccountOut(
            principal=PrincipalOut.from_principal(principal),
            impersonation=_impersonation_out(ctx.session.impersonation),
        )
    )


@router.post("/account/password", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest,
    ctx: RequestContext = Depends(get_context),
    principal: Principal = Depends(get_current_principal),
) -> Envelope:
    runtime = get_runtime()
    updated = runtime.auth.change_password(ctx, body.current_password, body.new_password)
    return Envelope(data=PrincipalOut.from_principal(updated))


def _session_owner(ctx: RequestContext, principal: Principal) -> Principal:
    if ctx.session.impersonation is not None:
        raise ForbiddenError("sessions cannot be managed while impersonating")
    return principal


@router.get("/account/sessions", response_model=Envelope)
async def list_sessions(
    ctx: RequestContext = Depends(get_context),
    principal: Principal = Depends(get_current_principal),
) -> Envelope:
    runtime = get_runtime()
    owner = _session_owner(ctx, principal)
    sessions = [
        SessionOut(
            id=hash_session_id(row.session_id),
            created_at=row.created_at,
            last_activity_at=last_activity,
            ip_addr=row.ip_addr,
            current=row.session_id == ctx.session.id,
        )
        for row, last_activity in runtime.sessions.logins_for(owner.id)
    ]
    return Envelope(data={"sessions": sessions})


@router.delete("/account/sessions/{handle}", response_model=Envelope)
async def revoke_session(
    handle: str,
    ctx: RequestContext = Depends(get_context),
    principal: Principal = Depends(get_current_principal),
) -> Envelope:
    runtime = get_runtime()
    owner = _session_owner(ctx, principal)
    if handle == hash_session_id(ctx.session.id):
        raise ValidationError("use logout to end the current session")
    match = next(
        (
            row.session_id
            for row, _ in runtime.sessions.logins_for(owner.id)
            if hash_session_id(row.session_id) == handle
        ),
        None,
    )
    if match is None or not runtime.sessions.revoke(owner.id, match):
        raise NotFoundError("session not found")
    runtime.audit.event(
        "session_revoked",
        principal_id=owner.id,
        session_id=ctx.session.id,
        ip=ctx.ip,
        route=ctx.path,
        timestamp=ctx.now,
        revoked_session_hash=handle,
    )
    return Envelope(data={"revoked": 1})


@router.post("/account/sessions/logout-others", response_model=Envelope)
async def logout_other_sessions(
    ctx: RequestContext = Depends(get_context),
    principal: Principal = Depends(get_current_principal),
) -> Envelope:
    runtime = get_runtime()
    owner = _session_owner(ctx, principal)
    revoked = runtime.sessions.revoke_others(owner.id, ctx.session.id)
    runtime.audit.event(
        "sessions_revoked",
        principal_id=owner.id,
        session_id=ctx.session.id,
        ip=ctx.ip,
        route=ctx.path,
        timestamp=ctx.now,
        revoked_sessions=len(revoked),
    )
    return Envelope(data={"revoked": len(revoked)})


@router.post("/account/two-factor/setup", response_model=Envelope)
async def two_factor_setup(
    principal: Principal = Depends(get_current_principal),
) -> Envelope:
    runtime = get_runtime()
    setup = runtime.auth.begin_two_factor_setup(principal)
    return Envelope(data=TwoFactorSetupOut(**setup))


@router.post("/account/two-factor/confirm", response_model=Envelope)
async def two_factor_confirm(
    body: TwoFactorCodeRequest,
    ctx: RequestContext = Depends(get_context),
    principal: Principal = Depends(get_current_principal),
) -> Envelope:
    runtime = get_runtime()
    updated = runtime.auth.confirm_two_factor_setup(principal, body.code, now=ctx.now)
    return Envelope(data=PrincipalOut.from_principal(updated))


@router.get("/admin", response_model=Envelope)
async def admin_home(admin: Principal = Depends(get_admin_principal)) -> Envelope:
    runtime = get_runtime()
    principals = runtime.store.list_principals()
    return Envelope(data={"principals": [PrincipalOut.from_principal(p) for p in principals]})


@router.post("/admin/impersonate/{principal_id}", response_model=Envelope)
async def impersonate(
    principal_id: str,
    ctx: RequestContext = Depends(get_context),
    admin: Principal = Depends(get_admin_principal),
) -> Envelope:
    runtime = get_runtime()
    overlay = runtime.impersonation.begin(ctx, principal_id)
    return Envelope(data=_impersonation_out(overlay))


@router.post("/impersonation/leave", response_model=Envelope)
async def leave_impersonation(
    ctx: RequestContext = Depends(get_context),
    principal: Principal = Depends(get_current_principal),
) -> Envelope:
    runtime = get_runtime()
    if ctx.session.impersonation is None:
        raise ValidationError("no impersonation session is active")
    admin = runtime.impersonation.terminate(ctx, reason="left")
    if admin is None:
        runtime.auth.logout(ctx, reason="impersonator_missing")
        return Envelope(data={"redirect_to": runtime.settings.login_url})
    return Envelope(data={"redirect_to": runtime.settings.admin_home_url})


@router.post("/appeals/{principal_id}", response_model=Envelope)
async def submit_appeal(
    principal_id: str,
    body: AppealRequest,
    expires: int = Query(...),
    nonce: str = Query(..., max_length=128),
    signature: str = Query(..., max_length=128),
    ctx: RequestContext = Depends(get_context),
) -> Envelope:
    runtime = get_runtime()
    appeal = await runtime.appeals.redeem(
        principal_id,
        expires=expires,
        nonce=nonce,
        signature=signature,
        message=body.message,
        now=ctx.now,
    )
    return Envelope(
        data=AppealOut(id=appeal.id, status=appeal.status, created_at=appeal.created_at)
    )
