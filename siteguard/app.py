from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import Response

from siteguard.api.error_handling import error_response, register_exception_handlers
from siteguard.api.responses import denial_response, expects_json
from siteguard.api.routes import router
from siteguard.config import Settings, get_settings
from siteguard.logging import bind_request, get_logger, set_correlation_id
from siteguard.service.auth import REMEMBER_KEY
from siteguard.service.csrf import CSRF_COOKIE, CSRF_HEADER
from siteguard.service.pipeline import RequestContext
from siteguard.service.runtime import Runtime, get_runtime
from siteguard.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

__version__ = "0.1.0"

REMEMBER_MAX_AGE_SECONDS = 30 * 24 * 60 * 60
IMPERSONATE_PREFIX = "/admin/impersonate/"
LEAVE_IMPERSONATION_PATH = "/impersonation/leave"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime eagerly so configuration errors surface at startup."""
    runtime = get_runtime()
    logger.info("siteguard_started", pipeline=runtime.pipeline.order)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(settings.session_cookie_name, path="/")
    response.delete_cookie(CSRF_COOKIE, path="/")


def _admin_action(method: str, path: str) -> Optional[Tuple[str, Dict[str, str]]]:
    """Name the administrative action behind a request, or None for other routes."""
    if path.startswith(IMPERSONATE_PREFIX):
        return "impersonation_start", {"target_id": path[len(IMPERSONATE_PREFIX):]}
    if path == LEAVE_IMPERSONATION_PATH:
        return "impersonation_leave", {}
    if path == "/admin" or path.startswith("/admin/"):
        return f"{method.lower()}_admin", {}
    return None


def _audit_admin_request(
    runtime: Runtime, ctx: RequestContext, method: str, status_code: int
) -> None:
    action = _admin_action(method, ctx.path)
    actor = ctx.session.owner_id
    if action is None or actor is None:
        return
    name, fields = action
    runtime.audit.admin_action(
        name,
        status_code=status_code,
        principal_id=actor,
        session_id=ctx.session.id,
        ip=ctx.ip,
        route=ctx.path,
        timestamp=ctx.now,
        method=method,
        **fields,
    )


def _set_session_cookies(response: Response, ctx: RequestContext, settings: Settings) -> None:
    max_age = REMEMBER_MAX_AGE_SECONDS if ctx.session.data.get(REMEMBER_KEY) else None
    response.set_cookie(
        settings.session_cookie_name,
        ctx.session.id,
        max_age=max_age,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )
    # Readable by scripts so they can echo it back in the CSRF header
    response.set_cookie(
        CSRF_COOKIE,
        ctx.session.csrf_token,
        max_age=max_age,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=False,
        samesite="lax",
    )


def create_app() -> FastAPI:
    app = FastAPI(title="SiteGuard", version=__version__, lifespan=lifespan)

    # Starlette runs the last registered middleware first, so the pipeline
    # is registered before the header and correlation middlewares wrap it.
    @app.middleware("http")
    async def security_pipeline(request: Request, call_next):
        runtime = get_runtime()
        settings = runtime.settings
        ip = _client_ip(request)
        user_agent = request.headers.get("user-agent")
        ctx = RequestContext(
            path=request.url.path,
            method=request.method,
            session=runtime.sessions.start_guest(ip_addr=ip, user_agent=user_agent),
            ip=ip,
            user_agent=user_agent,
            expects_json=expects_json(request),
            session_cookie=request.cookies.get(settings.session_cookie_name),
            csrf_header=request.headers.get(CSRF_HEADER),
        )
        try:
            denial = await runtime.pipeline.run(ctx)
            if denial is not None:
                runtime.pipeline.resolve(ctx, denial)
                response = denial_response(ctx, denial)
            else:
                request.state.security = ctx
                response = await call_next(request)
            await runtime.pipeline.finalize(ctx)
            disposable = runtime.sessions.is_disposable(ctx.session, ctx.session_cookie)
            if not disposable:
                runtime.sessions.save(ctx.session)
        except StoreUnavailableError as exc:
            logger.error(
                "security_pipeline_store_unavailable",
                path=ctx.path,
                operation=exc.operation,
                error=str(exc),
            )
            return error_response(
                503, "service temporarily unavailable", code="SERVICE_UNAVAILABLE"
            )

        _audit_admin_request(runtime, ctx, request.method, response.status_code)
        runtime.sessions.maybe_sweep(ctx.now)

        for name, value in ctx.response_headers.items():
            response.headers[name] = value
        if not disposable:
            _set_session_cookies(response, ctx, settings)
        elif ctx.session_cookie:
            _clear_session_cookies(response, settings)
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault(
            "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
        )
        if request.url.scheme == "https" and get_settings().enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Echo or mint an X-Request-ID and bind it to every log line of the request."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        bind_request(path=request.url.path, method=request.method, ip=_client_ip(request))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
