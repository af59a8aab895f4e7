from __future__ import annotations

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, RedirectResponse, Response

from siteguard.service.pipeline import Denial, RequestContext


def expects_json(request: Request) -> bool:
    """API and AJAX callers get JSON bodies; browser navigation gets redirects."""
    accept = request.headers.get("accept", "").lower()
    if "json" in accept:
        return True
    return request.headers.get("x-requested-with", "").lower() == "xmlhttprequest"


def denial_response(ctx: RequestContext, denial: Denial) -> Response:
    if ctx.expects_json or not denial.redirect_to:
        body = {
            "success": False,
            "error": denial.code,
            "message": denial.message,
            **denial.extras,
        }
        return JSONResponse(
            status_code=denial.status_code,
            content=jsonable_encoder(body),
            headers=denial.headers or None,
        )
    response = RedirectResponse(url=denial.redirect_to, status_code=302)
    for name, value in denial.headers.items():
        response.headers[name] = value
    return response
