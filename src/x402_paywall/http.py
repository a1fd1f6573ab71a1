"""Payment middleware wrappers for FastAPI and Flask."""

from __future__ import annotations

from typing import Dict, Mapping, Union

from .errors import ChallengeError, ConfigurationError, ErrorCode
from .guard import GuardRequest, GuardResponse, ResourceGuard, ResourceGuardSync


def _route_key(method: str, path: str) -> str:
    return f"{method.upper()} {path.rstrip('/') or '/'}"


def _normalize_routes(routes: Mapping[str, object]) -> Dict[str, object]:
    table: Dict[str, object] = {}
    for key, guard in routes.items():
        method, sep, path = key.strip().partition(" ")
        if not sep:
            method, path = "GET", key.strip()
        table[_route_key(method, path.strip())] = guard
    return table


def _configuration_body(exc: ConfigurationError) -> dict:
    return {
        "error": ErrorCode.CONFIGURATION_ERROR.value,
        "message": exc.args[0] if exc.args else "",
    }


# =========================================================================
# FastAPI wrappers (async)
# =========================================================================


def fastapi_payment_middleware(routes: Mapping[str, ResourceGuard]):
    """Build an ``http`` middleware protecting ``routes`` (``"GET /path" -> guard``).

    Guards with a resource answer the request themselves. Guards without one
    settle first and then let the route handler produce the content, adding
    the payment headers to its response.
    """
    from fastapi.responses import JSONResponse, Response

    table = _normalize_routes(routes)

    def to_response(result: GuardResponse) -> Response:
        return Response(content=result.body, status_code=result.status_code, headers=result.headers)

    async def middleware(request, call_next):
        guard = table.get(_route_key(request.method, request.url.path))
        if guard is None:
            return await call_next(request)

        guard_request = GuardRequest(
            url=str(request.url),
            method=request.method,
            headers=dict(request.headers),
        )
        if guard.resource is not None:
            return to_response(await guard.handle(guard_request))

        try:
            receipt = await guard.check(guard_request)
        except ChallengeError as challenge:
            return JSONResponse(challenge.payment_required.to_body(), status_code=402)
        except ConfigurationError as exc:
            return JSONResponse(_configuration_body(exc), status_code=500)

        response = await call_next(request)
        for name, value in guard.payment_headers(receipt).items():
            response.headers[name] = value
        return response

    return middleware


# =========================================================================
# Flask wrappers (sync)
# =========================================================================


def flask_payment_middleware(app, routes: Mapping[str, ResourceGuardSync]):
    """Register request hooks on ``app`` protecting ``routes``; same rules as the FastAPI wrapper."""
    from flask import Response, g, jsonify, request

    table = _normalize_routes(routes)

    def before_request():
        guard: Union[ResourceGuardSync, None] = table.get(_route_key(request.method, request.path))
        if guard is None:
            return None

        guard_request = GuardRequest(
            url=request.url,
            method=request.method,
            headers=dict(request.headers),
        )
        if guard.resource is not None:
            result = guard.handle(guard_request)
            return Response(result.body, status=result.status_code, headers=result.headers)

        try:
            receipt = guard.check(guard_request)
        except ChallengeError as challenge:
            return jsonify(challenge.payment_required.to_body()), 402
        except ConfigurationError as exc:
            return jsonify(_configuration_body(exc)), 500
        g.x402_payment_headers = guard.payment_headers(receipt)
        return None

    def after_request(response):
        headers = g.pop("x402_payment_headers", None)
        if headers:
            for name, value in headers.items():
                response.headers[name] = value
        return response

    app.before_request(before_request)
    app.after_request(after_request)
    return before_request
