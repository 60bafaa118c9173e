import time

import structlog
from fastapi import Request, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

import portal.core.database as db_module
from portal.core.database import AuditLog, utcnow
from portal.core.exceptions import AuthenticationError
from portal.services.token_issuer import TokenIssuer

logger = structlog.get_logger()

# Paths that skip authentication
PUBLIC_PATHS = {"/health", "/", "/docs", "/openapi.json", "/redoc"}

# Login and refresh must be reachable without an access token
AUTH_PUBLIC_PATHS = {"/auth/login", "/auth/login/ldap", "/auth/refresh"}


class AuthMiddleware(BaseHTTPMiddleware):
    """Validates the Bearer access token on every request except public paths."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in PUBLIC_PATHS or request.url.path in AUTH_PUBLIC_PATHS:
            return await call_next(request)

        # CORS preflight carries no credentials
        if request.method == "OPTIONS":
            return await call_next(request)

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            error = AuthenticationError("Missing or malformed Authorization header.")
            return JSONResponse(status_code=error.status, content=error.to_dict())

        token = auth_header.removeprefix("Bearer ").strip()
        claims = TokenIssuer().decode_access_token(token)
        if claims is None:
            error = AuthenticationError("Invalid or expired token")
            return JSONResponse(status_code=error.status, content=error.to_dict())

        request.state.auth_type = "jwt"
        request.state.user_id = claims.get("sub")
        request.state.username = claims.get("username")
        request.state.user_roles = list(claims.get("roles") or [])
        request.state.claims = claims

        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request as structured JSON and writes to AuditLog table."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        latency_ms = round((time.perf_counter() - start) * 1000, 1)

        user_id = getattr(request.state, "user_id", None)

        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            latency_ms=latency_ms,
            user_id=user_id,
        )

        # Best-effort: a failed audit write must not fail the request
        try:
            async with db_module.async_session() as session:
                session.add(
                    AuditLog(
                        action="http_request",
                        method=request.method,
                        path=request.url.path,
                        user_id=user_id,
                        status_code=response.status_code,
                        latency_ms=latency_ms,
                        timestamp=utcnow(),
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("audit_log_write_failed", path=request.url.path, error=str(exc))

        return response
