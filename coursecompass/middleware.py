"""
Route-prefix role gating. Rejects requests to protected API prefixes before they reach a handler,
using the role claim of the access token. Handlers still load the user from the database and check
ownership; this layer only keeps the wrong roles out early.
"""
import logging
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from coursecompass.auth import decode_token, extract_token
from coursecompass.models.user import UserRole

logger = logging.getLogger(__name__)

ADMIN_ONLY = (UserRole.ADMIN.value,)
INSTRUCTORS = (UserRole.TRAINER.value, UserRole.ADMIN.value)

# Longest matching prefix wins.
ROLE_BASED_ROUTES: dict[str, tuple[str, ...]] = {
    "/api/admin": ADMIN_ONLY,
    "/api/upload/video": INSTRUCTORS,
    "/api/upload/thumbnail": INSTRUCTORS,
}


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def required_roles(path: str, rules: dict[str, tuple[str, ...]] = ROLE_BASED_ROUTES) -> tuple[str, ...] | None:
    """Roles allowed on `path`, or None if the path is not gated."""
    best = None
    for prefix in rules:
        if _matches(path, prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    return rules[best] if best is not None else None


def _deny(status_code: int, message: str) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=status_code, content={"success": False, "error": message}, headers=headers)


class RoleGateMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, rules: dict[str, tuple[str, ...]] | None = None):
        super().__init__(app)
        self.rules = rules if rules is not None else ROLE_BASED_ROUTES

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return await call_next(request)
        roles = required_roles(request.url.path, self.rules)
        if roles is None:
            return await call_next(request)

        token = extract_token(request)
        if not token:
            return _deny(status.HTTP_401_UNAUTHORIZED, "Authentication required")
        payload = decode_token(token)
        if not payload:
            return _deny(status.HTTP_401_UNAUTHORIZED, "Invalid or expired token")
        if payload.role not in roles:
            logger.info("Role %s denied on %s", payload.role, request.url.path)
            return _deny(status.HTTP_403_FORBIDDEN, "Insufficient permissions for this operation")

        request.state.token_payload = payload
        return await call_next(request)
