from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from stockledger.common.logging_setup import get_logger

logger = get_logger("stockledger.middlewares")

USER_ID_HEADER = "X-User-Id"
USER_ROLES_HEADER = "X-User-Roles"


class GatewayIdentityMiddleware(BaseHTTPMiddleware):
    """
    Authentication happens upstream. The gateway forwards the verified caller as
    X-User-Id and a comma separated X-User-Roles, which end up on request.state
    for the route dependencies to check.
    """

    async def dispatch(self, request: Request, call_next):
        user_id = request.headers.get(USER_ID_HEADER)
        roles_header = request.headers.get(USER_ROLES_HEADER, "")

        request.state.user_identifier = user_id.strip() if user_id else None
        request.state.user_roles = [r.strip().lower() for r in roles_header.split(",") if r.strip()]

        if user_id:
            logger.debug("identity.from_gateway", extra={"actor_id": user_id, "path": request.url.path})

        return await call_next(request)
