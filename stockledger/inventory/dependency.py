from typing import Iterable
from fastapi import Depends, HTTPException, Request, status
from stockledger.inventory.constants import logger


async def require_actor(request: Request) -> str:
    """Identifier of the caller, put on request.state by the identity middleware."""
    user_identifier = getattr(request.state, "user_identifier", None)
    if not user_identifier:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return str(user_identifier)


def has_any_role(request: Request, roles: Iterable[str]) -> bool:
    user_roles = set(getattr(request.state, "user_roles", None) or [])
    return bool(user_roles & set(roles))


def require_roles(*roles: str):
    allowed = set(roles)

    async def _checker(request: Request, actor_id: str = Depends(require_actor)) -> str:
        if not has_any_role(request, allowed):
            logger.warning(
                "inventory.authz.denied",
                extra={"actor_id": actor_id, "path": request.url.path, "required": sorted(allowed)},
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for inventory administration")
        return actor_id

    return _checker
