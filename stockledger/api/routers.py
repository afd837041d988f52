from fastapi import APIRouter
from stockledger.api import version_prefix
from stockledger.common.routes import home_router
from stockledger.inventory.routes import inventory_public_router, inventory_router


public_routers = APIRouter(prefix=version_prefix)

# /validate is registered first so it is matched before the /{product_id} routes
public_routers.include_router(inventory_public_router, prefix="/inventory", tags=["inventory-public"])
public_routers.include_router(inventory_router, prefix="/inventory", tags=["inventory"])
public_routers.include_router(home_router, tags=["home"])
