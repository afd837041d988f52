from typing import Optional
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from stockledger.common.utils import success_response
from stockledger.config.settings import config_settings
from stockledger.db.dependencies import get_session, get_session_factory
from stockledger.inventory import services
from stockledger.inventory.constants import (CURSOR_MAX_AGE_SECONDS, DEFAULT_ADJUSTMENT_REASON,
                                             INVENTORY_PAGE_DEFAULT, INVENTORY_PAGE_MAX, logger)
from stockledger.inventory.dependency import has_any_role, require_actor, require_roles
from stockledger.inventory.models import (InventoryPage, ProductStockOut, ReleaseIn, ReservationOptions, ReserveIn,
                                          StockLevelIn, StockUpdateOptions, ValidateStockIn, dump)
from stockledger.inventory.utils import decode_cursor, encode_cursor

inventory_public_router = APIRouter()
inventory_router = APIRouter()

require_inventory_admin = require_roles(*config_settings.INVENTORY_ADMIN_ROLES)


# public: the checkout page validates before allowing payment
@inventory_public_router.post("/validate")
async def validate_stock(payload: ValidateStockIn, session_factory: async_sessionmaker = Depends(get_session_factory)):

    result = await services.validate_stock(payload.items, session_factory=session_factory)

    if not result.valid:
        logger.info("inventory.validate.out_of_stock", extra={"lines": len(result.out_of_stock_items)})
    return success_response(dump(result))


@inventory_router.get("")
async def get_inventory(
    limit: int = Query(INVENTORY_PAGE_DEFAULT, ge=1, le=INVENTORY_PAGE_MAX),
    cursor: Optional[str] = Query(None, description="Opaque signed cursor token"),
    actor_id: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session)):

    after_id = decode_cursor(cursor, max_age=CURSOR_MAX_AGE_SECONDS) if cursor else None
    products, has_more = await services.list_inventory(session, after_id, limit)

    next_cursor = encode_cursor(products[-1].id) if has_more else None
    page = InventoryPage(
        items=[ProductStockOut.model_validate(p) for p in products],
        next_cursor=next_cursor,
        has_more=has_more,
    )
    return success_response(dump(page))


@inventory_router.get("/low-stock")
async def get_low_stock_alerts(
    threshold: int = Query(config_settings.LOW_STOCK_THRESHOLD, ge=0),
    actor_id: str = Depends(require_inventory_admin),
    session: AsyncSession = Depends(get_session)):

    report = await services.low_stock_report(session, threshold)
    return success_response(dump(report))


@inventory_router.post("/reserve")
async def reserve_inventory(payload: ReserveIn, actor_id: str = Depends(require_actor),
                            session_factory: async_sessionmaker = Depends(get_session_factory)):

    ttl = {"timeout_minutes": payload.timeout_minutes} if payload.timeout_minutes else {}
    options = ReservationOptions(order_id=payload.order_id, actor_id=actor_id, **ttl)

    reserved = await services.reserve_inventory(payload.items, options, session_factory=session_factory)
    return success_response({"success": reserved, "orderId": payload.order_id}, status_code=status.HTTP_201_CREATED)


@inventory_router.post("/release")
async def release_reservation(payload: ReleaseIn, request: Request, actor_id: str = Depends(require_actor),
                              session_factory: async_sessionmaker = Depends(get_session_factory)):

    # customers may only free their own holds, inventory admins may free any
    is_admin = has_any_role(request, config_settings.INVENTORY_ADMIN_ROLES)
    released = await services.release_reservation(payload.order_id, actor_id=actor_id,
                                                  owner_id=None if is_admin else actor_id,
                                                  session_factory=session_factory)
    return success_response({"success": True, "released": released, "orderId": payload.order_id})


@inventory_router.put("/{product_id}")
async def update_inventory(product_id: str, payload: StockLevelIn,
                           actor_id: str = Depends(require_inventory_admin),
                           session_factory: async_sessionmaker = Depends(get_session_factory)):

    logger.info("inventory.adjust.attempt", extra={"product_public_id": product_id, "actor_id": actor_id})

    options = StockUpdateOptions(reason=payload.reason or DEFAULT_ADJUSTMENT_REASON, actor_id=actor_id)
    result = await services.set_stock_level(product_id, payload.stock_quantity, options, session_factory=session_factory)

    resp = {"message": "Inventory updated successfully", **dump(result)}
    return success_response(resp)


@inventory_router.get("/{product_id}/history")
async def get_inventory_history(
    product_id: str,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    actor_id: str = Depends(require_inventory_admin),
    session: AsyncSession = Depends(get_session)):

    entries = await services.inventory_history(session, product_id, limit)
    return success_response([dump(e) for e in entries])
