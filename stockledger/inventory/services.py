from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence, Tuple
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from stockledger.common.constants import GUEST_ACTOR, SYSTEM_ACTOR
from stockledger.common.custom_exceptions import (ConcurrencyConflictError, ForbiddenError, InsufficientStockError,
                                                  InventoryError, NotFoundError, ValidationError)
from stockledger.common.retries import with_transaction
from stockledger.common.utils import now
from stockledger.inventory import repository
from stockledger.inventory.constants import DEFAULT_ADJUSTMENT_REASON, logger
from stockledger.inventory.models import (CartLine, FulfillmentOrder, LedgerEntryOut, LowStockReport, ProductRef,
                                          ProductStockOut, ReservationOptions, StockAdjustmentResult, StockBucket,
                                          StockMutationResult, StockUpdateOptions, StockValidationResult,
                                          ValidationLine, ValidationLineResult)
from stockledger.inventory.utils import compute_new_quantity, parse_public_id, try_parse_public_id
from stockledger.schema.full_schema import InventoryLedgerEntry, LedgerEntryKind, LedgerTransactionType, Product
from metrics.custom_instrumentator import stock_mutations


def _session_factory(session_factory: Optional[async_sessionmaker]) -> async_sessionmaker:
    if session_factory is not None:
        return session_factory
    from stockledger.db.connection import async_session
    return async_session


def _check_quantity(value: Any, *, positive: bool = True) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Quantity must be an integer", details={"quantity": value})
    if positive and value <= 0:
        raise ValidationError("Quantity must be greater than zero", details={"quantity": value})
    return value


async def _load_product(session: AsyncSession, *, public_id=None, product_id: Optional[int] = None) -> Product:
    product = await repository.fetch_product(session, public_id=public_id, product_id=product_id)
    if product is None:
        ref = public_id if public_id is not None else product_id
        raise NotFoundError("Product not found", details={"product_id": str(ref)})
    return product


async def _apply_delta(
    session: AsyncSession,
    product: Product,
    delta: int,
    *,
    reason: str,
    actor_id: str,
    order_id: Optional[str] = None,
    notes: Optional[str] = None,
    entry_kind: LedgerEntryKind = LedgerEntryKind.STOCK_CHANGE,
    expires_at: Optional[datetime] = None,
    reference_entry_id: Optional[int] = None,
    clamp_at_zero: bool = False,
    transaction_type: Optional[LedgerTransactionType] = None,
) -> Tuple[Product, InventoryLedgerEntry]:
    """
    Move product.stock_qty by delta and write the matching ledger row in the caller's transaction.

    The write is a compare-and-swap on the quantity read into `product`; losing the race
    raises ConcurrencyConflictError so the surrounding orchestrator re-runs from a fresh read.
    transaction_type, when given, pins the ledger type instead of deriving it from the sign of the
    change; a fully clamped fulfillment removes 0 units and is still a reduction.
    """
    previous = product.stock_qty
    new_quantity = previous + delta

    if new_quantity < 0:
        if not clamp_at_zero:
            raise InsufficientStockError(product.public_id, -delta, previous)
        shortfall = f"clamped at zero: requested {-delta}, removed {previous}"
        notes = f"{notes} | {shortfall}" if notes else shortfall
        new_quantity = 0

    swapped = await repository.compare_and_set_stock(session, product.id, previous, new_quantity)
    if not swapped:
        raise ConcurrencyConflictError(
            f"Stock for product {product.public_id} changed concurrently",
            details={"product_id": str(product.public_id), "observed_quantity": previous},
        )

    change = new_quantity - previous
    if transaction_type is None:
        if change > 0:
            transaction_type = LedgerTransactionType.ADDITION
        elif change < 0:
            transaction_type = LedgerTransactionType.REDUCTION
        else:
            transaction_type = LedgerTransactionType.ADJUSTMENT

    entry = InventoryLedgerEntry(
        product_id=product.id,
        transaction_type=transaction_type.value,
        entry_kind=entry_kind.value,
        quantity=abs(change),
        previous_quantity=previous,
        new_quantity=compute_new_quantity(transaction_type.value, previous, abs(change)),
        reason=reason,
        actor_id=str(actor_id),
        order_id=order_id,
        notes=notes,
        expires_at=expires_at,
        reference_entry_id=reference_entry_id,
    )
    await repository.insert_ledger_entry(session, entry)
    await session.refresh(product)

    stock_mutations.labels(kind=entry_kind.value, transaction_type=transaction_type.value).inc()
    return product, entry


# ---------------------------------------------------------------------------------------------
# stock mutator

async def update_stock(
    product_id: ProductRef,
    signed_quantity: int,
    options: Optional[StockUpdateOptions] = None,
    *,
    session_factory: Optional[async_sessionmaker] = None,
    max_retries: Optional[int] = None,
) -> StockMutationResult:
    """Apply a signed delta to a product's stock with a ledger entry, atomically."""
    options = options or StockUpdateOptions()
    delta = _check_quantity(signed_quantity, positive=False)
    public_id = parse_public_id(product_id)

    async def operation(session: AsyncSession) -> StockMutationResult:
        product = await _load_product(session, public_id=public_id)
        product, entry = await _apply_delta(
            session, product, delta,
            reason=options.reason,
            actor_id=options.actor_id,
            order_id=options.order_id,
            notes=options.notes,
        )
        return StockMutationResult(
            product=ProductStockOut.model_validate(product),
            ledger_entry=LedgerEntryOut.from_entry(entry, product.public_id),
        )

    result = await with_transaction(operation, session_factory=_session_factory(session_factory),
                                    max_retries=max_retries, log_prefix="updateStock")

    logger.info(
        "inventory.stock.updated",
        extra={
            "product_public_id": str(public_id),
            "delta": delta,
            "previous_quantity": result.ledger_entry.previous_quantity,
            "new_quantity": result.ledger_entry.new_quantity,
            "actor_id": options.actor_id,
        },
    )
    return result


async def set_stock_level(
    product_id: ProductRef,
    target_quantity: int,
    options: Optional[StockUpdateOptions] = None,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> StockAdjustmentResult:
    """Administrative absolute adjustment, expressed as a delta against the latest quantity."""
    options = options or StockUpdateOptions()
    target = _check_quantity(target_quantity, positive=False)
    if target < 0:
        raise ValidationError(
            "Stock quantity must be provided and cannot be negative",
            details={"attempted_quantity": target},
        )
    public_id = parse_public_id(product_id)
    observed = {}

    async def operation(session: AsyncSession) -> StockAdjustmentResult:
        product = await _load_product(session, public_id=public_id)
        observed["previous_quantity"] = product.stock_qty
        product, entry = await _apply_delta(
            session, product, target - product.stock_qty,
            reason=options.reason or DEFAULT_ADJUSTMENT_REASON,
            actor_id=options.actor_id,
            notes=options.notes,
        )
        return StockAdjustmentResult(
            product_id=product.public_id,
            stock_quantity=product.stock_qty,
            previous_quantity=entry.previous_quantity,
            change=entry.new_quantity - entry.previous_quantity,
            ledger_entry=LedgerEntryOut.from_entry(entry, product.public_id),
        )

    try:
        result = await with_transaction(operation, session_factory=_session_factory(session_factory),
                                        log_prefix="setStockLevel")
    except InventoryError as exc:
        exc.details.setdefault("attempted_quantity", target)
        if "previous_quantity" in observed:
            exc.details.setdefault("previous_quantity", observed["previous_quantity"])
        raise

    logger.info(
        "inventory.stock.adjusted",
        extra={
            "product_public_id": str(public_id),
            "previous_quantity": result.previous_quantity,
            "new_quantity": result.stock_quantity,
            "actor_id": options.actor_id,
        },
    )
    return result


# ---------------------------------------------------------------------------------------------
# reservations

async def reserve_inventory(
    items: Sequence[CartLine],
    options: ReservationOptions,
    *,
    session_factory: Optional[async_sessionmaker] = None,
    max_retries: Optional[int] = None,
) -> bool:
    """
    Hold stock for a pending order. Every line is decremented in one transaction,
    so a single insufficient line leaves all products untouched.
    """
    if not items:
        raise ValidationError("Items must be provided as a non-empty list")

    lines = [(parse_public_id(it.product_id), _check_quantity(it.quantity)) for it in items]
    expires_at = now() + timedelta(minutes=options.timeout_minutes)

    async def operation(session: AsyncSession) -> bool:
        for public_id, quantity in lines:
            product = await _load_product(session, public_id=public_id)
            await _apply_delta(
                session, product, -quantity,
                reason=f"Reservation for order {options.order_id}",
                actor_id=options.actor_id,
                order_id=options.order_id,
                entry_kind=LedgerEntryKind.RESERVATION,
                expires_at=expires_at,
            )
        return True

    await with_transaction(operation, session_factory=_session_factory(session_factory),
                           max_retries=max_retries, log_prefix="reserveInventory")

    logger.info(
        "inventory.reservation.created",
        extra={"order_id": options.order_id, "lines": len(lines), "expires_at": expires_at.isoformat()},
    )
    return True


async def release_reservation(
    order_id: str,
    *,
    actor_id: str = SYSTEM_ACTOR,
    owner_id: Optional[str] = None,
    session_factory: Optional[async_sessionmaker] = None,
    max_retries: Optional[int] = None,
) -> bool:
    """
    Give back everything still held for order_id.

    Returns False when every reservation of the order was already released.
    Raises NotFoundError when the order never reserved anything. With owner_id set, only
    an order reserved entirely by that actor may be released, otherwise ForbiddenError.
    """
    if not order_id:
        raise ValidationError("order_id is required")

    async def operation(session: AsyncSession) -> int:
        reserved_by = await repository.fetch_reservation_actors(session, order_id)
        if not reserved_by:
            raise NotFoundError("No reservation found for order", details={"order_id": order_id})
        if owner_id is not None and reserved_by != {owner_id}:
            raise ForbiddenError("Reservation belongs to another actor", details={"order_id": order_id})

        open_entries = await repository.fetch_open_reservations(session, order_id=order_id)
        for reservation in open_entries:
            product = await _load_product(session, product_id=reservation.product_id)
            _, release = await _apply_delta(
                session, product, reservation.quantity,
                reason=f"Release of reservation for order {order_id}",
                actor_id=actor_id,
                order_id=order_id,
                entry_kind=LedgerEntryKind.RELEASE,
                reference_entry_id=reservation.id,
            )
            annotation = f"released at {now().isoformat()} by {actor_id} (entry {release.public_id})"
            notes = f"{reservation.notes} | {annotation}" if reservation.notes else annotation
            await repository.annotate_ledger_entry(session, reservation.id, notes)
        return len(open_entries)

    released = await with_transaction(operation, session_factory=_session_factory(session_factory),
                                      max_retries=max_retries, log_prefix="releaseReservation")

    if not released:
        logger.info("inventory.reservation.already_released", extra={"order_id": order_id})
        return False

    logger.info("inventory.reservation.released", extra={"order_id": order_id, "lines": released})
    return True


async def list_open_reservations(
    *,
    order_id: Optional[str] = None,
    expired_before: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> List[LedgerEntryOut]:
    """Reservations still holding stock. Read only: nothing here expires them."""
    async with _session_factory(session_factory)() as session:
        entries = await repository.fetch_open_reservations(session, order_id=order_id, expired_before=expired_before)
        public_ids = await repository.fetch_product_public_ids(session, (e.product_id for e in entries))
        return [LedgerEntryOut.from_entry(e, public_ids[e.product_id]) for e in entries]


# ---------------------------------------------------------------------------------------------
# validation

async def validate_stock(
    items: Sequence[ValidationLine],
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> StockValidationResult:
    """Read-only availability check for a cart. Holds nothing; pair with reserve_inventory for a hold."""
    if not items:
        raise ValidationError("Items must be provided as a non-empty list")

    parsed = [try_parse_public_id(it.id) for it in items]

    async with _session_factory(session_factory)() as session:
        products = await repository.fetch_products_by_public_ids(session, [p for p in parsed if p is not None])

    results: List[ValidationLineResult] = []
    for line, public_id in zip(items, parsed):
        product = products.get(public_id) if public_id is not None else None
        if product is None:
            results.append(ValidationLineResult(
                id=line.id, in_stock=False, requested=line.quantity, available=0, message="Product not found",
            ))
            continue

        results.append(ValidationLineResult(
            id=line.id,
            name=product.name,
            in_stock=product.stock_qty >= line.quantity,
            requested=line.quantity,
            available=product.stock_qty,
        ))

    out_of_stock = [r for r in results if not r.in_stock]
    return StockValidationResult(valid=not out_of_stock, items=results, out_of_stock_items=out_of_stock)


# ---------------------------------------------------------------------------------------------
# order fulfillment

async def process_order_inventory(order: FulfillmentOrder, session: AsyncSession) -> bool:
    """
    Permanently take a paid order's lines out of stock inside the order workflow's own transaction.

    Stock is floored at zero instead of failing the paid order. A line whose product
    is gone is logged and skipped. ConcurrencyConflictError is left for the caller's
    orchestrator to retry.
    """
    actor_id = order.user_id or GUEST_ACTOR

    for item in order.items:
        public_id = try_parse_public_id(item.product_id)
        product = None
        if public_id is not None:
            product = await repository.fetch_product(session, public_id=public_id)
        if product is None:
            logger.error(
                "inventory.fulfillment.product_missing",
                extra={"order_id": order.id, "product_public_id": str(item.product_id)},
            )
            continue

        product, entry = await _apply_delta(
            session, product, -item.quantity,
            reason=f"Order #{order.id}",
            actor_id=actor_id,
            order_id=order.id,
            entry_kind=LedgerEntryKind.FULFILLMENT,
            clamp_at_zero=True,
            transaction_type=LedgerTransactionType.REDUCTION,
        )
        logger.info(
            "inventory.fulfillment.line_processed",
            extra={
                "order_id": order.id,
                "product_public_id": str(product.public_id),
                "previous_quantity": entry.previous_quantity,
                "new_quantity": entry.new_quantity,
            },
        )

    return True


# ---------------------------------------------------------------------------------------------
# read models

async def list_inventory(session: AsyncSession, after_id: Optional[int], limit: int) -> Tuple[List[Product], bool]:
    rows = await repository.fetch_inventory_page(session, after_id, limit)
    return rows[:limit], len(rows) > limit


async def low_stock_report(session: AsyncSession, threshold: int) -> LowStockReport:
    low = await repository.fetch_low_stock(session, threshold)
    out = await repository.fetch_out_of_stock(session)
    return LowStockReport(
        threshold=threshold,
        low_stock=StockBucket(count=len(low), products=[ProductStockOut.model_validate(p) for p in low]),
        out_of_stock=StockBucket(count=len(out), products=[ProductStockOut.model_validate(p) for p in out]),
    )


async def inventory_history(session: AsyncSession, product_id: ProductRef,
                            limit: Optional[int] = None) -> List[LedgerEntryOut]:
    product = await _load_product(session, public_id=parse_public_id(product_id))
    entries = await repository.fetch_ledger_for_product(session, product.id, limit)
    # a release may point at a reservation outside the requested window
    references = await repository.fetch_entry_public_ids(session, (e.reference_entry_id for e in entries))
    return [
        LedgerEntryOut.from_entry(e, product.public_id, references.get(e.reference_entry_id))
        for e in entries
    ]
