import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set
from sqlalchemy import and_, desc, exists, select, update
from sqlalchemy.orm import aliased
from stockledger.common.utils import now
from stockledger.schema.full_schema import InventoryLedgerEntry, LedgerEntryKind, Product


async def fetch_product(session, *, public_id: Optional[uuid.UUID] = None,
                        product_id: Optional[int] = None) -> Optional[Product]:
    stmt = select(Product)
    if public_id is not None:
        stmt = stmt.where(Product.public_id == public_id)
    else:
        stmt = stmt.where(Product.id == product_id)

    # always reload from the db, a stale identity-map copy would defeat the compare-and-swap
    stmt = stmt.execution_options(populate_existing=True)
    res = await session.execute(stmt)
    return res.scalars().first()


async def compare_and_set_stock(session, product_id: int, expected_qty: int, new_qty: int) -> bool:
    """Write new_qty only if the row still holds expected_qty. False means another writer got there first."""
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.stock_qty == expected_qty)
        .values(stock_qty=new_qty, version=Product.version + 1, updated_at=now())
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def insert_ledger_entry(session, entry: InventoryLedgerEntry) -> InventoryLedgerEntry:
    session.add(entry)
    await session.flush()  # to get entry.id
    return entry


async def fetch_products_by_public_ids(session, public_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Product]:
    ids = list(set(public_ids))
    if not ids:
        return {}
    res = await session.execute(select(Product).where(Product.public_id.in_(ids)))
    return {p.public_id: p for p in res.scalars().all()}


async def fetch_inventory_page(session, after_id: Optional[int], limit: int) -> List[Product]:
    stmt = select(Product)
    if after_id is not None:
        stmt = stmt.where(Product.id > after_id)
    stmt = stmt.order_by(Product.id).limit(limit + 1)  # fetch one extra to detect has_more
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def fetch_low_stock(session, threshold: int) -> List[Product]:
    stmt = (
        select(Product)
        .where(Product.stock_qty > 0, Product.stock_qty <= threshold)
        .order_by(Product.stock_qty, Product.id)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def fetch_out_of_stock(session) -> List[Product]:
    res = await session.execute(select(Product).where(Product.stock_qty == 0).order_by(Product.id))
    return list(res.scalars().all())


async def fetch_ledger_for_product(session, product_id: int, limit: Optional[int] = None) -> List[InventoryLedgerEntry]:
    stmt = (
        select(InventoryLedgerEntry)
        .where(InventoryLedgerEntry.product_id == product_id)
        .order_by(desc(InventoryLedgerEntry.created_at), desc(InventoryLedgerEntry.id))
    )
    if limit:
        stmt = stmt.limit(limit)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def fetch_reservation_actors(session, order_id: str) -> Set[str]:
    """Actors that reserved stock under order_id. Empty when the order never reserved anything."""
    stmt = select(InventoryLedgerEntry.actor_id).distinct().where(
        InventoryLedgerEntry.order_id == order_id,
        InventoryLedgerEntry.entry_kind == LedgerEntryKind.RESERVATION.value,
    )
    res = await session.execute(stmt)
    return set(res.scalars().all())


async def fetch_product_public_ids(session, product_ids: Iterable[int]) -> Dict[int, uuid.UUID]:
    ids = list(set(product_ids))
    if not ids:
        return {}
    res = await session.execute(select(Product.id, Product.public_id).where(Product.id.in_(ids)))
    return {row.id: row.public_id for row in res.all()}


async def fetch_entry_public_ids(session, entry_ids: Iterable[Optional[int]]) -> Dict[int, uuid.UUID]:
    ids = list({i for i in entry_ids if i is not None})
    if not ids:
        return {}
    stmt = select(InventoryLedgerEntry.id, InventoryLedgerEntry.public_id).where(InventoryLedgerEntry.id.in_(ids))
    res = await session.execute(stmt)
    return {row.id: row.public_id for row in res.all()}


async def fetch_open_reservations(session, *, order_id: Optional[str] = None,
                                  expired_before: Optional[datetime] = None) -> List[InventoryLedgerEntry]:
    """Reservation entries that no release entry points back at yet."""
    release = aliased(InventoryLedgerEntry)
    released = exists().where(
        and_(
            release.reference_entry_id == InventoryLedgerEntry.id,
            release.entry_kind == LedgerEntryKind.RELEASE.value,
        )
    )
    stmt = select(InventoryLedgerEntry).where(
        InventoryLedgerEntry.entry_kind == LedgerEntryKind.RESERVATION.value,
        ~released,
    )
    if order_id is not None:
        stmt = stmt.where(InventoryLedgerEntry.order_id == order_id)
    if expired_before is not None:
        stmt = stmt.where(InventoryLedgerEntry.expires_at < expired_before)

    stmt = stmt.order_by(InventoryLedgerEntry.id).execution_options(populate_existing=True)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def annotate_ledger_entry(session, entry_id: int, notes: str) -> None:
    await session.execute(
        update(InventoryLedgerEntry)
        .where(InventoryLedgerEntry.id == entry_id)
        .values(notes=notes)
        .execution_options(synchronize_session=False)
    )
