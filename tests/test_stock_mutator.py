import asyncio
import uuid
import pytest
from sqlalchemy import update
from stockledger.common.custom_exceptions import (InsufficientStockError, NotFoundError, RetryExhaustedError,
                                                  ValidationError)
from stockledger.inventory import repository, services
from stockledger.inventory.models import StockUpdateOptions
from stockledger.schema.full_schema import Product


async def test_update_stock_reduces_and_records_ledger(session_factory, make_product, reload_product, ledger_of):
    product = await make_product(stock_qty=10)

    result = await services.update_stock(
        product.public_id, -3, StockUpdateOptions(reason="order #1"), session_factory=session_factory,
    )

    assert result.product.stock_quantity == 7
    assert result.ledger_entry.previous_quantity == 10
    assert result.ledger_entry.new_quantity == 7
    assert result.ledger_entry.transaction_type == "reduction"
    assert result.ledger_entry.quantity == 3
    assert result.ledger_entry.reason == "order #1"
    assert result.ledger_entry.actor_id == "system"

    assert (await reload_product(product)).stock_qty == 7
    entries = await ledger_of(product)
    assert len(entries) == 1
    assert entries[0].entry_kind == "stock_change"


async def test_update_stock_addition_accepts_string_id(session_factory, make_product):
    product = await make_product(stock_qty=2)

    result = await services.update_stock(str(product.public_id), 5, session_factory=session_factory)

    assert result.product.stock_quantity == 7
    assert result.ledger_entry.transaction_type == "addition"
    assert result.ledger_entry.reason == "Manual adjustment"
    assert result.product.version == product.version + 1


async def test_update_stock_rejects_overdraw(session_factory, make_product, reload_product, ledger_of):
    product = await make_product(stock_qty=2)

    with pytest.raises(InsufficientStockError) as exc_info:
        await services.update_stock(product.public_id, -3, session_factory=session_factory)

    assert exc_info.value.requested == 3
    assert exc_info.value.available == 2
    assert (await reload_product(product)).stock_qty == 2
    assert await ledger_of(product) == []


async def test_update_stock_unknown_product(session_factory):
    with pytest.raises(NotFoundError):
        await services.update_stock(uuid.uuid4(), 1, session_factory=session_factory)


async def test_update_stock_bad_input(session_factory, make_product):
    product = await make_product()
    with pytest.raises(ValidationError):
        await services.update_stock("not-a-uuid", 1, session_factory=session_factory)
    with pytest.raises(ValidationError):
        await services.update_stock(product.public_id, 1.5, session_factory=session_factory)


async def test_stale_read_is_retried_from_fresh_state(session_factory, make_product, monkeypatch, ledger_of):
    product = await make_product(stock_qty=10)
    real_fetch = repository.fetch_product
    reads = []

    async def fetch_then_interfere(session, **kwargs):
        current = await real_fetch(session, **kwargs)
        reads.append(current.stock_qty)
        if len(reads) == 1:
            # another writer commits between our read and our write
            async with session_factory() as other:
                async with other.begin():
                    await other.execute(
                        update(Product).where(Product.id == product.id).values(stock_qty=8, version=Product.version + 1)
                    )
        return current

    monkeypatch.setattr(repository, "fetch_product", fetch_then_interfere)

    result = await services.update_stock(product.public_id, -3, session_factory=session_factory)

    assert reads == [10, 8]
    assert result.product.stock_quantity == 5
    entries = await ledger_of(product)
    assert [(e.previous_quantity, e.new_quantity) for e in entries] == [(8, 5)]


async def test_stale_read_then_insufficient(session_factory, make_product, monkeypatch, reload_product):
    product = await make_product(stock_qty=1)
    real_fetch = repository.fetch_product
    reads = []

    async def fetch_then_drain(session, **kwargs):
        current = await real_fetch(session, **kwargs)
        reads.append(current.stock_qty)
        if len(reads) == 1:
            async with session_factory() as other:
                async with other.begin():
                    await other.execute(update(Product).where(Product.id == product.id).values(stock_qty=0))
        return current

    monkeypatch.setattr(repository, "fetch_product", fetch_then_drain)

    with pytest.raises(InsufficientStockError):
        await services.update_stock(product.public_id, -1, session_factory=session_factory)
    assert reads == [1, 0]
    assert (await reload_product(product)).stock_qty == 0


async def test_persistent_conflict_exhausts_retries(session_factory, make_product, monkeypatch, reload_product):
    product = await make_product(stock_qty=10)
    attempts = 0

    async def always_lose(session, product_id, expected_qty, new_qty):
        nonlocal attempts
        attempts += 1
        return False

    monkeypatch.setattr(repository, "compare_and_set_stock", always_lose)

    with pytest.raises(RetryExhaustedError) as exc_info:
        await services.update_stock(product.public_id, -1, session_factory=session_factory, max_retries=2)

    assert attempts == 3
    assert exc_info.value.attempts == 3
    assert (await reload_product(product)).stock_qty == 10


async def test_concurrent_last_unit_sold_once(session_factory, make_product, reload_product, ledger_of):
    product = await make_product(stock_qty=1)

    results = await asyncio.gather(
        services.update_stock(product.public_id, -1, session_factory=session_factory),
        services.update_stock(product.public_id, -1, session_factory=session_factory),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert isinstance(failed[0], InsufficientStockError)
    assert (await reload_product(product)).stock_qty == 0
    assert len(await ledger_of(product)) == 1


async def test_concurrent_deltas_are_conserved(session_factory, make_product, reload_product, ledger_of):
    product = await make_product(stock_qty=5)
    deltas = [-2, 3, -4, -4, 1, -1, 2]

    results = await asyncio.gather(
        *(services.update_stock(product.public_id, d, session_factory=session_factory, max_retries=20)
          for d in deltas),
        return_exceptions=True,
    )

    accepted = [d for d, r in zip(deltas, results) if not isinstance(r, Exception)]
    for d, r in zip(deltas, results):
        if isinstance(r, Exception):
            assert isinstance(r, InsufficientStockError)
            assert d < 0

    final = (await reload_product(product)).stock_qty
    assert final == 5 + sum(accepted)
    assert final >= 0

    # one ledger entry per accepted mutation, chained end to end
    entries = await ledger_of(product)
    assert len(entries) == len(accepted)
    quantity = 5
    for entry in entries:
        assert entry.previous_quantity == quantity
        assert entry.new_quantity >= 0
        quantity = entry.new_quantity
    assert quantity == final


async def test_set_stock_level_writes_delta(session_factory, make_product):
    product = await make_product(stock_qty=4)

    result = await services.set_stock_level(
        product.public_id, 9, StockUpdateOptions(reason="recount", actor_id="admin-1"), session_factory=session_factory,
    )

    assert result.stock_quantity == 9
    assert result.previous_quantity == 4
    assert result.change == 5
    assert result.ledger_entry.transaction_type == "addition"
    assert result.ledger_entry.actor_id == "admin-1"


async def test_set_stock_level_same_value_is_adjustment(session_factory, make_product, ledger_of):
    product = await make_product(stock_qty=6)

    result = await services.set_stock_level(product.public_id, 6, session_factory=session_factory)

    assert result.change == 0
    assert result.ledger_entry.transaction_type == "adjustment"
    assert result.ledger_entry.quantity == 0
    assert len(await ledger_of(product)) == 1


async def test_set_stock_level_rejects_negative(session_factory, make_product):
    product = await make_product(stock_qty=6)

    with pytest.raises(ValidationError) as exc_info:
        await services.set_stock_level(product.public_id, -1, session_factory=session_factory)
    assert exc_info.value.details["attempted_quantity"] == -1


async def test_set_stock_level_unknown_product_reports_attempt(session_factory):
    with pytest.raises(NotFoundError) as exc_info:
        await services.set_stock_level(uuid.uuid4(), 3, session_factory=session_factory)
    assert exc_info.value.details["attempted_quantity"] == 3
    assert "previous_quantity" not in exc_info.value.details
