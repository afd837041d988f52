import uuid
import pytest
from stockledger.common.custom_exceptions import ConcurrencyConflictError
from stockledger.common.retries import with_transaction
from stockledger.inventory import repository, services
from stockledger.inventory.models import FulfillmentOrder, OrderLine


def paid_order(order_id, *lines, user_id=None):
    return FulfillmentOrder(
        id=order_id,
        user_id=user_id,
        items=[OrderLine(product_id=p, quantity=q) for p, q in lines],
    )


async def test_fulfillment_decrements_inside_callers_transaction(session_factory, make_product,
                                                                 reload_product, ledger_of):
    a = await make_product(stock_qty=10)
    b = await make_product(stock_qty=4)
    order = paid_order("1001", (a.public_id, 3), (str(b.public_id), 4), user_id="user-42")

    async def confirm_order(session):
        return await services.process_order_inventory(order, session)

    assert await with_transaction(confirm_order, session_factory=session_factory) is True

    assert (await reload_product(a)).stock_qty == 7
    assert (await reload_product(b)).stock_qty == 0
    [entry] = await ledger_of(a)
    assert entry.entry_kind == "fulfillment"
    assert entry.transaction_type == "reduction"
    assert entry.reason == "Order #1001"
    assert entry.actor_id == "user-42"
    assert entry.order_id == "1001"


async def test_fulfillment_clamps_at_zero(session_factory, make_product, reload_product, ledger_of):
    product = await make_product(stock_qty=2)
    order = paid_order("1002", (product.public_id, 5))

    async with session_factory() as session:
        async with session.begin():
            await services.process_order_inventory(order, session)

    assert (await reload_product(product)).stock_qty == 0
    [entry] = await ledger_of(product)
    assert entry.actor_id == "guest"
    assert (entry.previous_quantity, entry.new_quantity, entry.quantity) == (2, 0, 2)
    assert "requested 5" in entry.notes


async def test_missing_product_is_skipped(session_factory, make_product, reload_product):
    product = await make_product(stock_qty=5)
    order = paid_order("1003", (uuid.uuid4(), 1), ("not-a-uuid", 1), (product.public_id, 2))

    async with session_factory() as session:
        async with session.begin():
            assert await services.process_order_inventory(order, session) is True

    assert (await reload_product(product)).stock_qty == 3


async def test_nothing_is_committed_when_caller_rolls_back(session_factory, make_product, reload_product):
    product = await make_product(stock_qty=5)
    order = paid_order("1004", (product.public_id, 2))

    async with session_factory() as session:
        await session.begin()
        await services.process_order_inventory(order, session)
        await session.rollback()

    assert (await reload_product(product)).stock_qty == 5


async def test_lost_race_surfaces_to_callers_orchestrator(session_factory, make_product, monkeypatch):
    product = await make_product(stock_qty=5)
    order = paid_order("1005", (product.public_id, 1))

    async def lose(session, product_id, expected_qty, new_qty):
        return False

    monkeypatch.setattr(repository, "compare_and_set_stock", lose)

    async with session_factory() as session:
        async with session.begin():
            with pytest.raises(ConcurrencyConflictError):
                await services.process_order_inventory(order, session)


async def test_fulfillment_of_empty_product_is_still_a_reduction(session_factory, make_product, ledger_of):
    product = await make_product(stock_qty=0)
    order = paid_order("1006", (product.public_id, 2))

    async with session_factory() as session:
        async with session.begin():
            await services.process_order_inventory(order, session)

    [entry] = await ledger_of(product)
    assert entry.entry_kind == "fulfillment"
    assert entry.transaction_type == "reduction"
    assert (entry.previous_quantity, entry.new_quantity, entry.quantity) == (0, 0, 0)
    assert "requested 2" in entry.notes
