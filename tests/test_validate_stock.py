import uuid
import pytest
from stockledger.common.custom_exceptions import ValidationError
from stockledger.inventory import services
from stockledger.inventory.models import ValidationLine


async def test_out_of_stock_line_is_reported(session_factory, make_product):
    product = await make_product(stock_qty=7, name="Sunflower microgreens")

    result = await services.validate_stock([ValidationLine(id=str(product.public_id), quantity=1000)],
                                           session_factory=session_factory)

    assert result.valid is False
    [line] = result.out_of_stock_items
    assert line.id == str(product.public_id)
    assert line.requested == 1000
    assert line.available == 7
    assert line.name == "Sunflower microgreens"


async def test_all_lines_available(session_factory, make_product):
    a = await make_product(stock_qty=3)
    b = await make_product(stock_qty=1)

    result = await services.validate_stock(
        [ValidationLine(id=str(a.public_id), quantity=3), ValidationLine(id=str(b.public_id), quantity=1)],
        session_factory=session_factory,
    )

    assert result.valid is True
    assert result.out_of_stock_items == []
    assert [line.in_stock for line in result.items] == [True, True]


async def test_unknown_and_malformed_ids(session_factory, make_product):
    product = await make_product(stock_qty=3)
    missing = str(uuid.uuid4())

    result = await services.validate_stock(
        [
            ValidationLine(id=str(product.public_id), quantity=1),
            ValidationLine(id=missing, quantity=1),
            ValidationLine(id="garbage", quantity=1),
        ],
        session_factory=session_factory,
    )

    assert result.valid is False
    assert [line.id for line in result.out_of_stock_items] == [missing, "garbage"]
    for line in result.out_of_stock_items:
        assert line.available == 0
        assert line.message == "Product not found"


async def test_validation_has_no_side_effects(session_factory, make_product, reload_product, ledger_of):
    product = await make_product(stock_qty=4)
    lines = [ValidationLine(id=str(product.public_id), quantity=2)]

    first = await services.validate_stock(lines, session_factory=session_factory)
    for _ in range(3):
        assert await services.validate_stock(lines, session_factory=session_factory) == first

    reloaded = await reload_product(product)
    assert reloaded.stock_qty == 4
    assert reloaded.version == product.version
    assert await ledger_of(product) == []


async def test_empty_cart_is_rejected(session_factory):
    with pytest.raises(ValidationError):
        await services.validate_stock([], session_factory=session_factory)
