from decimal import Decimal

import pytest

from services.common.results import Failure
from services.order.app.errors import ErrorKind


@pytest.mark.asyncio
async def test_get_or_create_returns_empty_persisted_cart(carts):
    cart = await carts.get_or_create("alice")
    again = await carts.get_or_create("alice")

    assert cart.is_empty
    assert again.customer_id == "alice"
    assert again.total_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_add_item_captures_price_and_persists(carts):
    cart = await carts.add_item("alice", 1, 2)

    assert cart.items[0].unit_price == Decimal("19.99")
    assert cart.total_amount == Decimal("39.98")
    stored = await carts.get_or_create("alice")
    assert stored.total_amount == Decimal("39.98")
    assert stored.items[0].quantity == 2


@pytest.mark.asyncio
async def test_adding_book_twice_combines_quantities(carts):
    await carts.add_item("alice", 5, 3)
    cart = await carts.add_item("alice", 5, 3)

    assert len(cart.items) == 1
    assert cart.items[0].quantity == 6
    assert cart.total_amount == Decimal("45.00")


@pytest.mark.asyncio
async def test_add_keeps_original_price_after_catalog_change(carts, inventory_stub):
    await carts.add_item("alice", 1, 1)
    inventory_stub.books[1]["price"] = 25.00

    cart = await carts.add_item("alice", 1, 1)

    assert cart.items[0].unit_price == Decimal("19.99")
    assert cart.total_amount == Decimal("39.98")


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, -2])
async def test_add_rejects_non_positive_quantity(carts, inventory_stub, quantity):
    result = await carts.add_item("alice", 1, quantity)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.INVALID_QUANTITY
    assert result.http_status == 400
    assert inventory_stub.calls == []


@pytest.mark.asyncio
async def test_add_unknown_book(carts):
    result = await carts.add_item("alice", 404, 1)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.ITEM_NOT_FOUND


@pytest.mark.asyncio
async def test_combined_quantity_checked_against_stock(carts):
    await carts.add_item("alice", 1, 8)

    result = await carts.add_item("alice", 1, 3)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.INSUFFICIENT_STOCK
    stored = await carts.get_or_create("alice")
    assert stored.items[0].quantity == 8


@pytest.mark.asyncio
async def test_inventory_down_is_reported_not_guessed(carts, inventory_stub):
    inventory_stub.down = True

    result = await carts.add_item("alice", 1, 1)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.INVENTORY_UNAVAILABLE
    assert result.http_status == 503


@pytest.mark.asyncio
async def test_update_quantity(carts):
    await carts.add_item("alice", 1, 1)

    cart = await carts.update_quantity("alice", 1, 4)

    assert cart.items[0].quantity == 4
    assert cart.total_amount == Decimal("79.96")


@pytest.mark.asyncio
async def test_update_quantity_beyond_stock(carts):
    await carts.add_item("alice", 1, 1)

    result = await carts.update_quantity("alice", 1, 11)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.INSUFFICIENT_STOCK


@pytest.mark.asyncio
async def test_update_quantity_to_zero_removes_line(carts, inventory_stub):
    await carts.add_item("alice", 1, 1)
    await carts.add_item("alice", 5, 2)
    inventory_stub.calls.clear()

    cart = await carts.update_quantity("alice", 1, 0)

    assert [item.book_id for item in cart.items] == [5]
    assert cart.total_amount == Decimal("15.00")
    assert inventory_stub.calls == []


@pytest.mark.asyncio
async def test_update_quantity_of_absent_line(carts):
    result = await carts.update_quantity("alice", 1, 2)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.ITEM_NOT_FOUND_IN_CART


@pytest.mark.asyncio
async def test_remove_item(carts):
    await carts.add_item("alice", 1, 1)
    await carts.add_item("alice", 5, 1)

    cart = await carts.remove_item("alice", 1)

    assert [item.book_id for item in cart.items] == [5]
    assert cart.total_amount == Decimal("7.50")


@pytest.mark.asyncio
async def test_remove_absent_item_fails(carts):
    await carts.add_item("alice", 5, 1)

    result = await carts.remove_item("alice", 1)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.ITEM_NOT_FOUND_IN_CART
    assert result.http_status == 404


@pytest.mark.asyncio
async def test_clear(carts):
    await carts.add_item("alice", 1, 2)

    cart = await carts.clear("alice")

    assert cart.is_empty
    assert cart.total_amount == Decimal("0.00")
    assert (await carts.get_or_create("alice")).is_empty


@pytest.mark.asyncio
async def test_carts_are_per_customer(carts):
    await carts.add_item("alice", 1, 1)
    await carts.add_item("bob", 5, 2)

    alice = await carts.get_or_create("alice")
    bob = await carts.get_or_create("bob")

    assert [item.book_id for item in alice.items] == [1]
    assert [item.book_id for item in bob.items] == [5]
