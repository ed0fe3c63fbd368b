import pytest

from checkout_service.datastore import MemoryDatastore
from checkout_service.errors import InsufficientStockError, NotFoundError, ValidationError
from checkout_service.inventory import InventoryAdjuster, product_key


@pytest.fixture()
def store():
    return MemoryDatastore({
        product_key("prod-1"): {"name": "Wool Coat", "stock": 10},
        product_key("prod-2"): {"name": "Scarf", "stock": 5},
    })


async def _stock(store, product_id):
    return (await store.get(product_key(product_id)))["stock"]


@pytest.mark.asyncio
async def test_decrements_every_product(store):
    remaining = await InventoryAdjuster(store).decrement_stock([("prod-1", 3), ("prod-2", 5)])

    assert remaining == {"prod-1": 7, "prod-2": 0}
    assert await _stock(store, "prod-1") == 7
    assert await _stock(store, "prod-2") == 0
    assert "updatedAt" in await store.get(product_key("prod-1"))


@pytest.mark.asyncio
async def test_insufficient_stock_changes_nothing(store):
    with pytest.raises(InsufficientStockError) as exc_info:
        await InventoryAdjuster(store).decrement_stock([("prod-1", 2), ("prod-2", 6)])

    error = exc_info.value
    assert (error.product_id, error.available, error.requested) == ("prod-2", 5, 6)
    assert await _stock(store, "prod-1") == 10
    assert await _stock(store, "prod-2") == 5


@pytest.mark.asyncio
async def test_missing_product_changes_nothing(store):
    with pytest.raises(NotFoundError) as exc_info:
        await InventoryAdjuster(store).decrement_stock([("prod-1", 1), ("ghost", 1)])

    assert exc_info.value.entity_id == "ghost"
    assert await _stock(store, "prod-1") == 10


@pytest.mark.asyncio
async def test_repeated_product_lines_are_checked_together(store):
    # 6 + 6 exceeds the stock of 10 even though each line alone fits
    with pytest.raises(InsufficientStockError) as exc_info:
        await InventoryAdjuster(store).decrement_stock([("prod-1", 6), ("prod-1", 6)])
    assert exc_info.value.requested == 12
    assert await _stock(store, "prod-1") == 10

    remaining = await InventoryAdjuster(store).decrement_stock([("prod-1", 4), ("prod-1", 6)])
    assert remaining == {"prod-1": 0}


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, -1])
async def test_non_positive_quantity_is_rejected(store, quantity):
    with pytest.raises(ValidationError):
        await InventoryAdjuster(store).decrement_stock([("prod-1", quantity)])
    assert await _stock(store, "prod-1") == 10


@pytest.mark.asyncio
async def test_missing_stock_field_counts_as_zero():
    store = MemoryDatastore({product_key("prod-3"): {"name": "Hat"}})
    with pytest.raises(InsufficientStockError):
        await InventoryAdjuster(store).decrement_stock([("prod-3", 1)])


@pytest.mark.asyncio
async def test_no_items_is_a_no_op(store):
    assert await InventoryAdjuster(store).decrement_stock([]) == {}
