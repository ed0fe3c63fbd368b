"""Tests for order ids, order numbers and the transactional order counter."""

import asyncio
import re

import pytest

from checkout_service.datastore import MemoryDatastore
from checkout_service.errors import ValidationError
from checkout_service.identity import (
    ORDER_COUNTER_KEY,
    OrderCounter,
    generate_order_id,
    generate_order_number,
)

ORDER_NUMBER = re.compile(r"^ORD-\d{6}-[A-Z0-9]{8}$")


def test_order_number_format():
    number = generate_order_number(42)
    assert ORDER_NUMBER.match(number)
    assert number.startswith("ORD-000042-")


def test_order_number_at_upper_bound():
    assert generate_order_number(999_999).startswith("ORD-999999-")


def test_order_numbers_sort_by_counter():
    counters = [1, 2, 9, 10, 99, 100, 12_345, 999_999]
    numbers = [generate_order_number(c) for c in counters]
    assert sorted(numbers) == numbers


def test_suffix_is_random():
    suffixes = {generate_order_number(7)[-8:] for _ in range(20)}
    assert len(suffixes) > 1


@pytest.mark.parametrize("counter, constraint", [
    (0, "positive"),
    (-5, "positive"),
    (1_000_000, "overflow"),
    (1.5, "integer"),
    ("12", "integer"),
    (None, "integer"),
    (True, "integer"),
])
def test_invalid_counters_are_rejected(counter, constraint):
    with pytest.raises(ValidationError) as exc_info:
        generate_order_number(counter)
    assert exc_info.value.constraint == constraint


def test_order_ids_are_unique():
    ids = {generate_order_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(order_id.startswith("order_") for order_id in ids)


@pytest.mark.asyncio
async def test_counter_starts_at_one_and_increments():
    store = MemoryDatastore()
    counter = OrderCounter(store)

    assert await counter.next_value() == 1
    assert await counter.next_value() == 2

    document = await store.get(ORDER_COUNTER_KEY)
    assert document["value"] == 2
    assert "updatedAt" in document


@pytest.mark.asyncio
async def test_counter_continues_from_stored_value():
    store = MemoryDatastore({ORDER_COUNTER_KEY: {"value": 41}})
    assert await OrderCounter(store).next_value() == 42


@pytest.mark.asyncio
async def test_concurrent_increments_never_repeat():
    counter = OrderCounter(MemoryDatastore())
    values = await asyncio.gather(*(counter.next_value() for _ in range(25)))
    assert sorted(values) == list(range(1, 26))
