"""Inventory ledger: conditional updates keep both counts consistent."""

import pytest

from services.inventory_service.repository import InventoryLedger
from shared.database import transaction
from shared.errors import ConflictError, InsufficientStock, NotFoundError, ValidationError


def test_reserve_moves_units_into_reserved(session_factory, make_product, stock):
    product_id = make_product(count_in_stock=5)

    with transaction(session_factory) as db:
        InventoryLedger(db).reserve(product_id, 2)

    assert stock(product_id) == (3, 2)


def test_reserve_rejects_more_than_available(session_factory, make_product, stock):
    product_id = make_product(name="Linen Kaftan", count_in_stock=1)

    with pytest.raises(InsufficientStock) as exc:
        with transaction(session_factory) as db:
            InventoryLedger(db).reserve(product_id, 2)

    assert exc.value.message == "Linen Kaftan: Only 1 left in stock"
    assert exc.value.remaining == 1
    assert stock(product_id) == (1, 0)


def test_release_confirm_and_direct_decrement(session_factory, make_product, stock):
    product_id = make_product(count_in_stock=10)

    with transaction(session_factory) as db:
        ledger = InventoryLedger(db)
        ledger.reserve(product_id, 4)
        ledger.release(product_id, 1)
        ledger.confirm(product_id, 2)
        ledger.direct_decrement(product_id, 3)

    # 10 - 4 + 1 - 3 available, 4 - 1 - 2 still held
    assert stock(product_id) == (4, 1)


def test_cannot_release_or_confirm_more_than_held(session_factory, make_product, stock):
    product_id = make_product(count_in_stock=5)
    with transaction(session_factory) as db:
        InventoryLedger(db).reserve(product_id, 1)

    for operation in ("release", "confirm"):
        with pytest.raises(ConflictError):
            with transaction(session_factory) as db:
                getattr(InventoryLedger(db), operation)(product_id, 2)

    assert stock(product_id) == (4, 1)


def test_direct_decrement_never_goes_negative(session_factory, make_product, stock):
    product_id = make_product(count_in_stock=2)

    with pytest.raises(InsufficientStock):
        with transaction(session_factory) as db:
            InventoryLedger(db).direct_decrement(product_id, 3)

    assert stock(product_id) == (2, 0)


def test_zero_is_a_noop_and_bad_quantities_are_rejected(session_factory, make_product, stock):
    product_id = make_product(count_in_stock=2)

    with transaction(session_factory) as db:
        InventoryLedger(db).reserve(product_id, 0)
    assert stock(product_id) == (2, 0)

    for bad in (-1, 1.5, True):
        with pytest.raises(ValidationError):
            with transaction(session_factory) as db:
                InventoryLedger(db).reserve(product_id, bad)


def test_unknown_product(session_factory):
    with pytest.raises(NotFoundError):
        with transaction(session_factory) as db:
            InventoryLedger(db).reserve("missing", 1)


def test_stale_reader_cannot_take_the_last_unit_twice(session_factory, make_product, stock):
    """Both sessions see one unit available; the guard lets only the first through."""
    product_id = make_product(count_in_stock=1)

    first = session_factory()
    second = session_factory()
    try:
        assert InventoryLedger(first).get_stock_level(product_id) == 1
        assert InventoryLedger(second).get_stock_level(product_id) == 1

        InventoryLedger(first).reserve(product_id, 1)
        first.commit()

        with pytest.raises(InsufficientStock):
            InventoryLedger(second).reserve(product_id, 1)
        second.rollback()
    finally:
        first.close()
        second.close()

    assert stock(product_id) == (0, 1)


def test_counts_are_conserved_over_a_sequence(session_factory, make_product, stock):
    product_id = make_product(count_in_stock=20)
    operations = [("reserve", 5), ("reserve", 3), ("release", 2), ("confirm", 4), ("direct_decrement", 6)]

    for name, quantity in operations:
        with transaction(session_factory) as db:
            getattr(InventoryLedger(db), name)(product_id, quantity)

    # Units leave the system only through confirm and direct_decrement
    available, reserved = stock(product_id)
    assert available + reserved == 20 - 4 - 6
    assert (available, reserved) == (8, 2)
