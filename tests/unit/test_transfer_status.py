from types import SimpleNamespace

import pytest

from app.stockflow.services.transfer_status import check_counter_order, derive_fulfilment_status


def _item(requested, approved, shipped, received):
    return SimpleNamespace(qty_requested=requested, qty_approved=approved, qty_shipped=shipped, qty_received=received)


@pytest.mark.parametrize(
    ("items", "expected"),
    [
        ([_item(5, 5, 0, 0)], "APPROVED"),
        ([_item(5, 5, 3, 0)], "APPROVED"),
        ([_item(5, 5, 5, 0)], "IN_TRANSIT"),
        ([_item(5, 5, 5, 2)], "PARTIALLY_RECEIVED"),
        ([_item(5, 5, 3, 3)], "PARTIALLY_RECEIVED"),
        ([_item(5, 5, 5, 5), _item(2, 2, 2, 0)], "PARTIALLY_RECEIVED"),
        ([_item(5, 5, 5, 5), _item(2, 2, 2, 2)], "COMPLETED"),
    ],
)
def test_status_follows_item_counters(items, expected):
    assert derive_fulfilment_status(items) == expected


def test_counter_order():
    assert check_counter_order(_item(5, 5, 4, 4))
    assert check_counter_order(_item(5, 0, 0, 0))
    assert not check_counter_order(_item(5, 5, 3, 4))
    assert not check_counter_order(_item(5, 6, 0, 0))
    assert not check_counter_order(_item(5, 5, 6, 0))
