from __future__ import annotations

from typing import Iterable, Protocol

REQUESTED = "REQUESTED"
APPROVED = "APPROVED"
IN_TRANSIT = "IN_TRANSIT"
PARTIALLY_RECEIVED = "PARTIALLY_RECEIVED"
COMPLETED = "COMPLETED"
REJECTED = "REJECTED"
CANCELLED = "CANCELLED"

TRANSFER_STATUSES = (REQUESTED, APPROVED, IN_TRANSIT, PARTIALLY_RECEIVED, COMPLETED, REJECTED, CANCELLED)
TERMINAL_STATUSES = (COMPLETED, REJECTED, CANCELLED)
SHIPPABLE_STATUSES = (APPROVED, PARTIALLY_RECEIVED)
RECEIVABLE_STATUSES = (APPROVED, IN_TRANSIT, PARTIALLY_RECEIVED)

PENDING = "PENDING"
RECORD_APPROVED = "APPROVED"
RECORD_REJECTED = "REJECTED"

PRIORITIES = ("LOW", "NORMAL", "HIGH", "URGENT")


class ItemCounters(Protocol):
    qty_approved: int
    qty_shipped: int
    qty_received: int


def derive_fulfilment_status(items: Iterable[ItemCounters]) -> str:
    """Status of an approved transfer as a function of its item counters alone."""
    items = list(items)
    fully_shipped = all(item.qty_shipped == item.qty_approved for item in items)
    if fully_shipped and all(item.qty_received == item.qty_shipped for item in items):
        return COMPLETED
    if any(item.qty_received > 0 for item in items):
        return PARTIALLY_RECEIVED
    if fully_shipped:
        return IN_TRANSIT
    return APPROVED


def check_counter_order(item: ItemCounters) -> bool:
    return 0 <= item.qty_received <= item.qty_shipped <= item.qty_approved <= item.qty_requested
