from __future__ import annotations

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

TransferPriority = Literal["LOW", "NORMAL", "HIGH", "URGENT"]


class TransferItemCreate(BaseModel):
    product_id: UUID
    qty_requested: int = Field(ge=1)


class TransferCreateRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "source_branch_id": "0b8f3c52-3f0e-4c1f-9d0b-1c2a6f8e7d31",
                "destination_branch_id": "7c1e9d44-5a2b-4e63-8f0a-9b3d2c1e0f42",
                "items": [{"product_id": "3e4f5a6b-7c8d-4e9f-a0b1-c2d3e4f5a6b7", "qty_requested": 10}],
                "priority": "HIGH",
                "request_notes": "Weekend restock",
            }
        }
    }

    source_branch_id: UUID
    destination_branch_id: UUID
    items: list[TransferItemCreate]
    expected_delivery_date: date | None = None
    request_notes: str | None = None
    order_notes: str | None = None
    priority: TransferPriority = "NORMAL"


class ShipItem(BaseModel):
    item_id: UUID
    qty_to_ship: int = Field(ge=1)
    expected_qty_shipped: int | None = Field(default=None, ge=0)


class ShipRequest(BaseModel):
    items: list[ShipItem]


class ReceiveItem(BaseModel):
    item_id: UUID
    qty_received: int = Field(ge=1)
    expected_qty_received: int | None = Field(default=None, ge=0)


class ReceiveRequest(BaseModel):
    items: list[ReceiveItem]


class ApprovalDecisionRequest(BaseModel):
    notes: str | None = None


class ReverseRequest(BaseModel):
    reason: str


class PriorityUpdateRequest(BaseModel):
    priority: TransferPriority


class ShipmentBatchLot(BaseModel):
    lot_id: str
    qty: int
    unit_cost_pence: int | None
    ledger_entry_id: str


class ShipmentBatch(BaseModel):
    batch_number: int
    qty: int
    shipped_at: datetime
    shipped_by_user_id: str
    lots: list[ShipmentBatchLot]


class TransferItemResponse(BaseModel):
    id: str
    line_number: int
    product_id: str
    qty_requested: int
    qty_approved: int
    qty_shipped: int
    qty_received: int
    avg_unit_cost_pence: int | None
    shipment_batches: list[ShipmentBatch]


class ApprovalRecordResponse(BaseModel):
    level: int
    level_name: str
    status: str
    required_role_id: str | None
    required_user_id: str | None
    approval_group: str | None
    approved_by_user_id: str | None
    decided_at: datetime | None
    notes: str | None


class TransferResponse(BaseModel):
    id: str
    tenant_id: str
    transfer_number: str
    source_branch_id: str
    destination_branch_id: str
    status: str
    priority: str
    requested_by_user_id: str
    reviewed_by_user_id: str | None
    shipped_by_user_id: str | None
    expected_delivery_date: date | None
    request_notes: str | None
    order_notes: str | None
    requires_multi_level_approval: bool
    approval_rule_id: str | None
    approval_mode: str | None
    reversal_of_transfer_id: str | None
    reversed_by_transfer_id: str | None
    reversal_reason: str | None
    requested_at: datetime
    reviewed_at: datetime | None
    shipped_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    version: int
    items: list[TransferItemResponse]
    approval_records: list[ApprovalRecordResponse]
    trace_id: str | None = None


class TransferListResponse(BaseModel):
    items: list[TransferResponse]
    next_cursor: str | None
    trace_id: str


class ApprovalProgressResponse(BaseModel):
    transfer_id: str
    status: str
    approval_mode: str | None
    records: list[ApprovalRecordResponse]
    trace_id: str
