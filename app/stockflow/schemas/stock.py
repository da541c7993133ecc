from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class StockReceiveRequest(BaseModel):
    branch_id: UUID
    product_id: UUID
    qty: int = Field(ge=1)
    unit_cost_pence: int | None = Field(default=None, ge=0)
    source_ref: str | None = Field(default=None, max_length=255)
    reason: str | None = None
    occurred_at: datetime | None = None


class StockAdjustRequest(BaseModel):
    branch_id: UUID
    product_id: UUID
    qty_delta: int
    unit_cost_pence: int | None = Field(default=None, ge=0)
    reason: str | None = None


class StockConsumeRequest(BaseModel):
    branch_id: UUID
    product_id: UUID
    qty: int = Field(ge=1)
    reason: str | None = None


class LedgerReverseRequest(BaseModel):
    reason: str | None = None


class StockLotResponse(BaseModel):
    id: str
    unit_cost_pence: int | None
    qty_received: int
    qty_remaining: int
    source_ref: str | None
    received_at: datetime


class LotDrawResponse(BaseModel):
    lot_id: str
    qty: int
    unit_cost_pence: int | None
    ledger_entry_id: str


class StockLevelsResponse(BaseModel):
    branch_id: str
    product_id: str
    qty_on_hand: int
    lots: list[StockLotResponse]
    trace_id: str


class StockMovementResponse(BaseModel):
    branch_id: str
    product_id: str
    qty_on_hand: int
    lot: StockLotResponse | None = None
    draws: list[LotDrawResponse] = []
    trace_id: str


class LedgerEntryResponse(BaseModel):
    id: str
    branch_id: str
    product_id: str
    kind: str
    qty_delta: int
    unit_cost_pence: int | None
    lot_id: str | None
    actor_user_id: str | None
    reason: str | None
    reverses_entry_id: str | None
    transfer_id: str | None
    occurred_at: datetime


class LedgerListResponse(BaseModel):
    items: list[LedgerEntryResponse]
    next_cursor: str | None
    trace_id: str


class LedgerReversalResponse(BaseModel):
    entry: LedgerEntryResponse
    qty_on_hand: int
    trace_id: str
