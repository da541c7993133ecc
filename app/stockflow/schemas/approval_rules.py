from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

ApprovalMode = Literal["SEQUENTIAL", "PARALLEL", "HYBRID"]


class TotalQtyThresholdCondition(BaseModel):
    condition_type: Literal["TOTAL_QTY_THRESHOLD"]
    threshold: int = Field(ge=0)


class TotalValueThresholdCondition(BaseModel):
    condition_type: Literal["TOTAL_VALUE_THRESHOLD"]
    threshold: int = Field(ge=0, description="Total value in pence (qty x product price).")


class SourceBranchCondition(BaseModel):
    condition_type: Literal["SOURCE_BRANCH"]
    branch_id: UUID


class DestinationBranchCondition(BaseModel):
    condition_type: Literal["DESTINATION_BRANCH"]
    branch_id: UUID


ApprovalConditionIn = Annotated[
    Union[
        TotalQtyThresholdCondition,
        TotalValueThresholdCondition,
        SourceBranchCondition,
        DestinationBranchCondition,
    ],
    Field(discriminator="condition_type"),
]


class ApprovalLevelIn(BaseModel):
    level: int = Field(ge=1)
    name: str = Field(min_length=1, max_length=255)
    required_role_id: UUID | None = None
    required_user_id: UUID | None = None
    approval_group: str | None = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def ensure_single_requirement(self):
        if (self.required_role_id is None) == (self.required_user_id is None):
            raise ValueError("exactly one of required_role_id or required_user_id must be set")
        return self


class ApprovalRuleCreateRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "Large transfers",
                "description": "Two sign-offs above 100 units",
                "is_active": True,
                "approval_mode": "SEQUENTIAL",
                "priority": 10,
                "conditions": [{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 100}],
                "levels": [
                    {"level": 1, "name": "Manager", "required_role_id": "5d5b2a0e-2f3e-4bd4-9a43-0b7c3c9f9d10"},
                    {"level": 2, "name": "Director", "required_user_id": "2a1c9b7e-8c4d-4e8f-b0a1-2f9e7d6c5b4a"},
                ],
            }
        }
    }

    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    is_active: bool = True
    approval_mode: ApprovalMode = "SEQUENTIAL"
    priority: int = 0
    conditions: list[ApprovalConditionIn]
    levels: list[ApprovalLevelIn]


class ApprovalRuleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    is_active: bool | None = None
    approval_mode: ApprovalMode | None = None
    priority: int | None = None


class ApprovalConditionResponse(BaseModel):
    id: str
    condition_type: str
    threshold: int | None
    branch_id: str | None


class ApprovalLevelResponse(BaseModel):
    id: str
    level: int
    name: str
    required_role_id: str | None
    required_user_id: str | None
    approval_group: str | None


class ApprovalRuleResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str | None
    is_active: bool
    is_archived: bool
    archived_at: datetime | None
    approval_mode: str
    priority: int
    created_at: datetime
    conditions: list[ApprovalConditionResponse]
    levels: list[ApprovalLevelResponse]
    trace_id: str | None = None


class ApprovalRuleListResponse(BaseModel):
    items: list[ApprovalRuleResponse]
    next_cursor: str | None
    total: int | None = None
    trace_id: str
