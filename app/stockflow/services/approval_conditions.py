"""Approval rule conditions as tagged variants.

Each condition is a frozen dataclass keyed by its ``condition_type`` tag. Rules
AND their conditions together; a rule with every condition matching applies.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

TOTAL_QTY_THRESHOLD = "TOTAL_QTY_THRESHOLD"
TOTAL_VALUE_THRESHOLD = "TOTAL_VALUE_THRESHOLD"
SOURCE_BRANCH = "SOURCE_BRANCH"
DESTINATION_BRANCH = "DESTINATION_BRANCH"
CONDITION_TYPES = (TOTAL_QTY_THRESHOLD, TOTAL_VALUE_THRESHOLD, SOURCE_BRANCH, DESTINATION_BRANCH)


@dataclass(frozen=True)
class TransferLine:
    product_id: str
    qty_requested: int
    price_pence: int


@dataclass(frozen=True)
class TransferFacts:
    """What a rule is allowed to look at when a transfer is created."""

    source_branch_id: str
    destination_branch_id: str
    lines: tuple[TransferLine, ...]

    @property
    def total_qty(self) -> int:
        return sum(line.qty_requested for line in self.lines)

    @property
    def total_value_pence(self) -> int:
        return sum(line.qty_requested * line.price_pence for line in self.lines)


@dataclass(frozen=True)
class TotalQtyThreshold:
    threshold: int
    condition_type: str = TOTAL_QTY_THRESHOLD

    def matches(self, facts: TransferFacts) -> bool:
        return facts.total_qty > self.threshold


@dataclass(frozen=True)
class TotalValueThreshold:
    threshold: int
    condition_type: str = TOTAL_VALUE_THRESHOLD

    def matches(self, facts: TransferFacts) -> bool:
        return facts.total_value_pence > self.threshold


@dataclass(frozen=True)
class SourceBranch:
    branch_id: str
    condition_type: str = SOURCE_BRANCH

    def matches(self, facts: TransferFacts) -> bool:
        return str(facts.source_branch_id) == str(self.branch_id)


@dataclass(frozen=True)
class DestinationBranch:
    branch_id: str
    condition_type: str = DESTINATION_BRANCH

    def matches(self, facts: TransferFacts) -> bool:
        return str(facts.destination_branch_id) == str(self.branch_id)


Condition = Union[TotalQtyThreshold, TotalValueThreshold, SourceBranch, DestinationBranch]


def condition_from_row(row) -> Condition:
    """Build the variant for a stored ``ApprovalCondition`` row."""
    if row.condition_type == TOTAL_QTY_THRESHOLD:
        return TotalQtyThreshold(threshold=row.threshold)
    if row.condition_type == TOTAL_VALUE_THRESHOLD:
        return TotalValueThreshold(threshold=row.threshold)
    if row.condition_type == SOURCE_BRANCH:
        return SourceBranch(branch_id=str(row.branch_id))
    if row.condition_type == DESTINATION_BRANCH:
        return DestinationBranch(branch_id=str(row.branch_id))
    raise ValueError(f"unknown condition type: {row.condition_type}")


def all_match(conditions: Iterable[Condition], facts: TransferFacts) -> bool:
    return all(condition.matches(facts) for condition in conditions)
