from types import SimpleNamespace

import pytest

from app.stockflow.services.approval_conditions import (
    DestinationBranch,
    SourceBranch,
    TotalQtyThreshold,
    TotalValueThreshold,
    TransferFacts,
    TransferLine,
    all_match,
    condition_from_row,
)

FACTS = TransferFacts(
    source_branch_id="branch-a",
    destination_branch_id="branch-b",
    lines=(
        TransferLine(product_id="p1", qty_requested=4, price_pence=250),
        TransferLine(product_id="p2", qty_requested=6, price_pence=100),
    ),
)


def test_totals():
    assert FACTS.total_qty == 10
    assert FACTS.total_value_pence == 1600


def test_thresholds_are_strict():
    assert TotalQtyThreshold(threshold=9).matches(FACTS)
    assert not TotalQtyThreshold(threshold=10).matches(FACTS)
    assert TotalValueThreshold(threshold=1599).matches(FACTS)
    assert not TotalValueThreshold(threshold=1600).matches(FACTS)


def test_branch_conditions():
    assert SourceBranch(branch_id="branch-a").matches(FACTS)
    assert not SourceBranch(branch_id="branch-b").matches(FACTS)
    assert DestinationBranch(branch_id="branch-b").matches(FACTS)


def test_conditions_are_anded():
    assert all_match([TotalQtyThreshold(threshold=1), SourceBranch(branch_id="branch-a")], FACTS)
    assert not all_match([TotalQtyThreshold(threshold=1), SourceBranch(branch_id="branch-z")], FACTS)


def test_condition_from_row():
    row = SimpleNamespace(condition_type="TOTAL_VALUE_THRESHOLD", threshold=500, branch_id=None)
    assert condition_from_row(row) == TotalValueThreshold(threshold=500)

    row = SimpleNamespace(condition_type="DESTINATION_BRANCH", threshold=None, branch_id="branch-b")
    assert condition_from_row(row) == DestinationBranch(branch_id="branch-b")

    with pytest.raises(ValueError):
        condition_from_row(SimpleNamespace(condition_type="WEEKDAY", threshold=None, branch_id=None))
