from types import SimpleNamespace

from app.stockflow.services.approval_submissions import blocking_levels
from app.stockflow.services.transfers import weighted_average_cost


def test_weighted_average_cost_rounds_half_up():
    assert weighted_average_cost([{"qty": 1, "unit_cost_pence": 100}, {"qty": 1, "unit_cost_pence": 101}]) == 101
    assert weighted_average_cost([{"qty": 2, "unit_cost_pence": 100}, {"qty": 1, "unit_cost_pence": 101}]) == 100
    assert weighted_average_cost([{"qty": 5, "unit_cost_pence": 100}, {"qty": 2, "unit_cost_pence": 200}]) == 129


def test_weighted_average_cost_ignores_uncosted_lots():
    assert weighted_average_cost([{"qty": 3, "unit_cost_pence": None}, {"qty": 1, "unit_cost_pence": 80}]) == 80
    assert weighted_average_cost([{"qty": 3, "unit_cost_pence": None}]) is None
    assert weighted_average_cost([]) is None


def _record(level, status="PENDING", group=None):
    return SimpleNamespace(level=level, status=status, approval_group=group)


def test_sequential_blocks_on_every_lower_level():
    records = [_record(1, "APPROVED"), _record(2), _record(3)]
    assert blocking_levels(records, records[2], "SEQUENTIAL") == [2]
    assert blocking_levels(records, records[1], "SEQUENTIAL") == []


def test_parallel_never_blocks():
    records = [_record(1), _record(2)]
    assert blocking_levels(records, records[1], "PARALLEL") == []


def test_hybrid_blocks_within_group_only():
    records = [_record(1, group="ops"), _record(2, group="finance"), _record(3, group="ops"), _record(4)]
    assert blocking_levels(records, records[2], "HYBRID") == [1]
    assert blocking_levels(records, records[1], "HYBRID") == []
    assert blocking_levels(records, records[3], "HYBRID") == []
