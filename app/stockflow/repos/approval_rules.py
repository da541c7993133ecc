from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import selectinload

from app.stockflow.db.models import ApprovalRule

_SORT_COLUMNS = {
    "priority": ApprovalRule.priority,
    "name": ApprovalRule.name,
    "created_at": ApprovalRule.created_at,
}


@dataclass(frozen=True)
class ApprovalRuleQueryFilters:
    tenant_id: str
    archived: str = "active-only"
    is_active: bool | None = None
    sort_by: str = "priority"
    sort_dir: str = "desc"


class ApprovalRuleRepository:
    def __init__(self, db):
        self.db = db

    def get_rule(self, tenant_id: str, rule_id) -> ApprovalRule | None:
        stmt = (
            select(ApprovalRule)
            .where(ApprovalRule.id == rule_id, ApprovalRule.tenant_id == tenant_id)
            .options(selectinload(ApprovalRule.conditions), selectinload(ApprovalRule.levels))
        )
        return self.db.execute(stmt).scalars().first()

    def list_candidate_rules(self, tenant_id: str) -> list[ApprovalRule]:
        stmt = (
            select(ApprovalRule)
            .where(
                ApprovalRule.tenant_id == tenant_id,
                ApprovalRule.is_active.is_(True),
                ApprovalRule.is_archived.is_(False),
            )
            .options(selectinload(ApprovalRule.conditions), selectinload(ApprovalRule.levels))
            .order_by(ApprovalRule.priority.desc(), ApprovalRule.created_at.asc(), ApprovalRule.id.asc())
        )
        return self.db.execute(stmt).scalars().all()

    def _filtered(self, stmt, filters: ApprovalRuleQueryFilters):
        stmt = stmt.where(ApprovalRule.tenant_id == filters.tenant_id)
        if filters.archived == "active-only":
            stmt = stmt.where(ApprovalRule.is_archived.is_(False))
        elif filters.archived == "archived-only":
            stmt = stmt.where(ApprovalRule.is_archived.is_(True))
        if filters.is_active is not None:
            stmt = stmt.where(ApprovalRule.is_active.is_(filters.is_active))
        return stmt

    def list_rules(
        self,
        filters: ApprovalRuleQueryFilters,
        *,
        limit: int,
        cursor_rule: ApprovalRule | None = None,
    ) -> list[ApprovalRule]:
        column = _SORT_COLUMNS.get(filters.sort_by, ApprovalRule.priority)
        descending = filters.sort_dir == "desc"
        stmt = self._filtered(select(ApprovalRule), filters).options(
            selectinload(ApprovalRule.conditions), selectinload(ApprovalRule.levels)
        )
        if cursor_rule is not None:
            cursor_value = getattr(cursor_rule, column.key)
            if descending:
                stmt = stmt.where(
                    or_(column < cursor_value, and_(column == cursor_value, ApprovalRule.id < cursor_rule.id))
                )
            else:
                stmt = stmt.where(
                    or_(column > cursor_value, and_(column == cursor_value, ApprovalRule.id > cursor_rule.id))
                )
        if descending:
            stmt = stmt.order_by(column.desc(), ApprovalRule.id.desc())
        else:
            stmt = stmt.order_by(column.asc(), ApprovalRule.id.asc())
        return self.db.execute(stmt.limit(limit + 1)).scalars().all()

    def count_rules(self, filters: ApprovalRuleQueryFilters) -> int:
        stmt = self._filtered(select(func.count()).select_from(ApprovalRule), filters)
        return int(self.db.execute(stmt).scalar_one())

    def add(self, rule: ApprovalRule) -> ApprovalRule:
        self.db.add(rule)
        self.db.flush()
        return rule
