from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from app.stockflow.core.config import settings
from app.stockflow.core.error_catalog import conflict, not_found, validation_error
from app.stockflow.core.logging import log_event
from app.stockflow.db.models import ApprovalCondition, ApprovalLevel, ApprovalRecord, ApprovalRule
from app.stockflow.repos.approval_rules import ApprovalRuleQueryFilters, ApprovalRuleRepository
from app.stockflow.repos.tenants import TenantDirectoryRepository
from app.stockflow.schemas.approval_rules import ApprovalRuleCreateRequest, ApprovalRuleUpdateRequest
from app.stockflow.services.approval_conditions import (
    DESTINATION_BRANCH,
    SOURCE_BRANCH,
    TransferFacts,
    TransferLine,
    all_match,
    condition_from_row,
)
from app.stockflow.services.transfer_status import APPROVED, PENDING

logger = logging.getLogger("stockflow.approvals")

HYBRID = "HYBRID"
ARCHIVED_FILTERS = ("active-only", "archived-only", "all")
SORT_FIELDS = ("priority", "name", "created_at")


@dataclass(frozen=True)
class ApprovalRulePage:
    items: list[ApprovalRule]
    next_cursor: str | None
    total: int | None = None


@dataclass
class MatchResult:
    matched: bool
    rule: ApprovalRule | None = None
    records: list[ApprovalRecord] = field(default_factory=list)


class ApprovalRuleService:
    def __init__(self, db):
        self.db = db
        self.repo = ApprovalRuleRepository(db)
        self.directory = TenantDirectoryRepository(db)

    def create_rule(self, *, tenant_id: str, payload: ApprovalRuleCreateRequest, actor_user_id: str) -> ApprovalRule:
        self._validate_definition(tenant_id, payload)
        rule = ApprovalRule(
            tenant_id=tenant_id,
            name=payload.name.strip(),
            description=payload.description,
            is_active=payload.is_active,
            approval_mode=payload.approval_mode,
            priority=payload.priority,
            created_by_user_id=actor_user_id,
        )
        for position, condition in enumerate(payload.conditions):
            rule.conditions.append(
                ApprovalCondition(
                    position=position,
                    condition_type=condition.condition_type,
                    threshold=getattr(condition, "threshold", None),
                    branch_id=getattr(condition, "branch_id", None),
                )
            )
        for level in sorted(payload.levels, key=lambda item: item.level):
            rule.levels.append(
                ApprovalLevel(
                    level=level.level,
                    name=level.name.strip(),
                    required_role_id=level.required_role_id,
                    required_user_id=level.required_user_id,
                    approval_group=level.approval_group,
                )
            )
        self.repo.add(rule)
        log_event(logger, "approval_rule_created", tenant_id=str(tenant_id), rule_id=str(rule.id))
        return rule

    def _validate_definition(self, tenant_id: str, payload: ApprovalRuleCreateRequest) -> None:
        if not payload.conditions:
            raise validation_error("at least one condition is required", field="conditions")
        if not payload.levels:
            raise validation_error("at least one approval level is required", field="levels")

        numbers = sorted(level.level for level in payload.levels)
        if numbers != list(range(1, len(numbers) + 1)):
            raise validation_error(
                "levels must be numbered 1..N without gaps or duplicates",
                field="levels",
                levels=numbers,
            )

        for condition in payload.conditions:
            if condition.condition_type in (SOURCE_BRANCH, DESTINATION_BRANCH):
                branch = self.directory.get_branch(tenant_id, str(condition.branch_id))
                if branch is None or branch.is_archived:
                    raise validation_error(
                        "condition references an unknown branch",
                        field="conditions",
                        branch_id=str(condition.branch_id),
                    )

        for level in payload.levels:
            if level.approval_group and payload.approval_mode != HYBRID:
                raise validation_error(
                    "approval_group is only allowed in HYBRID mode",
                    field="levels",
                    level=level.level,
                )
            if level.required_role_id is not None:
                role = self.directory.get_role(tenant_id, str(level.required_role_id))
                if role is None or role.is_archived:
                    raise validation_error(
                        "level references an unknown role",
                        field="levels",
                        level=level.level,
                        role_id=str(level.required_role_id),
                    )
            if level.required_user_id is not None:
                if self.directory.get_membership(tenant_id, str(level.required_user_id)) is None:
                    raise validation_error(
                        "level references a user who is not a member of this tenant",
                        field="levels",
                        level=level.level,
                        user_id=str(level.required_user_id),
                    )

    def get_rule(self, *, tenant_id: str, rule_id) -> ApprovalRule:
        rule = self.repo.get_rule(tenant_id, rule_id)
        if rule is None:
            raise not_found("approval rule not found", rule_id=str(rule_id))
        return rule

    def list_rules(
        self,
        *,
        tenant_id: str,
        archived: str = "active-only",
        is_active: bool | None = None,
        sort_by: str = "priority",
        sort_dir: str = "desc",
        limit: int | None = None,
        cursor: str | None = None,
        include_total: bool = False,
    ) -> ApprovalRulePage:
        if archived not in ARCHIVED_FILTERS:
            raise validation_error("archived must be one of active-only, archived-only, all", archived=archived)
        if sort_by not in SORT_FIELDS:
            raise validation_error("sort_by must be one of priority, name, created_at", sort_by=sort_by)
        if sort_dir not in ("asc", "desc"):
            raise validation_error("sort_dir must be asc or desc", sort_dir=sort_dir)
        filters = ApprovalRuleQueryFilters(
            tenant_id=tenant_id,
            archived=archived,
            is_active=is_active,
            sort_by=sort_by,
            sort_dir=sort_dir,
        )
        page_size = min(max(limit or settings.LIST_DEFAULT_PAGE_SIZE, 1), settings.LIST_MAX_PAGE_SIZE)
        cursor_rule = None
        if cursor:
            cursor_rule = self.repo.get_rule(tenant_id, cursor)
            if cursor_rule is None:
                raise validation_error("cursor does not match an approval rule", cursor=cursor)
        rows = self.repo.list_rules(filters, limit=page_size, cursor_rule=cursor_rule)
        items = rows[:page_size]
        next_cursor = str(items[-1].id) if len(rows) > page_size and items else None
        total = self.repo.count_rules(filters) if include_total else None
        return ApprovalRulePage(items=items, next_cursor=next_cursor, total=total)

    def update_rule(self, *, tenant_id: str, rule_id, payload: ApprovalRuleUpdateRequest) -> ApprovalRule:
        rule = self.get_rule(tenant_id=tenant_id, rule_id=rule_id)
        changes = payload.model_dump(exclude_unset=True)
        if changes.get("name") is not None:
            rule.name = changes["name"].strip()
        if "description" in changes:
            rule.description = changes["description"]
        if changes.get("is_active") is not None:
            rule.is_active = changes["is_active"]
        if changes.get("priority") is not None:
            rule.priority = changes["priority"]
        if changes.get("approval_mode") is not None:
            mode = changes["approval_mode"]
            if mode != HYBRID and any(level.approval_group for level in rule.levels):
                raise validation_error(
                    "rule levels carry approval groups, which require HYBRID mode",
                    field="approval_mode",
                )
            rule.approval_mode = mode
        self.db.flush()
        return rule

    def archive_rule(self, *, tenant_id: str, rule_id, actor_user_id: str) -> ApprovalRule:
        rule = self.get_rule(tenant_id=tenant_id, rule_id=rule_id)
        if rule.is_archived:
            raise conflict("approval rule is already archived", rule_id=str(rule.id))
        rule.is_archived = True
        rule.archived_at = datetime.utcnow()
        rule.archived_by_user_id = actor_user_id
        self.db.flush()
        return rule

    def restore_rule(self, *, tenant_id: str, rule_id) -> ApprovalRule:
        rule = self.get_rule(tenant_id=tenant_id, rule_id=rule_id)
        if not rule.is_archived:
            raise conflict("approval rule is not archived", rule_id=str(rule.id))
        rule.is_archived = False
        rule.archived_at = None
        rule.archived_by_user_id = None
        self.db.flush()
        return rule


class ApprovalRuleEngine:
    """Picks the approval rule for a newly created transfer.

    Candidates are the tenant's active, non-archived rules by priority (highest
    first), then creation time, then id; the first rule whose conditions all
    match wins and its levels become PENDING approval records. A transfer no
    rule matches is approved outright for the requested quantities.
    """

    def __init__(self, db):
        self.db = db
        self.repo = ApprovalRuleRepository(db)

    def evaluate(self, transfer, products: dict) -> MatchResult:
        facts = TransferFacts(
            source_branch_id=str(transfer.source_branch_id),
            destination_branch_id=str(transfer.destination_branch_id),
            lines=tuple(
                TransferLine(
                    product_id=str(item.product_id),
                    qty_requested=item.qty_requested,
                    price_pence=products[str(item.product_id)].price_pence,
                )
                for item in transfer.items
            ),
        )
        for rule in self.repo.list_candidate_rules(str(transfer.tenant_id)):
            conditions = [condition_from_row(row) for row in rule.conditions]
            if not conditions or not all_match(conditions, facts):
                continue
            records = [
                ApprovalRecord(
                    tenant_id=transfer.tenant_id,
                    level=level.level,
                    level_name=level.name,
                    required_role_id=level.required_role_id,
                    required_user_id=level.required_user_id,
                    approval_group=level.approval_group,
                    status=PENDING,
                )
                for level in rule.levels
            ]
            transfer.approval_records.extend(records)
            transfer.requires_multi_level_approval = True
            transfer.approval_rule_id = rule.id
            transfer.approval_mode = rule.approval_mode
            log_event(
                logger,
                "approval_rule_matched",
                tenant_id=str(transfer.tenant_id),
                transfer_id=str(transfer.id),
                rule_id=str(rule.id),
                levels=len(records),
            )
            return MatchResult(matched=True, rule=rule, records=records)

        for item in transfer.items:
            item.qty_approved = item.qty_requested
        transfer.requires_multi_level_approval = False
        transfer.status = APPROVED
        transfer.reviewed_by_user_id = transfer.requested_by_user_id
        transfer.reviewed_at = datetime.utcnow()
        return MatchResult(matched=False)
