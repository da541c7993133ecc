from __future__ import annotations

import argparse
import json
import logging
import sys
from collections import Counter
from dataclasses import asdict

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.ops.integrity_checks import IntegrityFinding, resolve_tenants, run_integrity_checks
from app.stockflow.core.config import settings
from app.stockflow.core.logging import log_event

logger = logging.getLogger("stockflow.ops.integrity")


def _summarize(findings: list[IntegrityFinding], tenant_count: int) -> dict:
    severities = Counter(finding.severity for finding in findings)
    return {
        "tenants_scanned": tenant_count,
        "total": len(findings),
        "critical": severities.get("CRITICAL", 0),
        "warn": severities.get("WARN", 0),
        "by_check": dict(sorted(Counter(finding.check_id for finding in findings).items())),
    }


def _format_text(summary: dict, findings: list[IntegrityFinding]) -> str:
    lines = [
        "Stockflow integrity scan",
        f"Tenants scanned: {summary['tenants_scanned']}",
        f"Findings: {summary['total']} (CRITICAL {summary['critical']}, WARN {summary['warn']})",
    ]
    for check_id, count in summary["by_check"].items():
        lines.append(f"  {check_id}: {count}")
    lines.append("")
    for finding in sorted(findings, key=lambda f: (f.check_id, f.tenant_id, f.entity_id or "")):
        lines.append(
            f"[{finding.severity}] {finding.check_id} tenant={finding.tenant_id} "
            f"{finding.entity}={finding.entity_id or '-'} {finding.message}"
        )
        if finding.details:
            lines.append(f"  details={json.dumps(finding.details, default=str, sort_keys=True)}")
    return "\n".join(lines)


def scan(db, tenant: str, checks: set[str] | None = None) -> tuple[dict, list[IntegrityFinding]]:
    tenant_ids = resolve_tenants(db, tenant)
    findings: list[IntegrityFinding] = []
    for tenant_id in tenant_ids:
        findings.extend(run_integrity_checks(db, tenant_id))
    if checks:
        findings = [finding for finding in findings if finding.check_id in checks]
    return _summarize(findings, len(tenant_ids)), findings


def run_scan(
    tenant: str,
    output_format: str,
    fail_on_critical: bool,
    *,
    database_url: str | None = None,
    checks: set[str] | None = None,
) -> int:
    if not settings.OPS_ENABLE_INTEGRITY_SCAN:
        print("Integrity scan disabled by OPS_ENABLE_INTEGRITY_SCAN.", file=sys.stderr)
        return 2
    engine = create_engine(database_url or settings.DATABASE_URL, future=True)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    try:
        with SessionLocal() as db:
            summary, findings = scan(db, tenant, checks)
    finally:
        engine.dispose()
    log_event(logger, "integrity_scan_finished", tenant=tenant, **summary)
    if output_format == "json":
        print(json.dumps({"summary": summary, "findings": [asdict(f) for f in findings]}, indent=2, default=str))
    else:
        print(_format_text(summary, findings))
    if fail_on_critical and summary["critical"] > 0:
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Stock ledger and transfer integrity scan")
    parser.add_argument("--tenant", required=True, help="Tenant ID or 'all'")
    parser.add_argument("--format", choices=["json", "text"], default="text")
    parser.add_argument("--check", action="append", dest="checks", help="Only report this check id (repeatable)")
    parser.add_argument("--database-url", default=None)
    parser.add_argument("--fail-on-critical", action="store_true")
    args = parser.parse_args(argv)
    return run_scan(
        args.tenant,
        args.format,
        args.fail_on_critical,
        database_url=args.database_url,
        checks=set(args.checks) if args.checks else None,
    )


if __name__ == "__main__":
    raise SystemExit(main())
