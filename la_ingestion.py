#!/usr/bin/env python3
"""
Log Analytics Ingestion Analysis

Measures 30 days of billable ingestion per workspace, splits it by table plan
(Analytics / Basic / Auxiliary), and recommends a dedicated cluster commitment
tier for the Analytics volume.

Usage:
  la-ingestion                                   # every accessible workspace
  la-ingestion --region eastus --tag-key env --tag-value prod
  la-ingestion --subscriptions subs.json --output report.json
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from pathlib import Path
from typing import Optional

from la_azure import (
    PLAN_ANALYTICS,
    PLAN_AUXILIARY,
    PLAN_BASIC,
    AuthenticationError,
    AzCliError,
    AzureCli,
    QueryClient,
    QueryError,
    ResourceClient,
    Workspace,
    configure_logging,
    discover_workspaces,
    list_subscriptions,
    load_subscription_allow_list,
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

LOOKBACK_DAYS = 30

# Below this average, a dedicated cluster cannot pay for itself
TIER_FLOOR_GB_PER_DAY = 100

# Analytics pay-as-you-go list price, USD per GB
PAYG_PRICE_PER_GB = 2.30

# Commitment tiers: (GB/day, USD/day). Must stay strictly increasing in both.
_TIER_PRICES = [
    (100, 196.0),
    (200, 368.0),
    (300, 540.0),
    (400, 704.0),
    (500, 865.0),
    (1000, 1700.0),
    (2000, 3320.0),
    (5000, 8050.0),
    (10000, 15500.0),
    (25000, 37500.0),
    (50000, 73000.0),
]

USAGE_QUERY = """Usage
| where IsBillable == true
| summarize IngestionVolumeMB = sum(Quantity) by DataType"""

TOTAL_BYTES_QUERY = """union withsource = _TableName *
| summarize TotalBytes = sum(_BilledSize)"""

MB_PER_GB = Decimal(1024)
BYTES_PER_MB = Decimal(1024 * 1024)
GB_QUANTUM = Decimal("0.01")

log = logging.getLogger("la-ingestion")


def round_gb(value: Decimal) -> Decimal:
    return value.quantize(GB_QUANTUM, rounding=ROUND_HALF_UP)


def _to_decimal(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def lookback_window(now: Optional[datetime] = None,
                    days: int = LOOKBACK_DAYS) -> tuple[datetime, datetime]:
    """Half-open UTC window [now - days, now)."""
    end = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).replace(microsecond=0)
    return end - timedelta(days=days), end


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UsageRow:
    data_type: str
    volume_mb: Decimal

    @classmethod
    def from_record(cls, record: dict) -> "UsageRow":
        """Read one row of the usage query; absent fields fall back to Unknown / 0."""
        data_type = str(record.get("DataType") or "").strip() or "Unknown"
        volume = _to_decimal(record.get("IngestionVolumeMB"))
        if volume is None or volume < 0:
            log.warning("Usage row for %s has no usable volume (%r), counting 0",
                        data_type, record.get("IngestionVolumeMB"))
            volume = Decimal(0)
        return cls(data_type=data_type, volume_mb=volume)

    @classmethod
    def from_total_bytes(cls, record: dict) -> Optional["UsageRow"]:
        total = _to_decimal(record.get("TotalBytes"))
        if total is None or total <= 0:
            return None
        return cls(data_type="Unknown", volume_mb=total / BYTES_PER_MB)


@dataclass(frozen=True)
class ClassifiedTotals:
    workspace: str
    analytics_gb: Decimal = Decimal("0.00")
    basic_gb: Decimal = Decimal("0.00")
    auxiliary_gb: Decimal = Decimal("0.00")
    error: Optional[str] = None

    @property
    def total_gb(self) -> Decimal:
        return self.analytics_gb + self.basic_gb + self.auxiliary_gb

    def as_dict(self) -> dict:
        return {
            "workspace": self.workspace,
            "analyticsGB": float(self.analytics_gb),
            "basicGB": float(self.basic_gb),
            "auxiliaryGB": float(self.auxiliary_gb),
            "totalGB": float(self.total_gb),
            "error": self.error,
        }


@dataclass(frozen=True)
class CommitmentTier:
    capacity_gb_per_day: int
    daily_cost_usd: float

    @property
    def monthly_cost_usd(self) -> float:
        return round(self.daily_cost_usd * LOOKBACK_DAYS, 2)


COMMITMENT_TIERS: tuple[CommitmentTier, ...] = tuple(CommitmentTier(c, p) for c, p in _TIER_PRICES)
TIER_CAPACITIES = [t.capacity_gb_per_day for t in COMMITMENT_TIERS]


def validate_catalog(catalog) -> None:
    if not catalog:
        raise ValueError("commitment tier catalog is empty")
    for lower, upper in zip(catalog, catalog[1:]):
        if upper.capacity_gb_per_day <= lower.capacity_gb_per_day:
            raise ValueError(f"tier capacities not increasing at {upper.capacity_gb_per_day} GB/day")
        if upper.daily_cost_usd <= lower.daily_cost_usd:
            raise ValueError(f"tier costs not increasing at {upper.capacity_gb_per_day} GB/day")


validate_catalog(COMMITMENT_TIERS)


@dataclass(frozen=True)
class Recommendation:
    avg_gb_per_day: float
    payg_monthly_cost: float
    tier: Optional[CommitmentTier] = None
    savings_usd: Optional[float] = None
    savings_pct: Optional[float] = None

    @property
    def message(self) -> str:
        if self.tier is None:
            return (f"{self.avg_gb_per_day:.2f} GB/day is below the {TIER_FLOOR_GB_PER_DAY} GB/day "
                    f"minimum: no dedicated tier, pay-as-you-go is recommended")
        return (f"{self.tier.capacity_gb_per_day} GB/day commitment tier "
                f"(${self.tier.monthly_cost_usd:,.2f}/month vs ${self.payg_monthly_cost:,.2f} "
                f"pay-as-you-go, {self.savings_pct:+.1f}%)")

    def as_dict(self) -> dict:
        return {
            "avgAnalyticsGBPerDay": round(self.avg_gb_per_day, 2),
            "payAsYouGoMonthlyUSD": self.payg_monthly_cost,
            "tierGBPerDay": self.tier.capacity_gb_per_day if self.tier else None,
            "tierMonthlyUSD": self.tier.monthly_cost_usd if self.tier else None,
            "savingsUSD": self.savings_usd,
            "savingsPct": self.savings_pct,
            "message": self.message,
        }


@dataclass
class IngestionSummary:
    """Accumulated per-workspace totals for one analysis window."""
    window_days: int = LOOKBACK_DAYS
    workspaces: list[ClassifiedTotals] = field(default_factory=list)

    def add(self, totals: ClassifiedTotals) -> None:
        self.workspaces.append(totals)

    @property
    def analytics_gb(self) -> Decimal:
        return sum((w.analytics_gb for w in self.workspaces), Decimal(0))

    @property
    def basic_gb(self) -> Decimal:
        return sum((w.basic_gb for w in self.workspaces), Decimal(0))

    @property
    def auxiliary_gb(self) -> Decimal:
        return sum((w.auxiliary_gb for w in self.workspaces), Decimal(0))

    @property
    def total_gb(self) -> Decimal:
        return self.analytics_gb + self.basic_gb + self.auxiliary_gb

    @property
    def failed(self) -> list[ClassifiedTotals]:
        return [w for w in self.workspaces if w.error]

    @property
    def avg_analytics_gb_per_day(self) -> float:
        return float(self.analytics_gb / self.window_days)


# ---------------------------------------------------------------------------
# Usage classification
# ---------------------------------------------------------------------------

def classify_rows(workspace: str, rows: list[UsageRow], plans: dict[str, str]) -> ClassifiedTotals:
    """Split usage rows into plan categories; unmapped data types count as Analytics."""
    mb = {PLAN_ANALYTICS: Decimal(0), PLAN_BASIC: Decimal(0), PLAN_AUXILIARY: Decimal(0)}
    for row in rows:
        plan = plans.get(row.data_type, PLAN_ANALYTICS)
        if plan not in mb:
            plan = PLAN_ANALYTICS
        mb[plan] += row.volume_mb
    return ClassifiedTotals(
        workspace=workspace,
        analytics_gb=round_gb(mb[PLAN_ANALYTICS] / MB_PER_GB),
        basic_gb=round_gb(mb[PLAN_BASIC] / MB_PER_GB),
        auxiliary_gb=round_gb(mb[PLAN_AUXILIARY] / MB_PER_GB),
    )


def fetch_usage_rows(queries: QueryClient, workspace: Workspace,
                     window: tuple[datetime, datetime]) -> list[UsageRow]:
    records = queries.query(workspace, USAGE_QUERY, window)
    if records:
        return [UsageRow.from_record(r) for r in records]

    log.debug("  %s: no Usage rows, falling back to billed size total", workspace.name)
    records = queries.query(workspace, TOTAL_BYTES_QUERY, window)
    rows = [UsageRow.from_total_bytes(r) for r in records]
    return [r for r in rows if r is not None]


def table_plans(resources: ResourceClient, workspace: Workspace) -> dict[str, str]:
    return {t.name: t.plan for t in resources.list_tables(workspace)}


def classify_workspace(resources: ResourceClient, queries: QueryClient, workspace: Workspace,
                       window: tuple[datetime, datetime]) -> ClassifiedTotals:
    """Classified totals for one workspace; a failed query counts as zero ingestion."""
    try:
        rows = fetch_usage_rows(queries, workspace, window)
    except QueryError as e:
        log.error("  %s: usage query failed, counting as zero ingestion: %s", workspace.name, e)
        return ClassifiedTotals(workspace=workspace.name, error=str(e))

    try:
        plans = table_plans(resources, workspace)
    except AzCliError as e:
        log.warning("  %s: table plans unavailable, treating all data as Analytics: %s",
                    workspace.name, e)
        plans = {}

    return classify_rows(workspace.name, rows, plans)


def analyze_workspaces(resources: ResourceClient, queries: QueryClient,
                       workspaces: list[Workspace], window: tuple[datetime, datetime],
                       window_days: int = LOOKBACK_DAYS) -> IngestionSummary:
    summary = IngestionSummary(window_days=window_days)
    for i, ws in enumerate(workspaces, 1):
        totals = classify_workspace(resources, queries, ws, window)
        log.info("  [%d/%d] %s: %.2f GB (analytics %.2f, basic %.2f, auxiliary %.2f)",
                 i, len(workspaces), ws.name, totals.total_gb,
                 totals.analytics_gb, totals.basic_gb, totals.auxiliary_gb)
        summary.add(totals)
    return summary


# ---------------------------------------------------------------------------
# Tier recommendation
# ---------------------------------------------------------------------------

def recommend(avg_gb_per_day: float, catalog=COMMITMENT_TIERS,
              floor: float = TIER_FLOOR_GB_PER_DAY,
              payg_price_per_gb: float = PAYG_PRICE_PER_GB,
              days: int = LOOKBACK_DAYS) -> Recommendation:
    """Recommend a commitment tier for an average daily Analytics volume.

    Selection rounds DOWN: the largest tier whose capacity is <= the average,
    so the commitment is never larger than observed ingestion (an exact match
    selects that tier). Below `floor` no tier is recommended. If a catalog has
    no tier at or below an above-floor average, its smallest tier is used.

    The comparison prices `days` of the average volume at pay-as-you-go rates
    against the tier's fixed monthly cost; savings_pct is relative to PAYG.
    """
    payg_monthly = round(avg_gb_per_day * days * payg_price_per_gb, 2)
    if avg_gb_per_day < floor:
        return Recommendation(avg_gb_per_day=avg_gb_per_day, payg_monthly_cost=payg_monthly)

    validate_catalog(catalog)
    qualifying = [t for t in catalog if t.capacity_gb_per_day <= avg_gb_per_day]
    tier = qualifying[-1] if qualifying else catalog[0]

    savings = round(payg_monthly - tier.monthly_cost_usd, 2)
    pct = round(savings / payg_monthly * 100, 2) if payg_monthly else 0.0
    return Recommendation(
        avg_gb_per_day=avg_gb_per_day,
        payg_monthly_cost=payg_monthly,
        tier=tier,
        savings_usd=savings,
        savings_pct=pct,
    )


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_report(summary: IngestionSummary, rec: Recommendation,
                 window: tuple[datetime, datetime], include_zero: bool = False) -> dict:
    rows = [w for w in summary.workspaces if include_zero or w.total_gb > 0 or w.error]
    return {
        "generatedAt": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "window": {"start": window[0].isoformat(), "end": window[1].isoformat(),
                   "days": summary.window_days},
        "workspaces": [w.as_dict() for w in rows],
        "totals": {
            "workspaces": len(summary.workspaces),
            "failedQueries": len(summary.failed),
            "analyticsGB": float(summary.analytics_gb),
            "basicGB": float(summary.basic_gb),
            "auxiliaryGB": float(summary.auxiliary_gb),
            "totalGB": float(summary.total_gb),
        },
        "recommendation": rec.as_dict(),
    }


def print_report(report: dict) -> None:
    print("\n" + "=" * 78)
    print("  LOG ANALYTICS INGESTION (last %d days)" % report["window"]["days"])
    print("=" * 78)
    print(f"  {'Workspace':<36}{'Analytics':>10}{'Basic':>10}{'Auxiliary':>10}{'Total':>10}")
    for w in report["workspaces"]:
        flag = "  (query failed)" if w["error"] else ""
        print(f"  {w['workspace'][:35]:<36}{w['analyticsGB']:>10,.2f}{w['basicGB']:>10,.2f}"
              f"{w['auxiliaryGB']:>10,.2f}{w['totalGB']:>10,.2f}{flag}")
    t = report["totals"]
    print("-" * 78)
    print(f"  {'TOTAL (' + str(t['workspaces']) + ' workspaces)':<36}{t['analyticsGB']:>10,.2f}"
          f"{t['basicGB']:>10,.2f}{t['auxiliaryGB']:>10,.2f}{t['totalGB']:>10,.2f}")
    rec = report["recommendation"]
    print(f"\n  Avg Analytics/day:  {rec['avgAnalyticsGBPerDay']:,.2f} GB")
    print(f"  Recommendation:     {rec['message']}")
    if t["failedQueries"]:
        print(f"  Failed queries:     {t['failedQueries']} (counted as zero)")
    print("=" * 78)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Log Analytics ingestion analysis and commitment tier recommendation"
    )
    parser.add_argument("--region", help="Only workspaces in this Azure region")
    parser.add_argument("--tag-key", help="Only workspaces carrying this tag")
    parser.add_argument("--tag-value", help="Required value of --tag-key (exact match)")
    parser.add_argument("--subscriptions", type=Path,
                        help="JSON file listing the subscription ids to scan")
    parser.add_argument("--tenant", help="Only subscriptions in this tenant")
    parser.add_argument("--include-zero", action="store_true",
                        help="List workspaces with no ingestion in the report")
    parser.add_argument("--days", type=int, default=LOOKBACK_DAYS,
                        help=f"Lookback window in days (default {LOOKBACK_DAYS})")
    parser.add_argument("--payg-price", type=float, default=PAYG_PRICE_PER_GB,
                        help=f"Pay-as-you-go USD per GB (default {PAYG_PRICE_PER_GB})")
    parser.add_argument("--output", type=Path, help="Write the report as JSON to this file")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)
    if (args.tag_key is None) != (args.tag_value is None):
        parser.error("--tag-key and --tag-value must be given together")
    if args.days <= 0:
        parser.error("--days must be positive")
    return args


def main(argv=None, cli: Optional[AzureCli] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)
    cli = cli or AzureCli()

    log.info("Log Analytics Ingestion Analysis")
    try:
        allow_list = load_subscription_allow_list(args.subscriptions) if args.subscriptions else None
    except (OSError, ValueError) as e:
        log.error("Cannot read subscription list: %s", e)
        return 1

    try:
        log.info("=== Step 1: Sign-in check ===")
        cli.verify_login()

        log.info("=== Step 2: Workspace Discovery ===")
        subs = list_subscriptions(cli, tenant=args.tenant, allow_list=allow_list)
        resources = ResourceClient(cli)
        workspaces = discover_workspaces(resources, subs, args.region, args.tag_key, args.tag_value)

        log.info("=== Step 3: Usage Classification ===")
        window = lookback_window(days=args.days)
        summary = analyze_workspaces(resources, QueryClient(cli), workspaces, window, args.days)
    except AuthenticationError as e:
        log.error("Authentication failed: %s", e)
        return 1
    except (AzCliError, ValueError) as e:
        log.error("Ingestion analysis aborted: %s", e)
        return 1

    log.info("=== Step 4: Tier Recommendation ===")
    rec = recommend(summary.avg_analytics_gb_per_day, payg_price_per_gb=args.payg_price)
    log.info("  %s", rec.message)

    report = build_report(summary, rec, window, include_zero=args.include_zero)
    if args.output:
        args.output.write_text(json.dumps(report, indent=2, default=str), encoding="utf-8")
        log.info("Report written to %s", args.output)
    print_report(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
