#!/usr/bin/env python3
"""
Log Analytics Dedicated Cluster Provisioning

Creates (or adopts) a dedicated cluster, waits for it to finish provisioning,
then links every matching workspace to it.

Provisioning takes up to two hours; the tool polls the cluster every
--poll-interval seconds and gives up after --max-wait seconds. A timeout does
not delete a half-created cluster; re-running adopts it.

Usage:
  la-cluster --region eastus --resource-group rg-logs --cluster-name la-cluster \\
             --capacity 500 --tag-key env --tag-value prod
  la-cluster ... --dry-run        # list workspaces that would be linked
"""

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from la_azure import (
    FAILED_STATES,
    STATE_CREATING,
    STATE_SUCCEEDED,
    AuthenticationError,
    AzCliError,
    AzureCli,
    Cluster,
    LinkError,
    ProvisioningFailed,
    ProvisioningTimeout,
    ResourceClient,
    ResourceNotFound,
    Workspace,
    cluster_resource_id,
    configure_logging,
    discover_workspaces,
    list_subscriptions,
    load_subscription_allow_list,
)
from la_ingestion import TIER_CAPACITIES

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

POLL_INTERVAL_SECONDS = 5 * 60
MAX_WAIT_SECONDS = int(2.5 * 60 * 60)
DEFAULT_CAPACITY = TIER_CAPACITIES[0]

log = logging.getLogger("la-cluster")


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LinkOutcome:
    workspace_id: str
    success: bool
    error_detail: Optional[str] = None
    skipped: bool = False


@dataclass
class LinkSummary:
    outcomes: list[LinkOutcome] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------

def ensure_cluster(resources: ResourceClient, cluster_id: str, region: str, capacity: int,
                   poll_interval: float = POLL_INTERVAL_SECONDS,
                   max_wait: float = MAX_WAIT_SECONDS,
                   sleep: Callable[[float], None] = time.sleep,
                   clock: Callable[[], float] = time.monotonic) -> Cluster:
    """Create or adopt the cluster and block until it is Succeeded.

    An existing cluster is adopted as-is; otherwise exactly one create request
    is sent. Returns only a Succeeded cluster. Raises ProvisioningFailed on a
    terminal failure state and ProvisioningTimeout once max_wait elapses.
    Errors while polling are logged and polling continues.
    """
    started = clock()
    try:
        cluster: Optional[Cluster] = resources.get_cluster(cluster_id)
        log.info("Adopting existing cluster %s (state %s)", cluster_id, cluster.provisioning_state)
        state = cluster.provisioning_state
    except ResourceNotFound:
        log.info("Cluster %s not found, requesting creation", cluster_id)
        cluster = resources.create_cluster(cluster_id, region, capacity)
        state = cluster.provisioning_state if cluster else STATE_CREATING

    polls = 0
    while True:
        if state == STATE_SUCCEEDED:
            log.info("Cluster %s is ready (capacity %s GB/day)", cluster_id, cluster.capacity)
            return cluster
        if state in FAILED_STATES:
            raise ProvisioningFailed(f"Cluster {cluster_id} provisioning ended in state {state}")

        elapsed = clock() - started
        if elapsed >= max_wait:
            raise ProvisioningTimeout(
                f"Cluster {cluster_id} still {state} after {elapsed / 60:.0f} minutes "
                f"(limit {max_wait / 60:.0f}); it was not rolled back")

        wait = min(poll_interval, max_wait - elapsed)
        log.info("  Cluster state %s, checking again in %ds (%.0f min elapsed)",
                 state, wait, elapsed / 60)
        sleep(wait)
        polls += 1
        try:
            cluster = resources.get_cluster(cluster_id)
            state = cluster.provisioning_state
        except AzCliError as e:
            log.warning("  Poll %d for %s failed, will retry: %s", polls, cluster_id, e)


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------

def _same_resource(a: Optional[str], b: str) -> bool:
    return bool(a) and a.rstrip("/").lower() == b.rstrip("/").lower()


def link_workspaces(resources: ResourceClient, workspaces: list[Workspace],
                    cluster_id: str) -> LinkSummary:
    """Link each workspace to the cluster; one failure never stops the batch."""
    summary = LinkSummary()
    seen: set[str] = set()
    unique = []
    for ws in workspaces:
        key = ws.id.lower()
        if key not in seen:
            seen.add(key)
            unique.append(ws)

    if not unique:
        log.warning("No workspaces to link to %s", cluster_id)
        return summary

    for i, ws in enumerate(unique, 1):
        if _same_resource(ws.linked_cluster_id, cluster_id):
            log.info("  [%d/%d] %s: already linked", i, len(unique), ws.name)
            summary.outcomes.append(LinkOutcome(ws.id, success=True, skipped=True))
            continue
        try:
            resources.link_workspace(ws, cluster_id)
        except LinkError as e:
            log.error("  [%d/%d] %s: link failed: %s", i, len(unique), ws.name, e)
            summary.outcomes.append(LinkOutcome(ws.id, success=False, error_detail=str(e)))
            continue
        log.info("  [%d/%d] %s: linked", i, len(unique), ws.name)
        summary.outcomes.append(LinkOutcome(ws.id, success=True))

    log.info("Linked %d/%d workspaces", summary.succeeded, summary.attempted)
    return summary


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Provision a Log Analytics dedicated cluster and link workspaces to it"
    )
    parser.add_argument("--region", required=True, help="Cluster and workspace region")
    parser.add_argument("--resource-group", required=True, help="Resource group of the cluster")
    parser.add_argument("--cluster-name", required=True, help="Name of the cluster")
    parser.add_argument("--subscription",
                        help="Subscription of the cluster (default: the az CLI's current one)")
    parser.add_argument("--capacity", type=int, choices=TIER_CAPACITIES, default=DEFAULT_CAPACITY,
                        help=f"Commitment tier in GB/day (default {DEFAULT_CAPACITY})")
    parser.add_argument("--tag-key", help="Only link workspaces carrying this tag")
    parser.add_argument("--tag-value", help="Required value of --tag-key (exact match)")
    parser.add_argument("--subscriptions", type=Path,
                        help="JSON file listing the subscription ids to search for workspaces")
    parser.add_argument("--tenant", help="Only subscriptions in this tenant")
    parser.add_argument("--poll-interval", type=int, default=POLL_INTERVAL_SECONDS,
                        help=f"Seconds between provisioning checks (default {POLL_INTERVAL_SECONDS})")
    parser.add_argument("--max-wait", type=int, default=MAX_WAIT_SECONDS,
                        help=f"Seconds to wait for provisioning (default {MAX_WAIT_SECONDS})")
    parser.add_argument("--dry-run", action="store_true",
                        help="Only list the workspaces that would be linked")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)
    if (args.tag_key is None) != (args.tag_value is None):
        parser.error("--tag-key and --tag-value must be given together")
    if args.poll_interval <= 0 or args.max_wait <= 0:
        parser.error("--poll-interval and --max-wait must be positive")
    return args


def main(argv=None, cli: Optional[AzureCli] = None,
         sleep: Callable[[float], None] = time.sleep) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)
    cli = cli or AzureCli()

    log.info("Log Analytics Dedicated Cluster Provisioning")
    try:
        allow_list = load_subscription_allow_list(args.subscriptions) if args.subscriptions else None
    except (OSError, ValueError) as e:
        log.error("Cannot read subscription list: %s", e)
        return 1

    try:
        log.info("=== Step 1: Sign-in check ===")
        account = cli.verify_login()
        cluster_sub = args.subscription or account.get("id", "")
        cluster_id = cluster_resource_id(cluster_sub, args.resource_group, args.cluster_name)
        resources = ResourceClient(cli)

        log.info("=== Step 2: Workspace Discovery ===")
        subs = list_subscriptions(cli, tenant=args.tenant, allow_list=allow_list)
        workspaces = discover_workspaces(resources, subs, args.region, args.tag_key, args.tag_value)

        if args.dry_run:
            log.info("=== Dry run: no cluster changes ===")
            for ws in workspaces:
                log.info("  would link %s (%s)", ws.name, ws.id)
            summary = LinkSummary()
        else:
            log.info("=== Step 3: Cluster Provisioning ===")
            ensure_cluster(resources, cluster_id, args.region, args.capacity,
                           poll_interval=args.poll_interval, max_wait=args.max_wait, sleep=sleep)

            log.info("=== Step 4: Workspace Linking ===")
            summary = link_workspaces(resources, workspaces, cluster_id)
    except AuthenticationError as e:
        log.error("Authentication failed: %s", e)
        return 1
    except (ProvisioningFailed, ProvisioningTimeout) as e:
        log.error("Provisioning aborted: %s", e)
        return 1
    except (AzCliError, ValueError) as e:
        log.error("Cluster provisioning aborted: %s", e)
        return 1

    print("\n" + "=" * 60)
    print("  DEDICATED CLUSTER " + ("DRY RUN" if args.dry_run else "PROVISIONED"))
    print("=" * 60)
    print(f"  Cluster:            {cluster_id}")
    print(f"  Capacity:           {args.capacity} GB/day")
    print(f"  Workspaces:         {len(workspaces)}")
    if not args.dry_run:
        print(f"  Linked:             {summary.succeeded}/{summary.attempted}")
        for o in summary.outcomes:
            if not o.success:
                print(f"    FAILED {o.workspace_id}: {o.error_detail}")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
