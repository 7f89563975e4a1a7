"""
Shared Azure plumbing for the Log Analytics dedicated cluster tooling.

Everything remote goes through the Azure CLI (`az ... -o json`), run as a
subprocess. The caller's `az login` session is the credential; it is checked
once per run and reused by every command.

Contents:
  - error taxonomy
  - AzureCli handle (explicitly scoped to a subscription)
  - data classes for subscriptions, workspaces, tables and clusters
  - ResourceClient / QueryClient wrappers over the CLI
  - subscription + workspace discovery
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

AZ_TIMEOUT_SECONDS = 120

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"

PLAN_ANALYTICS = "Analytics"
PLAN_BASIC = "Basic"
PLAN_AUXILIARY = "Auxiliary"
PLANS = (PLAN_ANALYTICS, PLAN_BASIC, PLAN_AUXILIARY)

# Provisioning states reported by Microsoft.OperationalInsights/clusters
STATE_CREATING = "Creating"
STATE_SUCCEEDED = "Succeeded"
STATE_FAILED = "Failed"
STATE_UNKNOWN = "Unknown"
FAILED_STATES = {STATE_FAILED, "Canceled"}

# Markers in az stderr that identify a missing login or a missing resource
_AUTH_MARKERS = ("az login", "AADSTS", "InvalidAuthenticationToken", "ExpiredAuthenticationToken")
_NOT_FOUND_MARKERS = ("ResourceNotFound", "ResourceGroupNotFound", "was not found", "could not be found")

_RESOURCE_ID_RE = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)/resourceGroups/(?P<group>[^/]+)"
    r"/providers/(?P<provider>[^/]+)/(?P<type>[^/]+)/(?P<name>[^/]+)$",
    re.IGNORECASE,
)

log = logging.getLogger("la-azure")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ClusterToolError(Exception):
    """Base class for every error raised by this tooling."""


class AzCliError(ClusterToolError):
    """An az command failed, timed out, or produced unreadable output."""

    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class ResourceNotFound(AzCliError):
    pass


class AuthenticationError(ClusterToolError):
    """No usable az login session. Fatal."""


class SubscriptionEnumerationError(ClusterToolError):
    pass


class QueryError(ClusterToolError):
    pass


class ProvisioningFailed(ClusterToolError):
    """The cluster reached a terminal failure state. Fatal."""


class ProvisioningTimeout(ClusterToolError):
    """The cluster did not reach a terminal state within the wait budget. Fatal."""


class LinkError(ClusterToolError):
    pass


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResourceId:
    subscription_id: str
    resource_group: str
    provider: str
    resource_type: str
    name: str

    @classmethod
    def parse(cls, resource_id: str) -> "ResourceId":
        m = _RESOURCE_ID_RE.match(resource_id.strip())
        if not m:
            raise ValueError(f"Not an ARM resource id: {resource_id!r}")
        return cls(
            subscription_id=m.group("subscription"),
            resource_group=m.group("group"),
            provider=m.group("provider"),
            resource_type=m.group("type"),
            name=m.group("name"),
        )


def cluster_resource_id(subscription_id: str, resource_group: str, name: str) -> str:
    return (f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.OperationalInsights/clusters/{name}")


def normalize_region(region: str) -> str:
    """'East US' and 'eastus' name the same Azure location."""
    return region.replace(" ", "").lower()


@dataclass(frozen=True)
class Subscription:
    id: str
    display_name: str
    tenant_id: str
    state: str = "Enabled"


@dataclass(frozen=True)
class Workspace:
    id: str
    name: str
    resource_group: str
    region: str
    customer_id: str
    tags: dict[str, str] = field(default_factory=dict, hash=False)
    linked_cluster_id: Optional[str] = None

    @property
    def subscription_id(self) -> str:
        return ResourceId.parse(self.id).subscription_id

    @classmethod
    def from_az(cls, raw: dict) -> "Workspace":
        features = raw.get("features") or {}
        return cls(
            id=raw["id"],
            name=raw.get("name", ""),
            resource_group=raw.get("resourceGroup") or ResourceId.parse(raw["id"]).resource_group,
            region=raw.get("location", ""),
            customer_id=raw.get("customerId", ""),
            tags=dict(raw.get("tags") or {}),
            linked_cluster_id=features.get("clusterResourceId") or None,
        )


@dataclass(frozen=True)
class Table:
    name: str
    plan: str = PLAN_ANALYTICS

    @classmethod
    def from_az(cls, raw: dict) -> "Table":
        plan = raw.get("plan") or (raw.get("properties") or {}).get("plan")
        return cls(name=raw.get("name", ""), plan=normalize_plan(plan))


def normalize_plan(plan: Optional[str]) -> str:
    """Map a table plan to one of PLANS; anything unrecognised is Analytics."""
    if not plan:
        return PLAN_ANALYTICS
    for known in PLANS:
        if plan.lower() == known.lower():
            return known
    return PLAN_ANALYTICS


@dataclass(frozen=True)
class Cluster:
    id: str
    region: str
    capacity: Optional[int]
    provisioning_state: str

    @classmethod
    def from_az(cls, raw: dict) -> "Cluster":
        sku = raw.get("sku") or {}
        state = raw.get("provisioningState") or (raw.get("properties") or {}).get("provisioningState")
        capacity = sku.get("capacity")
        return cls(
            id=raw.get("id", ""),
            region=raw.get("location", ""),
            capacity=int(capacity) if capacity is not None else None,
            provisioning_state=state or STATE_UNKNOWN,
        )


# ---------------------------------------------------------------------------
# Azure CLI handle
# ---------------------------------------------------------------------------

class AzureCli:
    """Runs az commands, optionally pinned to one subscription.

    The handle never mutates the CLI's "current subscription"; a command that
    must target another subscription uses a handle from with_subscription().
    """

    def __init__(self, subscription_id: Optional[str] = None,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 timeout: int = AZ_TIMEOUT_SECONDS):
        self.subscription_id = subscription_id
        self.runner = runner
        self.timeout = timeout

    def with_subscription(self, subscription_id: str) -> "AzureCli":
        return AzureCli(subscription_id, runner=self.runner, timeout=self.timeout)

    def run(self, args: list[str], scoped: bool = True) -> Any:
        """Run `az <args> -o json` and return parsed JSON (None for empty output)."""
        cmd = ["az"] + args + ["-o", "json"]
        if scoped and self.subscription_id:
            cmd += ["--subscription", self.subscription_id]
        log.debug("Running: az %s", " ".join(args[:5]))
        try:
            result = self.runner(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise AzCliError(f"az {' '.join(args[:4])} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise AzCliError("Azure CLI (az) not found on PATH") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            summary = f"az {' '.join(args[:4])} failed: {stderr[:300]}"
            if any(marker in stderr for marker in _AUTH_MARKERS):
                raise AuthenticationError(summary)
            if any(marker in stderr for marker in _NOT_FOUND_MARKERS):
                raise ResourceNotFound(summary, stderr, result.returncode)
            raise AzCliError(summary, stderr, result.returncode)

        stdout = (result.stdout or "").strip()
        if not stdout:
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise AzCliError(f"az {' '.join(args[:4])} returned invalid JSON: {e}") from e

    def verify_login(self) -> dict:
        """Check the az login session once, before any other remote call."""
        try:
            account = self.run(["account", "show"], scoped=False)
        except AzCliError as e:
            raise AuthenticationError(f"No usable Azure CLI login: {e}") from e
        if not account:
            raise AuthenticationError("No usable Azure CLI login: az account show returned nothing")
        log.info("Signed in as %s (tenant %s)",
                 (account.get("user") or {}).get("name", "unknown"), account.get("tenantId", "?"))
        return account


# ---------------------------------------------------------------------------
# Resource Management Client
# ---------------------------------------------------------------------------

class ResourceClient:
    """Cluster CRUD plus workspace/table enumeration via az monitor log-analytics."""

    def __init__(self, cli: AzureCli):
        self.cli = cli

    def _for(self, subscription_id: str) -> AzureCli:
        return self.cli.with_subscription(subscription_id)

    def get_cluster(self, resource_id: str) -> Cluster:
        rid = ResourceId.parse(resource_id)
        data = self._for(rid.subscription_id).run([
            "monitor", "log-analytics", "cluster", "show",
            "--resource-group", rid.resource_group,
            "--cluster-name", rid.name,
        ])
        if not data:
            raise ResourceNotFound(f"Cluster {resource_id} returned no data")
        return Cluster.from_az(data)

    def create_cluster(self, resource_id: str, region: str, capacity: int) -> Optional[Cluster]:
        rid = ResourceId.parse(resource_id)
        log.info("Creating cluster %s in %s (%d GB/day)", rid.name, region, capacity)
        data = self._for(rid.subscription_id).run([
            "monitor", "log-analytics", "cluster", "create",
            "--resource-group", rid.resource_group,
            "--cluster-name", rid.name,
            "--location", region,
            "--sku-capacity", str(capacity),
            "--no-wait",
        ])
        return Cluster.from_az(data) if data else None

    def list_workspaces(self, subscription_id: str) -> list[Workspace]:
        try:
            raw = self._for(subscription_id).run(["monitor", "log-analytics", "workspace", "list"])
        except AzCliError as e:
            raise SubscriptionEnumerationError(
                f"Cannot list workspaces in subscription {subscription_id}: {e}") from e
        return [Workspace.from_az(w) for w in raw or []]

    def list_tables(self, workspace: Workspace) -> list[Table]:
        raw = self._for(workspace.subscription_id).run([
            "monitor", "log-analytics", "workspace", "table", "list",
            "--resource-group", workspace.resource_group,
            "--workspace-name", workspace.name,
        ])
        return [Table.from_az(t) for t in raw or []]

    def link_workspace(self, workspace: Workspace, cluster_id: str) -> None:
        """Point the workspace's 'cluster' linked service at cluster_id.

        The underlying PUT is idempotent; re-linking to the same cluster succeeds.
        """
        try:
            self._for(workspace.subscription_id).run([
                "monitor", "log-analytics", "workspace", "linked-service", "create",
                "--resource-group", workspace.resource_group,
                "--workspace-name", workspace.name,
                "--name", "cluster",
                "--write-access-resource-id", cluster_id,
            ])
        except (AzCliError, ValueError) as e:
            raise LinkError(str(e)) from e


# ---------------------------------------------------------------------------
# Query Client
# ---------------------------------------------------------------------------

def format_timespan(window: tuple[datetime, datetime]) -> str:
    start, end = window
    return f"{start.strftime('%Y-%m-%dT%H:%M:%SZ')}/{end.strftime('%Y-%m-%dT%H:%M:%SZ')}"


class QueryClient:
    """Runs KQL against a workspace through `az monitor log-analytics query`."""

    def __init__(self, cli: AzureCli):
        self.cli = cli

    def query(self, workspace: Workspace, query_text: str,
              window: tuple[datetime, datetime]) -> list[dict]:
        try:
            rows = self.cli.run([
                "monitor", "log-analytics", "query",
                "--workspace", workspace.customer_id,
                "--analytics-query", query_text,
                "--timespan", format_timespan(window),
            ], scoped=False)
        except AzCliError as e:
            raise QueryError(f"Query failed for workspace {workspace.name}: {e}") from e
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise QueryError(f"Unexpected query result for workspace {workspace.name}: {type(rows).__name__}")
        return rows


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def load_subscription_allow_list(path: Path) -> list[str]:
    """Read subscription ids from a JSON list or {"subscriptions": [...]}.

    Items may be plain ids or objects carrying an "id"/"subscriptionId" key.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("subscriptions")
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of subscriptions")
    ids = []
    for item in data:
        if isinstance(item, dict):
            item = item.get("id") or item.get("subscriptionId")
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"{path}: invalid subscription entry {item!r}")
        ids.append(item.strip().lower())
    return ids


def list_subscriptions(cli: AzureCli, tenant: Optional[str] = None,
                       allow_list: Optional[list[str]] = None) -> list[Subscription]:
    raw = cli.run(["account", "list", "--all"], scoped=False) or []
    allowed = {s.lower() for s in allow_list} if allow_list else None
    subs = []
    for s in raw:
        sub = Subscription(
            id=s.get("id", ""),
            display_name=s.get("name", ""),
            tenant_id=s.get("tenantId", ""),
            state=s.get("state", "Enabled"),
        )
        if sub.state != "Enabled":
            log.debug("Skipping %s subscription %s", sub.state, sub.display_name)
            continue
        if tenant and sub.tenant_id.lower() != tenant.lower():
            continue
        if allowed is not None and sub.id.lower() not in allowed:
            continue
        subs.append(sub)

    if allowed is not None:
        missing = allowed - {s.id.lower() for s in subs}
        for sub_id in sorted(missing):
            log.warning("Subscription %s from the allow-list is not accessible", sub_id)
    log.info("Found %d subscriptions%s", len(subs), f" in tenant {tenant}" if tenant else "")
    return subs


def _check_filter(name: str, value: Optional[str]) -> None:
    if value is not None and not value.strip():
        raise ValueError(f"{name} must not be empty")


def discover_workspaces(resources: ResourceClient, subscriptions: list[Subscription],
                        region: Optional[str] = None, tag_key: Optional[str] = None,
                        tag_value: Optional[str] = None) -> list[Workspace]:
    """Workspaces in `region` whose tags carry tag_key == tag_value exactly.

    A subscription that cannot be enumerated is skipped with a warning.
    """
    _check_filter("region", region)
    _check_filter("tag key", tag_key)
    _check_filter("tag value", tag_value)
    if (tag_key is None) != (tag_value is None):
        raise ValueError("tag key and tag value must be given together")

    target = normalize_region(region) if region else None
    found = []
    for sub in subscriptions:
        try:
            workspaces = resources.list_workspaces(sub.id)
        except SubscriptionEnumerationError as e:
            log.warning("Skipping subscription %s: %s", sub.display_name or sub.id, e)
            continue

        matched = 0
        for ws in workspaces:
            if target and normalize_region(ws.region) != target:
                continue
            if tag_key is not None and ws.tags.get(tag_key) != tag_value:
                continue
            found.append(ws)
            matched += 1
        log.info("  %s: %d of %d workspaces match", sub.display_name or sub.id, matched, len(workspaces))

    if not found:
        log.warning("No workspaces matched (region=%s, tag=%s)", region or "any",
                    f"{tag_key}={tag_value}" if tag_key else "any")
    return found
