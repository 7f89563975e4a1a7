from __future__ import annotations

import json
import subprocess

import pytest

from la_azure import (
    AzCliError,
    Cluster,
    LinkError,
    ResourceNotFound,
    SubscriptionEnumerationError,
    Table,
    Workspace,
)

SUB_A = "11111111-1111-1111-1111-111111111111"
SUB_B = "22222222-2222-2222-2222-222222222222"
CLUSTER_ID = (f"/subscriptions/{SUB_A}/resourceGroups/rg-logs"
              "/providers/Microsoft.OperationalInsights/clusters/la-cluster")


def make_workspace(name: str, sub: str = SUB_A, region: str = "eastus",
                   tags: dict | None = None, linked: str | None = None) -> Workspace:
    return Workspace(
        id=(f"/subscriptions/{sub}/resourceGroups/rg-{name}"
            f"/providers/Microsoft.OperationalInsights/workspaces/{name}"),
        name=name,
        resource_group=f"rg-{name}",
        region=region,
        customer_id=f"cid-{name}",
        tags=tags or {},
        linked_cluster_id=linked,
    )


def completed(cmd, stdout="", stderr="", returncode=0) -> subprocess.CompletedProcess:
    if not isinstance(stdout, str):
        stdout = json.dumps(stdout)
    return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


class FakeRunner:
    """Stands in for subprocess.run; replays queued (stdout, stderr, returncode)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[list[str]] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        stdout, stderr, returncode = self.responses.pop(0)
        return completed(cmd, stdout, stderr, returncode)


class FakeResources:
    """In-memory ResourceClient for the provisioning and linking tests."""

    def __init__(self, states=(), existing=True, workspaces=None, tables=None,
                 fail_links=(), failing_subscriptions=()):
        self.states = list(states)
        self.existing = existing
        self.workspaces = workspaces or {}
        self.tables = tables or {}
        self.fail_links = set(fail_links)
        self.failing_subscriptions = set(failing_subscriptions)
        self.get_calls = 0
        self.create_calls: list[tuple] = []
        self.link_calls: list[str] = []

    def get_cluster(self, resource_id):
        self.get_calls += 1
        if not self.existing:
            raise ResourceNotFound(f"{resource_id} not found")
        state = self.states.pop(0) if self.states else "Creating"
        if isinstance(state, Exception):
            raise state
        return Cluster(id=resource_id, region="eastus", capacity=100, provisioning_state=state)

    def create_cluster(self, resource_id, region, capacity):
        self.create_calls.append((resource_id, region, capacity))
        self.existing = True
        return None

    def list_workspaces(self, subscription_id):
        if subscription_id in self.failing_subscriptions:
            raise SubscriptionEnumerationError(f"cannot list {subscription_id}")
        return list(self.workspaces.get(subscription_id, []))

    def list_tables(self, workspace):
        tables = self.tables.get(workspace.name)
        if isinstance(tables, Exception):
            raise tables
        return [Table(name, plan) for name, plan in (tables or {}).items()]

    def link_workspace(self, workspace, cluster_id):
        self.link_calls.append(workspace.name)
        if workspace.name in self.fail_links:
            raise LinkError(f"link of {workspace.name} rejected")


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transient_error():
    return AzCliError("az monitor log-analytics cluster failed: connection reset")
