from __future__ import annotations

import json
import logging
import subprocess
from datetime import datetime, timezone

import pytest

from conftest import SUB_A, SUB_B, FakeResources, FakeRunner, make_workspace
from la_azure import (
    AuthenticationError,
    AzCliError,
    AzureCli,
    LinkError,
    QueryClient,
    QueryError,
    ResourceClient,
    ResourceNotFound,
    Subscription,
    SubscriptionEnumerationError,
    Table,
    Workspace,
    discover_workspaces,
    format_timespan,
    list_subscriptions,
    load_subscription_allow_list,
    normalize_region,
)


def test_run_scopes_command_to_subscription():
    runner = FakeRunner(('[{"name": "ws"}]', "", 0))
    cli = AzureCli(SUB_A, runner=runner)

    data = cli.run(["monitor", "log-analytics", "workspace", "list"])

    assert data == [{"name": "ws"}]
    assert runner.calls[0] == ["az", "monitor", "log-analytics", "workspace", "list",
                               "-o", "json", "--subscription", SUB_A]


def test_unscoped_command_omits_subscription():
    runner = FakeRunner(("[]", "", 0))
    AzureCli(SUB_A, runner=runner).run(["account", "list", "--all"], scoped=False)
    assert "--subscription" not in runner.calls[0]


def test_with_subscription_returns_new_handle():
    cli = AzureCli(SUB_A, runner=FakeRunner())
    other = cli.with_subscription(SUB_B)
    assert other.subscription_id == SUB_B
    assert cli.subscription_id == SUB_A
    assert other.runner is cli.runner


def test_empty_output_is_none():
    runner = FakeRunner(("", "", 0))
    assert AzureCli(runner=runner).run(["monitor", "log-analytics", "cluster", "create"]) is None


@pytest.mark.parametrize("stderr, expected", [
    ("ERROR: (ResourceNotFound) The Resource 'x' was not found.", ResourceNotFound),
    ("ERROR: Please run 'az login' to setup account.", AuthenticationError),
    ("ERROR: AADSTS700082: The refresh token has expired", AuthenticationError),
    ("ERROR: (Conflict) Another operation is in progress", AzCliError),
])
def test_failures_are_classified(stderr, expected):
    runner = FakeRunner(("", stderr, 1))
    with pytest.raises(expected):
        AzureCli(runner=runner).run(["monitor", "log-analytics", "cluster", "show"])


def test_generic_failure_is_not_not_found():
    runner = FakeRunner(("", "ERROR: (Conflict) busy", 1))
    with pytest.raises(AzCliError) as excinfo:
        AzureCli(runner=runner).run(["monitor", "log-analytics", "cluster", "show"])
    assert not isinstance(excinfo.value, ResourceNotFound)
    assert excinfo.value.returncode == 1


def test_invalid_json_raises():
    runner = FakeRunner(("not json", "", 0))
    with pytest.raises(AzCliError):
        AzureCli(runner=runner).run(["account", "show"])


def test_missing_az_binary_raises():
    def runner(cmd, **kwargs):
        raise FileNotFoundError("az")

    with pytest.raises(AzCliError, match="not found on PATH"):
        AzureCli(runner=runner).run(["account", "show"])


def test_timeout_raises():
    def runner(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    with pytest.raises(AzCliError, match="timed out"):
        AzureCli(runner=runner, timeout=5).run(["account", "show"])


def test_verify_login_wraps_failures():
    runner = FakeRunner(("", "ERROR: (Conflict) something odd", 1))
    with pytest.raises(AuthenticationError):
        AzureCli(runner=runner).verify_login()


def test_verify_login_returns_account():
    account = {"id": SUB_A, "tenantId": "t1", "user": {"name": "ops@example.com"}}
    runner = FakeRunner((json.dumps(account), "", 0))
    assert AzureCli(runner=runner).verify_login()["id"] == SUB_A


def test_workspace_from_az():
    raw = {
        "id": f"/subscriptions/{SUB_B}/resourceGroups/rg-a/providers/Microsoft.OperationalInsights/workspaces/ws-a",
        "name": "ws-a",
        "resourceGroup": "rg-a",
        "location": "westeurope",
        "customerId": "cid-a",
        "tags": {"env": "prod"},
        "features": {"clusterResourceId": "/subscriptions/x/resourcegroups/y/providers/microsoft.operationalinsights/clusters/z"},
    }
    ws = Workspace.from_az(raw)
    assert ws.subscription_id == SUB_B
    assert ws.tags == {"env": "prod"}
    assert ws.linked_cluster_id.endswith("clusters/z")


def test_table_plan_defaults_to_analytics():
    assert Table.from_az({"name": "Heartbeat"}).plan == "Analytics"
    assert Table.from_az({"name": "AppTraces", "plan": "basic"}).plan == "Basic"
    assert Table.from_az({"name": "X", "plan": "Mystery"}).plan == "Analytics"
    assert Table.from_az({"name": "Y", "properties": {"plan": "Auxiliary"}}).plan == "Auxiliary"


def test_resource_client_links_in_workspace_subscription():
    runner = FakeRunner(("{}", "", 0))
    ws = make_workspace("ws-b", sub=SUB_B)

    ResourceClient(AzureCli(SUB_A, runner=runner)).link_workspace(ws, "/cluster/id")

    cmd = runner.calls[0]
    assert cmd[cmd.index("--subscription") + 1] == SUB_B
    assert cmd[cmd.index("--write-access-resource-id") + 1] == "/cluster/id"
    assert cmd[cmd.index("--workspace-name") + 1] == "ws-b"


def test_resource_client_link_failure_is_link_error():
    runner = FakeRunner(("", "ERROR: (BadRequest) cluster in another region", 1))
    with pytest.raises(LinkError):
        ResourceClient(AzureCli(runner=runner)).link_workspace(make_workspace("ws"), "/cluster/id")


def test_resource_client_malformed_workspace_id_is_link_error():
    runner = FakeRunner()
    ws = Workspace(id="not-an-arm-id", name="ws", resource_group="rg", region="eastus",
                   customer_id="cid")

    with pytest.raises(LinkError):
        ResourceClient(AzureCli(runner=runner)).link_workspace(ws, "/cluster/id")
    assert runner.calls == []


def test_resource_client_get_cluster():
    cluster = {"id": "/c", "location": "eastus", "sku": {"capacity": 500}, "provisioningState": "Creating"}
    runner = FakeRunner((json.dumps(cluster), "", 0))
    rid = f"/subscriptions/{SUB_A}/resourceGroups/rg/providers/Microsoft.OperationalInsights/clusters/c1"

    result = ResourceClient(AzureCli(runner=runner)).get_cluster(rid)

    assert result.provisioning_state == "Creating"
    assert result.capacity == 500
    assert runner.calls[0][runner.calls[0].index("--cluster-name") + 1] == "c1"


def test_resource_client_create_cluster_no_wait():
    runner = FakeRunner(("", "", 0))
    rid = f"/subscriptions/{SUB_B}/resourceGroups/rg-logs/providers/Microsoft.OperationalInsights/clusters/c1"

    assert ResourceClient(AzureCli(SUB_A, runner=runner)).create_cluster(rid, "eastus", 500) is None

    cmd = runner.calls[0]
    assert cmd[:6] == ["az", "monitor", "log-analytics", "cluster", "create", "--resource-group"]
    assert cmd[cmd.index("--resource-group") + 1] == "rg-logs"
    assert cmd[cmd.index("--cluster-name") + 1] == "c1"
    assert cmd[cmd.index("--location") + 1] == "eastus"
    assert cmd[cmd.index("--sku-capacity") + 1] == "500"
    assert "--no-wait" in cmd
    assert cmd[cmd.index("--subscription") + 1] == SUB_B


def test_resource_client_list_tables():
    tables = [{"name": "Heartbeat", "plan": "Analytics"}, {"name": "AppTraces", "plan": "Basic"}]
    runner = FakeRunner((json.dumps(tables), "", 0))
    ws = make_workspace("ws-b", sub=SUB_B)

    result = ResourceClient(AzureCli(SUB_A, runner=runner)).list_tables(ws)

    assert [(t.name, t.plan) for t in result] == [("Heartbeat", "Analytics"), ("AppTraces", "Basic")]
    cmd = runner.calls[0]
    assert cmd[1:6] == ["monitor", "log-analytics", "workspace", "table", "list"]
    assert cmd[cmd.index("--resource-group") + 1] == "rg-ws-b"
    assert cmd[cmd.index("--workspace-name") + 1] == "ws-b"
    assert cmd[cmd.index("--subscription") + 1] == SUB_B


def test_resource_client_list_workspaces_failure_is_enumeration_error():
    runner = FakeRunner(("", "ERROR: (AuthorizationFailed) no read access", 1))
    with pytest.raises(SubscriptionEnumerationError, match=SUB_A):
        ResourceClient(AzureCli(runner=runner)).list_workspaces(SUB_A)


def test_query_client_wraps_errors():
    window = (datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 1, 31, tzinfo=timezone.utc))
    runner = FakeRunner(("", "ERROR: (BadArgumentError) syntax error", 1))
    with pytest.raises(QueryError):
        QueryClient(AzureCli(runner=runner)).query(make_workspace("ws"), "Usage", window)


def test_format_timespan():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    end = datetime(2024, 1, 31, 12, 30, tzinfo=timezone.utc)
    assert format_timespan((start, end)) == "2024-01-01T00:00:00Z/2024-01-31T12:30:00Z"


def test_allow_list_formats(tmp_path):
    plain = tmp_path / "plain.json"
    plain.write_text(json.dumps([SUB_A.upper()]), encoding="utf-8")
    nested = tmp_path / "nested.json"
    nested.write_text(json.dumps({"subscriptions": [{"subscriptionId": SUB_B}, {"id": SUB_A}]}),
                      encoding="utf-8")

    assert load_subscription_allow_list(plain) == [SUB_A]
    assert load_subscription_allow_list(nested) == [SUB_B, SUB_A]


def test_allow_list_rejects_bad_document(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"subs": []}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_subscription_allow_list(bad)


def test_list_subscriptions_filters(caplog):
    accounts = [
        {"id": SUB_A, "name": "prod", "tenantId": "t1", "state": "Enabled"},
        {"id": SUB_B, "name": "dev", "tenantId": "t2", "state": "Enabled"},
        {"id": "33333333-3333-3333-3333-333333333333", "name": "old", "tenantId": "t1", "state": "Disabled"},
    ]
    cli = AzureCli(runner=FakeRunner((json.dumps(accounts), "", 0)))
    assert [s.id for s in list_subscriptions(cli)] == [SUB_A, SUB_B]

    cli = AzureCli(runner=FakeRunner((json.dumps(accounts), "", 0)))
    assert [s.id for s in list_subscriptions(cli, tenant="T1")] == [SUB_A]

    cli = AzureCli(runner=FakeRunner((json.dumps(accounts), "", 0)))
    with caplog.at_level(logging.WARNING):
        subs = list_subscriptions(cli, allow_list=[SUB_B, "44444444-4444-4444-4444-444444444444"])
    assert [s.id for s in subs] == [SUB_B]
    assert "not accessible" in caplog.text


def _subs(*ids):
    return [Subscription(id=i, display_name=i[:4], tenant_id="t1") for i in ids]


def test_discover_filters_region_and_exact_tag():
    resources = FakeResources(workspaces={
        SUB_A: [
            make_workspace("match", tags={"env": "prod"}),
            make_workspace("other-region", region="westus", tags={"env": "prod"}),
            make_workspace("wrong-case", tags={"env": "Prod"}),
            make_workspace("no-tag"),
        ],
        SUB_B: [make_workspace("match-b", sub=SUB_B, region="East US", tags={"env": "prod"})],
    })

    found = discover_workspaces(resources, _subs(SUB_A, SUB_B), "eastus", "env", "prod")

    assert [w.name for w in found] == ["match", "match-b"]


def test_discover_skips_failing_subscription(caplog):
    resources = FakeResources(
        workspaces={SUB_B: [make_workspace("ws-b", sub=SUB_B)]},
        failing_subscriptions={SUB_A},
    )
    with caplog.at_level(logging.WARNING):
        found = discover_workspaces(resources, _subs(SUB_A, SUB_B), "eastus")

    assert [w.name for w in found] == ["ws-b"]
    assert "Skipping subscription" in caplog.text


def test_discover_skips_subscription_the_cli_cannot_list(caplog):
    ws_b = make_workspace("ws-b", sub=SUB_B)
    raw = {"id": ws_b.id, "name": "ws-b", "resourceGroup": "rg-ws-b", "location": "eastus",
           "customerId": "cid-ws-b", "tags": {}}
    runner = FakeRunner(
        ("", "ERROR: (AuthorizationFailed) no read access", 1),
        (json.dumps([raw]), "", 0),
    )

    with caplog.at_level(logging.WARNING):
        found = discover_workspaces(ResourceClient(AzureCli(runner=runner)), _subs(SUB_A, SUB_B), "eastus")

    assert [w.id for w in found] == [ws_b.id]
    assert [c[c.index("--subscription") + 1] for c in runner.calls] == [SUB_A, SUB_B]
    assert "Skipping subscription" in caplog.text


def test_discover_empty_result_is_not_an_error(caplog):
    with caplog.at_level(logging.WARNING):
        assert discover_workspaces(FakeResources(), _subs(SUB_A), "eastus", "env", "prod") == []
    assert "No workspaces matched" in caplog.text


@pytest.mark.parametrize("kwargs", [
    {"region": ""},
    {"region": "eastus", "tag_key": " ", "tag_value": "prod"},
    {"region": "eastus", "tag_key": "env"},
])
def test_discover_rejects_bad_filters(kwargs):
    with pytest.raises(ValueError):
        discover_workspaces(FakeResources(), _subs(SUB_A), **kwargs)


def test_normalize_region():
    assert normalize_region("East US 2") == "eastus2"
