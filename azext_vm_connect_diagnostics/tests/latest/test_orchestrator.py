# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

import json
import logging
from unittest.mock import MagicMock, patch

import pytest

from azext_vm_connect_diagnostics.models import AgentInfo, DiagnosticResult, FindingCode, Severity
from azext_vm_connect_diagnostics.orchestrator import run_diagnostics

VM_ID = "my-rg/my-vm"


def ok(item, code):
    return DiagnosticResult.success(item, f"{item} ok", code=code)


@pytest.fixture
def checks():
    checks = MagicMock()
    checks.check_basic_instance_state.return_value = ok("instance_state", FindingCode.INSTANCE_RUNNING)
    checks.check_local_port.return_value = ok("local_port", FindingCode.LOCAL_PORT_AVAILABLE)
    checks.check_agent_registration.return_value = ok("agent_registration", FindingCode.AGENT_READY)
    checks.diagnose_identity_and_access.return_value = [ok("credentials", FindingCode.ACCESS_OK)]
    checks.check_network_endpoints.return_value = ok("network_endpoints", FindingCode.ENDPOINT_OK)
    checks.check_firewall_rules.return_value = ok("firewall_rules", FindingCode.FIREWALL_OK)
    checks.check_route_and_connectivity.return_value = ok("route_connectivity", FindingCode.ROUTE_OK)
    checks.get_agent_info.return_value = AgentInfo(VM_ID, "Ready")
    return checks


@pytest.fixture
def remediator():
    remediator = MagicMock()
    remediator.refresh_credentials.return_value = {"expires_on": 1700000000}
    return remediator


@pytest.fixture
def run(checks, remediator):
    def runner(**kwargs):
        with patch("azext_vm_connect_diagnostics.orchestrator.AzureVMChecks", return_value=checks), \
                patch("azext_vm_connect_diagnostics.orchestrator.AzureRemediator", return_value=remediator):
            return run_diagnostics(
                compute_client=MagicMock(),
                network_client=MagicMock(),
                authorization_client=MagicMock(),
                credential=MagicMock(),
                instance_id=VM_ID,
                subscription_id="sub-id",
                logger=logging.getLogger("vm_connect_diagnostics.tests"),
                **kwargs,
            )
    return runner


def test_healthy_vm(run):
    report = run(local_port=8022)

    assert report["preventive_check"]["overall_status"] == "ready"
    assert report["preventive_check"]["connection_likelihood"] == "high"
    assert report["fix_actions"] == []
    assert report["suggestions"] == []
    assert "fix_effectiveness" not in report


def test_stopped_vm_without_auto_fix(run, checks, remediator):
    checks.check_basic_instance_state.return_value = DiagnosticResult.error(
        "instance_state", "stopped", code=FindingCode.INSTANCE_STOPPED, auto_fixable=True, instance_id=VM_ID)

    report = run()

    assert [a["action_type"] for a in report["fix_actions"]] == ["start_instance"]
    assert report["fix_results"] == []
    assert report["suggestions"][0]["problem_type"] == "instance_state"
    remediator.start_instance.assert_not_called()


def test_auto_fix_applies_only_safe_actions(run, checks, remediator):
    checks.check_basic_instance_state.return_value = DiagnosticResult.error(
        "instance_state", "stopped", code=FindingCode.INSTANCE_STOPPED, auto_fixable=True, instance_id=VM_ID)
    checks.diagnose_identity_and_access.return_value = [DiagnosticResult.error(
        "credentials", "expired", severity=Severity.CRITICAL, code=FindingCode.CREDENTIALS_INVALID,
        auto_fixable=True)]

    report = run(auto_fix=True)

    states = [(r["action"]["action_type"], r["state"]) for r in report["fix_results"]]
    assert states == [("update_credentials", "succeeded"), ("start_instance", "awaiting_confirmation")]
    assert report["preventive_check"]["should_abort_connection"] is True
    assert report["fix_effectiveness"]["total_fixes_applied"] == 1
    remediator.refresh_credentials.assert_called_once_with()
    remediator.start_instance.assert_not_called()


def test_dry_run_touches_nothing(run, checks, remediator):
    checks.diagnose_identity_and_access.return_value = [DiagnosticResult.error(
        "credentials", "expired", severity=Severity.CRITICAL, code=FindingCode.CREDENTIALS_INVALID)]

    report = run(dry_run=True)

    assert report["metadata"]["dry_run"] is True
    assert report["fix_results"][0]["dry_run"] is True
    assert report["fix_results"][0]["message"].startswith("DRY RUN: Would ")
    assert "fix_effectiveness" not in report
    remediator.refresh_credentials.assert_not_called()


def test_unclassified_findings_reported(run, checks):
    checks.check_route_and_connectivity.return_value = DiagnosticResult.warning(
        "route_connectivity", "via NVA", code=FindingCode.ROUTE_VIRTUAL_APPLIANCE)

    report = run()

    assert [f["item_name"] for f in report["unclassified_findings"]] == ["route_connectivity"]
    assert report["suggestions"][0]["problem_type"] == "routing"


def test_json_report_saved(run, tmp_path):
    path = tmp_path / "diag.json"

    run(json_report_path=str(path))

    with open(path, encoding="utf-8") as f:
        assert json.load(f)["metadata"]["vm"] == VM_ID


def test_manual_only_fixes_skip_effectiveness(run, checks):
    checks.diagnose_identity_and_access.return_value = [DiagnosticResult.warning(
        "rbac_permissions", "missing start permission", code=FindingCode.PERMISSION_INSUFFICIENT)]

    report = run(auto_fix=True)

    assert [r["action"]["action_type"] for r in report["fix_results"]] == ["suggest_manual_fix"]
    assert report["fix_results"][0]["state"] == "succeeded"
    assert "fix_effectiveness" not in report
