# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

import asyncio
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ServiceRequestError

from azext_vm_connect_diagnostics.error_recovery import ErrorRecoveryManager, RecoveryConfig
from azext_vm_connect_diagnostics.models import (
    ConnectionLikelihood,
    DiagnosticResult,
    DiagnosticStatus,
    FindingCode,
    PreventiveCheckConfig,
    PreventiveCheckStatus,
    Severity,
)
from azext_vm_connect_diagnostics.preventive_check import (
    ALL_CLEAR_RECOMMENDATION,
    PreventiveCheckOrchestrator,
    ScoringThresholds,
    calculate_connection_likelihood,
    fold_access_results,
    generate_recommendations,
    should_abort_connection,
)

VM_ID = "my-rg/my-vm"


def ok(item, code=FindingCode.UNCLASSIFIED):
    return DiagnosticResult.success(item, f"{item} ok", code=code)


def healthy_checks():
    checks = MagicMock()
    checks.check_basic_instance_state.return_value = ok("instance_state", FindingCode.INSTANCE_RUNNING)
    checks.check_local_port.return_value = ok("local_port", FindingCode.LOCAL_PORT_AVAILABLE)
    checks.check_agent_registration.return_value = ok("agent_registration", FindingCode.AGENT_READY)
    checks.diagnose_identity_and_access.return_value = [ok("credentials", FindingCode.ACCESS_OK),
                                                        ok("rbac_permissions", FindingCode.ACCESS_OK)]
    checks.check_network_endpoints.return_value = ok("network_endpoints", FindingCode.ENDPOINT_OK)
    checks.check_firewall_rules.return_value = ok("firewall_rules", FindingCode.FIREWALL_OK)
    checks.check_route_and_connectivity.return_value = ok("route_connectivity", FindingCode.ROUTE_OK)
    return checks


class TestScoring:
    def test_critical_gives_very_low(self):
        results = [DiagnosticResult.error("instance_state", "gone", severity=Severity.CRITICAL)]
        assert calculate_connection_likelihood(results) == ConnectionLikelihood.VERY_LOW
        assert should_abort_connection(results, abort_on_critical=True)
        assert not should_abort_connection(results, abort_on_critical=False)

    def test_all_success_gives_high(self):
        results = [ok(f"check_{i}") for i in range(5)]
        assert calculate_connection_likelihood(results) == ConnectionLikelihood.HIGH
        assert not should_abort_connection(results, abort_on_critical=True)

    def test_high_errors(self):
        one = [DiagnosticResult.error("a", "x"), ok("b"), ok("c")]
        two = one + [DiagnosticResult.error("d", "x")]
        three = two + [DiagnosticResult.error("e", "x")]

        assert calculate_connection_likelihood(one) == ConnectionLikelihood.MEDIUM
        assert calculate_connection_likelihood(two) == ConnectionLikelihood.LOW
        assert not should_abort_connection(two, abort_on_critical=True)
        assert should_abort_connection(three, abort_on_critical=True)

    def test_many_warnings_give_medium(self):
        results = [DiagnosticResult.warning(f"w{i}", "x") for i in range(3)] + [ok("a")]
        assert calculate_connection_likelihood(results) == ConnectionLikelihood.MEDIUM

    def test_low_success_ratio_gives_medium(self):
        # one warning, no successes: neither HIGH nor any error bucket
        results = [DiagnosticResult.warning("w", "x"), DiagnosticResult.skipped("s", "x"),
                   DiagnosticResult.skipped("t", "x")]
        assert calculate_connection_likelihood(results) == ConnectionLikelihood.MEDIUM

    def test_thresholds_are_overridable(self):
        results = [DiagnosticResult.error("a", "x"), DiagnosticResult.error("b", "x")]
        strict = ScoringThresholds(high_errors_for_abort=2)
        assert should_abort_connection(results, True, strict)
        assert not should_abort_connection(results, True)

    def test_recommendations_deduplicated(self):
        results = [
            DiagnosticResult.error("firewall_rules", "deny", code=FindingCode.FIREWALL_BLOCKING),
            DiagnosticResult.error("firewall_rules", "deny again", code=FindingCode.FIREWALL_BLOCKING),
            ok("route_connectivity"),
        ]
        assert len(generate_recommendations(results)) == 1
        assert generate_recommendations([ok("a")]) == [ALL_CLEAR_RECOMMENDATION]


class TestAccessFolding:
    def test_critical_finding(self):
        folded = fold_access_results([
            DiagnosticResult.error("credentials", "expired", severity=Severity.CRITICAL,
                                   code=FindingCode.CREDENTIALS_INVALID, auto_fixable=True),
        ])
        assert folded.item_name == "access_prerequisites"
        assert folded.is_critical_error
        assert folded.code == FindingCode.CREDENTIALS_INVALID
        assert folded.auto_fixable
        assert len(folded.detail("findings")) == 1

    def test_warning_keeps_worst_code(self):
        folded = fold_access_results([
            ok("credentials", FindingCode.ACCESS_OK),
            DiagnosticResult.warning("rbac_permissions", "missing start", severity=Severity.MEDIUM,
                                     code=FindingCode.PERMISSION_INSUFFICIENT),
        ])
        assert folded.status == DiagnosticStatus.WARNING
        assert folded.severity == Severity.MEDIUM
        assert folded.code == FindingCode.PERMISSION_INSUFFICIENT

    def test_all_clear(self):
        folded = fold_access_results([ok("credentials"), DiagnosticResult.skipped("rbac_permissions", "n/a")])
        assert folded.status == DiagnosticStatus.SUCCESS
        assert folded.code == FindingCode.ACCESS_OK


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_all_checks_pass(self):
        checks = healthy_checks()
        seen = []
        orchestrator = PreventiveCheckOrchestrator(checks, on_result=seen.append)

        result = await orchestrator.run(PreventiveCheckConfig(VM_ID, local_port=8022))

        assert result.overall_status == PreventiveCheckStatus.READY
        assert result.connection_likelihood == ConnectionLikelihood.HIGH
        assert result.recommendations == (ALL_CLEAR_RECOMMENDATION,)
        assert not result.should_abort_connection
        assert [r.item_name for r in seen] == [
            "basic_state", "agent_registration", "access_prerequisites",
            "network_endpoints", "firewall_rules", "route_connectivity"]
        checks.check_local_port.assert_called_once_with(8022)

    @pytest.mark.asyncio
    async def test_gate_short_circuits(self):
        checks = healthy_checks()
        checks.check_basic_instance_state.return_value = DiagnosticResult.error(
            "instance_state", "not found", severity=Severity.CRITICAL, code=FindingCode.INSTANCE_NOT_FOUND)

        result = await PreventiveCheckOrchestrator(checks).run(PreventiveCheckConfig(VM_ID, local_port=8022))

        assert result.overall_status == PreventiveCheckStatus.CRITICAL
        assert result.connection_likelihood == ConnectionLikelihood.VERY_LOW
        assert result.should_abort_connection
        assert len(result.critical_issues) == 1
        checks.check_agent_registration.assert_not_called()
        checks.diagnose_identity_and_access.assert_not_called()
        checks.check_firewall_rules.assert_not_called()
        checks.check_local_port.assert_not_called()

    @pytest.mark.asyncio
    async def test_gate_short_circuit_respects_abort_flag(self):
        checks = healthy_checks()
        checks.check_basic_instance_state.return_value = DiagnosticResult.error(
            "instance_state", "deleting", severity=Severity.CRITICAL, code=FindingCode.INSTANCE_DELETED)

        config = PreventiveCheckConfig(VM_ID).with_abort_on_critical(False)
        result = await PreventiveCheckOrchestrator(checks).run(config)

        assert result.overall_status == PreventiveCheckStatus.CRITICAL
        assert not result.should_abort_connection

    @pytest.mark.asyncio
    async def test_port_conflict_folded_into_basic_state(self):
        checks = healthy_checks()
        checks.check_local_port.return_value = DiagnosticResult.warning(
            "local_port", "Port 8022 is currently in use", severity=Severity.LOW,
            code=FindingCode.LOCAL_PORT_IN_USE, auto_fixable=True, port=8022, process_id=4242,
            process_name="python")

        result = await PreventiveCheckOrchestrator(checks).run(PreventiveCheckConfig(VM_ID, local_port=8022))

        assert result.overall_status == PreventiveCheckStatus.WARNING
        basic = result.warnings[0]
        assert basic.item_name == "basic_state"
        assert basic.severity == Severity.MEDIUM
        assert basic.code == FindingCode.LOCAL_PORT_IN_USE
        assert basic.detail("process_id") == 4242
        assert basic.detail("instance_id") == VM_ID

    @pytest.mark.asyncio
    async def test_stopped_instance_skips_port_check(self):
        checks = healthy_checks()
        checks.check_basic_instance_state.return_value = DiagnosticResult.error(
            "instance_state", "stopped", code=FindingCode.INSTANCE_STOPPED, instance_id=VM_ID)

        result = await PreventiveCheckOrchestrator(checks).run(PreventiveCheckConfig(VM_ID, local_port=8022))

        checks.check_local_port.assert_not_called()
        assert result.warnings[0].code == FindingCode.INSTANCE_STOPPED
        assert result.connection_likelihood == ConnectionLikelihood.MEDIUM

    @pytest.mark.asyncio
    async def test_prerequisite_checks_run_concurrently(self):
        checks = healthy_checks()
        waiting = []
        all_started = asyncio.Event()

        def rendezvous(result):
            async def check(_instance_id):
                waiting.append(result)
                if len(waiting) == 4:
                    all_started.set()
                # Only returns once every other waiting check has started
                await all_started.wait()
                return result
            return check

        async def broken_firewall(_instance_id):
            raise RuntimeError("nsg lookup failed")

        checks.check_agent_registration = rendezvous(ok("agent_registration", FindingCode.AGENT_READY))
        checks.diagnose_identity_and_access = rendezvous([ok("credentials", FindingCode.ACCESS_OK)])
        checks.check_network_endpoints = rendezvous(ok("network_endpoints", FindingCode.ENDPOINT_OK))
        checks.check_route_and_connectivity = rendezvous(ok("route_connectivity", FindingCode.ROUTE_OK))
        checks.check_firewall_rules = broken_firewall

        results = await asyncio.wait_for(
            PreventiveCheckOrchestrator(checks).verify_prerequisites(PreventiveCheckConfig(VM_ID)), timeout=5)

        assert [r.item_name for r in results] == [
            "agent_registration", "access_prerequisites", "network_endpoints", "firewall_rules",
            "route_connectivity"]
        assert [r.code for r in results] == [
            FindingCode.AGENT_READY, FindingCode.ACCESS_OK, FindingCode.ENDPOINT_OK,
            FindingCode.CHECK_FAILED, FindingCode.ROUTE_OK]

    @pytest.mark.asyncio
    async def test_leaf_exception_becomes_check_failed(self):
        checks = healthy_checks()
        checks.check_firewall_rules.side_effect = RuntimeError("sdk exploded")

        result = await PreventiveCheckOrchestrator(checks).run(PreventiveCheckConfig(VM_ID))

        failed = [w for w in result.warnings if w.item_name == "firewall_rules"]
        assert len(failed) == 1
        assert failed[0].status == DiagnosticStatus.ERROR
        assert failed[0].severity == Severity.HIGH
        assert failed[0].code == FindingCode.CHECK_FAILED
        assert result.connection_likelihood == ConnectionLikelihood.MEDIUM

    @pytest.mark.asyncio
    async def test_identity_failure_folded(self):
        checks = healthy_checks()
        checks.diagnose_identity_and_access.return_value = [DiagnosticResult.error(
            "credentials", "expired", severity=Severity.CRITICAL, code=FindingCode.CREDENTIALS_INVALID)]

        result = await PreventiveCheckOrchestrator(checks).run(PreventiveCheckConfig(VM_ID))

        assert result.overall_status == PreventiveCheckStatus.ABORTED
        assert [c.item_name for c in result.critical_issues] == ["access_prerequisites"]

    @pytest.mark.asyncio
    async def test_recovery_retries_transient_leaf_failure(self, clock):
        checks = healthy_checks()
        checks.check_route_and_connectivity.side_effect = [
            ServiceRequestError("connection reset"),
            ok("route_connectivity", FindingCode.ROUTE_OK),
        ]
        recovery = ErrorRecoveryManager(RecoveryConfig(base_delay=0.01), sleep=clock.sleep, clock=clock)

        result = await PreventiveCheckOrchestrator(checks, recovery=recovery).run(PreventiveCheckConfig(VM_ID))

        assert result.overall_status == PreventiveCheckStatus.READY
        assert checks.check_route_and_connectivity.call_count == 2

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_break_run(self):
        def broken(_result):
            raise RuntimeError("display gone")

        result = await PreventiveCheckOrchestrator(healthy_checks(), on_result=broken).run(
            PreventiveCheckConfig(VM_ID))
        assert result.overall_status == PreventiveCheckStatus.READY

    def test_summarize_is_deterministic(self):
        orchestrator = PreventiveCheckOrchestrator(healthy_checks())
        results = [
            ok("basic_state"),
            DiagnosticResult.warning("route_connectivity", "appliance", code=FindingCode.ROUTE_VIRTUAL_APPLIANCE),
            DiagnosticResult.error("firewall_rules", "deny", code=FindingCode.FIREWALL_BLOCKING),
        ]
        config = PreventiveCheckConfig(VM_ID)

        first = orchestrator.summarize(results, config)
        second = orchestrator.summarize(results, config)

        assert first.to_dict() == second.to_dict()
        assert first.overall_status == PreventiveCheckStatus.WARNING
        assert len(first.recommendations) == 2
