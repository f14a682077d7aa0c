# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
Preventive checks run before a remote session is opened

A blocking basic-state gate is followed by concurrent prerequisite checks.
Results are aggregated into an overall status, a connection likelihood and an
abort decision.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Optional, Tuple

from .error_recovery import ContextualError, ErrorContext, ErrorRecoveryManager, invoke
from .models import (
    ConnectionLikelihood,
    DiagnosticResult,
    DiagnosticStatus,
    FindingCode,
    PreventiveCheckConfig,
    PreventiveCheckResult,
    PreventiveCheckStatus,
    Severity,
)


@dataclass(frozen=True)
class ScoringThresholds:
    """
    Heuristic constants used by likelihood scoring and the abort decision.

    They are empirical; override them through the ``vm_connect_diagnostics``
    section of the Azure CLI config when a deployment needs different cut-offs.
    """

    high_errors_for_abort: int = 3
    high_errors_for_low: int = 2
    warnings_for_medium: int = 3
    max_warnings_for_high: int = 1
    success_ratio_for_high: float = 0.5


DEFAULT_THRESHOLDS = ScoringThresholds()

ALL_CLEAR_RECOMMENDATION = "All prerequisites are met. The connection can be started."

_RECOMMENDATIONS = {
    FindingCode.INSTANCE_NOT_FOUND: "Check the resource group and VM name; the virtual machine was not found.",
    FindingCode.INSTANCE_DELETED: "The virtual machine is being deleted. Connect to a different VM.",
    FindingCode.INSTANCE_STOPPED: "Start the virtual machine (az vm start) and retry the connection.",
    FindingCode.INSTANCE_TRANSITIONING: "Wait for the virtual machine to finish its power state change, then retry.",
    FindingCode.AGENT_NOT_READY: "Check the VM guest agent and reapply the VM (az vm reapply) if it stays not ready.",
    FindingCode.AGENT_NOT_REPORTING: "The VM guest agent is not reporting. Reapply the VM (az vm reapply) "
                                     "or reinstall the agent.",
    FindingCode.CREDENTIALS_INVALID: "Run 'az login' to refresh your Azure CLI credentials.",
    FindingCode.PERMISSION_INSUFFICIENT: "Review your role assignments on the virtual machine "
                                         "(for example 'Virtual Machine User Login' and 'Reader').",
    FindingCode.ENDPOINT_MISSING: "Attach a public IP to the VM network interface or deploy Azure Bastion "
                                  "in the virtual network.",
    FindingCode.FIREWALL_BLOCKING: "Add an NSG rule allowing inbound TCP on the session port "
                                   "with a priority lower than the denying rule.",
    FindingCode.ROUTE_BLACKHOLE: "Remove or fix the 0.0.0.0/0 route with next hop 'None' on the VM subnet.",
    FindingCode.ROUTE_VIRTUAL_APPLIANCE: "Make sure the virtual appliance forwards return traffic for the session.",
    FindingCode.LOCAL_PORT_IN_USE: "Free the local port or choose another one with --local-port.",
}


def partition_results(results: List[DiagnosticResult]) -> Tuple[List[DiagnosticResult], List[DiagnosticResult]]:
    """Split results into (critical_issues, warnings)"""
    critical_issues = [r for r in results if r.is_critical_error]
    warnings = [
        r for r in results
        if r.status == DiagnosticStatus.WARNING
        or (r.status == DiagnosticStatus.ERROR and r.severity != Severity.CRITICAL)
    ]
    return critical_issues, warnings


def calculate_connection_likelihood(results: List[DiagnosticResult],
                                    thresholds: ScoringThresholds = DEFAULT_THRESHOLDS) -> ConnectionLikelihood:
    """Score how likely a connection attempt is to succeed. Pure function of ``results``."""
    critical_count = sum(1 for r in results if r.is_critical_error)
    high_error_count = sum(1 for r in results if r.is_high_error)
    warning_count = sum(1 for r in results if r.status == DiagnosticStatus.WARNING)
    success_count = sum(1 for r in results if r.status == DiagnosticStatus.SUCCESS)

    if critical_count > 0:
        return ConnectionLikelihood.VERY_LOW
    if high_error_count >= thresholds.high_errors_for_low:
        return ConnectionLikelihood.LOW
    if high_error_count == 1 or warning_count >= thresholds.warnings_for_medium:
        return ConnectionLikelihood.MEDIUM
    if (warning_count <= thresholds.max_warnings_for_high
            and success_count >= int(len(results) * thresholds.success_ratio_for_high)):
        return ConnectionLikelihood.HIGH
    return ConnectionLikelihood.MEDIUM


def should_abort_connection(results: List[DiagnosticResult], abort_on_critical: bool,
                            thresholds: ScoringThresholds = DEFAULT_THRESHOLDS) -> bool:
    """Abort on any critical error, or on enough independent high-severity errors"""
    if not abort_on_critical:
        return False
    if any(r.is_critical_error for r in results):
        return True
    return sum(1 for r in results if r.is_high_error) >= thresholds.high_errors_for_abort


def derive_overall_status(critical_issues, warnings, should_abort: bool) -> PreventiveCheckStatus:
    if should_abort:
        return PreventiveCheckStatus.ABORTED
    if critical_issues:
        return PreventiveCheckStatus.CRITICAL
    if warnings:
        return PreventiveCheckStatus.WARNING
    return PreventiveCheckStatus.READY


def generate_recommendations(results: List[DiagnosticResult]) -> List[str]:
    """One line per distinct problem category, or a single all-clear line"""
    recommendations: List[str] = []
    for result in results:
        if result.status in (DiagnosticStatus.SUCCESS, DiagnosticStatus.SKIPPED):
            continue
        if result.code in _RECOMMENDATIONS:
            line = _RECOMMENDATIONS[result.code]
        elif result.code == FindingCode.CHECK_FAILED:
            line = f"The {result.item_name} check could not run: {result.message}"
        elif result.status == DiagnosticStatus.ERROR:
            line = f"Resolve the {result.item_name} issue before connecting."
        else:
            line = f"Review the {result.item_name} warning."
        if line not in recommendations:
            recommendations.append(line)

    if not recommendations:
        recommendations.append(ALL_CLEAR_RECOMMENDATION)
    return recommendations


def fold_access_results(findings: List[DiagnosticResult], duration: float = 0.0) -> DiagnosticResult:
    """Collapse identity and access findings into one ``access_prerequisites`` result"""
    details = {"findings": [f.to_dict() for f in findings]}
    auto_fixable = any(f.auto_fixable for f in findings)

    critical = [f for f in findings if f.is_critical_error]
    if critical:
        return DiagnosticResult.error(
            "access_prerequisites",
            f"Critical access issues detected: {len(critical)} issues",
            severity=Severity.CRITICAL, duration=duration, code=critical[0].code,
            auto_fixable=auto_fixable, **details)

    problems = [f for f in findings if f.status in (DiagnosticStatus.WARNING, DiagnosticStatus.ERROR)]
    if problems:
        worst = max(problems, key=lambda f: f.severity)
        return DiagnosticResult.warning(
            "access_prerequisites",
            f"Access configuration has {len(problems)} warnings",
            severity=Severity.MEDIUM, duration=duration, code=worst.code,
            auto_fixable=auto_fixable, **details)

    return DiagnosticResult.success(
        "access_prerequisites", "Identity and access verified",
        duration=duration, code=FindingCode.ACCESS_OK, **details)


class PreventiveCheckOrchestrator:
    """Runs preventive checks against one connection target."""

    def __init__(
        self,
        checks,
        thresholds: ScoringThresholds = DEFAULT_THRESHOLDS,
        recovery: Optional[ErrorRecoveryManager] = None,
        on_result: Optional[Callable[[DiagnosticResult], Any]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            checks: Object exposing the leaf checks (see vm_checks.AzureVMChecks)
            thresholds: Scoring heuristics
            recovery: Optional ErrorRecoveryManager wrapped around each leaf call
            on_result: Called with every DiagnosticResult as it is produced
            logger: Optional logger instance
        """
        self.checks = checks
        self.thresholds = thresholds
        self.recovery = recovery
        self.on_result = on_result
        self.logger = logger or logging.getLogger("vm_connect_diagnostics.preventive_check")

    async def run(self, config: PreventiveCheckConfig) -> PreventiveCheckResult:
        """Run the gate and prerequisite checks and aggregate them."""
        self.logger.warning("Running preventive checks for: %s", config.instance_id)
        start = time.monotonic()

        self.logger.warning("[1/2] Checking basic instance state...")
        basic_state = await self.check_basic_state(config)

        if basic_state.is_critical_error:
            self.logger.warning("Critical instance state issue detected, skipping prerequisite checks")
            self.display_warnings([basic_state])
            return PreventiveCheckResult(
                overall_status=PreventiveCheckStatus.CRITICAL,
                connection_likelihood=ConnectionLikelihood.VERY_LOW,
                critical_issues=[basic_state],
                warnings=[],
                recommendations=generate_recommendations([basic_state]),
                should_abort_connection=config.abort_on_critical,
                total_duration=time.monotonic() - start,
                timeout_budget=config.timeout,
            )

        self.logger.warning("[2/2] Verifying connection prerequisites...")
        prerequisites = await self.verify_prerequisites(config)

        result = self.summarize([basic_state] + prerequisites, config, time.monotonic() - start)
        self.logger.warning(
            "Preventive checks completed: %s, connection likelihood %s (%s%%)",
            result.overall_status.value,
            result.connection_likelihood.value,
            result.connection_likelihood.as_percentage(),
        )
        if result.total_duration > config.timeout:
            self.logger.info("Preventive checks took %.1fs, over the %.1fs budget",
                             result.total_duration, config.timeout)
        return result

    def summarize(self, results: List[DiagnosticResult], config: PreventiveCheckConfig,
                  duration: float = 0.0) -> PreventiveCheckResult:
        """Aggregate a full result set. Deterministic apart from the logging side effect."""
        critical_issues, warnings = partition_results(results)
        if critical_issues or warnings:
            self.display_warnings(critical_issues + warnings)

        likelihood = calculate_connection_likelihood(results, self.thresholds)
        abort = should_abort_connection(results, config.abort_on_critical, self.thresholds)
        return PreventiveCheckResult(
            overall_status=derive_overall_status(critical_issues, warnings, abort),
            connection_likelihood=likelihood,
            critical_issues=critical_issues,
            warnings=warnings,
            recommendations=generate_recommendations(results),
            should_abort_connection=abort,
            total_duration=duration,
            timeout_budget=config.timeout,
        )

    async def check_basic_state(self, config: PreventiveCheckConfig) -> DiagnosticResult:
        """Instance existence and power state, with the local port folded in as a note."""
        instance = await self._call("instance_state", config.instance_id,
                                    self.checks.check_basic_instance_state, config.instance_id)

        if config.local_port is not None and instance.status != DiagnosticStatus.ERROR:
            port = await self._call("local_port", config.instance_id,
                                    self.checks.check_local_port, config.local_port)
            if port.status != DiagnosticStatus.SUCCESS:
                details = dict(port.details or {})
                details.update(instance_id=config.instance_id, instance_state=instance.message)
                folded = DiagnosticResult.warning(
                    "basic_state",
                    f"Instance is ready but local port {config.local_port} has issues: {port.message}",
                    severity=Severity.MEDIUM,
                    duration=instance.duration + port.duration,
                    code=port.code,
                    auto_fixable=port.auto_fixable,
                    **details,
                )
                self._emit(folded)
                return folded

        basic_state = replace(instance, item_name="basic_state", message=f"Basic state check: {instance.message}")
        self._emit(basic_state)
        return basic_state

    async def verify_prerequisites(self, config: PreventiveCheckConfig) -> List[DiagnosticResult]:
        """Run the independent prerequisite checks concurrently and collect every result."""
        instance_id = config.instance_id
        results = await asyncio.gather(
            self._call("agent_registration", instance_id, self.checks.check_agent_registration, instance_id),
            self._check_access(instance_id),
            self._call("network_endpoints", instance_id, self.checks.check_network_endpoints, instance_id),
            self._call("firewall_rules", instance_id, self.checks.check_firewall_rules, instance_id),
            self._call("route_connectivity", instance_id, self.checks.check_route_and_connectivity, instance_id),
        )
        for result in results:
            self._emit(result)
        self.logger.info("Prerequisite verification completed with %s results", len(results))
        return list(results)

    async def _check_access(self, instance_id: str) -> DiagnosticResult:
        start = time.monotonic()
        findings = await self._call("access_prerequisites", instance_id,
                                    self.checks.diagnose_identity_and_access, instance_id)
        if isinstance(findings, DiagnosticResult):
            # The leaf call failed and was already folded
            return findings
        return fold_access_results(list(findings), time.monotonic() - start)

    async def _call(self, item_name: str, instance_id: str, func: Callable, *args):
        """Invoke a leaf check; any exception becomes an ERROR/HIGH result."""
        start = time.monotonic()
        try:
            if self.recovery is not None:
                return await self.recovery.run(func, *args)
            return await invoke(func, *args)
        except Exception as e:  # pylint: disable=broad-except
            error = ContextualError(e, ErrorContext(item_name, "preventive_check").with_instance_id(instance_id))
            self.logger.info("%s", error.detailed_info())
            return DiagnosticResult.error(
                item_name,
                f"{item_name} check failed: {error.user_message()}",
                severity=Severity.HIGH,
                duration=time.monotonic() - start,
                code=FindingCode.CHECK_FAILED,
                error_category=error.category.value,
            )

    def _emit(self, result: DiagnosticResult) -> None:
        if self.on_result is None:
            return
        try:
            self.on_result(result)
        except Exception as e:  # pylint: disable=broad-except
            self.logger.debug("Result callback failed: %s", e)

    def display_warnings(self, issues: List[DiagnosticResult]) -> None:
        for issue in issues:
            if issue.is_critical_error:
                self.logger.error("CRITICAL: %s - %s", issue.item_name, issue.message)
            elif issue.is_high_error:
                self.logger.error("ERROR: %s - %s", issue.item_name, issue.message)
            elif issue.status == DiagnosticStatus.WARNING:
                self.logger.warning("WARNING: %s - %s", issue.item_name, issue.message)
            else:
                self.logger.info("INFO: %s - %s", issue.item_name, issue.message)
