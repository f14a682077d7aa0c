# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
VM Connect Diagnostics Orchestrator

Wires the preventive checks, suggestion generator and auto-fix engine into a
single diagnostic run for the Azure CLI command.
"""

import asyncio
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

from azext_vm_connect_diagnostics._version import __version__
from azext_vm_connect_diagnostics.auto_fix import AutoFixEngine
from azext_vm_connect_diagnostics.error_recovery import ErrorRecoveryManager, RecoveryConfig
from azext_vm_connect_diagnostics.models import FixResult, PreventiveCheckConfig
from azext_vm_connect_diagnostics.preventive_check import (
    DEFAULT_THRESHOLDS,
    PreventiveCheckOrchestrator,
    ScoringThresholds,
)
from azext_vm_connect_diagnostics.remediation import AzureRemediator
from azext_vm_connect_diagnostics.report_generator import ReportGenerator
from azext_vm_connect_diagnostics.suggestion_generator import SuggestionGenerator
from azext_vm_connect_diagnostics.vm_checks import DEFAULT_REMOTE_PORT, AzureVMChecks


def run_diagnostics(  # pylint: disable=too-many-locals
    compute_client,
    network_client,
    authorization_client,
    credential,
    instance_id: str,
    subscription_id: Optional[str],
    local_port: Optional[int] = None,
    remote_port: int = DEFAULT_REMOTE_PORT,
    abort_on_critical: bool = True,
    auto_fix: bool = False,
    dry_run: bool = False,
    approve_all: bool = False,
    credential_factory: Optional[Callable[[], Any]] = None,
    thresholds: ScoringThresholds = DEFAULT_THRESHOLDS,
    recovery_config: Optional[RecoveryConfig] = None,
    timeout: float = 30.0,
    location: Optional[str] = None,
    json_report_path: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, Any]:
    """
    Diagnose why a remote session to a VM cannot be established.

    Runs the preventive checks, proposes fixes and, when requested, executes
    the auto-safe subset and verifies the outcome.

    Args:
        compute_client: ComputeManagementClient
        network_client: NetworkManagementClient
        authorization_client: AuthorizationManagementClient
        credential: Azure CLI credential used to validate the login
        instance_id: VM identifier (ARM resource ID or <resource-group>/<vm-name>)
        subscription_id: Azure subscription ID
        local_port: Local forwarding port to probe
        remote_port: Session port on the VM
        abort_on_critical: Advise aborting the connection on critical findings
        auto_fix: Execute auto-safe fixes
        dry_run: Report what fixes would do without executing them
        approve_all: Also execute fixes that require confirmation
        credential_factory: Returns a fresh credential for the credential refresh fix
        thresholds: Connection likelihood scoring heuristics
        recovery_config: Retry settings for Azure calls
        timeout: Soft time budget for the preventive checks, in seconds
        location: VM location, used in generated commands
        json_report_path: Path to save JSON report (if provided)
        logger: Optional logger instance

    Returns:
        Dictionary containing the complete report
    """
    if logger is None:
        logger = _setup_logging()

    return asyncio.run(_run(
        compute_client=compute_client,
        network_client=network_client,
        authorization_client=authorization_client,
        credential=credential,
        instance_id=instance_id,
        subscription_id=subscription_id,
        local_port=local_port,
        remote_port=remote_port,
        abort_on_critical=abort_on_critical,
        auto_fix=auto_fix,
        dry_run=dry_run,
        approve_all=approve_all,
        credential_factory=credential_factory,
        thresholds=thresholds,
        recovery_config=recovery_config,
        timeout=timeout,
        location=location,
        json_report_path=json_report_path,
        logger=logger,
    ))


async def _run(*, compute_client, network_client, authorization_client, credential, instance_id,  # pylint: disable=too-many-locals
               subscription_id, local_port, remote_port, abort_on_critical, auto_fix, dry_run, approve_all,
               credential_factory, thresholds, recovery_config, timeout, location, json_report_path,
               logger) -> Dict[str, Any]:
    logger.warning("Starting VM connect diagnostics for: %s", instance_id)

    checks = AzureVMChecks(
        compute_client=compute_client,
        network_client=network_client,
        authorization_client=authorization_client,
        credential=credential,
        remote_port=remote_port,
        logger=logger,
    )
    recovery = ErrorRecoveryManager(recovery_config, logger=logger)
    orchestrator = PreventiveCheckOrchestrator(checks, thresholds=thresholds, recovery=recovery, logger=logger)

    config = PreventiveCheckConfig(
        instance_id=instance_id,
        local_port=local_port,
        remote_port=remote_port,
        region=location,
        profile=subscription_id,
        abort_on_critical=abort_on_critical,
        timeout=timeout,
    )
    check_result = await orchestrator.run(config)
    issues = list(check_result.critical_issues) + list(check_result.warnings)

    suggestions = SuggestionGenerator(location=location, logger=logger).generate_suggestions(issues)

    engine = AutoFixEngine(
        checks,
        AzureRemediator(compute_client, credential_factory=credential_factory, logger=logger),
        dry_run=dry_run,
        recovery=recovery,
        logger=logger,
    )
    actions = engine.analyze(issues)
    unclassified = engine.unclassified_findings(issues)

    fix_results: List[FixResult] = []
    effectiveness = None
    if actions and (auto_fix or dry_run):
        logger.warning("Applying fixes (%s proposed)...", len(actions))
        fix_results = await engine.execute_safe_subset(actions)
        if approve_all:
            fix_results = [await engine.confirm(r) if r.skipped else r for r in fix_results]

        if any(r.applied and not r.dry_run for r in fix_results):
            logger.warning("Verifying applied fixes...")
            effectiveness = await engine.generate_effectiveness_report(instance_id, fix_results)
            logger.warning("Connectivity after fixes: %s", effectiveness.overall_connectivity_status.value)

        skipped = [r for r in fix_results if r.skipped]
        if skipped:
            logger.warning("%s fix(es) require confirmation; re-run with --yes to apply them", len(skipped))
    elif actions:
        logger.warning("%s fix(es) available; re-run with --auto-fix to apply the safe ones", len(actions))

    report_generator = ReportGenerator(
        instance_id,
        subscription_id,
        check_result=check_result,
        fix_actions=actions,
        fix_results=fix_results,
        effectiveness=effectiveness,
        suggestions=suggestions,
        unclassified=unclassified,
        dry_run=dry_run,
        script_version=__version__,
        logger=logger,
    )
    result = report_generator.generate_json_report()

    if json_report_path:
        report_generator.save_json_report(json_report_path)

    if check_result.should_abort_connection:
        logger.warning("Connection should not be attempted until the critical issues are resolved")

    logger.info("Diagnostic analysis complete")
    return result


def _setup_logging() -> logging.Logger:
    """
    Configure logging with appropriate handlers and formatters.

    Returns:
        Configured logger instance
    """
    formatter = logging.Formatter(
        fmt="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    logger = logging.getLogger("vm_connect_diagnostics")
    logger.propagate = False

    if not logger.handlers:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    logger.setLevel(logging.INFO)

    return logger
