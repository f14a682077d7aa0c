# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
Auto-fix engine

Turns diagnostic findings into risk-classified FixActions, executes the
auto-safe subset (or a single approved action), and verifies the outcome.
Findings are matched by FindingCode, never by message text.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Optional

from .error_recovery import ErrorRecoveryManager, invoke
from .exceptions import ValidationError, classify_exception
from .models import (
    ConnectivityStatus,
    DiagnosticResult,
    DiagnosticStatus,
    FindingCode,
    FixAction,
    FixActionState,
    FixActionType,
    FixEffectivenessReport,
    FixResult,
    FixVerificationResult,
)
from .validators import InputValidator
from .vm_checks import allow_rule_priority


@dataclass(frozen=True)
class WaitWindow:
    """Polling interval and total budget, in seconds"""

    interval: float
    budget: float


@dataclass(frozen=True)
class WaitPolicy:
    """Bounded waits used by side-effecting executors"""

    instance_start: WaitWindow = field(default_factory=lambda: WaitWindow(10.0, 300.0))
    agent_ready: WaitWindow = field(default_factory=lambda: WaitWindow(3.0, 300.0))
    agent_settle: float = 10.0
    agent_health: WaitWindow = field(default_factory=lambda: WaitWindow(5.0, 60.0))
    process_exit: WaitWindow = field(default_factory=lambda: WaitWindow(0.5, 5.0))


MANUAL_FIX_MESSAGE = "Manual fix action - see instructions"

# Fix types that have a post-remediation verifier
VERIFIABLE_FIX_TYPES = {
    FixActionType.START_INSTANCE: "instance_start",
    FixActionType.RESTART_AGENT: "agent",
    FixActionType.UPDATE_CREDENTIALS: "access_policy",
    FixActionType.TERMINATE_PROCESS: "process",
}

_VERIFICATION_SCRIPTS = {
    "instance_start": [
        "Check the VM power state: az vm get-instance-view -g {rg} -n {vm} "
        "--query \"instanceView.statuses[?starts_with(code, 'PowerState')]\"",
        "Review the boot log: az vm boot-diagnostics get-boot-log -g {rg} -n {vm}",
        "Retry the start: az vm start -g {rg} -n {vm}",
    ],
    "agent": [
        "Check the guest agent status: az vm get-instance-view -g {rg} -n {vm} --query instanceView.vmAgent",
        "Reapply the VM to re-provision the agent: az vm reapply -g {rg} -n {vm}",
        "Make sure the VM can reach 168.63.129.16 (WireServer) on ports 80 and 32526",
    ],
    "access_policy": [
        "Sign in again: az login",
        "List your role assignments on the VM: az role assignment list --assignee <you> "
        "--scope $(az vm show -g {rg} -n {vm} --query id -o tsv)",
    ],
    "firewall": [
        "List effective NSG rules: az network nic list-effective-nsg -g {rg} -n <nic-name>",
        "Check that no lower-priority-number Deny rule matches the session port",
    ],
    "process": [
        "Find the process holding the port (lsof -i :<port> or netstat -ano) and stop it manually",
        "Or pick another local port with --local-port",
    ],
}


def agent_troubleshooting_instructions(instance_id: str) -> str:
    rg, vm = _split_target(instance_id)
    return (
        f"Troubleshooting steps for guest agent readiness (VM: {instance_id}):\n"
        "1) Verify the Azure VM Agent (waagent / WindowsAzureGuestAgent) is installed and running\n"
        "2) Verify outbound access to 168.63.129.16 on ports 80 and 32526 is not blocked\n"
        f"3) Reapply the VM: az vm reapply -g {rg} -n {vm}\n"
        f"4) Review the boot log: az vm boot-diagnostics get-boot-log -g {rg} -n {vm}\n"
        "5) Check the agent log (/var/log/waagent.log or C:\\WindowsAzure\\Logs\\WaAppAgent.log)"
    )


def _split_target(instance_id: str):
    try:
        vm_ref = InputValidator.validate_vm_id(instance_id)
    except ValidationError:
        return "<resource-group>", "<vm-name>"
    return vm_ref["resource_group"], vm_ref["name"]


def _parse_process_target(target: str) -> Optional[int]:
    if not target or not target.startswith("process:"):
        return None
    try:
        return int(target[len("process:"):])
    except ValueError:
        return None


class _RemoteCalls:
    """Routes remediation calls through error recovery and counts extra attempts."""

    def __init__(self, recovery: Optional[ErrorRecoveryManager]):
        self.recovery = recovery
        self.retries = 0

    async def __call__(self, func: Callable, *args):
        attempts = 0

        def counted():
            nonlocal attempts
            attempts += 1
            return func(*args)

        try:
            if self.recovery is not None:
                return await self.recovery.run(counted)
            return await invoke(counted)
        finally:
            self.retries += max(0, attempts - 1)


class AutoFixEngine:
    """Proposes, executes and verifies remediation for one run."""

    def __init__(
        self,
        checks,
        remediator,
        dry_run: bool = False,
        recovery: Optional[ErrorRecoveryManager] = None,
        wait_policy: Optional[WaitPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            checks: Leaf checks (see vm_checks.AzureVMChecks), reused for monitoring and verification
            remediator: Side-effect provider (see remediation.AzureRemediator)
            dry_run: Report what would happen without touching anything
            recovery: Optional ErrorRecoveryManager wrapped around remediation calls
            wait_policy: Polling intervals and budgets
            sleep: Awaitable sleep, injectable for tests
            clock: Monotonic clock, injectable for tests
            logger: Optional logger instance
        """
        self.checks = checks
        self.remediator = remediator
        self.dry_run = dry_run
        self.recovery = recovery
        self.wait_policy = wait_policy or WaitPolicy()
        self._sleep = sleep
        self._clock = clock
        self.logger = logger or logging.getLogger("vm_connect_diagnostics.auto_fix")

        self._rules: Dict[FindingCode, Callable[[DiagnosticResult], List[FixAction]]] = {
            FindingCode.INSTANCE_STOPPED: self._fix_stopped_instance,
            FindingCode.INSTANCE_DELETED: self._fix_deleted_instance,
            FindingCode.INSTANCE_NOT_FOUND: self._fix_missing_instance,
            FindingCode.AGENT_NOT_READY: self._fix_agent,
            FindingCode.AGENT_NOT_REPORTING: self._fix_agent,
            FindingCode.CREDENTIALS_INVALID: self._fix_credentials,
            FindingCode.PERMISSION_INSUFFICIENT: self._fix_permissions,
            FindingCode.ENDPOINT_MISSING: self._fix_endpoint,
            FindingCode.FIREWALL_BLOCKING: self._fix_firewall,
            FindingCode.ROUTE_BLACKHOLE: self._fix_route,
            FindingCode.LOCAL_PORT_IN_USE: self._fix_local_port,
        }
        self._executors = {
            FixActionType.START_INSTANCE: self._execute_start_instance,
            FixActionType.RESTART_AGENT: self._execute_restart_agent,
            FixActionType.UPDATE_CREDENTIALS: self._execute_update_credentials,
            FixActionType.TERMINATE_PROCESS: self._execute_terminate_process,
            FixActionType.RESTORE_CONFIG: self._execute_restore_config,
            FixActionType.CREATE_NETWORK_ENDPOINT: self._execute_manual,
            FixActionType.UPDATE_FIREWALL_RULE: self._execute_manual,
            FixActionType.SUGGEST_MANUAL_FIX: self._execute_manual,
        }

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(self, diagnostics: List[DiagnosticResult]) -> List[FixAction]:
        """Map findings to fix actions, safest first."""
        self.logger.info("Analyzing %s diagnostic results for potential fixes", len(diagnostics))
        actions: List[FixAction] = []
        for result in diagnostics:
            if result.status in (DiagnosticStatus.SUCCESS, DiagnosticStatus.SKIPPED):
                continue
            rule = self._rules.get(result.code)
            if rule is None:
                self.logger.info("Unclassified finding %s (%s): %s",
                                 result.item_name, result.code.value, result.message)
                continue
            actions.extend(rule(result))

        # sorted() is stable, so equal-risk actions keep finding order
        actions = sorted(actions, key=lambda a: a.risk_level)
        self.logger.info("Generated %s potential fix actions", len(actions))
        return actions

    def unclassified_findings(self, diagnostics: List[DiagnosticResult]) -> List[DiagnosticResult]:
        """Problem findings that no fix rule covers"""
        return [
            r for r in diagnostics
            if r.status in (DiagnosticStatus.WARNING, DiagnosticStatus.ERROR) and r.code not in self._rules
        ]

    def _fix_stopped_instance(self, result: DiagnosticResult) -> List[FixAction]:
        instance_id = result.detail("instance_id", "unknown")
        rg, vm = _split_target(instance_id)
        return [FixAction.create(
            FixActionType.START_INSTANCE,
            f"Start the stopped virtual machine: {instance_id}",
            instance_id,
            command=f"az vm start -g {rg} -n {vm}",
        )]

    def _fix_deleted_instance(self, _result: DiagnosticResult) -> List[FixAction]:
        return [FixAction.create(
            FixActionType.SUGGEST_MANUAL_FIX,
            "Virtual machine is being deleted and cannot be recovered. Create a new VM.",
            "manual",
        )]

    def _fix_missing_instance(self, result: DiagnosticResult) -> List[FixAction]:
        return [FixAction.create(
            FixActionType.SUGGEST_MANUAL_FIX,
            f"Virtual machine {result.detail('instance_id', '')} was not found. "
            "Check the subscription, resource group and VM name.",
            "manual",
            command="az vm list -o table",
        )]

    def _fix_agent(self, result: DiagnosticResult) -> List[FixAction]:
        instance_id = result.detail("instance_id", "unknown")
        rg, vm = _split_target(instance_id)
        return [FixAction.create(
            FixActionType.RESTART_AGENT,
            f"Reapply virtual machine to recover the guest agent: {instance_id}",
            instance_id,
            command=f"az vm reapply -g {rg} -n {vm}",
        )]

    def _fix_credentials(self, _result: DiagnosticResult) -> List[FixAction]:
        return [FixAction.create(
            FixActionType.UPDATE_CREDENTIALS,
            "Refresh Azure CLI credentials",
            "credentials",
            command="az login",
        )]

    def _fix_permissions(self, _result: DiagnosticResult) -> List[FixAction]:
        return [FixAction.create(
            FixActionType.SUGGEST_MANUAL_FIX,
            "RBAC role assignments need to be updated by an administrator",
            "rbac",
        )]

    def _fix_endpoint(self, result: DiagnosticResult) -> List[FixAction]:
        instance_id = result.detail("instance_id", "unknown")
        rg, vm = _split_target(instance_id)
        return [FixAction.create(
            FixActionType.CREATE_NETWORK_ENDPOINT,
            f"Attach a public IP to {result.detail('nic_name', 'the VM network interface')} "
            "or deploy Azure Bastion in the virtual network",
            instance_id,
            command=f"az network public-ip create -g {rg} -n {vm}-pip --sku Standard",
        )]

    def _fix_firewall(self, result: DiagnosticResult) -> List[FixAction]:
        port = result.detail("port", 22)
        nsg_name = result.detail("nsg_name", "<nsg-name>")
        rule_name = result.detail("rule_name", "")
        resource_group = result.detail("resource_group", "<resource-group>")
        priority = allow_rule_priority(result.detail("priority"))
        if priority is None:
            return [FixAction.create(
                FixActionType.SUGGEST_MANUAL_FIX,
                f"Deny rule '{rule_name}' on NSG '{nsg_name}' has priority {result.detail('priority')}; "
                f"no custom rule can be evaluated before it. Edit the rule to allow inbound TCP {port} "
                "or move it to a higher priority number.",
                result.detail("nsg_id", nsg_name),
                command=(
                    f"az network nsg rule update -g {resource_group} --nsg-name {nsg_name} "
                    f"-n {rule_name} --priority <new-priority>"
                ),
            )]
        return [FixAction.create(
            FixActionType.UPDATE_FIREWALL_RULE,
            f"Allow inbound TCP {port} on NSG '{nsg_name}' ahead of rule '{rule_name}'",
            result.detail("nsg_id", nsg_name),
            command=(
                f"az network nsg rule create -g {resource_group} "
                f"--nsg-name {nsg_name} -n Allow-Session-{port} --priority {priority} "
                f"--direction Inbound --access Allow --protocol Tcp --destination-port-ranges {port}"
            ),
        )]

    def _fix_route(self, result: DiagnosticResult) -> List[FixAction]:
        return [FixAction.create(
            FixActionType.SUGGEST_MANUAL_FIX,
            f"Remove or repoint the blackhole default route '{result.detail('route_name', '')}' "
            f"in route table '{result.detail('route_table', '')}'",
            "route_table",
        )]

    def _fix_local_port(self, result: DiagnosticResult) -> List[FixAction]:
        actions = []
        pid = result.detail("process_id")
        if pid and result.auto_fixable:
            actions.append(FixAction.create(
                FixActionType.TERMINATE_PROCESS,
                f"Terminate process {result.detail('process_name', 'unknown')} (PID: {pid}) that is using the port",
                f"process:{pid}",
            ))
        alternatives = result.detail("alternative_ports") or []
        hint = f" (available: {', '.join(str(p) for p in alternatives)})" if alternatives else ""
        actions.append(FixAction.create(
            FixActionType.SUGGEST_MANUAL_FIX,
            f"Use an alternative local port for the connection{hint}",
            "port",
        ))
        return actions

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, action: FixAction, approved: bool = False) -> FixResult:
        """
        Execute one action. Failures are returned as FixResult(success=False), never raised.

        Args:
            action: Action to execute
            approved: Whether the operator approved an action that requires confirmation.
                Without it, such actions come back AWAITING_CONFIRMATION untouched.
        """
        if action.requires_confirmation and not approved:
            self.logger.info("Action %s requires confirmation", action.action_type.value)
            return FixResult.awaiting_confirmation(action)

        self.logger.warning("Executing fix: %s", action.description)
        start = self._clock()

        if self.dry_run:
            message = f"DRY RUN: Would {action.description[0].lower()}{action.description[1:]}"
            self.logger.info("%s", message)
            return FixResult.succeeded(action, message, duration=self._clock() - start, dry_run=True,
                                       details={"command": action.command} if action.command else None)

        remote = _RemoteCalls(self.recovery)
        try:
            result = await self._executors[action.action_type](action, remote)
        except Exception as e:  # pylint: disable=broad-except
            error = classify_exception(e)
            self.logger.error("Fix %s failed: %s", action.action_type.value, error)
            result = FixResult.failed(action, f"Fix execution failed: {error.user_message()}",
                                      details={"error_category": error.category.value})

        result = replace(result, duration=self._clock() - start, retry_count=remote.retries)
        self.logger.info("Fix %s finished: success=%s, %s", action.action_type.value, result.success, result.message)
        return result

    async def execute_safe_subset(self, actions: List[FixAction]) -> List[FixResult]:
        """Execute auto-safe actions in order; one result per input action, same position."""
        self.logger.info("Executing %s fix actions (safe subset only)", len(actions))
        results = []
        for action in actions:
            if action.is_safe_to_auto_execute():
                self.logger.info("Auto-executing safe fix: %s", action.action_type.value)
                results.append(await self.execute(action))
            else:
                self.logger.info("Skipping fix %s (requires confirmation or risk %s)",
                                 action.action_type.value, action.risk_level.value)
                results.append(FixResult.awaiting_confirmation(action))
        return results

    async def confirm(self, result: FixResult) -> FixResult:
        """Supply operator confirmation for a skipped action and execute it."""
        if result.state != FixActionState.AWAITING_CONFIRMATION:
            raise ValueError(f"Fix result is {result.state.value}, not awaiting confirmation")
        return await self.execute(result.action, approved=True)

    async def _poll(self, predicate: Callable[[], Awaitable[bool]], window: WaitWindow, label: str) -> bool:
        """Poll until ``predicate`` holds or ``window.budget`` elapses."""
        deadline = self._clock() + window.budget
        while True:
            try:
                if await predicate():
                    return True
            except Exception as e:  # pylint: disable=broad-except
                self.logger.debug("%s poll failed: %s", label, e)
            if self._clock() >= deadline:
                self.logger.info("%s not confirmed within %.0fs", label, window.budget)
                return False
            self.logger.info("Waiting for %s...", label)
            await self._sleep(window.interval)

    async def _agent_ready(self, instance_id: str) -> bool:
        agent = await invoke(self.checks.get_agent_info, instance_id)
        return agent is not None and agent.is_ready

    async def _execute_start_instance(self, action: FixAction, remote) -> FixResult:
        instance_id = action.target_resource
        current = await remote(self.checks.check_basic_instance_state, instance_id)

        if current.code == FindingCode.INSTANCE_NOT_FOUND:
            return FixResult.failed(action, "Virtual machine not found")
        if current.code == FindingCode.INSTANCE_DELETED:
            return FixResult.failed(action, "Cannot start a virtual machine that is being deleted")

        troubleshooting = {"troubleshooting": agent_troubleshooting_instructions(instance_id)}
        policy = self.wait_policy

        if current.code == FindingCode.INSTANCE_RUNNING:
            if await self._poll(lambda: self._agent_ready(instance_id), policy.agent_ready, "guest agent"):
                return FixResult.succeeded(action, "Virtual machine is already running; guest agent is ready")
            return FixResult.succeeded(
                action,
                f"Virtual machine is already running, but could not confirm guest agent readiness "
                f"within {policy.agent_ready.budget:.0f}s",
                details=troubleshooting)

        await remote(self.remediator.start_instance, instance_id)
        self.logger.warning("Start requested for %s, monitoring power state...", instance_id)

        async def running():
            return await invoke(self.remediator.get_power_state, instance_id) == "running"

        if not await self._poll(running, policy.instance_start, "virtual machine start"):
            return FixResult.succeeded(
                action,
                f"Start accepted for {instance_id}, but monitoring could not confirm it is running "
                f"within {policy.instance_start.budget:.0f}s")

        if await self._poll(lambda: self._agent_ready(instance_id), policy.agent_ready, "guest agent"):
            return FixResult.succeeded(action, "Virtual machine started successfully (state: running). "
                                               "Guest agent is ready")
        return FixResult.succeeded(
            action,
            f"Virtual machine started (state: running), but could not confirm guest agent readiness "
            f"within {policy.agent_ready.budget:.0f}s",
            details=troubleshooting)

    async def _execute_restart_agent(self, action: FixAction, remote) -> FixResult:
        instance_id = action.target_resource
        policy = self.wait_policy

        await remote(self.remediator.reapply_agent, instance_id)
        await self._sleep(policy.agent_settle)

        if await self._poll(lambda: self._agent_ready(instance_id), policy.agent_health, "guest agent health"):
            return FixResult.succeeded(action, "Virtual machine reapplied; guest agent is ready")
        return FixResult.succeeded(
            action,
            f"Reapply accepted, but could not confirm guest agent health within {policy.agent_health.budget:.0f}s",
            details={"troubleshooting": agent_troubleshooting_instructions(instance_id)})

    async def _execute_update_credentials(self, action: FixAction, remote) -> FixResult:
        token_info = await remote(self.remediator.refresh_credentials)
        return FixResult.succeeded(action, "Azure CLI credentials refreshed successfully", details=token_info)

    async def _execute_terminate_process(self, action: FixAction, remote) -> FixResult:
        pid = _parse_process_target(action.target_resource)
        if pid is None:
            return FixResult.failed(action, f"Invalid process target format: {action.target_resource}")

        name = await remote(self.remediator.terminate_process, pid)

        async def exited():
            return not await invoke(self.remediator.process_exists, pid)

        if await self._poll(exited, self.wait_policy.process_exit, f"process {pid} exit"):
            return FixResult.succeeded(action, f"Terminated process {name} (PID: {pid})")
        return FixResult.succeeded(
            action,
            f"Sent terminate to {name} (PID: {pid}), but could not confirm it exited "
            f"within {self.wait_policy.process_exit.budget:.0f}s")

    async def _execute_restore_config(self, action: FixAction, _remote) -> FixResult:
        return FixResult.succeeded(action, "Configuration restoration requires manual intervention",
                                   details={"instructions": action.description})

    async def _execute_manual(self, action: FixAction, _remote) -> FixResult:
        return FixResult.succeeded(action, MANUAL_FIX_MESSAGE,
                                   details={"instructions": action.description, "command": action.command})

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def probe_connectivity(self, target_id: str) -> ConnectivityStatus:
        """Generic end-to-end probe: routing intact and guest agent ready."""
        try:
            route = await invoke(self.checks.check_route_and_connectivity, target_id)
            agent = await invoke(self.checks.check_agent_registration, target_id)
        except Exception as e:  # pylint: disable=broad-except
            self.logger.info("Connectivity probe failed: %s", e)
            return ConnectivityStatus.UNKNOWN

        if route.status == DiagnosticStatus.ERROR or agent.code != FindingCode.AGENT_READY:
            return ConnectivityStatus.DISCONNECTED
        return ConnectivityStatus.CONNECTED

    async def verify_fix(self, target_id: str, fix_type: str, resource: Optional[str] = None) -> FixVerificationResult:
        """
        Re-run the checks relevant to ``fix_type`` plus the connectivity probe.

        Args:
            target_id: VM identifier
            fix_type: One of instance_start, agent, access_policy, firewall, process
            resource: Action target when it differs from the VM (process:<pid>)
        """
        details: List[str] = []
        remaining: List[str] = []
        try:
            verified = await self._run_verifier(target_id, fix_type, resource, details, remaining)
        except Exception as e:  # pylint: disable=broad-except
            verified = False
            remaining.append(f"Verification of {fix_type} failed: {classify_exception(e).user_message()}")

        connectivity = await self.probe_connectivity(target_id)
        details.append(f"Connectivity probe: {connectivity.value}")
        if connectivity != ConnectivityStatus.CONNECTED:
            remaining.append("End-to-end connectivity is not restored")

        return FixVerificationResult(
            fix_type=fix_type,
            target_id=target_id,
            verified=verified,
            verification_details=details,
            connectivity_restored=verified and connectivity == ConnectivityStatus.CONNECTED,
            remaining_issues=remaining,
        )

    async def verify(self, target_id: str, fix_type: str, resource: Optional[str] = None) -> bool:
        result = await self.verify_fix(target_id, fix_type, resource)
        return result.verified and result.connectivity_restored

    async def _run_verifier(self, target_id, fix_type, resource, details, remaining) -> bool:
        def record(result: DiagnosticResult, expected: FindingCode) -> bool:
            details.append(f"{result.item_name}: {result.message}")
            if result.code != expected:
                remaining.append(result.message)
                return False
            return True

        if fix_type == "instance_start":
            return record(await invoke(self.checks.check_basic_instance_state, target_id),
                          FindingCode.INSTANCE_RUNNING)
        if fix_type == "agent":
            return record(await invoke(self.checks.check_agent_registration, target_id), FindingCode.AGENT_READY)
        if fix_type == "firewall":
            return record(await invoke(self.checks.check_firewall_rules, target_id), FindingCode.FIREWALL_OK)
        if fix_type == "access_policy":
            findings = await invoke(self.checks.diagnose_identity_and_access, target_id)
            ok = True
            for finding in findings:
                details.append(f"{finding.item_name}: {finding.message}")
                if finding.status in (DiagnosticStatus.WARNING, DiagnosticStatus.ERROR):
                    remaining.append(finding.message)
                    ok = False
            return ok
        if fix_type == "process":
            pid = _parse_process_target(resource or "")
            if pid is None:
                remaining.append(f"Unknown process target: {resource}")
                return False
            if await invoke(self.remediator.process_exists, pid):
                remaining.append(f"Process {pid} is still running")
                return False
            details.append(f"Process {pid} is no longer running")
            return True

        remaining.append(f"No verifier for fix type '{fix_type}'")
        return False

    async def generate_effectiveness_report(self, target_id: str,
                                            applied_fixes: List[FixResult]) -> FixEffectivenessReport:
        """
        Verify every applied, successful fix and aggregate the outcome.

        Instruction-only results (manual fixes) are not counted as applied and not verified.
        """
        applied = [r for r in applied_fixes if r.applied]
        successful = [r for r in applied if r.success]

        verifications = []
        for fix in successful:
            fix_type = VERIFIABLE_FIX_TYPES.get(fix.action.action_type)
            if fix_type is None or fix.dry_run:
                continue
            verifications.append(await self.verify_fix(target_id, fix_type, fix.action.target_resource))

        overall = await self.probe_connectivity(target_id)
        recommendations = self._recommendations(target_id, verifications, overall, bool(applied))

        return FixEffectivenessReport(
            target_id=target_id,
            total_fixes_applied=len(applied),
            successful_fixes=len(successful),
            failed_fixes=len(applied) - len(successful),
            verifications=verifications,
            overall_connectivity_status=overall,
            recommendations=recommendations,
        )

    @staticmethod
    def _recommendations(target_id: str, verifications: List[FixVerificationResult],
                         overall: ConnectivityStatus, any_applied: bool = True) -> List[str]:
        rg, vm = _split_target(target_id)
        recommendations: List[str] = []
        for verification in verifications:
            if verification.verified and verification.connectivity_restored:
                continue
            for line in _VERIFICATION_SCRIPTS.get(verification.fix_type, []):
                line = line.format(rg=rg, vm=vm)
                if line not in recommendations:
                    recommendations.append(line)
            for issue in verification.remaining_issues:
                if issue not in recommendations:
                    recommendations.append(issue)

        if not recommendations:
            if not any_applied:
                recommendations.append(
                    "No fixes were applied. Follow the manual instructions in the proposed fix actions.")
            elif overall == ConnectivityStatus.CONNECTED:
                recommendations.append("All applied fixes verified; connectivity is restored.")
            else:
                recommendations.append(
                    "Connectivity is not confirmed. Re-run az vm connect-diagnostics for a fresh analysis.")
        return recommendations
