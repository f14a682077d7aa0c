# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
Detailed, human-oriented fix suggestions for diagnostic findings

Suggestions are informational only. They never feed back into the preventive
check verdict or the auto-fix engine.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .exceptions import ValidationError
from .models import DiagnosticResult, DiagnosticStatus, FindingCode, Severity
from .validators import InputValidator
from .vm_checks import NSG_MIN_PRIORITY, allow_rule_priority

PORTAL_URL = "https://portal.azure.com"


@dataclass
class FixSuggestion:  # pylint: disable=too-many-instance-attributes
    """A detailed suggestion for fixing one problem"""

    problem_type: str
    severity: Severity
    title: str
    description: str
    steps: List[str] = field(default_factory=list)
    cli_commands: List[str] = field(default_factory=list)
    portal_steps: List[str] = field(default_factory=list)
    prerequisites: List[str] = field(default_factory=list)
    estimated_time: str = "Unknown"
    risk_assessment: str = "Low risk"
    verification_steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data


class SuggestionGenerator:
    """Builds FixSuggestions keyed by finding code."""

    def __init__(self, location: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.location = location
        self.logger = logger or logging.getLogger("vm_connect_diagnostics.suggestions")
        self._builders = {
            FindingCode.INSTANCE_STOPPED: self._instance_stopped,
            FindingCode.INSTANCE_DELETED: self._instance_gone,
            FindingCode.INSTANCE_NOT_FOUND: self._instance_gone,
            FindingCode.AGENT_NOT_READY: self._agent,
            FindingCode.AGENT_NOT_REPORTING: self._agent,
            FindingCode.CREDENTIALS_INVALID: self._credentials,
            FindingCode.PERMISSION_INSUFFICIENT: self._permissions,
            FindingCode.ENDPOINT_MISSING: self._endpoint,
            FindingCode.FIREWALL_BLOCKING: self._firewall,
            FindingCode.ROUTE_BLACKHOLE: self._route,
            FindingCode.ROUTE_VIRTUAL_APPLIANCE: self._route,
            FindingCode.LOCAL_PORT_IN_USE: self._port,
        }

    def generate_suggestions(self, diagnostics: List[DiagnosticResult]) -> List[FixSuggestion]:
        """Suggestions for every problem finding, most severe first"""
        self.logger.info("Generating detailed fix suggestions for %s diagnostic results", len(diagnostics))
        suggestions: List[FixSuggestion] = []
        for result in diagnostics:
            if result.status not in (DiagnosticStatus.WARNING, DiagnosticStatus.ERROR):
                continue
            builder = self._builders.get(result.code)
            if builder is None:
                self.logger.debug("No specific suggestions for %s (%s)", result.item_name, result.code.value)
                continue
            suggestions.extend(builder(result))

        suggestions.sort(key=lambda s: s.severity, reverse=True)
        return suggestions

    @staticmethod
    def classify_problem_severity(result: DiagnosticResult) -> Severity:
        if result.status == DiagnosticStatus.ERROR:
            return max(result.severity, Severity.LOW)
        if result.status == DiagnosticStatus.WARNING:
            return Severity.MEDIUM
        return Severity.LOW

    @staticmethod
    def generate_nsg_rule_commands(resource_group: str, nsg_name: str, port: int,
                                   priority: int = 1000, source: str = "*") -> List[str]:
        rule_name = f"Allow-Session-{port}"
        return [
            f"az network nsg rule list -g {resource_group} --nsg-name {nsg_name} "
            "--query \"[?direction=='Inbound'] | sort_by(@, &priority)\" -o table",
            f"az network nsg rule create -g {resource_group} --nsg-name {nsg_name} -n {rule_name} "
            f"--priority {priority} --direction Inbound --access Allow --protocol Tcp "
            f"--source-address-prefixes '{source}' --destination-port-ranges {port}",
            f"az network nsg rule show -g {resource_group} --nsg-name {nsg_name} -n {rule_name}",
        ]

    @staticmethod
    def generate_agent_commands(os_type: Optional[str]) -> List[str]:
        """Commands to inspect and restart the Azure guest agent from inside the VM"""
        if (os_type or "").lower() == "windows":
            return [
                "Get-Service WindowsAzureGuestAgent",
                "Restart-Service WindowsAzureGuestAgent",
                "Get-Content C:\\WindowsAzure\\Logs\\WaAppAgent.log -Tail 50",
            ]
        return [
            "sudo systemctl status walinuxagent || sudo systemctl status waagent",
            "sudo systemctl restart walinuxagent || sudo systemctl restart waagent",
            "sudo tail -n 50 /var/log/waagent.log",
        ]

    def _vm_args(self, result: DiagnosticResult) -> str:
        try:
            vm_ref = InputValidator.validate_vm_id(result.detail("instance_id", ""))
        except ValidationError:
            return "-g <resource-group> -n <vm-name>"
        return f"-g {vm_ref['resource_group']} -n {vm_ref['name']}"

    def _instance_stopped(self, result: DiagnosticResult) -> List[FixSuggestion]:
        vm_args = self._vm_args(result)
        return [FixSuggestion(
            "instance_state", self.classify_problem_severity(result), "Start the stopped virtual machine",
            f"The VM is {result.detail('power_state', 'stopped')} and must be running before a session can start.",
            steps=[
                "Verify the VM name and resource group",
                "Check that you may start the VM (Microsoft.Compute/virtualMachines/start/action)",
                "Start the VM and wait for the 'VM running' power state",
                "Confirm the guest agent reports Ready",
            ],
            cli_commands=[
                f"az vm start {vm_args}",
                f"az vm get-instance-view {vm_args} --query \"instanceView.statuses[].displayStatus\"",
            ],
            portal_steps=[
                f"Open {PORTAL_URL} and go to Virtual machines",
                "Select the VM and click 'Start'",
                "Wait for Status to show 'Running'",
            ],
            prerequisites=["Virtual Machine Contributor (or equivalent) on the VM"],
            estimated_time="2-5 minutes",
            risk_assessment="Low risk - starting a VM resumes compute billing",
            verification_steps=[f"az vm show {vm_args} -d --query powerState"],
        )]

    def _instance_gone(self, result: DiagnosticResult) -> List[FixSuggestion]:
        return [FixSuggestion(
            "instance_state", Severity.CRITICAL, "Virtual machine cannot be recovered",
            result.message,
            steps=[
                "Confirm the subscription, resource group and VM name",
                "If the VM was deleted, recreate it from its image or a backup",
                "Update your connection settings with the new VM",
            ],
            cli_commands=["az account show --query name", "az vm list -o table"],
            estimated_time="10-15 minutes",
            risk_assessment="Medium risk - creating new resources incurs costs",
        )]

    def _agent(self, result: DiagnosticResult) -> List[FixSuggestion]:
        vm_args = self._vm_args(result)
        return [FixSuggestion(
            "guest_agent", self.classify_problem_severity(result), "Recover the Azure guest agent",
            "The guest agent is not reporting Ready, so the platform cannot broker a session to the VM.",
            steps=[
                "Check the agent status in the VM instance view",
                "Reapply the VM to re-provision the agent",
                "If the VM is reachable another way, restart the agent service inside the guest",
            ],
            cli_commands=[
                f"az vm get-instance-view {vm_args} --query instanceView.vmAgent",
                f"az vm reapply {vm_args}",
            ] + self.generate_agent_commands(result.detail("os_type")),
            portal_steps=[
                "Open the VM in the portal",
                "Go to Help > Redeploy + reapply and click 'Reapply'",
            ],
            prerequisites=["Virtual Machine Contributor on the VM"],
            estimated_time="5-10 minutes",
            risk_assessment="Medium risk - reapply may briefly interrupt extensions",
            verification_steps=[f"az vm get-instance-view {vm_args} --query instanceView.vmAgent.statuses"],
        )]

    def _credentials(self, result: DiagnosticResult) -> List[FixSuggestion]:
        return [FixSuggestion(
            "credentials", self.classify_problem_severity(result), "Refresh Azure credentials",
            result.message,
            steps=["Sign in again", "Select the subscription that holds the VM"],
            cli_commands=["az login", "az account set --subscription <subscription-id>", "az account show"],
            estimated_time="1-2 minutes",
            risk_assessment="No risk",
            verification_steps=["az account get-access-token --query expiresOn"],
        )]

    def _permissions(self, result: DiagnosticResult) -> List[FixSuggestion]:
        missing = result.detail("missing_permissions") or []
        return [FixSuggestion(
            "rbac_permissions", self.classify_problem_severity(result), "Grant the required role assignments",
            result.message,
            steps=[
                "Ask an administrator for Virtual Machine User Login or Virtual Machine Contributor on the VM",
            ] + [f"Required action: {action}" for action in missing],
            cli_commands=[
                "az role assignment create --assignee <user> --role \"Virtual Machine Contributor\" "
                "--scope <vm-resource-id>",
            ],
            prerequisites=["Owner or User Access Administrator on the VM scope"],
            estimated_time="5 minutes",
            risk_assessment="Low risk - scope the assignment to the VM",
            verification_steps=["az role assignment list --assignee <user> --scope <vm-resource-id> -o table"],
        )]

    def _endpoint(self, result: DiagnosticResult) -> List[FixSuggestion]:
        vm_args = self._vm_args(result)
        location = f" -l {self.location}" if self.location else ""
        nic_name = result.detail("nic_name", "<nic-name>")
        return [FixSuggestion(
            "network_endpoint", self.classify_problem_severity(result), "Provide a session entry point",
            "The VM has no public IP and no Azure Bastion is deployed in its virtual network.",
            steps=[
                "Either deploy Azure Bastion in the VM's virtual network",
                "Or attach a Standard public IP to the VM network interface",
            ],
            cli_commands=[
                f"az network public-ip create -g <resource-group> -n <public-ip-name> --sku Standard{location}",
                f"az network nic ip-config update -g <resource-group> --nic-name {nic_name} -n ipconfig1 "
                "--public-ip-address <public-ip-name>",
                f"az network bastion create -g <resource-group> -n <bastion-name> --vnet-name <vnet-name> "
                f"--public-ip-address <bastion-pip>{location}",
            ],
            prerequisites=["Network Contributor on the resource group",
                           "An 'AzureBastionSubnet' (/26 or larger) for Bastion"],
            estimated_time="10-20 minutes",
            risk_assessment="High risk - a public IP exposes the VM to the internet",
            verification_steps=[f"az vm list-ip-addresses {vm_args} -o table"],
        )]

    def _firewall(self, result: DiagnosticResult) -> List[FixSuggestion]:
        port = result.detail("port", 22)
        rule_name = result.detail("rule_name", "the deny rule")
        resource_group = result.detail("resource_group", "<resource-group>")
        nsg_name = result.detail("nsg_name", "<nsg-name>")
        priority = allow_rule_priority(result.detail("priority"))
        if priority is None:
            return [FixSuggestion(
                "firewall", self.classify_problem_severity(result), f"Reprioritize the deny rule for TCP {port}",
                f"{result.message}. No custom rule can be evaluated before priority {NSG_MIN_PRIORITY}.",
                steps=[
                    f"Edit '{rule_name}' so it no longer denies inbound TCP {port}",
                    f"Or move '{rule_name}' to a higher priority number and add an Allow rule ahead of it",
                ],
                cli_commands=[
                    self.generate_nsg_rule_commands(resource_group, nsg_name, port)[0],
                    f"az network nsg rule update -g {resource_group} --nsg-name {nsg_name} -n {rule_name} "
                    "--priority <new-priority>",
                ],
                portal_steps=[
                    "Open the network security group in the portal",
                    f"Go to Inbound security rules and open '{rule_name}'",
                    f"Change its priority or its destination ports so TCP {port} is not denied",
                ],
                prerequisites=["Network Contributor on the NSG"],
                estimated_time="5 minutes",
                risk_assessment="High risk - the deny rule may protect other traffic",
                verification_steps=["az network nic list-effective-nsg -g <resource-group> -n <nic-name>"],
            )]
        return [FixSuggestion(
            "firewall", self.classify_problem_severity(result), f"Allow inbound TCP {port} in the NSG",
            result.message,
            steps=[
                f"Add an Allow rule for TCP {port} with a lower priority number than '{rule_name}'",
                "Restrict the source to your client address range where possible",
            ],
            cli_commands=self.generate_nsg_rule_commands(resource_group, nsg_name, port, priority),
            portal_steps=[
                "Open the network security group in the portal",
                "Go to Inbound security rules and click 'Add'",
                f"Destination port {port}, Protocol TCP, Action Allow, Priority {priority}",
            ],
            prerequisites=["Network Contributor on the NSG"],
            estimated_time="5 minutes",
            risk_assessment="High risk - opening inbound ports widens the attack surface",
            verification_steps=["az network nic list-effective-nsg -g <resource-group> -n <nic-name>"],
        )]

    def _route(self, result: DiagnosticResult) -> List[FixSuggestion]:
        table = result.detail("route_table", "<route-table>")
        return [FixSuggestion(
            "routing", self.classify_problem_severity(result), "Fix the default route",
            result.message,
            steps=[
                f"Review the 0.0.0.0/0 route in {table}",
                "Point it at Internet or at a firewall that allows the session return traffic",
            ],
            cli_commands=[
                f"az network route-table route list -g <resource-group> --route-table-name {table} -o table",
                f"az network route-table route update -g <resource-group> --route-table-name {table} "
                f"-n {result.detail('route_name', '<route-name>')} --next-hop-type Internet",
            ],
            prerequisites=["Network Contributor on the route table"],
            estimated_time="5-10 minutes",
            risk_assessment="High risk - route changes affect every VM in the subnet",
            verification_steps=["az network nic show-effective-route-table -g <resource-group> -n <nic-name>"],
        )]

    def _port(self, result: DiagnosticResult) -> List[FixSuggestion]:
        port = result.detail("port", 0)
        process = result.detail("process_name") or "unknown"
        alternatives = result.detail("alternative_ports") or []
        suggestions = [FixSuggestion(
            "port_conflict", self.classify_problem_severity(result), f"Resolve port {port} conflict",
            f"Port {port} is in use by process '{process}' and cannot be used for forwarding.",
            steps=[
                f"Identify the process using port {port}",
                "Decide whether it can be stopped safely",
                "Stop it or use an alternative port",
            ],
            cli_commands=[f"lsof -i :{port}", f"netstat -ano | findstr :{port}", "kill -TERM <PID>"],
            prerequisites=["Permission to stop the owning process"],
            estimated_time="5-10 minutes",
            risk_assessment="Medium risk - stopping a process may affect other applications",
            verification_steps=[f"Verify port {port} is no longer in use"],
        )]
        if alternatives:
            suggestions.append(FixSuggestion(
                "port_alternative", Severity.LOW, "Use an alternative local port",
                f"Ports {', '.join(str(p) for p in alternatives)} are free.",
                steps=["Re-run with --local-port set to one of the free ports"],
                estimated_time="1 minute",
                risk_assessment="No risk",
            ))
        return suggestions
