# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
Read-only checks against Azure VM state

Each check returns a DiagnosticResult carrying a FindingCode. Conditions the
check understands (VM stopped, NSG deny, ...) become results; unexpected SDK
failures are raised as taxonomy exceptions so callers can wrap them in
error recovery.

Adapted for Azure CLI - uses pre-authenticated SDK clients.
"""

import errno
import fnmatch
import logging
import re
import socket
import threading
import time
from typing import Any, Dict, List, Optional

import psutil
from azure.core.exceptions import ClientAuthenticationError, HttpResponseError, ResourceNotFoundError

from .exceptions import classify_exception
from .models import AgentInfo, DiagnosticResult, FindingCode, Severity
from .validators import InputValidator, parse_resource_id

ARM_SCOPE = "https://management.azure.com/.default"
BASTION_SUBNET_NAME = "AzureBastionSubnet"
DEFAULT_REMOTE_PORT = 22
ALTERNATIVE_PORT_RANGE = 10
MAX_ALTERNATIVE_PORTS = 3
NSG_MIN_PRIORITY = 100
NSG_MAX_PRIORITY = 4096

# Actions the caller needs on the VM, and whether lacking them blocks a session
REQUIRED_VM_ACTIONS = {
    "Microsoft.Compute/virtualMachines/read": Severity.CRITICAL,
    "Microsoft.Network/networkInterfaces/read": Severity.MEDIUM,
    "Microsoft.Compute/virtualMachines/start/action": Severity.MEDIUM,
}

# Sources in an inbound NSG rule that may cover the operator's client
CLIENT_SOURCES = {"*", "internet", "any"}

SYSTEM_CRITICAL_PROCESSES = (
    "kernel", "init", "systemd", "kthreadd", "sshd", "dbus", "networkmanager",
    "explorer.exe", "winlogon.exe", "csrss.exe", "smss.exe", "wininit.exe",
    "services.exe", "lsass.exe", "svchost.exe",
)

_RUNNING_STATES = {"running"}
_STOPPED_STATES = {"stopped", "deallocated"}
_TRANSITIONING_STATES = {"starting", "stopping", "deallocating"}
_ADDRESS_IN_USE = {errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)}


def _to_dict(obj: Any) -> Any:
    """Convert Azure SDK object to dictionary recursively."""
    if hasattr(obj, 'as_dict'):
        return obj.as_dict()
    if isinstance(obj, dict):
        return {k: _to_dict(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_dict(item) for item in obj]
    return obj


def _status_suffix(statuses: List[Dict[str, Any]], prefix: str) -> Optional[str]:
    """Return 'running' for code 'PowerState/running' when prefix is 'PowerState/'"""
    for status in statuses or []:
        code = status.get("code") or ""
        if code.startswith(prefix):
            return code[len(prefix):].lower()
    return None


def power_state_from_instance_view(instance_view: Dict[str, Any]) -> Optional[str]:
    return _status_suffix((instance_view or {}).get("statuses", []), "PowerState/")


def provisioning_state_from_instance_view(instance_view: Dict[str, Any]) -> Optional[str]:
    return _status_suffix((instance_view or {}).get("statuses", []), "ProvisioningState/")


def port_in_range(port: int, port_range: str) -> bool:
    """
    Check if a specific port is included in a port range.

    Args:
        port: Port number to check
        port_range: Port range string (e.g., "22", "20-25", "*")
    """
    if not port_range or port_range == "*":
        return True

    if "-" not in str(port_range):
        try:
            return int(port_range) == port
        except ValueError:
            return False

    try:
        start, end = str(port_range).split("-")
        return int(start) <= port <= int(end)
    except (ValueError, AttributeError):
        return False


def _rule_ports(rule: Dict[str, Any]) -> List[str]:
    ports = list(rule.get("destination_port_ranges") or [])
    if rule.get("destination_port_range"):
        ports.append(rule["destination_port_range"])
    return ports or ["*"]


def _rule_sources(rule: Dict[str, Any]) -> List[str]:
    sources = list(rule.get("source_address_prefixes") or [])
    if rule.get("source_address_prefix"):
        sources.append(rule["source_address_prefix"])
    return sources or ["*"]


def _source_matches(source: str, client_sources) -> bool:
    source = (source or "").lower()
    # Explicit addresses may or may not contain the client; treat them as covering it
    return source in client_sources or source[:1].isdigit()


def first_matching_inbound_rule(nsg: Dict[str, Any], port: int,
                                via_bastion: bool = False) -> Optional[Dict[str, Any]]:
    """
    Evaluate an NSG like Azure does: inbound rules by ascending priority, first match wins.

    Returns the winning rule dict, or None when no rule covers the traffic.
    """
    client_sources = set(CLIENT_SOURCES)
    if via_bastion:
        client_sources.add("virtualnetwork")

    all_rules = (nsg.get("security_rules") or []) + (nsg.get("default_security_rules") or [])
    sorted_rules = sorted(all_rules, key=lambda x: x.get("priority", 65000))

    for rule in sorted_rules:
        if (rule.get("direction") or "").lower() != "inbound":
            continue
        if (rule.get("protocol") or "*").lower() not in ("tcp", "*"):
            continue
        if not any(port_in_range(port, p) for p in _rule_ports(rule)):
            continue
        if not any(_source_matches(s, client_sources) for s in _rule_sources(rule)):
            continue
        return rule
    return None


def allow_rule_priority(deny_priority) -> Optional[int]:
    """
    Priority for a custom Allow rule that Azure evaluates before ``deny_priority``.

    Custom rules take priorities NSG_MIN_PRIORITY..NSG_MAX_PRIORITY, so a default rule
    (65000+) is preceded by NSG_MAX_PRIORITY. Returns None when no custom slot precedes the
    deny rule.
    """
    try:
        deny_priority = int(deny_priority)
    except (TypeError, ValueError):
        return NSG_MAX_PRIORITY
    if deny_priority <= NSG_MIN_PRIORITY:
        return None
    return min(deny_priority - 1, NSG_MAX_PRIORITY)


def assess_default_route(routes: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return the user-defined default route (0.0.0.0/0), if any"""
    for route in routes or []:
        if route.get("address_prefix") == "0.0.0.0/0":
            return route
    return None


def is_system_critical_process(process_name: str) -> bool:
    name_lower = (process_name or "").lower()
    return any(critical in name_lower for critical in SYSTEM_CRITICAL_PROCESSES)


def _action_allowed(action: str, permissions: List[Dict[str, Any]]) -> bool:
    action = action.lower()
    for permission in permissions:
        allowed = any(fnmatch.fnmatchcase(action, a.lower()) for a in permission.get("actions") or [])
        denied = any(fnmatch.fnmatchcase(action, a.lower()) for a in permission.get("not_actions") or [])
        if allowed and not denied:
            return True
    return False


class AzureVMChecks:
    """Leaf diagnostic checks for one Azure VM connection target."""

    def __init__(
        self,
        compute_client,
        network_client,
        authorization_client=None,
        credential=None,
        remote_port: int = DEFAULT_REMOTE_PORT,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize AzureVMChecks.

        Args:
            compute_client: Authenticated ComputeManagementClient
            network_client: Authenticated NetworkManagementClient
            authorization_client: Authenticated AuthorizationManagementClient (RBAC checks)
            credential: Azure CLI credential used for token validation
            remote_port: TCP port the remote session uses on the VM
            logger: Optional logger instance. If not provided, creates a default logger.
        """
        self.compute_client = compute_client
        self.network_client = network_client
        self.authorization_client = authorization_client
        self.credential = credential
        self.remote_port = remote_port or DEFAULT_REMOTE_PORT
        self.logger = logger or logging.getLogger("vm_connect_diagnostics.vm_checks")
        self._network_cache: Dict[str, Dict[str, Any]] = {}
        self._network_lock = threading.Lock()

    # ------------------------------------------------------------------
    # SDK helpers
    # ------------------------------------------------------------------

    def _get_vm(self, instance_id: str) -> Dict[str, Any]:
        vm_ref = InputValidator.validate_vm_id(instance_id)
        try:
            vm = self.compute_client.virtual_machines.get(
                vm_ref["resource_group"], vm_ref["name"], expand="instanceView"
            )
        except ResourceNotFoundError:
            raise
        except Exception as e:  # pylint: disable=broad-except
            raise classify_exception(e) from e
        return _to_dict(vm) or {}

    def _get_instance_view(self, instance_id: str) -> Dict[str, Any]:
        vm_ref = InputValidator.validate_vm_id(instance_id)
        try:
            view = self.compute_client.virtual_machines.instance_view(vm_ref["resource_group"], vm_ref["name"])
        except Exception as e:  # pylint: disable=broad-except
            raise classify_exception(e) from e
        return _to_dict(view) or {}

    def _get_subnet(self, subnet_id: str) -> Optional[Dict[str, Any]]:
        parsed = parse_resource_id(subnet_id)
        try:
            subnet = self.network_client.subnets.get(
                parsed["resource_group"], parsed.get("virtualnetworks", ""), parsed.get("subnets", "")
            )
        except ResourceNotFoundError:
            self.logger.info("    Subnet not found: %s", subnet_id)
            return None
        return _to_dict(subnet)

    def _has_bastion(self, subnet_id: str) -> bool:
        parsed = parse_resource_id(subnet_id)
        try:
            self.network_client.subnets.get(
                parsed["resource_group"], parsed.get("virtualnetworks", ""), BASTION_SUBNET_NAME
            )
        except ResourceNotFoundError:
            return False
        return True

    def _describe_network(self, instance_id: str) -> Dict[str, Any]:
        """
        Resolve the primary NIC, its subnet, NSGs, public IP and Bastion presence.

        Returns an empty dict when the VM has no network interface. The description is
        cached per instance for the lifetime of this object; failed lookups are not cached.
        """
        with self._network_lock:
            if instance_id not in self._network_cache:
                self._network_cache[instance_id] = self._load_network(instance_id)
            return self._network_cache[instance_id]

    def _load_network(self, instance_id: str) -> Dict[str, Any]:
        vm = self._get_vm(instance_id)
        nics = (vm.get("network_profile") or {}).get("network_interfaces") or []
        if not nics:
            return {}

        primary = next((n for n in nics if n.get("primary")), nics[0])
        nic_ref = parse_resource_id(primary.get("id", ""))
        try:
            nic = _to_dict(self.network_client.network_interfaces.get(nic_ref["resource_group"], nic_ref["name"]))
        except Exception as e:  # pylint: disable=broad-except
            raise classify_exception(e) from e

        ip_configs = nic.get("ip_configurations") or []
        ip_config = next((c for c in ip_configs if c.get("primary")), ip_configs[0] if ip_configs else {})
        subnet_id = (ip_config.get("subnet") or {}).get("id")

        subnet = self._get_subnet(subnet_id) if subnet_id else None
        return {
            "nic_name": nic.get("name") or nic_ref["name"],
            "nic_nsg_id": (nic.get("network_security_group") or {}).get("id"),
            "private_ip": ip_config.get("private_ip_address"),
            "public_ip_id": (ip_config.get("public_ip_address") or {}).get("id"),
            "subnet_id": subnet_id,
            "subnet_nsg_id": ((subnet or {}).get("network_security_group") or {}).get("id"),
            "route_table_id": ((subnet or {}).get("route_table") or {}).get("id"),
            "bastion": self._has_bastion(subnet_id) if subnet_id else False,
        }

    def _check_authorization_error(self, error: HttpResponseError, instance_id: str) -> Optional[DiagnosticResult]:
        """Turn an AuthorizationFailed response into a PERMISSION_INSUFFICIENT result"""
        error_message = str(error.message) if hasattr(error, 'message') else str(error)

        if 'AuthorizationFailed' in error_message or 'authorization failed' in error_message.lower():
            permission_match = re.search(r"Microsoft\.\w+/[\w/]+/\w+", error_message)
            missing_permission = permission_match.group(0) if permission_match else "Unknown permission"
            vm_ref = InputValidator.validate_vm_id(instance_id)
            result = DiagnosticResult.warning(
                "rbac_permissions",
                f"Cannot evaluate permissions on {vm_ref['name']} - missing {missing_permission}",
                severity=Severity.MEDIUM,
                code=FindingCode.PERMISSION_INSUFFICIENT,
                instance_id=instance_id,
                missing_permission=missing_permission,
                resource_group=vm_ref["resource_group"],
            )
            self.logger.warning("  %s", result.message)
            return result
        return None

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_basic_instance_state(self, instance_id: str) -> DiagnosticResult:
        """Check that the VM exists and report its power state."""
        start = time.monotonic()
        try:
            vm = self._get_vm(instance_id)
        except ResourceNotFoundError:
            return DiagnosticResult.error(
                "instance_state",
                f"Virtual machine {instance_id} not found",
                severity=Severity.CRITICAL,
                duration=time.monotonic() - start,
                code=FindingCode.INSTANCE_NOT_FOUND,
                instance_id=instance_id,
            )

        instance_view = vm.get("instance_view") or {}
        power_state = power_state_from_instance_view(instance_view)
        provisioning_state = (
            provisioning_state_from_instance_view(instance_view) or (vm.get("provisioning_state") or "").lower()
        )
        details = {
            "instance_id": instance_id,
            "power_state": power_state,
            "provisioning_state": provisioning_state,
            "location": vm.get("location"),
            "os_type": ((vm.get("storage_profile") or {}).get("os_disk") or {}).get("os_type"),
        }
        duration = time.monotonic() - start

        if provisioning_state == "deleting":
            return DiagnosticResult.error(
                "instance_state", f"Virtual machine {instance_id} is being deleted",
                severity=Severity.CRITICAL, duration=duration, code=FindingCode.INSTANCE_DELETED, **details)
        if power_state in _RUNNING_STATES:
            return DiagnosticResult.success(
                "instance_state", f"Virtual machine {instance_id} is running",
                duration=duration, code=FindingCode.INSTANCE_RUNNING, **details)
        if power_state in _STOPPED_STATES:
            return DiagnosticResult.error(
                "instance_state", f"Virtual machine {instance_id} is stopped ({power_state})",
                severity=Severity.HIGH, duration=duration, code=FindingCode.INSTANCE_STOPPED,
                auto_fixable=True, **details)
        if power_state in _TRANSITIONING_STATES:
            return DiagnosticResult.warning(
                "instance_state", f"Virtual machine {instance_id} is {power_state}",
                severity=Severity.MEDIUM, duration=duration, code=FindingCode.INSTANCE_TRANSITIONING, **details)

        return DiagnosticResult.warning(
            "instance_state", f"Virtual machine {instance_id} power state is unknown ({power_state})",
            severity=Severity.MEDIUM, duration=duration, code=FindingCode.UNCLASSIFIED, **details)

    def get_agent_info(self, instance_id: str) -> Optional[AgentInfo]:
        """Read guest agent status from the instance view; None when the agent never reported."""
        view = self._get_instance_view(instance_id)
        vm_agent = view.get("vm_agent")
        if not vm_agent:
            return None

        statuses = vm_agent.get("statuses") or []
        status = statuses[0] if statuses else {}
        return AgentInfo(
            instance_id=instance_id,
            status=status.get("display_status") or "Unknown",
            version=vm_agent.get("vm_agent_version"),
            last_reported=str(status["time"]) if status.get("time") else None,
            os_type=view.get("os_name"),
        )

    def check_agent_registration(self, instance_id: str) -> DiagnosticResult:
        """Check that the VM guest agent is reporting Ready."""
        start = time.monotonic()
        agent = self.get_agent_info(instance_id)
        duration = time.monotonic() - start

        if agent is None:
            return DiagnosticResult.error(
                "agent_registration", "VM guest agent is not reporting status",
                severity=Severity.HIGH, duration=duration, code=FindingCode.AGENT_NOT_REPORTING,
                auto_fixable=True, instance_id=instance_id)
        if agent.is_ready:
            return DiagnosticResult.success(
                "agent_registration", f"VM guest agent is ready (version {agent.version or 'unknown'})",
                duration=duration, code=FindingCode.AGENT_READY,
                instance_id=instance_id, agent_version=agent.version, last_reported=agent.last_reported)
        return DiagnosticResult.error(
            "agent_registration", f"VM guest agent status is '{agent.status}'",
            severity=Severity.HIGH, duration=duration, code=FindingCode.AGENT_NOT_READY, auto_fixable=True,
            instance_id=instance_id, agent_status=agent.status, agent_version=agent.version)

    def _check_credentials(self) -> DiagnosticResult:
        start = time.monotonic()
        if self.credential is None:
            return DiagnosticResult.skipped("credentials", "No credential available to validate")
        try:
            self.credential.get_token(ARM_SCOPE)
        except ClientAuthenticationError as e:
            return DiagnosticResult.error(
                "credentials", f"Azure CLI credentials are invalid or expired: {e}",
                severity=Severity.CRITICAL, duration=time.monotonic() - start,
                code=FindingCode.CREDENTIALS_INVALID, auto_fixable=True)
        return DiagnosticResult.success(
            "credentials", "Azure CLI credentials are valid",
            duration=time.monotonic() - start, code=FindingCode.ACCESS_OK)

    def _check_permissions(self, instance_id: str) -> DiagnosticResult:
        start = time.monotonic()
        if self.authorization_client is None:
            return DiagnosticResult.skipped("rbac_permissions", "Authorization client not configured")

        vm_ref = InputValidator.validate_vm_id(instance_id)
        try:
            permissions = [
                _to_dict(p) for p in self.authorization_client.permissions.list_for_resource(
                    vm_ref["resource_group"], "Microsoft.Compute", "", "virtualMachines", vm_ref["name"]
                )
            ]
        except HttpResponseError as e:
            result = self._check_authorization_error(e, instance_id)
            if result is not None:
                return result
            raise classify_exception(e) from e

        missing = {a: sev for a, sev in REQUIRED_VM_ACTIONS.items() if not _action_allowed(a, permissions)}
        duration = time.monotonic() - start
        if not missing:
            return DiagnosticResult.success(
                "rbac_permissions", "Required RBAC permissions are granted",
                duration=duration, code=FindingCode.ACCESS_OK)

        worst = max(missing.values())
        message = f"Missing RBAC permissions: {', '.join(sorted(missing))}"
        if worst == Severity.CRITICAL:
            return DiagnosticResult.error(
                "rbac_permissions", message, severity=Severity.CRITICAL, duration=duration,
                code=FindingCode.PERMISSION_INSUFFICIENT, instance_id=instance_id,
                missing_permissions=sorted(missing))
        return DiagnosticResult.warning(
            "rbac_permissions", message, severity=worst, duration=duration,
            code=FindingCode.PERMISSION_INSUFFICIENT, instance_id=instance_id,
            missing_permissions=sorted(missing))

    def diagnose_identity_and_access(self, instance_id: str) -> List[DiagnosticResult]:
        """Validate the caller's credentials and RBAC permissions on the VM."""
        results = [self._check_credentials()]
        if results[0].code == FindingCode.CREDENTIALS_INVALID:
            # Permission lookups need a working token
            return results
        results.append(self._check_permissions(instance_id))
        return results

    def check_network_endpoints(self, instance_id: str) -> DiagnosticResult:
        """Check that the VM has a session entry point (public IP or Azure Bastion)."""
        start = time.monotonic()
        network = self._describe_network(instance_id)
        duration = time.monotonic() - start

        if not network:
            return DiagnosticResult.error(
                "network_endpoints", "Virtual machine has no network interface",
                severity=Severity.HIGH, duration=duration, code=FindingCode.ENDPOINT_MISSING,
                instance_id=instance_id)

        details = dict(network, instance_id=instance_id)
        if network["public_ip_id"]:
            return DiagnosticResult.success(
                "network_endpoints", f"Public IP attached to {network['nic_name']}",
                duration=duration, code=FindingCode.ENDPOINT_OK, **details)
        if network["bastion"]:
            return DiagnosticResult.success(
                "network_endpoints", "Azure Bastion is available in the virtual network",
                duration=duration, code=FindingCode.ENDPOINT_OK, **details)
        return DiagnosticResult.error(
            "network_endpoints",
            f"No public IP on {network['nic_name']} and no Azure Bastion in the virtual network",
            severity=Severity.HIGH, duration=duration, code=FindingCode.ENDPOINT_MISSING,
            auto_fixable=True, **details)

    def check_firewall_rules(self, instance_id: str) -> DiagnosticResult:
        """Evaluate subnet and NIC NSGs for inbound traffic on the remote port."""
        start = time.monotonic()
        network = self._describe_network(instance_id)
        port = self.remote_port

        nsg_ids = [("subnet", network.get("subnet_nsg_id")), ("nic", network.get("nic_nsg_id"))]
        evaluated = []
        for scope, nsg_id in nsg_ids:
            if not nsg_id:
                continue
            nsg_ref = parse_resource_id(nsg_id)
            try:
                nsg = _to_dict(self.network_client.network_security_groups.get(
                    nsg_ref["resource_group"], nsg_ref["name"]))
            except Exception as e:  # pylint: disable=broad-except
                raise classify_exception(e) from e

            rule = first_matching_inbound_rule(nsg, port, via_bastion=network.get("bastion", False))
            evaluated.append(nsg_ref["name"])
            if rule and (rule.get("access") or "").lower() == "deny":
                self.logger.info("    NSG %s rule %s denies port %s", nsg_ref["name"], rule.get("name"), port)
                return DiagnosticResult.error(
                    "firewall_rules",
                    f"NSG '{nsg_ref['name']}' ({scope}) rule '{rule.get('name')}' "
                    f"(priority {rule.get('priority')}) denies inbound TCP {port}",
                    severity=Severity.HIGH, duration=time.monotonic() - start,
                    code=FindingCode.FIREWALL_BLOCKING, auto_fixable=True,
                    instance_id=instance_id, nsg_id=nsg_id, nsg_name=nsg_ref["name"],
                    resource_group=nsg_ref["resource_group"], scope=scope,
                    rule_name=rule.get("name"), priority=rule.get("priority"), port=port)

        message = (
            f"Inbound TCP {port} allowed by {', '.join(evaluated)}" if evaluated
            else f"No NSG associated; inbound TCP {port} is not filtered"
        )
        return DiagnosticResult.success(
            "firewall_rules", message, duration=time.monotonic() - start,
            code=FindingCode.FIREWALL_OK, instance_id=instance_id, port=port, evaluated_nsgs=evaluated)

    def check_route_and_connectivity(self, instance_id: str) -> DiagnosticResult:
        """Inspect the subnet route table for a default route that breaks return traffic."""
        start = time.monotonic()
        network = self._describe_network(instance_id)
        route_table_id = network.get("route_table_id")
        if not route_table_id:
            return DiagnosticResult.success(
                "route_connectivity", "No route table on subnet; system routes apply",
                duration=time.monotonic() - start, code=FindingCode.ROUTE_OK, instance_id=instance_id)

        rt_ref = parse_resource_id(route_table_id)
        try:
            route_table = _to_dict(self.network_client.route_tables.get(rt_ref["resource_group"], rt_ref["name"]))
        except Exception as e:  # pylint: disable=broad-except
            raise classify_exception(e) from e

        route = assess_default_route(route_table.get("routes") or [])
        duration = time.monotonic() - start
        details = {"instance_id": instance_id, "route_table": rt_ref["name"]}
        if route is None:
            return DiagnosticResult.success(
                "route_connectivity", f"Route table {rt_ref['name']} has no default route override",
                duration=duration, code=FindingCode.ROUTE_OK, **details)

        next_hop_type = route.get("next_hop_type", "")
        details.update(route_name=route.get("name"), next_hop_type=next_hop_type,
                       next_hop_ip_address=route.get("next_hop_ip_address"))
        if next_hop_type == "None":
            return DiagnosticResult.error(
                "route_connectivity",
                f"Default route '{route.get('name')}' in {rt_ref['name']} drops all internet traffic (blackhole)",
                severity=Severity.HIGH, duration=duration, code=FindingCode.ROUTE_BLACKHOLE, **details)
        if next_hop_type == "VirtualAppliance":
            return DiagnosticResult.warning(
                "route_connectivity",
                f"Default route '{route.get('name')}' sends traffic to virtual appliance "
                f"{route.get('next_hop_ip_address')}; return traffic may be dropped",
                severity=Severity.MEDIUM, duration=duration, code=FindingCode.ROUTE_VIRTUAL_APPLIANCE, **details)
        return DiagnosticResult.success(
            "route_connectivity", f"Default route goes to {next_hop_type}",
            duration=duration, code=FindingCode.ROUTE_OK, **details)

    def check_local_port(self, port: int) -> DiagnosticResult:
        """Check that the local forwarding port can be bound."""
        start = time.monotonic()
        try:
            available = is_port_available(port)
        except OSError as e:
            return DiagnosticResult.error(
                "local_port", f"Port availability check failed: {e}",
                severity=Severity.HIGH, duration=time.monotonic() - start,
                code=FindingCode.CHECK_FAILED, port=port)

        if available:
            return DiagnosticResult.success(
                "local_port", f"Port {port} is available for use",
                duration=time.monotonic() - start, code=FindingCode.LOCAL_PORT_AVAILABLE, port=port)

        owner = find_port_owner(port)
        alternatives = suggest_alternative_ports(port)
        message = f"Port {port} is currently in use"
        severity = Severity.MEDIUM
        auto_fixable = False
        if owner:
            message += f" by process: {owner['name']} (PID: {owner['pid']})"
            if is_system_critical_process(owner["name"]):
                severity = Severity.HIGH
                message += " - System critical process, cannot be terminated"
            else:
                severity = Severity.LOW
                auto_fixable = True
                message += " - Process can be safely terminated if needed"
        if alternatives:
            message += f". Alternative ports available: {', '.join(str(p) for p in alternatives)}"

        self.logger.info("  %s", message)
        return DiagnosticResult.warning(
            "local_port", message, severity=severity, duration=time.monotonic() - start,
            code=FindingCode.LOCAL_PORT_IN_USE, auto_fixable=auto_fixable,
            port=port, process_id=owner["pid"] if owner else None,
            process_name=owner["name"] if owner else None, alternative_ports=alternatives)


def is_port_available(port: int) -> bool:
    """Try to bind 127.0.0.1:port. Raises OSError for failures other than address-in-use."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("127.0.0.1", port))
        except OSError as e:
            if e.errno in _ADDRESS_IN_USE:
                return False
            raise
    return True


def find_port_owner(port: int) -> Optional[Dict[str, Any]]:
    """Return {'pid', 'name'} of the process listening on ``port``, when visible"""
    try:
        for conn in psutil.net_connections(kind='inet'):
            if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN and conn.pid:
                try:
                    return {"pid": conn.pid, "name": psutil.Process(conn.pid).name()}
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    return {"pid": conn.pid, "name": "unknown"}
    except psutil.AccessDenied:
        # Listing sockets of other users needs elevated rights on some platforms
        return None
    return None


def suggest_alternative_ports(port: int, port_range: int = ALTERNATIVE_PORT_RANGE,
                              limit: int = MAX_ALTERNATIVE_PORTS) -> List[int]:
    """Free ports near ``port``, closest first"""
    candidates = [
        p for p in range(max(1024, port - port_range), min(65535, port + port_range) + 1) if p != port
    ]
    candidates.sort(key=lambda p: abs(p - port))
    found = []
    for candidate in candidates:
        try:
            if is_port_available(candidate):
                found.append(candidate)
        except OSError:
            continue
        if len(found) >= limit:
            break
    return found
