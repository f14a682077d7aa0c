# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import ClientAuthenticationError, HttpResponseError, ResourceNotFoundError

from azext_vm_connect_diagnostics.exceptions import VMConnectDiagnosticsError
from azext_vm_connect_diagnostics.models import DiagnosticStatus, FindingCode, Severity
from azext_vm_connect_diagnostics.vm_checks import (
    BASTION_SUBNET_NAME,
    AzureVMChecks,
    allow_rule_priority,
    assess_default_route,
    first_matching_inbound_rule,
    is_system_critical_process,
    port_in_range,
    power_state_from_instance_view,
)

VM_ID = "my-rg/my-vm"
SUB = "/subscriptions/00000000-0000-0000-0000-000000000000/resourceGroups/my-rg/providers"
NIC_ID = f"{SUB}/Microsoft.Network/networkInterfaces/my-nic"
SUBNET_ID = f"{SUB}/Microsoft.Network/virtualNetworks/my-vnet/subnets/default"
NSG_ID = f"{SUB}/Microsoft.Network/networkSecurityGroups/my-nsg"
RT_ID = f"{SUB}/Microsoft.Network/routeTables/my-rt"
PIP_ID = f"{SUB}/Microsoft.Network/publicIPAddresses/my-pip"


def vm_with_power_state(power_state, provisioning="succeeded"):
    return {
        "location": "eastus",
        "provisioning_state": provisioning,
        "storage_profile": {"os_disk": {"os_type": "Linux"}},
        "network_profile": {"network_interfaces": [{"id": NIC_ID, "primary": True}]},
        "instance_view": {"statuses": [
            {"code": f"ProvisioningState/{provisioning}"},
            {"code": f"PowerState/{power_state}"},
        ]},
    }


def make_checks(vm=None, public_ip=None, nsg=None, subnet_nsg=False, route_table=None, bastion=False, **kwargs):
    compute = MagicMock()
    compute.virtual_machines.get.return_value = vm or vm_with_power_state("running")

    network = MagicMock()
    network.network_interfaces.get.return_value = {
        "name": "my-nic",
        "network_security_group": None if subnet_nsg else ({"id": NSG_ID} if nsg else None),
        "ip_configurations": [{
            "primary": True,
            "private_ip_address": "10.0.0.4",
            "subnet": {"id": SUBNET_ID},
            "public_ip_address": {"id": public_ip} if public_ip else None,
        }],
    }

    subnet = {
        "network_security_group": {"id": NSG_ID} if subnet_nsg else None,
        "route_table": {"id": RT_ID} if route_table is not None else None,
    }

    def get_subnet(_rg, _vnet, name):
        if name == BASTION_SUBNET_NAME:
            if bastion:
                return {"name": BASTION_SUBNET_NAME}
            raise ResourceNotFoundError("no bastion")
        return subnet

    network.subnets.get.side_effect = get_subnet
    network.network_security_groups.get.return_value = nsg or {}
    network.route_tables.get.return_value = route_table or {}
    return AzureVMChecks(compute, network, **kwargs), compute, network


def rule(name, priority, access, port="22", source="*", direction="Inbound", protocol="Tcp"):
    return {"name": name, "priority": priority, "access": access, "direction": direction,
            "protocol": protocol, "destination_port_range": port, "source_address_prefix": source}


class TestHelpers:
    @pytest.mark.parametrize("port,port_range,expected", [
        (22, "22", True),
        (22, "*", True),
        (22, "20-25", True),
        (26, "20-25", False),
        (22, "3389", False),
        (22, "not-a-port", False),
    ])
    def test_port_in_range(self, port, port_range, expected):
        assert port_in_range(port, port_range) is expected

    @pytest.mark.parametrize("deny_priority, expected", [
        (200, 199),
        (65500, 4096),
        (4097, 4096),
        (101, 100),
        (100, None),
        (None, 4096),
    ])
    def test_allow_rule_priority(self, deny_priority, expected):
        assert allow_rule_priority(deny_priority) == expected

    def test_power_state(self):
        view = {"statuses": [{"code": "ProvisioningState/succeeded"}, {"code": "PowerState/deallocated"}]}
        assert power_state_from_instance_view(view) == "deallocated"
        assert power_state_from_instance_view({}) is None

    def test_first_match_by_priority(self):
        nsg = {"security_rules": [rule("AllowSSH", 300, "Allow"), rule("DenySSH", 200, "Deny")]}
        assert first_matching_inbound_rule(nsg, 22)["name"] == "DenySSH"

    def test_ignores_outbound_and_other_ports(self):
        nsg = {"security_rules": [
            rule("DenyOut", 100, "Deny", direction="Outbound"),
            rule("DenyRdp", 110, "Deny", port="3389"),
            rule("DenyUdp", 120, "Deny", protocol="Udp"),
            rule("AllowSSH", 300, "Allow"),
        ]}
        assert first_matching_inbound_rule(nsg, 22)["name"] == "AllowSSH"

    def test_virtual_network_source_only_counts_with_bastion(self):
        nsg = {"default_security_rules": [
            rule("AllowVnetInBound", 65000, "Allow", port="*", source="VirtualNetwork"),
            rule("DenyAllInBound", 65500, "Deny", port="*"),
        ]}
        assert first_matching_inbound_rule(nsg, 22)["name"] == "DenyAllInBound"
        assert first_matching_inbound_rule(nsg, 22, via_bastion=True)["name"] == "AllowVnetInBound"

    def test_default_route(self):
        routes = [{"name": "spoke", "address_prefix": "10.1.0.0/16"},
                  {"name": "default", "address_prefix": "0.0.0.0/0", "next_hop_type": "None"}]
        assert assess_default_route(routes)["name"] == "default"
        assert assess_default_route(routes[:1]) is None

    @pytest.mark.parametrize("name,expected", [
        ("systemd", True),
        ("svchost.exe", True),
        ("sshd", True),
        ("python3", False),
        ("node", False),
    ])
    def test_system_critical_process(self, name, expected):
        assert is_system_critical_process(name) is expected


class TestInstanceState:
    def test_running(self):
        checks, compute, _ = make_checks()
        result = checks.check_basic_instance_state(VM_ID)

        assert result.code == FindingCode.INSTANCE_RUNNING
        assert result.detail("os_type") == "Linux"
        compute.virtual_machines.get.assert_called_once_with("my-rg", "my-vm", expand="instanceView")

    def test_stopped_is_auto_fixable(self):
        checks, _, _ = make_checks(vm=vm_with_power_state("deallocated"))
        result = checks.check_basic_instance_state(VM_ID)

        assert result.status == DiagnosticStatus.ERROR
        assert result.severity == Severity.HIGH
        assert result.code == FindingCode.INSTANCE_STOPPED
        assert result.auto_fixable
        assert result.detail("instance_id") == VM_ID

    def test_transitioning(self):
        checks, _, _ = make_checks(vm=vm_with_power_state("starting"))
        assert checks.check_basic_instance_state(VM_ID).code == FindingCode.INSTANCE_TRANSITIONING

    def test_deleting(self):
        checks, _, _ = make_checks(vm=vm_with_power_state("running", provisioning="deleting"))
        result = checks.check_basic_instance_state(VM_ID)

        assert result.is_critical_error
        assert result.code == FindingCode.INSTANCE_DELETED

    def test_not_found(self):
        checks, compute, _ = make_checks()
        compute.virtual_machines.get.side_effect = ResourceNotFoundError("ResourceNotFound")
        result = checks.check_basic_instance_state(VM_ID)

        assert result.is_critical_error
        assert result.code == FindingCode.INSTANCE_NOT_FOUND


class TestAgent:
    def test_ready(self):
        checks, compute, _ = make_checks()
        compute.virtual_machines.instance_view.return_value = {
            "os_name": "ubuntu",
            "vm_agent": {"vm_agent_version": "2.9.1.1", "statuses": [{"display_status": "Ready"}]},
        }
        result = checks.check_agent_registration(VM_ID)

        assert result.code == FindingCode.AGENT_READY
        assert result.detail("agent_version") == "2.9.1.1"

    def test_not_ready(self):
        checks, compute, _ = make_checks()
        compute.virtual_machines.instance_view.return_value = {
            "vm_agent": {"statuses": [{"display_status": "Not Ready"}]}}
        result = checks.check_agent_registration(VM_ID)

        assert result.code == FindingCode.AGENT_NOT_READY
        assert result.detail("agent_status") == "Not Ready"

    def test_not_reporting(self):
        checks, compute, _ = make_checks()
        compute.virtual_machines.instance_view.return_value = {}
        assert checks.get_agent_info(VM_ID) is None
        assert checks.check_agent_registration(VM_ID).code == FindingCode.AGENT_NOT_REPORTING


class TestIdentityAndAccess:
    def test_invalid_credentials_skip_rbac(self):
        credential = MagicMock()
        credential.get_token.side_effect = ClientAuthenticationError("expired")
        authorization = MagicMock()
        checks, _, _ = make_checks(credential=credential, authorization_client=authorization)

        results = checks.diagnose_identity_and_access(VM_ID)

        assert [r.code for r in results] == [FindingCode.CREDENTIALS_INVALID]
        assert results[0].is_critical_error
        authorization.permissions.list_for_resource.assert_not_called()

    def test_permissions_granted(self):
        authorization = MagicMock()
        authorization.permissions.list_for_resource.return_value = [{"actions": ["*"], "not_actions": []}]
        checks, _, _ = make_checks(credential=MagicMock(), authorization_client=authorization)

        results = checks.diagnose_identity_and_access(VM_ID)

        assert [r.status for r in results] == [DiagnosticStatus.SUCCESS, DiagnosticStatus.SUCCESS]

    def test_missing_start_permission(self):
        authorization = MagicMock()
        authorization.permissions.list_for_resource.return_value = [
            {"actions": ["*/read"], "not_actions": []}]
        checks, _, _ = make_checks(credential=MagicMock(), authorization_client=authorization)

        rbac = checks.diagnose_identity_and_access(VM_ID)[1]

        assert rbac.status == DiagnosticStatus.WARNING
        assert rbac.code == FindingCode.PERMISSION_INSUFFICIENT
        assert rbac.detail("missing_permissions") == ["Microsoft.Compute/virtualMachines/start/action"]

    def test_missing_read_permission_is_critical(self):
        authorization = MagicMock()
        authorization.permissions.list_for_resource.return_value = [
            {"actions": ["*"], "not_actions": ["Microsoft.Compute/*"]}]
        checks, _, _ = make_checks(credential=MagicMock(), authorization_client=authorization)

        rbac = checks.diagnose_identity_and_access(VM_ID)[1]

        assert rbac.is_critical_error

    def test_authorization_failed_response(self):
        authorization = MagicMock()
        authorization.permissions.list_for_resource.side_effect = HttpResponseError(
            message="AuthorizationFailed: does not have authorization to perform action "
                    "'Microsoft.Authorization/permissions/read'")
        checks, _, _ = make_checks(credential=MagicMock(), authorization_client=authorization)

        rbac = checks.diagnose_identity_and_access(VM_ID)[1]

        assert rbac.code == FindingCode.PERMISSION_INSUFFICIENT
        assert rbac.detail("missing_permission") == "Microsoft.Authorization/permissions/read"


class TestNetwork:
    def test_public_ip_endpoint(self):
        checks, _, _ = make_checks(public_ip=PIP_ID)
        result = checks.check_network_endpoints(VM_ID)

        assert result.code == FindingCode.ENDPOINT_OK
        assert result.detail("nic_name") == "my-nic"

    def test_bastion_endpoint(self):
        checks, _, _ = make_checks(bastion=True)
        assert checks.check_network_endpoints(VM_ID).code == FindingCode.ENDPOINT_OK

    def test_missing_endpoint(self):
        checks, _, _ = make_checks()
        result = checks.check_network_endpoints(VM_ID)

        assert result.code == FindingCode.ENDPOINT_MISSING
        assert result.auto_fixable

    def test_no_nsg(self):
        checks, _, _ = make_checks()
        result = checks.check_firewall_rules(VM_ID)

        assert result.code == FindingCode.FIREWALL_OK
        assert "not filtered" in result.message

    def test_nsg_denies_port(self):
        nsg = {"security_rules": [rule("DenySSH", 200, "Deny"), rule("AllowSSH", 300, "Allow")]}
        checks, _, network = make_checks(nsg=nsg, subnet_nsg=True)

        result = checks.check_firewall_rules(VM_ID)

        assert result.code == FindingCode.FIREWALL_BLOCKING
        assert result.detail("priority") == 200
        assert result.detail("scope") == "subnet"
        assert result.detail("nsg_id") == NSG_ID
        network.network_security_groups.get.assert_called_once_with("my-rg", "my-nsg")

    def test_nsg_allows_custom_port(self):
        nsg = {"security_rules": [rule("AllowRdp", 200, "Allow", port="3389")],
               "default_security_rules": [rule("DenyAllInBound", 65500, "Deny", port="*")]}
        checks, _, _ = make_checks(nsg=nsg, remote_port=3389)

        result = checks.check_firewall_rules(VM_ID)

        assert result.code == FindingCode.FIREWALL_OK
        assert result.detail("evaluated_nsgs") == ["my-nsg"]

    def test_blackhole_route(self):
        route_table = {"routes": [{"name": "drop-all", "address_prefix": "0.0.0.0/0", "next_hop_type": "None"}]}
        checks, _, _ = make_checks(route_table=route_table)

        result = checks.check_route_and_connectivity(VM_ID)

        assert result.code == FindingCode.ROUTE_BLACKHOLE
        assert result.detail("route_name") == "drop-all"
        assert result.detail("route_table") == "my-rt"

    def test_virtual_appliance_route(self):
        route_table = {"routes": [{"name": "to-fw", "address_prefix": "0.0.0.0/0",
                                   "next_hop_type": "VirtualAppliance", "next_hop_ip_address": "10.0.1.4"}]}
        checks, _, _ = make_checks(route_table=route_table)

        result = checks.check_route_and_connectivity(VM_ID)

        assert result.status == DiagnosticStatus.WARNING
        assert result.code == FindingCode.ROUTE_VIRTUAL_APPLIANCE

    def test_no_route_table(self):
        checks, _, _ = make_checks()
        assert checks.check_route_and_connectivity(VM_ID).code == FindingCode.ROUTE_OK


    def test_network_described_once_per_instance(self):
        checks, compute, network = make_checks(nsg={"security_rules": []}, route_table={"routes": []})

        checks.check_network_endpoints(VM_ID)
        checks.check_firewall_rules(VM_ID)
        checks.check_route_and_connectivity(VM_ID)

        compute.virtual_machines.get.assert_called_once()
        network.network_interfaces.get.assert_called_once_with("my-rg", "my-nic")
        assert network.subnets.get.call_count == 2

    def test_failed_network_lookup_is_retried(self):
        checks, _, network = make_checks()
        network.network_interfaces.get.side_effect = [RuntimeError("nic lookup failed"),
                                                      network.network_interfaces.get.return_value]

        with pytest.raises(VMConnectDiagnosticsError):
            checks.check_network_endpoints(VM_ID)
        assert checks.check_network_endpoints(VM_ID).code == FindingCode.ENDPOINT_MISSING


class TestLocalPort:
    @patch("azext_vm_connect_diagnostics.vm_checks.is_port_available", return_value=True)
    def test_available(self, _available):
        checks, _, _ = make_checks()
        assert checks.check_local_port(8022).code == FindingCode.LOCAL_PORT_AVAILABLE

    @patch("azext_vm_connect_diagnostics.vm_checks.suggest_alternative_ports", return_value=[8023])
    @patch("azext_vm_connect_diagnostics.vm_checks.find_port_owner", return_value={"pid": 4242, "name": "python"})
    @patch("azext_vm_connect_diagnostics.vm_checks.is_port_available", return_value=False)
    def test_in_use_by_ordinary_process(self, _available, _owner, _alternatives):
        checks, _, _ = make_checks()
        result = checks.check_local_port(8022)

        assert result.code == FindingCode.LOCAL_PORT_IN_USE
        assert result.severity == Severity.LOW
        assert result.auto_fixable
        assert result.detail("process_id") == 4242
        assert result.detail("alternative_ports") == [8023]

    @patch("azext_vm_connect_diagnostics.vm_checks.suggest_alternative_ports", return_value=[])
    @patch("azext_vm_connect_diagnostics.vm_checks.find_port_owner", return_value={"pid": 1, "name": "systemd"})
    @patch("azext_vm_connect_diagnostics.vm_checks.is_port_available", return_value=False)
    def test_in_use_by_system_process(self, _available, _owner, _alternatives):
        checks, _, _ = make_checks()
        result = checks.check_local_port(8022)

        assert result.severity == Severity.HIGH
        assert not result.auto_fixable
        assert "cannot be terminated" in result.message

    @patch("azext_vm_connect_diagnostics.vm_checks.is_port_available", side_effect=OSError("permission denied"))
    def test_check_failure(self, _available):
        checks, _, _ = make_checks()
        result = checks.check_local_port(80)

        assert result.status == DiagnosticStatus.ERROR
        assert result.code == FindingCode.CHECK_FAILED
