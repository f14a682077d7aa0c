# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

from unittest.mock import MagicMock, patch

import psutil
import pytest
from azure.core.exceptions import ClientAuthenticationError

from azext_vm_connect_diagnostics.exceptions import AzureAuthenticationError, VMConnectDiagnosticsError
from azext_vm_connect_diagnostics.remediation import AzureRemediator
from azext_vm_connect_diagnostics.vm_checks import ARM_SCOPE

VM_ID = "my-rg/my-vm"


def test_start_instance_submits_only():
    compute = MagicMock()
    AzureRemediator(compute).start_instance(VM_ID)

    compute.virtual_machines.begin_start.assert_called_once_with("my-rg", "my-vm")
    compute.virtual_machines.begin_start.return_value.result.assert_not_called()


def test_power_state():
    compute = MagicMock()
    compute.virtual_machines.instance_view.return_value = {"statuses": [{"code": "PowerState/running"}]}
    assert AzureRemediator(compute).get_power_state(VM_ID) == "running"


def test_reapply_maps_sdk_errors():
    compute = MagicMock()
    compute.virtual_machines.begin_reapply.side_effect = ClientAuthenticationError("expired")

    with pytest.raises(AzureAuthenticationError):
        AzureRemediator(compute).reapply_agent(VM_ID)


def test_refresh_credentials():
    credential = MagicMock()
    credential.get_token.return_value.expires_on = 1700000000

    info = AzureRemediator(MagicMock(), credential_factory=lambda: credential).refresh_credentials()

    assert info == {"expires_on": 1700000000}
    credential.get_token.assert_called_once_with(ARM_SCOPE)


def test_refresh_credentials_without_source():
    with pytest.raises(AzureAuthenticationError):
        AzureRemediator(MagicMock()).refresh_credentials()


@patch("azext_vm_connect_diagnostics.remediation.psutil.Process")
def test_terminate_process(process_cls):
    process_cls.return_value.name.return_value = "python"

    assert AzureRemediator(MagicMock()).terminate_process(4242) == "python"
    process_cls.return_value.terminate.assert_called_once_with()


@patch("azext_vm_connect_diagnostics.remediation.psutil.Process")
def test_refuses_system_critical_process(process_cls):
    process_cls.return_value.name.return_value = "systemd"

    with pytest.raises(VMConnectDiagnosticsError, match="system critical"):
        AzureRemediator(MagicMock()).terminate_process(1)
    process_cls.return_value.terminate.assert_not_called()


@patch("azext_vm_connect_diagnostics.remediation.psutil.Process", side_effect=psutil.NoSuchProcess(4242))
def test_missing_process(_process_cls):
    with pytest.raises(VMConnectDiagnosticsError, match="does not exist"):
        AzureRemediator(MagicMock()).terminate_process(4242)
