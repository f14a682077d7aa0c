# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

from azure.cli.core.commands import CliCommandType
from azext_vm_connect_diagnostics._client_factory import cf_virtual_machines


def load_command_table(self, _):
    virtual_machines_sdk = CliCommandType(
        operations_tmpl='azure.mgmt.compute.operations#VirtualMachinesOperations.{}',
        client_factory=cf_virtual_machines
    )

    with self.command_group('vm connect-diagnostics', virtual_machines_sdk,
                            client_factory=cf_virtual_machines, is_preview=True) as g:
        g.custom_command('', 'vm_connect_diagnostics')
