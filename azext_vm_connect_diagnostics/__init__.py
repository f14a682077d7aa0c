# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

from azure.cli.core import AzCommandsLoader
from azext_vm_connect_diagnostics._help import helps  # pylint: disable=unused-import


class VMConnectDiagnosticsCommandsLoader(AzCommandsLoader):

    def __init__(self, cli_ctx=None):
        from azure.cli.core.commands import CliCommandType
        vm_connect_diagnostics_custom = CliCommandType(
            operations_tmpl='azext_vm_connect_diagnostics.custom#{}')
        super().__init__(cli_ctx=cli_ctx,
                         custom_command_type=vm_connect_diagnostics_custom)

    def load_command_table(self, args):
        from azext_vm_connect_diagnostics.commands import load_command_table
        load_command_table(self, args)
        return self.command_table

    def load_arguments(self, command):
        from azext_vm_connect_diagnostics._params import load_arguments
        load_arguments(self, command)


COMMAND_LOADER_CLS = VMConnectDiagnosticsCommandsLoader
