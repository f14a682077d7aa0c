# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------


def load_arguments(self, _):
    with self.argument_context('vm connect-diagnostics') as c:
        c.argument('resource_group_name', options_list=['--resource-group', '-g'],
                   help='Name of resource group. You can configure the default group using '
                        '`az configure --defaults group=<name>`')
        c.argument('name', options_list=['--name', '-n'],
                   help='Name of the virtual machine.')
        c.argument('local_port', options_list=['--local-port'], type=int,
                   help='Local port the session will forward from. Checked for conflicts when given.')
        c.argument('remote_port', options_list=['--remote-port'], type=int,
                   help='TCP port of the remote session on the VM (22 for SSH, 3389 for RDP).')
        c.argument('no_abort', options_list=['--no-abort'],
                   action='store_true',
                   help='Do not advise aborting the connection when critical issues are found.')
        c.argument('auto_fix', options_list=['--auto-fix'],
                   action='store_true',
                   help='Apply fixes that are safe to run without confirmation, then verify them.')
        c.argument('dry_run', options_list=['--dry-run'],
                   action='store_true',
                   help='Show what --auto-fix would do without changing anything.')
        c.argument('yes', options_list=['--yes', '-y'],
                   action='store_true',
                   help='Also apply fixes that require confirmation (for example starting the VM). '
                        'Requires --auto-fix.')
        c.argument('json_report', options_list=['--json-report'],
                   help='Path to save JSON diagnostic report.')
