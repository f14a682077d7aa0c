# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

from knack.help_files import helps


helps['vm connect-diagnostics'] = """
    type: command
    short-summary: Diagnose why a remote session to a virtual machine cannot be established.
    long-summary: |
        Runs preventive checks before you connect to a VM over SSH, RDP or Azure Bastion:
        - VM existence and power state (gate check; stops early on critical findings)
        - Azure guest agent readiness
        - Azure CLI credentials and RBAC permissions on the VM
        - Session entry point (public IP or Azure Bastion)
        - Network Security Group rules for the remote port
        - Subnet route table default routes
        - Local port availability (with --local-port)

        The result includes a connection likelihood, recommendations, proposed fixes ordered
        by risk, and detailed fix suggestions with Azure CLI commands.

        By default nothing is modified. With --auto-fix, fixes that are safe to run without
        confirmation are applied and verified; add --yes to also apply fixes that require
        confirmation, such as starting a stopped VM.

        Scoring thresholds and retry settings can be tuned in the `vm_connect_diagnostics`
        section of the Azure CLI configuration (`az config set vm_connect_diagnostics.<key>=<value>`).

        This command is currently in preview and may change in future releases.
    examples:
        - name: Check whether an SSH session to a VM can be established
          text: az vm connect-diagnostics --resource-group MyResourceGroup --name MyVM
        - name: Check an RDP session that will forward from local port 13389
          text: az vm connect-diagnostics -g MyResourceGroup -n MyVM --remote-port 3389 --local-port 13389
        - name: Show what automatic fixes would do
          text: az vm connect-diagnostics -g MyResourceGroup -n MyVM --auto-fix --dry-run
        - name: Apply all proposed fixes and save the report
          text: |
            az vm connect-diagnostics -g MyResourceGroup -n MyVM \\
                --auto-fix --yes --json-report vm-connect-report.json
"""
