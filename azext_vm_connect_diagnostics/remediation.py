# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
Side-effecting remediation calls used by the auto-fix engine

These are thin wrappers over the Azure SDK and psutil. They start work and
return; waiting for post-conditions belongs to the engine's bounded loops.
"""

import logging
from typing import Any, Callable, Dict, Optional

import psutil

from .exceptions import AzureAuthenticationError, VMConnectDiagnosticsError, classify_exception
from .validators import InputValidator
from .vm_checks import ARM_SCOPE, _to_dict, is_system_critical_process, power_state_from_instance_view


class AzureRemediator:
    """Performs the remediation side effects for one subscription."""

    def __init__(self, compute_client, credential_factory: Optional[Callable[[], Any]] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            compute_client: Authenticated ComputeManagementClient
            credential_factory: Returns a fresh Azure CLI credential (re-reads the token cache)
            logger: Optional logger instance
        """
        self.compute_client = compute_client
        self.credential_factory = credential_factory
        self.logger = logger or logging.getLogger("vm_connect_diagnostics.remediation")

    def start_instance(self, instance_id: str) -> None:
        vm_ref = InputValidator.validate_vm_id(instance_id)
        self.logger.info("Starting virtual machine %s", instance_id)
        try:
            # Only submit; the caller monitors the power state
            self.compute_client.virtual_machines.begin_start(vm_ref["resource_group"], vm_ref["name"])
        except Exception as e:  # pylint: disable=broad-except
            raise classify_exception(e) from e

    def get_power_state(self, instance_id: str) -> Optional[str]:
        vm_ref = InputValidator.validate_vm_id(instance_id)
        try:
            view = self.compute_client.virtual_machines.instance_view(vm_ref["resource_group"], vm_ref["name"])
        except Exception as e:  # pylint: disable=broad-except
            raise classify_exception(e) from e
        return power_state_from_instance_view(_to_dict(view) or {})

    def reapply_agent(self, instance_id: str) -> None:
        """Reapply the VM model, which re-provisions the guest agent extension handler."""
        vm_ref = InputValidator.validate_vm_id(instance_id)
        self.logger.info("Reapplying virtual machine %s", instance_id)
        try:
            self.compute_client.virtual_machines.begin_reapply(vm_ref["resource_group"], vm_ref["name"])
        except Exception as e:  # pylint: disable=broad-except
            raise classify_exception(e) from e

    def refresh_credentials(self) -> Dict[str, Any]:
        """Re-acquire Azure CLI credentials and prove them with a management-plane token."""
        if self.credential_factory is None:
            raise AzureAuthenticationError("No credential source configured; run 'az login'")
        try:
            credential = self.credential_factory()
            token = credential.get_token(ARM_SCOPE)
        except Exception as e:  # pylint: disable=broad-except
            raise classify_exception(e) from e
        return {"expires_on": getattr(token, "expires_on", None)}

    def terminate_process(self, pid: int) -> str:
        """Ask a local process to terminate. Returns the process name."""
        try:
            process = psutil.Process(pid)
            name = process.name()
        except psutil.NoSuchProcess as e:
            raise VMConnectDiagnosticsError(f"Process {pid} does not exist") from e
        except psutil.AccessDenied as e:
            raise VMConnectDiagnosticsError(f"Access denied to process {pid}") from e

        if is_system_critical_process(name):
            raise VMConnectDiagnosticsError(f"Refusing to terminate system critical process {name} (PID: {pid})")

        self.logger.info("Terminating process %s (PID: %s)", name, pid)
        try:
            process.terminate()
        except psutil.NoSuchProcess:
            self.logger.debug("Process %s exited before terminate", pid)
        return name

    def process_exists(self, pid: int) -> bool:
        return psutil.pid_exists(pid)
