# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

from knack.log import get_logger
from knack.util import CLIError
from azext_vm_connect_diagnostics._client_factory import (
    cf_authorization_client,
    cf_compute_client,
    cf_network_client
)
from azext_vm_connect_diagnostics.error_recovery import RecoveryConfig
from azext_vm_connect_diagnostics.exceptions import VMConnectDiagnosticsError
from azext_vm_connect_diagnostics.orchestrator import run_diagnostics
from azext_vm_connect_diagnostics.preventive_check import ScoringThresholds
from azext_vm_connect_diagnostics.validators import InputValidator
from azext_vm_connect_diagnostics.vm_checks import DEFAULT_REMOTE_PORT

logger = get_logger(__name__)

CONFIG_SECTION = 'vm_connect_diagnostics'


def vm_connect_diagnostics(cmd, client, resource_group_name, name,  # pylint: disable=too-many-locals
                           local_port=None, remote_port=None, no_abort=False,
                           auto_fix=False, dry_run=False, yes=False, json_report=None):
    """
    Diagnose why a remote session (SSH, RDP, Bastion) to a VM cannot be established.

    Args:
        cmd: Command context
        client: VirtualMachinesOperations client
        resource_group_name: Resource group name
        name: VM name
        local_port: Local forwarding port to check
        remote_port: Session port on the VM
        no_abort: Never advise aborting the connection
        auto_fix: Apply fixes that are safe without confirmation
        dry_run: Show what fixes would do
        yes: Also apply fixes that require confirmation
        json_report: Path to save JSON report

    Returns:
        Diagnostic report dictionary
    """
    from azure.cli.core._profile import Profile

    try:
        instance_id = InputValidator.build_vm_id(resource_group_name, name)
        if local_port is not None:
            local_port = InputValidator.validate_port(local_port, "local port")
        remote_port = InputValidator.validate_port(
            remote_port if remote_port is not None else DEFAULT_REMOTE_PORT, "remote port")
        if json_report:
            json_report = InputValidator.validate_output_path(json_report)
    except VMConnectDiagnosticsError as e:
        raise CLIError(str(e)) from e

    if yes and not auto_fix:
        raise CLIError("--yes requires --auto-fix")

    # Get subscription ID from CLI context
    profile = Profile(cli_ctx=cmd.cli_ctx)
    subscription_id = profile.get_subscription_id()

    # Get credential
    credential = profile.get_login_credentials()[0]

    def credential_factory():
        return Profile(cli_ctx=cmd.cli_ctx).get_login_credentials()[0]

    # The VM lookup through the command client confirms the target exists and gives its location
    location = None
    try:
        location = client.get(resource_group_name, name).location
    except Exception as e:  # pylint: disable=broad-except
        logger.debug("Could not resolve VM location: %s", e)

    try:
        return run_diagnostics(
            compute_client=cf_compute_client(cmd.cli_ctx),
            network_client=cf_network_client(cmd.cli_ctx),
            authorization_client=cf_authorization_client(cmd.cli_ctx),
            credential=credential,
            instance_id=instance_id,
            subscription_id=subscription_id,
            local_port=local_port,
            remote_port=remote_port,
            abort_on_critical=not no_abort,
            auto_fix=auto_fix,
            dry_run=dry_run,
            approve_all=yes,
            credential_factory=credential_factory,
            thresholds=load_scoring_thresholds(cmd.cli_ctx.config),
            recovery_config=load_recovery_config(cmd.cli_ctx.config),
            timeout=cmd.cli_ctx.config.getfloat(CONFIG_SECTION, 'check_timeout', fallback=30.0),
            location=location,
            json_report_path=json_report,
            logger=logger
        )
    except VMConnectDiagnosticsError as e:
        raise CLIError(e.user_message()) from e


def load_scoring_thresholds(config):
    """Read scoring overrides from the `vm_connect_diagnostics` section of the Azure CLI config"""
    defaults = ScoringThresholds()
    try:
        return ScoringThresholds(
            high_errors_for_abort=config.getint(
                CONFIG_SECTION, 'high_errors_for_abort', fallback=defaults.high_errors_for_abort),
            high_errors_for_low=config.getint(
                CONFIG_SECTION, 'high_errors_for_low', fallback=defaults.high_errors_for_low),
            warnings_for_medium=config.getint(
                CONFIG_SECTION, 'warnings_for_medium', fallback=defaults.warnings_for_medium),
            max_warnings_for_high=config.getint(
                CONFIG_SECTION, 'max_warnings_for_high', fallback=defaults.max_warnings_for_high),
            success_ratio_for_high=config.getfloat(
                CONFIG_SECTION, 'success_ratio_for_high', fallback=defaults.success_ratio_for_high),
        )
    except ValueError as e:
        raise CLIError(f"Invalid {CONFIG_SECTION} scoring configuration: {e}") from e


def load_recovery_config(config):
    """Read retry settings from the `vm_connect_diagnostics` section of the Azure CLI config"""
    defaults = RecoveryConfig()
    try:
        return RecoveryConfig(
            max_attempts=config.getint(CONFIG_SECTION, 'max_attempts', fallback=defaults.max_attempts),
            base_delay=config.getfloat(CONFIG_SECTION, 'base_delay', fallback=defaults.base_delay),
            max_delay=config.getfloat(CONFIG_SECTION, 'max_delay', fallback=defaults.max_delay),
            backoff_multiplier=config.getfloat(
                CONFIG_SECTION, 'backoff_multiplier', fallback=defaults.backoff_multiplier),
            timeout=config.getfloat(CONFIG_SECTION, 'recovery_timeout', fallback=defaults.timeout),
        )
    except ValueError as e:
        raise CLIError(f"Invalid {CONFIG_SECTION} recovery configuration: {e}") from e
