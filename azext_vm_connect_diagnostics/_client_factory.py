# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

from azure.cli.core.commands.client_factory import get_mgmt_service_client


def cf_compute_client(cli_ctx, subscription_id=None):
    from azure.mgmt.compute import ComputeManagementClient
    return get_mgmt_service_client(cli_ctx, ComputeManagementClient, subscription_id=subscription_id)


def cf_virtual_machines(cli_ctx, *_):
    return cf_compute_client(cli_ctx).virtual_machines


def cf_network_client(cli_ctx, subscription_id=None):
    from azure.mgmt.network import NetworkManagementClient
    return get_mgmt_service_client(cli_ctx, NetworkManagementClient, subscription_id=subscription_id)


def cf_authorization_client(cli_ctx, subscription_id=None):
    from azure.mgmt.authorization import AuthorizationManagementClient
    return get_mgmt_service_client(cli_ctx, AuthorizationManagementClient, subscription_id=subscription_id)
