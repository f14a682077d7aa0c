# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""Version information for the VM Connect Diagnostics Extension"""

__version__ = "0.1.0"
__author__ = "Azure VM Connect Diagnostics Team"
__description__ = "Preventive checks and guided fixes for VM remote session connectivity (Preview)"
