# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
Input validation utilities for VM connect diagnostics

Provides validation for user inputs including:
- Azure resource names (VM names, resource groups)
- VM identifiers (ARM resource ID or <resource-group>/<vm-name>)
- Port numbers
- Output file paths (prevent path traversal attacks)
"""

import re
from pathlib import Path
from typing import Dict

from .exceptions import ValidationError

# Configuration constants
MAX_RESOURCE_NAME_LENGTH = 260
MIN_PORT = 1
MAX_PORT = 65535

_VM_RESOURCE_ID = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)/resourceGroups/(?P<resource_group>[^/]+)"
    r"/providers/Microsoft\.Compute/virtualMachines/(?P<name>[^/]+)/?$",
    re.IGNORECASE,
)


def parse_resource_id(resource_id: str) -> Dict[str, str]:
    """
    Split an ARM resource ID into its key/value segments.

    '/subscriptions/x/resourceGroups/rg/providers/Microsoft.Network/networkSecurityGroups/nsg'
    yields {'subscriptions': 'x', 'resourcegroups': 'rg', 'networksecuritygroups': 'nsg', ...}
    (keys lowercased) plus 'resource_group' and 'name' shortcuts.
    """
    parts = [p for p in (resource_id or "").split("/") if p]
    parsed: Dict[str, str] = {}
    for i in range(0, len(parts) - 1, 2):
        parsed[parts[i].lower()] = parts[i + 1]

    parsed["resource_group"] = parsed.get("resourcegroups", "")
    parsed["name"] = parts[-1] if parts else ""
    return parsed


class InputValidator:
    """Validates user inputs for security and correctness"""

    @staticmethod
    def validate_output_path(filepath: str) -> str:
        """
        Validate and sanitize output file path

        Args:
            filepath: User-provided file path

        Returns:
            Validated file path

        Raises:
            ValidationError: If path is invalid or unsafe
        """
        # Resolve the path to prevent traversal attacks
        resolved_path = Path(filepath).expanduser().resolve()
        current_dir = Path.cwd().resolve()

        try:
            resolved_path.relative_to(current_dir)
        except ValueError as exc:
            raise ValidationError("Output file path must be within the current directory") from exc

        if not str(resolved_path).lower().endswith(".json"):
            resolved_path = resolved_path.with_suffix(".json")

        return str(resolved_path)

    @staticmethod
    def validate_resource_name(name: str, resource_type: str) -> str:
        """
        Validate Azure resource name

        Args:
            name: Resource name
            resource_type: Type of resource (for error messages)

        Returns:
            Validated resource name

        Raises:
            ValidationError: If name is invalid
        """
        if not name or not isinstance(name, str):
            raise ValidationError(f"{resource_type.capitalize()} cannot be empty")

        name = name.strip()

        if len(name) < 1 or len(name) > MAX_RESOURCE_NAME_LENGTH:
            raise ValidationError(
                f"{resource_type.capitalize()} must be between 1 and {MAX_RESOURCE_NAME_LENGTH} characters"
            )

        dangerous_patterns = ["../", "\\", "/", "<script>", "javascript:", "data:"]
        for pattern in dangerous_patterns:
            if pattern.lower() in name.lower():
                raise ValidationError(f"{resource_type.capitalize()} contains invalid characters")

        return name

    @staticmethod
    def validate_port(port, label: str = "port") -> int:
        """
        Validate a TCP port number

        Raises:
            ValidationError: If the port is not an integer between 1 and 65535
        """
        try:
            value = int(port)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{label.capitalize()} must be an integer, got {port!r}") from exc

        if value < MIN_PORT or value > MAX_PORT:
            raise ValidationError(f"{label.capitalize()} must be between {MIN_PORT} and {MAX_PORT}")
        return value

    @staticmethod
    def validate_vm_id(vm_id: str) -> Dict[str, str]:
        """
        Validate a VM identifier and split it into its parts

        Accepts either a full ARM resource ID or '<resource-group>/<vm-name>'.

        Returns:
            Dict with 'resource_group', 'name' and, for ARM IDs, 'subscription'

        Raises:
            ValidationError: If the identifier is malformed
        """
        if not vm_id or not isinstance(vm_id, str):
            raise ValidationError("VM identifier cannot be empty")

        vm_id = vm_id.strip()
        match = _VM_RESOURCE_ID.match(vm_id)
        if match:
            return {
                "subscription": match.group("subscription"),
                "resource_group": InputValidator.validate_resource_name(
                    match.group("resource_group"), "resource group"),
                "name": InputValidator.validate_resource_name(match.group("name"), "VM name"),
            }

        parts = vm_id.split("/")
        if len(parts) != 2:
            raise ValidationError(
                f"Invalid VM identifier '{vm_id}'. Use an ARM resource ID or '<resource-group>/<vm-name>'"
            )
        return {
            "subscription": None,
            "resource_group": InputValidator.validate_resource_name(parts[0], "resource group"),
            "name": InputValidator.validate_resource_name(parts[1], "VM name"),
        }

    @staticmethod
    def build_vm_id(resource_group: str, name: str) -> str:
        """Canonical short identifier used as PreventiveCheckConfig.instance_id"""
        return (
            f"{InputValidator.validate_resource_name(resource_group, 'resource group')}/"
            f"{InputValidator.validate_resource_name(name, 'VM name')}"
        )
