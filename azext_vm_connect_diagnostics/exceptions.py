# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
Custom exceptions for standardized error handling

Every exception raised inside the extension carries an ErrorCategory. The
category, not the concrete type, decides how the recovery manager treats it.
"""

import asyncio
from enum import Enum

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)


class ErrorCategory(Enum):
    """Error categories used for recovery strategy selection"""

    CONFIGURATION = "configuration"
    EXTERNAL_SERVICE = "external_service"
    SESSION = "session"
    CONNECTIVITY = "connectivity"
    RESOURCE = "resource"
    UI = "ui"
    SYSTEM = "system"


class VMConnectDiagnosticsError(Exception):
    """Base exception for VM connect diagnostics"""

    category = ErrorCategory.SYSTEM
    recoverable = False

    def is_recoverable(self) -> bool:
        return self.recoverable

    def user_message(self) -> str:
        """Short operator-facing description of the failure"""
        return str(self)


# Configuration


class InvalidConfigurationError(VMConnectDiagnosticsError):
    """Invalid configuration provided"""

    category = ErrorCategory.CONFIGURATION


class ValidationError(InvalidConfigurationError):
    """Input validation failed"""


# External service (Azure management plane)


class AzureSDKError(VMConnectDiagnosticsError):
    """Azure SDK API call failed"""

    category = ErrorCategory.EXTERNAL_SERVICE
    recoverable = True

    def __init__(self, message: str, error_code: str = None, status_code: int = None):
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)


class AzureAuthenticationError(AzureSDKError):
    """Azure authentication or authorization failed"""

    recoverable = False

    def user_message(self) -> str:
        return "Azure authentication failed. Run 'az login' and check your role assignments."


class InstanceNotFoundError(AzureSDKError):
    """Target virtual machine not found"""

    recoverable = False

    def __init__(self, instance_id: str, message: str = None):
        self.instance_id = instance_id
        super().__init__(message or f"Virtual machine not found: {instance_id}", status_code=404)

    def user_message(self) -> str:
        return f"Virtual machine not found: {self.instance_id}. Check the resource group and VM name."


class AzureServiceError(AzureSDKError):
    """Transient Azure service failure (throttling, 5xx)"""


class AzureTimeoutError(AzureSDKError):
    """Azure operation did not complete in time"""


class NetworkError(AzureSDKError):
    """Request to the Azure management endpoint could not be sent or answered"""


# Session lifecycle


class SessionError(VMConnectDiagnosticsError):
    """Remote session lifecycle failure"""

    category = ErrorCategory.SESSION
    recoverable = True


class SessionCreationError(SessionError):
    """Session could not be created"""


class SessionLimitExceededError(SessionError):
    """Too many concurrent sessions"""

    recoverable = False

    def __init__(self, max_sessions: int):
        self.max_sessions = max_sessions
        super().__init__(f"Session limit exceeded: max {max_sessions}")


class SessionNotFoundError(SessionError):
    """Session does not exist"""

    recoverable = False


# Connectivity


class ConnectivityError(VMConnectDiagnosticsError):
    """Connection to the virtual machine could not be established"""

    category = ErrorCategory.CONNECTIVITY
    recoverable = True


class PreventiveCheckFailedError(ConnectivityError):
    """Preventive checks reported blocking issues"""

    def __init__(self, reason: str, issues=None):
        self.reason = reason
        self.issues = list(issues or [])
        super().__init__(f"Preventive check failed: {reason}")


class PortInUseError(ConnectivityError):
    """Local port is already bound by another process"""

    def __init__(self, port: int):
        self.port = port
        super().__init__(f"Port already in use: {port}")

    def user_message(self) -> str:
        return f"Local port {self.port} is already in use. Choose another port with --local-port."


# Local resources and UI


class ResourceExhaustedError(VMConnectDiagnosticsError):
    """Local memory, CPU or process limits exceeded"""

    category = ErrorCategory.RESOURCE
    recoverable = True


class UIError(VMConnectDiagnosticsError):
    """Terminal feedback failure, never fatal to diagnostics"""

    category = ErrorCategory.UI
    recoverable = True


# Recovery


class RecoveryTimeoutError(VMConnectDiagnosticsError):
    """Recovery budget exhausted before the operation succeeded"""

    def __init__(self, attempts: int, timeout: float):
        self.attempts = attempts
        self.timeout = timeout
        super().__init__(f"Recovery timeout exceeded after {attempts} attempts ({timeout:.1f}s budget)")


_RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def classify_exception(exc: BaseException) -> VMConnectDiagnosticsError:
    """
    Map a foreign exception onto the diagnostics taxonomy.

    Exceptions that already belong to the taxonomy are returned unchanged.

    Args:
        exc: Exception raised by an Azure SDK call, the OS or asyncio

    Returns:
        VMConnectDiagnosticsError instance with the original chained as __cause__
    """
    if isinstance(exc, VMConnectDiagnosticsError):
        return exc

    if isinstance(exc, ClientAuthenticationError):
        mapped = AzureAuthenticationError(str(exc), status_code=getattr(exc, "status_code", None))
    elif isinstance(exc, ResourceNotFoundError):
        mapped = InstanceNotFoundError("unknown", message=str(exc))
    elif isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        mapped = NetworkError(str(exc))
    elif isinstance(exc, HttpResponseError):
        status_code = getattr(exc, "status_code", None)
        error_code = getattr(getattr(exc, "error", None), "code", None)
        message = str(getattr(exc, "message", None) or exc)
        if status_code in (401, 403) or "AuthorizationFailed" in message:
            mapped = AzureAuthenticationError(message, error_code=error_code, status_code=status_code)
        elif status_code in _RETRYABLE_STATUS_CODES:
            mapped = AzureServiceError(message, error_code=error_code, status_code=status_code)
        else:
            mapped = AzureSDKError(message, error_code=error_code, status_code=status_code)
            mapped.recoverable = False
    elif isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        mapped = AzureTimeoutError(str(exc) or "Operation timed out")
    elif isinstance(exc, MemoryError):
        mapped = ResourceExhaustedError(str(exc) or "Out of memory")
    elif isinstance(exc, ConnectionError):
        mapped = ConnectivityError(str(exc))
    else:
        mapped = VMConnectDiagnosticsError(str(exc))

    mapped.__cause__ = exc
    return mapped
