# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
Data models for VM connect diagnostics
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from functools import total_ordering
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple


def _freeze_details(details: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    """Read-only copy of a details mapping"""
    if details is None:
        return None
    return MappingProxyType(dict(details))


def _thaw_details(details: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    return None if details is None else dict(details)


@total_ordering
class _OrderedEnum(Enum):
    """Enum whose members compare by declaration order"""

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    def __lt__(self, other):
        if not isinstance(other, type(self)):
            return NotImplemented
        return self.rank < other.rank

    def __hash__(self):
        return hash(self.value)


class DiagnosticStatus(Enum):
    """Outcome of a single diagnostic check"""

    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    SKIPPED = "skipped"


class Severity(_OrderedEnum):
    """Finding severity levels, lowest first"""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FindingCode(Enum):
    """Standardized finding codes"""

    INSTANCE_RUNNING = "INSTANCE_RUNNING"
    INSTANCE_STOPPED = "INSTANCE_STOPPED"
    INSTANCE_TRANSITIONING = "INSTANCE_TRANSITIONING"
    INSTANCE_DELETED = "INSTANCE_DELETED"
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    AGENT_READY = "AGENT_READY"
    AGENT_NOT_READY = "AGENT_NOT_READY"
    AGENT_NOT_REPORTING = "AGENT_NOT_REPORTING"
    ACCESS_OK = "ACCESS_OK"
    CREDENTIALS_INVALID = "CREDENTIALS_INVALID"
    PERMISSION_INSUFFICIENT = "PERMISSION_INSUFFICIENT"
    ENDPOINT_OK = "ENDPOINT_OK"
    ENDPOINT_MISSING = "ENDPOINT_MISSING"
    FIREWALL_OK = "FIREWALL_OK"
    FIREWALL_BLOCKING = "FIREWALL_BLOCKING"
    ROUTE_OK = "ROUTE_OK"
    ROUTE_BLACKHOLE = "ROUTE_BLACKHOLE"
    ROUTE_VIRTUAL_APPLIANCE = "ROUTE_VIRTUAL_APPLIANCE"
    LOCAL_PORT_AVAILABLE = "LOCAL_PORT_AVAILABLE"
    LOCAL_PORT_IN_USE = "LOCAL_PORT_IN_USE"
    CHECK_FAILED = "CHECK_FAILED"
    UNCLASSIFIED = "UNCLASSIFIED"


@dataclass(frozen=True)
class DiagnosticResult:  # pylint: disable=too-many-instance-attributes
    """Result of a single diagnostic check"""

    item_name: str
    status: DiagnosticStatus
    severity: Severity
    message: str
    details: Optional[Mapping[str, Any]] = None
    duration: float = 0.0
    auto_fixable: bool = False
    code: FindingCode = FindingCode.UNCLASSIFIED

    def __post_init__(self):
        if self.severity is None:
            raise ValueError(f"{self.item_name}: a diagnostic result must carry a severity")
        if self.status == DiagnosticStatus.SUCCESS and self.severity > Severity.LOW:
            raise ValueError(
                f"{self.item_name}: successful result cannot carry severity {self.severity.value}"
            )
        object.__setattr__(self, "details", _freeze_details(self.details))

    @property
    def is_critical_error(self) -> bool:
        return self.status == DiagnosticStatus.ERROR and self.severity == Severity.CRITICAL

    @property
    def is_high_error(self) -> bool:
        return self.status == DiagnosticStatus.ERROR and self.severity == Severity.HIGH

    def detail(self, key: str, default: Any = None) -> Any:
        """Safely read a top-level key from details"""
        if not self.details:
            return default
        return self.details.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "item_name": self.item_name,
            "status": self.status.value,
            "severity": self.severity.value,
            "code": self.code.value,
            "message": self.message,
            "details": _thaw_details(self.details),
            "duration": round(self.duration, 3),
            "auto_fixable": self.auto_fixable,
        }

    @classmethod
    def success(cls, item_name: str, message: str, duration: float = 0.0,
                code: FindingCode = FindingCode.UNCLASSIFIED, **details):
        """Factory method for successful checks"""
        return cls(item_name, DiagnosticStatus.SUCCESS, Severity.INFO, message,
                   details or None, duration, False, code)

    @classmethod
    def warning(cls, item_name: str, message: str, severity: Severity = Severity.MEDIUM,
                duration: float = 0.0, code: FindingCode = FindingCode.UNCLASSIFIED,
                auto_fixable: bool = False, **details):
        """Factory method for warnings"""
        return cls(item_name, DiagnosticStatus.WARNING, severity, message,
                   details or None, duration, auto_fixable, code)

    @classmethod
    def error(cls, item_name: str, message: str, severity: Severity = Severity.HIGH,
              duration: float = 0.0, code: FindingCode = FindingCode.UNCLASSIFIED,
              auto_fixable: bool = False, **details):
        """Factory method for errors"""
        return cls(item_name, DiagnosticStatus.ERROR, severity, message,
                   details or None, duration, auto_fixable, code)

    @classmethod
    def skipped(cls, item_name: str, message: str, duration: float = 0.0, **details):
        """Factory method for checks that did not run"""
        return cls(item_name, DiagnosticStatus.SKIPPED, Severity.INFO, message,
                   details or None, duration, False, FindingCode.UNCLASSIFIED)


@dataclass(frozen=True)
class AgentInfo:
    """Guest agent state reported in the VM instance view"""

    instance_id: str
    status: str
    version: Optional[str] = None
    last_reported: Optional[str] = None
    os_type: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return (self.status or "").lower() == "ready"


@dataclass(frozen=True)
class PreventiveCheckConfig:
    """Input of a single preventive check run"""

    instance_id: str
    local_port: Optional[int] = None
    remote_port: Optional[int] = None
    region: Optional[str] = None
    profile: Optional[str] = None
    abort_on_critical: bool = True
    timeout: float = 30.0

    def with_ports(self, local_port: int, remote_port: int) -> "PreventiveCheckConfig":
        return replace(self, local_port=local_port, remote_port=remote_port)

    def with_azure_config(self, region: Optional[str], profile: Optional[str]) -> "PreventiveCheckConfig":
        return replace(self, region=region, profile=profile)

    def with_abort_on_critical(self, abort: bool) -> "PreventiveCheckConfig":
        return replace(self, abort_on_critical=abort)

    def with_timeout(self, timeout: float) -> "PreventiveCheckConfig":
        return replace(self, timeout=timeout)


class PreventiveCheckStatus(Enum):
    """Overall status of preventive checks"""

    READY = "ready"
    WARNING = "warning"
    CRITICAL = "critical"
    ABORTED = "aborted"


class ConnectionLikelihood(Enum):
    """Likelihood that a connection attempt succeeds"""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very_low"

    def as_percentage(self) -> int:
        return _LIKELIHOOD_PERCENTAGE[self]

    @property
    def description(self) -> str:
        return _LIKELIHOOD_DESCRIPTION[self]


_LIKELIHOOD_PERCENTAGE = {
    ConnectionLikelihood.HIGH: 90,
    ConnectionLikelihood.MEDIUM: 70,
    ConnectionLikelihood.LOW: 40,
    ConnectionLikelihood.VERY_LOW: 10,
}

_LIKELIHOOD_DESCRIPTION = {
    ConnectionLikelihood.HIGH: "Connection is likely to succeed",
    ConnectionLikelihood.MEDIUM: "Connection may succeed",
    ConnectionLikelihood.LOW: "Connection is unlikely to succeed",
    ConnectionLikelihood.VERY_LOW: "Connection is very unlikely to succeed",
}


@dataclass(frozen=True)
class PreventiveCheckResult:
    """Aggregated outcome of a preventive check run"""

    overall_status: PreventiveCheckStatus
    connection_likelihood: ConnectionLikelihood
    critical_issues: Tuple[DiagnosticResult, ...]
    warnings: Tuple[DiagnosticResult, ...]
    recommendations: Tuple[str, ...]
    should_abort_connection: bool
    total_duration: float
    timeout_budget: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "critical_issues", tuple(self.critical_issues))
        object.__setattr__(self, "warnings", tuple(self.warnings))
        object.__setattr__(self, "recommendations", tuple(self.recommendations))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "overall_status": self.overall_status.value,
            "connection_likelihood": self.connection_likelihood.value,
            "connection_likelihood_percentage": self.connection_likelihood.as_percentage(),
            "critical_issues": [r.to_dict() for r in self.critical_issues],
            "warnings": [r.to_dict() for r in self.warnings],
            "recommendations": list(self.recommendations),
            "should_abort_connection": self.should_abort_connection,
            "total_duration": round(self.total_duration, 3),
            "timeout_budget": self.timeout_budget,
        }


class FixActionType(Enum):
    """Remediation actions the engine knows about"""

    START_INSTANCE = "start_instance"
    RESTART_AGENT = "restart_agent"
    UPDATE_CREDENTIALS = "update_credentials"
    RESTORE_CONFIG = "restore_config"
    TERMINATE_PROCESS = "terminate_process"
    CREATE_NETWORK_ENDPOINT = "create_network_endpoint"
    UPDATE_FIREWALL_RULE = "update_firewall_rule"
    SUGGEST_MANUAL_FIX = "suggest_manual_fix"


class RiskLevel(_OrderedEnum):
    """Potential harm of a remediation action, safest first"""

    SAFE = "safe"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ActionPolicy:
    """Static policy attached to a FixActionType"""

    risk_level: RiskLevel
    requires_confirmation: bool
    estimated_duration: float


# Single source of truth for risk and confirmation per action type.
ACTION_POLICY: Dict[FixActionType, ActionPolicy] = {
    FixActionType.START_INSTANCE: ActionPolicy(RiskLevel.LOW, True, 300.0),
    FixActionType.RESTART_AGENT: ActionPolicy(RiskLevel.MEDIUM, True, 120.0),
    FixActionType.UPDATE_CREDENTIALS: ActionPolicy(RiskLevel.SAFE, False, 5.0),
    FixActionType.RESTORE_CONFIG: ActionPolicy(RiskLevel.MEDIUM, True, 10.0),
    FixActionType.TERMINATE_PROCESS: ActionPolicy(RiskLevel.HIGH, True, 5.0),
    FixActionType.CREATE_NETWORK_ENDPOINT: ActionPolicy(RiskLevel.HIGH, True, 300.0),
    FixActionType.UPDATE_FIREWALL_RULE: ActionPolicy(RiskLevel.HIGH, True, 30.0),
    FixActionType.SUGGEST_MANUAL_FIX: ActionPolicy(RiskLevel.SAFE, False, 0.0),
}

AUTO_EXECUTABLE_RISK_LEVELS = (RiskLevel.SAFE, RiskLevel.LOW)

# Executors for these types only hand back instructions; nothing is changed
INSTRUCTION_ONLY_ACTION_TYPES = frozenset({
    FixActionType.RESTORE_CONFIG,
    FixActionType.CREATE_NETWORK_ENDPOINT,
    FixActionType.UPDATE_FIREWALL_RULE,
    FixActionType.SUGGEST_MANUAL_FIX,
})


def is_safe_to_auto_execute(action: "FixAction") -> bool:
    """The only gate between automatic execution and operator approval"""
    return action.risk_level in AUTO_EXECUTABLE_RISK_LEVELS and not action.requires_confirmation


@dataclass(frozen=True)
class FixAction:  # pylint: disable=too-many-instance-attributes
    """A remediation action proposed for a diagnostic finding"""

    action_type: FixActionType
    description: str
    target_resource: str
    risk_level: RiskLevel
    requires_confirmation: bool
    estimated_duration: float
    command: Optional[str] = None
    prerequisites: Tuple[str, ...] = ()

    def __post_init__(self):
        policy = ACTION_POLICY[self.action_type]
        if (self.risk_level != policy.risk_level
                or self.requires_confirmation != policy.requires_confirmation):
            raise ValueError(
                f"{self.action_type.value} must have risk {policy.risk_level.value} "
                f"and requires_confirmation={policy.requires_confirmation}"
            )
        object.__setattr__(self, "prerequisites", tuple(self.prerequisites))

    @classmethod
    def create(cls, action_type: FixActionType, description: str, target_resource: str,
               command: Optional[str] = None, prerequisites: Optional[Sequence[str]] = None) -> "FixAction":
        """Build an action with risk and confirmation taken from ACTION_POLICY"""
        policy = ACTION_POLICY[action_type]
        return cls(
            action_type=action_type,
            description=description,
            target_resource=target_resource,
            risk_level=policy.risk_level,
            requires_confirmation=policy.requires_confirmation,
            estimated_duration=policy.estimated_duration,
            command=command,
            prerequisites=tuple(prerequisites or ()),
        )

    def is_safe_to_auto_execute(self) -> bool:
        return is_safe_to_auto_execute(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "action_type": self.action_type.value,
            "description": self.description,
            "target_resource": self.target_resource,
            "risk_level": self.risk_level.value,
            "requires_confirmation": self.requires_confirmation,
            "estimated_duration": self.estimated_duration,
            "command": self.command,
            "prerequisites": list(self.prerequisites),
        }


class FixActionState(Enum):
    """Lifecycle of a single FixAction"""

    PROPOSED = "proposed"
    AUTO_APPROVED = "auto_approved"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    VERIFIED = "verified"
    UNVERIFIED = "unverified"


FIX_STATE_TRANSITIONS = {
    FixActionState.PROPOSED: {FixActionState.AUTO_APPROVED, FixActionState.AWAITING_CONFIRMATION},
    FixActionState.AUTO_APPROVED: {FixActionState.EXECUTING},
    FixActionState.AWAITING_CONFIRMATION: {FixActionState.EXECUTING},
    FixActionState.EXECUTING: {FixActionState.SUCCEEDED, FixActionState.FAILED},
    FixActionState.SUCCEEDED: {FixActionState.VERIFIED, FixActionState.UNVERIFIED},
    FixActionState.FAILED: set(),
    FixActionState.VERIFIED: set(),
    FixActionState.UNVERIFIED: set(),
}


def can_transition(current: FixActionState, target: FixActionState) -> bool:
    return target in FIX_STATE_TRANSITIONS[current]


@dataclass(frozen=True)
class FixResult:  # pylint: disable=too-many-instance-attributes
    """Outcome of executing (or skipping) one FixAction"""

    action: FixAction
    success: bool
    message: str
    details: Optional[Mapping[str, Any]] = None
    duration: float = 0.0
    retry_count: int = 0
    state: FixActionState = FixActionState.SUCCEEDED
    dry_run: bool = False

    def __post_init__(self):
        object.__setattr__(self, "details", _freeze_details(self.details))

    @property
    def skipped(self) -> bool:
        return self.state == FixActionState.AWAITING_CONFIRMATION

    @property
    def executed(self) -> bool:
        return self.state in (FixActionState.SUCCEEDED, FixActionState.FAILED)

    @property
    def applied(self) -> bool:
        """Executed by a side-effecting executor, not just handed back as instructions"""
        return self.executed and self.action.action_type not in INSTRUCTION_ONLY_ACTION_TYPES

    @classmethod
    def succeeded(cls, action: FixAction, message: str, duration: float = 0.0, **kwargs) -> "FixResult":
        return cls(action, True, message, duration=duration, state=FixActionState.SUCCEEDED, **kwargs)

    @classmethod
    def failed(cls, action: FixAction, message: str, duration: float = 0.0, **kwargs) -> "FixResult":
        return cls(action, False, message, duration=duration, state=FixActionState.FAILED, **kwargs)

    @classmethod
    def awaiting_confirmation(cls, action: FixAction) -> "FixResult":
        return cls(action, True, "skipped - requires confirmation",
                   state=FixActionState.AWAITING_CONFIRMATION)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "action": self.action.to_dict(),
            "success": self.success,
            "message": self.message,
            "details": _thaw_details(self.details),
            "duration": round(self.duration, 3),
            "retry_count": self.retry_count,
            "state": self.state.value,
            "dry_run": self.dry_run,
        }


@dataclass(frozen=True)
class FixVerificationResult:  # pylint: disable=too-many-instance-attributes
    """Post-remediation re-check of one applied fix"""

    fix_type: str
    target_id: str
    verified: bool
    verification_details: Tuple[str, ...] = ()
    connectivity_restored: bool = False
    remaining_issues: Tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.connectivity_restored and not self.verified:
            raise ValueError("connectivity cannot be restored by an unverified fix")
        object.__setattr__(self, "verification_details", tuple(self.verification_details))
        object.__setattr__(self, "remaining_issues", tuple(self.remaining_issues))

    @property
    def state(self) -> FixActionState:
        return FixActionState.VERIFIED if self.verified else FixActionState.UNVERIFIED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "fix_type": self.fix_type,
            "target_id": self.target_id,
            "verified": self.verified,
            "verification_details": list(self.verification_details),
            "connectivity_restored": self.connectivity_restored,
            "remaining_issues": list(self.remaining_issues),
            "timestamp": self.timestamp.isoformat(),
        }


class ConnectivityStatus(Enum):
    """End-to-end session reachability after remediation"""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FixEffectivenessReport:  # pylint: disable=too-many-instance-attributes
    """Aggregate of applied fixes and their verification"""

    target_id: str
    total_fixes_applied: int
    successful_fixes: int
    failed_fixes: int
    verifications: Tuple[FixVerificationResult, ...]
    overall_connectivity_status: ConnectivityStatus
    recommendations: Tuple[str, ...]
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        object.__setattr__(self, "verifications", tuple(self.verifications))
        object.__setattr__(self, "recommendations", tuple(self.recommendations))

    @property
    def success_rate(self) -> float:
        if not self.total_fixes_applied:
            return 0.0
        return self.successful_fixes / self.total_fixes_applied

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "target_id": self.target_id,
            "total_fixes_applied": self.total_fixes_applied,
            "successful_fixes": self.successful_fixes,
            "failed_fixes": self.failed_fixes,
            "success_rate": round(self.success_rate, 2),
            "verifications": [v.to_dict() for v in self.verifications],
            "overall_connectivity_status": self.overall_connectivity_status.value,
            "recommendations": list(self.recommendations),
            "generated_at": self.generated_at.isoformat(),
        }
