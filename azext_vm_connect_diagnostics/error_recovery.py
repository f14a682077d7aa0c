# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

"""
Error recovery for business-level operations

Selects a recovery strategy from the error category and runs one of three
bounded loops (retry with backoff, fallback, degrade). Azure SDK calls keep
their own transport retries; this layer wraps whole checks and fix executors.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .exceptions import ErrorCategory, RecoveryTimeoutError, classify_exception

FALLBACK_INITIAL_DELAY = 0.1
FALLBACK_OTHER_INITIAL_DELAY = 0.5
DEGRADE_RESOURCE_INITIAL_DELAY = 1.0
DEGRADE_UI_INITIAL_DELAY = 0.1
SECONDARY_ATTEMPTS = 2
SECONDARY_ATTEMPT_DELAY = 0.2

_RETRY_CATEGORIES = (ErrorCategory.CONNECTIVITY, ErrorCategory.EXTERNAL_SERVICE, ErrorCategory.SESSION)
_DEGRADE_CATEGORIES = (ErrorCategory.RESOURCE, ErrorCategory.UI)


async def invoke(func: Callable, *args, **kwargs) -> Any:
    """
    Call a sync or async callable from async code.

    Coroutine functions are awaited directly; plain callables run in a worker
    thread so blocking SDK calls do not stall the event loop.
    """
    if inspect.iscoroutinefunction(func):
        return await func(*args, **kwargs)
    result = await asyncio.to_thread(func, *args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result


@dataclass(frozen=True)
class RecoveryConfig:
    """Bounds for retry with exponential backoff (seconds)"""

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    timeout: float = 300.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.timeout < 0:
            raise ValueError("delays and timeout must be non-negative")

    def next_delay(self, delay: float) -> float:
        return min(delay * self.backoff_multiplier, self.max_delay)


class RecoveryStrategyKind(Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    DEGRADE = "degrade"
    FAIL = "fail"


@dataclass(frozen=True)
class RecoveryStrategy:
    """Selected strategy; only RETRY carries a config"""

    kind: RecoveryStrategyKind
    config: Optional[RecoveryConfig] = None

    @classmethod
    def retry(cls, config: RecoveryConfig) -> "RecoveryStrategy":
        return cls(RecoveryStrategyKind.RETRY, config)

    @classmethod
    def fallback(cls) -> "RecoveryStrategy":
        return cls(RecoveryStrategyKind.FALLBACK)

    @classmethod
    def degrade(cls) -> "RecoveryStrategy":
        return cls(RecoveryStrategyKind.DEGRADE)

    @classmethod
    def fail(cls) -> "RecoveryStrategy":
        return cls(RecoveryStrategyKind.FAIL)


@dataclass
class ErrorContext:
    """Where an error happened, for logs and reports"""

    operation: str
    component: str
    session_id: Optional[str] = None
    instance_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    additional_info: Dict[str, str] = field(default_factory=dict)

    def with_instance_id(self, instance_id: str) -> "ErrorContext":
        self.instance_id = instance_id
        return self

    def with_session_id(self, session_id: str) -> "ErrorContext":
        self.session_id = session_id
        return self

    def with_info(self, key: str, value: Any) -> "ErrorContext":
        self.additional_info[key] = str(value)
        return self


class ContextualError(Exception):
    """A taxonomy error paired with its ErrorContext"""

    def __init__(self, error: BaseException, context: ErrorContext):
        self.error = classify_exception(error)
        self.context = context
        super().__init__(str(self.error))

    def detailed_info(self) -> str:
        return (
            f"Error in {self.context.component}.{self.context.operation}: {self.error} "
            f"| Session: {self.context.session_id or 'N/A'} "
            f"| Instance: {self.context.instance_id or 'N/A'} "
            f"| Time: {self.context.timestamp.isoformat()} "
            f"| Additional: {self.context.additional_info}"
        )

    def user_message(self) -> str:
        return self.error.user_message()

    @property
    def category(self) -> ErrorCategory:
        return self.error.category


class ErrorRecoveryManager:
    """
    Stateless strategy selector plus bounded recovery loops.

    Holds only immutable configuration, so one instance can be shared across
    concurrent callers. ``sleep`` and ``clock`` are injectable for tests.
    """

    def __init__(
        self,
        config: Optional[RecoveryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or RecoveryConfig()
        self._sleep = sleep
        self._clock = clock
        self.logger = logger or logging.getLogger("vm_connect_diagnostics.error_recovery")

    def get_strategy(self, error: BaseException) -> RecoveryStrategy:
        """Pick a strategy from the error category and recoverability"""
        classified = classify_exception(error)
        category = classified.category

        if category in _RETRY_CATEGORIES and classified.is_recoverable():
            return RecoveryStrategy.retry(self.config)
        if category == ErrorCategory.CONFIGURATION:
            return RecoveryStrategy.fallback()
        if category in _DEGRADE_CATEGORIES:
            return RecoveryStrategy.degrade()
        return RecoveryStrategy.fail()

    async def recover(self, operation: Callable[[], Any], error: BaseException) -> Any:
        """
        Run the recovery strategy selected for ``error`` against ``operation``.

        Args:
            operation: Zero-argument callable, sync or async
            error: The failure that triggered recovery

        Returns:
            The operation's result once an attempt succeeds

        Raises:
            RecoveryTimeoutError: retry budget exceeded before an attempt could start
            Exception: the last observed error (retry) or ``error`` itself (fallback, degrade, fail)
        """
        strategy = self.get_strategy(error)
        self.logger.debug("Recovery strategy %s for %s: %s",
                          strategy.kind.value, type(error).__name__, error)

        if strategy.kind == RecoveryStrategyKind.RETRY:
            return await self._retry_with_backoff(operation, strategy.config)
        if strategy.kind == RecoveryStrategyKind.FALLBACK:
            return await self._attempt_fallback(operation, error)
        if strategy.kind == RecoveryStrategyKind.DEGRADE:
            return await self._attempt_degradation(operation, error)

        self.logger.info("Error is not recoverable: %s", error)
        raise error

    async def run(self, operation: Callable[..., Any], *args, **kwargs) -> Any:
        """Call ``operation`` once and route a failure through ``recover``"""

        def call():
            return operation(*args, **kwargs)

        try:
            return await invoke(operation, *args, **kwargs)
        except Exception as e:  # pylint: disable=broad-except
            return await self.recover(call, e)

    async def _retry_with_backoff(self, operation: Callable[[], Any], config: RecoveryConfig) -> Any:
        start = self._clock()
        delay = config.base_delay

        for attempt in range(1, config.max_attempts + 1):
            if self._clock() - start > config.timeout:
                self.logger.error("Recovery timeout exceeded after %s attempts", attempt - 1)
                raise RecoveryTimeoutError(attempt - 1, config.timeout)

            self.logger.debug("Recovery attempt %s of %s", attempt, config.max_attempts)
            try:
                result = await invoke(operation)
            except Exception as e:  # pylint: disable=broad-except
                if attempt == config.max_attempts:
                    self.logger.error("Recovery failed after %s attempts: %s", attempt, e)
                    raise
                self.logger.info("Recovery attempt %s failed: %s, retrying in %.2fs", attempt, e, delay)
                await self._sleep(delay)
                delay = config.next_delay(delay)
            else:
                self.logger.info("Recovery successful after %s attempts", attempt)
                return result

        raise AssertionError("unreachable")

    async def _attempt_fallback(self, operation: Callable[[], Any], error: BaseException) -> Any:
        category = classify_exception(error).category
        if category == ErrorCategory.CONFIGURATION:
            self.logger.info("Attempting fallback for configuration error: %s", error)
            initial_delay = FALLBACK_INITIAL_DELAY
        else:
            self.logger.info("Attempting generic fallback for: %s", error)
            initial_delay = FALLBACK_OTHER_INITIAL_DELAY
        return await self._secondary_attempts(operation, error, initial_delay, "Fallback")

    async def _attempt_degradation(self, operation: Callable[[], Any], error: BaseException) -> Any:
        category = classify_exception(error).category
        if category == ErrorCategory.RESOURCE:
            self.logger.info("Attempting graceful degradation for resource error: %s", error)
            initial_delay = DEGRADE_RESOURCE_INITIAL_DELAY
        elif category == ErrorCategory.UI:
            self.logger.info("Continuing without terminal enhancements after UI error: %s", error)
            initial_delay = DEGRADE_UI_INITIAL_DELAY
        else:
            self.logger.info("Attempting conservative retry for: %s", error)
            initial_delay = DEGRADE_RESOURCE_INITIAL_DELAY
        return await self._secondary_attempts(operation, error, initial_delay, "Degradation")

    async def _secondary_attempts(self, operation: Callable[[], Any], error: BaseException,
                                  initial_delay: float, label: str) -> Any:
        await self._sleep(initial_delay)
        for attempt in range(1, SECONDARY_ATTEMPTS + 1):
            try:
                result = await invoke(operation)
            except Exception as e:  # pylint: disable=broad-except
                self.logger.info("%s attempt %s failed: %s", label, attempt, e)
                if attempt < SECONDARY_ATTEMPTS:
                    await self._sleep(SECONDARY_ATTEMPT_DELAY)
            else:
                self.logger.info("%s successful (attempt %s)", label, attempt)
                return result
        raise error

