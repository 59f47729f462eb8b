"""
Per-upstream circuit breakers for the athenahealth API and its identity provider.

A breaker counts consecutive upstream failures. Once ``failure_threshold`` is
reached it opens and every call fails fast with CircuitOpenError, which is a
RemoteTransient: the dispatcher treats it like any other outage and backs the
message off. After ``recovery_timeout`` one trial call is let through (half-open);
``success_threshold`` good trial calls close it again, a bad one reopens it.

Only failures that say something about upstream health count. A 404 for a
bad appointment id or a rejected payload leaves the breaker alone.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from intake_workflow.exceptions import RemoteTransient, WorkflowError


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    name: str = "default"
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2


# Identity provider outages block every stage, so retry it sooner
UPSTREAM_DEFAULTS: Dict[str, CircuitBreakerConfig] = {
    "athena_api": CircuitBreakerConfig(failure_threshold=5, recovery_timeout=30.0, success_threshold=2),
    "athena_oauth": CircuitBreakerConfig(failure_threshold=3, recovery_timeout=15.0, success_threshold=1),
}


class CircuitOpenError(RemoteTransient):
    """The named upstream is considered down; the call was not attempted."""

    def __init__(self, circuit: str, retry_in: float):
        super().__init__(
            f"Circuit '{circuit}' is open; retry in {retry_in:.1f}s",
            details={"circuit": circuit, "retry_in": round(retry_in, 1)},
        )
        self.circuit = circuit


def trips_breaker(error: BaseException) -> bool:
    if isinstance(error, WorkflowError):
        return error.retryable
    return True


@dataclass
class CircuitBreaker:
    config: CircuitBreakerConfig
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    rejected_count: int = 0
    opened_at: Optional[float] = None
    last_error: Optional[str] = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.config.name

    def retry_in(self) -> float:
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.config.recovery_timeout - (time.monotonic() - self.opened_at))

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self._settle(e)
            raise
        await self._settle(None)
        return result

    async def _admit(self):
        async with self._lock:
            if self.state != CircuitState.OPEN:
                return
            wait = self.retry_in()
            if wait > 0:
                self.rejected_count += 1
                raise CircuitOpenError(self.name, wait)
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            logger.info(f"Circuit '{self.name}' half-open, probing upstream")

    async def _settle(self, error: Optional[BaseException]):
        async with self._lock:
            if error is not None and trips_breaker(error):
                self._record_failure(error)
            else:
                self._record_success()

    def _record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._close()
                logger.info(f"Circuit '{self.name}' closed, upstream recovered")
        else:
            self.failure_count = 0

    def _record_failure(self, error: BaseException):
        self.failure_count += 1
        self.last_error = str(error)[:200]

        if self.state == CircuitState.HALF_OPEN:
            self._open()
            logger.warning(f"Circuit '{self.name}' trial call failed, reopening: {self.last_error}")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
            self._open()
            logger.warning(f"Circuit '{self.name}' opened after {self.failure_count} consecutive failures")

    def _open(self):
        self.state = CircuitState.OPEN
        self.opened_at = time.monotonic()

    def _close(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = None

    def reset(self):
        self._close()
        self.rejected_count = 0
        logger.info(f"Circuit '{self.name}' reset by operator")

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "rejected_count": self.rejected_count,
            "retry_in": round(self.retry_in(), 1),
            "last_error": self.last_error,
        }


class CircuitBreakerRegistry:
    """Breakers keyed by upstream name; one registry per workflow container."""

    def __init__(self, overrides: Optional[Dict[str, CircuitBreakerConfig]] = None):
        self._configs = dict(UPSTREAM_DEFAULTS)
        self._configs.update(overrides or {})
        self._circuits: Dict[str, CircuitBreaker] = {}

    def get(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        circuit = self._circuits.get(name)
        if circuit is None:
            base = config or self._configs.get(name) or CircuitBreakerConfig()
            circuit = CircuitBreaker(config=CircuitBreakerConfig(
                name=name,
                failure_threshold=base.failure_threshold,
                recovery_timeout=base.recovery_timeout,
                success_threshold=base.success_threshold,
            ))
            self._circuits[name] = circuit
        return circuit

    def statuses(self) -> Dict[str, Dict[str, Any]]:
        return {name: circuit.get_status() for name, circuit in self._circuits.items()}

    def any_open(self) -> bool:
        return any(c.state == CircuitState.OPEN for c in self._circuits.values())

    def reset(self, name: str) -> bool:
        circuit = self._circuits.get(name)
        if circuit is None:
            return False
        circuit.reset()
        return True
