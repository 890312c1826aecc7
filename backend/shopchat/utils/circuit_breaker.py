# /shopchat/utils/circuit_breaker.py

import asyncio
import time
import logging
from enum import Enum
from typing import Any, Callable, Optional

from shopchat.utils.metrics import circuit_breaker_state

# One breaker per upstream (Anthropic, WhatsApp, each tool endpoint). A call
# through an open breaker fails fast instead of waiting on a dead upstream.

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    """Raised when a call is blocked because the circuit is open."""


class CircuitState(Enum):
    CLOSED = 0
    HALF_OPEN = 1
    OPEN = 2


class CircuitBreaker:
    def __init__(self, name: str, failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 2):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED
        self._lock = asyncio.Lock()

    def _transition(self, state: CircuitState):
        if state == self.state:
            return
        logger.info(f"Circuit breaker '{self.name}': {self.state.name} -> {state.name}")
        self.state = state
        circuit_breaker_state.labels(upstream=self.name).set(state.value)

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self.last_failure_time and (time.time() - self.last_failure_time > self.timeout):
                    self.success_count = 0
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    logger.warning(f"Circuit breaker '{self.name}' is OPEN, call blocked.")
                    raise CircuitOpenError(f"Circuit breaker is OPEN for {self.name}")
        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._on_failure()
            raise
        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.failure_count = 0
                    self._transition(CircuitState.CLOSED)
            else:
                self.failure_count = 0

    async def _on_failure(self):
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            # A failed probe while half open reopens immediately.
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logger.error(f"Circuit breaker '{self.name}' opened after {self.failure_count} failures.")
                self._transition(CircuitState.OPEN)
