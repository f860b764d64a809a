"""Per-integration guards composing the rate limiter and the circuit breaker."""

from __future__ import annotations

import asyncio
import contextvars
import functools
import inspect
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from ..config import GuardSettings, ResilienceConfig
from ..errors import ModuleTimeoutError
from .breaker import CircuitBreaker
from .limiter import ReservoirLimiter

if TYPE_CHECKING:
    from ..registry import ModuleDescriptor

logger = logging.getLogger(__name__)


def _start(handler: Callable[..., Any], payload: Any) -> asyncio.Future:
    """Start ``handler(payload)``: coroutines as a task, plain callables in a worker thread."""
    if inspect.iscoroutinefunction(handler):
        return asyncio.ensure_future(handler(payload))
    loop = asyncio.get_running_loop()
    call = functools.partial(contextvars.copy_context().run, handler, payload)
    return loop.run_in_executor(None, call)


class IntegrationGuard:
    """Rate limiter + circuit breaker + timeout for one integration key."""

    def __init__(self, key: str, settings: GuardSettings) -> None:
        self.key = key
        self.settings = settings
        self.limiter = ReservoirLimiter(
            capacity=settings.capacity,
            refill_amount=settings.refill_amount,
            refill_interval=settings.refill_interval,
            max_concurrent=settings.max_concurrent,
            name=key,
        )
        self.breaker = CircuitBreaker(
            failure_threshold=settings.failure_threshold,
            cooldown=settings.cooldown,
            name=key,
        )

    async def invoke(self, handler: Callable[..., Any], payload: Any, timeout: Optional[float] = None) -> Any:
        """Call ``handler(payload)`` under the guard.

        A sync handler that times out keeps its concurrency slot until its
        worker thread returns, since the thread cannot be interrupted.

        Raises:
            CircuitOpenError: the breaker refused the call; ``handler`` was not invoked.
            ModuleTimeoutError: the call exceeded its timeout.
            Exception: whatever ``handler`` raised.
        """
        self.breaker.check()
        limit = timeout or self.settings.timeout
        await self.limiter.acquire()
        try:
            self.breaker.before_call()
        except BaseException:
            self.limiter.release()
            raise

        call = _start(handler, payload)
        try:
            result = await asyncio.wait_for(asyncio.shield(call), timeout=limit)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.TimeoutError:
            self.breaker.record_failure()
            raise ModuleTimeoutError(self.key, limit) from None
        except asyncio.CancelledError:
            self.breaker.abandon_trial()
            raise
        except Exception:
            self.breaker.record_failure()
            raise
        finally:
            self._release_when_done(call)
        self.breaker.record_success()
        return result

    def _release_when_done(self, call: asyncio.Future) -> None:
        if call.done():
            self.limiter.release()
        elif isinstance(call, asyncio.Task):
            call.cancel()
            self.limiter.release()
        else:
            logger.warning(f"Worker thread for integration={self.key} still running after timeout; holding its slot")

            def _finished(fut: asyncio.Future) -> None:
                if not fut.cancelled() and fut.exception() is not None:
                    logger.debug(f"Abandoned call for integration={self.key} failed: {fut.exception()}")
                self.limiter.release()

            call.add_done_callback(_finished)

    def get_status(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "breaker": self.breaker.get_status(),
            "limiter": self.limiter.get_status(),
        }


class ResilienceService:
    """Owns one :class:`IntegrationGuard` per integration key.

    Built once at process start and handed to the scheduler. Guards are created
    on first use and live as long as the service. Keys are shared by every
    tenant unless ``tenant_scoped`` is enabled in the config.
    """

    def __init__(self, config: Optional[ResilienceConfig] = None) -> None:
        self.config = config or ResilienceConfig()
        self._guards: Dict[str, IntegrationGuard] = {}

    def key_for(self, integration: str, tenant_id: Optional[str] = None) -> str:
        if self.config.tenant_scoped and tenant_id:
            return f"{tenant_id}:{integration}"
        return integration

    def guard(self, integration: str, tenant_id: Optional[str] = None) -> IntegrationGuard:
        key = self.key_for(integration, tenant_id)
        guard = self._guards.get(key)
        if guard is None:
            guard = IntegrationGuard(key, self.config.settings_for(integration))
            self._guards[key] = guard
            logger.debug(f"Created guard for integration={key}")
        return guard

    async def invoke(
        self, descriptor: "ModuleDescriptor", payload: Any, tenant_id: Optional[str] = None
    ) -> Any:
        guard = self.guard(descriptor.resilience_key, tenant_id)
        return await guard.invoke(descriptor.handler, payload, timeout=descriptor.timeout)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {key: guard.get_status() for key, guard in sorted(self._guards.items())}
