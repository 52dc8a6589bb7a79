"""
Shutdown Coordinator - Single point of control for graceful shutdown.

Signals, the HTTP shutdown endpoint and the application's own exit path
all funnel into ``initiate_shutdown``. Only the first call runs the
registered steps; later calls are no-ops.

Each step is awaited with its own timeout. A step that raises or times out
is logged as a ``ShutdownStepError`` and the sequence moves on, so one
stuck resource cannot keep the others alive.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from .errors import ShutdownStepError
from .logging_utils import get_module_logger


logger = get_module_logger("ShutdownCoordinator")


class ShutdownState(Enum):
    RUNNING = "running"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


@dataclass
class ShutdownStep:
    name: str
    callback: Callable[[], Awaitable[None]]
    timeout: Optional[float] = None


class ShutdownCoordinator:

    def __init__(self, default_timeout: Optional[float] = 5.0) -> None:
        self.default_timeout = default_timeout
        self._state = ShutdownState.RUNNING
        self._steps: List[ShutdownStep] = []
        self._done = asyncio.Event()
        self.failures: List[ShutdownStepError] = []

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def is_shutting_down(self) -> bool:
        return self._state is ShutdownState.IN_PROGRESS

    @property
    def is_complete(self) -> bool:
        return self._state is ShutdownState.COMPLETE

    def register_step(
        self,
        name: str,
        callback: Callable[[], Awaitable[None]],
        timeout: Optional[float] = None,
    ) -> None:
        """Append a step; steps run in registration order."""
        self._steps.append(ShutdownStep(name, callback, timeout if timeout is not None else self.default_timeout))
        logger.debug("Registered shutdown step: %s", name)

    async def initiate_shutdown(self, source: str = "unknown") -> bool:
        """Run every step once. Returns False if shutdown had already started."""
        # No await between the check and the state change.
        if self._state is not ShutdownState.RUNNING:
            logger.debug(
                "Shutdown already %s, ignoring request from %s",
                self._state.value,
                source,
            )
            return False
        self._state = ShutdownState.IN_PROGRESS

        logger.info("=" * 60)
        logger.info("SHUTDOWN INITIATED by: %s", source)
        logger.info("=" * 60)
        started = time.perf_counter()

        try:
            for index, step in enumerate(self._steps, 1):
                await self._run_step(index, step)
        finally:
            self._state = ShutdownState.COMPLETE
            self._done.set()

        logger.info(
            "Shutdown completed in %.3fs (%d step(s) failed)",
            time.perf_counter() - started,
            len(self.failures),
        )
        return True

    async def _run_step(self, index: int, step: ShutdownStep) -> None:
        step_start = time.perf_counter()
        logger.info("Step %d/%d: %s", index, len(self._steps), step.name)
        try:
            if step.timeout is None:
                await step.callback()
            else:
                await asyncio.wait_for(step.callback(), timeout=step.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failure = ShutdownStepError(step.name, e)
            self.failures.append(failure)
            logger.error("%s", failure)
            return
        logger.info("Completed %s in %.3fs", step.name, time.perf_counter() - step_start)

    async def wait_for_shutdown(self) -> None:
        await self._done.wait()


__all__ = ["ShutdownCoordinator", "ShutdownState", "ShutdownStep"]
