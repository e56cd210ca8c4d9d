"""
Graceful shutdown coordination.

Components register a shutdown handler in a phase; phases run in order so
that ingestion buffers are flushed and export jobs drained before the
storage and cache connections they write through are closed.
"""

import asyncio
import signal
import sys
from typing import Optional, List, Dict, Callable, Any
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .logging import get_logger
from .notifications import EventBus, EventCategory, EventPriority


logger = get_logger("usage-analytics.shutdown")


class ShutdownPhase(Enum):
    """Shutdown phases for ordered component shutdown."""
    STOP_ACCEPTING = 1
    STOP_WORKERS = 2
    FLUSH_BUFFERS = 3
    CLOSE_CONNECTIONS = 4
    FINAL_CLEANUP = 5


@dataclass
class ShutdownComponent:
    """Component registration for shutdown."""
    name: str
    phase: ShutdownPhase
    handler: Callable[[], Any]
    timeout: float = 30.0


class ShutdownManager:
    """Runs registered shutdown handlers phase by phase."""

    def __init__(self, timeout: float = 60.0, event_bus: Optional[EventBus] = None):
        """
        Args:
            timeout: Maximum time to wait for the whole shutdown
            event_bus: Bus receiving shutdown notifications
        """
        self.timeout = timeout
        self.event_bus = event_bus
        self._components: Dict[str, ShutdownComponent] = {}
        self._is_shutting_down = False
        self._shutdown_complete = False
        self._shutdown_event = asyncio.Event()
        self._lock = asyncio.Lock()
        self.errors: List[str] = []

    def register_component(
        self,
        name: str,
        handler: Callable[[], Any],
        phase: ShutdownPhase = ShutdownPhase.FINAL_CLEANUP,
        timeout: Optional[float] = None
    ) -> None:
        """Register a component for shutdown."""
        self._components[name] = ShutdownComponent(
            name=name,
            phase=phase,
            handler=handler,
            timeout=timeout or 30.0,
        )
        logger.debug("component_registered", component=name, phase=phase.name)

    def unregister_component(self, name: str) -> bool:
        """Unregister a component."""
        return self._components.pop(name, None) is not None

    def setup_signal_handlers(self) -> None:
        """Install SIGTERM/SIGINT handlers that trigger shutdown."""
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler, sig)
        logger.info("signal_handlers_installed")

    def _signal_handler(self, signum: int) -> None:
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        asyncio.ensure_future(self.shutdown(reason=signal.Signals(signum).name))

    async def shutdown(self, reason: str = "manual") -> None:
        """Run every phase once; concurrent callers wait for the first run."""
        async with self._lock:
            if self._is_shutting_down:
                already_running = True
            else:
                self._is_shutting_down = True
                already_running = False

        if already_running:
            await self._shutdown_event.wait()
            return

        logger.info("shutdown_initiated", reason=reason, timeout=self.timeout)
        await self._emit("shutdown_initiated", {"reason": reason}, EventPriority.CRITICAL)

        try:
            await asyncio.wait_for(self._execute_shutdown(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("shutdown_timeout", timeout=self.timeout)
            self.errors.append("shutdown timed out")
        finally:
            self._shutdown_complete = True
            self._shutdown_event.set()

    async def _execute_shutdown(self) -> None:
        start_time = datetime.utcnow()

        phases: Dict[ShutdownPhase, List[ShutdownComponent]] = {}
        for component in self._components.values():
            phases.setdefault(component.phase, []).append(component)

        for phase in ShutdownPhase:
            if phase not in phases:
                continue
            logger.info("executing_shutdown_phase", phase=phase.name)
            for component in phases[phase]:
                await self._run_component(component)
            await self._emit("shutdown_phase_complete", {"phase": phase.name}, EventPriority.HIGH)

        duration = (datetime.utcnow() - start_time).total_seconds()
        logger.info(
            "shutdown_complete",
            duration_seconds=duration,
            components_shutdown=len(self._components),
        )

    async def _run_component(self, component: ShutdownComponent) -> None:
        try:
            result = component.handler()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=component.timeout)
            logger.debug("component_shutdown_complete", component=component.name)
        except asyncio.TimeoutError:
            logger.error(
                "component_shutdown_timeout",
                component=component.name,
                timeout=component.timeout,
            )
            self.errors.append(f"{component.name}: timeout")
        except Exception as e:
            logger.error(
                "component_shutdown_error",
                component=component.name,
                error=str(e),
            )
            self.errors.append(f"{component.name}: {e}")

    async def _emit(self, name: str, data: Dict[str, Any], priority: EventPriority) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(name, EventCategory.SYSTEM, data, priority=priority)

    def is_shutting_down(self) -> bool:
        """Check if shutdown is in progress."""
        return self._is_shutting_down

    def is_shutdown_complete(self) -> bool:
        """Check if shutdown is complete."""
        return self._shutdown_complete

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown to complete."""
        await self._shutdown_event.wait()


__all__ = [
    'ShutdownManager',
    'ShutdownPhase',
    'ShutdownComponent',
]
