from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from apigate.logging import get_logger
from apigate.service.reporting import ErrorReporter, LogErrorReporter

logger = get_logger(__name__)


class LifecycleState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    DRAINING = "draining"
    STOPPED = "stopped"
    CRASHED = "crashed"


_TRANSITIONS: Dict[LifecycleState, Tuple[LifecycleState, ...]] = {
    LifecycleState.STARTING: (LifecycleState.READY, LifecycleState.DRAINING, LifecycleState.CRASHED),
    LifecycleState.READY: (LifecycleState.DRAINING, LifecycleState.CRASHED),
    LifecycleState.DRAINING: (LifecycleState.STOPPED, LifecycleState.CRASHED),
    LifecycleState.STOPPED: (),
    LifecycleState.CRASHED: (),
}

Step = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class ShutdownStep:
    name: str
    action: Step
    timeout: Optional[float] = None


class LifecycleController:
    """Process state machine: starting, ready, draining, stopped (or crashed).

    Shutdown is idempotent: the first request starts a single drain task and
    arms a watchdog; later requests return that same task. The drain stops
    new work, waits for in-flight requests, then runs the registered shutdown
    steps in order, each bounded by its own timeout. If the whole drain
    outlives ``drain_timeout`` the watchdog forces exit code 1.
    """

    def __init__(
        self,
        *,
        drain_timeout: float = 10.0,
        step_timeout: float = 2.0,
        reporter: Optional[ErrorReporter] = None,
        force_exit: Callable[[int], Any] = os._exit,
        exit_handler: Optional[Callable[[int], Any]] = None,
    ) -> None:
        self.drain_timeout = drain_timeout
        self.step_timeout = step_timeout
        self.reporter = reporter or LogErrorReporter()
        self._force_exit = force_exit
        self._exit_handler = exit_handler
        self.state = LifecycleState.STARTING
        self.exit_code: Optional[int] = None
        self._startup_steps: List[Tuple[str, Step]] = []
        self._shutdown_steps: List[ShutdownStep] = []
        self._stop_listener: Optional[Callable[[], Any]] = None
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._drain_task: Optional[asyncio.Task] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._step_failed = False

    # -- state ---------------------------------------------------------------

    @property
    def accepting(self) -> bool:
        return self.state in (LifecycleState.STARTING, LifecycleState.READY)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _transition(self, target: LifecycleState) -> bool:
        if target not in _TRANSITIONS[self.state]:
            logger.warning(
                "lifecycle_transition_ignored", from_state=self.state.value, to_state=target.value
            )
            return False
        logger.info("lifecycle_transition", from_state=self.state.value, to_state=target.value)
        self.state = target
        return True

    # -- registration ----------------------------------------------------------

    def add_startup_step(self, name: str, action: Step) -> None:
        self._startup_steps.append((name, action))

    def add_shutdown_step(self, name: str, action: Step, *, timeout: Optional[float] = None) -> None:
        """Append a step to the drain sequence; steps run in registration order."""
        self._shutdown_steps.append(ShutdownStep(name, action, timeout))

    def set_listener_stopper(self, stop: Callable[[], Any]) -> None:
        self._stop_listener = stop

    # -- startup -----------------------------------------------------------------

    async def start(self) -> None:
        """Run startup steps in order, then mark the process ready.

        A failing step crashes startup; partial startup is never reported ready.
        """
        self._loop = asyncio.get_running_loop()
        for name, action in self._startup_steps:
            started = time.perf_counter()
            try:
                await action()
            except Exception as exc:
                logger.error("startup_step_failed", step=name, error=str(exc), exc_info=exc)
                self.reporter.capture(exc, {"source": "startup", "state": self.state.value})
                self._transition(LifecycleState.CRASHED)
                raise
            logger.info(
                "startup_step_complete",
                step=name,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        self._transition(LifecycleState.READY)

    # -- request accounting ----------------------------------------------------

    def request_started(self) -> bool:
        """Admit a request; False once draining has begun."""
        if not self.accepting:
            return False
        self._in_flight += 1
        self._idle.clear()
        return True

    def request_finished(self) -> None:
        self._in_flight = max(0, self._in_flight - 1)
        if self._in_flight == 0:
            self._idle.set()

    # -- shutdown ----------------------------------------------------------------

    def request_shutdown(self, reason: str = "requested") -> "asyncio.Future[None]":
        """Start the drain sequence once; repeated calls return the same task."""
        if self._drain_task is not None:
            logger.info("shutdown_already_in_progress", reason=reason, state=self.state.value)
            return self._drain_task
        loop = asyncio.get_running_loop()
        self._loop = loop
        if not self._transition(LifecycleState.DRAINING):
            done: asyncio.Future[None] = loop.create_future()
            done.set_result(None)
            return done
        self._watchdog = loop.call_later(self.drain_timeout, self._on_watchdog)
        self._drain_task = loop.create_task(self._drain(reason))
        return self._drain_task

    async def shutdown(self, reason: str = "requested") -> Optional[int]:
        await self.request_shutdown(reason)
        return self.exit_code

    async def _drain(self, reason: str) -> None:
        started = time.perf_counter()
        logger.info("shutdown_started", reason=reason, in_flight=self._in_flight)
        if self._stop_listener is not None:
            self._stop_listener()
        await self._idle.wait()
        logger.info("shutdown_requests_drained")
        for step in self._shutdown_steps:
            await self._run_step(step)
        if self._watchdog is not None:
            self._watchdog.cancel()
        if self._transition(LifecycleState.STOPPED):
            code = 1 if self._step_failed else 0
            logger.info(
                "shutdown_complete",
                exit_code=code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            self._finish(code)

    async def _run_step(self, step: ShutdownStep) -> None:
        timeout = step.timeout if step.timeout is not None else self.step_timeout
        try:
            await asyncio.wait_for(step.action(), timeout)
        except asyncio.TimeoutError:
            self._step_failed = True
            logger.warning("shutdown_step_timeout", step=step.name, timeout=timeout)
        except Exception as exc:
            self._step_failed = True
            logger.error("shutdown_step_failed", step=step.name, error=str(exc))
            self.reporter.capture(exc, {"source": f"shutdown:{step.name}", "state": self.state.value})
        else:
            logger.info("shutdown_step_complete", step=step.name)

    def _finish(self, code: int) -> None:
        if self.exit_code is not None:
            return
        self.exit_code = code
        if self._exit_handler is not None:
            self._exit_handler(code)

    def _on_watchdog(self) -> None:
        logger.error(
            "shutdown_timeout_forced_exit",
            timeout=self.drain_timeout,
            in_flight=self._in_flight,
            state=self.state.value,
        )
        if self.exit_code is None:
            self.exit_code = 1
        self._force_exit(1)

    # -- signals and fault channels ------------------------------------------------

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGTERM and SIGINT to the same drain sequence."""
        loop = loop or asyncio.get_running_loop()
        self._loop = loop
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.handle_signal, sig)

    def handle_signal(self, sig: int) -> None:
        name = signal.Signals(sig).name
        logger.info("shutdown_signal_received", signal=name, state=self.state.value)
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self.request_shutdown, name)
        else:
            self.request_shutdown(name)

    def install_fault_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        loop.set_exception_handler(self.handle_async_fault)
        sys.excepthook = self.handle_fatal

    def handle_async_fault(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        """Log and report a fault that belongs to no request; the state is unchanged."""
        exc = context.get("exception")
        message = context.get("message", "unhandled exception in event loop")
        logger.error("async_fault", message=message, state=self.state.value, exc_info=exc)
        self.reporter.capture(
            exc if isinstance(exc, BaseException) else RuntimeError(message),
            {"source": "event_loop", "state": self.state.value},
        )

    def handle_fatal(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: Optional[TracebackType],
    ) -> None:
        """Crash: log, report, flush telemetry, then exit with code 1."""
        previous = self.state
        if not self._transition(LifecycleState.CRASHED):
            self.state = LifecycleState.CRASHED
        logger.critical("fatal_error", previous_state=previous.value, exc_info=(exc_type, exc, tb))
        self.reporter.capture(exc, {"source": "fatal", "state": previous.value})
        try:
            self.reporter.flush(self.step_timeout)
        except Exception as flush_exc:
            logger.error("telemetry_flush_failed", error=str(flush_exc))
        self.exit_code = 1
        self._force_exit(1)
